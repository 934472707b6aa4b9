"""Node bootstrap configuration.

Configuration is loaded from several sources with the following precedence:
1. Explicitly passed overrides
2. Environment variables (``KUBENODE_*`` and the historical names such as
   ``KUBERNETES_VERSION`` or ``NODE_HOSTNAME``)
3. Configuration file (YAML)
4. Default values
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .engine.checkpoint import DEFAULT_CHECKPOINT_DIR
from .engine.versions import VersionSpecifier

logger = logging.getLogger("kubenode.config")

DEFAULT_CONFIG_PATHS = [
    Path("/etc/kubenode/config.yaml"),
    Path("~/.config/kubenode/config.yaml").expanduser(),
    Path("kubenode.yaml").absolute(),
]
DEFAULT_ENVIRONMENT_FILE = "/etc/environment"
DEFAULT_LOG_FILE = "/var/log/k8s-node-bootstrap.log"


def _env(name: str) -> AliasChoices:
    """Accept a field by name, with the KUBENODE_ prefix, or by its historical name."""
    return AliasChoices(name.lower(), f"KUBENODE_{name}", name)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    file: Optional[str] = Field(
        default=DEFAULT_LOG_FILE,
        description="Path to the bootstrap log file (None disables file logging)"
    )
    max_size_mb: int = Field(
        default=100,
        description="Maximum log file size in MB before rotation"
    )
    backup_count: int = Field(
        default=5,
        description="Number of rotated log files to keep"
    )

    @field_validator('level')
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Unknown log level: {v}")
        return level


class NodeConfig(BaseSettings):
    """Everything a bootstrap run needs to know about the target node."""

    model_config = SettingsConfigDict(
        env_prefix="KUBENODE_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # Component versions
    kubernetes_version: str = Field(
        default="1.28",
        validation_alias=_env("KUBERNETES_VERSION"),
        description="Kubernetes version: minor (1.28) for the newest patch, or exact (1.28.3)"
    )
    containerd_version: str = Field(default="1.7.0", validation_alias=_env("CONTAINERD_VERSION"))
    cni_version: str = Field(default="v1.3.0", validation_alias=_env("CNI_VERSION"))
    crictl_version: str = Field(default="v1.28.0", validation_alias=_env("CRICTL_VERSION"))
    node_exporter_version: str = Field(default="1.7.0")
    fluent_bit_version: str = Field(default="2.2.0")

    # Host identity
    node_hostname: str = Field(default="k8s-node", validation_alias=_env("NODE_HOSTNAME"))
    timezone: str = Field(default="Asia/Baghdad", validation_alias=_env("TIMEZONE"))
    arch: str = Field(default="amd64", description="Architecture used in release download URLs")

    # Ports opened in the host firewall
    kubelet_port: int = 10250
    kube_proxy_port: int = 10256
    nodeport_range: str = "30000:32767"
    node_exporter_port: int = 9100
    fluent_bit_port: int = 24224
    fluent_bit_forward_host: str = Field(
        default="127.0.0.1",
        description="Central log aggregator receiving forwarded container logs"
    )

    # Paths
    containerd_socket: str = "/run/containerd/containerd.sock"
    checkpoint_dir: Path = DEFAULT_CHECKPOINT_DIR
    artifact_cache_dir: Optional[Path] = Field(
        default=None,
        description="Directory of pre-downloaded release archives for offline builds"
    )
    download_dir: Path = Path("/tmp")

    # Network fetches
    fetch_max_attempts: int = Field(default=3, ge=1)
    fetch_backoff: float = Field(default=2.0, ge=0)

    # Readiness gates
    runtime_ready_timeout: int = Field(default=120, ge=0)
    runtime_poll_interval: float = Field(default=2.0, gt=0)
    service_start_timeout: int = Field(default=30, ge=0)

    # Step selection
    enable_monitoring: bool = True
    optional_steps: List[str] = Field(
        default_factory=list,
        description="Steps whose failure is logged as a warning instead of stopping the run"
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator(
        'kubernetes_version', 'containerd_version', 'cni_version',
        'crictl_version', 'node_exporter_version', 'fluent_bit_version',
        mode='before',
    )
    @classmethod
    def require_quoted_version(cls, v: Any, info: ValidationInfo) -> Any:
        # YAML reads 1.28 as a float and 1.30 as 1.3
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            raise ValueError(
                f"{info.field_name} was read as the number {v!r}; write versions as quoted "
                f"strings in YAML, e.g. {info.field_name}: '1.28'"
            )
        return v

    @field_validator('kubernetes_version')
    @classmethod
    def validate_kubernetes_version(cls, v: str) -> str:
        return VersionSpecifier.parse(v).raw_string

    @property
    def runtime_endpoint(self) -> str:
        return f"unix://{self.containerd_socket}"

    @classmethod
    def load(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        **overrides: Any,
    ) -> 'NodeConfig':
        """Load configuration from file, environment and explicit overrides."""
        file_data: Dict[str, Any] = {}
        if config_path:
            path = Path(config_path).expanduser().absolute()
            if path.exists():
                file_data = cls._load_config_file(path)
            else:
                logger.warning(f"Config file {path} not found, using environment and defaults")
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    file_data = cls._load_config_file(path)
                    break

        from_env = cls()
        env_data = from_env.model_dump(exclude_unset=True)
        merged = _deep_merge(_deep_merge(file_data, env_data), overrides)
        return cls(**merged)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring config file {path}: top level is not a mapping")
            return {}
        logger.debug(f"Loaded configuration from {path}")
        return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_environment(path: str = DEFAULT_ENVIRONMENT_FILE) -> bool:
    """Load KEY=value pairs from an environment file into os.environ.

    Variables already set in the process environment are left untouched.

    Returns:
        bool: True if the file existed and was read
    """
    if not Path(path).is_file():
        logger.debug(f"No environment file at {path}")
        return False
    loaded = load_dotenv(path, override=False)
    logger.debug(f"Loaded environment from {path}")
    return loaded
