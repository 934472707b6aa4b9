"""Top-level bootstrap run: preflight checks, then the step catalogue in order."""

import logging
from typing import List, Optional

from . import payloads
from .config import NodeConfig
from .engine.checkpoint import CheckpointStore
from .engine.executor import RunReport, Step, StepContext, StepExecutor
from .engine.fetcher import Fetcher
from .engine.probe import StateProbe
from .errors import PreconditionError
from .steps import build_steps
from .system.host import HostSystem

logger = logging.getLogger("kubenode.orchestrator")

SUPPORTED_OS_VERSION = "22.04"


class Orchestrator:
    """Wires the collaborators of one bootstrap run together."""

    def __init__(
        self,
        config: NodeConfig,
        host: Optional[HostSystem] = None,
        fetcher: Optional[Fetcher] = None,
        store: Optional[CheckpointStore] = None,
        steps: Optional[List[Step]] = None,
    ):
        self.config = config
        self.host = host or HostSystem()
        self.probe = StateProbe(self.host)
        self.fetcher = fetcher or Fetcher(
            max_attempts=config.fetch_max_attempts,
            base_backoff=config.fetch_backoff,
        )
        self.store = store or CheckpointStore(config.checkpoint_dir)
        self.steps = steps if steps is not None else build_steps(config)

    def preflight(self) -> None:
        """Check that this host can be bootstrapped at all.

        Raises:
            PreconditionError: If not running as root or not on an installed system
        """
        if not self.host.is_root():
            raise PreconditionError("This tool must be run as root (use sudo).")
        if not self.host.path_exists('/etc/systemd/system'):
            raise PreconditionError("This does not look like an installed system (no /etc/systemd/system).")
        if not self.host.system_running():
            logger.warning("Systemd may not be fully initialized, but continuing...")

        version_id = self.host.os_release().get('VERSION_ID')
        if version_id and version_id != SUPPORTED_OS_VERSION:
            logger.warning(f"Optimized for Ubuntu {SUPPORTED_OS_VERSION}. Detected: {version_id}")
        elif version_id:
            logger.info(f"Ubuntu {SUPPORTED_OS_VERSION} detected - optimal version")

        self.host.wait_for_cloud_init()
        logger.info("System environment verified")

    def run(self) -> RunReport:
        """Run every pending step in order.

        Raises:
            PreconditionError: If preflight checks fail
        """
        self.preflight()

        if self.store.init():
            logger.info(f"Checkpoint system initialized at {self.store.root}")
            logger.info(f"To force re-run of all steps, delete: {self.store.root}")
        else:
            logger.warning("Checkpoints unavailable; completed steps cannot be recorded")

        ctx = StepContext(config=self.config, host=self.host, probe=self.probe, fetcher=self.fetcher)
        try:
            report = StepExecutor(self.store).run_all(self.steps, ctx)
        finally:
            self.host.prune_files(str(self.config.download_dir), payloads.TEMP_ARTIFACT_PATTERNS, recursive=False)

        if report.success:
            logger.info("K8S NODE BOOTSTRAP COMPLETED")
            if report.warnings:
                logger.info(f"Completed with {len(report.warnings)} warning(s)")
            logger.warning("You must reboot before joining the cluster (kernel modules, sysctl and systemd changes)")
        else:
            logger.error(f"FATAL: bootstrap stopped at step '{report.failed_step}'")
        return report

