from pathlib import Path

import pytest
from pydantic import ValidationError

from kubenode.config import NodeConfig, load_environment


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    """Keep the developer's environment and config files out of the tests."""
    for name in ('KUBERNETES_VERSION', 'KUBENODE_KUBERNETES_VERSION', 'NODE_HOSTNAME',
                 'KUBENODE_NODE_HOSTNAME', 'TIMEZONE', 'KUBENODE_TIMEZONE', 'CNI_VERSION',
                 'KUBENODE_LOGGING__LEVEL'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr('kubenode.config.DEFAULT_CONFIG_PATHS', [tmp_path / 'absent.yaml'])


def test_defaults():
    config = NodeConfig.load()
    assert config.kubernetes_version == '1.28'
    assert config.node_hostname == 'k8s-node'
    assert config.checkpoint_dir == Path('/var/lib/k8s-node-bootstrap/checkpoints')
    assert config.runtime_endpoint == 'unix:///run/containerd/containerd.sock'
    assert config.fetch_max_attempts == 3
    assert config.logging.level == 'INFO'


def test_file_then_env_then_overrides(tmp_path, monkeypatch):
    path = tmp_path / 'kubenode.yaml'
    path.write_text(
        "kubernetes_version: '1.29'\n"
        "node_hostname: from-file\n"
        "timezone: UTC\n"
        "logging:\n"
        "  level: debug\n"
        "  backup_count: 2\n"
    )
    monkeypatch.setenv('NODE_HOSTNAME', 'from-env')
    monkeypatch.setenv('KUBENODE_KUBERNETES_VERSION', '1.27.4')

    config = NodeConfig.load(path, timezone='Europe/Berlin')
    assert config.kubernetes_version == '1.27.4'
    assert config.node_hostname == 'from-env'
    assert config.timezone == 'Europe/Berlin'
    assert config.logging.level == 'DEBUG'
    assert config.logging.backup_count == 2


def test_historical_variable_names(monkeypatch):
    monkeypatch.setenv('KUBERNETES_VERSION', 'v1.28.3')
    monkeypatch.setenv('CNI_VERSION', 'v1.4.0')
    config = NodeConfig.load()
    assert config.kubernetes_version == '1.28.3'
    assert config.cni_version == 'v1.4.0'


def test_invalid_version_is_rejected(monkeypatch):
    monkeypatch.setenv('KUBERNETES_VERSION', 'latest')
    with pytest.raises(ValidationError):
        NodeConfig.load()


def test_invalid_log_level_is_rejected():
    with pytest.raises(ValidationError):
        NodeConfig.load(logging={'level': 'LOUD'})


def test_missing_or_broken_file_falls_back(tmp_path):
    assert NodeConfig.load(tmp_path / 'missing.yaml').node_hostname == 'k8s-node'
    broken = tmp_path / 'broken.yaml'
    broken.write_text("node_hostname: [unclosed\n")
    assert NodeConfig.load(broken).node_hostname == 'k8s-node'


def test_load_environment(tmp_path, monkeypatch):
    # registered with monkeypatch so teardown removes what load_dotenv sets
    monkeypatch.setenv('NODE_HOSTNAME', 'placeholder')
    monkeypatch.delenv('NODE_HOSTNAME')
    env_file = tmp_path / 'environment'
    env_file.write_text('NODE_HOSTNAME=worker-7\nTIMEZONE=UTC\n')
    monkeypatch.setenv('TIMEZONE', 'Asia/Tokyo')

    assert load_environment(str(env_file))
    config = NodeConfig.load()
    assert config.node_hostname == 'worker-7'
    assert config.timezone == 'Asia/Tokyo'


def test_load_environment_missing_file(tmp_path):
    assert not load_environment(str(tmp_path / 'nope'))


@pytest.mark.parametrize('field, raw', [
    ('kubernetes_version', '1.28'),
    ('kubernetes_version', '1.30'),
    ('cni_version', '1.3'),
    ('crictl_version', '1'),
    ('node_exporter_version', '1.7'),
    ('fluent_bit_version', '2.2'),
])
def test_unquoted_yaml_version_asks_for_quotes(tmp_path, field, raw):
    path = tmp_path / 'kubenode.yaml'
    path.write_text(f"{field}: {raw}\n")
    with pytest.raises(ValidationError, match="quoted strings in YAML"):
        NodeConfig.load(path)


def test_quoted_yaml_version_is_kept_verbatim(tmp_path):
    path = tmp_path / 'kubenode.yaml'
    path.write_text("kubernetes_version: '1.30'\ncni_version: 'v1.4.0'\n")
    config = NodeConfig.load(path)
    assert config.kubernetes_version == '1.30'
    assert config.cni_version == 'v1.4.0'
