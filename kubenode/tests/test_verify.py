from kubenode import payloads
from kubenode.engine.probe import StateProbe
from kubenode.verify import CheckStatus, verify_node


def provision(host):
    """Bring the fake host into the state a completed bootstrap leaves behind."""
    for path in ('/usr/bin/containerd', '/usr/bin/runc', '/usr/local/bin/crictl',
                 '/usr/bin/kubelet', '/usr/bin/kubeadm', '/usr/bin/kubectl',
                 payloads.NODE_EXPORTER_BIN, '/usr/bin/fluent-bit',
                 payloads.JOURNALD_DROPIN, payloads.LOGROTATE_CONF,
                 payloads.CNI_BIN_DIR + '/bridge', payloads.CNI_BIN_DIR + '/loopback'):
        host.files[path] = 'x'
    host.dirs.add(payloads.CNI_BIN_DIR)
    for unit in ('containerd', 'chrony', 'node_exporter', 'fluent-bit'):
        host.units.add(unit)
        host.active.add(unit)
    host.sockets.add('/run/containerd/containerd.sock')
    for name in payloads.KUBERNETES_PACKAGES:
        host.packages[name] = '1.28.5-1.1'
    host.swap = False
    host.sysctls['net.ipv4.ip_forward'] = '1'


def statuses(report, section):
    return [result.status for result in report.results if result.section == section]


def test_provisioned_node_passes(config, host):
    provision(host)
    report = verify_node(config, StateProbe(host))

    assert report.passed
    assert report.count(CheckStatus.FAIL) == 0
    # Not joined yet
    assert report.count(CheckStatus.WARN) == 1
    assert report.counts['PASS'] == len(report.results) - 1


def test_undone_effects_fail(config, host):
    provision(host)
    host.active.discard('containerd')
    host.swap = True
    report = verify_node(config, StateProbe(host))

    assert not report.passed
    failures = [r.message for r in report.results if r.status is CheckStatus.FAIL]
    assert "containerd.service is not active" in failures
    assert "swap is active" in failures


def test_node_exporter_port_not_listening(config, host):
    provision(host)
    host.listening = [22]
    report = verify_node(config, StateProbe(host))
    assert CheckStatus.FAIL in statuses(report, "node_exporter")


def test_monitoring_checks_skipped_when_disabled(config, host):
    provision(host)
    config.enable_monitoring = False
    host.units.discard('node_exporter')
    report = verify_node(config, StateProbe(host))

    assert statuses(report, "node_exporter") == []
    assert report.passed


def test_empty_cni_directory_fails(config, host):
    provision(host)
    for name in ('bridge', 'loopback'):
        del host.files[f'{payloads.CNI_BIN_DIR}/{name}']
    report = verify_node(config, StateProbe(host))
    assert statuses(report, "CNI plugins") == [CheckStatus.FAIL]


def test_verification_changes_nothing(config, host):
    provision(host)
    files = dict(host.files)
    verify_node(config, StateProbe(host))
    assert host.files == files
    assert host.calls == []
