from kubenode.engine.probe import FirewallRule, StateProbe


def test_package_installed_requires_full_install(host):
    probe = StateProbe(host)
    host.packages['kubeadm'] = '1.28.5-1.1'
    assert probe.package_installed('kubeadm')
    assert probe.package_version('kubeadm') == '1.28.5-1.1'

    host.package_status = lambda name: 'install ok unpacked'
    assert not probe.package_installed('kubeadm')
    assert probe.package_version('kubeadm') is None


def test_binary_present_on_path_or_fixed_location(host):
    probe = StateProbe(host)
    assert not probe.binary_present('crictl', ('/usr/local/bin/crictl',))

    host.files['/opt/tools/crictl'] = 'binary'
    assert probe.binary_present('crictl', ('/opt/tools/crictl',))
    assert not probe.binary_present('crictl')

    host.files['/usr/bin/crictl'] = 'binary'
    assert probe.binary_present('crictl')


def test_firewall_rule_matches_signature_exactly(host):
    probe = StateProbe(host)
    host.firewall_active = True
    host.firewall_rules = [('10250/tcp', 'Kubelet API'), ('30000:32767/udp', 'NodePort Services')]

    assert probe.firewall_rule_present('10250/tcp')
    assert probe.firewall_rule_present('10250/tcp', comment='Kubelet API')
    assert not probe.firewall_rule_present('10250/tcp', comment='kube-proxy')
    assert not probe.firewall_rule_present('1025/tcp')
    assert not probe.firewall_rule_present('30000:32767/tcp')
    assert probe.firewall_rule_present('30000:32767/udp')


def test_firewall_rule_absent_when_inactive(host):
    assert not StateProbe(host).firewall_rule_present('22/tcp')


def test_firewall_rule_signature():
    assert FirewallRule('22').signature == '22/tcp'
    assert FirewallRule('30000:32767', 'udp', 'NodePort Services').signature == '30000:32767/udp'


def test_simple_predicates(host):
    probe = StateProbe(host)
    host.sockets.add('/run/containerd/containerd.sock')

    assert probe.service_active('ssh')
    assert probe.unit_exists('ssh.service')
    assert not probe.service_active('containerd')
    assert probe.socket_present('/run/containerd/containerd.sock')
    assert probe.file_present('/etc/fstab')
    assert probe.swap_active()
    assert probe.user_exists('root')
    assert not probe.user_exists('node_exporter')
