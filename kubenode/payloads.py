"""Static file contents, rule lists and URLs applied by the steps.

The text-editing helpers at the bottom are pure functions over file
contents; steps read a file through the host, transform it here and write
it back.
"""

import re
from typing import Dict, Iterable, List, Tuple

from .engine.probe import FirewallRule

# ----------------------------------------------------------------------
# Packages and services
# ----------------------------------------------------------------------
SECURITY_PACKAGES = [
    'ufw', 'fail2ban', 'unattended-upgrades', 'apt-listchanges',
    'iptables', 'iproute2', 'net-tools',
]
AUDIT_PACKAGES = ['auditd', 'audispd-plugins']
CONTAINERD_DEPENDENCIES = ['ca-certificates', 'curl', 'gnupg', 'lsb-release', 'jq']
KUBERNETES_REPO_DEPENDENCIES = ['apt-transport-https', 'ca-certificates', 'curl', 'gpg']
KUBERNETES_PACKAGES = ['kubelet', 'kubeadm', 'kubectl']
UNNEEDED_UNITS = ['snapd.service', 'snapd.socket', 'bluetooth.service',
                  'avahi-daemon.service', 'avahi-daemon.socket']
KERNEL_MODULES = ['overlay', 'br_netfilter']
CRITICAL_FILE_MODES = {
    '/etc/passwd': 0o644,
    '/etc/shadow': 0o640,
    '/etc/group': 0o644,
    '/etc/gshadow': 0o640,
}
CRICTL_LOCATIONS = ('/usr/local/bin/crictl', '/usr/bin/crictl')
FLUENT_BIT_LOCATIONS = ('/usr/bin/fluent-bit', '/opt/fluent-bit/bin/fluent-bit', '/usr/local/bin/fluent-bit')
KUBERNETES_REGISTRIES = ('registry.k8s.io', 'k8s.gcr.io')

# ----------------------------------------------------------------------
# File locations
# ----------------------------------------------------------------------
SSHD_CONFIG = '/etc/ssh/sshd_config'
PAM_COMMON_PASSWORD = '/etc/pam.d/common-password'
PWQUALITY_CONF = '/etc/security/pwquality.conf'
UNATTENDED_UPGRADES_CONF = '/etc/apt/apt.conf.d/50unattended-upgrades'
CIS_SYSCTL_CONF = '/etc/sysctl.d/k8s-cis.conf'
K8S_SYSCTL_CONF = '/etc/sysctl.d/k8s-kernel.conf'
MODULES_LOAD_CONF = '/etc/modules-load.d/k8s.conf'
FSTAB = '/etc/fstab'
SWAP_TARGET_OVERRIDE = '/etc/systemd/system/swap.target.d/override.conf'
SYSTEMD_SWAP_OVERRIDE = '/etc/systemd/system/systemd-swap.service.d/override.conf'
SYSTEMD_SWAP_UNITS = ('/lib/systemd/system/systemd-swap.service', '/usr/lib/systemd/system/systemd-swap.service')
DOCKER_KEYRING = '/etc/apt/keyrings/docker.gpg'
DOCKER_SOURCES = '/etc/apt/sources.list.d/docker.list'
CONTAINERD_CONFIG = '/etc/containerd/config.toml'
CNI_BIN_DIR = '/opt/cni/bin'
KUBERNETES_KEYRING = '/etc/apt/keyrings/kubernetes-apt-keyring.gpg'
KUBERNETES_SOURCES = '/etc/apt/sources.list.d/kubernetes.list'
CRICTL_CONFIG = '/etc/crictl.yaml'
KUBELET_DEFAULTS = '/etc/default/kubelet'
KUBELET_CONFIG = '/var/lib/kubelet/config.yaml'
KUBERNETES_MANIFESTS = '/etc/kubernetes/manifests'
JOURNALD_DROPIN = '/etc/systemd/journald.conf.d/99-k8s.conf'
LOGROTATE_CONF = '/etc/logrotate.d/k8s-node'
CHRONY_CONF = '/etc/chrony/chrony.conf'
NODE_EXPORTER_BIN = '/usr/local/bin/node_exporter'
NODE_EXPORTER_UNIT = '/etc/systemd/system/node_exporter.service'
FLUENT_BIT_KEYRING = '/usr/share/keyrings/fluentbit-keyring.gpg'
FLUENT_BIT_SOURCES = '/etc/apt/sources.list.d/fluent-bit.list'
FLUENT_BIT_STALE_SOURCES = '/etc/apt/sources.list.d/fluentbit.list'
FLUENT_BIT_CONF = '/etc/fluent-bit/fluent-bit.conf'
FLUENT_BIT_PARSERS = '/etc/fluent-bit/parsers.conf'
FLUENT_BIT_UNIT = '/etc/systemd/system/fluent-bit.service'
NODE_IDENTITY_FILE = '/var/lib/k8s-node-bootstrap/node-identity.json'

# ----------------------------------------------------------------------
# URLs
# ----------------------------------------------------------------------
DOCKER_GPG_URL = 'https://download.docker.com/linux/ubuntu/gpg'
DOCKER_REPO = 'deb [arch={arch} signed-by={keyring}] https://download.docker.com/linux/ubuntu {codename} stable\n'
CNI_URL = ('https://github.com/containernetworking/plugins/releases/download/'
           '{version}/cni-plugins-linux-{arch}-{version}.tgz')
KUBERNETES_KEY_URL = 'https://pkgs.k8s.io/core:/stable:/v{minor}/deb/Release.key'
KUBERNETES_REPO = 'deb [signed-by={keyring}] https://pkgs.k8s.io/core:/stable:/v{minor}/deb/ /\n'
CRICTL_URL = ('https://github.com/kubernetes-sigs/cri-tools/releases/download/'
              '{version}/crictl-{version}-linux-{arch}.tar.gz')
NODE_EXPORTER_URL = ('https://github.com/prometheus/node_exporter/releases/download/'
                     'v{version}/node_exporter-{version}.linux-{arch}.tar.gz')
FLUENT_BIT_KEY_URL = 'https://packages.fluentbit.io/fluentbit.key'
FLUENT_BIT_REPO = 'deb [signed-by={keyring}] https://packages.fluentbit.io/{distro}/{codename} {codename} main\n'


def firewall_rules(config) -> List[FirewallRule]:
    """Allow rules opened on every node, in the order they are applied."""
    return [
        FirewallRule('22', 'tcp'),
        FirewallRule(str(config.kubelet_port), 'tcp', 'Kubelet API'),
        FirewallRule(str(config.kube_proxy_port), 'tcp', 'kube-proxy'),
        FirewallRule(config.nodeport_range, 'tcp', 'NodePort Services'),
        FirewallRule(config.nodeport_range, 'udp', 'NodePort Services'),
        FirewallRule(str(config.node_exporter_port), 'tcp', 'Node Exporter (Prometheus)'),
        FirewallRule(str(config.fluent_bit_port), 'tcp', 'Fluent Bit forward'),
    ]


# ----------------------------------------------------------------------
# Hardening
# ----------------------------------------------------------------------
UNATTENDED_UPGRADES = """\
Unattended-Upgrade::Allowed-Origins {
    "${distro_id}:${distro_codename}-security";
    "${distro_id}ESMApps:${distro_codename}-apps-security";
    "${distro_id}ESM:${distro_codename}-infra-security";
};
Unattended-Upgrade::AutoFixInterruptedDpkg "true";
Unattended-Upgrade::MinimalSteps "true";
Unattended-Upgrade::Remove-Unused-Kernel-Packages "true";
Unattended-Upgrade::Remove-Unused-Dependencies "true";
"""

SSHD_DIRECTIVES: List[Tuple[str, str]] = [
    ('PermitRootLogin', 'no'),
    ('HostbasedAuthentication', 'no'),
    ('PermitEmptyPasswords', 'no'),
    ('PermitUserEnvironment', 'no'),
    ('MaxAuthTries', '4'),
    ('IgnoreRhosts', 'yes'),
    ('Protocol', '2'),
    ('X11Forwarding', 'no'),
    ('AllowTcpForwarding', 'no'),
    ('ClientAliveInterval', '300'),
    ('ClientAliveCountMax', '2'),
    ('MaxStartups', '10:30:60'),
    ('MaxSessions', '10'),
]

CIS_SYSCTL = """\
# CIS Benchmark: Network Security
net.ipv4.conf.all.rp_filter = 1
net.ipv4.conf.default.rp_filter = 1
net.ipv4.conf.all.accept_redirects = 0
net.ipv4.conf.default.accept_redirects = 0
net.ipv4.conf.all.secure_redirects = 0
net.ipv4.conf.default.secure_redirects = 0
net.ipv6.conf.all.accept_redirects = 0
net.ipv6.conf.default.accept_redirects = 0
net.ipv4.conf.all.send_redirects = 0
net.ipv4.conf.default.send_redirects = 0
net.ipv4.conf.all.log_martians = 1
net.ipv4.conf.default.log_martians = 1
net.ipv4.icmp_echo_ignore_broadcasts = 1
net.ipv4.tcp_syncookies = 1
net.ipv4.conf.all.accept_source_route = 0
net.ipv4.conf.default.accept_source_route = 0
net.ipv6.conf.all.accept_source_route = 0
net.ipv6.conf.default.accept_source_route = 0
"""
ENFORCED_SYSCTLS = {
    'net.ipv4.conf.all.log_martians': '1',
    'net.ipv4.conf.default.log_martians': '1',
}

PWQUALITY_LINE = 'password        requisite                       pam_pwquality.so retry=3'
PAM_COMMON_PASSWORD_DEFAULT = f"""\
# /etc/pam.d/common-password - password-related modules common to all services
{PWQUALITY_LINE}
password        [success=1 default=ignore]      pam_unix.so obscure sha512
password        requisite                       pam_deny.so
password        required                        pam_permit.so
"""
PWQUALITY_SETTINGS = {
    'minlen': '14',
    'dcredit': '-1',
    'ucredit': '-1',
    'ocredit': '-1',
    'lcredit': '-1',
}

# ----------------------------------------------------------------------
# Kernel
# ----------------------------------------------------------------------
MODULES_LOAD = """\
# Kernel modules required for Kubernetes
overlay
br_netfilter
"""

K8S_SYSCTL = """\
# sysctl params required by Kubernetes setup
net.bridge.bridge-nf-call-iptables  = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward                 = 1
"""

SWAP_UNIT_OVERRIDE = """\
[Unit]
ConditionPathExists=
[Install]
WantedBy=
"""

# ----------------------------------------------------------------------
# Container runtime
# ----------------------------------------------------------------------
CONTAINERD_MINIMAL_CONFIG = """\
version = 2
root = "/var/lib/containerd"
state = "/run/containerd"

[grpc]
  address = "{socket}"

[plugins]
  [plugins."io.containerd.grpc.v1.cri"]
    sandbox_image = "registry.k8s.io/pause:3.9"

    [plugins."io.containerd.grpc.v1.cri".containerd]
      default_runtime_name = "runc"

      [plugins."io.containerd.grpc.v1.cri".containerd.runtimes]
        [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]
          runtime_type = "io.containerd.runc.v2"

          [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]
            SystemdCgroup = true

    [plugins."io.containerd.grpc.v1.cri".registry.mirrors]
      [plugins."io.containerd.grpc.v1.cri".registry.mirrors."docker.io"]
        endpoint = ["https://registry-1.docker.io"]
"""

CRICTL_YAML = """\
runtime-endpoint: {endpoint}
image-endpoint: {endpoint}
timeout: 10
debug: false
"""

# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------
KUBELET_DEFAULTS_CONTENT = (
    "KUBELET_EXTRA_ARGS=--container-runtime-endpoint={endpoint} --cgroup-driver=systemd\n"
)

KUBELET_CONFIG_CONTENT = """\
apiVersion: kubelet.config.k8s.io/v1beta1
kind: KubeletConfiguration
cgroupDriver: systemd
containerRuntimeEndpoint: {endpoint}
staticPodPath: /etc/kubernetes/manifests
"""

# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------
JOURNALD_CONF = """\
[Journal]
Storage=auto
SystemMaxUse=100M
RuntimeMaxUse=50M
Compress=yes
SyncIntervalSec=5m
RateLimitInterval=30s
RateLimitBurst=5000
MaxRetentionSec=1month
ForwardToSyslog=yes
"""

LOGROTATE = """\
/var/log/syslog
/var/log/kern.log
/var/log/auth.log
{
    rotate 7
    daily
    compress
    delaycompress
    missingok
    notifempty
    create 0644 root root
}
"""

CHRONY = """\
pool time.cloudflare.com iburst
pool pool.ntp.org iburst

keyfile /etc/chrony/chrony.keys
driftfile /var/lib/chrony/drift
logdir /var/log/chrony

rtcsync

log measurements statistics tracking
"""

NODE_EXPORTER_SERVICE = """\
[Unit]
Description=Prometheus Node Exporter
Documentation=https://github.com/prometheus/node_exporter
Wants=network-online.target
After=network-online.target

[Service]
User=node_exporter
Group=node_exporter
Type=simple
ExecStart=/usr/local/bin/node_exporter \\
    --web.listen-address=:{port} \\
    --collector.filesystem.mount-points-exclude="^/(sys|proc|dev|run|boot|var/lib/docker/.+)($|/)" \\
    --collector.filesystem.fs-types-exclude="^(autofs|proc|sysfs|tmpfs|devpts|securityfs|cgroup|pstore|debugfs|mqueue|hugetlbfs|tracefs)$"
Restart=always
RestartSec=5

[Install]
WantedBy=multi-user.target
"""

FLUENT_BIT_CONFIG = """\
[SERVICE]
    Flush        1
    Daemon       Off
    Log_Level    info
    Parsers_File parsers.conf

[INPUT]
    Name              tail
    Tag               kube.*
    Path              /var/log/containers/*.log
    Parser            docker
    DB                /var/log/flb_kube.db
    Mem_Buf_Limit     50MB
    Skip_Long_Lines   On
    Refresh_Interval  5
    Docker_Mode       On

[FILTER]
    Name                 kubernetes
    Match                kube.*
    Kube_Tag_Prefix      kube.var.log.containers.
    Merge_Log            On
    Keep_Log             Off
    K8S-Logging.Parser   On
    K8S-Logging.Exclude  On

[OUTPUT]
    Name      forward
    Match     *
    Host      {host}
    Port      {port}
"""

FLUENT_BIT_PARSERS_CONFIG = """\
[PARSER]
    Name        docker
    Format      json
    Time_Key    time
    Time_Format %Y-%m-%dT%H:%M:%S.%L
"""

FLUENT_BIT_SERVICE = """\
[Unit]
Description=Fluent Bit - Lightweight Log Processor
Documentation=https://docs.fluentbit.io/
Wants=network-online.target
After=network-online.target

[Service]
Type=simple
ExecStart={binary} -c /etc/fluent-bit/fluent-bit.conf
Restart=always
RestartSec=5

[Install]
WantedBy=multi-user.target
"""

# ----------------------------------------------------------------------
# Cleanup
# ----------------------------------------------------------------------
LOG_RETENTION_DAYS = 7
PRESERVED_LOG_PATHS = ('kubelet', 'containerd', 'audit')
TEMP_ARTIFACT_PATTERNS = (
    'cni-plugins*.tgz',
    'crictl*.tar.gz',
    'node_exporter-*.tar.gz',
    'docker.key',
    'kubernetes-apt-keyring.key',
    'fluentbit-keyring.key',
    '*.part',
)


# ----------------------------------------------------------------------
# Golden image first-boot bundle
# ----------------------------------------------------------------------
GOLDEN_IMAGE_DIR = '/opt/golden-image'
NETPLAN_TEMPLATE = GOLDEN_IMAGE_DIR + '/01-default-netplan.yaml'
NETPLAN_DIR = '/etc/netplan'
NETPLAN_DEFAULT = NETPLAN_DIR + '/01-default.yaml'
JOIN_COMMAND_FILE = '/etc/kubeadm_join_cmd'
SYSTEMD_UNIT_DIR = '/etc/systemd/system'
FIRSTBOOT_RESET_UNIT = 'firstboot-reset.service'
FIRSTBOOT_HOSTNAME_UNIT = 'firstboot-hostname.service'
KUBEADM_JOIN_UNIT = 'kubeadm-join.service'
# Enabled when the bundle is installed; the join unit is enabled by hand.
FIRSTBOOT_ENABLED_UNITS = (FIRSTBOOT_RESET_UNIT, FIRSTBOOT_HOSTNAME_UNIT)
KUBEADM_STATE_PATHS = (
    '/etc/kubernetes/pki',
    '/etc/kubernetes/manifests',
    '/var/lib/kubelet',
    '/var/lib/etcd',
)
CNI_CONF_DIR = '/etc/cni/net.d'
UDEV_RULES_DIR = '/etc/udev/rules.d'

FIRSTBOOT_UNITS = {
    FIRSTBOOT_RESET_UNIT: """\
[Unit]
Description=Golden image first boot reset (SSH host keys, kubeadm state, machine-id)
DefaultDependencies=no
After=local-fs.target
Before=network-pre.target ssh.service kubelet.service
Wants=network-pre.target

[Service]
Type=oneshot
ExecStart={kubenode} firstboot reset
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
""",
    FIRSTBOOT_HOSTNAME_UNIT: """\
[Unit]
Description=Golden image first boot hostname assignment
Wants=network-online.target
After=network-online.target firstboot-reset.service

[Service]
Type=oneshot
ExecStart={kubenode} firstboot hostname
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
""",
    KUBEADM_JOIN_UNIT: """\
[Unit]
Description=Join this node to a Kubernetes cluster on first boot
Wants=network-online.target
After=network-online.target firstboot-hostname.service containerd.service kubelet.service

[Service]
Type=oneshot
ExecStart={kubenode} firstboot join
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
""",
}

NETPLAN_DHCP = """\
network:
  version: 2
  ethernets:
    primary:
      match:
        name: "e*"
      dhcp4: true
"""

JOIN_COMMAND_PLACEHOLDER = f"""\
# Place your kubeadm join command here
# Example:
# kubeadm join <control-plane-ip>:6443 --token <token> --discovery-token-ca-cert-hash sha256:<hash>
#
# To enable auto-join:
# 1. Edit this file and add your join command
# 2. Run: systemctl enable {KUBEADM_JOIN_UNIT}
# 3. Reboot the node
"""


# ----------------------------------------------------------------------
# Text transformations
# ----------------------------------------------------------------------
def apply_sshd_directives(content: str, directives: Iterable[Tuple[str, str]] = SSHD_DIRECTIVES) -> str:
    """Set each sshd directive exactly once.

    Active or commented-out occurrences of a directive are replaced in
    place; directives that do not occur at all are appended.
    """
    lines = content.splitlines()
    for key, value in directives:
        pattern = re.compile(rf'^\s*#?\s*{re.escape(key)}\b', re.IGNORECASE)
        replaced = False
        result = []
        for line in lines:
            if pattern.match(line):
                if not replaced:
                    result.append(f'{key} {value}')
                    replaced = True
                continue
            result.append(line)
        if not replaced:
            result.append(f'{key} {value}')
        lines = result
    return '\n'.join(lines) + '\n'


def disable_swap_entries(fstab: str) -> str:
    """Comment out every active swap entry in an fstab."""
    result = []
    for line in fstab.splitlines():
        stripped = line.strip()
        fields = stripped.split()
        if stripped and not stripped.startswith('#') and len(fields) >= 3 and fields[2] == 'swap':
            result.append(f'# {line}')
        else:
            result.append(line)
    return '\n'.join(result) + '\n' if result else fstab


def ensure_pam_pwquality(content: str, line: str = PWQUALITY_LINE) -> str:
    """Insert the pam_pwquality requirement ahead of pam_unix if missing."""
    if 'pam_pwquality.so' in content:
        return content
    lines = content.splitlines()
    for index, existing in enumerate(lines):
        if 'pam_unix.so' in existing:
            lines.insert(index, line)
            break
    else:
        lines.append(line)
    return '\n'.join(lines) + '\n'


def set_conf_values(content: str, values: Dict[str, str]) -> str:
    """Set ``key = value`` pairs, uncommenting existing keys or appending new ones."""
    lines = content.splitlines()
    for key, value in values.items():
        pattern = re.compile(rf'^\s*#?\s*{re.escape(key)}\s*=')
        for index, line in enumerate(lines):
            if pattern.match(line):
                lines[index] = f'{key} = {value}'
                break
        else:
            lines.append(f'{key} = {value}')
    return '\n'.join(lines) + '\n'


def set_hosts_entry(hosts: str, hostname: str) -> str:
    """Point the 127.0.1.1 line of /etc/hosts at ``hostname``."""
    lines = [line for line in hosts.splitlines() if not line.startswith('127.0.1.1')]
    lines.append(f'127.0.1.1 {hostname}')
    return '\n'.join(lines) + '\n'
