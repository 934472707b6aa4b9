import fnmatch
import io
import os
import tarfile
from pathlib import Path

import pytest

from kubenode.config import NodeConfig
from kubenode.engine.executor import StepContext
from kubenode.engine.fetcher import Fetcher
from kubenode.engine.probe import StateProbe
from kubenode.errors import CommandError
from kubenode.system.commands import CommandResult
from kubenode.system.host import HostSystem

BIN_DIRS = ('/usr/local/bin', '/usr/bin', '/usr/sbin', '/sbin')

# Files and units each fake package provides once installed
PACKAGE_BINARIES = {
    'uuid-runtime': ['/usr/bin/uuidgen'],
    'ufw': ['/usr/sbin/ufw'],
    'auditd': ['/usr/sbin/auditd'],
    'containerd.io': ['/usr/bin/containerd', '/usr/bin/runc'],
    'kubelet': ['/usr/bin/kubelet'],
    'kubeadm': ['/usr/bin/kubeadm'],
    'kubectl': ['/usr/bin/kubectl'],
    'chrony': ['/usr/sbin/chronyd'],
    'fluent-bit': ['/opt/fluent-bit/bin/fluent-bit'],
}
PACKAGE_UNITS = {
    'auditd': ['auditd'],
    'containerd.io': ['containerd'],
    'kubelet': ['kubelet'],
    'chrony': ['chrony'],
}

KUBEADM_IMAGES = [
    'registry.k8s.io/kube-apiserver:v1.28.5',
    'registry.k8s.io/kube-controller-manager:v1.28.5',
    'registry.k8s.io/kube-scheduler:v1.28.5',
    'registry.k8s.io/kube-proxy:v1.28.5',
    'registry.k8s.io/pause:3.9',
    'registry.k8s.io/etcd:3.5.9-0',
    'registry.k8s.io/coredns/coredns:v1.10.1',
]

SSHD_CONFIG = """\
Include /etc/ssh/sshd_config.d/*.conf
#PermitRootLogin prohibit-password
PasswordAuthentication yes
X11Forwarding yes
"""

FSTAB = """\
/dev/sda1 / ext4 defaults 0 1
/swap.img none swap sw 0 0
"""


def _unit(name):
    return name[:-len('.service')] if name.endswith('.service') else name


class FakeHost(HostSystem):
    """In-memory Ubuntu 22.04 host.

    Paths under ``real_root`` are real files (the download directory lives
    there); everything else exists only in ``files``.
    """

    def __init__(self, real_root):
        super().__init__(runner=self._refuse)
        self.real_root = str(real_root)
        self.root = True
        self.release = {'ID': 'ubuntu', 'VERSION_ID': '22.04', 'VERSION_CODENAME': 'jammy'}
        self.files = {
            '/etc/ssh/sshd_config': SSHD_CONFIG,
            '/etc/fstab': FSTAB,
            '/etc/hosts': '127.0.0.1 localhost\n',
            '/etc/passwd': 'root:x:0:0::/root:/bin/bash\n',
        }
        self.dirs = {'/etc/systemd/system'}
        self.modes = {}
        self.owners = {}
        self.sockets = set()
        self.packages = {}
        self.available = {'kubeadm': ['1.28.5-1.1', '1.28.4-1.1', '1.27.9-1.1']}
        self.units = {'ssh', 'systemd-journald', 'snapd'}
        self.active = {'ssh', 'systemd-journald', 'snapd'}
        self.enabled = set()
        self.masked = set()
        self.firewall_active = False
        self.firewall_rules = []
        self.modules = set()
        self.sysctls = {}
        self.swap = True
        self.users = {'root'}
        self.images = []
        self.kubeadm_images = {'v1.28.5': list(KUBEADM_IMAGES)}
        self.default_images = list(KUBEADM_IMAGES)
        self.component_versions = {}
        self.listening = [22, 9100]
        self.hostname = None
        self.timezone = None
        self.runtime_answers = True
        self.online = True
        self.failing = set()
        self.calls = []

    @staticmethod
    def _refuse(cmd, **kwargs):
        raise AssertionError(f"FakeHost must not run commands: {cmd}")

    def _outcome(self, name, *cmd, check=True):
        self.calls.append((name,) + tuple(cmd))
        result = CommandResult([name, *cmd], 1 if name in self.failing else 0)
        if check and not result.ok:
            raise CommandError(result.cmd, 1, '', f"{name} failed")
        return result

    def called(self, name):
        return [call for call in self.calls if call[0] == name]

    def _real(self, path):
        return str(path).startswith(self.real_root)

    # Host facts
    def is_root(self):
        return self.root

    def os_release(self):
        return dict(self.release)

    def system_running(self):
        return True

    def wait_for_cloud_init(self, timeout=900):
        self.calls.append(('cloud-init',))

    def set_hostname(self, hostname):
        self.hostname = hostname
        return True

    def set_timezone(self, timezone):
        self.timezone = timezone
        return True

    # Filesystem
    def path_exists(self, path):
        if self._real(path):
            return os.path.lexists(path)
        return path in self.files or path in self.dirs or path in self.sockets

    def is_socket(self, path):
        return path in self.sockets

    def read_file(self, path):
        return self.files.get(path)

    def write_file(self, path, content, mode=0o644):
        if 'write_file' in self.failing or f'write_file:{path}' in self.failing:
            raise OSError(f"read-only: {path}")
        self.files[path] = content
        self.modes[path] = mode

    def make_dirs(self, path, mode=0o755):
        self.dirs.add(path)

    def chmod(self, path, mode):
        self.modes[path] = mode

    def chown(self, path, user, group=None):
        self.owners[path] = (user, group or user)

    def remove(self, path):
        self.calls.append(('remove', path))
        if self._real(path):
            if os.path.isfile(path):
                os.remove(path)
            return
        self.files.pop(path, None)
        self.dirs.discard(path)
        prefix = path.rstrip('/') + '/'
        for child in [p for p in self.files if p.startswith(prefix)]:
            del self.files[child]

    def symlink(self, target, link):
        self.files[link] = self.files.get(target, '')

    def list_files(self, path):
        prefix = path.rstrip('/') + '/'
        return sorted(p[len(prefix):] for p in self.files
                      if p.startswith(prefix) and '/' not in p[len(prefix):])

    def which(self, name):
        for directory in BIN_DIRS:
            if f'{directory}/{name}' in self.files:
                return f'{directory}/{name}'
        return None

    def prune_files(self, root, patterns, older_than_days=None, exclude=(), recursive=True):
        self.calls.append(('prune', root))
        if self._real(root):
            return super().prune_files(root, patterns, older_than_days, exclude, recursive)
        if older_than_days is not None:
            return 0
        prefix = root.rstrip('/') + '/'
        doomed = [
            path for path in self.files
            if path.startswith(prefix)
            and (recursive or '/' not in path[len(prefix):])
            and any(fnmatch.fnmatch(path.rsplit('/', 1)[-1], pattern) for pattern in patterns)
            and not any(marker in path for marker in exclude)
        ]
        for path in doomed:
            del self.files[path]
        return len(doomed)

    def extract_archive(self, archive, dest, members=None, strip_components=0):
        written = []
        with tarfile.open(archive, 'r:gz') as tar:
            for member in tar.getmembers():
                parts = [p for p in member.name.split('/') if p not in ('', '.')][strip_components:]
                if not member.isfile() or not parts:
                    continue
                if members is not None and parts[-1] not in members:
                    continue
                target = '/'.join([dest.rstrip('/')] + parts)
                self.files[target] = 'binary'
                written.append(target)
        return written

    # Packages
    def package_status(self, name):
        return 'install ok installed' if name in self.packages else None

    def package_version(self, name):
        return self.packages.get(name)

    def available_versions(self, name):
        return list(self.available.get(name, []))

    def apt_get(self, *args, check=True):
        return self._outcome('apt-get ' + args[0], *args[1:], check=check)

    def apt_update(self, check=True):
        return self._outcome('apt_update', check=check)

    def apt_install(self, packages, check=True):
        result = self._outcome('apt_install', *packages, check=check)
        for spec in packages:
            name, _, version = spec.partition('=')
            self.packages[name] = version or '1.0-1'
            for path in PACKAGE_BINARIES.get(name, []):
                self.files[path] = 'binary'
            self.units.update(PACKAGE_UNITS.get(name, []))
        return result

    def apt_hold(self, packages, check=True):
        return self._outcome('apt_hold', *packages, check=check)

    def gpg_dearmor(self, source, dest):
        self._outcome('gpg_dearmor', source, dest)
        self.files[dest] = 'keyring'

    def journal_vacuum(self, max_age='7d', max_size='100M'):
        self.calls.append(('journal_vacuum',))

    # Services
    def service_active(self, name):
        return _unit(name) in self.active

    def service_enabled(self, name):
        return _unit(name) in self.enabled

    def unit_exists(self, name):
        return _unit(name) in self.units

    def daemon_reload(self):
        self._outcome('daemon_reload')

    def enable_service(self, name, check=True):
        result = self._outcome('enable', name, check=check)
        if result.ok:
            self.enabled.add(_unit(name))
        return result

    def start_service(self, name, check=True):
        result = self._outcome('start', name, check=check)
        if result.ok:
            self.active.add(_unit(name))
            if _unit(name) == 'containerd':
                self.sockets.add('/run/containerd/containerd.sock')
        return result

    def restart_service(self, name, check=True):
        result = self._outcome('restart', name, check=check)
        if result.ok:
            self.active.add(_unit(name))
        return result

    def stop_service(self, name, check=True):
        self.active.discard(_unit(name))
        return self._outcome('stop', name, check=check)

    def disable_service(self, name, check=True):
        self.enabled.discard(_unit(name))
        return self._outcome('disable', name, check=check)

    def mask_service(self, name, check=True):
        result = self._outcome('mask', name, check=check)
        if result.ok:
            self.masked.add(_unit(name))
        return result

    # Firewall
    def firewall_status(self):
        if not self.firewall_active:
            return 'Status: inactive\n'
        lines = ['Status: active', '', 'To                         Action      From',
                 '--                         ------      ----']
        for rule, comment in self.firewall_rules:
            line = f'{rule:<27}ALLOW       Anywhere'
            if comment:
                line += f'                   # {comment}'
            lines.append(line)
        return '\n'.join(lines) + '\n'

    def firewall_enable(self):
        self._outcome('ufw_enable')
        self.firewall_active = True

    def firewall_default(self, policy, direction):
        self._outcome('ufw_default', policy, direction)

    def firewall_allow(self, rule, comment=None):
        self._outcome('ufw_allow', rule)
        self.firewall_rules.append((rule, comment))

    # Kernel, swap, users
    def load_module(self, name, check=True):
        result = self._outcome('modprobe', name, check=check)
        if result.ok:
            self.modules.add(name)
        return result

    def sysctl_reload(self, check=True):
        result = self._outcome('sysctl_reload', check=check)
        if result.ok and '/etc/sysctl.d/k8s-kernel.conf' in self.files:
            self.sysctls['net.ipv4.ip_forward'] = '1'
        return result

    def sysctl_get(self, key):
        return self.sysctls.get(key)

    def sysctl_set(self, key, value, check=False):
        result = self._outcome('sysctl_set', key, value, check=check)
        if result.ok:
            self.sysctls[key] = value
        return result

    def swap_off(self):
        result = self._outcome('swapoff', check=False)
        if result.ok:
            self.swap = False
        return result

    def swap_active(self):
        return self.swap

    def listening_ports(self):
        return self.listening

    def process_running(self, pattern):
        return False

    def user_exists(self, name):
        return name in self.users

    def add_system_user(self, name):
        self._outcome('useradd', name)
        self.users.add(name)

    # Container runtime
    def containerd_default_config(self):
        if 'containerd_default_config' in self.failing:
            return None
        return 'version = 2\n[plugins]\n  SystemdCgroup = false\n'

    def containerd_config_valid(self):
        return 'containerd_config_valid' not in self.failing

    def runtime_ready(self, endpoint):
        return (self.runtime_answers and 'containerd' in self.active
                and '/run/containerd/containerd.sock' in self.sockets)

    def pull_image(self, endpoint, image):
        result = self._outcome('pull', image)
        self.images.append(image)
        return result

    def list_images(self, endpoint):
        return list(self.images)

    def kubeadm_image_list(self, kubernetes_version=None):
        if 'kubeadm' not in self.packages:
            return []
        if kubernetes_version is None:
            return list(self.default_images)
        return list(self.kubeadm_images.get(kubernetes_version, []))

    def kubeadm_reset(self):
        return self._outcome('kubeadm_reset', check=False)

    def kubeadm_join(self, args):
        return self._outcome('kubeadm_join', *args, check=False)

    # Clone identity
    def regenerate_ssh_host_keys(self):
        result = self._outcome('ssh_keygen', check=False)
        if result.ok:
            self.files['/etc/ssh/ssh_host_ed25519_key'] = 'new key'
        return result.ok

    def regenerate_machine_id(self):
        self.files['/etc/machine-id'] = ''
        result = self._outcome('machine_id_setup', check=False)
        if result.ok:
            self.files['/etc/machine-id'] = 'fresh-machine-id\n'
        return result.ok

    def network_online(self, targets=('8.8.8.8', '1.1.1.1')):
        return self.online

    def component_version(self, name):
        if name in self.component_versions:
            return self.component_versions[name]
        installed = self.packages.get(name)
        return installed.split('-', 1)[0] if installed else None


def make_tarball(path, members):
    """Write a tar.gz holding the given member names."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(str(path), 'w:gz') as tar:
        for name in members:
            data = f'#!/bin/sh\necho {name}\n'.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return path


def release_members(url):
    """Archive layout of each release tarball the steps download."""
    name = url.rsplit('/', 1)[-1]
    if 'node_exporter' in name:
        top = name[:-len('.tar.gz')]
        return [f'{top}/node_exporter', f'{top}/LICENSE']
    if 'crictl' in name:
        return ['crictl']
    return ['./bridge', './host-local', './loopback']


class FakeFetcher(Fetcher):
    """Writes plausible artifacts instead of touching the network."""

    def __init__(self):
        super().__init__(max_attempts=1, sleep=lambda seconds: None)
        self.failing = set()
        self.fetched = []

    def fetch(self, url, dest, max_attempts=None, base_backoff=None):
        self.fetched.append(url)
        if any(marker in url for marker in self.failing):
            return False
        dest = Path(dest)
        if url.endswith(('.tgz', '.tar.gz')):
            make_tarball(dest, release_members(url))
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text('-----BEGIN PGP PUBLIC KEY BLOCK-----\n')
        return True


@pytest.fixture
def config(tmp_path):
    return NodeConfig(
        checkpoint_dir=tmp_path / 'checkpoints',
        download_dir=tmp_path / 'downloads',
        logging={'file': None},
    )


@pytest.fixture
def host(tmp_path):
    return FakeHost(tmp_path)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def ctx(config, host, fetcher):
    (config.download_dir).mkdir(parents=True, exist_ok=True)
    return StepContext(config=config, host=host, probe=StateProbe(host), fetcher=fetcher)


@pytest.fixture
def fake_clock():
    """A clock that only advances when slept on."""
    class Clock:
        def __init__(self):
            self.now = 0.0
            self.sleeps = []

        def __call__(self):
            return self.now

        def sleep(self, seconds):
            self.sleeps.append(seconds)
            self.now += seconds

    return Clock()


@pytest.fixture
def tarball(tmp_path):
    """Factory writing a tar.gz with the given members under tmp_path."""
    def build(name, members):
        return make_tarball(tmp_path / name, members)
    return build
