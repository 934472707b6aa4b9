"""Host system adapter.

Every interaction with the operating system goes through ``HostSystem``:
apt/dpkg, systemd, ufw, the kernel tunables, crictl/kubeadm and the local
filesystem. Steps never call subprocess or touch paths directly, so the
whole engine can run against an in-memory fake in tests.
"""

import fnmatch
import json
import logging
import os
import re
import shutil
import stat
import tarfile
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .commands import CommandResult, DEFAULT_TIMEOUT, run_command

logger = logging.getLogger("kubenode.system.host")

APT_ENV = {'DEBIAN_FRONTEND': 'noninteractive'}
CRICTL_FALLBACK_PATHS = ('/usr/local/bin/crictl', '/usr/bin/crictl')


class HostSystem:
    """Narrow interface over the tooling of a single Debian/Ubuntu host."""

    def __init__(
        self,
        runner: Callable[..., CommandResult] = run_command,
        command_timeout: int = DEFAULT_TIMEOUT,
    ):
        self._runner = runner
        self.command_timeout = command_timeout

    def run(
        self,
        cmd: Sequence[str],
        check: bool = True,
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        return self._runner(
            cmd,
            check=check,
            timeout=timeout or self.command_timeout,
            env=env,
            input_text=input_text,
        )

    # ------------------------------------------------------------------
    # Host facts
    # ------------------------------------------------------------------
    def is_root(self) -> bool:
        return os.geteuid() == 0

    def os_release(self) -> Dict[str, str]:
        """Parse /etc/os-release into a dictionary."""
        content = self.read_file('/etc/os-release') or ''
        release = {}
        for line in content.splitlines():
            if '=' not in line or line.startswith('#'):
                continue
            key, value = line.split('=', 1)
            release[key.strip()] = value.strip().strip('"')
        return release

    def system_running(self) -> bool:
        return self.run(['systemctl', 'is-system-running'], check=False).ok

    def wait_for_cloud_init(self, timeout: int = 900) -> None:
        """Block until cloud-init finishes, if it is installed at all."""
        if not self.which('cloud-init'):
            return
        logger.info("Waiting for cloud-init to complete (if running)...")
        self.run(['cloud-init', 'status', '--wait'], check=False, timeout=timeout)

    def set_hostname(self, hostname: str) -> bool:
        """Set the hostname; falls back to writing /etc/hostname.

        Returns:
            bool: True if hostnamectl applied it
        """
        if self.run(['hostnamectl', 'set-hostname', hostname], check=False).ok:
            return True
        self.write_file('/etc/hostname', hostname + '\n')
        return False

    def set_timezone(self, timezone: str) -> bool:
        """Set the timezone; falls back to /etc/timezone and /etc/localtime.

        Returns:
            bool: True if timedatectl applied it
        """
        if self.run(['timedatectl', 'set-timezone', timezone], check=False).ok:
            return True
        self.write_file('/etc/timezone', timezone + '\n')
        zoneinfo = f'/usr/share/zoneinfo/{timezone}'
        if self.path_exists(zoneinfo):
            self.symlink(zoneinfo, '/etc/localtime')
        return False

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------
    def path_exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_socket(self, path: str) -> bool:
        try:
            return stat.S_ISSOCK(os.stat(path).st_mode)
        except OSError:
            return False

    def read_file(self, path: str) -> Optional[str]:
        try:
            return Path(path).read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError):
            return None

    def write_file(self, path: str, content: str, mode: int = 0o644) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding='utf-8')
        os.chmod(target, mode)
        logger.debug(f"Wrote {path} ({oct(mode)})")

    def make_dirs(self, path: str, mode: int = 0o755) -> None:
        os.makedirs(path, mode=mode, exist_ok=True)

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def remove(self, path: str) -> None:
        """Remove a file or directory tree; a missing path is not an error."""
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path, ignore_errors=True)
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def symlink(self, target: str, link: str) -> None:
        if os.path.lexists(link):
            os.remove(link)
        os.symlink(target, link)

    def list_files(self, path: str) -> List[str]:
        """Names of regular files directly inside path; empty if it is not a directory."""
        try:
            return sorted(entry.name for entry in os.scandir(path) if entry.is_file())
        except OSError:
            return []

    def chown(self, path: str, user: str, group: Optional[str] = None) -> None:
        shutil.chown(path, user, group or user)

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def prune_files(
        self,
        root: str,
        patterns: Iterable[str],
        older_than_days: Optional[float] = None,
        exclude: Sequence[str] = (),
        recursive: bool = True,
    ) -> int:
        """Delete files under root whose name matches one of patterns.

        Args:
            root: Directory to scan
            patterns: fnmatch patterns matched against file names
            older_than_days: Only delete files last modified before this age
            exclude: Substrings; any path containing one is kept
            recursive: Descend into subdirectories

        Returns:
            int: Number of files deleted. Files that vanish or cannot be
            removed are skipped.
        """
        patterns = list(patterns)
        cutoff = time.time() - older_than_days * 86400 if older_than_days is not None else None
        removed = 0
        for dirpath, dirnames, filenames in os.walk(root):
            if not recursive:
                dirnames[:] = []
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                if not any(fnmatch.fnmatch(filename, pattern) for pattern in patterns):
                    continue
                if any(marker in path for marker in exclude):
                    continue
                try:
                    if cutoff is not None and os.lstat(path).st_mtime >= cutoff:
                        continue
                    os.remove(path)
                    removed += 1
                except OSError as e:
                    logger.debug(f"Could not remove {path}: {e}")
        return removed

    def extract_archive(
        self,
        archive: str,
        dest: str,
        members: Optional[Sequence[str]] = None,
        strip_components: int = 0,
    ) -> List[str]:
        """Extract a gzip tarball into dest.

        Args:
            archive: Path of the .tar.gz file
            dest: Destination directory (created if missing)
            members: Optional base names to extract; everything else is skipped
            strip_components: Leading path components dropped from each member

        Returns:
            list: Paths written under dest
        """
        os.makedirs(dest, exist_ok=True)
        written = []
        with tarfile.open(archive, 'r:gz') as tar:
            for member in tar.getmembers():
                if not (member.isfile() or member.isdir()):
                    continue
                parts = [p for p in member.name.split('/') if p not in ('', '.')]
                parts = parts[strip_components:]
                if not parts or '..' in parts:
                    continue
                if members is not None and parts[-1] not in members:
                    continue
                target = os.path.join(dest, *parts)
                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                    continue
                os.makedirs(os.path.dirname(target), exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, open(target, 'wb') as out:
                    shutil.copyfileobj(source, out)
                os.chmod(target, member.mode & 0o777 or 0o644)
                written.append(target)
        return written

    # ------------------------------------------------------------------
    # Packages (dpkg / apt)
    # ------------------------------------------------------------------
    def package_status(self, name: str) -> Optional[str]:
        result = self.run(['dpkg-query', '-W', '-f=${Status}', name], check=False)
        return result.stdout.strip() if result.ok else None

    def package_version(self, name: str) -> Optional[str]:
        result = self.run(['dpkg-query', '-W', '-f=${Version}', name], check=False)
        version = result.stdout.strip()
        return version if result.ok and version else None

    def available_versions(self, name: str) -> List[str]:
        """Versions offered by the configured repositories, newest first."""
        result = self.run(['apt-cache', 'madison', name], check=False)
        versions = []
        for line in result.stdout.splitlines():
            fields = [f.strip() for f in line.split('|')]
            if len(fields) >= 2 and fields[1] and fields[1] not in versions:
                versions.append(fields[1])
        return versions

    def apt_get(self, *args: str, check: bool = True) -> CommandResult:
        return self.run(['apt-get', *args], check=check, env=APT_ENV)

    def apt_update(self, check: bool = True) -> CommandResult:
        return self.apt_get('update', '-qq', check=check)

    def apt_install(self, packages: Sequence[str], check: bool = True) -> CommandResult:
        return self.apt_get('install', '-y', *packages, check=check)

    def apt_hold(self, packages: Sequence[str], check: bool = True) -> CommandResult:
        return self.run(['apt-mark', 'hold', *packages], check=check)

    def gpg_dearmor(self, source: str, dest: str) -> None:
        """Convert an ASCII-armored key into a binary keyring file."""
        self.run(['gpg', '--batch', '--yes', '--dearmor', '-o', dest, source])

    def journal_vacuum(self, max_age: str = '7d', max_size: str = '100M') -> None:
        if not self.which('journalctl'):
            return
        self.run(['journalctl', f'--vacuum-time={max_age}'], check=False)
        self.run(['journalctl', f'--vacuum-size={max_size}'], check=False)

    # ------------------------------------------------------------------
    # Services (systemd)
    # ------------------------------------------------------------------
    def systemctl(self, *args: str, check: bool = True) -> CommandResult:
        return self.run(['systemctl', *args], check=check)

    def service_active(self, name: str) -> bool:
        return self.systemctl('is-active', '--quiet', name, check=False).ok

    def service_enabled(self, name: str) -> bool:
        return self.systemctl('is-enabled', '--quiet', name, check=False).ok

    def unit_exists(self, name: str) -> bool:
        result = self.systemctl('list-unit-files', '--no-legend', name, check=False)
        return result.ok and bool(result.stdout.strip())

    def daemon_reload(self) -> None:
        self.systemctl('daemon-reload')

    def enable_service(self, name: str, check: bool = True) -> CommandResult:
        return self.systemctl('enable', name, check=check)

    def start_service(self, name: str, check: bool = True) -> CommandResult:
        return self.systemctl('start', name, check=check)

    def stop_service(self, name: str, check: bool = True) -> CommandResult:
        return self.systemctl('stop', name, check=check)

    def restart_service(self, name: str, check: bool = True) -> CommandResult:
        return self.systemctl('restart', name, check=check)

    def disable_service(self, name: str, check: bool = True) -> CommandResult:
        return self.systemctl('disable', name, check=check)

    def mask_service(self, name: str, check: bool = True) -> CommandResult:
        return self.systemctl('mask', name, check=check)

    # ------------------------------------------------------------------
    # Firewall (ufw)
    # ------------------------------------------------------------------
    def firewall_status(self) -> str:
        return self.run(['ufw', 'status'], check=False).stdout

    def firewall_enable(self) -> None:
        self.run(['ufw', '--force', 'enable'])

    def firewall_default(self, policy: str, direction: str) -> None:
        self.run(['ufw', 'default', policy, direction])

    def firewall_allow(self, rule: str, comment: Optional[str] = None) -> None:
        cmd = ['ufw', 'allow', rule]
        if comment:
            cmd += ['comment', comment]
        self.run(cmd)

    # ------------------------------------------------------------------
    # Kernel, swap, users and processes
    # ------------------------------------------------------------------
    def load_module(self, name: str, check: bool = True) -> CommandResult:
        return self.run(['modprobe', name], check=check)

    def sysctl_reload(self, check: bool = True) -> CommandResult:
        return self.run(['sysctl', '--system'], check=check)

    def sysctl_get(self, key: str) -> Optional[str]:
        result = self.run(['sysctl', '-n', key], check=False)
        return result.stdout.strip() if result.ok else None

    def sysctl_set(self, key: str, value: str, check: bool = False) -> CommandResult:
        return self.run(['sysctl', '-w', f'{key}={value}'], check=check)

    def swap_off(self) -> CommandResult:
        return self.run(['swapoff', '-a'], check=False)

    def swap_active(self) -> bool:
        result = self.run(['swapon', '--show', '--noheadings'], check=False)
        return bool(result.stdout.strip())

    def listening_ports(self) -> Optional[List[int]]:
        """TCP ports with a listening socket, or None if ss is unavailable."""
        result = self.run(['ss', '-ltnH'], check=False)
        if not result.ok:
            return None
        ports = set()
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) < 4:
                continue
            _, _, port = fields[3].rpartition(':')
            if port.isdigit():
                ports.add(int(port))
        return sorted(ports)

    def process_running(self, pattern: str) -> bool:
        return self.run(['pgrep', '-f', pattern], check=False).ok

    def user_exists(self, name: str) -> bool:
        return self.run(['id', '-u', name], check=False).ok

    def add_system_user(self, name: str) -> None:
        self.run(['useradd', '--no-create-home', '--shell', '/usr/sbin/nologin', name])

    # ------------------------------------------------------------------
    # Container runtime and Kubernetes CLIs
    # ------------------------------------------------------------------
    def _crictl_bin(self) -> str:
        found = self.which('crictl')
        if found:
            return found
        for path in CRICTL_FALLBACK_PATHS:
            if self.path_exists(path):
                return path
        return 'crictl'

    def crictl(self, endpoint: str, *args: str, check: bool = True, timeout: Optional[int] = None) -> CommandResult:
        env = {
            'CONTAINER_RUNTIME_ENDPOINT': endpoint,
            'IMAGE_SERVICE_ENDPOINT': endpoint,
        }
        return self.run([self._crictl_bin(), *args], check=check, env=env, timeout=timeout)

    def containerd_default_config(self) -> Optional[str]:
        """Default config.toml as generated by containerd itself, or None."""
        result = self.run(['containerd', 'config', 'default'], check=False, timeout=10)
        return result.stdout if result.ok and result.stdout.strip() else None

    def containerd_config_valid(self) -> bool:
        return self.run(['containerd', 'config', 'dump'], check=False, timeout=10).ok

    def runtime_ready(self, endpoint: str) -> bool:
        """True when the container runtime answers a CRI info query."""
        return self.crictl(endpoint, 'info', check=False, timeout=15).ok

    def pull_image(self, endpoint: str, image: str) -> CommandResult:
        return self.crictl(endpoint, 'pull', image)

    def list_images(self, endpoint: str) -> List[str]:
        result = self.crictl(endpoint, 'images', check=False)
        images = []
        for line in result.stdout.splitlines()[1:]:
            fields = line.split()
            if len(fields) >= 2:
                images.append(f"{fields[0]}:{fields[1]}")
        return images

    def kubeadm_image_list(self, kubernetes_version: Optional[str] = None) -> List[str]:
        """Images kubeadm needs for a version; empty if kubeadm cannot answer."""
        cmd = ['kubeadm', 'config', 'images', 'list']
        if kubernetes_version:
            cmd.append(f'--kubernetes-version={kubernetes_version}')
        result = self.run(cmd, check=False)
        if not result.ok:
            return []
        # Image references never contain spaces; klog warnings always do.
        return [
            line.strip() for line in result.stdout.splitlines()
            if line.strip() and ' ' not in line.strip()
        ]

    def component_version(self, name: str) -> Optional[str]:
        """Version reported by a Kubernetes binary, without the leading 'v'."""
        if name == 'kubectl':
            result = self.run(['kubectl', 'version', '--client', '-o', 'json'], check=False)
            if not result.ok:
                return None
            try:
                version = json.loads(result.stdout)['clientVersion']['gitVersion']
            except (ValueError, KeyError, TypeError):
                return None
        elif name == 'kubeadm':
            result = self.run(['kubeadm', 'version', '-o', 'short'], check=False)
            version = result.stdout.strip() if result.ok else ''
        else:
            result = self.run([name, '--version'], check=False)
            match = re.search(r'v?\d+\.\d+\.\d+\S*', result.stdout) if result.ok else None
            version = match.group(0) if match else ''
        return version.lstrip('v') or None

    def kubeadm_reset(self) -> CommandResult:
        return self.run(['kubeadm', 'reset', '-f'], check=False, timeout=300)

    def kubeadm_join(self, args: Sequence[str]) -> CommandResult:
        return self.run(['kubeadm', 'join', *args], check=False, timeout=600)

    # ------------------------------------------------------------------
    # Clone identity (golden images)
    # ------------------------------------------------------------------
    def regenerate_ssh_host_keys(self) -> bool:
        """Create fresh SSH host keys after the old ones were removed.

        Returns:
            bool: True if new keys were generated
        """
        result = self.run(
            ['dpkg-reconfigure', '-f', 'noninteractive', 'openssh-server'],
            check=False, env=APT_ENV,
        )
        if result.ok:
            return True
        return self.run(['ssh-keygen', '-A'], check=False).ok

    def regenerate_machine_id(self) -> bool:
        """Empty /etc/machine-id (and the dbus copy) and let systemd write a new one."""
        self.write_file('/etc/machine-id', '', mode=0o444)
        if self.path_exists('/var/lib/dbus/machine-id'):
            self.write_file('/var/lib/dbus/machine-id', '', mode=0o444)
        return self.run(['systemd-machine-id-setup'], check=False).ok

    def network_online(self, targets: Sequence[str] = ('8.8.8.8', '1.1.1.1')) -> bool:
        return any(
            self.run(['ping', '-c', '1', '-W', '1', target], check=False, timeout=5).ok
            for target in targets
        )
