"""Golden image support.

A node provisioned by ``kubenode run`` can be captured as a VM template.
Every clone of that template boots with the template's SSH host keys,
machine-id, hostname and kubeadm state, all of which must be unique per
node. ``GoldenImage.install`` puts systemd units into the template that run
the first-boot tasks below once on each clone; every task disables its own
unit when it succeeds.
"""

import logging
import shlex
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from . import payloads
from .engine.readiness import wait_until_ready
from .errors import GoldenImageError
from .identity import primary_interface, read_macs
from .system.host import HostSystem

logger = logging.getLogger("kubenode.golden_image")

DEFAULT_KUBENODE_BIN = '/usr/local/bin/kubenode'
INTERFACE_WAIT = 30
NETWORK_WAIT = 120
RUNTIME_WAIT = 60


def hostname_for_mac(mac: str) -> str:
    """Hostname derived from a MAC address, e.g. ``node-52-54-00-AA-BB-01``."""
    return 'node-' + mac.replace(':', '-').upper()


def parse_join_command(content: str) -> List[str]:
    """Arguments following ``kubeadm join`` in the join command file.

    Comment and blank lines are ignored and backslash continuations are
    joined. The command is never handed to a shell.

    Raises:
        GoldenImageError: If the file holds no command, more than one, or
            something other than ``kubeadm join``
    """
    lines = [
        line.strip() for line in content.replace('\\\n', ' ').splitlines()
        if line.strip() and not line.lstrip().startswith('#')
    ]
    if not lines:
        raise GoldenImageError(f"Join command file is empty: {payloads.JOIN_COMMAND_FILE}")
    if len(lines) > 1:
        raise GoldenImageError(f"Join command file holds {len(lines)} commands, expected one")
    try:
        argv = shlex.split(lines[0])
    except ValueError as e:
        raise GoldenImageError(f"Cannot parse join command: {e}")
    # The arguments carry a bootstrap token, so they are never logged.
    if argv[:2] != ['kubeadm', 'join']:
        raise GoldenImageError(f"Expected a 'kubeadm join' command, found '{' '.join(argv[:2])}'")
    return argv[2:]


class GoldenImage:
    """Installs the first-boot bundle and runs its tasks on a clone."""

    def __init__(
        self,
        host: HostSystem,
        sys_root: Union[str, Path] = "/",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.sys_root = sys_root
        self.clock = clock
        self.sleep = sleep

    def install(self, kubenode_bin: Optional[str] = None) -> List[str]:
        """Install the first-boot units, the netplan template and the join placeholder.

        Args:
            kubenode_bin: Executable the units run; defaults to the one on PATH

        Returns:
            list: Warnings for units that could not be enabled

        Raises:
            GoldenImageError: If a bundle file is missing afterwards
        """
        host = self.host
        warnings = []
        kubenode_bin = kubenode_bin or host.which('kubenode') or DEFAULT_KUBENODE_BIN

        host.make_dirs(payloads.GOLDEN_IMAGE_DIR)
        host.write_file(payloads.NETPLAN_TEMPLATE, payloads.NETPLAN_DHCP, mode=0o600)
        logger.info(f"Netplan template installed: {payloads.NETPLAN_TEMPLATE}")

        for unit, template in payloads.FIRSTBOOT_UNITS.items():
            host.write_file(f'{payloads.SYSTEMD_UNIT_DIR}/{unit}', template.format(kubenode=kubenode_bin))
            logger.info(f"Installed service: {unit}")
        host.daemon_reload()
        for unit in payloads.FIRSTBOOT_ENABLED_UNITS:
            if host.enable_service(unit, check=False).ok:
                logger.info(f"Enabled: {unit}")
            else:
                warnings.append(f"Failed to enable {unit}")
        logger.info(f"{payloads.KUBEADM_JOIN_UNIT} is available but not enabled (enable manually when needed)")

        if host.path_exists(payloads.JOIN_COMMAND_FILE):
            logger.info(f"Join command file already exists: {payloads.JOIN_COMMAND_FILE}")
        else:
            host.write_file(payloads.JOIN_COMMAND_FILE, payloads.JOIN_COMMAND_PLACEHOLDER, mode=0o600)
            logger.info(f"Join command placeholder created: {payloads.JOIN_COMMAND_FILE}")

        expected = [payloads.NETPLAN_TEMPLATE] + [
            f'{payloads.SYSTEMD_UNIT_DIR}/{unit}' for unit in payloads.FIRSTBOOT_UNITS
        ]
        missing = [path for path in expected if not host.path_exists(path)]
        if missing:
            raise GoldenImageError(f"Installation incomplete, missing: {', '.join(missing)}")

        for warning in warnings:
            logger.warning(warning)
        logger.info(f"Golden image bundle installed to {payloads.GOLDEN_IMAGE_DIR}")
        return warnings

    def reset(self) -> List[str]:
        """Give a fresh clone its own SSH host keys, network state and machine-id.

        Returns:
            list: Warnings for sub-tasks that failed softly
        """
        host = self.host
        warnings = []

        removed = host.prune_files('/etc/ssh', ['ssh_host_*'], recursive=False)
        logger.info(f"Removed {removed} SSH host key file(s)")
        if not host.regenerate_ssh_host_keys():
            warnings.append("SSH host key generation failed")
        if not any(host.restart_service(unit, check=False).ok for unit in ('ssh', 'sshd')):
            warnings.append("SSH service restart failed")

        if host.which('kubeadm'):
            logger.info("Kubernetes detected - resetting kubeadm")
            if not host.kubeadm_reset().ok:
                warnings.append("kubeadm reset reported errors (expected if the template never joined)")
            for path in payloads.KUBEADM_STATE_PATHS:
                host.remove(path)
            host.prune_files(payloads.CNI_CONF_DIR, ['*'])
        else:
            logger.info("Kubernetes not detected, skipping kubeadm reset")

        host.prune_files(payloads.UDEV_RULES_DIR, ['70-persistent-*.rules'], recursive=False)
        template = host.read_file(payloads.NETPLAN_TEMPLATE)
        if template is None:
            warnings.append(
                f"Default netplan template not found at {payloads.NETPLAN_TEMPLATE}, "
                "keeping the existing netplan configuration"
            )
        else:
            host.prune_files(payloads.NETPLAN_DIR, ['*.yaml'], recursive=False)
            host.write_file(payloads.NETPLAN_DEFAULT, template, mode=0o600)
            logger.info("Default netplan configuration applied")

        if not host.regenerate_machine_id():
            warnings.append("systemd-machine-id-setup failed, a new machine-id is generated on next boot")

        self._finish(payloads.FIRSTBOOT_RESET_UNIT, warnings)
        return warnings

    def assign_hostname(self) -> str:
        """Name the clone after the MAC address of its primary interface.

        Returns:
            str: The hostname that was set

        Raises:
            GoldenImageError: If no network interface appears
        """
        host = self.host
        macs: Dict[str, str] = {}

        def interfaces_present() -> bool:
            macs.update(read_macs(self.sys_root))
            return bool(macs)

        wait_until_ready(
            interfaces_present, INTERFACE_WAIT, 1, "network interfaces",
            clock=self.clock, sleep=self.sleep,
        )
        iface = primary_interface(macs)
        if iface is None:
            raise GoldenImageError("No network interface found")
        hostname = hostname_for_mac(macs[iface])
        logger.info(f"Primary NIC {iface} ({macs[iface]}), hostname {hostname}")

        if not host.set_hostname(hostname):
            logger.warning(f"hostnamectl failed, {hostname} written to /etc/hostname for the next boot")
        hosts = host.read_file('/etc/hosts')
        if hosts is None:
            logger.warning("/etc/hosts not found, skipping update")
        else:
            host.write_file('/etc/hosts.bak', hosts)
            host.write_file('/etc/hosts', payloads.set_hosts_entry(hosts, hostname))

        self._finish(payloads.FIRSTBOOT_HOSTNAME_UNIT)
        return hostname

    def join(self) -> bool:
        """Run the kubeadm join command placed in the join command file.

        Returns:
            bool: True if the node joined, False if there was nothing to do

        Raises:
            GoldenImageError: If the command file is unusable or the join fails
        """
        host = self.host
        if not host.which('kubeadm'):
            logger.warning("kubeadm not found, skipping join")
            return False
        content = host.read_file(payloads.JOIN_COMMAND_FILE)
        if content is None:
            logger.info(f"No join command found at {payloads.JOIN_COMMAND_FILE}, skipping join")
            return False
        args = parse_join_command(content)

        if not wait_until_ready(host.network_online, NETWORK_WAIT, 2, "network connectivity",
                                clock=self.clock, sleep=self.sleep):
            logger.warning("Network connectivity check timed out, proceeding anyway")
        # kubelet only becomes active after the join writes its configuration.
        if not wait_until_ready(lambda: host.service_active('containerd'), RUNTIME_WAIT, 2,
                                "container runtime", clock=self.clock, sleep=self.sleep):
            logger.warning("Container runtime check timed out, proceeding anyway")

        result = host.kubeadm_join(args)
        if not result.ok:
            raise GoldenImageError(
                f"kubeadm join failed with status {result.returncode}: {result.stderr.strip()}"
            )
        logger.info("kubeadm join completed successfully")

        self._finish(payloads.KUBEADM_JOIN_UNIT)
        host.remove(payloads.JOIN_COMMAND_FILE)
        return True

    def _finish(self, unit: str, warnings: Optional[List[str]] = None) -> None:
        if not self.host.disable_service(unit, check=False).ok:
            logger.warning(f"Failed to disable {unit} (may already be disabled)")
        for warning in warnings or []:
            logger.warning(warning)
