"""Read-only idempotence predicates over the host.

Every predicate is side-effect free and may be called any number of times.
Steps ask the probe before each mutation so that a re-run after a partial
failure converges on the same state instead of duplicating work.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ..system.host import HostSystem

logger = logging.getLogger("kubenode.engine.probe")

INSTALLED_STATUS = "install ok installed"


@dataclass(frozen=True)
class FirewallRule:
    """A firewall allow rule such as ``10250/tcp`` with an optional comment."""
    port: str
    proto: str = "tcp"
    comment: Optional[str] = None

    @property
    def signature(self) -> str:
        return f"{self.port}/{self.proto}"


class StateProbe:
    """Answers "is this already in place?" questions for steps."""

    def __init__(self, host: HostSystem):
        self.host = host

    def package_installed(self, name: str) -> bool:
        """True only for fully installed packages, not merely unpacked or staged."""
        return self.host.package_status(name) == INSTALLED_STATUS

    def package_version(self, name: str) -> Optional[str]:
        if not self.package_installed(name):
            return None
        return self.host.package_version(name)

    def service_active(self, name: str) -> bool:
        return self.host.service_active(name)

    def service_enabled(self, name: str) -> bool:
        return self.host.service_enabled(name)

    def unit_exists(self, name: str) -> bool:
        return self.host.unit_exists(name)

    def binary_present(self, name: str, fixed_locations: Sequence[str] = ()) -> bool:
        """True if ``name`` is on PATH or exists at one of ``fixed_locations``."""
        if self.host.which(name):
            return True
        return any(self.host.path_exists(path) for path in fixed_locations)

    def firewall_rule_present(self, signature: str, comment: Optional[str] = None) -> bool:
        """Check the firewall status listing for an allow rule.

        Args:
            signature: Rule target as listed by ufw, e.g. ``10250/tcp``
            comment: If given, the rule must also carry this comment

        Returns:
            bool: True if a matching rule is listed
        """
        for line in self.host.firewall_status().splitlines():
            fields = line.split()
            if not fields or fields[0] != signature:
                continue
            if comment is None or comment in line:
                return True
        return False

    def file_present(self, path: str) -> bool:
        return self.host.path_exists(path)

    def socket_present(self, path: str) -> bool:
        return self.host.is_socket(path)

    def process_running(self, pattern: str) -> bool:
        return self.host.process_running(pattern)

    def swap_active(self) -> bool:
        return self.host.swap_active()

    def user_exists(self, name: str) -> bool:
        return self.host.user_exists(name)
