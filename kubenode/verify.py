"""Read-only verification of a provisioned node.

Verification only observes. It never changes the host and never touches
checkpoints, so a checkpointed step whose effect was later undone shows up
here as a FAIL while ``kubenode run`` still skips it.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from . import payloads
from .engine.probe import StateProbe

logger = logging.getLogger("kubenode.verify")


class CheckStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    WARN = "WARN"


@dataclass
class CheckResult:
    section: str
    status: CheckStatus
    message: str


@dataclass
class VerificationReport:
    results: List[CheckResult] = field(default_factory=list)

    def add(self, section: str, status: CheckStatus, message: str) -> None:
        self.results.append(CheckResult(section, status, message))
        log = logger.error if status is CheckStatus.FAIL else (
            logger.warning if status is CheckStatus.WARN else logger.debug)
        log(f"[{status.value}] {section}: {message}")

    def count(self, status: CheckStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def counts(self) -> Dict[str, int]:
        return {status.value: self.count(status) for status in CheckStatus}

    @property
    def passed(self) -> bool:
        return self.count(CheckStatus.FAIL) == 0


class NodeVerifier:
    """Runs every verification check against the host."""

    def __init__(self, config, probe: StateProbe):
        self.config = config
        self.probe = probe
        self.host = probe.host

    def run(self) -> VerificationReport:
        report = VerificationReport()
        self.check_containerd(report)
        self.check_kubernetes(report)
        self.check_cni(report)
        if self.config.enable_monitoring:
            self.check_chrony(report)
            self.check_node_exporter(report)
            self.check_fluent_bit(report)
            self.check_log_config(report)
        self.check_kernel(report)
        return report

    def _check_service(self, report: VerificationReport, section: str, unit: str) -> bool:
        if not self.probe.unit_exists(unit):
            report.add(section, CheckStatus.FAIL, f"{unit} is not installed")
            return False
        if not self.probe.service_active(unit):
            report.add(section, CheckStatus.FAIL, f"{unit} is not active")
            return False
        report.add(section, CheckStatus.PASS, f"{unit} is active")
        return True

    def _check_port(self, report: VerificationReport, section: str, port: int, label: str,
                    listening: Optional[List[int]]) -> None:
        if listening is None:
            report.add(section, CheckStatus.WARN, f"Cannot list sockets; {label} port {port} not verified")
        elif port in listening:
            report.add(section, CheckStatus.PASS, f"{label} is listening on tcp/{port}")
        else:
            report.add(section, CheckStatus.FAIL, f"{label} is NOT listening on tcp/{port}")

    def check_containerd(self, report: VerificationReport) -> None:
        section = "Container runtime"
        if not self.probe.binary_present('containerd'):
            report.add(section, CheckStatus.FAIL, "containerd binary not found")
            return
        report.add(section, CheckStatus.PASS, "containerd binary exists")
        self._check_service(report, section, 'containerd.service')

        if not self.probe.binary_present('crictl', payloads.CRICTL_LOCATIONS):
            report.add(section, CheckStatus.WARN, "crictl not installed, cannot verify the CRI endpoint")
        elif self.host.runtime_ready(self.config.runtime_endpoint):
            report.add(section, CheckStatus.PASS, "crictl can talk to containerd (CRI runtime OK)")
        else:
            report.add(section, CheckStatus.FAIL, "crictl cannot talk to containerd")

    def check_kubernetes(self, report: VerificationReport) -> None:
        section = "Kubernetes components"
        for name in payloads.KUBERNETES_PACKAGES:
            if self.probe.binary_present(name):
                version = self.host.component_version(name) or "unknown version"
                report.add(section, CheckStatus.PASS, f"{name} installed ({version})")
            else:
                report.add(section, CheckStatus.FAIL, f"{name} not found")

        if self.probe.file_present('/etc/kubernetes/kubelet.conf'):
            report.add(section, CheckStatus.PASS, "kubelet.conf exists, node has joined")
        else:
            report.add(section, CheckStatus.WARN, "/etc/kubernetes/kubelet.conf not found, node may not be joined yet")

    def check_cni(self, report: VerificationReport) -> None:
        section = "CNI plugins"
        if not self.probe.file_present(payloads.CNI_BIN_DIR):
            report.add(section, CheckStatus.FAIL, f"{payloads.CNI_BIN_DIR} does not exist")
            return
        count = len(self.host.list_files(payloads.CNI_BIN_DIR))
        if count:
            report.add(section, CheckStatus.PASS, f"CNI binaries present in {payloads.CNI_BIN_DIR} ({count} files)")
        else:
            report.add(section, CheckStatus.FAIL, f"{payloads.CNI_BIN_DIR} is empty")

    def check_chrony(self, report: VerificationReport) -> None:
        section = "Time synchronization"
        if self.probe.unit_exists('chrony.service'):
            self._check_service(report, section, 'chrony.service')
        else:
            report.add(section, CheckStatus.WARN, "chrony not installed, time sync may rely on another service")

    def check_node_exporter(self, report: VerificationReport) -> None:
        section = "node_exporter"
        if self.probe.binary_present('node_exporter', (payloads.NODE_EXPORTER_BIN,)):
            report.add(section, CheckStatus.PASS, "node_exporter binary is installed")
        else:
            report.add(section, CheckStatus.FAIL, "node_exporter binary not found")
        if self._check_service(report, section, 'node_exporter.service'):
            self._check_port(report, section, self.config.node_exporter_port, "node_exporter",
                             self.host.listening_ports())

    def check_fluent_bit(self, report: VerificationReport) -> None:
        section = "Fluent Bit"
        if self.probe.binary_present('fluent-bit', payloads.FLUENT_BIT_LOCATIONS):
            report.add(section, CheckStatus.PASS, "fluent-bit binary installed")
        else:
            report.add(section, CheckStatus.FAIL, "fluent-bit binary not found")
        self._check_service(report, section, 'fluent-bit.service')

    def check_log_config(self, report: VerificationReport) -> None:
        section = "journald and logrotate"
        if self.probe.file_present(payloads.JOURNALD_DROPIN):
            report.add(section, CheckStatus.PASS, "journald drop-in present")
        else:
            report.add(section, CheckStatus.WARN, "journald drop-in missing, journald uses defaults")
        if self.probe.file_present(payloads.LOGROTATE_CONF):
            report.add(section, CheckStatus.PASS, f"logrotate config {payloads.LOGROTATE_CONF} found")
        else:
            report.add(section, CheckStatus.WARN, f"logrotate config {payloads.LOGROTATE_CONF} not found")

    def check_kernel(self, report: VerificationReport) -> None:
        section = "Kernel"
        if self.probe.swap_active():
            report.add(section, CheckStatus.FAIL, "swap is active")
        else:
            report.add(section, CheckStatus.PASS, "swap is disabled")
        forwarding = self.host.sysctl_get('net.ipv4.ip_forward')
        if forwarding == '1':
            report.add(section, CheckStatus.PASS, "IPv4 forwarding enabled")
        else:
            report.add(section, CheckStatus.FAIL, f"net.ipv4.ip_forward is {forwarding or 'unknown'}")


def verify_node(config, probe: StateProbe) -> VerificationReport:
    return NodeVerifier(config, probe).run()
