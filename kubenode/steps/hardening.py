"""Step 1: OS hardening (CIS Benchmark Level 1 inspired baseline)."""

import logging
import re

from .. import payloads
from ..engine.executor import Step, StepContext
from .base import ensure_packages, retire_unit, write_if_changed

logger = logging.getLogger("kubenode.steps.hardening")


class HardeningStep(Step):
    name = "step1-hardening"
    description = "Starting system hardening (CIS Benchmark Level 1)"

    def run(self, ctx: StepContext) -> None:
        logger.info("Updating system packages...")
        ctx.host.apt_update()
        ctx.host.apt_get('upgrade', '-y')
        ensure_packages(ctx, payloads.SECURITY_PACKAGES, update=False)

        self.configure_firewall(ctx)
        ctx.host.write_file(payloads.UNATTENDED_UPGRADES_CONF, payloads.UNATTENDED_UPGRADES)
        self.harden_ssh(ctx)
        self.apply_kernel_parameters(ctx)
        self.fix_permissions(ctx)

        logger.info("Disabling unnecessary services...")
        for unit in payloads.UNNEEDED_UNITS:
            retire_unit(ctx, unit)

        self.configure_audit(ctx)
        self.configure_password_policy(ctx)
        self.configure_hostname(ctx)

        if not ctx.host.set_timezone(ctx.config.timezone):
            logger.info("timedatectl unavailable, timezone written to /etc/timezone")
        logger.info(f"Timezone set to {ctx.config.timezone}")

    def configure_firewall(self, ctx: StepContext) -> None:
        """Default-deny inbound, then open only the node's ports.

        All allow rules, SSH included, are in place before the firewall is
        enabled.
        """
        active = 'Status: active' in ctx.host.firewall_status()
        if not active:
            ctx.host.firewall_default('deny', 'incoming')
            ctx.host.firewall_default('allow', 'outgoing')
        for rule in payloads.firewall_rules(ctx.config):
            if ctx.probe.firewall_rule_present(rule.signature):
                logger.info(f"Firewall rule {rule.signature} already exists, skipping...")
                continue
            ctx.host.firewall_allow(rule.signature, rule.comment)
        if not active:
            ctx.host.firewall_enable()
        else:
            logger.info("UFW is already enabled, skipping basic configuration...")

    def harden_ssh(self, ctx: StepContext) -> None:
        content = ctx.host.read_file(payloads.SSHD_CONFIG)
        if content is None:
            logger.info(f"{payloads.SSHD_CONFIG} not found, skipping SSH hardening")
            return
        write_if_changed(
            ctx, payloads.SSHD_CONFIG, payloads.apply_sshd_directives(content),
            mode=0o600, backup=True,
        )
        ctx.host.chmod(payloads.SSHD_CONFIG, 0o600)
        for unit in ('sshd', 'ssh'):
            if ctx.host.restart_service(unit, check=False).ok:
                logger.info("SSH security configured")
                return
        ctx.warn("Could not restart the SSH daemon; new settings apply on next restart")

    def apply_kernel_parameters(self, ctx: StepContext) -> None:
        ctx.host.write_file(payloads.CIS_SYSCTL_CONF, payloads.CIS_SYSCTL)
        ctx.host.sysctl_reload()
        for key, value in payloads.ENFORCED_SYSCTLS.items():
            if ctx.host.sysctl_get(key) == value:
                continue
            ctx.host.sysctl_set(key, value)
            if ctx.host.sysctl_get(key) != value:
                ctx.warn(f"{key} is not set to {value}")

    def fix_permissions(self, ctx: StepContext) -> None:
        for path, mode in payloads.CRITICAL_FILE_MODES.items():
            if not ctx.host.path_exists(path):
                continue
            try:
                ctx.host.chmod(path, mode)
            except OSError as e:
                logger.debug(f"chmod {oct(mode)} {path} failed: {e}")

    def configure_audit(self, ctx: StepContext) -> None:
        if not ctx.probe.binary_present('auditd', ('/sbin/auditd', '/usr/sbin/auditd')):
            ctx.host.apt_install(payloads.AUDIT_PACKAGES)
        ctx.host.enable_service('auditd')
        if not ctx.host.start_service('auditd', check=False).ok:
            ctx.warn("auditd is enabled but did not start")

    def configure_password_policy(self, ctx: StepContext) -> None:
        ensure_packages(ctx, ['libpam-pwquality'])
        pam = ctx.host.read_file(payloads.PAM_COMMON_PASSWORD)
        if pam is None:
            ctx.warn(f"{payloads.PAM_COMMON_PASSWORD} not found, creating it")
            ctx.host.write_file(payloads.PAM_COMMON_PASSWORD, payloads.PAM_COMMON_PASSWORD_DEFAULT)
        else:
            write_if_changed(ctx, payloads.PAM_COMMON_PASSWORD, payloads.ensure_pam_pwquality(pam), backup=True)

        pwquality = ctx.host.read_file(payloads.PWQUALITY_CONF)
        if pwquality is not None:
            write_if_changed(
                ctx, payloads.PWQUALITY_CONF,
                payloads.set_conf_values(pwquality, payloads.PWQUALITY_SETTINGS),
            )

    def configure_hostname(self, ctx: StepContext) -> None:
        hostname = ctx.config.node_hostname
        ctx.host.set_hostname(hostname)
        hosts = ctx.host.read_file('/etc/hosts')
        if hosts is not None and not re.search(
            rf'^127\.0\.1\.1\s+.*\b{re.escape(hostname)}\b', hosts, re.MULTILINE
        ):
            ctx.host.write_file('/etc/hosts', payloads.set_hosts_entry(hosts, hostname))
        logger.info(f"Hostname configured: {hostname}")
