"""Step 5: node-level monitoring (journald, logrotate, chrony, node_exporter, Fluent Bit)."""

import logging

from .. import payloads
from ..engine.executor import Step, StepContext
from ..errors import FatalStepError, FetchError
from .base import (
    add_apt_repository,
    discard_download,
    download_archive,
    ensure_packages,
    ensure_service,
    write_if_changed,
)

logger = logging.getLogger("kubenode.steps.monitoring")


class MonitoringStep(Step):
    name = "step5-monitoring"
    description = "Installing monitoring components"

    def run(self, ctx: StepContext) -> None:
        # Stale repository files break every later apt-get update.
        ctx.host.remove(payloads.FLUENT_BIT_STALE_SOURCES)

        self.configure_logs(ctx)
        self.install_chrony(ctx)
        self.install_node_exporter(ctx)
        self.install_fluent_bit(ctx)

    def configure_logs(self, ctx: StepContext) -> None:
        ctx.host.write_file(payloads.JOURNALD_DROPIN, payloads.JOURNALD_CONF)
        if ctx.host.restart_service('systemd-journald', check=False).ok:
            logger.info("journald configuration updated")
        else:
            ctx.warn("systemd-journald restart failed; the drop-in applies after reboot")
        ctx.host.write_file(payloads.LOGROTATE_CONF, payloads.LOGROTATE)

    def install_chrony(self, ctx: StepContext) -> None:
        ensure_packages(ctx, ['chrony'])
        changed = write_if_changed(ctx, payloads.CHRONY_CONF, payloads.CHRONY)
        ensure_service(ctx, 'chrony', restart=changed)
        logger.info("chrony service enabled and started")

    def install_node_exporter(self, ctx: StepContext) -> None:
        config = ctx.config
        if not ctx.probe.user_exists('node_exporter'):
            ctx.host.add_system_user('node_exporter')

        version = config.node_exporter_version
        if ctx.probe.file_present(payloads.NODE_EXPORTER_BIN) and ctx.probe.binary_present('node_exporter'):
            logger.info("node_exporter binary already installed, skipping download...")
        else:
            url = payloads.NODE_EXPORTER_URL.format(version=version, arch=config.arch)
            archive = download_archive(ctx, url, f'node_exporter-{version}.linux-{config.arch}.tar.gz')
            if archive is None:
                raise FetchError(f"Failed to download node_exporter from {url}")
            ctx.host.extract_archive(str(archive), '/usr/local/bin', members=['node_exporter'], strip_components=1)
            discard_download(ctx, archive)
        ctx.host.chown(payloads.NODE_EXPORTER_BIN, 'node_exporter')
        ctx.host.chmod(payloads.NODE_EXPORTER_BIN, 0o755)

        ensure_service(
            ctx, 'node_exporter', payloads.NODE_EXPORTER_UNIT,
            payloads.NODE_EXPORTER_SERVICE.format(port=config.node_exporter_port),
        )
        logger.info(f"node_exporter {version} enabled and started")

    def install_fluent_bit(self, ctx: StepContext) -> None:
        if ctx.probe.binary_present('fluent-bit', payloads.FLUENT_BIT_LOCATIONS):
            logger.info("Fluent Bit already installed, skipping package installation...")
        else:
            self.install_fluent_bit_package(ctx)

        opt_binary = payloads.FLUENT_BIT_LOCATIONS[1]
        if ctx.host.path_exists(opt_binary) and not ctx.host.path_exists('/usr/bin/fluent-bit'):
            ctx.host.symlink(opt_binary, '/usr/bin/fluent-bit')

        binary = ctx.host.which('fluent-bit') or next(
            (path for path in payloads.FLUENT_BIT_LOCATIONS if ctx.host.path_exists(path)), None
        )
        if not binary:
            raise FatalStepError("fluent-bit binary not found after installation")
        logger.info(f"Found fluent-bit binary at: {binary}")

        config = ctx.config
        changed = [
            write_if_changed(
                ctx, payloads.FLUENT_BIT_CONF,
                payloads.FLUENT_BIT_CONFIG.format(host=config.fluent_bit_forward_host, port=config.fluent_bit_port),
            ),
            write_if_changed(ctx, payloads.FLUENT_BIT_PARSERS, payloads.FLUENT_BIT_PARSERS_CONFIG),
        ]
        ensure_service(
            ctx, 'fluent-bit', payloads.FLUENT_BIT_UNIT,
            payloads.FLUENT_BIT_SERVICE.format(binary=binary),
            restart=any(changed),
        )
        logger.info("Fluent Bit service enabled and started")

    def install_fluent_bit_package(self, ctx: StepContext) -> None:
        ensure_packages(ctx, ['gpg', 'lsb-release'])
        release = ctx.host.os_release()
        codename = release.get('VERSION_CODENAME')
        if not codename:
            raise FatalStepError("Failed to detect OS codename for the Fluent Bit repository")
        distro = 'ubuntu' if release.get('ID') == 'ubuntu' else 'debian'
        sources_line = payloads.FLUENT_BIT_REPO.format(
            keyring=payloads.FLUENT_BIT_KEYRING, distro=distro, codename=codename,
        )

        existing = ctx.host.read_file(payloads.FLUENT_BIT_SOURCES)
        if existing is not None and existing.strip() != sources_line.strip():
            ctx.warn("Fluent Bit repository file appears malformed, recreating it")
            ctx.host.remove(payloads.FLUENT_BIT_SOURCES)
            existing = None
        if existing is None:
            add_apt_repository(
                ctx, payloads.FLUENT_BIT_KEY_URL, payloads.FLUENT_BIT_KEYRING,
                payloads.FLUENT_BIT_SOURCES, sources_line,
            )
        ensure_packages(ctx, ['fluent-bit'], update=existing is not None)
