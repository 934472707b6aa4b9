"""Step 3: containerd runtime and CNI plugins."""

import logging

from .. import payloads
from ..engine.executor import Step, StepContext
from ..engine.readiness import require_ready
from ..errors import FatalStepError
from .base import add_apt_repository, discard_download, download_archive, ensure_packages

logger = logging.getLogger("kubenode.steps.containerd")


class ContainerdStep(Step):
    name = "step3-containerd"
    description = "Installing containerd"

    def run(self, ctx: StepContext) -> None:
        self.install(ctx)
        for binary in ('containerd', 'runc'):
            if not ctx.probe.binary_present(binary):
                raise FatalStepError(f"{binary} binary not found after installation")
        logger.info("containerd and runc verified")

        self.configure(ctx)
        self.start(ctx)
        self.install_cni_plugins(ctx)

    def install(self, ctx: StepContext) -> None:
        probe = ctx.probe
        if (probe.package_installed('containerd.io')
                and probe.binary_present('containerd') and probe.binary_present('runc')):
            logger.info("containerd is already installed - skipping installation")
            return

        ensure_packages(ctx, payloads.CONTAINERD_DEPENDENCIES)
        if not probe.file_present(payloads.DOCKER_SOURCES):
            codename = ctx.host.os_release().get('VERSION_CODENAME') or 'jammy'
            add_apt_repository(
                ctx,
                payloads.DOCKER_GPG_URL,
                payloads.DOCKER_KEYRING,
                payloads.DOCKER_SOURCES,
                payloads.DOCKER_REPO.format(
                    arch=ctx.config.arch, keyring=payloads.DOCKER_KEYRING, codename=codename,
                ),
            )
        else:
            logger.info("Docker repository already configured, skipping...")
            ctx.host.apt_update(check=False)
        ensure_packages(ctx, ['containerd.io'], update=False)

    def configure(self, ctx: StepContext) -> None:
        """Regenerate config.toml from scratch with the systemd cgroup driver."""
        ctx.host.make_dirs('/etc/containerd')
        if ctx.probe.service_active('containerd'):
            logger.info("Stopping containerd for configuration update...")
            ctx.host.stop_service('containerd', check=False)

        default = ctx.host.containerd_default_config()
        if default:
            content = default.replace('SystemdCgroup = false', 'SystemdCgroup = true')
        else:
            ctx.warn("containerd config default failed, writing minimal configuration")
            content = payloads.CONTAINERD_MINIMAL_CONFIG.format(socket=ctx.config.containerd_socket)
        ctx.host.write_file(payloads.CONTAINERD_CONFIG, content)

        if not ctx.host.containerd_config_valid():
            ctx.warn("containerd configuration validation failed, continuing")

    def start(self, ctx: StepContext) -> None:
        config = ctx.config
        ctx.host.daemon_reload()
        ctx.host.enable_service('containerd')
        ctx.host.start_service('containerd')
        require_ready(
            lambda: ctx.probe.service_active('containerd'),
            config.service_start_timeout, 1, "containerd service",
            clock=ctx.clock, sleep=ctx.sleep,
        )

        ctx.host.restart_service('containerd')
        require_ready(
            lambda: ctx.probe.socket_present(config.containerd_socket),
            config.service_start_timeout, 1, f"containerd socket {config.containerd_socket}",
            clock=ctx.clock, sleep=ctx.sleep,
        )

        if ctx.probe.binary_present('crictl', payloads.CRICTL_LOCATIONS):
            if ctx.host.runtime_ready(config.runtime_endpoint):
                logger.info("crictl can connect to containerd")
            else:
                logger.info("crictl cannot connect to containerd yet; the CRI endpoint is gated before images are pulled")

    def install_cni_plugins(self, ctx: StepContext) -> None:
        config = ctx.config
        ctx.host.make_dirs(payloads.CNI_BIN_DIR)
        url = payloads.CNI_URL.format(version=config.cni_version, arch=config.arch)
        archive = download_archive(ctx, url, 'cni-plugins.tgz')
        if archive is None:
            ctx.warn(f"Failed to download a valid CNI plugins archive from {url}")
            return
        ctx.host.extract_archive(str(archive), payloads.CNI_BIN_DIR)
        discard_download(ctx, archive)
        logger.info(f"CNI plugins {config.cni_version} installed")
