"""Step 4: Kubernetes packages, crictl and kubelet configuration."""

import logging

from .. import payloads
from ..engine.executor import Step, StepContext
from ..engine.versions import VersionSpecifier, check_consistency, minor_of, resolve, upstream_version
from ..errors import FatalStepError
from .base import add_apt_repository, discard_download, download_archive, ensure_packages

logger = logging.getLogger("kubenode.steps.kubernetes")


class KubernetesStep(Step):
    name = "step4-kubernetes"
    description = "Installing Kubernetes (kubelet, kubeadm, kubectl)"

    def run(self, ctx: StepContext) -> None:
        spec = VersionSpecifier.parse(ctx.config.kubernetes_version)
        if all(ctx.probe.package_installed(pkg) for pkg in payloads.KUBERNETES_PACKAGES):
            logger.info("Kubernetes packages (kubelet, kubeadm, kubectl) are already installed - skipping installation")
            self.record_installed_version(ctx, spec)
        else:
            self.install_packages(ctx, spec)

        # Held on every run, not only right after a fresh install.
        ctx.host.apt_hold(payloads.KUBERNETES_PACKAGES)
        logger.info("Kubernetes packages held at their installed versions")

        mismatch = check_consistency({
            name: ctx.host.component_version(name) for name in payloads.KUBERNETES_PACKAGES
        })
        if mismatch:
            ctx.warn(mismatch.message)

        self.install_crictl(ctx)
        self.configure_kubelet(ctx)

        if ctx.probe.swap_active():
            raise FatalStepError("Swap is enabled! Kubernetes requires swap to be disabled.")

        ctx.host.daemon_reload()
        ctx.host.enable_service('kubelet')
        logger.info("kubelet service enabled")

    def record_installed_version(self, ctx: StepContext, spec: VersionSpecifier) -> None:
        installed = ctx.probe.package_version('kubeadm')
        if not installed:
            return
        version = upstream_version(installed)
        ctx.state['kubernetes_version'] = version
        logger.info(f"Detected installed Kubernetes version: {version}")
        if minor_of(version) != spec.minor:
            ctx.warn(f"Installed Kubernetes {version} does not match requested {spec}")

    def install_packages(self, ctx: StepContext, spec: VersionSpecifier) -> None:
        ensure_packages(ctx, payloads.KUBERNETES_REPO_DEPENDENCIES)

        if not ctx.probe.file_present(payloads.KUBERNETES_SOURCES):
            logger.info(f"Adding Kubernetes v{spec.minor} repository...")
            add_apt_repository(
                ctx,
                payloads.KUBERNETES_KEY_URL.format(minor=spec.minor),
                payloads.KUBERNETES_KEYRING,
                payloads.KUBERNETES_SOURCES,
                payloads.KUBERNETES_REPO.format(keyring=payloads.KUBERNETES_KEYRING, minor=spec.minor),
            )
        else:
            logger.info("Kubernetes repository already configured, skipping...")
            ctx.host.apt_update(check=False)

        if spec.is_wildcard:
            logger.info(f"Minor version specified ({spec}), selecting latest patch")
        version = resolve(spec, ctx.host.available_versions('kubeadm'))
        logger.info(f"Found version: {version}")
        ctx.state['kubernetes_version'] = upstream_version(version)

        ctx.host.apt_install([f'{pkg}={version}' for pkg in payloads.KUBERNETES_PACKAGES])
        logger.info("Kubernetes components installed")

    def install_crictl(self, ctx: StepContext) -> None:
        config = ctx.config
        if ctx.probe.binary_present('crictl', payloads.CRICTL_LOCATIONS):
            logger.info("crictl is already installed - skipping installation")
        else:
            url = payloads.CRICTL_URL.format(version=config.crictl_version, arch=config.arch)
            archive = download_archive(ctx, url, f'crictl-{config.crictl_version}.tar.gz')
            if archive is None:
                ctx.warn(f"Failed to download a valid crictl archive from {url}")
            else:
                ctx.host.make_dirs('/usr/local/bin')
                ctx.host.extract_archive(str(archive), '/usr/local/bin', members=['crictl'])
                ctx.host.chmod(payloads.CRICTL_LOCATIONS[0], 0o755)
                discard_download(ctx, archive)
                logger.info("crictl installed")

        if not ctx.probe.file_present(payloads.CRICTL_CONFIG):
            ctx.host.write_file(payloads.CRICTL_CONFIG, payloads.CRICTL_YAML.format(endpoint=config.runtime_endpoint))
            logger.info("crictl configured to use containerd socket")

    def configure_kubelet(self, ctx: StepContext) -> None:
        endpoint = ctx.config.runtime_endpoint
        ctx.host.make_dirs('/var/lib/kubelet')
        ctx.host.write_file(payloads.KUBELET_DEFAULTS, payloads.KUBELET_DEFAULTS_CONTENT.format(endpoint=endpoint))
        ctx.host.make_dirs(payloads.KUBERNETES_MANIFESTS)
        ctx.host.write_file(payloads.KUBELET_CONFIG, payloads.KUBELET_CONFIG_CONTENT.format(endpoint=endpoint))
        logger.info("Kubelet configured")
