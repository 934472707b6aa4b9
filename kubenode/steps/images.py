"""Step 4b: pre-load control-plane images into containerd.

Every failure here is fatal.
"""

import logging
from typing import List, Optional

from .. import payloads
from ..engine.executor import Step, StepContext
from ..engine.readiness import require_ready
from ..engine.versions import upstream_version
from ..errors import CommandError, FatalStepError

logger = logging.getLogger("kubenode.steps.images")


class PreloadImagesStep(Step):
    name = "step4b-preload-images"
    description = "Pre-loading Kubernetes container images (MANDATORY)"

    def run(self, ctx: StepContext) -> None:
        config = ctx.config
        endpoint = config.runtime_endpoint

        if not ctx.probe.service_active('containerd'):
            logger.warning("containerd service is not active, attempting to start it...")
            ctx.host.start_service('containerd')
            require_ready(
                lambda: ctx.probe.service_active('containerd'),
                config.service_start_timeout, 1, "containerd service",
                clock=ctx.clock, sleep=ctx.sleep,
            )
        logger.info("containerd service is active")

        if not ctx.probe.socket_present(config.containerd_socket):
            raise FatalStepError(f"containerd socket not found at {config.containerd_socket}")

        require_ready(
            lambda: ctx.host.runtime_ready(endpoint),
            config.runtime_ready_timeout, config.runtime_poll_interval, "containerd CRI endpoint",
            clock=ctx.clock, sleep=ctx.sleep,
        )
        logger.info("containerd is ready and responding")

        version = self.kubernetes_version(ctx)
        images = self.image_list(ctx, version)
        for index, image in enumerate(images, 1):
            logger.info(f"[{index}/{len(images)}] Pulling: {image}")
            try:
                ctx.host.pull_image(endpoint, image)
            except CommandError as e:
                raise FatalStepError(f"Failed to pull image {image}: {e}") from e
        logger.info(f"Successfully pre-loaded {len(images)} Kubernetes image(s)")

        stored = [image for image in ctx.host.list_images(endpoint)
                  if image.startswith(payloads.KUBERNETES_REGISTRIES)]
        if stored:
            logger.info(f"Verified {len(stored)} Kubernetes image(s) in containerd storage")
        else:
            logger.warning("Could not verify images in containerd storage")

    def kubernetes_version(self, ctx: StepContext) -> Optional[str]:
        """Version resolved earlier in this run, else the installed kubeadm's."""
        version = ctx.state.get('kubernetes_version')
        if version:
            return version
        installed = ctx.probe.package_version('kubeadm')
        if installed:
            version = upstream_version(installed)
            logger.info(f"Using installed kubeadm version {version}")
            return version
        return None

    def image_list(self, ctx: StepContext, version: Optional[str]) -> List[str]:
        images = ctx.host.kubeadm_image_list(f'v{version}') if version else []
        if not images:
            images = ctx.host.kubeadm_image_list()
            if images:
                ctx.warn("Using default kubeadm image list (version-specific listing failed)")
        if not images:
            raise FatalStepError("Failed to get Kubernetes image list from kubeadm")
        return images
