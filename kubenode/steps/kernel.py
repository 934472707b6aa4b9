"""Step 2: kernel modules, sysctls and swap."""

import logging

from .. import payloads
from ..engine.executor import Step, StepContext
from .base import write_if_changed

logger = logging.getLogger("kubenode.steps.kernel")


class KernelStep(Step):
    name = "step2-kernel"
    description = "Configuring kernel parameters for Kubernetes"

    def run(self, ctx: StepContext) -> None:
        for module in payloads.KERNEL_MODULES:
            ctx.host.load_module(module)
        ctx.host.write_file(payloads.MODULES_LOAD_CONF, payloads.MODULES_LOAD)

        ctx.host.write_file(payloads.K8S_SYSCTL_CONF, payloads.K8S_SYSCTL)
        ctx.host.sysctl_reload()
        logger.info("Sysctl parameters configured and applied")

        disable_swap(ctx)
        if ctx.probe.swap_active():
            ctx.warn("Some swap devices are still active")
        else:
            logger.info("All swap devices disabled")


def disable_swap(ctx: StepContext) -> None:
    """Turn swap off now and keep it off across reboots."""
    ctx.host.swap_off()
    fstab = ctx.host.read_file(payloads.FSTAB)
    if fstab:
        write_if_changed(ctx, payloads.FSTAB, payloads.disable_swap_entries(fstab), backup=True)

    ctx.host.write_file(payloads.SWAP_TARGET_OVERRIDE, payloads.SWAP_UNIT_OVERRIDE)
    ctx.host.mask_service('swap.target', check=False)

    if any(ctx.host.path_exists(path) for path in payloads.SYSTEMD_SWAP_UNITS):
        ctx.host.stop_service('systemd-swap', check=False)
        ctx.host.disable_service('systemd-swap', check=False)
        ctx.host.write_file(payloads.SYSTEMD_SWAP_OVERRIDE, payloads.SWAP_UNIT_OVERRIDE)
