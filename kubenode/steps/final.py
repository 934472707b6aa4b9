"""Step 6: re-assert the runtime kernel state. Every failure is soft."""

import logging

from .. import payloads
from ..engine.executor import Step, StepContext

logger = logging.getLogger("kubenode.steps.final")


class FinalConfigStep(Step):
    name = "step6-final-config"
    description = "Applying final system configuration"

    def run(self, ctx: StepContext) -> None:
        ctx.host.swap_off()
        fstab = ctx.host.read_file(payloads.FSTAB)
        if fstab:
            updated = payloads.disable_swap_entries(fstab)
            if updated != fstab:
                try:
                    ctx.host.write_file(payloads.FSTAB, updated)
                except OSError as e:
                    ctx.warn(f"Could not update {payloads.FSTAB}: {e}")

        if not ctx.host.sysctl_reload(check=False).ok:
            ctx.warn("sysctl --system reported errors")

        for module in payloads.KERNEL_MODULES:
            if not ctx.host.load_module(module, check=False).ok:
                ctx.warn(f"Could not load kernel module {module}")

        if not ctx.probe.file_present(payloads.MODULES_LOAD_CONF):
            try:
                ctx.host.write_file(payloads.MODULES_LOAD_CONF, payloads.MODULES_LOAD)
            except OSError as e:
                ctx.warn(f"Could not write {payloads.MODULES_LOAD_CONF}: {e}")
        logger.info("Final system configuration completed")
