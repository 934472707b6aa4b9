"""Step 0: node uniqueness."""

import logging
from pathlib import Path
from typing import Union

from .. import payloads
from ..engine.executor import Step, StepContext
from ..identity import read_identity

logger = logging.getLogger("kubenode.steps.identifiers")


class UniqueIdentifiersStep(Step):
    name = "step0-unique-identifiers"
    description = "Recording node identity (product UUID, MAC addresses)"

    def __init__(self, optional: bool = False, sys_root: Union[str, Path] = "/"):
        super().__init__(optional)
        self.sys_root = sys_root

    def run(self, ctx: StepContext) -> None:
        if not ctx.probe.binary_present('uuidgen'):
            logger.info("Installing uuid-runtime package...")
            if not ctx.host.apt_update(check=False).ok:
                ctx.warn("apt-get update failed, installing uuid-runtime from the existing index")
            ctx.host.apt_install(['uuid-runtime'])

        identity = read_identity(self.sys_root)
        for warning in identity.warnings:
            ctx.warn(f"Node identity: {warning}")
        ctx.host.write_file(payloads.NODE_IDENTITY_FILE, identity.to_json())
        ctx.state['node_identity'] = identity
        if identity.node_id:
            logger.info(f"Node ID (deterministic): {identity.node_id}")
