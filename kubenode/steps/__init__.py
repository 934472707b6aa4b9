"""The step catalogue, in execution order.

Step names are persisted as checkpoint file names; renaming a step makes
hosts that already completed it run it again.
"""

import logging
from typing import List

from ..engine.executor import Step
from .cleanup import CleanupStep
from .containerd import ContainerdStep
from .final import FinalConfigStep
from .hardening import HardeningStep
from .identifiers import UniqueIdentifiersStep
from .images import PreloadImagesStep
from .kernel import KernelStep
from .kubernetes import KubernetesStep
from .monitoring import MonitoringStep

logger = logging.getLogger("kubenode.steps")

STEP_CLASSES = [
    UniqueIdentifiersStep,
    HardeningStep,
    KernelStep,
    ContainerdStep,
    KubernetesStep,
    PreloadImagesStep,
    MonitoringStep,
    FinalConfigStep,
    CleanupStep,
]
STEP_NAMES = [cls.name for cls in STEP_CLASSES]


def build_steps(config) -> List[Step]:
    """Instantiate the catalogue for a configuration.

    The monitoring step is left out when monitoring is disabled, and steps
    named in ``config.optional_steps`` are marked optional.
    """
    unknown = set(config.optional_steps) - set(STEP_NAMES)
    if unknown:
        logger.warning(f"Ignoring unknown optional steps: {', '.join(sorted(unknown))}")

    steps = []
    for cls in STEP_CLASSES:
        if cls is MonitoringStep and not config.enable_monitoring:
            logger.info(f"Monitoring disabled, {cls.name} will not run")
            continue
        steps.append(cls(optional=cls.name in config.optional_steps))
    return steps


__all__ = ['STEP_CLASSES', 'STEP_NAMES', 'build_steps'] + [cls.__name__ for cls in STEP_CLASSES]
