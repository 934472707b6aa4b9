"""Checkpointed sequential step execution.

Each step runs at most once per checkpoint lifetime. A step whose
checkpoint exists is skipped without running its action. A step that
raises is fatal: its checkpoint is not written and no later step runs,
unless the step is optional, in which case the failure is logged and the
run continues. A step that returns normally is checkpointed.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .checkpoint import CheckpointStore

logger = logging.getLogger("kubenode.engine.executor")


@dataclass
class StepContext:
    """Per-run state handed to every step action."""
    config: Any
    host: Any
    probe: Any
    fetcher: Any
    warnings: List[str] = field(default_factory=list)
    state: Dict[str, Any] = field(default_factory=dict)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep

    def warn(self, message: str) -> None:
        """Record a soft failure; the step still counts as successful."""
        logger.warning(message)
        self.warnings.append(message)


class Step(ABC):
    """A named unit of provisioning work."""

    name: str = ""
    description: str = ""

    def __init__(self, optional: bool = False):
        self.optional = optional

    @abstractmethod
    def run(self, ctx: StepContext) -> None:
        """Perform the step. Raising any exception fails the step."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class StepStatus(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_OPTIONAL = "failed-optional"


@dataclass
class StepOutcome:
    name: str
    status: StepStatus
    completed_at: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    """Result of a full run, in execution order."""
    outcomes: List[StepOutcome] = field(default_factory=list)
    failed_step: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.failed_step is None

    def outcome(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    @property
    def warnings(self) -> List[str]:
        return [w for outcome in self.outcomes for w in outcome.warnings]


class StepExecutor:
    """Runs steps in order against a checkpoint store."""

    def __init__(self, store: CheckpointStore):
        self.store = store

    def run_step(self, step: Step, ctx: StepContext) -> StepOutcome:
        """Run one step unless its checkpoint already exists.

        Args:
            step: Step to run
            ctx: Shared run context

        Returns:
            StepOutcome: What happened to the step
        """
        if self.store.exists(step.name):
            completed_at = self.store.completed_at(step.name) or "unknown"
            logger.info(f"Step '{step.name}' already completed (at {completed_at}) - skipping")
            return StepOutcome(step.name, StepStatus.SKIPPED, completed_at=completed_at)

        logger.info(f"Running step: {step.name} - {step.description}")
        warnings_before = len(ctx.warnings)
        try:
            step.run(ctx)
        except Exception as e:
            step_warnings = ctx.warnings[warnings_before:]
            if step.optional:
                logger.warning(f"Optional step '{step.name}' failed, continuing: {e}")
                return StepOutcome(step.name, StepStatus.FAILED_OPTIONAL, error=str(e), warnings=step_warnings)
            logger.error(f"FATAL: step '{step.name}' failed: {e}")
            logger.debug(f"Step '{step.name}' traceback", exc_info=True)
            return StepOutcome(step.name, StepStatus.FAILED, error=str(e), warnings=step_warnings)

        step_warnings = ctx.warnings[warnings_before:]
        if step_warnings:
            logger.info(f"Step '{step.name}' completed with {len(step_warnings)} warning(s)")
        self.store.mark(step.name)
        logger.info(f"Step '{step.name}' completed")
        return StepOutcome(
            step.name,
            StepStatus.COMPLETED,
            completed_at=self.store.completed_at(step.name),
            warnings=step_warnings,
        )

    def run_all(self, steps: Sequence[Step], ctx: StepContext) -> RunReport:
        """Run steps strictly in order, stopping at the first fatal failure."""
        report = RunReport()
        for step in steps:
            outcome = self.run_step(step, ctx)
            report.outcomes.append(outcome)
            if outcome.status is StepStatus.FAILED:
                report.failed_step = step.name
                break
        return report
