"""Idempotent, resumable step-execution engine."""

from .checkpoint import Checkpoint, CheckpointStore, DEFAULT_CHECKPOINT_DIR
from .executor import RunReport, Step, StepContext, StepExecutor, StepOutcome, StepStatus
from .fetcher import Fetcher, validate_archive
from .probe import FirewallRule, StateProbe
from .readiness import require_ready, wait_until_ready
from .versions import VersionMismatch, VersionSpecifier, check_consistency, resolve

__all__ = [
    'Checkpoint',
    'CheckpointStore',
    'DEFAULT_CHECKPOINT_DIR',
    'RunReport',
    'Step',
    'StepContext',
    'StepExecutor',
    'StepOutcome',
    'StepStatus',
    'Fetcher',
    'validate_archive',
    'FirewallRule',
    'StateProbe',
    'require_ready',
    'wait_until_ready',
    'VersionMismatch',
    'VersionSpecifier',
    'check_consistency',
    'resolve',
]
