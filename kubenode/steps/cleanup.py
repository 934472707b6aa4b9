"""Step 7: package cache, old logs and temporary files."""

import logging

from .. import payloads
from ..engine.executor import Step, StepContext

logger = logging.getLogger("kubenode.steps.cleanup")


class CleanupStep(Step):
    name = "step7-cleanup"
    description = "Cleaning up system"

    def run(self, ctx: StepContext) -> None:
        for args in (('autoremove', '-y'), ('autoclean', '-y'), ('clean',)):
            if not ctx.host.apt_get(*args, check=False).ok:
                ctx.warn(f"apt-get {' '.join(args)} failed")

        # Log trimming and temp removal are silent best effort.
        removed = ctx.host.prune_files(
            '/var/log', ['*.log'],
            older_than_days=payloads.LOG_RETENTION_DAYS,
            exclude=payloads.PRESERVED_LOG_PATHS,
        )
        removed += ctx.host.prune_files('/var/log', ['*.gz'], exclude=payloads.PRESERVED_LOG_PATHS)
        ctx.host.journal_vacuum()
        logger.info(f"Removed {removed} old log file(s), Kubernetes logs preserved")

        ctx.host.prune_files(str(ctx.config.download_dir), payloads.TEMP_ARTIFACT_PATTERNS, recursive=False)
        ctx.host.prune_files('/tmp', ['*'], older_than_days=1, recursive=False)
        ctx.host.prune_files('/var/tmp', ['*'])
        logger.info("Cleanup completed")
