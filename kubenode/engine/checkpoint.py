"""Durable per-step completion markers.

One file per completed step, ``<step_name>.done``, holding an ISO-8601
timestamp. Presence of the file means the step completed; its content is
informational only. Markers are written to a temporary file and renamed
into place, and an unreadable or empty marker still counts as present.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger("kubenode.engine.checkpoint")

DEFAULT_CHECKPOINT_DIR = Path("/var/lib/k8s-node-bootstrap/checkpoints")
CHECKPOINT_SUFFIX = ".done"
STEP_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass
class Checkpoint:
    """A completed step as recorded on disk."""
    step_name: str
    completed_at: str


def validate_step_name(step_name: str) -> str:
    if not STEP_NAME_RE.match(step_name or ''):
        raise ValueError(f"Invalid step name: {step_name!r}")
    return step_name


class CheckpointStore:
    """Reads and writes step checkpoints under a fixed root directory."""

    def __init__(self, root: Union[str, Path] = DEFAULT_CHECKPOINT_DIR):
        self.root = Path(root)
        self.available = True

    def init(self) -> bool:
        """Create the checkpoint directory.

        Failure is logged and tolerated; the store then reports every step
        as pending, so the run re-executes everything instead of trusting
        state it cannot record.

        Returns:
            bool: True if the directory exists afterwards
        """
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.available = True
        except OSError as e:
            logger.warning(f"Cannot create checkpoint directory {self.root}: {e}")
            self.available = False
        return self.available

    def path_for(self, step_name: str) -> Path:
        return self.root / f"{validate_step_name(step_name)}{CHECKPOINT_SUFFIX}"

    def exists(self, step_name: str) -> bool:
        try:
            return self.path_for(step_name).is_file()
        except OSError:
            return False

    def completed_at(self, step_name: str) -> Optional[str]:
        """Timestamp stored in a checkpoint, 'unknown' if unreadable, None if absent."""
        path = self.path_for(step_name)
        if not path.is_file():
            return None
        try:
            content = path.read_text(encoding='utf-8').strip()
        except (OSError, UnicodeDecodeError):
            return "unknown"
        return content or "unknown"

    def mark(self, step_name: str, now: Optional[datetime] = None) -> bool:
        """Record a step as completed.

        Args:
            step_name: Name of the completed step
            now: Timestamp to record (defaults to the current local time)

        Returns:
            bool: True if the checkpoint was written
        """
        path = self.path_for(step_name)
        stamp = (now or datetime.now().astimezone()).isoformat(timespec='seconds')
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{step_name}.", dir=str(self.root))
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(stamp + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.warning(f"Could not write checkpoint {path}: {e}")
            return False
        logger.debug(f"Checkpoint marked: {step_name} ({stamp})")
        return True

    def clear(self, step_name: str) -> bool:
        """Delete a checkpoint so the step runs again.

        Returns:
            bool: True if a checkpoint was removed
        """
        try:
            self.path_for(step_name).unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Checkpoint cleared: {step_name}")
        return True

    def clear_all(self) -> int:
        cleared = 0
        for checkpoint in self.list():
            if self.clear(checkpoint.step_name):
                cleared += 1
        return cleared

    def list(self) -> List[Checkpoint]:
        if not self.root.is_dir():
            return []
        checkpoints = []
        for path in sorted(self.root.glob(f"*{CHECKPOINT_SUFFIX}")):
            name = path.name[:-len(CHECKPOINT_SUFFIX)]
            if not STEP_NAME_RE.match(name):
                continue
            checkpoints.append(Checkpoint(name, self.completed_at(name) or "unknown"))
        return checkpoints
