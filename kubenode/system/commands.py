"""External command execution."""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..errors import CommandError

logger = logging.getLogger("kubenode.system.commands")

DEFAULT_TIMEOUT = 600


@dataclass
class CommandResult:
    """Outcome of a finished external command."""
    cmd: List[str]
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    cmd: Sequence[str],
    check: bool = True,
    timeout: int = DEFAULT_TIMEOUT,
    env: Optional[Dict[str, str]] = None,
    input_text: Optional[str] = None,
) -> CommandResult:
    """Run a command and wait for it to exit.

    Args:
        cmd: Command and arguments (never passed through a shell)
        check: Raise CommandError on a non-zero exit status
        timeout: Seconds before the process is killed
        env: Extra environment variables merged over the current environment
        input_text: Optional text written to the process stdin

    Returns:
        CommandResult: exit status and captured output. A missing executable
        reports status 127, a timeout reports status 124.

    Raises:
        CommandError: If the command fails and check is True
    """
    cmd = [str(part) for part in cmd]
    run_env = None
    if env:
        run_env = dict(os.environ)
        run_env.update(env)

    logger.debug(f"Running: {' '.join(cmd)}")
    start_time = time.time()
    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=run_env,
            input=input_text,
        )
        result = CommandResult(cmd, completed.returncode, completed.stdout, completed.stderr)
    except FileNotFoundError as e:
        result = CommandResult(cmd, 127, '', str(e))
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or '')
        result = CommandResult(cmd, 124, stdout, f"timed out after {timeout}s")

    duration = time.time() - start_time
    logger.debug(f"Exit {result.returncode} after {duration:.2f}s: {cmd[0]}")

    if check and not result.ok:
        raise CommandError(cmd, result.returncode, result.stdout, result.stderr)
    return result
