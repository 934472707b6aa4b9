"""Bounded polling until a dependency answers."""

import logging
import time
from typing import Callable

from ..errors import ReadinessTimeout

logger = logging.getLogger("kubenode.engine.readiness")


def wait_until_ready(
    probe: Callable[[], bool],
    timeout: float,
    poll_interval: float,
    description: str = "dependency",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``probe`` until it returns True or ``timeout`` elapses.

    A probe that raises counts as not ready. The wait never gives up before
    the deadline and never sleeps past it.

    Args:
        probe: Zero-argument readiness check
        timeout: Total seconds to wait
        poll_interval: Seconds between checks
        description: Name used in log messages
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function (injectable for tests)

    Returns:
        bool: True if ready, False on timeout
    """
    start = clock()
    deadline = start + timeout
    checks = 0
    while True:
        checks += 1
        try:
            if probe():
                logger.debug(f"{description} ready after {clock() - start:.1f}s ({checks} checks)")
                return True
        except Exception as e:
            logger.debug(f"{description} not ready yet: {e}")

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning(f"Timed out after {timeout}s waiting for {description}")
            return False
        if checks % 10 == 0:
            logger.info(f"Still waiting for {description}... ({clock() - start:.0f}s/{timeout}s)")
        sleep(min(poll_interval, remaining))


def require_ready(
    probe: Callable[[], bool],
    timeout: float,
    poll_interval: float,
    description: str = "dependency",
    **kwargs,
) -> None:
    """Like wait_until_ready, but a timeout is fatal.

    Raises:
        ReadinessTimeout: If the probe never succeeds within the timeout
    """
    if not wait_until_ready(probe, timeout, poll_interval, description, **kwargs):
        raise ReadinessTimeout(f"{description} not ready after {timeout}s")
