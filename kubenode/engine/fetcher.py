"""Bounded-retry downloads and archive integrity checks.

``Fetcher.fetch`` never raises on a failed download: it reports success as
a bool and leaves the fatal-or-soft decision to the caller. A download is
streamed into a ``.part`` sibling and renamed onto the destination only
once complete, so a failed attempt never leaves a file that looks like a
finished download.
"""

import logging
import os
import tarfile
import time
from pathlib import Path
from typing import Callable, Optional, Union

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

logger = logging.getLogger("kubenode.engine.fetcher")

CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = 2.0
DEFAULT_TIMEOUT = 60

PathLike = Union[str, Path]


def validate_archive(path: PathLike) -> bool:
    """True if ``path`` is a gzip-compressed tar archive readable end to end."""
    try:
        with tarfile.open(str(path), 'r:gz') as tar:
            for member in tar:
                if member.isfile():
                    source = tar.extractfile(member)
                    if source is not None:
                        while source.read(CHUNK_SIZE):
                            pass
        return True
    except (tarfile.TarError, OSError, EOFError) as e:
        logger.debug(f"Archive {path} failed validation: {e}")
        return False


class Fetcher:
    """Downloads URLs to local files with a bounded number of attempts."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_backoff: float = DEFAULT_BACKOFF,
        timeout: int = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session or requests.Session()
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.timeout = timeout
        self.sleep = sleep

    def fetch(
        self,
        url: str,
        dest: PathLike,
        max_attempts: Optional[int] = None,
        base_backoff: Optional[float] = None,
    ) -> bool:
        """Download ``url`` to ``dest``.

        After failed attempt n the fetcher sleeps ``n * base_backoff`` seconds
        before trying again; nothing is slept after the last attempt.

        Args:
            url: Source URL
            dest: Destination file path
            max_attempts: Overrides the fetcher's attempt limit
            base_backoff: Overrides the fetcher's backoff unit in seconds

        Returns:
            bool: True if ``dest`` now holds the complete download

        Raises:
            ValueError: If the attempt limit is below 1
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {attempts}")
        backoff = self.base_backoff if base_backoff is None else base_backoff

        def log_retry(retry_state):
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{attempts} failed for {url}, retrying... "
                f"({retry_state.outcome.exception()})"
            )

        retryer = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_incrementing(start=backoff, increment=backoff),
            retry=retry_if_exception_type((requests.RequestException, OSError)),
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            retryer(self._download, url, Path(dest))
        except (requests.RequestException, OSError) as e:
            logger.warning(f"Giving up on {url} after {attempts} attempts: {e}")
            return False
        logger.info(f"Downloaded {url} -> {dest}")
        return True

    def _download(self, url: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + '.part')
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(part, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            os.replace(part, dest)
        except BaseException:
            if part.exists():
                part.unlink()
            raise

    def fetch_archive(
        self,
        url: str,
        dest: PathLike,
        cache_dir: Optional[PathLike] = None,
    ) -> Optional[Path]:
        """Fetch a tar.gz and hand it over only if it passes validation.

        A valid copy named after the URL's last path segment in ``cache_dir``
        is used instead of the network. Invalid downloads are deleted.

        Returns:
            Path: Location of a validated archive, or None
        """
        if cache_dir:
            cached = Path(cache_dir) / url.rstrip('/').rsplit('/', 1)[-1]
            if cached.is_file():
                if validate_archive(cached):
                    logger.info(f"Using cached artifact {cached}")
                    return cached
                logger.warning(f"Cached artifact {cached} is not a valid archive, downloading instead")

        dest = Path(dest)
        if not self.fetch(url, dest):
            return None
        if not validate_archive(dest):
            logger.warning(f"Downloaded archive {dest} is not valid, removing it")
            dest.unlink(missing_ok=True)
            return None
        return dest
