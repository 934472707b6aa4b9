"""Helpers shared by the provisioning steps."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from ..engine.executor import StepContext
from ..engine.readiness import require_ready
from ..errors import FetchError

logger = logging.getLogger("kubenode.steps")


def ensure_packages(ctx: StepContext, packages: Sequence[str], update: bool = True) -> List[str]:
    """Install whichever of ``packages`` are not fully installed yet.

    Returns:
        list: Packages that had to be installed
    """
    missing = [pkg for pkg in packages if not ctx.probe.package_installed(pkg)]
    if not missing:
        logger.info(f"Packages already installed, skipping: {', '.join(packages)}")
        return []
    logger.info(f"Installing missing packages: {', '.join(missing)}")
    if update:
        ctx.host.apt_update()
    ctx.host.apt_install(missing)
    return missing


def retire_unit(ctx: StepContext, unit: str) -> None:
    """Stop, disable and mask a unit if it exists; failures are soft."""
    if not ctx.probe.unit_exists(unit):
        return
    ctx.host.stop_service(unit, check=False)
    ctx.host.disable_service(unit, check=False)
    if ctx.host.mask_service(unit, check=False).ok:
        logger.info(f"{unit} stopped, disabled, and masked")
    else:
        ctx.warn(f"Could not mask {unit}")


def download_archive(ctx: StepContext, url: str, filename: str) -> Optional[Path]:
    """Fetch and validate a release archive into the download directory."""
    return ctx.fetcher.fetch_archive(
        url,
        Path(ctx.config.download_dir) / filename,
        cache_dir=ctx.config.artifact_cache_dir,
    )


def discard_download(ctx: StepContext, archive: Path) -> None:
    """Delete a downloaded archive; cached artifacts are kept."""
    if archive.parent == Path(ctx.config.download_dir):
        ctx.host.remove(str(archive))


def add_apt_repository(
    ctx: StepContext,
    key_url: str,
    keyring: str,
    sources_path: str,
    sources_line: str,
) -> None:
    """Register a signed apt repository and refresh the package index.

    Raises:
        FetchError: If the signing key cannot be downloaded
    """
    key_path = Path(ctx.config.download_dir) / (Path(keyring).stem + '.key')
    if not ctx.fetcher.fetch(str(key_url), key_path):
        raise FetchError(f"Failed to download repository key {key_url}")
    ctx.host.make_dirs(str(Path(keyring).parent))
    try:
        ctx.host.gpg_dearmor(str(key_path), keyring)
    finally:
        ctx.host.remove(str(key_path))
    ctx.host.write_file(sources_path, sources_line)
    logger.info(f"Added apt repository {sources_path}")
    ctx.host.apt_update()


def write_if_changed(ctx: StepContext, path: str, content: str, mode: int = 0o644, backup: bool = False) -> bool:
    """Write a file only when its content differs.

    Args:
        ctx: Step context
        path: File to write
        content: Desired content
        mode: File mode
        backup: Keep the previous version as ``<path>.bak`` (never overwritten)

    Returns:
        bool: True if the file was written
    """
    current = ctx.host.read_file(path)
    if current == content:
        return False
    if backup and current is not None and not ctx.host.path_exists(path + '.bak'):
        ctx.host.write_file(path + '.bak', current, mode=mode)
    ctx.host.write_file(path, content, mode=mode)
    return True


def ensure_service(
    ctx: StepContext,
    name: str,
    unit_path: Optional[str] = None,
    unit_content: Optional[str] = None,
    restart: bool = False,
) -> None:
    """Bring a systemd service to enabled and running, then wait until it is active.

    The unit file, the enablement and the running state are each checked
    on their own, so a run that stopped half way finishes the remaining
    sub-actions instead of trusting that an installed binary means a
    working service.

    Args:
        ctx: Step context
        name: Service name
        unit_path: Unit file to manage, if the service ships without one
        unit_content: Desired unit file content
        restart: Restart an already running service (its configuration changed)

    Raises:
        ReadinessTimeout: If the service is not active within ``service_start_timeout``
    """
    if unit_path is not None and write_if_changed(ctx, unit_path, unit_content):
        ctx.host.daemon_reload()
        restart = True

    if not ctx.probe.service_enabled(name):
        ctx.host.enable_service(name)
    if not ctx.probe.service_active(name):
        ctx.host.start_service(name)
    elif restart:
        ctx.host.restart_service(name)
    else:
        logger.info(f"{name} already enabled and running")

    require_ready(
        lambda: ctx.probe.service_active(name),
        ctx.config.service_start_timeout, 1, f"{name} service",
        clock=ctx.clock, sleep=ctx.sleep,
    )
