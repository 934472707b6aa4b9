"""Version specifier resolution and cross-component consistency checks."""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from ..errors import VersionNotFound

logger = logging.getLogger("kubenode.engine.versions")

WILDCARD_RE = re.compile(r"^\d+\.\d+$")
SPECIFIER_RE = re.compile(r"^\d+\.\d+(\.\d+)?$")


@dataclass(frozen=True)
class VersionSpecifier:
    """A requested version: exact (``1.28.3``) or minor wildcard (``1.28``)."""
    raw_string: str

    @classmethod
    def parse(cls, raw: str) -> 'VersionSpecifier':
        """Parse a user supplied specifier, accepting a leading 'v'.

        Raises:
            ValueError: If the string is neither MAJOR.MINOR nor MAJOR.MINOR.PATCH
        """
        cleaned = (raw or '').strip()
        if cleaned[:1] in ('v', 'V'):
            cleaned = cleaned[1:]
        if not SPECIFIER_RE.match(cleaned):
            raise ValueError(f"Invalid version specifier: {raw!r} (expected e.g. 1.28 or 1.28.3)")
        return cls(cleaned)

    @property
    def is_wildcard(self) -> bool:
        return bool(WILDCARD_RE.match(self.raw_string))

    @property
    def minor(self) -> str:
        return minor_of(self.raw_string)

    def __str__(self) -> str:
        return self.raw_string


def minor_of(version: str) -> str:
    """Return MAJOR.MINOR of a version string ('v1.28.5-1.1' -> '1.28')."""
    parts = version.lstrip('v').split('.')
    return '.'.join(parts[:2])


def upstream_version(package_version: str) -> str:
    """Strip a package revision suffix ('1.28.5-1.1' -> '1.28.5')."""
    return package_version.split('-', 1)[0]


def resolve(spec: VersionSpecifier, available: Sequence[str]) -> str:
    """Pick the concrete version to install.

    Args:
        spec: Requested version
        available: Available versions ordered newest first

    Returns:
        str: The matching entry of ``available``

    Raises:
        VersionNotFound: If nothing matches
    """
    if isinstance(spec, str):
        spec = VersionSpecifier.parse(spec)

    if spec.is_wildcard:
        prefix = spec.raw_string + '.'
        matches = [v for v in available if v.startswith(prefix)]
    else:
        exact = spec.raw_string
        matches = [v for v in available if v == exact or v.startswith(exact + '-')]

    if not matches:
        raise VersionNotFound(spec.raw_string, available)

    logger.debug(f"Resolved {spec.raw_string} -> {matches[0]}")
    return matches[0]


@dataclass
class VersionMismatch:
    """Components whose minor versions disagree."""
    versions: Dict[str, str]
    minors: Dict[str, str] = field(default_factory=dict)

    @property
    def message(self) -> str:
        detail = ', '.join(f"{name}: {version} (minor: {self.minors[name]})"
                           for name, version in self.versions.items())
        return f"Version mismatch detected! {detail}"


def check_consistency(components: Dict[str, Optional[str]]) -> Optional[VersionMismatch]:
    """Verify that all known component versions share one minor version.

    Components with an unknown version are ignored. A mismatch is returned,
    not raised: callers log it as a warning and carry on.
    """
    known = {name: version for name, version in components.items() if version}
    minors = {name: minor_of(version) for name, version in known.items()}
    if len(set(minors.values())) <= 1:
        return None
    return VersionMismatch(versions=known, minors=minors)

