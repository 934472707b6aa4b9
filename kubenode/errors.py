"""Exception hierarchy for node provisioning.

Anything raised out of a step action is fatal for that step. Soft failures
never raise; steps record them with ``StepContext.warn`` instead.
"""


class KubenodeError(Exception):
    """Base class for all kubenode errors."""
    pass


class FatalStepError(KubenodeError):
    """A step hit a condition it cannot recover from."""
    pass


class PreconditionError(FatalStepError):
    """The host does not satisfy a requirement for running the bootstrap."""
    pass


class VersionNotFound(FatalStepError):
    """No available version matches the requested specifier."""

    def __init__(self, spec: str, available=None):
        self.spec = spec
        self.available = list(available or [])
        shown = ', '.join(self.available[:10]) or 'none'
        super().__init__(f"Version {spec} not found (available: {shown})")


class FetchError(FatalStepError):
    """A mandatory download failed or produced an invalid artifact."""
    pass


class ReadinessTimeout(FatalStepError):
    """A dependency did not become ready within its timeout."""
    pass


class GoldenImageError(KubenodeError):
    """A golden image bundle or first-boot task could not complete."""
    pass


class CommandError(KubenodeError):
    """An external command exited non-zero while ``check=True``."""

    def __init__(self, cmd, returncode: int, stdout: str = '', stderr: str = ''):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"Command failed with status {returncode}: {' '.join(self.cmd)}"
        if stderr.strip():
            message += f"\n{stderr.strip()}"
        super().__init__(message)
