"""Host-facing collaborators: command execution and the host system adapter."""

from .commands import CommandResult, run_command
from .host import HostSystem

__all__ = [
    'CommandResult',
    'run_command',
    'HostSystem',
]
