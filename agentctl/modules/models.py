"""
Data models for agent provisioning.
"""
import getpass
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


def default_user() -> str:
    """Return the principal the current process runs as."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ''


@dataclass(frozen=True)
class Credentials:
    """SSH credentials for one node.

    When neither ``password`` nor ``key_file`` is set the connection manager
    falls back to the keys found in the default key directory, then to an
    empty password.
    """
    user: str = field(default_factory=default_user)
    password: Optional[str] = field(default=None, repr=False)
    key_file: Optional[str] = None


@dataclass(frozen=True)
class NodeDescriptor:
    """One logical service instance.

    Frozen so it can be used as a dictionary key; equality is by value.
    Unset ports fall back to ``ssh.default_port`` and ``service.default_port``.
    """
    ip: str
    work_dir: str
    ssh_port: Optional[int] = None
    service_port: Optional[int] = None
    credentials: Credentials = field(default_factory=Credentials)

    def __str__(self) -> str:
        return f"{self.ip}:{self.work_dir}"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one local or remote command."""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class CheckItem:
    """A preflight finding: what is wrong and what to do about it."""
    message: str
    suggestion: str = ''


class TransferPlan(str, Enum):
    """How a single regular file is shipped to a node."""
    BATCHED = 'batched'
    STREAM = 'stream'
    CHUNKED = 'chunked'


class TakeoverState(str, Enum):
    """Phases of the fleet takeover state machine."""
    STOPPING = 'stopping'
    STARTING = 'starting'
    POLLING = 'polling'
    CONVERGED = 'converged'
    FAILED = 'failed'
    TIMEOUT = 'timeout'
