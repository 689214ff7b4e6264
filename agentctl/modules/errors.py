"""
Exceptions raised by the provisioning engine.
"""
from typing import List, Optional

from .models import CommandResult


class ProvisionError(Exception):
    """Base exception for provisioning errors."""
    pass


class NodeConnectionError(ProvisionError):
    """A node could not be reached or refused our credentials."""
    pass


class PackageFormatError(ProvisionError):
    """The package uses a payload compression or container we do not read."""
    pass


class PackageReadError(ProvisionError):
    """The package is truncated or its headers are corrupt."""
    pass


class TransferError(ProvisionError):
    """One or more file or chunk transfers failed.

    All failures of a parallel batch are collected before this is raised.
    """

    def __init__(self, message: str, errors: Optional[List[BaseException]] = None):
        self.errors = list(errors or [])
        if self.errors:
            details = '; '.join(str(e) for e in self.errors)
            message = f"{message}: {details}"
        super().__init__(message)


class RemoteCommandError(ProvisionError):
    """A shell command exited with a non-zero status."""

    def __init__(self, message: str, node=None, command: str = '', result: Optional[CommandResult] = None):
        self.node = node
        self.command = command
        self.result = result
        stderr = result.stderr.strip() if result else ''
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class WorkDirNotEmptyError(ProvisionError):
    """The work directory holds files and force-clean was not requested."""
    pass


class TakeoverError(ProvisionError):
    """Base exception for takeover failures."""
    pass


class TakeoverTimeoutError(TakeoverError):
    """The fleet did not converge within the poll budget."""
    pass


class TakeoverFailedError(TakeoverError):
    """The takeover task graph finished in a failed state."""
    pass


class ManagementApiError(ProvisionError):
    """A management API request failed or returned an error envelope."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[int] = None):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class DagFailedError(ProvisionError):
    """A maintenance task graph finished in the failed state."""
    pass
