"""
Error Types

Exception hierarchy shared by the reconciliation, allocation and
MTU-optimization services.
"""

from typing import Optional, Sequence


class FleetError(Exception):
    """Base class for all wgfleet errors."""


class NotFoundError(FleetError):
    """Unknown interface, peer, profile or file."""


class ValidationError(FleetError):
    """Malformed subnet, key, MTU or other rejected input."""


class DuplicateError(FleetError):
    """Uniqueness violation."""


class DuplicateInterfaceError(DuplicateError):
    pass


class DuplicateAddressError(DuplicateError):
    pass


class DuplicatePeerError(DuplicateError):
    pass


class DuplicateProfileError(DuplicateError):
    pass


class AddressSpaceExhausted(FleetError):
    """No free host address left in a subnet."""


class MalformedConfigError(FleetError):
    """Configuration text could not be parsed."""


class ExternalCommandError(FleetError):
    """An OS-level collaborator failed."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = ""
    ):
        """
        Initialize external command error.

        Args:
            message: Human readable summary
            command: Command line that failed, if any
            returncode: Process exit status, None when it never ran to completion
            stderr: Diagnostic text reported by the collaborator
        """
        super().__init__(message)
        self.command = list(command) if command else None
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if self.stderr:
            return f"{base}: {self.stderr.strip()}"
        return base


class CommandTimeoutError(ExternalCommandError):
    """An external command exceeded its timeout."""


class ProbeError(FleetError):
    """A single network probe failed."""
