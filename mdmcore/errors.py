"""
Error taxonomy for the command engine.

Callers react by class:
    not-found class (CommandNotFound, DeviceNotFound, OrphanResponse)
        the device may retry, or an operator must investigate
    AmbiguousIdentity
        data-integrity problem upstream, never resolved by picking one
    StoreUnavailable
        persistence failure, surfaced as-is, no retries here

Every error raised out of the dispatcher carries the stage it failed in.
"""

from __future__ import annotations

from typing import Optional


class MDMError(Exception):
    """Base class for all command engine exceptions."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"{self.stage}: {message}"
        return message


class CommandNotFound(MDMError):
    """Raised when a command uuid has no metadata in the command store."""


class DeviceNotFound(MDMError):
    """Raised when no device record exists for a UDID."""


class OrphanResponse(MDMError):
    """Raised when no enrolled device correlates with a device report."""


class AmbiguousIdentity(MDMError):
    """Raised when a device report matches more than one device record."""


class StoreUnavailable(MDMError):
    """Raised when the backing store fails to read or persist."""
