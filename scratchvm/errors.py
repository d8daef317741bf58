"""Project-specific exception types."""

from __future__ import annotations


class ScratchVMError(RuntimeError):
    """Base error for domain-level scratchvm failures."""


class FetchError(ScratchVMError):
    """Raised when a base image cannot be downloaded or fails integrity checks."""


class DiskError(ScratchVMError):
    """Raised when an instance overlay disk cannot be created."""


class ValidationError(ScratchVMError, ValueError):
    """Raised for malformed or incomplete configuration input."""


class PolicyApplyError(ScratchVMError):
    """Raised when the packet-filter subsystem rejects a firewall policy."""


class LaunchError(ScratchVMError):
    """Raised when the VM process cannot be started."""
