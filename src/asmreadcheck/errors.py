"""Exception types raised by asmreadcheck.

Configuration problems are detected before any input is opened. Input problems
are either global (the whole run aborts) or scoped to a single contig, in which
case the driver records a failure for that contig and continues.
"""

from __future__ import annotations

from typing import Optional


class ConfigError(ValueError):
    """Raised when scan settings are inconsistent or out of range."""


class InputError(RuntimeError):
    """Raised when an input cannot be read.

    ``contig`` is set when the problem only affects one contig.
    """

    def __init__(self, message: str, *, contig: Optional[str] = None) -> None:
        super().__init__(message)
        self.contig = contig


class GlobalInputError(InputError):
    """Raised when the inputs are malformed as a whole (e.g. unindexed BAM)."""


class ResourceLimitError(RuntimeError):
    """Raised when a contig would not fit in the configured memory budget."""

    def __init__(self, message: str, *, contig: str, required_bytes: int, limit_bytes: int) -> None:
        super().__init__(message)
        self.contig = contig
        self.required_bytes = int(required_bytes)
        self.limit_bytes = int(limit_bytes)


class ScanCancelled(RuntimeError):
    """Raised inside a contig task when the run was cancelled."""
