"""Custom exception hierarchy for the FamBoard package."""

from __future__ import annotations


class FamBoardError(Exception):
    """Base class for all FamBoard specific errors."""


class InsufficientBalanceError(FamBoardError):
    """Raised when a debit would take a profile balance below zero."""


class InvalidStateError(FamBoardError):
    """Raised when a redemption transition is attempted from a non-pending state."""


class ForbiddenError(FamBoardError, PermissionError):
    """Raised when the caller's role or family does not permit an operation."""


class NotFoundError(FamBoardError, LookupError):
    """Raised when a referenced row does not exist (or is not visible)."""


class TransientIOError(FamBoardError):
    """Raised when a remote write fails for reasons unrelated to its content."""


class ValidationError(FamBoardError, ValueError):
    """Raised when an operation receives malformed input."""


class ChannelDroppedError(TransientIOError):
    """Raised by a realtime subscription whose channel was disconnected."""
