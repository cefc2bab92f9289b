"""Turn failure taxonomy.

Only ConfigurationError, EmptyGeneration and MalformedResponse ever reach the
player. TransportUnavailable is absorbed by the orchestrator (it moves on to
the next channel) and ValidationDowngrade never leaves the reconciler.
"""

from __future__ import annotations


class TurnError(RuntimeError):
    """Base class for everything that can go wrong inside a turn."""

    retryable = False


class ConfigurationError(TurnError):
    """No usable generation channel and no endpoint credentials."""


class TransportUnavailable(TurnError):
    """One specific channel could not service the request."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason


class EmptyGeneration(TurnError):
    """The channel answered but produced no usable output."""

    retryable = True


class MalformedResponse(TurnError):
    """Every parse stage failed to recover a reply."""

    retryable = True


class ValidationDowngrade(TurnError):
    """A parsed field failed validation; the previous value is kept."""

    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"rejected {field}={value!r}")
        self.field = field
        self.value = value


class TurnInProgress(TurnError):
    """A turn is already running for this session."""
