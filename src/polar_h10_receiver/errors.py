"""Exception taxonomy for the Polar H10 receiver.

Terminal session failures (``ConnectError``, ``ProtocolMismatch``,
``ConfigError``) derive from ``SessionError`` and move a session to FAILED.
``DecodeAnomaly`` and ``SinkError`` are always recovered where they occur.
"""

from __future__ import annotations


class PolarError(Exception):
    """Base class for every error raised by this package."""


class SessionError(PolarError):
    """A failure that ends a protocol session."""


class ConnectError(SessionError):
    """The BLE link could not be established or was lost."""


class ProtocolMismatch(SessionError):
    """A required PMD characteristic is absent from the peripheral."""


class ConfigError(SessionError):
    """A control-point write was rejected, failed or was not acknowledged."""


class DecodeAnomaly(PolarError):
    """A notification could not be decoded.

    Attributes:
        reason: Short machine-friendly tag (``"empty"``, ``"unknown_type"``,
            ``"short_header"``, ``"bad_resolution"``) used for drop counters.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class SinkError(PolarError):
    """An output channel could not be opened or rejected a sample."""


class InvalidTransition(PolarError):
    """A session event is not allowed in the current state."""
