"""Data model shared by the scanner, decoder, session and sinks."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional

from .errors import SessionError


class SignalType(IntEnum):
    """Measurement type, valued as the leading byte of a PMD data frame."""

    ECG = 0x00
    ACC = 0x02


@dataclass(frozen=True)
class PeripheralHandle:
    """A discovered strap, created on its first matching advertisement.

    Equality and hashing use ``address`` only. ``device`` keeps the backend
    object (bleak ``BLEDevice``) so the client can connect without a rescan.
    """

    address: str
    advertised_name: str
    first_seen: float = field(default_factory=time.time, compare=False)
    device: Any = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return f"{self.advertised_name} [{self.address}]"


@dataclass(frozen=True)
class RawNotification:
    data: bytes
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SampleFrame:
    """One sample: a single ECG value, or the x, y, z accelerometer values."""

    signal_type: SignalType
    values: tuple[int, ...]


@dataclass(frozen=True)
class SampleBatch:
    """Frames decoded from one notification, in byte-offset order."""

    signal_type: SignalType
    frames: tuple[SampleFrame, ...]
    received_at: float = 0.0

    def __len__(self) -> int:
        return len(self.frames)


class SessionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering_services"
    CONFIGURING = "configuring"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DISCONNECTED, SessionState.FAILED)


class SessionEvent(Enum):
    START_SCAN = "start_scan"
    STOP_SCAN = "stop_scan"
    CONNECT = "connect"
    LINK_ESTABLISHED = "link_established"
    LINK_FAILED = "link_failed"
    CONTROL_CHAR_FOUND = "control_char_found"
    REQUIRED_CHAR_MISSING = "required_char_missing"
    WRITE_ACKED = "write_acked"
    WRITE_FAILED = "write_failed"
    NOTIFICATION = "notification"
    LINK_LOST = "link_lost"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class StateChange:
    """Observable session transition, delivered to session listeners."""

    previous: SessionState
    current: SessionState
    event: SessionEvent
    failure: Optional[SessionError] = None


@dataclass(frozen=True)
class ChannelSpec:
    """Description of one output channel, handed to ``SampleSink.open_channel``."""

    name: str
    signal_type: SignalType
    stream_type: str
    channel_count: int
    nominal_rate_hz: float
    sample_format: str = "float32"
    source_id: str = ""
    labels: tuple[str, ...] = ()
    unit: Optional[str] = None
