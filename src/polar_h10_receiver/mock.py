"""Synthetic Polar H10 for running the pipeline without a radio.

``MockPolarClient`` implements the subset of the ``BleakClient`` surface that
``ProtocolSession`` uses. Once the data characteristic is subscribed, it emits
PMD frames built with the encoders below: a synthetic ECG trace (a sinusoidal
baseline with periodic R-peaks plus noise) and a gravity-dominated accelerometer
signal. It also sends an occasional control-ack echo, which the session must
drop.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from types import SimpleNamespace
from typing import Any, Callable, Optional, Sequence

from .commands import BATTERY_LEVEL, FEATURE_ECG, PMD_CONTROL, PMD_DATA, PMD_SERVICE
from .decoder import ACC_RESOLUTION_OFFSET, HEADER_SIZE
from .models import SignalType

logger = logging.getLogger(__name__)

MOCK_ADDRESS = "00:00:00:00:00:00"
MOCK_NAME = "Polar H10 MOCK"

# Control-point response echoed on the data channel (not a measurement frame)
CONTROL_ECHO = bytes([0xF0, 0x02, 0x00, 0x00, 0x00])


def _header(signal_type: SignalType, timestamp_ns: int) -> bytearray:
    header = bytearray(HEADER_SIZE)
    header[0] = int(signal_type)
    header[1:9] = (timestamp_ns & 0xFFFFFFFFFFFFFFFF).to_bytes(8, "little")
    return header


def encode_ecg_frame(samples: Sequence[int], timestamp_ns: int = 0) -> bytes:
    """Build an ECG data frame carrying 24-bit little-endian samples."""
    header = _header(SignalType.ECG, timestamp_ns)
    body = b"".join((s & 0xFFFFFF).to_bytes(3, "little") for s in samples)
    return bytes(header) + body


def encode_acc_frame(
    samples: Sequence[Sequence[int]],
    resolution_bits: int = 16,
    timestamp_ns: int = 0,
) -> bytes:
    """Build an ACC data frame with the resolution stored where the decoder reads it."""
    header = _header(SignalType.ACC, timestamp_ns)
    header[ACC_RESOLUTION_OFFSET] = resolution_bits
    header[9] = 0x01
    width = resolution_bits // 8
    mask = (1 << resolution_bits) - 1
    body = b"".join(
        (value & mask).to_bytes(width, "little") for sample in samples for value in sample
    )
    return bytes(header) + body


class _MockServices:
    def __init__(self, uuids: Sequence[str]) -> None:
        self._characteristics = {
            uuid: SimpleNamespace(uuid=uuid, service_uuid=PMD_SERVICE) for uuid in uuids
        }

    def get_characteristic(self, uuid: str) -> Optional[SimpleNamespace]:
        return self._characteristics.get(uuid.lower())


class MockPolarClient:
    """In-process stand-in for ``BleakClient`` talking to a Polar H10.

    Args:
        address_or_device: Address string or device object, as for ``BleakClient``.
        disconnected_callback: Called with the client after ``disconnect()``.
        timeout: Accepted for signature compatibility.
        frame_interval: Seconds between notification bursts.
        battery_level: Value returned by the battery characteristic.
    """

    def __init__(
        self,
        address_or_device: Any,
        disconnected_callback: Optional[Callable[[Any], None]] = None,
        timeout: float = 10.0,
        frame_interval: float = 0.1,
        battery_level: int = 87,
    ) -> None:
        self.address = getattr(address_or_device, "address", address_or_device)
        self._disconnected_callback = disconnected_callback
        self._frame_interval = frame_interval
        self._battery_level = battery_level
        self._connected = False
        self._started: dict[SignalType, float] = {}
        self._emitter: Optional[asyncio.Task[None]] = None
        self.services = _MockServices([PMD_CONTROL, PMD_DATA, BATTERY_LEVEL])

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        await asyncio.sleep(0.05)
        self._connected = True
        logger.debug("Mock strap connected: %s", self.address)
        return True

    async def disconnect(self) -> bool:
        await self._stop_emitter()
        was_connected, self._connected = self._connected, False
        if was_connected and self._disconnected_callback is not None:
            self._disconnected_callback(self)
        return True

    async def read_gatt_char(self, uuid: str) -> bytearray:
        if uuid == PMD_CONTROL:
            bitmap = (1 << int(SignalType.ECG)) | (1 << int(SignalType.ACC))
            return bytearray([0x0F, bitmap, 0x00])
        if uuid == BATTERY_LEVEL:
            return bytearray([self._battery_level])
        raise ValueError(f"Characteristic {uuid} is not readable on the mock strap")

    async def write_gatt_char(self, uuid: str, data: bytes, response: bool = False) -> None:
        if uuid != PMD_CONTROL:
            raise ValueError(f"Characteristic {uuid} is not writable on the mock strap")
        feature = int.from_bytes(bytes(data[4:6]), "little")
        signal_type = SignalType.ECG if feature == FEATURE_ECG else SignalType.ACC
        self._started[signal_type] = 130.0 if signal_type is SignalType.ECG else 100.0
        await asyncio.sleep(0.01)

    async def start_notify(self, uuid: str, callback: Callable[[Any, bytearray], None]) -> None:
        if uuid != PMD_DATA:
            raise ValueError(f"Characteristic {uuid} does not notify on the mock strap")
        self._emitter = asyncio.ensure_future(self._emit(callback))

    async def stop_notify(self, uuid: str) -> None:
        await self._stop_emitter()

    async def _stop_emitter(self) -> None:
        emitter, self._emitter = self._emitter, None
        if emitter is not None:
            emitter.cancel()
            try:
                await emitter
            except asyncio.CancelledError:
                pass

    async def _emit(self, callback: Callable[[Any, bytearray], None]) -> None:
        start = time.time()
        ecg_index = 0
        acc_index = 0
        burst = 0
        sender = self.services.get_characteristic(PMD_DATA)
        while True:
            await asyncio.sleep(self._frame_interval)
            elapsed = time.time() - start
            timestamp_ns = int(elapsed * 1e9)

            if SignalType.ECG in self._started:
                due = int(elapsed * self._started[SignalType.ECG]) - ecg_index
                samples = [_ecg_value(i / 130.0) for i in range(ecg_index, ecg_index + due)]
                ecg_index += due
                if samples:
                    callback(sender, bytearray(encode_ecg_frame(samples, timestamp_ns)))

            if SignalType.ACC in self._started:
                due = int(elapsed * self._started[SignalType.ACC]) - acc_index
                samples = [_acc_value(i / 100.0) for i in range(acc_index, acc_index + due)]
                acc_index += due
                if samples:
                    callback(sender, bytearray(encode_acc_frame(samples, 16, timestamp_ns)))

            burst += 1
            if burst % 50 == 0:
                callback(sender, bytearray(CONTROL_ECHO))


def _ecg_value(t: float) -> int:
    # ~72 bpm: narrow R-peak on a slow baseline wander
    phase = (t * 1.2) % 1.0
    r_peak = 1200.0 * math.exp(-((phase - 0.3) ** 2) / 0.0004)
    t_wave = 250.0 * math.exp(-((phase - 0.6) ** 2) / 0.004)
    baseline = 80.0 * math.sin(2 * math.pi * 0.25 * t)
    return int(r_peak + t_wave + baseline + random.gauss(0, 15.0))


def _acc_value(t: float) -> tuple[int, int, int]:
    # Milli-g, strap worn upright
    x = 40.0 * math.sin(2 * math.pi * 1.2 * t) + random.gauss(0, 8.0)
    y = -1000.0 + 25.0 * math.cos(2 * math.pi * 1.2 * t) + random.gauss(0, 8.0)
    z = 60.0 * math.sin(2 * math.pi * 0.2 * t) + random.gauss(0, 8.0)
    return int(x), int(y), int(z)
