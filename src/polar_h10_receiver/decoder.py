"""PMD data-frame decoder.

Every notification on the PMD data characteristic starts with a 10-byte
header whose first byte identifies the measurement:

    0x00  ECG: 3-byte little-endian signed samples (24-bit two's complement)
    0x02  ACC: x, y, z little-endian signed integers, width = resolution / 8

The decoder is pure. ``decode()`` never raises: it decodes every complete
sample group and drops the rest, because the link may deliver truncated frames
and control-ack echoes on the same channel. ``parse_notification()`` is the
strict variant used by the session so that drop reasons can be counted.
"""

from __future__ import annotations

from typing import Iterator, Optional

from .errors import DecodeAnomaly
from .models import SampleBatch, SampleFrame, SignalType

HEADER_SIZE = 10
ECG_SAMPLE_SIZE = 3
ACC_RESOLUTION_OFFSET = 4
ACC_AXES = 3


def sign_extend(value: int, bits: int) -> int:
    """Interpret the low ``bits`` of ``value`` as a two's-complement integer."""
    sign_bit = 1 << (bits - 1)
    value &= (1 << bits) - 1
    return value - (1 << bits) if value & sign_bit else value


def read_int_le(data: bytes, offset: int, width: int) -> int:
    """Read a signed little-endian integer of ``width`` bytes at ``offset``."""
    raw = int.from_bytes(data[offset : offset + width], "little", signed=False)
    return sign_extend(raw, width * 8)


def iter_groups(data: bytes, size: int) -> Iterator[bytes]:
    """Yield consecutive ``size``-byte groups, dropping a short trailing group."""
    for offset in range(0, len(data) - size + 1, size):
        yield data[offset : offset + size]


def decode_ecg(payload: bytes) -> tuple[SampleFrame, ...]:
    """Decode the post-header ECG payload into single-value frames (raw uV codes)."""
    return tuple(
        SampleFrame(SignalType.ECG, (read_int_le(group, 0, ECG_SAMPLE_SIZE),))
        for group in iter_groups(payload, ECG_SAMPLE_SIZE)
    )


def decode_acc(payload: bytes, resolution_bits: int) -> tuple[SampleFrame, ...]:
    """Decode the post-header ACC payload into (x, y, z) frames."""
    width = resolution_bits // 8
    frames = []
    for group in iter_groups(payload, width * ACC_AXES):
        values = tuple(read_int_le(group, axis * width, width) for axis in range(ACC_AXES))
        frames.append(SampleFrame(SignalType.ACC, values))
    return tuple(frames)


def parse_notification(
    raw: bytes,
    acc_resolution_bits: Optional[int] = None,
    received_at: float = 0.0,
) -> SampleBatch:
    """Decode one notification, raising ``DecodeAnomaly`` when nothing is decodable.

    Args:
        raw: Notification bytes as delivered by the data characteristic.
        acc_resolution_bits: Fixed ACC resolution. ``None`` reads it from the
            frame header.
        received_at: Arrival time copied onto the batch.

    Raises:
        DecodeAnomaly: Empty input, unknown type byte, ACC frame shorter than
            its header, or an ACC resolution that is not a positive multiple of 8.
    """
    if not raw:
        raise DecodeAnomaly("empty", "empty notification")

    frame_type = raw[0]
    if frame_type == SignalType.ECG:
        frames = decode_ecg(raw[HEADER_SIZE:])
        return SampleBatch(SignalType.ECG, frames, received_at)

    if frame_type == SignalType.ACC:
        if len(raw) < HEADER_SIZE:
            raise DecodeAnomaly(
                "short_header", f"ACC frame of {len(raw)} bytes has no full header"
            )
        resolution = (
            acc_resolution_bits
            if acc_resolution_bits is not None
            else raw[ACC_RESOLUTION_OFFSET]
        )
        if resolution <= 0 or resolution % 8:
            raise DecodeAnomaly(
                "bad_resolution", f"unusable ACC resolution {resolution} bits"
            )
        frames = decode_acc(raw[HEADER_SIZE:], resolution)
        return SampleBatch(SignalType.ACC, frames, received_at)

    raise DecodeAnomaly("unknown_type", f"unknown frame type 0x{frame_type:02X}")


def decode(
    raw: bytes,
    acc_resolution_bits: Optional[int] = None,
    received_at: float = 0.0,
) -> Optional[SampleBatch]:
    """Decode one notification; ``None`` when nothing is decodable."""
    try:
        return parse_notification(raw, acc_resolution_bits, received_at)
    except DecodeAnomaly:
        return None


class FrameDecoder:
    """Decoder bound to a fixed ACC resolution policy.

    Holds configuration only, so a single instance can be shared between the
    delivery callback and the consumer task.
    """

    def __init__(self, acc_resolution_bits: Optional[int] = None) -> None:
        self._acc_resolution_bits = acc_resolution_bits

    @property
    def acc_resolution_bits(self) -> Optional[int]:
        return self._acc_resolution_bits

    def parse(self, raw: bytes, received_at: float = 0.0) -> SampleBatch:
        return parse_notification(raw, self._acc_resolution_bits, received_at)

    def decode(self, raw: bytes, received_at: float = 0.0) -> Optional[SampleBatch]:
        return decode(raw, self._acc_resolution_bits, received_at)
