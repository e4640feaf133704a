"""PMD endpoints and the measurement command tables.

Commands are written to the PMD control characteristic to start a stream. The
byte layout follows the control-point format used by the H10 firmware:

    [0]    start-measurement opcode (0x02)
    [1-2]  reserved
    [3]    measurement-type code (PMD = 0x01)
    [4-5]  feature-type code, little-endian (ECG = 0x0082, ACC = 0x0083)
    [6]    resolution index
    [7]    sample-rate index
    [8..]  range / frame-type index, length depends on the measurement

Each firmware revision gets one ``FirmwareProfile``. Profiles are looked up by
name, so callers never build command bytes by hand.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import SignalType


# Polar Measurement Data (PMD) service characteristics
PMD_SERVICE = "fb005c80-02e7-f387-1cad-8acd2d8df0c8"
PMD_CONTROL = "fb005c81-02e7-f387-1cad-8acd2d8df0c8"  # Read/Write/Indicate
PMD_DATA = "fb005c82-02e7-f387-1cad-8acd2d8df0c8"  # Notify (ECG and ACC multiplexed)

# Standard GATT battery level
BATTERY_LEVEL = "00002a19-0000-1000-8000-00805f9b34fb"

DEVICE_NAME = "Polar H10"

START_MEASUREMENT = 0x02
MEASUREMENT_TYPE_PMD = 0x01
FEATURE_ECG = 0x0082
FEATURE_ACC = 0x0083

# First byte of a control-point read carrying the supported-feature bitmap
FEATURE_READ_RESPONSE = 0x0F


@dataclass(frozen=True)
class MeasurementCommand:
    """A start-measurement command for one signal type."""

    signal_type: SignalType
    feature_type: int
    resolution_index: int
    sample_rate_index: int
    range_bytes: bytes
    nominal_rate_hz: float
    opcode: int = START_MEASUREMENT
    reserved: bytes = b"\x00\x00"
    measurement_type: int = MEASUREMENT_TYPE_PMD

    def to_bytes(self) -> bytes:
        return (
            bytes([self.opcode])
            + self.reserved
            + bytes([self.measurement_type])
            + self.feature_type.to_bytes(2, "little")
            + bytes([self.resolution_index, self.sample_rate_index])
            + self.range_bytes
        )

    def hex(self) -> str:
        return self.to_bytes().hex(" ").upper()


@dataclass(frozen=True)
class FirmwareProfile:
    """Command table for one firmware revision.

    Attributes:
        name: Lookup key, also accepted by the ``--firmware`` CLI flag.
        ecg: Command that starts the ECG stream.
        acc: Command that starts the accelerometer stream.
        acc_resolution_bits: Pinned ACC resolution. ``None`` reads it from the
            header of every ACC frame.
        description: Where the bytes come from.
    """

    name: str
    ecg: MeasurementCommand
    acc: MeasurementCommand
    acc_resolution_bits: Optional[int] = None
    description: str = ""

    def command_for(self, signal_type: SignalType) -> MeasurementCommand:
        return self.ecg if signal_type is SignalType.ECG else self.acc

    @property
    def nominal_rates(self) -> dict[SignalType, float]:
        return {
            SignalType.ECG: self.ecg.nominal_rate_hz,
            SignalType.ACC: self.acc.nominal_rate_hz,
        }


ECG_130HZ = MeasurementCommand(
    signal_type=SignalType.ECG,
    feature_type=FEATURE_ECG,
    resolution_index=0x01,  # 16-bit
    sample_rate_index=0x01,  # 130 Hz
    range_bytes=b"\x0e\x00",
    nominal_rate_hz=130.0,
)

ACC_100HZ_4G = MeasurementCommand(
    signal_type=SignalType.ACC,
    feature_type=FEATURE_ACC,
    resolution_index=0x01,  # 16-bit
    sample_rate_index=0x01,  # 100 Hz
    range_bytes=b"\x04\x00",  # +-4 g
    nominal_rate_hz=100.0,
)

# 14-byte settings form seen on later units: 200 Hz, 16-bit, +-8 g
ACC_200HZ_8G = MeasurementCommand(
    signal_type=SignalType.ACC,
    reserved=b"\x02\x00",
    feature_type=0x00C8,
    resolution_index=0x01,
    sample_rate_index=0x01,
    range_bytes=b"\x10\x00\x02\x01\x08\x00",
    nominal_rate_hz=200.0,
)


PROFILES: dict[str, FirmwareProfile] = {
    profile.name: profile
    for profile in (
        FirmwareProfile(
            name="h10-legacy",
            ecg=ECG_130HZ,
            acc=ACC_100HZ_4G,
            description="10-byte start commands, 100 Hz / +-4 g accelerometer; "
            "ACC resolution read from each frame header.",
        ),
        FirmwareProfile(
            name="h10-acc200",
            ecg=ECG_130HZ,
            acc=ACC_200HZ_8G,
            acc_resolution_bits=16,
            description="200 Hz / +-8 g accelerometer settings with a fixed "
            "16-bit resolution. Unverified on hardware.",
        ),
    )
}

DEFAULT_PROFILE = "h10-legacy"


def get_profile(name: str = DEFAULT_PROFILE) -> FirmwareProfile:
    """Return the named firmware profile.

    Raises:
        KeyError: If no profile has that name; the message lists known names.
    """
    try:
        return PROFILES[name]
    except KeyError:
        known = ", ".join(sorted(PROFILES))
        raise KeyError(f"Unknown firmware profile '{name}' (known: {known})") from None


def parse_features(data: bytes) -> set[SignalType]:
    """Decode the supported-measurement bitmap read from the control point.

    Bit ``n`` of byte 1 flags measurement type ``n``. Only the types this
    receiver can stream are reported. Anything that is not a feature read
    response yields an empty set.
    """
    if len(data) < 2 or data[0] != FEATURE_READ_RESPONSE:
        return set()
    bitmap = data[1]
    return {t for t in SignalType if bitmap & (1 << int(t))}
