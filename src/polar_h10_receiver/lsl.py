"""Lab Streaming Layer sink.

Importing this module loads liblsl through ``pylsl``; the CLI imports it lazily
so that ``--scan`` and ``--monitor`` work on hosts without the native library.
"""

from __future__ import annotations

import logging
from typing import Sequence

from pylsl import StreamInfo, StreamOutlet

from .errors import SinkError
from .models import ChannelSpec, SignalType
from .sinks import SampleSink

logger = logging.getLogger(__name__)

MAX_BUFFERED_SECONDS = 360

# Outlet chunk sizes in samples, about one notification each
CHUNK_SIZES = {
    SignalType.ECG: 74,
    SignalType.ACC: 25,
}


class LslSink(SampleSink):
    """Publishes each channel as an LSL outlet with channel metadata."""

    def __init__(self, max_buffered: int = MAX_BUFFERED_SECONDS) -> None:
        self._max_buffered = max_buffered
        self._outlets: list[StreamOutlet] = []

    def open_channel(self, spec: ChannelSpec) -> StreamOutlet:
        try:
            info = StreamInfo(
                spec.name,
                spec.stream_type,
                spec.channel_count,
                spec.nominal_rate_hz,
                spec.sample_format,
                spec.source_id,
            )
            channels = info.desc().append_child("channels")
            for label in spec.labels:
                channel = channels.append_child("channel")
                channel.append_child_value("name", label)
                if spec.unit:
                    channel.append_child_value("unit", spec.unit)
                channel.append_child_value("type", spec.stream_type)
            outlet = StreamOutlet(
                info, CHUNK_SIZES.get(spec.signal_type, 0), self._max_buffered
            )
        except Exception as e:
            raise SinkError(f"LSL outlet '{spec.name}' could not be created: {e}") from e

        self._outlets.append(outlet)
        logger.info(
            "LSL outlet opened: name=%s type=%s channels=%d rate=%.1fHz",
            spec.name,
            spec.stream_type,
            spec.channel_count,
            spec.nominal_rate_hz,
        )
        return outlet

    def push_sample(self, handle: StreamOutlet, values: Sequence[float]) -> None:
        try:
            handle.push_sample(list(values))
        except Exception as e:
            raise SinkError(f"LSL push failed: {e}") from e

    def close(self) -> None:
        # Outlets unregister when the last reference goes away
        self._outlets.clear()
