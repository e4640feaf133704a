"""Fan-out of decoded sample batches to the output sinks."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Mapping, Optional, Sequence

from .models import ChannelSpec, SampleBatch, SignalType
from .sinks import SampleSink

logger = logging.getLogger(__name__)

# Log the first sink failure of a channel, then one in every N
FAILURE_LOG_EVERY = 100


def channel_specs(
    stream_name: str, source_id: str, rates: Mapping[SignalType, float]
) -> list[ChannelSpec]:
    """Build the ECG and ACC channel descriptions for one strap."""
    return [
        ChannelSpec(
            name=stream_name,
            signal_type=SignalType.ECG,
            stream_type="ECG",
            channel_count=1,
            nominal_rate_hz=rates[SignalType.ECG],
            source_id=source_id,
            labels=("ECG",),
            unit="microvolts",
        ),
        ChannelSpec(
            name=f"{stream_name}_acc",
            signal_type=SignalType.ACC,
            stream_type="Accelerometer",
            channel_count=3,
            nominal_rate_hz=rates[SignalType.ACC],
            source_id=f"{source_id}_acc",
            labels=("X", "Y", "Z"),
        ),
    ]


class StreamDispatcher:
    """Pushes every frame of a batch to the channel opened for its signal type.

    Each ``push_sample`` call is isolated: a failing sink is logged and counted,
    and dispatch continues with the next frame and the next sink. Nothing raised
    by a sink reaches the notification path.
    """

    def __init__(self, sinks: Sequence[SampleSink]) -> None:
        self._sinks = list(sinks)
        self._handles: list[tuple[SampleSink, dict[SignalType, Any]]] = []
        self._opened = False
        self.pushed: Counter[SignalType] = Counter()
        self.failures: Counter[SignalType] = Counter()

    @property
    def is_open(self) -> bool:
        return self._opened

    def open_channels(
        self,
        stream_name: str,
        source_id: str,
        rates: Mapping[SignalType, float],
    ) -> None:
        """Open one channel per signal type on every sink, once per session.

        Args:
            stream_name: Base stream name; the ACC channel gets an "_acc" suffix.
            source_id: Stable source identifier, usually the strap address.
            rates: Nominal sample rate per signal type.

        Note:
            A sink that cannot open a channel is logged and skipped for that
            signal type; the other sinks still receive samples.
        """
        if self._opened:
            logger.debug("Channels already open, ignoring second open request")
            return
        specs = channel_specs(stream_name, source_id, rates)
        for sink in self._sinks:
            handles: dict[SignalType, Any] = {}
            for spec in specs:
                try:
                    handles[spec.signal_type] = sink.open_channel(spec)
                except Exception as e:
                    logger.error(
                        "Sink %s could not open channel %s: %s",
                        type(sink).__name__,
                        spec.name,
                        e,
                    )
            self._handles.append((sink, handles))
        self._opened = True

    def dispatch(self, batch: SampleBatch) -> None:
        """Push every frame of ``batch`` to each sink, in frame order.

        Args:
            batch: Frames decoded from one notification.

        Note:
            Values are converted to floats. A sink without a channel for the
            batch's signal type is skipped, and a failing push is counted in
            ``failures`` without stopping the remaining frames or sinks.
        """
        for sink, handles in self._handles:
            handle = handles.get(batch.signal_type)
            if handle is None:
                logger.debug(
                    "No %s channel on %s, batch dropped",
                    batch.signal_type.name,
                    type(sink).__name__,
                )
                continue
            for frame in batch.frames:
                self._push(sink, handle, batch.signal_type, frame.values)

    def _push(
        self,
        sink: SampleSink,
        handle: Any,
        signal_type: SignalType,
        values: tuple[int, ...],
    ) -> None:
        try:
            sink.push_sample(handle, [float(v) for v in values])
        except Exception as e:
            self.failures[signal_type] += 1
            count = self.failures[signal_type]
            if count == 1 or count % FAILURE_LOG_EVERY == 0:
                logger.warning(
                    "Sink push failed (%s, %d failures so far): %s",
                    signal_type.name,
                    count,
                    e,
                )
        else:
            self.pushed[signal_type] += 1

    def close(self) -> None:
        """Close every sink and forget the open channels.

        Note:
            A sink that fails to close is logged and the others are still closed.
        """
        for sink in self._sinks:
            try:
                sink.close()
            except Exception as e:
                logger.warning("Error closing sink %s: %s", type(sink).__name__, e)
        self._handles.clear()

    def failure_count(self, signal_type: Optional[SignalType] = None) -> int:
        """Failed pushes for ``signal_type``, or across all types when None."""
        if signal_type is None:
            return sum(self.failures.values())
        return self.failures[signal_type]
