"""Output sink interface and the in-memory sink.

A sink opens one channel per signal type and accepts fixed-length float samples
on it. The LSL implementation lives in ``lsl.py`` so that importing this package
never loads the native liblsl library.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from .buffer import SampleBuffer
from .errors import SinkError
from .models import ChannelSpec, SignalType

logger = logging.getLogger(__name__)


class SampleSink(ABC):
    """Real-time consumer of decoded samples.

    ``push_sample`` is called from the session's event loop for every frame, so
    implementations must not block beyond the push itself.
    """

    @abstractmethod
    def open_channel(self, spec: ChannelSpec) -> Any:
        """Open an output channel and return an opaque handle for it.

        Raises:
            SinkError: If the channel cannot be created.
        """

    @abstractmethod
    def push_sample(self, handle: Any, values: Sequence[float]) -> None:
        """Push one sample of ``spec.channel_count`` floats on ``handle``."""

    def close(self) -> None:
        """Release every channel opened by this sink."""


class BufferSink(SampleSink):
    """Keeps the most recent samples of each channel in a ``SampleBuffer``.

    Used by the web monitor to plot live traces, and by tests to observe what
    the dispatcher pushed.
    """

    def __init__(self, max_size: int = 2000) -> None:
        self._max_size = max_size
        self._buffers: dict[SignalType, SampleBuffer] = {}
        self._specs: dict[SignalType, ChannelSpec] = {}
        self._lock = threading.Lock()

    def open_channel(self, spec: ChannelSpec) -> SignalType:
        with self._lock:
            if spec.signal_type in self._buffers:
                raise SinkError(f"channel for {spec.signal_type.name} already open")
            self._buffers[spec.signal_type] = SampleBuffer(max_size=self._max_size)
            self._specs[spec.signal_type] = spec
        logger.debug("Buffer channel opened: %s (%s)", spec.name, spec.signal_type.name)
        return spec.signal_type

    def push_sample(self, handle: SignalType, values: Sequence[float]) -> None:
        buffer = self._buffers.get(handle)
        if buffer is None:
            raise SinkError(f"no open channel for {handle!r}")
        buffer.append(values)

    def buffer(self, signal_type: SignalType) -> Optional[SampleBuffer]:
        with self._lock:
            return self._buffers.get(signal_type)

    def spec(self, signal_type: SignalType) -> Optional[ChannelSpec]:
        with self._lock:
            return self._specs.get(signal_type)

    def close(self) -> None:
        with self._lock:
            self._buffers.clear()
            self._specs.clear()
