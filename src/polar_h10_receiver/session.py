"""PMD protocol session: connection, negotiation and notification handling.

A ``ProtocolSession`` drives one strap through the PMD handshake:

    Idle -> Connecting -> DiscoveringServices -> Configuring -> Streaming

Every state change goes through ``_transition()`` and the ``TRANSITIONS`` table,
so a step can never be skipped. Failures land in the terminal FAILED state with
the error that caused them; ``disconnect()`` lands in DISCONNECTED from anywhere.

Notification handling follows a producer-consumer split:

1. **Producer**: bleak's notification callback wraps the payload in a
   ``RawNotification`` and puts it on a bounded asyncio queue. Nothing else
   happens in the callback.
2. **Consumer**: a single task per session takes notifications off the queue,
   decodes them with ``FrameDecoder`` and hands the batches to the
   ``StreamDispatcher``. Decode anomalies and sink failures are counted and
   logged here and never end the session.

Control-point writes are awaited one at a time, each under its own timeout,
because the link allows a single outstanding GATT operation per peripheral.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Union

from bleak import BleakClient
from bleak.exc import BleakError

from .commands import (
    BATTERY_LEVEL,
    PMD_CONTROL,
    PMD_DATA,
    FirmwareProfile,
    MeasurementCommand,
    get_profile,
    parse_features,
)
from .decoder import FrameDecoder
from .dispatcher import StreamDispatcher
from .errors import (
    ConfigError,
    ConnectError,
    DecodeAnomaly,
    InvalidTransition,
    ProtocolMismatch,
    SessionError,
)
from .models import (
    PeripheralHandle,
    RawNotification,
    SessionEvent,
    SessionState,
    SignalType,
    StateChange,
)
from .scanner import DeviceScanner

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]
StateListener = Callable[[StateChange], None]

S = SessionState
E = SessionEvent

TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (S.IDLE, E.START_SCAN): S.SCANNING,
    (S.SCANNING, E.STOP_SCAN): S.IDLE,
    (S.IDLE, E.CONNECT): S.CONNECTING,
    (S.SCANNING, E.CONNECT): S.CONNECTING,
    (S.CONNECTING, E.LINK_ESTABLISHED): S.DISCOVERING_SERVICES,
    (S.CONNECTING, E.LINK_FAILED): S.FAILED,
    (S.DISCOVERING_SERVICES, E.CONTROL_CHAR_FOUND): S.CONFIGURING,
    (S.DISCOVERING_SERVICES, E.REQUIRED_CHAR_MISSING): S.FAILED,
    (S.CONFIGURING, E.WRITE_ACKED): S.STREAMING,
    (S.CONFIGURING, E.WRITE_FAILED): S.FAILED,
    (S.STREAMING, E.NOTIFICATION): S.STREAMING,
    (S.DISCOVERING_SERVICES, E.LINK_LOST): S.FAILED,
    (S.CONFIGURING, E.LINK_LOST): S.FAILED,
    (S.STREAMING, E.LINK_LOST): S.FAILED,
}
TRANSITIONS.update({(state, E.DISCONNECT): S.DISCONNECTED for state in SessionState})

# States in which the transport link is open
LINKED_STATES = frozenset({S.DISCOVERING_SERVICES, S.CONFIGURING, S.STREAMING})

# Log the first queue overflow, then one in every N
OVERFLOW_LOG_EVERY = 100


def next_state(state: SessionState, event: SessionEvent) -> SessionState:
    """Return the state reached from ``state`` on ``event``.

    Raises:
        InvalidTransition: If the table has no entry for the pair.
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(
            f"Event '{event.value}' is not allowed in state '{state.value}'"
        ) from None


@dataclass
class SessionConfig:
    """Tunables of a protocol session.

    Attributes:
        profile: Command table for the strap's firmware revision.
        connect_timeout: Seconds allowed for the link to come up.
        discovery_timeout: Seconds allowed for the PMD feature read.
        write_timeout: Seconds allowed for each acknowledged control write and
            for the notification subscription.
        idle_timeout: Seconds without notifications before a warning is
            logged while streaming. ``None`` disables the warning.
        queue_size: Capacity of the notification queue. Overflowing
            notifications are dropped and counted.
        stream_name: Output stream name; defaults to the advertised name.
    """

    profile: FirmwareProfile = field(default_factory=get_profile)
    connect_timeout: float = 10.0
    discovery_timeout: float = 10.0
    write_timeout: float = 10.0
    idle_timeout: Optional[float] = None
    queue_size: int = 256
    stream_name: Optional[str] = None


@dataclass
class SessionStats:
    """Counters kept by a session while it streams.

    Attributes:
        notifications: Notifications delivered by the transport, dropped or not.
        batches: Notifications decoded into at least one frame.
        overflows: Notifications dropped because the queue was full.
        frames: Decoded frames per ``SignalType``.
        dropped: Dropped notifications per reason (``"not_streaming"``,
            ``"no_samples"`` and the ``DecodeAnomaly`` reasons).
    """

    notifications: int = 0
    batches: int = 0
    overflows: int = 0
    frames: Counter = field(default_factory=Counter)
    dropped: Counter = field(default_factory=Counter)


class ProtocolSession:
    """One PMD session with a single strap.

    Args:
        dispatcher: Receives every decoded batch. Its channels are opened once
            the session reaches STREAMING.
        config: Timeouts, queue size and firmware profile.
        client_factory: Builds the transport client from a bleak device or an
            address. Defaults to ``BleakClient``.
        scanner: Optional scanner owned by the session; enables ``scan()``.
    """

    def __init__(
        self,
        dispatcher: Optional[StreamDispatcher] = None,
        config: Optional[SessionConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        scanner: Optional[DeviceScanner] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config or SessionConfig()
        self._client_factory: ClientFactory = client_factory or BleakClient
        self._scanner = scanner
        self._decoder = FrameDecoder(self._config.profile.acc_resolution_bits)

        self._state = SessionState.IDLE
        self._failure: Optional[SessionError] = None
        self._closed = asyncio.Event()
        self._listeners: list[StateListener] = []

        self._peripheral: Optional[PeripheralHandle] = None
        self._client: Any = None
        self._subscribed = False
        self._features: set[SignalType] = set()
        self._queue: Optional[asyncio.Queue[Optional[RawNotification]]] = None
        self._consumer: Optional[asyncio.Task[None]] = None
        self._cleanup: Optional[asyncio.Task[None]] = None

        self.stats = SessionStats()

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure(self) -> Optional[SessionError]:
        """The error that moved the session to FAILED, if any."""
        return self._failure

    @property
    def peripheral(self) -> Optional[PeripheralHandle]:
        return self._peripheral

    @property
    def features(self) -> set[SignalType]:
        """Measurement types the strap reported as supported."""
        return set(self._features)

    @property
    def config(self) -> SessionConfig:
        return self._config

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change observer; returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait_closed(self) -> SessionState:
        """Wait until the session is DISCONNECTED or FAILED and return that state."""
        await self._closed.wait()
        return self._state

    def _transition(
        self, event: SessionEvent, failure: Optional[SessionError] = None
    ) -> StateChange:
        target = next_state(self._state, event)
        change = StateChange(self._state, target, event, failure)
        self._state = target
        if target is S.FAILED:
            self._failure = failure
        if target.is_terminal:
            self._closed.set()

        if event is E.NOTIFICATION:
            return change

        if failure is not None:
            logger.error(
                "Session state: %s -> %s (%s: %s)",
                change.previous.value,
                target.value,
                type(failure).__name__,
                failure,
            )
        else:
            logger.info("Session state: %s -> %s", change.previous.value, target.value)

        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("State listener raised; ignoring")
        return change

    def _fail(self, event: SessionEvent, error: SessionError) -> SessionError:
        """Move to FAILED with ``error`` and return the error to raise.

        If the session already ended (the link dropped while a GATT operation
        was in flight), the recorded failure wins over ``error`` so that the
        caller and ``session.failure`` report the same reason.
        """
        if not self._state.is_terminal:
            self._transition(event, failure=error)
            return error
        return self._failure or error

    def _ensure_active(self) -> None:
        """Abort the handshake if the session ended while we were awaiting."""
        if self._state.is_terminal:
            raise self._failure or ConnectError("Connection attempt aborted by disconnect()")

    # --------------------------------------------------------------- scanning

    def scan(self) -> AsyncIterator[PeripheralHandle]:
        """Start the attached scanner and return its iterator of straps."""
        if self._scanner is None:
            raise RuntimeError("No scanner attached to this session")
        self._transition(E.START_SCAN)
        return self._scanner.start_scan()

    async def stop_scan(self) -> None:
        if self._state is S.SCANNING:
            await self._stop_scanner()
            self._transition(E.STOP_SCAN)

    async def _stop_scanner(self) -> None:
        if self._scanner is not None:
            await self._scanner.stop_scan()

    # -------------------------------------------------------------- handshake

    async def connect(self, target: Union[PeripheralHandle, str]) -> None:
        """Connect to ``target`` and negotiate ECG and ACC streaming.

        Returns once the session is STREAMING.

        Raises:
            ConnectError: The link could not be established (or was lost).
            ProtocolMismatch: A required PMD characteristic is missing.
            ConfigError: A start command or the subscription failed.
            InvalidTransition: The session is not IDLE or SCANNING.
        """
        if isinstance(target, str):
            target = PeripheralHandle(address=target, advertised_name=target)

        previous = self._state
        self._transition(E.CONNECT)
        self._peripheral = target
        if previous is S.SCANNING:
            await self._stop_scanner()

        try:
            await self._open_link(target)
            await self._discover_services()
            await self._configure()
        except SessionError:
            await self._release()
            raise
        except asyncio.CancelledError:
            if not self._state.is_terminal:
                self._transition(E.DISCONNECT)
            await self._release()
            raise

    async def _open_link(self, target: PeripheralHandle) -> None:
        timeout = self._config.connect_timeout
        logger.info("BLE connection starting: %s", target)
        self._client = self._client_factory(
            target.device if target.device is not None else target.address,
            disconnected_callback=self._on_link_lost,
            timeout=timeout,
        )
        try:
            await asyncio.wait_for(self._client.connect(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise self._fail(
                E.LINK_FAILED,
                ConnectError(f"Connection to {target} timed out after {timeout:.1f}s"),
            ) from e
        except Exception as e:
            raise self._fail(
                E.LINK_FAILED, ConnectError(f"Connection to {target} failed: {e}")
            ) from e

        self._ensure_active()
        if not self._client.is_connected:
            raise self._fail(
                E.LINK_FAILED, ConnectError(f"Connection to {target} failed.")
            )
        logger.info("BLE connection established: %s", target)
        self._transition(E.LINK_ESTABLISHED)

    def _lookup_characteristic(self, uuid: str) -> Any:
        try:
            return self._client.services.get_characteristic(uuid)
        except BleakError as e:
            logger.warning("Service table unavailable: %s", e)
            return None

    async def _discover_services(self) -> None:
        missing = [
            name
            for name, uuid in (("PMD control", PMD_CONTROL), ("PMD data", PMD_DATA))
            if self._lookup_characteristic(uuid) is None
        ]
        if missing:
            raise self._fail(
                E.REQUIRED_CHAR_MISSING,
                ProtocolMismatch(
                    f"{self._peripheral} lacks required characteristic(s): "
                    + ", ".join(missing)
                ),
            )

        timeout = self._config.discovery_timeout
        try:
            raw = await asyncio.wait_for(
                self._client.read_gatt_char(PMD_CONTROL), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise self._fail(
                E.REQUIRED_CHAR_MISSING,
                ProtocolMismatch(f"PMD feature read timed out after {timeout:.1f}s"),
            ) from e
        except BleakError as e:
            logger.warning("PMD feature read failed, continuing: %s", e)
        else:
            self._features = parse_features(bytes(raw))
            logger.info(
                "PMD features: %s",
                ", ".join(t.name for t in sorted(self._features)) or "none reported",
            )
            for signal_type in SignalType:
                if self._features and signal_type not in self._features:
                    logger.warning("Strap does not advertise %s support", signal_type.name)

        self._ensure_active()
        self._transition(E.CONTROL_CHAR_FOUND)

    async def _configure(self) -> None:
        profile = self._config.profile
        logger.info("Configuring measurements (firmware profile '%s')", profile.name)
        for command in (profile.ecg, profile.acc):
            await self._write_command(command)

        timeout = self._config.write_timeout
        logger.info("Starting notification subscription: char=%s", PMD_DATA)
        try:
            await asyncio.wait_for(
                self._client.start_notify(PMD_DATA, self._on_notification),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise self._fail(
                E.WRITE_FAILED,
                ConfigError(f"PMD data subscription timed out after {timeout:.1f}s"),
            ) from e
        except Exception as e:
            raise self._fail(
                E.WRITE_FAILED, ConfigError(f"PMD data subscription failed: {e}")
            ) from e
        self._subscribed = True
        self._ensure_active()

        self._queue = asyncio.Queue(maxsize=self._config.queue_size)
        self._consumer = asyncio.ensure_future(self._consume(self._queue))
        self._transition(E.WRITE_ACKED)
        self._open_channels()

    async def _write_command(self, command: MeasurementCommand) -> None:
        name = command.signal_type.name
        timeout = self._config.write_timeout
        logger.info("Writing %s start command: %s", name, command.hex())
        try:
            await asyncio.wait_for(
                self._client.write_gatt_char(
                    PMD_CONTROL, command.to_bytes(), response=True
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise self._fail(
                E.WRITE_FAILED,
                ConfigError(
                    f"{name} start command not acknowledged within {timeout:.1f}s"
                ),
            ) from e
        except Exception as e:
            raise self._fail(
                E.WRITE_FAILED, ConfigError(f"{name} start command rejected: {e}")
            ) from e
        self._ensure_active()
        logger.debug("%s start command acknowledged", name)

    def _open_channels(self) -> None:
        if self._dispatcher is None or self._peripheral is None:
            return
        self._dispatcher.open_channels(
            self._config.stream_name or self._peripheral.advertised_name,
            self._peripheral.address,
            self._config.profile.nominal_rates,
        )

    # ---------------------------------------------------------- notifications

    def _on_notification(self, _sender: Any, data: bytearray) -> None:
        self.stats.notifications += 1
        queue = self._queue
        if self._state is not S.STREAMING or queue is None:
            self.stats.dropped["not_streaming"] += 1
            return
        try:
            queue.put_nowait(RawNotification(bytes(data)))
        except asyncio.QueueFull:
            self.stats.overflows += 1
            if self.stats.overflows == 1 or self.stats.overflows % OVERFLOW_LOG_EVERY == 0:
                logger.warning(
                    "Notification queue full (%d slots), dropped %d so far",
                    queue.maxsize,
                    self.stats.overflows,
                )

    async def _consume(self, queue: asyncio.Queue[Optional[RawNotification]]) -> None:
        idle_timeout = self._config.idle_timeout
        while True:
            if idle_timeout is not None:
                try:
                    raw = await asyncio.wait_for(queue.get(), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    logger.warning("No notification received for %.1fs", idle_timeout)
                    continue
            else:
                raw = await queue.get()

            if raw is None:
                break
            try:
                self._handle_notification(raw)
            except Exception:
                logger.exception("Unexpected error while handling a notification")

    def _handle_notification(self, raw: RawNotification) -> None:
        if self._state is not S.STREAMING:
            self.stats.dropped["not_streaming"] += 1
            return
        self._transition(E.NOTIFICATION)

        try:
            batch = self._decoder.parse(raw.data, raw.received_at)
        except DecodeAnomaly as e:
            self.stats.dropped[e.reason] += 1
            logger.debug("Notification dropped: %s", e)
            return
        if not batch.frames:
            self.stats.dropped["no_samples"] += 1
            return

        self.stats.batches += 1
        self.stats.frames[batch.signal_type] += len(batch)
        if self._dispatcher is not None:
            self._dispatcher.dispatch(batch)

    # --------------------------------------------------------------- teardown

    def _on_link_lost(self, _client: Any) -> None:
        if self._state not in LINKED_STATES:
            return
        logger.warning("BLE connection lost (callback)")
        self._transition(
            E.LINK_LOST, failure=ConnectError(f"Link to {self._peripheral} lost")
        )
        self._cleanup = asyncio.ensure_future(self._release())

    async def disconnect(self) -> None:
        """End the session from any state.

        Stops the consumer and unsubscribes before the link is released.
        Calling it again once DISCONNECTED is a no-op.
        """
        if self._state is S.DISCONNECTED:
            return
        if self._state is S.SCANNING:
            await self._stop_scanner()
        self._transition(E.DISCONNECT)
        cleanup, self._cleanup = self._cleanup, None
        if cleanup is not None:
            await cleanup
        await self._release()

    async def _release(self) -> None:
        consumer, self._consumer = self._consumer, None
        queue, self._queue = self._queue, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

        if queue is not None and not queue.empty():
            logger.debug("Discarding %d queued notification(s)", queue.qsize())

        client, self._client = self._client, None
        if client is None:
            return

        if self._subscribed:
            self._subscribed = False
            logger.info("Stopping notification subscription")
            try:
                await asyncio.wait_for(
                    client.stop_notify(PMD_DATA), timeout=self._config.write_timeout
                )
            except Exception as e:
                logger.warning("Error stopping notifications: %s", e)

        try:
            await asyncio.wait_for(
                client.disconnect(), timeout=self._config.connect_timeout
            )
        except Exception as e:
            logger.warning("Error releasing BLE link: %s", e)
        else:
            logger.info("BLE link released: %s", self._peripheral)

    # ------------------------------------------------------------------- misc

    async def read_battery(self) -> int:
        """Read the battery level (0-100 %) from the standard battery characteristic.

        Note:
            Only allowed while STREAMING. During the handshake the session
            owns the link and keeps a single GATT operation in flight.

        Raises:
            RuntimeError: If the session is not streaming.
        """
        if self._client is None or self._state is not S.STREAMING:
            raise RuntimeError(
                f"Battery level needs a streaming session (state: {self._state.value})"
            )
        data = await asyncio.wait_for(
            self._client.read_gatt_char(BATTERY_LEVEL),
            timeout=self._config.write_timeout,
        )
        if not data:
            raise ValueError("Empty battery level response")
        level = int(data[0])
        if level > 100:
            logger.warning("Battery level out of range: %d", level)
        return level

    async def __aenter__(self) -> "ProtocolSession":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()
