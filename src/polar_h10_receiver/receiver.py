"""High-level streaming pipeline: find a strap, run a session, feed the sinks.

``stream()`` is the async entry point used by the CLI and the web monitor. It
resolves the target address (direct or by scanning), runs one
``ProtocolSession`` until it ends or a stop is requested, and always releases
the link and the sinks. ``run()`` and ``run_scan()`` wrap it for command-line
use and return Unix exit codes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Sequence

from .commands import DEVICE_NAME
from .dispatcher import StreamDispatcher
from .errors import ConnectError, SessionError
from .models import PeripheralHandle, SessionState, SignalType
from .scanner import ScannerFactory, discover, find_device
from .session import ClientFactory, ProtocolSession, SessionConfig, StateListener
from .sinks import SampleSink

logger = logging.getLogger(__name__)


async def resolve_target(
    address: Optional[str],
    device_name: str = DEVICE_NAME,
    scan_timeout: float = 10.0,
    scanner_factory: Optional[ScannerFactory] = None,
) -> PeripheralHandle:
    """Return a handle for ``address``, or scan for the first matching strap.

    Raises:
        ConnectError: If scanning finds no strap within ``scan_timeout``.
    """
    if address is not None:
        return PeripheralHandle(address=address, advertised_name=device_name)

    handle = await find_device(device_name, scan_timeout, scanner_factory)
    if handle is None:
        raise ConnectError(
            f"No device advertising '{device_name}' found within {scan_timeout:.1f}s. "
            "Check that the strap is worn (electrodes moist) and not connected elsewhere."
        )
    logger.info("Connection target: %s", handle)
    return handle


async def stream(
    address: Optional[str] = None,
    *,
    sinks: Sequence[SampleSink],
    device_name: str = DEVICE_NAME,
    scan_timeout: float = 10.0,
    config: Optional[SessionConfig] = None,
    client_factory: Optional[ClientFactory] = None,
    scanner_factory: Optional[ScannerFactory] = None,
    listeners: Iterable[StateListener] = (),
    stop_event: Optional[asyncio.Event] = None,
) -> SessionState:
    """Stream ECG and ACC samples from one strap into ``sinks``.

    Runs until the session ends on its own or ``stop_event`` is set.

    Args:
        address: Strap address. ``None`` scans for ``device_name``.
        sinks: Output sinks; channels are opened once streaming starts.
        device_name: Advertised-name substring used when scanning.
        scan_timeout: Seconds to scan before giving up.
        config: Session tunables (timeouts, queue size, firmware profile).
        client_factory: Transport client factory, ``BleakClient`` by default.
        scanner_factory: Backend scanner factory, ``BleakScanner`` by default.
        listeners: Session state observers.
        stop_event: Set it to end streaming and disconnect.

    Returns:
        The state in which streaming ended (DISCONNECTED when stopped).

    Raises:
        SessionError: The session failed (connect, protocol or config error,
            or a lost link while streaming).
    """
    handle = await resolve_target(address, device_name, scan_timeout, scanner_factory)

    dispatcher = StreamDispatcher(sinks)
    session = ProtocolSession(dispatcher, config, client_factory)
    for listener in listeners:
        session.add_listener(listener)

    try:
        await session.connect(handle)

        try:
            level = await session.read_battery()
            logger.info("Battery level: %d%%", level)
        except Exception as e:
            logger.warning("Battery level unavailable: %s", e)

        waiters = [asyncio.ensure_future(session.wait_closed())]
        if stop_event is not None:
            waiters.append(asyncio.ensure_future(stop_event.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if session.state is SessionState.FAILED and session.failure is not None:
            raise session.failure
    finally:
        await session.disconnect()
        dispatcher.close()
        _log_summary(session, dispatcher)
    return session.state


def _log_summary(session: ProtocolSession, dispatcher: StreamDispatcher) -> None:
    stats = session.stats
    logger.info(
        "Session summary: %d notification(s), %d batch(es), ECG %d / ACC %d frames, "
        "dropped %s, queue overflows %d, sink failures %d",
        stats.notifications,
        stats.batches,
        stats.frames[SignalType.ECG],
        stats.frames[SignalType.ACC],
        dict(stats.dropped) or "none",
        stats.overflows,
        dispatcher.failure_count(),
    )


def run(
    address: Optional[str] = None,
    *,
    sinks: Sequence[SampleSink],
    device_name: str = DEVICE_NAME,
    scan_timeout: float = 10.0,
    config: Optional[SessionConfig] = None,
    client_factory: Optional[ClientFactory] = None,
) -> int:
    """Blocking wrapper around ``stream()`` for the command line.

    Returns:
        0 on a normal end, 1 on a session failure or unexpected error, 130 on
        Ctrl+C.
    """
    try:
        asyncio.run(
            stream(
                address,
                sinks=sinks,
                device_name=device_name,
                scan_timeout=scan_timeout,
                config=config,
                client_factory=client_factory,
            )
        )
        return 0
    except KeyboardInterrupt:
        return 130
    except SessionError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


def run_scan(device_name: str = DEVICE_NAME, scan_timeout: float = 10.0) -> int:
    """List matching straps on stdout, one ``name<TAB>address`` line each."""
    try:
        handles = asyncio.run(discover(device_name, scan_timeout))
    except KeyboardInterrupt:
        return 130
    except SessionError as e:
        logger.error("%s", e)
        return 1

    for handle in handles:
        print(f"{handle.advertised_name}\t{handle.address}")
    if not handles:
        logger.warning("No device advertising '%s' found", device_name)
        return 1
    return 0
