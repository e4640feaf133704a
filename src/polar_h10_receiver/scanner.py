"""BLE discovery of Polar H10 straps.

Advertisements arrive on bleak's detection callback. Matching ones are turned
into ``PeripheralHandle`` objects and handed to the consumer through an asyncio
queue, so the scan reads as a plain ``async for`` loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .commands import DEVICE_NAME
from .errors import ConnectError
from .models import PeripheralHandle

logger = logging.getLogger(__name__)

ScannerFactory = Callable[..., Any]


class DeviceScanner:
    """Discovers straps whose advertised name contains ``name_filter``.

    Each address is reported at most once per scan. The discovery table belongs
    to the running scan and is cleared when the next scan starts.

    Args:
        name_filter: Substring the advertised local name must contain.
        scanner_factory: Callable building the backend scanner. It receives
            ``detection_callback`` and ``scanning_mode`` keyword arguments and
            defaults to ``BleakScanner``.
    """

    def __init__(
        self,
        name_filter: str = DEVICE_NAME,
        scanner_factory: Optional[ScannerFactory] = None,
    ) -> None:
        self._name_filter = name_filter
        self._scanner_factory: ScannerFactory = scanner_factory or BleakScanner
        self._scanner: Any = None
        self._queue: Optional[asyncio.Queue[Optional[PeripheralHandle]]] = None
        self._seen: dict[str, PeripheralHandle] = {}

    @property
    def is_scanning(self) -> bool:
        return self._queue is not None

    @property
    def discovered(self) -> list[PeripheralHandle]:
        """Handles found by the current (or last) scan, in discovery order."""
        return list(self._seen.values())

    def start_scan(self) -> AsyncIterator[PeripheralHandle]:
        """Start scanning and return an unbounded iterator of new straps.

        The radio is started on the first iteration. The iterator ends once
        ``stop_scan()`` is called.

        Raises:
            RuntimeError: If a scan is already running.
        """
        if self._queue is not None:
            raise RuntimeError("Scan already running; call stop_scan() first")
        self._seen = {}
        self._queue = asyncio.Queue()
        return self._scan(self._queue)

    async def stop_scan(self) -> None:
        """Stop the running scan. Safe to call at any time, any number of times."""
        await self._stop(self._queue)

    async def _stop(self, queue: Optional[asyncio.Queue[Optional[PeripheralHandle]]]) -> None:
        if queue is None or queue is not self._queue:
            return
        self._queue = None
        queue.put_nowait(None)

        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            try:
                await scanner.stop()
            except BleakError as e:
                logger.warning("Error stopping BLE scanner: %s", e)
            logger.info("BLE scan stopped (%d device(s) found)", len(self._seen))

    async def _scan(
        self, queue: asyncio.Queue[Optional[PeripheralHandle]]
    ) -> AsyncIterator[PeripheralHandle]:
        if queue is not self._queue:
            return

        try:
            scanner = self._scanner_factory(
                detection_callback=self._on_advertisement, scanning_mode="active"
            )
            await scanner.start()
        except BleakError as e:
            self._queue = None
            raise ConnectError(
                "BLE scanner initialization failed. Please verify:\n"
                "- Bluetooth is enabled and the adapter is present\n"
                "- Location services are enabled (required for BLE scanning on Windows)\n"
                "- The process is not running inside a VM or WSL\n"
            ) from e

        if queue is not self._queue:
            # stop_scan() ran while the radio was starting
            await scanner.stop()
            return
        self._scanner = scanner
        logger.info("BLE scan started: name filter '%s'", self._name_filter)

        try:
            while True:
                handle = await queue.get()
                if handle is None:
                    break
                yield handle
        finally:
            await self._stop(queue)

    def _on_advertisement(self, device: BLEDevice, adv: AdvertisementData) -> None:
        queue = self._queue
        if queue is None:
            return
        name = adv.local_name or device.name or ""
        if self._name_filter not in name:
            return
        if device.address in self._seen:
            return

        handle = PeripheralHandle(
            address=device.address, advertised_name=name, device=device
        )
        self._seen[device.address] = handle
        logger.info("Device discovered: %s rssi=%s", handle, getattr(adv, "rssi", None))
        queue.put_nowait(handle)


async def find_device(
    name_filter: str = DEVICE_NAME,
    timeout: float = 10.0,
    scanner_factory: Optional[ScannerFactory] = None,
) -> Optional[PeripheralHandle]:
    """Return the first matching strap seen within ``timeout`` seconds, or None."""
    logger.info(
        "BLE device discovery started: name='%s' timeout=%.1fs", name_filter, timeout
    )
    scanner = DeviceScanner(name_filter, scanner_factory)
    scan = scanner.start_scan()

    async def first() -> PeripheralHandle:
        return await scan.__anext__()

    try:
        return await asyncio.wait_for(first(), timeout=timeout)
    except (asyncio.TimeoutError, StopAsyncIteration):
        return None
    finally:
        await scanner.stop_scan()
        await scan.aclose()


async def discover(
    name_filter: str = DEVICE_NAME,
    timeout: float = 10.0,
    scanner_factory: Optional[ScannerFactory] = None,
) -> list[PeripheralHandle]:
    """Scan for ``timeout`` seconds and return every matching strap."""
    scanner = DeviceScanner(name_filter, scanner_factory)
    found: list[PeripheralHandle] = []

    async def collect() -> None:
        async for handle in scanner.start_scan():
            found.append(handle)

    try:
        await asyncio.wait_for(collect(), timeout=timeout)
    except asyncio.TimeoutError:
        pass
    finally:
        await scanner.stop_scan()
    return found
