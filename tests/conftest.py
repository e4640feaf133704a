"""Fake bleak clients and scanners shared by the tests."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Callable, Iterable, Optional

import pytest
from bleak.exc import BleakError

from polar_h10_receiver.commands import BATTERY_LEVEL, PMD_CONTROL, PMD_DATA


class FakeClient:
    """Records every GATT operation into a shared log, in call order."""

    def __init__(
        self,
        target: Any,
        disconnected_callback: Optional[Callable[[Any], None]] = None,
        timeout: float = 10.0,
        *,
        log: list,
        fail_connect: bool = False,
        hang_connect: bool = False,
        missing: Iterable[str] = (),
        features: bytes = bytes([0x0F, 0x05, 0x00]),
        fail_feature_read: bool = False,
        hang_feature_read: bool = False,
        fail_write_at: Optional[int] = None,
        hang_write_at: Optional[int] = None,
        drop_link_at_write: Optional[int] = None,
        fail_notify: bool = False,
        notify_on_subscribe: Optional[bytes] = None,
        battery: int = 87,
    ) -> None:
        self.target = target
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.log = log
        self.fail_connect = fail_connect
        self.hang_connect = hang_connect
        self.missing = set(missing)
        self.features = features
        self.fail_feature_read = fail_feature_read
        self.hang_feature_read = hang_feature_read
        self.fail_write_at = fail_write_at
        self.hang_write_at = hang_write_at
        self.drop_link_at_write = drop_link_at_write
        self.fail_notify = fail_notify
        self.notify_on_subscribe = notify_on_subscribe
        self.battery = battery
        self.connected = False
        self.writes = 0
        self.notify_callback: Optional[Callable[[Any, bytearray], None]] = None
        self.services = SimpleNamespace(get_characteristic=self._get_characteristic)

    @property
    def is_connected(self) -> bool:
        return self.connected

    def _get_characteristic(self, uuid: str) -> Optional[SimpleNamespace]:
        if uuid in self.missing:
            return None
        return SimpleNamespace(uuid=uuid)

    async def connect(self) -> bool:
        self.log.append(("connect",))
        if self.hang_connect:
            await asyncio.sleep(3600)
        if self.fail_connect:
            raise BleakError("device not found")
        self.connected = True
        return True

    async def disconnect(self) -> bool:
        self.log.append(("disconnect",))
        was_connected, self.connected = self.connected, False
        if was_connected and self.disconnected_callback is not None:
            self.disconnected_callback(self)
        return True

    async def read_gatt_char(self, uuid: str) -> bytearray:
        self.log.append(("read", uuid))
        if uuid == PMD_CONTROL:
            if self.hang_feature_read:
                await asyncio.sleep(3600)
            if self.fail_feature_read:
                raise BleakError("read not permitted")
            return bytearray(self.features)
        if uuid == BATTERY_LEVEL:
            return bytearray([self.battery])
        raise BleakError(f"unknown characteristic {uuid}")

    async def write_gatt_char(self, uuid: str, data: bytes, response: bool = False) -> None:
        self.log.append(("write", bytes(data), response))
        index = self.writes
        self.writes += 1
        if self.hang_write_at == index:
            await asyncio.sleep(3600)
        if self.drop_link_at_write == index:
            # link drops while the write is in flight; bleak then fails the write
            self.drop_link()
            raise BleakError("Not connected")
        if self.fail_write_at == index:
            raise BleakError("write rejected")

    async def start_notify(self, uuid: str, callback: Callable[[Any, bytearray], None]) -> None:
        self.log.append(("start_notify", uuid))
        if self.fail_notify:
            raise BleakError("notify not permitted")
        self.notify_callback = callback
        if self.notify_on_subscribe is not None:
            callback(None, bytearray(self.notify_on_subscribe))

    async def stop_notify(self, uuid: str) -> None:
        self.log.append(("stop_notify", uuid))
        self.notify_callback = None

    def notify(self, data: bytes) -> None:
        assert self.notify_callback is not None, "not subscribed"
        self.notify_callback(None, bytearray(data))

    def drop_link(self) -> None:
        self.connected = False
        if self.disconnected_callback is not None:
            self.disconnected_callback(self)


class FakeClientFactory:
    def __init__(self, **options: Any) -> None:
        self.options = options
        self.log: list = []
        self.clients: list[FakeClient] = []

    def __call__(
        self,
        target: Any,
        disconnected_callback: Optional[Callable[[Any], None]] = None,
        timeout: float = 10.0,
    ) -> FakeClient:
        client = FakeClient(
            target, disconnected_callback, timeout, log=self.log, **self.options
        )
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeClient:
        return self.clients[-1]

    @property
    def operations(self) -> list[str]:
        return [entry[0] for entry in self.log]


class FakeScanner:
    def __init__(
        self,
        detection_callback: Callable[[Any, Any], None],
        scanning_mode: str = "active",
        *,
        adverts: Iterable[tuple[Any, Any]] = (),
        fail_start: bool = False,
    ) -> None:
        self.detection_callback = detection_callback
        self.scanning_mode = scanning_mode
        self.adverts = list(adverts)
        self.fail_start = fail_start
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        if self.fail_start:
            raise BleakError("Bluetooth adapter not found")
        self.started = True
        for device, adv in self.adverts:
            self.detection_callback(device, adv)

    async def stop(self) -> None:
        self.stopped = True


class FakeScannerFactory:
    def __init__(self, adverts: Iterable[tuple[Any, Any]] = (), fail_start: bool = False):
        self.adverts = list(adverts)
        self.fail_start = fail_start
        self.scanners: list[FakeScanner] = []

    def __call__(self, detection_callback: Callable[[Any, Any], None], scanning_mode: str = "active"):
        scanner = FakeScanner(
            detection_callback,
            scanning_mode,
            adverts=self.adverts,
            fail_start=self.fail_start,
        )
        self.scanners.append(scanner)
        return scanner


def advert(address: str, name: Optional[str], local_name: Optional[str] = None, rssi: int = -60):
    """A (device, advertisement) pair as bleak hands it to detection callbacks."""
    device = SimpleNamespace(address=address, name=name)
    adv = SimpleNamespace(local_name=local_name, rssi=rssi)
    return device, adv


async def drain(rounds: int = 10) -> None:
    """Let queued callbacks and the consumer task run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def make_client_factory() -> Callable[..., FakeClientFactory]:
    return FakeClientFactory


@pytest.fixture
def make_scanner_factory() -> Callable[..., FakeScannerFactory]:
    return FakeScannerFactory


@pytest.fixture
def make_advert() -> Callable[..., tuple[Any, Any]]:
    return advert


@pytest.fixture
def settle() -> Callable[..., Any]:
    return drain
