import asyncio
import functools

import pytest

from polar_h10_receiver.commands import (
    ACC_100HZ_4G,
    BATTERY_LEVEL,
    ECG_130HZ,
    PMD_CONTROL,
    PMD_DATA,
)
from polar_h10_receiver.dispatcher import StreamDispatcher
from polar_h10_receiver.errors import (
    ConfigError,
    ConnectError,
    InvalidTransition,
    ProtocolMismatch,
)
from polar_h10_receiver.mock import (
    CONTROL_ECHO,
    MockPolarClient,
    encode_acc_frame,
    encode_ecg_frame,
)
from polar_h10_receiver.models import (
    PeripheralHandle,
    SessionEvent,
    SessionState,
    SignalType,
)
from polar_h10_receiver.scanner import DeviceScanner
from polar_h10_receiver.session import (
    ProtocolSession,
    SessionConfig,
    next_state,
)
from polar_h10_receiver.sinks import BufferSink

S = SessionState
E = SessionEvent

EXPECTED_TRANSITIONS = {
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
EXPECTED_TRANSITIONS.update({(state, E.DISCONNECT): S.DISCONNECTED for state in S})


@pytest.mark.parametrize("state", list(S), ids=lambda s: s.value)
@pytest.mark.parametrize("event", list(E), ids=lambda e: e.value)
def test_transition_table(state, event):
    expected = EXPECTED_TRANSITIONS.get((state, event))
    if expected is None:
        with pytest.raises(InvalidTransition):
            next_state(state, event)
    else:
        assert next_state(state, event) is expected


def test_streaming_only_reachable_through_acknowledged_configuration():
    sources = [key for key, target in EXPECTED_TRANSITIONS.items() if target is S.STREAMING]
    assert sorted(sources, key=str) == sorted(
        [(S.CONFIGURING, E.WRITE_ACKED), (S.STREAMING, E.NOTIFICATION)], key=str
    )


def make_session(factory, *sinks, **config):
    dispatcher = StreamDispatcher(list(sinks))
    return ProtocolSession(dispatcher, SessionConfig(**config), client_factory=factory)


def test_handshake_order(make_client_factory):
    factory = make_client_factory()

    async def scenario():
        session = make_session(factory)
        await session.connect("AA:BB:CC:DD:EE:FF")
        assert session.state is S.STREAMING
        assert session.features == {SignalType.ECG, SignalType.ACC}
        await session.disconnect()
        return session

    session = asyncio.run(scenario())
    assert session.state is S.DISCONNECTED
    assert factory.operations == [
        "connect",
        "read",
        "write",
        "write",
        "start_notify",
        "stop_notify",
        "disconnect",
    ]
    writes = [entry for entry in factory.log if entry[0] == "write"]
    assert [entry[1] for entry in writes] == [ECG_130HZ.to_bytes(), ACC_100HZ_4G.to_bytes()]
    assert all(entry[2] is True for entry in writes)
    assert ("read", PMD_CONTROL) in factory.log
    assert ("start_notify", PMD_DATA) in factory.log


def test_observed_state_sequence(make_client_factory):
    factory = make_client_factory()
    changes = []

    async def scenario():
        session = make_session(factory)
        session.add_listener(changes.append)
        await session.connect("AA:BB")
        factory.client.notify(encode_ecg_frame([1, 2, 3]))
        await session.disconnect()

    asyncio.run(scenario())
    assert [(c.previous, c.current) for c in changes] == [
        (S.IDLE, S.CONNECTING),
        (S.CONNECTING, S.DISCOVERING_SERVICES),
        (S.DISCOVERING_SERVICES, S.CONFIGURING),
        (S.CONFIGURING, S.STREAMING),
        (S.STREAMING, S.DISCONNECTED),
    ]


def test_client_built_from_backend_device(make_client_factory):
    factory = make_client_factory()
    device = object()
    handle = PeripheralHandle("AA:BB", "Polar H10 1", device=device)

    async def scenario():
        session = make_session(factory, connect_timeout=3.0)
        await session.connect(handle)
        assert session.peripheral == handle
        await session.disconnect()

    asyncio.run(scenario())
    assert factory.client.target is device
    assert factory.client.timeout == 3.0


@pytest.mark.parametrize(
    "options, error, operations",
    [
        ({"fail_connect": True}, ConnectError, ["connect", "disconnect"]),
        ({"missing": [PMD_DATA]}, ProtocolMismatch, ["connect", "disconnect"]),
        ({"missing": [PMD_CONTROL]}, ProtocolMismatch, ["connect", "disconnect"]),
        (
            {"fail_write_at": 0},
            ConfigError,
            ["connect", "read", "write", "disconnect"],
        ),
        (
            {"fail_write_at": 1},
            ConfigError,
            ["connect", "read", "write", "write", "disconnect"],
        ),
        (
            {"fail_notify": True},
            ConfigError,
            ["connect", "read", "write", "write", "start_notify", "disconnect"],
        ),
    ],
    ids=[
        "connect",
        "missing-data",
        "missing-control",
        "ecg-write",
        "acc-write",
        "subscribe",
    ],
)
def test_failures_end_in_failed_state(make_client_factory, options, error, operations):
    factory = make_client_factory(**options)
    changes = []

    async def scenario():
        session = make_session(factory)
        session.add_listener(changes.append)
        with pytest.raises(error):
            await session.connect("AA:BB")
        assert await asyncio.wait_for(session.wait_closed(), 1.0) is S.FAILED
        return session

    session = asyncio.run(scenario())
    assert session.state is S.FAILED
    assert isinstance(session.failure, error)
    assert changes[-1].current is S.FAILED
    assert changes[-1].failure is session.failure
    assert factory.operations == operations


def test_connect_timeout(make_client_factory):
    factory = make_client_factory(hang_connect=True)

    async def scenario():
        session = make_session(factory, connect_timeout=0.05)
        with pytest.raises(ConnectError, match="timed out"):
            await session.connect("AA:BB")
        return session

    session = asyncio.run(scenario())
    assert session.state is S.FAILED


def test_unacknowledged_write_times_out(make_client_factory):
    factory = make_client_factory(hang_write_at=0)

    async def scenario():
        session = make_session(factory, write_timeout=0.05)
        with pytest.raises(ConfigError, match="not acknowledged"):
            await session.connect("AA:BB")
        return session

    session = asyncio.run(scenario())
    assert session.state is S.FAILED
    assert isinstance(session.failure, ConfigError)
    assert factory.operations == ["connect", "read", "write", "disconnect"]


def test_feature_read_timeout_is_protocol_mismatch(make_client_factory):
    factory = make_client_factory(hang_feature_read=True)

    async def scenario():
        session = make_session(factory, discovery_timeout=0.05)
        with pytest.raises(ProtocolMismatch, match="timed out"):
            await session.connect("AA:BB")
        return session

    session = asyncio.run(scenario())
    assert session.state is S.FAILED
    assert factory.operations == ["connect", "read", "disconnect"]


def test_link_loss_during_write_reports_connect_error(make_client_factory):
    factory = make_client_factory(drop_link_at_write=1)

    async def scenario():
        session = make_session(factory)
        with pytest.raises(ConnectError, match="lost") as excinfo:
            await session.connect("AA:BB")
        await asyncio.sleep(0.05)
        return session, excinfo.value

    session, error = asyncio.run(scenario())
    assert error is session.failure
    assert session.state is S.FAILED
    assert factory.operations == ["connect", "read", "write", "write", "disconnect"]


def test_battery_read_rejected_during_handshake(make_client_factory):
    factory = make_client_factory(hang_write_at=0)

    async def scenario():
        session = make_session(factory, write_timeout=0.3)
        task = asyncio.ensure_future(session.connect("AA:BB"))
        while session.state is not S.CONFIGURING:
            await asyncio.sleep(0.01)
        with pytest.raises(RuntimeError, match="streaming"):
            await session.read_battery()
        with pytest.raises(ConfigError):
            await task

    asyncio.run(scenario())
    assert ("read", BATTERY_LEVEL) not in factory.log


def test_feature_read_failure_is_not_fatal(make_client_factory):
    factory = make_client_factory(fail_feature_read=True)

    async def scenario():
        session = make_session(factory)
        await session.connect("AA:BB")
        state = session.state
        await session.disconnect()
        return session, state

    session, state = asyncio.run(scenario())
    assert state is S.STREAMING
    assert session.features == set()


def test_samples_reach_sink(make_client_factory, settle):
    factory = make_client_factory()
    sink = BufferSink()

    async def scenario():
        session = make_session(factory, sink)
        await session.connect("AA:BB")
        factory.client.notify(encode_ecg_frame([100, -200, 300]))
        factory.client.notify(encode_acc_frame([(1, 2, 3), (-4, -5, -6)]))
        await settle()
        ecg = sink.buffer(SignalType.ECG).get_recent(10)
        acc = sink.buffer(SignalType.ACC).get_recent(10)
        spec = sink.spec(SignalType.ACC)
        await session.disconnect()
        return session, ecg, acc, spec

    session, ecg, acc, spec = asyncio.run(scenario())
    assert ecg == [(100.0,), (-200.0,), (300.0,)]
    assert acc == [(1.0, 2.0, 3.0), (-4.0, -5.0, -6.0)]
    assert spec.name == "AA:BB_acc"
    assert session.stats.batches == 2
    assert session.stats.frames[SignalType.ECG] == 3


def test_unknown_frames_are_dropped_without_state_change(make_client_factory, settle):
    factory = make_client_factory()
    sink = BufferSink()
    changes = []

    async def scenario():
        session = make_session(factory, sink)
        await session.connect("AA:BB")
        session.add_listener(changes.append)
        factory.client.notify(bytes([0x7F]) + bytes(12))
        factory.client.notify(CONTROL_ECHO)
        factory.client.notify(b"")
        await settle()
        state = session.state
        await session.disconnect()
        return session, state

    session, state = asyncio.run(scenario())
    assert state is S.STREAMING
    assert session.stats.dropped["unknown_type"] == 2
    assert session.stats.dropped["empty"] == 1
    assert session.stats.batches == 0
    assert [c.current for c in changes] == [S.DISCONNECTED]


def test_notification_before_streaming_is_dropped(make_client_factory, settle):
    factory = make_client_factory(notify_on_subscribe=encode_ecg_frame([1, 2, 3]))
    sink = BufferSink()

    async def scenario():
        session = make_session(factory, sink)
        await session.connect("AA:BB")
        await settle()
        samples = sink.buffer(SignalType.ECG).get_recent(10)
        await session.disconnect()
        return session, samples

    session, samples = asyncio.run(scenario())
    assert samples == []
    assert session.stats.dropped["not_streaming"] == 1


def test_queue_overflow_drops_notifications(make_client_factory, settle):
    factory = make_client_factory()

    async def scenario():
        session = make_session(factory, queue_size=2)
        await session.connect("AA:BB")
        for _ in range(5):
            factory.client.notify(encode_ecg_frame([1]))
        await settle()
        await session.disconnect()
        return session

    session = asyncio.run(scenario())
    assert session.stats.overflows == 3
    assert session.stats.batches == 2


def test_link_loss_while_streaming(make_client_factory):
    factory = make_client_factory()

    async def scenario():
        session = make_session(factory)
        await session.connect("AA:BB")
        factory.client.drop_link()
        state = await asyncio.wait_for(session.wait_closed(), 1.0)
        await asyncio.sleep(0.05)
        return session, state

    session, state = asyncio.run(scenario())
    assert state is S.FAILED
    assert isinstance(session.failure, ConnectError)
    assert factory.operations[-2:] == ["stop_notify", "disconnect"]


def test_disconnect_from_idle_and_twice(make_client_factory):
    factory = make_client_factory()

    async def scenario():
        session = make_session(factory)
        await session.disconnect()
        await session.disconnect()
        return session

    session = asyncio.run(scenario())
    assert session.state is S.DISCONNECTED
    assert factory.clients == []


def test_disconnect_after_failure(make_client_factory):
    factory = make_client_factory(fail_connect=True)

    async def scenario():
        session = make_session(factory)
        with pytest.raises(ConnectError):
            await session.connect("AA:BB")
        await session.disconnect()
        return session

    session = asyncio.run(scenario())
    assert session.state is S.DISCONNECTED
    assert isinstance(session.failure, ConnectError)


def test_connect_twice_is_rejected(make_client_factory):
    factory = make_client_factory()

    async def scenario():
        session = make_session(factory)
        await session.connect("AA:BB")
        try:
            with pytest.raises(InvalidTransition):
                await session.connect("AA:BB")
            assert session.state is S.STREAMING
        finally:
            await session.disconnect()

    asyncio.run(scenario())


def test_read_battery(make_client_factory):
    factory = make_client_factory(battery=64)

    async def scenario():
        session = make_session(factory)
        with pytest.raises(RuntimeError):
            await session.read_battery()
        async with session:
            await session.connect("AA:BB")
            level = await session.read_battery()
        return session, level

    session, level = asyncio.run(scenario())
    assert level == 64
    assert session.state is S.DISCONNECTED


def test_listener_errors_are_contained(make_client_factory):
    factory = make_client_factory()
    seen = []

    def broken(change):
        raise ValueError("listener bug")

    async def scenario():
        session = make_session(factory)
        session.add_listener(broken)
        remove = session.add_listener(seen.append)
        await session.connect("AA:BB")
        remove()
        await session.disconnect()
        return session

    session = asyncio.run(scenario())
    assert session.state is S.DISCONNECTED
    assert seen[-1].current is S.STREAMING


def test_scan_then_connect_stops_scanner(make_client_factory, make_scanner_factory, make_advert):
    scanners = make_scanner_factory([make_advert("AA:01", "Polar H10 1")])
    factory = make_client_factory()

    async def scenario():
        session = ProtocolSession(
            StreamDispatcher([]),
            client_factory=factory,
            scanner=DeviceScanner(scanner_factory=scanners),
        )
        scan = session.scan()
        assert session.state is S.SCANNING
        handle = await scan.__anext__()
        await session.connect(handle)
        state = session.state
        await session.disconnect()
        await scan.aclose()
        return state

    assert asyncio.run(scenario()) is S.STREAMING
    assert scanners.scanners[0].stopped


def test_stop_scan_returns_to_idle(make_scanner_factory):
    async def scenario():
        session = ProtocolSession(scanner=DeviceScanner(scanner_factory=make_scanner_factory()))
        scan = session.scan()
        await session.stop_scan()
        await scan.aclose()
        return session

    assert asyncio.run(scenario()).state is S.IDLE


def test_mock_strap_end_to_end():
    sink = BufferSink()
    factory = functools.partial(MockPolarClient, frame_interval=0.005)

    async def scenario():
        session = make_session(factory, sink, stream_name="Polar H10 MOCK")
        await session.connect("00:00:00:00:00:00")
        await asyncio.sleep(1.0)
        level = await session.read_battery()
        ecg = sink.buffer(SignalType.ECG).size
        acc = sink.buffer(SignalType.ACC).size
        await session.disconnect()
        return session, level, ecg, acc

    session, level, ecg, acc = asyncio.run(scenario())
    assert session.state is S.DISCONNECTED
    assert level == 87
    assert ecg > 0
    assert acc > 0
    assert session.stats.dropped["unknown_type"] >= 1
