from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Optional

from .commands import DEFAULT_PROFILE, DEVICE_NAME, PROFILES, get_profile
from .receiver import run, run_scan, stream
from .session import ClientFactory, SessionConfig
from .sinks import BufferSink, SampleSink

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polar-h10-receiver",
        description="Stream ECG and accelerometer data from a Polar H10 chest strap "
        "over BLE to Lab Streaming Layer outlets.",
    )
    parser.add_argument(
        "--address", help="BLE address of the strap to connect to (scan if omitted)"
    )
    parser.add_argument(
        "--device-name",
        default=DEVICE_NAME,
        help="Advertised-name substring to scan for (default: %(default)s)",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=10.0,
        help="Scan timeout in seconds",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=10.0,
        help="Timeout in seconds for the BLE connection",
    )
    parser.add_argument(
        "--discovery-timeout",
        type=float,
        default=10.0,
        help="Timeout in seconds for the PMD feature read",
    )
    parser.add_argument(
        "--write-timeout",
        type=float,
        default=10.0,
        help="Timeout in seconds for each start command and the subscription",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Warn when no notification arrives for this many seconds (default: off)",
    )
    parser.add_argument(
        "--queue-size",
        type=int,
        default=256,
        help="Capacity of the notification queue (default: %(default)s)",
    )
    parser.add_argument(
        "--firmware",
        default=DEFAULT_PROFILE,
        choices=sorted(PROFILES),
        help="Command profile for the strap firmware (default: %(default)s)",
    )
    parser.add_argument(
        "--stream-name",
        default=None,
        help="LSL stream name (default: the advertised device name)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    parser.add_argument(
        "--scan",
        action="store_true",
        help="List straps in range and exit",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use a synthetic strap (no BLE device required)",
    )
    parser.add_argument(
        "--no-lsl",
        action="store_true",
        help="Do not publish LSL outlets",
    )
    parser.add_argument(
        "--monitor",
        action="store_true",
        help="Serve a live plot of the incoming signals",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="Monitor server port (default: 8050)",
    )
    return parser


def _setup_logging(log_level: str, log_file: Optional[str]) -> None:
    level = getattr(logging, str(log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main() -> None:
    args = _build_parser().parse_args()
    _setup_logging(args.log_level, args.log_file)

    if args.scan:
        raise SystemExit(run_scan(args.device_name, args.scan_timeout))

    config = SessionConfig(
        profile=get_profile(args.firmware),
        connect_timeout=args.connect_timeout,
        discovery_timeout=args.discovery_timeout,
        write_timeout=args.write_timeout,
        idle_timeout=args.idle_timeout,
        queue_size=args.queue_size,
        stream_name=args.stream_name,
    )

    address = args.address
    device_name = args.device_name
    client_factory: Optional[ClientFactory] = None
    if args.mock:
        from .mock import MOCK_ADDRESS, MOCK_NAME, MockPolarClient

        logger.info("Using a synthetic strap (no BLE device required)")
        address, device_name, client_factory = MOCK_ADDRESS, MOCK_NAME, MockPolarClient

    sinks: list[SampleSink] = []
    if not args.no_lsl:
        try:
            from .lsl import LslSink
        except (ImportError, RuntimeError) as e:
            logger.error("LSL is unavailable (%s); use --no-lsl to run without it", e)
            raise SystemExit(1)
        sinks.append(LslSink())

    if not args.monitor:
        if not sinks:
            logger.warning("No output selected; samples are decoded and discarded")
        raise SystemExit(
            run(
                address,
                sinks=sinks,
                device_name=device_name,
                scan_timeout=args.scan_timeout,
                config=config,
                client_factory=client_factory,
            )
        )

    from .monitor import create_app

    buffer_sink = BufferSink()
    sinks.append(buffer_sink)

    async def run_session(stop_event: asyncio.Event, listener: Any) -> None:
        await stream(
            address,
            sinks=sinks,
            device_name=device_name,
            scan_timeout=args.scan_timeout,
            config=config,
            client_factory=client_factory,
            listeners=[listener],
            stop_event=stop_event,
        )

    logger.info("Open http://localhost:%d in your browser", args.port)
    try:
        app = create_app(buffer_sink, run_session)
        app.run(host="0.0.0.0", port=args.port)
    except KeyboardInterrupt:
        logger.info("Shutting down monitor")
        raise SystemExit(130)
    except Exception as e:
        logger.error("Failed to start monitor: %s", e)
        raise SystemExit(1)
