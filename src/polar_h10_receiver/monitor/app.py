"""
Dash application showing live ECG/ACC traces and the session state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Optional

import dash  # type: ignore
from dash import dcc, html, Input, Output

from ..models import SessionState, SignalType, StateChange
from ..sinks import BufferSink
from .plots import create_signal_figure, state_badge

logger = logging.getLogger(__name__)

SessionRunner = Callable[[asyncio.Event, Callable[[StateChange], None]], Awaitable[Any]]


class MonitorApp:
    """Web view over a running session.

    The session runs on a background thread with its own asyncio event loop, so
    BLE traffic never waits on the web server. Samples reach the page through a
    ``BufferSink`` that the session's dispatcher feeds; state changes arrive via
    a session listener.

    Args:
        sink: Buffer sink registered with the session's dispatcher.
        run_session: Coroutine function ``(stop_event, listener)`` that runs one
            session until ``stop_event`` is set.
        window_seconds: Width of the plotted time window.
        update_rate: Page refresh rate in frames per second.
    """

    def __init__(
        self,
        sink: BufferSink,
        run_session: SessionRunner,
        window_seconds: float = 5.0,
        update_rate: int = 10,
    ):
        self.sink = sink
        self.window_seconds = window_seconds
        self.update_interval = 1000 // update_rate
        self._run_session = run_session

        self._state = SessionState.IDLE
        self._detail: Optional[str] = None
        self._state_lock = threading.Lock()

        self._data_thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop: Optional[asyncio.Event] = None

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    def _setup_layout(self) -> None:
        self.app.layout = html.Div(
            [
                html.H1("Polar H10 - Live Monitor", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.H3("Session"),
                        html.Div(id="session-state", children="Idle"),
                        html.Div(id="buffer-stats", children="", style={"marginTop": "8px"}),
                    ],
                    style={
                        "padding": "10px",
                        "border": "1px solid #ddd",
                        "borderRadius": "5px",
                        "margin": "20px",
                    },
                ),
                dcc.Graph(
                    id="signal-plot",
                    config={"displayModeBar": True},
                    style={"height": "620px"},
                ),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,
                    n_intervals=0,
                ),
            ]
        )

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("signal-plot", "figure"),
                Output("session-state", "children"),
                Output("session-state", "style"),
                Output("buffer-stats", "children"),
            ],
            [Input("interval-component", "n_intervals")],
        )
        def update(n_intervals: int):  # type: ignore
            return self.render()

    def render(self) -> tuple[Any, str, dict[str, str], str]:
        """Build the figure, state badge and buffer summary for one refresh."""
        ecg_spec = self.sink.spec(SignalType.ECG)
        acc_spec = self.sink.spec(SignalType.ACC)
        ecg_rate = ecg_spec.nominal_rate_hz if ecg_spec else 130.0
        acc_rate = acc_spec.nominal_rate_hz if acc_spec else 100.0

        ecg_buffer = self.sink.buffer(SignalType.ECG)
        acc_buffer = self.sink.buffer(SignalType.ACC)
        ecg = ecg_buffer.get_recent(int(self.window_seconds * ecg_rate)) if ecg_buffer else []
        acc = acc_buffer.get_recent(int(self.window_seconds * acc_rate)) if acc_buffer else []

        figure = create_signal_figure(
            ecg,
            acc,
            ecg_rate,
            acc_rate,
            title=ecg_spec.name if ecg_spec else "Polar H10",
        )

        with self._state_lock:
            text, style = state_badge(self._state, self._detail)

        parts = []
        for label, buffer in (("ECG", ecg_buffer), ("ACC", acc_buffer)):
            if buffer is not None:
                parts.append(
                    f"{label}: {buffer.size}/{buffer.max_size} samples, "
                    f"{buffer.stats.sample_rate:.0f} samples/s"
                )
        return figure, text, style, " | ".join(parts) or "No data"

    def on_state_change(self, change: StateChange) -> None:
        with self._state_lock:
            self._state = change.current
            self._detail = str(change.failure) if change.failure else None

    def _data_collection_worker(self) -> None:
        async def collect() -> None:
            self._stop = asyncio.Event()
            try:
                await self._run_session(self._stop, self.on_state_change)
                logger.info("Session ended")
            except asyncio.CancelledError:
                logger.info("Session cancelled")
            except Exception as e:
                logger.error("Session error: %s: %s", type(e).__name__, e)
                with self._state_lock:
                    if not self._state.is_terminal:
                        self._state = SessionState.FAILED
                    self._detail = str(e)

        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(collect())
        finally:
            self._loop.close()

    def start_data_collection(self) -> None:
        if self._data_thread is None or not self._data_thread.is_alive():
            self._data_thread = threading.Thread(
                target=self._data_collection_worker, daemon=True, name="SessionWorker"
            )
            self._data_thread.start()

    def stop_data_collection(self, timeout: float = 5.0) -> None:
        loop, stop = self._loop, self._stop
        if loop is not None and stop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(stop.set)

        if self._data_thread and self._data_thread.is_alive():
            self._data_thread.join(timeout=timeout)
            if self._data_thread.is_alive():
                logger.warning("Session thread did not stop gracefully")

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the session thread and serve the page until interrupted."""
        self.start_data_collection()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.stop_data_collection()


def create_app(sink: BufferSink, run_session: SessionRunner, **kwargs: Any) -> MonitorApp:
    return MonitorApp(sink=sink, run_session=run_session, **kwargs)
