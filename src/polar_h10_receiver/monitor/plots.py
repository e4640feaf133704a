"""
Figures for the live monitor.
"""

from __future__ import annotations

from typing import Optional, Sequence

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

from ..models import SessionState

STATE_COLORS = {
    SessionState.IDLE: "#6c757d",
    SessionState.SCANNING: "#17a2b8",
    SessionState.CONNECTING: "#ffc107",
    SessionState.DISCOVERING_SERVICES: "#ffc107",
    SessionState.CONFIGURING: "#ffc107",
    SessionState.STREAMING: "#28a745",
    SessionState.DISCONNECTED: "#6c757d",
    SessionState.FAILED: "#dc3545",
}

ACC_AXES = (("X", "red"), ("Y", "green"), ("Z", "blue"))


def _time_axis(count: int, rate_hz: float) -> list[float]:
    # Newest sample at t=0, older samples negative
    return [(i - count + 1) / rate_hz for i in range(count)]


def create_signal_figure(
    ecg: Sequence[Sequence[float]],
    acc: Sequence[Sequence[float]],
    ecg_rate_hz: float = 130.0,
    acc_rate_hz: float = 100.0,
    title: str = "Polar H10",
) -> go.Figure:
    """Stacked ECG and accelerometer traces over the same time window."""
    fig = make_subplots(
        rows=2,
        cols=1,
        shared_xaxes=True,
        vertical_spacing=0.08,
        subplot_titles=("ECG (uV)", "Accelerometer (mg)"),
    )

    if ecg:
        fig.add_trace(
            go.Scatter(
                x=_time_axis(len(ecg), ecg_rate_hz),
                y=[row[0] for row in ecg],
                mode="lines",
                name="ECG",
                line=dict(color="black", width=1.2),
            ),
            row=1,
            col=1,
        )

    if acc:
        t = _time_axis(len(acc), acc_rate_hz)
        for axis, (label, color) in enumerate(ACC_AXES):
            fig.add_trace(
                go.Scatter(
                    x=t,
                    y=[row[axis] for row in acc],
                    mode="lines",
                    name=label,
                    line=dict(color=color, width=1.2),
                ),
                row=2,
                col=1,
            )

    if not ecg and not acc:
        fig.add_annotation(
            x=0.5,
            y=0.5,
            text="No data available",
            showarrow=False,
            xref="paper",
            yref="paper",
            font=dict(size=16, color="gray"),
        )

    fig.update_xaxes(title_text="Time (seconds)", row=2, col=1)
    fig.update_layout(
        title=title,
        showlegend=True,
        height=600,
        margin=dict(l=50, r=20, t=70, b=50),
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
    )
    return fig


def state_badge(state: SessionState, detail: Optional[str] = None) -> tuple[str, dict[str, str]]:
    """Text and style for the session state indicator."""
    text = state.value.replace("_", " ").capitalize()
    if detail:
        text = f"{text}: {detail}"
    style = {
        "color": "white",
        "backgroundColor": STATE_COLORS[state],
        "padding": "6px 12px",
        "borderRadius": "4px",
        "display": "inline-block",
    }
    return text, style
