from __future__ import annotations

import io
import logging

import pytest
from rich.console import Console

from browser_qa.config import NotificationConfig
from browser_qa.factory import build_sink
from browser_qa.notifications.base import (
    CollectingSink,
    CompositeSink,
    ConsoleSink,
    LoggingSink,
    NullSink,
)


def test_build_sink_single_channel() -> None:
    assert isinstance(build_sink(NotificationConfig()), ConsoleSink)
    assert isinstance(build_sink(NotificationConfig(channel="null")), NullSink)
    assert isinstance(build_sink(NotificationConfig(channel=" Log ")), LoggingSink)


def test_build_sink_combines_channels() -> None:
    sink = build_sink(NotificationConfig(channel="console, log"))

    assert isinstance(sink, CompositeSink)


def test_build_sink_rejects_unknown_channel() -> None:
    with pytest.raises(ValueError, match="Unsupported notification channel: slack"):
        build_sink(NotificationConfig(channel="console,slack"))


def test_logging_sink_maps_levels(caplog: pytest.LogCaptureFixture) -> None:
    sink = LoggingSink()

    with caplog.at_level(logging.INFO, logger="browser_qa.events"):
        sink.info("Starting browser")
        sink.separator()
        sink.error("Command failed: boom")
        sink.test_step(0, 2, "Open settings", "skip")

    records = [(record.levelno, record.getMessage()) for record in caplog.records]
    assert records == [
        (logging.INFO, "[info] Starting browser"),
        (logging.ERROR, "[error] Command failed: boom"),
        (logging.WARNING, "[test_step] [1/2] SKIP Open settings"),
    ]


def test_composite_sink_fans_out() -> None:
    first, second = CollectingSink(), CollectingSink()
    sink = CompositeSink([first, second])

    sink.mode_switch("chat", "act", "Click Save")

    assert first.messages("mode_switch") == ["[chat -> act] Click Save"]
    assert second.messages() == first.messages()


def test_console_sink_prints_plain_text() -> None:
    buffer = io.StringIO()
    sink = ConsoleSink(Console(file=buffer, width=80, color_system=None))

    sink.warn("[bold]not markup[/bold]")
    sink.cost("$0.0100")

    output = buffer.getvalue()
    assert "[bold]not markup[/bold]" in output
    assert "$0.0100" in output
