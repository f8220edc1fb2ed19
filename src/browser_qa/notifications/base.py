"""Output sinks that deliver command progress to the user."""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Any, Iterable, Optional

from rich.console import Console

from ..models import NotificationEvent, NotificationLevel


class OutputSink(ABC):
    """Interface for delivering command output.

    Implementations only need :meth:`notify`; the helpers build the typed
    events the router, modes and pipeline emit.
    """

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        """Deliver an output event."""

    def info(self, message: str) -> None:
        self._emit("info", message, NotificationLevel.INFO)

    def success(self, message: str) -> None:
        self._emit("success", message, NotificationLevel.SUCCESS)

    def warn(self, message: str) -> None:
        self._emit("warning", message, NotificationLevel.WARNING)

    def error(self, message: str) -> None:
        self._emit("error", message, NotificationLevel.ERROR)

    def log(self, message: str) -> None:
        self._emit("log", message, NotificationLevel.INFO)

    def agent_message(self, message: str) -> None:
        self._emit("agent_message", message, NotificationLevel.INFO)

    def cost(self, line: str) -> None:
        self._emit("cost", line, NotificationLevel.INFO)

    def separator(self) -> None:
        self._emit("separator", "", NotificationLevel.INFO)

    def mode_switch(self, source: str, target: str, instruction: str) -> None:
        self._emit(
            "mode_switch",
            f"[{source} -> {target}] {instruction}",
            NotificationLevel.INFO,
            {"from": source, "to": target, "instruction": instruction},
        )

    def test_step(self, index: int, total: int, action: str, status: str) -> None:
        level = {
            "pass": NotificationLevel.SUCCESS,
            "fail": NotificationLevel.ERROR,
            "skip": NotificationLevel.WARNING,
        }.get(status, NotificationLevel.INFO)
        self._emit(
            "test_step",
            f"[{index + 1}/{total}] {status.upper()} {action}",
            level,
            {"index": index, "total": total, "status": status},
        )

    def _emit(
        self,
        event_type: str,
        message: str,
        level: NotificationLevel,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        self.notify(
            NotificationEvent(type=event_type, message=message, level=level, data=data or {})
        )


class ConsoleSink(OutputSink):
    """Sink that prints to the terminal using Rich."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self._console = console or Console()

    def notify(self, event: NotificationEvent) -> None:
        if event.type == "separator":
            self._console.rule(style="dim")
            return
        if event.type in {"log", "cost"}:
            self._console.print(event.message, style="dim", markup=False, highlight=False)
            return
        if event.type == "agent_message":
            self._console.print(event.message, markup=False)
            return
        style = {
            "info": "cyan",
            "warning": "yellow",
            "error": "red",
            "success": "green",
        }.get(event.level.value, "white")
        self._console.print(event.message, style=style, markup=False, highlight=False)


class CollectingSink(OutputSink):
    """Sink that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def messages(self, event_type: Optional[str] = None) -> list[str]:
        return [
            event.message
            for event in self.events
            if event_type is None or event.type == event_type
        ]


class LoggingSink(OutputSink):
    """Sink that forwards events to the standard logging module."""

    _LEVELS = {
        NotificationLevel.INFO: logging.INFO,
        NotificationLevel.SUCCESS: logging.INFO,
        NotificationLevel.WARNING: logging.WARNING,
        NotificationLevel.ERROR: logging.ERROR,
    }

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("browser_qa.events")

    def notify(self, event: NotificationEvent) -> None:
        if event.type == "separator":
            return
        level = self._LEVELS.get(event.level, logging.INFO)
        self._logger.log(level, "[%s] %s", event.type, event.message)


class NullSink(OutputSink):
    """Sink that discards all output."""

    def notify(self, event: NotificationEvent) -> None:
        return


class CompositeSink(OutputSink):
    """Fan-out sink that propagates events to multiple sinks."""

    def __init__(self, sinks: Iterable[OutputSink]) -> None:
        self._sinks = list(sinks)

    def notify(self, event: NotificationEvent) -> None:
        for sink in self._sinks:
            sink.notify(event)
