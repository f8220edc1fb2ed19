"""Knowledge store persisted as JSON files under the data directory."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from ..models import (
    BillingLedger,
    Learning,
    SessionEntry,
    SiteKnowledge,
    TaskRecord,
    TestReport,
)
from .base import KnowledgeStore

LOGGER = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_LEARNINGS = TypeAdapter(list[Learning])
_TASKS = TypeAdapter(list[TaskRecord])
_SESSION = TypeAdapter(list[SessionEntry])
_MAX_TASKS = 500


class JsonFileStore(KnowledgeStore):
    """File-backed store; one JSON document per domain, report and session."""

    def __init__(self, root: Path, max_learnings: int = 200) -> None:
        self._root = root
        self._max_learnings = max_learnings
        self._lock = asyncio.Lock()
        self._session_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        self._session: list[SessionEntry] = []
        for sub in ("knowledge", "reports", "sessions"):
            (self._root / sub).mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    async def get_knowledge(self, domain: str) -> Optional[SiteKnowledge]:
        return self._read_model(self._knowledge_path(domain), SiteKnowledge)

    async def save_knowledge(self, knowledge: SiteKnowledge) -> None:
        async with self._lock:
            self._write(self._knowledge_path(knowledge.domain), knowledge.model_dump_json(indent=2))

    async def add_learning(self, learning: Learning) -> None:
        async with self._lock:
            learnings = self._read_list(self._root / "learnings.json", _LEARNINGS)
            learnings.append(learning)
            own = [item for item in learnings if item.domain == learning.domain]
            overflow = len(own) - self._max_learnings
            if overflow > 0:
                dropped = {id(item) for item in own[:overflow]}
                learnings = [item for item in learnings if id(item) not in dropped]
            self._write(self._root / "learnings.json", _LEARNINGS.dump_json(learnings, indent=2))

    async def get_learnings(self, domain: str) -> list[Learning]:
        learnings = self._read_list(self._root / "learnings.json", _LEARNINGS)
        return [item for item in learnings if item.domain == domain]

    async def save_test_report(self, report: TestReport) -> str:
        report_id = uuid.uuid4().hex
        async with self._lock:
            self._write(
                self._root / "reports" / f"{report_id}.json", report.model_dump_json(indent=2)
            )
        return report_id

    async def get_test_report(self, report_id: str) -> Optional[TestReport]:
        if not re.fullmatch(r"[0-9a-f]{32}", report_id):
            return None
        return self._read_model(self._root / "reports" / f"{report_id}.json", TestReport)

    async def save_task_record(self, record: TaskRecord) -> None:
        async with self._lock:
            tasks = self._read_list(self._root / "tasks.json", _TASKS)
            tasks.append(record)
            self._write(self._root / "tasks.json", _TASKS.dump_json(tasks[-_MAX_TASKS:], indent=2))

    async def get_recent_tasks(self, limit: int = 10) -> list[TaskRecord]:
        tasks = self._read_list(self._root / "tasks.json", _TASKS)
        return list(reversed(tasks))[:limit]

    async def add_session_entry(self, entry: SessionEntry) -> None:
        self._session.append(entry)

    async def save_session(self) -> None:
        async with self._lock:
            path = self._root / "sessions" / f"{self._session_id}.json"
            self._write(path, _SESSION.dump_json(self._session, indent=2))

    async def load_ledger(self) -> Optional[BillingLedger]:
        return self._read_model(self._root / "ledger.json", BillingLedger)

    async def save_ledger(self, ledger: BillingLedger) -> None:
        async with self._lock:
            self._write(self._root / "ledger.json", ledger.model_dump_json(indent=2))

    # Internal helpers --------------------------------------------------------

    def _knowledge_path(self, domain: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", domain) or "unknown"
        return self._root / "knowledge" / f"{safe}.json"

    @staticmethod
    def _write(path: Path, payload: bytes | str) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        if isinstance(payload, bytes):
            tmp.write_bytes(payload)
        else:
            tmp.write_text(payload, encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _read_model(path: Path, model: type[ModelT]) -> Optional[ModelT]:
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_bytes())
        except ValidationError:
            LOGGER.exception("Ignoring unreadable store file %s", path)
            return None

    @staticmethod
    def _read_list(path: Path, adapter: TypeAdapter) -> list:
        if not path.exists():
            return []
        try:
            return list(adapter.validate_json(path.read_bytes()))
        except ValidationError:
            LOGGER.exception("Ignoring unreadable store file %s", path)
            return []
