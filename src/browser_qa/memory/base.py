"""Knowledge and history storage abstractions."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Optional

from ..models import (
    BillingLedger,
    Learning,
    SessionEntry,
    SiteKnowledge,
    TaskRecord,
    TestReport,
)


class KnowledgeStore(ABC):
    """Interface for persisting site knowledge, learnings and run history.

    Every method is a coroutine; callers must not assume a write is durable
    before the returned awaitable completes.
    """

    @abstractmethod
    async def get_knowledge(self, domain: str) -> Optional[SiteKnowledge]:
        """Return what is known about ``domain``, if anything."""

    @abstractmethod
    async def save_knowledge(self, knowledge: SiteKnowledge) -> None:
        """Replace the stored knowledge for ``knowledge.domain``."""

    @abstractmethod
    async def add_learning(self, learning: Learning) -> None:
        """Persist a learning entry."""

    @abstractmethod
    async def get_learnings(self, domain: str) -> list[Learning]:
        """Return learnings recorded for ``domain``."""

    @abstractmethod
    async def save_test_report(self, report: TestReport) -> str:
        """Persist a test report and return its identifier."""

    @abstractmethod
    async def get_test_report(self, report_id: str) -> Optional[TestReport]:
        """Return a previously saved report."""

    @abstractmethod
    async def save_task_record(self, record: TaskRecord) -> None:
        """Persist a task/test history record."""

    @abstractmethod
    async def get_recent_tasks(self, limit: int = 10) -> list[TaskRecord]:
        """Return the most recent task records, newest first."""

    @abstractmethod
    async def add_session_entry(self, entry: SessionEntry) -> None:
        """Append to the current session transcript."""

    @abstractmethod
    async def save_session(self) -> None:
        """Flush the session transcript."""

    @abstractmethod
    async def load_ledger(self) -> Optional[BillingLedger]:
        """Return the persisted billing ledger."""

    @abstractmethod
    async def save_ledger(self, ledger: BillingLedger) -> None:
        """Persist the billing ledger."""


class InMemoryStore(KnowledgeStore):
    """Store that keeps everything in process memory; useful for tests."""

    def __init__(self, max_learnings: int = 200) -> None:
        self._max_learnings = max_learnings
        self.knowledge: dict[str, SiteKnowledge] = {}
        self.learnings: list[Learning] = []
        self.reports: dict[str, TestReport] = {}
        self.tasks: list[TaskRecord] = []
        self.session: list[SessionEntry] = []
        self.ledger: Optional[BillingLedger] = None
        self.session_saves = 0

    async def get_knowledge(self, domain: str) -> Optional[SiteKnowledge]:
        knowledge = self.knowledge.get(domain)
        return knowledge.model_copy(deep=True) if knowledge else None

    async def save_knowledge(self, knowledge: SiteKnowledge) -> None:
        self.knowledge[knowledge.domain] = knowledge.model_copy(deep=True)

    async def add_learning(self, learning: Learning) -> None:
        self.learnings.append(learning)
        self.prune(learning.domain, self._max_learnings)

    async def get_learnings(self, domain: str) -> list[Learning]:
        return [learning for learning in self.learnings if learning.domain == domain]

    def prune(self, domain: str, max_entries: int) -> None:
        """Drop the oldest learnings of ``domain`` beyond ``max_entries``."""

        own = [learning for learning in self.learnings if learning.domain == domain]
        overflow = len(own) - max(max_entries, 0)
        if overflow <= 0:
            return
        dropped = {id(learning) for learning in own[:overflow]}
        self.learnings = [learning for learning in self.learnings if id(learning) not in dropped]

    async def save_test_report(self, report: TestReport) -> str:
        report_id = uuid.uuid4().hex
        self.reports[report_id] = report
        return report_id

    async def get_test_report(self, report_id: str) -> Optional[TestReport]:
        return self.reports.get(report_id)

    async def save_task_record(self, record: TaskRecord) -> None:
        self.tasks.append(record)

    async def get_recent_tasks(self, limit: int = 10) -> list[TaskRecord]:
        return list(reversed(self.tasks))[:limit]

    async def add_session_entry(self, entry: SessionEntry) -> None:
        self.session.append(entry)

    async def save_session(self) -> None:
        self.session_saves += 1

    async def load_ledger(self) -> Optional[BillingLedger]:
        return self.ledger.model_copy() if self.ledger else None

    async def save_ledger(self, ledger: BillingLedger) -> None:
        self.ledger = ledger.model_copy()
