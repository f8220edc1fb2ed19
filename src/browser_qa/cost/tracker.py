"""Session and billing-cycle cost accounting."""

from __future__ import annotations

import contextlib
import logging
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from ..memory.base import KnowledgeStore
from ..models import BillingLedger, CostSnapshot, UsageData
from ..orchestrator.control import fire_and_forget
from .pricing import get_pricing

LOGGER = logging.getLogger(__name__)


@dataclass
class _PendingUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    open: bool = True


class CostTracker:
    """Prices token usage and keeps running totals.

    Tokens reported via :meth:`add_tokens` stay pending until the next
    :meth:`record`, which prices them at the default model rate and the
    explicit usage at the rate of the model it names. Inside
    :meth:`command_scope` the pending tokens belong to that command alone.
    """

    def __init__(
        self,
        model: str,
        store: Optional[KnowledgeStore] = None,
        *,
        cycle_day: int = 1,
    ) -> None:
        self._model = model
        self._store = store
        self._cycle_day = cycle_day
        self._ledger: Optional[BillingLedger] = None
        self._session = CostSnapshot()
        self._pending = _PendingUsage()
        self._scope: ContextVar[Optional[_PendingUsage]] = ContextVar(
            f"cost_scope_{id(self)}", default=None
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def ledger(self) -> Optional[BillingLedger]:
        return self._ledger

    async def init(self, now: Optional[datetime] = None) -> None:
        """Load the ledger, reset it if a new cycle started and count the session."""

        ledger = await self._store.load_ledger() if self._store else None
        if ledger is None:
            ledger = BillingLedger(cycle_day_of_month=self._cycle_day)
        ledger.cycle_day_of_month = self._cycle_day
        _reset_if_new_cycle(ledger, self._cycle_day, now or datetime.now(timezone.utc))
        ledger.session_count += 1
        self._ledger = ledger
        if self._store:
            await self._store.save_ledger(ledger)

    @contextlib.contextmanager
    def command_scope(self) -> Iterator[None]:
        """Collect the tokens reported inside the block for one command.

        Tokens still pending when the block exits without a :meth:`record`
        are dropped. Tokens that arrive after the command was recorded, e.g.
        from background learning, are charged as they arrive.
        """

        bucket = _PendingUsage()
        reset_token = self._scope.set(bucket)
        try:
            yield
        finally:
            self._scope.reset(reset_token)
            if bucket.open and (bucket.input_tokens or bucket.output_tokens):
                LOGGER.debug(
                    "Dropping %d in / %d out tokens of an unrecorded command",
                    bucket.input_tokens,
                    bucket.output_tokens,
                )
            bucket.open = False
            bucket.input_tokens = 0
            bucket.output_tokens = 0

    def add_tokens(self, input_tokens: int, output_tokens: int) -> None:
        bucket = self._current_bucket()
        if not bucket.open:
            cost = get_pricing(self._model).cost(input_tokens, output_tokens)
            self._charge(input_tokens, output_tokens, cost)
            return
        bucket.input_tokens += input_tokens
        bucket.output_tokens += output_tokens

    def record(self, usage: Optional[UsageData], model: Optional[str] = None) -> CostSnapshot:
        """Price ``usage`` plus any pending tokens and roll them into the totals."""

        bucket = self._current_bucket()
        input_tokens = bucket.input_tokens
        output_tokens = bucket.output_tokens
        cost = get_pricing(self._model).cost(input_tokens, output_tokens)
        if usage is not None:
            cost += get_pricing(model or self._model).cost(usage.input_tokens, usage.output_tokens)
            input_tokens += usage.input_tokens
            output_tokens += usage.output_tokens
        bucket.input_tokens = 0
        bucket.output_tokens = 0
        if bucket is not self._pending:
            bucket.open = False
        self._charge(input_tokens, output_tokens, cost)
        return CostSnapshot(input_tokens=input_tokens, output_tokens=output_tokens, cost_usd=cost)

    def flush(self) -> CostSnapshot:
        return self.record(None)

    def session_total(self) -> CostSnapshot:
        return self._session.model_copy()

    def billing_cycle_total(self) -> CostSnapshot:
        if self._ledger is None:
            return CostSnapshot()
        return CostSnapshot(
            input_tokens=self._ledger.total_input_tokens,
            output_tokens=self._ledger.total_output_tokens,
            cost_usd=self._ledger.total_cost_usd,
        )

    def format_cost_line(self, last_action: CostSnapshot) -> str:
        session = self.session_total()
        billing = self.billing_cycle_total()
        return (
            f"[Cost] Action: ${last_action.cost_usd:.4f} | "
            f"Session: ${session.cost_usd:.4f} | "
            f"Billing cycle: ${billing.cost_usd:.4f} | "
            f"Tokens: {last_action.input_tokens:,} in / {last_action.output_tokens:,} out"
        )

    def _current_bucket(self) -> _PendingUsage:
        bucket = self._scope.get()
        return self._pending if bucket is None else bucket

    def _charge(self, input_tokens: int, output_tokens: int, cost: float) -> None:
        self._session = CostSnapshot(
            input_tokens=self._session.input_tokens + input_tokens,
            output_tokens=self._session.output_tokens + output_tokens,
            cost_usd=self._session.cost_usd + cost,
        )
        if self._ledger is None:
            return
        self._ledger.total_input_tokens += input_tokens
        self._ledger.total_output_tokens += output_tokens
        self._ledger.total_cost_usd += cost
        if self._store:
            fire_and_forget(
                self._store.save_ledger(self._ledger.model_copy()),
                name="save-ledger",
            )


def _reset_if_new_cycle(ledger: BillingLedger, cycle_day: int, now: datetime) -> None:
    start = ledger.cycle_start
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    next_reset = start.replace(day=cycle_day, hour=0, minute=0, second=0, microsecond=0)
    if next_reset <= start:
        if next_reset.month == 12:
            next_reset = next_reset.replace(year=next_reset.year + 1, month=1)
        else:
            next_reset = next_reset.replace(month=next_reset.month + 1)
    if now >= next_reset:
        LOGGER.info("Billing cycle reset (previous start %s)", start.isoformat())
        ledger.cycle_start = now
        ledger.total_cost_usd = 0.0
        ledger.total_input_tokens = 0
        ledger.total_output_tokens = 0
        ledger.session_count = 0
