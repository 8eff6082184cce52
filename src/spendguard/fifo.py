"""
FIFO acquired-balance engine.

Rebuilds an account's acquired balances and rolling spending total from its
execution events. The computation is a pure function of ``(events, window,
now)``: nothing is carried between passes, so a skipped or crashed pass is
repaired by the next one.

Acquired tokens are tracked per token as a queue of ``(amount,
original_timestamp)`` entries, oldest first. Operations consume from the front
of the queue; anything whose original acquisition is older than the window is
dropped rather than credited. Outputs inherit the oldest timestamp of the
acquired inputs that funded them, so value never becomes "younger" by being
swapped or deposited.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .events import ExecutionEvent, OperationEvent, OperationType, TransferEvent, sort_events
from .money import BPS_DENOMINATOR

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    amount: int
    original_timestamp: int


class AcquiredQueue:
    """Acquired-balance entries for one token, oldest first."""

    def __init__(self) -> None:
        self._entries: deque[QueueEntry] = deque()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[QueueEntry]:
        return [QueueEntry(e.amount, e.original_timestamp) for e in self._entries]

    def total(self) -> int:
        return sum(e.amount for e in self._entries)

    def add(self, amount: int, original_timestamp: int) -> None:
        if amount > 0:
            self._entries.append(QueueEntry(amount, original_timestamp))

    def consume(self, amount: int, event_timestamp: int, window: int) -> list[QueueEntry]:
        """
        Take up to ``amount`` from the front of the queue.

        Entries already expired at ``event_timestamp`` are discarded without
        being credited. Returns the consumed portions with their original
        timestamps.
        """
        cutoff = event_timestamp - window
        consumed: list[QueueEntry] = []
        remaining = amount
        while remaining > 0 and self._entries:
            head = self._entries[0]
            if head.original_timestamp < cutoff:
                self._entries.popleft()
                continue
            take = min(remaining, head.amount)
            consumed.append(QueueEntry(take, head.original_timestamp))
            remaining -= take
            if take == head.amount:
                self._entries.popleft()
            else:
                head.amount -= take
        return consumed

    def prune(self, now: int, window: int) -> None:
        # Inherited outputs are appended behind younger entries, so expired
        # entries can sit anywhere in the queue.
        cutoff = now - window
        self._entries = deque(e for e in self._entries if e.original_timestamp >= cutoff)


@dataclass
class DepositRecord:
    """A deposit waiting to be matched by a later withdraw or claim."""

    account: str
    target: str
    token_in: str
    amount_in: int
    remaining_amount: int
    timestamp: int
    original_acquisition_timestamp: int
    token_out: Optional[str] = None
    amount_out: int = 0
    remaining_output_amount: int = 0


@dataclass
class SpendingRecord:
    amount: int
    timestamp: int


@dataclass
class AccountState:
    """Result of one reconstruction pass for a single account."""

    acquired_balances: dict[str, int] = field(default_factory=dict)
    total_spending: int = 0
    spending_records: list[SpendingRecord] = field(default_factory=list)
    deposits: list[DepositRecord] = field(default_factory=list)
    queues: dict[str, list[QueueEntry]] = field(default_factory=dict)


def _oldest(entries: Iterable[QueueEntry]) -> int:
    return min(e.original_timestamp for e in entries)


class _Builder:
    def __init__(self, account: str, window: int, now: int):
        self.account = account.lower()
        self.window = window
        self.now = now
        self.window_start = now - window
        self.queues: dict[str, AcquiredQueue] = {}
        self.deposits: deque[DepositRecord] = deque()
        self.spending: list[SpendingRecord] = []

    def queue(self, token: str) -> AcquiredQueue:
        key = token.lower()
        if key not in self.queues:
            self.queues[key] = AcquiredQueue()
        return self.queues[key]

    def accrue(self, amount: int, timestamp: int) -> None:
        if amount > 0 and self.window_start <= timestamp <= self.now:
            self.spending.append(SpendingRecord(amount, timestamp))

    def apply(self, event: ExecutionEvent) -> None:
        if event.account.lower() != self.account:
            return
        if isinstance(event, TransferEvent):
            self.apply_transfer(event)
        elif event.op_type in (OperationType.SWAP, OperationType.DEPOSIT):
            self.apply_spending_operation(event)
        elif event.op_type.is_free:
            self.apply_withdrawal(event)

    def apply_transfer(self, event: TransferEvent) -> None:
        self.accrue(event.spending_cost, event.timestamp)
        if event.amount > 0:
            consumed = self.queue(event.token).consume(event.amount, event.timestamp, self.window)
            logger.debug(
                "transfer: %d of %d %s was acquired",
                sum(e.amount for e in consumed), event.amount, event.token,
            )

    def apply_spending_operation(self, event: OperationEvent) -> None:
        self.accrue(event.spending_cost, event.timestamp)
        consumed: list[QueueEntry] = []
        if event.amount_in > 0:
            consumed = self.queue(event.token_in).consume(
                event.amount_in, event.timestamp, self.window
            )
        consumed_total = sum(e.amount for e in consumed)
        from_original = event.amount_in - consumed_total
        name = event.op_type.name

        if event.op_type == OperationType.DEPOSIT and event.amount_in > 0:
            inherited = _oldest(consumed) if consumed else event.timestamp
            self.deposits.append(
                DepositRecord(
                    account=self.account,
                    target=event.target.lower(),
                    token_in=event.token_in.lower(),
                    amount_in=event.amount_in,
                    remaining_amount=event.amount_in,
                    timestamp=event.timestamp,
                    original_acquisition_timestamp=inherited,
                    token_out=event.token_out.lower() if event.amount_out > 0 else None,
                    amount_out=event.amount_out,
                    remaining_output_amount=event.amount_out,
                )
            )
            logger.debug("%s: recorded deposit of %d, origin %d", name, event.amount_in, inherited)

        if event.amount_out <= 0:
            return
        output = self.queue(event.token_out)
        if consumed_total > 0 and from_original > 0:
            acquired_bps = consumed_total * BPS_DENOMINATOR // event.amount_in
            from_acquired = event.amount_out * acquired_bps // BPS_DENOMINATOR
            oldest = _oldest(consumed)
            output.add(from_acquired, oldest)
            output.add(event.amount_out - from_acquired, event.timestamp)
            logger.debug(
                "%s: mixed input, %d inherits %d, %d new at %d",
                name, from_acquired, oldest, event.amount_out - from_acquired, event.timestamp,
            )
        elif consumed_total > 0:
            oldest = _oldest(consumed)
            output.add(event.amount_out, oldest)
            logger.debug("%s: %d inherits %d", name, event.amount_out, oldest)
        else:
            output.add(event.amount_out, event.timestamp)
            logger.debug("%s: %d newly acquired at %d", name, event.amount_out, event.timestamp)

    def apply_withdrawal(self, event: OperationEvent) -> None:
        if event.amount_out <= 0:
            return
        token_out = event.token_out.lower()
        target = event.target.lower()
        to_match = event.amount_out
        matched_timestamp: Optional[int] = None
        receipts: list[tuple[str, int]] = []

        for deposit in self.deposits:
            if to_match <= 0:
                break
            if (
                deposit.target != target
                or deposit.token_in != token_out
                or deposit.remaining_amount <= 0
            ):
                continue
            take = min(to_match, deposit.remaining_amount)
            deposit.remaining_amount -= take
            to_match -= take
            if matched_timestamp is None or deposit.original_acquisition_timestamp < matched_timestamp:
                matched_timestamp = deposit.original_acquisition_timestamp
            if deposit.token_out and deposit.remaining_output_amount > 0:
                share_bps = take * BPS_DENOMINATOR // deposit.amount_in
                receipt = min(
                    deposit.amount_out * share_bps // BPS_DENOMINATOR,
                    deposit.remaining_output_amount,
                )
                if receipt > 0:
                    deposit.remaining_output_amount -= receipt
                    receipts.append((deposit.token_out, receipt))

        for token, amount in receipts:
            self.queue(token).consume(amount, event.timestamp, self.window)

        matched = event.amount_out - to_match
        if matched > 0 and matched_timestamp is not None:
            self.queue(token_out).add(matched, matched_timestamp)
            logger.debug(
                "%s: %d matched deposits, inherits %d",
                event.op_type.name, matched, matched_timestamp,
            )
        if to_match > 0:
            logger.debug(
                "%s: %d %s unmatched, not acquired", event.op_type.name, to_match, token_out
            )

    def finish(self) -> AccountState:
        balances: dict[str, int] = {}
        queues: dict[str, list[QueueEntry]] = {}
        for token, queue in self.queues.items():
            queue.prune(self.now, self.window)
            balances[token] = queue.total()
            queues[token] = queue.entries
        return AccountState(
            acquired_balances=balances,
            total_spending=sum(r.amount for r in self.spending),
            spending_records=list(self.spending),
            deposits=list(self.deposits),
            queues=queues,
        )


def build_account_state(
    account: str,
    events: Iterable[ExecutionEvent],
    window: int,
    now: int,
) -> AccountState:
    """
    Reconstruct ``account``'s acquired balances and in-window spending.

    Events of other accounts are ignored. Events are sorted by
    ``(timestamp, block_number, log_index)`` before processing. Every token
    the pass touched is reported, including those whose balance is now zero.
    """
    builder = _Builder(account, window, now)
    for event in sort_events(events):
        builder.apply(event)
    return builder.finish()
