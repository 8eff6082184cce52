"""
Execution events.

Events are immutable facts produced by the policy evaluator (operations and
transfers) and by the ledger (corrections). The reconciler rebuilds all
derived state from them, so they carry everything needed to order them:
``(timestamp, block_number, log_index)``.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import ClassVar, Iterable, Optional, Union


ZERO_ADDRESS = "0x" + "0" * 40

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return candidate.lower()


class OperationType(IntEnum):
    """Operation classes, numbered as in the on-chain module."""

    UNKNOWN = 0
    SWAP = 1
    DEPOSIT = 2
    WITHDRAW = 3
    CLAIM = 4
    APPROVE = 5

    @property
    def is_spending(self) -> bool:
        return self in (OperationType.SWAP, OperationType.DEPOSIT)

    @property
    def is_free(self) -> bool:
        return self in (OperationType.WITHDRAW, OperationType.CLAIM)


@dataclass(frozen=True)
class OperationEvent:
    """A protocol interaction executed through the vault."""

    kind: ClassVar[str] = "operation"

    account: str
    target: str
    op_type: OperationType
    token_in: str
    amount_in: int
    token_out: str
    amount_out: int
    spending_cost: int
    timestamp: int
    block_number: int = 0
    log_index: int = 0

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.timestamp, self.block_number, self.log_index)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["kind"] = self.kind
        d["op_type"] = self.op_type.name
        return d


@dataclass(frozen=True)
class TransferEvent:
    """A direct token transfer out of the vault."""

    kind: ClassVar[str] = "transfer"

    account: str
    token: str
    recipient: str
    amount: int
    spending_cost: int
    timestamp: int
    block_number: int = 0
    log_index: int = 0

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.timestamp, self.block_number, self.log_index)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["kind"] = self.kind
        return d


@dataclass(frozen=True)
class CorrectionEvent:
    """A ledger write. ``token`` is None for spending-allowance writes."""

    kind: ClassVar[str] = "correction"

    account: str
    token: Optional[str]
    new_balance: int
    timestamp: int
    block_number: int = 0
    log_index: int = 0

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.timestamp, self.block_number, self.log_index)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["kind"] = self.kind
        return d


ExecutionEvent = Union[OperationEvent, TransferEvent]
LogEvent = Union[OperationEvent, TransferEvent, CorrectionEvent]


def event_from_dict(data: dict) -> LogEvent:
    payload = {k: v for k, v in data.items() if k != "kind"}
    kind = data.get("kind")
    if kind == OperationEvent.kind:
        payload["op_type"] = OperationType[payload["op_type"]]
        return OperationEvent(**payload)
    if kind == TransferEvent.kind:
        return TransferEvent(**payload)
    if kind == CorrectionEvent.kind:
        return CorrectionEvent(**payload)
    raise ValueError(f"Unknown event kind: {kind!r}")


def sort_events(events: Iterable[ExecutionEvent]) -> list[ExecutionEvent]:
    """Merge operation and transfer events into chronological order."""
    return sorted(events, key=lambda e: e.sort_key)
