"""
Reconciler: recompute an account's spending state from the execution log and
correct the ledger.

Each pass is a full recomputation over an extended lookback window; nothing
is carried over from earlier passes. External reads degrade to safe defaults
so one flaky read cannot stop the pass, and a pass that finds nothing to
change is reported as skipped rather than failed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol, TypeVar

from .accounts import AccountLimits, AccountRegistry, Role
from .config import OracleConfig
from .errors import NotLedgerWriter
from .events import ExecutionEvent, OperationEvent, TransferEvent, normalize_address
from .fifo import AccountState, build_account_state
from .ledger import Ledger, LedgerWriter
from .money import bps_of, format_usd

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventSource(Protocol):
    def latest_block(self) -> int: ...

    def operation_events(
        self, from_block: int, to_block: int, account: Optional[str] = None
    ) -> list[OperationEvent]: ...

    def transfer_events(
        self, from_block: int, to_block: int, account: Optional[str] = None
    ) -> list[TransferEvent]: ...

    def correction_tokens(self, account: str, from_block: int, to_block: int) -> set[str]: ...

    def first_block_since(self, timestamp: int) -> Optional[int]: ...


class LedgerClient(Protocol):
    def vault_value(self) -> int: ...

    def spending_allowance(self, account: str) -> int: ...

    def acquired_balance(self, account: str, token: str) -> int: ...

    def account_limits(self, account: str) -> AccountLimits: ...

    def active_accounts(self) -> list[str]: ...

    def batch_update(
        self, account: str, new_allowance: int, tokens: list[str], balances: list[int]
    ) -> None: ...


class LocalLedgerClient:
    """Ledger client over the local SQLite ledger and account registry."""

    def __init__(self, ledger: Ledger, writer: Optional[LedgerWriter], accounts: AccountRegistry):
        self.ledger = ledger
        self.writer = writer
        self.accounts = accounts

    def vault_value(self) -> int:
        return self.ledger.get_vault_value().value_usd

    def spending_allowance(self, account: str) -> int:
        return self.ledger.get_spending_allowance(account)

    def acquired_balance(self, account: str, token: str) -> int:
        return self.ledger.get_acquired_balance(account, token)

    def account_limits(self, account: str) -> AccountLimits:
        return self.accounts.get_limits(account)

    def active_accounts(self) -> list[str]:
        return self.accounts.accounts_with_role(Role.EXECUTE)

    def batch_update(
        self, account: str, new_allowance: int, tokens: list[str], balances: list[int]
    ) -> None:
        if self.writer is None:
            raise NotLedgerWriter(signer="<none>", expected=self.ledger.updater or "<unset>")
        self.writer.batch_update(account, new_allowance, tokens, balances)


class ReconcileStatus(str, Enum):
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    account: str
    status: ReconcileStatus
    new_allowance: int = 0
    previous_allowance: int = 0
    total_spending: int = 0
    balances: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "account": self.account,
            "status": self.status.value,
            "new_allowance": str(self.new_allowance),
            "previous_allowance": str(self.previous_allowance),
            "total_spending": str(self.total_spending),
            "balances": {t: str(b) for t, b in self.balances.items()},
            "error": self.error,
        }


@dataclass
class PlannedUpdate:
    account: str
    new_allowance: int
    previous_allowance: int
    tokens: list[str]
    balances: list[int]
    allowance_changed: bool

    @property
    def has_changes(self) -> bool:
        return self.allowance_changed or bool(self.tokens)


class Reconciler:
    """Computes and pushes corrections for one account at a time."""

    def __init__(
        self,
        events: EventSource,
        ledger: LedgerClient,
        config: Optional[OracleConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.events = events
        self.ledger = ledger
        self.config = config or OracleConfig()
        self._clock = clock

    def _safe(self, what: str, fn: Callable[[], T], default: T) -> T:
        try:
            return fn()
        except Exception as e:
            logger.warning("Read failed (%s), using default %r: %s", what, default, e)
            return default

    def lookback_start(self, to_block: int, limits: AccountLimits) -> int:
        """
        First block to read for an account.

        The block lookback is widened to cover twice the account's spending
        window when the source can map a timestamp to a block, so a burst of
        unrelated writes cannot push in-window spending out of range.
        """
        from_block = max(0, to_block - self.config.extended_lookback_blocks)
        since = int(self._clock()) - 2 * limits.window_duration_seconds
        first = self._safe(
            "first block in window", lambda: self.events.first_block_since(since), None
        )
        if first is not None and first < from_block:
            logger.debug("Widening lookback from block %d to %d", from_block, first)
            from_block = first
        return from_block

    def compute_state(self, account: str, to_block: Optional[int] = None) -> tuple[AccountState, AccountLimits]:
        """Rebuild ``account``'s acquired balances and spending from the log."""
        if to_block is None:
            to_block = self._safe("latest block", self.events.latest_block, 0)
        limits = self._safe(
            f"limits of {account}",
            lambda: self.ledger.account_limits(account),
            AccountLimits(self.config.max_spending_bps, self.config.window_duration_seconds),
        )
        from_block = self.lookback_start(to_block, limits)
        operations = self._safe(
            f"operation events of {account}",
            lambda: self.events.operation_events(from_block, to_block, account),
            [],
        )
        transfers = self._safe(
            f"transfer events of {account}",
            lambda: self.events.transfer_events(from_block, to_block, account),
            [],
        )
        events: list[ExecutionEvent] = [*operations, *transfers]
        state = build_account_state(
            account, events, limits.window_duration_seconds, int(self._clock())
        )
        return state, limits

    def allowance_for(self, state: AccountState, limits: AccountLimits) -> int:
        vault_value = self._safe("vault value", self.ledger.vault_value, 0)
        max_spending = bps_of(vault_value, limits.max_spending_bps)
        allowance = max(0, max_spending - state.total_spending)
        logger.info(
            "Allowance: vault=%s, max_bps=%d, max=%s, spent=%s, new=%s",
            format_usd(vault_value), limits.max_spending_bps, format_usd(max_spending),
            format_usd(state.total_spending), format_usd(allowance),
        )
        return allowance

    def plan(self, account: str, to_block: Optional[int] = None) -> tuple[PlannedUpdate, AccountState]:
        """Work out which ledger values differ from the recomputed state."""
        account = normalize_address(account)
        if to_block is None:
            to_block = self._safe("latest block", self.events.latest_block, 0)
        state, limits = self.compute_state(account, to_block)
        new_allowance = self.allowance_for(state, limits)

        current_allowance = self._safe(
            f"allowance of {account}", lambda: self.ledger.spending_allowance(account), 0
        )
        threshold = bps_of(current_allowance, self.config.allowance_change_threshold_bps)
        allowance_changed = abs(new_allowance - current_allowance) > threshold

        tokens: list[str] = []
        balances: list[int] = []
        for token, balance in sorted(state.acquired_balances.items()):
            current = self._safe(
                f"acquired {token} of {account}",
                lambda t=token: self.ledger.acquired_balance(account, t),
                0,
            )
            if balance != current:
                tokens.append(token)
                balances.append(balance)

        from_block = self.lookback_start(to_block, limits)
        historical = self._safe(
            f"historical tokens of {account}",
            lambda: self.events.correction_tokens(account, from_block, to_block),
            set(),
        )
        for token in sorted(historical - set(state.acquired_balances)):
            current = self._safe(
                f"acquired {token} of {account}",
                lambda t=token: self.ledger.acquired_balance(account, t),
                0,
            )
            if current > 0:
                logger.info("Clearing stale acquired balance for %s: %d -> 0", token, current)
                tokens.append(token)
                balances.append(0)

        planned = PlannedUpdate(
            account=account,
            new_allowance=new_allowance,
            previous_allowance=current_allowance,
            tokens=tokens,
            balances=balances,
            allowance_changed=allowance_changed,
        )
        return planned, state

    def reconcile(self, account: str, to_block: Optional[int] = None) -> ReconcileResult:
        """Recompute ``account`` and push a batch correction if anything changed."""
        account = normalize_address(account)
        try:
            planned, state = self.plan(account, to_block)
            result = ReconcileResult(
                account=account,
                status=ReconcileStatus.SKIPPED,
                new_allowance=planned.new_allowance,
                previous_allowance=planned.previous_allowance,
                total_spending=state.total_spending,
                balances=dict(zip(planned.tokens, planned.balances)),
            )
            if not planned.has_changes:
                logger.info(
                    "Skipping update for %s: no changes (allowance %s)",
                    account, format_usd(planned.new_allowance),
                )
                return result
            self.ledger.batch_update(account, planned.new_allowance, planned.tokens, planned.balances)
            result.status = ReconcileStatus.UPDATED
            logger.info(
                "Updated %s: allowance %s -> %s, %d token balance(s)",
                account, format_usd(planned.previous_allowance),
                format_usd(planned.new_allowance), len(planned.tokens),
            )
            return result
        except Exception as e:
            logger.exception("Reconciliation failed for %s", account)
            return ReconcileResult(account=account, status=ReconcileStatus.FAILED, error=str(e))
