"""
Policy evaluator.

Flow for every operation an account attempts through the vault:
1. Check the pause switch, roles and the target allowlist
2. Require fresh vault value and account oracle data
3. Classify the call by selector (unknown selectors are rejected)
4. Price and debit the spending budget, or check approval headroom
5. Execute through the vault and measure the output
6. Emit the execution event

Steps 2-6 run inside one ledger unit of work: if the downstream call fails,
every debit is rolled back.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .accounts import AccountRegistry, Role
from .config import PolicyConfig
from .errors import (
    AddressNotAllowed,
    AmountMismatch,
    ApprovalExceedsLimit,
    ExceedsSpendingLimit,
    ModulePaused,
    SpenderNotAllowed,
    StaleOracleData,
    TokenMismatch,
    TransactionFailed,
    Unauthorized,
)
from .events import OperationEvent, OperationType, TransferEvent, ZERO_ADDRESS, normalize_address
from .execution_log import ExecutionLog
from .ledger import Ledger, LedgerTransaction
from .money import format_usd
from .parsers import ParserRegistry, SelectorRegistry, TRANSFER_SIGNATURE, encode_call, parse_approve
from .pricing import PriceValuator
from .vault import Vault

logger = logging.getLogger(__name__)


class PolicyEvaluator:
    """Authorizes, prices, debits and executes account operations."""

    def __init__(
        self,
        ledger: Ledger,
        accounts: AccountRegistry,
        selectors: SelectorRegistry,
        parsers: ParserRegistry,
        valuator: PriceValuator,
        vault: Vault,
        log: ExecutionLog,
        policy: Optional[PolicyConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.selectors = selectors
        self.parsers = parsers
        self.valuator = valuator
        self.vault = vault
        self.log = log
        self.policy = policy or ledger.policy
        self._clock = clock

    # ── Checks ────────────────────────────────────────────────────

    def _authorize(self, account: str, role: Role, target: Optional[str]) -> None:
        if self.accounts.is_paused():
            raise ModulePaused()
        policy = self.accounts.get(account)
        if not policy.has_role(role):
            raise Unauthorized(account, role.value)
        if target is not None and not policy.is_allowed(target):
            raise AddressNotAllowed(account, target)

    def _require_fresh(self, txn: LedgerTransaction, account: str, now: int) -> None:
        self.ledger.check_vault_value(txn.vault_value())
        updated_at = txn.oracle_updated_at(account)
        age = now - updated_at
        if updated_at == 0 or age > self.policy.max_oracle_age_seconds:
            raise StaleOracleData(account, age, self.policy.max_oracle_age_seconds)

    def _call(self, target: str, calldata: bytes) -> None:
        try:
            ok = self.vault.exec_call(target, calldata)
        except Exception as e:
            raise TransactionFailed(target, str(e)) from e
        if not ok:
            raise TransactionFailed(target)

    # ── Operations ────────────────────────────────────────────────

    def execute(
        self,
        account: str,
        target: str,
        calldata: bytes,
        token_in: Optional[str] = None,
        amount_in: Optional[int] = None,
    ) -> OperationEvent:
        """
        Run one protocol call for ``account``.

        ``token_in``/``amount_in`` are the caller's claim about what the call
        spends; for swaps and deposits they must equal what the target's
        parser extracts from ``calldata``.
        """
        account = normalize_address(account)
        target = normalize_address(target)
        self._authorize(account, Role.EXECUTE, target)
        op_type = self.selectors.classify(calldata)

        if op_type == OperationType.APPROVE:
            return self._approve(account, target, calldata)

        parser = self.parsers.get(target)
        parsed_token = parser.extract_input_token(calldata)
        parsed_amount = parser.extract_input_amount(calldata)
        token_out = parser.extract_output_token(calldata)

        now = int(self._clock())
        with self.ledger.unit_of_work() as txn:
            self._require_fresh(txn, account, now)
            cost = 0
            if op_type.is_spending:
                if token_in is None or normalize_address(token_in) != parsed_token:
                    raise TokenMismatch(str(token_in), parsed_token)
                if amount_in != parsed_amount:
                    raise AmountMismatch(amount_in if amount_in is not None else -1, parsed_amount)
                cost = self._debit_spending(txn, account, parsed_token, parsed_amount)

            balance_before = self.vault.balance_of(token_out)
            self._call(target, calldata)
            amount_out = max(0, self.vault.balance_of(token_out) - balance_before)

            event = OperationEvent(
                account=account,
                target=target,
                op_type=op_type,
                token_in=parsed_token,
                amount_in=parsed_amount,
                token_out=token_out,
                amount_out=amount_out,
                spending_cost=cost,
                timestamp=now,
            )
            [event] = self.log.append([event])

        logger.info(
            "%s by %s on %s: in %d %s, out %d %s, cost %s",
            op_type.name, account, target, parsed_amount, parsed_token,
            amount_out, token_out, format_usd(cost),
        )
        return event

    def _debit_spending(
        self, txn: LedgerTransaction, account: str, token: str, amount: int
    ) -> int:
        acquired = txn.acquired_balance(account, token)
        from_original = max(0, amount - acquired)
        cost = self.valuator.value(token, from_original)
        allowance = txn.spending_allowance(account)
        if cost > allowance:
            raise ExceedsSpendingLimit(requested=cost, maximum=allowance)
        txn.debit_allowance(account, cost)
        txn.debit_acquired(account, token, min(amount, acquired))
        return cost

    def _approve(self, account: str, token: str, calldata: bytes) -> OperationEvent:
        spender, amount = parse_approve(calldata)
        policy = self.accounts.get(account)
        if not policy.is_allowed(spender):
            raise SpenderNotAllowed(account, spender)

        now = int(self._clock())
        with self.ledger.unit_of_work() as txn:
            self._require_fresh(txn, account, now)
            beyond_acquired = max(0, amount - txn.acquired_balance(account, token))
            cost = self.valuator.value(token, beyond_acquired)
            allowance = txn.spending_allowance(account)
            if cost > allowance:
                raise ApprovalExceedsLimit(requested=cost, maximum=allowance)

            self._call(token, calldata)
            event = OperationEvent(
                account=account,
                target=token,
                op_type=OperationType.APPROVE,
                token_in=token,
                amount_in=amount,
                token_out=ZERO_ADDRESS,
                amount_out=0,
                spending_cost=0,
                timestamp=now,
            )
            [event] = self.log.append([event])

        logger.info("APPROVE by %s: %d %s to %s", account, amount, token, spender)
        return event

    def transfer_token(self, account: str, token: str, recipient: str, amount: int) -> TransferEvent:
        """Send ``amount`` of ``token`` out of the vault, charged like spending."""
        account = normalize_address(account)
        token = normalize_address(token)
        recipient = normalize_address(recipient)
        if amount <= 0:
            raise ValueError("amount must be positive")
        self._authorize(account, Role.TRANSFER, None)

        now = int(self._clock())
        with self.ledger.unit_of_work() as txn:
            self._require_fresh(txn, account, now)
            cost = self._debit_spending(txn, account, token, amount)
            self._call(token, encode_call(TRANSFER_SIGNATURE, recipient, amount))
            event = TransferEvent(
                account=account,
                token=token,
                recipient=recipient,
                amount=amount,
                spending_cost=cost,
                timestamp=now,
            )
            [event] = self.log.append([event])

        logger.info(
            "TRANSFER by %s: %d %s to %s, cost %s",
            account, amount, token, recipient, format_usd(cost),
        )
        return event
