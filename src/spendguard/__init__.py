"""
Spendguard — Spending limits and acquired-balance accounting for vault accounts.

Every operation is priced and debited against a rolling USD budget before it
runs; an off-chain reconciler rebuilds which tokens were acquired from the
execution log and keeps the ledger in line with it.
"""

__version__ = "0.1.0"

from .accounts import AccountLimits, AccountPolicy, AccountRegistry, Role
from .config import OracleConfig, PolicyConfig
from .events import CorrectionEvent, OperationEvent, OperationType, TransferEvent
from .execution_log import ExecutionLog
from .fifo import AccountState, AcquiredQueue, DepositRecord, build_account_state
from .ledger import Ledger, LedgerUpdate, LedgerWriter, VaultValueWriter
from .parsers import AbiParser, CallLayout, ParserRegistry, SelectorRegistry
from .policy import PolicyEvaluator
from .pricing import PriceValuator, StaticPriceFeed, VaultValueUpdater, compute_vault_value
from .reconciler import LocalLedgerClient, ReconcileResult, ReconcileStatus, Reconciler
from .scheduler import CycleReport, Scheduler

__all__ = [
    "AccountLimits", "AccountPolicy", "AccountRegistry", "Role",
    "OracleConfig", "PolicyConfig",
    "CorrectionEvent", "OperationEvent", "OperationType", "TransferEvent",
    "ExecutionLog",
    "AccountState", "AcquiredQueue", "DepositRecord", "build_account_state",
    "Ledger", "LedgerUpdate", "LedgerWriter", "VaultValueWriter",
    "AbiParser", "CallLayout", "ParserRegistry", "SelectorRegistry",
    "PolicyEvaluator",
    "PriceValuator", "StaticPriceFeed", "VaultValueUpdater", "compute_vault_value",
    "LocalLedgerClient", "ReconcileResult", "ReconcileStatus", "Reconciler",
    "CycleReport", "Scheduler",
]
