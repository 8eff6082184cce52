"""
Authoritative spending ledger.

Holds per-account spending allowances, per-(account, token) acquired
balances and the vault value snapshot. State is persisted in SQLite with
BEGIN IMMEDIATE transactions; the database files are sealed with an HMAC so
edits made outside this module are detected.

Only the authorized updater may overwrite allowances and balances. Every such
write is an EIP-712 ``LedgerUpdate`` signed by the updater's key and carrying
the ledger's current nonce, which serializes writers and rejects replays. The
policy evaluator's debits go through ``unit_of_work`` instead, so they commit
or roll back together with the external call they pay for.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import logging
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount

from .config import PolicyConfig
from .errors import (
    ExceedsAbsoluteMaxSpending,
    LedgerTampered,
    NotLedgerWriter,
    StalePortfolioValue,
    StaleUpdateNonce,
)
from .events import CorrectionEvent, normalize_address
from .execution_log import ExecutionLog
from .money import bps_of
from .storage import ensure_private_dir, ensure_private_file, state_dir

logger = logging.getLogger(__name__)


_DOMAIN = {"name": "Spendguard Ledger", "version": "1"}


@dataclass
class VaultValueSnapshot:
    """Vault value in 18-decimal USD as last pushed by the vault-value updater."""

    value_usd: int = 0
    last_updated: int = 0
    update_count: int = 0

    def age(self, now: int) -> int:
        return max(0, now - self.last_updated)


@dataclass
class LedgerEntry:
    """An account's ledger state."""

    account: str
    spending_allowance: int = 0
    oracle_updated_at: int = 0
    acquired_balances: dict[str, int] = field(default_factory=dict)


@dataclass
class LedgerUpdate:
    """A signed overwrite of an account's allowance and/or acquired balances."""

    account: str
    update_allowance: bool
    new_allowance: int
    tokens: list[str]
    balances: list[int]
    nonce: int

    def __post_init__(self) -> None:
        if len(self.tokens) != len(self.balances):
            raise ValueError("tokens and balances must have the same length")
        if self.new_allowance < 0 or any(b < 0 for b in self.balances):
            raise ValueError("allowance and balances must be non-negative")

    def to_eip712_message(self) -> dict:
        return {
            "types": {
                "LedgerUpdate": [
                    {"name": "account", "type": "address"},
                    {"name": "updateAllowance", "type": "bool"},
                    {"name": "newAllowance", "type": "uint256"},
                    {"name": "tokens", "type": "address[]"},
                    {"name": "balances", "type": "uint256[]"},
                    {"name": "nonce", "type": "uint256"},
                ],
            },
            "primaryType": "LedgerUpdate",
            "domain": _DOMAIN,
            "message": {
                "account": self.account,
                "updateAllowance": self.update_allowance,
                "newAllowance": self.new_allowance,
                "tokens": list(self.tokens),
                "balances": list(self.balances),
                "nonce": self.nonce,
            },
        }

    def sign(self, signer: LocalAccount) -> str:
        typed = self.to_eip712_message()
        signed = signer.sign_typed_data(typed["domain"], typed["types"], typed["message"])
        return signed.signature.hex()


def _vault_value_message(value_usd: int, update_count: int) -> dict:
    return {
        "types": {
            "VaultValue": [
                {"name": "valueUsd", "type": "uint256"},
                {"name": "updateCount", "type": "uint256"},
            ],
        },
        "primaryType": "VaultValue",
        "domain": _DOMAIN,
        "message": {"valueUsd": value_usd, "updateCount": update_count},
    }


def _recover_signer(typed_data: dict, signature: str) -> str:
    signable = encode_typed_data(
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    sig = signature[2:] if signature.startswith("0x") else signature
    return Account.recover_message(signable, signature=bytes.fromhex(sig)).lower()


class LedgerTransaction:
    """Reads and debits inside one ledger unit of work."""

    def __init__(self, ledger: Ledger, conn: sqlite3.Connection):
        self._ledger = ledger
        self._conn = conn

    def spending_allowance(self, account: str) -> int:
        return self._ledger._read_allowance(self._conn, account)

    def acquired_balance(self, account: str, token: str) -> int:
        return self._ledger._read_acquired(self._conn, account, token)

    def vault_value(self) -> VaultValueSnapshot:
        return self._ledger._read_vault_value(self._conn)

    def oracle_updated_at(self, account: str) -> int:
        row = self._conn.execute(
            "SELECT oracle_updated_at FROM spending_allowance WHERE account = ?",
            (normalize_address(account),),
        ).fetchone()
        return row["oracle_updated_at"] if row else 0

    def debit_allowance(self, account: str, amount: int) -> int:
        current = self.spending_allowance(account)
        if amount > current:
            raise ValueError(f"Debit {amount} exceeds allowance {current}")
        remaining = current - amount
        self._ledger._write_allowance(self._conn, account, remaining, oracle_write=False)
        return remaining

    def debit_acquired(self, account: str, token: str, amount: int) -> int:
        current = self.acquired_balance(account, token)
        remaining = max(0, current - amount)
        self._ledger._write_acquired(self._conn, account, token, remaining)
        return remaining


class Ledger:
    """
    Single-writer store for spending state.

    ``updater`` is the address whose signatures authorize allowance and
    balance writes; ``vault_value_updater`` authorizes vault value pushes.
    Both are persisted on first use so later processes can open the ledger
    without repeating them.
    """

    def __init__(
        self,
        ledger_dir: Optional[Path] = None,
        updater: Optional[str] = None,
        vault_value_updater: Optional[str] = None,
        policy: Optional[PolicyConfig] = None,
        log: Optional[ExecutionLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger_dir = ledger_dir or state_dir() / "ledger"
        ensure_private_dir(self.ledger_dir)
        self.db_path = self.ledger_dir / "ledger.sqlite3"
        self.policy = policy or PolicyConfig()
        self.log = log
        self._clock = clock
        self._secret_dir = self.ledger_dir.parent / ".secrets"
        ensure_private_dir(self._secret_dir)
        self._key_path = self._secret_dir / "ledger_hmac.key"
        self._sig_path = self._secret_dir / f"{self.ledger_dir.name}.ledger.sig"
        self._lock_path = self._secret_dir / f"{self.ledger_dir.name}.ledger.lock"
        self._hmac_key = self._load_or_create_key()
        ensure_private_file(self._lock_path)
        with self._integrity_guard():
            self._verify_integrity()
            self._init_db()
            if updater:
                self._set_meta("updater", normalize_address(updater))
            if vault_value_updater:
                self._set_meta("vault_value_updater", normalize_address(vault_value_updater))
            self._seal_integrity()

    # ── Integrity ─────────────────────────────────────────────────

    @contextmanager
    def _integrity_guard(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_or_create_key(self) -> bytes:
        if self._key_path.exists() and self._key_path.stat().st_size > 0:
            return self._key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self._key_path.write_bytes(key)
        ensure_private_file(self._key_path)
        return key

    def _compute_integrity_hash(self) -> str:
        digest = hmac.new(self._hmac_key, digestmod=hashlib.sha256)
        for path in (
            self.db_path,
            Path(str(self.db_path) + "-wal"),
            Path(str(self.db_path) + "-shm"),
        ):
            if path.exists():
                digest.update(path.name.encode())
                digest.update(b":")
                digest.update(path.read_bytes())
                digest.update(b";")
        return digest.hexdigest()

    def _verify_integrity(self) -> None:
        if not self.db_path.exists():
            return
        if not self._sig_path.exists():
            self._seal_integrity()
            return
        expected = self._sig_path.read_text().strip()
        actual = self._compute_integrity_hash()
        if expected and not hmac.compare_digest(expected, actual):
            raise LedgerTampered("Ledger integrity check failed: local state was modified")

    def _seal_integrity(self) -> None:
        if not self.db_path.exists():
            return
        self._sig_path.write_text(self._compute_integrity_hash())
        ensure_private_file(self._sig_path)

    @contextmanager
    def _write_guard(self):
        # Resealed on rollback too: a reopened WAL file may differ byte-wise.
        with self._integrity_guard():
            self._verify_integrity()
            try:
                yield
            finally:
                self._seal_integrity()

    # ── Schema ────────────────────────────────────────────────────

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # Closed before sealing: the last close checkpoints the WAL into the
        # main file, which changes the sealed bytes.
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        # uint256 quantities do not fit SQLite INTEGER, so amounts are TEXT.
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vault_value (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    value_usd TEXT NOT NULL,
                    last_updated INTEGER NOT NULL,
                    update_count INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS spending_allowance (
                    account TEXT PRIMARY KEY,
                    amount TEXT NOT NULL,
                    oracle_updated_at INTEGER NOT NULL DEFAULT 0,
                    last_updated INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS acquired_balance (
                    account TEXT NOT NULL,
                    token TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    last_updated INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (account, token)
                )
                """
            )

    def _set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO ledger_meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def _get_meta(self, conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM ledger_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    # ── Row helpers ───────────────────────────────────────────────

    def _now(self) -> int:
        return int(self._clock())

    def _read_allowance(self, conn: sqlite3.Connection, account: str) -> int:
        row = conn.execute(
            "SELECT amount FROM spending_allowance WHERE account = ?",
            (normalize_address(account),),
        ).fetchone()
        return int(row["amount"]) if row else 0

    def _read_acquired(self, conn: sqlite3.Connection, account: str, token: str) -> int:
        row = conn.execute(
            "SELECT amount FROM acquired_balance WHERE account = ? AND token = ?",
            (normalize_address(account), normalize_address(token)),
        ).fetchone()
        return int(row["amount"]) if row else 0

    def _read_vault_value(self, conn: sqlite3.Connection) -> VaultValueSnapshot:
        row = conn.execute(
            "SELECT value_usd, last_updated, update_count FROM vault_value WHERE id = 1"
        ).fetchone()
        if row is None:
            return VaultValueSnapshot()
        return VaultValueSnapshot(
            value_usd=int(row["value_usd"]),
            last_updated=row["last_updated"],
            update_count=row["update_count"],
        )

    def _write_allowance(
        self, conn: sqlite3.Connection, account: str, amount: int, oracle_write: bool
    ) -> None:
        now = self._now()
        if oracle_write:
            conn.execute(
                """
                INSERT INTO spending_allowance (account, amount, oracle_updated_at, last_updated)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account) DO UPDATE SET
                    amount = excluded.amount,
                    oracle_updated_at = excluded.oracle_updated_at,
                    last_updated = excluded.last_updated
                """,
                (normalize_address(account), str(amount), now, now),
            )
        else:
            conn.execute(
                """
                INSERT INTO spending_allowance (account, amount, oracle_updated_at, last_updated)
                VALUES (?, ?, 0, ?)
                ON CONFLICT(account) DO UPDATE SET
                    amount = excluded.amount,
                    last_updated = excluded.last_updated
                """,
                (normalize_address(account), str(amount), now),
            )

    def _write_acquired(
        self, conn: sqlite3.Connection, account: str, token: str, amount: int
    ) -> None:
        conn.execute(
            """
            INSERT INTO acquired_balance (account, token, amount, last_updated)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(account, token) DO UPDATE SET
                amount = excluded.amount,
                last_updated = excluded.last_updated
            """,
            (normalize_address(account), normalize_address(token), str(amount), self._now()),
        )

    def _touch_oracle(self, conn: sqlite3.Connection, account: str) -> None:
        now = self._now()
        conn.execute(
            """
            INSERT INTO spending_allowance (account, amount, oracle_updated_at, last_updated)
            VALUES (?, '0', ?, ?)
            ON CONFLICT(account) DO UPDATE SET oracle_updated_at = excluded.oracle_updated_at
            """,
            (normalize_address(account), now, now),
        )

    # ── Reads ─────────────────────────────────────────────────────

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with self._integrity_guard():
            self._verify_integrity()
            with self._connect() as conn:
                yield conn

    @property
    def updater(self) -> Optional[str]:
        with self._reader() as conn:
            return self._get_meta(conn, "updater")

    @property
    def vault_value_updater(self) -> Optional[str]:
        with self._reader() as conn:
            return self._get_meta(conn, "vault_value_updater")

    def get_vault_value(self) -> VaultValueSnapshot:
        with self._reader() as conn:
            return self._read_vault_value(conn)

    def get_spending_allowance(self, account: str) -> int:
        with self._reader() as conn:
            return self._read_allowance(conn, account)

    def get_acquired_balance(self, account: str, token: str) -> int:
        with self._reader() as conn:
            return self._read_acquired(conn, account, token)

    def get_nonce(self) -> int:
        with self._reader() as conn:
            return int(self._get_meta(conn, "updater_nonce") or 0)

    def get_entry(self, account: str) -> LedgerEntry:
        """Load an account's full ledger state."""
        normalized = normalize_address(account)
        with self._reader() as conn:
            row = conn.execute(
                "SELECT amount, oracle_updated_at FROM spending_allowance WHERE account = ?",
                (normalized,),
            ).fetchone()
            token_rows = conn.execute(
                "SELECT token, amount FROM acquired_balance WHERE account = ? ORDER BY token",
                (normalized,),
            ).fetchall()
        return LedgerEntry(
            account=normalized,
            spending_allowance=int(row["amount"]) if row else 0,
            oracle_updated_at=row["oracle_updated_at"] if row else 0,
            acquired_balances={r["token"]: int(r["amount"]) for r in token_rows},
        )

    def require_fresh_vault_value(self) -> VaultValueSnapshot:
        snapshot = self.get_vault_value()
        self.check_vault_value(snapshot)
        return snapshot

    def check_vault_value(self, snapshot: VaultValueSnapshot) -> None:
        max_age = self.policy.max_vault_value_age_seconds
        if snapshot.last_updated == 0:
            raise StalePortfolioValue(age_seconds=self._now(), max_age_seconds=max_age)
        age = snapshot.age(self._now())
        if age > max_age:
            raise StalePortfolioValue(age_seconds=age, max_age_seconds=max_age)

    def max_allowance(self, snapshot: VaultValueSnapshot) -> int:
        return bps_of(snapshot.value_usd, self.policy.absolute_max_spending_bps)

    # ── Authorized writes ─────────────────────────────────────────

    def update_vault_value(self, value_usd: int, update_count: int, signature: str) -> VaultValueSnapshot:
        """Store a new vault value signed by the vault-value updater."""
        if value_usd < 0:
            raise ValueError("vault value must be non-negative")
        with self._write_guard():
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    expected = self._get_meta(conn, "vault_value_updater")
                    signer = _recover_signer(_vault_value_message(value_usd, update_count), signature)
                    if expected is None or signer != expected:
                        raise NotLedgerWriter(signer=signer, expected=expected or "<unset>")
                    current = self._read_vault_value(conn)
                    if update_count != current.update_count:
                        raise StaleUpdateNonce(nonce=update_count, expected=current.update_count)
                    snapshot = VaultValueSnapshot(
                        value_usd=value_usd,
                        last_updated=self._now(),
                        update_count=current.update_count + 1,
                    )
                    conn.execute(
                        """
                        INSERT INTO vault_value (id, value_usd, last_updated, update_count)
                        VALUES (1, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            value_usd = excluded.value_usd,
                            last_updated = excluded.last_updated,
                            update_count = excluded.update_count
                        """,
                        (str(snapshot.value_usd), snapshot.last_updated, snapshot.update_count),
                    )
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        logger.info("Vault value updated: %d (update #%d)", value_usd, snapshot.update_count)
        return snapshot

    def apply_update(self, update: LedgerUpdate, signature: str) -> None:
        """
        Apply a signed allowance/balance overwrite.

        Rejects signers other than the authorized updater, out-of-order
        nonces, stale vault value, and allowances above the absolute cap.
        Corrections are appended to the execution log before commit.
        """
        account = normalize_address(update.account)
        tokens = [normalize_address(t) for t in update.tokens]
        with self._write_guard():
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    expected = self._get_meta(conn, "updater")
                    signer = _recover_signer(update.to_eip712_message(), signature)
                    if expected is None or signer != expected:
                        raise NotLedgerWriter(signer=signer, expected=expected or "<unset>")
                    nonce = int(self._get_meta(conn, "updater_nonce") or 0)
                    if update.nonce != nonce:
                        raise StaleUpdateNonce(nonce=update.nonce, expected=nonce)

                    snapshot = self._read_vault_value(conn)
                    self.check_vault_value(snapshot)
                    if update.update_allowance:
                        cap = self.max_allowance(snapshot)
                        if update.new_allowance > cap:
                            raise ExceedsAbsoluteMaxSpending(
                                requested=update.new_allowance, maximum=cap
                            )
                        self._write_allowance(conn, account, update.new_allowance, oracle_write=True)
                    else:
                        self._touch_oracle(conn, account)
                    for token, balance in zip(tokens, update.balances):
                        self._write_acquired(conn, account, token, balance)
                    conn.execute(
                        "INSERT INTO ledger_meta (key, value) VALUES ('updater_nonce', ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        (str(nonce + 1),),
                    )
                    self._emit_corrections(account, update, tokens)
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    def _emit_corrections(self, account: str, update: LedgerUpdate, tokens: list[str]) -> None:
        if self.log is None:
            return
        now = self._now()
        corrections = []
        if update.update_allowance:
            corrections.append(
                CorrectionEvent(account=account, token=None, new_balance=update.new_allowance, timestamp=now)
            )
        corrections.extend(
            CorrectionEvent(account=account, token=token, new_balance=balance, timestamp=now)
            for token, balance in zip(tokens, update.balances)
        )
        self.log.append(corrections)

    # ── Policy evaluator path ─────────────────────────────────────

    @contextmanager
    def unit_of_work(self) -> Iterator[LedgerTransaction]:
        """
        Hold the ledger exclusively for one operation.

        Debits made through the yielded transaction are committed only if the
        block exits cleanly; any exception rolls all of them back.
        """
        with self._write_guard():
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield LedgerTransaction(self, conn)
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    def oracle_updated_at(self, account: str) -> int:
        return self.get_entry(account).oracle_updated_at


class LedgerWriter:
    """Write capability bound to the updater's signing key.

    Writes from one writer are serialized so concurrent reconciliations never
    sign the same nonce.
    """

    def __init__(self, ledger: Ledger, signer: LocalAccount):
        self.ledger = ledger
        self.signer = signer
        self._mutex = threading.Lock()

    @property
    def address(self) -> str:
        return self.signer.address

    def batch_update(
        self,
        account: str,
        new_allowance: int,
        tokens: list[str],
        balances: list[int],
    ) -> int:
        """Overwrite allowance and balances in one write; returns the nonce used."""
        return self._submit(account, True, new_allowance, list(tokens), list(balances))

    def _submit(
        self,
        account: str,
        update_allowance: bool,
        new_allowance: int,
        tokens: list[str],
        balances: list[int],
    ) -> int:
        with self._mutex:
            update = LedgerUpdate(
                account=account,
                update_allowance=update_allowance,
                new_allowance=new_allowance,
                tokens=tokens,
                balances=balances,
                nonce=self.ledger.get_nonce(),
            )
            self.ledger.apply_update(update, update.sign(self.signer))
        return update.nonce

    def set_allowance(self, account: str, amount: int) -> int:
        return self.batch_update(account, amount, [], [])

    def set_acquired_balance(self, account: str, token: str, amount: int) -> int:
        return self._submit(account, False, 0, [token], [amount])


class VaultValueWriter:
    """Write capability bound to the vault-value updater's signing key."""

    def __init__(self, ledger: Ledger, signer: LocalAccount):
        self.ledger = ledger
        self.signer = signer

    def push(self, value_usd: int) -> VaultValueSnapshot:
        count = self.ledger.get_vault_value().update_count
        typed = _vault_value_message(value_usd, count)
        signed = self.signer.sign_typed_data(typed["domain"], typed["types"], typed["message"])
        return self.ledger.update_vault_value(value_usd, count, signed.signature.hex())
