"""File-backed account roles, allowlists, spending limits and the pause switch."""

from __future__ import annotations

import fcntl
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import DEFAULT_MAX_SPENDING_BPS, DEFAULT_WINDOW_SECONDS
from .events import normalize_address
from .storage import ensure_private_dir, ensure_private_file, read_json, state_dir, write_json_atomic


class Role(str, Enum):
    EXECUTE = "execute"
    TRANSFER = "transfer"


@dataclass
class AccountLimits:
    max_spending_bps: int = DEFAULT_MAX_SPENDING_BPS
    window_duration_seconds: int = DEFAULT_WINDOW_SECONDS


@dataclass
class AccountPolicy:
    account: str
    roles: set[Role] = field(default_factory=set)
    allowed_addresses: set[str] = field(default_factory=set)
    limits: AccountLimits = field(default_factory=AccountLimits)

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def is_allowed(self, address: str) -> bool:
        return normalize_address(address) in self.allowed_addresses


class AccountRegistry:
    """
    Local stand-in for the module's role and allowlist storage.

    Accounts are created by the first grant and never deleted; revoking every
    role leaves the record in place.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or state_dir() / "accounts.json"
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".accounts.lock"
        ensure_private_file(self._lock_path)
        if not self.path.exists():
            write_json_atomic(self.path, {"paused": False, "accounts": {}})

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_state(self) -> dict:
        return read_json(self.path)

    def _account_record(self, state: dict, account: str) -> dict:
        return state.setdefault("accounts", {}).setdefault(
            account,
            {
                "roles": [],
                "allowed_addresses": [],
                "max_spending_bps": None,
                "window_duration_seconds": None,
            },
        )

    def _set_member(self, account: str, key: str, value: str, present: bool) -> None:
        normalized = normalize_address(account)
        with self._lock():
            state = self._load_state()
            record = self._account_record(state, normalized)
            members = set(record.get(key, []))
            if present:
                members.add(value)
            else:
                members.discard(value)
            record[key] = sorted(members)
            write_json_atomic(self.path, state)

    def grant_role(self, account: str, role: Role) -> None:
        self._set_member(account, "roles", Role(role).value, True)

    def revoke_role(self, account: str, role: Role) -> None:
        self._set_member(account, "roles", Role(role).value, False)

    def set_allowed(self, account: str, address: str, allowed: bool = True) -> None:
        self._set_member(account, "allowed_addresses", normalize_address(address), allowed)

    def set_limits(self, account: str, max_spending_bps: int, window_duration_seconds: int) -> None:
        if not 0 <= max_spending_bps <= 10_000:
            raise ValueError("max_spending_bps must be in [0, 10000]")
        if window_duration_seconds <= 0:
            raise ValueError("window_duration_seconds must be positive")
        normalized = normalize_address(account)
        with self._lock():
            state = self._load_state()
            record = self._account_record(state, normalized)
            record["max_spending_bps"] = int(max_spending_bps)
            record["window_duration_seconds"] = int(window_duration_seconds)
            write_json_atomic(self.path, state)

    def get(self, account: str) -> AccountPolicy:
        normalized = normalize_address(account)
        with self._lock():
            record = self._load_state().get("accounts", {}).get(normalized)
        if record is None:
            return AccountPolicy(account=normalized)
        limits = AccountLimits()
        if record.get("max_spending_bps") is not None:
            limits.max_spending_bps = int(record["max_spending_bps"])
        if record.get("window_duration_seconds") is not None:
            limits.window_duration_seconds = int(record["window_duration_seconds"])
        return AccountPolicy(
            account=normalized,
            roles={Role(r) for r in record.get("roles", [])},
            allowed_addresses=set(record.get("allowed_addresses", [])),
            limits=limits,
        )

    def get_limits(self, account: str) -> AccountLimits:
        return self.get(account).limits

    def accounts_with_role(self, role: Role) -> list[str]:
        with self._lock():
            accounts = self._load_state().get("accounts", {})
        return sorted(a for a, r in accounts.items() if Role(role).value in r.get("roles", []))

    def set_paused(self, paused: bool) -> None:
        with self._lock():
            state = self._load_state()
            state["paused"] = bool(paused)
            write_json_atomic(self.path, state)

    def is_paused(self) -> bool:
        with self._lock():
            return bool(self._load_state().get("paused", False))
