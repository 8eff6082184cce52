"""
Append-only execution log.

Operation, transfer and correction events are written as JSONL entries with
an HMAC hash chain so tampering is detected during reads. Each append is one
"block": its events share a block number and get consecutive log indexes,
which is the ordering the reconciler relies on for same-timestamp events.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .errors import ExecutionLogTampered
from .events import (
    CorrectionEvent,
    LogEvent,
    OperationEvent,
    TransferEvent,
    event_from_dict,
)
from .storage import ensure_private_dir, ensure_private_file, state_dir


class ExecutionLog:
    """Tamper-evident append-only event log, also usable as an event source."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or state_dir() / "execution.jsonl"
        self.key_path = key_path or state_dir() / ".secrets" / "log_hmac.key"

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)
        self._lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        ensure_private_file(self._lock_path)

        self._hmac_key = self._load_or_create_key()
        self._mutex = threading.Lock()
        self._last_hash = ""
        self._last_block = 0
        self._scanned_size = -1

    @contextmanager
    def _exclusive(self):
        with self._mutex, open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("SPENDGUARD_LOG_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _refresh_tail(self) -> None:
        # Another process may have appended since our last look.
        size = self.path.stat().st_size
        if size == self._scanned_size:
            return
        last_hash, last_block = "", 0
        for raw in self._verified_records():
            last_hash = raw["event_hash"]
            last_block = max(last_block, int(raw.get("block_number", 0)))
        self._last_hash = last_hash
        self._last_block = last_block
        self._scanned_size = size

    def _verified_records(self) -> Iterable[dict]:
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise ExecutionLogTampered("Execution log chain broken: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise ExecutionLogTampered("Execution log chain broken: event hash mismatch")
                expected_prev = event_hash
                yield raw

    def append(self, events: Sequence[LogEvent]) -> list[LogEvent]:
        """Append events as a single block and return them with positions assigned."""
        if not events:
            return []
        with self._exclusive():
            self._refresh_tail()
            block_number = self._last_block + 1
            stored: list[LogEvent] = []
            lines: list[str] = []
            prev_hash = self._last_hash
            for index, event in enumerate(events):
                positioned = replace(event, block_number=block_number, log_index=index)
                payload = positioned.to_dict()
                current_hash = self._event_hash(payload, prev_hash)
                record = dict(payload, prev_hash=prev_hash or None, event_hash=current_hash)
                lines.append(json.dumps(record, separators=(",", ":")))
                stored.append(positioned)
                prev_hash = current_hash

            with open(self.path, "a") as f:
                f.write("\n".join(lines) + "\n")
                f.flush()
                os.fsync(f.fileno())

            self._last_hash = prev_hash
            self._last_block = block_number
            self._scanned_size = self.path.stat().st_size
        return stored

    def read_events(
        self,
        account: Optional[str] = None,
        from_block: int = 0,
        to_block: Optional[int] = None,
        kind: Optional[str] = None,
    ) -> list[LogEvent]:
        """Read and verify the whole chain, returning events matching the filters."""
        account_lower = account.lower() if account else None
        events: list[LogEvent] = []
        with self._exclusive():
            for raw in self._verified_records():
                block = int(raw.get("block_number", 0))
                if block < from_block or (to_block is not None and block > to_block):
                    continue
                if kind and raw.get("kind") != kind:
                    continue
                if account_lower and str(raw.get("account", "")).lower() != account_lower:
                    continue
                payload = {
                    k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}
                }
                events.append(event_from_dict(payload))
        return events

    # Event source interface used by the reconciler

    def latest_block(self) -> int:
        with self._exclusive():
            self._refresh_tail()
            return self._last_block

    def first_block_since(self, timestamp: int) -> Optional[int]:
        """Lowest block holding an event stamped at or after ``timestamp``."""
        blocks = []
        with self._exclusive():
            for raw in self._verified_records():
                if int(raw.get("timestamp", 0)) >= timestamp:
                    blocks.append(int(raw.get("block_number", 0)))
        return min(blocks) if blocks else None

    def operation_events(
        self, from_block: int, to_block: int, account: Optional[str] = None
    ) -> list[OperationEvent]:
        return [
            e for e in self.read_events(account, from_block, to_block, OperationEvent.kind)
            if isinstance(e, OperationEvent)
        ]

    def transfer_events(
        self, from_block: int, to_block: int, account: Optional[str] = None
    ) -> list[TransferEvent]:
        return [
            e for e in self.read_events(account, from_block, to_block, TransferEvent.kind)
            if isinstance(e, TransferEvent)
        ]

    def correction_tokens(self, account: str, from_block: int, to_block: int) -> set[str]:
        """Tokens that have had an acquired balance written for ``account``."""
        return {
            e.token.lower()
            for e in self.read_events(account, from_block, to_block, CorrectionEvent.kind)
            if isinstance(e, CorrectionEvent) and e.token is not None
        }

    def summary(self, account: Optional[str] = None) -> dict:
        events = self.read_events(account=account)
        by_kind: dict[str, int] = {}
        for e in events:
            by_kind[e.kind] = by_kind.get(e.kind, 0) + 1
        return {
            "total_events": len(events),
            "by_kind": by_kind,
            "last_block": events[-1].block_number if events else 0,
        }
