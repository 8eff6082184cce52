"""
Reconciliation triggers.

Two triggers drive the reconciler:

- the event poller reconciles only the accounts that appear in events since
  its block cursor
- the full refresh reconciles every account holding the execute role

Each trigger skips a tick while its previous cycle is still running. Across
both triggers an account is reconciled by at most one thread at a time; a
request for an account that is already being reconciled makes the running
pass go around once more instead of racing it.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .config import OracleConfig
from .reconciler import EventSource, LedgerClient, ReconcileResult, ReconcileStatus, Reconciler

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    trigger: str
    to_block: int = 0
    results: list[ReconcileResult] = field(default_factory=list)
    coalesced: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def count(self, status: ReconcileStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def failed(self) -> list[ReconcileResult]:
        return [r for r in self.results if r.status == ReconcileStatus.FAILED]

    def summary(self) -> str:
        return (
            f"{self.trigger}: {self.count(ReconcileStatus.UPDATED)} updated, "
            f"{self.count(ReconcileStatus.SKIPPED)} unchanged, "
            f"{self.count(ReconcileStatus.FAILED)} failed, "
            f"{len(self.coalesced)} coalesced"
        )


class Scheduler:
    """Runs the poller and the full refresh against one reconciler."""

    def __init__(
        self,
        reconciler: Reconciler,
        events: EventSource,
        ledger: LedgerClient,
        config: Optional[OracleConfig] = None,
    ):
        self.reconciler = reconciler
        self.events = events
        self.ledger = ledger
        self.config = config or reconciler.config
        self.cursor: Optional[int] = None

        self._poll_guard = threading.Lock()
        self._refresh_guard = threading.Lock()
        self._accounts_mutex = threading.Lock()
        self._in_flight: set[str] = set()
        self._rerun: set[str] = set()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # ── Per-account single flight ─────────────────────────────────

    def reconcile_account(self, account: str, to_block: Optional[int] = None) -> Optional[ReconcileResult]:
        """
        Reconcile ``account`` unless another thread already is.

        Returns None when the request was folded into a pass that is already
        running; that pass repeats before it returns.
        """
        key = account.lower()
        with self._accounts_mutex:
            if key in self._in_flight:
                self._rerun.add(key)
                logger.debug("Reconciliation of %s already running; queued a rerun", key)
                return None
            self._in_flight.add(key)

        try:
            while True:
                result = self.reconciler.reconcile(key, to_block)
                with self._accounts_mutex:
                    if key not in self._rerun:
                        return result
                    self._rerun.discard(key)
                # Events may have landed after to_block; look again at the head.
                to_block = None
        finally:
            with self._accounts_mutex:
                self._in_flight.discard(key)
                self._rerun.discard(key)

    def _fan_out(self, report: CycleReport, accounts: Iterable[str]) -> CycleReport:
        targets = []
        for account in accounts:
            if self.config.is_skipped(account):
                logger.info("Skipping %s: module address, not an account", account)
                continue
            targets.append(account.lower())
        if not targets:
            return report

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            futures = {
                pool.submit(self.reconcile_account, account, report.to_block): account
                for account in targets
            }
            for future, account in futures.items():
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception("Unexpected error reconciling %s", account)
                    result = ReconcileResult(account=account, status=ReconcileStatus.FAILED, error=str(e))
                if result is None:
                    report.coalesced.append(account)
                else:
                    report.results.append(result)

        for failure in report.failed:
            logger.warning("Reconciliation of %s failed: %s", failure.account, failure.error)
        return report

    # ── Triggers ──────────────────────────────────────────────────

    def poll_once(self) -> Optional[CycleReport]:
        """Reconcile accounts with events after the cursor. None if a poll is running."""
        if not self._poll_guard.acquire(blocking=False):
            logger.debug("Skipping poll: previous poll still running")
            return None
        try:
            report = CycleReport(trigger="poll")
            try:
                latest = self.events.latest_block()
            except Exception as e:
                logger.warning("Poll could not read the latest block: %s", e)
                report.error = str(e)
                return report

            if self.cursor is None:
                self.cursor = max(0, latest - self.config.blocks_to_look_back)
            report.to_block = latest
            if latest <= self.cursor:
                return report

            from_block = self.cursor + 1
            logger.info("Polling blocks %d to %d", from_block, latest)
            try:
                operations = self.events.operation_events(from_block, latest)
                transfers = self.events.transfer_events(from_block, latest)
            except Exception as e:
                logger.warning("Poll could not read events: %s", e)
                report.error = str(e)
                return report

            accounts = sorted({e.account.lower() for e in [*operations, *transfers]})
            if accounts:
                logger.info(
                    "Found %d operation and %d transfer events for %d account(s)",
                    len(operations), len(transfers), len(accounts),
                )
            self._fan_out(report, accounts)
            self.cursor = latest
            return report
        finally:
            self._poll_guard.release()

    def refresh_once(self) -> Optional[CycleReport]:
        """Reconcile every active account. None if a refresh is running."""
        if not self._refresh_guard.acquire(blocking=False):
            logger.info("Skipping refresh: previous refresh still running")
            return None
        try:
            report = CycleReport(trigger="refresh")
            try:
                accounts = self.ledger.active_accounts()
            except Exception as e:
                logger.warning("Refresh could not list accounts: %s", e)
                report.error = str(e)
                return report
            try:
                report.to_block = self.events.latest_block()
            except Exception as e:
                logger.warning("Refresh could not read the latest block: %s", e)
            logger.info("Refreshing %d account(s)", len(accounts))
            self._fan_out(report, accounts)
            logger.info("Refresh complete: %s", report.summary())
            return report
        finally:
            self._refresh_guard.release()

    # ── Timers ────────────────────────────────────────────────────

    def _loop(self, name: str, interval: float, tick) -> None:
        while not self._stop.is_set():
            try:
                tick()
            except Exception:
                logger.exception("%s cycle crashed", name)
            self._stop.wait(interval)

    def start(self) -> None:
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=("poll", self.config.poll_interval_seconds, self.poll_once),
                name="spendguard-poll",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=("refresh", self.config.refresh_interval_seconds, self.refresh_once),
                name="spendguard-refresh",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Scheduler started: poll every %ss, refresh every %ss",
            self.config.poll_interval_seconds, self.config.refresh_interval_seconds,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.stop()
