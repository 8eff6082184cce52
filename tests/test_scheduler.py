"""Tests for the reconciliation triggers."""

import threading

from spendguard.config import OracleConfig
from spendguard.events import OperationEvent, OperationType
from spendguard.reconciler import ReconcileResult, ReconcileStatus
from spendguard.scheduler import CycleReport, Scheduler


ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
MODULE = "0x" + "ee" * 20
ROUTER = "0x" + "51" * 20
USDC = "0x" + "a0" * 20


def operation(account, block):
    return OperationEvent(
        account=account,
        target=ROUTER,
        op_type=OperationType.WITHDRAW,
        token_in=USDC,
        amount_in=1,
        token_out=USDC,
        amount_out=1,
        spending_cost=0,
        timestamp=1_700_000_000,
        block_number=block,
    )


class FakeEvents:
    def __init__(self, operations=(), latest=100):
        self.operations = list(operations)
        self.latest = latest
        self.fail = False

    def latest_block(self):
        if self.fail:
            raise RuntimeError("node unreachable")
        return self.latest

    def operation_events(self, from_block, to_block, account=None):
        return [e for e in self.operations if from_block <= e.block_number <= to_block]

    def transfer_events(self, from_block, to_block, account=None):
        return []


class FakeLedger:
    def __init__(self, accounts=()):
        self.accounts = list(accounts)

    def active_accounts(self):
        return list(self.accounts)


class RecordingReconciler:
    def __init__(self, config=None, failing=()):
        self.config = config or OracleConfig()
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()

    def reconcile(self, account, to_block=None):
        with self._lock:
            self.calls.append((account, to_block))
        if account in self.failing:
            raise RuntimeError(f"boom for {account}")
        return ReconcileResult(account=account, status=ReconcileStatus.UPDATED)


class BlockingReconciler(RecordingReconciler):
    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def reconcile(self, account, to_block=None):
        result = super().reconcile(account, to_block)
        self.started.set()
        self.release.wait(5)
        return result


def make_scheduler(reconciler=None, events=None, accounts=(), **config):
    reconciler = reconciler or RecordingReconciler(OracleConfig(**config))
    return Scheduler(reconciler, events or FakeEvents(), FakeLedger(accounts), reconciler.config)


class TestPoll:
    def test_first_poll_starts_one_lookback_behind_head(self):
        events = FakeEvents([operation(ALICE, 85), operation(BOB, 95)], latest=100)
        scheduler = make_scheduler(events=events, blocks_to_look_back=10)

        report = scheduler.poll_once()

        assert scheduler.cursor == 100
        assert [r.account for r in report.results] == [BOB]
        assert report.to_block == 100

    def test_poll_advances_cursor(self):
        events = FakeEvents([operation(ALICE, 95)], latest=100)
        scheduler = make_scheduler(events=events, blocks_to_look_back=10)
        scheduler.poll_once()

        assert scheduler.poll_once().results == []

        events.operations.append(operation(ALICE, 101))
        events.latest = 101
        report = scheduler.poll_once()
        assert [r.account for r in report.results] == [ALICE]
        assert scheduler.reconciler.calls[-1] == (ALICE, 101)

    def test_poll_reconciles_each_account_once(self):
        events = FakeEvents([operation(ALICE, 95), operation(ALICE, 96)], latest=100)
        scheduler = make_scheduler(events=events, blocks_to_look_back=10)
        scheduler.poll_once()
        assert scheduler.reconciler.calls == [(ALICE, 100)]

    def test_overlapping_poll_is_skipped(self):
        scheduler = make_scheduler()
        scheduler._poll_guard.acquire()
        try:
            assert scheduler.poll_once() is None
        finally:
            scheduler._poll_guard.release()

    def test_unreachable_node_keeps_cursor(self):
        events = FakeEvents(latest=100)
        scheduler = make_scheduler(events=events, blocks_to_look_back=10)
        scheduler.poll_once()
        events.fail = True

        report = scheduler.poll_once()

        assert "unreachable" in report.error
        assert scheduler.cursor == 100


class TestRefresh:
    def test_refresh_reconciles_active_accounts(self):
        scheduler = make_scheduler(accounts=[ALICE, BOB])
        report = scheduler.refresh_once()
        assert sorted(r.account for r in report.results) == [ALICE, BOB]
        assert report.count(ReconcileStatus.UPDATED) == 2

    def test_module_address_is_skipped(self):
        scheduler = make_scheduler(accounts=[ALICE, MODULE], module_address=MODULE)
        report = scheduler.refresh_once()
        assert [r.account for r in report.results] == [ALICE]

    def test_one_failure_does_not_stop_the_cycle(self):
        reconciler = RecordingReconciler(failing={ALICE})
        scheduler = make_scheduler(reconciler=reconciler, accounts=[ALICE, BOB])

        report = scheduler.refresh_once()

        assert [r.account for r in report.failed] == [ALICE]
        assert report.count(ReconcileStatus.UPDATED) == 1
        assert "1 updated" in report.summary()

    def test_overlapping_refresh_is_skipped(self):
        scheduler = make_scheduler(accounts=[ALICE])
        scheduler._refresh_guard.acquire()
        try:
            assert scheduler.refresh_once() is None
        finally:
            scheduler._refresh_guard.release()


class TestSingleFlight:
    def test_concurrent_request_is_coalesced_into_a_rerun(self):
        reconciler = BlockingReconciler()
        scheduler = make_scheduler(reconciler=reconciler)
        results = []
        worker = threading.Thread(target=lambda: results.append(scheduler.reconcile_account(ALICE, 10)))
        worker.start()
        assert reconciler.started.wait(5)

        assert scheduler.reconcile_account(ALICE, 10) is None

        reconciler.release.set()
        worker.join(5)
        assert reconciler.calls == [(ALICE, 10), (ALICE, None)]
        assert results[0].status == ReconcileStatus.UPDATED

    def test_different_accounts_run_independently(self):
        reconciler = BlockingReconciler()
        scheduler = make_scheduler(reconciler=reconciler)
        worker = threading.Thread(target=scheduler.reconcile_account, args=(ALICE,))
        worker.start()
        assert reconciler.started.wait(5)
        reconciler.release.set()

        result = scheduler.reconcile_account(BOB)

        worker.join(5)
        assert result.account == BOB


class TestTimers:
    def test_start_and_stop(self):
        refreshed = threading.Event()

        class Signalling(RecordingReconciler):
            def reconcile(self, account, to_block=None):
                refreshed.set()
                return super().reconcile(account, to_block)

        config = OracleConfig(poll_interval_seconds=0.01, refresh_interval_seconds=0.01)
        scheduler = make_scheduler(reconciler=Signalling(config), accounts=[ALICE])

        scheduler.start()
        try:
            assert refreshed.wait(5)
        finally:
            scheduler.stop(timeout=5)
        assert scheduler._threads == []


def test_cycle_report_summary():
    report = CycleReport(
        trigger="poll",
        results=[
            ReconcileResult(account=ALICE, status=ReconcileStatus.UPDATED),
            ReconcileResult(account=BOB, status=ReconcileStatus.SKIPPED),
        ],
        coalesced=[MODULE],
    )
    assert report.summary() == "poll: 1 updated, 1 unchanged, 0 failed, 1 coalesced"
