"""Tests for acquired-balance reconstruction."""

import random

from spendguard.events import OperationEvent, OperationType, TransferEvent, ZERO_ADDRESS
from spendguard.fifo import AcquiredQueue, QueueEntry, build_account_state


ACCOUNT = "0x" + "11" * 20
OTHER = "0x" + "12" * 20
POOL = "0x" + "22" * 20
ROUTER = "0x" + "23" * 20
RECIPIENT = "0x" + "33" * 20
USDC = "0x" + "a0" * 20
WETH = "0x" + "c0" * 20
AUSDC = "0x" + "ae" * 20
DAI = "0x" + "d0" * 20

WINDOW = 86_400
NOW = 1_700_000_000


def op(op_type, token_in, amount_in, token_out, amount_out, timestamp,
       cost=0, target=ROUTER, account=ACCOUNT, block=None, index=0):
    return OperationEvent(
        account=account,
        target=target,
        op_type=op_type,
        token_in=token_in,
        amount_in=amount_in,
        token_out=token_out,
        amount_out=amount_out,
        spending_cost=cost,
        timestamp=timestamp,
        block_number=timestamp if block is None else block,
        log_index=index,
    )


def swap(token_in, amount_in, token_out, amount_out, timestamp, **kwargs):
    return op(OperationType.SWAP, token_in, amount_in, token_out, amount_out, timestamp, **kwargs)


def deposit(token_in, amount_in, timestamp, token_out=ZERO_ADDRESS, amount_out=0, **kwargs):
    kwargs.setdefault("target", POOL)
    return op(OperationType.DEPOSIT, token_in, amount_in, token_out, amount_out, timestamp, **kwargs)


def withdraw(token, amount, timestamp, op_type=OperationType.WITHDRAW, **kwargs):
    kwargs.setdefault("target", POOL)
    return op(op_type, token, amount, token, amount, timestamp, **kwargs)


def transfer(token, amount, timestamp, cost=0, account=ACCOUNT):
    return TransferEvent(
        account=account,
        token=token,
        recipient=RECIPIENT,
        amount=amount,
        spending_cost=cost,
        timestamp=timestamp,
        block_number=timestamp,
    )


class TestAcquiredQueue:
    def test_consume_takes_oldest_first(self):
        queue = AcquiredQueue()
        queue.add(100, NOW - 50)
        queue.add(40, NOW - 10)

        consumed = queue.consume(120, NOW, WINDOW)

        assert consumed == [QueueEntry(100, NOW - 50), QueueEntry(20, NOW - 10)]
        assert queue.entries == [QueueEntry(20, NOW - 10)]

    def test_consume_discards_expired_entries(self):
        queue = AcquiredQueue()
        queue.add(100, NOW - WINDOW - 1)
        queue.add(50, NOW - 10)

        consumed = queue.consume(120, NOW, WINDOW)

        assert consumed == [QueueEntry(50, NOW - 10)]
        assert queue.total() == 0

    def test_add_ignores_non_positive_amounts(self):
        queue = AcquiredQueue()
        queue.add(0, NOW)
        queue.add(-5, NOW)
        assert len(queue) == 0

    def test_prune(self):
        queue = AcquiredQueue()
        queue.add(10, NOW - WINDOW - 5)
        queue.add(20, NOW - WINDOW)
        queue.prune(NOW, WINDOW)
        assert queue.entries == [QueueEntry(20, NOW - WINDOW)]

    def test_prune_drops_expired_entries_behind_younger_ones(self):
        queue = AcquiredQueue()
        queue.add(30, NOW - 10)
        queue.add(50, NOW - WINDOW - 1)
        queue.add(20, NOW - 5)
        queue.prune(NOW, WINDOW)
        assert queue.entries == [QueueEntry(30, NOW - 10), QueueEntry(20, NOW - 5)]
        assert queue.total() == 50


class TestBuildAccountState:
    def test_swap_from_original_funds_is_newly_acquired(self):
        state = build_account_state(
            ACCOUNT, [swap(USDC, 1_000, WETH, 500, NOW - 100, cost=1_000)], WINDOW, NOW
        )
        assert state.acquired_balances[WETH] == 500
        assert state.queues[WETH] == [QueueEntry(500, NOW - 100)]
        assert state.total_spending == 1_000

    def test_conservation_within_one_token(self):
        events = [
            swap(DAI, 1_000, USDC, 1_000, NOW - 400),
            swap(DAI, 500, USDC, 500, NOW - 300),
            transfer(USDC, 300, NOW - 200),
            swap(USDC, 200, WETH, 1, NOW - 100),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.acquired_balances[USDC] == 1_000 + 500 - 300 - 200

    def test_acquisitions_expire_with_the_window(self):
        state = build_account_state(
            ACCOUNT, [swap(USDC, 1_000, WETH, 500, NOW - WINDOW - 1)], WINDOW, NOW
        )
        assert state.acquired_balances[WETH] == 0

    def test_touched_tokens_are_reported_with_zero(self):
        state = build_account_state(
            ACCOUNT, [swap(USDC, 1_000, WETH, 500, NOW - 100)], WINDOW, NOW
        )
        assert state.acquired_balances == {USDC: 0, WETH: 500}

    def test_fully_acquired_input_inherits_oldest_timestamp(self):
        t0 = NOW - 1_000
        events = [
            swap(DAI, 800, USDC, 800, t0),
            swap(DAI, 200, USDC, 200, t0 + 100),
            swap(USDC, 1_000, WETH, 1_000, t0 + 200),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.queues[WETH] == [QueueEntry(1_000, t0)]
        assert state.acquired_balances[USDC] == 0

    def test_mixed_input_splits_output_proportionally(self):
        t0 = NOW - 1_000
        t1 = NOW - 500
        events = [
            swap(DAI, 800, USDC, 800, t0),
            swap(USDC, 1_000, WETH, 1_000, t1, cost=200),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.queues[WETH] == [QueueEntry(800, t0), QueueEntry(200, t1)]
        assert state.acquired_balances[WETH] == 1_000
        assert state.acquired_balances[USDC] == 0

    def test_inherited_timestamp_expires_output_early(self):
        # Output inherits an origin that falls out of the window before it does.
        t0 = NOW - WINDOW + 100
        events = [
            swap(DAI, 500, USDC, 500, t0),
            swap(USDC, 500, WETH, 250, NOW - 10),
        ]
        assert build_account_state(ACCOUNT, events, WINDOW, NOW).acquired_balances[WETH] == 250
        later = build_account_state(ACCOUNT, events, WINDOW, NOW + 200)
        assert later.acquired_balances[WETH] == 0

    def test_expired_inherited_entry_behind_younger_entry(self):
        old = NOW - WINDOW + 5
        events = [
            swap(USDC, 100, DAI, 50, old),
            swap(USDC, 300, WETH, 300, NOW - 10),
            swap(DAI, 50, WETH, 50, NOW - 5),
        ]
        assert build_account_state(ACCOUNT, events, WINDOW, NOW).acquired_balances[WETH] == 350

        later = build_account_state(ACCOUNT, events, WINDOW, NOW + 10)

        assert later.acquired_balances[WETH] == 300
        assert later.queues[WETH] == [QueueEntry(300, NOW - 10)]

    def test_deposit_is_recorded_for_matching(self):
        state = build_account_state(
            ACCOUNT, [deposit(USDC, 1_000, NOW - 100, cost=1_000)], WINDOW, NOW
        )
        [record] = state.deposits
        assert record.target == POOL
        assert record.token_in == USDC
        assert record.remaining_amount == 1_000
        assert record.original_acquisition_timestamp == NOW - 100
        assert record.token_out is None
        assert state.total_spending == 1_000

    def test_withdraw_inherits_oldest_matched_deposit(self):
        t1, t2, t3 = NOW - 300, NOW - 200, NOW - 100
        events = [
            deposit(USDC, 600, t1),
            deposit(USDC, 400, t2),
            withdraw(USDC, 1_000, t3),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.queues[USDC] == [QueueEntry(1_000, t1)]
        assert [d.remaining_amount for d in state.deposits] == [0, 0]

    def test_deposit_keeps_origin_of_acquired_input(self):
        t0 = NOW - 1_000
        events = [
            swap(DAI, 500, USDC, 500, t0),
            deposit(USDC, 500, NOW - 500),
            withdraw(USDC, 500, NOW - 100),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.deposits[0].original_acquisition_timestamp == t0
        assert state.queues[USDC] == [QueueEntry(500, t0)]

    def test_unmatched_withdraw_remainder_is_not_acquired(self):
        events = [
            deposit(USDC, 600, NOW - 300),
            withdraw(USDC, 1_000, NOW - 100),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.acquired_balances[USDC] == 600

    def test_claim_without_deposit_is_not_acquired(self):
        state = build_account_state(
            ACCOUNT, [withdraw(WETH, 50, NOW - 100, op_type=OperationType.CLAIM)], WINDOW, NOW
        )
        assert state.acquired_balances.get(WETH, 0) == 0

    def test_withdraw_only_matches_same_target(self):
        events = [
            deposit(USDC, 600, NOW - 300, target=POOL),
            withdraw(USDC, 600, NOW - 100, target=ROUTER),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.acquired_balances.get(USDC, 0) == 0
        assert state.deposits[0].remaining_amount == 600

    def test_withdraw_consumes_receipt_tokens(self):
        t1 = NOW - 300
        events = [
            deposit(USDC, 1_000, t1, token_out=AUSDC, amount_out=1_000),
            withdraw(USDC, 400, NOW - 100),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.acquired_balances[AUSDC] == 600
        assert state.deposits[0].remaining_output_amount == 600
        assert state.queues[USDC] == [QueueEntry(400, t1)]

    def test_transfer_accrues_spending_and_consumes_acquired(self):
        events = [
            swap(DAI, 500, USDC, 500, NOW - 300),
            transfer(USDC, 200, NOW - 100, cost=0),
            transfer(WETH, 1, NOW - 50, cost=2_000),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.acquired_balances[USDC] == 300
        assert state.total_spending == 2_000

    def test_spending_outside_window_is_not_counted(self):
        events = [
            swap(USDC, 100, WETH, 1, NOW - WINDOW - 10, cost=100),
            swap(USDC, 50, WETH, 1, NOW - 10, cost=50),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.total_spending == 50
        assert len(state.spending_records) == 1

    def test_other_accounts_are_ignored(self):
        events = [
            swap(USDC, 100, WETH, 10, NOW - 100, cost=100, account=OTHER),
            transfer(USDC, 5, NOW - 50, cost=5, account=OTHER),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        assert state.acquired_balances == {}
        assert state.total_spending == 0

    def test_account_match_is_case_insensitive(self):
        upper = "0x" + "AB" * 20
        state = build_account_state(
            upper.lower(), [swap(USDC, 100, WETH, 10, NOW - 100, account=upper)], WINDOW, NOW
        )
        assert state.acquired_balances[WETH] == 10

    def test_same_timestamp_events_follow_log_order(self):
        events = [
            swap(USDC, 100, WETH, 10, NOW - 100, block=5, index=1),
            swap(DAI, 100, USDC, 100, NOW - 100, block=5, index=0),
        ]
        state = build_account_state(ACCOUNT, events, WINDOW, NOW)
        # The DAI->USDC swap runs first, so the USDC spent is fully acquired.
        assert state.queues[WETH] == [QueueEntry(10, NOW - 100)]
        assert state.acquired_balances[USDC] == 0

    def test_recomputation_is_deterministic(self):
        events = [
            swap(DAI, 800, USDC, 800, NOW - 1_000, cost=800),
            swap(USDC, 1_000, WETH, 1_000, NOW - 900, cost=200),
            deposit(WETH, 600, NOW - 800, token_out=AUSDC, amount_out=600),
            withdraw(WETH, 300, NOW - 700),
            transfer(WETH, 100, NOW - 600, cost=50),
        ]
        first = build_account_state(ACCOUNT, events, WINDOW, NOW)
        shuffled = list(events)
        random.Random(7).shuffle(shuffled)
        second = build_account_state(ACCOUNT, shuffled, WINDOW, NOW)

        assert first.acquired_balances == second.acquired_balances
        assert first.total_spending == second.total_spending
        assert first.queues == second.queues
