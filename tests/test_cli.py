"""CLI tests: local backend commands and key handling."""

import time

from click.testing import CliRunner
from eth_account import Account

from spendguard.cli import main
from spendguard.events import OperationEvent, OperationType
from spendguard.execution_log import ExecutionLog
from spendguard.ledger import Ledger, VaultValueWriter
from spendguard.money import USD_SCALE


ACCOUNT = "0x" + "a1" * 20
ROUTER = "0x" + "51" * 20
USDC = "0x" + "a0" * 20
WETH = "0x" + "c0" * 20


def seed_home(home, updater):
    """Local state with a $10,000 vault and one $400 swap by ACCOUNT."""
    valuer = Account.create()
    log = ExecutionLog(home / "execution.jsonl", home / ".secrets" / "log_hmac.key")
    ledger = Ledger(home / "ledger", updater=updater.address, vault_value_updater=valuer.address, log=log)
    VaultValueWriter(ledger, valuer).push(10_000 * USD_SCALE)
    log.append([
        OperationEvent(
            account=ACCOUNT,
            target=ROUTER,
            op_type=OperationType.SWAP,
            token_in=USDC,
            amount_in=400 * 10**6,
            token_out=WETH,
            amount_out=2 * 10**17,
            spending_cost=400 * USD_SCALE,
            timestamp=int(time.time()) - 100,
        )
    ])
    return ledger


def test_demo_runs():
    result = CliRunner().invoke(main, ["demo"])
    assert result.exit_code == 0, result.output
    assert "Demo complete" in result.output
    assert "❌ Supply 1,000 USDC" in result.output
    assert "✅ Withdraw 100 USDC: cost $0.00" in result.output


def test_events_on_empty_home(tmp_path):
    result = CliRunner().invoke(main, ["events"], env={"SPENDGUARD_HOME": str(tmp_path)})
    assert result.exit_code == 0
    assert "No events found." in result.output


def test_reconcile_requires_key(tmp_path):
    result = CliRunner().invoke(
        main, ["reconcile", ACCOUNT],
        env={"SPENDGUARD_HOME": str(tmp_path), "SPENDGUARD_UPDATER_KEY": None},
    )
    assert result.exit_code == 1
    assert "updater key is required" in result.output


def test_rejects_raw_key_on_argv(tmp_path):
    result = CliRunner().invoke(
        main,
        ["--updater-key", Account.create().key.hex(), "reconcile", ACCOUNT],
        env={"SPENDGUARD_HOME": str(tmp_path)},
    )
    assert result.exit_code != 0
    assert "Refusing --updater-key from argv" in result.output


def test_raw_key_allowed_with_explicit_flag(tmp_path):
    result = CliRunner().invoke(
        main,
        ["--unsafe-allow-key-arg", "--updater-key", Account.create().key.hex(), "reconcile", ACCOUNT],
        env={"SPENDGUARD_HOME": str(tmp_path)},
    )
    assert result.exit_code == 0, result.output
    assert "Refusing" not in result.output


def test_malformed_key(tmp_path):
    result = CliRunner().invoke(
        main, ["reconcile", ACCOUNT],
        env={"SPENDGUARD_HOME": str(tmp_path), "SPENDGUARD_UPDATER_KEY": "0x1234"},
    )
    assert result.exit_code == 1
    assert "Failed to load updater key" in result.output


def test_invalid_environment(tmp_path):
    result = CliRunner().invoke(
        main, ["state", ACCOUNT],
        env={"SPENDGUARD_HOME": str(tmp_path), "SPENDGUARD_WINDOW_SECONDS": "soon"},
    )
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


class TestLocalReconcile:
    def test_dry_run_writes_nothing(self, tmp_path):
        updater = Account.create()
        ledger = seed_home(tmp_path, updater)

        result = CliRunner().invoke(
            main, ["reconcile", ACCOUNT, "--dry-run"], env={"SPENDGUARD_HOME": str(tmp_path)}
        )

        assert result.exit_code == 0, result.output
        assert "DRY RUN" in result.output
        assert "$0.00 → $100.00" in result.output
        assert ledger.get_spending_allowance(ACCOUNT) == 0

    def test_reconcile_writes_correction(self, tmp_path):
        updater = Account.create()
        ledger = seed_home(tmp_path, updater)
        env = {"SPENDGUARD_HOME": str(tmp_path), "SPENDGUARD_UPDATER_KEY": updater.key.hex()}

        result = CliRunner().invoke(main, ["reconcile", ACCOUNT], env=env)

        assert result.exit_code == 0, result.output
        assert "✅" in result.output
        assert ledger.get_spending_allowance(ACCOUNT) == 100 * USD_SCALE
        assert ledger.get_acquired_balance(ACCOUNT, WETH) == 2 * 10**17

        again = CliRunner().invoke(main, ["reconcile", ACCOUNT], env=env)
        assert again.exit_code == 0
        assert "⏭️" in again.output

    def test_wrong_updater_fails(self, tmp_path):
        seed_home(tmp_path, Account.create())
        env = {"SPENDGUARD_HOME": str(tmp_path), "SPENDGUARD_UPDATER_KEY": Account.create().key.hex()}

        result = CliRunner().invoke(main, ["reconcile", ACCOUNT], env=env)

        assert result.exit_code == 1
        assert "❌" in result.output

    def test_state_and_events(self, tmp_path):
        updater = Account.create()
        seed_home(tmp_path, updater)
        env = {"SPENDGUARD_HOME": str(tmp_path), "SPENDGUARD_UPDATER_KEY": updater.key.hex()}
        CliRunner().invoke(main, ["reconcile", ACCOUNT], env=env)

        state = CliRunner().invoke(main, ["state", ACCOUNT], env={"SPENDGUARD_HOME": str(tmp_path)})
        assert state.exit_code == 0, state.output
        assert "Spent in window:  $400.00 (1 records)" in state.output
        assert "$100.00 computed, $100.00 stored" in state.output
        assert f"{WETH}: {2 * 10**17} / {2 * 10**17}" in state.output

        events = CliRunner().invoke(main, ["events", "--account", ACCOUNT], env={"SPENDGUARD_HOME": str(tmp_path)})
        assert events.exit_code == 0
        assert "SWAP" in events.output
        assert "CORRECTION" in events.output

    def test_refresh_with_no_active_accounts(self, tmp_path):
        updater = Account.create()
        seed_home(tmp_path, updater)
        env = {"SPENDGUARD_HOME": str(tmp_path), "SPENDGUARD_UPDATER_KEY": updater.key.hex()}

        result = CliRunner().invoke(main, ["refresh"], env=env)

        assert result.exit_code == 0, result.output
        assert "refresh: 0 updated" in result.output
