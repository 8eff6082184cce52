"""
Spendguard CLI: spending oracle for delegated vault accounts.

Commands:
    spendguard run          Run the event poller and periodic full refresh
    spendguard reconcile    Reconcile one account now
    spendguard refresh      Reconcile every active account once
    spendguard state        Show an account's recomputed and stored state
    spendguard events       View the local execution log
    spendguard demo         Run a full local demo flow
"""

from __future__ import annotations

import logging
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .accounts import AccountRegistry, Role
from .config import OracleConfig
from .errors import SpendGuardError
from .events import OperationEvent, TransferEvent
from .execution_log import ExecutionLog
from .ledger import Ledger, LedgerWriter, VaultValueWriter
from .money import format_usd
from .reconciler import LocalLedgerClient, ReconcileStatus, Reconciler
from .scheduler import Scheduler


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _load_signer(key_input: Optional[str]):
    if not key_input:
        return None
    try:
        return Account.from_key(_resolve_private_key(key_input))
    except (ValueError, RuntimeError) as e:
        click.echo(f"❌ Failed to load updater key: {e}", err=True)
        sys.exit(1)


def _build(config: OracleConfig, updater_key: Optional[str]):
    """Wire the event source and ledger client for the configured backend."""
    signer = _load_signer(updater_key)
    if config.rpc_url:
        from .rpc import ChainEventSource, ChainLedgerClient, JsonRpcClient

        if not config.module_address:
            raise click.UsageError("--module-address is required with --rpc-url")
        rpc = JsonRpcClient(config.rpc_url)
        return (
            ChainEventSource(rpc, config.module_address),
            ChainLedgerClient(rpc, config.module_address, signer),
        )

    log = ExecutionLog()
    ledger = Ledger(log=log)
    if signer and ledger.updater is None:
        # The first key to write claims the ledger.
        ledger = Ledger(updater=signer.address, log=log)
    writer = LedgerWriter(ledger, signer) if signer else None
    return log, LocalLedgerClient(ledger, writer, AccountRegistry())


def _echo_result(result) -> None:
    icon = {
        ReconcileStatus.UPDATED: "✅",
        ReconcileStatus.SKIPPED: "⏭️ ",
        ReconcileStatus.FAILED: "❌",
    }[result.status]
    if result.status == ReconcileStatus.FAILED:
        click.echo(f"{icon} {result.account}: {result.error}")
        return
    click.echo(
        f"{icon} {result.account}: allowance {format_usd(result.previous_allowance)}"
        f" → {format_usd(result.new_allowance)}, spent {format_usd(result.total_spending)}"
    )
    for token, balance in result.balances.items():
        click.echo(f"     {token}: {balance}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.option("--rpc-url", default=None, help="JSON-RPC endpoint of a deployed module (default: local ledger)")
@click.option("--module-address", default=None, help="Module contract address")
@click.option("--updater-key", default=None, envvar="SPENDGUARD_UPDATER_KEY",
              help="Updater private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing a raw --updater-key via argv (unsafe; can leak in shell/process history).",
)
@click.pass_context
def main(
    ctx,
    log_level: str,
    rpc_url: Optional[str],
    module_address: Optional[str],
    updater_key: Optional[str],
    unsafe_allow_key_arg: bool,
):
    """Spendguard — Spending limits and acquired-balance accounting for vault accounts."""
    key_from_argv = (
        updater_key is not None
        and not updater_key.strip().startswith("op://")
        and ctx.get_parameter_source("updater_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --updater-key from argv. Set SPENDGUARD_UPDATER_KEY, pass an op:// "
            "reference, or pass --unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["updater_key"] = updater_key
    ctx.obj["overrides"] = {"rpc_url": rpc_url, "module_address": module_address}


def _config(ctx, **overrides) -> OracleConfig:
    try:
        return OracleConfig.from_env(**ctx.obj["overrides"], **overrides)
    except SpendGuardError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option("--poll-interval", type=float, default=None, help="Seconds between event polls")
@click.option("--refresh-interval", type=float, default=None, help="Seconds between full refreshes")
@click.pass_context
def run(ctx, poll_interval: Optional[float], refresh_interval: Optional[float]):
    """Run the event poller and the periodic full refresh."""
    config = _config(
        ctx, poll_interval_seconds=poll_interval, refresh_interval_seconds=refresh_interval
    )
    if not ctx.obj["updater_key"]:
        click.echo("❌ An updater key is required to write corrections", err=True)
        sys.exit(1)
    events, ledger = _build(config, ctx.obj["updater_key"])
    scheduler = Scheduler(Reconciler(events, ledger, config), events, ledger, config)
    click.echo(
        f"🔁 Polling every {config.poll_interval_seconds}s, "
        f"full refresh every {config.refresh_interval_seconds}s (Ctrl-C to stop)"
    )
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        click.echo("👋 Stopped")


@main.command()
@click.argument("account")
@click.option("--dry-run", is_flag=True, help="Compute the correction without writing it")
@click.pass_context
def reconcile(ctx, account: str, dry_run: bool):
    """Reconcile one account now."""
    config = _config(ctx)
    if not dry_run and not ctx.obj["updater_key"]:
        click.echo("❌ An updater key is required to write corrections", err=True)
        sys.exit(1)
    events, ledger = _build(config, None if dry_run else ctx.obj["updater_key"])
    reconciler = Reconciler(events, ledger, config)
    if dry_run:
        planned, computed = reconciler.plan(account)
        click.echo("🔍 DRY RUN — no correction will be written")
        click.echo(f"   Allowance: {format_usd(planned.previous_allowance)} → {format_usd(planned.new_allowance)}")
        click.echo(f"   Spent in window: {format_usd(computed.total_spending)}")
        for token, balance in zip(planned.tokens, planned.balances):
            click.echo(f"   {token}: {balance}")
        if not planned.has_changes:
            click.echo("   No changes")
        return
    result = reconciler.reconcile(account)
    _echo_result(result)
    if result.status == ReconcileStatus.FAILED:
        sys.exit(1)


@main.command()
@click.pass_context
def refresh(ctx):
    """Reconcile every active account once."""
    config = _config(ctx)
    if not ctx.obj["updater_key"]:
        click.echo("❌ An updater key is required to write corrections", err=True)
        sys.exit(1)
    events, ledger = _build(config, ctx.obj["updater_key"])
    scheduler = Scheduler(Reconciler(events, ledger, config), events, ledger, config)
    report = scheduler.refresh_once()
    if report is None:
        click.echo("⏭️  Refresh already running")
        return
    if report.error:
        click.echo(f"❌ Refresh failed: {report.error}", err=True)
        sys.exit(1)
    for result in report.results:
        _echo_result(result)
    click.echo(f"📊 {report.summary()}")
    if report.failed:
        sys.exit(1)


@main.command()
@click.argument("account")
@click.pass_context
def state(ctx, account: str):
    """Show an account's recomputed state next to the stored ledger values."""
    config = _config(ctx)
    events, ledger = _build(config, None)
    reconciler = Reconciler(events, ledger, config)
    try:
        computed, limits = reconciler.compute_state(account)
        allowance = reconciler.allowance_for(computed, limits)
        stored_allowance = ledger.spending_allowance(account)
    except SpendGuardError as e:
        click.echo(f"❌ Failed to read state: {e}", err=True)
        sys.exit(1)

    click.echo(f"📊 State for {account}")
    click.echo(f"   Limits:           {limits.max_spending_bps} bps over {limits.window_duration_seconds}s")
    click.echo(f"   Spent in window:  {format_usd(computed.total_spending)} ({len(computed.spending_records)} records)")
    click.echo(f"   Allowance:        {format_usd(allowance)} computed, {format_usd(stored_allowance)} stored")
    if computed.acquired_balances:
        click.echo("   Acquired balances (computed / stored):")
        for token, balance in sorted(computed.acquired_balances.items()):
            click.echo(f"     {token}: {balance} / {ledger.acquired_balance(account, token)}")
    open_deposits = [d for d in computed.deposits if d.remaining_amount > 0]
    if open_deposits:
        click.echo(f"   Open deposits:    {len(open_deposits)}")


@main.command()
@click.option("--account", default=None, help="Filter by account")
@click.option("--limit", type=int, default=20, help="Number of events")
def events(account: Optional[str], limit: int):
    """View the local execution log."""
    log = ExecutionLog()
    try:
        entries = log.read_events(account=account)
    except SpendGuardError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not entries:
        click.echo("No events found.")
        return

    for event in entries[-limit:]:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        position = f"#{event.block_number}.{event.log_index}"
        if isinstance(event, OperationEvent):
            click.echo(
                f"  {ts} {position} {event.op_type.name} {event.account} → {event.target}"
                f" in {event.amount_in} out {event.amount_out} cost {format_usd(event.spending_cost)}"
            )
        elif isinstance(event, TransferEvent):
            click.echo(
                f"  {ts} {position} TRANSFER {event.account} {event.amount} → {event.recipient}"
                f" cost {format_usd(event.spending_cost)}"
            )
        else:
            token = event.token or "allowance"
            click.echo(f"  {ts} {position} CORRECTION {event.account} {token} = {event.new_balance}")


@main.command()
def demo():
    """Run a full demo of the spending checkpoint and reconciler."""
    from .demo import (
        SUPPLY_SIGNATURE,
        SWAP_SIGNATURE,
        WITHDRAW_SIGNATURE,
        lending_pool,
        lending_pool_parser,
        register_demo_selectors,
        swap_router,
        swap_router_parser,
    )
    from .parsers import ParserRegistry, SelectorRegistry, encode_call
    from .policy import PolicyEvaluator
    from .pricing import PriceValuator, StaticPriceFeed, VaultValueUpdater
    from .vault import InMemoryVault

    click.echo("🎬 Spendguard Demo — Spending Limits & Acquired Balances")
    click.echo("=" * 56)

    with tempfile.TemporaryDirectory() as tmp:
        home = Path(tmp)

        click.echo("\n1️⃣  Generating identities...")
        updater = Account.create()
        valuer = Account.create()
        account = Account.create().address.lower()
        click.echo(f"   Reconciler: {updater.address}")
        click.echo(f"   Valuer:     {valuer.address}")
        click.echo(f"   Account:    {account}")

        usdc = "0x" + "a0" * 20
        weth = "0x" + "c0" * 20
        ausdc = "0x" + "ae" * 20
        router = "0x" + "51" * 20
        pool = "0x" + "87" * 20

        click.echo("\n2️⃣  Setting up vault, prices and roles...")
        log = ExecutionLog(home / "execution.jsonl", home / ".secrets" / "log_hmac.key")
        ledger = Ledger(home / "ledger", updater=updater.address, vault_value_updater=valuer.address, log=log)
        accounts = AccountRegistry(home / "accounts.json")
        accounts.grant_role(account, Role.EXECUTE)
        accounts.set_allowed(account, router)
        accounts.set_allowed(account, pool)

        vault = InMemoryVault({usdc: 10_000 * 10**6})
        # $2,000 per WETH: 1 USDC unit buys 5e8 wei, 1 wei buys 2e-9 USDC units.
        vault.register_handler(router, swap_router({
            (usdc, weth): (5 * 10**8, 1),
            (weth, usdc): (2, 10**9),
        }))
        vault.register_handler(pool, lending_pool({usdc: ausdc}))

        valuator = PriceValuator()
        valuator.register(usdc, StaticPriceFeed(10**8), 6)
        valuator.register(weth, StaticPriceFeed(2_000 * 10**8), 18)
        valuator.register(ausdc, StaticPriceFeed(10**8), 6)

        selectors = SelectorRegistry()
        register_demo_selectors(selectors)
        parsers = ParserRegistry()
        parsers.register(router, swap_router_parser())
        parsers.register(pool, lending_pool_parser({usdc: ausdc}))

        snapshot = VaultValueUpdater(vault, valuator, VaultValueWriter(ledger, valuer)).update()
        click.echo(f"   Vault value: {format_usd(snapshot.value_usd)} (account limit 5%)")

        config = OracleConfig()
        client = LocalLedgerClient(ledger, LedgerWriter(ledger, updater), accounts)
        reconciler = Reconciler(log, client, config)
        evaluator = PolicyEvaluator(ledger, accounts, selectors, parsers, valuator, vault, log)

        click.echo("\n3️⃣  Initial reconciliation...")
        _echo_result(reconciler.reconcile(account))

        click.echo("\n4️⃣  Executing operations...")
        attempts = [
            ("Supply 1,000 USDC", pool, encode_call(
                SUPPLY_SIGNATURE, usdc, 1_000 * 10**6, account, 0), usdc, 1_000 * 10**6),
            ("Swap 400 USDC → WETH", router, encode_call(
                SWAP_SIGNATURE, usdc, 400 * 10**6, weth, 0), usdc, 400 * 10**6),
            ("Supply 100 USDC", pool, encode_call(
                SUPPLY_SIGNATURE, usdc, 100 * 10**6, account, 0), usdc, 100 * 10**6),
            ("Withdraw 100 USDC", pool, encode_call(
                WITHDRAW_SIGNATURE, usdc, 100 * 10**6, account), usdc, 100 * 10**6),
        ]
        for desc, target, calldata, token_in, amount_in in attempts:
            try:
                event = evaluator.execute(account, target, calldata, token_in, amount_in)
                click.echo(f"   ✅ {desc}: cost {format_usd(event.spending_cost)}, out {event.amount_out}")
            except SpendGuardError as e:
                click.echo(f"   ❌ {desc}: {e}")
            _echo_result(reconciler.reconcile(account))

        click.echo("\n5️⃣  Execution log...")
        summary = log.summary(account)
        click.echo(f"   {summary['total_events']} events in {summary['last_block']} blocks: {summary['by_kind']}")

    click.echo("\n" + "=" * 56)
    click.echo("🎉 Demo complete! Execute → Log → Reconcile → Correct → Enforce")


if __name__ == "__main__":
    main()
