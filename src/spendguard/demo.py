"""Simulated protocols for the local demo: a fixed-rate swap router and a lending pool."""

from __future__ import annotations

from .events import OperationType, normalize_address
from .parsers import AbiParser, CallLayout, SelectorRegistry, decode_arguments, selector_of
from .vault import CallHandler, InMemoryVault


SWAP_SIGNATURE = "swapExactIn(address,uint256,address,uint256)"
SUPPLY_SIGNATURE = "supply(address,uint256,address,uint16)"
WITHDRAW_SIGNATURE = "withdraw(address,uint256,address)"


def register_demo_selectors(selectors: SelectorRegistry) -> None:
    selectors.register(SWAP_SIGNATURE, OperationType.SWAP)
    selectors.register(SUPPLY_SIGNATURE, OperationType.DEPOSIT)
    selectors.register(WITHDRAW_SIGNATURE, OperationType.WITHDRAW)


def swap_router_parser() -> AbiParser:
    return AbiParser.for_calls(
        CallLayout(SWAP_SIGNATURE, token_in=0, amount_in=1, token_out=2),
    )


def lending_pool_parser(receipt_tokens: dict[str, str]) -> AbiParser:
    """Parser for a pool whose receipt token for each asset is fixed."""

    class _PoolParser(AbiParser):
        def extract_output_token(self, calldata: bytes) -> str:
            if calldata[:4] == selector_of(SUPPLY_SIGNATURE):
                return normalize_address(receipt_tokens[self.extract_input_token(calldata)])
            return self.extract_input_token(calldata)

    parser = _PoolParser()
    parser.add(CallLayout(SUPPLY_SIGNATURE, token_in=0, amount_in=1, token_out=0))
    parser.add(CallLayout(WITHDRAW_SIGNATURE, token_in=0, amount_in=1, token_out=0))
    return parser


def swap_router(rates: dict[tuple[str, str], tuple[int, int]]) -> CallHandler:
    """
    Router swapping at fixed rates.

    ``rates`` maps ``(token_in, token_out)`` to ``(numerator, denominator)``:
    output units per input unit.
    """
    normalized = {(normalize_address(a), normalize_address(b)): r for (a, b), r in rates.items()}

    def handle(vault: InMemoryVault, calldata: bytes) -> bool:
        token_in, amount_in, token_out, min_out = decode_arguments(SWAP_SIGNATURE, calldata)
        rate = normalized.get((normalize_address(token_in), normalize_address(token_out)))
        if rate is None or vault.balance_of(token_in) < amount_in:
            return False
        numerator, denominator = rate
        amount_out = amount_in * numerator // denominator
        if amount_out < min_out:
            return False
        vault.move(token_in, -amount_in)
        vault.move(token_out, amount_out)
        return True

    return handle


def lending_pool(receipt_tokens: dict[str, str]) -> CallHandler:
    """Pool minting receipt tokens 1:1 on supply and burning them on withdraw."""
    receipts = {normalize_address(a): normalize_address(r) for a, r in receipt_tokens.items()}

    def handle(vault: InMemoryVault, calldata: bytes) -> bool:
        if calldata[:4] == selector_of(SUPPLY_SIGNATURE):
            asset, amount, _on_behalf_of, _referral = decode_arguments(SUPPLY_SIGNATURE, calldata)
            receipt = receipts.get(normalize_address(asset))
            if receipt is None or vault.balance_of(asset) < amount:
                return False
            vault.move(asset, -amount)
            vault.move(receipt, amount)
            return True
        if calldata[:4] == selector_of(WITHDRAW_SIGNATURE):
            asset, amount, _to = decode_arguments(WITHDRAW_SIGNATURE, calldata)
            receipt = receipts.get(normalize_address(asset))
            if receipt is None or vault.balance_of(receipt) < amount:
                return False
            vault.move(receipt, -amount)
            vault.move(asset, amount)
            return True
        return False

    return handle
