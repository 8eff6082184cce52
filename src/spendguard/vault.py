"""Vault call-execution interface and an in-memory implementation."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

from .events import normalize_address
from .parsers import APPROVE_SIGNATURE, TRANSFER_SIGNATURE, decode_arguments, selector_of

logger = logging.getLogger(__name__)


class Vault(Protocol):
    def exec_call(self, target: str, calldata: bytes) -> bool: ...

    def balance_of(self, token: str) -> int: ...


# A protocol simulation: (vault, calldata) -> success.
CallHandler = Callable[["InMemoryVault", bytes], bool]


class InMemoryVault:
    """
    Token balances plus per-target call handlers.

    ERC-20 ``transfer`` and ``approve`` are understood for any token; other
    targets need a handler. Handlers must leave balances untouched when they
    return False or raise.
    """

    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._balances: dict[str, int] = {}
        self.approvals: dict[tuple[str, str], int] = {}
        self._handlers: dict[str, CallHandler] = {}
        self._mutex = threading.RLock()
        for token, amount in (balances or {}).items():
            self.set_balance(token, amount)

    def set_balance(self, token: str, amount: int) -> None:
        with self._mutex:
            self._balances[normalize_address(token)] = amount

    def balance_of(self, token: str) -> int:
        with self._mutex:
            return self._balances.get(normalize_address(token), 0)

    def move(self, token: str, delta: int) -> None:
        key = normalize_address(token)
        with self._mutex:
            new_balance = self._balances.get(key, 0) + delta
            if new_balance < 0:
                raise ValueError(f"Insufficient {key} balance")
            self._balances[key] = new_balance

    def register_handler(self, target: str, handler: CallHandler) -> None:
        self._handlers[normalize_address(target)] = handler

    def exec_call(self, target: str, calldata: bytes) -> bool:
        key = normalize_address(target)
        with self._mutex:
            handler = self._handlers.get(key)
            if handler is not None:
                return bool(handler(self, calldata))
            selector = calldata[:4]
            if selector == selector_of(TRANSFER_SIGNATURE):
                recipient, amount = decode_arguments(TRANSFER_SIGNATURE, calldata)
                if self.balance_of(key) < amount:
                    return False
                self.move(key, -amount)
                logger.debug("Transferred %d %s to %s", amount, key, recipient)
                return True
            if selector == selector_of(APPROVE_SIGNATURE):
                spender, amount = decode_arguments(APPROVE_SIGNATURE, calldata)
                self.approvals[(key, normalize_address(spender))] = amount
                return True
            return False
