"""
JSON-RPC adapters for reconciling an on-chain module.

``ChainEventSource`` and ``ChainLedgerClient`` implement the reconciler's
event-source and ledger-client interfaces against the module contract, so the
same reconciler and scheduler drive either the local ledger or a deployed
module.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

import httpx
from eth_abi import decode
from eth_account.signers.local import LocalAccount
from eth_utils import event_signature_to_log_topic, to_bytes, to_checksum_address, to_hex, to_int

from .accounts import AccountLimits
from .errors import RpcError
from .events import OperationEvent, OperationType, TransferEvent, normalize_address
from .parsers import encode_call
from .pricing import RoundData

logger = logging.getLogger(__name__)


PROTOCOL_EXECUTION = (
    "ProtocolExecution(address,address,uint8,address,uint256,address,uint256,uint256)"
)
TRANSFER_EXECUTED = "TransferExecuted(address,address,address,uint256,uint256)"
ACQUIRED_BALANCE_UPDATED = "AcquiredBalanceUpdated(address,address,uint256)"

DEFI_EXECUTE_ROLE = 1


def event_topic(signature: str) -> str:
    return to_hex(event_signature_to_log_topic(signature))


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + normalize_address(address)[2:]


def topic_address(topic: str) -> str:
    return normalize_address("0x" + topic[-40:])


class JsonRpcClient:
    """Minimal Ethereum JSON-RPC client with retries on transport errors."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        http: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._next_id = 0
        self._id_lock = threading.Lock()

    def close(self) -> None:
        self._http.close()

    def _request_id(self) -> int:
        with self._id_lock:
            self._next_id += 1
            return self._next_id

    def call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": self._request_id(), "method": method, "params": params}
        last_error = ""
        for attempt in range(self.max_retries + 1):
            try:
                response = self._http.post(self.url, json=payload)
                response.raise_for_status()
                body = response.json()
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay * (attempt + 1))
                    continue
                break
            except (httpx.HTTPError, ValueError) as e:
                raise RpcError(f"{method} failed: {e}") from e
            if body.get("error"):
                error = body["error"]
                raise RpcError(f"{method} failed: {error.get('message', error)}")
            return body.get("result")
        raise RpcError(f"{method} failed after {self.max_retries + 1} attempts: {last_error}")

    # Common calls

    def block_number(self) -> int:
        return to_int(hexstr=self.call("eth_blockNumber", []))

    def block_timestamp(self, block_number: int) -> int:
        block = self.call("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise RpcError(f"Block {block_number} not found")
        return to_int(hexstr=block["timestamp"])

    def eth_call(self, to: str, data: bytes) -> bytes:
        result = self.call("eth_call", [{"to": to, "data": to_hex(data)}, "latest"])
        return to_bytes(hexstr=result)

    def get_logs(self, address: str, topics: list, from_block: int, to_block: int) -> list[dict]:
        return self.call(
            "eth_getLogs",
            [{
                "address": address,
                "topics": topics,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
            }],
        )


class ChainEventSource:
    """Reads module events through ``eth_getLogs``."""

    def __init__(
        self,
        rpc: JsonRpcClient,
        module_address: str,
        clock: Callable[[], float] = time.time,
        max_cached_blocks: int = 4096,
    ):
        self.rpc = rpc
        self.module_address = normalize_address(module_address)
        self._clock = clock
        self.max_cached_blocks = max_cached_blocks
        self._timestamps: OrderedDict[int, int] = OrderedDict()
        self._cache_lock = threading.Lock()

    def latest_block(self) -> int:
        return self.rpc.block_number()

    def first_block_since(self, timestamp: int) -> Optional[int]:
        # Chain blocks advance with time; the block lookback already spans the window.
        return None

    def _timestamp(self, block_number: int) -> int:
        with self._cache_lock:
            cached = self._timestamps.get(block_number)
            if cached is not None:
                self._timestamps.move_to_end(block_number)
                return cached
        try:
            timestamp = self.rpc.block_timestamp(block_number)
        except RpcError as e:
            logger.warning("No timestamp for block %d, using now: %s", block_number, e)
            return int(self._clock())
        with self._cache_lock:
            self._timestamps[block_number] = timestamp
            while len(self._timestamps) > self.max_cached_blocks:
                self._timestamps.popitem(last=False)
        return timestamp

    def _logs(self, signature: str, from_block: int, to_block: int, account: Optional[str]) -> list[dict]:
        topics: list = [event_topic(signature)]
        if account:
            topics.append(address_topic(account))
        return self.rpc.get_logs(self.module_address, topics, from_block, to_block)

    @staticmethod
    def _position(log: dict) -> tuple[int, int]:
        return to_int(hexstr=log["blockNumber"]), to_int(hexstr=log["logIndex"])

    def operation_events(
        self, from_block: int, to_block: int, account: Optional[str] = None
    ) -> list[OperationEvent]:
        events = []
        for log in self._logs(PROTOCOL_EXECUTION, from_block, to_block, account):
            op_type, token_in, amount_in, token_out, amount_out, cost = decode(
                ["uint8", "address", "uint256", "address", "uint256", "uint256"],
                to_bytes(hexstr=log["data"]),
            )
            block_number, log_index = self._position(log)
            try:
                kind = OperationType(op_type)
            except ValueError:
                kind = OperationType.UNKNOWN
            events.append(
                OperationEvent(
                    account=topic_address(log["topics"][1]),
                    target=topic_address(log["topics"][2]),
                    op_type=kind,
                    token_in=normalize_address(token_in),
                    amount_in=amount_in,
                    token_out=normalize_address(token_out),
                    amount_out=amount_out,
                    spending_cost=cost,
                    timestamp=self._timestamp(block_number),
                    block_number=block_number,
                    log_index=log_index,
                )
            )
        return events

    def transfer_events(
        self, from_block: int, to_block: int, account: Optional[str] = None
    ) -> list[TransferEvent]:
        events = []
        for log in self._logs(TRANSFER_EXECUTED, from_block, to_block, account):
            amount, cost = decode(["uint256", "uint256"], to_bytes(hexstr=log["data"]))
            block_number, log_index = self._position(log)
            events.append(
                TransferEvent(
                    account=topic_address(log["topics"][1]),
                    token=topic_address(log["topics"][2]),
                    recipient=topic_address(log["topics"][3]),
                    amount=amount,
                    spending_cost=cost,
                    timestamp=self._timestamp(block_number),
                    block_number=block_number,
                    log_index=log_index,
                )
            )
        return events

    def correction_tokens(self, account: str, from_block: int, to_block: int) -> set[str]:
        logs = self._logs(ACQUIRED_BALANCE_UPDATED, from_block, to_block, account)
        return {topic_address(log["topics"][2]) for log in logs}


def _view(rpc: JsonRpcClient, to: str, signature: str, output_types: list[str], *args) -> tuple:
    return tuple(decode(output_types, rpc.eth_call(to, encode_call(signature, *args))))


class ChainLedgerClient:
    """Reads module state and submits signed ``batchUpdate`` transactions."""

    def __init__(
        self,
        rpc: JsonRpcClient,
        module_address: str,
        signer: Optional[LocalAccount] = None,
        chain_id: Optional[int] = None,
        gas_limit: int = 500_000,
        receipt_timeout_seconds: float = 120.0,
        receipt_poll_seconds: float = 2.0,
    ):
        self.rpc = rpc
        self.module_address = normalize_address(module_address)
        self.signer = signer
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.receipt_poll_seconds = receipt_poll_seconds
        self._nonce: Optional[int] = None
        self._nonce_lock = threading.Lock()

    def vault_value(self) -> int:
        total, _last_updated, _count = _view(
            self.rpc, self.module_address, "getSafeValue()", ["uint256", "uint256", "uint256"]
        )
        return total

    def spending_allowance(self, account: str) -> int:
        (allowance,) = _view(
            self.rpc, self.module_address, "getSpendingAllowance(address)", ["uint256"],
            normalize_address(account),
        )
        return allowance

    def acquired_balance(self, account: str, token: str) -> int:
        (balance,) = _view(
            self.rpc, self.module_address, "getAcquiredBalance(address,address)", ["uint256"],
            normalize_address(account), normalize_address(token),
        )
        return balance

    def account_limits(self, account: str) -> AccountLimits:
        max_bps, window = _view(
            self.rpc, self.module_address, "getSubAccountLimits(address)", ["uint256", "uint256"],
            normalize_address(account),
        )
        return AccountLimits(max_spending_bps=max_bps, window_duration_seconds=window)

    def active_accounts(self) -> list[str]:
        (accounts,) = _view(
            self.rpc, self.module_address, "getSubaccountsByRole(uint16)", ["address[]"],
            DEFI_EXECUTE_ROLE,
        )
        return [normalize_address(a) for a in accounts]

    def _chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = to_int(hexstr=self.rpc.call("eth_chainId", []))
        return self.chain_id

    def _take_nonce(self) -> int:
        if self._nonce is None:
            self._nonce = to_int(
                hexstr=self.rpc.call("eth_getTransactionCount", [self.signer.address, "pending"])
            )
        nonce = self._nonce
        self._nonce += 1
        return nonce

    def batch_update(
        self, account: str, new_allowance: int, tokens: list[str], balances: list[int]
    ) -> None:
        if self.signer is None:
            raise RpcError("batchUpdate needs an updater key")
        data = encode_call(
            "batchUpdate(address,uint256,address[],uint256[])",
            normalize_address(account),
            new_allowance,
            [normalize_address(t) for t in tokens],
            list(balances),
        )
        with self._nonce_lock:
            try:
                tx = {
                    "to": to_checksum_address(self.module_address),
                    "data": to_hex(data),
                    "value": 0,
                    "gas": self.gas_limit,
                    "gasPrice": to_int(hexstr=self.rpc.call("eth_gasPrice", [])),
                    "nonce": self._take_nonce(),
                    "chainId": self._chain_id(),
                }
                signed = self.signer.sign_transaction(tx)
                tx_hash = self.rpc.call("eth_sendRawTransaction", [to_hex(signed.raw_transaction)])
            except Exception:
                # Resync from the node on the next submission.
                self._nonce = None
                raise
        logger.info("Submitted batchUpdate for %s: %s (nonce %d)", account, tx_hash, tx["nonce"])
        self.wait_for_receipt(tx_hash)

    def wait_for_receipt(self, tx_hash: str) -> dict:
        deadline = time.monotonic() + self.receipt_timeout_seconds
        while True:
            receipt = self.rpc.call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if to_int(hexstr=receipt.get("status", "0x1")) != 1:
                    raise RpcError(f"Transaction {tx_hash} reverted")
                return receipt
            if time.monotonic() >= deadline:
                raise RpcError(f"Timed out waiting for {tx_hash}")
            time.sleep(self.receipt_poll_seconds)


class ChainlinkPriceFeed:
    """``PriceFeed`` backed by a Chainlink aggregator contract."""

    def __init__(self, rpc: JsonRpcClient, address: str):
        self.rpc = rpc
        self.address = normalize_address(address)
        self._decimals: Optional[int] = None

    def latest_round_data(self) -> RoundData:
        round_id, answer, started_at, updated_at, answered_in_round = _view(
            self.rpc, self.address, "latestRoundData()",
            ["uint80", "int256", "uint256", "uint256", "uint80"],
        )
        return RoundData(round_id, answer, started_at, updated_at, answered_in_round)

    def decimals(self) -> int:
        if self._decimals is None:
            (self._decimals,) = _view(self.rpc, self.address, "decimals()", ["uint8"])
        return self._decimals


class ChainBalances:
    """ERC-20 balances of an address, as a ``BalanceSource``."""

    def __init__(self, rpc: JsonRpcClient, holder: str):
        self.rpc = rpc
        self.holder = normalize_address(holder)

    def balance_of(self, token: str) -> int:
        (balance,) = _view(self.rpc, normalize_address(token), "balanceOf(address)", ["uint256"], self.holder)
        return balance
