"""
Calldata classification and parsing.

The selector registry maps 4-byte function selectors to operation types and
fails closed on anything it does not know. Parsers independently extract the
input token and amount from calldata so the caller's claims can be checked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_abi.grammar import parse
from eth_utils import function_signature_to_4byte_selector

from .errors import InvalidCalldata, NoParserRegistered, UnknownSelector
from .events import OperationType, normalize_address


APPROVE_SIGNATURE = "approve(address,uint256)"
TRANSFER_SIGNATURE = "transfer(address,uint256)"

# Positional argument index, a path into tuple arguments, or a fixed address.
FieldRef = Union[int, tuple, str]


def selector_of(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def split_selector(calldata: bytes) -> tuple[bytes, bytes]:
    if len(calldata) < 4:
        raise InvalidCalldata(f"Calldata too short: {len(calldata)} bytes")
    return calldata[:4], calldata[4:]


def argument_types(signature: str) -> list[str]:
    """Return the ABI type strings of a function signature's arguments."""
    start = signature.find("(")
    if start <= 0 or not signature.endswith(")"):
        raise ValueError(f"Invalid function signature: {signature}")
    args = signature[start:]
    if args == "()":
        return []
    return [c.to_type_str() for c in parse(args).components]


def decode_arguments(signature: str, calldata: bytes) -> tuple:
    selector, body = split_selector(calldata)
    if selector != selector_of(signature):
        raise InvalidCalldata(f"Calldata does not encode {signature}")
    try:
        return tuple(decode(argument_types(signature), body))
    except (DecodingError, ValueError) as e:
        raise InvalidCalldata(f"Cannot decode {signature}: {e}") from e


def encode_call(signature: str, *args) -> bytes:
    return selector_of(signature) + encode(argument_types(signature), list(args))


class SelectorRegistry:
    """Maps function selectors to operation types."""

    def __init__(self) -> None:
        self._types: dict[bytes, OperationType] = {}
        self.register(APPROVE_SIGNATURE, OperationType.APPROVE)

    def register(self, signature: str, op_type: OperationType) -> bytes:
        selector = selector_of(signature)
        self._types[selector] = op_type
        return selector

    def register_selector(self, selector: bytes, op_type: OperationType) -> None:
        self._types[bytes(selector)] = op_type

    def classify(self, calldata: bytes) -> OperationType:
        selector, _ = split_selector(calldata)
        op_type = self._types.get(selector, OperationType.UNKNOWN)
        if op_type == OperationType.UNKNOWN:
            raise UnknownSelector("0x" + selector.hex())
        return op_type


class Parser(Protocol):
    def extract_input_token(self, calldata: bytes) -> str: ...

    def extract_input_amount(self, calldata: bytes) -> int: ...

    def extract_output_token(self, calldata: bytes) -> str: ...


@dataclass
class CallLayout:
    """Where a function keeps its input token, input amount and output token."""

    signature: str
    token_in: FieldRef
    amount_in: FieldRef
    token_out: FieldRef


def _resolve(args: tuple, ref: FieldRef):
    if isinstance(ref, str):
        return ref
    if isinstance(ref, int):
        return args[ref]
    value = args
    for index in ref:
        value = value[index]
    return value


@dataclass
class AbiParser:
    """
    Parser driven by ABI signatures.

    Each supported function is described by a ``CallLayout``; decoding uses
    the signature's argument types, so a protocol integration is configuration
    rather than code.
    """

    layouts: dict[bytes, CallLayout] = field(default_factory=dict)

    @classmethod
    def for_calls(cls, *layouts: CallLayout) -> AbiParser:
        parser = cls()
        for layout in layouts:
            parser.add(layout)
        return parser

    def add(self, layout: CallLayout) -> None:
        argument_types(layout.signature)
        self.layouts[selector_of(layout.signature)] = layout

    def _decode(self, calldata: bytes) -> tuple[CallLayout, tuple]:
        selector, _ = split_selector(calldata)
        layout = self.layouts.get(selector)
        if layout is None:
            raise InvalidCalldata(f"Parser has no layout for selector 0x{selector.hex()}")
        return layout, decode_arguments(layout.signature, calldata)

    def _field(self, calldata: bytes, name: str):
        layout, args = self._decode(calldata)
        try:
            return _resolve(args, getattr(layout, name))
        except (IndexError, TypeError) as e:
            raise InvalidCalldata(f"{layout.signature} has no {name} at {getattr(layout, name)!r}") from e

    def extract_input_token(self, calldata: bytes) -> str:
        return normalize_address(self._field(calldata, "token_in"))

    def extract_input_amount(self, calldata: bytes) -> int:
        return int(self._field(calldata, "amount_in"))

    def extract_output_token(self, calldata: bytes) -> str:
        return normalize_address(self._field(calldata, "token_out"))


class ParserRegistry:
    """Parsers keyed by call target."""

    def __init__(self) -> None:
        self._parsers: dict[str, Parser] = {}

    def register(self, target: str, parser: Parser) -> None:
        self._parsers[normalize_address(target)] = parser

    def get(self, target: str) -> Parser:
        parser = self._parsers.get(normalize_address(target))
        if parser is None:
            raise NoParserRegistered(target)
        return parser


def parse_approve(calldata: bytes) -> tuple[str, int]:
    """Return ``(spender, amount)`` from ERC-20 ``approve`` calldata."""
    spender, amount = decode_arguments(APPROVE_SIGNATURE, calldata)
    return normalize_address(spender), int(amount)
