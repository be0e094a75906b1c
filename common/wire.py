"""
common.wire

Datagram formats shared by peers and the server.

- Control datagrams are the raw literals in common.config (TOKEN, CHECK, OK).
- A submission is a JSON array of {"operation", "arg1", "arg2"} objects.
- A reply is a JSON array of strings, positionally aligned with the submission.

Each element of a submission is validated on its own: a bad element decodes to
an InvalidRequest so only that element fails, not the whole batch.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Sequence, Tuple, Union

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


class RingError(Exception):
    pass


class ProtocolError(RingError):
    """Payload could not be decoded at all."""


class AddressError(RingError, ValueError):
    pass


class Operation(str, Enum):
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]


_SYMBOLS = {
    Operation.ADD: "+",
    Operation.SUB: "-",
    Operation.MUL: "*",
    Operation.DIV: "/",
}


@dataclass(frozen=True)
class Request:
    operation: Operation
    arg1: int
    arg2: int

    def __post_init__(self):
        # accept the plain tag too, Request("add", 1, 2)
        object.__setattr__(self, "operation", Operation(self.operation))
        for name in ("arg1", "arg2"):
            v = getattr(self, name)
            if not _is_int32(v):
                raise ValueError(f"{name} must be a 32-bit signed integer, got {v!r}")

    def to_dict(self) -> dict:
        return {"operation": self.operation.value, "arg1": self.arg1, "arg2": self.arg2}

    def __str__(self) -> str:
        return f"{self.arg1} {self.operation.symbol} {self.arg2}"


@dataclass(frozen=True)
class InvalidRequest:
    """A batch element that failed validation; evaluates to INVALID_OPERATION."""
    raw: object
    reason: str

    def __str__(self) -> str:
        return f"<invalid: {self.reason}>"


BatchItem = Union[Request, InvalidRequest]


def _is_int32(v) -> bool:
    # bool is an int subclass; true/false are not operands
    return isinstance(v, int) and not isinstance(v, bool) and INT32_MIN <= v <= INT32_MAX


def _load_json(data: bytes):
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise ProtocolError(f"undecodable payload: {e}") from e


def parse_item(raw) -> BatchItem:
    if not isinstance(raw, dict):
        return InvalidRequest(raw, "not an object")

    try:
        operation = Operation(raw.get("operation"))
    except ValueError:
        return InvalidRequest(raw, f"unknown operation {raw.get('operation')!r}")

    arg1 = raw.get("arg1")
    arg2 = raw.get("arg2")
    if not (_is_int32(arg1) and _is_int32(arg2)):
        return InvalidRequest(raw, "operands must be 32-bit signed integers")

    return Request(operation, arg1, arg2)


def encode_requests(requests: Sequence[Request]) -> bytes:
    return json.dumps([r.to_dict() for r in requests], separators=(",", ":")).encode("utf-8")


def decode_requests(data: bytes) -> List[BatchItem]:
    payload = _load_json(data)
    if not isinstance(payload, list):
        raise ProtocolError("request batch must be a JSON array")
    return [parse_item(raw) for raw in payload]


def encode_results(results: Sequence[str]) -> bytes:
    return json.dumps(list(results)).encode("utf-8")


def decode_results(data: bytes) -> List[str]:
    payload = _load_json(data)
    if not isinstance(payload, list) or not all(isinstance(r, str) for r in payload):
        raise ProtocolError("result batch must be a JSON array of strings")
    return payload


def split_batches(requests: Sequence[Request], size: int) -> Iterator[List[Request]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    for i in range(0, len(requests), size):
        yield list(requests[i:i + size])


def parse_address(text: str) -> Tuple[str, int]:
    """'host:port' -> (host, port)"""
    host, sep, port = text.strip().rpartition(":")
    if not sep or not host:
        raise AddressError(f"expected host:port, got {text!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise AddressError(f"invalid port in {text!r}") from None
    if not 0 < port_num <= 0xFFFF:
        raise AddressError(f"port out of range in {text!r}")
    return host, port_num
