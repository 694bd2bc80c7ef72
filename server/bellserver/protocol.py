from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Iterable

import numpy as np

# One probability record on the wire: uint16 class index + float32 score, both little-endian.
RECORD_DTYPE = np.dtype([("index", "<u2"), ("probability", "<f4")])
RECORD_SIZE = RECORD_DTYPE.itemsize  # 6 bytes, no padding


class MessageType(enum.IntEnum):
    HELLO = 0x00
    PROBABILITY = 0x01


class ProtocolError(ValueError):
    """A device frame that cannot be decoded. The connection stays open."""


class UnknownMessageType(ProtocolError):
    def __init__(self, tag: int) -> None:
        super().__init__(f"unknown message type 0x{tag:02x}")
        self.tag = tag


class MalformedHello(ProtocolError):
    pass


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    name: str
    uuid: str


@dataclass(frozen=True, slots=True)
class Hello:
    identity: DeviceIdentity


@dataclass(frozen=True, slots=True)
class ProbabilityRecord:
    index: int
    probability: float


@dataclass(frozen=True, slots=True)
class ProbabilityBatch:
    records: list[ProbabilityRecord]


Message = Hello | ProbabilityBatch


def dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def loads(text: str) -> Any:
    return json.loads(text)


def decode_hello(payload: bytes) -> Hello:
    try:
        obj = loads(bytes(payload).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedHello(f"hello payload is not UTF-8 JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedHello("hello payload must be a JSON object")
    name = obj.get("name")
    uuid = obj.get("uuid")
    if not isinstance(name, str) or not isinstance(uuid, str) or not uuid:
        raise MalformedHello("hello payload needs string fields 'name' and 'uuid'")
    return Hello(identity=DeviceIdentity(name=name, uuid=uuid.lower()))


def decode_probabilities(payload: bytes) -> list[ProbabilityRecord]:
    """Decode whole 6-byte records; a trailing partial record is ignored."""
    count = len(payload) // RECORD_SIZE
    if count == 0:
        return []
    arr = np.frombuffer(payload, dtype=RECORD_DTYPE, count=count)
    return [ProbabilityRecord(index=int(i), probability=float(p)) for i, p in zip(arr["index"], arr["probability"])]


def decode_frame(frame: bytes) -> Message:
    if not frame:
        raise ProtocolError("empty frame")
    view = memoryview(frame)
    tag = view[0]
    payload = view[1:]
    if tag == MessageType.HELLO:
        return decode_hello(payload)
    if tag == MessageType.PROBABILITY:
        return ProbabilityBatch(records=decode_probabilities(payload))
    raise UnknownMessageType(tag)


def encode_hello(name: str, uuid: str) -> bytes:
    return bytes([MessageType.HELLO]) + dumps({"name": name, "uuid": uuid}).encode("utf-8")


def encode_probabilities(records: Iterable[tuple[int, float]]) -> bytes:
    pairs = list(records)
    arr = np.zeros(len(pairs), dtype=RECORD_DTYPE)
    for n, (index, probability) in enumerate(pairs):
        arr[n] = (index, probability)
    return bytes([MessageType.PROBABILITY]) + arr.tobytes()
