from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import MalformedFrame


# ---------------------------------------------------------------------------
# Session vocabulary
# ---------------------------------------------------------------------------

class Mode(str, Enum):
    NONE = "none"
    HOST = "host"
    GUEST = "guest"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


# ---------------------------------------------------------------------------
# Inbound operations
#
# A frame without "type" is a direct send; everything else is discriminated
# on "type". Unknown fields are ignored, unknown types are rejected.
# ---------------------------------------------------------------------------

class _Operation(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class DirectSend(_Operation):
    type: Literal["direct"] = "direct"
    to: Union[str, List[str]]
    message: str = Field(min_length=1)

    @property
    def targets(self) -> List[str]:
        return [self.to] if isinstance(self.to, str) else list(self.to)

    @property
    def unicast(self) -> bool:
        return isinstance(self.to, str)


class Publish(_Operation):
    type: Literal["publish"]
    channel: str = Field(min_length=1)


class ListChannel(_Operation):
    type: Literal["list"]
    channel: str = Field(min_length=1)


class SetMode(_Operation):
    type: Literal["set_mode"]
    mode: Literal["host", "guest"]
    visibility: Optional[Literal["public", "private"]] = None


class Subscribe(_Operation):
    type: Literal["subscribe"]
    to: str = Field(min_length=1)


class Unsubscribe(_Operation):
    type: Literal["unsubscribe"]


class ListPublicHosts(_Operation):
    type: Literal["list_public_hosts"]


Operation = Annotated[
    Union[DirectSend, Publish, ListChannel, SetMode, Subscribe, Unsubscribe, ListPublicHosts],
    Field(discriminator="type"),
]

_OPERATION_ADAPTER: TypeAdapter = TypeAdapter(Operation)

OPERATION_TYPES = frozenset(
    {"publish", "list", "set_mode", "subscribe", "unsubscribe", "list_public_hosts"}
)


def decode_operation(raw: Union[str, bytes]) -> Operation:
    """Parse one inbound text frame into its operation model.

    Raises MalformedFrame for anything that is not a recognised, well-formed
    operation.
    """

    try:
        obj = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise MalformedFrame("invalid JSON frame") from None

    if not isinstance(obj, dict):
        raise MalformedFrame("frame must be a JSON object")

    type_ = obj.get("type")
    if type_ is None:
        obj = {**obj, "type": "direct"}
    elif not isinstance(type_, str) or type_ not in OPERATION_TYPES:
        raise MalformedFrame(f"unknown operation type {type_!r}")

    try:
        return _OPERATION_ADAPTER.validate_python(obj)
    except ValidationError as exc:
        raise MalformedFrame(_describe(exc)) from None


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    # the first loc element is the union tag
    loc = ".".join(str(part) for part in first["loc"][1:]) or "frame"
    if first["type"] == "missing":
        return f"missing field: {loc}"
    return f"invalid field {loc}: {first['msg']}"


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def iso_timestamp(ms: Optional[int] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision, ``Z`` suffixed."""

    value = now_ms() if ms is None else ms
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_event(type_: str, *, ts: Optional[int] = None, **fields: Any) -> Dict[str, Any]:
    """Create an outbound event dict; ``timestamp`` is always present."""

    frame: Dict[str, Any] = {"type": type_}
    frame.update(fields)
    frame["timestamp"] = iso_timestamp(ts)
    return frame


def encode_frame(frame: Dict[str, Any]) -> str:
    return orjson.dumps(frame).decode("utf-8")


__all__ = [
    "Mode",
    "Visibility",
    "DirectSend",
    "Publish",
    "ListChannel",
    "SetMode",
    "Subscribe",
    "Unsubscribe",
    "ListPublicHosts",
    "Operation",
    "OPERATION_TYPES",
    "decode_operation",
    "now_ms",
    "iso_timestamp",
    "build_event",
    "encode_frame",
]
