"""Wire envelopes exchanged between the client and the execution backend.

The request direction carries the raw source text as the whole frame. The
response direction carries JSON objects of the form
``{"type": "output" | "error" | "clear" | "done", "data": "..."}``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from runstream.errors import ProtocolError

ERROR_PREFIX = "Error: "


class MessageKind(StrEnum):
    SUBMIT = "submit"
    OUTPUT = "output"
    ERROR_OUTPUT = "error"
    CLEAR = "clear"
    STATUS_DONE = "done"


# Kinds that may appear in backend -> client frames.
INBOUND_KINDS: frozenset[MessageKind] = frozenset(
    {MessageKind.OUTPUT, MessageKind.ERROR_OUTPUT, MessageKind.CLEAR, MessageKind.STATUS_DONE}
)


@dataclass(frozen=True)
class Message:
    """One protocol unit."""

    kind: MessageKind
    payload: str = ""

    @classmethod
    def output(cls, data: str) -> Message:
        return cls(MessageKind.OUTPUT, data)

    @classmethod
    def error(cls, data: str) -> Message:
        return cls(MessageKind.ERROR_OUTPUT, data)

    @classmethod
    def clear(cls) -> Message:
        return cls(MessageKind.CLEAR)

    @classmethod
    def done(cls, status: str = "") -> Message:
        return cls(MessageKind.STATUS_DONE, status)

    @classmethod
    def submit(cls, code: str) -> Message:
        return cls(MessageKind.SUBMIT, code)


def encode_submit(code: str) -> str:
    """Encode a submit request. The source text is the frame; empty text is legal."""
    return code


def decode_submit(frame: str | bytes) -> Message:
    """Decode a client frame on the backend side."""
    return Message.submit(_as_text(frame))


def encode(message: Message) -> str:
    """Encode a backend -> client message."""
    if message.kind is MessageKind.SUBMIT:
        return encode_submit(message.payload)
    data: dict[str, Any] = {"type": message.kind.value}
    if message.kind is not MessageKind.CLEAR or message.payload:
        data["data"] = message.payload
    return json.dumps(data, ensure_ascii=False)


def decode(frame: str | bytes) -> Message:
    """Decode a backend -> client frame.

    Raises:
        ProtocolError: when the frame is not a JSON object with a known ``type``
            and a string ``data`` field.
    """
    text = _as_text(frame)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"frame is not valid JSON: {exc.msg}", frame) from exc
    if not isinstance(data, dict):
        raise ProtocolError("frame is not a JSON object", frame)

    kind_value = data.get("type")
    try:
        kind = MessageKind(kind_value)
    except ValueError as exc:
        raise ProtocolError(f"unknown message type: {kind_value!r}", frame) from exc
    if kind not in INBOUND_KINDS:
        raise ProtocolError(f"unexpected message type: {kind_value!r}", frame)

    payload = data.get("data", "")
    if payload is None:
        payload = ""
    if not isinstance(payload, str):
        raise ProtocolError("message data must be a string", frame)
    return Message(kind, payload)


def render_payload(message: Message) -> str:
    """Return the text a message contributes to the displayed output."""
    if message.kind is MessageKind.OUTPUT:
        return message.payload
    if message.kind is MessageKind.ERROR_OUTPUT:
        return f"{ERROR_PREFIX}{message.payload}\n"
    return ""


def _as_text(frame: str | bytes) -> str:
    if isinstance(frame, str):
        return frame
    try:
        return frame.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("frame is not valid UTF-8", frame) from exc
