"""Run session state machine.

``transition`` is a pure function from (view, event) to (view, effects) so
every rule can be exercised without a live connection. ``RunSession``
holds the current view and is owned by exactly one client driver.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import StrEnum

from loguru import logger

from runstream.protocol import Message, MessageKind, render_payload

REJECT_ALREADY_RUNNING = "already running"
REJECT_NOT_CONNECTED = "not connected"
STATUS_CONNECTION_LOST = "connection lost"


class SessionState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionView:
    """Immutable snapshot of one session."""

    state: SessionState = SessionState.IDLE
    output: str = ""
    last_activity: float = 0.0
    run_id: int = 0


# Events


@dataclass(frozen=True)
class Submit:
    code: str


@dataclass(frozen=True)
class Received:
    message: Message


@dataclass(frozen=True)
class Clear:
    pass


@dataclass(frozen=True)
class ChannelLost:
    reason: str


Event = Submit | Received | Clear | ChannelLost


# Effects


@dataclass(frozen=True)
class SendSubmit:
    code: str
    run_id: int


@dataclass(frozen=True)
class Rejected:
    reason: str
    run_id: int


@dataclass(frozen=True)
class OutputAppended:
    chunk: str


@dataclass(frozen=True)
class OutputCleared:
    pass


@dataclass(frozen=True)
class RunFinished:
    run_id: int
    status: str
    ok: bool = True


@dataclass(frozen=True)
class ConnectivityLost:
    reason: str


@dataclass(frozen=True)
class Dropped:
    message: Message
    reason: str


Effect = SendSubmit | Rejected | OutputAppended | OutputCleared | RunFinished | ConnectivityLost | Dropped


def transition(view: SessionView, event: Event, now: float) -> tuple[SessionView, list[Effect]]:
    """Apply one event to a session view."""
    match event:
        case Submit(code=code):
            return _on_submit(view, code, now)
        case Clear():
            return replace(view, output="", last_activity=now), [OutputCleared()]
        case Received(message=message):
            return _on_received(view, message, now)
        case ChannelLost(reason=reason):
            return _on_channel_lost(view, reason, now)
    raise TypeError(f"unsupported session event: {event!r}")


def _on_submit(view: SessionView, code: str, now: float) -> tuple[SessionView, list[Effect]]:
    if view.state is SessionState.CLOSED:
        return view, [Rejected(REJECT_NOT_CONNECTED, view.run_id)]
    if view.state is SessionState.RUNNING:
        return view, [Rejected(REJECT_ALREADY_RUNNING, view.run_id)]
    run_id = view.run_id + 1
    effects: list[Effect] = [SendSubmit(code, run_id)]
    # A new run starts from an empty buffer.
    if view.output:
        effects.insert(0, OutputCleared())
    return SessionView(SessionState.RUNNING, "", now, run_id), effects


def _on_received(view: SessionView, message: Message, now: float) -> tuple[SessionView, list[Effect]]:
    if message.kind is MessageKind.CLEAR:
        return replace(view, output="", last_activity=now), [OutputCleared()]
    if view.state is not SessionState.RUNNING:
        return view, [Dropped(message, f"session is {view.state}")]
    if message.kind in (MessageKind.OUTPUT, MessageKind.ERROR_OUTPUT):
        chunk = render_payload(message)
        return replace(view, output=view.output + chunk, last_activity=now), [OutputAppended(chunk)]
    if message.kind is MessageKind.STATUS_DONE:
        finished = RunFinished(view.run_id, message.payload or "done")
        return replace(view, state=SessionState.IDLE, last_activity=now), [finished]
    return view, [Dropped(message, "not an inbound message")]


def _on_channel_lost(view: SessionView, reason: str, now: float) -> tuple[SessionView, list[Effect]]:
    if view.state is SessionState.CLOSED:
        return view, []
    effects: list[Effect] = []
    if view.state is SessionState.RUNNING:
        effects.append(RunFinished(view.run_id, STATUS_CONNECTION_LOST, ok=False))
    effects.append(ConnectivityLost(reason))
    return replace(view, state=SessionState.CLOSED, last_activity=now), effects


class RunSession:
    """Mutable holder of a session view driven by ``transition``."""

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._view = SessionView(last_activity=clock())

    @property
    def view(self) -> SessionView:
        return self._view

    @property
    def state(self) -> SessionState:
        return self._view.state

    @property
    def output(self) -> str:
        return self._view.output

    @property
    def run_id(self) -> int:
        return self._view.run_id

    def apply(self, event: Event) -> list[Effect]:
        before = self._view.state
        self._view, effects = transition(self._view, event, self._clock())
        if self._view.state is not before:
            logger.debug("session.state {} -> {} run_id={}", before, self._view.state, self._view.run_id)
        return effects

    def submit(self, code: str) -> list[Effect]:
        return self.apply(Submit(code))

    def receive(self, message: Message) -> list[Effect]:
        return self.apply(Received(message))

    def clear(self) -> list[Effect]:
        return self.apply(Clear())

    def lose_channel(self, reason: str) -> list[Effect]:
        return self.apply(ChannelLost(reason))
