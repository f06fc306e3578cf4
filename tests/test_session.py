from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from runstream.protocol import Message
from runstream.session import (
    REJECT_ALREADY_RUNNING,
    REJECT_NOT_CONNECTED,
    STATUS_CONNECTION_LOST,
    ChannelLost,
    Clear,
    ConnectivityLost,
    Dropped,
    OutputAppended,
    OutputCleared,
    Received,
    Rejected,
    RunFinished,
    RunSession,
    SendSubmit,
    SessionState,
    SessionView,
    Submit,
    transition,
)

RUNNING = SessionView(SessionState.RUNNING, "so far\n", 1.0, 3)


def test_submit_from_idle_starts_a_run() -> None:
    view, effects = transition(SessionView(), Submit("print(1)"), now=5.0)

    assert view == SessionView(SessionState.RUNNING, "", 5.0, 1)
    assert effects == [SendSubmit("print(1)", 1)]


def test_submit_from_idle_resets_previous_output() -> None:
    idle = SessionView(SessionState.IDLE, "old\n", 1.0, 1)

    view, effects = transition(idle, Submit(""), now=2.0)

    assert view.output == ""
    assert view.run_id == 2
    assert effects == [OutputCleared(), SendSubmit("", 2)]


def test_submit_while_running_is_rejected_without_sending() -> None:
    view, effects = transition(RUNNING, Submit("again"), now=9.0)

    assert view == RUNNING
    assert effects == [Rejected(REJECT_ALREADY_RUNNING, 3)]


def test_submit_after_close_is_rejected() -> None:
    closed = SessionView(SessionState.CLOSED, "", 1.0, 2)

    view, effects = transition(closed, Submit("x"), now=2.0)

    assert view == closed
    assert effects == [Rejected(REJECT_NOT_CONNECTED, 2)]


def test_output_and_error_append_while_running() -> None:
    view, effects = transition(RUNNING, Received(Message.output("more\n")), now=2.0)
    assert view.output == "so far\nmore\n"
    assert effects == [OutputAppended("more\n")]

    view, effects = transition(view, Received(Message.error("boom")), now=3.0)
    assert view.output == "so far\nmore\nError: boom\n"
    assert effects == [OutputAppended("Error: boom\n")]
    assert view.last_activity == 3.0


@pytest.mark.parametrize("state", [SessionState.IDLE, SessionState.CLOSED])
def test_output_outside_a_run_is_dropped(state: SessionState) -> None:
    start = SessionView(state, "kept", 1.0, 1)
    message = Message.output("late\n")

    view, effects = transition(start, Received(message), now=2.0)

    assert view == start
    assert effects == [Dropped(message, f"session is {state}")]


@pytest.mark.parametrize("state", list(SessionState))
@pytest.mark.parametrize("event", [Clear(), Received(Message.clear())])
def test_clear_empties_output_in_every_state(state: SessionState, event: Clear | Received) -> None:
    view, effects = transition(SessionView(state, "text", 1.0, 1), event, now=2.0)

    assert view.state is state
    assert view.output == ""
    assert effects == [OutputCleared()]


def test_done_finishes_the_run() -> None:
    view, effects = transition(RUNNING, Received(Message.done("exit status 0")), now=2.0)

    assert view.state is SessionState.IDLE
    assert view.output == "so far\n"
    assert effects == [RunFinished(3, "exit status 0")]


def test_done_without_status_uses_placeholder() -> None:
    _, effects = transition(RUNNING, Received(Message.done()), now=2.0)
    assert effects == [RunFinished(3, "done")]


def test_done_while_idle_is_dropped() -> None:
    message = Message.done("late")
    view, effects = transition(SessionView(), Received(message), now=1.0)

    assert view.state is SessionState.IDLE
    assert effects == [Dropped(message, "session is idle")]


def test_channel_lost_while_running_finishes_abnormally() -> None:
    view, effects = transition(RUNNING, ChannelLost("failed: reset"), now=2.0)

    assert view.state is SessionState.CLOSED
    assert effects == [RunFinished(3, STATUS_CONNECTION_LOST, ok=False), ConnectivityLost("failed: reset")]


def test_channel_lost_while_idle_surfaces_connectivity_error() -> None:
    view, effects = transition(SessionView(), ChannelLost("closed"), now=2.0)

    assert view.state is SessionState.CLOSED
    assert effects == [ConnectivityLost("closed")]


def test_channel_lost_is_reported_once() -> None:
    session = RunSession(clock=lambda: 0.0)
    session.submit("x")

    first = session.lose_channel("failed")
    second = session.lose_channel("failed again")

    assert sum(isinstance(effect, ConnectivityLost) for effect in first) == 1
    assert second == []


def test_no_output_after_close() -> None:
    session = RunSession(clock=lambda: 0.0)
    session.submit("x")
    session.receive(Message.output("a"))
    session.lose_channel("gone")

    effects = session.receive(Message.output("b"))

    assert session.output == "a"
    assert isinstance(effects[0], Dropped)


def test_documented_scenario() -> None:
    session = RunSession(clock=lambda: 0.0)
    session.submit("print(1)")

    session.receive(Message.output("1\n"))
    assert session.output == "1\n"
    session.receive(Message.clear())
    assert session.output == ""
    session.receive(Message.error("boom"))
    assert session.output == "Error: boom\n"


def test_run_session_uses_clock_for_activity() -> None:
    ticks = iter([1.0, 4.0, 7.5])
    session = RunSession(clock=lambda: next(ticks))
    assert session.view.last_activity == 1.0

    session.submit("x")
    assert session.view.last_activity == 4.0
    session.receive(Message.output("y"))
    assert session.view.last_activity == 7.5


def test_transition_rejects_unknown_events() -> None:
    with pytest.raises(TypeError):
        transition(SessionView(), object(), now=0.0)  # type: ignore[arg-type]


chunks = st.tuples(st.sampled_from(["output", "error"]), st.text(max_size=8))


def _message(kind: str, data: str) -> Message:
    return Message.output(data) if kind == "output" else Message.error(data)


def _displayed(kind: str, data: str) -> str:
    return data if kind == "output" else f"Error: {data}\n"


@given(before=st.lists(chunks, max_size=10), after=st.lists(chunks, max_size=10), with_clear=st.booleans())
def test_output_is_concatenation_after_last_clear(before, after, with_clear: bool) -> None:
    session = RunSession(clock=lambda: 0.0)
    session.submit("code")

    for kind, data in before:
        session.receive(_message(kind, data))
    if with_clear:
        session.receive(Message.clear())
    for kind, data in after:
        session.receive(_message(kind, data))

    visible = after if with_clear else before + after
    assert session.output == "".join(_displayed(kind, data) for kind, data in visible)


@given(st.lists(chunks, max_size=10), st.sampled_from([SessionState.IDLE, SessionState.RUNNING]))
def test_clear_always_yields_empty_output(pending, state: SessionState) -> None:
    session = RunSession(clock=lambda: 0.0)
    if state is SessionState.RUNNING:
        session.submit("code")
    for kind, data in pending:
        session.receive(_message(kind, data))

    session.clear()

    assert session.output == ""
    assert session.state is state


@given(st.lists(st.text(max_size=5), min_size=1, max_size=5))
def test_at_most_one_submit_is_sent_per_run(codes: list[str]) -> None:
    session = RunSession(clock=lambda: 0.0)

    sent = [effect for code in codes for effect in session.submit(code) if isinstance(effect, SendSubmit)]

    assert sent == [SendSubmit(codes[0], 1)]
