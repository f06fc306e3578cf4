"""Client driver: one channel, one run session, render sinks."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from blinker import NamedSignal, Signal
from loguru import logger

from runstream.channel import CLOSED_BY_CLIENT, Channel, ConnectionState
from runstream.errors import AlreadyRunningError, NotConnectedError, ProtocolError, SessionError, TransportError
from runstream.protocol import Message, decode, encode_submit
from runstream.session import (
    REJECT_ALREADY_RUNNING,
    ConnectivityLost,
    Dropped,
    Effect,
    OutputAppended,
    OutputCleared,
    Rejected,
    RunFinished,
    RunSession,
    SendSubmit,
    SessionState,
)

QUIET_STATUS = "finished after quiet period"


@dataclass(frozen=True)
class OutputEvent:
    """A change to the displayed output."""

    kind: Literal["append", "clear"]
    chunk: str
    text: str


OutputHandler = Callable[[OutputEvent], None]
FinishedHandler = Callable[[RunFinished], None]
DisconnectHandler = Callable[[str], None]


class ClientDriver:
    """Drive runs over one channel.

    All inbound frames and outbound submits pass through the run session, so
    what the sinks see is always the state machine's view of the run.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        completion_quiet_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channel = channel
        self._session = RunSession(clock=clock)
        self._quiet_seconds = completion_quiet_seconds
        self._quiet_timer: asyncio.TimerHandle | None = None
        self._waiters: list[asyncio.Future[RunFinished]] = []
        self._last_finished: RunFinished | None = None
        self._output = NamedSignal("runstream.driver.output")
        self._finished = NamedSignal("runstream.driver.finished")
        self._disconnected = NamedSignal("runstream.driver.disconnected")
        channel.on_frame(self._handle_frame)
        channel.on_close(self._handle_close)

    @classmethod
    async def connect(
        cls,
        url: str,
        *,
        open_timeout: float = 10.0,
        completion_quiet_seconds: float | None = None,
    ) -> ClientDriver:
        channel = Channel(url, open_timeout=open_timeout)
        driver = cls(channel, completion_quiet_seconds=completion_quiet_seconds)
        await channel.connect()
        return driver

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def output(self) -> str:
        return self._session.output

    @property
    def last_finished(self) -> RunFinished | None:
        return self._last_finished

    def on_output(self, handler: OutputHandler) -> Callable[[], None]:
        return self._subscribe(self._output, handler)

    def on_finished(self, handler: FinishedHandler) -> Callable[[], None]:
        return self._subscribe(self._finished, handler)

    def on_disconnect(self, handler: DisconnectHandler) -> Callable[[], None]:
        return self._subscribe(self._disconnected, handler)

    async def submit(self, code: str) -> int:
        """Start a run and return its id.

        Raises:
            NotConnectedError: the channel is not open.
            AlreadyRunningError: a previous run has not finished yet.
            TransportError: the submit frame could not be written.
        """
        if self._channel.state is not ConnectionState.OPEN:
            raise NotConnectedError(f"channel is {self._channel.state}")
        effects = self._session.submit(code)
        for effect in effects:
            if isinstance(effect, Rejected):
                logger.info("driver.submit.rejected reason={} run_id={}", effect.reason, effect.run_id)
                if effect.reason == REJECT_ALREADY_RUNNING:
                    raise AlreadyRunningError(effect.run_id)
                raise NotConnectedError(effect.reason)
        self._dispatch(effects)

        send = next(effect for effect in effects if isinstance(effect, SendSubmit))
        logger.info("driver.submit run_id={} size={}", send.run_id, len(code))
        try:
            await self._channel.send(encode_submit(send.code))
        except TransportError as exc:
            self._dispatch(self._session.lose_channel(str(exc)))
            raise
        self._touch_quiet_timer()
        return send.run_id

    def clear(self) -> None:
        """Empty the displayed output. Local and immediate."""
        self._dispatch(self._session.clear())

    async def wait_finished(self, timeout: float | None = None) -> RunFinished:
        """Wait for the current run to finish and return how it ended."""
        if self._session.state is not SessionState.RUNNING:
            if self._last_finished is None:
                raise SessionError("no run has been submitted")
            return self._last_finished
        future: asyncio.Future[RunFinished] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if future in self._waiters:
                self._waiters.remove(future)

    async def close(self) -> None:
        """Close the channel. This is the only way to stop a run."""
        self._cancel_quiet_timer()
        # Frames still drained during the close handshake are dropped.
        self._dispatch(self._session.lose_channel(f"{ConnectionState.CLOSED}: {CLOSED_BY_CLIENT}"))
        await self._channel.close()

    def _handle_frame(self, frame: str | bytes) -> None:
        try:
            message = decode(frame)
        except ProtocolError as exc:
            logger.warning("driver.frame.dropped error={}", exc)
            return
        self._dispatch(self._session.receive(message))
        if self._session.state is SessionState.RUNNING:
            self._touch_quiet_timer()

    def _handle_close(self, state: ConnectionState, reason: str) -> None:
        self._cancel_quiet_timer()
        self._dispatch(self._session.lose_channel(f"{state}: {reason}"))

    def _dispatch(self, effects: list[Effect]) -> None:
        for effect in effects:
            match effect:
                case OutputAppended(chunk=chunk):
                    self._emit(self._output, OutputEvent("append", chunk, self._session.output))
                case OutputCleared():
                    self._emit(self._output, OutputEvent("clear", "", self._session.output))
                case RunFinished():
                    self._finish_run(effect)
                case ConnectivityLost(reason=reason):
                    logger.warning("driver.disconnected reason={}", reason)
                    self._emit(self._disconnected, reason)
                case Dropped(message=message, reason=reason):
                    logger.debug("driver.message.dropped kind={} reason={}", message.kind, reason)
                case _:
                    pass

    def _finish_run(self, finished: RunFinished) -> None:
        self._cancel_quiet_timer()
        self._last_finished = finished
        logger.info("driver.run.finished run_id={} status={} ok={}", finished.run_id, finished.status, finished.ok)
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(finished)
        self._emit(self._finished, finished)

    def _emit(self, signal: Signal, event: Any) -> None:
        try:
            signal.send(self, event=event)
        except Exception:
            logger.exception("driver.sink.error signal={}", signal.name)

    def _touch_quiet_timer(self) -> None:
        if self._quiet_seconds is None:
            return
        self._cancel_quiet_timer()
        loop = asyncio.get_running_loop()
        self._quiet_timer = loop.call_later(self._quiet_seconds, self._quiet_elapsed)

    def _cancel_quiet_timer(self) -> None:
        if self._quiet_timer is not None:
            self._quiet_timer.cancel()
            self._quiet_timer = None

    def _quiet_elapsed(self) -> None:
        self._quiet_timer = None
        if self._session.state is SessionState.RUNNING:
            self._dispatch(self._session.receive(Message.done(QUIET_STATUS)))

    @staticmethod
    def _subscribe(signal: Signal, handler: Callable[[Any], None]) -> Callable[[], None]:
        def _receiver(sender: Any, *, event: Any) -> None:
            handler(event)

        signal.connect(_receiver, weak=False)
        return lambda: signal.disconnect(_receiver)
