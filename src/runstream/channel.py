"""WebSocket transport channel."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from blinker import Signal
from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from runstream.errors import TransportError

FrameHandler = Callable[[str | bytes], Awaitable[None] | None]
CloseHandler = Callable[["ConnectionState", str], Awaitable[None] | None]

CLOSED_BY_CLIENT = "closed by client"


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


async def _call(handler: Callable[..., Any], *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class Channel:
    """One persistent connection to the backend.

    A channel moves through ``connecting -> open -> (closed | failed)`` once.
    It never reconnects; build a new channel to retry.
    """

    def __init__(self, url: str, *, open_timeout: float = 10.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._state = ConnectionState.CONNECTING
        self._connection: ClientConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._finished = False
        self._closing = False
        self._frames = Signal("runstream.channel.frame")
        self._closed = Signal("runstream.channel.close")

    @classmethod
    async def open(cls, url: str, *, open_timeout: float = 10.0) -> Channel:
        channel = cls(url, open_timeout=open_timeout)
        await channel.connect()
        return channel

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    def on_frame(self, handler: FrameHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, frame: str | bytes) -> None:
            await _call(handler, frame)

        self._frames.connect(_receiver, weak=False)
        return lambda: self._frames.disconnect(_receiver)

    def on_close(self, handler: CloseHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, state: ConnectionState, reason: str) -> None:
            await _call(handler, state, reason)

        self._closed.connect(_receiver, weak=False)
        return lambda: self._closed.disconnect(_receiver)

    async def connect(self) -> None:
        if self._state is not ConnectionState.CONNECTING or self._connection is not None:
            raise TransportError(f"channel is {self._state}, create a new channel to reconnect")
        logger.info("channel.open url={}", self.url)
        try:
            self._connection = await connect(self.url, open_timeout=self.open_timeout)
        except (OSError, TimeoutError, WebSocketException) as exc:
            self._state = ConnectionState.FAILED
            self._finished = True
            logger.warning("channel.open.failed url={} error={}", self.url, exc)
            raise TransportError(f"cannot connect to {self.url}: {exc}") from exc
        self._state = ConnectionState.OPEN
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("channel.opened url={}", self.url)

    async def send(self, text: str) -> None:
        if self._state is not ConnectionState.OPEN or self._connection is None:
            raise TransportError(f"channel is {self._state}")
        try:
            await self._connection.send(text)
        except ConnectionClosed as exc:
            await self._finish(ConnectionState.FAILED, f"send failed: {exc}")
            raise TransportError(f"send failed: {exc}") from exc

    async def close(self) -> None:
        """Close the connection. Safe to call any number of times."""
        self._closing = True
        connection = self._connection
        if connection is not None:
            await connection.close()
        await self._finish(ConnectionState.CLOSED, CLOSED_BY_CLIENT)
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            await reader

    async def _read_loop(self) -> None:
        assert self._connection is not None
        state, reason = ConnectionState.CLOSED, "closed by backend"
        try:
            async for frame in self._connection:
                try:
                    await self._frames.send_async(self, frame=frame)
                except Exception:
                    logger.exception("channel.frame.handler.error url={}", self.url)
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as exc:
            state, reason = ConnectionState.FAILED, f"connection lost: {exc}"
        finally:
            if self._closing:
                state, reason = ConnectionState.CLOSED, CLOSED_BY_CLIENT
            await self._finish(state, reason)

    async def _finish(self, state: ConnectionState, reason: str) -> None:
        if self._finished:
            return
        self._finished = True
        self._state = state
        connection = self._connection
        if connection is not None and state is ConnectionState.FAILED:
            await connection.close()
        logger.info("channel.{} url={} reason={}", state, self.url, reason)
        try:
            await self._closed.send_async(self, state=state, reason=reason)
        except Exception:
            logger.exception("channel.close.handler.error url={}", self.url)
