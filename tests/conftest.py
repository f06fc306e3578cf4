from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncGenerator, Iterable
from pathlib import Path

import pytest

from runstream.backend.executor import ChunkKind, ExecutionChunk
from runstream.channel import CLOSED_BY_CLIENT, Channel, ConnectionState
from runstream.errors import TransportError


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.startswith("RUNSTREAM_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


class FakeChannel(Channel):
    """Channel double that records sends and lets tests push frames."""

    def __init__(self) -> None:
        super().__init__("ws://fake/ws")
        self._state = ConnectionState.OPEN
        self.sent: list[str] = []
        self.fail_send = False

    async def send(self, text: str) -> None:
        if self._state is not ConnectionState.OPEN:
            raise TransportError(f"channel is {self._state}")
        if self.fail_send:
            await self._finish(ConnectionState.FAILED, "send failed: broken pipe")
            raise TransportError("send failed: broken pipe")
        self.sent.append(text)

    async def deliver(self, *frames: str | bytes) -> None:
        for frame in frames:
            await self._frames.send_async(self, frame=frame)

    async def drop(self, reason: str = "connection lost") -> None:
        await self._finish(ConnectionState.FAILED, reason)

    async def close(self) -> None:
        await self._finish(ConnectionState.CLOSED, CLOSED_BY_CLIENT)


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


class ScriptedExecutor:
    """Executor that replays fixed chunks for every source it receives."""

    def __init__(self, chunks: Iterable[ExecutionChunk], *, hold: float = 0.0) -> None:
        self.chunks = list(chunks)
        self.hold = hold
        self.sources: list[str] = []

    async def run(self, source: str) -> AsyncGenerator[ExecutionChunk, None]:
        self.sources.append(source)
        for chunk in self.chunks:
            if chunk.kind is ChunkKind.DONE and self.hold:
                await asyncio.sleep(self.hold)
            yield chunk


@pytest.fixture
def scripted_executor() -> type[ScriptedExecutor]:
    return ScriptedExecutor


@pytest.fixture
def channel_factory() -> type[FakeChannel]:
    return FakeChannel
