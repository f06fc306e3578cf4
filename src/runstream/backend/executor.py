"""Execution backend contract and a subprocess implementation."""

from __future__ import annotations

import asyncio
import codecs
import os
import shutil
import tempfile
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from runstream.config import DEFAULT_COMMAND
from runstream.errors import ExecutionError
from runstream.protocol import Message

if TYPE_CHECKING:
    from runstream.config import Settings

CLEAR_SCREEN = "\x0c"
READ_SIZE = 4096
TIMEOUT_MESSAGE = "Execution timeout, terminated"
DEFAULT_ENVIRONMENT: Mapping[str, str] = {
    "GOCACHE": "{workdir}/go-cache",
    "GOPATH": "{workdir}/go-path",
}


class ChunkKind(StrEnum):
    OUTPUT = "output"
    ERROR = "error"
    CLEAR = "clear"
    DONE = "done"


@dataclass(frozen=True)
class ExecutionChunk:
    kind: ChunkKind
    data: str = ""

    def to_message(self) -> Message:
        if self.kind is ChunkKind.OUTPUT:
            return Message.output(self.data)
        if self.kind is ChunkKind.ERROR:
            return Message.error(self.data)
        if self.kind is ChunkKind.CLEAR:
            return Message.clear()
        return Message.done(self.data)


class Executor(Protocol):
    """Given source text, produce ordered output chunks ending with one ``done`` chunk."""

    def run(self, source: str) -> AsyncGenerator[ExecutionChunk, None]: ...


class OutputChunker:
    """Split a character stream into output chunks.

    A chunk is emitted at every newline or once ``chunk_size`` characters are
    buffered. A form feed flushes the buffer and emits a clear.
    """

    def __init__(self, chunk_size: int = 1024) -> None:
        self.chunk_size = chunk_size
        self._buffer: list[str] = []
        self._length = 0

    def feed(self, text: str) -> list[ExecutionChunk]:
        chunks: list[ExecutionChunk] = []
        for char in text:
            if char == CLEAR_SCREEN:
                chunks.extend(self.flush())
                chunks.append(ExecutionChunk(ChunkKind.CLEAR))
                continue
            self._buffer.append(char)
            self._length += 1
            if char == "\n" or self._length >= self.chunk_size:
                chunks.extend(self.flush())
        return chunks

    def flush(self) -> list[ExecutionChunk]:
        if not self._buffer:
            return []
        chunk = ExecutionChunk(ChunkKind.OUTPUT, "".join(self._buffer))
        self._buffer.clear()
        self._length = 0
        return [chunk]


class SubprocessExecutor:
    """Run each source with one configured command in a throwaway directory."""

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_COMMAND,
        *,
        source_filename: str = "main.go",
        timeout: float = 120.0,
        chunk_size: int = 1024,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        self.command = tuple(command)
        self.source_filename = source_filename
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.environment = dict(DEFAULT_ENVIRONMENT if environment is None else environment)

    @classmethod
    def from_settings(cls, settings: Settings) -> SubprocessExecutor:
        return cls(
            settings.command,
            source_filename=settings.source_filename,
            timeout=settings.run_timeout_seconds,
            chunk_size=settings.chunk_size,
        )

    async def run(self, source: str) -> AsyncGenerator[ExecutionChunk, None]:
        try:
            workdir = tempfile.mkdtemp(prefix="runstream-")
        except OSError as exc:
            yield ExecutionChunk(ChunkKind.ERROR, f"Failed to create temporary directory: {exc}")
            yield ExecutionChunk(ChunkKind.DONE, "failed")
            return

        try:
            try:
                process = await self._start(source, Path(workdir))
            except ExecutionError as exc:
                yield ExecutionChunk(ChunkKind.ERROR, str(exc))
                yield ExecutionChunk(ChunkKind.DONE, "failed")
                return
            async with aclosing(self._stream(process)) as stream:
                async for chunk in stream:
                    yield chunk
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def build_argv(self, source_path: Path) -> list[str]:
        return [part.replace("{source}", str(source_path)) for part in self.command]

    def build_env(self, workdir: Path) -> dict[str, str]:
        env = dict(os.environ)
        env.update({key: value.replace("{workdir}", str(workdir)) for key, value in self.environment.items()})
        return env

    async def _start(self, source: str, workdir: Path) -> asyncio.subprocess.Process:
        source_path = workdir / self.source_filename
        try:
            source_path.write_text(source, encoding="utf-8")
        except OSError as exc:
            raise ExecutionError(f"Failed to write temporary file: {exc}") from exc

        argv = self.build_argv(source_path)
        logger.info("executor.start argv={} workdir={}", argv, workdir)
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=workdir,
                env=self.build_env(workdir),
            )
        except OSError as exc:
            raise ExecutionError(f"Failed to start command: {exc}") from exc

    async def _stream(self, process: asyncio.subprocess.Process) -> AsyncGenerator[ExecutionChunk, None]:
        assert process.stdout is not None
        chunker = OutputChunker(self.chunk_size)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        timed_out = False
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    data = await asyncio.wait_for(process.stdout.read(READ_SIZE), remaining)
                except TimeoutError:
                    timed_out = True
                    break
                if not data:
                    break
                for chunk in chunker.feed(decoder.decode(data)):
                    yield chunk

            for chunk in chunker.feed(decoder.decode(b"", final=True)):
                yield chunk
            for chunk in chunker.flush():
                yield chunk

            if timed_out:
                logger.warning("executor.timeout pid={} timeout={}", process.pid, self.timeout)
                _kill(process)
                await process.wait()
                yield ExecutionChunk(ChunkKind.ERROR, TIMEOUT_MESSAGE)
                yield ExecutionChunk(ChunkKind.DONE, "timeout")
                return

            returncode = await process.wait()
            logger.info("executor.exit pid={} returncode={}", process.pid, returncode)
            yield ExecutionChunk(ChunkKind.DONE, f"exit status {returncode}")
        finally:
            if process.returncode is None:
                _kill(process)
                await process.wait()


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        logger.debug("executor.kill.gone pid={}", process.pid)
