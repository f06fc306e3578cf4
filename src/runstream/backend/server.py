"""WebSocket server that runs submitted sources and streams their output."""

from __future__ import annotations

import asyncio
from contextlib import aclosing, suppress
from http import HTTPStatus
from types import TracebackType
from urllib.parse import urlsplit

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from runstream.backend.executor import Executor
from runstream.protocol import Message, decode_submit, encode

BUSY_MESSAGE = "A run is already in progress"


class RunServer:
    """Serve the run protocol on one WebSocket path."""

    def __init__(self, executor: Executor, *, host: str = "localhost", port: int = 8080, path: str = "/ws") -> None:
        self.executor = executor
        self.host = host
        self.path = path
        self._requested_port = port
        self._server: Server | None = None

    @property
    def port(self) -> int:
        if self._server is None:
            return self._requested_port
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return self._requested_port

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}{self.path}"

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(self._handle, self.host, self._requested_port, process_request=self._check_path)
        logger.info("server.start url={}", self.url)

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("server.stopped")

    async def __aenter__(self) -> RunServer:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def _check_path(self, connection: ServerConnection, request: Request) -> Response | None:
        if urlsplit(request.path).path != self.path:
            logger.info("server.reject path={}", request.path)
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def _handle(self, connection: ServerConnection) -> None:
        peer = connection.remote_address
        logger.info("server.connection.open peer={}", peer)
        active: asyncio.Task[None] | None = None
        try:
            async for frame in connection:
                if isinstance(frame, bytes):
                    logger.debug("server.frame.binary.ignored peer={} size={}", peer, len(frame))
                    continue
                if active is not None and not active.done():
                    await connection.send(encode(Message.error(BUSY_MESSAGE)))
                    continue
                active = asyncio.create_task(self._run(connection, decode_submit(frame).payload))
        except ConnectionClosed as exc:
            logger.info("server.connection.lost peer={} error={}", peer, exc)
        finally:
            if active is not None and not active.done():
                active.cancel()
                with suppress(asyncio.CancelledError):
                    await active
            logger.info("server.connection.closed peer={}", peer)

    async def _run(self, connection: ServerConnection, source: str) -> None:
        logger.info("server.run.start peer={} size={}", connection.remote_address, len(source))
        try:
            async with aclosing(self.executor.run(source)) as chunks:
                async for chunk in chunks:
                    await connection.send(encode(chunk.to_message()))
        except ConnectionClosed:
            logger.info("server.run.abandoned peer={}", connection.remote_address)
        except Exception:
            logger.exception("server.run.error peer={}", connection.remote_address)
            with suppress(ConnectionClosed):
                await connection.send(encode(Message.error("Internal error while running code")))
                await connection.send(encode(Message.done("failed")))
