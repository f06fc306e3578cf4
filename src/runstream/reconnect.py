"""Reconnection wrapper around client drivers.

Retry lives here, outside the run session: a lost driver is never revived,
a fresh one is built on a fresh channel.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING

from loguru import logger

from runstream.driver import ClientDriver
from runstream.errors import TransportError
from runstream.session import SessionState

if TYPE_CHECKING:
    from runstream.config import Settings

DriverFactory = Callable[[str], Awaitable[ClientDriver]]


def backoff_delays(attempts: int, base_delay: float, max_delay: float) -> list[float]:
    """Delays slept between consecutive attempts (one fewer than attempts)."""
    return [min(base_delay * 2**index, max_delay) for index in range(max(attempts - 1, 0))]


class Reconnector:
    """Hand out a live driver, building a new one with backoff when the last one closed."""

    def __init__(
        self,
        url: str,
        *,
        attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        factory: DriverFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._factory = factory or ClientDriver.connect
        self._sleep = sleep
        self._driver: ClientDriver | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> Reconnector:
        factory = partial(
            ClientDriver.connect,
            open_timeout=settings.open_timeout_seconds,
            completion_quiet_seconds=settings.completion_quiet_seconds,
        )
        return cls(
            settings.url,
            attempts=settings.reconnect_attempts,
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            factory=factory,
        )

    @property
    def driver(self) -> ClientDriver | None:
        return self._driver

    async def connect(self) -> ClientDriver:
        """Build a new driver, retrying with exponential backoff.

        Raises:
            TransportError: every attempt failed; carries the last failure.
        """
        delays = backoff_delays(self.attempts, self.base_delay, self.max_delay)
        last_error: TransportError | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                self._driver = await self._factory(self.url)
            except TransportError as exc:
                last_error = exc
                logger.warning("reconnect.attempt.failed url={} attempt={} error={}", self.url, attempt, exc)
                if attempt <= len(delays):
                    await self._sleep(delays[attempt - 1])
                continue
            logger.info("reconnect.connected url={} attempt={}", self.url, attempt)
            return self._driver
        raise TransportError(f"gave up on {self.url} after {self.attempts} attempts: {last_error}") from last_error

    async def ensure(self) -> ClientDriver:
        """Return the current driver while it is usable, otherwise reconnect."""
        driver = self._driver
        if driver is not None and driver.state is not SessionState.CLOSED and driver.channel.is_open:
            return driver
        return await self.connect()

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
