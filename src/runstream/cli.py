"""runstream command line."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from pathlib import Path

import typer

from runstream.backend import RunServer, SubprocessExecutor
from runstream.config import Settings, load_settings
from runstream.errors import ConfigurationError, RunstreamError, SessionError, TransportError
from runstream.logging_utils import configure_logging
from runstream.reconnect import Reconnector
from runstream.render import Renderer

app = typer.Typer(
    name="runstream",
    help="Run source on a remote backend and stream the output back.",
    add_completion=False,
    no_args_is_help=True,
)


def _settings(**overrides: object) -> Settings:
    try:
        return load_settings(**overrides)
    except ConfigurationError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(2) from exc


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host", help="Interface to bind"),
    port: int | None = typer.Option(None, "--port", help="Port to listen on"),
    path: str | None = typer.Option(None, "--path", help="WebSocket path"),
) -> None:
    """Start the execution backend."""
    settings = _settings(host=host, port=port, path=path)
    configure_logging(profile="default", level=settings.log_level)
    server = RunServer(
        SubprocessExecutor.from_settings(settings),
        host=settings.host,
        port=settings.port,
        path=settings.path,
    )
    typer.echo(f"Server is running at {server.url}")
    with suppress(KeyboardInterrupt):
        asyncio.run(server.serve_forever())


@app.command("run")
def run(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Source file to submit"),
    url: str | None = typer.Option(None, "--url", help="Backend WebSocket URL"),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds to wait for the run to finish"),
) -> None:
    """Submit a source file and stream its output."""
    settings = _settings(url=url)
    configure_logging(profile="cli", level=settings.log_level)
    code = file.read_text(encoding="utf-8")
    exit_code = asyncio.run(run_source(settings, code, Renderer(), timeout=timeout))
    raise typer.Exit(exit_code)


async def run_source(settings: Settings, code: str, renderer: Renderer, *, timeout: float | None = None) -> int:
    """Submit one source, render it until the run finishes, return a process exit code."""
    try:
        driver = await Reconnector.from_settings(settings).connect()
    except TransportError as exc:
        renderer.error(f"Connection not ready, please try again later ({exc})")
        return 1

    driver.on_output(renderer.output)
    unsubscribe = driver.on_disconnect(renderer.disconnected)
    try:
        renderer.running()
        await driver.submit(code)
        finished = await driver.wait_finished(timeout)
    except TimeoutError:
        renderer.error("Timed out waiting for the run to finish")
        return 1
    except (SessionError, TransportError) as exc:
        renderer.error(str(exc))
        return 1
    except RunstreamError as exc:
        renderer.error(f"Unexpected failure: {exc}")
        return 1
    finally:
        unsubscribe()
        await driver.close()

    renderer.finished(finished)
    return 0 if finished.ok else 1
