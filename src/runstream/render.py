"""Terminal renderer for streamed run output."""

from __future__ import annotations

from rich.console import Console

from runstream.driver import OutputEvent
from runstream.session import RunFinished


class Renderer:
    """Render driver events to a Rich console."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def running(self) -> None:
        self.console.print("[dim]Running...[/dim]")

    def output(self, event: OutputEvent) -> None:
        if event.kind == "clear":
            if self.console.is_terminal:
                self.console.clear()
            else:
                self.console.rule("[dim]output cleared[/dim]")
            return
        self.console.print(event.chunk, end="", markup=False, highlight=False)

    def finished(self, finished: RunFinished) -> None:
        style = "green" if finished.ok else "red"
        self.console.print(f"[{style}]Run {finished.run_id} finished: {finished.status}[/{style}]")

    def disconnected(self, reason: str) -> None:
        self.error(f"Connection error, please reconnect and try again ({reason})")

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {message}", highlight=False)
