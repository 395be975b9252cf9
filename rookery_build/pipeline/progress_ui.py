from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from rookery_build.integration.event_bus import EventBus
from rookery_build.integration.events import FetchCompleted, FetchFailed, FetchRetry, FetchSkipped


@dataclass(frozen=True)
class Ui:
    console: Console
    progress: Progress

    def log(self, message: str) -> None:
        self.console.print(message)


@contextmanager
def progress_ui(console: Console | None = None) -> Iterator[Ui]:
    console = console or Console()
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=False,
    )
    with progress:
        yield Ui(console=console, progress=progress)


def track_fetch_progress(ui: Ui, bus: EventBus, total: int, description: str = "Downloading sources") -> TaskID:
    """Advance a progress bar as downloads finish, one tick per target."""
    task = ui.progress.add_task(description, total=total)

    def _done(_: FetchCompleted | FetchSkipped | FetchFailed) -> None:
        ui.progress.advance(task)

    def _retry(e: FetchRetry) -> None:
        ui.log(f"[yellow]{e.destination}: attempt {e.attempt}/{e.max_attempts} failed ({e.error})[/yellow]")

    bus.subscribe(FetchCompleted, _done)
    bus.subscribe(FetchSkipped, _done)
    bus.subscribe(FetchFailed, _done)
    bus.subscribe(FetchRetry, _retry)
    return task
