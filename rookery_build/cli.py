from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from rookery_build.adapters.http.fetcher import BatchFetchError
from rookery_build.common.logging_config import configure_logging
from rookery_build.integration.event_bus import InMemoryEventBus
from rookery_build.integration.reporting import log_events
from rookery_build.integrity.verify import VerificationFailed, verify_directory
from rookery_build.pipeline.checkpointing import CheckpointStore, WipeNotConfirmed
from rookery_build.pipeline.config import PipelineConfig
from rookery_build.pipeline.executor import CommandAction, StageExecutor, StageOutcome
from rookery_build.pipeline.progress_ui import progress_ui
from rookery_build.pipeline.runner import DOWNLOAD_UNIT, SourceDownloadRunner
from rookery_build.pipeline.sources import find_source_artifact


app = typer.Typer(add_completion=False, help="Checkpointed build stages and verified source downloads.")

ConfigOption = typer.Option("rookery.toml", "--config", "-c", help="Path to the pipeline TOML config")


def _setup(config: str) -> tuple[PipelineConfig, InMemoryEventBus]:
    cfg = PipelineConfig.load_or_default(Path(config).expanduser())
    configure_logging(cfg.logging.level, log_dir=cfg.logging.log_dir)
    bus = InMemoryEventBus()
    log_events(bus)
    return cfg, bus


def _store(config: str) -> tuple[PipelineConfig, CheckpointStore]:
    cfg, bus = _setup(config)
    return cfg, CheckpointStore.from_config(cfg.checkpoints, bus)


def _run_unit(
    unit: str,
    command: list[str],
    *,
    stage: str,
    artifact: Optional[str],
    from_sources: bool,
    force: bool,
    config: str,
) -> None:
    cfg, store = _store(config)

    input_artifact: Path | None = None
    if artifact:
        input_artifact = Path(artifact).expanduser()
    elif from_sources:
        input_artifact = find_source_artifact(unit, cfg.sources.resolve_sources_dir())
        if input_artifact is None:
            raise typer.BadParameter(f"No source tarball for {unit} in {cfg.sources.resolve_sources_dir()}")

    executor = StageExecutor(store)
    try:
        outcome = executor.run(unit, stage, CommandAction(command), input_artifact, force=force)
    except subprocess.CalledProcessError as exc:
        typer.echo(f"{unit}: command exited with status {exc.returncode}, no checkpoint created", err=True)
        raise typer.Exit(code=exc.returncode or 1)
    except FileNotFoundError as exc:
        typer.echo(f"{unit}: {exc}", err=True)
        raise typer.Exit(code=127)

    if outcome is StageOutcome.SKIPPED:
        typer.echo(f"{unit}: skipped (checkpoint valid)")
    else:
        typer.echo(f"{unit}: completed (stage: {stage})")


@app.command("run-unit")
def run_unit(
    unit: str = typer.Argument(..., help="Unit name, e.g. a package name"),
    command: List[str] = typer.Argument(..., help="Command to run, after '--'"),
    stage: str = typer.Option("default", help="Stage label stored with the checkpoint"),
    artifact: Optional[str] = typer.Option(None, help="Input artifact whose hash gates the checkpoint"),
    from_sources: bool = typer.Option(
        False,
        "--from-sources",
        help="Use <sources_dir>/<unit>-*.tar.* as the input artifact",
    ),
    force: bool = typer.Option(False, "--force", help="Delete the checkpoint first and always run"),
    config: str = ConfigOption,
) -> None:
    """Run a unit's command unless a valid checkpoint says it is done."""
    _run_unit(unit, command, stage=stage, artifact=artifact, from_sources=from_sources, force=force, config=config)


@app.command("force-run-unit")
def force_run_unit(
    unit: str = typer.Argument(...),
    command: List[str] = typer.Argument(..., help="Command to run, after '--'"),
    stage: str = typer.Option("default"),
    artifact: Optional[str] = typer.Option(None),
    from_sources: bool = typer.Option(False, "--from-sources"),
    config: str = ConfigOption,
) -> None:
    """Delete a unit's checkpoint and run it again."""
    _run_unit(unit, command, stage=stage, artifact=artifact, from_sources=from_sources, force=True, config=config)


@app.command()
def status(config: str = ConfigOption) -> None:
    """List every checkpoint and whether it is still valid."""
    cfg, store = _store(config)
    sources_dir = cfg.sources.resolve_sources_dir()
    checksums = sources_dir / cfg.sources.checksums_name

    def resolve(unit: str) -> Path | None:
        if unit == DOWNLOAD_UNIT:
            return checksums
        return find_source_artifact(unit, sources_dir)

    table = Table(title=f"Checkpoints in {store.root}")
    table.add_column("Unit")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Created")
    total = valid = 0
    for st in store.enumerate(resolve):
        total += 1
        if st.corrupt:
            state = "[red]corrupt[/red]"
        elif st.valid_now:
            state = "[green]valid[/green]"
            valid += 1
        else:
            state = "[yellow]invalid (source changed or missing)[/yellow]"
        created = st.timestamp.strftime("%Y-%m-%d %H:%M:%S %Z") if st.timestamp else "-"
        table.add_row(st.unit, st.stage, state, created)

    console = Console()
    if total == 0:
        console.print("No checkpoints found.")
        return
    console.print(table)
    console.print(f"Total: {total} | Valid: {valid} | Invalid: {total - valid}")


@app.command()
def info(unit: str = typer.Argument(...), config: str = ConfigOption) -> None:
    """Show the stored record for one unit."""
    _, store = _store(config)
    record = store.get(unit)
    if record is None:
        typer.echo(f"No checkpoint found for: {unit}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Checkpoint: {unit}")
    for line in record.render().splitlines():
        typer.echo(f"  {line}")


@app.command()
def invalidate(unit: str = typer.Argument(...), config: str = ConfigOption) -> None:
    """Remove one unit's checkpoint so it is rebuilt next time."""
    _, store = _store(config)
    if store.invalidate(unit, reason="removed from command line"):
        typer.echo(f"Checkpoint removed: {unit}")
    else:
        typer.echo(f"No checkpoint for {unit}")


@app.command()
def wipe(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config: str = ConfigOption,
) -> None:
    """Delete every checkpoint (full pipeline reset)."""
    _, store = _store(config)
    confirmed = yes or typer.confirm(f"Delete ALL checkpoints under {store.root}?", default=False)
    try:
        removed = store.invalidate_all(confirm=confirmed)
    except WipeNotConfirmed:
        typer.echo("Aborted, nothing removed.", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {removed} checkpoints.")


@app.command()
def fetch(
    force: bool = typer.Option(False, "--force", help="Re-run even if the download checkpoint is valid"),
    config: str = ConfigOption,
) -> None:
    """Download and verify all sources listed in the manifest."""
    cfg, bus = _setup(config)
    with progress_ui() as ui:
        runner = SourceDownloadRunner.from_config(cfg, bus=bus, ui=ui)
        try:
            with runner.fetcher:
                outcome = runner.run(force=force)
        except (BatchFetchError, VerificationFailed) as exc:
            ui.log(f"[red]{exc}[/red]")
            raise typer.Exit(code=1)
        if outcome is StageOutcome.SKIPPED:
            ui.log("[green]All sources already downloaded and verified.[/green]")
        else:
            ui.log("[green]All sources downloaded and verified successfully.[/green]")


@app.command()
def verify(
    directory: Optional[str] = typer.Argument(None, help="Directory to check (default: sources_dir)"),
    config: str = ConfigOption,
) -> None:
    """Check every artifact in a directory against the checksum manifests."""
    cfg, bus = _setup(config)
    target = Path(directory).expanduser() if directory else cfg.sources.resolve_sources_dir()
    runner = SourceDownloadRunner.from_config(cfg, bus=bus)
    if not runner.checksums_path.exists():
        typer.echo(f"Checksum manifest not found: {runner.checksums_path}", err=True)
        raise typer.Exit(code=1)
    summary = verify_directory(
        target,
        runner.load_database(),
        patterns=cfg.verify.patterns,
        min_size=cfg.verify.min_file_size,
        bus=bus,
    )
    typer.echo(
        f"Total files checked: {summary.total} | Verified OK: {len(summary.verified)} | "
        f"No checksum: {len(summary.unknown)} | Failed: {len(summary.failed)}"
    )
    for result in summary.failed:
        typer.echo(f"  - {result.describe()}", err=True)
    if not summary.ok:
        raise typer.Exit(code=1)


@app.command()
def init_config(
    path: str = typer.Argument(
        "rookery.toml",
        help="Where to write the pipeline configuration TOML",
    ),
) -> None:
    """Write an example rookery.toml."""
    project_root = Path(__file__).resolve().parents[1]
    template = project_root / "pipeline_config.example.toml"
    if not template.exists():
        raise RuntimeError(f"Missing template file: {template}")

    out = Path(path).expanduser()
    if out.exists():
        raise typer.BadParameter(f"Refusing to overwrite existing file: {out}")

    out.write_text(template.read_text())
    typer.echo(f"Wrote {out} (edit it, then run: rookery-build fetch --config {out})")


if __name__ == "__main__":
    app()
