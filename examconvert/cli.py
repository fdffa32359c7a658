"""
CLI Interface
=============
Command-line interface for the exam document converter.

Usage:
    python -m examconvert convert <files...> --exam upsc [options]
    python -m examconvert classify <file> --exam upsc
    python -m examconvert exams
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .classifier import DocumentClassifier
from .coordinator import PipelineCoordinator
from .engine import ConversionEngine, EngineConfig
from .exam_configs import get_config, list_exams
from .exceptions import (
    ClassificationError,
    InfrastructureError,
    PackagingError,
    UnknownExamError,
)
from .intake import collect_paths, read_raw_file, write_archive
from .models import BatchSnapshot, ConversionResult, FileStatus, Slot

console = Console()

STEP_MESSAGES = {
    "initializing": "Initializing processing engine...",
    "classifying": "Analyzing document types...",
    "formatting": "Formatting documents...",
    "packaging": "Creating download package...",
}

_STATUS_STYLE = {
    FileStatus.QUEUED: "[dim]queued[/]",
    FileStatus.CLASSIFYING: "[cyan]classifying[/]",
    FileStatus.CLASSIFIED: "[cyan]classified[/]",
    FileStatus.FORMATTING: "[cyan]formatting[/]",
    FileStatus.COMPLETED: "[green]✓ completed[/]",
    FileStatus.ERROR: "[red]✗ error[/]",
    FileStatus.NEEDS_REVIEW: "[yellow]⚠ needs review[/]",
}


@click.group()
@click.version_option(version=__version__, prog_name="examconvert")
def cli():
    """Exam Document Converter: photos, signatures and documents to exam rules."""
    pass


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True))
@click.option(
    "--exam", "-e",
    required=True,
    help="Target exam identifier (see `examconvert exams`)",
)
@click.option(
    "--output", "-o",
    default="output",
    help="Output directory for the ZIP archive",
)
@click.option(
    "--parallel", "-j",
    default=None,
    type=click.IntRange(min=1),
    help="Maximum number of files formatted at the same time",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--log-file",
    default=None,
    help="Path to log file",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def convert(
    files: tuple[str, ...],
    exam: str,
    output: str,
    parallel: Optional[int],
    log_level: str,
    log_file: Optional[str],
    json_output: bool,
):
    """Classify, format and package files for one exam."""

    if json_output:
        # Suppress console output for JSON mode
        log_level = "ERROR"

    try:
        exam_config = get_config(exam)
    except UnknownExamError as e:
        _fail(str(e), json_output)

    paths = collect_paths(files)
    if not paths:
        _fail("No supported files found", json_output)

    config = EngineConfig.from_env()
    config.log_level = log_level
    config.log_file = log_file or config.log_file

    if not json_output:
        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]Exam Document Converter v{__version__}[/]\n"
                f"[dim]{exam_config.name}: {len(paths)} file(s)[/]",
                border_style="cyan",
            )
        )
        console.print()

    try:
        raw_files = [read_raw_file(str(p)) for p in paths]
        engine = ConversionEngine(config)
        coordinator = PipelineCoordinator(engine, exam_config.exam_id, parallel)
        coordinator.select_files(raw_files)

        if json_output:
            snapshot, result = asyncio.run(_convert(coordinator))
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                _attach_progress(coordinator, progress)
                snapshot, result = asyncio.run(_convert(coordinator))

        archive_path = write_archive(output, result) if result else None

        if json_output:
            print(json.dumps(
                _json_summary(snapshot, result, archive_path),
                indent=2,
                ensure_ascii=False,
                default=str,
            ))
        else:
            _display_results(snapshot, result, archive_path)

    except InfrastructureError as e:
        _fail(f"{e}. Retry initialization.", json_output)
    except PackagingError as e:
        _fail(str(e), json_output)
    except FileNotFoundError as e:
        _fail(str(e), json_output)
    except Exception as e:
        if not json_output and log_level == "DEBUG":
            console.print_exception()
        _fail(f"Unexpected error: {e}", json_output)

    if snapshot.failed:
        sys.exit(1)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--exam", "-e", required=True, help="Target exam identifier")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout",
)
def classify(file: str, exam: str, json_output: bool):
    """Show which slot a single file would be assigned to."""

    try:
        exam_config = get_config(exam)
        raw = read_raw_file(file)
        result = DocumentClassifier().classify(raw, exam_config)
    except (UnknownExamError, ClassificationError) as e:
        _fail(str(e), json_output)

    if json_output:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    console.print()
    table = Table(title="Classification", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("File", raw.name)
    table.add_row("Exam", exam_config.name)
    table.add_row("Detected Format", result.detected_format.upper())
    if result.width and result.height:
        table.add_row("Dimensions", f"{result.width}x{result.height}")
    if result.page_count:
        table.add_row("Pages", str(result.page_count))
    table.add_row(
        "Slot",
        result.slot.value
        if result.slot is not Slot.UNKNOWN
        else "[yellow]unknown (needs review)[/]",
    )
    table.add_row("Confidence", f"{result.confidence:.2f}")
    for reason in result.reasons:
        table.add_row("Reason", f"[dim]{reason}[/]")
    console.print(table)
    console.print()


@cli.command()
def exams():
    """List supported exams and their slot requirements."""

    console.print()
    table = Table(title="Supported Exams", border_style="cyan")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Max Size", justify="right")
    table.add_column("Photo")
    table.add_column("Signature")
    table.add_column("Document")
    table.add_column("Accepted Inputs")

    for config in list_exams():
        cells = []
        for slot in (Slot.PHOTO, Slot.SIGNATURE, Slot.DOCUMENT):
            slot_format = config.formats.get(slot)
            if slot_format is None:
                cells.append("-")
                continue
            text = slot_format.format.value.upper()
            if slot_format.width and slot_format.height:
                text += f" {slot_format.width}x{slot_format.height}"
            if slot_format.max_size_kb:
                text += f" ≤{slot_format.max_size_kb}KB"
            cells.append(text)

        table.add_row(
            config.exam_id,
            config.name,
            f"{config.max_file_size_kb} KB",
            *cells,
            ", ".join(config.allowed_formats),
        )

    console.print(table)
    console.print()


# ─── Pipeline Driver ──────────────────────────────────────────────────────────


async def _convert(
    coordinator: PipelineCoordinator,
) -> tuple[BatchSnapshot, Optional[ConversionResult]]:
    """Run the batch and package it when at least one file completed."""
    snapshot = await coordinator.run()
    if not snapshot.ready_to_package:
        return snapshot, None
    result = await coordinator.package()
    return coordinator.snapshot(), result


def _attach_progress(coordinator: PipelineCoordinator, progress: Progress):
    """One progress bar per file, driven by coordinator snapshots."""
    tasks = {
        f.id: progress.add_task(f"[dim]{f.name}[/]", total=100)
        for f in coordinator.snapshot().files
    }

    def on_snapshot(snapshot: BatchSnapshot):
        for f in snapshot.files:
            task = tasks.get(f.id)
            if task is None:
                continue
            step = STEP_MESSAGES.get(f.status.value)
            if f.status.is_terminal:
                description = f"{f.name} {_STATUS_STYLE[f.status]}"
            elif step:
                description = f"{f.name} [dim]{step}[/]"
            else:
                description = f"{f.name} {_STATUS_STYLE[f.status]}"
            progress.update(task, completed=f.progress, description=description)

    coordinator.add_listener(on_snapshot)


def _fail(message: str, json_output: bool):
    if json_output:
        print(json.dumps({"error": message}))
    else:
        console.print(f"[red]Error:[/] {message}")
    sys.exit(1)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _json_summary(snapshot: BatchSnapshot, result, archive_path) -> dict:
    return {
        "exam": snapshot.exam_id,
        "phase": snapshot.phase.value,
        "overall_progress": snapshot.overall_progress,
        "archive": str(archive_path) if archive_path else None,
        "archive_files": list(result.files) if result else [],
        "error": snapshot.error.message if snapshot.error else None,
        "files": [
            {
                "id": f.id,
                "name": f.name,
                "status": f.status.value,
                "slot": f.slot.value if f.slot else None,
                "confidence": f.confidence,
                "progress": f.progress,
                "error": f.error,
                "input_bytes": f.size,
                "output_bytes": f.output.size_bytes if f.output else None,
            }
            for f in snapshot.files
        ],
    }


def _display_results(snapshot: BatchSnapshot, result, archive_path):
    """Display per-file outcome and the archive location."""
    console.print()

    table = Table(title="Conversion Results", border_style="cyan")
    table.add_column("File", style="bold")
    table.add_column("Slot")
    table.add_column("Confidence", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Message")

    for f in snapshot.files:
        size = f"{f.size / 1024:.1f} KB"
        if f.output is not None:
            size += f" → {f.output.size_bytes / 1024:.1f} KB"
        table.add_row(
            f.name,
            f.slot.value if f.slot else "-",
            f"{f.confidence:.2f}" if f.confidence is not None else "-",
            size,
            _STATUS_STYLE[f.status],
            f.error or "",
        )

    console.print(table)
    console.print()
    console.print(
        f"[bold]Total:[/] {snapshot.completed_count} completed, "
        f"{snapshot.error_count} failed, "
        f"{snapshot.needs_review_count} need review"
    )

    if archive_path:
        console.print(
            f"[green]Archive:[/] {archive_path} "
            f"({result.size_bytes / 1024:.1f} KB, {len(result.files)} file(s))"
        )
    elif snapshot.failed:
        console.print("[red]No file could be converted; nothing to download.[/]")
    console.print()


# ─── Entry point (for python -m examconvert.cli) ──────────────────────────────


if __name__ == "__main__":
    cli()
