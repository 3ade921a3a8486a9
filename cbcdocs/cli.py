"""
CLI Interface
=============
Command-line interface for the CBC document engine.

Usage:
    python -m cbcdocs parse <text_path> --kind scheme [options]
    python -m cbcdocs validate <json_path>
    python -m cbcdocs place <content_path> --grade "Grade 7" --subject Science
    python -m cbcdocs match "<concept>" --grade "Grade 7" --subject Science
    python -m cbcdocs images --grade "Grade 7" --subject Science
    python -m cbcdocs route "<topic>" --subject Science
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from . import __version__
from .engine import DocumentEngine, PipelineConfig, TableResult
from .local_images import LocalImageLibrary, LocalImageMatcher, suggest_filename
from .models import ContentKind, CurriculumEntry, DocumentKind, TableReport
from .router import route as route_topic
from .validator import TableValidator

console = Console()

KIND_CHOICES = {
    "concept": DocumentKind.CONCEPT_BREAKDOWN,
    "scheme": DocumentKind.SCHEME_OF_WORK,
    "generic": DocumentKind.GENERIC,
}

MAX_DISPLAY_ROWS = 20


def _print_json(model):
    print(json.dumps(
        model.model_dump(),
        indent=2,
        ensure_ascii=False,
        default=str,
    ))


def _fail(e: Exception, log_level: str = "INFO"):
    if isinstance(e, (FileNotFoundError, ValueError)):
        console.print(f"[red]Error:[/] {e}")
    else:
        console.print(f"[red]Unexpected error:[/] {e}")
        if log_level == "DEBUG":
            console.print_exception()
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="cbcdocs")
def cli():
    """CBC Document Engine: curriculum tables and diagram placement."""
    pass


@cli.command()
@click.argument("text_path", type=click.Path(exists=True))
@click.option(
    "--kind", "-k",
    default="scheme",
    type=click.Choice(sorted(KIND_CHOICES)),
    help="Document kind the text was generated for",
)
@click.option(
    "--entry", "-e",
    default=None,
    type=click.Path(exists=True),
    help="JSON file with curriculum source data (strand, slo, ...)",
)
@click.option(
    "--output", "-o",
    default=None,
    help="Write the result JSON to this file",
)
@click.option("--strand", default="", help="Default strand when none is found")
@click.option("--substrand", default="", help="Default sub-strand when none is found")
@click.option("--max-rows", default=100, type=int, help="Maximum table rows to keep")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option("--log-file", default=None, help="Path to log file")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def parse(
    text_path: str,
    kind: str,
    entry: Optional[str],
    output: Optional[str],
    strand: str,
    substrand: str,
    max_rows: int,
    log_level: str,
    log_file: Optional[str],
    json_output: bool,
):
    """Parse generated text into a canonical table."""

    if json_output:
        # Suppress console output for JSON mode
        log_level = "ERROR"

    config = PipelineConfig(
        max_rows=max_rows,
        default_strand=strand,
        default_substrand=substrand,
        use_remote=False,
        log_level=log_level,
        log_file=log_file,
    )

    try:
        aux = None
        if entry:
            with open(entry, "r", encoding="utf-8") as f:
                aux = CurriculumEntry.model_validate(json.load(f))

        engine = DocumentEngine(config)
        result = engine.process_file(text_path, KIND_CHOICES[kind], aux)

        if output:
            Path(output).parent.mkdir(parents=True, exist_ok=True)
            with open(output, "w", encoding="utf-8") as f:
                f.write(result.model_dump_json(indent=2))

        if json_output:
            _print_json(result)
            return

        console.print()
        console.print(
            Panel.fit(
                f"[bold cyan]CBC Document Engine v{__version__}[/]\n"
                f"[dim]Parsing: {os.path.basename(text_path)}[/]",
                border_style="cyan",
            )
        )
        _display_content(result)

    except Exception as e:
        _fail(e, log_level)


@cli.command()
@click.argument("json_path", type=click.Path(exists=True))
def validate(json_path: str):
    """Re-validate a previously generated parse result JSON."""

    try:
        with open(json_path, "r", encoding="utf-8") as f:
            result = TableResult.model_validate(json.load(f))
    except Exception as e:
        _fail(e)

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Table Report[/]\n"
            f"[dim]File: {json_path}[/]",
            border_style="cyan",
        )
    )

    if result.content.type != ContentKind.TABLE:
        console.print(f"[yellow]No table in result ({result.content.type.value})[/]")
        return

    kind = result.kind if result.content.parsed_by != "generic" else DocumentKind.GENERIC
    report = TableValidator().validate(result.content.table, kind)
    _display_report(report)


@cli.command()
@click.argument("content_path", type=click.Path(exists=True))
@click.option("--grade", "-g", required=True, help="Grade, e.g. 'Grade 7'")
@click.option("--subject", "-s", required=True, help="Subject, e.g. 'Integrated Science'")
@click.option("--substrand", default="", help="Sub-strand, used for routing")
@click.option("--document-id", default=None, help="Document ID (defaults to filename)")
@click.option("--diagrams-root", default="diagrams", help="Local diagram library root")
@click.option("--base-url", default="", help="Base URL for local diagram links")
@click.option("--max-diagrams", default=5, type=int, help="Maximum diagrams to place")
@click.option("--threshold", default=40.0, type=float, help="Local match threshold (0-100)")
@click.option(
    "--no-remote",
    is_flag=True,
    default=False,
    help="Only use the local diagram library",
)
@click.option("--output", "-o", default=None, help="Write the final markdown here")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def place(
    content_path: str,
    grade: str,
    subject: str,
    substrand: str,
    document_id: Optional[str],
    diagrams_root: str,
    base_url: str,
    max_diagrams: int,
    threshold: float,
    no_remote: bool,
    output: Optional[str],
    log_level: str,
    json_output: bool,
):
    """Replace diagram placeholders in a markdown document."""

    if json_output:
        log_level = "ERROR"

    config = PipelineConfig(
        diagrams_root=diagrams_root,
        base_url=base_url,
        match_threshold=threshold,
        max_diagrams=max_diagrams,
        use_remote=not no_remote,
        log_level=log_level,
    )
    document_id = document_id or Path(content_path).stem

    async def _run():
        async with DocumentEngine(config) as engine:
            content = Path(content_path).read_text(encoding="utf-8")
            return await engine.place_diagrams(
                content,
                document_id=document_id,
                grade=grade,
                subject=subject,
                substrand=substrand,
            )

    try:
        if json_output:
            result = asyncio.run(_run())
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                progress.add_task("Placing diagrams...", total=None)
                result = asyncio.run(_run())
    except Exception as e:
        _fail(e, log_level)

    if output:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_text(result.content, encoding="utf-8")

    if json_output:
        _print_json(result)
        return

    _display_placement(result)


@cli.command()
@click.argument("concept")
@click.option("--grade", "-g", required=True, help="Grade, e.g. 'Grade 7'")
@click.option("--subject", "-s", required=True, help="Subject")
@click.option("--diagrams-root", default="diagrams", help="Local diagram library root")
@click.option("--threshold", default=40.0, type=float, help="Match threshold (0-100)")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def match(
    concept: str,
    grade: str,
    subject: str,
    diagrams_root: str,
    threshold: float,
    json_output: bool,
):
    """Score every local image in a folder against a concept."""

    library = LocalImageLibrary(
        root=diagrams_root,
        matcher=LocalImageMatcher(threshold=threshold),
    )
    scores = asyncio.run(library.test_match(concept, grade, subject))

    if json_output:
        print(json.dumps(
            {
                "concept": concept,
                "folder": str(library.folder_for(grade, subject)),
                "threshold": threshold,
                "scores": [{"filename": f, "score": s} for f, s in scores],
                "suggested_filename": suggest_filename(concept),
            },
            indent=2,
            ensure_ascii=False,
        ))
        return

    console.print()
    table = Table(title=f"Matches for: {concept[:60]}", border_style="cyan")
    table.add_column("Filename", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Status", justify="center")

    for filename, score in scores:
        table.add_row(
            filename,
            f"{score:.0f}%",
            "[green]✓[/]" if score >= threshold else "[dim]-[/]",
        )

    console.print(table)
    if not scores:
        console.print(f"[yellow]No images in: {library.folder_for(grade, subject)}[/]")
    console.print(f"[dim]Suggested filename: {suggest_filename(concept)}[/]")
    console.print()


@cli.command()
@click.option("--grade", "-g", required=True, help="Grade, e.g. 'Grade 7'")
@click.option("--subject", "-s", required=True, help="Subject")
@click.option("--diagrams-root", default="diagrams", help="Local diagram library root")
def images(grade: str, subject: str, diagrams_root: str):
    """List the local images available for a grade and subject."""

    library = LocalImageLibrary(root=diagrams_root)
    filenames = asyncio.run(library.list_images(grade, subject))
    folder = library.folder_for(grade, subject)

    if not filenames:
        console.print(f"[yellow]No images found in: {folder}[/]")
        return

    table = Table(title=f"Images in {folder}", border_style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Filename", style="bold")
    table.add_column("URL", style="dim")
    for i, filename in enumerate(filenames, 1):
        table.add_row(str(i), filename, library.image_url(grade, subject, filename))

    console.print(table)
    console.print(f"[bold]Total:[/] {len(filenames)} images")


@cli.command()
@click.argument("topic")
@click.option("--subject", "-s", required=True, help="Subject")
@click.option("--grade", "-g", default="", help="Grade")
@click.option("--substrand", default="", help="Sub-strand")
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def route(topic: str, subject: str, grade: str, substrand: str, json_output: bool):
    """Show which image source a topic would be routed to."""

    decision = route_topic(topic, subject, grade, substrand)

    if json_output:
        _print_json(decision)
        return

    table = Table(title="Routing Decision", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Topic", topic)
    table.add_row("Primary", decision.primary_source.value)
    table.add_row("Fallback", decision.fallback_source.value)
    table.add_row("Confidence", decision.confidence.value)
    table.add_row("Reason", decision.reason)
    console.print(table)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_content(result: TableResult):
    """Display a parse result as a rich table plus its report."""
    content = result.content
    console.print()

    if content.type == ContentKind.EMPTY:
        console.print("[yellow]No usable content[/]")
        return

    if content.type == ContentKind.MARKDOWN:
        console.print(f"[dim]No table recovered; kept as markdown ({len(content.markdown)} chars)[/]")
        return

    table = Table(
        title=f"{result.kind.value} (via {content.parsed_by})",
        border_style="cyan",
        show_lines=True,
    )
    for header in content.table.headers:
        table.add_column(header, overflow="fold")
    for row in content.table.rows[:MAX_DISPLAY_ROWS]:
        table.add_row(*row)
    console.print(table)

    hidden = content.table.row_count - MAX_DISPLAY_ROWS
    if hidden > 0:
        console.print(f"[dim]... {hidden} more rows[/]")
    console.print()

    if result.report:
        _display_report(result.report)

    console.print(f"[dim]Engine v{result.engine_version} | {result.elapsed_seconds}s[/]")
    console.print()


def _display_report(report: TableReport):
    """Display a table report as a rich table."""
    table = Table(title="Table Report", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    def status_icon(count, threshold=0):
        if count <= threshold:
            return "[green]✓[/]"
        return "[red]✗[/]"

    table.add_row(
        "Rows",
        str(report.row_count),
        "[green]✓[/]" if report.row_count > 0 else "[red]✗[/]",
    )
    table.add_row(
        "Columns",
        f"{report.column_count}/{report.expected_columns}",
        "[green]✓[/]" if report.column_count == report.expected_columns else "[yellow]⚠[/]",
    )
    table.add_row(
        "Completeness",
        f"{report.completeness}%",
        "[green]✓[/]" if report.completeness >= 90 else "[yellow]⚠[/]",
    )
    table.add_row(
        "Placeholder Rows",
        str(len(report.placeholder_rows)),
        status_icon(len(report.placeholder_rows)),
    )
    table.add_row(
        "Duplicate Lessons",
        str(len(report.duplicate_lessons)),
        status_icon(len(report.duplicate_lessons)),
    )

    console.print(table)
    console.print()


def _display_placement(result):
    """Display the figures placed in a document."""
    console.print()
    stats = result.stats

    table = Table(title="Placed Diagrams", border_style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Caption", style="bold")
    table.add_column("Source")
    table.add_column("Score", justify="right")

    for diagram in result.diagrams:
        table.add_row(
            str(diagram.figure_number),
            diagram.caption,
            diagram.source,
            f"{diagram.score:.0f}%" if diagram.score is not None else "-",
        )
    console.print(table)

    if result.guidance:
        hints = Table(title="Missing Local Images", border_style="yellow")
        hints.add_column("Add to", style="bold")
        hints.add_column("Filename")
        hints.add_column("Reason", style="dim")
        for hint in result.guidance:
            hints.add_row(hint.suggested_path, hint.suggested_filename, hint.reason)
        console.print(hints)

    console.print(
        f"[bold]Total:[/] {stats.successful}/{stats.total} placed, "
        f"{stats.failed} failed, {stats.skipped} skipped, "
        f"{stats.removed_leftovers} leftovers removed"
    )
    console.print()


# ─── Entry point (for python -m cbcdocs.cli) ──────────────────────────────────


if __name__ == "__main__":
    cli()
