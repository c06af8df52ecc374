"""Typer CLI entry point for analysis-broker."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.status import Status
from rich.table import Table

from analysis_broker import __version__
from analysis_broker.config import Settings, format_validation_error
from analysis_broker.events import Listener, PipelineEvent, ProgressEvent
from analysis_broker.exceptions import ConfigurationError
from analysis_broker.interpreter import estimate_verification
from analysis_broker.logging import configure_logging
from analysis_broker.models import (
    AnalysisDepth,
    AnalysisKind,
    AnalysisResult,
    OutputFormat,
)
from analysis_broker.pipeline import AnalysisPipeline
from analysis_broker.report_output import render_markdown, write_report

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="analysis-broker",
    help="Cached, quota-limited code analysis through an external large-context CLI.",
    no_args_is_help=True,
)
cache_app = typer.Typer(help="Inspect and maintain the result cache.")
app.add_typer(cache_app, name="cache")

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Print the raw result as JSON."),
]
OutputDirOption = Annotated[
    Path | None,
    typer.Option("--output-dir", "-o", help="Also write a Markdown report here."),
]
QueryOption = Annotated[
    str | None,
    typer.Option("--query", "-q", help="Specific question or focus for the analysis."),
]
DepthOption = Annotated[
    AnalysisDepth | None,
    typer.Option("--depth", "-d", help="Analysis depth."),
]

_TITLES: dict[AnalysisKind, str] = {
    AnalysisKind.CODEBASE: "Codebase Analysis",
    AnalysisKind.ARCHITECTURE: "Architecture Map",
    AnalysisKind.SECURITY: "Security Scan",
    AnalysisKind.DEPENDENCIES: "Dependency Analysis",
    AnalysisKind.COVERAGE: "Coverage Assessment",
    AnalysisKind.CUSTOM: "Custom Analysis",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(config_path: Path | None = None) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    try:
        return Settings.load(config_path=config_path)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc


def _build_pipeline(config_path: Path | None) -> AnalysisPipeline:
    settings = _load_settings(config_path)
    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
    )
    return AnalysisPipeline.from_settings(settings)


def _progress_listener(status: Status) -> Listener:
    def listener(event: PipelineEvent) -> None:
        if isinstance(event, ProgressEvent):
            status.update(f"[cyan]{event.phase.capitalize()}...[/cyan]")

    return listener


def _emit_result(
    result: AnalysisResult,
    title: str,
    as_json: bool,
    output_dir: Path | None,
) -> None:
    if as_json:
        console.print_json(result.model_dump_json(exclude={"raw_output"}))
    else:
        console.print(Markdown(render_markdown(result, title)))

    if output_dir is not None:
        path = write_report(result, output_dir, title)
        err_console.print(f"[green]Report written:[/green] {path}")

    if not result.success:
        raise typer.Exit(code=1)


def _run_kind(
    kind: AnalysisKind,
    paths: list[str],
    config: Path | None,
    as_json: bool,
    output_dir: Path | None,
    **options: object,
) -> None:
    pipeline = _build_pipeline(config)

    async def run() -> AnalysisResult:
        with console.status(f"[cyan]{_TITLES[kind]}...[/cyan]") as status:
            remove = pipeline.events.add_listener(_progress_listener(status))
            try:
                if kind in (AnalysisKind.CODEBASE, AnalysisKind.CUSTOM):
                    request = pipeline.build_request(kind, paths, **options)
                    return await pipeline.analyze(request)
                entry_point = {
                    AnalysisKind.SECURITY: pipeline.security_scan,
                    AnalysisKind.ARCHITECTURE: pipeline.architecture_map,
                    AnalysisKind.DEPENDENCIES: pipeline.dependency_analysis,
                    AnalysisKind.COVERAGE: pipeline.coverage_assess,
                }[kind]
                return await entry_point(paths, **options)
            finally:
                remove()

    try:
        result = asyncio.run(run())
    except ConfigurationError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    _emit_result(result, _TITLES[kind], as_json, output_dir)


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]analysis-broker[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """analysis-broker global options."""


# ---------------------------------------------------------------------------
# Analysis commands
# ---------------------------------------------------------------------------


@app.command()
def analyze(
    paths: Annotated[list[str], typer.Argument(help="Files or directories to analyze.")],
    kind: Annotated[
        AnalysisKind,
        typer.Option("--kind", "-k", help="Analysis kind."),
    ] = AnalysisKind.CODEBASE,
    depth: DepthOption = None,
    query: QueryOption = None,
    focus: Annotated[
        list[str] | None,
        typer.Option("--focus", "-f", help="Focus tag (repeatable)."),
    ] = None,
    output_format: Annotated[
        OutputFormat | None,
        typer.Option("--format", help="Output format requested from the tool."),
    ] = None,
    config: ConfigOption = None,
    as_json: JsonOption = False,
    output_dir: OutputDirOption = None,
) -> None:
    """Run an analysis of the given kind over PATHS."""
    options: dict[str, object] = {
        "depth": depth,
        "query": query,
        "focus": tuple(focus) if focus else None,
        "output_format": output_format,
    }
    _run_kind(kind, paths, config, as_json, output_dir, **options)


@app.command()
def security(
    paths: Annotated[list[str], typer.Argument(help="Files or directories to scan.")],
    depth: DepthOption = None,
    query: QueryOption = None,
    config: ConfigOption = None,
    as_json: JsonOption = False,
    output_dir: OutputDirOption = None,
) -> None:
    """Security audit: vulnerabilities, secrets, misconfigurations."""
    _run_kind(AnalysisKind.SECURITY, paths, config, as_json, output_dir, depth=depth, query=query)


@app.command()
def architecture(
    paths: Annotated[list[str], typer.Argument(help="Files or directories to map.")],
    depth: DepthOption = None,
    query: QueryOption = None,
    config: ConfigOption = None,
    as_json: JsonOption = False,
    output_dir: OutputDirOption = None,
) -> None:
    """Map components, layers and data flows."""
    _run_kind(
        AnalysisKind.ARCHITECTURE, paths, config, as_json, output_dir, depth=depth, query=query
    )


@app.command()
def dependencies(
    paths: Annotated[list[str], typer.Argument(help="Project roots to audit.")],
    depth: DepthOption = None,
    query: QueryOption = None,
    config: ConfigOption = None,
    as_json: JsonOption = False,
    output_dir: OutputDirOption = None,
) -> None:
    """Audit dependencies: outdated, vulnerable, license issues."""
    _run_kind(
        AnalysisKind.DEPENDENCIES, paths, config, as_json, output_dir, depth=depth, query=query
    )


@app.command()
def coverage(
    paths: Annotated[list[str], typer.Argument(help="Files or directories to assess.")],
    depth: DepthOption = None,
    query: QueryOption = None,
    config: ConfigOption = None,
    as_json: JsonOption = False,
    output_dir: OutputDirOption = None,
) -> None:
    """Assess test coverage and missing edge cases."""
    _run_kind(AnalysisKind.COVERAGE, paths, config, as_json, output_dir, depth=depth, query=query)


@app.command()
def verify(
    feature: Annotated[str, typer.Argument(help="Feature description to look for.")],
    path: Annotated[str, typer.Argument(help="Where to look.")] = ".",
    config: ConfigOption = None,
    as_json: JsonOption = False,
) -> None:
    """Check whether FEATURE is implemented under PATH."""
    pipeline = _build_pipeline(config)
    try:
        verification = asyncio.run(pipeline.verify(feature, path))
    except ConfigurationError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    implemented, confidence = verification.implemented, verification.confidence
    analysis = verification.analysis
    if not verification.parsed and analysis is not None and analysis.success:
        implemented, confidence = estimate_verification(analysis.summary)

    if as_json:
        console.print_json(
            verification.model_copy(
                update={"implemented": implemented, "confidence": confidence}
            ).model_dump_json(exclude={"analysis"})
        )
    else:
        status = "[green]IMPLEMENTED[/green]" if implemented else "[red]NOT FOUND[/red]"
        console.print(f"Status: {status}")
        console.print(f"Confidence: {confidence:g}%")
        console.print(Panel(verification.details, title="Details"))

    if analysis is not None and not analysis.success:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Status commands
# ---------------------------------------------------------------------------


@app.command()
def quota(config: ConfigOption = None) -> None:
    """Show quota usage for the minute and day windows."""
    pipeline = _build_pipeline(config)
    status = pipeline.quota_status()

    table = Table(title="Quota Status", show_lines=True)
    table.add_column("Window", style="cyan")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Resets At (UTC)")
    for name, window in (
        ("per minute", status.requests_per_minute),
        ("per day", status.requests_per_day),
    ):
        table.add_row(
            name,
            str(window.used),
            str(window.limit),
            window.reset_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@cache_app.command("stats")
def cache_stats(config: ConfigOption = None) -> None:
    """Show cache entry count, size and hit rate."""
    pipeline = _build_pipeline(config)
    asyncio.run(pipeline.start())
    stats = pipeline.cache_stats()

    table = Table(title="Cache Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Entries", str(stats.entries))
    table.add_row("Size (bytes)", str(stats.total_size_bytes))
    table.add_row("Hit rate", f"{stats.hit_rate:.0%}")
    console.print(table)


@cache_app.command("clear")
def cache_clear(config: ConfigOption = None) -> None:
    """Remove every cached result, in memory and on disk."""
    pipeline = _build_pipeline(config)

    async def run() -> int:
        await pipeline.start()
        return await pipeline.clear_cache()

    removed = asyncio.run(run())
    console.print(f"[green]Cleared[/green] {removed} cached result(s).")


@cache_app.command("invalidate")
def cache_invalidate(
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Drop results covering this path."),
    ] = None,
    finding_type: Annotated[
        str | None,
        typer.Option("--type", help="Drop results with findings of this type."),
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Drop cached results by target path or finding type."""
    pipeline = _build_pipeline(config)

    async def run() -> int:
        await pipeline.start()
        return await pipeline.invalidate_cache(target=target, finding_type=finding_type)

    removed = asyncio.run(run())
    console.print(f"[green]Invalidated[/green] {removed} cached result(s).")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
