"""Command-line interface for annot-pipeline.

Usage:
    annot-pipeline annotate genome.fasta --db /data/db --output results/
    annot-pipeline annotate genome.fasta --skip ncrna --skip crispr --complete
    annot-pipeline detectors
    annot-pipeline check
    annot-pipeline clear-cache
"""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from annot_pipeline.config import apply_overrides, list_detectors, load_config
from annot_pipeline.exceptions import AnnotationError
from annot_pipeline.models import FEATURE_TYPES
from annot_pipeline.pipeline import AnnotationPipeline

app = typer.Typer(
    name="annot-pipeline",
    help="Annotation pipeline for bacterial genomes, plasmids and MAGs.",
    add_completion=False,
)
console = Console()

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to custom config file",
)


def _load(config: Optional[str], overrides: Optional[dict] = None) -> dict:
    try:
        loaded = load_config(config)
    except (OSError, ValueError) as e:
        console.print(f"[bold red]✗[/bold red] Invalid configuration: {e}")
        raise typer.Exit(code=2)
    return apply_overrides(loaded, overrides) if overrides else loaded


@app.command()
def annotate(
    genome: str = typer.Argument(..., help="Genome assembly in (optionally gzipped) FASTA format"),
    output: str = typer.Option(
        "output",
        "--output",
        "-o",
        help="Output directory",
    ),
    prefix: Optional[str] = typer.Option(
        None,
        "--prefix",
        "-p",
        help="Output file prefix (defaults to the genome file name)",
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        "-d",
        help="Reference database directory",
    ),
    threads: Optional[int] = typer.Option(
        None,
        "--threads",
        "-t",
        help="Number of CPU worker threads (0 = all cores)",
    ),
    skip: Optional[list[str]] = typer.Option(
        None,
        "--skip",
        help=f"Detector kind to skip; repeatable. One of: {', '.join(FEATURE_TYPES)}",
    ),
    locus_tag: Optional[str] = typer.Option(
        None,
        "--locus-tag",
        help="Locus tag prefix (derived from the assembly by default)",
    ),
    complete: bool = typer.Option(
        False,
        "--complete",
        help="All sequences are complete, circular replicons",
    ),
    config: Optional[str] = CONFIG_OPTION,
):
    """Annotate a genome assembly."""
    unknown = [kind for kind in skip or [] if kind not in FEATURE_TYPES]
    if unknown:
        console.print(f"[bold red]✗[/bold red] Unknown detector kind(s): {', '.join(unknown)}")
        raise typer.Exit(code=2)

    overrides: dict = {"pipeline": {}, "detectors": {kind: {"enabled": False} for kind in skip or []}}
    if db:
        overrides["database"] = db
    if threads is not None:
        overrides["pipeline"]["threads"] = threads
    if locus_tag:
        overrides["pipeline"]["locus_tag"] = locus_tag
    if complete:
        overrides["pipeline"]["complete"] = True
    settings = _load(config, overrides)

    console.print(f"[bold green]annot-pipeline[/bold green] - Annotating {genome}")

    pipeline = AnnotationPipeline(config=settings)
    try:
        paths = pipeline.run(genome, output_dir=output, prefix=prefix)
    except AnnotationError as e:
        console.print(f"\n[bold red]✗[/bold red] Annotation failed: {e}")
        raise typer.Exit(code=1)

    console.print("\n[bold green]✓[/bold green] Results saved to:")
    for fmt, path in paths.items():
        console.print(f"    [cyan]{fmt}[/cyan]  {path}")


@app.command()
def detectors(
    config: Optional[str] = CONFIG_OPTION,
):
    """List all detector kinds and their status."""
    settings = _load(config)
    pipeline = AnnotationPipeline(config=settings)
    status = pipeline.check_tools()

    table = Table(title="Feature Detectors")
    table.add_column("Kind", style="cyan", no_wrap=True)
    table.add_column("Tool", style="white")
    table.add_column("Fatal", style="yellow")
    table.add_column("Status", no_wrap=True)

    for d in list_detectors(settings):
        if not d["enabled"]:
            state = "[dim]disabled[/dim]"
        elif status.get(d["kind"], False):
            state = "[green]✓ Ready[/green]"
        else:
            state = "[red]✗ Missing tool[/red]"
        table.add_row(d["kind"], d["binary"] or "(built-in)", "yes" if d["fatal"] else "no", state)

    console.print(table)


@app.command()
def check(
    config: Optional[str] = CONFIG_OPTION,
):
    """Check availability of external tools and reference databases."""
    console.print("[bold]Checking detectors and lookup services...[/bold]\n")

    settings = _load(config)
    pipeline = AnnotationPipeline(config=settings)
    status = pipeline.check_tools()

    console.print("  [bold]Detectors:[/bold]")
    for kind in FEATURE_TYPES:
        if kind in status:
            icon = "[green]✓[/green]" if status[kind] else "[red]✗[/red]"
            console.print(f"    {icon} {kind}")

    console.print("\n  [bold]Lookup services:[/bold]")
    services = {k: v for k, v in status.items() if k.startswith("lookup:")}
    if services:
        for name, available in services.items():
            icon = "[green]✓[/green]" if available else "[red]✗[/red]"
            console.print(f"    {icon} {name.split(':', 1)[1]}")
    else:
        console.print(
            "    [yellow]ℹ[/yellow]  No reference database configured; proteins stay unresolved.\n"
            "       To enable: [cyan]--db /path/to/db[/cyan] or "
            "[cyan]export ANNOT_PIPELINE_DB=\"/path/to/db\"[/cyan]"
        )

    console.print()


@app.command()
def clear_cache(
    config: Optional[str] = CONFIG_OPTION,
):
    """Clear the persistent lookup cache."""
    pipeline = AnnotationPipeline(config=_load(config))
    pipeline.persistent_cache.clear()
    console.print("[bold green]✓[/bold green] Cache cleared.")


def main():
    app()


if __name__ == "__main__":
    main()
