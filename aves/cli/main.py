"""
Typer CLI for the aves learning loop.

Commands:
    aves classify NOTES                 - Show the rejection category for reviewer notes
    aves config                         - Show effective storage, learning and batch settings
    aves check-db                       - Check the feedback database connection
    aves patterns analytics             - Summarize persisted learned patterns
    aves patterns recommend SPECIES     - Top features to prompt for a species
    aves patterns export PATH           - Write the learned state as JSON
    aves feedback rejections            - Rejection analytics from the database
    aves feedback summary               - Feedback metric counts and averages
    aves feedback adjustment SPECIES FEATURE - Learned positioning correction
    aves cost estimate                  - Estimate vision API cost for a batch

Usage:
    aves --help
    aves classify "[POOR_LOCALIZATION] box too wide"
    aves feedback rejections --window "7 days"
    aves cost estimate --prompt-length 2400 --batch-size 50
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from aves.exceptions import ConfigurationError
from aves.learning.pattern_learner import PatternLearner
from aves.learning.rejection import extract_rejection_category
from aves.logging_setup import configure_logging
from aves.processing.cost_estimator import MODEL_PRICING, CostEstimator
from config import get_settings

app = typer.Typer(
    help="aves: annotation feedback learning loop for Spanish bird vocabulary",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main_callback() -> None:
    """Configure logging before any command runs."""
    configure_logging(get_settings())


# ========================================
# REJECTION TAXONOMY
# ========================================


@app.command("classify")
def classify(notes: str = typer.Argument(..., help="Reviewer rejection notes")) -> None:
    """Classify rejection notes into a rejection category."""
    category = extract_rejection_category(notes)
    rprint(f"[bold cyan]{category.value}[/bold cyan]")


# ========================================
# CONFIGURATION
# ========================================


@app.command("config")
def show_config() -> None:
    """Show the effective pattern learning and storage settings."""
    settings = get_settings()
    for title, values in (
        ("Pattern Storage", settings.get_storage_config()),
        ("Pattern Learning", settings.get_pattern_config()),
        ("Batch Processing", settings.get_batch_config()),
    ):
        table = Table(title=title, show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        for key, value in values.items():
            table.add_row(key, "-" if value is None else str(value))
        console.print(table)


@app.command("check-db")
def check_db() -> None:
    """Check that the feedback database answers."""
    from aves.db.database import check_connection, dispose_engine

    async def _check() -> bool:
        try:
            return await check_connection()
        finally:
            await dispose_engine()

    if asyncio.run(_check()):
        rprint("[green]Database connection OK[/green]")
    else:
        rprint("[red]Database connection failed[/red]")
        raise typer.Exit(code=1)


# ========================================
# PATTERN COMMANDS
# ========================================

patterns_app = typer.Typer(help="Inspect learned annotation patterns")
app.add_typer(patterns_app, name="patterns")


def _load_learner() -> PatternLearner:
    try:
        learner = PatternLearner.from_settings(get_settings())
    except ConfigurationError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    asyncio.run(learner.ensure_initialized())
    return learner


@patterns_app.command("analytics")
def patterns_analytics() -> None:
    """Summarize the persisted pattern snapshot."""
    analytics = _load_learner().get_analytics()

    rprint("\n[bold cyan]Learned Patterns[/bold cyan]")
    rprint(f"  Patterns: {analytics['total_patterns']}")
    rprint(f"  Species tracked: {analytics['species_tracked']}")
    rprint(f"  Observations: {analytics['total_observations']}")
    rprint(f"  Corrections tracked: {analytics['corrections_tracked']}\n")

    if analytics["top_features"]:
        table = Table(title="Top Features", show_header=True)
        table.add_column("Feature", style="cyan")
        table.add_column("Species")
        table.add_column("Observations", justify="right", style="green")
        table.add_column("Confidence", justify="right", style="yellow")
        for row in analytics["top_features"]:
            table.add_row(
                row["feature"],
                row["species"] or "-",
                str(row["observations"]),
                f"{row['confidence']:.2f}",
            )
        console.print(table)

    if analytics["rejection_totals"]:
        table = Table(title="Rejections by Category", show_header=True)
        table.add_column("Category", style="cyan")
        table.add_column("Count", justify="right", style="red")
        for category, count in sorted(
            analytics["rejection_totals"].items(), key=lambda item: item[1], reverse=True
        ):
            table.add_row(category, str(count))
        console.print(table)


@patterns_app.command("recommend")
def patterns_recommend(
    species: str = typer.Argument(..., help="Species name, e.g. 'Mallard'"),
    limit: int = typer.Option(8, "--limit", "-n", help="Maximum features to list"),
) -> None:
    """List the features to prioritize for a species."""
    features = _load_learner().get_recommended_features(species, limit=limit)
    if not features:
        rprint(f"[yellow]No learned features for {species}[/yellow]")
        return
    rprint(f"\n[bold cyan]Recommended features for {species}[/bold cyan]")
    for index, feature in enumerate(features, start=1):
        rprint(f"  {index}. {feature}")


@patterns_app.command("export")
def patterns_export(
    output: Path = typer.Argument(..., help="Destination JSON file"),
) -> None:
    """Export the learned state as JSON."""
    data = _load_learner().export_patterns()
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(data, indent=2), encoding="utf-8")
    rprint(f"[green]Exported {len(data['patterns'])} patterns to {output}[/green]")


# ========================================
# FEEDBACK COMMANDS (database)
# ========================================

feedback_app = typer.Typer(help="Query persisted reviewer feedback")
app.add_typer(feedback_app, name="feedback")


async def _with_engine(action):
    from aves.db.database import async_session_scope, dispose_engine
    from aves.learning.reinforcement_engine import ReinforcementLearningEngine

    settings = get_settings()
    try:
        async with async_session_scope() as session:
            engine = ReinforcementLearningEngine(
                session, min_samples=settings.positioning_min_samples
            )
            return await action(engine)
    finally:
        await dispose_engine()


@feedback_app.command("rejections")
def feedback_rejections(
    window: str = typer.Option("30 days", "--window", "-w", help="Postgres interval, e.g. '7 days'"),
) -> None:
    """Show the most common rejection groups."""
    try:
        rows = asyncio.run(_with_engine(lambda engine: engine.get_rejection_analytics(window)))
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if not rows:
        rprint(f"[yellow]No rejections in the last {window}[/yellow]")
        return

    table = Table(title=f"Rejections (last {window})", show_header=True)
    table.add_column("Category", style="cyan")
    table.add_column("Species")
    table.add_column("Feature")
    table.add_column("Count", justify="right", style="red")
    table.add_column("Avg Confidence", justify="right", style="yellow")
    for row in rows:
        avg = row.get("avg_confidence")
        table.add_row(
            str(row.get("rejection_category")),
            str(row.get("species") or "-"),
            str(row.get("feature_type") or "-"),
            str(row.get("count")),
            f"{float(avg):.2f}" if avg is not None else "-",
        )
    console.print(table)


@feedback_app.command("summary")
def feedback_summary(
    window: str = typer.Option("30 days", "--window", "-w", help="Postgres interval, e.g. '7 days'"),
) -> None:
    """Show feedback metric counts and averages."""
    try:
        summary = asyncio.run(_with_engine(lambda engine: engine.get_feedback_summary(window)))
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"Feedback Metrics (last {window})", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Events", justify="right", style="green")
    table.add_column("Average", justify="right", style="yellow")
    for metric, values in sorted(summary.items()):
        table.add_row(metric, str(values["count"]), f"{values['average']:.3f}")
    console.print(table)


@feedback_app.command("adjustment")
def feedback_adjustment(
    species: str = typer.Argument(..., help="Species name"),
    feature: str = typer.Argument(..., help="Feature, e.g. 'el pico'"),
) -> None:
    """Show the learned positioning correction for a species and feature."""
    adjustment = asyncio.run(
        _with_engine(lambda engine: engine.get_positioning_adjustments(species, feature))
    )
    if adjustment is None:
        rprint(f"[yellow]No positioning adjustment available for {species}:{feature}[/yellow]")
        return

    rprint(f"\n[bold cyan]Positioning adjustment for {species}:{feature}[/bold cyan]")
    rprint(f"  dx={adjustment.delta_x:.3f}  dy={adjustment.delta_y:.3f}")
    rprint(f"  dwidth={adjustment.delta_width:.3f}  dheight={adjustment.delta_height:.3f}")
    rprint(f"  Confidence: {adjustment.confidence:.2f} ({adjustment.sample_count} samples)")


# ========================================
# COST COMMANDS
# ========================================

cost_app = typer.Typer(help="Vision API cost estimates")
app.add_typer(cost_app, name="cost")


@cost_app.command("estimate")
def cost_estimate(
    prompt_length: int = typer.Option(..., "--prompt-length", help="Prompt length in characters"),
    batch_size: int = typer.Option(1, "--batch-size", help="Number of images"),
    output_tokens: int = typer.Option(1000, "--output-tokens", help="Expected output tokens per image"),
    model: str = typer.Option(None, "--model", help="Model pricing to use"),
) -> None:
    """Estimate the cost of annotating a batch of images."""
    model = model or get_settings().vision_model
    if model not in MODEL_PRICING:
        rprint(f"[yellow]Unknown model {model}, using default pricing[/yellow]")
    estimator = CostEstimator(model)
    cost = estimator.estimate_batch_cost(batch_size, prompt_length, output_tokens)

    table = Table(title=f"Estimated cost: {batch_size} images", show_header=True)
    table.add_column("Component", style="cyan")
    table.add_column("Cost", justify="right", style="green")
    table.add_row("Input", estimator.format_cost(cost.input_cost))
    table.add_row("Output", estimator.format_cost(cost.output_cost))
    table.add_row("Images", estimator.format_cost(cost.image_cost))
    table.add_row("[bold]Total[/bold]", f"[bold]{estimator.format_cost(cost.total_cost)}[/bold]")
    console.print(table)


def run() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
