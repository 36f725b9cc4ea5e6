"""
CLI interface for RLM Lite.

Provides command-line access to query resolution and the call ledger.
"""

import csv
import logging
import sqlite3
import sys
from pathlib import Path
from typing import Dict, List, Optional

import openai
import typer
import yaml
from rich.console import Console
from rich.table import Table

from rlm_lite.config.loader import DEFAULT_CONFIG, ReasoningEffort, RlmConfig, load_config
from rlm_lite.core.cache import RetrievalCache
from rlm_lite.core.controller import DecompositionController, Resolution
from rlm_lite.core.errors import ConfigConflictError, ResolutionError
from rlm_lite.core.families import ModelFamily, normalize_family, resolve_family
from rlm_lite.core.memory import KeywordLookup, MemoryStore
from rlm_lite.core.router import ModelRouter
from rlm_lite.core.telemetry import SessionMetrics, TelemetryAggregator, export_csv
from rlm_lite.sdk.openai_client import OpenAIInvoker
from rlm_lite.storage.db import DEFAULT_DB_PATH
from rlm_lite.storage.repository import CallRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """RLM Lite CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if ctx.invoked_subcommand is None:
        console.print("RLM Lite - Use --help to see available commands")


@app.command()
def init(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Call ledger database path")
):
    """Initialize the call ledger database."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Call ledger initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _load_documents(paths: List[Path]) -> Dict[str, str]:
    """Read context files keyed by file stem."""
    documents = {}
    for path in paths:
        if not path.exists():
            raise FileNotFoundError(f"Context file not found: {path}")
        documents[path.stem] = path.read_text(encoding="utf-8")
    return documents


def build_controller(
    config: RlmConfig,
    documents: Dict[str, str],
    ledger: Optional[str] = None
) -> DecompositionController:
    """Wire cache, memory, telemetry and router into a controller.

    Args:
        config: Complete configuration
        documents: Context documents keyed by id
        ledger: Optional call ledger path

    Returns:
        Controller ready to resolve queries
    """
    session = config.session
    cache = RetrievalCache(capacity=config.cache.capacity, ttl_seconds=config.cache.ttl_seconds)
    telemetry = TelemetryAggregator(
        pricing=config.pricing_table(),
        context_windows=config.context_windows(),
        cache=cache,
        ledger_path=ledger
    )
    router = ModelRouter.from_config(OpenAIInvoker(timeout_s=session.call_timeout_s),
                                     telemetry, config)
    memory = MemoryStore(cache, KeywordLookup(documents))
    return DecompositionController(router, memory, telemetry, session)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to answer"),
    context: Optional[List[Path]] = typer.Option(
        None,
        "--context",
        "-c",
        help="Context document (repeatable)"
    ),
    config_path: Optional[str] = typer.Option(None, "--config", help="YAML configuration file"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to answer with"),
    effort: Optional[str] = typer.Option(
        None,
        "--effort",
        "-e",
        help="Reasoning effort: none, low, medium, high, xhigh"
    ),
    temperature: Optional[float] = typer.Option(None, "--temperature", "-t", help="Sampling temperature"),
    max_depth: Optional[int] = typer.Option(None, "--max-depth", help="Maximum decomposition depth"),
    budget: Optional[int] = typer.Option(None, "--budget", "-b", help="Maximum model calls"),
    no_rlm: bool = typer.Option(False, "--no-rlm", help="Answer directly without decomposition"),
    ledger: Optional[str] = typer.Option(None, "--ledger", help="Record calls in this ledger database"),
    metrics_out: Optional[Path] = typer.Option(None, "--metrics-out", help="Write session metrics to CSV")
):
    """
    Answer a question over context documents.

    Complex questions are split into sub-queries that are answered in parallel
    and merged in order. Prints the answer followed by token, cost and timing
    metrics.
    """
    try:
        config = load_config(config_path) if config_path else DEFAULT_CONFIG
        reasoning_effort = None
        if effort is not None:
            try:
                reasoning_effort = ReasoningEffort(effort.lower())
            except ValueError:
                valid = [e.value for e in ReasoningEffort]
                raise ValueError(f"--effort must be one of: {valid}")

        # A flag for one sampling control replaces the configured other one
        session = config.session.with_sampling(reasoning_effort, temperature).with_overrides(
            model=model,
            max_depth=max_depth,
            budget=budget,
            rlm_enabled=False if no_rlm else None
        )
        config = RlmConfig(session=session, tiers=config.tiers,
                           router=config.router, cache=config.cache)

        documents = _load_documents(context or [])
        if ledger:
            initialize_schema(ledger)

        controller = build_controller(config, documents, ledger)
        resolution = controller.resolve_tree(question)
    except ConfigConflictError as e:
        console.print(f"[red]Configuration conflict:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except ResolutionError as e:
        console.print(f"[red]Could not answer:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except openai.OpenAIError as e:
        console.print(f"[red]OpenAI client error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_resolution(resolution)
    if metrics_out:
        try:
            export_csv(resolution.metrics, str(metrics_out))
        except OSError as e:
            console.print(f"[red]Error writing metrics:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        console.print(f"[green]✓[/] Metrics written to {metrics_out}")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with enough precision for per-call costs."""
    return f"${amount:,.6f}"


def _format_gauge(gauge: Optional[float]) -> str:
    if gauge is None:
        return "indeterminate"
    return f"{gauge * 100:.1f}%"


def _display_resolution(resolution: Resolution):
    """Display the answer and session metrics."""
    console.print("\n[bold]Answer[/bold]")
    console.print("-" * 40)
    console.print(resolution.answer, markup=False)

    split = len(resolution.tree) > 1
    console.print(f"\n[dim]{len(resolution.tree)} node(s), "
                  f"{'decomposed' if split else 'answered directly'}[/]")
    _display_metrics(resolution.metrics)


def _display_metrics(metrics: SessionMetrics):
    table = Table(title="Session Metrics")
    table.add_column("Metric")
    table.add_column("Value", justify="right")

    table.add_row("Model calls", str(metrics.call_count))
    table.add_row("Input tokens", f"{metrics.input_tokens:,}")
    table.add_row("Output tokens", f"{metrics.output_tokens:,}")
    table.add_row("Cost", _format_currency(metrics.cost_usd))
    table.add_row("Cache hits / misses",
                  f"{metrics.cache_hits} / {metrics.cache_misses} ({metrics.cache_hit_rate:.0%})")
    table.add_row("Tier shifts", str(len(metrics.tier_shifts)))
    table.add_row("Context gauge", _format_gauge(metrics.context_gauge))
    for name in sorted(metrics.stage_ms):
        table.add_row(f"Stage {name}", f"{metrics.stage_ms[name]:,.1f} ms")
    console.print(table)

    for family in metrics.unknown_rate_families:
        console.print(f"[yellow]No pricing for {family}, cost recorded as 0[/]")
    if metrics.ledger_errors:
        console.print(f"[yellow]{metrics.ledger_errors} call(s) could not be written to the ledger[/]")


def _display_family_totals(family_totals: Dict[str, Dict[str, float]], db: str):
    if not family_totals:
        _print_no_ledger(db)
        return

    table = Table(title="Totals by Model Family")
    for column in ("Family", "Calls", "In", "Out", "Cost"):
        table.add_column(column)
    for name, row in family_totals.items():
        table.add_row(
            name,
            str(row["calls"]),
            f"{row['input_tokens']:,}",
            f"{row['output_tokens']:,}",
            _format_currency(row["cost_usd"])
        )
    console.print(table)


def _print_no_ledger(db: str):
    console.print("\n[bold yellow]No call history found[/]")
    console.print(f"\nRun `rlm-lite init --db {db}` and answer questions with --ledger {db}\n")


@app.command()
def history(
    family: Optional[str] = typer.Option(None, "--family", "-f", help="Filter by model family"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to show"),
    totals: bool = typer.Option(False, "--totals", help="Show per-family totals instead of calls"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Call ledger database path")
):
    """Show recent model calls from the call ledger."""
    try:
        repository = CallRepository(db)
        if totals:
            family_totals = repository.get_family_totals()
            records = []
        else:
            records = repository.get_recent_records(
                family=normalize_family(family) if family else None,
                limit=limit
            )
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_no_ledger(db)
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if totals:
        _display_family_totals(family_totals, db)
        sys.exit(EXIT_CODE_PASS)

    if not records:
        _print_no_ledger(db)
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent Model Calls")
    for column in ("Time", "Requested", "Family", "Tier", "In", "Out", "Cost", "Latency"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.requested_model,
            record.resolved_family + (" (no rate)" if record.unknown_rate else ""),
            str(record.tier),
            str(record.input_tokens),
            str(record.output_tokens),
            _format_currency(record.cost_usd),
            f"{record.latency_ms:,.0f} ms"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def export(
    output: Path = typer.Argument(..., help="CSV file to write"),
    limit: int = typer.Option(1000, "--limit", "-n", help="Maximum rows to export"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Call ledger database path")
):
    """Export the call ledger to CSV."""
    try:
        records = CallRepository(db).get_recent_records(limit=limit)
        with open(output, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow([
                "timestamp", "requested_model", "resolved_family", "served_model", "tier",
                "input_tokens", "output_tokens", "cost_usd", "latency_ms", "attempts",
                "unknown_rate"
            ])
            for record in records:
                writer.writerow([
                    record.timestamp.isoformat(), record.requested_model,
                    record.resolved_family, record.served_model, record.tier,
                    record.input_tokens, record.output_tokens, f"{record.cost_usd:.6f}",
                    f"{record.latency_ms:.1f}", record.attempts, int(record.unknown_rate)
                ])
    except (sqlite3.OperationalError, OSError) as e:
        console.print(f"[red]Error exporting ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Exported {len(records)} call(s) to {output}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def family(
    model_id: str = typer.Argument(..., help="Model identifier"),
    config_path: Optional[str] = typer.Option(None, "--config", help="YAML configuration file")
):
    """Show the normalized family of a model identifier and its configured tier."""
    try:
        config = load_config(config_path) if config_path else DEFAULT_CONFIG
        canonical = normalize_family(model_id)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    tiers = [tier.canonical_family for tier in config.tiers]
    if canonical in tiers:
        status = f"[green]known, tier {tiers.index(canonical)}[/]"
    elif resolve_family(canonical) != ModelFamily.UNKNOWN:
        status = "[yellow]built-in family, not in configured tiers (no pricing)[/]"
    else:
        status = "[yellow]unknown (no pricing)[/]"
    console.print(f"{model_id} -> [bold]{canonical}[/] {status}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
