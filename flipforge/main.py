"""
FlipForge Listing Pipeline - CLI Entry Point.
Click commands with Rich output, running against the in-memory store.
"""

import asyncio
import json
import logging
import sys
from functools import wraps
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from flipforge.config.settings import Settings, get_settings
from flipforge.models.schemas import DataProvenance, MarketResearchRecord
from flipforge.persistence.store import InMemoryPipelineStore
from flipforge.pipeline.driver import create_pipeline_driver
from flipforge.pipeline.state_machine import PipelineStateMachine
from flipforge.services.market_research import MarketDataAcquisitionSelector
from flipforge.services.validation_service import ValidationService
from flipforge.utils.errors import FlipForgeError
from flipforge.utils.logger import setup_logging

# Initialize Rich Console
console = Console()

DEFAULT_ACCOUNT = "local"

# =============================================================================
# Helper Functions
# =============================================================================

def async_command(f):
    """Decorator to run async click commands."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))
    return wrapper


def setup_logger(verbose: bool):
    """Configure logging based on verbosity."""
    level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=level, json_format=False)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _provenance_label(record: MarketResearchRecord) -> str:
    if record.provenance == DataProvenance.REAL:
        return "[green]real (verified marketplace APIs)[/green]"
    return "[yellow]fake (AI-estimated)[/yellow]"


def _research_table(record: MarketResearchRecord) -> Table:
    table = Table(title="Market Research", show_header=False)
    table.add_row("Provenance", _provenance_label(record))
    table.add_row("Amazon", f"${record.amazon.price:.2f}  {record.amazon.link}" if record.amazon else "-")
    table.add_row("eBay", f"${record.ebay.price:.2f}  {record.ebay.link}" if record.ebay else "-")
    if record.average_market_price is not None:
        table.add_row("Average price", f"${record.average_market_price:.2f}")
    if record.competitive_price is not None:
        table.add_row("Competitive price", f"${record.competitive_price:.2f}")
    table.add_row("Demand", str(record.market_demand or "-"))
    table.add_row("Competitors", str(record.competitor_count or 0))
    table.add_row("Confidence", f"{record.confidence:.0%}")
    table.add_row("Sources", ", ".join(record.research_sources) or "-")
    return table


def _print_research(record: MarketResearchRecord) -> None:
    console.print(_research_table(record))
    for insight in record.insights:
        console.print(f"  • {insight}")
    if record.warning:
        console.print(f"\n[yellow]Warning: {record.warning}[/yellow]")
    for warning in record.validation_warnings:
        console.print(f"[dim]Validation: {warning}[/dim]")


# =============================================================================
# CLI Group
# =============================================================================

@click.group()
@click.version_option(version="1.0.0")
def cli():
    """FlipForge Listing Pipeline"""
    pass

# =============================================================================
# Commands
# =============================================================================

@cli.command()
@click.argument('name')
@click.option('--model', default=None, help='Product model number')
@click.option('--brand', default=None, help='Product brand')
@click.option('--category', default=None, help='Product category')
@click.option('--account', default=DEFAULT_ACCOUNT, help='Owning account id')
@click.option('--fast', is_flag=True, help='Skip the per-step progress delay')
@click.option('--verbose', is_flag=True, help='Detailed logging')
@async_command
async def run(name: str, model: Optional[str], brand: Optional[str], category: Optional[str],
              account: str, fast: bool, verbose: bool):
    """
    Run all four pipeline phases for a product.

    NAME: Product name (e.g., "Sony WH-1000XM4 Headphones")
    """
    setup_logger(verbose)

    console.print(Panel.fit(f"[bold blue]FlipForge Pipeline[/bold blue]\nProduct: [cyan]{name}[/cyan]"))

    settings = get_settings()
    if fast:
        settings = settings.model_copy(update={"simulation_step_seconds": 0})

    store = InMemoryPipelineStore()
    driver = create_pipeline_driver(store, settings=settings)

    try:
        product = await driver.machine.register_product(
            account, name=name, model=model, brand=brand, category=category
        )

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("[cyan]Running pipeline...", total=None)
            summary = await driver.run(account, product.id)
            progress.update(task, completed=True, description="[green]Pipeline finished")

        table = Table(title="Pipeline Summary", show_header=False)
        table.add_row("Product ID", product.id)
        table.add_row("Status", summary.status)
        table.add_row("Progress", f"{summary.progress}%")
        table.add_row("Completed phases", ", ".join(map(str, summary.completed_phases)) or "-")
        table.add_row("Duration", f"{summary.duration_seconds:.2f}s")
        console.print(table)

        research = await store.get_market_research(product.id)
        if research:
            _print_research(research)
        listing = await store.get_listing(product.id)
        if listing:
            price = f"${listing.price:.2f}" if listing.price is not None else "unpriced"
            console.print(Panel(f"[bold]{listing.title}[/bold]\n{price} ({listing.status})", title="Listing"))

        if summary.errors:
            for error in summary.errors:
                console.print(f"[bold red]Error:[/bold red] {escape(error)}")
            sys.exit(1)

    except FlipForgeError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(e.message)}")
        if verbose:
            console.print_exception()
        sys.exit(1)
    finally:
        await driver.close()


@cli.command()
@click.argument('name')
@click.option('--model', default=None, help='Product model number')
@click.option('--brand', default=None, help='Product brand')
@click.option('--category', default=None, help='Product category')
@click.option('--json', 'as_json', is_flag=True, help='Print the research record as JSON')
@click.option('--verbose', is_flag=True, help='Detailed logging')
@async_command
async def research(name: str, model: Optional[str], brand: Optional[str], category: Optional[str],
                   as_json: bool, verbose: bool):
    """
    Run market research (phase 2) only.

    NAME: Product name to research.
    """
    setup_logger(verbose)

    settings = get_settings()
    store = InMemoryPipelineStore()
    machine = PipelineStateMachine(store)
    selector = MarketDataAcquisitionSelector(store, settings=settings)

    try:
        product = await machine.register_product(
            DEFAULT_ACCOUNT, name=name, model=model, brand=brand, category=category
        )
        path = selector.choose_path()
        if not as_json:
            console.print(f"[dim]Researching {name} via {path.value} data path...[/dim]", style="italic")
        record = await selector.acquire_market_data(
            DEFAULT_ACCOUNT, product.id, name, model=model, brand=brand, category=category
        )
        if as_json:
            console.print_json(record.to_json())
        else:
            _print_research(record)

    except FlipForgeError as e:
        console.print(f"[bold red]Research Failed:[/bold red] {escape(e.message)}")
        sys.exit(1)
    finally:
        await selector.close()


@cli.command()
@click.argument('input_file', type=click.Path(exists=True))
@click.option('--kind', type=click.Choice(['product', 'research']), default='product',
              help='Which validator to apply')
def validate(input_file: str, kind: str):
    """
    Validate product or market research data.
    Input: JSON file containing a single object.
    """
    try:
        data = json.loads(Path(input_file).read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Invalid JSON:[/bold red] {e}")
        sys.exit(1)

    if not isinstance(data, dict):
        console.print("[bold red]Invalid input:[/bold red] expected a JSON object")
        sys.exit(1)

    settings = get_settings()
    validator = ValidationService(
        confidence_threshold=settings.manual_review_confidence_threshold,
        warning_limit=settings.manual_review_warning_limit,
    )
    if kind == 'product':
        result = validator.validate_product_data(data)
        review = validator.needs_manual_review(result, result.cleaned_data.get("ai_confidence"))
    else:
        result = validator.validate_market_research_data(data)
        review = False

    status = "[green]Valid[/green]" if result.is_valid else "[red]Invalid[/red]"
    console.print(f"Result: {status}")
    for error in result.errors:
        console.print(f"[red]✗ {error}[/red]")
    for warning in result.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")
    if review:
        console.print("[yellow]Requires manual review[/yellow]")
    console.print_json(json.dumps(result.cleaned_data, default=str))

    if not result.is_valid:
        sys.exit(1)


@cli.command()
def validate_setup():
    """Check API keys and which market research path will be used."""
    console.print("[bold]Validating Setup...[/bold]")

    try:
        settings: Settings = get_settings()
    except Exception as e:
        console.print(f"[bold red]Configuration Error:[/bold red] {e}")
        sys.exit(1)

    credentials = settings.check_marketplace_credentials()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")

    if settings.has_ai_provider:
        table.add_row("Anthropic API Key", "[green]Pass[/green]", settings.claude_model)
    else:
        table.add_row("Anthropic API Key", "[yellow]Missing[/yellow]", "AI fallback unavailable")

    for key in credentials.available:
        table.add_row(key, "[green]Pass[/green]", "configured")
    for key in credentials.missing:
        table.add_row(key, "[yellow]Missing[/yellow]", "-")

    if credentials.has_real_credentials:
        path = "[green]real marketplace APIs[/green]"
    elif settings.has_ai_provider:
        path = "[yellow]AI-estimated data[/yellow]"
    else:
        path = "[red]none[/red]"
    table.add_row("Research Path", "[blue]Info[/blue]", path)
    table.add_row("Environment", "[blue]Info[/blue]", settings.app_env)

    console.print(table)

    if credentials.recommendations:
        console.print("\n[bold]Recommendations:[/bold]")
        for recommendation in credentials.recommendations:
            console.print(f"  • {recommendation}")

    if not credentials.has_real_credentials and not settings.has_ai_provider:
        console.print("\n[red]No market research path is configured. Add ANTHROPIC_API_KEY or a marketplace key.[/red]")
        sys.exit(1)


if __name__ == "__main__":
    cli()
