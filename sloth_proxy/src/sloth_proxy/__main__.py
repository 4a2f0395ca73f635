"""
Command-line interface for Sloth Proxy.

Usage:
    python -m sloth_proxy serve                     # Start the HTTP server
    python -m sloth_proxy snapshot URL              # Print rendered HTML
    python -m sloth_proxy extract URL --list .item  # Extract items as JSON
    python -m sloth_proxy rss SITE                  # Print a site's RSS feed
    python -m sloth_proxy sites                     # List registered sites
    python -m sloth_proxy cron                      # Build every active site
    python -m sloth_proxy config                    # Show current configuration
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import get_settings
from .errors import ProxyError
from .extractor import SelectorSchema
from .logging_conf import setup_logging, get_logger
from .pipeline import build_pipeline
from .server import run_server

console = Console()
logger = get_logger(__name__)


def _pipeline():
    return build_pipeline(get_settings())


def _run(coro):
    """Run a pipeline coroutine, turning typed failures into a CLI abort."""
    try:
        return asyncio.run(coro)
    except ProxyError as e:
        console.print(f"[bold red]{e.code}: {e.detail}[/bold red]")
        raise click.Abort()


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug: bool):
    """Sloth Proxy: render pages, extract articles, publish RSS."""
    level = "DEBUG" if debug else get_settings().log_level
    setup_logging(level=level)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", "-p", type=int, help="Port to bind to")
@click.option("--with-scheduler", is_flag=True, help="Enable built-in batch scheduler")
def serve(host: str, port: int, with_scheduler: bool):
    """Start the HTTP server."""
    console.print(Panel("[bold blue]Starting Server[/bold blue]"))

    settings = get_settings()
    port = port or settings.port

    console.print(f"Host: {host}")
    console.print(f"Port: {port}")
    console.print(f"Scheduler: {'Enabled' if with_scheduler else 'Disabled'}")
    console.print()

    run_server(host=host, port=port, with_scheduler=with_scheduler)


@cli.command()
@click.argument("url")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write HTML to a file")
def snapshot(url: str, output: Optional[str]):
    """Render URL and print (or save) its HTML."""
    html = _run(_pipeline().snapshot(url))

    if output:
        Path(output).write_text(html, encoding="utf-8")
        console.print(f"[green]Saved {len(html)} characters to {output}[/green]")
    else:
        click.echo(html)


@cli.command()
@click.argument("url")
@click.option("--list", "list_selector", required=True, help="Selector for each item root")
@click.option("--title", help="Title selector within an item")
@click.option("--link", help="Link selector within an item")
@click.option("--date", help="Date selector within an item")
@click.option("--summary", help="Summary selector within an item")
@click.option("--image", help="Image selector within an item")
def extract(url: str, list_selector: str, title, link, date, summary, image):
    """
    Extract items from URL with an ad-hoc selector schema.

    Examples:
      python -m sloth_proxy extract https://example.com/news --list article --title h2
    """
    schema = SelectorSchema(
        list=list_selector,
        title=title,
        link=link,
        date=date,
        summary=summary,
        image=image,
    )
    items = _run(_pipeline().extract(url, schema))

    click.echo(json.dumps(
        {"url": url, "count": len(items), "items": [i.to_dict() for i in items]},
        indent=2,
        ensure_ascii=False,
    ))


@cli.command()
@click.argument("site")
def rss(site: str):
    """Print the RSS feed for a registered SITE key."""
    click.echo(_run(_pipeline().build_feed(site)))


@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Show inactive sites too")
def sites(show_all: bool):
    """List registered sites."""
    pipeline = _pipeline()
    registry = pipeline.registry
    site_list = _run(registry.list_all() if show_all else registry.list_active())

    table = Table(title=f"Sites ({registry.source})")
    table.add_column("Key", style="cyan")
    table.add_column("Label")
    table.add_column("URL", style="yellow")
    table.add_column("Active", style="green")
    table.add_column("Selectors")
    table.add_column("Last Updated")

    for site in site_list:
        active = "[green]Yes[/green]" if site.active else "[red]No[/red]"
        table.add_row(
            site.site_key,
            site.label,
            site.url,
            active,
            "yes" if site.selectors else "[red]missing[/red]",
            site.last_updated.isoformat() if site.last_updated else "-",
        )

    console.print(table)
    console.print(f"\nTotal: {len(site_list)}")


@cli.command()
def cron():
    """Build every active site once and report per-site outcomes."""
    console.print(Panel("[bold yellow]Batch Build[/bold yellow]"))

    report = _run(_pipeline().run_batch())

    table = Table(title="Batch Results")
    table.add_column("Site", style="cyan")
    table.add_column("Status")
    table.add_column("Items / Error")

    for result in report.results:
        if result["ok"]:
            table.add_row(result["siteKey"], "[green]ok[/green]", str(result["count"]))
        else:
            table.add_row(
                result["siteKey"],
                "[red]error[/red]",
                f"{result['error']}: {result['detail']}",
            )

    console.print(table)
    console.print(f"\nSucceeded: {report.succeeded}/{report.total}")


@cli.command()
def config():
    """Show current configuration (excluding secrets)."""
    settings = get_settings()

    console.print(Panel("[bold blue]Current Configuration[/bold blue]"))

    console.print("\n[cyan]Renderer:[/cyan]")
    console.print(f"  wait_until:        {settings.wait_until}")
    console.print(f"  nav_timeout_ms:    {settings.nav_timeout_ms}")
    console.print(f"  render_timeout_ms: {settings.render_timeout_ms}")
    console.print(f"  settle_ms:         {settings.settle_ms}")
    console.print(f"  evasion:           {settings.evasion}")
    console.print(f"  humanize:          {settings.humanize}")
    console.print(f"  dismiss_consent:   {settings.dismiss_consent}")

    console.print("\n[cyan]Retry:[/cyan]")
    console.print(f"  render_retries:     {settings.render_retries}")
    console.print(f"  retry_min_delay_ms: {settings.retry_min_delay_ms}")
    console.print(f"  retry_max_delay_ms: {settings.retry_max_delay_ms}")

    console.print("\n[cyan]Caches:[/cyan]")
    console.print(f"  cache_ttl_ms:         {settings.cache_ttl_ms}")
    console.print(f"  cache_max:            {settings.cache_max}")
    console.print(f"  extract_cache_ttl_ms: {settings.extract_cache_ttl_ms}")
    console.print(f"  extract_cache_max:    {settings.extract_cache_max}")

    console.print("\n[cyan]Registry:[/cyan]")
    console.print(f"  remote:     {'configured' if settings.has_remote_registry else 'not configured'}")
    console.print(f"  sites_file: {settings.sites_file}")

    console.print("\n[cyan]Server:[/cyan]")
    console.print(f"  port:         {settings.port}")
    console.print(f"  rate_per_min: {settings.rate_per_min}")
    console.print(f"  allow_origin: {settings.allow_origin}")
    console.print(f"  cron_secret:  {'set' if settings.cron_secret else 'not set'}")
    console.print(f"  feed_escaping: {settings.feed_escaping}")

    console.print("\n[cyan]Scheduler:[/cyan]")
    console.print(f"  enable_scheduler: {settings.enable_scheduler}")
    console.print(f"  schedule_hours:   {settings.schedule_hours}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
