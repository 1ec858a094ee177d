"""CLI module for cdpwatch."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cdpwatch import __version__
from cdpwatch.browser.events import BaseBrowserEvent
from cdpwatch.browser.session import BrowserSession
from cdpwatch.browser.watchdogs.security_watchdog import SecurityPolicy
from cdpwatch.config import load_browser_profile
from cdpwatch.exceptions import CDPError, EventBusLaggedError
from cdpwatch.logging_config import setup_logging

console = Console()

EVENT_STYLES = {
    "TargetCrashed": "bold red",
    "NetworkTimeout": "yellow",
    "NavigationBlocked": "magenta",
    "BrowserError": "red",
    "FileDownloaded": "green",
}


@click.group()
@click.version_option(version=__version__, prog_name="cdpwatch")
def cli():
    """cdpwatch - watch a browser over the Chrome DevTools Protocol."""
    pass


@cli.command()
@click.option("--cdp-url", default=None, help="DevTools address (http://host:port or ws:// URL)")
@click.option("--allow", multiple=True, help="Allowed domain, repeatable (e.g. example.com, *.example.com)")
@click.option("--deny", multiple=True, help="Prohibited domain, repeatable")
@click.option("--block-ips/--allow-ips", default=None, help="Block navigation to IP address hosts")
@click.option("--downloads-path", type=click.Path(file_okay=False), default=None, help="Directory for downloads")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def watch(
    cdp_url: Optional[str],
    allow: tuple[str, ...],
    deny: tuple[str, ...],
    block_ips: Optional[bool],
    downloads_path: Optional[str],
    verbose: bool,
):
    """Attach the watchdogs to a running browser and stream its events.

    Runs until interrupted with Ctrl+C.

    Example:
        >>> cdpwatch watch --cdp-url http://localhost:9222 --allow example.com
    """
    setup_logging(logging.DEBUG if verbose else None)

    try:
        profile = load_browser_profile(
            cdp_url=cdp_url,
            allowed_domains=list(allow) or None,
            prohibited_domains=list(deny) or None,
            block_ip_addresses=block_ips,
            downloads_path=downloads_path,
        )
        browser_session = BrowserSession(browser_profile=profile)
    except ValidationError as e:
        raise click.UsageError(str(e)) from e

    console.print(Panel.fit(
        f"[bold blue]cdpwatch[/bold blue]\n"
        f"Endpoint: {profile.cdp_url}\n"
        f"Policy: {browser_session.security_policy.describe()}\n"
        f"Downloads: {profile.downloads_path}",
        title="Watching",
    ))

    async def execute():
        subscription = browser_session.event_bus.subscribe()
        try:
            await browser_session.start()
            while True:
                try:
                    event = await subscription.recv()
                except EventBusLaggedError as e:
                    console.print(f"[yellow]... {e.skipped} events skipped[/yellow]")
                    continue
                _print_event(event)
        finally:
            subscription.close()
            await browser_session.stop(reason="Interrupted")

    try:
        asyncio.run(execute())
    except KeyboardInterrupt:
        console.print("[blue]Stopped[/blue]")
    except CDPError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--cdp-url", default=None, help="DevTools address (http://host:port or ws:// URL)")
def targets(cdp_url: Optional[str]):
    """List the browser's targets."""
    profile = load_browser_profile(cdp_url=cdp_url)

    async def execute():
        browser_session = BrowserSession(browser_profile=profile, register_default_watchdogs=False)
        await browser_session.start()
        try:
            return await browser_session.get_targets()
        finally:
            await browser_session.stop()

    try:
        target_infos = asyncio.run(execute())
    except CDPError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    table = Table(title=f"Targets at {profile.cdp_url}")
    table.add_column("Target ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("URL", overflow="fold")
    for info in target_infos:
        table.add_row(info.target_id, info.type, info.title, info.url)
    console.print(table)


@cli.command(name="check-url")
@click.argument("url")
@click.option("--allow", multiple=True, help="Allowed domain, repeatable")
@click.option("--deny", multiple=True, help="Prohibited domain, repeatable")
@click.option("--block-ips", is_flag=True, help="Block IP address hosts")
def check_url(url: str, allow: tuple[str, ...], deny: tuple[str, ...], block_ips: bool):
    """Check a URL against a security policy without a browser.

    Exits with status 1 when the URL is blocked.

    Example:
        >>> cdpwatch check-url https://a.example.com --allow '*.example.com'
    """
    try:
        policy = SecurityPolicy(
            allowed_domains=list(allow) or None,
            prohibited_domains=list(deny) or None,
            block_ip_addresses=block_ips,
        )
    except ValidationError as e:
        raise click.UsageError("--allow and --deny cannot be combined") from e

    if policy.is_allowed(url):
        console.print(f"[green]ALLOWED[/green] {url}")
    else:
        console.print(f"[red]BLOCKED[/red] {url} ({policy.describe()})")
        sys.exit(1)


def _print_event(event: BaseBrowserEvent) -> None:
    event_type = getattr(event, "event_type", type(event).__name__)
    fields = event.model_dump(exclude={"event_id", "event_created_at", "event_type"}, exclude_none=True)
    details = " ".join(f"{key}={value}" for key, value in fields.items())
    timestamp = event.event_created_at.strftime("%H:%M:%S")
    style = EVENT_STYLES.get(event_type, "white")
    console.print(f"[dim]{timestamp}[/dim] [{style}]{event_type}[/{style}] {details}", highlight=False)


def main():
    """Main entry point for CLI.

    The CLI provides the following commands:
        - watch: Stream browser events through the watchdogs
        - targets: List the browser's targets
        - check-url: Evaluate a URL against a domain policy
    """
    cli()


if __name__ == "__main__":
    main()
