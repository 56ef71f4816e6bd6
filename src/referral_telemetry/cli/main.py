"""Main CLI entry point for the reftrack command."""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from ..automation.milestones import MilestoneEngine
from ..automation.scheduler import ManualScheduler
from ..automation.webhooks import WebhookDelivery, WebhookDispatcher
from ..core.config import SettingsManager, TrackerSettings
from ..referrals.links import LinkRewriter
from ..referrals.models import ReferralState
from ..referrals.persistence import AttributionPersistence
from ..referrals.resolver import ReferralResolver
from ..storage.stores import JSONFileStore

console = Console()

DEFAULT_STATE_DIR = Path.home() / ".reftrack" / "state"


def get_settings(config_path: Optional[str] = None) -> TrackerSettings:
    """Settings from the JSON file, or the environment when there is none."""
    path = Path(config_path) if config_path else None
    return SettingsManager(path).settings


def get_stores(state_dir: Optional[str] = None) -> Tuple[JSONFileStore, JSONFileStore]:
    """Primary (structured) and fallback (cookie-like) stores in the state directory."""
    root = Path(state_dir) if state_dir else DEFAULT_STATE_DIR
    return JSONFileStore(root / "storage.json"), JSONFileStore(root / "cookies.json")


def resolve_url(url: str, settings: TrackerSettings, state_dir: Optional[str]) -> ReferralState:
    primary, fallback = get_stores(state_dir)
    persistence = AttributionPersistence.build(
        settings.referral, primary, fallback, page_owner=settings.page_owner
    )
    resolver = ReferralResolver(settings.referral, persistence, page_owner=settings.page_owner)
    return resolver.resolve(url)


def drain(scheduler: ManualScheduler):
    """Run scheduled retries in real time until none are left."""
    while True:
        delay = scheduler.next_delay()
        if delay is None:
            break
        time.sleep(delay)
        scheduler.advance(delay)


@click.group()
@click.version_option(version="1.0.0", prog_name="reftrack")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Referral attribution and visitor telemetry.

    \b
    Quick Start:
      reftrack resolve "https://alex.example/?ref=bob"     # Who gets credit
      reftrack rewrite page.html --url "...?ref=bob"        # Stamp signup links
      reftrack milestones --visitors 120                    # Fire milestone webhooks
      reftrack config                                       # Show settings
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("url")
@click.option("--state-dir", help="Directory holding persisted visitor state")
@click.option("--config", "config_path", help="Settings file")
def resolve(url: str, state_dir: Optional[str], config_path: Optional[str]):
    """Resolve attribution for a landing URL."""
    settings = get_settings(config_path)
    state = resolve_url(url, settings, state_dir)

    utm_lines = "\n".join(
        f"  {name}: {escape(value)}" for name, value in state.utm.to_dict().items() if value
    ) or "  [dim]none[/dim]"

    console.print(Panel.fit(
        f"[bold]Referrer:[/bold] [cyan]{escape(str(state.referrer))}[/cyan]\n"
        f"[bold]Invite code:[/bold] [cyan]{escape(str(state.invite_code))}[/cyan]\n"
        f"[bold]Source:[/bold] {state.source.value}\n"
        f"[bold]UTM:[/bold]\n{utm_lines}",
        title="Attribution"
    ))


@cli.command()
@click.argument("html_file", type=click.Path(exists=True))
@click.option("--url", required=True, help="Landing URL the page was opened with")
@click.option("--output", "-o", type=click.Path(), help="Write the rewritten page here")
@click.option("--state-dir", help="Directory holding persisted visitor state")
@click.option("--config", "config_path", help="Settings file")
def rewrite(html_file: str, url: str, output: Optional[str], state_dir: Optional[str],
            config_path: Optional[str]):
    """Stamp attribution onto the registration links of an HTML page."""
    settings = get_settings(config_path)
    state = resolve_url(url, settings, state_dir)

    rewriter = LinkRewriter(
        settings.referral.registration_urls,
        click_handler_marker=settings.referral.click_handler_marker,
        base_url=url,
    )
    html = rewriter.rewrite_html(Path(html_file).read_text(encoding="utf-8"), state)

    if output:
        Path(output).write_text(html, encoding="utf-8")
        console.print(f"[green]✓ Rewrote links for {state.referrer}/{state.invite_code} -> {escape(output)}[/green]")
    else:
        click.echo(html)


def live_scheduler() -> ManualScheduler:
    """Virtual-time scheduler anchored to the real wall clock, drained with ``drain``."""
    return ManualScheduler(wall_clock=datetime.now(timezone.utc))


def delivery_status(delivery: Optional[WebhookDelivery]) -> str:
    if delivery is None:
        return "[dim]skipped[/dim]"
    if delivery.delivered:
        return f"[green]{delivery.status_code}[/green]"
    return f"[red]{delivery.error} ({delivery.attempts} attempt(s))[/red]"


# ============================================================================
# WEBHOOKS & MILESTONES
# ============================================================================

@cli.command()
@click.option("--visitors", type=int, default=0, help="Current visitor count")
@click.option("--registrations", type=int, default=0, help="Current registration count")
@click.option("--referrals", type=int, default=0, help="Current referral count")
@click.option("--state-dir", help="Directory holding persisted visitor state")
@click.option("--config", "config_path", help="Settings file")
def milestones(visitors: int, registrations: int, referrals: int, state_dir: Optional[str],
               config_path: Optional[str]):
    """Run one milestone check against the given counts."""
    settings = get_settings(config_path)
    primary, _ = get_stores(state_dir)
    scheduler = live_scheduler()

    dispatcher = WebhookDispatcher(settings.webhooks, page_owner=settings.page_owner, scheduler=scheduler)
    engine = MilestoneEngine(
        settings.milestones,
        primary,
        key=settings.referral.milestones_key,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )

    fired = engine.check({
        "total_visitors": visitors,
        "registrations": registrations,
        "referrals": referrals,
    })
    drain(scheduler)

    if not fired:
        console.print("[dim]No new milestones[/dim]")
        return

    deliveries = {}
    for delivery in dispatcher.delivery_history:
        milestone = delivery.payload["milestone"]
        deliveries[f"{milestone['type']}_{milestone['value']}"] = delivery

    table = Table(title="Milestones Achieved")
    table.add_column("Milestone", style="cyan")
    table.add_column("Achieved At")
    table.add_column("Webhook")

    achieved = engine.achieved
    for key in fired:
        table.add_row(key, achieved[key], delivery_status(deliveries.get(key)))

    console.print(table)


@cli.command("webhook-test")
@click.option("--type", "test_type", default="test", help="Value for the payload's type field")
@click.option("--config", "config_path", help="Settings file")
def webhook_test(test_type: str, config_path: Optional[str]):
    """Send a test webhook to the custom endpoint."""
    settings = get_settings(config_path)
    scheduler = live_scheduler()
    dispatcher = WebhookDispatcher(settings.webhooks, page_owner=settings.page_owner, scheduler=scheduler)

    delivery = dispatcher.send_test(test_type)
    drain(scheduler)

    if delivery is None:
        console.print("[yellow]Skipped: webhooks disabled or custom endpoint not configured[/yellow]")
        return
    console.print(f"Test webhook -> {delivery.endpoint}: {delivery_status(delivery)}")


# ============================================================================
# SETTINGS & STATE
# ============================================================================

@cli.command()
@click.option("--config", "config_path", help="Settings file")
def config(config_path: Optional[str]):
    """Show the effective settings, flagging unresolved placeholders."""
    manager = SettingsManager(Path(config_path) if config_path else None)
    settings = manager.settings
    unresolved = set(manager.unresolved_placeholders())

    table = Table(title="Tracker Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    def add_rows(prefix: str, value):
        if isinstance(value, dict):
            for k, v in value.items():
                add_rows(f"{prefix}.{k}" if prefix else str(k), v)
            return
        shown = escape(str(value))
        if prefix.endswith(("api_key", "secret", "csrf_token")) and value and prefix not in unresolved:
            shown = "********"
        if prefix in unresolved:
            shown = f"[yellow]{shown} (unresolved)[/yellow]"
        table.add_row(prefix, shown)

    add_rows("", settings.to_dict())
    console.print(table)

    if not settings.backend.endpoint.configured:
        console.print("[yellow]Analytics endpoint not configured; events will be skipped[/yellow]")


@cli.command()
@click.option("--state-dir", help="Directory holding persisted visitor state")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def reset(state_dir: Optional[str], yes: bool):
    """Clear visitor id, attribution and milestone markers."""
    if not yes and not Confirm.ask("Clear all persisted tracking state?"):
        console.print("[dim]Nothing cleared[/dim]")
        return

    for store in get_stores(state_dir):
        store.clear()
    console.print("[green]✓ Tracking state cleared[/green]")


if __name__ == "__main__":
    cli()
