"""Command-line interface for trafficlight."""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from trafficlight.config import find_config_file, load_config, merge_cli_options
from trafficlight.models import (
    BlockActivated,
    BlockDeactivated,
    ClassifyAndRecord,
    Command,
    CountsUpdated,
    EvaluateNavigation,
    GetActivityLog,
    GetBlockStatus,
    GetViolationCounts,
    OutboundEvent,
    RedirectRequested,
    ReconfigurePolicy,
    ReconfigureRules,
    ResetBlock,
    ResetSettings,
    StatusChanged,
    Tier,
)
from trafficlight.policies.rule_matcher import rule_set_to_dicts
from trafficlight.router import EventRouter, create_router
from trafficlight.storage import StateStore

console = Console()

T = TypeVar("T")

TIER_STYLES = {
    "green": "green",
    "yellow": "yellow",
    "red": "red bold",
}


def _tier_text(tier: str | None) -> str:
    if not tier:
        return "[dim]-[/dim]"
    style = TIER_STYLES.get(tier, "white")
    return f"[{style}]{tier.upper()}[/{style}]"


def print_event(event: OutboundEvent) -> None:
    """Render an outbound event on the console."""
    if isinstance(event, StatusChanged):
        console.print(f"  [dim]context {event.context_id}[/dim] {_tier_text(event.tier.value)} {event.reason}")
    elif isinstance(event, BlockActivated):
        until = event.block_end_time.strftime("%H:%M:%S")
        console.print(f"[red bold]{event.title}[/red bold] - {event.message} (until {until} UTC)")
    elif isinstance(event, BlockDeactivated):
        console.print(f"[green]{event.title}[/green] ({event.reason})")
    elif isinstance(event, RedirectRequested):
        console.print(f"[yellow]  -> redirect context {event.context_id} to block page[/yellow]")
    elif isinstance(event, CountsUpdated):
        counts = ", ".join(f"{k}={v}" for k, v in event.counts.items())
        console.print(f"  [dim]counts: {counts}[/dim]")


async def _with_router(
    ctx: click.Context,
    action: Callable[[EventRouter], Awaitable[T]],
    show_events: bool = True,
) -> T:
    """Open state, restore the engine, run an action, then shut down cleanly."""
    cfg = ctx.obj["config"]
    with StateStore(cfg.db_path) as store:
        router = create_router(cfg, store)
        if show_events:
            router.subscribe(print_event)
        assert router.engine is not None
        await router.engine.start()
        try:
            return await action(router)
        finally:
            await router.engine.shutdown()


def _dispatch(ctx: click.Context, command: Command, show_events: bool = True) -> dict[str, Any]:
    async def action(router: EventRouter) -> dict[str, Any]:
        return await router.dispatch(command)

    return asyncio.run(_with_router(ctx, action, show_events))


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to config file (default: searches standard locations)",
)
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the DuckDB state file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config: Path | None, db: Path | None, verbose: bool) -> None:
    """trafficlight - AI usage monitor with traffic-light status and cool-down blocks."""
    ctx.ensure_object(dict)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    cfg = load_config(config)
    merge_cli_options(cfg, db=db)
    ctx.obj["config"] = cfg
    ctx.obj["verbose"] = verbose

    config_path = config or find_config_file()
    if config_path:
        ctx.obj["config_path"] = config_path


@main.command()
@click.argument("url")
@click.option("--context", "context_id", default="cli", help="Context (tab) identifier")
@click.pass_context
def evaluate(ctx: click.Context, url: str, context_id: str) -> None:
    """Evaluate a navigation to URL."""
    response = _dispatch(ctx, EvaluateNavigation(context_id=context_id, url=url))

    if response["tier"] is None:
        if response["is_blocked"]:
            console.print("[red]Blocked[/red]")
        return
    console.print(f"{_tier_text(response['tier'])} {response['reason']}")


@main.command()
@click.argument("text")
@click.option("--context", "context_id", default="cli", help="Context (tab) identifier")
@click.option("--platform", default="", help="Platform the message was typed into")
@click.option("--dry-run", is_flag=True, help="Classify only, do not record")
@click.pass_context
def classify(ctx: click.Context, text: str, context_id: str, platform: str, dry_run: bool) -> None:
    """Classify a chat message and record it in the rolling window."""
    if dry_run:
        from trafficlight.policies.message_classifier import MessageClassifier

        classifier = MessageClassifier.from_config(ctx.obj["config"].keywords())
        tier, keyword = classifier.match(text)
        detail = f"keyword '{keyword}'" if keyword else "no keyword (default)"
        console.print(f"{_tier_text(tier.value)} [dim]{detail}[/dim]")
        return

    response = _dispatch(
        ctx,
        ClassifyAndRecord(context_id=context_id, text=text, platform=platform),
    )
    console.print(f"{_tier_text(response['tier'])}")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show block status."""
    response = _dispatch(ctx, GetBlockStatus(), show_events=False)

    table = Table(title="Block Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    if response["is_blocked"]:
        minutes, seconds = divmod(response["remaining_seconds"], 60)
        table.add_row("Blocked", "[red bold]yes[/red bold]")
        table.add_row("Ends", str(response["block_end_time"]))
        table.add_row("Remaining", f"{minutes}m {seconds:02d}s")
    else:
        table.add_row("Blocked", "[green]no[/green]")
    table.add_row(
        "Consecutive violations",
        f"{response['consecutive_violation_count']}/{response['threshold']}",
    )
    table.add_row("Blocking enabled", "yes" if response["enabled"] else "no")

    console.print(table)


@main.command()
@click.pass_context
def counts(ctx: click.Context) -> None:
    """Show message counts in the rolling 30-day window."""
    response = _dispatch(ctx, GetViolationCounts(), show_events=False)

    table = Table(title="Messages (last 30 days)")
    table.add_column("Tier")
    table.add_column("Count", justify="right")
    for tier in Tier:
        table.add_row(_tier_text(tier.value), str(response["counts"].get(tier.value, 0)))
    console.print(table)


@main.command()
@click.option("--limit", type=int, default=50)
@click.pass_context
def log(ctx: click.Context, limit: int) -> None:
    """Show recent activity."""
    response = _dispatch(ctx, GetActivityLog(limit=limit), show_events=False)
    entries = response["log"]

    if not entries:
        console.print("[green]No activity recorded[/green]")
        return

    table = Table(title="Recent Activity")
    table.add_column("Time", style="dim")
    table.add_column("Context")
    table.add_column("Tier")
    table.add_column("URL")
    table.add_column("Reason")

    for entry in entries:
        timestamp = datetime.fromisoformat(entry["timestamp"])
        table.add_row(
            timestamp.strftime("%Y-%m-%d %H:%M"),
            entry["context_id"][:10],
            _tier_text(entry["tier"]),
            entry["url"][:40],
            entry["reason"][:60],
        )

    console.print(table)


@main.command()
@click.pass_context
def reset(ctx: click.Context) -> None:
    """End any active block and clear violation counters."""
    _dispatch(ctx, ResetBlock())
    console.print("[green]Block reset[/green]")


@main.group()
def config() -> None:
    """Show or change policy and rules."""


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show effective policy config and rules."""

    async def action(router: EventRouter) -> dict[str, Any]:
        assert router.engine is not None
        return {
            "policy": router.engine.config.to_dict(),
            "rules": rule_set_to_dicts(router.engine.rules),
        }

    data = asyncio.run(_with_router(ctx, action, show_events=False))

    if "config_path" in ctx.obj:
        console.print(f"[dim]Config: {ctx.obj['config_path']}[/dim]")

    policy = data["policy"]
    console.print("[cyan]Policy[/cyan]")
    console.print(f"  Enabled: {policy['enabled']}")
    console.print(f"  Violation threshold: {policy['violation_threshold']}")
    console.print(f"  Block duration: {policy['block_duration_minutes']} min")

    for category, rules in data["rules"].items():
        table = Table(title=category)
        table.add_column("Name")
        table.add_column("Pattern")
        table.add_column("Tier")
        for rule in rules:
            table.add_row(rule["name"], rule["pattern"], _tier_text(rule["tier"]))
        console.print(table)


@config.command("set-policy")
@click.option("--enabled/--disabled", default=None, help="Enable or disable blocking")
@click.option("--threshold", type=int, default=None, help="Violations before a block")
@click.option("--duration", type=int, default=None, help="Block duration in minutes")
@click.pass_context
def config_set_policy(
    ctx: click.Context,
    enabled: bool | None,
    threshold: int | None,
    duration: int | None,
) -> None:
    """Change the persisted policy config."""
    values = {
        "enabled": enabled,
        "violation_threshold": threshold,
        "block_duration_minutes": duration,
    }
    values = {k: v for k, v in values.items() if v is not None}
    if not values:
        console.print("[yellow]Nothing to change[/yellow]")
        return

    try:
        response = _dispatch(ctx, ReconfigurePolicy(values=values), show_events=False)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]Policy updated: {response['config']}[/green]")


@config.command("set-rules")
@click.argument("rules_file", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def config_set_rules(ctx: click.Context, rules_file: Path) -> None:
    """Replace rule overrides from a JSON file.

    The file maps categories to rule lists, e.g.
    {"ai_websites": [{"name": "ChatGPT", "pattern": "*.openai.com/*"}]}
    """
    try:
        overrides = json.loads(rules_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error reading rules: {e}[/red]")
        sys.exit(1)

    if not isinstance(overrides, dict):
        console.print("[red]Error: rules file must contain a JSON object[/red]")
        sys.exit(1)

    response = _dispatch(ctx, ReconfigureRules(overrides=overrides), show_events=False)
    total = sum(len(rules) for rules in response["rules"].values())
    console.print(f"[green]Loaded {total} rules[/green]")


@config.command("reset")
@click.confirmation_option(prompt="Forget all stored counters, rules and policy changes?")
@click.pass_context
def config_reset(ctx: click.Context) -> None:
    """Clear stored state and return to the configured defaults."""
    response = _dispatch(ctx, ResetSettings())
    console.print(f"[green]Settings reset to defaults: {response['config']}[/green]")


@main.command()
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None, help="Write to file")
@click.pass_context
def export(ctx: click.Context, output: Path | None) -> None:
    """Export stored state and settings as JSON."""

    async def action(router: EventRouter) -> dict[str, Any]:
        assert router.engine is not None and router.engine.store is not None
        return await router.engine.store.get_all()

    data = asyncio.run(_with_router(ctx, action, show_events=False))
    text = json.dumps(data, indent=2)

    if output:
        output.write_text(text)
        console.print(f"[green]Exported to {output}[/green]")
    else:
        click.echo(text)


@main.command()
@click.option("--port", type=int, default=None, help="Port to listen on (default: 8765)")
@click.option("--bind", type=str, default=None, help="Address to bind to (default: 127.0.0.1)")
@click.option("--allow", type=str, multiple=True, help="Allowed source IPs (can specify multiple)")
@click.pass_context
def listen(
    ctx: click.Context,
    port: int | None,
    bind: str | None,
    allow: tuple[str, ...],
) -> None:
    """Listen for commands from browser collaborators.

    Accepts newline-delimited JSON commands over TCP, e.g.

        {"type": "EvaluateNavigation", "context_id": "7", "url": "https://chat.openai.com/"}

    Send {"type": "Subscribe"} to receive outbound events on the same connection.
    """
    from trafficlight.collectors.command_receiver import CommandReceiver, ReceiverConfig

    cfg = merge_cli_options(ctx.obj["config"], port=port, bind=bind, allow=allow)

    if not ctx.obj["verbose"]:
        logging.getLogger().setLevel(logging.INFO)

    if "config_path" in ctx.obj:
        console.print(f"[dim]Config: {ctx.obj['config_path']}[/dim]")

    receiver_config = ReceiverConfig(
        port=cfg.receiver_port,
        bind_address=cfg.receiver_bind_address,
        allowed_ips=cfg.receiver_allowed_ips,
    )

    async def run() -> None:
        store = StateStore(cfg.db_path)
        store.connect()

        router = create_router(cfg, store)
        router.subscribe(print_event)

        slack_notifier = None
        if cfg.slack_enabled and cfg.slack_webhook_url:
            from trafficlight.notifiers.slack import SlackConfig, SlackNotifier

            slack_notifier = SlackNotifier(SlackConfig(
                webhook_url=cfg.slack_webhook_url,
                notify_on_red=cfg.notify_on_red,
                notify_on_yellow=cfg.notify_on_yellow,
            ))
            router.subscribe(slack_notifier)

        assert router.engine is not None
        await router.engine.start()

        receiver = CommandReceiver(receiver_config, router)
        console.print(
            f"[cyan]Listening on {receiver_config.bind_address}:{receiver_config.port}[/cyan]"
        )
        try:
            await receiver.run_forever()
        finally:
            await router.engine.shutdown()
            if slack_notifier:
                await slack_notifier.close()
            store.close()
            stats = receiver.stats
            console.print(
                f"[dim]{stats['connections']} connections, "
                f"{stats['commands']} commands, {stats['errors']} errors[/dim]"
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
