"""Main CLI entry point for boardroom."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .billing import BillingInterval
from .costs import estimate_debate_cost
from .errors import BillingError, DebateConfigError, RateLimitExceededError, UsageLimitExceededError
from .events import DebateEventType, dumps, encode_sse
from .personas import PERSONAS
from .scheduler import DebateConfig
from .selector import DebateMode
from .service import Services
from .tiers import SUBSCRIPTION_TIERS, UNLIMITED, SubscriptionTier, calculate_yearly_savings

console = Console()

T = TypeVar("T")

TIER_CHOICE = click.Choice([t.value for t in SubscriptionTier])


def _limit(value: int) -> str:
    return "Unlimited" if value == UNLIMITED else str(value)


def _run(ctx: click.Context, action: Callable[[Services], Awaitable[T]]) -> T:
    """Run ``action`` against the configured services and close them afterwards."""

    async def runner() -> T:
        services = ctx.obj.get("services")
        owned = services is None
        if owned:
            services = Services.from_settings()
        try:
            return await action(services)
        finally:
            if owned:
                await services.aclose()

    try:
        return asyncio.run(runner())
    except (DebateConfigError, BillingError, UsageLimitExceededError, RateLimitExceededError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Boardroom: AI executive debates with usage metering and billing."""
    ctx.ensure_object(dict)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@main.command()
@click.argument("topic")
@click.option("--user", "-u", "user_id", default="local", help="User id to meter against")
@click.option(
    "--tier", "-t", type=TIER_CHOICE, default=SubscriptionTier.PROFESSIONAL.value, help="Subscription tier"
)
@click.option(
    "--mode",
    "-m",
    type=click.Choice([m.value for m in DebateMode]),
    default=DebateMode.EXPERT_PANEL.value,
    help="Debate mode",
)
@click.option("--rounds", "-r", type=int, default=None, help="Number of debate rounds (default from settings)")
@click.option("--persona", "-p", "personas", multiple=True, help="Persona name (repeatable)")
@click.option("--model", default=None, help="Completion model id")
@click.option("--no-summary", is_flag=True, help="Skip the closing summary")
@click.option("--sse", is_flag=True, help="Print raw Server-Sent-Events frames")
@click.pass_context
def debate(
    ctx: click.Context,
    topic: str,
    user_id: str,
    tier: str,
    mode: str,
    rounds: int | None,
    personas: tuple[str, ...],
    model: str | None,
    no_summary: bool,
    sse: bool,
) -> None:
    """Run a debate on TOPIC and stream it to the terminal."""

    async def do_debate(services: Services) -> None:
        config = DebateConfig(
            topic=topic,
            mode=DebateMode(mode),
            selected_personas=personas or None,
            max_rounds=rounds if rounds is not None else services.settings.default_debate_rounds,
            model=model,
        )
        session = await services.start_debate(user_id, tier, config, include_summary=not no_summary)
        async for event in session.events:
            if sse:
                click.echo(encode_sse(event), nl=False)
            else:
                _render_event(event.type, event.data)

    _run(ctx, do_debate)


def _render_event(type: DebateEventType, data: dict[str, Any]) -> None:
    if type is DebateEventType.DEBATE_STARTED:
        console.print(
            Panel(
                f"[bold]{data['topic']}[/bold]\n\n"
                f"Mode: [cyan]{data['mode']}[/cyan]\n"
                f"Participants: {', '.join(data['personas'])}\n"
                f"Rounds: {data['maxRounds']}",
                title=f"Debate {data['id'][:8]}",
            )
        )
    elif type is DebateEventType.ROUND_STARTED:
        console.rule(f"Round {data['round']}")
    elif type is DebateEventType.TURN_STARTED:
        console.print(f"[dim]{data['persona']} is thinking...[/dim]")
    elif type is DebateEventType.MESSAGE_GENERATED:
        console.print(
            Panel(
                data["message"],
                title=f"{data['persona']}",
                subtitle=f"confidence {data['confidence']}% · {data['tokensUsed']} tokens",
            )
        )
    elif type is DebateEventType.ERROR:
        who = f"{data['persona']}: " if "persona" in data else ""
        console.print(f"[red]{who}{data.get('error') or data.get('message')}[/red]")
    elif type is DebateEventType.SUMMARY_READY:
        body = data["summary"]
        for heading, key in (
            ("Consensus", "keyConsensusPoints"),
            ("Disagreements", "majorDisagreements"),
            ("Recommendations", "recommendations"),
            ("Next steps", "nextSteps"),
        ):
            if data[key]:
                body += f"\n\n[bold]{heading}[/bold]\n" + "\n".join(f"• {item}" for item in data[key])
        console.print(Panel(body, title="Summary"))
    elif type is DebateEventType.STREAM_COMPLETE:
        console.print(f"[green]Debate {data['status']}[/green]")


@main.command()
def personas() -> None:
    """List the executive personas."""
    table = Table(title="Personas")
    table.add_column("Name", style="cyan")
    table.add_column("Title")
    table.add_column("Expertise")
    for persona in PERSONAS:
        table.add_row(persona.name, persona.title, ", ".join(persona.expertise))
    console.print(table)


@main.command()
def tiers() -> None:
    """Show subscription tiers and their limits."""
    table = Table(title="Subscription Tiers")
    table.add_column("Tier", style="cyan")
    table.add_column("Monthly")
    table.add_column("Yearly (savings)")
    table.add_column("Msgs/day")
    table.add_column("Msgs/month")
    table.add_column("Rounds")
    table.add_column("Personas")
    for config in SUBSCRIPTION_TIERS.values():
        limits = config.limits
        table.add_row(
            config.name,
            f"${config.pricing.monthly_price}",
            f"${config.pricing.yearly_price} (${calculate_yearly_savings(config)})",
            _limit(limits.messages_per_day),
            _limit(limits.messages_per_month),
            _limit(limits.max_debate_rounds),
            _limit(limits.max_personas_per_debate),
        )
    console.print(table)


@main.command()
@click.argument("topic")
@click.option("--tier", "-t", type=TIER_CHOICE, default=SubscriptionTier.STARTER.value)
@click.option("--model", default="mixtral-8x7b", help="Model to price against")
@click.option("--rounds", "-r", default=2, help="Number of debate rounds")
@click.option("--personas", "-p", "persona_count", default=3, help="Number of personas")
def estimate(topic: str, tier: str, model: str, rounds: int, persona_count: int) -> None:
    """Estimate tokens and cost of a debate on TOPIC."""
    result = estimate_debate_cost(tier, model, topic, rounds, persona_count)
    console.print_json(
        dumps({"estimated_tokens": result.estimated_tokens, "estimated_cost": result.estimated_cost})
    )


@main.command()
@click.argument("user_id")
@click.option("--tier", "-t", type=TIER_CHOICE, default=SubscriptionTier.STARTER.value)
@click.pass_context
def usage(ctx: click.Context, user_id: str, tier: str) -> None:
    """Show usage, limits, alerts and cost suggestions for USER_ID."""

    async def show_usage(services: Services) -> None:
        summary = await services.meter.get_usage_summary(user_id, tier, services.calculator)
        suggestions = await services.calculator.get_cost_optimization_suggestions(user_id, tier)

        daily, monthly, limits = summary["daily"], summary["monthly"], summary["limits"]
        console.print(
            Panel(
                f"Today: {daily['messages']} messages / {_limit(limits['messages_per_day'])}, "
                f"{daily['debates']} debates, ${daily['cost']}\n"
                f"This month: {monthly['messages']} messages / {_limit(limits['messages_per_month'])}, "
                f"{monthly['debates']} debates, {monthly['tokens']} tokens, ${monthly['cost']}",
                title=f"Usage: {user_id} ({tier})",
            )
        )
        for alert in summary["alerts"]:
            color = {"critical": "red", "warning": "yellow"}.get(alert["severity"], "cyan")
            console.print(f"[{color}]{alert['message']}[/{color}]")
        for suggestion in suggestions:
            console.print(f"[dim]Tip: {suggestion.suggestion} (save ~${suggestion.potential_savings})[/dim]")

    _run(ctx, show_usage)


@main.command()
@click.argument("user_id")
@click.argument("tier", type=TIER_CHOICE)
@click.option("--yearly", is_flag=True, help="Bill yearly instead of monthly")
@click.option("--trial-days", default=None, type=int, help="Length of a free trial")
@click.pass_context
def subscribe(ctx: click.Context, user_id: str, tier: str, yearly: bool, trial_days: int | None) -> None:
    """Create a subscription for USER_ID on TIER."""

    async def do_subscribe(services: Services) -> None:
        interval = BillingInterval.YEARLY if yearly else BillingInterval.MONTHLY
        subscription = await services.billing.create_subscription(user_id, tier, interval, trial_days)
        console.print_json(
            dumps(
                {
                    "id": subscription.id,
                    "status": subscription.status,
                    "period_end": subscription.current_period_end,
                }
            )
        )

    _run(ctx, do_subscribe)


@main.command("change-tier")
@click.argument("subscription_id")
@click.argument("tier", type=TIER_CHOICE)
@click.pass_context
def change_tier(ctx: click.Context, subscription_id: str, tier: str) -> None:
    """Move SUBSCRIPTION_ID to TIER with proration."""

    async def do_change(services: Services) -> None:
        subscription = await services.billing.update_subscription_tier(subscription_id, tier)
        console.print_json(dumps({"id": subscription.id, "tier": subscription.tier, "status": "updated"}))

    _run(ctx, do_change)


@main.command()
@click.argument("subscription_id")
@click.option("--now", "immediately", is_flag=True, help="Cancel immediately instead of at period end")
@click.option("--reason", default=None, help="Cancellation reason")
@click.pass_context
def cancel(ctx: click.Context, subscription_id: str, immediately: bool, reason: str | None) -> None:
    """Cancel SUBSCRIPTION_ID."""

    async def do_cancel(services: Services) -> None:
        subscription = await services.billing.cancel_subscription(
            subscription_id, cancel_at_period_end=not immediately, reason=reason
        )
        console.print_json(
            dumps(
                {
                    "id": subscription.id,
                    "status": subscription.status,
                    "cancel_at_period_end": subscription.cancel_at_period_end,
                }
            )
        )

    _run(ctx, do_cancel)


@main.command("billing-run")
@click.pass_context
def billing_run(ctx: click.Context) -> None:
    """Process subscriptions whose billing period has ended."""

    async def do_run(services: Services) -> None:
        result = await services.billing.process_billing()
        console.print(f"Processed: [green]{result.processed}[/green]  Failed: [red]{result.failed}[/red]")
        for error in result.errors:
            console.print(f"[red]{error}[/red]")

    _run(ctx, do_run)


@main.command()
@click.argument("billing_cycle_id")
@click.pass_context
def invoice(ctx: click.Context, billing_cycle_id: str) -> None:
    """Generate an invoice for BILLING_CYCLE_ID."""

    async def do_invoice(services: Services) -> None:
        inv = await services.billing.generate_invoice(billing_cycle_id)
        table = Table(title=f"Invoice {inv.id[:8]}")
        table.add_column("Item")
        table.add_column("Qty", justify="right")
        table.add_column("Amount", justify="right")
        for item in inv.items:
            table.add_row(item.description, str(item.quantity), f"{item.total_price}")
        table.add_row("[bold]Subtotal[/bold]", "", f"{inv.subtotal}")
        table.add_row("Tax", "", f"{inv.taxes}")
        table.add_row("[bold]Total[/bold]", "", f"{inv.total} {inv.currency}")
        console.print(table)

    _run(ctx, do_invoice)


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create database tables."""

    async def do_init(services: Services) -> None:
        await services.init_db()
        console.print("[green]Schema ready[/green]")

    _run(ctx, do_init)


if __name__ == "__main__":
    main()
