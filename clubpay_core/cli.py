"""Club fee billing CLI - Main entry point."""

import asyncio
import json
import sys
from datetime import date, datetime
from typing import Callable, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .billing.base import ChargePeriod
from .billing.engine import BillingEngine, create_billing_engine
from .config import Settings, get_settings
from .core.logging import setup_logging

console = Console()

EngineFactory = Callable[[Settings], BillingEngine]


def _parse_date(ctx, param, value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.BadParameter("expected YYYY-MM-DD")


def _parse_period(ctx, param, value: Optional[str]) -> Optional[ChargePeriod]:
    if value is None:
        return None
    try:
        return ChargePeriod.parse(value)
    except ValueError:
        raise click.BadParameter("expected YYYY-MM")


async def _with_engine(ctx: click.Context, action):
    """Build an engine, run ``action`` against it and shut it down."""
    engine = ctx.obj["engine_factory"](ctx.obj["settings"])
    try:
        if engine.db is not None and engine.db.is_sqlite:
            await engine.db.create_all()
        return await action(engine)
    finally:
        await engine.stop()


@click.group()
@click.version_option(version=__version__, prog_name="clubpay")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table",
              help="Output format")
@click.option("--log-level", envvar="CLUBPAY_LOG_LEVEL", default=None, help="Log level")
@click.pass_context
def cli(ctx: click.Context, output: str, log_level: Optional[str]):
    """Club fee billing - scheduled charges, subscriptions and reconciliation.

    \b
    Examples:
      clubpay run-billing --date 2026-03-05
      clubpay sync-subscriptions
      clubpay serve --port 8090
    """
    ctx.ensure_object(dict)
    settings = ctx.obj.get("settings") or get_settings()
    setup_logging(log_level or settings.log_level, settings.log_format, settings.service_name)

    ctx.obj["settings"] = settings
    ctx.obj.setdefault("engine_factory", create_billing_engine)
    ctx.obj["output"] = output


@cli.command("run-billing")
@click.option("--date", "run_date", callback=_parse_date, help="Billing date (YYYY-MM-DD), default today")
@click.option("--budget", type=float, default=None, help="Stop starting new charges after N seconds")
@click.pass_context
def run_billing(ctx: click.Context, run_date: Optional[date], budget: Optional[float]):
    """Charge every member whose club bills today."""
    try:
        summary = asyncio.run(
            _with_engine(ctx, lambda e: e.run_billing(today=run_date, budget_seconds=budget))
        )
    except Exception as e:
        console.print(f"[red]✗[/red] Billing run failed: {e}")
        sys.exit(1)

    if ctx.obj["output"] == "json":
        click.echo(json.dumps(summary.to_dict(), indent=2))
        return

    table = Table(title=f"Billing run {summary.run_date.isoformat()} ({summary.period})")
    table.add_column("Tenant", style="cyan")
    table.add_column("Outcome")
    table.add_column("Charged", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Duplicate", justify="right")
    table.add_column("Deferred", justify="right")
    table.add_column("Reason")

    for tenant in summary.to_dict()["tenants"]:
        counts = tenant["counts"]
        table.add_row(
            tenant["tenant_id"],
            tenant["outcome"],
            str(counts["charged"]),
            str(counts["failed"]),
            str(counts["skipped"]),
            str(counts["duplicate"]),
            str(counts["deferred"]),
            tenant["reason"] or "",
        )

    console.print(table)
    console.print(f"[green]✓[/green] {summary.succeeded} charged, {summary.failed} failed")


@cli.command("sync-subscriptions")
@click.option("--date", "run_date", callback=_parse_date, help="Date to sync for (YYYY-MM-DD), default today")
@click.pass_context
def sync_subscriptions(ctx: click.Context, run_date: Optional[date]):
    """Pause or resume standing subscriptions for the current month."""
    try:
        summary = asyncio.run(_with_engine(ctx, lambda e: e.sync_subscriptions(today=run_date)))
    except Exception as e:
        console.print(f"[red]✗[/red] Subscription sync failed: {e}")
        sys.exit(1)

    if ctx.obj["output"] == "json":
        click.echo(json.dumps(summary.to_dict(), indent=2))
        return

    table = Table(title=f"Subscription sync {summary.run_date.isoformat()}")
    table.add_column("Tenant", style="cyan")
    table.add_column("Member")
    table.add_column("Subscription")
    table.add_column("Outcome")
    table.add_column("Reason")
    for result in summary.results:
        table.add_row(
            result.tenant_id,
            result.member_id,
            result.subscription_id or "",
            result.outcome.value,
            result.reason or "",
        )
    console.print(table)


@cli.command("transactions")
@click.option("--tenant", "tenant_id", default=None, help="Filter by tenant id")
@click.option("--period", callback=_parse_period, help="Filter by period (YYYY-MM)")
@click.pass_context
def transactions(ctx: click.Context, tenant_id: Optional[str], period: Optional[ChargePeriod]):
    """List ledger entries."""
    try:
        entries = asyncio.run(
            _with_engine(ctx, lambda e: e.list_transactions(tenant_id=tenant_id, period=period))
        )
    except Exception as e:
        console.print(f"[red]✗[/red] Error: {e}")
        sys.exit(1)

    if ctx.obj["output"] == "json":
        click.echo(json.dumps([
            {
                "id": t.id,
                "tenant_id": t.tenant_id,
                "member_id": t.member_id,
                "period": str(t.period),
                "amount_minor_units": t.amount_minor_units,
                "commission_minor_units": t.commission_minor_units,
                "currency": t.currency,
                "status": t.status.value,
                "source": t.source.value,
            }
            for t in entries
        ], indent=2))
        return

    table = Table(title="Transactions")
    table.add_column("ID", style="cyan")
    table.add_column("Tenant")
    table.add_column("Member")
    table.add_column("Period")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    for t in entries:
        table.add_row(
            t.id,
            t.tenant_id,
            t.member_id,
            str(t.period),
            f"{t.amount_minor_units / 100:.2f} {t.currency.upper()}",
            t.status.value,
        )
    console.print(table)


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create database tables."""
    async def create(engine: BillingEngine):
        if engine.db is None:
            return False
        await engine.db.create_all()
        return True

    if asyncio.run(_with_engine(ctx, create)):
        console.print("[green]✓[/green] Database tables created")
    else:
        console.print("Engine has no database; nothing to do")


@cli.command("scheduler")
@click.pass_context
def scheduler(ctx: click.Context):
    """Run the billing and subscription jobs on their cron schedules."""
    settings: Settings = ctx.obj["settings"]

    async def run_forever(engine: BillingEngine):
        await engine.scheduler.start()
        console.print(
            f"Scheduler running: billing '{settings.billing_schedule}', "
            f"subscriptions '{settings.subscription_schedule}'"
        )
        await asyncio.Event().wait()

    try:
        asyncio.run(_with_engine(ctx, run_forever))
    except KeyboardInterrupt:
        console.print("Scheduler stopped")


@cli.command("serve")
@click.option("--host", default=None, help="Bind host")
@click.option("--port", type=int, default=None, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]):
    """Serve the webhook and enrollment API."""
    import uvicorn

    from .api.app import create_app

    settings: Settings = ctx.obj["settings"]
    app = create_app(ctx.obj["engine_factory"](settings))
    uvicorn.run(
        app,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
