"""Tenant provisioner CLI -- Typer-based operator interface.

Lets an operator run the provisioning workflow by hand: create the record
store tables, provision or deprovision a tenant, change its plan, inspect
its latest job or this month's usage, and purge tenants past their
retention window.  Human-readable output goes to *stderr* via Rich;
``--json`` writes machine-readable results to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console

from cli.display import (
    display_deprovision_report,
    display_job_status,
    display_plan_change,
    display_provisioning_result,
    display_usage,
)

T = TypeVar("T")

app = typer.Typer(
    name="provisioner",
    help="Tenant provisioner - provision, inspect, and tear down tenant environments.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False

# Exit codes.
_EXIT_FAILED = 1
_EXIT_CONFIG = 3


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings() -> Any:
    from pydantic import ValidationError

    from provisioner.config import load_settings
    from provisioner.telemetry.log_config import configure_logging

    try:
        settings = load_settings()
    except ValidationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=_EXIT_CONFIG) from exc
    configure_logging(settings)
    return settings


def _build_orchestrator(settings: Any) -> Any:
    """Wire the production orchestrator, exiting cleanly on missing config."""
    from provisioner.orchestrator import ProvisioningOrchestrator

    try:
        return ProvisioningOrchestrator.from_settings(settings)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_EXIT_CONFIG) from exc


def _build_records(settings: Any) -> Any:
    """Wire the record-store operations; no provider credentials are needed."""
    from provisioner.records import ProvisioningRecords

    return ProvisioningRecords.from_settings(settings)


def _run(operation: Callable[[Any], Awaitable[T]], *, store_only: bool = False) -> T:
    """Build an orchestrator (or just the record store), run *operation*, and close it."""
    settings = _load_settings()
    target = _build_records(settings) if store_only else _build_orchestrator(settings)

    async def _main() -> T:
        try:
            return await operation(target)
        finally:
            await target.close()

    return asyncio.run(_main())


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command(name="init-db")
def init_db() -> None:
    """Create the record store tables if they do not exist."""
    from provisioner.state.database import get_engine
    from provisioner.state.sqlite_adapter import create_local_tables

    settings = _load_settings()
    engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)

    async def _main() -> None:
        try:
            await create_local_tables(engine)
        finally:
            await engine.dispose()

    asyncio.run(_main())
    console.print("[green]Record store ready.[/green]")


@app.command()
def provision(
    customer: str = typer.Option(..., "--customer", help="Billing customer id, e.g. cus_123."),
    email: str = typer.Option(..., "--email", help="Customer contact e-mail."),
    price: str = typer.Option(..., "--price", help="Billing price id of the purchased plan."),
    subscription: str | None = typer.Option(None, "--subscription", help="Billing subscription id."),
) -> None:
    """Provision a tenant as if a checkout had just completed."""
    from provisioner.errors import ProvisioningError
    from provisioner.models.events import BillingEvent

    event = BillingEvent(
        billing_customer_id=customer,
        billing_subscription_id=subscription,
        plan_price_id=price,
        customer_email=email,
    )
    try:
        result = _run(lambda orchestrator: orchestrator.provision(event))
    except ProvisioningError as exc:
        if _json_output:
            _emit_json(
                {
                    "status": "failed",
                    "job_id": exc.job_id,
                    "reason": exc.reason.value,
                    "unreleased_handles": exc.unreleased_handles,
                }
            )
        else:
            console.print(f"[red]Provisioning failed ({exc.reason.value}) for job {exc.job_id}[/red]")
            for handle in exc.unreleased_handles:
                console.print(f"[red]  unreleased {handle['kind']} {handle['resource_id']}[/red]")
        raise typer.Exit(code=_EXIT_FAILED) from exc

    if _json_output:
        _emit_json(result.model_dump(mode="json"))
    else:
        display_provisioning_result(console, result)


@app.command()
def deprovision(
    customer: str = typer.Argument(..., help="Billing customer id."),
) -> None:
    """Tear down a customer's tenant (safe to re-run)."""
    from provisioner.errors import ProvisioningError

    try:
        report = _run(lambda orchestrator: orchestrator.deprovision(customer))
    except ProvisioningError as exc:
        console.print(f"[red]Deprovisioning failed ({exc.reason.value})[/red]")
        raise typer.Exit(code=_EXIT_FAILED) from exc
    if _json_output:
        _emit_json({**report.model_dump(mode="json"), "complete": report.complete})
    else:
        display_deprovision_report(console, report)
    if not report.complete:
        raise typer.Exit(code=_EXIT_FAILED)


@app.command(name="change-plan")
def change_plan(
    customer: str = typer.Argument(..., help="Billing customer id."),
    price: str = typer.Option(..., "--price", help="Billing price id of the new plan."),
) -> None:
    """Move an active tenant to another plan and redeploy it."""
    from provisioner.errors import ProvisioningError

    try:
        change = _run(lambda orchestrator: orchestrator.change_plan(customer, price))
    except LookupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_EXIT_FAILED) from exc
    except ProvisioningError as exc:
        console.print(f"[red]Plan change failed ({exc.reason.value})[/red]")
        raise typer.Exit(code=_EXIT_FAILED) from exc

    if _json_output:
        _emit_json(change.model_dump(mode="json") if change is not None else {"status": "unchanged"})
    else:
        display_plan_change(console, change)


@app.command()
def status(
    customer: str = typer.Argument(..., help="Billing customer id."),
) -> None:
    """Show the customer's most recent provisioning job."""
    job = _run(lambda records: records.get_status(customer), store_only=True)
    if job is None:
        console.print(f"[yellow]No provisioning jobs for {customer}.[/yellow]")
        raise typer.Exit(code=_EXIT_FAILED)
    if _json_output:
        _emit_json(job.model_dump(mode="json"))
    else:
        display_job_status(console, job)


@app.command()
def purge() -> None:
    """Permanently delete tenants whose retention window has ended."""
    purged = _run(lambda records: records.purge_expired(), store_only=True)
    if _json_output:
        _emit_json({"purged": purged})
    else:
        console.print(f"Purged {len(purged)} tenant(s).")
        for workspace_id in purged:
            console.print(f"  {workspace_id}")


@app.command()
def usage(
    customer: str = typer.Argument(..., help="Billing customer id."),
) -> None:
    """Show an active tenant's usage for the current month."""
    from provisioner.errors import ProvisioningError

    try:
        report = _run(lambda orchestrator: orchestrator.get_usage(customer))
    except LookupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=_EXIT_FAILED) from exc
    except ProvisioningError as exc:
        console.print(f"[red]Usage lookup failed ({exc.reason.value})[/red]")
        raise typer.Exit(code=_EXIT_FAILED) from exc

    if _json_output:
        _emit_json(
            {
                **report.model_dump(mode="json"),
                "messages_sent": report.messages_sent,
                "api_calls": report.api_calls,
                "tokens_used": report.tokens_used,
            }
        )
    else:
        display_usage(console, report)
