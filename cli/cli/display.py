"""Rich output formatting for the provisioner CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from provisioner.models.events import DeprovisionReport, PlanChangeResult, ProvisioningResult, UsageReport
    from provisioner.models.job import ProvisioningJob


# ---------------------------------------------------------------------------
# Stage colour mapping
# ---------------------------------------------------------------------------

_STAGE_COLOURS: dict[str, str] = {
    "HEALTHY": "green",
    "FAILED": "red",
    "ROLLING_BACK": "red",
    "RECEIVED": "dim",
}


def _coloured_stage(stage: str) -> str:
    """Return a Rich markup string with the stage colour-coded."""
    colour = _STAGE_COLOURS.get(stage, "yellow")
    return f"[{colour}]{stage}[/{colour}]"


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


def display_provisioning_result(console: Console, result: ProvisioningResult) -> None:
    """Render the outcome of a provision command.

    The API key is printed only when the result carries it, which happens
    once: on the call that created the tenant.
    """
    if result.already_provisioned:
        console.print(f"[yellow]Already provisioned:[/yellow] {result.workspace_id} at {result.access_url}")
        return
    if result.in_progress:
        console.print(f"[yellow]Provisioning already in progress:[/yellow] job {result.job_id}")
        return

    lines = [
        f"[bold]Workspace:[/bold]  {result.workspace_id}",
        f"[bold]Instance:[/bold]   {result.instance_id}",
        f"[bold]URL:[/bold]        {result.access_url}",
        f"[bold]Job:[/bold]        {result.job_id}",
    ]
    if result.api_key is not None:
        lines.append(f"[bold]API key:[/bold]    {result.api_key}")
        lines.append("[dim]Store this key now; it will not be shown again.[/dim]")
    console.print(Panel("\n".join(lines), title="Tenant Provisioned", border_style="green"))


def display_job_status(console: Console, job: ProvisioningJob) -> None:
    """Render a job's stage, handles, and failure details."""
    table = Table(title=f"Job {job.job_id}", show_header=False, expand=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Customer", job.billing_customer_id)
    table.add_row("Workspace", job.workspace_id)
    table.add_row("Plan", job.plan_name)
    table.add_row("Stage", _coloured_stage(job.stage.value))
    table.add_row("Outcome", job.outcome.value if job.outcome else "-")
    table.add_row("Compute", job.compute_instance_id or "-")
    table.add_row("Database", job.database_branch_id or "-")
    table.add_row("URL", job.access_url or "-")
    table.add_row("Key prefix", job.api_key_prefix or "-")
    table.add_row("Created", job.created_at.isoformat())
    if job.failure_reason:
        table.add_row("Failure", f"[red]{job.failure_reason}[/red]")
    console.print(table)

    if job.unreleased_handles:
        console.print("[bold red]Unreleased resources (manual cleanup required):[/bold red]")
        for handle in job.unreleased_handles:
            console.print(f"  [red]{handle.get('kind')} {handle.get('resource_id')}[/red]")


# ---------------------------------------------------------------------------
# Lifecycle changes
# ---------------------------------------------------------------------------


def display_deprovision_report(console: Console, report: DeprovisionReport) -> None:
    if report.workspace_id is None:
        console.print(f"[yellow]No tenant found for {report.billing_customer_id}.[/yellow]")
        return
    if not report.steps:
        console.print(f"[dim]{report.workspace_id} was already torn down.[/dim]")
        return

    table = Table(title=f"Deprovision {report.workspace_id}", expand=False)
    table.add_column("Step", style="bold")
    table.add_column("Result")
    for step in report.steps:
        result = "[green]ok[/green]" if step.ok else f"[red]failed ({step.detail})[/red]"
        table.add_row(step.name, result)
    console.print(table)

    if report.purge_after is not None:
        console.print(f"Records retained until {report.purge_after.isoformat()}.")
    if not report.complete:
        console.print("[red]Teardown incomplete; re-run the command to finish.[/red]")


def display_plan_change(console: Console, change: PlanChangeResult | None) -> None:
    if change is None:
        console.print("[dim]Tenant is already on that plan.[/dim]")
        return
    console.print(
        f"[green]{change.workspace_id}[/green]: {change.previous_plan} -> {change.new_plan} "
        f"(deployment {change.deployment_id})"
    )


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def display_usage(console: Console, report: UsageReport) -> None:
    """Render month-to-date totals against the plan's message limit, then one row per day."""
    limit = "unlimited" if report.message_limit < 0 else f"{report.message_limit:,}"
    console.print(
        f"[bold]{report.workspace_id}[/bold] ({report.plan_name}) since {report.period_start.isoformat()}: "
        f"{report.messages_sent:,} / {limit} messages, {report.api_calls:,} API calls, "
        f"{report.tokens_used:,} tokens"
    )
    if report.message_limit >= 0 and report.messages_sent >= report.message_limit:
        console.print("[red]Message limit reached.[/red]")
    if not report.days:
        return

    table = Table(expand=False)
    table.add_column("Day", style="bold")
    table.add_column("Messages", justify="right")
    table.add_column("API calls", justify="right")
    table.add_column("Tokens", justify="right")
    for day in report.days:
        table.add_row(day.day.isoformat(), f"{day.messages_sent:,}", f"{day.api_calls:,}", f"{day.tokens_used:,}")
    console.print(table)
