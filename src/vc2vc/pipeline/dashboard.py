"""Rich console output for batch migrations.

  - Step-by-step progress lines as each VM moves through the pipeline
  - Final summary tables (succeeded, failed, skipped)
  - Plan and preflight tables shown before anything runs
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from vc2vc.pipeline.progress import BatchProgressCallback

if TYPE_CHECKING:
    from vc2vc.config import BatchMigrationPlan
    from vc2vc.pipeline.batch_orchestrator import BatchState
    from vc2vc.pipeline.validator import ValidationReport


# ═══════════════════════════════════════════════════════════════════
#  Step labels
# ═══════════════════════════════════════════════════════════════════

STEP_LABELS = {
    "validated": "Preflight",
    "relocating_source": "Relocate → staging",
    "registering": "Register",
    "reconfiguring": "Network",
    "powering_on": "Power on",
    "verifying_connectivity": "Verify",
    "relocating_final": "Relocate → final",
    "upgrading_tools": "Tools upgrade",
    "done": "Done",
}


# ═══════════════════════════════════════════════════════════════════
#  Dashboard Implementation
# ═══════════════════════════════════════════════════════════════════

class RichDashboard(BatchProgressCallback):
    """Prints batch progress to the terminal.

    Usage:
        dashboard = RichDashboard(console)
        orchestrator = BatchOrchestrator(config, source, destination, progress=dashboard)
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def on_batch_start(self, state) -> None:
        self.console.print()
        self.console.print(Panel.fit(
            f"[bold]Batch Migration[/bold]: {state.batch_id}\n"
            f"VMs: {len(state.jobs)}",
            border_style="cyan",
        ))

    def on_job_start(self, job, index: int, total: int) -> None:
        self.console.print(f"\n[bold cyan]▶ [{index + 1}/{total}] {job.vm_name}[/bold cyan]")

    def on_step_complete(self, job, step: str, duration_s: float) -> None:
        label = STEP_LABELS.get(step, step)
        self.console.print(f"  [green]✓[/green] {job.vm_name}: {label} ({duration_s:.0f}s)")

    def on_job_complete(self, job) -> None:
        self.console.print(
            f"  [bold green]✅ {job.vm_name}[/bold green] complete "
            f"({job.duration_str}) → {job.request.target_ip}"
        )

    def on_job_failed(self, job, error: str) -> None:
        label = STEP_LABELS.get(job.error_step, job.error_step or "—")
        self.console.print(
            f"  [bold red]❌ {job.vm_name}[/bold red] failed at "
            f"[red]{label}[/red]: {escape(error[:100])}"
        )

    def on_batch_complete(self, state) -> None:
        self.console.print()
        print_batch_summary(state, self.console)


# ═══════════════════════════════════════════════════════════════════
#  Tables
# ═══════════════════════════════════════════════════════════════════

def print_batch_summary(state: "BatchState", console: Console | None = None) -> None:
    """Print the final batch summary with statistics."""
    console = console or Console()
    duration_min = state.duration_s / 60

    table = Table(title="Migration Summary", border_style="cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Total VMs", str(len(state.jobs)))
    table.add_row("Succeeded", f"[green]{len(state.succeeded)}[/green]")
    table.add_row("Failed", f"[red]{len(state.failed)}[/red]" if state.failed else "0")
    table.add_row("Skipped", str(len(state.skipped)))
    table.add_row("Duration", f"{duration_min:.1f} min")
    table.add_row("Status", state.status.value)
    table.add_row("Batch ID", state.batch_id)

    console.print(table)

    if state.succeeded:
        detail = Table(title="Completed Migrations", border_style="green")
        detail.add_column("VM", style="cyan")
        detail.add_column("Target IP")
        detail.add_column("Network")
        detail.add_column("Datastore")
        detail.add_column("Duration", justify="right")

        for job in state.succeeded:
            req = job.request
            detail.add_row(job.vm_name, req.target_ip, req.dest_network, req.dest_final_store, job.duration_str)
        console.print(detail)

    if state.failed:
        fail_table = Table(title="Failed Migrations", border_style="red")
        fail_table.add_column("VM", style="cyan")
        fail_table.add_column("Failed Step", style="red")
        fail_table.add_column("Error")

        for job in state.failed:
            fail_table.add_row(job.vm_name, job.error_step or "—", escape((job.error or "unknown")[:80]))
        console.print(fail_table)

    for job in state.skipped:
        console.print(f"[dim]⏭  {job.vm_name}: {job.error}[/dim]")

    for job in state.jobs:
        for w in job.warnings:
            console.print(f"[yellow]⚠  {w}[/yellow]")


def print_plan_summary(plan: "BatchMigrationPlan", console: Console | None = None) -> None:
    """Display a batch plan before execution."""
    console = console or Console()

    table = Table(title="Batch Migration Plan", border_style="cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("VM", style="cyan", no_wrap=True)
    table.add_column("Source Staging")
    table.add_column("Dest Staging")
    table.add_column("Network", style="green")
    table.add_column("Final Datastore")
    table.add_column("Target IP")

    for i, m in enumerate(plan.migrations, 1):
        table.add_row(
            str(i), m.vm_name, m.source_staging_store, m.dest_staging_store,
            m.dest_network, m.dest_final_store, m.target_ip,
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(plan.migrations)} VMs[/dim]")


def print_validation_reports(reports: list["ValidationReport"], console: Console | None = None) -> None:
    """Display preflight results, one row per check."""
    console = console or Console()

    table = Table(title="Preflight Validation", border_style="cyan")
    table.add_column("VM", style="cyan", no_wrap=True)
    table.add_column("Check")
    table.add_column("Result", justify="center")
    table.add_column("Detail")

    for report in reports:
        for i, check in enumerate(report.checks):
            result = "[green]PASS[/green]" if check.passed else "[red]FAIL[/red]"
            table.add_row(report.vm_name if i == 0 else "", check.name, result, escape(check.message))

    console.print(table)
    passed = sum(1 for r in reports if r.passed)
    style = "green" if passed == len(reports) else "red"
    console.print(f"\n[{style}]{passed}/{len(reports)} VM(s) ready to migrate[/{style}]")
