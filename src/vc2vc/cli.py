"""CLI for vc2vc: preflight validation and batch migration between two vCenters.

Commands:
  vc2vc validate        Check every VM of a plan against both vCenters
  vc2vc migrate-batch   Migrate the VMs of a plan, one after the other
"""

from __future__ import annotations

import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from vc2vc import __version__
from vc2vc.config import AppConfig, BatchMigrationPlan, EndpointConfig
from vc2vc.utils.logging import set_log_level

console = Console()


def load_config(config_path: str | None) -> AppConfig:
    """Load configuration from file or environment."""
    try:
        if config_path:
            return AppConfig.from_yaml(config_path)
        for default in ["vc2vc.yaml", "config.yaml", "/etc/vc2vc/config.yaml"]:
            if Path(default).exists():
                return AppConfig.from_yaml(default)
        return AppConfig.from_env_and_args()
    except (ValidationError, ValueError, OSError) as e:
        console.print(f"[red]Error loading config: {escape(str(e))}[/red]")
        console.print("Provide a --config file or set SRC_VCENTER_* / DST_VCENTER_* variables.")
        sys.exit(1)


def load_plan(plan_path: str) -> BatchMigrationPlan:
    try:
        return BatchMigrationPlan.from_yaml(plan_path)
    except (ValidationError, TypeError) as e:
        console.print(f"[red]Invalid plan {plan_path}: {escape(str(e))}[/red]")
        sys.exit(1)


def prompt_password(role: str, cfg: EndpointConfig) -> str:
    return click.prompt(f"Password for {cfg.username}@{cfg.vcenter} ({role})", hide_input=True)


def connection_failed(error: ConnectionError) -> None:
    console.print(f"[red]Cannot reach vCenter: {escape(str(error))}[/red]")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="vc2vc")
@click.option("--log-level", default="INFO",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Log verbosity")
def main(log_level):
    """Move powered-off VMs from one vCenter cluster to another.

    Each VM is relocated onto a datastore mounted by both sides, registered
    on the destination cluster, attached to its new network, powered on,
    checked for reachability, then moved to its final datastore.

    Quick start:
      1. vc2vc validate --plan plan.yaml --config vc2vc.yaml
      2. vc2vc migrate-batch --plan plan.yaml --config vc2vc.yaml --report report.md
    """
    set_log_level(log_level)


# ═══════════════════════════════════════════════════════════════════
#  VALIDATE: read-only preflight for every VM of a plan
# ═══════════════════════════════════════════════════════════════════

@main.command()
@click.option("--plan", "plan_path", required=True, type=click.Path(exists=True),
              help="Batch migration plan YAML")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def validate(plan_path, config_path):
    """Run the preflight checks for each VM without changing anything."""
    config = load_config(config_path)
    plan = load_plan(plan_path)

    from vc2vc.pipeline.dashboard import print_validation_reports
    from vc2vc.pipeline.validator import PreflightValidator
    from vc2vc.vmware.endpoint import open_endpoints

    validator = PreflightValidator()
    try:
        with open_endpoints(config, password_for=prompt_password) as (source, destination):
            reports = [validator.check(req, source, destination) for req in plan.migrations]
    except ConnectionError as e:
        connection_failed(e)

    print_validation_reports(reports, console)

    if not all(r.passed for r in reports):
        sys.exit(1)


# ═══════════════════════════════════════════════════════════════════
#  MIGRATE-BATCH: run the plan
# ═══════════════════════════════════════════════════════════════════

@main.command("migrate-batch")
@click.option("--plan", "plan_path", required=True, type=click.Path(exists=True),
              help="Batch migration plan YAML")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--continue-on-error", is_flag=True, default=False,
              help="Keep going after a VM fails instead of halting the batch")
@click.option("--report", "report_path", type=click.Path(), help="Path for post-migration report")
@click.option("--dry-run", is_flag=True, default=False, help="List the steps without connecting")
def migrate_batch(plan_path, config_path, continue_on_error, report_path, dry_run):
    """Migrate every VM of a plan, in order, one at a time."""
    config = load_config(config_path)
    plan = load_plan(plan_path)
    if continue_on_error:
        config.migration.halt_on_error = False

    from vc2vc.exceptions import BatchAborted
    from vc2vc.pipeline.batch_orchestrator import BatchOrchestrator, generate_report
    from vc2vc.pipeline.dashboard import RichDashboard, print_plan_summary
    from vc2vc.pipeline.migration import MigrationStateMachine
    from vc2vc.vmware.endpoint import open_endpoints

    print_plan_summary(plan, console)

    if dry_run:
        console.print("\n[yellow]DRY RUN — No changes will be made[/yellow]")
        machine = MigrationStateMachine(config)
        for req in plan.migrations:
            console.print(f"\n[bold cyan]{req.vm_name}[/bold cyan]")
            machine.dry_run(req)
        return

    dashboard = RichDashboard(console)
    aborted = None
    try:
        with open_endpoints(config, password_for=prompt_password) as (source, destination):
            orchestrator = BatchOrchestrator(config, source, destination, progress=dashboard)
            try:
                orchestrator.run(plan.migrations)
            except BatchAborted as e:
                aborted = e
    except ConnectionError as e:
        connection_failed(e)
    state = orchestrator.state

    if report_path:
        generate_report(state, Path(report_path))
        console.print(f"\n[dim]Report saved to {report_path}[/dim]")

    if aborted is not None:
        console.print(f"\n[bold red]{escape(str(aborted))}[/bold red]")
        sys.exit(1)
    if state.failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
