"""Batch orchestrator for sequential VM migrations.

Execution model:
  - One VM at a time, in plan order, on a single thread
  - Per VM: preflight validation, then the migration state machine
  - VM N+1 starts only once VM N is done or failed

Failure policy (``migration.halt_on_error``):
  - true (default): the first failing VM stops the batch; the remaining VMs
    are marked skipped and BatchAborted is raised
  - false: failures are recorded per VM and the batch carries on
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from rich.markup import escape

from vc2vc.config import AppConfig, MigrationRequest
from vc2vc.exceptions import BatchAborted
from vc2vc.pipeline.migration import MigrationStateMachine
from vc2vc.pipeline.progress import BatchProgressCallback
from vc2vc.pipeline.state import JobOutcome, MigrationJob
from vc2vc.pipeline.task_monitor import TaskMonitor
from vc2vc.pipeline.validator import PreflightValidator
from vc2vc.utils.logging import get_logger
from vc2vc.vmware.endpoint import EndpointBinding

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  Data Models
# ═══════════════════════════════════════════════════════════════════

class BatchStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"         # Aborted, or every VM failed
    PARTIAL = "partial"       # Some VMs failed, others succeeded


@dataclass
class BatchState:
    """In-memory state for the whole batch run."""
    batch_id: str
    status: BatchStatus = BatchStatus.PENDING
    started_at: float = 0
    completed_at: float = 0
    jobs: list[MigrationJob] = field(default_factory=list)

    @property
    def succeeded(self) -> list[MigrationJob]:
        return [j for j in self.jobs if j.outcome == JobOutcome.SUCCEEDED]

    @property
    def failed(self) -> list[MigrationJob]:
        return [j for j in self.jobs if j.outcome == JobOutcome.FAILED]

    @property
    def skipped(self) -> list[MigrationJob]:
        return [j for j in self.jobs if j.outcome == JobOutcome.SKIPPED]

    @property
    def duration_s(self) -> float:
        if self.completed_at and self.started_at:
            return self.completed_at - self.started_at
        if self.started_at:
            return time.time() - self.started_at
        return 0

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "jobs": [j.to_dict() for j in self.jobs],
        }


# ═══════════════════════════════════════════════════════════════════
#  Batch Orchestrator
# ═══════════════════════════════════════════════════════════════════

class BatchOrchestrator:
    """Runs preflight and the migration state machine for each request in turn.

    Usage:
        with open_endpoints(config) as (source, destination):
            orchestrator = BatchOrchestrator(config, source, destination)
            state = orchestrator.run(plan.migrations)
    """

    def __init__(
        self,
        config: AppConfig,
        source: EndpointBinding,
        destination: EndpointBinding,
        validator: Optional[PreflightValidator] = None,
        state_machine: Optional[MigrationStateMachine] = None,
        progress: Optional[BatchProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.source = source
        self.destination = destination
        self.progress = progress or BatchProgressCallback()
        self.validator = validator or PreflightValidator()
        self.state_machine = state_machine or MigrationStateMachine(
            config, monitor=TaskMonitor(sleep=sleep), sleep=sleep, progress=self.progress,
        )
        self.state: Optional[BatchState] = None

    @property
    def halt_on_error(self) -> bool:
        return self.config.migration.halt_on_error

    def run(self, requests: list[MigrationRequest]) -> BatchState:
        """Migrate every request in order.

        Returns:
            BatchState with one job per request

        Raises:
            BatchAborted: A VM failed while halt_on_error is set. The partial
                state stays available as ``self.state``.
        """
        self.state = BatchState(
            batch_id=str(uuid.uuid4())[:8],
            status=BatchStatus.RUNNING,
            started_at=time.time(),
        )
        for request in requests:
            self.state.jobs.append(MigrationJob(
                request=request,
                source=self.source,
                destination=self.destination,
            ))

        total = len(self.state.jobs)
        logger.info(f"[bold]Starting batch {self.state.batch_id}[/bold]: {total} VM(s), "
                    f"{self.source.label} → {self.destination.label}")
        self.progress.on_batch_start(self.state)

        for index, job in enumerate(self.state.jobs):
            self.progress.on_job_start(job, index, total)
            self._run_job(job, index, total)

            if job.outcome == JobOutcome.SUCCEEDED:
                self.progress.on_job_complete(job)
                continue

            self.progress.on_job_failed(job, job.error or "unknown error")
            if self.halt_on_error:
                for remaining in self.state.jobs[index + 1:]:
                    remaining.skip(f"batch halted after '{job.vm_name}' failed")
                self._finish(BatchStatus.FAILED)
                logger.error(f"[red]Batch {self.state.batch_id} halted: '{job.vm_name}' failed at "
                             f"{job.error_step}: {escape(job.error or '')}[/red]")
                raise BatchAborted(job.vm_name, job.error_step or "", job.error or "")

        if not self.state.failed:
            status = BatchStatus.COMPLETE
        elif self.state.succeeded:
            status = BatchStatus.PARTIAL
        else:
            status = BatchStatus.FAILED
        self._finish(status)

        logger.info(f"Batch {self.state.batch_id} {status.value}: "
                    f"{len(self.state.succeeded)} succeeded, {len(self.state.failed)} failed "
                    f"in {self.state.duration_s / 60:.1f} min")
        return self.state

    def _run_job(self, job: MigrationJob, index: int, total: int) -> None:
        logger.info(f"[bold]VM {index + 1}/{total}: {job.vm_name}[/bold]")
        job.started_at = time.time()

        try:
            validated = self.validator.validate(job.request, self.source, self.destination)
        except Exception as e:
            job.fail(e)
            logger.error(f"[red]✗ {job.vm_name}: preflight failed: {escape(str(e))}[/red]")
            return

        self.state_machine.run(job, validated)

    def _finish(self, status: BatchStatus) -> None:
        self.state.status = status
        self.state.completed_at = time.time()
        self.progress.on_batch_complete(self.state)


# ═══════════════════════════════════════════════════════════════════
#  Post-Migration Report Generator
# ═══════════════════════════════════════════════════════════════════

def generate_report(state: BatchState, output_path: Path | None = None) -> str:
    """Generate a Markdown migration report.

    Args:
        state: Finished BatchState
        output_path: Optional path to write the report file

    Returns:
        Report as Markdown string
    """
    duration_min = state.duration_s / 60
    started = datetime.fromtimestamp(state.started_at).strftime('%Y-%m-%d %H:%M') if state.started_at else "—"
    lines = [
        f"# Migration Report — Batch `{state.batch_id}`",
        "",
        f"**Date:** {started}",
        f"**Duration:** {duration_min:.0f} min",
        f"**Status:** {state.status.value.upper()}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total VMs | {len(state.jobs)} |",
        f"| Succeeded | {len(state.succeeded)} |",
        f"| Failed | {len(state.failed)} |",
        f"| Skipped | {len(state.skipped)} |",
        "",
    ]

    if state.succeeded:
        lines += [
            "## Successful Migrations",
            "",
            "| VM | Target IP | Network | Final Datastore | Duration |",
            "|------|------|------|------|------|",
        ]
        for job in state.succeeded:
            req = job.request
            lines.append(
                f"| {job.vm_name} | {req.target_ip} | {req.dest_network} | "
                f"{req.dest_final_store} | {job.duration_str} |"
            )
        lines.append("")

    if state.failed:
        lines += [
            "## Failed Migrations",
            "",
            "| VM | Failed Step | Completed Steps | Error |",
            "|------|------|------|------|",
        ]
        for job in state.failed:
            error_short = (job.error or "unknown")[:120].replace("|", "/")
            lines.append(
                f"| {job.vm_name} | {job.error_step} | {', '.join(job.completed_steps) or '—'} | {error_short} |"
            )
        lines.append("")

    if state.skipped:
        lines += ["## Skipped", ""]
        lines += [f"- {job.vm_name}: {job.error}" for job in state.skipped]
        lines.append("")

    warned = [j for j in state.jobs if j.warnings]
    if warned:
        lines += ["## Warnings", ""]
        for job in warned:
            lines += [f"- {job.vm_name}: {w}" for w in job.warnings]
        lines.append("")

    if state.succeeded:
        lines += [
            "## Step Timing Analysis",
            "",
            "Average duration per step (successful VMs):",
            "",
            "| Step | Avg Duration | Min | Max |",
            "|-------|------|------|------|",
        ]
        all_steps = []
        for job in state.succeeded:
            for step in job.step_timings:
                if step not in all_steps:
                    all_steps.append(step)

        for step in all_steps:
            timings = [j.step_timings[step] for j in state.succeeded if step in j.step_timings]
            avg_t = sum(timings) / len(timings)
            lines.append(f"| {step} | {avg_t:.0f}s | {min(timings):.0f}s | {max(timings):.0f}s |")
        lines.append("")

    report = "\n".join(lines)

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(report)
        logger.info(f"Report saved to {output_path}")

    return report
