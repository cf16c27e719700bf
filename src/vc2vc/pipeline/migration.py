"""Per-VM migration state machine.

Drives one validated VM from the source cluster to the destination cluster
through the staging datastore shared by both:

    validated → relocating_source → registering → reconfiguring → powering_on
      → verifying_connectivity → relocating_final → upgrading_tools → done

Any error moves the job to ``failed`` at the step where it happened. Nothing
is retried and nothing already done is undone.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from rich.markup import escape

from vc2vc.config import AppConfig, MigrationRequest
from vc2vc.exceptions import ConnectivityCheckFailed, GuestNotReady, PlatformOperationError, ResourceNotFound
from vc2vc.pipeline.progress import BatchProgressCallback
from vc2vc.pipeline.state import MigrationJob, MigrationStep
from vc2vc.pipeline.task_monitor import PollMode, TaskMonitor, locate_mode, long_mode, short_mode
from vc2vc.pipeline.validator import ValidatedJob, check_capacity
from vc2vc.utils.logging import get_logger
from vc2vc.vmware.endpoint import EndpointBinding
from vc2vc.vmware.platform import AsyncTaskHandle, GuestState, TaskKind, TaskStatus, ToolsStatus

logger = get_logger(__name__)


@dataclass
class StepContext:
    """Objects resolved along the way for one run."""
    job: MigrationJob
    validated: ValidatedJob
    dest_vm: Any = None


class MigrationStateMachine:
    """Runs the ordered migration steps for one VM at a time.

    Each step is a ``_step_<name>`` method. Steps that submit a task hold it
    as the job's single outstanding task until TaskMonitor returns.
    """

    STEPS = [
        MigrationStep.RELOCATING_SOURCE,
        MigrationStep.REGISTERING,
        MigrationStep.RECONFIGURING,
        MigrationStep.POWERING_ON,
        MigrationStep.VERIFYING_CONNECTIVITY,
        MigrationStep.RELOCATING_FINAL,
        MigrationStep.UPGRADING_TOOLS,
    ]

    def __init__(
        self,
        config: AppConfig,
        monitor: Optional[TaskMonitor] = None,
        sleep: Callable[[float], None] = time.sleep,
        progress: Optional[BatchProgressCallback] = None,
    ):
        self.config = config
        self.sleep = sleep
        self.monitor = monitor or TaskMonitor(sleep=sleep)
        self.progress = progress or BatchProgressCallback()

    def run(self, job: MigrationJob, validated: ValidatedJob) -> MigrationJob:
        """Execute every step for a job that passed preflight.

        The job is returned in ``done`` or ``failed``; errors are recorded on
        the job, not raised.
        """
        if job.is_terminal:
            logger.warning(f"{job.vm_name} is already {job.step.value}; not running it again")
            return job

        ctx = StepContext(job=job, validated=validated)
        job.vm_id = validated.vm_id
        if not job.started_at:
            job.started_at = time.time()

        try:
            if job.step is None:
                job.advance(MigrationStep.VALIDATED)
        except Exception as e:
            job.fail(e)
            return job

        for step in self.STEPS:
            try:
                job.advance(step)
                self._execute_step(step, ctx)
            except Exception as e:
                job.fail(e)
                logger.error(f"[red]✗ {job.vm_name}: step {job.error_step} failed: {escape(str(e))}[/red]")
                return job

        job.advance(MigrationStep.DONE)
        logger.info(f"[bold green]✓ {job.vm_name} migrated in {job.duration_str}[/bold green]")
        return job

    def dry_run(self, request: MigrationRequest) -> list[str]:
        """Describe what would run for a request, without touching anything."""
        lines = [
            f"relocate to source staging '{request.source_staging_store}'"
            f"{' (thin)' if self.config.migration.thin_provision_staging else ''}",
            f"register from '[{request.dest_staging_store}] {request.vm_name}' "
            f"into cluster '{self.config.destination.cluster}'",
            f"move first network adapter to '{request.dest_network}'",
            "power on",
            f"wait for guest, ping {request.target_ip}",
            f"relocate to final datastore '{request.dest_final_store}'",
            "upgrade guest tools if outdated (no reboot, not awaited)",
        ]
        for i, line in enumerate(lines, 1):
            logger.info(f"  {i}. {self.STEPS[i - 1].value}: {escape(line)}")
        return lines

    def _execute_step(self, step: MigrationStep, ctx: StepContext) -> None:
        handler = getattr(self, f"_step_{step.value}")
        job = ctx.job

        logger.info(f"[cyan]▶ {job.vm_name}: {step.value}[/cyan]")
        self.progress.on_step_start(job, step.value)
        start = time.time()

        handler(ctx)

        duration = time.time() - start
        job.step_timings[step.value] = round(duration, 1)
        self.progress.on_step_complete(job, step.value, duration)
        logger.info(f"[green]✓ {job.vm_name}: {step.value} complete[/green]")

    # ─── Step implementations ────────────────────────────────────────

    def _step_relocating_source(self, ctx: StepContext) -> None:
        """Move the VM onto the staging datastore (thin) on the source side."""
        job, validated = ctx.job, ctx.validated
        source = job.source

        # Free space may have changed since preflight
        check_capacity(source.platform, validated.source_staging, validated.used_gb)

        handle = source.platform.submit_relocate(
            validated.vm,
            validated.source_staging,
            thin=self.config.migration.thin_provision_staging,
        )
        self._await(ctx, source, handle, long_mode(self.config.polling))

    def _step_registering(self, ctx: StepContext) -> None:
        """Register the staged .vmx into the destination cluster."""
        job, validated = ctx.job, ctx.validated
        destination = job.destination
        vm_name = job.vm_name
        staging = validated.dest_staging

        vmx_path = destination.platform.locate_vmx_file(staging, vm_name)
        if not vmx_path:
            raise ResourceNotFound(
                "VMX file", f"[{staging.name}] {vm_name}/{vm_name}.vmx",
                "relocation did not leave the VM on the staging datastore",
            )
        logger.info(f"Found {escape(vmx_path)} on {destination.label}")

        handle = destination.platform.submit_register(vmx_path, validated.dest_cluster, vm_name)
        status = self._await(ctx, destination, handle, short_mode(self.config.polling))

        dest_vm = status.result if status.result is not None else destination.platform.find_vm(vm_name)
        if dest_vm is None:
            raise ResourceNotFound("VM", vm_name, f"not listed on {destination.label} after registration")
        ctx.dest_vm = dest_vm
        job.dest_vm_id = destination.platform.object_id(dest_vm)

    def _step_reconfiguring(self, ctx: StepContext) -> None:
        """Attach the first network adapter to the destination port group."""
        job = ctx.job
        destination = job.destination

        portgroup = destination.platform.find_portgroup(job.request.dest_network)
        if portgroup is None:
            raise ResourceNotFound("Network", job.request.dest_network, f"on {destination.label}")

        handle = self._submit_and_locate(
            destination, TaskKind.RECONFIGURE, job.vm_name,
            lambda: destination.platform.submit_reconfigure_network(ctx.dest_vm, portgroup),
        )
        self._await(ctx, destination, handle, short_mode(self.config.polling))

    def _step_powering_on(self, ctx: StepContext) -> None:
        job = ctx.job
        destination = job.destination

        handle = self._submit_and_locate(
            destination, TaskKind.POWER_ON, job.vm_name,
            lambda: destination.platform.submit_power_on(ctx.dest_vm),
        )
        self._await(ctx, destination, handle, short_mode(self.config.polling))

    def _step_verifying_connectivity(self, ctx: StepContext) -> None:
        """Wait for the guest OS, then probe the target IP."""
        job = ctx.job
        destination = job.destination
        verification = self.config.verification

        tools = destination.platform.tools_status(ctx.dest_vm)
        if tools == ToolsStatus.NOT_INSTALLED:
            msg = (f"Guest agent not installed on '{job.vm_name}'; "
                   f"waiting {verification.tools_grace_period:.0f}s for boot")
            logger.warning(msg)
            job.warnings.append(msg)
            self.sleep(verification.tools_grace_period)
        else:
            self._wait_for_guest(ctx)

        self._probe_connectivity(ctx)

    def _step_relocating_final(self, ctx: StepContext) -> None:
        """Move the VM off the staging datastore onto its final datastore."""
        job, validated = ctx.job, ctx.validated
        destination = job.destination

        handle = destination.platform.submit_relocate(ctx.dest_vm, validated.dest_final)
        self._await(ctx, destination, handle, long_mode(self.config.polling))

    def _step_upgrading_tools(self, ctx: StepContext) -> None:
        """Kick off a guest tools upgrade when needed. Not awaited."""
        job = ctx.job
        destination = job.destination

        tools = destination.platform.tools_status(ctx.dest_vm)
        if tools == ToolsStatus.NEEDS_UPGRADE:
            destination.platform.submit_tools_upgrade(ctx.dest_vm)
            logger.info(f"Tools upgrade submitted for '{job.vm_name}' (no reboot, not awaited)")
        elif tools == ToolsStatus.NOT_INSTALLED:
            msg = f"Guest agent not installed on '{job.vm_name}'; install it manually"
            logger.warning(msg)
            job.warnings.append(msg)
        else:
            logger.debug(f"Tools on '{job.vm_name}' are current")

    # ─── Helpers ─────────────────────────────────────────────────────

    def _await(
        self,
        ctx: StepContext,
        endpoint: EndpointBinding,
        handle: AsyncTaskHandle,
        mode: PollMode,
    ) -> TaskStatus:
        job = ctx.job
        step = job.step.value

        def report(h: AsyncTaskHandle, percent: int) -> None:
            logger.info(f"  {job.vm_name}: {h.kind or step} {percent}%")
            self.progress.on_task_progress(job, step, percent)

        job.begin_task(handle)
        try:
            return self.monitor.await_handle(endpoint, handle, mode, on_progress=report)
        finally:
            job.end_task()

    def _submit_and_locate(
        self,
        endpoint: EndpointBinding,
        kind: str,
        entity_name: str,
        submit: Callable[[], Optional[AsyncTaskHandle]],
    ) -> AsyncTaskHandle:
        """Submit an operation; find its task by entity name if no handle comes back.

        Tasks already listed before the submit are excluded from the search.
        When that list cannot be read, the search falls back to tasks started
        after the submit.
        """
        known = frozenset()
        since = None
        try:
            known = self.monitor.known_task_keys(endpoint, kind, entity_name)
        except PlatformOperationError as e:
            logger.warning(f"Could not list recent tasks on {endpoint.label}: {escape(str(e))}")
            since = datetime.now(timezone.utc)

        handle = submit()
        if handle is not None:
            return handle

        logger.debug(f"No handle for {kind} on '{entity_name}'; searching recent tasks")
        return self.monitor.locate_by_entity(
            endpoint, kind, entity_name,
            locate_mode(self.config.polling),
            since=since,
            exclude=known,
        )

    def _wait_for_guest(self, ctx: StepContext) -> None:
        job = ctx.job
        destination = job.destination
        verification = self.config.verification
        timeout = verification.guest_ready_timeout

        waited = 0.0
        while destination.platform.guest_state(ctx.dest_vm) != GuestState.RUNNING:
            if timeout is not None and waited >= timeout:
                raise GuestNotReady(job.vm_name, waited)
            self.sleep(verification.guest_poll_interval)
            waited += verification.guest_poll_interval
        logger.info(f"Guest OS of '{job.vm_name}' is running")

    def _probe_connectivity(self, ctx: StepContext) -> None:
        job = ctx.job
        destination = job.destination
        verification = self.config.verification
        ip = job.request.target_ip

        for attempt in range(1, verification.ping_attempts + 1):
            if destination.platform.pingable(ip):
                logger.info(f"{job.vm_name} answers on {ip}")
                return
            logger.warning(f"{job.vm_name}: no reply from {ip} "
                           f"(attempt {attempt}/{verification.ping_attempts})")
            if attempt < verification.ping_attempts:
                self.sleep(verification.ping_interval)

        raise ConnectivityCheckFailed(ip, verification.ping_attempts)
