"""Per-VM migration job state.

A MigrationJob tracks one MigrationRequest through the ordered migration
steps. Steps only move forward, one at a time; ``failed`` is terminal and
reachable from anywhere. Nothing here is persisted: the job lives for the
batch run and is kept afterwards for reporting.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from vc2vc.config import MigrationRequest
from vc2vc.exceptions import InvalidStepTransition

if TYPE_CHECKING:
    from vc2vc.vmware.endpoint import EndpointBinding
    from vc2vc.vmware.platform import AsyncTaskHandle


class MigrationStep(str, Enum):
    VALIDATED = "validated"
    RELOCATING_SOURCE = "relocating_source"
    REGISTERING = "registering"
    RECONFIGURING = "reconfiguring"
    POWERING_ON = "powering_on"
    VERIFYING_CONNECTIVITY = "verifying_connectivity"
    RELOCATING_FINAL = "relocating_final"
    UPGRADING_TOOLS = "upgrading_tools"
    DONE = "done"
    FAILED = "failed"


STEP_ORDER: list[MigrationStep] = [
    MigrationStep.VALIDATED,
    MigrationStep.RELOCATING_SOURCE,
    MigrationStep.REGISTERING,
    MigrationStep.RECONFIGURING,
    MigrationStep.POWERING_ON,
    MigrationStep.VERIFYING_CONNECTIVITY,
    MigrationStep.RELOCATING_FINAL,
    MigrationStep.UPGRADING_TOOLS,
    MigrationStep.DONE,
]


class JobOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class MigrationJob:
    """Runtime state for one VM migration.

    Attributes:
        request: The batch row this job executes
        step: Current step; None until preflight validation passes
        completed_steps: Steps that reported success, in order
        vm_id: Managed object id of the VM on the source endpoint
        dest_vm_id: Managed object id after registration on the destination
        active_task: The single task currently awaited for this job, if any
    """
    request: MigrationRequest
    source: Optional["EndpointBinding"] = None
    destination: Optional["EndpointBinding"] = None

    step: Optional[MigrationStep] = None
    completed_steps: list[str] = field(default_factory=list)
    vm_id: str = ""
    dest_vm_id: str = ""
    outcome: JobOutcome = JobOutcome.PENDING
    error: Optional[str] = None
    error_step: Optional[str] = None
    active_task: Optional["AsyncTaskHandle"] = None

    started_at: float = 0
    completed_at: float = 0
    step_timings: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def vm_name(self) -> str:
        return self.request.vm_name

    @property
    def is_terminal(self) -> bool:
        return self.step in (MigrationStep.DONE, MigrationStep.FAILED)

    @property
    def duration_s(self) -> float:
        if self.completed_at and self.started_at:
            return self.completed_at - self.started_at
        if self.started_at:
            return time.time() - self.started_at
        return 0

    @property
    def duration_str(self) -> str:
        d = self.duration_s
        if d < 60:
            return f"{d:.0f}s"
        return f"{d / 60:.1f}m"

    def advance(self, step: MigrationStep) -> None:
        """Move to the immediate successor of the current step."""
        if self.step == MigrationStep.FAILED:
            raise InvalidStepTransition(f"{self.vm_name}: job already failed at {self.error_step}")
        if self.active_task is not None:
            raise InvalidStepTransition(
                f"{self.vm_name}: cannot leave {self.step.value} with task {self.active_task.key} outstanding"
            )

        expected = STEP_ORDER[0] if self.step is None else self._successor(self.step)
        if step != expected:
            current = self.step.value if self.step else "none"
            raise InvalidStepTransition(
                f"{self.vm_name}: cannot move from {current} to {step.value} (next is {expected.value})"
            )

        if self.step is not None:
            self.completed_steps.append(self.step.value)
        self.step = step
        if step == MigrationStep.DONE:
            self.completed_steps.append(step.value)
            self.outcome = JobOutcome.SUCCEEDED
            self.completed_at = time.time()

    def fail(self, error: BaseException | str) -> None:
        """Record the failure at the current step. Terminal."""
        self.error_step = self.step.value if self.step else "preflight"
        self.error = str(error)
        self.step = MigrationStep.FAILED
        self.outcome = JobOutcome.FAILED
        self.active_task = None
        self.completed_at = time.time()

    def skip(self, reason: str) -> None:
        self.outcome = JobOutcome.SKIPPED
        self.error = reason

    def begin_task(self, handle: "AsyncTaskHandle") -> None:
        if self.active_task is not None:
            raise InvalidStepTransition(
                f"{self.vm_name}: task {self.active_task.key} still outstanding, refusing {handle.key}"
            )
        self.active_task = handle

    def end_task(self) -> None:
        self.active_task = None

    def has_completed(self, step: MigrationStep) -> bool:
        return step.value in self.completed_steps

    def to_dict(self) -> dict[str, Any]:
        return {
            "vm_name": self.vm_name,
            "request": self.request.model_dump(),
            "step": self.step.value if self.step else None,
            "outcome": self.outcome.value,
            "vm_id": self.vm_id,
            "dest_vm_id": self.dest_vm_id,
            "error": self.error,
            "error_step": self.error_step,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "completed_steps": self.completed_steps,
            "step_timings": self.step_timings,
            "warnings": self.warnings,
        }

    @staticmethod
    def _successor(step: MigrationStep) -> MigrationStep:
        idx = STEP_ORDER.index(step)
        if idx + 1 >= len(STEP_ORDER):
            raise InvalidStepTransition(f"No step after {step.value}")
        return STEP_ORDER[idx + 1]
