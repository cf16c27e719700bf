"""Progress callback protocol shared by the orchestrator and the state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vc2vc.pipeline.batch_orchestrator import BatchState
    from vc2vc.pipeline.state import MigrationJob


class BatchProgressCallback:
    """Interface for progress reporting. Every hook is optional."""

    def on_batch_start(self, state: "BatchState") -> None:
        pass

    def on_job_start(self, job: "MigrationJob", index: int, total: int) -> None:
        pass

    def on_step_start(self, job: "MigrationJob", step: str) -> None:
        pass

    def on_step_complete(self, job: "MigrationJob", step: str, duration_s: float) -> None:
        pass

    def on_task_progress(self, job: "MigrationJob", step: str, percent: int) -> None:
        pass

    def on_job_complete(self, job: "MigrationJob") -> None:
        pass

    def on_job_failed(self, job: "MigrationJob", error: str) -> None:
        pass

    def on_batch_complete(self, state: "BatchState") -> None:
        pass
