"""Asynchronous task monitoring.

Two strategies:

* ``await_handle`` polls a task we hold a handle for until it succeeds,
  fails, or exhausts its poll budget (then it is cancelled).
* ``locate_by_entity`` finds a task we were not handed a reference to, by
  scanning the endpoint's recent-task list for the operation kind and the
  target entity name.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from vc2vc.config import PollingSettings
from vc2vc.exceptions import TaskFailed, TaskNotFound, TaskTimeout
from vc2vc.utils.logging import get_logger
from vc2vc.vmware.endpoint import EndpointBinding
from vc2vc.vmware.platform import AsyncTaskHandle, TaskSnapshot, TaskState, TaskStatus

logger = get_logger(__name__)

ProgressCallback = Callable[[AsyncTaskHandle, int], None]


@dataclass(frozen=True)
class PollMode:
    """Polling cadence: seconds between polls and the max number of polls."""
    interval: float
    max_polls: int

    @property
    def budget_s(self) -> float:
        return self.interval * self.max_polls


def short_mode(settings: PollingSettings) -> PollMode:
    return PollMode(settings.short_interval, settings.short_max_polls)


def long_mode(settings: PollingSettings) -> PollMode:
    return PollMode(settings.long_interval, settings.long_max_polls)


def locate_mode(settings: PollingSettings) -> PollMode:
    return PollMode(settings.locate_interval, settings.locate_max_polls)


class TaskMonitor:
    """Polls platform tasks on the single thread of control.

    Args:
        sleep: Blocking wait used between polls (injectable for tests)
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep

    def await_handle(
        self,
        endpoint: EndpointBinding,
        handle: AsyncTaskHandle,
        mode: PollMode,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TaskStatus:
        """Poll until the task succeeds.

        Returns:
            The final TaskStatus

        Raises:
            TaskFailed: The platform reported a terminal non-success state
            TaskTimeout: Still running after ``mode.max_polls`` polls; the
                task has been asked to cancel
        """
        label = f"{handle.kind or 'task'} {handle.key}" + (f" on '{handle.entity_name}'" if handle.entity_name else "")
        last_progress = None

        for poll in range(1, mode.max_polls + 1):
            status = endpoint.platform.task_status(handle)

            if status.state == TaskState.SUCCEEDED:
                logger.debug(f"{label} succeeded after {poll} poll(s)")
                return status

            if status.state != TaskState.RUNNING:
                raise TaskFailed(
                    f"{label} failed on {endpoint.label}: {status.error or status.state.value}",
                    task_key=handle.key,
                    kind=handle.kind,
                )

            if status.progress is not None and status.progress != last_progress:
                last_progress = status.progress
                if on_progress:
                    on_progress(handle, status.progress)
                else:
                    logger.info(f"  {label}: {status.progress}%")

            if poll < mode.max_polls:
                self.sleep(mode.interval)

        cancel_error = None
        logger.warning(f"{label} still running after {mode.max_polls} polls; cancelling")
        try:
            endpoint.platform.cancel_task(handle)
        except Exception as e:
            cancel_error = str(e)
            logger.error(f"[red]Could not cancel {label}: {e}[/red]")

        raise TaskTimeout(
            f"{label} timed out after {mode.max_polls} polls ({mode.budget_s:.0f}s)",
            task_key=handle.key,
            kind=handle.kind,
            cancel_error=cancel_error,
        )

    def locate_by_entity(
        self,
        endpoint: EndpointBinding,
        kind: str,
        entity_name: str,
        mode: PollMode,
        since: Optional[datetime] = None,
        exclude: frozenset[str] = frozenset(),
    ) -> AsyncTaskHandle:
        """Find the most recent task of ``kind`` targeting ``entity_name``.

        Args:
            since: Ignore tasks started before this instant
            exclude: Task keys that existed before the operation was submitted

        Raises:
            TaskNotFound: Nothing matched within the poll budget
        """
        for poll in range(1, mode.max_polls + 1):
            with endpoint.task_list_lock:
                snapshots = endpoint.platform.recent_tasks()

            snapshots = [s for s in snapshots if s.handle.key not in exclude]
            match = _newest_match(snapshots, kind, entity_name, since)
            if match is not None:
                logger.debug(f"Located {kind} task {match.handle.key} for '{entity_name}' on {endpoint.label}")
                return match.handle

            if poll < mode.max_polls:
                self.sleep(mode.interval)

        raise TaskNotFound(kind, entity_name)

    def known_task_keys(self, endpoint: EndpointBinding, kind: str, entity_name: str) -> frozenset[str]:
        """Keys of tasks of ``kind`` on ``entity_name`` already in the recent list."""
        with endpoint.task_list_lock:
            snapshots = endpoint.platform.recent_tasks()
        return frozenset(
            s.handle.key for s in snapshots
            if s.kind.lower() == kind.lower() and s.entity_name == entity_name
        )


def _newest_match(
    snapshots: list[TaskSnapshot],
    kind: str,
    entity_name: str,
    since: Optional[datetime],
) -> Optional[TaskSnapshot]:
    candidates = [
        s for s in snapshots
        if s.kind.lower() == kind.lower()
        and s.entity_name == entity_name
        and (since is None or s.started_at is None or _aware(s.started_at) >= _aware(since))
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda s: _aware(s.started_at) if s.started_at else datetime.min.replace(tzinfo=timezone.utc))


def _aware(ts: datetime) -> datetime:
    # vSphere returns UTC-aware datetimes; treat naive values as UTC
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
