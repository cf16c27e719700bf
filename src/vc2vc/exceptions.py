"""Error taxonomy for vc2vc.

Every failure the pipeline can surface derives from MigrationError so the
orchestrator and CLI can report it uniformly (VM name, step, cause).
"""

from __future__ import annotations

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration failures."""


class ResourceNotFound(MigrationError):
    """A VM, datastore, network, cluster or task is missing or not eligible."""

    def __init__(self, kind: str, name: str, detail: str = ""):
        self.kind = kind
        self.name = name
        self.detail = detail
        msg = f"{kind} '{name}' not found"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class VMNotPoweredOff(ResourceNotFound):
    """The source VM is running and therefore not eligible for relocation."""

    def __init__(self, name: str, power_state: str):
        self.power_state = power_state
        super().__init__("VM", name)
        self.args = (f"VM '{name}' is {power_state}; power it off before migration",)


class TaskNotFound(ResourceNotFound):
    """No task matching an entity name and operation kind showed up."""

    def __init__(self, kind: str, entity_name: str):
        self.task_kind = kind
        super().__init__("Task", f"{kind} on {entity_name}")


class InsufficientCapacity(MigrationError):
    """A datastore does not have room for the VM's used storage."""

    def __init__(self, datastore: str, free_gb: float, required_gb: float):
        self.datastore = datastore
        self.free_gb = free_gb
        self.required_gb = required_gb
        super().__init__(
            f"Datastore '{datastore}' has {free_gb:.2f}GB free, "
            f"VM needs {required_gb:.2f}GB"
        )


class TaskError(MigrationError):
    """Base class for asynchronous task failures."""

    def __init__(self, message: str, task_key: str = "", kind: str = ""):
        self.task_key = task_key
        self.kind = kind
        super().__init__(message)


class TaskFailed(TaskError):
    """The platform reported a terminal error state for the task."""


class TaskTimeout(TaskError):
    """The polling budget ran out before the task reached a terminal state."""

    def __init__(self, message: str, task_key: str = "", kind: str = "",
                 cancel_error: Optional[str] = None):
        self.cancel_error = cancel_error
        if cancel_error:
            message = f"{message} (cancellation also failed: {cancel_error})"
        super().__init__(message, task_key=task_key, kind=kind)


class ConnectivityCheckFailed(MigrationError):
    """The migrated VM did not answer reachability probes."""

    def __init__(self, ip_address: str, attempts: int):
        self.ip_address = ip_address
        self.attempts = attempts
        super().__init__(f"{ip_address} unreachable after {attempts} probes")


class GuestNotReady(MigrationError):
    """The guest OS never reported running within the allowed time."""

    def __init__(self, vm_name: str, waited_s: float):
        self.vm_name = vm_name
        self.waited_s = waited_s
        super().__init__(f"Guest OS of '{vm_name}' not running after {waited_s:.0f}s")


class PlatformOperationError(MigrationError):
    """A call through the platform client failed."""

    def __init__(self, operation: str, cause: object):
        self.operation = operation
        self.cause = cause
        msg = getattr(cause, "msg", None) or str(cause)
        super().__init__(f"{operation} failed: {msg}")


class InvalidStepTransition(MigrationError):
    """A job was asked to move backwards or repeat a completed step."""


class BatchAborted(MigrationError):
    """The batch stopped at the first failing VM."""

    def __init__(self, vm_name: str, step: str, cause: str):
        self.vm_name = vm_name
        self.step = step
        self.cause = cause
        super().__init__(f"Batch aborted: VM '{vm_name}' failed at step '{step}': {cause}")
