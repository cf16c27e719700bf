"""Platform client interface and its vSphere implementation.

The pipeline talks to each vCenter exclusively through PlatformClient so it
can be driven by an in-memory fake in tests. Managed objects (VMs,
datastores, port groups, clusters) are passed around opaquely; the only
attribute the pipeline reads from them directly is ``.name``.
"""

from __future__ import annotations

import contextlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

from pyVmomi import vim, vmodl

from vc2vc.exceptions import PlatformOperationError, ResourceNotFound
from vc2vc.utils.logging import get_logger
from vc2vc.utils.subprocess import ping
from vc2vc.vmware.client import VSphereClient

logger = get_logger(__name__)

GB = 1024 ** 3

# Silent install, suppress the installer-initiated reboot
WINDOWS_TOOLS_NO_REBOOT = '/S /v"/qn REBOOT=R"'


class TaskKind:
    RELOCATE = "relocate"
    REGISTER = "registerVm"
    RECONFIGURE = "reconfigure"
    POWER_ON = "powerOn"
    UPGRADE_TOOLS = "upgradeTools"


class TaskState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class GuestState(str, Enum):
    NOT_RUNNING = "notRunning"
    RUNNING = "running"


class ToolsStatus(str, Enum):
    CURRENT = "current"
    NEEDS_UPGRADE = "needsUpgrade"
    NOT_INSTALLED = "notInstalled"


@dataclass(frozen=True)
class AsyncTaskHandle:
    """Opaque reference to a task submitted to one endpoint."""
    key: str
    endpoint: str
    kind: str = ""
    entity_name: str = ""


@dataclass
class TaskStatus:
    """One observation of a task."""
    state: TaskState
    progress: Optional[int] = None
    error: Optional[str] = None
    result: Any = None


@dataclass
class TaskSnapshot:
    """An entry of the endpoint's recent-task list."""
    handle: AsyncTaskHandle
    kind: str
    entity_name: str
    state: TaskState
    started_at: Optional[datetime] = None


class PlatformClient(ABC):
    """Operations the migration core needs from one virtualization endpoint."""

    name: str = ""

    # --- lookups (None when absent) ---

    @abstractmethod
    def find_vm(self, name: str) -> Any: ...

    @abstractmethod
    def find_datastore(self, name: str, host_scope: Any = None) -> Any: ...

    @abstractmethod
    def find_portgroup(self, name: str) -> Any: ...

    @abstractmethod
    def find_cluster(self, name: str) -> Any: ...

    @abstractmethod
    def object_id(self, obj: Any) -> str: ...

    @abstractmethod
    def power_state(self, vm: Any) -> str: ...

    @abstractmethod
    def vm_host(self, vm: Any) -> Any: ...

    # --- capacity (GB) ---

    @abstractmethod
    def used_space(self, vm: Any) -> float: ...

    @abstractmethod
    def free_space(self, datastore: Any) -> float: ...

    # --- task submission ---

    @abstractmethod
    def submit_relocate(self, vm: Any, datastore: Any, thin: bool = False) -> AsyncTaskHandle: ...

    @abstractmethod
    def locate_vmx_file(self, datastore: Any, vm_name: str) -> Optional[str]: ...

    @abstractmethod
    def submit_register(self, vmx_path: str, cluster: Any, vm_name: str) -> AsyncTaskHandle: ...

    @abstractmethod
    def submit_reconfigure_network(self, vm: Any, portgroup: Any) -> Optional[AsyncTaskHandle]:
        """Move the first network adapter of vm onto portgroup.

        May return None when the endpoint does not hand back a task; the
        caller then locates it by entity name.
        """

    @abstractmethod
    def submit_power_on(self, vm: Any) -> Optional[AsyncTaskHandle]: ...

    @abstractmethod
    def submit_tools_upgrade(self, vm: Any) -> None: ...

    # --- guest ---

    @abstractmethod
    def guest_state(self, vm: Any) -> GuestState: ...

    @abstractmethod
    def tools_status(self, vm: Any) -> ToolsStatus: ...

    @abstractmethod
    def pingable(self, ip_address: str) -> bool: ...

    # --- tasks ---

    @abstractmethod
    def task_status(self, handle: AsyncTaskHandle) -> TaskStatus: ...

    @abstractmethod
    def recent_tasks(self) -> list[TaskSnapshot]: ...

    @abstractmethod
    def cancel_task(self, handle: AsyncTaskHandle) -> None: ...

    def close(self) -> None:
        """Release the underlying session."""


@contextlib.contextmanager
def _platform_call(operation: str) -> Iterator[None]:
    """Wrap vSphere faults raised inside the block."""
    try:
        yield
    except vmodl.MethodFault as e:
        raise PlatformOperationError(operation, e) from e


def _task_state(state: str) -> TaskState:
    if state in (vim.TaskInfo.State.queued, vim.TaskInfo.State.running):
        return TaskState.RUNNING
    if state == vim.TaskInfo.State.success:
        return TaskState.SUCCEEDED
    return TaskState.FAILED


def _task_kind(description_id: str) -> str:
    # "VirtualMachine.powerOn" -> "powerOn", "Folder.registerVm" -> "registerVm"
    return (description_id or "").rsplit(".", 1)[-1]


class VSpherePlatform(PlatformClient):
    """PlatformClient backed by a pyVmomi session.

    Handles stay plain values. The vim.Task behind a handle is kept while the
    task is in flight: from submission, or from the scan it was located in,
    until a terminal state is observed or it is cancelled.
    """

    def __init__(self, client: VSphereClient, name: str = "", ping_timeout: int = 2):
        self.client = client
        self.name = name or client.host
        self.ping_timeout = ping_timeout
        self._tasks: dict[str, vim.Task] = {}
        # Tasks from the latest recent-task scan only
        self._recent: dict[str, vim.Task] = {}

    # --- lookups ---

    def find_vm(self, name: str) -> Optional[vim.VirtualMachine]:
        with _platform_call(f"find VM '{name}'"):
            return self.client.find_obj([vim.VirtualMachine], name)

    def find_datastore(self, name: str, host_scope: Optional[vim.HostSystem] = None) -> Optional[vim.Datastore]:
        with _platform_call(f"find datastore '{name}'"):
            if host_scope is not None:
                candidates = [ds for ds in host_scope.datastore if ds.name == name]
                ds = candidates[0] if candidates else None
            else:
                ds = self.client.find_obj([vim.Datastore], name)
            if ds is not None and not ds.summary.accessible:
                logger.warning(f"Datastore '{name}' on {self.name} is not accessible")
                return None
            return ds

    def find_portgroup(self, name: str) -> Optional[vim.Network]:
        # vim.Network covers standard port groups and distributed port groups
        with _platform_call(f"find network '{name}'"):
            return self.client.find_obj([vim.Network], name)

    def find_cluster(self, name: str) -> Optional[vim.ClusterComputeResource]:
        with _platform_call(f"find cluster '{name}'"):
            return self.client.find_obj([vim.ClusterComputeResource], name)

    def object_id(self, obj) -> str:
        return str(obj._moId)

    def power_state(self, vm: vim.VirtualMachine) -> str:
        return str(vm.runtime.powerState)

    def vm_host(self, vm: vim.VirtualMachine) -> Optional[vim.HostSystem]:
        return vm.runtime.host

    # --- capacity ---

    def used_space(self, vm: vim.VirtualMachine) -> float:
        return vm.summary.storage.committed / GB

    def free_space(self, datastore: vim.Datastore) -> float:
        with _platform_call(f"refresh datastore '{datastore.name}'"):
            datastore.RefreshDatastore()
        return datastore.summary.freeSpace / GB

    # --- task submission ---

    def submit_relocate(self, vm: vim.VirtualMachine, datastore: vim.Datastore, thin: bool = False) -> AsyncTaskHandle:
        spec = vim.vm.RelocateSpec(datastore=datastore)
        if thin:
            locators = []
            for device in vm.config.hardware.device:
                if isinstance(device, vim.vm.device.VirtualDisk):
                    locators.append(vim.vm.RelocateSpec.DiskLocator(
                        diskId=device.key,
                        datastore=datastore,
                        diskBackingInfo=vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
                            diskMode="persistent",
                            thinProvisioned=True,
                        ),
                    ))
            spec.disk = locators

        logger.info(f"Relocating '{vm.name}' to datastore '{datastore.name}' on {self.name}"
                    f"{' (thin)' if thin else ''}")
        with _platform_call(f"relocate '{vm.name}'"):
            task = vm.RelocateVM_Task(spec=spec)
        return self._track(task, TaskKind.RELOCATE, vm.name)

    def locate_vmx_file(self, datastore: vim.Datastore, vm_name: str) -> Optional[str]:
        search_root = f"[{datastore.name}] {vm_name}"
        spec = vim.host.DatastoreBrowser.SearchSpec(matchPattern=[f"{vm_name}.vmx"])

        try:
            task = datastore.browser.SearchDatastoreSubFolders_Task(search_root, spec)
            self.client.wait_for_task(task, timeout=300)
        except vim.fault.FileNotFound:
            return None
        except RuntimeError as e:
            if "not found" in str(e).lower():
                return None
            raise PlatformOperationError(f"search {search_root}", e) from e
        except vmodl.MethodFault as e:
            raise PlatformOperationError(f"search {search_root}", e) from e

        for result in task.info.result or []:
            for file_info in result.file or []:
                folder = result.folderPath.rstrip("/")
                return f"{folder}/{file_info.path}"
        return None

    def submit_register(self, vmx_path: str, cluster: vim.ClusterComputeResource, vm_name: str) -> AsyncTaskHandle:
        datacenter = cluster.parent
        while datacenter is not None and not isinstance(datacenter, vim.Datacenter):
            datacenter = datacenter.parent
        if datacenter is None:
            raise ResourceNotFound("Datacenter", f"parent of cluster {cluster.name}")

        logger.info(f"Registering {vmx_path} as '{vm_name}' in cluster '{cluster.name}' on {self.name}")
        with _platform_call(f"register '{vm_name}'"):
            task = datacenter.vmFolder.RegisterVM_Task(
                path=vmx_path,
                name=vm_name,
                asTemplate=False,
                pool=cluster.resourcePool,
            )
        return self._track(task, TaskKind.REGISTER, vm_name)

    def submit_reconfigure_network(self, vm: vim.VirtualMachine, portgroup: vim.Network) -> AsyncTaskHandle:
        nic = next(
            (d for d in vm.config.hardware.device if isinstance(d, vim.vm.device.VirtualEthernetCard)),
            None,
        )
        if nic is None:
            raise ResourceNotFound("Network adapter", vm.name)

        if isinstance(portgroup, vim.dvs.DistributedVirtualPortgroup):
            nic.backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo(
                port=vim.dvs.PortConnection(
                    portgroupKey=portgroup.key,
                    switchUuid=portgroup.config.distributedVirtualSwitch.uuid,
                ),
            )
        else:
            nic.backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo(
                network=portgroup,
                deviceName=portgroup.name,
            )
        nic.connectable = vim.vm.device.VirtualDevice.ConnectInfo(
            startConnected=True,
            allowGuestControl=True,
            connected=False,
        )

        nic_spec = vim.vm.device.VirtualDeviceSpec(
            operation=vim.vm.device.VirtualDeviceSpec.Operation.edit,
            device=nic,
        )
        logger.info(f"Moving '{nic.deviceInfo.label}' of '{vm.name}' to '{portgroup.name}'")
        with _platform_call(f"reconfigure network of '{vm.name}'"):
            task = vm.ReconfigVM_Task(spec=vim.vm.ConfigSpec(deviceChange=[nic_spec]))
        return self._track(task, TaskKind.RECONFIGURE, vm.name)

    def submit_power_on(self, vm: vim.VirtualMachine) -> AsyncTaskHandle:
        with _platform_call(f"power on '{vm.name}'"):
            task = vm.PowerOnVM_Task()
        return self._track(task, TaskKind.POWER_ON, vm.name)

    def submit_tools_upgrade(self, vm: vim.VirtualMachine) -> None:
        options = WINDOWS_TOOLS_NO_REBOOT if vm.guest.guestFamily == "windowsGuest" else ""
        with _platform_call(f"upgrade tools on '{vm.name}'"):
            vm.UpgradeTools_Task(installerOptions=options)

    # --- guest ---

    def guest_state(self, vm: vim.VirtualMachine) -> GuestState:
        if vm.guest and vm.guest.guestState == "running":
            return GuestState.RUNNING
        return GuestState.NOT_RUNNING

    def tools_status(self, vm: vim.VirtualMachine) -> ToolsStatus:
        guest = vm.guest
        status = (guest.toolsVersionStatus2 or guest.toolsStatus or "") if guest else ""
        if status in ("guestToolsNotInstalled", "toolsNotInstalled", ""):
            return ToolsStatus.NOT_INSTALLED
        if status in ("guestToolsNeedUpgrade", "guestToolsSupportedOld", "guestToolsTooOld",
                      "guestToolsBlacklisted", "toolsOld"):
            return ToolsStatus.NEEDS_UPGRADE
        return ToolsStatus.CURRENT

    def pingable(self, ip_address: str) -> bool:
        try:
            return ping(ip_address, timeout_s=self.ping_timeout)
        except TimeoutError:
            return False
        except RuntimeError as e:
            raise PlatformOperationError(f"ping {ip_address}", e) from e

    # --- tasks ---

    def task_status(self, handle: AsyncTaskHandle) -> TaskStatus:
        task = self._lookup(handle)
        with _platform_call(f"poll task {handle.key}"):
            info = task.info
        error = None
        if info.error is not None:
            error = getattr(info.error, "msg", None) or str(info.error)
        state = _task_state(info.state)
        if state != TaskState.RUNNING:
            self._tasks.pop(handle.key, None)
        return TaskStatus(
            state=state,
            progress=info.progress,
            error=error,
            result=info.result,
        )

    def recent_tasks(self) -> list[TaskSnapshot]:
        snapshots = []
        recent = {}
        with _platform_call(f"list recent tasks on {self.name}"):
            tasks = list(self.client.content.taskManager.recentTask or [])

        for task in tasks:
            try:
                info = task.info
            except vmodl.fault.ManagedObjectNotFound:
                # Expired on the server between the list and the read
                logger.debug(f"Skipping a recent task that no longer exists on {self.name}")
                continue
            except vmodl.MethodFault as e:
                raise PlatformOperationError(f"list recent tasks on {self.name}", e) from e

            key = str(info.key)
            kind = _task_kind(info.descriptionId)
            recent[key] = task
            snapshots.append(TaskSnapshot(
                handle=AsyncTaskHandle(key=key, endpoint=self.name, kind=kind,
                                       entity_name=info.entityName or ""),
                kind=kind,
                entity_name=info.entityName or "",
                state=_task_state(info.state),
                started_at=info.startTime or info.queueTime,
            ))

        self._recent = recent
        return snapshots

    def cancel_task(self, handle: AsyncTaskHandle) -> None:
        task = self._lookup(handle)
        try:
            with _platform_call(f"cancel task {handle.key}"):
                task.CancelTask()
        finally:
            self._tasks.pop(handle.key, None)

    def close(self) -> None:
        self.client.disconnect()

    def _track(self, task: vim.Task, kind: str, entity_name: str) -> AsyncTaskHandle:
        key = str(task.info.key)
        self._tasks[key] = task
        return AsyncTaskHandle(key=key, endpoint=self.name, kind=kind, entity_name=entity_name)

    def _lookup(self, handle: AsyncTaskHandle) -> vim.Task:
        task = self._tasks.get(handle.key)
        if task is None:
            task = self._recent.get(handle.key)
            if task is None:
                raise ResourceNotFound("Task", handle.key, f"not in flight on {self.name}")
            self._tasks[handle.key] = task
        return task
