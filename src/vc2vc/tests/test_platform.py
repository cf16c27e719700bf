"""Tests for the vSphere adapter (task submission, recent tasks, guest), ping, and endpoint setup."""

from types import SimpleNamespace

import pytest
from pyVmomi import vim

from vc2vc.exceptions import PlatformOperationError, ResourceNotFound
from vc2vc.tests.fakes import T0, FakePlatform, StubTask, VanishedTask, VimStub, make_config
from vc2vc.utils import subprocess as subprocess_utils
from vc2vc.utils.subprocess import CommandResult, ping, ping_command
from vc2vc.vmware import endpoint as endpoint_module
from vc2vc.vmware import platform as platform_module
from vc2vc.vmware.endpoint import DESTINATION, SOURCE, EndpointBinding, open_endpoints
from vc2vc.vmware.platform import (
    AsyncTaskHandle,
    GuestState,
    TaskKind,
    TaskState,
    ToolsStatus,
    VSpherePlatform,
    _task_kind,
    _task_state,
)


@pytest.fixture
def vsphere():
    return VSpherePlatform(SimpleNamespace(host="vc-dst.example.com"), name="destination")


def vm_with_guest(**guest):
    return SimpleNamespace(name="app01", guest=SimpleNamespace(**guest))


# ═══════════════════════════════════════════════════════════════════
#  Task helpers
# ═══════════════════════════════════════════════════════════════════

class TestTaskHelpers:
    @pytest.mark.parametrize("description_id,kind", [
        ("VirtualMachine.relocate", "relocate"),
        ("Folder.registerVm", "registerVm"),
        ("VirtualMachine.reconfigure", "reconfigure"),
        ("VirtualMachine.powerOn", "powerOn"),
        ("", ""),
    ])
    def test_task_kind(self, description_id, kind):
        assert _task_kind(description_id) == kind

    @pytest.mark.parametrize("state,expected", [
        ("queued", TaskState.RUNNING),
        ("running", TaskState.RUNNING),
        ("success", TaskState.SUCCEEDED),
        ("error", TaskState.FAILED),
    ])
    def test_task_state(self, state, expected):
        assert _task_state(state) == expected


# ═══════════════════════════════════════════════════════════════════
#  Guest
# ═══════════════════════════════════════════════════════════════════

class TestGuest:
    @pytest.mark.parametrize("status,expected", [
        ("guestToolsCurrent", ToolsStatus.CURRENT),
        ("guestToolsUnmanaged", ToolsStatus.CURRENT),
        ("guestToolsNeedUpgrade", ToolsStatus.NEEDS_UPGRADE),
        ("guestToolsSupportedOld", ToolsStatus.NEEDS_UPGRADE),
        ("guestToolsNotInstalled", ToolsStatus.NOT_INSTALLED),
    ])
    def test_tools_status(self, vsphere, status, expected):
        vm = vm_with_guest(toolsVersionStatus2=status, toolsStatus=None)
        assert vsphere.tools_status(vm) == expected

    def test_tools_status_without_guest_info(self, vsphere):
        assert vsphere.tools_status(SimpleNamespace(name="app01", guest=None)) == ToolsStatus.NOT_INSTALLED

    def test_guest_state(self, vsphere):
        assert vsphere.guest_state(vm_with_guest(guestState="running")) == GuestState.RUNNING
        assert vsphere.guest_state(vm_with_guest(guestState="notRunning")) == GuestState.NOT_RUNNING


# ═══════════════════════════════════════════════════════════════════
#  Ping
# ═══════════════════════════════════════════════════════════════════

class TestPing:
    def test_posix_command(self, monkeypatch):
        monkeypatch.setattr(subprocess_utils.platform, "system", lambda: "Linux")
        assert ping_command("10.0.0.5", 2) == ["ping", "-c", "1", "-W", "2", "10.0.0.5"]

    def test_windows_command(self, monkeypatch):
        monkeypatch.setattr(subprocess_utils.platform, "system", lambda: "Windows")
        assert ping_command("10.0.0.5", 2) == ["ping", "-n", "1", "-w", "2000", "10.0.0.5"]

    def test_ping_reports_exit_code(self, monkeypatch):
        seen = {}

        def fake_run(cmd, check=True, timeout=None, env=None):
            seen.update(cmd=cmd, check=check, timeout=timeout)
            return CommandResult(1, "", "Destination Host Unreachable")

        monkeypatch.setattr(subprocess_utils, "run_command", fake_run)

        assert ping("10.0.0.5", timeout_s=2) is False
        assert seen["check"] is False
        assert seen["timeout"] == 7
        assert seen["cmd"][-1] == "10.0.0.5"

    def test_pingable_timeout_is_unreachable(self, vsphere, monkeypatch):
        def hang(ip, timeout_s=2):
            raise TimeoutError("Command timed out")

        monkeypatch.setattr(platform_module, "ping", hang)
        assert vsphere.pingable("10.0.0.5") is False

    def test_pingable_missing_binary(self, vsphere, monkeypatch):
        def missing(ip, timeout_s=2):
            raise RuntimeError("Command not found: ping")

        monkeypatch.setattr(platform_module, "ping", missing)
        with pytest.raises(PlatformOperationError, match="ping 10.0.0.5"):
            vsphere.pingable("10.0.0.5")


# ═══════════════════════════════════════════════════════════════════
#  Endpoints
# ═══════════════════════════════════════════════════════════════════

class TestEndpoints:
    @pytest.fixture
    def connections(self, monkeypatch):
        opened = []

        def fake_connect(role, cfg, password, ping_timeout=2):
            binding = EndpointBinding(role=role, host=cfg.vcenter, platform=FakePlatform(role), cluster=cfg.cluster)
            opened.append((binding, password))
            return binding

        monkeypatch.setattr(endpoint_module, "connect_endpoint", fake_connect)
        return opened

    def test_open_and_close_both(self, connections):
        with open_endpoints(make_config()) as (source, destination):
            assert source.role == SOURCE
            assert destination.role == DESTINATION
            assert destination.cluster == "cl-dest"
            assert source.label == "source (vc-src.example.com)"
            assert source.task_list_lock is not destination.task_list_lock

        assert [b.platform.closed for b, _ in connections] == [True, True]

    def test_closed_on_error(self, connections):
        with pytest.raises(RuntimeError):
            with open_endpoints(make_config()):
                raise RuntimeError("batch blew up")
        assert all(b.platform.closed for b, _ in connections)

    def test_password_prompted_when_missing(self, connections):
        config = make_config(source={"vcenter": "vc-src.example.com", "username": "svc"})
        asked = []

        def password_for(role, cfg):
            asked.append(role)
            return "typed"

        with open_endpoints(config, password_for=password_for):
            pass

        assert asked == [SOURCE]
        assert [pw for _, pw in connections] == ["typed", "x"]

    def test_missing_password_without_prompt(self, connections):
        config = make_config(destination={"vcenter": "vc-dst.example.com", "username": "svc", "cluster": "cl-dest"})
        with pytest.raises(ValueError, match="No password"):
            with open_endpoints(config):
                pass
        assert all(b.platform.closed for b, _ in connections)


# ═══════════════════════════════════════════════════════════════════
#  Task submission against stubbed managed objects
# ═══════════════════════════════════════════════════════════════════

def hardware(*devices):
    return SimpleNamespace(hardware=SimpleNamespace(device=list(devices)))


def network_adapter():
    return vim.vm.device.VirtualVmxnet3(
        key=4000,
        deviceInfo=vim.Description(label="Network adapter 1", summary="VM Network"),
    )


@pytest.fixture
def stub():
    return VimStub()


@pytest.fixture
def adapter(stub):
    client = SimpleNamespace(host="vc-dst.example.com", wait_for_task=lambda task, timeout=600: None)
    return VSpherePlatform(client, name="destination")


class TestRelocate:
    @pytest.fixture
    def vm(self, stub):
        disks = [vim.vm.device.VirtualDisk(key=2000), vim.vm.device.VirtualDisk(key=2001)]
        return stub.mo(vim.VirtualMachine, "vm-101", name="app01", config=hardware(*disks, network_adapter()))

    @pytest.fixture
    def datastore(self, stub):
        stub.results["RelocateVM_Task"] = StubTask("task-10", kind="VirtualMachine.relocate")
        return stub.mo(vim.Datastore, "datastore-11", name="nfs-a")

    def test_thin_builds_a_locator_per_disk(self, adapter, stub, vm, datastore):
        handle = adapter.submit_relocate(vm, datastore, thin=True)

        (moid, method, (spec, _)), = stub.invoked
        assert (moid, method) == ("vm-101", "RelocateVM_Task")
        assert spec.datastore == datastore
        assert [d.diskId for d in spec.disk] == [2000, 2001]
        assert all(d.datastore == datastore for d in spec.disk)
        assert all(d.diskBackingInfo.thinProvisioned for d in spec.disk)
        assert handle == AsyncTaskHandle("task-10", "destination", TaskKind.RELOCATE, "app01")

    def test_without_thin_keeps_disk_format(self, adapter, stub, vm, datastore):
        adapter.submit_relocate(vm, datastore)

        (_, _, (spec, _)), = stub.invoked
        assert spec.datastore == datastore
        assert list(spec.disk) == []


class TestLocateVmx:
    @pytest.fixture
    def datastore(self, stub):
        browser = stub.mo(vim.host.DatastoreBrowser, "datastoreBrowser-11")
        return stub.mo(vim.Datastore, "datastore-11", name="nfs-b", browser=browser)

    def waiting(self, adapter, error):
        def wait_for_task(task, timeout=600):
            raise error
        adapter.client.wait_for_task = wait_for_task

    def test_found(self, adapter, stub, datastore):
        found = SimpleNamespace(folderPath="[nfs-b] app01/", file=[SimpleNamespace(path="app01.vmx")])
        stub.results["SearchDatastoreSubFolders_Task"] = StubTask("task-20", result=[found])

        assert adapter.locate_vmx_file(datastore, "app01") == "[nfs-b] app01/app01.vmx"
        (moid, method, (root, spec)), = stub.invoked
        assert (moid, method, root) == ("datastoreBrowser-11", "SearchDatastoreSubFolders_Task", "[nfs-b] app01")
        assert list(spec.matchPattern) == ["app01.vmx"]

    def test_empty_search(self, adapter, stub, datastore):
        stub.results["SearchDatastoreSubFolders_Task"] = StubTask("task-20", result=[])
        assert adapter.locate_vmx_file(datastore, "app01") is None

    def test_folder_missing(self, adapter, stub, datastore):
        self.waiting(adapter, vim.fault.FileNotFound(file="[nfs-b] app01"))
        assert adapter.locate_vmx_file(datastore, "app01") is None

    def test_task_reports_not_found(self, adapter, stub, datastore):
        self.waiting(adapter, RuntimeError("Task failed: File [nfs-b] app01 was not found"))
        assert adapter.locate_vmx_file(datastore, "app01") is None

    def test_other_failure(self, adapter, stub, datastore):
        self.waiting(adapter, RuntimeError("Task failed: Permission to perform this operation was denied."))
        with pytest.raises(PlatformOperationError, match=r"search \[nfs-b\] app01"):
            adapter.locate_vmx_file(datastore, "app01")


class TestRegister:
    def test_registers_into_cluster_pool(self, adapter, stub):
        vm_folder = stub.mo(vim.Folder, "group-v3", name="vm")
        datacenter = stub.mo(vim.Datacenter, "datacenter-2", name="dc-east", vmFolder=vm_folder)
        host_folder = stub.mo(vim.Folder, "group-h4", name="host", parent=datacenter)
        pool = stub.mo(vim.ResourcePool, "resgroup-9", name="Resources")
        cluster = stub.mo(vim.ClusterComputeResource, "domain-c8", name="cl-dest",
                          parent=host_folder, resourcePool=pool)
        stub.results["RegisterVM_Task"] = StubTask("task-30", kind="Folder.registerVm")

        handle = adapter.submit_register("[nfs-b] app01/app01.vmx", cluster, "app01")

        assert stub.invoked == [
            ("group-v3", "RegisterVM_Task", ["[nfs-b] app01/app01.vmx", "app01", False, pool, None]),
        ]
        assert handle.key == "task-30"
        assert handle.kind == TaskKind.REGISTER

    def test_cluster_outside_a_datacenter(self, adapter, stub):
        cluster = stub.mo(vim.ClusterComputeResource, "domain-c8", name="cl-dest", parent=None)
        with pytest.raises(ResourceNotFound, match="parent of cluster cl-dest"):
            adapter.submit_register("[nfs-b] app01/app01.vmx", cluster, "app01")
        assert stub.invoked == []


class TestReconfigureNetwork:
    @pytest.fixture
    def vm(self, stub):
        stub.results["ReconfigVM_Task"] = StubTask("task-40", kind="VirtualMachine.reconfigure")
        return stub.mo(vim.VirtualMachine, "vm-901", name="app01",
                       config=hardware(vim.vm.device.VirtualDisk(key=2000), network_adapter()))

    def edited_nic(self, stub):
        (moid, method, (spec,)), = stub.invoked
        assert (moid, method) == ("vm-901", "ReconfigVM_Task")
        change, = spec.deviceChange
        assert change.operation == vim.vm.device.VirtualDeviceSpec.Operation.edit
        return change.device

    def test_distributed_portgroup(self, adapter, stub, vm):
        switch = SimpleNamespace(uuid="50 1a 2b 3c")
        portgroup = stub.mo(vim.dvs.DistributedVirtualPortgroup, "dvportgroup-21", name="pg-prod",
                            key="dvportgroup-21", config=SimpleNamespace(distributedVirtualSwitch=switch))

        handle = adapter.submit_reconfigure_network(vm, portgroup)

        nic = self.edited_nic(stub)
        assert nic.key == 4000
        assert isinstance(nic.backing, vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo)
        assert nic.backing.port.portgroupKey == "dvportgroup-21"
        assert nic.backing.port.switchUuid == "50 1a 2b 3c"
        assert nic.connectable.startConnected is True
        assert handle.kind == TaskKind.RECONFIGURE

    def test_standard_portgroup(self, adapter, stub, vm):
        portgroup = stub.mo(vim.Network, "network-11", name="VM Network")

        adapter.submit_reconfigure_network(vm, portgroup)

        nic = self.edited_nic(stub)
        assert isinstance(nic.backing, vim.vm.device.VirtualEthernetCard.NetworkBackingInfo)
        assert nic.backing.network == portgroup
        assert nic.backing.deviceName == "VM Network"

    def test_vm_without_adapter(self, adapter, stub):
        vm = stub.mo(vim.VirtualMachine, "vm-902", name="app02", config=hardware(vim.vm.device.VirtualDisk(key=2000)))
        portgroup = stub.mo(vim.Network, "network-11", name="VM Network")

        with pytest.raises(ResourceNotFound, match="Network adapter"):
            adapter.submit_reconfigure_network(vm, portgroup)
        assert stub.invoked == []


class TestToolsUpgrade:
    @pytest.mark.parametrize("family,options", [
        ("windowsGuest", '/S /v"/qn REBOOT=R"'),
        ("linuxGuest", ""),
    ])
    def test_installer_options(self, adapter, stub, family, options):
        stub.results["UpgradeTools_Task"] = StubTask("task-50", kind="VirtualMachine.upgradeTools")
        vm = stub.mo(vim.VirtualMachine, "vm-901", name="app01", guest=SimpleNamespace(guestFamily=family))

        assert adapter.submit_tools_upgrade(vm) is None

        assert stub.invoked == [("vm-901", "UpgradeTools_Task", [options])]
        assert adapter._tasks == {}


# ═══════════════════════════════════════════════════════════════════
#  Recent tasks and task tracking
# ═══════════════════════════════════════════════════════════════════

def recent_list(adapter, *tasks):
    adapter.client.content = SimpleNamespace(taskManager=SimpleNamespace(recentTask=list(tasks)))


class TestRecentTasks:
    def test_snapshot(self, adapter):
        recent_list(adapter, StubTask("task-80", state="success", kind="VirtualMachine.powerOn",
                                      entity_name="app01", started_at=T0))

        snapshot, = adapter.recent_tasks()

        assert snapshot.handle == AsyncTaskHandle("task-80", "destination", TaskKind.POWER_ON, "app01")
        assert snapshot.kind == TaskKind.POWER_ON
        assert snapshot.entity_name == "app01"
        assert snapshot.state == TaskState.SUCCEEDED
        assert snapshot.started_at == T0

    def test_expired_task_is_skipped(self, adapter):
        recent_list(adapter, VanishedTask(), StubTask("task-81", kind="VirtualMachine.reconfigure"))

        snapshots = adapter.recent_tasks()

        assert [s.handle.key for s in snapshots] == ["task-81"]

    def test_scans_do_not_accumulate_tasks(self, adapter):
        recent_list(adapter, *[StubTask(f"task-{i}", entity_name=f"other{i}") for i in range(10)])

        for _ in range(50):
            adapter.recent_tasks()

        assert adapter._tasks == {}
        assert len(adapter._recent) == 10

    def test_located_task_released_when_finished(self, adapter):
        task = StubTask("task-90")
        recent_list(adapter, task)
        handle, = [s.handle for s in adapter.recent_tasks()]
        recent_list(adapter)
        adapter.recent_tasks()

        assert adapter.task_status(handle).state == TaskState.RUNNING
        task.info_value.state = "success"
        assert adapter.task_status(handle).state == TaskState.SUCCEEDED

        assert adapter._tasks == {}
        with pytest.raises(ResourceNotFound):
            adapter.task_status(handle)

    def test_submitted_task_released_when_failed(self, adapter, stub):
        task = StubTask("task-91", state="error", kind="VirtualMachine.powerOn")
        stub.results["PowerOnVM_Task"] = task
        vm = stub.mo(vim.VirtualMachine, "vm-901", name="app01")

        handle = adapter.submit_power_on(vm)
        assert set(adapter._tasks) == {"task-91"}

        assert adapter.task_status(handle).state == TaskState.FAILED
        assert adapter._tasks == {}

    def test_cancel_releases_task(self, adapter, stub):
        task = StubTask("task-92", kind="VirtualMachine.relocate")
        stub.results["PowerOnVM_Task"] = task
        handle = adapter.submit_power_on(stub.mo(vim.VirtualMachine, "vm-901", name="app01"))

        adapter.cancel_task(handle)

        assert task.cancelled == 1
        assert adapter._tasks == {}
