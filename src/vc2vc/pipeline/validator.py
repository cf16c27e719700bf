"""Pre-migration resource validation.

Read-only checks run against both endpoints before a VM is touched. The
checks run in a fixed order and stop at the first failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from vc2vc.config import MigrationRequest
from vc2vc.exceptions import InsufficientCapacity, MigrationError, ResourceNotFound, VMNotPoweredOff
from vc2vc.utils.logging import get_logger
from vc2vc.vmware.endpoint import EndpointBinding
from vc2vc.vmware.platform import PlatformClient

logger = get_logger(__name__)

POWERED_OFF = "poweredOff"


def round_gb(value: float) -> float:
    return round(value, 2)


def check_capacity(platform: PlatformClient, datastore: Any, used_gb: float) -> float:
    """Raise InsufficientCapacity unless datastore can hold used_gb.

    Both sides are compared rounded to 2 decimals. Returns the free space.
    """
    free_gb = round_gb(platform.free_space(datastore))
    required_gb = round_gb(used_gb)
    if free_gb < required_gb:
        raise InsufficientCapacity(datastore.name, free_gb, required_gb)
    return free_gb


@dataclass
class ValidationCheck:
    """Result of a single validation check."""
    name: str
    passed: bool
    message: str


@dataclass
class ValidationReport:
    """Checks run for one request, up to and including the first failure."""
    vm_name: str
    checks: list[ValidationCheck] = field(default_factory=list)
    error: Optional[MigrationError] = None

    @property
    def passed(self) -> bool:
        return self.error is None and all(c.passed for c in self.checks)


@dataclass
class ValidatedJob:
    """Everything preflight resolved for one request."""
    request: MigrationRequest
    vm: Any
    vm_id: str
    host: Any
    used_gb: float
    source_staging: Any = None
    dest_staging: Any = None
    dest_final: Any = None
    dest_network: Any = None
    dest_cluster: Any = None


class PreflightValidator:
    """Confirms every resource a request refers to exists and is eligible.

    Checks, in order:
      1. VM exists on the source and is powered off
      2. Source staging datastore is visible from the VM's host and has room
      3. Destination staging datastore exists
      4. Destination final datastore exists
      5. Destination network exists
      6. Destination cluster exists
    """

    def validate(
        self,
        request: MigrationRequest,
        source: EndpointBinding,
        destination: EndpointBinding,
    ) -> ValidatedJob:
        """Run all checks, raising on the first failure.

        Raises:
            ResourceNotFound: A resource is missing or the VM is running
            InsufficientCapacity: The source staging datastore is too small
        """
        return self._run(request, source, destination, report=None)

    def check(
        self,
        request: MigrationRequest,
        source: EndpointBinding,
        destination: EndpointBinding,
    ) -> ValidationReport:
        """Run the same checks but collect them into a report instead of raising."""
        report = ValidationReport(vm_name=request.vm_name)
        try:
            self._run(request, source, destination, report=report)
        except MigrationError as e:
            report.error = e
        return report

    def _run(
        self,
        request: MigrationRequest,
        source: EndpointBinding,
        destination: EndpointBinding,
        report: Optional[ValidationReport],
    ) -> ValidatedJob:
        checks = [
            ("Source VM", self._check_vm),
            ("Source staging datastore", self._check_source_staging),
            ("Destination staging datastore", self._check_dest_staging),
            ("Destination final datastore", self._check_dest_final),
            ("Destination network", self._check_dest_network),
            ("Destination cluster", self._check_dest_cluster),
        ]

        job: Optional[ValidatedJob] = None
        for name, check_fn in checks:
            try:
                job, message = check_fn(request, source, destination, job)
            except MigrationError as e:
                if report is not None:
                    report.checks.append(ValidationCheck(name, False, str(e)))
                logger.debug(f"Preflight '{name}' failed for '{request.vm_name}': {e}")
                raise
            if report is not None:
                report.checks.append(ValidationCheck(name, True, message))

        logger.info(f"Preflight passed for '{request.vm_name}' ({job.used_gb:.2f}GB used)")
        return job

    def _check_vm(self, request, source, destination, job):
        vm = source.platform.find_vm(request.vm_name)
        if vm is None:
            raise ResourceNotFound("VM", request.vm_name, f"on {source.label}")

        power_state = source.platform.power_state(vm)
        if power_state != POWERED_OFF:
            raise VMNotPoweredOff(request.vm_name, power_state)

        job = ValidatedJob(
            request=request,
            vm=vm,
            vm_id=source.platform.object_id(vm),
            host=source.platform.vm_host(vm),
            used_gb=source.platform.used_space(vm),
        )
        return job, f"{request.vm_name} is {power_state}"

    def _check_source_staging(self, request, source, destination, job):
        ds = source.platform.find_datastore(request.source_staging_store, host_scope=job.host)
        if ds is None:
            host_name = getattr(job.host, "name", "its host")
            raise ResourceNotFound(
                "Datastore", request.source_staging_store,
                f"not visible from {host_name} on {source.label}",
            )
        free_gb = check_capacity(source.platform, ds, job.used_gb)
        job.source_staging = ds
        return job, f"{free_gb:.2f}GB free ≥ {round_gb(job.used_gb):.2f}GB used"

    def _check_dest_staging(self, request, source, destination, job):
        ds = destination.platform.find_datastore(request.dest_staging_store)
        if ds is None:
            raise ResourceNotFound("Datastore", request.dest_staging_store, f"on {destination.label}")
        job.dest_staging = ds
        return job, f"{request.dest_staging_store} found"

    def _check_dest_final(self, request, source, destination, job):
        ds = destination.platform.find_datastore(request.dest_final_store)
        if ds is None:
            raise ResourceNotFound("Datastore", request.dest_final_store, f"on {destination.label}")
        job.dest_final = ds
        return job, f"{request.dest_final_store} found"

    def _check_dest_network(self, request, source, destination, job):
        pg = destination.platform.find_portgroup(request.dest_network)
        if pg is None:
            raise ResourceNotFound("Network", request.dest_network, f"on {destination.label}")
        job.dest_network = pg
        return job, f"{request.dest_network} found"

    def _check_dest_cluster(self, request, source, destination, job):
        cluster = destination.platform.find_cluster(destination.cluster)
        if cluster is None:
            raise ResourceNotFound("Cluster", destination.cluster, f"on {destination.label}")
        job.dest_cluster = cluster
        return job, f"{destination.cluster} found"
