"""Configuration models for vc2vc using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


class EndpointConfig(BaseModel):
    """One vCenter endpoint (source or destination)."""

    vcenter: str = Field(..., description="vCenter hostname or IP")
    username: str = Field(..., description="vCenter username")
    password: Optional[SecretStr] = Field(None, description="vCenter password (prefer password_env)")
    password_env: Optional[str] = Field(None, description="Environment variable containing the password")
    insecure: bool = Field(False, description="Skip SSL certificate verification")
    port: int = Field(443, description="vCenter port")
    cluster: str = Field("", description="Cluster whose resource pool receives registered VMs")

    @model_validator(mode="after")
    def resolve_password(self) -> "EndpointConfig":
        if self.password is None and self.password_env:
            env_val = os.environ.get(self.password_env)
            if env_val:
                self.password = SecretStr(env_val)
        return self

    def secret(self) -> Optional[str]:
        """Plain-text password, or None when it still has to be supplied."""
        return self.password.get_secret_value() if self.password else None


class PollingSettings(BaseModel):
    """Task polling cadence.

    Short mode covers configuration-class operations (register, reconfigure,
    power-on). Long mode covers storage relocations, whose duration scales
    with disk size and link speed.
    """

    short_interval: float = Field(2, gt=0, description="Seconds between polls of short tasks")
    short_max_polls: int = Field(30, ge=1, description="Poll budget for short tasks")
    long_interval: float = Field(120, gt=0, description="Seconds between polls of relocation tasks")
    long_max_polls: int = Field(120, ge=1, description="Poll budget for relocation tasks")
    locate_interval: float = Field(2, gt=0, description="Seconds between recent-task list scans")
    locate_max_polls: int = Field(15, ge=1, description="Scans before giving up on locating a task")


class VerificationSettings(BaseModel):
    """Post power-on readiness and reachability checks."""

    tools_grace_period: float = Field(60, ge=0, description="Fixed wait when the guest agent is absent")
    guest_poll_interval: float = Field(5, gt=0, description="Seconds between guest state checks")
    guest_ready_timeout: Optional[float] = Field(
        600, gt=0, description="Max seconds to wait for the guest OS (null = wait forever)",
    )
    ping_attempts: int = Field(3, ge=1, description="Reachability probes before giving up")
    ping_interval: float = Field(5, ge=0, description="Seconds between failed probes")
    ping_timeout: int = Field(2, ge=1, description="Per-probe timeout in seconds")


class MigrationSettings(BaseModel):
    """Global migration behavior settings."""

    halt_on_error: bool = Field(True, description="Stop the whole batch at the first failing VM")
    thin_provision_staging: bool = Field(True, description="Thin-provision disks on the staging datastore")


class AppConfig(BaseModel):
    """Root application configuration."""

    source: EndpointConfig
    destination: EndpointConfig
    polling: PollingSettings = PollingSettings()
    verification: VerificationSettings = VerificationSettings()
    migration: MigrationSettings = MigrationSettings()

    @model_validator(mode="after")
    def require_destination_cluster(self) -> "AppConfig":
        if not self.destination.cluster:
            raise ValueError("destination.cluster is required (registration target)")
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from SRC_VCENTER_* / DST_VCENTER_* variables with overrides."""
        base = {
            "source": _endpoint_from_env("SRC"),
            "destination": _endpoint_from_env("DST"),
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and key in base:
                base[key].update(value)
            else:
                base[key] = value
        return cls(**base)


def _endpoint_from_env(prefix: str) -> dict:
    return {
        "vcenter": os.environ.get(f"{prefix}_VCENTER_HOST", ""),
        "username": os.environ.get(f"{prefix}_VCENTER_USERNAME", ""),
        "password_env": f"{prefix}_VCENTER_PASSWORD",
        "insecure": os.environ.get(f"{prefix}_VCENTER_INSECURE", "false").lower() == "true",
        "cluster": os.environ.get(f"{prefix}_VCENTER_CLUSTER", ""),
    }


# --- Batch input ---

class MigrationRequest(BaseModel):
    """One row of the batch: a VM and where it goes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, str_strip_whitespace=True)

    vm_name: str = Field(..., alias="VMName", min_length=1)
    source_staging_store: str = Field(..., alias="SourceStagingStore", min_length=1)
    target_ip: str = Field(..., alias="TargetIP", min_length=1)
    dest_staging_store: str = Field(..., alias="DestStagingStore", min_length=1)
    dest_network: str = Field(..., alias="DestNetwork", min_length=1)
    dest_final_store: str = Field(..., alias="DestFinalStore", min_length=1)


class BatchMigrationPlan(BaseModel):
    """Ordered list of migration requests."""

    migrations: list[MigrationRequest] = Field(..., min_length=1)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "BatchMigrationPlan":
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**data)
