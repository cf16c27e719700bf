"""Endpoint bindings: one authenticated platform client per vCenter role."""

from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from vc2vc.config import AppConfig, EndpointConfig
from vc2vc.utils.logging import get_logger
from vc2vc.vmware.client import VSphereClient
from vc2vc.vmware.platform import PlatformClient, VSpherePlatform

logger = get_logger(__name__)

SOURCE = "source"
DESTINATION = "destination"


@dataclass
class EndpointBinding:
    """A connected endpoint shared read-only by every job of a batch.

    ``task_list_lock`` serialises recent-task queries so two lookups by entity
    name never interleave on the same endpoint.
    """
    role: str
    host: str
    platform: PlatformClient
    cluster: str = ""
    task_list_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def label(self) -> str:
        return f"{self.role} ({self.host})"


def connect_endpoint(
    role: str,
    cfg: EndpointConfig,
    password: str,
    ping_timeout: int = 2,
) -> EndpointBinding:
    """Open a vSphere session and wrap it in an EndpointBinding."""
    client = VSphereClient()
    client.connect(cfg.vcenter, cfg.username, password, port=cfg.port, insecure=cfg.insecure)
    platform = VSpherePlatform(client, name=role, ping_timeout=ping_timeout)
    return EndpointBinding(role=role, host=cfg.vcenter, platform=platform, cluster=cfg.cluster)


@contextlib.contextmanager
def open_endpoints(
    config: AppConfig,
    password_for: Optional[Callable[[str, EndpointConfig], str]] = None,
) -> Iterator[tuple[EndpointBinding, EndpointBinding]]:
    """Establish source and destination bindings for the duration of a batch.

    Args:
        config: Application configuration
        password_for: Called with (role, endpoint config) when the config
            carries no password; returns the resolved secret.
    """
    bindings: list[EndpointBinding] = []
    try:
        for role, cfg in ((SOURCE, config.source), (DESTINATION, config.destination)):
            password = cfg.secret()
            if password is None:
                if password_for is None:
                    raise ValueError(f"No password configured for {role} vCenter {cfg.vcenter}")
                password = password_for(role, cfg)
            bindings.append(connect_endpoint(
                role, cfg, password, ping_timeout=config.verification.ping_timeout,
            ))
        yield bindings[0], bindings[1]
    finally:
        for binding in reversed(bindings):
            binding.platform.close()
