"""VMware vSphere/vCenter client connection and object lookup."""

from __future__ import annotations

import atexit
import ssl
import time
from typing import Optional

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim

from vc2vc.utils.logging import get_logger

logger = get_logger(__name__)


class VSphereClient:
    """Manages connection to a VMware vSphere/vCenter instance.

    Uses pyvmomi to connect via the vSphere API. Supports:
    - SSL certificate verification bypass (common in enterprise)
    - Automatic retry with exponential backoff
    - Session management with cleanup on exit

    Usage:
        client = VSphereClient()
        client.connect("vcenter.local", "admin", "password", insecure=True)
        vm = client.find_obj([vim.VirtualMachine], "app01")
        client.disconnect()
    """

    def __init__(self):
        self._si: Optional[vim.ServiceInstance] = None
        self._content: Optional[vim.ServiceInstanceContent] = None
        self._host: str = ""

    @property
    def host(self) -> str:
        return self._host

    @property
    def service_instance(self) -> vim.ServiceInstance:
        if self._si is None:
            raise ConnectionError("Not connected to vCenter. Call connect() first.")
        return self._si

    @property
    def content(self) -> vim.ServiceInstanceContent:
        if self._content is None:
            raise ConnectionError("Not connected to vCenter. Call connect() first.")
        return self._content

    def connect(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 443,
        insecure: bool = False,
        max_retries: int = 3,
    ) -> vim.ServiceInstance:
        """Connect to vCenter/vSphere with retry logic.

        Args:
            host: vCenter hostname or IP address
            username: Login username (e.g. admin@vsphere.local)
            password: Login password
            port: API port (default 443)
            insecure: Skip SSL certificate verification
            max_retries: Number of connection attempts

        Returns:
            vSphere ServiceInstance

        Raises:
            ConnectionError: If authentication fails or all attempts fail
        """
        self._host = host
        ssl_context = None
        if insecure:
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        last_error = None
        for attempt in range(1, max_retries + 1):
            try:
                logger.info(f"Connecting to vCenter {host} (attempt {attempt}/{max_retries})")
                self._si = SmartConnect(
                    host=host,
                    user=username,
                    pwd=password,
                    port=port,
                    sslContext=ssl_context,
                )
                self._content = self._si.RetrieveContent()
                atexit.register(self._safe_disconnect)

                logger.info(f"Connected to vCenter: {host} "
                            f"(API version: {self._content.about.apiVersion}, "
                            f"Build: {self._content.about.build})")
                return self._si

            except vim.fault.InvalidLogin as e:
                raise ConnectionError(f"Authentication failed for {username}@{host}: {e.msg}") from e
            except Exception as e:
                last_error = e
                if attempt < max_retries:
                    delay = 2 ** attempt
                    logger.warning(f"Connection failed: {e}. Retrying in {delay}s...")
                    time.sleep(delay)
                else:
                    logger.error(f"All {max_retries} connection attempts failed")

        raise ConnectionError(f"Failed to connect to vCenter {host}: {last_error}")

    def disconnect(self) -> None:
        """Gracefully disconnect from vCenter."""
        if self._si:
            try:
                Disconnect(self._si)
                logger.info(f"Disconnected from vCenter: {self._host}")
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self._si = None
                self._content = None

    def _safe_disconnect(self):
        """Disconnect at interpreter exit if the session is still open."""
        if self._si:
            try:
                Disconnect(self._si)
            except Exception as e:
                logger.debug(f"Disconnect at exit failed (non-fatal): {e}")

    def get_container_view(self, obj_type: list, container=None) -> vim.view.ContainerView:
        """Create a container view for efficient object traversal.

        Args:
            obj_type: List of vim types, e.g. [vim.VirtualMachine]
            container: Root container (default: rootFolder)

        Returns:
            ContainerView that must be destroyed after use
        """
        container = container or self.content.rootFolder
        return self.content.viewManager.CreateContainerView(
            container, obj_type, recursive=True
        )

    def find_obj(self, obj_type: list, name: str, container=None):
        """Find a managed object by exact name, or None."""
        view = self.get_container_view(obj_type, container)
        try:
            for obj in view.view:
                if obj.name == name:
                    return obj
        finally:
            view.Destroy()
        return None

    def wait_for_task(self, task: vim.Task, timeout: int = 600) -> None:
        """Block on a short internal task (datastore searches and the like).

        Migration tasks go through TaskMonitor instead.

        Raises:
            TimeoutError: If the task is still running after timeout seconds
            RuntimeError: If the task fails
        """
        start = time.time()
        while task.info.state in (vim.TaskInfo.State.running, vim.TaskInfo.State.queued):
            if time.time() - start > timeout:
                raise TimeoutError(f"Task timed out after {timeout}s: {task.info.descriptionId}")
            time.sleep(1)

        if task.info.state == vim.TaskInfo.State.error:
            raise RuntimeError(f"Task failed: {task.info.error.msg}")

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.disconnect()
