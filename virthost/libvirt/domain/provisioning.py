"""Provisioning of new domains: disk image, definition, registration check.

The workflow spans the filesystem, two external tools and the hypervisor, so
each step that leaves something behind records a compensating action on a
CleanupStack. Steps report failures as ``(value, error)`` pairs and the stack is
unwound on the first error; the typed error is raised only once, at the public
boundary.
"""

from __future__ import annotations

import logging
import os
import time
import xml.etree.ElementTree as ET
from typing import Any, Callable, List, Optional, Tuple, TYPE_CHECKING

import libvirt
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from .common import ActionResult
from ..errors import (
    DiskCreationFailedError,
    DomainCreationFailedError,
    DomainExistsError,
    InvalidRequestError,
    StoragePoolNotFoundError,
    StoragePoolPathMissingError,
    StoragePoolXmlInvalidError,
    VirtError,
)
from ..host import last_libvirt_error
from ..tools import run_tool

if TYPE_CHECKING:
    from ..host import LibvirtHost
    from ...core.config import VirtSettings

logger = logging.getLogger(__name__)

# Console protocol the relay supervisor knows how to expose.
CONSOLE_GRAPHICS = "spice"
DEFAULT_NETWORK = "default"

_FIELD_ERROR_KEYS = {
    "name": "invalid_vm_name",
    "memory": "invalid_memory",
    "vcpus": "invalid_vcpus",
    "disk_size": "invalid_disk_size",
    "iso_image": "invalid_iso_image",
    "network_bridge": "invalid_network_bridge",
    "os_variant": "invalid_os_variant",
}


class ProvisioningRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    # Also used as the disk image file name, so no path separators.
    name: StrictStr = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    memory: int = Field(default=1024, gt=0, description="Memory in MiB")
    vcpus: int = Field(default=1, gt=0)
    disk_size: float = Field(ge=1, allow_inf_nan=False, description="Disk size in GiB")
    iso_image: StrictStr = Field(min_length=1)
    network_bridge: StrictStr = Field(default=DEFAULT_NETWORK, min_length=1)
    os_variant: StrictStr = Field(default="generic", min_length=1)

    @property
    def network_option(self) -> str:
        if self.network_bridge == DEFAULT_NETWORK:
            return f"network={DEFAULT_NETWORK}"
        return f"bridge={self.network_bridge}"


def parse_provisioning_request(payload: Any) -> Tuple[Optional[ProvisioningRequest], Optional[InvalidRequestError]]:
    if not isinstance(payload, dict):
        return None, InvalidRequestError("invalid_json", "Request body must be a JSON object", action="create")
    try:
        return ProvisioningRequest.model_validate(payload), None
    except ValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else ""
        key = _FIELD_ERROR_KEYS.get(field, "invalid_request")
        return None, InvalidRequestError(key, f"{field or 'request'}: {first['msg']}", action="create")


class CleanupStack:
    """Ordered compensating actions, unwound last-in first-out."""

    def __init__(self) -> None:
        self._steps: List[Tuple[str, Callable[[], None]]] = []

    def push(self, label: str, callback: Callable[[], None]) -> None:
        self._steps.append((label, callback))

    def commit(self) -> None:
        self._steps.clear()

    def unwind(self) -> List[str]:
        failed: List[str] = []
        while self._steps:
            label, callback = self._steps.pop()
            try:
                callback()
                logger.info("Rolled back: %s", label)
            except OSError as exc:
                logger.error("Rollback step '%s' failed: %s", label, exc)
                failed.append(label)
        return failed

    def __len__(self) -> int:
        return len(self._steps)


def _remove_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class LibvirtDomainProvisioner:
    """Creates a new domain from a ProvisioningRequest."""

    def __init__(
        self,
        host: "LibvirtHost",
        settings: "VirtSettings",
        *,
        runner: Callable[..., Any] = run_tool,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._host = host
        self._settings = settings
        self._run = runner
        self._sleep = sleep

    def create_domain(self, payload: Any) -> ActionResult:
        request, error = parse_provisioning_request(payload)
        if error is not None:
            raise error

        stack = CleanupStack()
        result, error = self._provision(request, stack)
        if error is not None:
            failed = stack.unwind()
            if failed:
                logger.error("Manual cleanup required for %s: %s", request.name, ", ".join(failed))
            raise error
        return result

    def _provision(
        self, request: ProvisioningRequest, stack: CleanupStack
    ) -> Tuple[Optional[ActionResult], Optional[VirtError]]:
        conn = self._host.connect()

        if self._domain_exists(conn, request.name):
            return None, DomainExistsError(request.name)

        pool_path, error = self._resolve_pool_path(conn)
        if error is not None:
            return None, error

        disk_path = os.path.join(pool_path, f"{request.name}.qcow2")
        disk_path, error = self._create_disk(request, disk_path, stack)
        if error is not None:
            return None, error

        error = self._define_domain(request, disk_path)
        if error is not None:
            return None, error

        # From here the definition may exist; rollback is limited to the disk.
        stack.commit()
        return self._await_registration(conn, request.name), None

    def _domain_exists(self, conn, name: str) -> bool:
        try:
            conn.lookupByName(name)
        except libvirt.libvirtError:
            return False
        return True

    def _resolve_pool_path(self, conn) -> Tuple[Optional[str], Optional[VirtError]]:
        pool_name = self._settings.default_pool
        try:
            pool = conn.storagePoolLookupByName(pool_name)
        except libvirt.libvirtError as exc:
            return None, StoragePoolNotFoundError(pool_name, last_libvirt_error(exc))

        try:
            root = ET.fromstring(pool.XMLDesc(0))
        except libvirt.libvirtError as exc:
            return None, StoragePoolXmlInvalidError(pool_name, last_libvirt_error(exc))
        except ET.ParseError as exc:
            return None, StoragePoolXmlInvalidError(pool_name, str(exc))

        path = (root.findtext("./target/path") or "").strip()
        if not path:
            return None, StoragePoolPathMissingError(pool_name)
        return path, None

    def _create_disk(
        self, request: ProvisioningRequest, disk_path: str, stack: CleanupStack
    ) -> Tuple[Optional[str], Optional[VirtError]]:
        if os.path.exists(disk_path):
            return None, DiskCreationFailedError(disk_path, "disk image already exists")

        # The path was free, so whatever the tool leaves there is ours to remove.
        stack.push(f"remove disk image {disk_path}", lambda: _remove_file(disk_path))
        result = self._run(
            [self._settings.qemu_img, "create", "-f", "qcow2", disk_path, f"{int(request.disk_size)}G"],
            timeout=self._settings.tool_timeout,
        )
        if not result.ok:
            return None, DiskCreationFailedError(disk_path, result.output)
        logger.info("Created disk image %s (%dG)", disk_path, int(request.disk_size))
        return disk_path, None

    def _define_domain(self, request: ProvisioningRequest, disk_path: str) -> Optional[VirtError]:
        command = [
            self._settings.virt_install,
            "--connect", self._host.uri,
            "--name", request.name,
            "--memory", str(request.memory),
            "--vcpus", str(request.vcpus),
            "--disk", f"path={disk_path},format=qcow2",
            "--cdrom", request.iso_image,
            "--network", request.network_option,
            "--graphics", CONSOLE_GRAPHICS,
            "--video", "model=vga",
            "--noautoconsole",
            "--os-variant", request.os_variant,
        ]
        result = self._run(command, timeout=self._settings.tool_timeout)
        if not result.ok:
            return DomainCreationFailedError(request.name, result.output)
        logger.info("virt-install completed for %s", request.name)
        return None

    def _await_registration(self, conn, name: str) -> ActionResult:
        attempts = max(1, self._settings.registration_attempts)
        error: Optional[str] = None
        for attempt in range(1, attempts + 1):
            self._sleep(self._settings.registration_interval)
            try:
                conn.lookupByName(name)
            except libvirt.libvirtError as exc:
                error = last_libvirt_error(exc)
                logger.debug("Domain %s not registered yet (attempt %d/%d): %s", name, attempt, attempts, exc)
                continue
            logger.info("Domain %s registered", name)
            return ActionResult(success=True, domain=name, action="create")

        logger.error("Domain %s not visible after %d lookups: %s", name, attempts, error)
        return ActionResult(success=False, domain=name, action="create", error=error)
