from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple, TYPE_CHECKING

import libvirt

from .common import STATE_RUNNING, ActionResult, domain_info, lookup_domain
from ..host import last_libvirt_error

if TYPE_CHECKING:
    from ..host import LibvirtHost

logger = logging.getLogger(__name__)

# Drop managed-save state, snapshot metadata and firmware NVRAM with the definition.
# Must stay 1|2|4 = 7. The older literal 11 (8|2|1) set VIR_DOMAIN_UNDEFINE_KEEP_NVRAM
# (8), which keeps the NVRAM file instead of removing it.
UNDEFINE_FLAGS = (
    getattr(libvirt, "VIR_DOMAIN_UNDEFINE_MANAGED_SAVE", 1)
    | getattr(libvirt, "VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA", 2)
    | getattr(libvirt, "VIR_DOMAIN_UNDEFINE_NVRAM", 4)
)

_DISK_BLOCK_PATTERN = re.compile(
    r"<disk\b[^>]*\bdevice=['\"]disk['\"][^>]*>(.*?)</disk>",
    re.DOTALL,
)
_SOURCE_FILE_PATTERN = re.compile(r"<source\s+[^>]*?\bfile=['\"]([^'\"]+)['\"]")


def extract_disk_source_paths(xml_desc: str) -> List[str]:
    """Source file paths of every <disk device="disk"> in a raw domain descriptor."""
    paths: List[str] = []
    for block in _DISK_BLOCK_PATTERN.findall(xml_desc or ""):
        match = _SOURCE_FILE_PATTERN.search(block)
        if match and match.group(1) not in paths:
            paths.append(match.group(1))
    return paths


class LibvirtDomainLifecycle:
    """Encapsulates domain state transitions and teardown."""

    def __init__(self, host: "LibvirtHost") -> None:
        self._host = host

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def start_domain(self, name: str) -> ActionResult:
        domain = lookup_domain(self._host, name, action="start")
        return self._invoke(name, "start", domain.create)

    def stop_domain(self, name: str, *, force: bool = False) -> ActionResult:
        domain = lookup_domain(self._host, name, action="stop")
        if force:
            return self._invoke(name, "force_stop", domain.destroy)
        # The guest may ignore the request; no state change is guaranteed.
        return self._invoke(name, "graceful_stop", domain.shutdown)

    def reboot_domain(self, name: str) -> ActionResult:
        domain = lookup_domain(self._host, name, action="reboot")
        flags = getattr(libvirt, "VIR_DOMAIN_REBOOT_ACPI_POWER_BTN", 0)
        return self._invoke(name, "reboot", domain.reboot, flags)

    def _invoke(self, name: str, action: str, call, *args) -> ActionResult:
        try:
            call(*args)
        except libvirt.libvirtError as exc:
            logger.error("Failed to %s domain %s on %s: %s", action, name, self._host.uri, exc)
            return ActionResult(success=False, domain=name, action=action, error=last_libvirt_error(exc))
        logger.info("%s issued for domain %s", action, name)
        return ActionResult(success=True, domain=name, action=action)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def delete_domain(self, name: str, *, delete_storage: bool = False) -> ActionResult:
        action = "delete_with_storage" if delete_storage else "delete"
        domain = lookup_domain(self._host, name, action=action)
        conn = self._host.connect()

        removed: List[str] = []
        if delete_storage:
            self._refresh_storage_pools(conn)
            paths, error = self._collect_disk_paths(domain, name)
            if error is not None:
                logger.warning("Could not read disks of %s before deletion: %s", name, error)
            removed = self._delete_volumes(conn, paths)

        error = self._stop_if_running(domain, name)
        if error is not None:
            logger.warning("Failed to stop %s before undefine: %s", name, error)

        try:
            domain.undefineFlags(UNDEFINE_FLAGS)
        except libvirt.libvirtError as exc:
            logger.error("Failed to undefine domain %s on %s: %s", name, self._host.uri, exc)
            return ActionResult(success=False, domain=name, action=action, error=last_libvirt_error(exc))

        logger.info(
            "Deleted domain %s on %s (delete_storage=%s, removed_volumes=%d)",
            name,
            self._host.uri,
            delete_storage,
            len(removed),
        )
        return ActionResult(success=True, domain=name, action=action)

    def _refresh_storage_pools(self, conn) -> None:
        # A broken pool must not block removal of this domain's own disks.
        try:
            pool_names = conn.listStoragePools() or []
        except libvirt.libvirtError as exc:
            logger.warning("Failed to enumerate storage pools: %s", exc)
            return
        if not pool_names:
            logger.warning("No storage pools found on %s", self._host.uri)
        for pool_name in pool_names:
            if not isinstance(pool_name, str):
                logger.warning("Ignoring invalid storage pool name %r", pool_name)
                continue
            try:
                conn.storagePoolLookupByName(pool_name).refresh(0)
            except libvirt.libvirtError as exc:
                logger.warning("Failed to refresh storage pool %s: %s", pool_name, exc)

    def _collect_disk_paths(self, domain, name: str) -> Tuple[List[str], Optional[str]]:
        try:
            xml_desc = domain.XMLDesc(0)
        except libvirt.libvirtError as exc:
            return [], last_libvirt_error(exc)
        paths = extract_disk_source_paths(xml_desc)
        logger.debug("Disk paths for %s: %s", name, paths)
        return paths, None

    def _delete_volumes(self, conn, paths: List[str]) -> List[str]:
        removed: List[str] = []
        for path in paths:
            try:
                volume = conn.storageVolLookupByPath(path)
            except libvirt.libvirtError as exc:
                logger.warning("No storage volume for %s: %s", path, exc)
                continue
            try:
                volume.delete(0)
            except libvirt.libvirtError as exc:
                logger.warning("Failed to delete storage volume %s: %s", path, exc)
                continue
            removed.append(path)
        return removed

    def _stop_if_running(self, domain, name: str) -> Optional[str]:
        try:
            if domain_info(domain)["state"] != STATE_RUNNING:
                return None
            domain.destroy()
        except libvirt.libvirtError as exc:
            return last_libvirt_error(exc)
        logger.info("Stopped running domain %s before deletion", name)
        return None
