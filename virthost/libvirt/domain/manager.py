from __future__ import annotations

from typing import Any, Dict, List, Optional

from .common import ActionResult
from .console import LibvirtDomainConsole
from .inventory import LibvirtDomainInventory
from .lifecycle import LibvirtDomainLifecycle
from .provisioning import LibvirtDomainProvisioner
from .snapshots import LibvirtDomainSnapshots


class LibvirtDomainManager:
    """Facade aggregating inventory, lifecycle, provisioning, snapshot and console helpers.

    Every helper shares the same LibvirtHost, so the whole process talks to the
    hypervisor over a single lazily opened connection.
    """

    def __init__(self, host, settings, relays, *, provisioner: Optional[LibvirtDomainProvisioner] = None) -> None:
        self.host = host
        self.settings = settings
        self.inventory = LibvirtDomainInventory(host)
        self.lifecycle = LibvirtDomainLifecycle(host)
        self.provisioner = provisioner or LibvirtDomainProvisioner(host, settings)
        self.snapshots = LibvirtDomainSnapshots(host)
        self.console = LibvirtDomainConsole(host, settings, relays)

    # ------------------------------------------------------------------
    # Inventory wrappers
    # ------------------------------------------------------------------

    def list_domains(self) -> List[Dict[str, Any]]:
        return self.inventory.list_domains()

    def get_status(self) -> Dict[str, Dict[str, str]]:
        return self.inventory.get_status()

    def get_domain_details(self, name: str) -> Dict[str, Any]:
        return self.inventory.get_domain_details(name)

    # ------------------------------------------------------------------
    # Lifecycle wrappers
    # ------------------------------------------------------------------

    def start_domain(self, name: str) -> ActionResult:
        return self.lifecycle.start_domain(name)

    def stop_domain(self, name: str, *, force: bool = False) -> ActionResult:
        return self.lifecycle.stop_domain(name, force=force)

    def reboot_domain(self, name: str) -> ActionResult:
        return self.lifecycle.reboot_domain(name)

    def delete_domain(self, name: str, *, delete_storage: bool = False) -> ActionResult:
        return self.lifecycle.delete_domain(name, delete_storage=delete_storage)

    def create_domain(self, payload: Any) -> ActionResult:
        return self.provisioner.create_domain(payload)

    # ------------------------------------------------------------------
    # Snapshot wrappers
    # ------------------------------------------------------------------

    def list_snapshots(self, name: str) -> Dict[str, Any]:
        return self.snapshots.list_snapshots(name)

    def create_snapshot(self, name: str, snapshot_name: Optional[str], description: Optional[str] = None) -> ActionResult:
        return self.snapshots.create_snapshot(name, snapshot_name, description)

    # ------------------------------------------------------------------
    # Console wrappers
    # ------------------------------------------------------------------

    def get_console_connection(self, name: str, *, request_host: Optional[str] = None) -> Dict[str, Any]:
        return self.console.get_console_connection(name, request_host=request_host)
