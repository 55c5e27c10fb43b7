from .common import ActionResult
from .manager import LibvirtDomainManager
from .lifecycle import LibvirtDomainLifecycle
from .console import LibvirtDomainConsole
from .inventory import LibvirtDomainInventory
from .provisioning import LibvirtDomainProvisioner, ProvisioningRequest
from .snapshots import LibvirtDomainSnapshots

__all__ = [
    "ActionResult",
    "LibvirtDomainManager",
    "LibvirtDomainLifecycle",
    "LibvirtDomainConsole",
    "LibvirtDomainInventory",
    "LibvirtDomainProvisioner",
    "LibvirtDomainSnapshots",
    "ProvisioningRequest",
]
