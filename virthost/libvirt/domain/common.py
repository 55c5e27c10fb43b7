from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import libvirt

from ..errors import DomainNotFoundError
from ..host import should_retry_libvirt_error

if TYPE_CHECKING:
    from ..host import LibvirtHost

logger = logging.getLogger(__name__)

STATE_RUNNING = getattr(libvirt, "VIR_DOMAIN_RUNNING", 1)
STATE_SHUTOFF = getattr(libvirt, "VIR_DOMAIN_SHUTOFF", 5)


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a single mutating operation on a domain."""

    success: bool
    domain: str
    action: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def lookup_domain(host: "LibvirtHost", name: str, *, action: Optional[str] = None) -> "libvirt.virDomain":
    """Resolve a domain by name, mapping any lookup failure to DomainNotFoundError."""
    conn = host.connect()
    try:
        return conn.lookupByName(name)
    except libvirt.libvirtError as exc:
        if not should_retry_libvirt_error(exc):
            logger.debug("lookupByName(%s) failed on %s: %s", name, host.uri, exc)
            raise DomainNotFoundError(name, action=action) from exc
        logger.warning("lookupByName(%s) on %s failed (%s); attempting reconnect", name, host.uri, exc)

    host.reset()
    conn = host.connect()
    try:
        return conn.lookupByName(name)
    except libvirt.libvirtError as retry_exc:
        logger.error("lookupByName(%s) retry failed on %s: %s", name, host.uri, retry_exc)
        raise DomainNotFoundError(name, action=action) from retry_exc


def list_domain_names(conn: "libvirt.virConnect") -> List[str]:
    """Names of active domains followed by inactive ones, in discovery order."""
    names: List[str] = []
    try:
        domain_ids = conn.listDomainsID() or []
    except libvirt.libvirtError as exc:
        logger.warning("listDomainsID failed: %s", exc)
        domain_ids = []
    for dom_id in domain_ids:
        try:
            names.append(conn.lookupByID(dom_id).name())
        except libvirt.libvirtError as exc:
            # Domain went away between listing and lookup.
            logger.debug("lookupByID(%s) failed: %s", dom_id, exc)
    try:
        defined = conn.listDefinedDomains() or []
    except libvirt.libvirtError as exc:
        logger.warning("listDefinedDomains failed: %s", exc)
        defined = []
    for name in defined:
        if name not in names:
            names.append(name)
    return names


def domain_info(domain: "libvirt.virDomain") -> Dict[str, int]:
    """Unpack virDomain.info() into named fields."""
    info = domain.info()
    values = list(info) if isinstance(info, (list, tuple)) else []
    values += [0] * (5 - len(values))
    return {
        "state": int(values[0] or 0),
        "maxMem": int(values[1] or 0),
        "memory": int(values[2] or 0),
        "nrVirtCpu": int(values[3] or 0),
        "cpuTime": int(values[4] or 0),
    }
