from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Mapping, Tuple, TYPE_CHECKING

import libvirt

from .common import domain_info, list_domain_names, lookup_domain
from ..errors import ActionFailedError, InvalidDescriptorError
from ..host import last_libvirt_error

if TYPE_CHECKING:
    from ..host import LibvirtHost

logger = logging.getLogger(__name__)

# virDomainMemoryStatTags
MEMORY_STAT_UNUSED = "4"
MEMORY_STAT_RSS = "7"
MEMORY_STAT_USABLE = "8"
MEMORY_STAT_DISK_CACHES = "10"

# libvirt-python reports memoryStats() keyed by name rather than tag number.
_MEMORY_STAT_TAGS = {
    "swap_in": "0",
    "swap_out": "1",
    "major_fault": "2",
    "minor_fault": "3",
    "unused": "4",
    "available": "5",
    "actual": "6",
    "rss": "7",
    "usable": "8",
    "last_update": "9",
    "disk_caches": "10",
    "hugetlb_pgalloc": "11",
    "hugetlb_pgfail": "12",
}

_GUEST_IP_PATTERN = re.compile(r"<ip address=['\"]([^'\"]+)['\"]")


def normalize_memory_stats(stats: Mapping[Any, Any]) -> Dict[str, int]:
    """Re-key memory statistics by their numeric tag ("7", "8", ...)."""
    normalized: Dict[str, int] = {}
    for key, value in (stats or {}).items():
        tag = _MEMORY_STAT_TAGS.get(str(key), str(key))
        try:
            normalized[tag] = int(value)
        except (TypeError, ValueError):
            continue
    return normalized


def resolve_memory_usage(stats: Mapping[str, int], memory_kb: int, max_memory_kb: int) -> Tuple[int, int]:
    """Return (actual_usage, available) in KiB.

    Actual usage is the RSS tag, else the balloon size. Availability is the
    USABLE tag, else UNUSED + DISK_CACHES, else max memory minus actual usage
    clamped at zero.
    """
    actual = int(stats[MEMORY_STAT_RSS]) if MEMORY_STAT_RSS in stats else int(memory_kb)

    available = int(stats.get(MEMORY_STAT_USABLE, 0))
    if available <= 0:
        available = int(stats.get(MEMORY_STAT_UNUSED, 0)) + int(stats.get(MEMORY_STAT_DISK_CACHES, 0))
        if available <= 0:
            available = max(0, int(max_memory_kb) - actual)
    return actual, available


def extract_guest_ip(xml_desc: str) -> str:
    if not xml_desc:
        return ""
    match = _GUEST_IP_PATTERN.search(xml_desc)
    return match.group(1) if match else ""


def _attr(node, path: str, attribute: str) -> str:
    child = node.find(path)
    if child is None:
        return ""
    return child.get(attribute) or ""


def extract_disks(root: ET.Element) -> List[Dict[str, str]]:
    disks: List[Dict[str, str]] = []
    for disk in root.findall("./devices/disk"):
        if disk.get("device") != "disk":
            continue
        disks.append(
            {
                "device": _attr(disk, "target", "dev"),
                "driver": _attr(disk, "driver", "type"),
                "path": _attr(disk, "source", "file"),
                "bus": _attr(disk, "target", "bus"),
            }
        )
    return disks


def extract_interfaces(root: ET.Element) -> List[Dict[str, str]]:
    return [
        {
            "type": iface.get("type") or "",
            "mac": _attr(iface, "mac", "address"),
            "model": _attr(iface, "model", "type"),
            "bridge": _attr(iface, "source", "bridge"),
        }
        for iface in root.findall("./devices/interface")
    ]


def extract_graphics(root: ET.Element) -> List[Dict[str, str]]:
    return [
        {
            "type": graphics.get("type") or "",
            "port": graphics.get("port") or "",
            "listen": graphics.get("listen") or "",
            "passwd": graphics.get("passwd") or "",
        }
        for graphics in root.findall("./devices/graphics")
    ]


class LibvirtDomainInventory:
    """Read-only inspection helpers for libvirt domains."""

    def __init__(self, host: "LibvirtHost") -> None:
        self._host = host

    def _iter_domains(self):
        conn = self._host.connect()
        for name in list_domain_names(conn):
            try:
                domain = conn.lookupByName(name)
                info = domain_info(domain)
            except libvirt.libvirtError as exc:
                # Transient disappearance is not an error for listings.
                logger.debug("Skipping domain %s during enumeration: %s", name, exc)
                continue
            yield name, domain, info

    def list_domains(self) -> List[Dict[str, Any]]:
        domains: List[Dict[str, Any]] = []
        for name, _domain, info in self._iter_domains():
            domains.append(
                {
                    "id": name,
                    "name": name,
                    "state": info["state"],
                    "memory": info["memory"],
                    "maxMemory": info["maxMem"],
                    "cpuCount": info["nrVirtCpu"],
                    "cpuTime": info["cpuTime"],
                }
            )
        return domains

    def get_status(self) -> Dict[str, Dict[str, str]]:
        status: Dict[str, Dict[str, str]] = {}
        for name, domain, info in self._iter_domains():
            try:
                xml_desc = domain.XMLDesc(0)
            except libvirt.libvirtError as exc:
                logger.debug("XMLDesc failed for %s: %s", name, exc)
                xml_desc = ""
            status[name] = {
                "state.state": str(info["state"]),
                "balloon.current": str(info["memory"]),
                "vcpu.current": str(info["nrVirtCpu"]),
                "ip": extract_guest_ip(xml_desc),
            }
        return status

    def get_domain_details(self, name: str) -> Dict[str, Any]:
        domain = lookup_domain(self._host, name, action="details")

        try:
            info = domain_info(domain)
            xml_desc = domain.XMLDesc(0)
        except libvirt.libvirtError as exc:
            logger.error("Failed to inspect domain %s: %s", name, exc)
            raise ActionFailedError(name, "details", last_libvirt_error(exc)) from exc

        try:
            root = ET.fromstring(xml_desc)
        except ET.ParseError as exc:
            logger.error("Failed to parse domain XML for %s: %s", name, exc)
            raise InvalidDescriptorError(name, str(exc)) from exc

        try:
            memory_stats = normalize_memory_stats(domain.memoryStats())
        except libvirt.libvirtError as exc:
            # Inactive domains have no balloon statistics.
            logger.debug("memoryStats failed for %s: %s", name, exc)
            memory_stats = {}

        actual, available = resolve_memory_usage(memory_stats, info["memory"], info["maxMem"])

        return {
            "name": name,
            "state": info["state"],
            "maxMemory": info["maxMem"],
            "memory": actual,
            "availableMemory": available,
            "cpuCount": info["nrVirtCpu"],
            "cpuTime": info["cpuTime"],
            "disks": extract_disks(root),
            "networks": extract_interfaces(root),
            "graphics": extract_graphics(root),
            "stats": {
                "cpu_time": info["cpuTime"],
                "memory_usage": actual,
                "available_memory": available,
                "max_memory": info["maxMem"],
                "memory_details": memory_stats,
            },
        }
