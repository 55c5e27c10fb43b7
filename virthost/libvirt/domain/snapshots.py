from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import libvirt

from .common import ActionResult, lookup_domain
from ..errors import ActionFailedError, InvalidSnapshotNameError
from ..host import last_libvirt_error

if TYPE_CHECKING:
    from ..host import LibvirtHost

logger = logging.getLogger(__name__)


def parse_snapshot_xml(name: str, xml_desc: str) -> Dict[str, Any]:
    root = ET.fromstring(xml_desc)
    parent = (root.findtext("./parent/name") or "").strip()
    return {
        "name": name,
        "creationTime": (root.findtext("creationTime") or "").strip(),
        "state": (root.findtext("state") or "").strip(),
        "description": (root.findtext("description") or "").strip(),
        "parent": parent or None,
    }


def build_snapshot_xml(name: str, description: Optional[str] = None) -> str:
    root = ET.Element("domainsnapshot")
    ET.SubElement(root, "name").text = name
    if description:
        ET.SubElement(root, "description").text = description
    return ET.tostring(root, encoding="unicode")


class LibvirtDomainSnapshots:
    """Enumerates and creates point-in-time snapshots of a domain."""

    def __init__(self, host: "LibvirtHost") -> None:
        self._host = host

    def list_snapshots(self, name: str) -> Dict[str, Any]:
        domain = lookup_domain(self._host, name, action="list_snapshots")
        try:
            snapshot_names = domain.snapshotListNames(0) or []
        except libvirt.libvirtError as exc:
            logger.error("snapshotListNames failed for %s: %s", name, exc)
            raise ActionFailedError(name, "list_snapshots", last_libvirt_error(exc)) from exc

        snapshots: List[Dict[str, Any]] = []
        for snapshot_name in snapshot_names:
            try:
                snapshot = domain.snapshotLookupByName(snapshot_name, 0)
                xml_desc = snapshot.getXMLDesc(0)
            except libvirt.libvirtError as exc:
                logger.debug("Snapshot %s of %s disappeared: %s", snapshot_name, name, exc)
                continue
            try:
                snapshots.append(parse_snapshot_xml(snapshot_name, xml_desc))
            except ET.ParseError as exc:
                logger.warning("Failed to parse snapshot XML for %s/%s: %s", name, snapshot_name, exc)
        return {"vm": name, "snapshots": snapshots}

    def create_snapshot(self, name: str, snapshot_name: Optional[str], description: Optional[str] = None) -> ActionResult:
        domain = lookup_domain(self._host, name, action="create_snapshot")
        snapshot_name = (snapshot_name or "").strip()
        if not snapshot_name:
            raise InvalidSnapshotNameError(name)

        try:
            domain.snapshotCreateXML(build_snapshot_xml(snapshot_name, description), 0)
        except libvirt.libvirtError as exc:
            logger.error("Snapshot %s of %s failed: %s", snapshot_name, name, exc)
            return ActionResult(success=False, domain=name, action="create_snapshot", error=last_libvirt_error(exc))

        logger.info("Created snapshot %s of %s", snapshot_name, name)
        return ActionResult(success=True, domain=name, action="create_snapshot")
