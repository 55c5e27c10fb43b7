from __future__ import annotations

import logging
import socket
import xml.etree.ElementTree as ET
from typing import Any, Dict, Optional, TYPE_CHECKING

import libvirt

from .common import lookup_domain
from .provisioning import CONSOLE_GRAPHICS
from ..errors import ActionFailedError, InvalidDescriptorError, NoConsolePortError
from ..host import last_libvirt_error

if TYPE_CHECKING:
    from ..host import LibvirtHost
    from ...core.config import VirtSettings
    from ...core.relays import RelayRegistry

logger = logging.getLogger(__name__)


def extract_console_port(xml_desc: str, graphics_type: str = CONSOLE_GRAPHICS) -> Optional[int]:
    """Port of the <graphics type=...> device, or None when unset/autoport-pending."""
    root = ET.fromstring(xml_desc)
    graphics = root.find(f"./devices/graphics[@type='{graphics_type}'][@port]")
    if graphics is None:
        return None
    try:
        port = int(graphics.get("port"))
    except (TypeError, ValueError):
        return None
    return port if port > 0 else None


class LibvirtDomainConsole:
    """Makes a domain's console reachable from a browser through a relay."""

    def __init__(self, host: "LibvirtHost", settings: "VirtSettings", relays: "RelayRegistry") -> None:
        self._host = host
        self._settings = settings
        self._relays = relays

    def relay_port_for(self, console_port: int) -> int:
        return console_port + self._settings.relay_offset

    def get_console_connection(self, name: str, *, request_host: Optional[str] = None) -> Dict[str, Any]:
        domain = lookup_domain(self._host, name, action="console")

        try:
            xml_desc = domain.XMLDesc(0)
        except libvirt.libvirtError as exc:
            logger.error("XMLDesc() failed for %s: %s", name, exc)
            raise ActionFailedError(name, "console", last_libvirt_error(exc)) from exc

        try:
            console_port = extract_console_port(xml_desc)
        except ET.ParseError as exc:
            raise InvalidDescriptorError(name, str(exc)) from exc
        if console_port is None:
            # Stopped domains have no active console port.
            raise NoConsolePortError(name)

        relay_port = self.relay_port_for(console_port)
        handle, spawned = self._relays.ensure(relay_port, self._settings.relay_target_host, console_port)
        if spawned:
            logger.info("Console relay for %s listening on %d (pid %s)", name, relay_port, handle.pid)

        return {
            "spicePort": console_port,
            "wsPort": relay_port,
            "host": self._advertised_host(request_host),
        }

    def _advertised_host(self, request_host: Optional[str]) -> str:
        return self._settings.advertised_host or request_host or socket.gethostname() or "localhost"
