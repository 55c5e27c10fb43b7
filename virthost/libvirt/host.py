import logging
import threading
from typing import Optional

import libvirt

from .errors import HypervisorConnectionError

logger = logging.getLogger(__name__)

_RECOVERABLE_LIBVIRT_ERRORS = {
    "broken pipe",
    "end of file",
    "client socket",
    "transport endpoint",
    "connection closed",
}


def should_retry_libvirt_error(exc: "libvirt.libvirtError") -> bool:
    try:
        message = str(exc).lower()
    except Exception:
        return False
    return any(token in message for token in _RECOVERABLE_LIBVIRT_ERRORS)


def last_libvirt_error(exc: Optional[BaseException] = None) -> str:
    """Return the driver's last-error text, falling back to the exception."""
    if exc is not None:
        text = str(exc).strip()
        if text:
            return text
    try:
        message = libvirt.virGetLastErrorMessage()
    except Exception:
        message = None
    return message or "unknown libvirt error"


class LibvirtHost:
    """Owns the single connection to the local hypervisor.

    The handle is opened lazily on first use and reused afterwards; a lock
    serialises first use so concurrent requests never open duplicate sessions.
    """

    def __init__(self, uri: str = "qemu:///system", opener=None):
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None
        self._opener = opener or libvirt.open
        self._lock = threading.Lock()

    def connect(self) -> "libvirt.virConnect":
        conn = self.conn
        if conn is not None and self._is_alive(conn):
            return conn

        with self._lock:
            # Another thread may have reconnected while we waited.
            if self.conn is not None and self._is_alive(self.conn):
                return self.conn
            self._drop_locked()
            try:
                logger.info("Connecting to %s", self.uri)
                conn = self._opener(self.uri)
            except libvirt.libvirtError as exc:
                logger.error("Connection to %s failed: %s", self.uri, exc)
                raise HypervisorConnectionError(self.uri, last_libvirt_error(exc)) from exc
            if conn is None:
                logger.error("Failed to connect to %s", self.uri)
                raise HypervisorConnectionError(self.uri, last_libvirt_error())
            logger.info("Connected to %s", self.uri)
            self.conn = conn
            return conn

    def reset(self) -> None:
        """Discard the current handle; the next connect() opens a new one."""
        with self._lock:
            self._drop_locked()

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                logger.info("Closing connection to %s", self.uri)
            self._drop_locked()

    def _drop_locked(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.close()
        except libvirt.libvirtError as exc:
            logger.debug("Closing stale connection to %s failed: %s", self.uri, exc)
        finally:
            self.conn = None

    def _is_alive(self, conn) -> bool:
        try:
            if hasattr(conn, "isAlive"):
                return bool(conn.isAlive())
            return True
        except libvirt.libvirtError as exc:
            logger.debug("Connection liveness check failed for %s: %s", self.uri, exc)
            return False
