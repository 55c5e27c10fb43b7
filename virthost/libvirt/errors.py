"""Shared exception definitions for libvirt helpers.

Every error carries a stable ``key`` (consumed by the translation layer of the
frontend) and the HTTP status class the API reports it with.
"""

from __future__ import annotations

from typing import Optional


class VirtError(RuntimeError):
    """Base error for hypervisor, storage and console failures."""

    key = "virt_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[str] = None,
        domain: Optional[str] = None,
        action: Optional[str] = None,
    ):
        super().__init__(message)
        self.detail = detail
        self.domain = domain
        self.action = action

    def to_dict(self) -> dict:
        payload = {
            "success": False,
            "error": self.key,
            "message": str(self),
        }
        if self.detail:
            payload["detail"] = self.detail
        if self.domain is not None:
            payload["domain"] = self.domain
        if self.action is not None:
            payload["action"] = self.action
        return payload


class HypervisorConnectionError(VirtError):
    key = "libvirt_connection_failed"
    status_code = 503

    def __init__(self, uri: str, reason: Optional[str] = None):
        super().__init__(f"Failed to connect to hypervisor at {uri}", detail=reason)
        self.uri = uri


class DomainNotFoundError(VirtError):
    key = "libvirt_domain_not_found"
    status_code = 404

    def __init__(self, name: str, *, action: Optional[str] = None):
        super().__init__(f"Domain '{name}' not found", domain=name, action=action)
        self.name = name


class DomainExistsError(VirtError):
    key = "domain_exists"
    status_code = 409

    def __init__(self, name: str):
        super().__init__(f"Domain '{name}' already exists", domain=name, action="create")
        self.name = name


class InvalidRequestError(VirtError):
    status_code = 400

    def __init__(self, key: str, message: str, *, action: Optional[str] = None):
        super().__init__(message, action=action)
        self.key = key


class InvalidSnapshotNameError(VirtError):
    key = "invalid_snapshot_name"
    status_code = 400

    def __init__(self, domain: str):
        super().__init__("Snapshot name is required", domain=domain, action="create_snapshot")


class StoragePoolNotFoundError(VirtError):
    key = "storage_pool_not_found"

    def __init__(self, pool: str, reason: Optional[str] = None):
        super().__init__(f"Storage pool '{pool}' not found", detail=reason)
        self.pool = pool


class StoragePoolXmlInvalidError(VirtError):
    key = "storage_pool_xml_invalid"

    def __init__(self, pool: str, reason: Optional[str] = None):
        super().__init__(f"Storage pool '{pool}' returned an unusable descriptor", detail=reason)
        self.pool = pool


class StoragePoolPathMissingError(VirtError):
    key = "storage_pool_path_missing"

    def __init__(self, pool: str):
        super().__init__(f"Storage pool '{pool}' has no target path")
        self.pool = pool


class DiskCreationFailedError(VirtError):
    key = "create_disk_failed"

    def __init__(self, path: str, output: Optional[str] = None):
        super().__init__(f"Failed to create disk image {path}", detail=output)
        self.path = path


class DomainCreationFailedError(VirtError):
    key = "create_vm_failed"

    def __init__(self, name: str, output: Optional[str] = None):
        super().__init__(f"Failed to create domain '{name}'", detail=output, domain=name, action="create")
        self.name = name


class InvalidDescriptorError(VirtError):
    key = "invalid_domain_xml"

    def __init__(self, name: str, reason: Optional[str] = None):
        super().__init__(f"Descriptor for '{name}' could not be parsed", detail=reason, domain=name)
        self.name = name


class NoConsolePortError(VirtError):
    key = "no_spice_port"
    status_code = 404

    def __init__(self, name: str):
        super().__init__(f"Domain '{name}' has no active console port", domain=name)
        self.name = name


class RelaySpawnFailedError(VirtError):
    key = "websockify_failed"

    def __init__(self, port: int, reason: Optional[str] = None):
        super().__init__(f"Console relay on port {port} did not start", detail=reason)
        self.port = port


class ActionFailedError(VirtError):
    key = "action_failed"

    def __init__(self, name: str, action: str, reason: Optional[str] = None):
        super().__init__(f"Failed to {action} domain '{name}'", detail=reason, domain=name, action=action)
        self.name = name
