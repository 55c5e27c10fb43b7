from fastapi import Request

from .libvirt.domain import LibvirtDomainManager


def get_manager(request: Request) -> LibvirtDomainManager:
    """Return the domain manager owned by the running application."""
    return request.app.state.manager
