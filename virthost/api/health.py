import logging
from fastapi import APIRouter, Depends, status
from fastapi.concurrency import run_in_threadpool

from ..core.config import APP_NAME, APP_VERSION
from ..deps import get_manager
from ..libvirt.errors import HypervisorConnectionError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])


@router.get("/ping", status_code=status.HTTP_200_OK)
def ping():
    """Basic liveness check."""
    return {"ping": "pong"}


@router.get("/healthz", status_code=status.HTTP_200_OK)
async def healthz(manager=Depends(get_manager)):
    """Health check covering the application and the hypervisor connection."""
    summary = {
        "app_name": APP_NAME,
        "version": APP_VERSION,
        "uri": manager.host.uri,
    }
    try:
        await run_in_threadpool(manager.host.connect)
    except HypervisorConnectionError as exc:
        logger.warning("Health check could not reach hypervisor: %s", exc)
        return {"status": "error", "error": exc.key, "details": {**summary, "hypervisor": exc.detail}}
    return {"status": "ok", "details": {**summary, "hypervisor": "connected"}}
