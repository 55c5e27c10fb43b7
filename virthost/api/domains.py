from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from ..deps import get_manager

router = APIRouter(prefix="/virt", tags=["Virtualization"])


class DomainStopRequest(BaseModel):
    force: bool = False


class DomainDeleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delete_storage: bool = Field(default=False, alias="deleteVhd")


class SnapshotCreateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


@router.get("/domains")
async def list_domains(manager=Depends(get_manager)):
    domains = await run_in_threadpool(manager.list_domains)
    return {"domains": domains}


@router.get("/domains/status")
async def get_domain_status(manager=Depends(get_manager)):
    return await run_in_threadpool(manager.get_status)


@router.post("/domain/create")
async def create_domain(payload: Any = Body(default=None), manager=Depends(get_manager)):
    result = await run_in_threadpool(manager.create_domain, payload)
    return result.to_dict()


@router.get("/domain/{name}/details")
async def get_domain_details(name: str, manager=Depends(get_manager)):
    return await run_in_threadpool(manager.get_domain_details, name)


@router.get("/domain/{name}/spice")
async def get_spice_connection(name: str, request: Request, manager=Depends(get_manager)):
    return await run_in_threadpool(
        lambda: manager.get_console_connection(name, request_host=request.url.hostname)
    )


@router.get("/domain/{name}/snapshots")
async def list_domain_snapshots(name: str, manager=Depends(get_manager)):
    return await run_in_threadpool(manager.list_snapshots, name)


@router.post("/domain/{name}/start")
async def start_domain(name: str, manager=Depends(get_manager)):
    result = await run_in_threadpool(manager.start_domain, name)
    return result.to_dict()


@router.post("/domain/{name}/stop")
async def stop_domain(name: str, body: Optional[DomainStopRequest] = None, manager=Depends(get_manager)):
    force = bool(body and body.force)
    result = await run_in_threadpool(lambda: manager.stop_domain(name, force=force))
    return result.to_dict()


@router.post("/domain/{name}/reboot")
async def reboot_domain(name: str, manager=Depends(get_manager)):
    result = await run_in_threadpool(manager.reboot_domain, name)
    return result.to_dict()


@router.post("/domain/{name}/delete")
async def delete_domain(name: str, body: Optional[DomainDeleteRequest] = None, manager=Depends(get_manager)):
    delete_storage = bool(body and body.delete_storage)
    result = await run_in_threadpool(lambda: manager.delete_domain(name, delete_storage=delete_storage))
    return result.to_dict()


@router.post("/domain/{name}/snapshot/create")
async def create_domain_snapshot(
    name: str,
    body: Optional[SnapshotCreateRequest] = None,
    manager=Depends(get_manager),
):
    snapshot_name = body.name if body else None
    description = body.description if body else None
    result = await run_in_threadpool(manager.create_snapshot, name, snapshot_name, description)
    return result.to_dict()


__all__ = [
    "router",
    "DomainStopRequest",
    "DomainDeleteRequest",
    "SnapshotCreateRequest",
]
