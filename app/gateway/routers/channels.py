"""Channel control endpoints: pairing, status, configuration, removal, outbound."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException

from app.core.errors import ChannelNotFoundError
from app.gateway.dependencies import get_channel_manager
from app.gateway.schemas import (
    ChannelConfigUpdate,
    ChannelStatus,
    DispatchResult,
    OutboundRequest,
    PairingArtifact,
)
from app.sessions.manager import ChannelManager

router = APIRouter(prefix="/tenants/{tenant_id}", tags=["channels"])
logger = structlog.get_logger()


def _not_found(e: ChannelNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.get("/channels", response_model=list[ChannelStatus])
async def list_channels(tenant_id: str, manager: ChannelManager = Depends(get_channel_manager)) -> list[ChannelStatus]:
    return await manager.list_channels(tenant_id)


@router.post("/channels/{slot_id}/start", response_model=ChannelStatus)
async def start_channel(
    tenant_id: str, slot_id: int, manager: ChannelManager = Depends(get_channel_manager)
) -> ChannelStatus:
    return await manager.start_channel(tenant_id, slot_id)


@router.get("/channels/{slot_id}/qr", response_model=PairingArtifact)
async def get_pairing_artifact(
    tenant_id: str, slot_id: int, manager: ChannelManager = Depends(get_channel_manager)
) -> PairingArtifact:
    try:
        return await manager.get_pairing_artifact(tenant_id, slot_id)
    except ChannelNotFoundError as e:
        raise _not_found(e)


@router.get("/channels/{slot_id}", response_model=ChannelStatus)
async def get_status(tenant_id: str, slot_id: int, manager: ChannelManager = Depends(get_channel_manager)) -> ChannelStatus:
    try:
        return await manager.get_status(tenant_id, slot_id)
    except ChannelNotFoundError as e:
        raise _not_found(e)


@router.patch("/channels/{slot_id}", response_model=ChannelStatus)
async def configure_channel(
    tenant_id: str,
    slot_id: int,
    body: ChannelConfigUpdate,
    manager: ChannelManager = Depends(get_channel_manager),
) -> ChannelStatus:
    try:
        return await manager.configure_channel(
            tenant_id,
            slot_id,
            priority=body.priority,
            add_tag=body.add_tag,
            remove_tag=body.remove_tag,
        )
    except ChannelNotFoundError as e:
        raise _not_found(e)


@router.delete("/channels/{slot_id}")
async def remove_channel(
    tenant_id: str, slot_id: int, manager: ChannelManager = Depends(get_channel_manager)
) -> dict[str, Any]:
    try:
        return await manager.remove_channel(tenant_id, slot_id)
    except ChannelNotFoundError as e:
        raise _not_found(e)


@router.delete("")
async def remove_tenant(tenant_id: str, manager: ChannelManager = Depends(get_channel_manager)) -> dict[str, Any]:
    return await manager.remove_tenant(tenant_id)


@router.post("/messages", response_model=DispatchResult)
async def dispatch_outbound(
    tenant_id: str, body: OutboundRequest, manager: ChannelManager = Depends(get_channel_manager)
) -> DispatchResult:
    if body.tenant_id != tenant_id:
        raise HTTPException(status_code=400, detail="tenant_id in path and body differ")
    result = await manager.dispatch_outbound(body)
    logger.info("gateway.outbound", tenant_id=tenant_id, outcome=result.outcome.value)
    return result
