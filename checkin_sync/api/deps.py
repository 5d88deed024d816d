from uuid import UUID

from fastapi import Depends, HTTPException, Request

from checkin_sync.core.security import get_current_user
from checkin_sync.services.gateway import PersistenceGateway
from checkin_sync.services.registry import ParticipantRuntime, SessionRegistry


def get_gateway(request: Request) -> PersistenceGateway:
    return request.app.state.gateway


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


async def get_participant(
    user=Depends(get_current_user),
    gateway: PersistenceGateway = Depends(get_gateway),
    registry: SessionRegistry = Depends(get_registry),
) -> ParticipantRuntime:
    """Runtime for the calling partner, created on first use."""
    user_id = UUID(user["user_id"])
    result = await gateway.fetch_couple_id(user_id)
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error.message)
    if result.data is None:
        raise HTTPException(status_code=404, detail="User is not part of a couple")
    return await registry.get_or_create(result.data, user_id)
