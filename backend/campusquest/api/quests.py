"""REST API surface for quest zones and the wallet."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from campusquest.domain.presence import sockets as map_sockets
from campusquest.domain.quests.schemas import QuestListResponse, VisitedResponse, WalletResponse, ZoneOut
from campusquest.domain.quests.service import QuestService, get_service
from campusquest.infra.auth import AuthenticatedUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["quests"])


@router.get("/quests", response_model=QuestListResponse)
async def list_quests(
    auth_user: AuthenticatedUser = Depends(get_current_user),
    service: QuestService = Depends(get_service),
) -> QuestListResponse:
    zones = await service.zones_for(auth_user.id)
    visited = await service.visited_for(auth_user.id)
    items = [ZoneOut.from_zone(zone, visited=zone.id in visited) for zone in sorted(zones, key=lambda z: z.id)]
    return QuestListResponse(zones=items)


@router.get("/quests/visited", response_model=VisitedResponse)
async def list_visited(
    auth_user: AuthenticatedUser = Depends(get_current_user),
    service: QuestService = Depends(get_service),
) -> VisitedResponse:
    visited = await service.visited_for(auth_user.id)
    return VisitedResponse(zone_ids=sorted(visited))


@router.post("/quests/refresh", response_model=QuestListResponse)
async def refresh_quests(
    auth_user: AuthenticatedUser = Depends(get_current_user),
    service: QuestService = Depends(get_service),
) -> QuestListResponse:
    """Invalidate the caller's zone snapshot after a quest was created or accepted."""
    zones = await service.refresh(auth_user.id)
    visited = await service.visited_for(auth_user.id)
    items = [ZoneOut.from_zone(zone, visited=zone.id in visited) for zone in sorted(zones, key=lambda z: z.id)]
    namespace = map_sockets.get_namespace()
    if namespace is not None:
        pushed = await namespace.emit_to_user(
            auth_user.id,
            "quest.zones",
            {"zones": [item.model_dump(mode="json") for item in items], "visited": sorted(visited)},
        )
        logger.debug("zone refresh pushed user=%s connections=%s", auth_user.id, pushed)
    return QuestListResponse(zones=items)


@router.get("/wallet", response_model=WalletResponse)
async def wallet(
    auth_user: AuthenticatedUser = Depends(get_current_user),
    service: QuestService = Depends(get_service),
) -> WalletResponse:
    balance = await service.balance(auth_user.id)
    return WalletResponse(user_id=auth_user.id, balance=balance)
