"""REST API surface for the live presence table."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from campusquest.domain.presence import sockets as map_sockets
from campusquest.domain.presence.schemas import ConnectionOut, PresenceSnapshotResponse
from campusquest.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(tags=["presence"])


@router.get("/presence/snapshot", response_model=PresenceSnapshotResponse)
async def presence_snapshot(
    auth_user: AuthenticatedUser = Depends(get_current_user),
) -> PresenceSnapshotResponse:
    namespace = map_sockets.get_namespace()
    if namespace is None:
        return PresenceSnapshotResponse(online=0)
    entries = namespace.table.snapshot()
    return PresenceSnapshotResponse(
        online=len(entries),
        connections=[ConnectionOut(**entry.to_dict()) for entry in entries],
    )
