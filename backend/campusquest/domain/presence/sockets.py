"""Socket.IO namespace for the live campus map."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Set

import socketio
from pydantic import ValidationError

from campusquest.domain.presence.broadcast import BroadcastRouter
from campusquest.domain.presence.exceptions import DuplicateConnection, UnknownConnection
from campusquest.domain.presence.schemas import ChatPayload, IdentifyPayload, PositionPayload
from campusquest.domain.presence.table import PresenceTable
from campusquest.domain.quests import outbox
from campusquest.domain.quests.schemas import ZoneOut
from campusquest.domain.quests.service import QuestService
from campusquest.infra import jwt as jwt_helper
from campusquest.infra.rate_limit import allow as rate_allow
from campusquest.obs import logging as obs_logging
from campusquest.obs import metrics as obs_metrics
from campusquest.settings import settings

logger = logging.getLogger(__name__)

_namespace: Optional["MapNamespace"] = None


@contextmanager
def _socket_context(sid: str, user_id: Optional[str] = None) -> Iterator[None]:
    tokens = obs_logging.bind_context(connection_id=sid, user_id=user_id)
    try:
        yield
    finally:
        obs_logging.reset_context(tokens)


class MapNamespace(socketio.AsyncNamespace):
    """Presence, quest proximity and chat for map clients.

    Events from one connection are handled under that connection's lock, so
    its updates are applied and broadcast in arrival order and its disconnect
    is observed after them. Quest persistence runs after the lock is released.
    """

    def __init__(self, service: QuestService, table: Optional[PresenceTable] = None) -> None:
        super().__init__("/map")
        self.service = service
        self.table = table or PresenceTable()
        self.router = BroadcastRouter(self.table, self)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._window_notices: Dict[str, Set[str]] = {}
        service.coordinator.set_listener(self)

    # PresenceTransport
    async def send(self, event: str, payload: dict, to: str) -> None:
        await self.emit(event, payload, room=to)

    # CompletionListener
    async def notify_balance_changed(self, user_id: str, new_balance: int) -> None:
        await self.emit_to_user(user_id, "wallet.balance", {"user_id": user_id, "balance": int(new_balance)})

    async def notify_zone_visited(self, user_id: str, zone_id: str) -> None:
        payload = {"zone_id": zone_id}
        index = self.service.catalog.get(user_id)
        zone = index.get(zone_id) if index is not None else None
        if zone is not None:
            payload["name"] = zone.name
            payload["reward"] = zone.reward_points
        await self.emit_to_user(user_id, "quest.visited", payload)

    async def emit_to_user(self, user_id: str, event: str, payload: dict) -> int:
        targets = [entry.connection_id for entry in self.table.connections_for_user(user_id)]
        for sid in targets:
            await self.emit(event, payload, room=sid)
        return len(targets)

    async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
        obs_metrics.socket_connected(self.namespace)
        try:
            self.table.register_connection(sid)
        except DuplicateConnection:
            obs_metrics.socket_disconnected(self.namespace)
            obs_metrics.inc_presence_reject("duplicate_connection")
            logger.warning("map connect rejected duplicate sid=%s", sid)
            raise ConnectionRefusedError("duplicate_connection") from None
        obs_metrics.set_presence_online(len(self.table))
        with _socket_context(sid):
            async with self._lock_for(sid):
                await self.router.on_connect(sid)
            logger.info("map connect sid=%s online=%s", sid, len(self.table))

    async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
        obs_metrics.socket_disconnected(self.namespace)
        with _socket_context(sid):
            async with self._lock_for(sid):
                removed = await self.router.on_disconnect(sid)
            self._locks.pop(sid, None)
            self._window_notices.pop(sid, None)
            obs_metrics.set_presence_online(len(self.table))
            if removed is None:
                return
            logger.info("map disconnect sid=%s user=%s reason=%s", sid, removed.bound_user_id, reason)
            if removed.bound_user_id:
                self._release_user(removed.bound_user_id)

    async def on_position(self, sid: str, data: Optional[dict] = None) -> None:
        obs_metrics.socket_event(self.namespace, "position")
        with _socket_context(sid):
            async with self._lock_for(sid):
                if sid not in self.table:
                    await self._reject(sid, "unknown_connection")
                    return
                if not await self._check_limits(
                    "position",
                    sid,
                    limit=settings.position_rate_limit,
                    window=settings.position_rate_window_seconds,
                ):
                    return
                try:
                    payload = PositionPayload.model_validate(data or {})
                except ValidationError:
                    await self._warn(sid, "invalid_payload")
                    return
                try:
                    self.table.update_position(sid, payload.lat, payload.lon)
                except UnknownConnection:
                    await self._reject(sid, "unknown_connection")
                    return
                await self.router.on_position_change(sid)
                entry = self.table.get(sid)
            user_id = entry.bound_user_id if entry is not None else None
            if user_id:
                await self._evaluate_quests(sid, user_id, payload.lat, payload.lon)

    async def on_identify(self, sid: str, data: Optional[dict] = None) -> None:
        """Bind this connection to a user.

        A signed access token in `token` is the normal path; its `sub` becomes
        the user id. A bare `userId` is only honoured when the service runs with
        a dev environment, otherwise the event is answered with `unauthorized`.
        """
        obs_metrics.socket_event(self.namespace, "identify")
        with _socket_context(sid):
            try:
                payload = IdentifyPayload.model_validate(data or {})
            except ValidationError:
                await self._warn(sid, "invalid_payload")
                return
            user_id, token_name = self._resolve_identity(payload)
            if not user_id:
                obs_metrics.inc_presence_reject("unauthorized")
                await self._warn(sid, "unauthorized")
                return
            async with self._lock_for(sid):
                previous = self.table.get(sid)
                if previous is None:
                    await self._reject(sid, "unknown_connection")
                    return
                entry = self.table.identify(
                    sid,
                    user_id,
                    display_name=payload.display_name or token_name,
                    avatar_ref=payload.avatar_ref,
                )
                await self.router.on_identify(sid)
            logger.info("map identify sid=%s user=%s", sid, user_id)
            if previous.bound_user_id and previous.bound_user_id != user_id:
                self._window_notices.pop(sid, None)
                self._release_user(previous.bound_user_id)

            zones = await self.service.session_started(user_id)
            visited = await self.service.coordinator.visited_for(user_id)
            if not self._still_bound(sid, user_id):
                self._release_user(user_id)
                return
            await self.emit(
                "quest.zones",
                {
                    "zones": [
                        ZoneOut.from_zone(zone, visited=zone.id in visited).model_dump(mode="json")
                        for zone in sorted(zones, key=lambda item: item.id)
                    ],
                    "visited": sorted(visited),
                },
                room=sid,
            )
            if entry.position is not None:
                lat, lon = entry.position
                await self._evaluate_quests(sid, user_id, lat, lon)

    async def on_chat_message(self, sid: str, data: Optional[dict] = None) -> None:
        obs_metrics.socket_event(self.namespace, "chat_message")
        with _socket_context(sid):
            async with self._lock_for(sid):
                if sid not in self.table:
                    await self._reject(sid, "unknown_connection")
                    return
                if not await self._check_limits(
                    "chat",
                    sid,
                    limit=settings.chat_rate_limit,
                    window=settings.chat_rate_window_seconds,
                ):
                    return
                try:
                    payload = ChatPayload.model_validate(data or {})
                except ValidationError:
                    await self._warn(sid, "invalid_payload")
                    return
                if len(payload.text) > settings.chat_max_length:
                    await self._warn(sid, "message_too_long")
                    return
                broadcast = settings.chat_broadcast_target
                if payload.to == broadcast:
                    target = broadcast
                else:
                    target = payload.to_user_id or payload.to
                if not target:
                    await self._warn(sid, "invalid_payload")
                    return
                delivery = await self.router.route_chat_message(sid, payload.text, target)
            logger.debug("chat routed sid=%s channel=%s recipients=%s", sid, target, len(delivery.recipients))

    async def _evaluate_quests(self, sid: str, user_id: str, lat: float, lon: float) -> None:
        report = await self.service.position_reported(user_id, lat, lon)
        for outcome in report.outcomes:
            if outcome.created:
                await outbox.append_completion(outcome)
        if not self._still_bound(sid, user_id):
            # Disconnected or rebound while persistence was running.
            self._release_user(user_id)
            return
        notified = self._window_notices.setdefault(sid, set())
        for zone, violation in report.outside_window:
            if zone.id in notified:
                continue
            notified.add(zone.id)
            await self.emit("quest.window", dict(violation.to_dict(), name=zone.name), room=sid)
        for outcome in report.outcomes:
            if outcome.succeeded:
                continue
            await self.emit(
                "quest.failed",
                {"zone_id": outcome.zone_id, "reason": outcome.reason, "retryable": True},
                room=sid,
            )

    def _resolve_identity(self, payload: IdentifyPayload) -> tuple[Optional[str], Optional[str]]:
        if payload.token:
            try:
                identity = jwt_helper.identity_from_token(payload.token)
            except Exception:
                logger.info("identify token rejected", exc_info=True)
                return None, None
            return identity.user_id, identity.display_name
        if payload.user_id and settings.is_dev():
            return payload.user_id, None
        return None, None

    def _still_bound(self, sid: str, user_id: str) -> bool:
        entry = self.table.get(sid)
        return entry is not None and entry.bound_user_id == user_id

    def _release_user(self, user_id: str) -> None:
        if not self.table.connections_for_user(user_id):
            self.service.session_ended(user_id)

    def _lock_for(self, sid: str) -> asyncio.Lock:
        lock = self._locks.get(sid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[sid] = lock
        return lock

    async def _check_limits(self, kind: str, sid: str, *, limit: int, window: int) -> bool:
        if await rate_allow(f"map_{kind}", sid, limit=limit, window_seconds=window):
            return True
        obs_metrics.inc_rate_limited(kind)
        await self._warn(sid, "rate_limited")
        return False

    async def _reject(self, sid: str, code: str) -> None:
        obs_metrics.inc_presence_reject(code)
        await self._warn(sid, code)

    async def _warn(self, sid: str, code: str) -> None:
        await self.emit("sys.warn", {"code": code}, room=sid)


def set_namespace(namespace: Optional[MapNamespace]) -> None:
    global _namespace
    _namespace = namespace


def get_namespace() -> Optional[MapNamespace]:
    return _namespace
