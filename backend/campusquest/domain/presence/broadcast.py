"""Fan-out of presence changes and chat messages to live connections."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol

from campusquest.domain.presence.exceptions import UnknownConnection
from campusquest.domain.presence.table import Connection, PresenceTable
from campusquest.obs import metrics as obs_metrics
from campusquest.settings import settings

logger = logging.getLogger(__name__)

EVENT_SNAPSHOT = "presence.snapshot"
EVENT_JOINED = "presence.joined"
EVENT_UPDATED = "presence.updated"
EVENT_LEFT = "presence.left"
EVENT_CHAT = "chat.message"

DEFAULT_SENDER_NAME = "Anonymous"


class PresenceTransport(Protocol):
    """Delivers one event to one live connection."""

    async def send(self, event: str, payload: dict, to: str) -> None: ...


@dataclass(frozen=True, slots=True)
class ChatDelivery:
    message: dict
    recipients: tuple[str, ...]


class BroadcastRouter:
    """Decides the audience for every presence and chat event.

    The router reads the presence table after the caller has mutated it, except
    for disconnects where removal and the leave notice happen here together.
    """

    def __init__(
        self,
        table: PresenceTable,
        transport: PresenceTransport,
        *,
        broadcast_target: Optional[str] = None,
    ) -> None:
        self._table = table
        self._transport = transport
        self._broadcast_target = broadcast_target

    @property
    def broadcast_target(self) -> str:
        return self._broadcast_target or settings.chat_broadcast_target

    async def on_connect(self, connection_id: str) -> List[str]:
        """Seed the newcomer with the full table, then announce it to everyone else."""
        entry = self._require(connection_id)
        snapshot = [item.to_dict() for item in self._table.snapshot()]
        await self._transport.send(EVENT_SNAPSHOT, {"connections": snapshot}, connection_id)
        return await self._fanout(EVENT_JOINED, entry.to_dict(), self._others(connection_id))

    async def on_position_change(self, connection_id: str) -> List[str]:
        entry = self._require(connection_id)
        return await self._fanout(EVENT_UPDATED, entry.to_dict(), self._others(connection_id))

    async def on_identify(self, connection_id: str) -> List[str]:
        # Identity changes go to the originator as well, for its other views.
        entry = self._require(connection_id)
        return await self._fanout(EVENT_UPDATED, entry.to_dict(), self._all())

    async def on_disconnect(self, connection_id: str) -> Optional[Connection]:
        removed = self._table.remove(connection_id)
        if removed is None:
            logger.debug("disconnect for unknown connection=%s ignored", connection_id)
            return None
        await self._fanout(EVENT_LEFT, {"connection_id": connection_id}, self._all())
        return removed

    async def route_chat_message(self, sender_id: str, text: str, target: str) -> ChatDelivery:
        sender = self._require(sender_id)
        message = {
            "id": f"{int(time.time() * 1000)}-{sender_id}",
            "text": text,
            "sender_name": sender.display_name or DEFAULT_SENDER_NAME,
            "sender_avatar": sender.avatar_ref or "",
            "sender_user_id": sender.bound_user_id or sender_id,
            "channel": target,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if target == self.broadcast_target:
            recipients = await self._fanout(EVENT_CHAT, message, self._all())
            obs_metrics.inc_chat_delivery("broadcast", len(recipients))
        else:
            targets = self._resolve_targets(target)
            if sender_id not in targets:
                targets.append(sender_id)
            recipients = await self._fanout(EVENT_CHAT, message, targets)
            obs_metrics.inc_chat_delivery("direct", len(recipients))
            if len(recipients) == 1:
                logger.info("chat target has no live connections target=%s", target)
        return ChatDelivery(message=message, recipients=tuple(recipients))

    def _resolve_targets(self, target: str) -> List[str]:
        """A live connection id addresses that connection; anything else is a user id."""
        if target in self._table:
            return [target]
        return [entry.connection_id for entry in self._table.connections_for_user(target)]

    def _require(self, connection_id: str) -> Connection:
        entry = self._table.get(connection_id)
        if entry is None:
            raise UnknownConnection(connection_id)
        return entry

    def _all(self) -> List[str]:
        return [entry.connection_id for entry in self._table.snapshot()]

    def _others(self, connection_id: str) -> List[str]:
        return [sid for sid in self._all() if sid != connection_id]

    async def _fanout(self, event: str, payload: dict, targets: Iterable[str]) -> List[str]:
        """Deliver to each target; a failed delivery is logged and skipped."""
        delivered: List[str] = []
        for sid in targets:
            try:
                await self._transport.send(event, payload, sid)
            except Exception:
                logger.warning("delivery failed event=%s connection=%s", event, sid, exc_info=True)
                continue
            delivered.append(sid)
        return delivered
