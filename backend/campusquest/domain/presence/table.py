"""In-memory registry of live map connections."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from campusquest.domain.presence.exceptions import DuplicateConnection, UnknownConnection

Position = Tuple[float, float]


@dataclass(frozen=True, slots=True)
class Connection:
	"""State of one live connection; replaced, never mutated in place."""

	connection_id: str
	latitude: Optional[float] = None
	longitude: Optional[float] = None
	bound_user_id: Optional[str] = None
	display_name: Optional[str] = None
	avatar_ref: Optional[str] = None

	@property
	def position(self) -> Optional[Position]:
		if self.latitude is None or self.longitude is None:
			return None
		return (self.latitude, self.longitude)

	def to_dict(self) -> dict:
		return {
			"connection_id": self.connection_id,
			"latitude": self.latitude,
			"longitude": self.longitude,
			"user_id": self.bound_user_id,
			"display_name": self.display_name,
			"avatar_ref": self.avatar_ref,
		}


class PresenceTable:
	"""Owns the connection map; every write goes through these methods.

	Entries are immutable `Connection` values, so `snapshot()` can hand out
	the current entries without copying them individually.
	"""

	def __init__(self) -> None:
		self._connections: Dict[str, Connection] = {}

	def __len__(self) -> int:
		return len(self._connections)

	def __contains__(self, connection_id: object) -> bool:
		return connection_id in self._connections

	def register_connection(self, connection_id: str) -> Connection:
		if connection_id in self._connections:
			raise DuplicateConnection(connection_id)
		entry = Connection(connection_id=connection_id)
		self._connections[connection_id] = entry
		return entry

	def update_position(self, connection_id: str, lat: float, lon: float) -> Tuple[Optional[Position], Position]:
		"""Overwrite the position and return (previous, new)."""
		current = self._require(connection_id)
		previous = current.position
		self._connections[connection_id] = dataclasses.replace(current, latitude=float(lat), longitude=float(lon))
		return previous, (float(lat), float(lon))

	def identify(
		self,
		connection_id: str,
		user_id: str,
		display_name: Optional[str] = None,
		avatar_ref: Optional[str] = None,
	) -> Connection:
		current = self._require(connection_id)
		updated = dataclasses.replace(
			current,
			bound_user_id=user_id,
			display_name=display_name,
			avatar_ref=avatar_ref,
		)
		self._connections[connection_id] = updated
		return updated

	def remove(self, connection_id: str) -> Optional[Connection]:
		"""Delete the entry; a missing id is a no-op returning None."""
		return self._connections.pop(connection_id, None)

	def get(self, connection_id: str) -> Optional[Connection]:
		return self._connections.get(connection_id)

	def snapshot(self) -> Tuple[Connection, ...]:
		return tuple(self._connections.values())

	def connections_for_user(self, user_id: str) -> List[Connection]:
		return [entry for entry in self._connections.values() if entry.bound_user_id == user_id]

	def _require(self, connection_id: str) -> Connection:
		entry = self._connections.get(connection_id)
		if entry is None:
			raise UnknownConnection(connection_id)
		return entry
