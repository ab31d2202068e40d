"""Pydantic schemas for map socket payloads and presence endpoints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class PositionPayload(BaseModel):
	"""Raw position reported by the client; the server evaluates geofences itself."""

	lat: float = Field(..., ge=-90.0, le=90.0, validation_alias=AliasChoices("lat", "latitude"))
	lon: float = Field(..., ge=-180.0, le=180.0, validation_alias=AliasChoices("lon", "lng", "longitude"))


class IdentifyPayload(BaseModel):
	model_config = ConfigDict(str_strip_whitespace=True)

	user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
	display_name: Optional[str] = Field(
		default=None,
		max_length=80,
		validation_alias=AliasChoices("display_name", "displayName"),
	)
	avatar_ref: Optional[str] = Field(
		default=None,
		max_length=2048,
		validation_alias=AliasChoices("avatar_ref", "avatarRef", "avatarUrl", "avatar_url"),
	)
	token: Optional[str] = None


class ChatPayload(BaseModel):
	model_config = ConfigDict(str_strip_whitespace=True)

	text: str = Field(..., min_length=1)
	to: Optional[str] = None
	to_user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("to_user_id", "toUserId", "target"))

	@field_validator("to", "to_user_id", mode="before")
	def _blank_to_none(cls, value):
		if isinstance(value, str) and not value.strip():
			return None
		return value


class ConnectionOut(BaseModel):
	connection_id: str
	latitude: Optional[float] = None
	longitude: Optional[float] = None
	user_id: Optional[str] = None
	display_name: Optional[str] = None
	avatar_ref: Optional[str] = None


class PresenceSnapshotResponse(BaseModel):
	online: int
	connections: List[ConnectionOut] = Field(default_factory=list)
