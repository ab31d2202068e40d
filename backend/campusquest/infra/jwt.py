"""HS256 access tokens shared by the REST API and the map socket.

The same token authenticates `Authorization: Bearer` requests and the
`identify` event; only `sub` is mandatory, `name` and `avatar_url` are
optional profile claims.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from jwt import InvalidTokenError

from campusquest.settings import settings


ISSUER = "campusquest-api"
AUDIENCE = "campusquest-web"
ALGORITHM = "HS256"
LEEWAY_SECONDS = 5


@dataclass(frozen=True, slots=True)
class TokenIdentity:
    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


def encode_access(payload: dict[str, object], *, ttl_seconds: int = 3600) -> str:
    now = int(time.time())
    body: Dict[str, Any] = {"iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + ttl_seconds}
    body.update(payload)
    return jwt.encode(body, settings.secret_key, algorithm=ALGORITHM)


def decode_access(token: str) -> dict[str, object]:
    """Validate signature, expiry, issuer and audience.

    Raises jwt.InvalidTokenError subclasses on failure.
    """
    payload = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[ALGORITHM],
        audience=AUDIENCE,
        issuer=ISSUER,
        leeway=LEEWAY_SECONDS,
        options={"require": ["exp", "iat", "iss", "aud"]},
    )
    if not str(payload.get("sub") or "").strip():
        raise InvalidTokenError("missing_claim:sub")
    return payload  # type: ignore[return-value]


def identity_from_token(token: str) -> TokenIdentity:
    claims = decode_access(token)
    name = claims.get("name") or claims.get("display_name")
    avatar = claims.get("avatar_url")
    return TokenIdentity(
        user_id=str(claims["sub"]).strip(),
        display_name=str(name) if name else None,
        avatar_url=str(avatar) if avatar else None,
    )
