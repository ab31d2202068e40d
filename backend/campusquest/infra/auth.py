"""FastAPI dependencies resolving the caller of a REST endpoint.

Bearer JWTs are always honoured; the X-User-Id header fallback is only
respected in development.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from campusquest.infra import jwt as jwt_helper
from campusquest.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized() -> HTTPException:
	return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


def verify_access_jwt(token: str) -> AuthenticatedUser:
	try:
		identity = jwt_helper.identity_from_token(token)
	except Exception:
		raise _unauthorized() from None
	return AuthenticatedUser(
		id=identity.user_id,
		display_name=identity.display_name,
		avatar_url=identity.avatar_url,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id and x_user_id.strip():
		return AuthenticatedUser(id=x_user_id.strip())
	raise _unauthorized()
