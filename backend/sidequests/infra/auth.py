"""Caller identity for FastAPI endpoints and socket connections.

Sign-in lives in the hosted identity provider; this backend only needs to know
which user a request is acting for. Outside development a gateway in front of
the API sets ``X-User-Id`` after verifying the session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, status


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	display_name: Optional[str] = None


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_name: Optional[str] = Header(default=None, alias="X-User-Name"),
) -> AuthenticatedUser:
	user_id = (x_user_id or "").strip()
	if not user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_identity")
	return AuthenticatedUser(id=user_id, display_name=x_user_name)


def parse_socket_identity(environ: dict, auth: Optional[dict]) -> AuthenticatedUser:
	"""Resolve the caller of a Socket.IO connection from auth payload or headers."""
	user_id = ""
	if auth and isinstance(auth, dict):
		user_id = str(auth.get("user_id") or "").strip()
	if not user_id:
		scope = environ.get("asgi.scope") or {}
		for key, value in scope.get("headers", []):
			if key.lower() == b"x-user-id":
				user_id = value.decode().strip()
				break
	if not user_id:
		raise ValueError("missing_identity")
	return AuthenticatedUser(id=user_id)
