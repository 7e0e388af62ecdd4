"""
Identity claim reader.

Turns a verified bearer token into a tenant-scoped caller identity. Tokens are
HS256 JWTs signed with the application secret; owners (LINE mini-app users)
and staff (console users) carry different claim sets.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import jwt

from .errors import Forbidden, Unauthorized

JWT_ALGORITHM = "HS256"
OWNER_TOKEN_TYPE = "owner"
STAFF_TOKEN_TYPE = "staff"


@dataclass(frozen=True)
class CallerIdentity:
    """Who is calling, and on behalf of which store."""

    store_id: int
    role: str
    owner_id: int | None = None
    staff_id: int | None = None
    is_store_admin: bool = False

    @property
    def is_staff(self) -> bool:
        return self.role == STAFF_TOKEN_TYPE

    @property
    def is_owner(self) -> bool:
        return self.role == OWNER_TOKEN_TYPE

    @property
    def actor(self) -> str:
        """Short audit label such as ``owner:12`` or ``staff:3``."""
        if self.is_staff:
            return f"staff:{self.staff_id}"
        return f"owner:{self.owner_id}"

    def require_staff(self) -> None:
        if not self.is_staff:
            raise Forbidden("This endpoint is for store staff only")

    def require_store_admin(self) -> None:
        self.require_staff()
        if not self.is_store_admin:
            raise Forbidden("Only the store administrator can do this")


class ClaimReader:
    """Issue and read identity tokens."""

    def __init__(
        self,
        secret: str,
        *,
        owner_token_hours: int = 24 * 30,
        staff_token_hours: int = 24,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        if not secret:
            raise RuntimeError("A signing secret is required")
        self._secret = secret
        self._owner_token_hours = owner_token_hours
        self._staff_token_hours = staff_token_hours
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))

    def _encode(self, payload: dict[str, Any], hours: int) -> str:
        now = self._clock()
        payload.update({"iat": now, "exp": now + dt.timedelta(hours=hours)})
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def issue_owner_token(
        self, *, owner_id: int, store_id: int, line_user_id: str | None = None
    ) -> str:
        """
        Create a token for a pet owner using the LINE mini-app.

        Args:
            owner_id: Owner database ID
            store_id: Store the owner is registered with
            line_user_id: LINE user id, when the login came through LINE
        """
        payload: dict[str, Any] = {
            "sub": str(owner_id),
            "type": OWNER_TOKEN_TYPE,
            "ownerId": owner_id,
            "storeId": store_id,
        }
        if line_user_id:
            payload["lineUserId"] = line_user_id
        return self._encode(payload, self._owner_token_hours)

    def issue_staff_token(
        self, *, staff_id: int, store_id: int, is_store_admin: bool = False
    ) -> str:
        payload: dict[str, Any] = {
            "sub": str(staff_id),
            "type": STAFF_TOKEN_TYPE,
            "staffId": staff_id,
            "storeId": store_id,
            "isOwner": is_store_admin,
        }
        return self._encode(payload, self._staff_token_hours)

    def read(self, token: str | None) -> CallerIdentity:
        """
        Validate a bearer token and return the caller identity.

        Raises:
            Unauthorized: token missing, malformed, expired or of unknown type
        """
        if not token:
            raise Unauthorized("Authentication token was not provided")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("Authentication token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized("Invalid authentication token") from exc

        token_type = claims.get("type")
        store_id = claims.get("storeId")
        if not isinstance(store_id, int):
            raise Unauthorized("Token is not bound to a store")
        if token_type == OWNER_TOKEN_TYPE and isinstance(claims.get("ownerId"), int):
            return CallerIdentity(
                store_id=store_id, role=OWNER_TOKEN_TYPE, owner_id=claims["ownerId"]
            )
        if token_type == STAFF_TOKEN_TYPE and isinstance(claims.get("staffId"), int):
            return CallerIdentity(
                store_id=store_id,
                role=STAFF_TOKEN_TYPE,
                staff_id=claims["staffId"],
                is_store_admin=bool(claims.get("isOwner")),
            )
        raise Unauthorized("Unsupported token type")


def extract_bearer_token(headers: Mapping[str, str]) -> str | None:
    """
    Extract a bearer token from request headers.

    Checks the ``Authorization`` header first, then ``X-Access-Token``.
    """
    auth_header = headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return headers.get("X-Access-Token") or None
