"""
QR token service.

A store's check-in kiosk displays (or has printed) a QR code holding a signed
token ``{storeId, type: "checkin"}``. The mini-app scans it and presents it at
check-in and check-out. The token is long lived and only changes when staff
explicitly regenerate it, but it is always bound to a single store and a
single purpose.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable

import jwt

from .config import DEFAULT_QR_VALIDITY_DAYS
from .errors import InvalidToken, StoreMismatch, TokenExpired
from .logging_config import get_logger

JWT_ALGORITHM = "HS256"
CHECKIN_TOKEN_TYPE = "checkin"

logger = get_logger(__name__)


class QRTokenService:
    def __init__(
        self,
        secret: str,
        *,
        validity_days: int = DEFAULT_QR_VALIDITY_DAYS,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        if not secret:
            raise RuntimeError("A signing secret is required")
        self._secret = secret
        self._validity = dt.timedelta(days=validity_days)
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))

    def issue(self, store_id: int, token_type: str = CHECKIN_TOKEN_TYPE) -> str:
        """Return the kiosk token for ``store_id``."""

        now = self._clock()
        payload = {
            "storeId": store_id,
            "type": token_type,
            "iat": now,
            "exp": now + self._validity,
        }
        logger.info("Issued QR token", extra={"store_id": store_id, "token_type": token_type})
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def decode(self, token: str, expected_type: str = CHECKIN_TOKEN_TYPE) -> dict[str, Any]:
        """Check signature, expiry and purpose without looking at the store."""

        if not token or not isinstance(token, str):
            raise InvalidToken()
        try:
            claims = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidToken() from exc
        if claims.get("type") != expected_type or not isinstance(claims.get("storeId"), int):
            raise InvalidToken()
        return claims

    def verify(
        self,
        token: str,
        expected_store_id: int,
        expected_type: str = CHECKIN_TOKEN_TYPE,
    ) -> dict[str, Any]:
        """
        Verify a scanned token for a given store.

        Raises:
            InvalidToken: bad signature, malformed payload or wrong purpose
            TokenExpired: signature valid but past its expiry
            StoreMismatch: token belongs to another store's kiosk
        """
        claims = self.decode(token, expected_type)
        if claims["storeId"] != expected_store_id:
            logger.warning(
                "QR token store mismatch",
                extra={"token_store_id": claims["storeId"], "store_id": expected_store_id},
            )
            raise StoreMismatch()
        return claims
