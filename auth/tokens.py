"""
auth/tokens.py -- Signed bearer tokens (JWT) and claims extraction.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the account id (as the "sub" claim), role, iat, and exp. There is no
       revocation list; expiry is the only invalidation mechanism.

  Expiry is checked here, against an injectable clock, rather than inside
       jose's decode(). That keeps "expired" distinguishable from "malformed"
       without depending on the exception subclass jose happens to raise, and
       lets tests move time without sleeping.

  SECRET_KEY: sourced once from core.config.get_settings() when the issuer is
       built (TokenIssuer.from_settings). The issuer holds it as immutable
       state for the process lifetime; nothing re-reads it per call.

Layer rule: no imports from notify/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from auth.models import MAX_ROLE, MIN_ROLE, Claims
from core.config import Settings
from core.errors import FatalError, MalformedTokenError, TokenExpiredError

logger = logging.getLogger("keyward.auth")

_ALGORITHM = "HS256"
_MIN_KEY_LENGTH = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_int(payload: dict[str, Any], name: str) -> int:
    value = payload.get(name)
    # bool is an int subclass; a token with role=true is not a role.
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedTokenError(f"Token claim '{name}' is missing or invalid.")
    return value


class TokenIssuer:
    """Mint and validate signed bearer tokens.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        token = issuer.issue(account_id=42, role=3)
        claims = issuer.validate(token)
    """

    def __init__(
        self,
        secret_key: str,
        lifetime_seconds: int,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret_key or len(secret_key) < _MIN_KEY_LENGTH:
            raise FatalError("Token signing key must be at least 32 characters.")
        if lifetime_seconds <= 0:
            raise FatalError("Token lifetime must be positive.")
        self._secret_key = secret_key
        self._lifetime = timedelta(seconds=lifetime_seconds)
        self._clock = clock or _utcnow

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Callable[[], datetime]] = None) -> "TokenIssuer":
        return cls(settings.secret_key, settings.token_lifetime_seconds, clock=clock)

    @property
    def lifetime_seconds(self) -> int:
        return int(self._lifetime.total_seconds())

    def issue(self, account_id: int, role: int) -> str:
        """Encode a signed token for an account snapshot taken at login time."""
        issued = self._clock().replace(microsecond=0)
        expires = issued + self._lifetime
        payload = {
            "sub": str(account_id),
            "role": int(role),
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def validate(self, token: str) -> Claims:
        """Verify signature, structure, and expiry. Return the claims.

        Raises:
            MalformedTokenError: bad structure, bad signature, wrong key, bad claims.
            TokenExpiredError:   signature valid but now > exp.
        """
        if not isinstance(token, str) or not token:
            raise MalformedTokenError()
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise MalformedTokenError() from exc

        try:
            account_id = int(payload.get("sub", ""))
        except (TypeError, ValueError) as exc:
            raise MalformedTokenError("Token subject is invalid.") from exc
        role = _require_int(payload, "role")
        if not MIN_ROLE <= role <= MAX_ROLE:
            raise MalformedTokenError("Token role is out of range.")
        iat = _require_int(payload, "iat")
        exp = _require_int(payload, "exp")

        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if self._clock() > expires_at:
            raise TokenExpiredError()
        return Claims(
            account_id=account_id,
            role=role,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=expires_at,
        )
