"""
Internal Token Management Module
================================

Creation and verification of the JWTs this gateway signs itself (HS256):

- access tokens   {id, email, role, application}, short-lived
- refresh tokens  {id}, long-lived, separate secret, revocable
- approval tokens {email}, embedded in admin approval/deny links
- reset tokens    {id}, embedded in password reset links

Every token carries a "type" claim so a token minted for one purpose can
never be replayed for another, even when two purposes share a secret.

Refresh tokens are additionally checked against RefreshTokenStore, which
keeps at most one valid refresh token per user id. Replacing or deleting the
stored value revokes older tokens whose signatures are still valid.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from stormgate.config import Settings
from stormgate.errors import ConfigurationError, TokenExpired, TokenInvalid

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
APPROVAL = "account_approval"
PASSWORD_RESET = "password_reset"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Token Service
# =============================================================================

class TokenService:
    """
    Issues and verifies internally-signed tokens.

    Args:
        settings: Application settings (secrets and lifetimes)
        clock: Returns the current UTC datetime; used for iat/exp when issuing
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = _utcnow):
        self._secrets = {
            ACCESS: settings.ACCESS_TOKEN_SECRET,
            REFRESH: settings.REFRESH_TOKEN_SECRET,
            APPROVAL: settings.approval_token_secret,
            PASSWORD_RESET: settings.password_reset_secret,
        }
        for purpose, secret in self._secrets.items():
            if not secret:
                raise ConfigurationError(f"No signing secret configured for {purpose} tokens")

        self._lifetimes = {
            ACCESS: timedelta(minutes=settings.ACCESS_TOKEN_EXPIRY_MINUTES),
            REFRESH: timedelta(days=settings.REFRESH_TOKEN_EXPIRY_DAYS),
            APPROVAL: timedelta(hours=settings.APPROVAL_TOKEN_EXPIRY_HOURS),
            PASSWORD_RESET: timedelta(minutes=settings.PASSWORD_RESET_EXPIRY_MINUTES),
        }
        self._clock = clock

    # -------------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------------

    def issue_access_token(self, claims: Dict[str, Any]) -> str:
        """
        Sign an access token carrying id, email, role and application.

        Args:
            claims: Mapping with at least 'id'; email/role/application are copied
                    when present, anything else is ignored

        Returns:
            Encoded JWT string
        """
        if not claims.get("id"):
            raise ValueError("Access token claims require an 'id'")

        payload = {
            "id": str(claims["id"]),
            "email": claims.get("email"),
            "role": claims.get("role"),
            "application": claims.get("application"),
        }
        return self._encode(ACCESS, payload)

    def issue_refresh_token(self, user_id: str) -> str:
        return self._encode(REFRESH, {"id": str(user_id)})

    def issue_approval_token(self, email: str) -> str:
        return self._encode(APPROVAL, {"email": email})

    def issue_reset_token(self, user_id: str) -> str:
        return self._encode(PASSWORD_RESET, {"id": str(user_id)})

    # -------------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------------

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        """
        Verify an access token.

        Returns:
            Decoded claims {id, email, role, application}

        Raises:
            TokenExpired: If the token is past its expiry
            TokenInvalid: On any other signature, format or claim problem
        """
        payload = self._decode(ACCESS, token)
        if not payload.get("id"):
            raise TokenInvalid("Invalid token")
        return {k: payload.get(k) for k in ("id", "email", "role", "application")}

    def verify_refresh_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a refresh token's signature and expiry.

        Callers must also check RefreshTokenStore.is_current(); a mismatch
        there means the token was revoked.
        """
        payload = self._decode(REFRESH, token)
        if not payload.get("id"):
            raise TokenInvalid("Invalid token")
        return {"id": payload["id"]}

    def verify_approval_token(self, token: str) -> str:
        """Return the email encoded in a valid approval token."""
        payload = self._decode(APPROVAL, token)
        email = payload.get("email")
        if not email or not isinstance(email, str):
            raise TokenInvalid("Invalid token data")
        return email

    def verify_reset_token(self, token: str) -> str:
        """Return the user id encoded in a valid password reset token."""
        payload = self._decode(PASSWORD_RESET, token)
        if not payload.get("id"):
            raise TokenInvalid("Invalid token data")
        return payload["id"]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _encode(self, purpose: str, claims: Dict[str, Any]) -> str:
        now = self._clock()
        payload = dict(claims)
        payload.update({
            "type": purpose,
            "iat": now,
            "exp": now + self._lifetimes[purpose],
        })
        return jwt.encode(payload, self._secrets[purpose], algorithm=ALGORITHM)

    def _decode(self, purpose: str, token: str) -> Dict[str, Any]:
        if not token:
            raise TokenInvalid("No token provided")

        try:
            payload = jwt.decode(
                token,
                self._secrets[purpose],
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except ExpiredSignatureError:
            raise TokenExpired("Token has expired")
        except InvalidTokenError as e:
            logger.debug(f"Rejected {purpose} token: {e}")
            raise TokenInvalid("Invalid token")

        if payload.get("type") != purpose:
            raise TokenInvalid("Invalid token")
        return payload


# =============================================================================
# Refresh Token Store
# =============================================================================

class RefreshTokenStore:
    """
    Holds the single currently-valid refresh token per user id.

    In-memory with per-entry expiry; a multi-instance deployment swaps this
    for a shared key-value store with native TTL.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._tokens: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def store(self, user_id: str, token: str) -> None:
        async with self._lock:
            self._tokens[str(user_id)] = (token, self._clock() + self._ttl)

    async def get(self, user_id: str) -> Optional[str]:
        async with self._lock:
            entry = self._tokens.get(str(user_id))
            if entry is None:
                return None
            token, expires_at = entry
            if self._clock() >= expires_at:
                del self._tokens[str(user_id)]
                return None
            return token

    async def invalidate(self, user_id: str) -> None:
        async with self._lock:
            self._tokens.pop(str(user_id), None)

    async def is_current(self, user_id: str, token: str) -> bool:
        stored = await self.get(user_id)
        return stored is not None and stored == token


async def issue_session(
    tokens: TokenService,
    refresh_tokens: RefreshTokenStore,
    user: Any,
) -> Tuple[str, str]:
    """
    Issue an access/refresh token pair for a user record and make the new
    refresh token the only valid one for that user.

    Returns:
        (access_token, refresh_token)
    """
    access_token = tokens.issue_access_token({
        "id": user.id,
        "email": user.email,
        "role": user.role.value,
        "application": user.application,
    })
    refresh_token = tokens.issue_refresh_token(user.id)
    await refresh_tokens.store(user.id, refresh_token)
    return access_token, refresh_token
