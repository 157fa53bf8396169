"""
Authentication utilities for federated (Azure AD) token verification.

This module handles:
- Fetching and caching Azure AD JWKS (JSON Web Key Set)
- Converting JWKs into PEM public keys
- Verifying tokens issued by Microsoft Entra ID
- Extracting identity claims
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from jose import JWTError, jwk, jwt
from jose.constants import ALGORITHMS

from stormgate.config import Settings

logger = logging.getLogger(__name__)

KeyFetcher = Callable[[], Awaitable[List[Dict[str, Any]]]]


class SigningKeysUnavailable(Exception):
    """The provider's signing keys could not be fetched."""


# =============================================================================
# JWKS Cache
# =============================================================================

def make_jwks_fetcher(
    jwks_uri: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> KeyFetcher:
    """
    Build the default fetcher that downloads the JWKS document over HTTPS.

    Args:
        jwks_uri: Provider's published keys endpoint
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    async def fetch() -> List[Dict[str, Any]]:
        async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
            response = await client.get(jwks_uri)
            response.raise_for_status()
            jwks_data = response.json()

        if "keys" not in jwks_data or not isinstance(jwks_data["keys"], list):
            raise ValueError("Invalid JWKS response: missing 'keys' field")

        return jwks_data["keys"]

    return fetch


class SigningKeyCache:
    """
    Process-wide cache of the identity provider's public signing keys.

    Keys are refreshed lazily on the first get_keys() call after expiry.
    The refresh path is serialized with a lock so a burst of requests after
    expiry triggers one fetch; a failed fetch is not cached and the next
    call retries.

    Args:
        fetcher: Coroutine function returning the list of JWKs
        ttl_seconds: Cache lifetime
        clock: Returns the current time in seconds
    """

    def __init__(
        self,
        fetcher: KeyFetcher,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._fetcher = fetcher
        self._ttl = ttl_seconds
        self._clock = clock
        self._keys: Optional[List[Dict[str, Any]]] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._keys is not None and self._clock() < self._expires_at

    async def get_keys(self) -> List[Dict[str, Any]]:
        """
        Return the cached key set, fetching a fresh one if empty or expired.

        Raises:
            SigningKeysUnavailable: If the provider could not be reached
        """
        if self._is_fresh():
            return self._keys

        async with self._lock:
            if self._is_fresh():
                return self._keys

            try:
                keys = await self._fetcher()
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Failed to fetch JWKS keys: {e}")
                raise SigningKeysUnavailable("Unable to fetch signing keys") from e

            self._keys = keys
            self._expires_at = self._clock() + self._ttl
            logger.info(f"Refreshed JWKS cache with {len(keys)} keys")
            return keys

    def clear(self) -> None:
        self._keys = None
        self._expires_at = 0.0


def to_verifier_key(signing_key: Dict[str, Any]) -> str:
    """
    Convert a JWK published by the provider into a PEM public key.

    Azure AD keys do not always carry an 'alg' member, so RS256 is given
    explicitly.

    Raises:
        JWTError: If the JWK cannot be turned into a key
    """
    try:
        public_key = jwk.construct(signing_key, algorithm=ALGORITHMS.RS256)
    except Exception as e:
        raise JWTError(f"Failed to construct public key from JWK: {e}")

    return public_key.to_pem().decode("utf-8")


def find_signing_key(token: str, keys: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Extract the public key from the key set that matches the token's kid.

    Raises:
        JWTError: If the token header is malformed or has no kid
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise JWTError(f"Failed to decode token header: {e}")

    kid = unverified_header.get("kid")
    if not kid:
        raise JWTError("Token header missing 'kid' (Key ID)")

    for key in keys:
        if key.get("kid") == kid:
            return key

    return None


# =============================================================================
# Federated Token Verification
# =============================================================================

async def verify_federated_token(
    token: str,
    key_cache: SigningKeyCache,
    settings: Settings,
    audiences: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Verify a token issued by Azure AD and return its claims.

    Validation performed:
    1. Resolve the signing key by kid through the key cache
    2. RS256 signature, exp, nbf and iat
    3. Issuer is one of the two issuer forms published for the tenant
    4. Audience is one of the accepted audiences

    Args:
        token: Encoded JWT
        key_cache: Signing-key cache
        settings: Application settings (tenant and client ids)
        audiences: Accepted audiences; defaults to settings.accepted_audiences

    Raises:
        JWTError: If verification fails for any reason
        SigningKeysUnavailable: If the key set cannot be fetched
    """
    keys = await key_cache.get_keys()

    signing_key = find_signing_key(token, keys)
    if signing_key is None:
        raise JWTError("Unable to find matching signing key in JWKS")

    public_key = to_verifier_key(signing_key)

    # python-jose accepts a single audience only; it is checked below.
    claims = jwt.decode(
        token,
        public_key,
        algorithms=[ALGORITHMS.RS256],
        issuer=settings.accepted_issuers,
        options={
            "verify_aud": False,
            "verify_at_hash": False,
            "leeway": 10,  # 10 seconds clock skew tolerance
        },
    )

    accepted = audiences or settings.accepted_audiences
    token_audiences = claims.get("aud")
    if isinstance(token_audiences, str):
        token_audiences = [token_audiences]
    if not token_audiences or not any(aud in accepted for aud in token_audiences):
        raise JWTError("Invalid audience")

    return claims


# =============================================================================
# Claim Helpers
# =============================================================================

def get_subject_id(claims: Dict[str, Any]) -> Optional[str]:
    return claims.get("sub") or claims.get("oid")


def extract_email_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    """
    Extract email address from ID token claims.

    Azure AD may use different claim names depending on configuration:
    email, preferred_username (usually the UPN), upn, unique_name.
    """
    for claim_name in ["email", "preferred_username", "upn", "unique_name"]:
        email = claims.get(claim_name)
        if email and isinstance(email, str) and "@" in email:
            return email.lower().strip()

    return None


def get_user_display_name(claims: Dict[str, Any]) -> str:
    """
    Extract user's display name from claims.

    Returns:
        Display name, or a name derived from the email as fallback
    """
    name = claims.get("name") or claims.get("given_name")
    if name:
        return name

    email = extract_email_from_claims(claims)
    if email:
        return email.split("@")[0].title()

    return "User"
