"""
OIDC Authorization Code + PKCE flow with Microsoft Entra ID (Azure AD).

A login attempt moves through:

    Initiated -> (user at Azure AD) -> Callback -> Exchanging
              -> Claims extracted -> Resolved -> Issued

The correlation state between the authorization redirect and the callback
lives in an OIDCSessionStore keyed by the one-time `state` value. consume()
deletes the entry, so a given state can progress past the callback at most
once. Entries older than the session TTL are swept on each callback.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode, urlparse, urlunparse

import httpx
from jose import JWTError

from stormgate.accounts.approval import ApprovalWorkflow
from stormgate.accounts.resolver import AccountResolver
from stormgate.auth.session import RefreshTokenStore, TokenService, issue_session
from stormgate.auth.utils import (
    SigningKeyCache,
    SigningKeysUnavailable,
    extract_email_from_claims,
    get_subject_id,
    get_user_display_name,
    verify_federated_token,
)
from stormgate.config import Settings
from stormgate.errors import InvalidRequest, UpstreamFailure
from stormgate.models import AccountStatus, UserRecord

logger = logging.getLogger(__name__)


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode('utf-8').rstrip('=')


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('utf-8').rstrip('=')


def generate_state() -> str:
    return secrets.token_urlsafe(32)


# =============================================================================
# Session Store
# =============================================================================

class SessionNotFound(Exception):
    """No live session for the given state."""


class StateCollision(Exception):
    """A session already exists for the given state."""


@dataclass
class OIDCSessionEntry:
    code_verifier: str
    application: str = "default"
    return_url: Optional[str] = None
    created_at: Optional[float] = None  # stamped by the store on create()


class OIDCSessionStore:
    """
    Interface for the in-flight login store.

    A multi-instance deployment replaces the in-memory implementation with a
    shared key-value store that expires entries natively.
    """

    async def create(self, state: str, entry: OIDCSessionEntry) -> None:
        raise NotImplementedError

    async def consume(self, state: str) -> OIDCSessionEntry:
        raise NotImplementedError

    async def sweep_expired(self, max_age_seconds: float) -> int:
        raise NotImplementedError


class InMemoryOIDCSessionStore(OIDCSessionStore):
    """
    Process-local session store.

    Args:
        ttl_seconds: Entries older than this are unreachable through consume()
        clock: Returns the current time in seconds
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, OIDCSessionEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def create(self, state: str, entry: OIDCSessionEntry) -> None:
        async with self._lock:
            if state in self._entries:
                raise StateCollision("State already in use")
            entry.created_at = self._clock()
            self._entries[state] = entry

    async def consume(self, state: str) -> OIDCSessionEntry:
        """
        Atomically fetch and delete the entry for a state.

        Raises:
            SessionNotFound: If the state is unknown, already used or expired
        """
        async with self._lock:
            entry = self._entries.pop(state, None)

        if entry is None:
            raise SessionNotFound(state)
        if self._clock() - entry.created_at > self._ttl:
            raise SessionNotFound(state)
        return entry

    async def sweep_expired(self, max_age_seconds: float) -> int:
        cutoff = self._clock() - max_age_seconds
        async with self._lock:
            stale = [s for s, e in self._entries.items() if e.created_at < cutoff]
            for state in stale:
                del self._entries[state]

        if stale:
            logger.debug(f"Swept {len(stale)} expired OIDC sessions")
        return len(stale)


# =============================================================================
# Flow Controller
# =============================================================================

@dataclass
class LoginResult:
    user: UserRecord
    access_token: str
    refresh_token: str
    return_url: Optional[str] = None

    @property
    def limited_access(self) -> bool:
        return self.user.status == AccountStatus.PENDING


def validate_return_url(return_url: Optional[str], allowed_origins: List[str]) -> Optional[str]:
    """
    Accept only absolute http(s) return URLs, restricted to the configured
    origins when any are configured.

    Raises:
        InvalidRequest: If the URL is not acceptable
    """
    if not return_url:
        return None

    parsed = urlparse(return_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidRequest("return_url must be an absolute http(s) URL")

    origin = f"{parsed.scheme}://{parsed.netloc}"
    if allowed_origins and origin not in allowed_origins:
        raise InvalidRequest("return_url origin is not allowed")

    return return_url


def append_token(return_url: str, token: str) -> str:
    """Add the token to the query string; any fragment stays after it."""
    parsed = urlparse(return_url)
    param = urlencode({"token": token})
    query = f"{parsed.query}&{param}" if parsed.query else param
    return urlunparse(parsed._replace(query=query))


class OIDCFlow:
    """
    Drives the Authorization Code + PKCE exchange.

    Args:
        settings: Application settings
        sessions: Store for in-flight logins
        key_cache: Signing-key cache used to verify the returned id_token
        resolver: Maps identity claims to a local account
        approvals: Approval workflow (login gating)
        tokens: Internal token service
        refresh_tokens: Store of the current refresh token per user
        transport: Optional httpx transport for the token endpoint
    """

    def __init__(
        self,
        settings: Settings,
        sessions: OIDCSessionStore,
        key_cache: SigningKeyCache,
        resolver: AccountResolver,
        approvals: ApprovalWorkflow,
        tokens: TokenService,
        refresh_tokens: RefreshTokenStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.sessions = sessions
        self.key_cache = key_cache
        self.resolver = resolver
        self.approvals = approvals
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self._transport = transport

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.settings.azure_authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.settings.azure_authority}/oauth2/v2.0/token"

    # -------------------------------------------------------------------------
    # Initiated
    # -------------------------------------------------------------------------

    async def begin_login(
        self,
        application: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> str:
        """
        Create a session entry and build the authorization URL.

        Returns:
            URL of the provider's authorization endpoint with all parameters
        """
        application = (application or "default").strip().lower() or "default"
        return_url = validate_return_url(return_url, self.settings.allowed_origins_list)

        state = generate_state()
        code_verifier = generate_code_verifier()
        code_challenge = generate_code_challenge(code_verifier)

        await self.sessions.create(
            state,
            OIDCSessionEntry(
                code_verifier=code_verifier,
                application=application,
                return_url=return_url,
            ),
        )

        params = {
            "client_id": self.settings.AZURE_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.AZURE_REDIRECT_URI,
            "response_mode": "query",
            "scope": self.settings.OIDC_SCOPES,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }

        logger.info(f"Initiating OIDC login for application: {application}")
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    # -------------------------------------------------------------------------
    # Callback
    # -------------------------------------------------------------------------

    async def complete_login(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> LoginResult:
        """
        Handle the provider callback and issue internal tokens.

        Raises:
            InvalidRequest: Provider error, missing parameters, unknown state
            UpstreamFailure: Code exchange or id_token verification failed
            Forbidden: The resolved account has been denied
        """
        if error:
            logger.error(f"OAuth error: {error} - {error_description}")
            raise InvalidRequest(
                "Authentication failed",
                details={"provider_error": error_description or error},
            )

        if not code or not state:
            raise InvalidRequest("Missing required parameters (code or state)")

        try:
            entry = await self.sessions.consume(state)
        except SessionNotFound:
            logger.warning("Invalid or expired state parameter")
            raise InvalidRequest("Invalid authentication request")

        await self.sessions.sweep_expired(self.settings.OIDC_SESSION_TTL_SECONDS)

        token_response = await self._exchange_code_for_tokens(code, entry.code_verifier)
        claims = await self._verify_id_token(token_response["id_token"])

        email = extract_email_from_claims(claims)
        subject_id = get_subject_id(claims)
        if not email or not subject_id:
            raise InvalidRequest("No user claims found in token")

        logger.info(f"Successful authentication for user: {email}")

        user = await self.resolver.resolve(
            {
                "sub": subject_id,
                "email": email,
                "name": get_user_display_name(claims),
            },
            entry.application,
        )
        self.approvals.check_login_allowed(user)

        access_token, refresh_token = await issue_session(self.tokens, self.refresh_tokens, user)

        return LoginResult(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            return_url=entry.return_url,
        )

    async def _exchange_code_for_tokens(self, code: str, code_verifier: str) -> Dict[str, Any]:
        """
        Exchange authorization code + PKCE verifier for tokens.

        Any failure (network, provider rejection, bad verifier, malformed
        response) surfaces the same generic error to the client.
        """
        payload = {
            "client_id": self.settings.AZURE_CLIENT_ID,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.AZURE_REDIRECT_URI,
            "scope": self.settings.OIDC_SCOPES,
            "code_verifier": code_verifier,
        }
        if self.settings.AZURE_CLIENT_SECRET:
            payload["client_secret"] = self.settings.AZURE_CLIENT_SECRET

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
            ) as client:
                response = await client.post(
                    self.token_endpoint,
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Token exchange request failed: {e!r}")
            raise UpstreamFailure("Authentication processing failed")

        if not response.is_success:
            logger.error(
                f"Token exchange rejected with HTTP {response.status_code}: {_error_summary(response)}"
            )
            raise UpstreamFailure("Authentication processing failed")

        try:
            token_data = response.json()
        except ValueError:
            logger.error("Token exchange returned a non-JSON body")
            raise UpstreamFailure("Authentication processing failed")

        if not token_data.get("id_token"):
            logger.error("Token response missing id_token")
            raise UpstreamFailure("Authentication processing failed")

        return token_data

    async def _verify_id_token(self, id_token: str) -> Dict[str, Any]:
        try:
            return await verify_federated_token(
                id_token,
                self.key_cache,
                self.settings,
                audiences=[self.settings.AZURE_CLIENT_ID],
            )
        except (JWTError, SigningKeysUnavailable) as e:
            logger.error(f"ID token verification failed: {e}")
            raise UpstreamFailure("Authentication processing failed")


def _error_summary(response: httpx.Response) -> str:
    if response.headers.get("content-type", "").startswith("application/json"):
        try:
            data = response.json()
        except ValueError:
            return "unparseable error body"
        return str(data.get("error_description") or data.get("error") or "unknown error")
    return "non-JSON error body"
