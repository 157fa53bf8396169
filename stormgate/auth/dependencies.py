"""
FastAPI dependencies for authenticating requests.

Bearer tokens are accepted in two forms, tried in order:

  1. Internal access token (HS256, minted by this gateway)
  2. Federated Azure AD token (RS256, verified through the signing-key cache)

Both converge on an Identity. A federated token is only accepted when its
subject is already linked to a local account; this path never creates
accounts, and a linked account that has been DENIED gets the same 403 as at
login. Whatever the reason a token is rejected, the client sees the same 401.
Expired access tokens are not refreshed implicitly; clients call
/auth/refresh.
"""

import logging
from typing import Callable, Optional

from fastapi import Request
from jose import JWTError

from stormgate.auth.utils import SigningKeysUnavailable, get_subject_id, verify_federated_token
from stormgate.errors import Forbidden, Unauthorized
from stormgate.models import Identity, Role, has_role

logger = logging.getLogger(__name__)

VERIFICATION_FAILED = "Unauthorized: Token verification failed"


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


async def get_current_identity(request: Request) -> Identity:
    """
    Require a valid bearer token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...

    Raises:
        Unauthorized: Missing header, or neither verification mode accepts the token
        Forbidden: Federated token for a DENIED account
    """
    token = extract_bearer_token(request)
    if token is None:
        raise Unauthorized("Missing or invalid authorization header")

    state = request.app.state

    try:
        claims = state.tokens.verify_access_token(token)
    except Unauthorized:
        claims = None

    if claims is not None:
        return Identity(
            id=claims["id"],
            email=claims.get("email"),
            role=claims.get("role") or Role.BASIC,
            application=claims.get("application") or "default",
            token_source="internal",
        )

    try:
        federated_claims = await verify_federated_token(token, state.key_cache, state.settings)
    except (JWTError, SigningKeysUnavailable) as e:
        logger.info(f"Bearer token rejected: {e}")
        raise Unauthorized(VERIFICATION_FAILED)

    subject_id = get_subject_id(federated_claims)
    user = await state.user_store.find_by_federated_id(subject_id) if subject_id else None
    if user is None:
        logger.info("Federated token subject is not linked to any account")
        raise Unauthorized(VERIFICATION_FAILED)

    state.approvals.check_login_allowed(user)

    return Identity(
        id=user.id,
        email=user.email,
        role=user.role,
        application=user.application,
        federated_subject_id=subject_id,
        token_source="federated",
    )


def require_roles(*roles: Role) -> Callable:
    """
    Build a dependency that requires one of the given roles.

    Raises:
        Unauthorized: Not authenticated
        Forbidden: Authenticated without an allowed role
    """

    async def dependency(request: Request) -> Identity:
        identity = await get_current_identity(request)
        if not has_role(identity, roles):
            raise Forbidden("Access denied. Insufficient permissions.")
        return identity

    return dependency
