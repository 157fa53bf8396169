"""
Authentication routes for OIDC login, token management and approvals.

This module implements the OAuth 2.0 / OIDC authorization code flow
with Microsoft Entra ID (Azure AD), the internal token refresh/logout
endpoints and the admin approval endpoints.

Shared components (token service, OIDC flow, approval workflow, stores) are
built by the application factory and read from request.app.state.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from stormgate.auth.dependencies import extract_bearer_token, get_current_identity, require_roles
from stormgate.auth.oidc import append_token
from stormgate.config import Settings
from stormgate.errors import NotFound, Unauthorized
from stormgate.models import ADMIN_ROLES, ERROR_RESPONSES, Identity, ManualDecisionRequest, RefreshRequest

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "accesstoken"
REFRESH_COOKIE = "refreshtoken"
REFRESH_COOKIE_PATH = "/auth"


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
    responses=ERROR_RESPONSES,
)

require_admin = require_roles(*ADMIN_ROLES)


# =============================================================================
# Cookie Helpers
# =============================================================================

def set_access_cookie(response: Response, settings: Settings, access_token: str) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        max_age=settings.ACCESS_TOKEN_EXPIRY_MINUTES * 60,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def set_session_cookies(
    response: Response,
    settings: Settings,
    access_token: str,
    refresh_token: str,
) -> None:
    """Set the access cookie (site-wide) and the refresh cookie (/auth routes only)."""
    set_access_cookie(response, settings, access_token)
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=settings.REFRESH_TOKEN_EXPIRY_DAYS * 24 * 60 * 60,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=settings.is_production, httponly=True, samesite="lax")
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )


def _refresh_token_from(request: Request, body: Optional[RefreshRequest]) -> Optional[str]:
    token = request.cookies.get(REFRESH_COOKIE)
    if not token and body is not None:
        token = body.refreshToken
    return token or None


async def revoke_session(request: Request, body: Optional[RefreshRequest] = None) -> bool:
    """
    Invalidate the caller's stored refresh token.

    The refresh token (cookie or body) identifies the session. Routes outside
    /auth never receive the refresh cookie, so there the access token (cookie
    or bearer) identifies the user instead.

    Returns:
        True if a refresh token was invalidated
    """
    state = request.app.state
    token = _refresh_token_from(request, body)

    if token:
        try:
            claims = state.tokens.verify_refresh_token(token)
        except Unauthorized as e:
            logger.info(f"Logout with unusable refresh token: {e.message}")
            return False
        if not await state.refresh_tokens.is_current(claims["id"], token):
            return False
        user_id = claims["id"]
    else:
        access_token = request.cookies.get(ACCESS_COOKIE) or extract_bearer_token(request)
        if not access_token:
            return False
        try:
            user_id = state.tokens.verify_access_token(access_token)["id"]
        except Unauthorized as e:
            logger.info(f"Logout with unusable access token: {e.message}")
            return False

    await state.refresh_tokens.invalidate(user_id)
    logger.info("Refresh token invalidated on logout")
    return True


# =============================================================================
# Login / Callback
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    request: Request,
    application: Optional[str] = Query(None, max_length=50, description="Application the account belongs to"),
    return_url: Optional[str] = Query(None, max_length=2048, description="Where to send the user after login"),
):
    """
    Initiate OIDC login flow by redirecting to Microsoft Entra ID.

    Generates state and a PKCE challenge, remembers them in the OIDC
    session store and redirects to the authorization endpoint.
    """
    authorization_url = await request.app.state.oidc_flow.begin_login(application, return_url)
    return RedirectResponse(url=authorization_url, status_code=302)


@auth_router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from Azure AD"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
):
    """
    Handle OAuth callback from Microsoft Entra ID.

    On success the session cookies are set and the client is either
    redirected to the return_url given at login (with the access token
    appended) or receives the user summary and token as JSON.
    """
    settings: Settings = request.app.state.settings
    result = await request.app.state.oidc_flow.complete_login(code, state, error, error_description)

    if result.return_url:
        response: Response = RedirectResponse(
            url=append_token(result.return_url, result.access_token),
            status_code=302,
        )
    else:
        content: Dict[str, Any] = {
            "status": "Successful",
            "user": result.user.summary(),
            "accesstoken": result.access_token,
        }
        if result.limited_access:
            content["status"] = "PENDING"
            content["limitedAccess"] = True
            content["msg"] = "Login successful. Your account is pending approval - limited access."
        response = JSONResponse(content=content)

    set_session_cookies(response, settings, result.access_token, result.refresh_token)
    return response


# =============================================================================
# Token Management
# =============================================================================

@auth_router.post("/refresh")
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
):
    """
    Issue a new access token for the current refresh token.

    The refresh token comes from the refresh cookie, or from the body for
    clients that do not keep cookies. It must still be the one held in the
    refresh token store for its user.
    """
    state = request.app.state
    token = _refresh_token_from(request, body)
    if not token:
        raise Unauthorized("Please login or register")

    claims = state.tokens.verify_refresh_token(token)
    if not await state.refresh_tokens.is_current(claims["id"], token):
        logger.info("Rejected revoked refresh token")
        raise Unauthorized("Invalid refresh token")

    user = await state.user_store.find_by_id(claims["id"])
    if user is None:
        await state.refresh_tokens.invalidate(claims["id"])
        raise Unauthorized("Invalid refresh token")
    state.approvals.check_login_allowed(user)

    access_token = state.tokens.issue_access_token({
        "id": user.id,
        "email": user.email,
        "role": user.role.value,
        "application": user.application,
    })
    set_access_cookie(response, state.settings, access_token)
    return {"accesstoken": access_token}


@auth_router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
):
    """Invalidate the refresh token (if one is presented) and clear cookies."""
    await revoke_session(request, body)
    clear_session_cookies(response, request.app.state.settings)
    return {"msg": "Logged out", "status": "Successful"}


@auth_router.get("/me")
async def me(request: Request, identity: Identity = Depends(get_current_identity)):
    """Return the account behind the presented bearer token."""
    user = await request.app.state.user_store.find_by_id(identity.id)
    if user is None:
        raise NotFound("User not found")

    return {
        "status": "success",
        "user": user.summary(),
        "tokenSource": identity.token_source,
    }


# =============================================================================
# Approval Links
# =============================================================================

@auth_router.get("/approve")
async def approve(request: Request, token: Optional[str] = Query(None)):
    user = await request.app.state.approvals.approve_by_token(token or "")
    return {
        "msg": f"Account for {user.email} has been approved",
        "status": user.status.value,
        "user": user.summary(),
    }


@auth_router.get("/deny")
async def deny(request: Request, token: Optional[str] = Query(None)):
    user = await request.app.state.approvals.deny_by_token(token or "")
    return {
        "msg": f"Account for {user.email} has been denied",
        "status": user.status.value,
        "user": user.summary(),
    }


# =============================================================================
# Admin Actions
# =============================================================================

@auth_router.get("/pending-users")
async def pending_users(request: Request, identity: Identity = Depends(require_admin)):
    users = await request.app.state.approvals.list_pending()
    return {
        "status": "success",
        "count": len(users),
        "users": [u.summary() for u in users],
    }


@auth_router.post("/manual-approve")
async def manual_approve(
    request: Request,
    body: ManualDecisionRequest,
    identity: Identity = Depends(require_admin),
):
    user = await request.app.state.approvals.approve_by_id(body.userId)
    logger.info(f"Admin {identity.email} approved {user.email}")
    return {"msg": "User approved", "status": user.status.value, "user": user.summary()}


@auth_router.post("/manual-deny")
async def manual_deny(
    request: Request,
    body: ManualDecisionRequest,
    identity: Identity = Depends(require_admin),
):
    user = await request.app.state.approvals.deny_by_id(body.userId)
    logger.info(f"Admin {identity.email} denied {user.email}")
    return {"msg": "User denied", "status": user.status.value, "user": user.summary()}
