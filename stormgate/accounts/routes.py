"""
Account routes: local registration and login, status lookups, password
reset, profile maintenance and the admin user listing.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi.responses import JSONResponse

from stormgate.auth.dependencies import get_current_identity, require_roles
from stormgate.auth.routes import clear_session_cookies, revoke_session, set_session_cookies
from stormgate.auth.session import issue_session
from stormgate.errors import Forbidden, NotFound
from stormgate.models import (
    ADMIN_ROLES,
    AccountStatus,
    ERROR_RESPONSES,
    ForgotPasswordRequest,
    Identity,
    LoginRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    StatusCheckRequest,
    has_role,
)

logger = logging.getLogger(__name__)

accounts_router = APIRouter(tags=["accounts"], responses=ERROR_RESPONSES)

require_admin = require_roles(*ADMIN_ROLES)

RESET_REQUESTED = "If an account with that email exists, a password reset link has been sent."


# =============================================================================
# Registration / Login
# =============================================================================

@accounts_router.post("/register", status_code=201)
async def register(request: Request, body: RegisterRequest):
    """
    Create a local account.

    Accounts registered with status PENDING (or for an application that
    requires approval) get no tokens until an administrator approves them.
    """
    settings = request.app.state.settings
    result = await request.app.state.approvals.register(body)

    if result.requires_approval:
        return JSONResponse(
            status_code=201,
            content={
                "msg": "Registration successful. Your account is pending admin approval.",
                "status": AccountStatus.PENDING.value,
                "requiresApproval": True,
                "user": result.user.summary(),
            },
        )

    response = JSONResponse(
        status_code=201,
        content={
            "msg": "Registration successful",
            "status": "Successful",
            "requiresApproval": False,
            "accesstoken": result.access_token,
            "user": result.user.summary(),
        },
    )
    set_session_cookies(response, settings, result.access_token, result.refresh_token)
    return response


@accounts_router.post("/login")
async def login(request: Request, body: LoginRequest):
    """Email/password login. DENIED accounts are refused before the password is checked."""
    state = request.app.state
    user = await state.credentials.authenticate(body.email, body.password)
    access_token, refresh_token = await issue_session(state.tokens, state.refresh_tokens, user)

    content = {"accesstoken": access_token, "status": "Successful", "user": user.summary()}
    if user.status == AccountStatus.PENDING:
        content.update({
            "status": AccountStatus.PENDING.value,
            "msg": "Login successful. Your account is pending approval - limited access.",
            "limitedAccess": True,
        })

    response = JSONResponse(content=content)
    set_session_cookies(response, state.settings, access_token, refresh_token)
    logger.info(f"Local login for {user.email}")
    return response


@accounts_router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
):
    """Same revocation as /auth/logout; the access cookie identifies the user here."""
    await revoke_session(request, body)
    clear_session_cookies(response, request.app.state.settings)
    return {"msg": "Logged Out", "status": "Successful"}


@accounts_router.post("/check-status")
async def check_status(request: Request, body: StatusCheckRequest):
    user = await request.app.state.user_store.find_by_email(body.email)
    if user is None:
        raise NotFound("User not found")

    return {
        "status": "success",
        "user": {
            "email": user.email,
            "name": user.name,
            "status": user.status.value,
            "registeredAt": user.created_at.isoformat(),
        },
    }


# =============================================================================
# Password Reset
# =============================================================================

@accounts_router.post("/forgot-password")
async def forgot_password(request: Request, body: ForgotPasswordRequest):
    await request.app.state.credentials.request_password_reset(body.email)
    return {"msg": RESET_REQUESTED, "status": "success"}


@accounts_router.get("/reset-password/{token}")
async def verify_reset_token(request: Request, token: str):
    user = await request.app.state.credentials.verify_reset_token(token)
    return {"msg": "Token is valid", "status": "success", "email": user.email}


@accounts_router.post("/reset-password/{token}")
async def reset_password(request: Request, token: str, body: ResetPasswordRequest):
    state = request.app.state
    user = await state.credentials.reset_password(token, body.password)
    await state.refresh_tokens.invalidate(user.id)
    return {"msg": "Password has been reset successfully", "status": "success"}


# =============================================================================
# Admin
# =============================================================================

@accounts_router.get("/admin/users")
async def list_users(request: Request, identity: Identity = Depends(require_admin)):
    users = await request.app.state.user_store.list_all()
    return {"status": "success", "count": len(users), "users": [u.summary() for u in users]}


@accounts_router.get("/admin/users/{user_id}")
async def get_user(request: Request, user_id: str, identity: Identity = Depends(require_admin)):
    user = await request.app.state.user_store.find_by_id(user_id)
    if user is None:
        raise NotFound("User not found")
    return {"status": "success", "user": user.summary()}


# =============================================================================
# Profiles
# =============================================================================

def _require_self_or_admin(identity: Identity, user_id: str) -> None:
    if identity.id != user_id and not has_role(identity, ADMIN_ROLES):
        raise Forbidden("Access denied. Insufficient permissions.")


@accounts_router.put("/users/{user_id}")
async def update_profile(
    request: Request,
    user_id: str,
    body: ProfileUpdateRequest,
    identity: Identity = Depends(get_current_identity),
):
    """Update an account's profile. Allowed for the account itself and for admins."""
    _require_self_or_admin(identity, user_id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    user = await request.app.state.profiles.update_profile(user_id, changes)
    return {"msg": "Updated profile", "status": "Successful", "user": user.summary()}


@accounts_router.delete("/users/{user_id}")
async def delete_profile(
    request: Request,
    response: Response,
    user_id: str,
    identity: Identity = Depends(get_current_identity),
):
    _require_self_or_admin(identity, user_id)
    user = await request.app.state.profiles.delete_account(user_id)

    if identity.id == user_id:
        clear_session_cookies(response, request.app.state.settings)
    logger.info(f"Account {user.email} deleted by {identity.email}")
    return {"msg": "User has been deleted", "status": "Successful"}
