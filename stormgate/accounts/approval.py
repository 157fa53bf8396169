"""
Pending-approval account lifecycle.

    register(PENDING) -> PENDING --approve--> APPROVED
                                 |
                                 +--deny----> DENIED

APPROVED is the default for registrations that do not ask for approval.
Nothing ever moves back to PENDING. Repeating the decision an account already
carries is a no-op (no second notification); reversing a decision is a
Conflict.

Admins decide either through the signed links in the approval email
(approve_by_token / deny_by_token) or through the admin API
(approve_by_id / deny_by_id). Both paths share _transition().
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

from fastapi.concurrency import run_in_threadpool

from stormgate.accounts.credentials import hash_password, validate_password
from stormgate.accounts.store import UserStore
from stormgate.auth.session import RefreshTokenStore, TokenService, issue_session
from stormgate.config import Settings
from stormgate.errors import Conflict, Forbidden, InvalidToken, NotFound, Unauthorized
from stormgate.models import AccountStatus, AuthProvider, RegisterRequest, Role, UserRecord
from stormgate.notifications import NotificationChannel

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    user: UserRecord
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def requires_approval(self) -> bool:
        return self.user.status == AccountStatus.PENDING


class ApprovalWorkflow:
    """
    Registration and admin decisions on account status.

    Args:
        store: User record store
        tokens: Token service (approval tokens, session tokens)
        refresh_tokens: Refresh token store
        notifier: Notification channel
        settings: Application settings
    """

    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        refresh_tokens: RefreshTokenStore,
        notifier: NotificationChannel,
        settings: Settings,
    ):
        self.store = store
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.notifier = notifier
        self.settings = settings
        self._lock = asyncio.Lock()

    def requires_approval(self, application: Optional[str]) -> bool:
        return (application or "default").lower() in self.settings.approval_required_applications_list

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register(self, data: RegisterRequest) -> RegistrationResult:
        """
        Create a local account.

        The role is always basic. The account starts PENDING when the request
        asks for it or its application requires approval, otherwise APPROVED
        with a token pair issued immediately.

        Raises:
            InvalidRequest: Password too short
            Conflict: Email or username already registered
        """
        validate_password(data.password)

        application = (data.application or "default").strip().lower() or "default"
        pending = (
            (data.status or "").strip().upper() == AccountStatus.PENDING.value
            or self.requires_approval(application)
        )
        password_hash = await run_in_threadpool(hash_password, data.password)

        user = await self.store.create(
            name=data.name,
            email=data.email,
            username=data.username or None,
            password_hash=password_hash,
            auth_provider=AuthProvider.LOCAL,
            role=Role.BASIC,
            status=AccountStatus.PENDING if pending else AccountStatus.APPROVED,
            application=application,
        )

        if pending:
            logger.info(f"Registered {user.email} pending approval")
            await self.request_approval(user)
            return RegistrationResult(user=user)

        access_token, refresh_token = await issue_session(self.tokens, self.refresh_tokens, user)
        logger.info(f"Registered {user.email}")
        return RegistrationResult(user=user, access_token=access_token, refresh_token=refresh_token)

    async def request_approval(self, user: UserRecord) -> None:
        """
        Email the administrator signed approve/deny links and tell the user
        their registration is pending. Delivery failures are logged only.
        """
        token = quote(self.tokens.issue_approval_token(user.email), safe="")
        approval_url = f"{self.settings.BASE_URL}/auth/approve?token={token}"
        deny_url = f"{self.settings.BASE_URL}/auth/deny?token={token}"

        if not await self.notifier.send_approval_request(user, approval_url, deny_url):
            logger.warning(f"Approval request for {user.email} was not delivered")
        if not await self.notifier.send_registration_pending(user):
            logger.warning(f"Pending notice for {user.email} was not delivered")

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    async def approve_by_token(self, token: str) -> UserRecord:
        user = await self._user_for_approval_token(token)
        return await self._transition(user, AccountStatus.APPROVED)

    async def deny_by_token(self, token: str) -> UserRecord:
        user = await self._user_for_approval_token(token)
        return await self._transition(user, AccountStatus.DENIED)

    async def approve_by_id(self, user_id: str) -> UserRecord:
        user = await self._user_by_id(user_id)
        return await self._transition(user, AccountStatus.APPROVED)

    async def deny_by_id(self, user_id: str) -> UserRecord:
        user = await self._user_by_id(user_id)
        return await self._transition(user, AccountStatus.DENIED)

    async def list_pending(self) -> List[UserRecord]:
        return await self.store.list_by_status(AccountStatus.PENDING)

    def check_login_allowed(self, user: UserRecord) -> None:
        """
        Raises:
            Forbidden: The account has been denied
        """
        if user.status == AccountStatus.DENIED:
            logger.info(f"Login refused for denied account: {user.email}")
            raise Forbidden("Your account registration has been denied. Please contact support.")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _user_for_approval_token(self, token: str) -> UserRecord:
        if not token:
            raise InvalidToken("Approval token is required")
        try:
            email = self.tokens.verify_approval_token(token)
        except Unauthorized:
            raise InvalidToken("Invalid or expired approval token")

        user = await self.store.find_by_email(email)
        if user is None:
            raise NotFound("User not found")
        return user

    async def _user_by_id(self, user_id: str) -> UserRecord:
        user = await self.store.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def _transition(self, user: UserRecord, target: AccountStatus) -> UserRecord:
        async with self._lock:
            current = await self.store.find_by_id(user.id)
            if current is None:
                raise NotFound("User not found")

            if current.status == target:
                logger.info(f"Account {current.email} is already {target.value}")
                return current

            if current.status != AccountStatus.PENDING:
                raise Conflict(f"Account has already been {current.status.value.lower()}")

            updated = await self.store.update_by_id(current.id, status=target)

        logger.info(f"Account {updated.email} moved to {target.value}")

        if target == AccountStatus.APPROVED:
            delivered = await self.notifier.send_account_approved(updated)
        else:
            await self.refresh_tokens.invalidate(updated.id)
            delivered = await self.notifier.send_account_denied(updated)

        if not delivered:
            logger.warning(f"Status notification for {updated.email} was not delivered")
        return updated
