"""
Local credentials: password hashing, email/password login and the password
reset flow.

Passwords are hashed with bcrypt directly (no passlib wrapper). Login always
performs one bcrypt comparison, against _DUMMY_HASH when the email is unknown
or the account has no local password, so response time does not reveal
whether an account exists. Every hash and comparison runs in the threadpool,
never on the event loop.

Password reset is a two-factor check: the signed reset token must verify,
and its SHA-256 digest must match the one stored on the record before the
stored expiry. Completing a reset clears both fields, so a reset link works
once.
"""

import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi.concurrency import run_in_threadpool

from stormgate.auth.session import TokenService
from stormgate.accounts.store import UserStore
from stormgate.config import Settings
from stormgate.errors import Forbidden, InvalidRequest, InvalidToken, Unauthorized
from stormgate.models import AccountStatus, UserRecord, utcnow
from stormgate.notifications import NotificationChannel

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_RESET_TOKEN = "Invalid or expired reset token"


# =============================================================================
# Password hashing
# =============================================================================

def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


# Computed once at import so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("stormgate_timing_dummy")


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# =============================================================================
# Credential Service
# =============================================================================

class CredentialService:
    """
    Email/password authentication and password reset.

    Args:
        store: User record store
        tokens: Token service (reset tokens)
        notifier: Notification channel (reset emails)
        settings: Application settings (BASE_URL, reset lifetime)
    """

    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        notifier: NotificationChannel,
        settings: Settings,
    ):
        self.store = store
        self.tokens = tokens
        self.notifier = notifier
        self.settings = settings

    async def authenticate(self, email: str, password: str) -> UserRecord:
        """
        Check an email/password pair.

        The DENIED gate runs before the password comparison. PENDING
        accounts authenticate normally; the caller flags them as limited.

        Raises:
            Forbidden: The account has been denied
            Unauthorized: Unknown email, no local password or wrong password
        """
        user = await self.store.find_by_email(email)

        if user is not None and user.status == AccountStatus.DENIED:
            logger.info(f"Login refused for denied account: {user.email}")
            raise Forbidden("Your account registration has been denied. Please contact support.")

        if user is None or not user.password_hash:
            await run_in_threadpool(verify_password, password, _DUMMY_HASH)
            raise Unauthorized(INVALID_CREDENTIALS)

        if not await run_in_threadpool(verify_password, password, user.password_hash):
            raise Unauthorized(INVALID_CREDENTIALS)

        return user

    # -------------------------------------------------------------------------
    # Password reset
    # -------------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> Optional[str]:
        """
        Start a password reset.

        Unknown emails succeed silently so the endpoint cannot be used to
        enumerate accounts.

        Returns:
            The reset token when one was issued, else None

        Raises:
            InvalidRequest: The account signs in through Azure AD only
        """
        user = await self.store.find_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return None

        if not user.password_hash:
            raise InvalidRequest(
                "This account uses Azure AD authentication. Please reset your "
                "password through your organization's Azure AD portal."
            )

        token = self.tokens.issue_reset_token(user.id)
        expiry = utcnow() + timedelta(minutes=self.settings.PASSWORD_RESET_EXPIRY_MINUTES)
        user = await self.store.update_by_id(
            user.id,
            reset_token_hash=_digest(token),
            reset_token_expiry=expiry,
        )

        reset_url = f"{self.settings.BASE_URL}/reset-password/{token}"
        await self.notifier.send_password_reset(user, reset_url)

        logger.info(f"Password reset requested for user: {user.email}")
        return token

    async def verify_reset_token(self, token: str) -> UserRecord:
        """
        Check a reset token against its signature and the stored digest.

        Raises:
            InvalidToken: On any mismatch, expiry or unknown user
        """
        try:
            user_id = self.tokens.verify_reset_token(token)
        except Unauthorized:
            raise InvalidToken(INVALID_RESET_TOKEN)

        user = await self.store.find_by_id(user_id)
        if user is None or not user.reset_token_hash or not user.reset_token_expiry:
            raise InvalidToken(INVALID_RESET_TOKEN)

        if utcnow() > user.reset_token_expiry:
            raise InvalidToken(INVALID_RESET_TOKEN)

        if not hmac.compare_digest(user.reset_token_hash, _digest(token)):
            raise InvalidToken(INVALID_RESET_TOKEN)

        return user

    async def reset_password(self, token: str, new_password: str) -> UserRecord:
        validate_password(new_password)
        user = await self.verify_reset_token(token)
        password_hash = await run_in_threadpool(hash_password, new_password)

        user = await self.store.update_by_id(
            user.id,
            password_hash=password_hash,
            reset_token_hash=None,
            reset_token_expiry=None,
        )
        logger.info(f"Password reset completed for user: {user.email}")
        return user
