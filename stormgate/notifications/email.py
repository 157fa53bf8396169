"""
Email integrator client.

Every send_* method POSTs one JSON document to
``{EMAIL_INTEGRATOR_BASE_URL}/auth/send-email``:

    {
        "templateType": "approval" | "approved" | "denied" | "pending" | "passwordReset",
        "email": <recipient>,
        "name": <recipient display name>,
        "appName": ..., "appDisplayName": ...,
        ...template specific URLs
    }

Delivery is best effort. Failures are logged and reported as False, they
are never raised into the caller.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from stormgate.config import Settings
from stormgate.models import UserRecord

logger = logging.getLogger(__name__)

SEND_EMAIL_PATH = "/auth/send-email"


class NotificationChannel:
    """
    Sends templated emails through the email integrator.

    Args:
        settings: Application settings (integrator URL, admin email, links)
        transport: Optional httpx transport (tests pass httpx.MockTransport)
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 5.0,
    ):
        self.settings = settings
        self._transport = transport
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.settings.EMAIL_INTEGRATOR_BASE_URL)

    async def send_template_email(self, template_type: str, email: str, name: str, **extra: Any) -> bool:
        """
        Request delivery of a templated email.

        Returns:
            True if the integrator accepted the request, False otherwise
        """
        if not self.enabled:
            logger.warning(f"Email integrator not configured, skipping {template_type} email to {email}")
            return False

        payload: Dict[str, Any] = {
            "templateType": template_type,
            "email": email,
            "name": name,
            "appName": self.settings.APP_NAME,
            "appDisplayName": self.settings.APP_DISPLAY_NAME,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})

        url = f"{self.settings.EMAIL_INTEGRATOR_BASE_URL}{SEND_EMAIL_PATH}"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send {template_type} email to {email}: {e!r}")
            return False

        logger.info(f"Sent {template_type} email to {email}")
        return True

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    async def send_approval_request(self, user: UserRecord, approval_url: str, deny_url: str) -> bool:
        """Ask the administrator to approve or deny a pending account."""
        return await self.send_template_email(
            "approval",
            email=self.settings.ADMIN_EMAIL,
            name="Administrator",
            userEmail=user.email,
            userName=user.name,
            application=user.application,
            approvalUrl=approval_url,
            denyUrl=deny_url,
        )

    async def send_account_approved(self, user: UserRecord) -> bool:
        return await self.send_template_email(
            "approved",
            email=user.email,
            name=user.name,
            loginUrl=f"{self.settings.BASE_URL}/login",
        )

    async def send_account_denied(self, user: UserRecord) -> bool:
        return await self.send_template_email("denied", email=user.email, name=user.name)

    async def send_registration_pending(self, user: UserRecord) -> bool:
        return await self.send_template_email("pending", email=user.email, name=user.name)

    async def send_password_reset(self, user: UserRecord, reset_url: str) -> bool:
        return await self.send_template_email(
            "passwordReset",
            email=user.email,
            name=user.name,
            resetUrl=reset_url,
            expiresInMinutes=self.settings.PASSWORD_RESET_EXPIRY_MINUTES,
        )
