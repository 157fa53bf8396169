"""Map federated identity claims to a local user record."""

import logging
from typing import Any, Dict

from stormgate.accounts.approval import ApprovalWorkflow
from stormgate.accounts.store import UserStore
from stormgate.errors import Conflict, InvalidRequest
from stormgate.models import AccountStatus, AuthProvider, Role, UserRecord

logger = logging.getLogger(__name__)


class AccountResolver:
    """
    Find-or-create for federated sign-ins.

    Lookup matches on email or federated subject. An existing record without
    a subject id gets it backfilled; nothing is ever merged or deleted.

    Args:
        store: User record store
        approvals: Approval workflow (status for new records, notifications)
    """

    def __init__(self, store: UserStore, approvals: ApprovalWorkflow):
        self.store = store
        self.approvals = approvals

    async def resolve(self, claims: Dict[str, Any], application: str = "default") -> UserRecord:
        """
        Args:
            claims: Normalized claims with 'sub', 'email' and 'name'
            application: Application the login was started for

        Returns:
            The existing or newly created record
        """
        email = claims.get("email")
        subject_id = claims.get("sub")
        if not email or not subject_id:
            raise InvalidRequest("No user claims found in token")

        user = await self.store.find_by_email_or_federated_id(email, subject_id)
        if user is not None:
            return await self._link(user, subject_id)

        pending = self.approvals.requires_approval(application)
        try:
            user = await self.store.create(
                name=claims.get("name") or email.split("@")[0],
                email=email,
                federated_subject_id=subject_id,
                auth_provider=AuthProvider.FEDERATED,
                role=Role.BASIC,
                status=AccountStatus.PENDING if pending else AccountStatus.APPROVED,
                application=(application or "default").lower(),
            )
        except Conflict:
            # A concurrent callback for the same identity created it first.
            user = await self.store.find_by_email_or_federated_id(email, subject_id)
            if user is None:
                raise
            return await self._link(user, subject_id)

        logger.info(f"Created federated account for {user.email}")
        if pending:
            await self.approvals.request_approval(user)
        return user

    async def _link(self, user: UserRecord, subject_id: str) -> UserRecord:
        if not user.federated_subject_id:
            logger.info(f"Linking federated identity to existing account {user.email}")
            return await self.store.update_by_id(user.id, federated_subject_id=subject_id)

        if user.federated_subject_id != subject_id:
            logger.warning(f"Account {user.email} is linked to a different federated subject")
        return user
