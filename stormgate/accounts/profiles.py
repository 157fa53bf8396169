"""
Profile maintenance for existing accounts.

Scalar fields are overwritten. The activity lists (notifications and the
favorite/saved/liked article lists) only grow: new entries are appended
after the stored ones and duplicates are dropped, so two clients adding
different items do not overwrite each other.
"""

import asyncio
import logging
from typing import Any, Dict

from stormgate.accounts.store import UserStore
from stormgate.auth.session import RefreshTokenStore
from stormgate.errors import InvalidRequest, NotFound
from stormgate.models import UserRecord

logger = logging.getLogger(__name__)

APPEND_ONLY_FIELDS = ("notifications", "favorite_articles", "saved_articles", "liked_articles")


class ProfileService:
    """
    Args:
        store: User record store
        refresh_tokens: Refresh token store (revoked when an account is deleted)
    """

    def __init__(self, store: UserStore, refresh_tokens: RefreshTokenStore):
        self.store = store
        self.refresh_tokens = refresh_tokens
        self._lock = asyncio.Lock()

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> UserRecord:
        """
        Apply profile changes to an account.

        Raises:
            NotFound: No account has this id
            InvalidRequest: A field does not exist on this application's records
            Conflict: The new username is taken
        """
        async with self._lock:
            user = await self.store.find_by_id(user_id)
            if user is None:
                raise NotFound("User not found")

            unsupported = sorted(k for k in changes if k not in type(user).model_fields)
            if unsupported:
                raise InvalidRequest(
                    f"Fields not available for {user.application} accounts",
                    details={"fields": unsupported},
                )

            changes = dict(changes)
            for name in APPEND_ONLY_FIELDS:
                if name in changes:
                    changes[name] = list(dict.fromkeys([*getattr(user, name), *changes[name]]))

            if not changes:
                return user

            updated = await self.store.update_by_id(user_id, **changes)

        logger.info(f"Updated profile for {updated.email}: {sorted(changes)}")
        return updated

    async def delete_account(self, user_id: str) -> UserRecord:
        """
        Delete an account and revoke its refresh token.

        Raises:
            NotFound: No account has this id
        """
        async with self._lock:
            user = await self.store.delete_by_id(user_id)
        await self.refresh_tokens.invalidate(user_id)
        return user
