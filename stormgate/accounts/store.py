"""
User Record Store
=================

Persistence boundary for user accounts. The gateway only needs lookups by
email, id and federated subject, creation, update-by-id and delete-by-id, so
the interface is small. Any document or relational store can sit
behind it.

InMemoryUserStore is the process-local implementation used in development
and tests. Uniqueness of email, username and federated subject is enforced
inside create() under a single asyncio lock, which is what makes two
concurrent registrations with the same email resolve to one success and one
Conflict.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Type

from stormgate.errors import Conflict, NotFound
from stormgate.models import AccountStatus, UserRecord, record_type_for, utcnow

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"id", "created_at", "application"}


class UserStore:
    """Interface for user record persistence."""

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        raise NotImplementedError

    async def find_by_federated_id(self, subject_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    async def create(self, **fields: Any) -> UserRecord:
        raise NotImplementedError

    async def update_by_id(self, user_id: str, **changes: Any) -> UserRecord:
        raise NotImplementedError

    async def delete_by_id(self, user_id: str) -> UserRecord:
        raise NotImplementedError

    async def list_by_status(self, status: AccountStatus) -> List[UserRecord]:
        raise NotImplementedError

    async def list_all(self) -> List[UserRecord]:
        raise NotImplementedError

    async def find_by_email_or_federated_id(
        self,
        email: Optional[str],
        subject_id: Optional[str],
    ) -> Optional[UserRecord]:
        """Either match is sufficient; email is checked first."""
        if email:
            user = await self.find_by_email(email)
            if user:
                return user
        if subject_id:
            return await self.find_by_federated_id(subject_id)
        return None


class InMemoryUserStore(UserStore):
    """asyncio-safe in-process user store."""

    def __init__(self) -> None:
        self._records: Dict[str, UserRecord] = {}
        self._lock = asyncio.Lock()

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        return self._records.get(user_id)

    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        email = email.strip().lower()
        for record in self._records.values():
            if record.email == email:
                return record
        return None

    async def find_by_federated_id(self, subject_id: str) -> Optional[UserRecord]:
        for record in self._records.values():
            if record.federated_subject_id == subject_id:
                return record
        return None

    async def create(self, **fields: Any) -> UserRecord:
        """
        Create a record whose shape is chosen by its application.

        Raises:
            Conflict: If the email, username or federated subject is taken
        """
        record_type: Type[UserRecord] = record_type_for(fields.get("application"))
        fields["id"] = uuid.uuid4().hex
        record = record_type(**fields)

        async with self._lock:
            self._check_unique(record)
            self._records[record.id] = record

        logger.info(
            f"Created user record for {record.email}",
            extra={"user_id": record.id, "application": record.application},
        )
        return record

    async def update_by_id(self, user_id: str, **changes: Any) -> UserRecord:
        """
        Apply changes to a record and return the updated copy.

        Raises:
            NotFound: If no record has this id
            Conflict: If the change would break a uniqueness constraint
        """
        bad = _IMMUTABLE_FIELDS.intersection(changes)
        if bad:
            raise ValueError(f"Cannot update immutable fields: {sorted(bad)}")

        async with self._lock:
            current = self._records.get(user_id)
            if current is None:
                raise NotFound("User not found")

            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            updated = type(current).model_validate(data)
            self._check_unique(updated, ignore_id=user_id)
            self._records[user_id] = updated

        return updated

    async def delete_by_id(self, user_id: str) -> UserRecord:
        """
        Remove a record and return it.

        Raises:
            NotFound: If no record has this id
        """
        async with self._lock:
            record = self._records.pop(user_id, None)

        if record is None:
            raise NotFound("User not found")

        logger.info(f"Deleted user record for {record.email}", extra={"user_id": user_id})
        return record

    async def list_by_status(self, status: AccountStatus) -> List[UserRecord]:
        matches = [r for r in self._records.values() if r.status == status]
        return sorted(matches, key=lambda r: r.created_at, reverse=True)

    async def list_all(self) -> List[UserRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)

    def _check_unique(self, record: UserRecord, ignore_id: Optional[str] = None) -> None:
        for other in self._records.values():
            if other.id == ignore_id:
                continue
            if other.email == record.email:
                raise Conflict("Email already exists")
            if record.username and other.username == record.username:
                raise Conflict("Username already exists")
            if (
                record.federated_subject_id
                and other.federated_subject_id == record.federated_subject_id
            ):
                raise Conflict("Federated identity already linked to another account")
