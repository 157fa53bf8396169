"""
Data Models Module

This module defines the domain records and the Pydantic models used for
request/response validation throughout the gateway.

Models are organized by functional area:
- Enumerations (roles, account status, auth provider)
- User records (base shape plus per-application subtypes)
- Identity attached to authenticated requests
- Request bodies
- Error responses
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enumerations
# ============================================================================

class Role(str, Enum):
    BASIC = "basic"
    ADMIN = "admin"
    SUPER_ADMIN = "superAdmin"


ADMIN_ROLES = (Role.ADMIN, Role.SUPER_ADMIN)


class AccountStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class AuthProvider(str, Enum):
    LOCAL = "local"
    FEDERATED = "federated"


# ============================================================================
# User Records
# ============================================================================

class UserRecord(BaseModel):
    """
    Base shape shared by every account, whatever application it belongs to.

    password_hash is None for federated-only accounts; federated_subject_id is
    None until the user signs in through Azure AD. A record always has at
    least one of the two.
    """

    model_config = ConfigDict(use_enum_values=False)

    id: str
    email: str
    name: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    federated_subject_id: Optional[str] = None
    auth_provider: AuthProvider = AuthProvider.LOCAL
    role: Role = Role.BASIC
    status: AccountStatus = AccountStatus.APPROVED
    application: str = "default"
    reset_token_hash: Optional[str] = None
    reset_token_expiry: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    def summary(self) -> Dict[str, Any]:
        """Public view of the record (never includes credentials)."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "username": self.username,
            "application": self.application,
            "role": self.role.value,
            "status": self.status.value,
            "authProvider": self.auth_provider.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class BlogUserRecord(UserRecord):
    """Account belonging to the blog application."""

    application: str = "blog"
    about_me: str = "About me"
    title: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    projects: List[str] = Field(default_factory=list)
    work: List[str] = Field(default_factory=list)
    education: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    social_media: List[str] = Field(default_factory=list)
    websites: List[str] = Field(default_factory=list)
    notifications: List[str] = Field(default_factory=list)
    favorite_articles: List[str] = Field(default_factory=list)
    saved_articles: List[str] = Field(default_factory=list)
    liked_articles: List[str] = Field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        data = super().summary()
        data.update({
            "aboutMe": self.about_me,
            "title": self.title,
            "phone": self.phone,
            "location": self.location,
            "projects": list(self.projects),
            "work": list(self.work),
            "education": list(self.education),
            "skills": list(self.skills),
            "socialMedia": list(self.social_media),
            "websites": list(self.websites),
            "notifications": list(self.notifications),
            "favoriteArticles": list(self.favorite_articles),
            "savedArticles": list(self.saved_articles),
            "likedArticles": list(self.liked_articles),
        })
        return data


RECORD_TYPES: Dict[str, Type[UserRecord]] = {
    "blog": BlogUserRecord,
}

def record_type_for(application: Optional[str]) -> Type[UserRecord]:
    """Select the record shape for an application; unknown ones get the base shape."""
    return RECORD_TYPES.get((application or "default").lower(), UserRecord)


# ============================================================================
# Authenticated Identity
# ============================================================================

class Identity(BaseModel):
    """Normalized identity attached to a request by the auth dependencies."""

    id: str
    email: Optional[str] = None
    role: Role = Role.BASIC
    application: str = "default"
    federated_subject_id: Optional[str] = None
    token_source: str = Field("internal", description="internal or federated")


def has_role(identity: Any, allowed: Iterable[Role]) -> bool:
    """Return True if the identity (or user record) holds one of the allowed roles."""
    role = getattr(identity, "role", None)
    if role is None:
        return False
    try:
        role = Role(role)
    except ValueError:
        return False
    return role in set(allowed)


# ============================================================================
# Request Bodies
# ============================================================================

class RegisterRequest(BaseModel):
    """Local account registration."""
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(..., max_length=255)
    username: Optional[str] = Field(None, max_length=100)
    application: str = Field(default="default", max_length=50)
    status: Optional[str] = Field(None, description="PENDING to enter the approval workflow")

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name cannot be empty")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = Field(None, description="Refresh token when no cookie is sent")


class StatusCheckRequest(BaseModel):
    email: EmailStr


class ManualDecisionRequest(BaseModel):
    userId: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str = Field(..., max_length=255)


class ProfileUpdateRequest(BaseModel):
    """
    Profile changes. Email, role, status and credentials are not editable
    here. Fields beyond name and username exist only on application
    specific records (see BlogUserRecord).
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    username: Optional[str] = Field(None, min_length=1, max_length=100)
    about_me: Optional[str] = Field(None, alias="aboutMe", max_length=2000)
    title: Optional[str] = Field(None, max_length=200)
    phone: Optional[str] = Field(None, max_length=50)
    location: Optional[str] = Field(None, max_length=200)
    projects: Optional[List[str]] = None
    work: Optional[List[str]] = None
    education: Optional[List[str]] = None
    skills: Optional[List[str]] = None
    social_media: Optional[List[str]] = Field(None, alias="socialMedia")
    websites: Optional[List[str]] = None
    notifications: Optional[List[str]] = None
    favorite_articles: Optional[List[str]] = Field(None, alias="favoriteArticles")
    saved_articles: Optional[List[str]] = Field(None, alias="savedArticles")
    liked_articles: Optional[List[str]] = Field(None, alias="likedArticles")


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


ERROR_RESPONSES: Dict[Any, Dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid request or token"},
    401: {"model": ErrorResponse, "description": "Not authenticated"},
    403: {"model": ErrorResponse, "description": "Account denied or insufficient role"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Conflicting account state"},
}
