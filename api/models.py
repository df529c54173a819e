"""
API request and response models for the storefront auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

UserResponse is the only way a User leaves the service, and it has no
password or token-hash fields -- serializing a User can never leak them.

Request bodies accept both snake_case and the camelCase names the storefront
frontend sends (passwordConfirm, currentPassword, newPassword).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Role, SecurityEvent, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignupRequest(_Body):
    name: str = Field(min_length=1, max_length=50)
    email: EmailStr
    # Strength rules are enforced by the service so the message is specific.
    password: str = Field(max_length=255)
    password_confirm: str = Field(alias="passwordConfirm", max_length=255)


class LoginRequest(_Body):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class ForgotPasswordRequest(_Body):
    email: EmailStr


class ResetPasswordRequest(_Body):
    password: str = Field(max_length=255)
    password_confirm: str = Field(alias="passwordConfirm", max_length=255)


class UpdatePasswordRequest(_Body):
    current_password: str = Field(alias="currentPassword", max_length=255)
    new_password: str = Field(alias="newPassword", max_length=255)
    password_confirm: str = Field(alias="passwordConfirm", max_length=255)


class UpdateEmailRequest(_Body):
    email: EmailStr
    current_password: str = Field(alias="currentPassword", max_length=255)


class UserPatch(_Body):
    """Admin update. Only deactivation is supported; there is no reactivation path."""

    active: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    role: Role
    email_verified: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build the public view of a User, field by field."""
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            email_verified=user.email_verified,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class UserData(BaseModel):
    user: UserResponse


class SessionEnvelope(BaseModel):
    """Body of signup / login / password change responses."""

    status: str = "success"
    token: str
    data: UserData


class UserEnvelope(BaseModel):
    status: str = "success"
    data: UserData


class UsersData(BaseModel):
    users: list[UserResponse]


class UsersEnvelope(BaseModel):
    status: str = "success"
    data: UsersData


class SecurityEventResponse(BaseModel):
    kind: str
    timestamp: datetime
    source_ip: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "SecurityEventResponse":
        return cls(
            kind=event.kind.value,
            timestamp=event.timestamp,
            source_ip=event.source_ip,
            detail=event.detail,
        )


class EventsData(BaseModel):
    events: list[SecurityEventResponse]


class EventsEnvelope(BaseModel):
    status: str = "success"
    data: EventsData


class MessageResponse(BaseModel):
    status: str = "success"
    message: str


class StatusResponse(BaseModel):
    status: str = "success"


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    status: str = "error"
    error: ErrorDetail
