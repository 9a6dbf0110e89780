from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from swifttravel.service.magic_link import normalize_email
from swifttravel.storage.models import User

_VALID_ERROR_CODES = {
    "INVALID_DATA",
    "MISSING_BODY",
    "NOT_FOUND",
    "METHOD_NOT_ALLOWED",
    "RATE_LIMIT_EXCEEDED",
    "UNAUTHORIZED",
    "NO_TOKEN",
    "INVALID_TOKEN",
    "TOKEN_EXPIRED",
    "TOKEN_REVOKED",
    "INVALID_OR_EXPIRED_TOKEN",
    "DELIVERY_FAILED",
    "INTERNAL_ERROR",
}

MAX_TOKEN_LENGTH = 512
MAX_LIST_ITEMS = 50

Persona = Literal["photography", "food-forward", "architecture", "family"]
BudgetRange = Literal["budget", "mid-range", "luxury", "no-limit"]
TravelStyle = Literal["relaxed", "packed", "balanced"]
Activity = Literal[
    "dining", "sightseeing", "culture", "nature", "shopping", "nightlife", "transport"
]
StringList = Annotated[List[str], Field(max_length=MAX_LIST_ITEMS)]
ActivityList = Annotated[List[Activity], Field(max_length=MAX_LIST_ITEMS)]


class CamelModel(BaseModel):
    """Base for API models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(CamelModel):
    """Error body returned by every failing endpoint."""

    error: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    request_id: Optional[str] = None

    @field_validator("error")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class MagicLinkRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_magic_link_email(cls, value: str) -> str:
        return normalize_email(value)


class MagicLinkResponse(CamelModel):
    message: str = "Magic link sent successfully. Please check your email."
    success: bool = True


class VerifyTokenRequest(CamelModel):
    token: str

    @field_validator("token")
    @classmethod
    def _validate_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Token is required")
        if len(value) > MAX_TOKEN_LENGTH:
            raise ValueError("Token is too long")
        return value


class UserResponse(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    preferences: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_active_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            preferences=user.preferences,
            created_at=user.created_at,
            last_active_at=user.last_active_at,
        )


class VerifyTokenResponse(CamelModel):
    user: UserResponse
    session_token: str
    success: bool = True


class PreferencesUpdate(CamelModel):
    default_persona: Optional[Persona] = None
    budget_range: Optional[BudgetRange] = None
    accessibility_needs: Optional[StringList] = None
    dietary_restrictions: Optional[StringList] = None
    travel_style: Optional[TravelStyle] = None
    preferred_activities: Optional[ActivityList] = None

    def as_document(self) -> Dict[str, Any]:
        """Only the keys the client sent, camelCased for storage."""
        return self.model_dump(by_alias=True, exclude_unset=True)


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    preferences: Optional[PreferencesUpdate] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("Name must not be empty")
        return value


class ProfileResponse(CamelModel):
    user: UserResponse
    success: bool = True


class LogoutResponse(CamelModel):
    message: str = "Logged out successfully"
    success: bool = True


class HealthResponse(CamelModel):
    status: Literal["healthy", "unhealthy"]
    checks: Dict[str, Dict[str, Any]]
    version: str
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
