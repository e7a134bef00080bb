from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from sessiongate.service.errors import ErrorCode

_VALID_ERROR_CODES = frozenset(code.value for code in ErrorCode)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the named auth outcomes."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _validate_email(value: str) -> str:
    cleaned = value.strip()
    if len(cleaned) > 254 or not _EMAIL_PATTERN.match(cleaned):
        raise ValueError("invalid email address")
    return cleaned.lower()


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    fingerprint: Optional[str] = Field(default=None, max_length=512)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    # The operation tag is checked by the orchestrator so unknown values map to InvalidType
    type: str = Field(..., max_length=32)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class UserSummary(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    image_url: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class LoginData(CamelModel):
    user: UserSummary
    token: str
    refresh_token: str
    session_id: str
    fingerprint: Optional[str] = None


class RefreshData(CamelModel):
    token: Optional[str] = None
    refresh_token: Optional[str] = None


class MeData(CamelModel):
    user: UserSummary


class AdminSessionView(CamelModel):
    """Session row as shown to admins; never carries the refresh token."""

    id: str
    user_id: str
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    active: bool
    expired: bool
    login_type: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_activity_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AdminSessionPage(CamelModel):
    items: List[AdminSessionView]
    total: int
    page: int
    limit: int
    total_pages: int


class SessionStatsView(CamelModel):
    total: int
    active: int
    expired: int
    login_types: Dict[str, int] = Field(default_factory=dict)
