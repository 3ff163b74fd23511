from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from boilerhub.logging import get_correlation_id

MAX_TAGS = 20
MAX_TAG_LENGTH = 32
MAX_META_DEPTH = 10


def _validate_json_depth(obj: Any, max_depth: int = MAX_META_DEPTH, current_depth: int = 0) -> None:
    """Reject nested JSON deeper than ``max_depth``."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        return None
    if len(cleaned) > 64:
        raise ValueError("name must be at most 64 characters")
    return cleaned


def _validate_tags(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    if len(value) > MAX_TAGS:
        raise ValueError(f"at most {MAX_TAGS} tags are allowed")
    tags: List[str] = []
    for raw in value:
        tag = _normalize_unicode(raw).strip().lower()
        if not tag or len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"tags must be 1-{MAX_TAG_LENGTH} characters")
        if tag not in tags:
            tags.append(tag)
    return tags


def _validate_meta(value: Optional[dict]) -> Optional[dict]:
    if value is None:
        return None
    _validate_json_depth(value)
    return value


# auth
class SignupRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_signup_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    is_active: bool = True
    created_at: datetime
    meta: Optional[dict] = None


class UserSummary(BaseModel):
    id: str
    name: Optional[str] = None
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]
    next_cursor: Optional[str] = None


class AuthResponse(BaseModel):
    """Body of signup/login/refresh. The refresh token travels only in the cookie."""

    access_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    session_id: str
    user: UserResponse


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    meta: Optional[dict] = None

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("meta")
    @classmethod
    def _validate_profile_meta(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_meta(value)


class UpdateUserRoleRequest(BaseModel):
    role: Literal["admin", "user"]


# catalogue
class CategoryResponse(BaseModel):
    id: str
    name: str
    slug: str
    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None


class BoilerplateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    repository_url: Optional[str] = Field(default=None, max_length=2048)
    framework: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, max_length=64)
    tags: List[str] = Field(default_factory=list)
    category_id: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("title must not be blank")
        return cleaned

    @field_validator("tags")
    @classmethod
    def _validate_request_tags(cls, value: List[str]) -> List[str]:
        return _validate_tags(value) or []


class BoilerplatePatch(BaseModel):
    """Partial update; only fields present in the body are applied."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    repository_url: Optional[str] = Field(default=None, max_length=2048)
    framework: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, max_length=64)
    tags: Optional[List[str]] = None
    category_id: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _strip_patch_title(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            raise ValueError("title may not be null")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("title must not be blank")
        return cleaned

    @field_validator("tags")
    @classmethod
    def _validate_patch_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            raise ValueError("tags may not be null; send [] to clear")
        return _validate_tags(value)


class BoilerplateResponse(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    repository_url: Optional[str] = None
    framework: Optional[str] = None
    language: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    category_id: Optional[str] = None
    author_id: str
    like_count: int = 0
    has_files: bool = False
    viewer_has_liked: Optional[bool] = None
    created_at: datetime
    updated_at: datetime


class EdgeResponse(BaseModel):
    node: BoilerplateResponse
    cursor: str
    score: Optional[float] = None


class PageInfoResponse(BaseModel):
    has_next_page: bool
    end_cursor: Optional[str] = None


class ConnectionResponse(BaseModel):
    edges: List[EdgeResponse]
    page_info: PageInfoResponse
    total_count: int


class LikeResponse(BaseModel):
    boilerplate_id: str
    liked: bool
    like_count: int


class CommitResponse(BaseModel):
    hash: str
    author: str
    email: str
    date: str
    message: str


class UploadResponse(BaseModel):
    boilerplate_id: str
    commit: str
    file_count: int
