from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Maximum nested JSON depth accepted in free-form meta/payload fields
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validate_dict_field(value: Optional[dict]) -> Optional[dict]:
    if value is None:
        return None
    _validate_json_depth(value)
    return value


def _normalize_identifier(value: str) -> str:
    """NFKC-normalize a login identifier and strip zero-width characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    cleaned = unicodedata.normalize("NFKC", cleaned).strip()
    if not cleaned:
        raise ValueError("identifier cannot be empty")
    return cleaned


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "binding_conflict",
    "channel_exclusive",
    "key_exists",
    "in_use",
    "last_contact_retained",
    "permissions_not_found",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _MetaPayload(BaseModel):
    meta: Optional[Dict[str, Any]] = None

    @field_validator("meta")
    @classmethod
    def _validate_meta(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value)


# auth
class CredentialLoginRequest(BaseModel):
    identifier: str = Field(..., max_length=128)
    password: str = Field(..., min_length=1, max_length=256)
    remember_me: bool = True

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: str) -> str:
        return _normalize_identifier(value)


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    binding_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None


# contacts
class ContactResponse(BaseModel):
    id: str
    channel: str
    value: str
    verification: str
    is_primary: bool
    verified_at: Optional[datetime] = None
    created_at: datetime
    meta: Optional[Dict[str, Any]] = None


class ContactListResponse(BaseModel):
    items: List[ContactResponse]


class ContactCreateRequest(_MetaPayload):
    channel: str = Field(default="email", max_length=64)
    value: str = Field(..., min_length=1, max_length=320)
    is_primary: bool = False


class ContactUpdateRequest(_MetaPayload):
    value: Optional[str] = Field(default=None, min_length=1, max_length=320)
    is_primary: Optional[bool] = None


class ContactVerifyRequest(BaseModel):
    channel: str = Field(default="email", max_length=64)
    value: str = Field(..., min_length=1, max_length=320)
    code: str = Field(..., min_length=4, max_length=12)


class SendCodeRequest(BaseModel):
    channel: str = Field(default="email", max_length=64)
    value: str = Field(..., min_length=1, max_length=320)


class SendCodeResponse(BaseModel):
    expires_at: datetime


class PhoneContactRequest(BaseModel):
    dial_code: str = Field(..., max_length=8)
    number: str = Field(..., min_length=1, max_length=32)
    is_primary: bool = False


# contact channels
class ChannelResponse(BaseModel):
    id: str
    key: str
    display_name: str
    description: Optional[str] = None
    validation_regex: Optional[str] = None
    allow_multiple: bool
    is_verifiable: bool
    is_required: bool
    created_at: datetime
    meta: Optional[Dict[str, Any]] = None


class ChannelCreateRequest(_MetaPayload):
    key: str = Field(..., min_length=2, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    validation_regex: Optional[str] = Field(default=None, max_length=512)
    allow_multiple: bool = True
    is_verifiable: bool = False
    is_required: bool = False


class ChannelUpdateRequest(_MetaPayload):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    validation_regex: Optional[str] = Field(default=None, max_length=512)
    allow_multiple: Optional[bool] = None
    is_verifiable: Optional[bool] = None
    is_required: Optional[bool] = None


# bindings
class BindingResponse(BaseModel):
    id: str
    provider: str
    username: str
    realname: Optional[str] = None
    external_uuid: Optional[str] = None
    status: str
    notes: Optional[str] = None
    bound_at: datetime
    is_primary: bool


class BindingListResponse(BaseModel):
    items: List[BindingResponse]


class BindRequest(BaseModel):
    identifier: str = Field(..., max_length=128)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: str) -> str:
        return _normalize_identifier(value)


class UnbindResponse(BaseModel):
    unbound: bool = True
    promoted_binding_id: Optional[str] = None


class AdminBindingCreateRequest(BaseModel):
    identifier: str = Field(..., max_length=128)
    set_primary: bool = False

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: str) -> str:
        return _normalize_identifier(value)


class AdminBindingUpdateRequest(_MetaPayload):
    realname: Optional[str] = Field(default=None, max_length=128)
    status: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, max_length=1024)
    target_user_id: Optional[str] = Field(default=None, max_length=64)
    primary: Optional[bool] = None


class ManualHistoryEntryRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=256)
    binding_id: Optional[str] = Field(default=None, max_length=64)
    payload: Optional[Dict[str, Any]] = None

    @field_validator("payload")
    @classmethod
    def _validate_payload(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value)


class BindingHistoryEntryResponse(BaseModel):
    id: str
    action: str
    provider: str
    binding_id: Optional[str] = None
    operator_id: Optional[str] = None
    username: Optional[str] = None
    realname: Optional[str] = None
    external_uuid: Optional[str] = None
    reason: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime


class Pagination(BaseModel):
    total: int
    page: int
    pageSize: int
    pageCount: int


class BindingHistoryResponse(BaseModel):
    items: List[BindingHistoryEntryResponse]
    pagination: Pagination


class MinecraftProfileRequest(_MetaPayload):
    nickname: Optional[str] = Field(default=None, max_length=64)
    binding_id: Optional[str] = Field(default=None, max_length=64)
    is_primary: bool = False


class MinecraftProfileResponse(BaseModel):
    id: str
    nickname: Optional[str] = None
    binding_id: Optional[str] = None
    external_uuid: Optional[str] = None
    is_primary: bool
    created_at: datetime


# rbac
class RoleResponse(BaseModel):
    id: str
    key: str
    name: str
    description: Optional[str] = None
    is_system: bool
    permissions: List[str] = Field(default_factory=list)
    meta: Optional[Dict[str, Any]] = None


class RoleCreateRequest(_MetaPayload):
    key: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    permission_keys: List[str] = Field(default_factory=list)


class RoleUpdateRequest(_MetaPayload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)


class PermissionKeysRequest(BaseModel):
    permission_keys: List[str] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)


class PermissionResponse(BaseModel):
    id: str
    key: str
    description: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


class PermissionCreateRequest(_MetaPayload):
    key: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)


class PermissionUpdateRequest(_MetaPayload):
    description: Optional[str] = Field(default=None, max_length=512)


class PermissionLabelResponse(BaseModel):
    id: str
    key: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    meta: Optional[Dict[str, Any]] = None


class PermissionLabelCreateRequest(_MetaPayload):
    key: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    color: Optional[str] = Field(default=None, max_length=32)
    permission_keys: List[str] = Field(default_factory=list)


class PermissionLabelUpdateRequest(_MetaPayload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    color: Optional[str] = Field(default=None, max_length=32)
    permission_keys: Optional[List[str]] = None


class PermissionCatalogEntry(BaseModel):
    id: str
    key: str
    description: Optional[str] = None
    roles: List[Dict[str, Any]]
    labels: List[Dict[str, Any]]


class UserRolesRequest(BaseModel):
    role_keys: List[str] = Field(default_factory=list)


class UserLabelsRequest(BaseModel):
    label_keys: List[str] = Field(default_factory=list)


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    permissions: List[str]
    roles: List[str] = Field(default_factory=list)
