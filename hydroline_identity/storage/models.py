from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

# Contact verification states
UNVERIFIED = "UNVERIFIED"
PENDING = "PENDING"
VERIFIED = "VERIFIED"
CONTACT_VERIFICATION_STATES = (UNVERIFIED, PENDING, VERIFIED)

# Binding history actions
BIND = "BIND"
UNBIND = "UNBIND"
PRIMARY_SET = "PRIMARY_SET"
PRIMARY_UNSET = "PRIMARY_UNSET"
TRANSFER = "TRANSFER"
MANUAL_ENTRY = "MANUAL_ENTRY"
BINDING_HISTORY_ACTIONS = (BIND, UNBIND, PRIMARY_SET, PRIMARY_UNSET, TRANSFER, MANUAL_ENTRY)

AUTHME_PROVIDER = "authme"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    remember_me: bool = True
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        remember_me: bool = True,
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            remember_me=remember_me,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )


@dataclass
class ContactChannel:
    id: str
    key: str
    display_name: str
    description: Optional[str] = None
    validation_regex: Optional[str] = None
    allow_multiple: bool = True
    is_verifiable: bool = False
    is_required: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class UserContact:
    id: str
    user_id: str
    channel_id: str
    value: str
    verification: str = UNVERIFIED
    is_primary: bool = False
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class VerificationCode:
    id: str
    identifier: str
    code_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ExternalBinding:
    id: str
    user_id: str
    username: str
    username_lower: str
    provider: str = AUTHME_PROVIDER
    realname: Optional[str] = None
    external_uuid: Optional[str] = None
    status: str = "ACTIVE"
    notes: Optional[str] = None
    bound_at: datetime = field(default_factory=datetime.utcnow)
    bound_by_user_id: Optional[str] = None
    bound_by_ip: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class PrimaryBindingPointer:
    """Per-(user, provider) pointer at the primary binding."""

    user_id: str
    provider: str
    binding_id: str
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class BindingHistoryEntry:
    id: str
    user_id: str
    action: str
    provider: str = AUTHME_PROVIDER
    binding_id: Optional[str] = None
    operator_id: Optional[str] = None
    username: Optional[str] = None
    realname: Optional[str] = None
    external_uuid: Optional[str] = None
    reason: Optional[str] = None
    payload: Dict | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class MinecraftProfile:
    id: str
    user_id: str
    binding_id: Optional[str] = None
    nickname: Optional[str] = None
    external_uuid: Optional[str] = None
    is_primary: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class Role:
    id: str
    key: str
    name: str
    description: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class Permission:
    id: str
    key: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class PermissionLabel:
    id: str
    key: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class UserRole:
    id: str
    user_id: str
    role_id: str
    assigned_at: datetime = field(default_factory=datetime.utcnow)
    assigned_by_id: Optional[str] = None


@dataclass
class UserPermissionLabel:
    id: str
    user_id: str
    label_id: str
    assigned_at: datetime = field(default_factory=datetime.utcnow)
    assigned_by_id: Optional[str] = None


@dataclass
class AdminAuditRecord:
    id: str
    action: str
    target_type: str
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    payload: Dict | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)
