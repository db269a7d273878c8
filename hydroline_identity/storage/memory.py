from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from hydroline_identity.logging import get_logger
from hydroline_identity.storage.common import (
    deserialize_record,
    normalize_email,
    serialize_record,
)
from hydroline_identity.storage.errors import ConstraintViolation
from hydroline_identity.storage.models import (
    AdminAuditRecord,
    BindingHistoryEntry,
    ContactChannel,
    ExternalBinding,
    MinecraftProfile,
    Permission,
    PermissionLabel,
    PrimaryBindingPointer,
    Role,
    Session,
    User,
    UserContact,
    UserPermissionLabel,
    UserRole,
    VerificationCode,
    new_id,
)

# table name -> record type, in persistence order
_TABLES: Dict[str, type] = {
    "users": User,
    "sessions": Session,
    "channels": ContactChannel,
    "contacts": UserContact,
    "verification_codes": VerificationCode,
    "bindings": ExternalBinding,
    "binding_history": BindingHistoryEntry,
    "minecraft_profiles": MinecraftProfile,
    "roles": Role,
    "permissions": Permission,
    "labels": PermissionLabel,
    "user_roles": UserRole,
    "user_labels": UserPermissionLabel,
    "admin_audit": AdminAuditRecord,
}


class MemoryStore:
    """In-process identity store persisted to a JSON snapshot.

    Every public method takes ``_data_lock``. ``transaction()`` snapshots all
    tables and restores them if the block raises, so multi-row transitions are
    never observable half-applied.
    """

    def __init__(self, fs_root: str = "/tmp/hydroline") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.channels: Dict[str, ContactChannel] = {}
        self.contacts: Dict[str, UserContact] = {}
        self.verification_codes: Dict[str, VerificationCode] = {}
        self.bindings: Dict[str, ExternalBinding] = {}
        self.binding_history: Dict[str, BindingHistoryEntry] = {}
        self.minecraft_profiles: Dict[str, MinecraftProfile] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.labels: Dict[str, PermissionLabel] = {}
        self.user_roles: Dict[str, UserRole] = {}
        self.user_labels: Dict[str, UserPermissionLabel] = {}
        self.admin_audit: Dict[str, AdminAuditRecord] = {}
        # (user_id, provider) -> pointer
        self.primary_pointers: Dict[Tuple[str, str], PrimaryBindingPointer] = {}
        # role_id / label_id -> set of permission ids
        self.role_permissions: Dict[str, set[str]] = {}
        self.label_permissions: Dict[str, set[str]] = {}
        # RLock so service code can nest store calls inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    # transactions
    def _snapshot(self) -> Dict[str, Any]:
        names = list(_TABLES) + ["primary_pointers", "role_permissions", "label_permissions"]
        return {name: copy.deepcopy(getattr(self, name)) for name in names}

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                raise
            finally:
                self._tx_depth -= 1
            if self._tx_depth == 0:
                self._persist_state()

    # users
    def create_user(
        self,
        email: Optional[str] = None,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            normalized = normalize_email(email)
            if normalized and any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                email_verified=email_verified if normalized else False,
                name=name,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user_email(
        self, user_id: str, email: Optional[str], email_verified: bool
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            normalized = normalize_email(email)
            if normalized and any(
                u.email == normalized and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = normalized
            user.email_verified = email_verified
            self._persist_state()
            return user

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = datetime.utcnow()
                self._persist_state()

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        remember_me: bool = True,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                remember_me=remember_me,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    # contact channels
    def create_channel(
        self,
        key: str,
        display_name: str,
        *,
        description: Optional[str] = None,
        validation_regex: Optional[str] = None,
        allow_multiple: bool = True,
        is_verifiable: bool = False,
        is_required: bool = False,
        meta: Optional[Dict] = None,
    ) -> ContactChannel:
        with self._data_lock:
            if any(ch.key == key for ch in self.channels.values()):
                raise ConstraintViolation("channel key exists", {"key": key})
            channel = ContactChannel(
                id=new_id(),
                key=key,
                display_name=display_name,
                description=description,
                validation_regex=validation_regex,
                allow_multiple=allow_multiple,
                is_verifiable=is_verifiable,
                is_required=is_required,
                meta=meta,
            )
            self.channels[channel.id] = channel
            self._persist_state()
            return channel

    def get_channel(self, channel_id: str) -> Optional[ContactChannel]:
        with self._data_lock:
            return self.channels.get(channel_id)

    def get_channel_by_key(self, key: str) -> Optional[ContactChannel]:
        with self._data_lock:
            return next((ch for ch in self.channels.values() if ch.key == key), None)

    def list_channels(self) -> List[ContactChannel]:
        with self._data_lock:
            return sorted(self.channels.values(), key=lambda ch: ch.created_at)

    def update_channel(self, channel_id: str, **fields: Any) -> Optional[ContactChannel]:
        with self._data_lock:
            channel = self.channels.get(channel_id)
            if not channel:
                return None
            updated = replace(channel, **fields)
            self.channels[channel_id] = updated
            self._persist_state()
            return updated

    def delete_channel(self, channel_id: str) -> bool:
        with self._data_lock:
            if self.channels.pop(channel_id, None) is None:
                return False
            self._persist_state()
            return True

    def count_channel_contacts(self, channel_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.contacts.values() if c.channel_id == channel_id)

    # contacts
    def create_contact(
        self,
        user_id: str,
        channel_id: str,
        value: str,
        *,
        verification: str,
        is_primary: bool = False,
        verified_at: Optional[datetime] = None,
        meta: Optional[Dict] = None,
    ) -> UserContact:
        with self._data_lock:
            contact = UserContact(
                id=new_id(),
                user_id=user_id,
                channel_id=channel_id,
                value=value,
                verification=verification,
                is_primary=is_primary,
                verified_at=verified_at,
                meta=meta,
            )
            self.contacts[contact.id] = contact
            self._persist_state()
            return contact

    def get_contact(self, contact_id: str) -> Optional[UserContact]:
        with self._data_lock:
            return self.contacts.get(contact_id)

    def list_contacts(
        self, user_id: str, channel_id: Optional[str] = None
    ) -> List[UserContact]:
        with self._data_lock:
            rows = [
                c
                for c in self.contacts.values()
                if c.user_id == user_id and (channel_id is None or c.channel_id == channel_id)
            ]
            return sorted(rows, key=lambda c: c.created_at)

    def update_contact(self, contact_id: str, **fields: Any) -> Optional[UserContact]:
        with self._data_lock:
            contact = self.contacts.get(contact_id)
            if not contact:
                return None
            updated = replace(contact, **fields)
            self.contacts[contact_id] = updated
            self._persist_state()
            return updated

    def clear_primary_contacts(
        self, user_id: str, channel_id: str, *, except_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            cleared = 0
            for contact in self.contacts.values():
                if (
                    contact.user_id == user_id
                    and contact.channel_id == channel_id
                    and contact.is_primary
                    and contact.id != except_id
                ):
                    contact.is_primary = False
                    cleared += 1
            if cleared:
                self._persist_state()
            return cleared

    def delete_contact(self, contact_id: str) -> bool:
        with self._data_lock:
            if self.contacts.pop(contact_id, None) is None:
                return False
            self._persist_state()
            return True

    # verification codes
    def replace_verification_code(
        self, identifier: str, code_hash: str, expires_at: datetime
    ) -> VerificationCode:
        with self._data_lock:
            self._drop_codes(identifier)
            record = VerificationCode(
                id=new_id(), identifier=identifier, code_hash=code_hash, expires_at=expires_at
            )
            self.verification_codes[record.id] = record
            self._persist_state()
            return record

    def get_verification_code(self, identifier: str) -> Optional[VerificationCode]:
        with self._data_lock:
            matches = [
                v for v in self.verification_codes.values() if v.identifier == identifier
            ]
            if not matches:
                return None
            return max(matches, key=lambda v: v.created_at)

    def delete_verification_codes(self, identifier: str) -> int:
        with self._data_lock:
            removed = self._drop_codes(identifier)
            if removed:
                self._persist_state()
            return removed

    def _drop_codes(self, identifier: str) -> int:
        stale = [k for k, v in self.verification_codes.items() if v.identifier == identifier]
        for key in stale:
            self.verification_codes.pop(key, None)
        return len(stale)

    # external bindings
    def create_binding(
        self,
        user_id: str,
        provider: str,
        username: str,
        username_lower: str,
        *,
        realname: Optional[str] = None,
        external_uuid: Optional[str] = None,
        bound_by_user_id: Optional[str] = None,
        bound_by_ip: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> ExternalBinding:
        with self._data_lock:
            if self._binding_by_username(provider, username_lower):
                raise ConstraintViolation(
                    "external username already bound",
                    {"provider": provider, "username": username_lower},
                )
            binding = ExternalBinding(
                id=new_id(),
                user_id=user_id,
                provider=provider,
                username=username,
                username_lower=username_lower,
                realname=realname,
                external_uuid=external_uuid,
                bound_by_user_id=bound_by_user_id,
                bound_by_ip=bound_by_ip,
                meta=meta,
            )
            self.bindings[binding.id] = binding
            self._persist_state()
            return binding

    def get_binding(self, binding_id: str) -> Optional[ExternalBinding]:
        with self._data_lock:
            return self.bindings.get(binding_id)

    def get_binding_by_username(
        self, provider: str, username_lower: str
    ) -> Optional[ExternalBinding]:
        with self._data_lock:
            return self._binding_by_username(provider, username_lower)

    def _binding_by_username(
        self, provider: str, username_lower: str
    ) -> Optional[ExternalBinding]:
        return next(
            (
                b
                for b in self.bindings.values()
                if b.provider == provider and b.username_lower == username_lower
            ),
            None,
        )

    def list_bindings(self, user_id: str, provider: str) -> List[ExternalBinding]:
        """Bindings of one source-kind, oldest first."""
        with self._data_lock:
            rows = [
                b for b in self.bindings.values() if b.user_id == user_id and b.provider == provider
            ]
            return sorted(rows, key=lambda b: b.bound_at)

    def update_binding(self, binding_id: str, **fields: Any) -> Optional[ExternalBinding]:
        with self._data_lock:
            binding = self.bindings.get(binding_id)
            if not binding:
                return None
            fields.setdefault("updated_at", datetime.utcnow())
            updated = replace(binding, **fields)
            self.bindings[binding_id] = updated
            self._persist_state()
            return updated

    def delete_binding(self, binding_id: str) -> bool:
        with self._data_lock:
            if self.bindings.pop(binding_id, None) is None:
                return False
            self._persist_state()
            return True

    def get_primary_pointer(
        self, user_id: str, provider: str
    ) -> Optional[PrimaryBindingPointer]:
        with self._data_lock:
            return self.primary_pointers.get((user_id, provider))

    def set_primary_pointer(
        self, user_id: str, provider: str, binding_id: str
    ) -> PrimaryBindingPointer:
        with self._data_lock:
            pointer = PrimaryBindingPointer(
                user_id=user_id, provider=provider, binding_id=binding_id
            )
            self.primary_pointers[(user_id, provider)] = pointer
            self._persist_state()
            return pointer

    def clear_primary_pointer(self, user_id: str, provider: str) -> bool:
        with self._data_lock:
            if self.primary_pointers.pop((user_id, provider), None) is None:
                return False
            self._persist_state()
            return True

    def append_binding_history(self, entry: BindingHistoryEntry) -> BindingHistoryEntry:
        with self._data_lock:
            if entry.id in self.binding_history:
                raise ConstraintViolation("history entry exists", {"id": entry.id})
            self.binding_history[entry.id] = entry
            self._persist_state()
            return entry

    def list_binding_history(
        self, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[BindingHistoryEntry], int]:
        """Newest first; returns ``(page, total)``."""
        with self._data_lock:
            rows = [e for e in self.binding_history.values() if e.user_id == user_id]
            rows.sort(key=lambda e: e.created_at, reverse=True)
            return rows[offset : offset + limit], len(rows)

    # minecraft profiles
    def create_minecraft_profile(
        self,
        user_id: str,
        *,
        binding_id: Optional[str] = None,
        nickname: Optional[str] = None,
        external_uuid: Optional[str] = None,
        is_primary: bool = False,
        meta: Optional[Dict] = None,
    ) -> MinecraftProfile:
        with self._data_lock:
            profile = MinecraftProfile(
                id=new_id(),
                user_id=user_id,
                binding_id=binding_id,
                nickname=nickname,
                external_uuid=external_uuid,
                is_primary=is_primary,
                meta=meta,
            )
            self.minecraft_profiles[profile.id] = profile
            self._persist_state()
            return profile

    def list_minecraft_profiles(self, user_id: str) -> List[MinecraftProfile]:
        with self._data_lock:
            rows = [p for p in self.minecraft_profiles.values() if p.user_id == user_id]
            return sorted(rows, key=lambda p: p.created_at)

    def detach_minecraft_profiles(self, binding_id: str) -> int:
        with self._data_lock:
            detached = 0
            for profile in self.minecraft_profiles.values():
                if profile.binding_id == binding_id:
                    profile.binding_id = None
                    detached += 1
            if detached:
                self._persist_state()
            return detached

    def clear_primary_minecraft_profiles(self, user_id: str) -> int:
        with self._data_lock:
            cleared = 0
            for profile in self.minecraft_profiles.values():
                if profile.user_id == user_id and profile.is_primary:
                    profile.is_primary = False
                    cleared += 1
            if cleared:
                self._persist_state()
            return cleared

    # roles & permissions
    def create_role(
        self,
        key: str,
        name: str,
        *,
        description: Optional[str] = None,
        is_system: bool = False,
        meta: Optional[Dict] = None,
    ) -> Role:
        with self._data_lock:
            if any(r.key == key for r in self.roles.values()):
                raise ConstraintViolation("role key exists", {"key": key})
            role = Role(
                id=new_id(),
                key=key,
                name=name,
                description=description,
                is_system=is_system,
                meta=meta,
            )
            self.roles[role.id] = role
            self.role_permissions[role.id] = set()
            self._persist_state()
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_key(self, key: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.key == key), None)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.created_at)

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            updated = replace(role, **fields)
            self.roles[role_id] = updated
            self._persist_state()
            return updated

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self.role_permissions.pop(role_id, None)
            self._persist_state()
            return True

    def create_permission(
        self, key: str, *, description: Optional[str] = None, meta: Optional[Dict] = None
    ) -> Permission:
        with self._data_lock:
            if any(p.key == key for p in self.permissions.values()):
                raise ConstraintViolation("permission key exists", {"key": key})
            permission = Permission(id=new_id(), key=key, description=description, meta=meta)
            self.permissions[permission.id] = permission
            self._persist_state()
            return permission

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            return self.permissions.get(permission_id)

    def get_permissions_by_keys(self, keys: Iterable[str]) -> List[Permission]:
        wanted = set(keys)
        with self._data_lock:
            return [p for p in self.permissions.values() if p.key in wanted]

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: p.key)

    def update_permission(self, permission_id: str, **fields: Any) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                return None
            updated = replace(permission, **fields)
            self.permissions[permission_id] = updated
            self._persist_state()
            return updated

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            self._persist_state()
            return True

    def count_permission_references(self, permission_id: str) -> Tuple[int, int]:
        """Return ``(role_links, label_links)`` referencing a permission."""
        with self._data_lock:
            roles = sum(1 for ids in self.role_permissions.values() if permission_id in ids)
            labels = sum(1 for ids in self.label_permissions.values() if permission_id in ids)
            return roles, labels

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        with self._data_lock:
            self.role_permissions[role_id] = set(permission_ids)
            self._persist_state()

    def list_role_permission_ids(self, role_id: str) -> List[str]:
        with self._data_lock:
            return sorted(self.role_permissions.get(role_id, set()))

    def list_role_permission_links(self) -> List[Tuple[str, str]]:
        with self._data_lock:
            return [
                (role_id, perm_id)
                for role_id, ids in self.role_permissions.items()
                for perm_id in sorted(ids)
            ]

    # permission labels
    def create_label(
        self,
        key: str,
        name: str,
        *,
        description: Optional[str] = None,
        color: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> PermissionLabel:
        with self._data_lock:
            if any(lbl.key == key for lbl in self.labels.values()):
                raise ConstraintViolation("label key exists", {"key": key})
            label = PermissionLabel(
                id=new_id(),
                key=key,
                name=name,
                description=description,
                color=color,
                meta=meta,
            )
            self.labels[label.id] = label
            self.label_permissions[label.id] = set()
            self._persist_state()
            return label

    def get_label(self, label_id: str) -> Optional[PermissionLabel]:
        with self._data_lock:
            return self.labels.get(label_id)

    def get_label_by_key(self, key: str) -> Optional[PermissionLabel]:
        with self._data_lock:
            return next((lbl for lbl in self.labels.values() if lbl.key == key), None)

    def list_labels(self) -> List[PermissionLabel]:
        with self._data_lock:
            return sorted(self.labels.values(), key=lambda lbl: lbl.created_at)

    def update_label(self, label_id: str, **fields: Any) -> Optional[PermissionLabel]:
        with self._data_lock:
            label = self.labels.get(label_id)
            if not label:
                return None
            updated = replace(label, **fields)
            self.labels[label_id] = updated
            self._persist_state()
            return updated

    def delete_label(self, label_id: str) -> bool:
        with self._data_lock:
            if self.labels.pop(label_id, None) is None:
                return False
            self.label_permissions.pop(label_id, None)
            self._persist_state()
            return True

    def set_label_permissions(self, label_id: str, permission_ids: Iterable[str]) -> None:
        with self._data_lock:
            self.label_permissions[label_id] = set(permission_ids)
            self._persist_state()

    def add_label_permissions(self, label_id: str, permission_ids: Iterable[str]) -> int:
        with self._data_lock:
            current = self.label_permissions.setdefault(label_id, set())
            added = set(permission_ids) - current
            current.update(added)
            if added:
                self._persist_state()
            return len(added)

    def list_label_permission_ids(self, label_id: str) -> List[str]:
        with self._data_lock:
            return sorted(self.label_permissions.get(label_id, set()))

    def list_label_permission_links(self) -> List[Tuple[str, str]]:
        with self._data_lock:
            return [
                (label_id, perm_id)
                for label_id, ids in self.label_permissions.items()
                for perm_id in sorted(ids)
            ]

    # user assignments
    def list_user_role_ids(self, user_id: str) -> List[str]:
        with self._data_lock:
            return [ur.role_id for ur in self.user_roles.values() if ur.user_id == user_id]

    def set_user_roles(
        self, user_id: str, role_ids: Iterable[str], *, assigned_by_id: Optional[str] = None
    ) -> None:
        with self._data_lock:
            for key in [k for k, ur in self.user_roles.items() if ur.user_id == user_id]:
                self.user_roles.pop(key, None)
            for role_id in dict.fromkeys(role_ids):
                row = UserRole(
                    id=new_id(), user_id=user_id, role_id=role_id, assigned_by_id=assigned_by_id
                )
                self.user_roles[row.id] = row
            self._persist_state()

    def count_role_assignments(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for ur in self.user_roles.values() if ur.role_id == role_id)

    def list_user_label_ids(self, user_id: str) -> List[str]:
        with self._data_lock:
            return [ul.label_id for ul in self.user_labels.values() if ul.user_id == user_id]

    def set_user_labels(
        self, user_id: str, label_ids: Iterable[str], *, assigned_by_id: Optional[str] = None
    ) -> None:
        with self._data_lock:
            for key in [k for k, ul in self.user_labels.items() if ul.user_id == user_id]:
                self.user_labels.pop(key, None)
            for label_id in dict.fromkeys(label_ids):
                row = UserPermissionLabel(
                    id=new_id(), user_id=user_id, label_id=label_id, assigned_by_id=assigned_by_id
                )
                self.user_labels[row.id] = row
            self._persist_state()

    def ensure_user_label(
        self, user_id: str, label_id: str, *, assigned_by_id: Optional[str] = None
    ) -> bool:
        """Insert the assignment row unless it exists; True when inserted."""
        with self._data_lock:
            if any(
                ul.user_id == user_id and ul.label_id == label_id
                for ul in self.user_labels.values()
            ):
                return False
            row = UserPermissionLabel(
                id=new_id(), user_id=user_id, label_id=label_id, assigned_by_id=assigned_by_id
            )
            self.user_labels[row.id] = row
            self._persist_state()
            return True

    def count_label_assignments(self, label_id: str) -> int:
        with self._data_lock:
            return sum(1 for ul in self.user_labels.values() if ul.label_id == label_id)

    def list_user_permission_keys(self, user_id: str) -> List[str]:
        """Union of permissions granted through roles and labels."""
        with self._data_lock:
            granted: set[str] = set()
            for role_id in self.list_user_role_ids(user_id):
                granted |= self.role_permissions.get(role_id, set())
            for label_id in self.list_user_label_ids(user_id):
                granted |= self.label_permissions.get(label_id, set())
            return sorted(
                self.permissions[pid].key for pid in granted if pid in self.permissions
            )

    # audit
    def record_admin_audit(
        self,
        action: str,
        target_type: str,
        *,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
        payload: Optional[Dict] = None,
    ) -> AdminAuditRecord:
        with self._data_lock:
            record = AdminAuditRecord(
                id=new_id(),
                action=action,
                target_type=target_type,
                actor_id=actor_id,
                target_id=target_id,
                payload=payload,
            )
            self.admin_audit[record.id] = record
            self._persist_state()
            return record

    def list_admin_audit(self, limit: int = 100) -> List[AdminAuditRecord]:
        with self._data_lock:
            rows = sorted(self.admin_audit.values(), key=lambda r: r.created_at, reverse=True)
            return rows[:limit]

    # persistence
    def _persist_state(self) -> None:
        if self._tx_depth:
            # written once when the outermost transaction commits
            return
        state: Dict[str, Any] = {
            name: [serialize_record(row) for row in getattr(self, name).values()]
            for name in _TABLES
        }
        state["primary_pointers"] = [
            serialize_record(p) for p in self.primary_pointers.values()
        ]
        state["role_permissions"] = {k: sorted(v) for k, v in self.role_permissions.items()}
        state["label_permissions"] = {k: sorted(v) for k, v in self.label_permissions.items()}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, record_type in _TABLES.items():
            rows = [deserialize_record(record_type, raw) for raw in data.get(name, [])]
            setattr(self, name, {row.id: row for row in rows})
        self.primary_pointers = {}
        for raw in data.get("primary_pointers", []):
            pointer = deserialize_record(PrimaryBindingPointer, raw)
            self.primary_pointers[(pointer.user_id, pointer.provider)] = pointer
        self.role_permissions = {
            k: set(v) for k, v in data.get("role_permissions", {}).items()
        }
        self.label_permissions = {
            k: set(v) for k, v in data.get("label_permissions", {}).items()
        }
        return True
