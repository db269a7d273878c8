from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

from hydroline_identity.logging import get_logger, log_rbac_operation
from hydroline_identity.service.errors import (
    ForbiddenError,
    InUseError,
    KeyExistsError,
    NotFoundError,
    PermissionsNotFoundError,
    ValidationError,
)
from hydroline_identity.storage.errors import ConstraintViolation
from hydroline_identity.storage.models import Permission, PermissionLabel, Role

logger = get_logger(__name__)

MANAGE_USERS = "auth.manage.users"
MANAGE_CONTACT_CHANNELS = "auth.manage.contact-channels"
MANAGE_ROLES = "auth.manage.roles"
MANAGE_OAUTH = "auth.manage.oauth"
MANAGE_ATTACHMENTS = "assets.manage.attachments"
MANAGE_CONFIG = "config.manage"
MANAGE_PORTAL_HOME = "portal.manage.home"
MANAGE_MINECRAFT = "minecraft.manage.servers"

DEFAULT_PERMISSIONS = (
    MANAGE_USERS,
    MANAGE_CONTACT_CHANNELS,
    MANAGE_ROLES,
    MANAGE_OAUTH,
    MANAGE_ATTACHMENTS,
    MANAGE_CONFIG,
    MANAGE_PORTAL_HOME,
    MANAGE_MINECRAFT,
)

ADMIN_ROLE = "admin"
MODERATOR_ROLE = "moderator"
PLAYER_ROLE = "player"

# key -> (name, permission keys)
DEFAULT_ROLES: Dict[str, tuple[str, tuple[str, ...]]] = {
    ADMIN_ROLE: ("Administrator", DEFAULT_PERMISSIONS),
    MODERATOR_ROLE: ("Moderator", (MANAGE_USERS, MANAGE_CONTACT_CHANNELS)),
    PLAYER_ROLE: ("Player", ()),
}

_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.:-]{0,127}$")


def _dedupe(keys: Optional[Iterable[str]]) -> List[str]:
    return list(dict.fromkeys(k.strip() for k in (keys or []) if k and k.strip()))


class RbacService:
    """Roles, permissions and permission labels.

    A user's effective permissions are the union of the permissions of every
    assigned role and every assigned label. There are no deny rules.
    """

    def __init__(self, store) -> None:
        self.store = store

    def _audit(
        self,
        action: str,
        target_type: str,
        *,
        actor_id: Optional[str],
        target_id: Optional[str],
        payload: Optional[dict] = None,
    ) -> None:
        self.store.record_admin_audit(
            action, target_type, actor_id=actor_id, target_id=target_id, payload=payload
        )
        log_rbac_operation(
            action, actor_id=actor_id, logger=logger, target_type=target_type, target_id=target_id
        )

    @staticmethod
    def _check_key(key: str, kind: str) -> str:
        key = (key or "").strip()
        if not _KEY_PATTERN.match(key):
            raise ValidationError(f"invalid {kind} key", detail={"key": key})
        return key

    # resolution
    def resolve_permissions(self, keys: Optional[Iterable[str]]) -> List[Permission]:
        """Map keys to permissions, failing on any key that does not exist."""
        wanted = _dedupe(keys)
        if not wanted:
            return []
        found = {p.key: p for p in self.store.get_permissions_by_keys(wanted)}
        missing = [k for k in wanted if k not in found]
        if missing:
            raise PermissionsNotFoundError(missing)
        return [found[k] for k in wanted]

    def resolve_effective_permissions(self, user_id: str) -> frozenset[str]:
        return frozenset(self.store.list_user_permission_keys(user_id))

    def user_role_keys(self, user_id: str) -> List[str]:
        keys = []
        for role_id in self.store.list_user_role_ids(user_id):
            role = self.store.get_role(role_id)
            if role:
                keys.append(role.key)
        return sorted(keys)

    # roles
    def list_roles(self) -> List[Dict[str, Any]]:
        permissions = {p.id: p.key for p in self.store.list_permissions()}
        return [
            {
                "role": role,
                "permissions": sorted(
                    permissions[pid]
                    for pid in self.store.list_role_permission_ids(role.id)
                    if pid in permissions
                ),
            }
            for role in sorted(self.store.list_roles(), key=lambda r: r.name)
        ]

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def create_role(
        self,
        key: str,
        name: str,
        *,
        description: Optional[str] = None,
        is_system: bool = False,
        meta: Optional[dict] = None,
        permission_keys: Optional[List[str]] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        key = self._check_key(key, "role")
        if self.store.get_role_by_key(key):
            raise KeyExistsError("role key already exists", detail={"key": key})
        permissions = self.resolve_permissions(permission_keys)
        with self.store.transaction():
            try:
                role = self.store.create_role(
                    key, name, description=description, is_system=is_system, meta=meta
                )
            except ConstraintViolation as exc:
                raise KeyExistsError("role key already exists", detail={"key": key}) from exc
            if permissions:
                self.store.set_role_permissions(role.id, [p.id for p in permissions])
            self._audit(
                "create_role",
                "role",
                actor_id=actor_id,
                target_id=role.id,
                payload={"key": key, "permissionKeys": [p.key for p in permissions]},
            )
        return role

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        meta: Optional[dict] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        self.get_role(role_id)
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        if meta is not None:
            fields["meta"] = meta
        with self.store.transaction():
            role = self.store.update_role(role_id, **fields) if fields else self.get_role(role_id)
            self._audit(
                "update_role",
                "role",
                actor_id=actor_id,
                target_id=role_id,
                payload={"fields": sorted(fields)},
            )
        return role

    def update_role_permissions(
        self, role_id: str, permission_keys: List[str], *, actor_id: Optional[str] = None
    ) -> List[str]:
        """Replace the role's whole permission set."""
        self.get_role(role_id)
        permissions = self.resolve_permissions(permission_keys)
        with self.store.transaction():
            self.store.set_role_permissions(role_id, [p.id for p in permissions])
            self._audit(
                "update_role_permissions",
                "role",
                actor_id=actor_id,
                target_id=role_id,
                payload={"permissionKeys": sorted(p.key for p in permissions)},
            )
        return sorted(p.key for p in permissions)

    def delete_role(self, role_id: str, *, actor_id: Optional[str] = None) -> None:
        role = self.get_role(role_id)
        if role.is_system:
            raise ForbiddenError("system roles cannot be deleted", detail={"key": role.key})
        with self.store.transaction():
            usage = self.store.count_role_assignments(role_id)
            if usage:
                raise InUseError(
                    "role is assigned to users", detail={"role_id": role_id, "assignments": usage}
                )
            self.store.delete_role(role_id)
            self._audit(
                "delete_role", "role", actor_id=actor_id, target_id=role_id, payload={"key": role.key}
            )

    # permissions
    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def create_permission(
        self,
        key: str,
        *,
        description: Optional[str] = None,
        meta: Optional[dict] = None,
        actor_id: Optional[str] = None,
    ) -> Permission:
        key = self._check_key(key, "permission")
        if self.store.get_permissions_by_keys([key]):
            raise KeyExistsError("permission key already exists", detail={"key": key})
        with self.store.transaction():
            try:
                permission = self.store.create_permission(key, description=description, meta=meta)
            except ConstraintViolation as exc:
                raise KeyExistsError("permission key already exists", detail={"key": key}) from exc
            self._audit(
                "create_permission",
                "permission",
                actor_id=actor_id,
                target_id=permission.id,
                payload={"key": key},
            )
        return permission

    def update_permission(
        self,
        permission_id: str,
        *,
        description: Optional[str] = None,
        meta: Optional[dict] = None,
        actor_id: Optional[str] = None,
    ) -> Permission:
        permission = self.store.get_permission(permission_id)
        if not permission:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        fields: Dict[str, Any] = {}
        if description is not None:
            fields["description"] = description
        if meta is not None:
            fields["meta"] = meta
        with self.store.transaction():
            if fields:
                permission = self.store.update_permission(permission_id, **fields)
            self._audit(
                "update_permission",
                "permission",
                actor_id=actor_id,
                target_id=permission_id,
                payload={"fields": sorted(fields)},
            )
        return permission

    def delete_permission(self, permission_id: str, *, actor_id: Optional[str] = None) -> None:
        permission = self.store.get_permission(permission_id)
        if not permission:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        with self.store.transaction():
            roles, labels = self.store.count_permission_references(permission_id)
            if roles or labels:
                raise InUseError(
                    "permission is still granted by roles or labels",
                    detail={"key": permission.key, "roles": roles, "labels": labels},
                )
            self.store.delete_permission(permission_id)
            self._audit(
                "delete_permission",
                "permission",
                actor_id=actor_id,
                target_id=permission_id,
                payload={"key": permission.key},
            )

    # labels
    def list_permission_labels(self) -> List[Dict[str, Any]]:
        permissions = {p.id: p.key for p in self.store.list_permissions()}
        return [
            {
                "label": label,
                "permissions": sorted(
                    permissions[pid]
                    for pid in self.store.list_label_permission_ids(label.id)
                    if pid in permissions
                ),
            }
            for label in sorted(self.store.list_labels(), key=lambda lbl: lbl.name)
        ]

    def get_permission_label(self, label_id: str) -> PermissionLabel:
        label = self.store.get_label(label_id)
        if not label:
            raise NotFoundError("permission label not found", detail={"label_id": label_id})
        return label

    def create_permission_label(
        self,
        key: str,
        name: str,
        *,
        description: Optional[str] = None,
        color: Optional[str] = None,
        meta: Optional[dict] = None,
        permission_keys: Optional[List[str]] = None,
        actor_id: Optional[str] = None,
    ) -> PermissionLabel:
        key = self._check_key(key, "label")
        if self.store.get_label_by_key(key):
            raise KeyExistsError("permission label key already exists", detail={"key": key})
        permissions = self.resolve_permissions(permission_keys)
        with self.store.transaction():
            try:
                label = self.store.create_label(
                    key, name, description=description, color=color, meta=meta
                )
            except ConstraintViolation as exc:
                raise KeyExistsError(
                    "permission label key already exists", detail={"key": key}
                ) from exc
            if permissions:
                self.store.set_label_permissions(label.id, [p.id for p in permissions])
            self._audit(
                "create_permission_label",
                "permission_label",
                actor_id=actor_id,
                target_id=label.id,
                payload={"key": key, "permissionKeys": [p.key for p in permissions]},
            )
        return label

    def update_permission_label(
        self,
        label_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        meta: Optional[dict] = None,
        permission_keys: Optional[List[str]] = None,
        actor_id: Optional[str] = None,
    ) -> PermissionLabel:
        label = self.get_permission_label(label_id)
        permissions = (
            self.resolve_permissions(permission_keys) if permission_keys is not None else None
        )
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        if color is not None:
            fields["color"] = color
        if meta is not None:
            fields["meta"] = meta
        with self.store.transaction():
            if fields:
                label = self.store.update_label(label_id, **fields)
            if permissions is not None:
                self.store.set_label_permissions(label_id, [p.id for p in permissions])
            self._audit(
                "update_permission_label",
                "permission_label",
                actor_id=actor_id,
                target_id=label_id,
                payload={
                    "fields": sorted(fields),
                    "permissionKeys": (
                        sorted(p.key for p in permissions) if permissions is not None else None
                    ),
                },
            )
        return label

    def delete_permission_label(self, label_id: str, *, actor_id: Optional[str] = None) -> None:
        label = self.get_permission_label(label_id)
        with self.store.transaction():
            usage = self.store.count_label_assignments(label_id)
            if usage:
                raise InUseError(
                    "permission label is assigned to users",
                    detail={"label_id": label_id, "assignments": usage},
                )
            self.store.delete_label(label_id)
            self._audit(
                "delete_permission_label",
                "permission_label",
                actor_id=actor_id,
                target_id=label_id,
                payload={"key": label.key},
            )

    def list_permission_catalog(self) -> List[Dict[str, Any]]:
        """Each permission with the roles and labels that grant it."""
        roles = {r.id: r for r in self.store.list_roles()}
        labels = {lbl.id: lbl for lbl in self.store.list_labels()}
        by_role: Dict[str, List[Role]] = {}
        for role_id, perm_id in self.store.list_role_permission_links():
            if role_id in roles:
                by_role.setdefault(perm_id, []).append(roles[role_id])
        by_label: Dict[str, List[PermissionLabel]] = {}
        for label_id, perm_id in self.store.list_label_permission_links():
            if label_id in labels:
                by_label.setdefault(perm_id, []).append(labels[label_id])
        return [
            {
                "permission": permission,
                "roles": [
                    {"id": r.id, "key": r.key, "name": r.name}
                    for r in sorted(by_role.get(permission.id, []), key=lambda r: r.key)
                ],
                "labels": [
                    {"id": lbl.id, "key": lbl.key, "name": lbl.name, "color": lbl.color}
                    for lbl in sorted(by_label.get(permission.id, []), key=lambda lbl: lbl.key)
                ],
            }
            for permission in self.store.list_permissions()
        ]

    # assignments
    def assign_roles(
        self, user_id: str, role_keys: List[str], *, actor_id: Optional[str] = None
    ) -> List[str]:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        wanted = _dedupe(role_keys)
        roles = [self.store.get_role_by_key(k) for k in wanted]
        missing = [k for k, r in zip(wanted, roles) if r is None]
        if missing:
            raise NotFoundError("roles not found", detail={"missing": missing})
        with self.store.transaction():
            self.store.set_user_roles(user_id, [r.id for r in roles], assigned_by_id=actor_id)
            self._audit(
                "assign_roles",
                "user",
                actor_id=actor_id,
                target_id=user_id,
                payload={"roleKeys": wanted},
            )
        return sorted(wanted)

    def assign_permission_labels(
        self, user_id: str, label_keys: List[str], *, actor_id: Optional[str] = None
    ) -> List[str]:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        wanted = _dedupe(label_keys)
        labels = [self.store.get_label_by_key(k) for k in wanted]
        missing = [k for k, lbl in zip(wanted, labels) if lbl is None]
        if missing:
            raise NotFoundError("permission labels not found", detail={"missing": missing})
        with self.store.transaction():
            self.store.set_user_labels(user_id, [lbl.id for lbl in labels], assigned_by_id=actor_id)
            self._audit(
                "assign_permission_labels",
                "user",
                actor_id=actor_id,
                target_id=user_id,
                payload={"labelKeys": wanted},
            )
        return sorted(wanted)

    def self_assign_permissions(
        self, user_id: str, permission_keys: List[str], *, actor_id: Optional[str] = None
    ) -> Optional[PermissionLabel]:
        """Grant permissions through the user's own ``self-<id>`` label.

        Returns None without writing when no permission keys were given.
        """
        permissions = self.resolve_permissions(permission_keys)
        if not permissions:
            return None
        label_key = f"self-{user_id}"
        with self.store.transaction():
            label = self.store.get_label_by_key(label_key)
            if not label:
                label = self.store.create_label(
                    label_key,
                    f"Self-managed {user_id[:6]}",
                    description="Self-assigned administrator permissions",
                    meta={"selfManaged": True},
                )
            added = self.store.add_label_permissions(label.id, [p.id for p in permissions])
            self.store.ensure_user_label(user_id, label.id, assigned_by_id=user_id)
            self._audit(
                "self_assign_permissions",
                "permission_label",
                actor_id=actor_id or user_id,
                target_id=label.id,
                payload={"permissionKeys": [p.key for p in permissions], "added": added},
            )
        return label

    # bootstrap
    def ensure_default_roles_and_permissions(self) -> Dict[str, List[str]]:
        """Insert whichever default permissions, roles and role grants are missing."""
        created: Dict[str, List[str]] = {"permissions": [], "roles": []}
        with self.store.transaction():
            existing = {p.key for p in self.store.get_permissions_by_keys(DEFAULT_PERMISSIONS)}
            for key in DEFAULT_PERMISSIONS:
                if key not in existing:
                    self.store.create_permission(key)
                    created["permissions"].append(key)
            permission_ids = {
                p.key: p.id for p in self.store.get_permissions_by_keys(DEFAULT_PERMISSIONS)
            }
            for role_key, (name, keys) in DEFAULT_ROLES.items():
                role = self.store.get_role_by_key(role_key)
                if not role:
                    role = self.store.create_role(role_key, name, is_system=True)
                    created["roles"].append(role_key)
                if not keys:
                    continue
                current = set(self.store.list_role_permission_ids(role.id))
                required = {permission_ids[k] for k in keys}
                if not required <= current:
                    self.store.set_role_permissions(role.id, current | required)
        if created["permissions"] or created["roles"]:
            logger.info("rbac_defaults_bootstrapped", **created)
        return created
