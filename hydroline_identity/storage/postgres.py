from __future__ import annotations

import dataclasses
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hydroline_identity.logging import get_logger
from hydroline_identity.storage.common import normalize_email
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
    VerificationCode,
    new_id,
)

T = TypeVar("T")

_JSON_COLUMNS = {"meta", "payload"}

_REQUIRED_TABLES = [
    "app_user",
    "auth_session",
    "contact_channel",
    "user_contact",
    "verification_code",
    "external_binding",
    "user_primary_binding",
    "binding_history",
    "minecraft_profile",
    "role",
    "permission",
    "role_permission",
    "permission_label",
    "permission_label_permission",
    "user_role",
    "user_permission_label",
    "admin_audit_log",
]


def _row_to(cls: Type[T], row: Optional[dict]) -> Optional[T]:
    if not row:
        return None
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


def _db_value(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return json.dumps(value) if value is not None else None
    return value


class PostgresStore:
    """Postgres-backed identity store.

    Statements issued inside ``transaction()`` share the connection bound to
    the current thread; outside of it each call checks out its own pooled
    connection and commits on exit.
    """

    def __init__(self, dsn: str, fs_root: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._local = threading.local()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        with self._connect() as conn:
            outer = getattr(self._local, "conn", None) is None
            self._local.conn = conn
            try:
                with conn.transaction():
                    yield self
            finally:
                if outer:
                    self._local.conn = None

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/001_identity.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # generic row helpers
    def _insert(self, table: str, record: Any) -> None:
        columns = [f.name for f in dataclasses.fields(record)]
        values = [_db_value(c, getattr(record, c)) for c in columns]
        placeholders = ", ".join(["%s"] * len(columns))
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )

    def _fetch_one(self, cls: Type[T], sql: str, params: Iterable[Any] = ()) -> Optional[T]:
        with self._connect() as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        return _row_to(cls, row)

    def _fetch_all(self, cls: Type[T], sql: str, params: Iterable[Any] = ()) -> List[T]:
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to(cls, row) for row in rows]

    def _update(
        self, cls: Type[T], table: str, row_id: str, fields: Dict[str, Any]
    ) -> Optional[T]:
        allowed = {f.name for f in dataclasses.fields(cls)} - {"id"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"unknown columns for {table}: {sorted(unknown)}")
        if not fields:
            return self._fetch_one(cls, f"SELECT * FROM {table} WHERE id = %s", (row_id,))
        assignments = ", ".join(f"{col} = %s" for col in fields)
        values = [_db_value(col, val) for col, val in fields.items()]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = %s RETURNING *",
                    (*values, row_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(f"{table} unique constraint violated", {"id": row_id}) from exc
        return _row_to(cls, row)

    def _delete(self, table: str, row_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(f"DELETE FROM {table} WHERE id = %s", (row_id,))
            return cur.rowcount > 0

    def _count(self, sql: str, params: Iterable[Any]) -> int:
        with self._connect() as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        return int(row["count"]) if row else 0

    # users
    def create_user(
        self,
        email: Optional[str] = None,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        user = User(
            id=new_id(),
            email=normalized,
            email_verified=email_verified if normalized else False,
            name=name,
            meta=dict(meta) if meta else {},
        )
        try:
            self._insert("app_user", user)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one(User, "SELECT * FROM app_user WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            User, "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
        )

    def update_user_email(
        self, user_id: str, email: Optional[str], email_verified: bool
    ) -> Optional[User]:
        try:
            return self._update(
                User,
                "app_user",
                user_id,
                {"email": normalize_email(email), "email_verified": email_verified},
            )
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc

    def record_login(self, user_id: str) -> None:
        self._update(User, "app_user", user_id, {"last_login_at": datetime.utcnow()})

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        remember_me: bool = True,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            remember_me=remember_me,
            meta=meta,
        )
        try:
            self._insert("auth_session", sess)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": user_id}) from exc
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._fetch_one(Session, "SELECT * FROM auth_session WHERE id = %s", (session_id,))

    def revoke_session(self, session_id: str) -> None:
        self._delete("auth_session", session_id)

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
        meta: Optional[dict] = None,
    ) -> ContactChannel:
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
        try:
            self._insert("contact_channel", channel)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("channel key exists", {"key": key}) from exc
        return channel

    def get_channel(self, channel_id: str) -> Optional[ContactChannel]:
        return self._fetch_one(
            ContactChannel, "SELECT * FROM contact_channel WHERE id = %s", (channel_id,)
        )

    def get_channel_by_key(self, key: str) -> Optional[ContactChannel]:
        return self._fetch_one(
            ContactChannel, "SELECT * FROM contact_channel WHERE key = %s", (key,)
        )

    def list_channels(self) -> List[ContactChannel]:
        return self._fetch_all(ContactChannel, "SELECT * FROM contact_channel ORDER BY created_at")

    def update_channel(self, channel_id: str, **fields: Any) -> Optional[ContactChannel]:
        return self._update(ContactChannel, "contact_channel", channel_id, fields)

    def delete_channel(self, channel_id: str) -> bool:
        return self._delete("contact_channel", channel_id)

    def count_channel_contacts(self, channel_id: str) -> int:
        return self._count(
            "SELECT COUNT(*) AS count FROM user_contact WHERE channel_id = %s", (channel_id,)
        )

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
        meta: Optional[dict] = None,
    ) -> UserContact:
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
        try:
            self._insert("user_contact", contact)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "primary contact already set", {"user_id": user_id, "channel_id": channel_id}
            ) from exc
        return contact

    def get_contact(self, contact_id: str) -> Optional[UserContact]:
        return self._fetch_one(UserContact, "SELECT * FROM user_contact WHERE id = %s", (contact_id,))

    def list_contacts(
        self, user_id: str, channel_id: Optional[str] = None
    ) -> List[UserContact]:
        if channel_id is None:
            return self._fetch_all(
                UserContact,
                "SELECT * FROM user_contact WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            )
        return self._fetch_all(
            UserContact,
            "SELECT * FROM user_contact WHERE user_id = %s AND channel_id = %s ORDER BY created_at",
            (user_id, channel_id),
        )

    def update_contact(self, contact_id: str, **fields: Any) -> Optional[UserContact]:
        return self._update(UserContact, "user_contact", contact_id, fields)

    def clear_primary_contacts(
        self, user_id: str, channel_id: str, *, except_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_contact SET is_primary = FALSE
                WHERE user_id = %s AND channel_id = %s AND is_primary AND id IS DISTINCT FROM %s
                """,
                (user_id, channel_id, except_id),
            )
            return cur.rowcount

    def delete_contact(self, contact_id: str) -> bool:
        return self._delete("user_contact", contact_id)

    # verification codes
    def replace_verification_code(
        self, identifier: str, code_hash: str, expires_at: datetime
    ) -> VerificationCode:
        record = VerificationCode(
            id=new_id(), identifier=identifier, code_hash=code_hash, expires_at=expires_at
        )
        with self.transaction():
            self.delete_verification_codes(identifier)
            self._insert("verification_code", record)
        return record

    def get_verification_code(self, identifier: str) -> Optional[VerificationCode]:
        return self._fetch_one(
            VerificationCode,
            "SELECT * FROM verification_code WHERE identifier = %s ORDER BY created_at DESC LIMIT 1",
            (identifier,),
        )

    def delete_verification_codes(self, identifier: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_code WHERE identifier = %s", (identifier,)
            )
            return cur.rowcount

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
        meta: Optional[dict] = None,
    ) -> ExternalBinding:
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
        try:
            self._insert("external_binding", binding)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "external username already bound",
                {"provider": provider, "username": username_lower},
            ) from exc
        return binding

    def get_binding(self, binding_id: str) -> Optional[ExternalBinding]:
        return self._fetch_one(
            ExternalBinding, "SELECT * FROM external_binding WHERE id = %s", (binding_id,)
        )

    def get_binding_by_username(
        self, provider: str, username_lower: str
    ) -> Optional[ExternalBinding]:
        # FOR UPDATE serializes concurrent binds of the same name inside a transaction
        return self._fetch_one(
            ExternalBinding,
            "SELECT * FROM external_binding WHERE provider = %s AND username_lower = %s FOR UPDATE",
            (provider, username_lower),
        )

    def list_bindings(self, user_id: str, provider: str) -> List[ExternalBinding]:
        return self._fetch_all(
            ExternalBinding,
            """
            SELECT * FROM external_binding
            WHERE user_id = %s AND provider = %s
            ORDER BY bound_at ASC
            """,
            (user_id, provider),
        )

    def update_binding(self, binding_id: str, **fields: Any) -> Optional[ExternalBinding]:
        fields.setdefault("updated_at", datetime.utcnow())
        return self._update(ExternalBinding, "external_binding", binding_id, fields)

    def delete_binding(self, binding_id: str) -> bool:
        return self._delete("external_binding", binding_id)

    def get_primary_pointer(
        self, user_id: str, provider: str
    ) -> Optional[PrimaryBindingPointer]:
        return self._fetch_one(
            PrimaryBindingPointer,
            "SELECT * FROM user_primary_binding WHERE user_id = %s AND provider = %s FOR UPDATE",
            (user_id, provider),
        )

    def set_primary_pointer(
        self, user_id: str, provider: str, binding_id: str
    ) -> PrimaryBindingPointer:
        pointer = PrimaryBindingPointer(user_id=user_id, provider=provider, binding_id=binding_id)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_primary_binding (user_id, provider, binding_id, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, provider)
                DO UPDATE SET binding_id = EXCLUDED.binding_id, updated_at = EXCLUDED.updated_at
                """,
                (user_id, provider, binding_id, pointer.updated_at),
            )
        return pointer

    def clear_primary_pointer(self, user_id: str, provider: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_primary_binding WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            return cur.rowcount > 0

    def append_binding_history(self, entry: BindingHistoryEntry) -> BindingHistoryEntry:
        try:
            self._insert("binding_history", entry)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("history entry exists", {"id": entry.id}) from exc
        return entry

    def list_binding_history(
        self, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[BindingHistoryEntry], int]:
        total = self._count(
            "SELECT COUNT(*) AS count FROM binding_history WHERE user_id = %s", (user_id,)
        )
        items = self._fetch_all(
            BindingHistoryEntry,
            """
            SELECT * FROM binding_history WHERE user_id = %s
            ORDER BY created_at DESC
            OFFSET %s LIMIT %s
            """,
            (user_id, offset, limit),
        )
        return items, total

    # minecraft profiles
    def create_minecraft_profile(
        self,
        user_id: str,
        *,
        binding_id: Optional[str] = None,
        nickname: Optional[str] = None,
        external_uuid: Optional[str] = None,
        is_primary: bool = False,
        meta: Optional[dict] = None,
    ) -> MinecraftProfile:
        profile = MinecraftProfile(
            id=new_id(),
            user_id=user_id,
            binding_id=binding_id,
            nickname=nickname,
            external_uuid=external_uuid,
            is_primary=is_primary,
            meta=meta,
        )
        self._insert("minecraft_profile", profile)
        return profile

    def list_minecraft_profiles(self, user_id: str) -> List[MinecraftProfile]:
        return self._fetch_all(
            MinecraftProfile,
            "SELECT * FROM minecraft_profile WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        )

    def detach_minecraft_profiles(self, binding_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE minecraft_profile SET binding_id = NULL WHERE binding_id = %s",
                (binding_id,),
            )
            return cur.rowcount

    def clear_primary_minecraft_profiles(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE minecraft_profile SET is_primary = FALSE WHERE user_id = %s AND is_primary",
                (user_id,),
            )
            return cur.rowcount

    # roles & permissions
    def create_role(
        self,
        key: str,
        name: str,
        *,
        description: Optional[str] = None,
        is_system: bool = False,
        meta: Optional[dict] = None,
    ) -> Role:
        role = Role(
            id=new_id(), key=key, name=name, description=description, is_system=is_system, meta=meta
        )
        try:
            self._insert("role", role)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("role key exists", {"key": key}) from exc
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        return self._fetch_one(Role, "SELECT * FROM role WHERE id = %s", (role_id,))

    def get_role_by_key(self, key: str) -> Optional[Role]:
        return self._fetch_one(Role, "SELECT * FROM role WHERE key = %s", (key,))

    def list_roles(self) -> List[Role]:
        return self._fetch_all(Role, "SELECT * FROM role ORDER BY created_at")

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        return self._update(Role, "role", role_id, fields)

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
        return self._delete("role", role_id)

    def create_permission(
        self, key: str, *, description: Optional[str] = None, meta: Optional[dict] = None
    ) -> Permission:
        permission = Permission(id=new_id(), key=key, description=description, meta=meta)
        try:
            self._insert("permission", permission)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("permission key exists", {"key": key}) from exc
        return permission

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        return self._fetch_one(Permission, "SELECT * FROM permission WHERE id = %s", (permission_id,))

    def get_permissions_by_keys(self, keys: Iterable[str]) -> List[Permission]:
        return self._fetch_all(
            Permission, "SELECT * FROM permission WHERE key = ANY(%s)", (list(keys),)
        )

    def list_permissions(self) -> List[Permission]:
        return self._fetch_all(Permission, "SELECT * FROM permission ORDER BY key")

    def update_permission(self, permission_id: str, **fields: Any) -> Optional[Permission]:
        return self._update(Permission, "permission", permission_id, fields)

    def delete_permission(self, permission_id: str) -> bool:
        return self._delete("permission", permission_id)

    def count_permission_references(self, permission_id: str) -> Tuple[int, int]:
        roles = self._count(
            "SELECT COUNT(*) AS count FROM role_permission WHERE permission_id = %s",
            (permission_id,),
        )
        labels = self._count(
            "SELECT COUNT(*) AS count FROM permission_label_permission WHERE permission_id = %s",
            (permission_id,),
        )
        return roles, labels

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        ids = list(dict.fromkeys(permission_ids))
        with self.transaction(), self._connect() as conn:
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
            for permission_id in ids:
                conn.execute(
                    "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                    (role_id, permission_id),
                )

    def list_role_permission_ids(self, role_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT permission_id FROM role_permission WHERE role_id = %s ORDER BY permission_id",
                (role_id,),
            ).fetchall()
        return [row["permission_id"] for row in rows]

    def list_role_permission_links(self) -> List[Tuple[str, str]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT role_id, permission_id FROM role_permission").fetchall()
        return [(row["role_id"], row["permission_id"]) for row in rows]

    # permission labels
    def create_label(
        self,
        key: str,
        name: str,
        *,
        description: Optional[str] = None,
        color: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> PermissionLabel:
        label = PermissionLabel(
            id=new_id(), key=key, name=name, description=description, color=color, meta=meta
        )
        try:
            self._insert("permission_label", label)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("label key exists", {"key": key}) from exc
        return label

    def get_label(self, label_id: str) -> Optional[PermissionLabel]:
        return self._fetch_one(
            PermissionLabel, "SELECT * FROM permission_label WHERE id = %s", (label_id,)
        )

    def get_label_by_key(self, key: str) -> Optional[PermissionLabel]:
        return self._fetch_one(
            PermissionLabel, "SELECT * FROM permission_label WHERE key = %s", (key,)
        )

    def list_labels(self) -> List[PermissionLabel]:
        return self._fetch_all(PermissionLabel, "SELECT * FROM permission_label ORDER BY created_at")

    def update_label(self, label_id: str, **fields: Any) -> Optional[PermissionLabel]:
        return self._update(PermissionLabel, "permission_label", label_id, fields)

    def delete_label(self, label_id: str) -> bool:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM permission_label_permission WHERE label_id = %s", (label_id,)
            )
        return self._delete("permission_label", label_id)

    def set_label_permissions(self, label_id: str, permission_ids: Iterable[str]) -> None:
        ids = list(dict.fromkeys(permission_ids))
        with self.transaction(), self._connect() as conn:
            conn.execute(
                "DELETE FROM permission_label_permission WHERE label_id = %s", (label_id,)
            )
            for permission_id in ids:
                conn.execute(
                    "INSERT INTO permission_label_permission (label_id, permission_id) VALUES (%s, %s)",
                    (label_id, permission_id),
                )

    def add_label_permissions(self, label_id: str, permission_ids: Iterable[str]) -> int:
        added = 0
        with self._connect() as conn:
            for permission_id in dict.fromkeys(permission_ids):
                cur = conn.execute(
                    """
                    INSERT INTO permission_label_permission (label_id, permission_id)
                    VALUES (%s, %s) ON CONFLICT DO NOTHING
                    """,
                    (label_id, permission_id),
                )
                added += cur.rowcount
        return added

    def list_label_permission_ids(self, label_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT permission_id FROM permission_label_permission
                WHERE label_id = %s ORDER BY permission_id
                """,
                (label_id,),
            ).fetchall()
        return [row["permission_id"] for row in rows]

    def list_label_permission_links(self) -> List[Tuple[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT label_id, permission_id FROM permission_label_permission"
            ).fetchall()
        return [(row["label_id"], row["permission_id"]) for row in rows]

    # user assignments
    def list_user_role_ids(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role_id FROM user_role WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [row["role_id"] for row in rows]

    def set_user_roles(
        self, user_id: str, role_ids: Iterable[str], *, assigned_by_id: Optional[str] = None
    ) -> None:
        now = datetime.utcnow()
        with self.transaction(), self._connect() as conn:
            conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
            for role_id in dict.fromkeys(role_ids):
                conn.execute(
                    """
                    INSERT INTO user_role (id, user_id, role_id, assigned_at, assigned_by_id)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (new_id(), user_id, role_id, now, assigned_by_id),
                )

    def count_role_assignments(self, role_id: str) -> int:
        return self._count("SELECT COUNT(*) AS count FROM user_role WHERE role_id = %s", (role_id,))

    def list_user_label_ids(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT label_id FROM user_permission_label WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [row["label_id"] for row in rows]

    def set_user_labels(
        self, user_id: str, label_ids: Iterable[str], *, assigned_by_id: Optional[str] = None
    ) -> None:
        now = datetime.utcnow()
        with self.transaction(), self._connect() as conn:
            conn.execute("DELETE FROM user_permission_label WHERE user_id = %s", (user_id,))
            for label_id in dict.fromkeys(label_ids):
                conn.execute(
                    """
                    INSERT INTO user_permission_label (id, user_id, label_id, assigned_at, assigned_by_id)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (new_id(), user_id, label_id, now, assigned_by_id),
                )

    def ensure_user_label(
        self, user_id: str, label_id: str, *, assigned_by_id: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO user_permission_label (id, user_id, label_id, assigned_at, assigned_by_id)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, label_id) DO NOTHING
                """,
                (new_id(), user_id, label_id, datetime.utcnow(), assigned_by_id),
            )
            return cur.rowcount > 0

    def count_label_assignments(self, label_id: str) -> int:
        return self._count(
            "SELECT COUNT(*) AS count FROM user_permission_label WHERE label_id = %s", (label_id,)
        )

    def list_user_permission_keys(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.key FROM permission p
                JOIN role_permission rp ON rp.permission_id = p.id
                JOIN user_role ur ON ur.role_id = rp.role_id
                WHERE ur.user_id = %s
                UNION
                SELECT p.key FROM permission p
                JOIN permission_label_permission lp ON lp.permission_id = p.id
                JOIN user_permission_label ul ON ul.label_id = lp.label_id
                WHERE ul.user_id = %s
                ORDER BY 1
                """,
                (user_id, user_id),
            ).fetchall()
        return [row["key"] for row in rows]

    # audit
    def record_admin_audit(
        self,
        action: str,
        target_type: str,
        *,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> AdminAuditRecord:
        record = AdminAuditRecord(
            id=new_id(),
            action=action,
            target_type=target_type,
            actor_id=actor_id,
            target_id=target_id,
            payload=payload,
        )
        self._insert("admin_audit_log", record)
        return record

    def list_admin_audit(self, limit: int = 100) -> List[AdminAuditRecord]:
        return self._fetch_all(
            AdminAuditRecord,
            "SELECT * FROM admin_audit_log ORDER BY created_at DESC LIMIT %s",
            (limit,),
        )
