from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from hydroline_identity.logging import get_logger, log_binding_transition
from hydroline_identity.service.credentials import (
    AUTHME_ACCOUNT_NOT_FOUND,
    BadCredentials,
    CredentialStoreClient,
    VerifiedAccount,
)
from hydroline_identity.service.errors import (
    BindingConflictError,
    NotFoundError,
    ValidationError,
)
from hydroline_identity.storage.common import clamp_page, normalize_username, pagination_meta
from hydroline_identity.storage.errors import ConstraintViolation
from hydroline_identity.storage.models import (
    AUTHME_PROVIDER,
    BIND,
    MANUAL_ENTRY,
    PRIMARY_SET,
    PRIMARY_UNSET,
    TRANSFER,
    UNBIND,
    BindingHistoryEntry,
    ExternalBinding,
    MinecraftProfile,
    new_id,
)

logger = get_logger(__name__)

# history reasons
REASON_FIRST_BINDING = "first-binding"
REASON_SET_PRIMARY = "set-primary"
REASON_REPLACED_PRIMARY = "replaced-primary"
REASON_MANUAL_UNBIND = "manual-unbind"
REASON_AUTO_REASSIGN = "auto-reassign-primary-unbind"
REASON_TRANSFER = "binding-transfer"
REASON_PRIMARY_CLEARED = "primary-cleared"

_BINDING_STATUSES = ("ACTIVE", "SUSPENDED", "REVOKED")


class BindingService:
    """Ledger of external identities bound to local users.

    Each binding moves UNBOUND -> BOUND -> (PRIMARY | NON_PRIMARY) -> UNBOUND.
    The primary binding per (user, provider) is a pointer row, and every
    transition appends history inside the same store transaction.
    """

    def __init__(
        self,
        store,
        credentials: CredentialStoreClient,
        *,
        provider: str = AUTHME_PROVIDER,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.provider = provider

    # helpers
    def _ensure_user(self, user_id: str) -> None:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})

    def _owned(self, user_id: str, binding_id: str) -> ExternalBinding:
        binding = self.store.get_binding(binding_id)
        if not binding or binding.user_id != user_id:
            raise NotFoundError("binding not found", detail={"binding_id": binding_id})
        return binding

    def _history(
        self,
        binding: ExternalBinding,
        action: str,
        *,
        operator_id: Optional[str],
        reason: Optional[str] = None,
        payload: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> BindingHistoryEntry:
        entry = BindingHistoryEntry(
            id=new_id(),
            user_id=user_id or binding.user_id,
            action=action,
            provider=binding.provider,
            binding_id=binding.id,
            operator_id=operator_id,
            username=binding.username,
            realname=binding.realname,
            external_uuid=binding.external_uuid,
            reason=reason,
            payload=payload,
        )
        return self.store.append_binding_history(entry)

    def _apply_primary(
        self,
        binding: ExternalBinding,
        *,
        operator_id: Optional[str],
        reason: str,
        payload: Optional[dict] = None,
    ) -> bool:
        """Point the owner's primary at ``binding``; caller holds the transaction."""
        pointer = self.store.get_primary_pointer(binding.user_id, binding.provider)
        if pointer and pointer.binding_id == binding.id:
            return False
        if pointer:
            previous = self.store.get_binding(pointer.binding_id)
            if previous:
                self._history(
                    previous,
                    PRIMARY_UNSET,
                    operator_id=operator_id,
                    reason=REASON_REPLACED_PRIMARY,
                    user_id=binding.user_id,
                )
        self.store.set_primary_pointer(binding.user_id, binding.provider, binding.id)
        self._history(
            binding, PRIMARY_SET, operator_id=operator_id, reason=reason, payload=payload
        )
        return True

    def _clear_primary_if(self, user_id: str, binding: ExternalBinding) -> bool:
        pointer = self.store.get_primary_pointer(user_id, binding.provider)
        if pointer and pointer.binding_id == binding.id:
            self.store.clear_primary_pointer(user_id, binding.provider)
            return True
        return False

    def primary_binding_id(self, user_id: str, provider: Optional[str] = None) -> Optional[str]:
        pointer = self.store.get_primary_pointer(user_id, provider or self.provider)
        return pointer.binding_id if pointer else None

    def is_primary(self, binding: ExternalBinding) -> bool:
        return self.primary_binding_id(binding.user_id, binding.provider) == binding.id

    # bind
    async def bind_identity(
        self,
        user_id: str,
        identifier: str,
        password: str,
        *,
        operator_id: Optional[str] = None,
        source_ip: Optional[str] = None,
    ) -> ExternalBinding:
        """Verify credentials with the credential store and bind the account.

        Credential failures propagate before anything is written.
        """
        identifier = (identifier or "").strip()
        if not identifier or not password:
            raise ValidationError("identifier and password are required")
        self._ensure_user(user_id)
        account = await self.credentials.verify_credentials(identifier, password)
        return self.bind_account(
            user_id, account, operator_id=operator_id or user_id, source_ip=source_ip
        )

    def bind_account(
        self,
        user_id: str,
        account: VerifiedAccount,
        *,
        operator_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        set_primary: bool = False,
    ) -> ExternalBinding:
        self._ensure_user(user_id)
        username_lower = normalize_username(account.username)
        if not username_lower:
            raise ValidationError("external username is empty")
        with self.store.transaction():
            existing = self.store.get_binding_by_username(self.provider, username_lower)
            if existing and existing.user_id != user_id:
                raise BindingConflictError(
                    "external account is already bound to another user",
                    detail={"provider": self.provider, "username": account.username},
                )
            if existing:
                binding = self.store.update_binding(
                    existing.id,
                    username=account.username,
                    realname=account.realname or existing.realname,
                    external_uuid=account.external_uuid or existing.external_uuid,
                    bound_at=datetime.utcnow(),
                    bound_by_user_id=operator_id,
                    bound_by_ip=source_ip,
                )
            else:
                try:
                    binding = self.store.create_binding(
                        user_id,
                        self.provider,
                        account.username,
                        username_lower,
                        realname=account.realname,
                        external_uuid=account.external_uuid,
                        bound_by_user_id=operator_id,
                        bound_by_ip=source_ip,
                    )
                except ConstraintViolation as exc:
                    raise BindingConflictError(
                        "external account is already bound to another user",
                        detail={"provider": self.provider, "username": account.username},
                    ) from exc
            self._history(
                binding,
                BIND,
                operator_id=operator_id,
                payload={"refreshed": True} if existing else None,
            )
            first_binding = (
                existing is None and len(self.store.list_bindings(user_id, self.provider)) == 1
            )
            if first_binding:
                self._apply_primary(binding, operator_id=operator_id, reason=REASON_FIRST_BINDING)
            elif set_primary:
                self._apply_primary(binding, operator_id=operator_id, reason=REASON_SET_PRIMARY)
        log_binding_transition(
            "bind",
            user_id=user_id,
            binding_id=binding.id,
            provider=binding.provider,
            logger=logger,
            refreshed=existing is not None,
        )
        return binding

    # primary
    def set_primary(
        self, user_id: str, binding_id: str, *, operator_id: Optional[str] = None
    ) -> ExternalBinding:
        binding = self._owned(user_id, binding_id)
        with self.store.transaction():
            changed = self._apply_primary(
                binding, operator_id=operator_id or user_id, reason=REASON_SET_PRIMARY
            )
        if changed:
            log_binding_transition(
                "set_primary",
                user_id=user_id,
                binding_id=binding.id,
                provider=binding.provider,
                logger=logger,
            )
        return binding

    # transfer
    def transfer_identity(
        self,
        binding_id: str,
        target_user_id: str,
        *,
        operator_id: Optional[str] = None,
        primary: Optional[bool] = None,
    ) -> ExternalBinding:
        binding = self.store.get_binding(binding_id)
        if not binding:
            raise NotFoundError("binding not found", detail={"binding_id": binding_id})
        self._ensure_user(target_user_id)
        source_user_id = binding.user_id
        if source_user_id == target_user_id:
            raise ValidationError("binding already belongs to the target user")
        with self.store.transaction():
            self._clear_primary_if(source_user_id, binding)
            self.store.detach_minecraft_profiles(binding.id)
            binding = self.store.update_binding(binding.id, user_id=target_user_id)
            self._history(
                binding,
                TRANSFER,
                operator_id=operator_id,
                reason=REASON_TRANSFER,
                payload={"fromUserId": source_user_id, "toUserId": target_user_id},
            )
            if primary is True:
                self._apply_primary(binding, operator_id=operator_id, reason=REASON_SET_PRIMARY)
            elif primary is False and self._clear_primary_if(target_user_id, binding):
                self._history(
                    binding,
                    PRIMARY_UNSET,
                    operator_id=operator_id,
                    reason=REASON_PRIMARY_CLEARED,
                )
        log_binding_transition(
            "transfer",
            user_id=target_user_id,
            binding_id=binding.id,
            provider=binding.provider,
            logger=logger,
            from_user_id=source_user_id,
        )
        return binding

    # unbind
    def unbind_identity(
        self, user_id: str, binding_id: str, *, operator_id: Optional[str] = None
    ) -> Optional[ExternalBinding]:
        """Remove a binding; returns the binding promoted to primary, if any."""
        binding = self._owned(user_id, binding_id)
        operator_id = operator_id or user_id
        successor: Optional[ExternalBinding] = None
        with self.store.transaction():
            was_primary = self._clear_primary_if(user_id, binding)
            self.store.detach_minecraft_profiles(binding.id)
            self._history(
                binding,
                UNBIND,
                operator_id=operator_id,
                reason=REASON_MANUAL_UNBIND,
                payload={"wasPrimary": was_primary},
            )
            self.store.delete_binding(binding.id)
            if was_primary:
                remaining = self.store.list_bindings(user_id, binding.provider)
                if remaining:
                    successor = remaining[0]
                    self._apply_primary(
                        successor,
                        operator_id=operator_id,
                        reason=REASON_AUTO_REASSIGN,
                        payload={"auto": True},
                    )
        log_binding_transition(
            "unbind",
            user_id=user_id,
            binding_id=binding.id,
            provider=binding.provider,
            logger=logger,
            was_primary=was_primary,
            successor_id=successor.id if successor else None,
        )
        return successor

    # listing
    def list_bindings(
        self, user_id: str, provider: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        self._ensure_user(user_id)
        provider = provider or self.provider
        primary_id = self.primary_binding_id(user_id, provider)
        return [
            {"binding": b, "is_primary": b.id == primary_id}
            for b in self.store.list_bindings(user_id, provider)
        ]

    def list_binding_history(
        self, user_id: str, page: Optional[int] = 1, page_size: Optional[int] = 20
    ) -> Dict[str, Any]:
        self._ensure_user(user_id)
        page, page_size = clamp_page(page, page_size)
        items, total = self.store.list_binding_history(
            user_id, offset=(page - 1) * page_size, limit=page_size
        )
        return {"items": items, "pagination": pagination_meta(total, page, page_size)}

    # admin
    async def admin_create_binding(
        self,
        user_id: str,
        identifier: str,
        *,
        operator_id: Optional[str] = None,
        set_primary: bool = False,
    ) -> ExternalBinding:
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("identifier cannot be empty")
        self._ensure_user(user_id)
        try:
            account = await self.credentials.lookup_account(identifier)
        except BadCredentials as exc:
            raise NotFoundError(
                "external account not found",
                detail={"identifier": identifier, "code": AUTHME_ACCOUNT_NOT_FOUND},
            ) from exc
        with self.store.transaction():
            binding = self.bind_account(
                user_id, account, operator_id=operator_id or user_id, set_primary=set_primary
            )
            self.store.record_admin_audit(
                "create_binding",
                "external_binding",
                actor_id=operator_id,
                target_id=binding.id,
                payload={"userId": user_id, "username": binding.username},
            )
        return binding

    def update_binding(
        self,
        user_id: str,
        binding_id: str,
        *,
        operator_id: Optional[str] = None,
        realname: Optional[str] = None,
        status: Optional[str] = None,
        notes: Optional[str] = None,
        meta: Optional[dict] = None,
        target_user_id: Optional[str] = None,
        primary: Optional[bool] = None,
    ) -> ExternalBinding:
        binding = self._owned(user_id, binding_id)
        fields: Dict[str, Any] = {}
        if realname is not None:
            fields["realname"] = realname.strip() or None
        if status is not None:
            status = status.strip().upper()
            if status not in _BINDING_STATUSES:
                raise ValidationError("invalid binding status", detail={"status": status})
            fields["status"] = status
        if notes is not None:
            fields["notes"] = notes.strip() or None
        if meta is not None:
            fields["meta"] = meta
        transfer = bool(target_user_id) and target_user_id != user_id
        with self.store.transaction():
            if fields:
                binding = self.store.update_binding(binding.id, **fields)
            if transfer:
                binding = self.transfer_identity(
                    binding.id, target_user_id, operator_id=operator_id, primary=primary
                )
            elif primary is True:
                self._apply_primary(binding, operator_id=operator_id, reason=REASON_SET_PRIMARY)
            elif primary is False and self._clear_primary_if(user_id, binding):
                self._history(
                    binding,
                    PRIMARY_UNSET,
                    operator_id=operator_id,
                    reason=REASON_PRIMARY_CLEARED,
                )
            self.store.record_admin_audit(
                "update_binding",
                "external_binding",
                actor_id=operator_id,
                target_id=binding.id,
                payload={
                    "fields": sorted(fields),
                    "targetUserId": target_user_id if transfer else None,
                    "primary": primary,
                },
            )
        return binding

    def admin_unbind(
        self, user_id: str, binding_id: str, *, operator_id: Optional[str] = None
    ) -> Optional[ExternalBinding]:
        with self.store.transaction():
            successor = self.unbind_identity(user_id, binding_id, operator_id=operator_id)
            self.store.record_admin_audit(
                "delete_binding",
                "external_binding",
                actor_id=operator_id,
                target_id=binding_id,
                payload={"userId": user_id},
            )
        return successor

    def record_manual_entry(
        self,
        user_id: str,
        *,
        reason: str,
        binding_id: Optional[str] = None,
        payload: Optional[dict] = None,
        operator_id: Optional[str] = None,
    ) -> BindingHistoryEntry:
        self._ensure_user(user_id)
        if not (reason or "").strip():
            raise ValidationError("reason is required")
        if binding_id:
            binding = self._owned(user_id, binding_id)
            return self._history(
                binding,
                MANUAL_ENTRY,
                operator_id=operator_id,
                reason=reason.strip(),
                payload=payload,
            )
        entry = BindingHistoryEntry(
            id=new_id(),
            user_id=user_id,
            action=MANUAL_ENTRY,
            provider=self.provider,
            operator_id=operator_id,
            reason=reason.strip(),
            payload=payload,
        )
        return self.store.append_binding_history(entry)

    # minecraft profiles
    def add_minecraft_profile(
        self,
        user_id: str,
        *,
        nickname: Optional[str] = None,
        binding_id: Optional[str] = None,
        is_primary: bool = False,
        meta: Optional[dict] = None,
    ) -> MinecraftProfile:
        self._ensure_user(user_id)
        nickname = (nickname or "").strip() or None
        binding = self._owned(user_id, binding_id) if binding_id else None
        if not nickname and not binding:
            raise ValidationError("a nickname or a binding is required")
        with self.store.transaction():
            existing = self.store.list_minecraft_profiles(user_id)
            make_primary = is_primary or not existing
            if make_primary:
                self.store.clear_primary_minecraft_profiles(user_id)
            profile = self.store.create_minecraft_profile(
                user_id,
                binding_id=binding.id if binding else None,
                nickname=nickname or binding.username,
                external_uuid=binding.external_uuid if binding else None,
                is_primary=make_primary,
                meta=meta,
            )
        logger.info("minecraft_profile_added", user_id=user_id, profile_id=profile.id)
        return profile

    def list_minecraft_profiles(self, user_id: str) -> List[MinecraftProfile]:
        self._ensure_user(user_id)
        return self.store.list_minecraft_profiles(user_id)
