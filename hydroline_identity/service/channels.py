from __future__ import annotations

import re
from typing import Any, Dict, Optional

from hydroline_identity.logging import get_logger
from hydroline_identity.service.errors import (
    InUseError,
    KeyExistsError,
    NotFoundError,
    ValidationError,
)
from hydroline_identity.storage.errors import ConstraintViolation
from hydroline_identity.storage.models import ContactChannel

logger = get_logger(__name__)

EMAIL_CHANNEL = "email"
PHONE_CHANNEL = "phone"

# key -> defaults used when a built-in channel is first touched
BUILTIN_CHANNELS: Dict[str, Dict[str, Any]] = {
    EMAIL_CHANNEL: {
        "display_name": "Email",
        "description": "Account email addresses",
        "allow_multiple": True,
        "is_verifiable": True,
    },
    PHONE_CHANNEL: {
        "display_name": "Phone",
        "description": "Phone numbers with dial code",
        "allow_multiple": True,
        "is_verifiable": True,
    },
}

_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_.-]{1,63}$")
_UPDATABLE = {
    "display_name",
    "description",
    "validation_regex",
    "allow_multiple",
    "is_verifiable",
    "is_required",
    "meta",
}


class ChannelRegistry:
    """Admin CRUD for contact channels plus lazy built-in upserts."""

    def __init__(self, store) -> None:
        self.store = store

    def list_channels(self) -> list[ContactChannel]:
        return self.store.list_channels()

    def get_channel(self, channel_id: str) -> ContactChannel:
        channel = self.store.get_channel(channel_id)
        if not channel:
            raise NotFoundError("contact channel not found", detail={"channel_id": channel_id})
        return channel

    def ensure_channel(self, key: str) -> Optional[ContactChannel]:
        """Return the channel for ``key``, creating built-ins on first use."""
        channel = self.store.get_channel_by_key(key)
        if channel or key not in BUILTIN_CHANNELS:
            return channel
        try:
            channel = self.store.create_channel(key, **BUILTIN_CHANNELS[key])
        except ConstraintViolation:
            # created concurrently
            return self.store.get_channel_by_key(key)
        logger.info("contact_channel_bootstrapped", key=key, channel_id=channel.id)
        return channel

    def ensure_builtin_channels(self) -> None:
        for key in BUILTIN_CHANNELS:
            self.ensure_channel(key)

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
        actor_id: Optional[str] = None,
    ) -> ContactChannel:
        key = key.strip().lower()
        if not _KEY_PATTERN.match(key):
            raise ValidationError("invalid channel key", detail={"key": key})
        self._check_regex(validation_regex)
        if self.store.get_channel_by_key(key):
            raise KeyExistsError("contact channel key already exists", detail={"key": key})
        with self.store.transaction():
            try:
                channel = self.store.create_channel(
                    key,
                    display_name,
                    description=description,
                    validation_regex=validation_regex,
                    allow_multiple=allow_multiple,
                    is_verifiable=is_verifiable,
                    is_required=is_required,
                    meta=meta,
                )
            except ConstraintViolation as exc:
                raise KeyExistsError("contact channel key already exists", detail={"key": key}) from exc
            self.store.record_admin_audit(
                "create_contact_channel",
                "contact_channel",
                actor_id=actor_id,
                target_id=channel.id,
                payload={"key": key},
            )
        return channel

    def update_channel(
        self, channel_id: str, *, actor_id: Optional[str] = None, **fields: Any
    ) -> ContactChannel:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValidationError("unknown channel fields", detail={"fields": sorted(unknown)})
        if "validation_regex" in fields:
            self._check_regex(fields["validation_regex"])
        self.get_channel(channel_id)
        with self.store.transaction():
            channel = self.store.update_channel(channel_id, **fields)
            self.store.record_admin_audit(
                "update_contact_channel",
                "contact_channel",
                actor_id=actor_id,
                target_id=channel_id,
                payload={"fields": sorted(fields)},
            )
        return channel

    def delete_channel(self, channel_id: str, *, actor_id: Optional[str] = None) -> None:
        channel = self.get_channel(channel_id)
        with self.store.transaction():
            in_use = self.store.count_channel_contacts(channel_id)
            if in_use:
                raise InUseError(
                    "contact channel still has contacts",
                    detail={"channel_id": channel_id, "contacts": in_use},
                )
            self.store.delete_channel(channel_id)
            self.store.record_admin_audit(
                "delete_contact_channel",
                "contact_channel",
                actor_id=actor_id,
                target_id=channel_id,
                payload={"key": channel.key},
            )

    @staticmethod
    def _check_regex(pattern: Optional[str]) -> None:
        if not pattern:
            return
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValidationError(
                "invalid validation regex", detail={"error": str(exc)}
            ) from exc
