from __future__ import annotations

import re
import secrets
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hydroline_identity.logging import get_logger
from hydroline_identity.service.channels import EMAIL_CHANNEL, PHONE_CHANNEL, ChannelRegistry
from hydroline_identity.service.errors import (
    ChannelExclusiveError,
    ConflictError,
    LastContactRetainedError,
    NotFoundError,
    ServiceError,
    ServiceUnavailableError,
    ValidationError,
)
from hydroline_identity.storage.errors import ConstraintViolation
from hydroline_identity.storage.models import (
    PENDING,
    UNVERIFIED,
    VERIFIED,
    ContactChannel,
    User,
    UserContact,
    VerificationCode,
)

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DIAL_CODE_PATTERN = re.compile(r"^\+\d{2,6}$")
_CODE_PREFIX = {EMAIL_CHANNEL: "email-verify", PHONE_CHANNEL: "phone-verify"}


class ContactStore(Protocol):
    def transaction(self) -> AbstractContextManager: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user_email(
        self, user_id: str, email: Optional[str], email_verified: bool
    ) -> Optional[User]: ...

    def get_channel(self, channel_id: str) -> Optional[ContactChannel]: ...

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
    ) -> UserContact: ...

    def get_contact(self, contact_id: str) -> Optional[UserContact]: ...

    def list_contacts(
        self, user_id: str, channel_id: Optional[str] = None
    ) -> List[UserContact]: ...

    def update_contact(self, contact_id: str, **fields) -> Optional[UserContact]: ...

    def clear_primary_contacts(
        self, user_id: str, channel_id: str, *, except_id: Optional[str] = None
    ) -> int: ...

    def delete_contact(self, contact_id: str) -> bool: ...

    def replace_verification_code(
        self, identifier: str, code_hash: str, expires_at: datetime
    ) -> VerificationCode: ...

    def get_verification_code(self, identifier: str) -> Optional[VerificationCode]: ...

    def delete_verification_codes(self, identifier: str) -> int: ...


class CodeMailer(Protocol):
    def send_verification_code(
        self, to_email: str, code: str, *, purpose: str, ttl_minutes: int
    ) -> bool: ...


Defer = Callable[..., Any]


@dataclass(frozen=True)
class IssuedCode:
    """A stored verification code that still has to be mailed."""

    user_id: str
    channel: str
    recipient: str
    expires_at: datetime
    code: str = field(repr=False)


def _default_code() -> str:
    return f"{secrets.randbelow(10**6):06d}"


def _run_now(func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    func(*args, **kwargs)


def verification_identifier(channel_key: str, value: str) -> str:
    prefix = _CODE_PREFIX.get(channel_key, f"{channel_key}-verify")
    return f"{prefix}:{value.strip().lower()}"


def choose_successor(survivors: List[UserContact]) -> Optional[UserContact]:
    """Pick the contact that should be primary after a removal.

    Prefers a surviving primary, then the first verified contact, then the
    oldest one. ``survivors`` must be in creation order.
    """
    if not survivors:
        return None
    for contact in survivors:
        if contact.is_primary:
            return contact
    for contact in survivors:
        if contact.verification == VERIFIED:
            return contact
    return survivors[0]


class ContactService:
    """Per-user contact ledger with exactly one primary per channel."""

    def __init__(
        self,
        store: ContactStore,
        channels: ChannelRegistry,
        mailer: CodeMailer,
        *,
        code_ttl_minutes: int = 10,
        phone_verification_enabled: bool = False,
        phone_dial_codes: Optional[Dict[str, str]] = None,
        code_generator: Callable[[], str] = _default_code,
    ) -> None:
        self.store = store
        self.channels = channels
        self.mailer = mailer
        self.code_ttl_minutes = code_ttl_minutes
        self.phone_verification_enabled = phone_verification_enabled
        self.phone_dial_codes = dict(phone_dial_codes or {})
        self._generate_code = code_generator
        self._hasher = PasswordHasher(type=Type.ID)

    # lookups
    def _user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _channel(self, key: str) -> ContactChannel:
        channel = self.channels.ensure_channel(key)
        if not channel:
            raise NotFoundError("contact channel not found", detail={"channel": key})
        return channel

    def _owned(self, user_id: str, contact_id: str) -> UserContact:
        contact = self.store.get_contact(contact_id)
        if not contact or contact.user_id != user_id:
            raise NotFoundError("contact not found", detail={"contact_id": contact_id})
        return contact

    def _normalize_value(self, channel: ContactChannel, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValidationError("contact value is required")
        if channel.key == EMAIL_CHANNEL:
            cleaned = cleaned.lower()
            if not _EMAIL_PATTERN.match(cleaned):
                raise ValidationError("invalid email address", detail={"value": cleaned})
        if channel.validation_regex and not re.fullmatch(channel.validation_regex, cleaned):
            raise ValidationError(
                "contact value does not match channel format", detail={"channel": channel.key}
            )
        return cleaned

    def _mirror_email(self, user_id: str, email: Optional[str], verified: bool) -> None:
        try:
            self.store.update_user_email(user_id, email, verified)
        except ConstraintViolation as exc:
            raise ConflictError(
                "email already belongs to another account", detail={"field": "email"}
            ) from exc

    def _promote(self, user_id: str, channel: ContactChannel, contact: UserContact) -> UserContact:
        self.store.clear_primary_contacts(user_id, channel.id, except_id=contact.id)
        updated = self.store.update_contact(contact.id, is_primary=True)
        if channel.key == EMAIL_CHANNEL and updated.verification == VERIFIED:
            self._mirror_email(user_id, updated.value, True)
        return updated

    # listing
    def list_contacts(
        self, user_id: str, channel_key: Optional[str] = None
    ) -> List[UserContact]:
        self._user(user_id)
        if channel_key in (None, EMAIL_CHANNEL):
            self.ensure_account_email_contact(user_id)
        channel_id = self._channel(channel_key).id if channel_key else None
        contacts = self.store.list_contacts(user_id, channel_id)
        return sorted(contacts, key=lambda c: (not c.is_primary, c.created_at))

    def ensure_account_email_contact(self, user_id: str) -> Optional[UserContact]:
        """Backfill an email contact for the account's canonical email."""
        user = self._user(user_id)
        if not user.email:
            return None
        channel = self._channel(EMAIL_CHANNEL)
        with self.store.transaction():
            existing = self.store.list_contacts(user_id, channel.id)
            match = next((c for c in existing if c.value == user.email), None)
            if match:
                return match
            verification = VERIFIED if user.email_verified else UNVERIFIED
            has_primary = any(c.is_primary for c in existing)
            contact = self.store.create_contact(
                user_id,
                channel.id,
                user.email,
                verification=verification,
                is_primary=not has_primary,
                verified_at=datetime.utcnow() if verification == VERIFIED else None,
            )
        logger.info("account_email_contact_backfilled", user_id=user_id, contact_id=contact.id)
        return contact

    # add / update / remove
    def add_contact(
        self,
        user_id: str,
        channel_key: str,
        value: str,
        *,
        is_primary: bool = False,
        meta: Optional[dict] = None,
        defer: Optional[Defer] = None,
    ) -> UserContact:
        """Add a contact, or affirm an existing one with the same value.

        Verification mail for a new email contact is handed to ``defer``
        (``BackgroundTasks.add_task`` from the routes) after commit.
        """
        self._user(user_id)
        channel = self._channel(channel_key)
        normalized = self._normalize_value(channel, value)
        with self.store.transaction():
            existing = self.store.list_contacts(user_id, channel.id)
            if not channel.allow_multiple and existing:
                raise ChannelExclusiveError(
                    "channel allows a single contact", detail={"channel": channel.key}
                )
            should_be_primary = not existing or is_primary
            same = next((c for c in existing if c.value == normalized), None)
            if same:
                if meta is not None:
                    same = self.store.update_contact(same.id, meta=meta)
                contact = self._promote(user_id, channel, same) if should_be_primary else same
            else:
                if should_be_primary:
                    self.store.clear_primary_contacts(user_id, channel.id)
                contact = self.store.create_contact(
                    user_id,
                    channel.id,
                    normalized,
                    verification=UNVERIFIED,
                    is_primary=should_be_primary,
                    meta=meta,
                )
        logger.info(
            "contact_added",
            user_id=user_id,
            channel=channel.key,
            contact_id=contact.id,
            is_primary=contact.is_primary,
            reused=same is not None,
        )
        if channel.key == EMAIL_CHANNEL and contact.verification != VERIFIED:
            self._queue_code(user_id, channel, contact.value, defer)
        return contact

    def update_contact(
        self,
        user_id: str,
        contact_id: str,
        *,
        value: Optional[str] = None,
        is_primary: Optional[bool] = None,
        meta: Optional[dict] = None,
        defer: Optional[Defer] = None,
    ) -> UserContact:
        contact = self._owned(user_id, contact_id)
        channel = self.store.get_channel(contact.channel_id)
        previous_value = contact.value
        fields: dict = {}
        if meta is not None:
            fields["meta"] = meta
        value_changed = False
        if value is not None:
            normalized = self._normalize_value(channel, value)
            if normalized != contact.value:
                value_changed = True
                fields.update(value=normalized, verification=UNVERIFIED, verified_at=None)
        with self.store.transaction():
            if value_changed and any(
                c.value == fields["value"] and c.id != contact.id
                for c in self.store.list_contacts(user_id, channel.id)
            ):
                raise ConflictError("contact value already exists", detail={"channel": channel.key})
            if fields:
                contact = self.store.update_contact(contact.id, **fields)
            if value_changed and channel.key == EMAIL_CHANNEL:
                user = self.store.get_user(user_id)
                if user and user.email == previous_value:
                    # the account email is no longer backed by a verified contact
                    self._mirror_email(user_id, None, False)
            if is_primary:
                contact = self._promote(user_id, channel, contact)
            elif is_primary is False and contact.is_primary:
                contact = self.store.update_contact(contact.id, is_primary=False)
        if value_changed and channel.key == EMAIL_CHANNEL:
            self._queue_code(user_id, channel, contact.value, defer)
        return contact

    def remove_contact(self, user_id: str, contact_id: str) -> None:
        contact = self._owned(user_id, contact_id)
        channel = self.store.get_channel(contact.channel_id)
        with self.store.transaction():
            remaining = self.store.list_contacts(user_id, channel.id)
            retain_last = channel.key == EMAIL_CHANNEL or channel.is_required
            if retain_last and len(remaining) <= 1:
                raise LastContactRetainedError(
                    "the last contact of this channel cannot be removed",
                    detail={"channel": channel.key, "contact_id": contact_id},
                )
            self.store.delete_contact(contact.id)
            survivors = [c for c in remaining if c.id != contact.id]
            successor = choose_successor(survivors)
            if successor is not None and not successor.is_primary:
                successor = self.store.update_contact(successor.id, is_primary=True)
            if channel.key == EMAIL_CHANNEL:
                user = self.store.get_user(user_id)
                if successor is not None and successor.verification == VERIFIED:
                    self._mirror_email(user_id, successor.value, True)
                elif user and user.email == contact.value:
                    # account email no longer backed by a verified primary
                    self._mirror_email(user_id, None, False)
        logger.info(
            "contact_removed",
            user_id=user_id,
            channel=channel.key,
            contact_id=contact_id,
            successor_id=successor.id if successor else None,
        )

    def set_primary_email(self, user_id: str, contact_id: str) -> UserContact:
        contact = self._owned(user_id, contact_id)
        channel = self.store.get_channel(contact.channel_id)
        if channel.key != EMAIL_CHANNEL:
            raise ValidationError("contact is not an email address")
        if contact.verification != VERIFIED:
            raise ValidationError("email must be verified before it can be primary")
        with self.store.transaction():
            return self._promote(user_id, channel, contact)

    # verification codes
    def send_verification_code(
        self, user_id: str, value: str, channel_key: str = EMAIL_CHANNEL
    ) -> datetime:
        """Issue a fresh code for one of the user's contacts and mail it.

        Returns the expiry. Raises ServiceUnavailableError if the mail could
        not be handed off. Async callers should run ``deliver_code`` in a
        worker thread instead; see ``issue_verification_code``.
        """
        return self.deliver_code(self.issue_verification_code(user_id, value, channel_key))

    def issue_verification_code(
        self, user_id: str, value: str, channel_key: str = EMAIL_CHANNEL
    ) -> IssuedCode:
        """Store a fresh code for one of the user's contacts without mailing it."""
        user = self._user(user_id)
        channel = self._channel(channel_key)
        normalized = value.strip()
        if channel.key == EMAIL_CHANNEL:
            normalized = normalized.lower()
        if not any(c.value == normalized for c in self.store.list_contacts(user_id, channel.id)):
            raise NotFoundError("contact not found", detail={"channel": channel.key})
        return self._prepare_code(user, channel, normalized)

    def deliver_code(self, issued: IssuedCode) -> datetime:
        """Mail an issued code. Blocking; SMTP runs on the calling thread."""
        delivered = self.mailer.send_verification_code(
            issued.recipient, issued.code, purpose=issued.channel, ttl_minutes=self.code_ttl_minutes
        )
        if not delivered:
            raise ServiceUnavailableError("verification mail could not be delivered")
        logger.info("verification_code_issued", user_id=issued.user_id, channel=issued.channel)
        return issued.expires_at

    def _prepare_code(self, user: User, channel: ContactChannel, value: str) -> IssuedCode:
        if channel.key == EMAIL_CHANNEL:
            recipient = value
        elif user.email:
            recipient = user.email
        else:
            raise ValidationError("an account email is required to receive verification codes")
        code = self._generate_code()
        expires_at = datetime.utcnow() + timedelta(minutes=self.code_ttl_minutes)
        self.store.replace_verification_code(
            verification_identifier(channel.key, value), self._hasher.hash(code), expires_at
        )
        return IssuedCode(
            user_id=user.id,
            channel=channel.key,
            recipient=recipient,
            expires_at=expires_at,
            code=code,
        )

    def _queue_code(
        self, user_id: str, channel: ContactChannel, value: str, defer: Optional[Defer]
    ) -> None:
        try:
            issued = self._prepare_code(self._user(user_id), channel, value)
        except ServiceError as exc:
            self._log_mail_failure(user_id, channel.key, exc)
            return
        (defer or _run_now)(self._deliver_best_effort, issued)

    def _deliver_best_effort(self, issued: IssuedCode) -> None:
        try:
            self.deliver_code(issued)
        except ServiceError as exc:
            self._log_mail_failure(issued.user_id, issued.channel, exc)

    @staticmethod
    def _log_mail_failure(user_id: str, channel: str, exc: ServiceError) -> None:
        logger.warning(
            "verification_code_mail_failed",
            user_id=user_id,
            channel=channel,
            error_code=exc.error_code,
            error=exc.message,
        )

    def verify_contact(
        self, user_id: str, value: str, code: str, channel_key: str = EMAIL_CHANNEL
    ) -> UserContact:
        self._user(user_id)
        channel = self._channel(channel_key)
        normalized = value.strip()
        if channel.key == EMAIL_CHANNEL:
            normalized = normalized.lower()
        identifier = verification_identifier(channel.key, normalized)
        record = self.store.get_verification_code(identifier)
        if not record or record.expires_at < datetime.utcnow():
            raise ValidationError("verification code expired or invalid")
        if not self._code_matches(record.code_hash, code):
            raise ValidationError("verification code incorrect")
        matches = [
            c
            for c in self.store.list_contacts(user_id, channel.id)
            if c.value.lower() == normalized.lower()
        ]
        if not matches:
            raise NotFoundError("contact not found", detail={"channel": channel.key})
        now = datetime.utcnow()
        with self.store.transaction():
            self.store.delete_verification_codes(identifier)
            verified = [
                self.store.update_contact(c.id, verification=VERIFIED, verified_at=now)
                for c in matches
            ]
            primary = next((c for c in verified if c.is_primary), None)
            if primary is not None and channel.key == EMAIL_CHANNEL:
                self._mirror_email(user_id, primary.value, True)
        logger.info("contact_verified", user_id=user_id, channel=channel.key, count=len(verified))
        return primary or verified[0]

    def _code_matches(self, code_hash: str, code: str) -> bool:
        try:
            return self._hasher.verify(code_hash, (code or "").strip())
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # phone
    def _phone_value(self, dial_code: str, number: str) -> tuple[str, dict]:
        dial = (dial_code or "").strip()
        if dial and not dial.startswith("+"):
            dial = f"+{dial}"
        if not _DIAL_CODE_PATTERN.match(dial) or dial not in self.phone_dial_codes:
            raise ValidationError("unsupported dial code", detail={"dialCode": dial})
        digits = re.sub(r"\D", "", number or "")
        if not 5 <= len(digits) <= 16:
            raise ValidationError("phone number must have 5 to 16 digits")
        return f"{dial}{digits}", {"dialCode": dial, "region": self.phone_dial_codes[dial]}

    def add_phone_contact(
        self,
        user_id: str,
        dial_code: str,
        number: str,
        *,
        is_primary: bool = False,
        defer: Optional[Defer] = None,
    ) -> UserContact:
        self._user(user_id)
        channel = self._channel(PHONE_CHANNEL)
        value, meta = self._phone_value(dial_code, number)
        verification = PENDING if self.phone_verification_enabled else VERIFIED
        with self.store.transaction():
            existing = self.store.list_contacts(user_id, channel.id)
            if not channel.allow_multiple and existing:
                raise ChannelExclusiveError(
                    "channel allows a single contact", detail={"channel": channel.key}
                )
            if any(c.value == value for c in existing):
                raise ConflictError("phone number already added", detail={"value": value})
            should_be_primary = not existing or is_primary
            if should_be_primary:
                self.store.clear_primary_contacts(user_id, channel.id)
            contact = self.store.create_contact(
                user_id,
                channel.id,
                value,
                verification=verification,
                is_primary=should_be_primary,
                verified_at=datetime.utcnow() if verification == VERIFIED else None,
                meta=meta,
            )
        logger.info("phone_contact_added", user_id=user_id, contact_id=contact.id)
        if verification == PENDING:
            self._queue_code(user_id, channel, value, defer)
        return contact

    def update_phone_contact(
        self,
        user_id: str,
        contact_id: str,
        *,
        dial_code: Optional[str] = None,
        number: Optional[str] = None,
        is_primary: Optional[bool] = None,
        defer: Optional[Defer] = None,
    ) -> UserContact:
        contact = self._owned(user_id, contact_id)
        channel = self.store.get_channel(contact.channel_id)
        if channel.key != PHONE_CHANNEL:
            raise ValidationError("contact is not a phone number")
        fields: dict = {}
        if dial_code is not None or number is not None:
            current_meta = contact.meta or {}
            current_dial = current_meta.get("dialCode", "")
            current_number = contact.value[len(current_dial):] if current_dial else contact.value
            value, meta = self._phone_value(
                dial_code if dial_code is not None else current_dial,
                number if number is not None else current_number,
            )
            if value != contact.value:
                fields.update(value=value, meta={**current_meta, **meta})
                if self.phone_verification_enabled:
                    fields.update(verification=PENDING, verified_at=None)
        with self.store.transaction():
            if "value" in fields and any(
                c.value == fields["value"] and c.id != contact.id
                for c in self.store.list_contacts(user_id, channel.id)
            ):
                raise ConflictError("phone number already added", detail={"value": fields["value"]})
            if fields:
                contact = self.store.update_contact(contact.id, **fields)
            if is_primary:
                contact = self._promote(user_id, channel, contact)
        if fields.get("verification") == PENDING:
            self._queue_code(user_id, channel, contact.value, defer)
        return contact

    def set_primary_phone(self, user_id: str, contact_id: str) -> UserContact:
        contact = self._owned(user_id, contact_id)
        channel = self.store.get_channel(contact.channel_id)
        if channel.key != PHONE_CHANNEL:
            raise ValidationError("contact is not a phone number")
        if self.phone_verification_enabled and contact.verification != VERIFIED:
            raise ValidationError("phone number must be verified before it can be primary")
        with self.store.transaction():
            return self._promote(user_id, channel, contact)
