from __future__ import annotations

import asyncio
from typing import Dict, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
)

from hydroline_identity.api.schemas import (
    AdminBindingCreateRequest,
    AdminBindingUpdateRequest,
    AuthResponse,
    BindingHistoryEntryResponse,
    BindingHistoryResponse,
    BindingListResponse,
    BindingResponse,
    BindRequest,
    ChannelCreateRequest,
    ChannelResponse,
    ChannelUpdateRequest,
    ContactCreateRequest,
    ContactListResponse,
    ContactResponse,
    ContactUpdateRequest,
    ContactVerifyRequest,
    CredentialLoginRequest,
    EffectivePermissionsResponse,
    Envelope,
    ManualHistoryEntryRequest,
    MinecraftProfileRequest,
    MinecraftProfileResponse,
    PermissionCatalogEntry,
    PermissionCreateRequest,
    PermissionKeysRequest,
    PermissionLabelCreateRequest,
    PermissionLabelResponse,
    PermissionLabelUpdateRequest,
    PermissionResponse,
    PermissionUpdateRequest,
    PhoneContactRequest,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    SendCodeRequest,
    SendCodeResponse,
    UnbindResponse,
    UserLabelsRequest,
    UserRolesRequest,
)
from hydroline_identity.logging import get_logger
from hydroline_identity.service.auth import AuthContext
from hydroline_identity.service.channels import EMAIL_CHANNEL, PHONE_CHANNEL
from hydroline_identity.service.cookies import DONT_REMEMBER, REFRESH_TOKEN, SESSION_TOKEN
from hydroline_identity.service.rbac import (
    ADMIN_ROLE,
    MANAGE_CONTACT_CHANNELS,
    MANAGE_ROLES,
    MANAGE_USERS,
)
from hydroline_identity.service.runtime import check_rate_limit, get_runtime
from hydroline_identity.storage.models import (
    BindingHistoryEntry,
    ContactChannel,
    ExternalBinding,
    MinecraftProfile,
    Permission,
    PermissionLabel,
    Role,
    UserContact,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to ``response``.

    Raises:
        HTTPException with 429 if the limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)

    return info


def _session_cookie(request: Request, prefix: str) -> Optional[str]:
    return request.cookies.get(f"{prefix}.{SESSION_TOKEN}")


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    session_id = session_id or _session_cookie(request, runtime.settings.cookie_prefix)
    ctx = await runtime.auth.authenticate(authorization, session_id)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def require_permission(permission_key: str):
    """Dependency factory rejecting principals without ``permission_key``."""

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        if not principal.has_permission(permission_key):
            raise _http_error(
                "forbidden",
                "permission required",
                status_code=403,
                details={"permission": permission_key},
            )
        return principal

    return _dependency


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _channels_by_id(runtime) -> Dict[str, ContactChannel]:
    return {c.id: c for c in runtime.channels.list_channels()}


def _contact_to_response(contact: UserContact, channels: Dict[str, ContactChannel]) -> ContactResponse:
    channel = channels.get(contact.channel_id)
    return ContactResponse(
        id=contact.id,
        channel=channel.key if channel else contact.channel_id,
        value=contact.value,
        verification=contact.verification,
        is_primary=contact.is_primary,
        verified_at=contact.verified_at,
        created_at=contact.created_at,
        meta=contact.meta,
    )


def _channel_to_response(channel: ContactChannel) -> ChannelResponse:
    return ChannelResponse(
        id=channel.id,
        key=channel.key,
        display_name=channel.display_name,
        description=channel.description,
        validation_regex=channel.validation_regex,
        allow_multiple=channel.allow_multiple,
        is_verifiable=channel.is_verifiable,
        is_required=channel.is_required,
        created_at=channel.created_at,
        meta=channel.meta,
    )


def _binding_to_response(binding: ExternalBinding, is_primary: bool) -> BindingResponse:
    return BindingResponse(
        id=binding.id,
        provider=binding.provider,
        username=binding.username,
        realname=binding.realname,
        external_uuid=binding.external_uuid,
        status=binding.status,
        notes=binding.notes,
        bound_at=binding.bound_at,
        is_primary=is_primary,
    )


def _history_to_response(entry: BindingHistoryEntry) -> BindingHistoryEntryResponse:
    return BindingHistoryEntryResponse(
        id=entry.id,
        action=entry.action,
        provider=entry.provider,
        binding_id=entry.binding_id,
        operator_id=entry.operator_id,
        username=entry.username,
        realname=entry.realname,
        external_uuid=entry.external_uuid,
        reason=entry.reason,
        payload=entry.payload,
        created_at=entry.created_at,
    )


def _history_page(result: dict) -> BindingHistoryResponse:
    return BindingHistoryResponse(
        items=[_history_to_response(e) for e in result["items"]],
        pagination=result["pagination"],
    )


def _profile_to_response(profile: MinecraftProfile) -> MinecraftProfileResponse:
    return MinecraftProfileResponse(
        id=profile.id,
        nickname=profile.nickname,
        binding_id=profile.binding_id,
        external_uuid=profile.external_uuid,
        is_primary=profile.is_primary,
        created_at=profile.created_at,
    )


def _role_to_response(role: Role, permissions: list[str]) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        key=role.key,
        name=role.name,
        description=role.description,
        is_system=role.is_system,
        permissions=permissions,
        meta=role.meta,
    )


def _permission_to_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        key=permission.key,
        description=permission.description,
        meta=permission.meta,
    )


def _label_to_response(label: PermissionLabel, permissions: list[str]) -> PermissionLabelResponse:
    return PermissionLabelResponse(
        id=label.id,
        key=label.key,
        name=label.name,
        description=label.description,
        color=label.color,
        permissions=permissions,
        meta=label.meta,
    )


def _role_permissions(runtime, role_id: str) -> list[str]:
    entry = next((r for r in runtime.rbac.list_roles() if r["role"].id == role_id), None)
    return entry["permissions"] if entry else []


def _label_permissions(runtime, label_id: str) -> list[str]:
    entry = next(
        (lbl for lbl in runtime.rbac.list_permission_labels() if lbl["label"].id == label_id),
        None,
    )
    return entry["permissions"] if entry else []


# auth
@router.post("/auth/login/authme", response_model=Envelope, tags=["auth"])
async def login_authme(body: CredentialLoginRequest, request: Request, response: Response):
    """Sign in with an already-bound external account.

    Raises:
        400: unknown account, wrong password or account not bound
        429: rate limit exceeded for this identifier
        503: credential store unavailable
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login_with_credentials(
        body.identifier,
        body.password,
        remember_me=body.remember_me,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    for cookie in result.cookies:
        response.headers.append("set-cookie", cookie)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user.id,
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
            binding_id=result.binding.id,
            access_token=result.tokens.get("access_token"),
            refresh_token=result.tokens.get("refresh_token"),
            token_type=result.tokens.get("token_type"),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        runtime.auth.revoke_session(principal.session_id)
    prefix = runtime.settings.cookie_prefix
    for name in (SESSION_TOKEN, REFRESH_TOKEN, DONT_REMEMBER):
        response.delete_cookie(f"{prefix}.{name}", path="/", samesite="lax")
    return Envelope(status="ok", data={"message": "session revoked"})


# contacts
@router.get("/me/contacts", response_model=Envelope, tags=["contacts"])
async def list_my_contacts(
    channel: Optional[str] = Query(None, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    contacts = runtime.contacts.list_contacts(principal.user_id, channel)
    channels = _channels_by_id(runtime)
    return Envelope(
        status="ok",
        data=ContactListResponse(items=[_contact_to_response(c, channels) for c in contacts]),
    )


@router.post("/me/contacts", response_model=Envelope, status_code=201, tags=["contacts"])
async def add_my_contact(
    body: ContactCreateRequest,
    background_tasks: BackgroundTasks,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    contact = runtime.contacts.add_contact(
        principal.user_id,
        body.channel,
        body.value,
        is_primary=body.is_primary,
        meta=body.meta,
        defer=background_tasks.add_task,
    )
    return Envelope(status="ok", data=_contact_to_response(contact, _channels_by_id(runtime)))


@router.post("/me/contacts/phone", response_model=Envelope, status_code=201, tags=["contacts"])
async def add_my_phone(
    body: PhoneContactRequest,
    background_tasks: BackgroundTasks,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    contact = runtime.contacts.add_phone_contact(
        principal.user_id,
        body.dial_code,
        body.number,
        is_primary=body.is_primary,
        defer=background_tasks.add_task,
    )
    return Envelope(status="ok", data=_contact_to_response(contact, _channels_by_id(runtime)))


@router.post("/me/contacts/send-code", response_model=Envelope, tags=["contacts"])
async def send_contact_code(
    body: SendCodeRequest, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"contact-code:{principal.user_id}",
        runtime.settings.email_code_rate_limit_per_hour,
        3600,
        response=response,
    )
    issued = runtime.contacts.issue_verification_code(principal.user_id, body.value, body.channel)
    expires_at = await asyncio.to_thread(runtime.contacts.deliver_code, issued)
    return Envelope(status="ok", data=SendCodeResponse(expires_at=expires_at))


@router.post("/me/contacts/verify", response_model=Envelope, tags=["contacts"])
async def verify_my_contact(body: ContactVerifyRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    contact = runtime.contacts.verify_contact(
        principal.user_id, body.value, body.code, body.channel
    )
    return Envelope(status="ok", data=_contact_to_response(contact, _channels_by_id(runtime)))


@router.patch("/me/contacts/{contact_id}", response_model=Envelope, tags=["contacts"])
async def update_my_contact(
    body: ContactUpdateRequest,
    background_tasks: BackgroundTasks,
    contact_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    contact = runtime.contacts.update_contact(
        principal.user_id,
        contact_id,
        value=body.value,
        is_primary=body.is_primary,
        meta=body.meta,
        defer=background_tasks.add_task,
    )
    return Envelope(status="ok", data=_contact_to_response(contact, _channels_by_id(runtime)))


@router.delete("/me/contacts/{contact_id}", response_model=Envelope, tags=["contacts"])
async def delete_my_contact(
    contact_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.contacts.remove_contact(principal.user_id, contact_id)
    return Envelope(status="ok", data={"deleted": True, "id": contact_id})


@router.post("/me/contacts/{contact_id}/primary", response_model=Envelope, tags=["contacts"])
async def make_contact_primary(
    contact_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    channels = _channels_by_id(runtime)
    current = runtime.store.get_contact(contact_id)
    channel = channels.get(current.channel_id) if current else None
    if channel is not None and channel.key == EMAIL_CHANNEL:
        contact = runtime.contacts.set_primary_email(principal.user_id, contact_id)
    elif channel is not None and channel.key == PHONE_CHANNEL:
        contact = runtime.contacts.set_primary_phone(principal.user_id, contact_id)
    else:
        contact = runtime.contacts.update_contact(principal.user_id, contact_id, is_primary=True)
    return Envelope(status="ok", data=_contact_to_response(contact, channels))


# bindings
@router.get("/me/bindings", response_model=Envelope, tags=["bindings"])
async def list_my_bindings(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = runtime.bindings.list_bindings(principal.user_id)
    return Envelope(
        status="ok",
        data=BindingListResponse(
            items=[_binding_to_response(i["binding"], i["is_primary"]) for i in items]
        ),
    )


@router.post("/me/bindings", response_model=Envelope, status_code=201, tags=["bindings"])
async def bind_my_identity(
    body: BindRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"bind:{principal.user_id}",
        runtime.settings.bind_rate_limit_per_minute,
        60,
        response=response,
    )
    binding = await runtime.bindings.bind_identity(
        principal.user_id,
        body.identifier,
        body.password,
        operator_id=principal.user_id,
        source_ip=_client_ip(request),
    )
    return Envelope(
        status="ok", data=_binding_to_response(binding, runtime.bindings.is_primary(binding))
    )


@router.get("/me/bindings/history", response_model=Envelope, tags=["bindings"])
async def my_binding_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = runtime.bindings.list_binding_history(principal.user_id, page, page_size)
    return Envelope(status="ok", data=_history_page(result))


@router.delete("/me/bindings/{binding_id}", response_model=Envelope, tags=["bindings"])
async def unbind_my_identity(
    binding_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    successor = runtime.bindings.unbind_identity(
        principal.user_id, binding_id, operator_id=principal.user_id
    )
    return Envelope(
        status="ok",
        data=UnbindResponse(promoted_binding_id=successor.id if successor else None),
    )


@router.post("/me/bindings/{binding_id}/primary", response_model=Envelope, tags=["bindings"])
async def make_binding_primary(
    binding_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    binding = runtime.bindings.set_primary(
        principal.user_id, binding_id, operator_id=principal.user_id
    )
    return Envelope(status="ok", data=_binding_to_response(binding, True))


@router.get("/me/minecraft-profiles", response_model=Envelope, tags=["bindings"])
async def list_my_minecraft_profiles(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profiles = runtime.bindings.list_minecraft_profiles(principal.user_id)
    return Envelope(status="ok", data={"items": [_profile_to_response(p) for p in profiles]})


@router.post("/me/minecraft-profiles", response_model=Envelope, status_code=201, tags=["bindings"])
async def add_my_minecraft_profile(
    body: MinecraftProfileRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    profile = runtime.bindings.add_minecraft_profile(
        principal.user_id,
        nickname=body.nickname,
        binding_id=body.binding_id,
        is_primary=body.is_primary,
        meta=body.meta,
    )
    return Envelope(status="ok", data=_profile_to_response(profile))


# admin bindings
@router.post(
    "/admin/users/{user_id}/bindings", response_model=Envelope, status_code=201, tags=["admin"]
)
async def admin_create_binding(
    body: AdminBindingCreateRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_USERS)),
):
    runtime = get_runtime()
    binding = await runtime.bindings.admin_create_binding(
        user_id, body.identifier, operator_id=principal.user_id, set_primary=body.set_primary
    )
    return Envelope(
        status="ok", data=_binding_to_response(binding, runtime.bindings.is_primary(binding))
    )


@router.patch(
    "/admin/users/{user_id}/bindings/{binding_id}", response_model=Envelope, tags=["admin"]
)
async def admin_update_binding(
    body: AdminBindingUpdateRequest,
    user_id: str = Path(..., max_length=64),
    binding_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_USERS)),
):
    runtime = get_runtime()
    binding = runtime.bindings.update_binding(
        user_id,
        binding_id,
        operator_id=principal.user_id,
        realname=body.realname,
        status=body.status,
        notes=body.notes,
        meta=body.meta,
        target_user_id=body.target_user_id,
        primary=body.primary,
    )
    return Envelope(
        status="ok", data=_binding_to_response(binding, runtime.bindings.is_primary(binding))
    )


@router.delete(
    "/admin/users/{user_id}/bindings/{binding_id}", response_model=Envelope, tags=["admin"]
)
async def admin_delete_binding(
    user_id: str = Path(..., max_length=64),
    binding_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_USERS)),
):
    runtime = get_runtime()
    successor = runtime.bindings.admin_unbind(user_id, binding_id, operator_id=principal.user_id)
    return Envelope(
        status="ok",
        data=UnbindResponse(promoted_binding_id=successor.id if successor else None),
    )


@router.get("/admin/users/{user_id}/bindings/history", response_model=Envelope, tags=["admin"])
async def admin_binding_history(
    user_id: str = Path(..., max_length=64),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1),
    principal: AuthContext = Depends(require_permission(MANAGE_USERS)),
):
    runtime = get_runtime()
    result = runtime.bindings.list_binding_history(user_id, page, page_size)
    return Envelope(status="ok", data=_history_page(result))


@router.post(
    "/admin/users/{user_id}/bindings/history",
    response_model=Envelope,
    status_code=201,
    tags=["admin"],
)
async def admin_record_history_entry(
    body: ManualHistoryEntryRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_USERS)),
):
    runtime = get_runtime()
    entry = runtime.bindings.record_manual_entry(
        user_id,
        reason=body.reason,
        binding_id=body.binding_id,
        payload=body.payload,
        operator_id=principal.user_id,
    )
    return Envelope(status="ok", data=_history_to_response(entry))


# rbac
@router.get("/admin/roles", response_model=Envelope, tags=["rbac"])
async def list_roles(principal: AuthContext = Depends(require_permission(MANAGE_ROLES))):
    runtime = get_runtime()
    roles = runtime.rbac.list_roles()
    return Envelope(
        status="ok",
        data={"items": [_role_to_response(r["role"], r["permissions"]) for r in roles]},
    )


@router.post("/admin/roles", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_role(
    body: RoleCreateRequest, principal: AuthContext = Depends(require_permission(MANAGE_ROLES))
):
    runtime = get_runtime()
    role = runtime.rbac.create_role(
        body.key,
        body.name,
        description=body.description,
        meta=body.meta,
        permission_keys=body.permission_keys,
        actor_id=principal.user_id,
    )
    await runtime.auth.invalidate_permissions()
    return Envelope(status="ok", data=_role_to_response(role, _role_permissions(runtime, role.id)))


@router.patch("/admin/roles/{role_id}", response_model=Envelope, tags=["rbac"])
async def update_role(
    body: RoleUpdateRequest,
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    role = runtime.rbac.update_role(
        role_id,
        name=body.name,
        description=body.description,
        meta=body.meta,
        actor_id=principal.user_id,
    )
    return Envelope(status="ok", data=_role_to_response(role, _role_permissions(runtime, role.id)))


@router.put("/admin/roles/{role_id}/permissions", response_model=Envelope, tags=["rbac"])
async def replace_role_permissions(
    body: PermissionKeysRequest,
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    keys = runtime.rbac.update_role_permissions(
        role_id, body.permission_keys, actor_id=principal.user_id
    )
    await runtime.auth.invalidate_permissions()
    return Envelope(status="ok", data={"role_id": role_id, "permissions": keys})


@router.delete("/admin/roles/{role_id}", response_model=Envelope, tags=["rbac"])
async def delete_role(
    role_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    runtime.rbac.delete_role(role_id, actor_id=principal.user_id)
    await runtime.auth.invalidate_permissions()
    return Envelope(status="ok", data={"deleted": True, "id": role_id})


@router.get("/admin/permissions", response_model=Envelope, tags=["rbac"])
async def list_permissions(principal: AuthContext = Depends(require_permission(MANAGE_ROLES))):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"items": [_permission_to_response(p) for p in runtime.rbac.list_permissions()]},
    )


@router.post("/admin/permissions", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_permission(
    body: PermissionCreateRequest,
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    permission = runtime.rbac.create_permission(
        body.key, description=body.description, meta=body.meta, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=_permission_to_response(permission))


@router.patch("/admin/permissions/{permission_id}", response_model=Envelope, tags=["rbac"])
async def update_permission(
    body: PermissionUpdateRequest,
    permission_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    permission = runtime.rbac.update_permission(
        permission_id, description=body.description, meta=body.meta, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=_permission_to_response(permission))


@router.delete("/admin/permissions/{permission_id}", response_model=Envelope, tags=["rbac"])
async def delete_permission(
    permission_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    runtime.rbac.delete_permission(permission_id, actor_id=principal.user_id)
    await runtime.auth.invalidate_permissions()
    return Envelope(status="ok", data={"deleted": True, "id": permission_id})


@router.get("/admin/permission-labels", response_model=Envelope, tags=["rbac"])
async def list_permission_labels(
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    labels = runtime.rbac.list_permission_labels()
    return Envelope(
        status="ok",
        data={"items": [_label_to_response(e["label"], e["permissions"]) for e in labels]},
    )


@router.post("/admin/permission-labels", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_permission_label(
    body: PermissionLabelCreateRequest,
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    label = runtime.rbac.create_permission_label(
        body.key,
        body.name,
        description=body.description,
        color=body.color,
        meta=body.meta,
        permission_keys=body.permission_keys,
        actor_id=principal.user_id,
    )
    await runtime.auth.invalidate_permissions()
    return Envelope(
        status="ok", data=_label_to_response(label, _label_permissions(runtime, label.id))
    )


@router.patch("/admin/permission-labels/{label_id}", response_model=Envelope, tags=["rbac"])
async def update_permission_label(
    body: PermissionLabelUpdateRequest,
    label_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    label = runtime.rbac.update_permission_label(
        label_id,
        name=body.name,
        description=body.description,
        color=body.color,
        meta=body.meta,
        permission_keys=body.permission_keys,
        actor_id=principal.user_id,
    )
    await runtime.auth.invalidate_permissions()
    return Envelope(
        status="ok", data=_label_to_response(label, _label_permissions(runtime, label.id))
    )


@router.delete("/admin/permission-labels/{label_id}", response_model=Envelope, tags=["rbac"])
async def delete_permission_label(
    label_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    runtime.rbac.delete_permission_label(label_id, actor_id=principal.user_id)
    await runtime.auth.invalidate_permissions()
    return Envelope(status="ok", data={"deleted": True, "id": label_id})


@router.get("/admin/permission-catalog", response_model=Envelope, tags=["rbac"])
async def permission_catalog(principal: AuthContext = Depends(require_permission(MANAGE_ROLES))):
    runtime = get_runtime()
    entries = [
        PermissionCatalogEntry(
            id=e["permission"].id,
            key=e["permission"].key,
            description=e["permission"].description,
            roles=e["roles"],
            labels=e["labels"],
        )
        for e in runtime.rbac.list_permission_catalog()
    ]
    return Envelope(status="ok", data={"items": entries})


@router.put("/admin/users/{user_id}/roles", response_model=Envelope, tags=["rbac"])
async def assign_user_roles(
    body: UserRolesRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    keys = runtime.rbac.assign_roles(user_id, body.role_keys, actor_id=principal.user_id)
    await runtime.auth.invalidate_permissions()
    return Envelope(status="ok", data={"user_id": user_id, "roles": keys})


@router.put("/admin/users/{user_id}/permission-labels", response_model=Envelope, tags=["rbac"])
async def assign_user_labels(
    body: UserLabelsRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_ROLES)),
):
    runtime = get_runtime()
    keys = runtime.rbac.assign_permission_labels(
        user_id, body.label_keys, actor_id=principal.user_id
    )
    await runtime.auth.invalidate_permissions()
    return Envelope(status="ok", data={"user_id": user_id, "labels": keys})


@router.get("/me/permissions", response_model=Envelope, tags=["rbac"])
async def my_permissions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=EffectivePermissionsResponse(
            user_id=principal.user_id,
            permissions=sorted(principal.permissions),
            roles=runtime.rbac.user_role_keys(principal.user_id),
        ),
    )


@router.post("/me/permissions/self-assign", response_model=Envelope, tags=["rbac"])
async def self_assign_permissions(
    body: PermissionKeysRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    if ADMIN_ROLE not in runtime.rbac.user_role_keys(principal.user_id):
        raise _http_error("forbidden", "admin role required", status_code=403)
    label = runtime.rbac.self_assign_permissions(
        principal.user_id, body.permission_keys, actor_id=principal.user_id
    )
    if label is None:
        return Envelope(status="ok", data={"label": None})
    await runtime.auth.invalidate_permissions()
    return Envelope(
        status="ok",
        data={"label": _label_to_response(label, _label_permissions(runtime, label.id))},
    )


# contact channels
@router.get("/admin/contact-channels", response_model=Envelope, tags=["admin"])
async def list_contact_channels(
    principal: AuthContext = Depends(require_permission(MANAGE_CONTACT_CHANNELS)),
):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"items": [_channel_to_response(c) for c in runtime.channels.list_channels()]},
    )


@router.post("/admin/contact-channels", response_model=Envelope, status_code=201, tags=["admin"])
async def create_contact_channel(
    body: ChannelCreateRequest,
    principal: AuthContext = Depends(require_permission(MANAGE_CONTACT_CHANNELS)),
):
    runtime = get_runtime()
    channel = runtime.channels.create_channel(
        body.key,
        body.display_name,
        description=body.description,
        validation_regex=body.validation_regex,
        allow_multiple=body.allow_multiple,
        is_verifiable=body.is_verifiable,
        is_required=body.is_required,
        meta=body.meta,
        actor_id=principal.user_id,
    )
    return Envelope(status="ok", data=_channel_to_response(channel))


@router.patch("/admin/contact-channels/{channel_id}", response_model=Envelope, tags=["admin"])
async def update_contact_channel(
    body: ChannelUpdateRequest,
    channel_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_CONTACT_CHANNELS)),
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True)
    channel = runtime.channels.update_channel(channel_id, actor_id=principal.user_id, **fields)
    return Envelope(status="ok", data=_channel_to_response(channel))


@router.delete("/admin/contact-channels/{channel_id}", response_model=Envelope, tags=["admin"])
async def delete_contact_channel(
    channel_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(MANAGE_CONTACT_CHANNELS)),
):
    runtime = get_runtime()
    runtime.channels.delete_channel(channel_id, actor_id=principal.user_id)
    return Envelope(status="ok", data={"deleted": True, "id": channel_id})
