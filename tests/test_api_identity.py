"""HTTP tests for the identity routes: envelopes, auth and permission gates."""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from hydroline_identity import app as app_module
from hydroline_identity.service.credentials import AUTHME_PASSWORD_MISMATCH
from hydroline_identity.service.rbac import ADMIN_ROLE, MANAGE_ROLES, MANAGE_USERS, MODERATOR_ROLE


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _login_headers(runtime, user):
    session = runtime.auth.create_session(user.id)
    return {"session_id": session.id}


@pytest.fixture
def player(runtime):
    user = runtime.store.create_user("player@example.com", email_verified=True)
    return {"user": user, "headers": _login_headers(runtime, user)}


@pytest.fixture
def admin(runtime):
    user = runtime.store.create_user("admin@example.com", email_verified=True)
    runtime.rbac.assign_roles(user.id, [ADMIN_ROLE])
    return {"user": user, "headers": _login_headers(runtime, user)}


class ThreadRecordingMailer:
    """Notes whether each delivery ran on a thread with a running event loop."""

    def __init__(self):
        self.sent = []

    def send_verification_code(self, to_email, code, *, purpose, ttl_minutes):
        try:
            asyncio.get_running_loop()
            on_event_loop = True
        except RuntimeError:
            on_event_loop = False
        self.sent.append({"to": to_email, "on_event_loop": on_event_loop})
        return True


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    assert "request_id" in body
    return body["error"]


class TestAuthRoutes:
    def test_missing_session_is_unauthorized(self, client, runtime):
        response = client.get("/v1/me/bindings")
        assert response.status_code == 401
        assert _error(response)["code"] == "unauthorized"

    def test_unknown_session_is_unauthorized(self, client, runtime):
        response = client.get("/v1/me/bindings", headers={"session_id": "nope"})
        assert response.status_code == 401

    async def test_login_sets_cookies_and_session_works(self, client, runtime):
        user = runtime.store.create_user("steve@example.com")
        await runtime.bindings.bind_identity(user.id, "steve", "hunter2")

        response = client.post(
            "/v1/auth/login/authme", json={"identifier": "Steve", "password": "hunter2"}
        )

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["user_id"] == user.id
        assert data["token_type"] == "bearer"
        set_cookies = response.headers.get_list("set-cookie")
        prefix = runtime.settings.cookie_prefix
        assert any(c.startswith(f"{prefix}.session_token=") for c in set_cookies)
        assert any(c.startswith(f"{prefix}.refresh_token=") for c in set_cookies)

        bearer = {"Authorization": f"Bearer {data['access_token']}"}
        listed = client.get("/v1/me/bindings", headers=bearer)
        assert listed.status_code == 200
        assert [b["username"] for b in listed.json()["data"]["items"]] == ["Steve"]

    def test_login_unbound_account(self, client, runtime):
        response = client.post(
            "/v1/auth/login/authme", json={"identifier": "alex", "password": "s3cret"}
        )
        assert response.status_code == 400
        assert _error(response)["details"]["code"] == "AUTHME_NOT_BOUND"

    def test_login_validation_error(self, client, runtime):
        response = client.post("/v1/auth/login/authme", json={"identifier": "steve"})
        assert response.status_code == 400
        assert _error(response)["code"] == "validation_error"

    def test_logout_revokes_session(self, client, runtime, player):
        assert client.post("/v1/auth/logout", headers=player["headers"]).status_code == 200
        assert client.get("/v1/me/bindings", headers=player["headers"]).status_code == 401


class TestBindingRoutes:
    def test_bind_list_and_unbind(self, client, runtime, player):
        headers = player["headers"]
        first = client.post(
            "/v1/me/bindings", json={"identifier": "steve", "password": "hunter2"}, headers=headers
        )
        assert first.status_code == 201, first.text
        assert first.json()["data"]["is_primary"] is True
        assert first.headers["X-RateLimit-Limit"] == str(runtime.settings.bind_rate_limit_per_minute)

        second = client.post(
            "/v1/me/bindings", json={"identifier": "alex", "password": "s3cret"}, headers=headers
        )
        assert second.json()["data"]["is_primary"] is False

        removed = client.delete(f"/v1/me/bindings/{first.json()['data']['id']}", headers=headers)
        assert removed.status_code == 200
        assert removed.json()["data"] == {
            "unbound": True,
            "promoted_binding_id": second.json()["data"]["id"],
        }

        history = client.get("/v1/me/bindings/history?page=1&page_size=2", headers=headers)
        pagination = history.json()["data"]["pagination"]
        assert pagination["pageSize"] == 2
        assert pagination["total"] >= 4
        assert len(history.json()["data"]["items"]) == 2

    def test_bind_wrong_password(self, client, runtime, player):
        response = client.post(
            "/v1/me/bindings",
            json={"identifier": "steve", "password": "wrong"},
            headers=player["headers"],
        )
        assert response.status_code == 400
        assert _error(response)["details"]["code"] == AUTHME_PASSWORD_MISMATCH

    async def test_bind_conflict(self, client, runtime, player):
        other = runtime.store.create_user()
        await runtime.bindings.bind_identity(other.id, "steve", "hunter2")
        response = client.post(
            "/v1/me/bindings",
            json={"identifier": "steve", "password": "hunter2"},
            headers=player["headers"],
        )
        assert response.status_code == 409
        assert _error(response)["code"] == "binding_conflict"

    def test_credential_store_down(self, client, runtime, player):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        runtime.credentials._transport = httpx.MockTransport(handler)
        response = client.post(
            "/v1/me/bindings",
            json={"identifier": "steve", "password": "hunter2"},
            headers=player["headers"],
        )
        assert response.status_code == 503
        error = _error(response)
        assert error["code"] == "service_unavailable"
        assert error["details"] == {"stage": "CONNECT"}
        assert runtime.bindings.list_bindings(player["user"].id) == []

    def test_set_primary(self, client, runtime, player):
        headers = player["headers"]
        client.post("/v1/me/bindings", json={"identifier": "steve", "password": "hunter2"}, headers=headers)
        alex = client.post(
            "/v1/me/bindings", json={"identifier": "alex", "password": "s3cret"}, headers=headers
        ).json()["data"]
        response = client.post(f"/v1/me/bindings/{alex['id']}/primary", headers=headers)
        assert response.status_code == 200
        assert runtime.bindings.primary_binding_id(player["user"].id) == alex["id"]

    def test_minecraft_profiles(self, client, runtime, player):
        headers = player["headers"]
        created = client.post("/v1/me/minecraft-profiles", json={"nickname": "Notch"}, headers=headers)
        assert created.status_code == 201
        assert created.json()["data"]["is_primary"] is True
        listed = client.get("/v1/me/minecraft-profiles", headers=headers)
        assert [p["nickname"] for p in listed.json()["data"]["items"]] == ["Notch"]


class TestAdminBindingRoutes:
    def test_requires_manage_users(self, client, runtime, player):
        response = client.post(
            f"/v1/admin/users/{player['user'].id}/bindings",
            json={"identifier": "steve"},
            headers=player["headers"],
        )
        assert response.status_code == 403
        error = _error(response)
        assert error["code"] == "forbidden"
        assert error["details"] == {"permission": MANAGE_USERS}

    def test_admin_binds_and_transfers(self, client, runtime, admin, player):
        target = runtime.store.create_user()
        created = client.post(
            f"/v1/admin/users/{player['user'].id}/bindings",
            json={"identifier": "steve", "set_primary": True},
            headers=admin["headers"],
        )
        assert created.status_code == 201, created.text
        binding_id = created.json()["data"]["id"]

        moved = client.patch(
            f"/v1/admin/users/{player['user'].id}/bindings/{binding_id}",
            json={"target_user_id": target.id, "primary": True, "notes": "account merge"},
            headers=admin["headers"],
        )
        assert moved.status_code == 200, moved.text
        assert moved.json()["data"]["is_primary"] is True
        assert moved.json()["data"]["notes"] == "account merge"
        assert runtime.bindings.primary_binding_id(player["user"].id) is None

        history = client.get(
            f"/v1/admin/users/{target.id}/bindings/history", headers=admin["headers"]
        )
        actions = {item["action"] for item in history.json()["data"]["items"]}
        assert "TRANSFER" in actions

    def test_admin_unknown_account(self, client, runtime, admin, player):
        response = client.post(
            f"/v1/admin/users/{player['user'].id}/bindings",
            json={"identifier": "nobody"},
            headers=admin["headers"],
        )
        assert response.status_code == 404

    def test_manual_history_entry(self, client, runtime, admin, player):
        response = client.post(
            f"/v1/admin/users/{player['user'].id}/bindings/history",
            json={"reason": "support ticket", "payload": {"ticket": 7}},
            headers=admin["headers"],
        )
        assert response.status_code == 201
        assert response.json()["data"]["operator_id"] == admin["user"].id


class TestContactRoutes:
    def test_add_and_verify_email(self, client, runtime, mailer, player):
        headers = player["headers"]
        # listing backfills the account email as the primary contact
        assert client.get("/v1/me/contacts", headers=headers).status_code == 200
        created = client.post(
            "/v1/me/contacts", json={"value": "Second@Example.com"}, headers=headers
        )
        assert created.status_code == 201, created.text
        assert created.json()["data"]["value"] == "second@example.com"
        assert created.json()["data"]["is_primary"] is False
        assert mailer.sent[-1]["to"] == "second@example.com"

        verified = client.post(
            "/v1/me/contacts/verify",
            json={"value": "second@example.com", "code": "123456"},
            headers=headers,
        )
        assert verified.status_code == 200, verified.text
        assert verified.json()["data"]["verification"] == "VERIFIED"

        promoted = client.post(
            f"/v1/me/contacts/{created.json()['data']['id']}/primary", headers=headers
        )
        assert promoted.status_code == 200
        assert runtime.store.get_user(player["user"].id).email == "second@example.com"

    def test_wrong_code(self, client, runtime, player):
        headers = player["headers"]
        client.post("/v1/me/contacts", json={"value": "b@example.com"}, headers=headers)
        response = client.post(
            "/v1/me/contacts/verify",
            json={"value": "b@example.com", "code": "000000"},
            headers=headers,
        )
        assert response.status_code == 400

    def test_last_email_retained(self, client, runtime, player):
        headers = player["headers"]
        contacts = client.get("/v1/me/contacts?channel=email", headers=headers).json()["data"]["items"]
        assert [c["value"] for c in contacts] == ["player@example.com"]
        response = client.delete(f"/v1/me/contacts/{contacts[0]['id']}", headers=headers)
        assert response.status_code == 403
        assert _error(response)["code"] == "last_contact_retained"

    def test_verification_mail_runs_off_the_event_loop(self, client, runtime, player):
        mailer = ThreadRecordingMailer()
        runtime.contacts.mailer = mailer
        headers = player["headers"]

        created = client.post("/v1/me/contacts", json={"value": "b@example.com"}, headers=headers)
        assert created.status_code == 201, created.text
        resent = client.post(
            "/v1/me/contacts/send-code", json={"value": "b@example.com"}, headers=headers
        )
        assert resent.status_code == 200, resent.text

        assert [m["to"] for m in mailer.sent] == ["b@example.com", "b@example.com"]
        assert [m["on_event_loop"] for m in mailer.sent] == [False, False]

    def test_send_code_mail_failure_is_unavailable(self, client, runtime, mailer, player):
        headers = player["headers"]
        client.post("/v1/me/contacts", json={"value": "b@example.com"}, headers=headers)
        mailer.deliver = False
        response = client.post(
            "/v1/me/contacts/send-code", json={"value": "b@example.com"}, headers=headers
        )
        assert response.status_code == 503
        assert _error(response)["code"] == "service_unavailable"

    def test_send_code_for_unknown_contact(self, client, runtime, player):
        response = client.post(
            "/v1/me/contacts/send-code",
            json={"value": "stranger@example.com"},
            headers=player["headers"],
        )
        assert response.status_code == 404


class TestRbacRoutes:
    def test_requires_manage_roles(self, client, runtime, player):
        response = client.get("/v1/admin/roles", headers=player["headers"])
        assert response.status_code == 403

    def test_role_errors(self, client, runtime, admin):
        headers = admin["headers"]
        roles = client.get("/v1/admin/roles", headers=headers).json()["data"]["items"]
        system_role = next(r for r in roles if r["key"] == ADMIN_ROLE)
        assert system_role["is_system"] is True

        deleted = client.delete(f"/v1/admin/roles/{system_role['id']}", headers=headers)
        assert deleted.status_code == 403

        duplicate = client.post(
            "/v1/admin/roles", json={"key": ADMIN_ROLE, "name": "Again"}, headers=headers
        )
        assert duplicate.status_code == 409
        assert _error(duplicate)["code"] == "key_exists"

        missing = client.put(
            f"/v1/admin/roles/{system_role['id']}/permissions",
            json={"permission_keys": ["nope.missing"]},
            headers=headers,
        )
        assert missing.status_code == 404
        error = _error(missing)
        assert error["code"] == "permissions_not_found"
        assert error["details"] == {"missing": ["nope.missing"]}

    def test_role_assignment_refreshes_effective_permissions(self, client, runtime, admin, player):
        before = client.get("/v1/me/permissions", headers=player["headers"])
        assert before.json()["data"]["permissions"] == []

        assigned = client.put(
            f"/v1/admin/users/{player['user'].id}/roles",
            json={"role_keys": [MODERATOR_ROLE]},
            headers=admin["headers"],
        )
        assert assigned.status_code == 200
        assert assigned.json()["data"]["roles"] == [MODERATOR_ROLE]

        after = client.get("/v1/me/permissions", headers=player["headers"]).json()["data"]
        assert MANAGE_USERS in after["permissions"]
        assert after["roles"] == [MODERATOR_ROLE]

    def test_catalog(self, client, runtime, admin):
        response = client.get("/v1/admin/permission-catalog", headers=admin["headers"])
        entries = {e["key"]: e for e in response.json()["data"]["items"]}
        assert [r["key"] for r in entries[MANAGE_ROLES]["roles"]] == [ADMIN_ROLE]

    def test_self_assign_requires_admin_role(self, client, runtime, player):
        response = client.post(
            "/v1/me/permissions/self-assign",
            json={"permission_keys": [MANAGE_USERS]},
            headers=player["headers"],
        )
        assert response.status_code == 403

    def test_admin_self_assign(self, client, runtime, admin):
        response = client.post(
            "/v1/me/permissions/self-assign",
            json={"permission_keys": [MANAGE_USERS]},
            headers=admin["headers"],
        )
        assert response.status_code == 200
        assert response.json()["data"]["label"]["key"] == f"self-{admin['user'].id}"


class TestContactChannelRoutes:
    def test_channel_crud(self, client, runtime, admin):
        headers = admin["headers"]
        created = client.post(
            "/v1/admin/contact-channels",
            json={"key": "discord", "display_name": "Discord", "allow_multiple": False},
            headers=headers,
        )
        assert created.status_code == 201, created.text
        channel_id = created.json()["data"]["id"]

        updated = client.patch(
            f"/v1/admin/contact-channels/{channel_id}",
            json={"display_name": "Discord tag"},
            headers=headers,
        )
        assert updated.json()["data"]["display_name"] == "Discord tag"
        assert updated.json()["data"]["allow_multiple"] is False

        assert client.delete(f"/v1/admin/contact-channels/{channel_id}", headers=headers).status_code == 200


def test_healthz(client, runtime):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["checks"]["database"]["type"] == "memory"
    assert response.headers["X-Frame-Options"] == "DENY"
