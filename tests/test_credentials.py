import json

import httpx
import pytest

from hydroline_identity.service.credentials import (
    AUTHME_ACCOUNT_NOT_FOUND,
    AUTHME_PASSWORD_MISMATCH,
    BadCredentials,
    CredentialStoreClient,
    CredentialStoreUnavailable,
)


def _client(handler, **kwargs):
    return CredentialStoreClient(
        "http://credentials.test/", transport=httpx.MockTransport(handler), **kwargs
    )


async def test_verify_returns_account(credentials):
    account = await credentials.verify_credentials("STEVE", "hunter2")
    assert account.username == "Steve"
    assert account.realname == "Steve"
    assert account.external_uuid == "00000000-0000-0000-0000-000000000001"


async def test_verify_sends_bearer_token_and_body():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        seen["path"] = request.url.path
        return httpx.Response(200, json={"username": "Alex", "displayName": "Alex A."})

    client = _client(handler, api_token="secret-token")
    account = await client.verify_credentials("alex", "pw")
    assert seen == {
        "auth": "Bearer secret-token",
        "body": {"identifier": "alex", "password": "pw"},
        "path": "/verify",
    }
    assert account.realname == "Alex A."
    assert account.external_uuid is None


async def test_unknown_account_is_bad_credentials(credentials):
    with pytest.raises(BadCredentials) as excinfo:
        await credentials.verify_credentials("nobody", "x")
    assert excinfo.value.code == AUTHME_ACCOUNT_NOT_FOUND


async def test_wrong_password_is_bad_credentials(credentials):
    with pytest.raises(BadCredentials) as excinfo:
        await credentials.verify_credentials("steve", "wrong")
    assert excinfo.value.code == AUTHME_PASSWORD_MISMATCH


async def test_lookup_account_quotes_identifier():
    seen = []

    def handler(request):
        seen.append(request.url.raw_path)
        return httpx.Response(200, json={"username": "a b"})

    account = await _client(handler).lookup_account("a b")
    assert account.username == "a b"
    assert seen == [b"/accounts/a%20b"]


async def test_server_error_is_unavailable():
    client = _client(lambda request: httpx.Response(502))
    with pytest.raises(CredentialStoreUnavailable) as excinfo:
        await client.verify_credentials("steve", "hunter2")
    assert excinfo.value.stage == "QUERY"
    assert excinfo.value.status_code == 503


async def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(CredentialStoreUnavailable) as excinfo:
        await _client(handler).lookup_account("steve")
    assert excinfo.value.stage == "TIMEOUT"


async def test_connect_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CredentialStoreUnavailable) as excinfo:
        await _client(handler).verify_credentials("steve", "hunter2")
    assert excinfo.value.stage == "CONNECT"


async def test_dns_failure_is_reported_as_dns_stage():
    def handler(request):
        raise httpx.ConnectError("[Errno -2] Name or service not known; name resolution failed", request=request)

    with pytest.raises(CredentialStoreUnavailable) as excinfo:
        await _client(handler).verify_credentials("steve", "hunter2")
    assert excinfo.value.stage == "DNS"


async def test_missing_username_is_unavailable():
    client = _client(lambda request: httpx.Response(200, json={"realname": "x"}))
    with pytest.raises(CredentialStoreUnavailable):
        await client.lookup_account("steve")


async def test_unconfigured_client_is_unavailable():
    client = CredentialStoreClient(None)
    assert client.is_configured is False
    with pytest.raises(CredentialStoreUnavailable) as excinfo:
        await client.verify_credentials("steve", "hunter2")
    assert excinfo.value.stage == "CONFIG"
