import asyncio
import inspect
import json
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hydroline_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps rate limits and permission caches in-process
os.environ.setdefault("REDIS_URL", "")

import httpx  # noqa: E402
import pytest  # noqa: E402

from hydroline_identity.service.runtime import reset_runtime_for_tests  # noqa: E402

CREDENTIAL_STORE_URL = "http://credentials.test"

# username -> (password, realname, uuid)
ACCOUNTS = {
    "steve": ("hunter2", "Steve", "00000000-0000-0000-0000-000000000001"),
    "alex": ("s3cret", "Alex", "00000000-0000-0000-0000-000000000002"),
    "herobrine": ("nether", None, "00000000-0000-0000-0000-000000000003"),
}


def credential_store_handler(request: httpx.Request) -> httpx.Response:
    """In-process stand-in for the external account database."""
    if request.method == "POST" and request.url.path == "/verify":
        body = json.loads(request.content)
        account = ACCOUNTS.get(body.get("identifier", "").lower())
        if not account:
            return httpx.Response(404, json={"error": "not found"})
        if body.get("password") != account[0]:
            return httpx.Response(401, json={"error": "bad password"})
        name = body["identifier"].lower()
        return httpx.Response(200, json={"username": name.capitalize(), "realname": account[1], "uuid": account[2]})
    if request.method == "GET" and request.url.path.startswith("/accounts/"):
        name = request.url.path.rsplit("/", 1)[-1].lower()
        account = ACCOUNTS.get(name)
        if not account:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"username": name.capitalize(), "realname": account[1], "uuid": account[2]})
    return httpx.Response(500)


class FakeMailer:
    """Records verification codes instead of sending them."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    def send_verification_code(self, to_email, code, *, purpose, ttl_minutes):
        self.sent.append({"to": to_email, "code": code, "purpose": purpose})
        return self.deliver


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh state file per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store(tmp_path):
    from hydroline_identity.storage.memory import MemoryStore

    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def credentials():
    from hydroline_identity.service.credentials import CredentialStoreClient

    return CredentialStoreClient(
        CREDENTIAL_STORE_URL, transport=httpx.MockTransport(credential_store_handler)
    )


@pytest.fixture
def runtime(mailer):
    """The live runtime wired to a mock credential store and a fake mailer."""
    from hydroline_identity.service.runtime import get_runtime

    rt = get_runtime()
    rt.credentials.base_url = CREDENTIAL_STORE_URL
    rt.credentials._transport = httpx.MockTransport(credential_store_handler)
    rt.contacts.mailer = mailer
    rt.contacts._generate_code = lambda: "123456"
    return rt


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
