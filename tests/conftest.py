import asyncio
import inspect
import json
import os
import sys
from pathlib import Path

# Configure the environment before anything builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-automation-only-0123456789")
os.environ.setdefault("LOG_JSON", "false")

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from agentcanvas.service.runtime import reset_runtime_for_tests  # noqa: E402
from agentcanvas.storage.atomic import LockedAtomicOps, ScriptedAtomicOps  # noqa: E402
from agentcanvas.storage.memory_kv import MemoryKVStore  # noqa: E402
from agentcanvas.storage.redis_kv import RedisKVStore  # noqa: E402

SESSION_SECRET = os.environ["SESSION_SECRET"]


class FakeClock:
    """Settable wall clock shared by the store and the services under test."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityProvider:
    """In-memory stand-in for the hosted user-management API.

    Serve it through ``httpx.MockTransport(fake.handler)``; every request is
    recorded in ``calls`` as ``(method, path)``.
    """

    def __init__(self):
        self.calls = []
        self.auth_status = 200
        self.expires_in = 3600
        self.id_token = None
        self.rotate_refresh_token = True
        self.memberships = [{"organization_id": "org_01", "role": {"slug": "admin"}}]
        self.organizations = {"org_01": {"id": "org_01", "name": "Acme"}}
        self.user = {
            "id": "user_01",
            "email": "ada@example.com",
            "first_name": "Ada",
            "last_name": "Lovelace",
        }
        self.last_grant = None

    def paths(self):
        return [path for _, path in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if path == "/user_management/authenticate":
            self.last_grant = json.loads(request.content)
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, json={"error": "invalid_grant"})
            body = {
                "user": self.user,
                "access_token": "access-token",
                "refresh_token": "refresh-2" if self.rotate_refresh_token else None,
                "expires_in": self.expires_in,
            }
            if self.id_token:
                body["id_token"] = self.id_token
            return httpx.Response(200, json=body)
        if path == "/user_management/organization_memberships":
            return httpx.Response(200, json={"data": self.memberships})
        if path.startswith("/organizations/"):
            org = self.organizations.get(path.rsplit("/", 1)[-1])
            if org is None:
                return httpx.Response(404, json={"message": "Not found"})
            return httpx.Response(200, json=org)
        return httpx.Response(404, json={"message": "Not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_idp():
    return FakeIdentityProvider()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryKVStore(clock=clock)


@pytest.fixture
def locked_ops(memory_store):
    return LockedAtomicOps(memory_store)


@pytest.fixture
def redis_store():
    """RedisKVStore over an in-process server that executes Lua for real."""
    store = RedisKVStore("redis://localhost:6379/0")
    store.client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return store


@pytest.fixture
def scripted_ops(redis_store):
    return ScriptedAtomicOps(redis_store)


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_jwk_json(rsa_private_key):
    return RSAAlgorithm.to_jwk(rsa_private_key)


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
