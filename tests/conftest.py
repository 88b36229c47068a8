import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.config import Settings  # noqa: E402
from warden.service.runtime import Runtime  # noqa: E402
from warden.service.signing import SigningAuthority  # noqa: E402
from warden.storage.memory import MemoryAuditSink, MemoryStore  # noqa: E402
from warden.storage.models import OAuthUserInfo  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Captures reset tokens instead of emailing them."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.sent.append((to_email, token))
        return True

    def last_token_for(self, email: str) -> str:
        return [token for to, token in self.sent if to == email][-1]


class FakeProvider:
    """OAuth provider client returning canned identities keyed by code."""

    def __init__(self, name: str = "google"):
        self.name = name
        self.identities: dict[str, OAuthUserInfo] = {}
        self.exchanged: list[tuple[str, str]] = []

    def register(self, code: str, external_id: str, email: str, **kwargs) -> None:
        self.identities[code] = OAuthUserInfo(
            provider=self.name,
            external_id=external_id,
            email=email,
            email_verified=kwargs.pop("email_verified", True),
            **kwargs,
        )

    def authorization_url(self, state: str, code_challenge: str) -> str:
        return f"https://idp.example/{self.name}?state={state}&code_challenge={code_challenge}"

    async def exchange(self, code: str, code_verifier: str) -> dict:
        from warden.service.errors import ProviderExchangeFailed

        self.exchanged.append((code, code_verifier))
        if code not in self.identities:
            raise ProviderExchangeFailed(reason="token_endpoint_rejected")
        return {"access_token": f"at-{code}", "code": code}

    async def user_info(self, provider_token: dict):
        return self.identities[provider_token["code"]]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        login_rate_limit=5,
        login_rate_window_seconds=60,
    )


@pytest.fixture(scope="session")
def signer():
    return SigningAuthority.generate("RS256", key_id="test-key")


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def google():
    return FakeProvider("google")


@pytest.fixture
def runtime(settings, memory_store, audit_sink, notifier, google, clock, signer):
    rt = Runtime(
        settings,
        store=memory_store,
        audit_sink=audit_sink,
        notifier=notifier,
        providers={"google": google},
        signer=signer,
        clock=clock,
    )
    return rt


@pytest.fixture
def orchestrator(runtime):
    return runtime.orchestrator


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
