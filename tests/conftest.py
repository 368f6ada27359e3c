"""
tests/conftest.py -- Shared test fixtures for Keyward.

This module provides:
  - settings:        Settings with a fixed 40-char secret key
  - clock:           FakeClock -- controllable "now" for every time-based rule
  - store:           AccountStore on a private in-memory SQLite database
  - sender:          RecordingSender -- captures hand-offs instead of delivering
  - issuer/service/manager: the core objects wired to the fixtures above
  - make_account:    factory that inserts an account + credential directly
  - claims_for:      builds Claims for an account without going through login

bcrypt rounds are dropped to the library minimum for the whole session so the
suite is not dominated by deliberate hashing cost. Correctness does not
depend on the cost factor.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest

import auth.credentials
from auth.accounts import AccountService
from auth.credentials import hash_password
from auth.models import Account, AccountStatus, Claims, Credential, Role
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from auth.verification import VerificationManager
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123"
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable returning a settable UTC datetime."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """NotificationSender that records every hand-off. Set fail=True to simulate provider outage."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    def send(self, destination: str, payload: dict[str, Any]) -> bool:
        self.sent.append((destination, payload))
        return not self.fail

    @property
    def last(self) -> tuple[str, dict[str, Any]]:
        return self.sent[-1]


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(auth.credentials, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def settings() -> Settings:
    return Settings(secret_key=TEST_SECRET, debug=False, database_url="sqlite:///:memory:")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def issuer(settings: Settings, clock: FakeClock) -> TokenIssuer:
    return TokenIssuer.from_settings(settings, clock=clock)


@pytest.fixture
def service(store: AccountStore, issuer: TokenIssuer) -> AccountService:
    return AccountService(store, issuer)


@pytest.fixture
def manager(store: AccountStore, sender: RecordingSender, settings: Settings, clock: FakeClock) -> VerificationManager:
    return VerificationManager(store, sender, settings, clock=clock)


@pytest.fixture
def make_account(store: AccountStore) -> Callable[..., Account]:
    """Return a factory: make_account(username, role=1, password="password123", **fields) -> Account."""

    def _make(username: str, role: int = Role.USER, password: str = "password123", **fields: Any) -> Account:
        account = Account(
            firstname=fields.pop("firstname", username.title()),
            lastname=fields.pop("lastname", "Tester"),
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            role=role,
            status=fields.pop("status", AccountStatus.active.value),
            **fields,
        )
        salt, digest = hash_password(password)
        with store.transaction() as conn:
            account_id = store.insert_account(account, conn)
            store.insert_credential(Credential(account_id=account_id, salted_hash=digest, salt=salt), conn)
        return store.get_account(account_id)

    return _make


def claims_for(account: Account, now: datetime = T0) -> Claims:
    return Claims(
        account_id=account.id,
        role=int(account.role),
        issued_at=now,
        expires_at=now + timedelta(days=14),
    )
