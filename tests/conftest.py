from __future__ import annotations

import pytest

from account_guard.config import Settings
from account_guard.domain.service import AccountGuardService, Authorization
from account_guard.repository import InMemoryAccountStore
from signing import ACCOUNT_ID, OWNER, DAY, FrozenClock, Passkey, PrimaryKey


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        pending_action_delay_seconds=2 * DAY,
        recovery_delay_seconds=DAY,
        min_delay_seconds=3600,
    )


@pytest.fixture
def store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def service(store, clock, settings) -> AccountGuardService:
    return AccountGuardService(store, clock=clock, settings=settings)


@pytest.fixture
def primary() -> PrimaryKey:
    return PrimaryKey()


@pytest.fixture
def passkey() -> Passkey:
    return Passkey()


@pytest.fixture
def account(service, primary) -> str:
    """An account owned by ``OWNER`` with MFA off."""
    service.create_account(ACCOUNT_ID, owner=OWNER, primary_key=primary.coordinates)
    return ACCOUNT_ID


@pytest.fixture
def account_auth() -> Authorization:
    """The account calling itself, already authenticated by the host."""
    return Authorization(caller=ACCOUNT_ID)
