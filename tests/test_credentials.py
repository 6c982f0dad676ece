"""Credential store invariants: content-addressed factors and the MFA guard."""

from __future__ import annotations

import pytest

from account_guard.domain.credentials import CredentialStore
from account_guard.domain.errors import (
    DuplicateError,
    InvalidPublicKeyError,
    LastFactorError,
    MfaFactorRequiredError,
    NotFoundError,
)
from account_guard.schemas.credential import PublicKeyCoordinates
from signing import Passkey, PrimaryKey

NOT_ON_CURVE = PublicKeyCoordinates(x=1, y=1)


@pytest.fixture
def credentials_store() -> CredentialStore:
    return CredentialStore()


@pytest.fixture
def state(credentials_store):
    return credentials_store.create(owner="owner", primary_key=PrimaryKey().coordinates, now=100)


def test_second_factor_id_is_content_addressed(credentials_store, state):
    passkey = Passkey()
    factor = credentials_store.add_second_factor(state, passkey.coordinates, label="laptop", now=101)

    assert factor.id == passkey.factor_id
    with pytest.raises(DuplicateError):
        credentials_store.add_second_factor(state, passkey.coordinates, label="again", now=102)

    credentials_store.remove_second_factor(state, factor.id)
    readded = credentials_store.add_second_factor(state, passkey.coordinates, label="phone", now=103)

    assert readded.id == factor.id
    assert readded.active
    assert readded.label == "phone"
    assert state.factor_ids == [factor.id]


def test_enabling_mfa_requires_an_active_factor(credentials_store, state):
    with pytest.raises(MfaFactorRequiredError):
        credentials_store.enable_mfa(state)
    assert not state.mfa_enabled

    credentials_store.add_second_factor(state, Passkey().coordinates, now=101)
    credentials_store.enable_mfa(state)
    assert state.mfa_enabled


def test_last_active_factor_cannot_be_removed_while_mfa_enabled(credentials_store, state):
    first, second = Passkey(), Passkey()
    credentials_store.add_second_factor(state, first.coordinates, now=101)
    credentials_store.add_second_factor(state, second.coordinates, now=102)
    credentials_store.enable_mfa(state)

    credentials_store.remove_second_factor(state, first.factor_id)
    with pytest.raises(LastFactorError):
        credentials_store.remove_second_factor(state, second.factor_id)

    assert [factor.id for factor in state.active_factors()] == [second.factor_id]
    assert state.mfa_enabled

    credentials_store.disable_mfa(state)
    credentials_store.remove_second_factor(state, second.factor_id)
    assert state.active_factors() == []


def test_removing_unknown_factor_is_not_found(credentials_store, state):
    with pytest.raises(NotFoundError):
        credentials_store.remove_second_factor(state, Passkey().factor_id)


def test_keys_must_lie_on_their_curves(credentials_store, state):
    with pytest.raises(InvalidPublicKeyError):
        credentials_store.create(owner="owner", primary_key=NOT_ON_CURVE, now=0)
    with pytest.raises(InvalidPublicKeyError):
        credentials_store.add_second_factor(state, NOT_ON_CURVE, now=101)
    with pytest.raises(InvalidPublicKeyError):
        credentials_store.set_primary_key(state, Passkey().coordinates)


def test_reset_leaves_only_the_new_factor_active(credentials_store, state):
    old_a, old_b, fresh = Passkey(), Passkey(), Passkey()
    credentials_store.add_second_factor(state, old_a.coordinates, device_id="phone", now=101)
    credentials_store.add_second_factor(state, old_b.coordinates, device_id="laptop", now=102)
    credentials_store.enable_mfa(state)

    factor = credentials_store.reset_second_factors(state, fresh.coordinates, label="recovery", now=200)

    assert [f.id for f in state.active_factors()] == [fresh.factor_id]
    assert factor.label == "recovery"
    assert state.mfa_enabled
    assert state.second_factors[old_a.factor_id].device_id == "phone"

    again = credentials_store.reset_second_factors(state, fresh.coordinates, now=300)
    assert again.added_at == 200
    with pytest.raises(InvalidPublicKeyError):
        credentials_store.reset_second_factors(state, NOT_ON_CURVE, now=300)
    assert [f.id for f in state.active_factors()] == [fresh.factor_id]
