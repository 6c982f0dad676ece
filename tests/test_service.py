"""Service-level account bootstrap, MFA authorization and audit trail."""

from __future__ import annotations

import pytest

from account_guard.domain.errors import (
    AccountAuthorityRequiredError,
    DuplicateError,
    LastFactorError,
    MalformedSignatureError,
    NotFoundError,
    SecondFactorInactiveError,
)
from account_guard.domain.service import Authorization, intent_hash
from account_guard.schemas.timelock import RotatePrimaryKey
from signing import ACCOUNT_ID, OWNER, Passkey, PrimaryKey, dual_signature, sign_intent


def test_create_account_bootstraps_all_slices(service, store, primary):
    credentials = service.create_account(ACCOUNT_ID, owner=OWNER, primary_key=primary.coordinates)

    assert credentials.owner == OWNER
    assert credentials.nonce == 0
    assert store.namespaces(ACCOUNT_ID) == ["credentials", "recovery", "registry", "timelock"]
    with pytest.raises(DuplicateError):
        service.create_account(ACCOUNT_ID, owner=OWNER, primary_key=primary.coordinates)


def test_unknown_account_is_not_found(service, account_auth):
    with pytest.raises(NotFoundError):
        service.get_credentials("missing")
    with pytest.raises(NotFoundError):
        service.add_guardian("missing", "g1", account_auth)


def test_account_itself_may_act_without_signature(service, account):
    service.add_guardian(account, "g1", Authorization(caller=account))
    for principal in ("", OWNER, "stranger"):
        with pytest.raises(AccountAuthorityRequiredError):
            service.add_guardian(account, "g2", Authorization(caller=principal))


def test_intent_binds_account_nonce_and_params(service, account):
    digest, nonce = service.intent_for(account, "add_guardian", {"guardian": "g1"})
    assert nonce == 0
    assert digest == intent_hash(account, 0, "add_guardian", {"guardian": "g1"})
    assert digest != intent_hash(account, 0, "add_guardian", {"guardian": "g2"})
    assert digest != intent_hash("acct-2", 0, "add_guardian", {"guardian": "g1"})


def test_mfa_flow_through_the_service(service, account, primary, passkey):
    params = {"public_key": passkey.coordinates.model_dump(), "label": "laptop", "device_id": "dev-7"}
    signature = sign_intent(service, account, primary, "add_second_factor", params)
    factor = service.add_second_factor(
        account,
        passkey.coordinates,
        Authorization(caller="", signature=signature),
        label="laptop",
        device_id="dev-7",
    )
    assert factor.id == passkey.factor_id
    assert factor.device_id == "dev-7"
    assert service.get_credentials(account).active_factors()[0].device_id == "dev-7"

    service.enable_mfa(account, Authorization(caller="", signature=sign_intent(service, account, primary, "enable_mfa", {})))
    assert service.get_credentials(account).mfa_enabled

    single = sign_intent(service, account, primary, "add_guardian", {"guardian": "g1"})
    with pytest.raises(MalformedSignatureError):
        service.add_guardian(account, "g1", Authorization(caller="", signature=single))

    dual = sign_intent(service, account, primary, "add_guardian", {"guardian": "g1"}, passkey=passkey)
    service.add_guardian(account, "g1", Authorization(caller="", signature=dual))
    assert service.is_guardian(account, "g1")

    remove = sign_intent(service, account, primary, "remove_second_factor", {"factor_id": factor.id}, passkey=passkey)
    with pytest.raises(LastFactorError):
        service.remove_second_factor(account, factor.id, Authorization(caller="", signature=remove))


def test_dual_signature_with_unregistered_factor(service, account, primary, passkey, account_auth):
    service.add_second_factor(account, passkey.coordinates, account_auth)
    service.enable_mfa(account, account_auth)

    digest, _ = service.intent_for(account, "add_guardian", {"guardian": "g1"})
    forged = dual_signature(digest, primary, Passkey())
    with pytest.raises(SecondFactorInactiveError):
        service.add_guardian(account, "g1", Authorization(caller="", signature=forged))


def test_is_valid_signature_consumes_no_nonce(service, account, primary):
    digest = b"\x42" * 32
    assert service.is_valid_signature(account, digest, primary.sign(digest))
    assert not service.is_valid_signature(account, digest, b"\x00" * 10)
    assert service.get_credentials(account).nonce == 0


def test_operations_are_audited(service, account, account_auth):
    service.add_guardian(account, "g1", account_auth)
    service.set_threshold(account, 1, account_auth)

    events, cursor = service.list_audit_events(account, limit=2)
    assert [event.event_type for event in events] == ["guardian.threshold_set", "guardian.added"]
    assert events[1].actor == ACCOUNT_ID
    assert events[1].metadata == {"guardian": "g1"}

    older, _ = service.list_audit_events(account, cursor=cursor)
    assert [event.event_type for event in older] == ["account.created"]

    with pytest.raises(ValueError):
        service.list_audit_events(account, cursor="not-valid")


def test_owner_principal_cannot_bypass_mfa(service, primary, passkey):
    service.create_account(
        ACCOUNT_ID,
        owner=OWNER,
        primary_key=primary.coordinates,
        second_factor=passkey.coordinates,
        mfa_enabled=True,
    )
    unsigned = Authorization(caller=OWNER)

    with pytest.raises(AccountAuthorityRequiredError):
        service.propose_action(ACCOUNT_ID, RotatePrimaryKey(primary_key=PrimaryKey().coordinates), unsigned)
    with pytest.raises(AccountAuthorityRequiredError):
        service.disable_mfa(ACCOUNT_ID, unsigned)
    with pytest.raises(AccountAuthorityRequiredError):
        service.remove_second_factor(ACCOUNT_ID, passkey.factor_id, unsigned)

    credentials = service.get_credentials(ACCOUNT_ID)
    assert credentials.mfa_enabled
    assert credentials.nonce == 0
    assert service.list_pending(ACCOUNT_ID) == []

    primary_only = sign_intent(service, ACCOUNT_ID, primary, "disable_mfa", {})
    with pytest.raises(MalformedSignatureError):
        service.disable_mfa(ACCOUNT_ID, Authorization(caller=OWNER, signature=primary_only))
    dual = sign_intent(service, ACCOUNT_ID, primary, "disable_mfa", {}, passkey=passkey)
    service.disable_mfa(ACCOUNT_ID, Authorization(caller=OWNER, signature=dual))
    assert not service.get_credentials(ACCOUNT_ID).mfa_enabled
