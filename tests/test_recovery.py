"""Guardian recovery workflow scenarios and invariants."""

from __future__ import annotations

import pytest

from account_guard.domain.errors import (
    AlreadyApprovedError,
    AlreadyCancelledError,
    AlreadyExecutedError,
    DelayTooShortError,
    DuplicateError,
    InvalidThresholdError,
    MalformedRecoveryError,
    NotGuardianError,
    RateLimitedError,
    SecondFactorInactiveError,
    ThresholdNotMetError,
    TimelockNotElapsedError,
)
from account_guard.domain.recovery import GuardianRecovery
from account_guard.domain.service import AccountGuardService, Authorization
from account_guard.schemas.credential import PublicKeyCoordinates
from account_guard.schemas.recovery import RecoveryStatus
from account_guard.security.throttle import SlidingWindowThrottle
from signing import ACCOUNT_ID, DAY, OWNER, Passkey, PrimaryKey, sign_intent


@pytest.fixture
def quorum(service, account, account_auth):
    """Guardians {owner, g1, g2} with threshold 2."""
    for guardian in (OWNER, "g1", "g2"):
        service.add_guardian(account, guardian, account_auth)
    service.set_threshold(account, 2, account_auth)
    return account


def test_single_owner_recovery(service, account, account_auth, clock):
    service.add_guardian(account, OWNER, account_auth)
    assert service.get_guardians(account).threshold == 1

    new_key = PrimaryKey()
    started = clock.now()
    request = service.initiate_recovery(account, OWNER, new_primary_key=new_key.coordinates)

    assert request.nonce == 0
    assert request.approval_count == 1
    assert request.threshold_met
    assert request.execute_after == started + DAY

    clock.advance(DAY + 1)
    executed = service.execute_recovery(account, 0)

    assert executed.status is RecoveryStatus.executed
    assert service.get_credentials(account).primary_key == new_key.coordinates


def test_recovery_replaces_a_lost_passkey_on_an_mfa_account(service, primary, clock):
    lost, replacement = Passkey(), Passkey()
    service.create_account(
        ACCOUNT_ID,
        owner=OWNER,
        primary_key=primary.coordinates,
        second_factor=lost.coordinates,
        mfa_enabled=True,
    )
    service.add_guardian(ACCOUNT_ID, "g1", Authorization(caller=ACCOUNT_ID))

    request = service.initiate_recovery(ACCOUNT_ID, "g1", new_second_factor=replacement.coordinates)
    assert request.new_second_factor == replacement.coordinates
    clock.set(request.execute_after)
    service.execute_recovery(ACCOUNT_ID, request.nonce)

    credentials = service.get_credentials(ACCOUNT_ID)
    assert credentials.mfa_enabled
    assert [factor.id for factor in credentials.active_factors()] == [replacement.factor_id]

    params = {"guardian": "g2"}
    stale = sign_intent(service, ACCOUNT_ID, primary, "add_guardian", params, passkey=lost)
    with pytest.raises(SecondFactorInactiveError):
        service.add_guardian(ACCOUNT_ID, "g2", Authorization(caller="", signature=stale))
    signature = sign_intent(service, ACCOUNT_ID, primary, "add_guardian", params, passkey=replacement)
    service.add_guardian(ACCOUNT_ID, "g2", Authorization(caller="", signature=signature))
    assert service.is_guardian(ACCOUNT_ID, "g2")


def test_quorum_recovery(service, quorum, clock):
    request = service.initiate_recovery(quorum, "g1", new_owner="new-owner")
    assert request.approval_count == 1
    assert not request.threshold_met
    with pytest.raises(ThresholdNotMetError):
        service.execute_recovery(quorum, request.nonce)

    approved = service.approve_recovery(quorum, "g2", request.nonce)
    assert approved.approval_count == 2
    assert approved.threshold_met

    with pytest.raises(TimelockNotElapsedError):
        service.execute_recovery(quorum, request.nonce)

    clock.set(approved.execute_after)
    service.execute_recovery(quorum, request.nonce, caller="anyone")
    assert service.get_credentials(quorum).owner == "new-owner"


def test_execute_boundary(service, quorum, clock):
    request = service.initiate_recovery(quorum, "g1", new_owner="new-owner")
    request = service.approve_recovery(quorum, "g2", request.nonce)

    clock.set(request.execute_after - 1)
    with pytest.raises(TimelockNotElapsedError):
        service.execute_recovery(quorum, request.nonce)

    clock.set(request.execute_after)
    assert service.execute_recovery(quorum, request.nonce).executed


def test_cancellation_defeats_recovery(service, quorum, account_auth, clock):
    request = service.initiate_recovery(quorum, "g1", new_owner="mallory")
    request = service.approve_recovery(quorum, "g2", request.nonce)

    clock.set(request.execute_after - 10)
    cancelled = service.cancel_recovery(quorum, request.nonce, account_auth)
    assert cancelled.status is RecoveryStatus.cancelled

    clock.set(request.execute_after + DAY)
    with pytest.raises(AlreadyCancelledError):
        service.execute_recovery(quorum, request.nonce)

    final = service.get_recovery_request(quorum, request.nonce)
    assert final.cancelled and not final.executed
    assert service.get_credentials(quorum).owner == OWNER


def test_cancel_with_current_primary_signature(service, quorum, primary):
    request = service.initiate_recovery(quorum, "g1", new_owner="mallory")
    signature = sign_intent(service, quorum, primary, "cancel_recovery", {"nonce": request.nonce})

    service.cancel_recovery(quorum, request.nonce, Authorization(caller="", signature=signature))

    assert service.get_recovery_request(quorum, request.nonce).cancelled


def test_terminal_states_absorb(service, account, account_auth, clock):
    service.add_guardian(account, OWNER, account_auth)
    request = service.initiate_recovery(account, OWNER, new_owner="heir")
    clock.advance(DAY)
    service.execute_recovery(account, request.nonce)

    with pytest.raises(AlreadyExecutedError):
        service.cancel_recovery(account, request.nonce, account_auth)
    with pytest.raises(AlreadyExecutedError):
        service.execute_recovery(account, request.nonce)
    final = service.get_recovery_request(account, request.nonce)
    assert final.executed and not final.cancelled


def test_guardian_round_trip(service, account, account_auth):
    service.add_guardian(account, "g1", account_auth)
    service.add_guardian(account, "g2", account_auth)

    service.remove_guardian(account, "g2", account_auth)
    assert "g2" not in service.get_guardians(account).guardians
    assert not service.is_guardian(account, "g2")

    service.add_guardian(account, "g2", account_auth)
    assert service.is_guardian(account, "g2")
    with pytest.raises(DuplicateError):
        service.add_guardian(account, "g2", account_auth)


def test_threshold_bounds_hold(service, quorum, account_auth):
    with pytest.raises(InvalidThresholdError):
        service.set_threshold(quorum, 0, account_auth)
    with pytest.raises(InvalidThresholdError):
        service.set_threshold(quorum, 4, account_auth)

    service.set_threshold(quorum, 3, account_auth)
    with pytest.raises(InvalidThresholdError):
        service.remove_guardian(quorum, "g1", account_auth)

    service.set_threshold(quorum, 2, account_auth)
    service.remove_guardian(quorum, "g1", account_auth)
    state = service.get_guardians(quorum)
    assert 1 <= state.threshold <= len(state.guardians)
    assert sorted(state.guardians) == sorted([OWNER, "g2"])


def test_swap_removal_moves_last_guardian(service, account, account_auth):
    for guardian in ("a", "b", "c", "d"):
        service.add_guardian(account, guardian, account_auth)
    service.remove_guardian(account, "b", account_auth)
    assert service.get_guardians(account).guardians == ["a", "d", "c"]


def test_initiate_and_approve_preconditions(service, quorum):
    with pytest.raises(NotGuardianError):
        service.initiate_recovery(quorum, "stranger", new_owner="stranger")
    with pytest.raises(MalformedRecoveryError):
        service.initiate_recovery(quorum, "g1")
    with pytest.raises(MalformedRecoveryError):
        service.initiate_recovery(quorum, "g1", new_primary_key=PublicKeyCoordinates(x=0, y=0))
    with pytest.raises(MalformedRecoveryError):
        service.initiate_recovery(quorum, "g1", new_second_factor=PublicKeyCoordinates(x=0, y=0))

    request = service.initiate_recovery(quorum, "g1", new_owner="heir")
    with pytest.raises(AlreadyApprovedError):
        service.approve_recovery(quorum, "g1", request.nonce)
    with pytest.raises(NotGuardianError):
        service.approve_recovery(quorum, "stranger", request.nonce)
    assert service.has_approved(quorum, request.nonce, "g1")
    assert not service.has_approved(quorum, request.nonce, "g2")


def test_nonces_strictly_increase(service, quorum, account_auth):
    first = service.initiate_recovery(quorum, "g1", new_owner="a")
    service.cancel_recovery(quorum, first.nonce, account_auth)
    second = service.initiate_recovery(quorum, "g2", new_owner="b")
    assert (first.nonce, second.nonce) == (0, 1)
    assert service.get_recovery_request(quorum, 0).new_owner == "a"


def test_threshold_check_is_idempotent():
    recovery = GuardianRecovery(default_delay_seconds=DAY)
    state = recovery.new_state()
    recovery.add_guardian(state, "g1")
    recovery.add_guardian(state, "g2")
    recovery.set_threshold(state, 2)
    request = recovery.initiate(state, "g1", new_primary_key=None, new_owner="heir", now=100)
    request.approvals.append("g2")
    request.approval_count = 2

    assert recovery.check_threshold(state, request, now=200)
    assert request.execute_after == 200 + DAY
    assert not recovery.check_threshold(state, request, now=500)
    assert request.execute_after == 200 + DAY


def test_recovery_delay_is_configurable_above_floor(service, account, account_auth, clock):
    with pytest.raises(DelayTooShortError):
        service.set_recovery_delay(account, 60, account_auth)

    service.set_recovery_delay(account, 7200, account_auth)
    service.add_guardian(account, OWNER, account_auth)
    request = service.initiate_recovery(account, OWNER, new_owner="heir")
    assert request.execute_after == clock.now() + 7200


def test_guardian_calls_are_throttled(store, clock, settings, primary):
    throttled = AccountGuardService(
        store,
        clock=clock,
        settings=settings,
        throttle=SlidingWindowThrottle(max_requests=2, window_seconds=60),
    )
    throttled.create_account("acct-t", owner=OWNER, primary_key=primary.coordinates)
    throttled.add_guardian("acct-t", "g1", Authorization(caller="acct-t"))

    throttled.initiate_recovery("acct-t", "g1", new_owner="a")
    throttled.initiate_recovery("acct-t", "g1", new_owner="b")
    with pytest.raises(RateLimitedError):
        throttled.initiate_recovery("acct-t", "g1", new_owner="c")
