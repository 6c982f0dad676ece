"""Pending-action timelock: enumeration, boundaries and authorization."""

from __future__ import annotations

import pytest

from account_guard.domain.errors import (
    AccountAuthorityRequiredError,
    AlreadyCancelledError,
    AlreadyExecutedError,
    DelayTooShortError,
    InvalidPublicKeyError,
    InvalidSignatureError,
    TimelockNotElapsedError,
)
from account_guard.domain.service import Authorization
from account_guard.domain.timelock import PendingActionTimelock
from account_guard.schemas.credential import PublicKeyCoordinates
from account_guard.schemas.timelock import (
    AddSecondFactor,
    RotatePrimaryKey,
    TimelockState,
    TransferOwnership,
)
from signing import DAY, OWNER, Passkey, PrimaryKey, sign_intent


def test_pending_actions_enumeration(service, account, account_auth, clock):
    actions = [
        service.propose_action(account, TransferOwnership(owner=f"owner-{i}"), account_auth)
        for i in range(3)
    ]
    assert {action.id for action in service.list_pending(account)} == {a.id for a in actions}

    service.cancel_action(account, actions[1].id, account_auth)
    assert {action.id for action in service.list_pending(account)} == {actions[0].id, actions[2].id}

    clock.advance(2 * DAY)
    service.execute_action(account, actions[2].id)
    assert [action.id for action in service.list_pending(account)] == [actions[0].id]


def test_execute_respects_boundary_and_runs_once(service, account, account_auth, clock):
    new_key = PrimaryKey()
    action = service.propose_action(account, RotatePrimaryKey(primary_key=new_key.coordinates), account_auth)
    assert action.execute_after == clock.now() + 2 * DAY

    clock.set(action.execute_after - 1)
    with pytest.raises(TimelockNotElapsedError):
        service.execute_action(account, action.id)
    assert service.get_action(account, action.id).pending

    clock.set(action.execute_after)
    executed = service.execute_action(account, action.id, caller="keeper")
    assert executed.executed and not executed.cancelled
    assert service.get_credentials(account).primary_key == new_key.coordinates

    with pytest.raises(AlreadyExecutedError):
        service.execute_action(account, action.id)


def test_cancelled_action_never_executes(service, account, account_auth, clock):
    action = service.propose_action(account, TransferOwnership(owner="mallory"), account_auth)
    service.cancel_action(account, action.id, account_auth)

    clock.advance(3 * DAY)
    with pytest.raises(AlreadyCancelledError):
        service.execute_action(account, action.id)
    with pytest.raises(AlreadyCancelledError):
        service.cancel_action(account, action.id, account_auth)
    assert service.get_credentials(account).owner == OWNER


def test_propose_and_cancel_need_account_authority(service, account, account_auth):
    stranger = Authorization(caller="stranger")
    with pytest.raises(AccountAuthorityRequiredError):
        service.propose_action(account, TransferOwnership(owner="stranger"), stranger)

    action = service.propose_action(account, TransferOwnership(owner="heir"), account_auth)
    with pytest.raises(AccountAuthorityRequiredError):
        service.cancel_action(account, action.id, stranger)


def test_signed_proposal_consumes_nonce(service, account, primary):
    payload = TransferOwnership(owner="heir")
    params = payload.model_dump(mode="json")
    signature = sign_intent(service, account, primary, "propose_action", params)

    service.propose_action(account, payload, Authorization(caller="relayer", signature=signature))
    assert service.get_credentials(account).nonce == 1

    with pytest.raises(InvalidSignatureError):
        service.propose_action(account, payload, Authorization(caller="relayer", signature=signature))
    assert len(service.list_pending(account)) == 1


def test_identical_payloads_get_distinct_ids(service, account, account_auth):
    payload = TransferOwnership(owner="heir")
    first = service.propose_action(account, payload, account_auth)
    second = service.propose_action(account, payload, account_auth)
    assert first.id != second.id


def test_proposals_are_validated_up_front(service, account, account_auth):
    with pytest.raises(InvalidPublicKeyError):
        service.propose_action(
            account, RotatePrimaryKey(primary_key=PublicKeyCoordinates(x=1, y=1)), account_auth
        )
    assert service.list_pending(account) == []


def test_transfer_ownership_grants_no_unsigned_authority(service, account, account_auth, clock):
    action = service.propose_action(account, TransferOwnership(owner="heir"), account_auth)
    clock.advance(2 * DAY)
    service.execute_action(account, action.id)

    assert service.get_credentials(account).owner == "heir"
    for principal in (OWNER, "heir"):
        with pytest.raises(AccountAuthorityRequiredError):
            service.add_guardian(account, "g1", Authorization(caller=principal))
    service.add_guardian(account, "g1", account_auth)


def test_add_second_factor_through_timelock(service, account, account_auth, clock):
    passkey = Passkey()
    action = service.propose_action(
        account, AddSecondFactor(public_key=passkey.coordinates, label="backup"), account_auth
    )
    clock.advance(2 * DAY)
    service.execute_action(account, action.id)
    factors = service.get_credentials(account).active_factors()
    assert [factor.id for factor in factors] == [passkey.factor_id]


def test_failed_apply_leaves_action_pending():
    timelock = PendingActionTimelock(3600)
    state = TimelockState()
    action = timelock.propose(state, "acct", TransferOwnership(owner="heir"), now=0)

    def boom(payload):
        raise RuntimeError("sink down")

    with pytest.raises(RuntimeError):
        timelock.execute(state, action.id, 3600, boom)
    assert timelock.get(state, action.id).pending
    assert state.live == [action.id]


@pytest.mark.parametrize("delay, floor", [(0, 1), (60, 3600)])
def test_delay_floor_is_enforced(delay, floor):
    with pytest.raises(DelayTooShortError):
        PendingActionTimelock(delay, min_delay_seconds=floor)
