"""Guardian-quorum account recovery.

A recovery request moves ``proposed -> threshold_met -> executed`` or to
``cancelled`` from any non-terminal state. Both terminal states absorb. When
the approval count first reaches the threshold the request becomes executable
after the guardian set's delay; executing is open to anyone from then on,
while cancelling needs the account's current credential, which gives the
rightful owner a window to object.
"""

from __future__ import annotations

import logging
from typing import Callable

from .errors import (
    AlreadyApprovedError,
    AlreadyCancelledError,
    AlreadyExecutedError,
    DelayTooShortError,
    DuplicateError,
    InvalidThresholdError,
    MalformedRecoveryError,
    NotFoundError,
    NotGuardianError,
    ThresholdNotMetError,
    TimelockNotElapsedError,
)
from ..schemas.credential import PublicKeyCoordinates
from ..schemas.recovery import GuardianState, RecoveryRequest

logger = logging.getLogger(__name__)


class GuardianRecovery:
    def __init__(self, *, default_delay_seconds: int, min_delay_seconds: int = 1) -> None:
        self._min_delay = max(min_delay_seconds, 1)
        if default_delay_seconds < self._min_delay:
            raise DelayTooShortError(
                f"recovery delay {default_delay_seconds}s is below the {self._min_delay}s floor"
            )
        self.default_delay_seconds = default_delay_seconds

    def new_state(self) -> GuardianState:
        return GuardianState(delay_seconds=self.default_delay_seconds)

    # Guardian set management (account authority checked by the caller)

    def add_guardian(self, state: GuardianState, guardian: str) -> None:
        if not guardian:
            raise NotGuardianError("guardian principal must not be empty")
        if guardian in state.guardians:
            raise DuplicateError("already a guardian")
        state.guardians.append(guardian)
        if state.threshold == 0:
            state.threshold = 1

    def remove_guardian(self, state: GuardianState, guardian: str) -> None:
        """Remove ``guardian`` by swapping the last entry into its slot.

        The threshold is never lowered implicitly: removal is rejected when it
        would leave fewer guardians than the configured threshold.
        """
        try:
            index = state.guardians.index(guardian)
        except ValueError:
            raise NotFoundError("not a guardian") from None
        if len(state.guardians) - 1 < state.threshold:
            raise InvalidThresholdError(
                "lower the threshold before removing this guardian"
            )
        last = state.guardians.pop()
        if last != guardian:
            state.guardians[index] = last

    def set_threshold(self, state: GuardianState, threshold: int) -> None:
        if threshold < 1 or threshold > len(state.guardians):
            raise InvalidThresholdError(
                f"threshold must be between 1 and {len(state.guardians)}"
            )
        state.threshold = threshold

    def set_delay(self, state: GuardianState, delay_seconds: int) -> None:
        if delay_seconds < self._min_delay:
            raise DelayTooShortError(
                f"recovery delay {delay_seconds}s is below the {self._min_delay}s floor"
            )
        state.delay_seconds = delay_seconds

    @staticmethod
    def is_guardian(state: GuardianState, principal: str) -> bool:
        return principal in state.guardians

    # Request lifecycle

    def initiate(
        self,
        state: GuardianState,
        caller: str,
        *,
        new_primary_key: PublicKeyCoordinates | None,
        new_owner: str | None,
        new_second_factor: PublicKeyCoordinates | None = None,
        now: int,
    ) -> RecoveryRequest:
        self._require_guardian(state, caller)
        if new_primary_key is not None and new_primary_key.is_zero():
            new_primary_key = None
        if new_second_factor is not None and new_second_factor.is_zero():
            new_second_factor = None
        if new_primary_key is None and new_second_factor is None and not new_owner:
            raise MalformedRecoveryError(
                "recovery needs a new primary key, a new second factor or a new owner"
            )

        nonce = state.next_nonce
        request = RecoveryRequest(
            nonce=nonce,
            new_primary_key=new_primary_key,
            new_owner=new_owner or None,
            new_second_factor=new_second_factor,
            approvals=[caller],
            approval_count=1,
            initiated_by=caller,
            created_at=now,
        )
        state.next_nonce = nonce + 1
        state.requests[nonce] = request
        self.check_threshold(state, request, now)
        return request

    def approve(self, state: GuardianState, caller: str, nonce: int, now: int) -> RecoveryRequest:
        self._require_guardian(state, caller)
        request = self._require_open(state, nonce)
        if caller in request.approvals:
            raise AlreadyApprovedError("guardian already approved this request")
        request.approvals.append(caller)
        request.approval_count += 1
        self.check_threshold(state, request, now)
        return request

    def check_threshold(self, state: GuardianState, request: RecoveryRequest, now: int) -> bool:
        """Start the delay the first time approvals reach the threshold.

        Returns ``True`` only on the call that flipped the request; later calls
        are no-ops, so ``execute_after`` is set at most once.
        """
        if request.threshold_met or request.approval_count < state.threshold:
            return False
        request.threshold_met = True
        request.execute_after = now + state.delay_seconds
        logger.info(
            "recovery %s reached threshold %s; executable after %s",
            request.nonce,
            state.threshold,
            request.execute_after,
        )
        return True

    def execute(
        self,
        state: GuardianState,
        nonce: int,
        now: int,
        apply: Callable[[RecoveryRequest], None],
    ) -> RecoveryRequest:
        request = self._require_open(state, nonce)
        if not request.threshold_met or request.execute_after is None:
            raise ThresholdNotMetError("recovery has not reached its threshold")
        if now < request.execute_after:
            raise TimelockNotElapsedError(
                f"recovery executable after {request.execute_after}, now {now}"
            )
        apply(request)
        request.executed = True
        return request

    def cancel(self, state: GuardianState, nonce: int) -> RecoveryRequest:
        request = self._require_open(state, nonce)
        request.cancelled = True
        return request

    def get_request(self, state: GuardianState, nonce: int) -> RecoveryRequest:
        request = state.requests.get(nonce)
        if request is None:
            raise NotFoundError("recovery request not found")
        return request

    def has_approved(self, state: GuardianState, nonce: int, guardian: str) -> bool:
        return guardian in self.get_request(state, nonce).approvals

    def _require_guardian(self, state: GuardianState, caller: str) -> None:
        if caller not in state.guardians:
            raise NotGuardianError("caller is not a guardian")

    def _require_open(self, state: GuardianState, nonce: int) -> RecoveryRequest:
        request = self.get_request(state, nonce)
        if request.executed:
            raise AlreadyExecutedError("recovery already executed")
        if request.cancelled:
            raise AlreadyCancelledError("recovery already cancelled")
        return request
