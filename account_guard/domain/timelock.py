"""Propose / cancel / execute-after-delay queue for sensitive mutations."""

from __future__ import annotations

import hashlib
import logging
from typing import Callable

from .errors import (
    AlreadyCancelledError,
    AlreadyExecutedError,
    DelayTooShortError,
    NotFoundError,
    TimelockNotElapsedError,
)
from ..schemas.timelock import PendingAction, PendingActionPayload, TimelockState

logger = logging.getLogger(__name__)


class PendingActionTimelock:
    """Two-phase commit for credential mutations.

    Proposing and cancelling require account authority (checked by the caller
    before these methods run); executing is open to anyone once
    ``execute_after`` has passed. The delay is fixed per timelock instance.
    """

    def __init__(self, delay_seconds: int, *, min_delay_seconds: int = 1) -> None:
        if delay_seconds < max(min_delay_seconds, 1):
            raise DelayTooShortError(
                f"timelock delay {delay_seconds}s is below the {min_delay_seconds}s floor"
            )
        self.delay_seconds = delay_seconds

    def propose(
        self,
        state: TimelockState,
        account_id: str,
        payload: PendingActionPayload,
        now: int,
    ) -> PendingAction:
        action_id = self._derive_id(account_id, state.proposals, payload)
        action = PendingAction(
            id=action_id,
            payload=payload,
            proposed_at=now,
            execute_after=now + self.delay_seconds,
        )
        state.proposals += 1
        state.actions[action_id] = action
        state.positions[action_id] = len(state.live)
        state.live.append(action_id)
        logger.info("pending action %s proposed for %s (%s)", action_id, account_id, payload.kind)
        return action

    def cancel(self, state: TimelockState, action_id: str) -> PendingAction:
        action = self._require_pending(state, action_id)
        action.cancelled = True
        self._unlink(state, action_id)
        return action

    def execute(
        self,
        state: TimelockState,
        action_id: str,
        now: int,
        apply: Callable[[PendingActionPayload], None],
    ) -> PendingAction:
        """Apply a due action exactly once.

        ``apply`` runs before the action is marked executed so a failing
        mutation leaves the action pending.
        """
        action = self._require_pending(state, action_id)
        if now < action.execute_after:
            raise TimelockNotElapsedError(
                f"action executable after {action.execute_after}, now {now}"
            )
        apply(action.payload)
        action.executed = True
        self._unlink(state, action_id)
        return action

    def get(self, state: TimelockState, action_id: str) -> PendingAction:
        action = state.actions.get(action_id)
        if action is None:
            raise NotFoundError("pending action not found")
        return action

    def pending(self, state: TimelockState) -> list[PendingAction]:
        """Return the live actions; order is not stable across removals."""
        return [state.actions[action_id] for action_id in state.live]

    def _require_pending(self, state: TimelockState, action_id: str) -> PendingAction:
        action = self.get(state, action_id)
        if action.executed:
            raise AlreadyExecutedError("pending action already executed")
        if action.cancelled:
            raise AlreadyCancelledError("pending action already cancelled")
        return action

    @staticmethod
    def _unlink(state: TimelockState, action_id: str) -> None:
        index = state.positions.pop(action_id)
        last = state.live.pop()
        if last != action_id:
            state.live[index] = last
            state.positions[last] = index

    @staticmethod
    def _derive_id(account_id: str, counter: int, payload: PendingActionPayload) -> str:
        digest = hashlib.sha256()
        digest.update(account_id.encode("utf-8"))
        digest.update(counter.to_bytes(32, "big"))
        digest.update(payload.model_dump_json().encode("utf-8"))
        return "0x" + digest.hexdigest()
