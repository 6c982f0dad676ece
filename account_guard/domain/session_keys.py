"""Session-key executor: delegated operations under a window and spend caps."""

from __future__ import annotations

import logging
from typing import Any

from .clock import Clock
from .errors import DuplicateError, NotFoundError, NotSessionKeyError, PolicyError, SessionKeyRejectedError
from .modules import Operation
from .session import ModuleStateView
from ..schemas.modules import SessionKey

logger = logging.getLogger(__name__)

SESSION_KEY_REF = "session-key"
SELECTOR_LENGTH = 4


class SessionKeyExecutor:
    """Lets a session-key principal run operations on the account's behalf.

    Each key is usable from ``valid_after`` through ``valid_until`` inclusive,
    optionally restricted to a set of targets and call selectors, and capped
    per operation and in total. Every accepted use bumps the key's nonce and
    its running spend. Install config may seed keys under ``session_keys``.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    def on_install(self, view: ModuleStateView, config: dict[str, Any]) -> None:
        view.set("keys", {})
        for entry in config.get("session_keys", []):
            self.create(view, SessionKey.model_validate(entry))

    def on_uninstall(self, view: ModuleStateView) -> None:
        view.clear()

    def create(self, view: ModuleStateView, session_key: SessionKey) -> SessionKey:
        if session_key.valid_until <= session_key.valid_after:
            raise PolicyError("session key must end after it starts")
        if session_key.valid_until <= self._clock.now():
            raise PolicyError("session key would already be expired")
        existing = self.get(view, session_key.key)
        if existing is not None and existing.active:
            raise DuplicateError(f"session key {session_key.key!r} already active")

        record = session_key.model_copy(update={"spent_total": 0, "nonce": 0, "active": True})
        self._save(view, record)
        return record

    def revoke(self, view: ModuleStateView, key: str) -> SessionKey:
        record = self.get(view, key)
        if record is None or not record.active:
            raise NotFoundError(f"no active session key {key!r}")
        record.active = False
        self._save(view, record)
        return record

    def get(self, view: ModuleStateView, key: str) -> SessionKey | None:
        data = view.get("keys", {}).get(key)
        return SessionKey.model_validate(data) if data is not None else None

    def list_keys(self, view: ModuleStateView) -> list[SessionKey]:
        return [SessionKey.model_validate(data) for data in view.get("keys", {}).values()]

    def is_valid(self, view: ModuleStateView, key: str) -> bool:
        record = self.get(view, key)
        if record is None or not record.active:
            return False
        return record.valid_after <= self._clock.now() <= record.valid_until

    def check_execution(self, view: ModuleStateView, caller: str, operation: Operation) -> None:
        record = self.get(view, caller)
        if record is None or not record.active:
            raise NotSessionKeyError("caller holds no active session key")

        now = self._clock.now()
        if now < record.valid_after:
            raise SessionKeyRejectedError(f"session key not valid before {record.valid_after}")
        if now > record.valid_until:
            raise SessionKeyRejectedError(f"session key expired at {record.valid_until}")
        if record.allowed_targets and operation.target not in record.allowed_targets:
            raise SessionKeyRejectedError(f"target {operation.target!r} not allowed for this session key")
        if record.allowed_selectors:
            selector = operation.data[:SELECTOR_LENGTH]
            if len(selector) < SELECTOR_LENGTH or "0x" + selector.hex() not in record.allowed_selectors:
                raise SessionKeyRejectedError("call selector not allowed for this session key")
        if record.spend_limit_per_tx is not None and operation.value > record.spend_limit_per_tx:
            raise SessionKeyRejectedError(
                f"value {operation.value} exceeds the per-operation limit {record.spend_limit_per_tx}"
            )
        if record.spend_limit_total is not None and record.spent_total + operation.value > record.spend_limit_total:
            raise SessionKeyRejectedError("value exceeds the session key's remaining total")

        record.spent_total += operation.value
        record.nonce += 1
        self._save(view, record)
        logger.debug("session key %s used on %s (nonce %s)", caller, view.account_id, record.nonce)

    @staticmethod
    def _save(view: ModuleStateView, record: SessionKey) -> None:
        keys = dict(view.get("keys", {}))
        keys[record.key] = record.model_dump(mode="json")
        view.set("keys", keys)
