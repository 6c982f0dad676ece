"""Spending-limit hook: per-operation and per-UTC-day value caps."""

from __future__ import annotations

import logging
from typing import Any

from .clock import Clock
from .errors import HookRejectedError, PolicyError, StateError
from .session import ModuleStateView

logger = logging.getLogger(__name__)

SPENDING_LIMIT_REF = "spending-limit"
SECONDS_PER_DAY = 86_400


def _limit(config: dict[str, Any], key: str) -> int | None:
    raw = config.get(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise PolicyError(f"{key} must be an integer") from None
    if value < 0:
        raise PolicyError(f"{key} must not be negative")
    return value


class SpendingLimitHook:
    """Vetoes operations whose value breaks the configured limits.

    ``per_operation_limit`` caps a single operation and ``daily_limit`` caps
    the running total for the current UTC day. Either limit may be omitted.
    The pre-check records nothing; the day's spend is only credited by the
    post-check once the operation has actually been applied.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    def on_install(self, view: ModuleStateView, config: dict[str, Any]) -> None:
        view.set("per_operation_limit", _limit(config, "per_operation_limit"))
        view.set("daily_limit", _limit(config, "daily_limit"))
        view.set("day", None)
        view.set("spent", 0)

    def on_uninstall(self, view: ModuleStateView) -> None:
        view.clear()

    def pre_check(self, view: ModuleStateView, caller: str, value: int, data: bytes) -> bytes:
        if value < 0:
            raise HookRejectedError("operation value must not be negative")
        per_operation = view.get("per_operation_limit")
        if per_operation is not None and value > per_operation:
            raise HookRejectedError(f"value {value} exceeds the per-operation limit {per_operation}")

        day = self._clock.now() // SECONDS_PER_DAY
        daily = view.get("daily_limit")
        if daily is not None and self._spent_on(view, day) + value > daily:
            raise HookRejectedError(f"value {value} exceeds the remaining daily limit")
        return day.to_bytes(8, "big") + value.to_bytes(32, "big")

    def post_check(self, view: ModuleStateView, context: bytes) -> None:
        if len(context) != 40:
            raise StateError("malformed spending-limit context")
        day = int.from_bytes(context[:8], "big")
        value = int.from_bytes(context[8:], "big")
        view.set("spent", self._spent_on(view, day) + value)
        view.set("day", day)
        logger.debug("account %s spent %s on day %s", view.account_id, view.get("spent"), day)

    def spent_today(self, view: ModuleStateView) -> int:
        return self._spent_on(view, self._clock.now() // SECONDS_PER_DAY)

    @staticmethod
    def _spent_on(view: ModuleStateView, day: int) -> int:
        return int(view.get("spent", 0)) if view.get("day") == day else 0
