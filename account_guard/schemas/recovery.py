"""Guardian set and recovery request records."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from .credential import PublicKeyCoordinates


class RecoveryStatus(str, Enum):
    proposed = "proposed"
    threshold_met = "threshold_met"
    executed = "executed"
    cancelled = "cancelled"


class RecoveryRequest(BaseModel):
    nonce: int
    new_primary_key: PublicKeyCoordinates | None = None
    new_owner: str | None = None
    new_second_factor: PublicKeyCoordinates | None = None
    approvals: list[str] = Field(default_factory=list)
    approval_count: int = 0
    threshold_met: bool = False
    execute_after: int | None = None
    executed: bool = False
    cancelled: bool = False
    initiated_by: str
    created_at: int

    @property
    def terminal(self) -> bool:
        return self.executed or self.cancelled

    @property
    def status(self) -> RecoveryStatus:
        if self.executed:
            return RecoveryStatus.executed
        if self.cancelled:
            return RecoveryStatus.cancelled
        if self.threshold_met:
            return RecoveryStatus.threshold_met
        return RecoveryStatus.proposed


class GuardianState(BaseModel):
    guardians: list[str] = Field(default_factory=list)
    threshold: int = 0
    delay_seconds: int
    next_nonce: int = 0
    requests: dict[int, RecoveryRequest] = Field(default_factory=dict)
