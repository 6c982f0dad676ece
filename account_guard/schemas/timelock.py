"""Pending-action records for delayed credential mutations."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from .credential import PublicKeyCoordinates


class RotatePrimaryKey(BaseModel):
    kind: Literal["rotate_primary_key"] = "rotate_primary_key"
    primary_key: PublicKeyCoordinates


class TransferOwnership(BaseModel):
    kind: Literal["transfer_ownership"] = "transfer_ownership"
    owner: str


class AddSecondFactor(BaseModel):
    kind: Literal["add_second_factor"] = "add_second_factor"
    public_key: PublicKeyCoordinates
    label: str = ""
    device_id: str = ""


PendingActionPayload = Annotated[
    Union[RotatePrimaryKey, TransferOwnership, AddSecondFactor],
    Field(discriminator="kind"),
]


class PendingAction(BaseModel):
    id: str
    payload: PendingActionPayload
    proposed_at: int
    execute_after: int
    cancelled: bool = False
    executed: bool = False

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.executed)


class TimelockState(BaseModel):
    actions: dict[str, PendingAction] = Field(default_factory=dict)
    live: list[str] = Field(default_factory=list)
    positions: dict[str, int] = Field(default_factory=dict)
    proposals: int = 0
