"""Credential records owned by the built-in credential validator."""

from __future__ import annotations

import hashlib

from pydantic import BaseModel, Field, field_validator


def normalize_word(value: str | bytes | int) -> str:
    """Return a 32-byte word as lowercase ``0x``-prefixed hex."""
    if isinstance(value, bytes):
        if len(value) != 32:
            raise ValueError("expected 32 bytes")
        return "0x" + value.hex()
    if isinstance(value, int):
        if value < 0 or value >= 1 << 256:
            raise ValueError("value out of range")
        return "0x" + value.to_bytes(32, "big").hex()
    text = value.lower()
    if text.startswith("0x"):
        text = text[2:]
    if len(text) > 64:
        raise ValueError("expected at most 32 bytes of hex")
    bytes.fromhex(text.rjust(64, "0"))
    return "0x" + text.rjust(64, "0")


class PublicKeyCoordinates(BaseModel):
    """Affine coordinates of an elliptic-curve public key."""

    x: str
    y: str

    @field_validator("x", "y", mode="before")
    @classmethod
    def _normalize(cls, value: str | bytes | int) -> str:
        return normalize_word(value)

    def to_bytes(self) -> bytes:
        return bytes.fromhex(self.x[2:]) + bytes.fromhex(self.y[2:])

    def is_zero(self) -> bool:
        return int(self.x, 16) == 0 and int(self.y, 16) == 0


def second_factor_id(coordinates: PublicKeyCoordinates) -> str:
    """Content-addressed identifier for a second-factor public key."""
    return "0x" + hashlib.sha256(coordinates.to_bytes()).hexdigest()


class SecondFactor(BaseModel):
    id: str
    x: str
    y: str
    label: str = ""
    device_id: str = ""
    active: bool = True
    added_at: int

    @property
    def coordinates(self) -> PublicKeyCoordinates:
        return PublicKeyCoordinates(x=self.x, y=self.y)


class CredentialState(BaseModel):
    owner: str
    primary_key: PublicKeyCoordinates
    second_factors: dict[str, SecondFactor] = Field(default_factory=dict)
    factor_ids: list[str] = Field(default_factory=list)
    mfa_enabled: bool = False
    nonce: int = 0
    created_at: int = 0

    def active_factors(self) -> list[SecondFactor]:
        return [self.second_factors[fid] for fid in self.factor_ids if self.second_factors[fid].active]
