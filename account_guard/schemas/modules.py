"""Module registry records."""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ModuleKind(IntEnum):
    validator = 1
    executor = 2
    fallback = 3
    hook = 4


class ModuleInstallation(BaseModel):
    kind: ModuleKind
    module_ref: str
    config: dict[str, Any] = Field(default_factory=dict)
    installed_at: int


class HookChainState(BaseModel):
    hooks: list[str] = Field(default_factory=list)
    manager: str | None = None


class RegistryState(BaseModel):
    installed: dict[str, ModuleInstallation] = Field(default_factory=dict)
    hook_chain: HookChainState | None = None

    @staticmethod
    def key(kind: ModuleKind, module_ref: str) -> str:
        return f"{int(kind)}:{module_ref}"

    def get(self, kind: ModuleKind, module_ref: str) -> ModuleInstallation | None:
        return self.installed.get(self.key(kind, module_ref))

    def refs(self, kind: ModuleKind) -> list[str]:
        return [item.module_ref for item in self.installed.values() if item.kind == kind]


class SessionKey(BaseModel):
    """Delegated, time-boxed and spend-capped access granted to a principal.

    Empty ``allowed_targets``/``allowed_selectors`` mean "any". Selectors are
    the first four bytes of an operation's data, as ``0x``-prefixed hex.
    """

    key: str = Field(..., min_length=1)
    valid_after: int = 0
    valid_until: int
    allowed_targets: list[str] = Field(default_factory=list)
    allowed_selectors: list[str] = Field(default_factory=list)
    spend_limit_per_tx: int | None = Field(default=None, ge=0)
    spend_limit_total: int | None = Field(default=None, ge=0)
    spent_total: int = 0
    nonce: int = 0
    active: bool = True

    @field_validator("allowed_selectors", mode="before")
    @classmethod
    def _normalize_selectors(cls, values: list[str]) -> list[str]:
        selectors = []
        for value in values or []:
            text = value.lower()
            if text.startswith("0x"):
                text = text[2:]
            if len(text) != 8:
                raise ValueError("selectors are exactly 4 bytes")
            bytes.fromhex(text)
            selectors.append("0x" + text)
        return selectors
