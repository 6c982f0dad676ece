"""Persisted state records, one per (account, namespace) slice."""

from .credential import CredentialState, PublicKeyCoordinates, SecondFactor, second_factor_id
from .modules import HookChainState, ModuleInstallation, ModuleKind, RegistryState, SessionKey
from .recovery import GuardianState, RecoveryRequest, RecoveryStatus
from .timelock import (
    AddSecondFactor,
    PendingAction,
    PendingActionPayload,
    RotatePrimaryKey,
    TimelockState,
    TransferOwnership,
)

__all__ = [
    "AddSecondFactor",
    "CredentialState",
    "GuardianState",
    "HookChainState",
    "ModuleInstallation",
    "ModuleKind",
    "PendingAction",
    "PendingActionPayload",
    "PublicKeyCoordinates",
    "RecoveryRequest",
    "RecoveryStatus",
    "RegistryState",
    "RotatePrimaryKey",
    "SecondFactor",
    "SessionKey",
    "TimelockState",
    "TransferOwnership",
    "second_factor_id",
]
