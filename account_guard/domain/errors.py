"""Rejection taxonomy shared by every account guard component.

Every error is a local, synchronous rejection of one operation. None of them
is fatal to the process and none is retried internally. Each carries a stable
``code`` so transports can map it without parsing the message.
"""

from __future__ import annotations


class EngineError(ValueError):
    """Base class for all engine rejections."""

    code = "engine_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " "))


class AuthorizationError(EngineError):
    code = "unauthorized"


class StateError(EngineError):
    code = "invalid_state"


class PolicyError(EngineError):
    code = "policy_violation"


# Authorization errors


class NotGuardianError(AuthorizationError):
    code = "not_guardian"


class AccountAuthorityRequiredError(AuthorizationError):
    code = "account_authority_required"


class InvalidSignatureError(AuthorizationError):
    code = "invalid_signature"


class MalformedSignatureError(InvalidSignatureError):
    """Raised when a signature blob cannot be decoded into its parts."""

    code = "malformed_signature"


class SecondFactorInactiveError(AuthorizationError):
    code = "second_factor_inactive"


class MfaFactorRequiredError(AuthorizationError):
    code = "mfa_factor_required"


class NotHookManagerError(AuthorizationError):
    code = "not_hook_manager"


class NotSessionKeyError(AuthorizationError):
    code = "not_session_key"


# State errors


class NotFoundError(StateError):
    code = "not_found"


class AlreadyExecutedError(StateError):
    code = "already_executed"


class AlreadyCancelledError(StateError):
    code = "already_cancelled"


class AlreadyApprovedError(StateError):
    code = "already_approved"


class DuplicateError(StateError):
    code = "duplicate"


class ModuleNotInstalledError(NotFoundError):
    code = "module_not_installed"


class ModuleAlreadyInstalledError(DuplicateError):
    code = "module_already_installed"


# Policy errors


class InvalidThresholdError(PolicyError):
    code = "invalid_threshold"


class TimelockNotElapsedError(PolicyError):
    code = "timelock_not_elapsed"


class ThresholdNotMetError(PolicyError):
    code = "threshold_not_met"


class LastFactorError(PolicyError):
    code = "last_factor_while_mfa_enabled"


class MalformedRecoveryError(PolicyError):
    code = "malformed_recovery_params"


class InvalidPublicKeyError(PolicyError):
    code = "invalid_public_key"


class DelayTooShortError(PolicyError):
    code = "delay_too_short"


class HookRejectedError(PolicyError):
    """Raised by a hook's pre-check to veto an operation."""

    code = "hook_rejected"


class LastValidatorError(PolicyError):
    code = "last_validator"


class RateLimitedError(PolicyError):
    code = "rate_limited"


class SessionKeyRejectedError(PolicyError):
    """Raised when a session key is used outside its window or limits."""

    code = "session_key_rejected"
