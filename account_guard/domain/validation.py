"""Signature validation against an account's credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import (
    EngineError,
    InvalidSignatureError,
    MalformedSignatureError,
    SecondFactorInactiveError,
)
from .signature import DualSignature, SingleSignature, decode_signature
from ..schemas.credential import CredentialState
from ..security.primary_keys import recover_primary_key
from ..security.webauthn import verify_assertion

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome of a validation: accepted, or rejected with a reason code."""

    accepted: bool
    reason: str | None = None

    @classmethod
    def accept(cls) -> "Verdict":
        return cls(accepted=True)

    @classmethod
    def reject(cls, error: type[EngineError]) -> "Verdict":
        return cls(accepted=False, reason=error.code)

    def raise_for_rejection(self) -> None:
        if self.accepted:
            return
        for error in (MalformedSignatureError, SecondFactorInactiveError):
            if self.reason == error.code:
                raise error()
        raise InvalidSignatureError()


class ValidationEngine:
    """Accept or reject a signature over an intent hash.

    Without MFA the raw signature must be a bare primary-key signature. With
    MFA it must carry a second-factor assertion *and* a primary signature, and
    both checks have to pass. The engine reads only the credential record it is
    given and has no side effects.
    """

    def __init__(self, *, require_user_presence: bool = True) -> None:
        self._require_user_presence = require_user_presence

    def validate(self, credentials: CredentialState, intent_hash: bytes, raw: bytes) -> Verdict:
        try:
            decoded = decode_signature(raw)
        except MalformedSignatureError:
            logger.debug("rejecting undecodable signature of %d bytes", len(raw))
            return Verdict.reject(MalformedSignatureError)

        if not credentials.mfa_enabled:
            if not isinstance(decoded, SingleSignature):
                return Verdict.reject(MalformedSignatureError)
            return self._check_primary(credentials, intent_hash, decoded.primary)

        if not isinstance(decoded, DualSignature):
            return Verdict.reject(MalformedSignatureError)

        factor = credentials.second_factors.get(decoded.factor_id_hex)
        if factor is None or not factor.active:
            return Verdict.reject(SecondFactorInactiveError)

        if not verify_assertion(
            intent_hash,
            self._require_user_presence,
            decoded.assertion,
            int(factor.x, 16),
            int(factor.y, 16),
        ):
            return Verdict.reject(InvalidSignatureError)

        return self._check_primary(credentials, intent_hash, decoded.primary)

    def is_valid(self, credentials: CredentialState, intent_hash: bytes, raw: bytes) -> bool:
        return self.validate(credentials, intent_hash, raw).accepted

    def _check_primary(self, credentials: CredentialState, intent_hash: bytes, signature: bytes) -> Verdict:
        signer = recover_primary_key(intent_hash, signature)
        if signer is None or signer != credentials.primary_key:
            return Verdict.reject(InvalidSignatureError)
        return Verdict.accept()
