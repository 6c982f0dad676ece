"""Length-discriminated decoding of raw account signatures.

A raw signature is either a bare primary-key signature or a second-factor
assertion followed by the factor id and the primary signature::

    Single: primary(65)
    Dual:   assertion(>=127) || factor_id(32) || primary(65)

Anything else is rejected before any account state is read.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import MalformedSignatureError
from ..security.webauthn import WebAuthnAssertion, decode_assertion

PRIMARY_SIGNATURE_LENGTH = 65
FACTOR_ID_LENGTH = 32
DUAL_MIN_LENGTH = 224


@dataclass(frozen=True, slots=True)
class SingleSignature:
    primary: bytes


@dataclass(frozen=True, slots=True)
class DualSignature:
    assertion: WebAuthnAssertion
    factor_id: bytes
    primary: bytes

    @property
    def factor_id_hex(self) -> str:
        return "0x" + self.factor_id.hex()


def decode_signature(raw: bytes) -> SingleSignature | DualSignature:
    """Decode ``raw`` into its signature parts.

    Raises
    ------
    MalformedSignatureError
        When the length matches neither layout or the assertion blob is
        internally inconsistent.
    """
    length = len(raw)
    if length == PRIMARY_SIGNATURE_LENGTH:
        return SingleSignature(primary=bytes(raw))
    if length < DUAL_MIN_LENGTH:
        raise MalformedSignatureError(f"unsupported signature length {length}")

    primary_start = length - PRIMARY_SIGNATURE_LENGTH
    factor_start = primary_start - FACTOR_ID_LENGTH
    return DualSignature(
        assertion=decode_assertion(bytes(raw[:factor_start])),
        factor_id=bytes(raw[factor_start:primary_start]),
        primary=bytes(raw[primary_start:]),
    )


def encode_dual_signature(assertion_blob: bytes, factor_id: bytes, primary: bytes) -> bytes:
    """Concatenate the parts of a dual signature in wire order."""
    if len(factor_id) != FACTOR_ID_LENGTH or len(primary) != PRIMARY_SIGNATURE_LENGTH:
        raise MalformedSignatureError("invalid dual signature parts")
    return assertion_blob + factor_id + primary
