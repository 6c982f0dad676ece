"""WebAuthn assertion decoding and P-256 verification for second factors.

Assertions arrive in the compact layout produced by the wallet client::

    authDataLen(2) || authenticatorData || clientDataJSON
        || challengeIndex(2) || typeIndex(2) || r(32) || s(32)

The engine never performs the passkey ceremony itself; it only checks that an
assertion binds the expected challenge and was signed by a registered key.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from ..domain.errors import InvalidPublicKeyError, MalformedSignatureError
from ..schemas.credential import PublicKeyCoordinates

P256_N = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551
_P256_HALF_N = P256_N // 2

# rpIdHash(32) || flags(1) || signCount(4)
AUTHENTICATOR_DATA_MIN_LENGTH = 37

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_BACKUP_ELIGIBLE = 0x08
FLAG_BACKUP_STATE = 0x10

_HEADER_LENGTH = 2
_TRAILER_LENGTH = 2 + 2 + 32 + 32
_TYPE_GET = b'"type":"webauthn.get"'


@dataclass(frozen=True, slots=True)
class WebAuthnAssertion:
    """Decoded second-factor assertion."""

    authenticator_data: bytes
    client_data_json: bytes
    challenge_index: int
    type_index: int
    r: int
    s: int

    @property
    def flags(self) -> int:
        return self.authenticator_data[32]


def decode_assertion(blob: bytes) -> WebAuthnAssertion:
    """Split a compact assertion blob into its fields."""
    if len(blob) < _HEADER_LENGTH + AUTHENTICATOR_DATA_MIN_LENGTH + _TRAILER_LENGTH:
        raise MalformedSignatureError("assertion too short")
    auth_length = int.from_bytes(blob[:2], "big")
    if auth_length < AUTHENTICATOR_DATA_MIN_LENGTH:
        raise MalformedSignatureError("authenticator data too short")
    auth_end = _HEADER_LENGTH + auth_length
    trailer_start = len(blob) - _TRAILER_LENGTH
    if auth_end > trailer_start:
        raise MalformedSignatureError("authenticator data overruns assertion")
    trailer = blob[trailer_start:]
    return WebAuthnAssertion(
        authenticator_data=blob[_HEADER_LENGTH:auth_end],
        client_data_json=blob[auth_end:trailer_start],
        challenge_index=int.from_bytes(trailer[0:2], "big"),
        type_index=int.from_bytes(trailer[2:4], "big"),
        r=int.from_bytes(trailer[4:36], "big"),
        s=int.from_bytes(trailer[36:68], "big"),
    )


def encode_assertion(assertion: WebAuthnAssertion) -> bytes:
    """Inverse of :func:`decode_assertion`, used by clients building signatures."""
    return b"".join(
        [
            len(assertion.authenticator_data).to_bytes(2, "big"),
            assertion.authenticator_data,
            assertion.client_data_json,
            assertion.challenge_index.to_bytes(2, "big"),
            assertion.type_index.to_bytes(2, "big"),
            assertion.r.to_bytes(32, "big"),
            assertion.s.to_bytes(32, "big"),
        ]
    )


def encode_challenge(challenge: bytes) -> bytes:
    """Return the unpadded base64url form a browser writes into clientDataJSON."""
    return base64.urlsafe_b64encode(challenge).rstrip(b"=")


def assertion_message(assertion: WebAuthnAssertion) -> bytes:
    """Return the bytes the authenticator signed."""
    return assertion.authenticator_data + hashlib.sha256(assertion.client_data_json).digest()


def verify_assertion(
    challenge: bytes,
    require_user_presence: bool,
    assertion: WebAuthnAssertion,
    x: int,
    y: int,
    *,
    require_user_verification: bool = False,
) -> bool:
    """Return ``True`` when ``assertion`` binds ``challenge`` under key ``(x, y)``."""
    if not (0 < assertion.r < P256_N and 0 < assertion.s <= _P256_HALF_N):
        return False

    client_data = assertion.client_data_json
    if not client_data[assertion.type_index :].startswith(_TYPE_GET):
        return False
    expected = b'"challenge":"' + encode_challenge(challenge) + b'"'
    if not client_data[assertion.challenge_index :].startswith(expected):
        return False

    flags = assertion.flags
    if require_user_presence and not flags & FLAG_USER_PRESENT:
        return False
    if require_user_verification and not flags & FLAG_USER_VERIFIED:
        return False
    if flags & FLAG_BACKUP_STATE and not flags & FLAG_BACKUP_ELIGIBLE:
        return False

    try:
        public_key = ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
    except ValueError:
        return False
    try:
        public_key.verify(
            encode_dss_signature(assertion.r, assertion.s),
            assertion_message(assertion),
            ec.ECDSA(hashes.SHA256()),
        )
    except InvalidSignature:
        return False
    return True


def ensure_second_factor_key(coordinates: PublicKeyCoordinates) -> PublicKeyCoordinates:
    """Raise ``InvalidPublicKeyError`` unless the coordinates lie on P-256."""
    try:
        ec.EllipticCurvePublicNumbers(
            int(coordinates.x, 16), int(coordinates.y, 16), ec.SECP256R1()
        ).public_key()
    except ValueError as exc:
        raise InvalidPublicKeyError("second factor is not a valid P-256 point") from exc
    return coordinates
