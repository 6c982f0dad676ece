"""secp256k1 primitives for the account's primary key."""

from __future__ import annotations

from coincurve import PublicKey

from ..domain.errors import InvalidPublicKeyError
from ..schemas.credential import PublicKeyCoordinates

SIGNATURE_LENGTH = 65

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_HALF_N = SECP256K1_N // 2


def recover_primary_key(digest: bytes, signature: bytes) -> PublicKeyCoordinates | None:
    """Recover the signer of ``digest`` from a 65-byte ``r || s || v`` signature.

    ``v`` may be given either as a raw recovery id (0/1) or with the
    conventional +27 offset. High-``s`` signatures are refused so a valid
    signature has exactly one encoding.

    Returns ``None`` when the signature is malformed or recovery fails.
    """
    if len(digest) != 32 or len(signature) != SIGNATURE_LENGTH:
        return None
    recovery_id = signature[64]
    if recovery_id >= 27:
        recovery_id -= 27
    if recovery_id not in (0, 1):
        return None
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    if not (0 < r < SECP256K1_N and 0 < s <= _HALF_N):
        return None
    try:
        public_key = PublicKey.from_signature_and_message(
            signature[:64] + bytes([recovery_id]), digest, hasher=None
        )
    except ValueError:
        return None
    point = public_key.format(compressed=False)
    return PublicKeyCoordinates(x=point[1:33], y=point[33:65])


def ensure_primary_key(coordinates: PublicKeyCoordinates) -> PublicKeyCoordinates:
    """Raise ``InvalidPublicKeyError`` unless the coordinates lie on secp256k1."""
    try:
        PublicKey(b"\x04" + coordinates.to_bytes())
    except ValueError as exc:
        raise InvalidPublicKeyError("primary key is not a valid secp256k1 point") from exc
    return coordinates
