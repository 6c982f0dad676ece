"""Tests for the length-discriminated signature codec."""

from __future__ import annotations

import hashlib

import pytest

from account_guard.domain.errors import MalformedSignatureError
from account_guard.domain.signature import DualSignature, SingleSignature, decode_signature
from account_guard.security.webauthn import decode_assertion
from signing import Passkey, PrimaryKey, dual_signature

DIGEST = hashlib.sha256(b"intent").digest()


def test_65_bytes_decode_as_single_signature():
    raw = PrimaryKey().sign(DIGEST)
    decoded = decode_signature(raw)
    assert isinstance(decoded, SingleSignature)
    assert decoded.primary == raw


@pytest.mark.parametrize("length", [0, 64, 66, 130, 223])
def test_unsupported_lengths_are_rejected(length):
    with pytest.raises(MalformedSignatureError):
        decode_signature(b"\x01" * length)


def test_dual_signature_splits_trailing_parts():
    primary, passkey = PrimaryKey(), Passkey()
    raw = dual_signature(DIGEST, primary, passkey)

    decoded = decode_signature(raw)

    assert isinstance(decoded, DualSignature)
    assert decoded.primary == raw[-65:]
    assert decoded.factor_id_hex == passkey.factor_id
    assert decoded.assertion == decode_assertion(raw[: -65 - 32])
    assert b'"type":"webauthn.get"' in decoded.assertion.client_data_json


def test_dual_signature_with_overrunning_authenticator_data_is_rejected():
    raw = bytearray(dual_signature(DIGEST, PrimaryKey(), Passkey()))
    raw[0:2] = (0xFFFF).to_bytes(2, "big")
    with pytest.raises(MalformedSignatureError):
        decode_signature(bytes(raw))
