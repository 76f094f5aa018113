"""Dev accounts, address encoding and mock signatures."""

from __future__ import annotations

import pytest

from xcm_e2e.accounts import (
    KeyPair,
    decode_address,
    default_accounts,
    encode_address,
    fresh_accounts,
    to_public_key,
    verify_signature,
)
from xcm_e2e.errors import ErrorCode, HarnessError


def test_default_accounts_are_deterministic() -> None:
    a, b = default_accounts(), default_accounts()
    assert a == b
    assert a.alice.public_key == KeyPair("alice", "//alice").public_key
    assert len({p.public_key for p in a.all()}) == 6


def test_fresh_accounts_differ_from_dev() -> None:
    dev, fresh = default_accounts(), fresh_accounts()
    assert dev.alice.public_key != fresh.alice.public_key
    assert fresh.by_name("bob").name == "bob"
    with pytest.raises(KeyError):
        fresh.by_name("mallory")


def test_address_round_trip() -> None:
    alice = default_accounts().alice
    address = alice.address(2)
    assert decode_address(address) == (2, alice.public_key)
    assert to_public_key(address) == alice.public_key
    assert alice.address(0) != address


def test_address_checksum_detects_corruption() -> None:
    address = default_accounts().bob.address(42)
    corrupted = address[:-1] + ("0" if address[-1] != "0" else "1")
    with pytest.raises(HarnessError) as info:
        decode_address(corrupted)
    assert info.value.code == ErrorCode.INVALID_ADDRESS


def test_encode_rejects_bad_input() -> None:
    with pytest.raises(HarnessError):
        encode_address(b"\x00" * 31, 0)
    with pytest.raises(HarnessError):
        encode_address(b"\x00" * 32, 1 << 14)


def test_to_public_key_accepts_raw_and_hex() -> None:
    key = default_accounts().charlie.public_key
    assert to_public_key(key) == key
    assert to_public_key(key.hex()) == key
    with pytest.raises(HarnessError):
        to_public_key(b"short")


def test_signatures() -> None:
    dave = default_accounts().dave
    sig = dave.sign(b"payload")
    assert verify_signature(dave.public_key, b"payload", sig)
    assert not verify_signature(dave.public_key, b"other", sig)
    assert not verify_signature(default_accounts().eve.public_key, b"payload", sig)
