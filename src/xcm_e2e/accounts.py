"""Deterministic test accounts.

Accounts are derived from string seeds: the public key is the BLAKE3 hash of
the seed, and signatures are BLAKE3 digests of ``public_key || payload``. The
in-memory backend accepts these mock signatures the same way dev nodes accept
mock signatures, so no real key material is ever involved.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from blake3 import blake3

from .errors import ErrorCode, HarnessError

KEY_SIZE = 32
CHECKSUM_SIZE = 2
PREFIX_SIZE = 2
MAX_ENCODING = (1 << 14) - 1


def _checksum(data: bytes) -> bytes:
    return blake3(b"xcm-e2e-addr" + data).digest()[:CHECKSUM_SIZE]


def encode_address(public_key: bytes, encoding: int) -> str:
    """Encode a 32-byte public key for a chain with the given address encoding."""
    if len(public_key) != KEY_SIZE:
        raise HarnessError(ErrorCode.INVALID_ADDRESS, f"public key must be {KEY_SIZE} bytes, got {len(public_key)}")
    if not 0 <= encoding <= MAX_ENCODING:
        raise HarnessError(ErrorCode.INVALID_ADDRESS, f"address encoding out of range: {encoding}")
    body = encoding.to_bytes(PREFIX_SIZE, "big") + public_key
    return (body + _checksum(body)).hex()


def decode_address(address: str) -> tuple[int, bytes]:
    """Return ``(encoding, public_key)`` for an encoded address."""
    try:
        raw = bytes.fromhex(address)
    except ValueError:
        raise HarnessError(ErrorCode.INVALID_ADDRESS, f"address is not hex: {address!r}") from None
    if len(raw) != PREFIX_SIZE + KEY_SIZE + CHECKSUM_SIZE:
        raise HarnessError(ErrorCode.INVALID_ADDRESS, f"address has wrong length: {len(raw)}")
    body, checksum = raw[:-CHECKSUM_SIZE], raw[-CHECKSUM_SIZE:]
    if _checksum(body) != checksum:
        raise HarnessError(ErrorCode.INVALID_ADDRESS, "address checksum mismatch")
    return int.from_bytes(body[:PREFIX_SIZE], "big"), body[PREFIX_SIZE:]


def to_public_key(address: "bytes | str") -> bytes:
    """Accept raw public keys, hex public keys or encoded addresses."""
    if isinstance(address, (bytes, bytearray)):
        if len(address) != KEY_SIZE:
            raise HarnessError(ErrorCode.INVALID_ADDRESS, f"public key must be {KEY_SIZE} bytes")
        return bytes(address)
    if len(address) == KEY_SIZE * 2:
        try:
            return bytes.fromhex(address)
        except ValueError:
            raise HarnessError(ErrorCode.INVALID_ADDRESS, f"invalid public key hex: {address!r}") from None
    return decode_address(address)[1]


def verify_signature(public_key: bytes, payload: bytes, signature: bytes) -> bool:
    return blake3(public_key + payload).digest() == signature


@dataclass(frozen=True)
class KeyPair:
    name: str
    seed: str
    public_key: bytes = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "public_key", blake3(self.seed.encode()).digest())

    def address(self, encoding: int) -> str:
        return encode_address(self.public_key, encoding)

    def sign(self, payload: bytes) -> bytes:
        return blake3(self.public_key + payload).digest()


@dataclass(frozen=True)
class TestAccounts:
    """The set of accounts a suite signs with and pays out to."""

    __test__ = False

    alice: KeyPair
    bob: KeyPair
    charlie: KeyPair
    dave: KeyPair
    eve: KeyPair
    ferdie: KeyPair

    def all(self) -> list[KeyPair]:
        return [self.alice, self.bob, self.charlie, self.dave, self.eve, self.ferdie]

    def by_name(self, name: str) -> KeyPair:
        for pair in self.all():
            if pair.name == name:
                return pair
        raise KeyError(name)


NAMES = ("alice", "bob", "charlie", "dave", "eve", "ferdie")


def _accounts_from(seed_prefix: str) -> TestAccounts:
    pairs = {name: KeyPair(name=name, seed=f"{seed_prefix}{name}") for name in NAMES}
    return TestAccounts(**pairs)


def default_accounts() -> TestAccounts:
    """Well-known dev accounts (``//alice`` ... ``//ferdie``)."""
    return _accounts_from("//")


def fresh_accounts(prefix: str = "fresh_") -> TestAccounts:
    """Accounts whose seeds differ from the dev ones.

    Useful against forked state where the dev accounts may already hold funds.
    """
    return _accounts_from(f"//{prefix}")
