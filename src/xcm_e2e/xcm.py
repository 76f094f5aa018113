"""XCM programs, calls, extrinsic encoding and transfer operations.

Instructions are plain dicts (``{"op": "WithdrawAsset", ...}``) so they cross
the HTTP backend unchanged. :class:`TransferOperation` variants compile the
common wire patterns (teleport, reserve transfer, raw execute) into programs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from blake3 import blake3

from .accounts import verify_signature
from .digest import canonical_json
from .errors import ErrorCode, HarnessError
from .types import ChainDescriptor

Instruction = dict[str, Any]


@dataclass(frozen=True)
class Location:
    """A chain location relative to the chain interpreting it."""

    parents: int = 0
    para_id: Optional[int] = None

    def resolve(self, here: Optional[int]) -> Optional[int]:
        """Absolute target: a sub-chain id, or ``None`` for the relay."""
        if here is None:
            if self.parents != 0 or self.para_id is None:
                raise HarnessError(ErrorCode.XCM_EXECUTION, f"unroutable location from relay: {self}")
            return self.para_id
        if self.parents == 1:
            return self.para_id
        if self.parents == 0 and self.para_id is None:
            return here
        raise HarnessError(ErrorCode.XCM_EXECUTION, f"unroutable location from {here}: {self}")

    @classmethod
    def towards(cls, target: Optional[int], here: Optional[int]) -> "Location":
        if here is None:
            if target is None:
                return cls(0, None)
            return cls(0, target)
        if target == here:
            return cls(0, None)
        return cls(1, target)

    def to_json(self) -> dict[str, Any]:
        return {"parents": self.parents, "para_id": self.para_id}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Location":
        return cls(parents=int(data.get("parents", 0)), para_id=data.get("para_id"))


def relaychain() -> Location:
    return Location(1, None)


def parachain(para_id: int) -> Location:
    return Location(0, para_id)


def sibling(para_id: int) -> Location:
    return Location(1, para_id)


# --- well-known accounts ---

TREASURY_ACCOUNT = blake3(b"modl/py/trsry").digest()
CHECKING_ACCOUNT = blake3(b"modl/py/xcmch").digest()


def sovereign_account(here: Optional[int], target: Optional[int]) -> bytes:
    """Account held on chain ``here`` on behalf of chain ``target``.

    ``None`` stands for the relay on either side.
    """
    if target is None:
        seed = b"parent"
    elif here is None:
        seed = b"para" + target.to_bytes(4, "little")
    else:
        seed = b"sibl" + target.to_bytes(4, "little")
    return blake3(seed).digest()


# --- instructions ---


def withdraw_asset(asset: str, amount: int) -> Instruction:
    return {"op": "WithdrawAsset", "asset": asset, "amount": int(amount)}


def receive_teleported_asset(asset: str, amount: int) -> Instruction:
    return {"op": "ReceiveTeleportedAsset", "asset": asset, "amount": int(amount)}


def reserve_asset_deposited(asset: str, amount: int) -> Instruction:
    return {"op": "ReserveAssetDeposited", "asset": asset, "amount": int(amount)}


def buy_execution(asset: Optional[str] = None) -> Instruction:
    return {"op": "BuyExecution", "asset": asset}


def deposit_asset(beneficiary: Optional[bytes]) -> Instruction:
    return {"op": "DepositAsset", "beneficiary": beneficiary.hex() if beneficiary else None}


def initiate_teleport(dest: Location, xcm: list[Instruction]) -> Instruction:
    return {"op": "InitiateTeleport", "dest": dest.to_json(), "xcm": xcm}


def deposit_reserve_asset(dest: Location, xcm: list[Instruction]) -> Instruction:
    return {"op": "DepositReserveAsset", "dest": dest.to_json(), "xcm": xcm}


def initiate_reserve_withdraw(reserve: Location, xcm: list[Instruction]) -> Instruction:
    return {"op": "InitiateReserveWithdraw", "reserve": reserve.to_json(), "xcm": xcm}


def fill_beneficiary(program: list[Instruction], beneficiary: bytes) -> list[Instruction]:
    """Copy of ``program`` with every unset ``DepositAsset`` beneficiary filled in."""
    out = []
    for instr in program:
        instr = dict(instr)
        if instr["op"] == "DepositAsset" and not instr.get("beneficiary"):
            instr["beneficiary"] = beneficiary.hex()
        if "xcm" in instr:
            instr["xcm"] = fill_beneficiary(instr["xcm"], beneficiary)
        out.append(instr)
    return out


# --- calls and extrinsics ---


@dataclass(frozen=True)
class Call:
    section: str
    method: str
    args: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {"section": self.section, "method": self.method, "args": dict(self.args)}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Call":
        return cls(section=data["section"], method=data["method"], args=dict(data.get("args") or {}))


def transfer_keep_alive(dest: bytes, value: int) -> Call:
    return Call("balances", "transferKeepAlive", {"dest": dest.hex(), "value": int(value)})


@dataclass(frozen=True)
class Extrinsic:
    signer: bytes
    nonce: int
    call: Call
    signature: bytes

    @staticmethod
    def signing_payload(call: Call, signer: bytes, nonce: int) -> bytes:
        return canonical_json({"call": call.to_json(), "signer": signer.hex(), "nonce": nonce})

    def encode(self) -> bytes:
        return canonical_json(
            {
                "call": self.call.to_json(),
                "signer": self.signer.hex(),
                "nonce": self.nonce,
                "signature": self.signature.hex(),
            }
        )

    @property
    def hash(self) -> str:
        return tx_hash(self.encode())

    def verify(self) -> bool:
        return verify_signature(self.signer, self.signing_payload(self.call, self.signer, self.nonce), self.signature)


def tx_hash(raw: bytes) -> str:
    return "0x" + blake3(raw).hexdigest()


def decode_extrinsic(raw: bytes) -> Extrinsic:
    """Decode and signature-check an encoded extrinsic."""
    try:
        data = json.loads(raw)
        ext = Extrinsic(
            signer=bytes.fromhex(data["signer"]),
            nonce=int(data["nonce"]),
            call=Call.from_json(data["call"]),
            signature=bytes.fromhex(data["signature"]),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise HarnessError(ErrorCode.INVALID_TRANSACTION, f"malformed extrinsic: {e}") from None
    if not ext.verify():
        raise HarnessError(ErrorCode.INVALID_SIGNATURE, "bad signature")
    return ext


# --- transfer operations ---


@dataclass(frozen=True)
class Teleport:
    """Burn (or check out) on the source, mint (or check in) on the destination."""

    dest: Location
    asset: str
    amount: int
    section: str = "polkadotXcm"

    def program(self, source: ChainDescriptor, beneficiary: bytes) -> list[Instruction]:
        return [
            withdraw_asset(self.asset, self.amount),
            initiate_teleport(self.dest, [buy_execution(self.asset), deposit_asset(beneficiary)]),
        ]

    def to_call(self, source: ChainDescriptor, beneficiary: bytes) -> Call:
        method = "transfer" if self.section == "xTokens" else "limitedTeleportAssets"
        return Call(self.section, method, {"message": self.program(source, beneficiary)})


@dataclass(frozen=True)
class ReserveTransfer:
    """Reserve-backed transfer.

    Without ``reserve`` the source chain is the reserve. With ``reserve`` the
    derivative is burnt locally and the reserve forwards the asset to
    ``dest``; both locations are relative to the source chain.
    """

    dest: Location
    asset: str
    amount: int
    reserve: Optional[Location] = None
    section: str = "polkadotXcm"

    def program(self, source: ChainDescriptor, beneficiary: bytes) -> list[Instruction]:
        here = source.para_id
        deposit = [buy_execution(self.asset), deposit_asset(beneficiary)]
        if self.reserve is None:
            return [withdraw_asset(self.asset, self.amount), deposit_reserve_asset(self.dest, deposit)]

        reserve_abs = self.reserve.resolve(here)
        dest_from_reserve = Location.towards(self.dest.resolve(here), reserve_abs)
        return [
            withdraw_asset(self.asset, self.amount),
            initiate_reserve_withdraw(
                self.reserve,
                [buy_execution(self.asset), deposit_reserve_asset(dest_from_reserve, deposit)],
            ),
        ]

    def to_call(self, source: ChainDescriptor, beneficiary: bytes) -> Call:
        method = "transfer" if self.section == "xTokens" else "limitedReserveTransferAssets"
        return Call(self.section, method, {"message": self.program(source, beneficiary)})


@dataclass(frozen=True)
class Execute:
    """A caller-supplied program; unset ``DepositAsset`` beneficiaries are filled in."""

    instructions: tuple[Mapping[str, Any], ...]
    section: str = "polkadotXcm"

    def program(self, source: ChainDescriptor, beneficiary: bytes) -> list[Instruction]:
        return fill_beneficiary([dict(i) for i in self.instructions], beneficiary)

    def to_call(self, source: ChainDescriptor, beneficiary: bytes) -> Call:
        return Call(self.section, "execute", {"message": self.program(source, beneficiary)})


TransferOperation = Union[Teleport, ReserveTransfer, Execute]
