"""Transaction and query handles over a client.

``ChainApi`` is what a client exposes as ``client.api``. The module-level
builders produce the callables scenario runners sequence:

* ``Tx``: ``(client, beneficiary) -> Call``
* ``GetBalance``: ``async (client, address) -> value``
* ``GetTotalIssuance``: ``async () -> int``
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from .accounts import KeyPair, to_public_key
from .types import BlockRef, Event, XcmMessage
from .xcm import (
    Call,
    Execute,
    Extrinsic,
    Location,
    ReserveTransfer,
    Teleport,
    TransferOperation,
    transfer_keep_alive,
)

if TYPE_CHECKING:
    from .network import Client

Address = Union[bytes, str]
Tx = Callable[["Client", bytes], Call]
GetBalance = Callable[["Client", Address], Awaitable[Any]]
GetTotalIssuance = Callable[[], Awaitable[int]]


class ChainApi:
    def __init__(self, client: "Client"):
        self.client = client

    @property
    def descriptor(self):
        return self.client.descriptor

    async def account(self, address: Address, at: Optional[BlockRef] = None) -> dict[str, Any]:
        """``{"nonce", "data": {"free", "reserved", "frozen"}}`` for a native account."""
        return await self.client.query("system.account", address=to_public_key(address).hex(), **_at(at))

    async def free_balance(self, address: Address) -> int:
        return int((await self.account(address))["data"]["free"])

    async def asset_account(self, asset: str, address: Address) -> Optional[dict[str, Any]]:
        if asset == self.descriptor.properties.native_asset:
            return {"balance": await self.free_balance(address)}
        return await self.client.query("assets.account", asset=asset, address=to_public_key(address).hex())

    async def total_issuance(self, asset: Optional[str] = None) -> int:
        return int(await self.client.query("balances.totalIssuance", asset=asset))

    async def next_nonce(self, address: Address) -> int:
        return int(await self.client.query("system.nextIndex", address=to_public_key(address).hex()))

    async def events(self, at: Optional[BlockRef] = None) -> list[Event]:
        """Events of the head block, or of ``at``."""
        return [Event.from_json(e) for e in await self.client.query("system.events", **_at(at))]

    async def outbound(self, at: Optional[BlockRef] = None) -> list[XcmMessage]:
        return [XcmMessage.from_json(m) for m in await self.client.query("xcm.outbound", **_at(at))]

    async def sign(self, signer: KeyPair, call: Call) -> bytes:
        nonce = await self.next_nonce(signer.public_key)
        payload = Extrinsic.signing_payload(call, signer.public_key, nonce)
        return Extrinsic(signer.public_key, nonce, call, signer.sign(payload)).encode()

    async def submit(self, raw: bytes) -> str:
        return await self.client.submit(raw)

    async def sign_and_submit(self, signer: KeyPair, call: Call) -> str:
        return await self.submit(await self.sign(signer, call))


def _at(at: Optional[BlockRef]) -> dict[str, Any]:
    return {"at": at.hash} if at is not None else {}


# --- transaction builders ---


def transfer(operation: TransferOperation) -> Tx:
    def build(client: "Client", beneficiary: bytes) -> Call:
        return operation.to_call(client.descriptor, beneficiary)

    return build


def teleport(dest: Location, asset: str, amount: int, section: str = "polkadotXcm") -> Tx:
    return transfer(Teleport(dest, asset, amount, section=section))


def reserve_transfer(
    dest: Location,
    asset: str,
    amount: int,
    reserve: Optional[Location] = None,
    section: str = "polkadotXcm",
) -> Tx:
    return transfer(ReserveTransfer(dest, asset, amount, reserve=reserve, section=section))


def execute(instructions, section: str = "polkadotXcm") -> Tx:
    return transfer(Execute(tuple(instructions), section=section))


def balances_transfer(value: int) -> Tx:
    def build(client: "Client", beneficiary: bytes) -> Call:
        return transfer_keep_alive(beneficiary, value)

    return build


# --- query builders ---


async def native_account(client: "Client", address: Address) -> dict[str, Any]:
    return await client.api.account(address)


def asset_balance(asset: str) -> GetBalance:
    async def get(client: "Client", address: Address) -> Optional[dict[str, Any]]:
        return await client.api.asset_account(asset, address)

    return get


def total_issuance(client: "Client", asset: Optional[str] = None) -> GetTotalIssuance:
    async def get() -> int:
        return await client.api.total_issuance(asset)

    return get
