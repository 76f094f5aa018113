"""Core types shared by the orchestrator, backends and scenario runners."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from .config import (
    DEFAULT_ADDRESS_ENCODING,
    DEFAULT_CHAIN_TIMEOUT_MS,
    DEFAULT_EXECUTION_FEE,
    DEFAULT_TX_FEE,
)

_EMPTY: Mapping[str, Any] = MappingProxyType({})


def _empty_mapping() -> Mapping[str, Any]:
    return MappingProxyType({})


class BlockProvider(Enum):
    LOCAL = "Local"
    NON_LOCAL = "NonLocal"


class ChainEd(Enum):
    LOW_ED = "LowEd"
    NORMAL = "Normal"


class AsyncBacking(Enum):
    ENABLED = "Enabled"
    DISABLED = "Disabled"


class MessageKind(Enum):
    """Direction a cross-chain message travels."""

    UMP = "ump"
    DMP = "dmp"
    HRMP = "hrmp"


@dataclass(frozen=True)
class BlockRef:
    number: int
    hash: str

    def to_json(self) -> dict[str, Any]:
        return {"number": self.number, "hash": self.hash}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "BlockRef":
        return cls(number=int(data["number"]), hash=str(data["hash"]))


@dataclass(frozen=True)
class Event:
    section: str
    method: str
    data: Mapping[str, Any] = field(default_factory=dict)
    tx: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        return {"section": self.section, "method": self.method, "data": dict(self.data), "tx": self.tx}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Event":
        return cls(
            section=data["section"],
            method=data["method"],
            data=dict(data.get("data") or {}),
            tx=data.get("tx"),
        )


@dataclass(frozen=True)
class XcmMessage:
    """One message sitting in an outbound or inbound queue.

    ``sender``/``recipient`` are sub-chain ids; ``None`` stands for the relay.
    """

    kind: MessageKind
    sender: Optional[int]
    recipient: Optional[int]
    program: tuple[Mapping[str, Any], ...]
    sent_at: int = 0

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["program"] = [dict(i) for i in self.program]
        return data

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "XcmMessage":
        return cls(
            kind=MessageKind(data["kind"]),
            sender=data.get("sender"),
            recipient=data.get("recipient"),
            program=tuple(dict(i) for i in data.get("program", [])),
            sent_at=int(data.get("sent_at", 0)),
        )


FeeExtractor = Callable[[list[Event], bytes], int]


def default_fee_extractor(events: list[Event], who: bytes) -> int:
    """Sum of ``transactionPayment.TransactionFeePaid`` paid by ``who``."""
    who_hex = who.hex()
    return sum(
        int(e.data.get("actual_fee", 0))
        for e in events
        if e.section == "transactionPayment" and e.method == "TransactionFeePaid" and e.data.get("who") == who_hex
    )


@dataclass(frozen=True)
class ChainProperties:
    """Chain properties tests rely on; available from every client of the chain."""

    address_encoding: int = DEFAULT_ADDRESS_ENCODING
    scheduler_block_provider: BlockProvider = BlockProvider.LOCAL
    proxy_block_provider: Optional[BlockProvider] = None
    chain_ed: ChainEd = ChainEd.NORMAL
    async_backing: Optional[AsyncBacking] = None
    fee_extractor: FeeExtractor = default_fee_extractor

    # Parameters of the in-memory backend
    native_asset: str = "UNIT"
    reserve_assets: tuple[str, ...] = ()
    tx_fee: int = DEFAULT_TX_FEE
    execution_fee: int = DEFAULT_EXECUTION_FEE

    def to_json(self) -> dict[str, Any]:
        """Plain JSON form; ``fee_extractor`` stays local."""
        return {
            "address_encoding": self.address_encoding,
            "scheduler_block_provider": self.scheduler_block_provider.value,
            "proxy_block_provider": self.proxy_block_provider.value if self.proxy_block_provider else None,
            "chain_ed": self.chain_ed.value,
            "async_backing": self.async_backing.value if self.async_backing else None,
            "native_asset": self.native_asset,
            "reserve_assets": list(self.reserve_assets),
            "tx_fee": self.tx_fee,
            "execution_fee": self.execution_fee,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "ChainProperties":
        proxy = data.get("proxy_block_provider")
        backing = data.get("async_backing")
        return cls(
            address_encoding=int(data.get("address_encoding", DEFAULT_ADDRESS_ENCODING)),
            scheduler_block_provider=BlockProvider(data.get("scheduler_block_provider", BlockProvider.LOCAL.value)),
            proxy_block_provider=BlockProvider(proxy) if proxy else None,
            chain_ed=ChainEd(data.get("chain_ed", ChainEd.NORMAL.value)),
            async_backing=AsyncBacking(backing) if backing else None,
            native_asset=data.get("native_asset") or "UNIT",
            reserve_assets=tuple(data.get("reserve_assets", ())),
            tx_fee=int(data.get("tx_fee", DEFAULT_TX_FEE)),
            execution_fee=int(data.get("execution_fee", DEFAULT_EXECUTION_FEE)),
        )


@dataclass(frozen=True)
class ChainDescriptor:
    """Immutable description of one chain under test.

    Exactly one of ``is_relay`` and ``para_id`` holds. Build with
    :func:`xcm_e2e.chain.define_chain`, derive with :func:`xcm_e2e.chain.extend`.
    """

    name: str
    endpoints: tuple[str, ...]
    is_relay: bool = False
    para_id: Optional[int] = None
    properties: ChainProperties = field(default_factory=ChainProperties)
    custom: Mapping[str, Any] = field(default_factory=_empty_mapping)
    init_storages: Mapping[str, Any] = field(default_factory=_empty_mapping)
    block_number: Optional[int] = None
    timeout_ms: int = DEFAULT_CHAIN_TIMEOUT_MS
    extras: Mapping[str, Any] = field(default_factory=_empty_mapping)

    @property
    def endpoint(self) -> str:
        return self.endpoints[0]

    def __getattr__(self, name: str) -> Any:
        extras = self.__dict__.get("extras", _EMPTY)
        if name in extras:
            return extras[name]
        raise AttributeError(f"{type(self).__name__!s} has no attribute {name!r}")
