"""In-process deterministic chain simulator (``memory://`` endpoints).

Every block keeps a full copy of storage, so rewinding the head is a pointer
move. Block hashes are content addressed: the same parent, storage, events and
outbound messages always hash the same.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from ..chain import thaw
from ..config import REMOVE_PREFIX
from ..digest import block_hash, compute_digest
from ..errors import ErrorCode, HarnessError
from ..types import BlockRef, ChainDescriptor, Event, XcmMessage
from ..xcm import Extrinsic, decode_extrinsic, tx_hash
from .base import SimulationEngine
from .executor import (
    ExecutionContext,
    Ledger,
    apply_extrinsic,
    empty_storage,
    process_inbound,
)

logger = logging.getLogger(__name__)

GENESIS_PARENT = "0x" + "00" * 32


@dataclass
class Block:
    number: int
    hash: str
    parent: str
    storage: dict[str, Any]
    events: list[Event] = field(default_factory=list)
    outbound: list[XcmMessage] = field(default_factory=list)

    @property
    def ref(self) -> BlockRef:
        return BlockRef(self.number, self.hash)


def apply_storage_patch(storage: dict[str, Any], patch: Mapping[str, Any]) -> None:
    """Merge ``patch`` into ``storage`` in place.

    A ``$removePrefix`` list inside a pallet clears the named items first.
    """
    for pallet, items in patch.items():
        target = storage.setdefault(pallet, {})
        if not isinstance(items, Mapping):
            storage[pallet] = thaw(items)
            continue
        for prefix in items.get(REMOVE_PREFIX, ()):
            if isinstance(target.get(prefix), dict):
                target[prefix] = {}
            else:
                target.pop(prefix, None)
        for key, value in items.items():
            if key == REMOVE_PREFIX:
                continue
            if isinstance(value, Mapping) and isinstance(target.get(key), dict):
                _deep_merge(target[key], value)
            else:
                target[key] = thaw(value)


def _deep_merge(target: dict[str, Any], patch: Mapping[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = thaw(value)


class MemoryEngine(SimulationEngine):
    """A chain simulated in process. Not thread safe; callers serialize."""

    def __init__(self, descriptor: ChainDescriptor, endpoint: str):
        super().__init__(descriptor, endpoint)
        self.blocks: dict[str, Block] = {}
        self.head: Optional[Block] = None
        self.pool: list[tuple[str, Extrinsic]] = []
        self.inbound: list[XcmMessage] = []
        self.closed = False

    def _require_open(self) -> Block:
        if self.closed:
            raise HarnessError(ErrorCode.CLIENT_CLOSED, f"{self.descriptor.name}: engine torn down")
        if self.head is None:
            raise HarnessError(ErrorCode.BACKEND_FAILURE, f"{self.descriptor.name}: engine not started")
        return self.head

    def _context(self, number: int) -> ExecutionContext:
        return ExecutionContext(
            para_id=self.descriptor.para_id,
            properties=self.descriptor.properties,
            block_number=number,
        )

    def _seal(self, number: int, parent: str, storage: dict[str, Any], events: list[Event],
              outbound: list[XcmMessage]) -> Block:
        digest = compute_digest(storage)
        hash_ = block_hash(
            parent,
            number,
            digest,
            [e.to_json() for e in events],
            [m.to_json() for m in outbound],
        )
        block = Block(number, hash_, parent, storage, events, outbound)
        self.blocks.setdefault(hash_, block)
        return self.blocks[hash_]

    async def start(self) -> None:
        if self.head is not None:
            return
        number = self.descriptor.block_number or 0
        self.head = self._seal(number, GENESIS_PARENT, empty_storage(), [], [])
        logger.debug(f"[{self.descriptor.name}] genesis #{number} {self.head.hash[:18]}")

    async def produce_block(self) -> BlockRef:
        head = self._require_open()
        number = head.number + 1
        storage = deepcopy(head.storage)
        ctx = self._context(number)

        inbound = process_inbound(storage, ctx, self.inbound)
        events = list(inbound.events)
        outbound = list(inbound.sent)

        for hash_, ext in self.pool:
            applied = apply_extrinsic(storage, ctx, ext, hash_)
            events.extend(applied.events)
            outbound.extend(applied.sent)

        self.inbound = []
        self.pool = []
        self.head = self._seal(number, head.hash, storage, events, outbound)
        logger.debug(
            f"[{self.descriptor.name}] #{number} {self.head.hash[:18]} "
            f"events={len(events)} outbound={len(outbound)}"
        )
        return self.head.ref

    async def override_storage(self, patch: Mapping[str, Any]) -> None:
        head = self._require_open()
        storage = deepcopy(head.storage)
        apply_storage_patch(storage, patch)
        if "TotalIssuance" not in patch.get("Balances", {}):
            Ledger(storage, self.descriptor.properties.native_asset).recompute_issuance()
        self.head = self._seal(head.number, head.parent, storage, list(head.events), list(head.outbound))

    async def set_head(self, ref: BlockRef) -> None:
        self._require_open()
        block = self.blocks.get(ref.hash)
        if block is None or block.number != ref.number:
            raise HarnessError(ErrorCode.UNKNOWN_BLOCK, f"{self.descriptor.name}: unknown block {ref}")
        self.head = block
        self.pool = []

    async def get_head(self) -> BlockRef:
        return self._require_open().ref

    async def submit(self, raw: bytes) -> str:
        head = self._require_open()
        ext = decode_extrinsic(raw)
        expected = Ledger(head.storage, "").nonce(ext.signer.hex()) + sum(
            1 for _, pending in self.pool if pending.signer == ext.signer
        )
        if ext.nonce != expected:
            raise HarnessError(
                ErrorCode.INVALID_TRANSACTION,
                f"stale or future nonce {ext.nonce}, expected {expected}",
            )
        hash_ = tx_hash(raw)
        self.pool.append((hash_, ext))
        return hash_

    def _block_at(self, at: Optional[str]) -> Block:
        head = self._require_open()
        if at is None:
            return head
        block = self.blocks.get(at)
        if block is None:
            raise HarnessError(ErrorCode.UNKNOWN_BLOCK, f"{self.descriptor.name}: unknown block {at}")
        return block

    async def query(self, method: str, **params: Any) -> Any:
        block = self._block_at(params.pop("at", None))
        ledger = Ledger(block.storage, self.descriptor.properties.native_asset)

        if method == "system.account":
            who = params["address"]
            acct = block.storage["System"]["Account"].get(who)
            free = int(acct["data"]["free"]) if acct else 0
            return {"nonce": ledger.nonce(who), "data": {"free": free, "reserved": 0, "frozen": 0}}
        if method == "system.nextIndex":
            who = params["address"]
            pending = sum(1 for _, ext in self.pool if ext.signer.hex() == who)
            return ledger.nonce(who) + pending
        if method == "assets.account":
            balance = ledger.balance(params["asset"], params["address"])
            return {"balance": balance} if balance else None
        if method == "balances.totalIssuance":
            return ledger.issuance(params.get("asset"))
        if method == "system.events":
            return [e.to_json() for e in block.events]
        if method == "xcm.outbound":
            return [m.to_json() for m in block.outbound]
        if method == "state.digest":
            return compute_digest(block.storage)
        if method == "chain.head":
            return block.ref.to_json()
        raise HarnessError(ErrorCode.UNKNOWN_QUERY, f"unknown query {method!r}")

    async def outbound_messages(self, ref: BlockRef) -> list[XcmMessage]:
        return list(self._block_at(ref.hash).outbound)

    async def push_inbound(self, messages: Iterable[XcmMessage]) -> None:
        self._require_open()
        self.inbound.extend(messages)

    async def clear_inbound(self) -> None:
        self.inbound = []

    async def teardown(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.blocks.clear()
        self.pool = []
        self.inbound = []
        logger.debug(f"[{self.descriptor.name}] memory engine torn down")
