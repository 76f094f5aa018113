"""Message-queue plumbing between clients.

After a client produces a block, its listeners read that block's outbound
messages and hand the ones addressed to a connected peer to that peer's
inbound buffer. The peer processes them when it produces its next block.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from .errors import ErrorCode, HarnessError
from .types import BlockRef, MessageKind

if TYPE_CHECKING:
    from .network import Client

logger = logging.getLogger(__name__)


def _forwarder(kind: MessageKind, peers: dict[Optional[int], "Client"]):
    async def forward(source: "Client", ref: BlockRef) -> None:
        messages = [m for m in await source.engine.outbound_messages(ref) if m.kind == kind]
        for recipient, peer in peers.items():
            batch = [m for m in messages if m.recipient == recipient]
            if batch:
                logger.debug(f"{source.name} #{ref.number} -> {peer.name}: {len(batch)} {kind.value} message(s)")
                await peer.push_inbound(batch)

    return forward


def connect_vertical(relay: "Client", para: "Client") -> None:
    """Deliver downward messages relay -> para and upward messages para -> relay."""
    if not relay.descriptor.is_relay:
        raise HarnessError(ErrorCode.INVALID_TOPOLOGY, f"{relay.name} is not a relay chain")
    if para.descriptor.is_relay:
        raise HarnessError(ErrorCode.INVALID_TOPOLOGY, f"{para.name} is a relay chain, not a sub-chain")

    relay.add_block_listener(_forwarder(MessageKind.DMP, {para.para_id: para}))
    para.add_block_listener(_forwarder(MessageKind.UMP, {None: relay}))
    para.relay = relay
    logger.info(f"Connected {relay.name} <-> {para.name} (vertical)")


def connect_horizontal(paras: Iterable["Client"]) -> None:
    """Open horizontal channels between every pair of sub-chains."""
    paras = list(paras)
    by_id: dict[Optional[int], "Client"] = {}
    for para in paras:
        if para.descriptor.is_relay:
            raise HarnessError(ErrorCode.INVALID_TOPOLOGY, f"{para.name} is a relay chain, not a sub-chain")
        if para.para_id in by_id:
            raise HarnessError(
                ErrorCode.INVALID_TOPOLOGY,
                f"{para.name} and {by_id[para.para_id].name} share sub-chain id {para.para_id}",
            )
        by_id[para.para_id] = para

    for para in paras:
        peers = {pid: peer for pid, peer in by_id.items() if peer is not para}
        if peers:
            para.add_block_listener(_forwarder(MessageKind.HRMP, peers))

    if len(paras) > 1:
        logger.info(f"Connected {', '.join(p.name for p in paras)} (horizontal)")
