"""Head snapshots for test isolation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ErrorCode, HarnessError
from .types import BlockRef

if TYPE_CHECKING:
    from .network import Client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    client: "Client"
    head: BlockRef


class Restore:
    """Rewinds the captured clients to their recorded heads.

    Restoring also realigns each client's cached head and, with
    ``purge_inbound``, drops messages delivered to the captured clients but not
    yet processed. Calling it repeatedly leaves every client in the same state.
    """

    def __init__(self, snapshots: list[Snapshot], purge_inbound: bool = True):
        self.snapshots = snapshots
        self.purge_inbound = purge_inbound

    @property
    def clients(self) -> list["Client"]:
        return [s.client for s in self.snapshots]

    async def _restore_one(self, snapshot: Snapshot) -> None:
        client = snapshot.client
        await client.set_head(snapshot.head)
        if self.purge_inbound:
            await client.clear_inbound()
        await client.realign()

    async def __call__(self) -> None:
        await asyncio.gather(*(self._restore_one(s) for s in self.snapshots))
        logger.debug(f"Restored {', '.join(f'{s.client.name}#{s.head.number}' for s in self.snapshots)}")


async def capture(*clients: "Client", purge_inbound: bool = True) -> Restore:
    """Record the current head of every client."""
    if not clients:
        raise HarnessError(ErrorCode.INVALID_SNAPSHOT, "nothing to capture")
    for client in clients:
        if not client.storage_applied:
            raise HarnessError(
                ErrorCode.INVALID_SNAPSHOT,
                f"{client.name}: captured before its initial storage was applied",
            )
    heads = await asyncio.gather(*(c.get_head() for c in clients))
    return Restore([Snapshot(c, h) for c, h in zip(clients, heads)], purge_inbound=purge_inbound)
