"""Network orchestration: clients, chain sets and suite fixtures."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Iterator, Mapping, Optional, Union

from .chain import validate
from .config import HarnessConfig
from .engine.base import SimulationEngine, open_engine
from .errors import ErrorCode, HarnessError
from .types import BlockProvider, BlockRef, ChainDescriptor, XcmMessage
from .wiring import connect_horizontal, connect_vertical

if TYPE_CHECKING:
    from .api import ChainApi
    from .snapshot import Restore
    from .tree import DescribeNode, Node

logger = logging.getLogger(__name__)

BlockListener = Callable[["Client", BlockRef], Awaitable[None]]


class Client:
    """Live handle on one running chain.

    Block production, storage overrides, head changes and pool/inbound
    mutations go through a per-client lock, so a client never sees two of
    them at once. ``head`` is a cache: after moving the engine's head by other
    means, call :meth:`realign`.
    """

    def __init__(self, descriptor: ChainDescriptor, engine: SimulationEngine):
        self.descriptor = descriptor
        self.engine = engine
        self.head: Optional[BlockRef] = None
        self.relay: Optional[Client] = None
        self.storage_applied = False
        self.closed = False
        self._lock = asyncio.Lock()
        self._listeners: list[BlockListener] = []
        self._api: Optional[ChainApi] = None

    def __repr__(self) -> str:
        return f"Client({self.name!r}, endpoint={self.endpoint!r})"

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def para_id(self) -> Optional[int]:
        return self.descriptor.para_id

    @property
    def endpoint(self) -> str:
        return self.engine.endpoint

    @property
    def api(self) -> "ChainApi":
        if self._api is None:
            from .api import ChainApi

            self._api = ChainApi(self)
        return self._api

    def add_block_listener(self, listener: BlockListener) -> None:
        self._listeners.append(listener)

    def _check_open(self) -> None:
        if self.closed:
            raise HarnessError(ErrorCode.CLIENT_CLOSED, f"{self.name}: client torn down")

    async def produce_block(self) -> BlockRef:
        self._check_open()
        async with self._lock:
            ref = await self.engine.produce_block()
            self.head = ref
        logger.debug(f"[{self.name}] produced #{ref.number}")
        for listener in self._listeners:
            await listener(self, ref)
        return ref

    async def override_storage(self, patch: Mapping[str, Any]) -> None:
        self._check_open()
        async with self._lock:
            await self.engine.override_storage(patch)
            self.head = await self.engine.get_head()

    async def set_head(self, ref: BlockRef) -> None:
        self._check_open()
        async with self._lock:
            await self.engine.set_head(ref)
        logger.debug(f"[{self.name}] head set to #{ref.number}")

    async def get_head(self) -> BlockRef:
        self._check_open()
        return await self.engine.get_head()

    async def realign(self) -> BlockRef:
        """Refresh the cached head from the engine."""
        self.head = await self.get_head()
        return self.head

    async def submit(self, raw: bytes) -> str:
        self._check_open()
        async with self._lock:
            return await self.engine.submit(raw)

    async def query(self, method: str, **params: Any) -> Any:
        self._check_open()
        return await self.engine.query(method, **params)

    async def push_inbound(self, messages: Iterable[XcmMessage]) -> None:
        self._check_open()
        async with self._lock:
            await self.engine.push_inbound(messages)

    async def clear_inbound(self) -> None:
        self._check_open()
        async with self._lock:
            await self.engine.clear_inbound()

    async def scheduling_block_number(self) -> int:
        """Block number a scheduler on this chain compares against.

        Chains with a non-local scheduler block provider follow the relay
        head; all others follow their own.
        """
        provider = self.descriptor.properties.scheduler_block_provider
        if provider == BlockProvider.NON_LOCAL and self.relay is not None:
            return (self.relay.head or await self.relay.realign()).number
        return (self.head or await self.realign()).number

    async def teardown(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.engine.teardown()
        logger.info(f"Tore down {self.name}")


async def _start_engine(descriptor: ChainDescriptor) -> SimulationEngine:
    errors = []
    for endpoint in descriptor.endpoints:
        try:
            engine = open_engine(descriptor, endpoint)
            await asyncio.wait_for(engine.start(), descriptor.timeout_ms / 1000)
        except HarnessError as e:
            logger.warning(f"[{descriptor.name}] {endpoint} unavailable: {e.message}")
            errors.append(f"{endpoint}: {e.message}")
            continue
        except asyncio.TimeoutError:
            logger.warning(f"[{descriptor.name}] {endpoint} timed out")
            await engine.teardown()
            errors.append(f"{endpoint}: timed out after {descriptor.timeout_ms} ms")
            continue
        return engine
    raise HarnessError(
        ErrorCode.BACKEND_UNREACHABLE,
        f"{descriptor.name}: no endpoint could be started ({'; '.join(errors)})",
    )


async def create_one(descriptor: ChainDescriptor) -> Client:
    """Start a chain and apply its initial storage.

    Endpoints are tried in order; the first one that starts wins.
    """
    validate(descriptor)
    engine = await _start_engine(descriptor)
    client = Client(descriptor, engine)
    try:
        if descriptor.init_storages:
            await client.override_storage(descriptor.init_storages)
        await client.realign()
    except BaseException:
        await teardown_all([client])
        raise
    client.storage_applied = True
    logger.info(f"Created {descriptor.name} at {client.endpoint} (#{client.head.number})")
    return client


class NetworkSet:
    """Clients created together, in descriptor order, with fixed topology."""

    def __init__(self, clients: Iterable[Client]):
        self.clients = list(clients)

    def __iter__(self) -> Iterator[Client]:
        return iter(self.clients)

    def __len__(self) -> int:
        return len(self.clients)

    def __getitem__(self, key: Union[int, str]) -> Client:
        if isinstance(key, str):
            return self.by_name(key)
        return self.clients[key]

    @property
    def relay(self) -> Optional[Client]:
        for client in self.clients:
            if client.descriptor.is_relay:
                return client
        return None

    @property
    def parachains(self) -> list[Client]:
        return [c for c in self.clients if not c.descriptor.is_relay]

    def by_name(self, name: str) -> Client:
        for client in self.clients:
            if client.name == name:
                return client
        raise KeyError(name)

    async def teardown(self) -> None:
        await teardown_all(self.clients)


def _check_topology(descriptors: tuple[ChainDescriptor, ...]) -> None:
    if not descriptors:
        raise HarnessError(ErrorCode.INVALID_TOPOLOGY, "a network needs at least one chain")
    seen: set[str] = set()
    for d in descriptors:
        if d.name in seen:
            raise HarnessError(ErrorCode.DUPLICATE_CHAIN, f"chain {d.name!r} listed twice")
        seen.add(d.name)
    relays = [d.name for d in descriptors if d.is_relay]
    if len(relays) > 1:
        raise HarnessError(ErrorCode.INVALID_TOPOLOGY, f"more than one relay chain: {relays}")
    para_ids = [d.para_id for d in descriptors if not d.is_relay]
    if len(set(para_ids)) != len(para_ids):
        raise HarnessError(ErrorCode.INVALID_TOPOLOGY, f"duplicate sub-chain ids: {sorted(para_ids)}")


async def create_set(*descriptors: ChainDescriptor) -> NetworkSet:
    """Start every chain concurrently, then wire the topology.

    Sub-chains get a full horizontal mesh and, when a relay is present, a
    vertical edge to it. If anything fails, the chains already started are
    torn down before the error propagates.
    """
    for d in descriptors:
        validate(d)
    _check_topology(descriptors)

    results = await asyncio.gather(*(create_one(d) for d in descriptors), return_exceptions=True)
    clients = [r for r in results if isinstance(r, Client)]
    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        await teardown_all(clients)
        raise failures[0]

    network = NetworkSet(clients)
    try:
        connect_horizontal(network.parachains)
        if network.relay is not None:
            for para in network.parachains:
                connect_vertical(network.relay, para)
    except HarnessError:
        await teardown_all(clients)
        raise
    return network


async def teardown_all(clients: Iterable[Client]) -> None:
    """Tear down every client; failures are logged, never raised."""
    for client in clients:
        try:
            await client.teardown()
        except Exception as e:
            logger.warning(f"Teardown of {client.name} failed: {e}", exc_info=True)


@dataclass
class NetworkFixture:
    """Suite-scoped network: created once, restored before every test.

    ``describe`` wraps child nodes in a suite whose hooks drive the fixture,
    so the builder functions producing the children only need the fixture.
    """

    descriptors: tuple[ChainDescriptor, ...]
    purge_inbound: bool = True
    network: Optional[NetworkSet] = None
    restore: Optional["Restore"] = None

    def __getitem__(self, name: str) -> Client:
        if self.network is None:
            raise HarnessError(ErrorCode.INVALID_TOPOLOGY, "network used before the suite started")
        return self.network.by_name(name)

    async def before_all(self) -> None:
        from .snapshot import capture

        self.network = await create_set(*self.descriptors)
        self.restore = await capture(*self.network, purge_inbound=self.purge_inbound)

    async def before_each(self) -> None:
        if self.restore is not None:
            await self.restore()

    async def after_all(self) -> None:
        if self.network is not None:
            await self.network.teardown()
        self.network = None
        self.restore = None

    def describe(self, label: str, children: Iterable["Node"], **flags: Any) -> "DescribeNode":
        from .tree import DescribeNode

        return DescribeNode(
            label,
            tuple(children),
            before_all=self.before_all,
            after_all=self.after_all,
            before_each=self.before_each,
            **flags,
        )


def setup_networks(*descriptors: ChainDescriptor, config: Optional[HarnessConfig] = None) -> NetworkFixture:
    """Bundle ``create_set`` and ``capture`` as suite hooks."""
    config = config or HarnessConfig.from_env()
    return NetworkFixture(tuple(descriptors), purge_inbound=config.purge_inbound_on_restore)
