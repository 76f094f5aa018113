"""Simulation engine boundary.

A simulation engine runs one chain. The harness only ever drives it through
this interface; all calls against one engine are serialized by the owning
:class:`xcm_e2e.network.Client`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

from ..errors import ErrorCode, HarnessError
from ..types import BlockRef, ChainDescriptor, XcmMessage


class SimulationEngine(ABC):
    def __init__(self, descriptor: ChainDescriptor, endpoint: str):
        self.descriptor = descriptor
        self._endpoint = endpoint

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @abstractmethod
    async def start(self) -> None:
        """Bring the simulation up; raise ``BACKEND_UNREACHABLE`` on failure."""

    @abstractmethod
    async def produce_block(self) -> BlockRef:
        """Build one block from pending inbound messages and the pool."""

    @abstractmethod
    async def override_storage(self, patch: Mapping[str, Any]) -> None:
        pass

    @abstractmethod
    async def set_head(self, ref: BlockRef) -> None:
        pass

    @abstractmethod
    async def get_head(self) -> BlockRef:
        pass

    @abstractmethod
    async def submit(self, raw: bytes) -> str:
        """Put an encoded, signed extrinsic into the pool and return its hash."""

    @abstractmethod
    async def query(self, method: str, **params: Any) -> Any:
        pass

    @abstractmethod
    async def outbound_messages(self, ref: BlockRef) -> list[XcmMessage]:
        """Messages enqueued for other chains by block ``ref``."""

    @abstractmethod
    async def push_inbound(self, messages: Iterable[XcmMessage]) -> None:
        """Queue messages to be processed by the next produced block."""

    @abstractmethod
    async def clear_inbound(self) -> None:
        pass

    @abstractmethod
    async def teardown(self) -> None:
        pass


def open_engine(descriptor: ChainDescriptor, endpoint: str) -> SimulationEngine:
    """Instantiate (without starting) the backend serving ``endpoint``."""
    scheme = urlparse(endpoint).scheme
    if scheme == "memory":
        from .memory import MemoryEngine

        return MemoryEngine(descriptor, endpoint)
    if scheme in ("http", "https"):
        from .http import HttpEngine

        return HttpEngine(descriptor, endpoint)
    raise HarnessError(
        ErrorCode.BACKEND_UNREACHABLE,
        f"{descriptor.name}: no simulation backend for endpoint {endpoint!r}",
    )
