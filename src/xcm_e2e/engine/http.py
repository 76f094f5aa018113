"""HTTP client for an out-of-process simulation daemon.

The daemon serves one chain per base URL and answers JSON:

    POST /chain/start            {"name", "is_relay", "para_id", "block_number", "properties"}
    POST /block/produce          -> {"block": BlockRef}
    POST /state/override         {"patch"}
    POST /chain/head             {"block": BlockRef}
    GET  /chain/head             -> {"block": BlockRef}
    POST /tx/submit              {"raw_hex"} -> {"hash"}
    POST /query                  {"method", "params"} -> {"result"}
    GET  /xcm/outbound/<hash>    -> {"messages": [...]}
    POST /xcm/inbound            {"messages": [...]}
    DELETE /xcm/inbound
    POST /chain/stop

Every response carries ``success``; failures carry ``error`` and optionally
an ``ErrorCode`` name in ``code``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional

import aiohttp

from ..chain import thaw
from ..config import HTTP_REQUEST_TIMEOUT
from ..errors import ErrorCode, HarnessError
from ..types import BlockRef, ChainDescriptor, XcmMessage
from .base import SimulationEngine

logger = logging.getLogger(__name__)


class HttpEngine(SimulationEngine):
    """Simulation engine reached over HTTP."""

    def __init__(self, descriptor: ChainDescriptor, endpoint: str):
        super().__init__(descriptor, endpoint.rstrip("/"))
        self.session: Optional[aiohttp.ClientSession] = None

    async def _request(self, method: str, path: str, payload: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        if self.session is None:
            raise HarnessError(ErrorCode.CLIENT_CLOSED, f"{self.descriptor.name}: no open session")
        try:
            async with self.session.request(method, f"{self.endpoint}{path}", json=payload) as resp:
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"[{self.descriptor.name}] {method} {path} failed: {e}")
            raise HarnessError(ErrorCode.BACKEND_FAILURE, f"{self.descriptor.name}: {method} {path}: {e}") from e

        if not data.get("success", False):
            code = ErrorCode.__members__.get(data.get("code", ""), ErrorCode.BACKEND_FAILURE)
            raise HarnessError(code, f"{self.descriptor.name}: {data.get('error', 'unknown error')}")
        return data

    async def start(self) -> None:
        timeout = aiohttp.ClientTimeout(total=max(HTTP_REQUEST_TIMEOUT, self.descriptor.timeout_ms / 1000))
        self.session = aiohttp.ClientSession(timeout=timeout)
        try:
            await self._request(
                "POST",
                "/chain/start",
                {
                    "name": self.descriptor.name,
                    "is_relay": self.descriptor.is_relay,
                    "para_id": self.descriptor.para_id,
                    "block_number": self.descriptor.block_number,
                    "properties": self.descriptor.properties.to_json(),
                },
            )
        except HarnessError as e:
            await self._close_session()
            raise HarnessError(ErrorCode.BACKEND_UNREACHABLE, e.message) from e
        except BaseException:
            await self._close_session()
            raise
        logger.info(f"Connected to {self.descriptor.name} at {self.endpoint}")

    async def produce_block(self) -> BlockRef:
        data = await self._request("POST", "/block/produce")
        return BlockRef.from_json(data["block"])

    async def override_storage(self, patch: Mapping[str, Any]) -> None:
        await self._request("POST", "/state/override", {"patch": thaw(patch)})

    async def set_head(self, ref: BlockRef) -> None:
        await self._request("POST", "/chain/head", {"block": ref.to_json()})

    async def get_head(self) -> BlockRef:
        data = await self._request("GET", "/chain/head")
        return BlockRef.from_json(data["block"])

    async def submit(self, raw: bytes) -> str:
        data = await self._request("POST", "/tx/submit", {"raw_hex": raw.hex()})
        return data["hash"]

    async def query(self, method: str, **params: Any) -> Any:
        data = await self._request("POST", "/query", {"method": method, "params": params})
        return data.get("result")

    async def outbound_messages(self, ref: BlockRef) -> list[XcmMessage]:
        data = await self._request("GET", f"/xcm/outbound/{ref.hash}")
        return [XcmMessage.from_json(m) for m in data.get("messages", [])]

    async def push_inbound(self, messages: Iterable[XcmMessage]) -> None:
        await self._request("POST", "/xcm/inbound", {"messages": [m.to_json() for m in messages]})

    async def clear_inbound(self) -> None:
        await self._request("DELETE", "/xcm/inbound")

    async def teardown(self) -> None:
        if self.session is None:
            return
        try:
            await self._request("POST", "/chain/stop")
        finally:
            await self._close_session()

    async def _close_session(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None
