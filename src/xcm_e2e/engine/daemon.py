"""Simulation daemon: serves an in-memory chain over the HTTP engine protocol.

One daemon process (or app) hosts one chain, started by ``POST /chain/start``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web

from ..chain import define_chain
from ..errors import ErrorCategory, ErrorCode, HarnessError
from ..types import BlockRef, ChainProperties, XcmMessage
from .memory import MemoryEngine

logger = logging.getLogger(__name__)


@dataclass
class ChainState:
    engine: Optional[MemoryEngine] = None


STATE_KEY = web.AppKey("state", ChainState)

Handler = Callable[[web.Request], Awaitable[web.Response]]


def _ok(**data: Any) -> web.Response:
    return web.json_response({"success": True, **data})


def _handler(fn: Callable[[web.Request], Awaitable[dict[str, Any]]]) -> Handler:
    async def handle(request: web.Request) -> web.Response:
        try:
            return _ok(**(await fn(request)))
        except HarnessError as e:
            level = logging.ERROR if e.code.category == ErrorCategory.BACKEND else logging.WARNING
            logger.log(level, f"{request.method} {request.path}: {e}")
            return web.json_response({"success": False, "error": e.message, "code": e.code.name})
        except (KeyError, ValueError) as e:
            return web.json_response(
                {"success": False, "error": f"bad request: {e}", "code": ErrorCode.BACKEND_FAILURE.name}
            )

    return handle


def _engine(request: web.Request) -> MemoryEngine:
    engine = request.app[STATE_KEY].engine
    if engine is None:
        raise HarnessError(ErrorCode.BACKEND_FAILURE, "chain not started")
    return engine


async def _start(request: web.Request) -> dict[str, Any]:
    body = await request.json()
    if request.app[STATE_KEY].engine is not None:
        raise HarnessError(ErrorCode.BACKEND_FAILURE, "chain already started")
    para_id = body.get("para_id")
    descriptor = define_chain(
        body["name"],
        f"memory://{body['name']}",
        is_relay=body.get("is_relay", para_id is None),
        para_id=para_id,
        properties=ChainProperties.from_json(body.get("properties") or {}),
        block_number=body.get("block_number"),
    )
    engine = MemoryEngine(descriptor, descriptor.endpoint)
    await engine.start()
    request.app[STATE_KEY].engine = engine
    logger.info(f"Started {descriptor.name}")
    return {}


async def _produce(request: web.Request) -> dict[str, Any]:
    ref = await _engine(request).produce_block()
    return {"block": ref.to_json()}


async def _override(request: web.Request) -> dict[str, Any]:
    body = await request.json()
    await _engine(request).override_storage(body["patch"])
    return {}


async def _set_head(request: web.Request) -> dict[str, Any]:
    body = await request.json()
    await _engine(request).set_head(BlockRef.from_json(body["block"]))
    return {}


async def _get_head(request: web.Request) -> dict[str, Any]:
    ref = await _engine(request).get_head()
    return {"block": ref.to_json()}


async def _submit(request: web.Request) -> dict[str, Any]:
    body = await request.json()
    return {"hash": await _engine(request).submit(bytes.fromhex(body["raw_hex"]))}


async def _query(request: web.Request) -> dict[str, Any]:
    body = await request.json()
    result = await _engine(request).query(body["method"], **(body.get("params") or {}))
    return {"result": result}


async def _outbound(request: web.Request) -> dict[str, Any]:
    engine = _engine(request)
    block = engine.blocks.get(request.match_info["hash"])
    if block is None:
        raise HarnessError(ErrorCode.UNKNOWN_BLOCK, f"unknown block {request.match_info['hash']}")
    messages = await engine.outbound_messages(block.ref)
    return {"messages": [m.to_json() for m in messages]}


async def _push_inbound(request: web.Request) -> dict[str, Any]:
    body = await request.json()
    await _engine(request).push_inbound(XcmMessage.from_json(m) for m in body["messages"])
    return {}


async def _clear_inbound(request: web.Request) -> dict[str, Any]:
    await _engine(request).clear_inbound()
    return {}


async def _stop(request: web.Request) -> dict[str, Any]:
    state = request.app[STATE_KEY]
    if state.engine is not None:
        await state.engine.teardown()
        state.engine = None
    return {}


def build_app() -> web.Application:
    app = web.Application()
    app[STATE_KEY] = ChainState()
    app.router.add_post("/chain/start", _handler(_start))
    app.router.add_post("/block/produce", _handler(_produce))
    app.router.add_post("/state/override", _handler(_override))
    app.router.add_post("/chain/head", _handler(_set_head))
    app.router.add_get("/chain/head", _handler(_get_head))
    app.router.add_post("/tx/submit", _handler(_submit))
    app.router.add_post("/query", _handler(_query))
    app.router.add_get("/xcm/outbound/{hash}", _handler(_outbound))
    app.router.add_post("/xcm/inbound", _handler(_push_inbound))
    app.router.add_delete("/xcm/inbound", _handler(_clear_inbound))
    app.router.add_post("/chain/stop", _handler(_stop))
    return app
