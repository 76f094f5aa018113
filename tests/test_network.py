"""Network orchestration: create_one, create_set, wiring and suite fixtures."""

from __future__ import annotations

import logging

import pytest

from xcm_e2e.chain import define_chain, extend
from xcm_e2e.config import HarnessConfig, UNIT
from xcm_e2e.errors import ErrorCode, HarnessError
from xcm_e2e.network import NetworkFixture, create_one, create_set, setup_networks, teardown_all
from xcm_e2e.types import ChainDescriptor, MessageKind, XcmMessage
from xcm_e2e.wiring import connect_horizontal, connect_vertical
from xcm_e2e.xcm import (
    Teleport,
    buy_execution,
    deposit_asset,
    initiate_teleport,
    parachain,
    receive_teleported_asset,
    sibling,
)


@pytest.mark.asyncio
async def test_create_one_applies_storage(relay: ChainDescriptor, accounts) -> None:
    client = await create_one(relay)
    try:
        assert client.storage_applied
        assert client.head == await client.get_head()
        account = await client.query("system.account", address=accounts.alice.public_key.hex())
        assert account["data"]["free"] > 0
    finally:
        await client.teardown()


@pytest.mark.asyncio
async def test_create_one_falls_back_to_next_endpoint() -> None:
    descriptor = define_chain("fallback", ["ftp://nowhere", "memory://fallback"], para_id=3000)
    client = await create_one(descriptor)
    try:
        assert client.endpoint == "memory://fallback"
    finally:
        await client.teardown()


@pytest.mark.asyncio
async def test_create_one_unreachable() -> None:
    descriptor = define_chain("nowhere", ["ftp://a", "gopher://b"], para_id=3000)
    with pytest.raises(HarnessError) as info:
        await create_one(descriptor)
    assert info.value.code == ErrorCode.BACKEND_UNREACHABLE
    assert "ftp://a" in info.value.message and "gopher://b" in info.value.message


@pytest.mark.asyncio
async def test_create_one_honours_block_number(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FORKED_BLOCK_NUMBER", "500")
    client = await create_one(define_chain("forked", "memory://forked", para_id=3000))
    try:
        assert client.head.number == 500
    finally:
        await client.teardown()


@pytest.mark.asyncio
async def test_create_set_rejects_bad_topologies(relay: ChainDescriptor, asset_hub: ChainDescriptor) -> None:
    cases = [
        ((), ErrorCode.INVALID_TOPOLOGY),
        ((relay, relay), ErrorCode.DUPLICATE_CHAIN),
        ((relay, extend(relay, {"name": "relay2"})), ErrorCode.INVALID_TOPOLOGY),
        ((asset_hub, extend(asset_hub, {"name": "twin"})), ErrorCode.INVALID_TOPOLOGY),
    ]
    for descriptors, code in cases:
        with pytest.raises(HarnessError) as info:
            await create_set(*descriptors)
        assert info.value.code == code


@pytest.mark.asyncio
async def test_create_set_cleans_up_on_failure(
    relay: ChainDescriptor, caplog: pytest.LogCaptureFixture
) -> None:
    broken = define_chain("broken", "ftp://broken", para_id=3000)
    with caplog.at_level(logging.INFO, logger="xcm_e2e.network"):
        with pytest.raises(HarnessError) as info:
            await create_set(relay, broken)
    assert info.value.code == ErrorCode.BACKEND_UNREACHABLE
    assert "Tore down relay" in caplog.text


@pytest.mark.asyncio
async def test_network_lookup(network) -> None:
    assert len(network) == 4
    assert network.relay is network["relay"]
    assert [c.name for c in network.parachains] == ["asset_hub", "para_a", "para_b"]
    assert network[1] is network["asset_hub"]
    with pytest.raises(KeyError):
        network["kusama"]
    assert all(p.relay is network.relay for p in network.parachains)


@pytest.mark.asyncio
async def test_downward_delivery(network, accounts) -> None:
    relay, asset_hub, para_a = network["relay"], network["asset_hub"], network["para_a"]
    dave = accounts.dave.public_key
    call = Teleport(parachain(1000), "UNIT", UNIT).to_call(relay.descriptor, dave)
    await relay.api.sign_and_submit(accounts.alice, call)
    await relay.produce_block()

    await asset_hub.produce_block()
    await para_a.produce_block()
    assert await asset_hub.api.free_balance(dave) == UNIT - asset_hub.descriptor.properties.execution_fee
    assert await para_a.api.free_balance(dave) == 0


@pytest.mark.asyncio
async def test_horizontal_delivery(network, accounts) -> None:
    para_a, para_b, asset_hub = network["para_a"], network["para_b"], network["asset_hub"]
    dave = accounts.dave.public_key
    fee = para_b.descriptor.properties.execution_fee
    # para_a receives a teleport and passes it straight on to its sibling.
    message = XcmMessage(
        MessageKind.DMP,
        None,
        2000,
        (
            receive_teleported_asset("UNIT", UNIT),
            initiate_teleport(sibling(2001), [buy_execution("UNIT"), deposit_asset(dave)]),
        ),
    )
    await para_a.push_inbound([message])
    await para_a.produce_block()
    (sent,) = await para_a.api.outbound()
    assert (sent.kind, sent.sender, sent.recipient) == (MessageKind.HRMP, 2000, 2001)

    await para_b.produce_block()
    await asset_hub.produce_block()
    assert await para_b.api.free_balance(dave) == UNIT - fee
    assert await asset_hub.api.free_balance(dave) == 0
    events = [(e.section, e.method) for e in await para_b.api.events()]
    assert events == [("xcmpQueue", "XcmpMessageReceived"), ("messageQueue", "Processed")]


@pytest.mark.asyncio
async def test_wiring_rejects_bad_edges(network) -> None:
    relay, asset_hub, para_a = network["relay"], network["asset_hub"], network["para_a"]
    with pytest.raises(HarnessError) as info:
        connect_vertical(asset_hub, para_a)
    assert info.value.code == ErrorCode.INVALID_TOPOLOGY
    with pytest.raises(HarnessError):
        connect_vertical(relay, relay)
    with pytest.raises(HarnessError):
        connect_horizontal([asset_hub, relay])
    with pytest.raises(HarnessError):
        connect_horizontal([para_a, para_a])


@pytest.mark.asyncio
async def test_scheduling_block_number(relay: ChainDescriptor) -> None:
    people = define_chain(
        "people",
        "memory://people",
        para_id=1004,
        properties={"scheduler_block_provider": "NonLocal"},
    )
    local = define_chain("local", "memory://local", para_id=1005)
    network = await create_set(extend(relay, {"block_number": 100}), people, local)
    try:
        assert await network["people"].scheduling_block_number() == 100
        assert await network["local"].scheduling_block_number() == 0
        await network["relay"].produce_block()
        assert await network["people"].scheduling_block_number() == 101
    finally:
        await network.teardown()


@pytest.mark.asyncio
async def test_teardown_is_idempotent(relay: ChainDescriptor) -> None:
    client = await create_one(relay)
    await client.teardown()
    await client.teardown()
    assert client.closed
    with pytest.raises(HarnessError) as info:
        await client.produce_block()
    assert info.value.code == ErrorCode.CLIENT_CLOSED


@pytest.mark.asyncio
async def test_teardown_failure_logged_with_traceback(
    relay: ChainDescriptor, caplog: pytest.LogCaptureFixture
) -> None:
    client = await create_one(relay)

    async def broken() -> None:
        raise RuntimeError("socket gone")

    client.engine.teardown = broken
    with caplog.at_level(logging.WARNING, logger="xcm_e2e.network"):
        await teardown_all([client])
    [record] = [r for r in caplog.records if r.getMessage().startswith("Teardown of relay failed")]
    assert record.levelno == logging.WARNING
    assert record.exc_info is not None and record.exc_info[0] is RuntimeError


@pytest.mark.asyncio
async def test_network_fixture_restores_between_tests(
    relay: ChainDescriptor, asset_hub: ChainDescriptor, accounts
) -> None:
    fixture = setup_networks(relay, asset_hub, config=HarnessConfig())
    assert isinstance(fixture, NetworkFixture)
    with pytest.raises(HarnessError):
        fixture["relay"]

    await fixture.before_all()
    try:
        start = fixture["relay"].head
        await fixture["relay"].produce_block()
        await fixture["relay"].produce_block()
        await fixture.before_each()
        assert fixture["relay"].head == start
    finally:
        await fixture.after_all()
    assert fixture.network is None


def test_network_fixture_describe(relay: ChainDescriptor) -> None:
    fixture = NetworkFixture((relay,), purge_inbound=False)
    node = fixture.describe("suite", [], skip=True)
    assert node.label == "suite"
    assert node.skip
    assert node.before_all == fixture.before_all
    assert node.before_each == fixture.before_each
    assert node.after_all == fixture.after_all
