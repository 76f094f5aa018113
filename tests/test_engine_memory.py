"""In-memory simulation engine and XCM executor."""

from __future__ import annotations

from typing import Optional

import pytest

from xcm_e2e.accounts import KeyPair, default_accounts
from xcm_e2e.chain import define_chain
from xcm_e2e.config import DEFAULT_ENDOWMENT, DEFAULT_EXECUTION_FEE, DEFAULT_TX_FEE, UNIT
from xcm_e2e.engine.base import open_engine
from xcm_e2e.engine.memory import MemoryEngine
from xcm_e2e.errors import ErrorCode, HarnessError
from xcm_e2e.types import BlockRef, MessageKind, XcmMessage
from xcm_e2e.xcm import (
    CHECKING_ACCOUNT,
    TREASURY_ACCOUNT,
    Call,
    Extrinsic,
    Teleport,
    buy_execution,
    deposit_asset,
    parachain,
    receive_teleported_asset,
    transfer_keep_alive,
)

from conftest import account_patch

ACCOUNTS = default_accounts()
ALICE = ACCOUNTS.alice
BOB = ACCOUNTS.bob


def _relay(**kwargs) -> MemoryEngine:
    descriptor = define_chain("relay", "memory://relay", is_relay=True, **kwargs)
    return MemoryEngine(descriptor, descriptor.endpoint)


def _para(para_id: int = 1000) -> MemoryEngine:
    descriptor = define_chain(f"para{para_id}", f"memory://para{para_id}", para_id=para_id)
    return MemoryEngine(descriptor, descriptor.endpoint)


async def _funded(engine: MemoryEngine, *pairs: KeyPair, amount: int = DEFAULT_ENDOWMENT) -> MemoryEngine:
    await engine.start()
    await engine.override_storage(account_patch({p.public_key: amount for p in pairs}))
    return engine


async def _submit(engine: MemoryEngine, signer: KeyPair, call: Call, nonce: Optional[int] = None) -> str:
    if nonce is None:
        nonce = await engine.query("system.nextIndex", address=signer.public_key.hex())
    payload = Extrinsic.signing_payload(call, signer.public_key, nonce)
    return await engine.submit(Extrinsic(signer.public_key, nonce, call, signer.sign(payload)).encode())


async def _free(engine: MemoryEngine, who: bytes) -> int:
    return (await engine.query("system.account", address=who.hex()))["data"]["free"]


def _events(engine: MemoryEngine) -> list[tuple[str, str]]:
    return [(e.section, e.method) for e in engine.head.events]


def test_open_engine_by_scheme() -> None:
    descriptor = define_chain("relay", "memory://relay", is_relay=True)
    assert isinstance(open_engine(descriptor, "memory://relay"), MemoryEngine)
    with pytest.raises(HarnessError) as info:
        open_engine(descriptor, "ws://127.0.0.1:8000")
    assert info.value.code == ErrorCode.BACKEND_UNREACHABLE


@pytest.mark.asyncio
async def test_genesis_is_deterministic() -> None:
    a, b = _relay(block_number=100), _relay(block_number=100)
    await a.start()
    await b.start()
    assert await a.get_head() == await b.get_head()
    assert (await a.get_head()).number == 100


@pytest.mark.asyncio
async def test_override_storage_replaces_head() -> None:
    engine = _relay()
    await engine.start()
    genesis = await engine.get_head()

    await engine.override_storage(account_patch({ALICE.public_key: 5 * UNIT}))
    patched = await engine.get_head()
    assert patched.number == genesis.number
    assert patched.hash != genesis.hash
    assert await _free(engine, ALICE.public_key) == 5 * UNIT
    assert await engine.query("balances.totalIssuance") == 5 * UNIT

    await engine.set_head(genesis)
    assert await _free(engine, ALICE.public_key) == 0
    assert await engine.query("balances.totalIssuance") == 0


@pytest.mark.asyncio
async def test_override_storage_remove_prefix() -> None:
    engine = await _funded(_relay(), ALICE, BOB)
    await engine.override_storage({"System": {"$removePrefix": ["Account"]}})
    assert await _free(engine, ALICE.public_key) == 0
    assert await engine.query("balances.totalIssuance") == 0


@pytest.mark.asyncio
async def test_explicit_total_issuance_kept() -> None:
    engine = await _funded(_relay(), ALICE)
    await engine.override_storage({"Balances": {"TotalIssuance": 42}})
    assert await engine.query("balances.totalIssuance") == 42


@pytest.mark.asyncio
async def test_balance_transfer() -> None:
    engine = await _funded(_relay(), ALICE)
    issuance = await engine.query("balances.totalIssuance")

    tx = await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, UNIT))
    ref = await engine.produce_block()

    assert ref.number == 1
    assert await _free(engine, ALICE.public_key) == DEFAULT_ENDOWMENT - UNIT - DEFAULT_TX_FEE
    assert await _free(engine, BOB.public_key) == UNIT
    assert await _free(engine, TREASURY_ACCOUNT) == DEFAULT_TX_FEE
    assert await engine.query("balances.totalIssuance") == issuance
    assert await engine.query("system.nextIndex", address=ALICE.public_key.hex()) == 1
    assert _events(engine) == [
        ("balances", "Withdraw"),
        ("transactionPayment", "TransactionFeePaid"),
        ("balances", "Transfer"),
        ("system", "ExtrinsicSuccess"),
    ]
    assert all(e.tx == tx for e in engine.head.events)


@pytest.mark.asyncio
async def test_nonce_checked_on_submit() -> None:
    engine = await _funded(_relay(), ALICE)
    await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 1))
    with pytest.raises(HarnessError) as info:
        await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 1), nonce=0)
    assert info.value.code == ErrorCode.INVALID_TRANSACTION
    await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 1), nonce=1)


@pytest.mark.asyncio
async def test_bad_signature_rejected() -> None:
    engine = await _funded(_relay(), ALICE)
    call = transfer_keep_alive(BOB.public_key, 1)
    forged = Extrinsic(ALICE.public_key, 0, call, BOB.sign(Extrinsic.signing_payload(call, ALICE.public_key, 0)))
    with pytest.raises(HarnessError) as info:
        await engine.submit(forged.encode())
    assert info.value.code == ErrorCode.INVALID_SIGNATURE

    with pytest.raises(HarnessError) as info:
        await engine.submit(b"not json")
    assert info.value.code == ErrorCode.INVALID_TRANSACTION


@pytest.mark.asyncio
async def test_unpayable_fee() -> None:
    engine = await _funded(_relay(), ALICE, amount=DEFAULT_TX_FEE - 1)
    await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 1))
    await engine.produce_block()
    assert _events(engine) == [("system", "ExtrinsicFailed")]
    assert engine.head.events[0].data["error"] == "InabilityToPayFees"
    assert await _free(engine, ALICE.public_key) == DEFAULT_TX_FEE - 1


@pytest.mark.asyncio
async def test_failed_dispatch_keeps_fee() -> None:
    engine = await _funded(_relay(), ALICE, amount=UNIT)
    await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 2 * UNIT))
    await engine.produce_block()
    failed = engine.head.events[-1]
    assert (failed.section, failed.method) == ("system", "ExtrinsicFailed")
    assert failed.data["code"] == "INSUFFICIENT_BALANCE"
    assert await _free(engine, ALICE.public_key) == UNIT - DEFAULT_TX_FEE
    assert await _free(engine, BOB.public_key) == 0


@pytest.mark.asyncio
async def test_teleport_from_relay_enqueues_downward_message() -> None:
    engine = await _funded(_relay(), ALICE)
    issuance = await engine.query("balances.totalIssuance")

    await _submit(engine, ALICE, Teleport(parachain(1000), "UNIT", UNIT).to_call(engine.descriptor, BOB.public_key))
    ref = await engine.produce_block()

    (message,) = await engine.outbound_messages(ref)
    assert message.kind == MessageKind.DMP
    assert message.sender is None and message.recipient == 1000
    assert message.program[0] == receive_teleported_asset("UNIT", UNIT)
    assert await _free(engine, CHECKING_ACCOUNT) == UNIT
    assert await engine.query("balances.totalIssuance") == issuance
    assert ("polkadotXcm", "Sent") in _events(engine)


@pytest.mark.asyncio
async def test_inbound_teleport_mints_on_para() -> None:
    engine = _para()
    await engine.start()
    message = XcmMessage(
        MessageKind.DMP,
        None,
        1000,
        (receive_teleported_asset("UNIT", UNIT), buy_execution("UNIT"), deposit_asset(BOB.public_key)),
    )
    await engine.push_inbound([message])
    await engine.produce_block()

    assert await _free(engine, BOB.public_key) == UNIT - DEFAULT_EXECUTION_FEE
    assert await engine.query("balances.totalIssuance") == UNIT
    assert _events(engine) == [
        ("parachainSystem", "DownwardMessagesReceived"),
        ("messageQueue", "Processed"),
    ]
    assert engine.head.events[-1].data["success"] is True


@pytest.mark.asyncio
async def test_failed_inbound_message_rolls_back() -> None:
    engine = _para()
    await engine.start()
    digest = await engine.query("state.digest")
    # Plain teleported assets with no fee payment fail in BuyExecution.
    message = XcmMessage(
        MessageKind.DMP,
        None,
        1000,
        (receive_teleported_asset("UNIT", 1), buy_execution("UNIT"), deposit_asset(BOB.public_key)),
    )
    await engine.push_inbound([message])
    await engine.produce_block()

    processed = engine.head.events[-1]
    assert processed.data["success"] is False
    assert processed.data["error"] == "TooExpensive"
    assert await engine.query("state.digest") == digest


@pytest.mark.asyncio
async def test_set_head_unknown_block() -> None:
    engine = _relay()
    await engine.start()
    with pytest.raises(HarnessError) as info:
        await engine.set_head(BlockRef(7, "0x" + "ab" * 32))
    assert info.value.code == ErrorCode.UNKNOWN_BLOCK


@pytest.mark.asyncio
async def test_set_head_drops_pool() -> None:
    engine = await _funded(_relay(), ALICE)
    head = await engine.get_head()
    await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 1))
    await engine.set_head(head)
    await engine.produce_block()
    assert _events(engine) == []


@pytest.mark.asyncio
async def test_rewound_chain_reproduces_hashes() -> None:
    engine = await _funded(_relay(), ALICE)
    head = await engine.get_head()

    await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 1))
    first = await engine.produce_block()
    await engine.set_head(head)
    await _submit(engine, ALICE, transfer_keep_alive(BOB.public_key, 1))
    second = await engine.produce_block()
    assert first == second


@pytest.mark.asyncio
async def test_unknown_query() -> None:
    engine = _relay()
    await engine.start()
    with pytest.raises(HarnessError) as info:
        await engine.query("staking.validators")
    assert info.value.code == ErrorCode.UNKNOWN_QUERY


@pytest.mark.asyncio
async def test_teardown_is_idempotent() -> None:
    engine = _relay()
    await engine.start()
    await engine.teardown()
    await engine.teardown()
    with pytest.raises(HarnessError) as info:
        await engine.produce_block()
    assert info.value.code == ErrorCode.CLIENT_CLOSED
