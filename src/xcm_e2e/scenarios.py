"""Scenario runners: fixed block-production protocols for cross-chain transfers.

Every runner follows the same stages, strictly in order:

1. submit the transfer on the source chain
2. produce one block on the source chain
3. check source effects (balance, dispatch events, outbound message)
4. (routed horizontal only) produce one block on the route chain and check
   that it processed the message
5. produce one block on the destination chain
6. check destination effects (balance, inbound queue events)
7. if an issuance probe was given, check it did not move

A failed check raises :class:`ScenarioError` naming the stage; nothing is
retried.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from .accounts import KeyPair, TestAccounts, default_accounts
from .api import GetBalance, GetTotalIssuance, Tx, native_account
from .check import check_events, check_system_events, match_snapshot, redact
from .config import DEFAULT_PRECISION, HarnessConfig
from .errors import ErrorCode, HarnessError, ScenarioError
from .network import Client
from .tree import TestNode
from .types import BlockRef, MessageKind
from .xcm import Call, Execute, ReserveTransfer, Teleport

logger = logging.getLogger(__name__)

TOPIC_KEYS = r"setTopic"
XCM_SECTIONS = ("polkadotXcm", "xcmPallet")
XTOKENS_SECTIONS = ("xTokens",)

DOWNWARD_SECTIONS = ("parachainSystem", "dmpQueue")
UPWARD_SECTIONS = ("ump",)
HORIZONTAL_SECTIONS = ("xcmpQueue", "dmpQueue", "parachainSystem")
MESSAGE_QUEUE = "messageQueue"


@dataclass
class ScenarioSpec:
    """Inputs of one scenario run, built fresh by each test's setup callback.

    ``tx`` is either a builder ``(client, beneficiary) -> Call`` or a
    transfer operation. ``route_chain`` is only honoured by horizontal runs.
    """

    from_chain: Client
    to_chain: Client
    tx: Union[Tx, Teleport, ReserveTransfer, Execute]
    from_balance: GetBalance = native_account
    to_balance: GetBalance = native_account
    route_chain: Optional[Client] = None
    from_account: Optional[KeyPair] = None
    to_account: Optional[KeyPair] = None
    is_check_ump: bool = False
    precision: int = DEFAULT_PRECISION
    total_issuance: Optional[GetTotalIssuance] = None
    event_sections: tuple[str, ...] = XCM_SECTIONS


@dataclass
class ScenarioReport:
    """What each stage observed, in redacted form.

    ``tx_fee`` is what the source chain's fee extractor read from the
    transaction's events.
    """

    variant: str
    tx_hash: Optional[str] = None
    tx_fee: Optional[int] = None
    blocks: list[tuple[str, BlockRef]] = field(default_factory=list)
    from_balance: Any = None
    tx_events: list[dict[str, Any]] = field(default_factory=list)
    outbound: list[dict[str, Any]] = field(default_factory=list)
    route_events: list[dict[str, Any]] = field(default_factory=list)
    to_balance: Any = None
    to_events: list[dict[str, Any]] = field(default_factory=list)
    issuance_before: Optional[int] = None
    issuance_after: Optional[int] = None

    @property
    def block_order(self) -> list[str]:
        return [name for name, _ in self.blocks]


def _build_call(spec: ScenarioSpec, beneficiary: bytes) -> Call:
    if isinstance(spec.tx, (Teleport, ReserveTransfer, Execute)):
        return spec.tx.to_call(spec.from_chain.descriptor, beneficiary)
    return spec.tx(spec.from_chain, beneficiary)


async def _advance(report: ScenarioReport, client: Client) -> None:
    ref = await client.produce_block()
    report.blocks.append((client.name, ref))
    logger.debug(f"[{report.variant}] {client.name} produced #{ref.number}")


def _find(events: list[dict[str, Any]], section: str, method: str) -> list[dict[str, Any]]:
    return [e for e in events if e["section"] == section and e["method"] == method]


async def _submit(spec: ScenarioSpec, report: ScenarioReport, sender: KeyPair, receiver: KeyPair) -> None:
    try:
        call = _build_call(spec, receiver.public_key)
        report.tx_hash = await spec.from_chain.api.sign_and_submit(sender, call)
    except HarnessError as e:
        raise ScenarioError(e.code, e.message, stage="submit") from e


async def _check_source(spec: ScenarioSpec, report: ScenarioReport, sender: KeyPair, outbound: MessageKind) -> None:
    source = spec.from_chain
    report.from_balance = match_snapshot(
        redact(await spec.from_balance(source, sender.public_key), spec.precision),
        "balance on from chain",
    )

    events = await check_events(source, report.tx_hash)
    failed = _find(events, "system", "ExtrinsicFailed")
    if failed:
        raise ScenarioError(
            ErrorCode.DISPATCH_FAILED,
            f"{source.name}: transaction {report.tx_hash} failed: {failed[0]['data'].get('error')}",
            stage="source",
        )
    if not _find(events, "system", "ExtrinsicSuccess"):
        raise ScenarioError(
            ErrorCode.DISPATCH_FAILED,
            f"{source.name}: transaction {report.tx_hash} not included in #{report.blocks[-1][1].number}",
            stage="source",
        )
    report.tx_fee = source.descriptor.properties.fee_extractor(
        [e for e in await source.api.events() if e.tx == report.tx_hash], sender.public_key
    )
    report.tx_events = match_snapshot(
        redact([e for e in events if e["section"] in spec.event_sections], spec.precision),
        "tx events",
    )

    messages = [
        {"recipient": m.recipient, "program": [dict(i) for i in m.program]}
        for m in await source.api.outbound()
        if m.kind == outbound
    ]
    if not messages:
        raise ScenarioError(
            ErrorCode.MISSING_OUTBOUND_MESSAGE,
            f"{source.name}: no {outbound.value} message in #{report.blocks[-1][1].number}",
            stage="source",
        )
    report.outbound = match_snapshot(
        redact(messages, None, redact_keys=TOPIC_KEYS), f"from chain {outbound.value} messages"
    )


async def _check_route(spec: ScenarioSpec, report: ScenarioReport) -> None:
    route = spec.route_chain
    await _advance(report, route)
    events = await check_system_events(route, MESSAGE_QUEUE)
    processed = _find(events, MESSAGE_QUEUE, "Processed")
    if not processed:
        raise ScenarioError(
            ErrorCode.MISSING_ROUTE_EVENT,
            f"{route.name}: no {MESSAGE_QUEUE}.Processed in #{report.blocks[-1][1].number}",
            stage="route",
        )
    for event in processed:
        if not event["data"].get("success"):
            raise ScenarioError(
                ErrorCode.MISSING_ROUTE_EVENT,
                f"{route.name}: message {event['data'].get('id')} not forwarded: {event['data'].get('error')}",
                stage="route",
            )
    report.route_events = match_snapshot(events, "route chain xcm events")


async def _check_destination(
    spec: ScenarioSpec,
    report: ScenarioReport,
    receiver: KeyPair,
    sections: tuple[str, ...],
) -> None:
    dest = spec.to_chain
    report.to_balance = match_snapshot(
        redact(await spec.to_balance(dest, receiver.public_key), spec.precision),
        "balance on to chain",
    )

    events = await check_system_events(dest, *sections, MESSAGE_QUEUE)
    if not any(e["section"] in sections for e in events):
        raise ScenarioError(
            ErrorCode.MISSING_INBOUND_EVENT,
            f"{dest.name}: none of {', '.join(sections)} reported an inbound message",
            stage="destination",
        )
    processed = _find(events, MESSAGE_QUEUE, "Processed")
    if not processed:
        raise ScenarioError(
            ErrorCode.MISSING_INBOUND_EVENT,
            f"{dest.name}: no {MESSAGE_QUEUE}.Processed in #{report.blocks[-1][1].number}",
            stage="destination",
        )
    for event in processed:
        if not event["data"].get("success"):
            raise ScenarioError(
                ErrorCode.MISSING_INBOUND_EVENT,
                f"{dest.name}: message {event['data'].get('id')} failed: {event['data'].get('error')}",
                stage="destination",
            )
    report.to_events = match_snapshot(events, "to chain xcm events")


async def _execute(
    variant: str,
    spec: ScenarioSpec,
    accounts: Optional[TestAccounts],
    outbound: MessageKind,
    inbound_sections: tuple[str, ...],
    routed: bool,
) -> ScenarioReport:
    accounts = accounts or default_accounts()
    sender = spec.from_account or accounts.alice
    receiver = spec.to_account or accounts.bob
    report = ScenarioReport(variant)
    logger.info(f"[{variant}] {spec.from_chain.name} -> {spec.to_chain.name}")

    if spec.total_issuance is not None:
        report.issuance_before = await spec.total_issuance()

    await _submit(spec, report, sender, receiver)
    await _advance(report, spec.from_chain)
    await _check_source(spec, report, sender, outbound)

    if routed and spec.route_chain is not None:
        await _check_route(spec, report)

    await _advance(report, spec.to_chain)
    await _check_destination(spec, report, receiver, inbound_sections)

    if spec.total_issuance is not None:
        report.issuance_after = await spec.total_issuance()
        if report.issuance_after != report.issuance_before:
            raise ScenarioError(
                ErrorCode.ISSUANCE_CHANGED,
                f"total issuance moved from {report.issuance_before} to {report.issuance_after}",
                stage="issuance",
            )
    return report


async def execute_down(spec: ScenarioSpec, accounts: Optional[TestAccounts] = None) -> ScenarioReport:
    """Relay -> sub-chain over the downward queue."""
    return await _execute("down", spec, accounts, MessageKind.DMP, DOWNWARD_SECTIONS, routed=False)


async def execute_up(spec: ScenarioSpec, accounts: Optional[TestAccounts] = None) -> ScenarioReport:
    """Sub-chain -> relay over the upward queue."""
    return await _execute("up", spec, accounts, MessageKind.UMP, UPWARD_SECTIONS, routed=False)


async def execute_horizontal(spec: ScenarioSpec, accounts: Optional[TestAccounts] = None) -> ScenarioReport:
    """Sub-chain -> sub-chain, directly or routed through ``spec.route_chain``.

    The source queue checked is the upward one when ``is_check_ump`` is set
    (the message leaves through the relay), the horizontal one otherwise.
    """
    outbound = MessageKind.UMP if spec.is_check_ump else MessageKind.HRMP
    return await _execute("horizontal", spec, accounts, outbound, HORIZONTAL_SECTIONS, routed=True)


# --- test tree entry points ---

Setup = Callable[[], Union[ScenarioSpec, Awaitable[ScenarioSpec]]]
Executor = Callable[[ScenarioSpec, Optional[TestAccounts]], Awaitable[ScenarioReport]]


def _scenario_test(
    label: str,
    setup: Setup,
    executor: Executor,
    accounts: Optional[TestAccounts],
    only: bool,
    skip: bool,
    timeout_ms: Optional[int],
    adjust: Optional[Callable[[ScenarioSpec], ScenarioSpec]] = None,
) -> TestNode:
    if timeout_ms is None:
        timeout_ms = HarnessConfig.from_env().scenario_timeout_ms

    async def run() -> None:
        spec = setup()
        if inspect.isawaitable(spec):
            spec = await spec
        if adjust is not None:
            spec = adjust(spec)
        await executor(spec, accounts)

    return TestNode(label, run, only=only, skip=skip, timeout_ms=timeout_ms)


def run_xcm_pallet_down(
    label: str,
    setup: Setup,
    *,
    accounts: Optional[TestAccounts] = None,
    only: bool = False,
    skip: bool = False,
    timeout_ms: Optional[int] = None,
) -> TestNode:
    return _scenario_test(label, setup, execute_down, accounts, only, skip, timeout_ms)


def run_xcm_pallet_up(
    label: str,
    setup: Setup,
    *,
    accounts: Optional[TestAccounts] = None,
    only: bool = False,
    skip: bool = False,
    timeout_ms: Optional[int] = None,
) -> TestNode:
    return _scenario_test(label, setup, execute_up, accounts, only, skip, timeout_ms)


def run_xcm_pallet_horizontal(
    label: str,
    setup: Setup,
    *,
    accounts: Optional[TestAccounts] = None,
    only: bool = False,
    skip: bool = False,
    timeout_ms: Optional[int] = None,
) -> TestNode:
    return _scenario_test(label, setup, execute_horizontal, accounts, only, skip, timeout_ms)


def _xtokens(spec: ScenarioSpec) -> ScenarioSpec:
    return dataclasses.replace(spec, event_sections=XTOKENS_SECTIONS, total_issuance=None)


def run_xtokens_up(
    label: str,
    setup: Setup,
    *,
    accounts: Optional[TestAccounts] = None,
    only: bool = False,
    skip: bool = False,
    timeout_ms: Optional[int] = None,
) -> TestNode:
    return _scenario_test(label, setup, execute_up, accounts, only, skip, timeout_ms, adjust=_xtokens)


def run_xtokens_horizontal(
    label: str,
    setup: Setup,
    *,
    accounts: Optional[TestAccounts] = None,
    only: bool = False,
    skip: bool = False,
    timeout_ms: Optional[int] = None,
) -> TestNode:
    return _scenario_test(label, setup, execute_horizontal, accounts, only, skip, timeout_ms, adjust=_xtokens)
