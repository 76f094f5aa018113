"""Transaction and XCM execution for the in-memory backend."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Optional

from ..digest import compute_digest
from ..errors import ErrorCode, HarnessError
from ..types import ChainProperties, Event, MessageKind, XcmMessage
from ..xcm import (
    CHECKING_ACCOUNT,
    TREASURY_ACCOUNT,
    Extrinsic,
    Location,
    Instruction,
    receive_teleported_asset,
    reserve_asset_deposited,
    sovereign_account,
    withdraw_asset,
)

_XCM_SECTIONS = frozenset({"polkadotXcm", "xcmPallet", "xTokens"})

_INBOUND_EVENTS = {
    MessageKind.DMP: ("parachainSystem", "DownwardMessagesReceived"),
    MessageKind.UMP: ("ump", "UpwardMessagesReceived"),
    MessageKind.HRMP: ("xcmpQueue", "XcmpMessageReceived"),
}


def empty_storage() -> dict[str, Any]:
    return {
        "System": {"Account": {}},
        "Balances": {"TotalIssuance": 0},
        "Assets": {"Account": {}, "Asset": {}},
    }


class Ledger:
    """Balance bookkeeping over a storage dict.

    Invariant: per asset, the sum of all account balances plus whatever sits
    in an executor's holding register equals the issuance.
    """

    def __init__(self, storage: dict[str, Any], native_asset: str):
        self.storage = storage
        self.native_asset = native_asset

    def _native_account(self, who: str) -> dict[str, Any]:
        accounts = self.storage["System"]["Account"]
        if who not in accounts:
            accounts[who] = {"nonce": 0, "data": {"free": 0}}
        return accounts[who]

    def balance(self, asset: str, who: str) -> int:
        if asset == self.native_asset:
            acct = self.storage["System"]["Account"].get(who)
            return int(acct["data"]["free"]) if acct else 0
        acct = self.storage["Assets"]["Account"].get(asset, {}).get(who)
        return int(acct["balance"]) if acct else 0

    def _set_balance(self, asset: str, who: str, value: int) -> None:
        if asset == self.native_asset:
            self._native_account(who)["data"]["free"] = value
        else:
            self.storage["Assets"]["Account"].setdefault(asset, {})[who] = {"balance": value}

    def credit(self, asset: str, who: str, amount: int) -> None:
        self._set_balance(asset, who, self.balance(asset, who) + amount)

    def debit(self, asset: str, who: str, amount: int) -> None:
        current = self.balance(asset, who)
        if current < amount:
            raise HarnessError(
                ErrorCode.INSUFFICIENT_BALANCE,
                f"{who[:16]}.. holds {current} {asset}, needs {amount}",
            )
        self._set_balance(asset, who, current - amount)

    def issuance(self, asset: Optional[str] = None) -> int:
        asset = asset or self.native_asset
        if asset == self.native_asset:
            return int(self.storage["Balances"]["TotalIssuance"])
        return int(self.storage["Assets"]["Asset"].get(asset, {}).get("supply", 0))

    def _set_issuance(self, asset: str, value: int) -> None:
        if asset == self.native_asset:
            self.storage["Balances"]["TotalIssuance"] = value
        else:
            self.storage["Assets"]["Asset"].setdefault(asset, {})["supply"] = value

    def mint(self, asset: str, amount: int) -> None:
        self._set_issuance(asset, self.issuance(asset) + amount)

    def burn(self, asset: str, amount: int) -> None:
        self._set_issuance(asset, self.issuance(asset) - amount)

    def nonce(self, who: str) -> int:
        acct = self.storage["System"]["Account"].get(who)
        return int(acct["nonce"]) if acct else 0

    def bump_nonce(self, who: str) -> None:
        self._native_account(who)["nonce"] = self.nonce(who) + 1

    def recompute_issuance(self) -> None:
        accounts = self.storage["System"]["Account"].values()
        self.storage["Balances"]["TotalIssuance"] = sum(int(a["data"]["free"]) for a in accounts)
        for asset, holders in self.storage["Assets"]["Account"].items():
            self._set_issuance(asset, sum(int(h["balance"]) for h in holders.values()))


@dataclass
class ExecutionContext:
    para_id: Optional[int]
    properties: ChainProperties
    block_number: int


@dataclass
class Origin:
    account: Optional[str] = None
    chain: Optional[int] = None
    remote: bool = False


@dataclass
class ExecutionResult:
    events: list[Event] = field(default_factory=list)
    sent: list[XcmMessage] = field(default_factory=list)


class XcmExecutor:
    """Runs one XCM program against a ledger.

    Raises ``XCM_EXECUTION`` (or ``INSUFFICIENT_BALANCE``) on failure; the
    caller owns rollback.
    """

    def __init__(self, ledger: Ledger, ctx: ExecutionContext, origin: Origin, section: str = "polkadotXcm"):
        self.ledger = ledger
        self.ctx = ctx
        self.origin = origin
        self.section = section
        self.holding: dict[str, int] = {}
        self.result = ExecutionResult()

    def execute(self, program: list[Instruction]) -> ExecutionResult:
        for instr in program:
            handler = getattr(self, f"_op_{instr.get('op')}", None)
            if handler is None:
                raise HarnessError(ErrorCode.XCM_EXECUTION, f"unsupported instruction {instr.get('op')!r}")
            handler(instr)

        if self.holding:
            for asset, amount in self.holding.items():
                self.ledger.burn(asset, amount)
            self.result.events.append(
                Event(self.section, "AssetsTrapped", {"assets": dict(self.holding)})
            )
            self.holding = {}
        return self.result

    def _origin_account(self) -> str:
        if self.origin.remote:
            return sovereign_account(self.ctx.para_id, self.origin.chain).hex()
        if self.origin.account is None:
            raise HarnessError(ErrorCode.XCM_EXECUTION, "no origin account")
        return self.origin.account

    def _require_remote(self, op: str) -> None:
        if not self.origin.remote:
            raise HarnessError(ErrorCode.XCM_EXECUTION, f"{op} requires a remote origin")

    def _take_holding(self) -> dict[str, int]:
        assets, self.holding = self.holding, {}
        return assets

    def _hold(self, asset: str, amount: int) -> None:
        self.holding[asset] = self.holding.get(asset, 0) + amount

    def _op_WithdrawAsset(self, instr: Instruction) -> None:
        asset, amount = instr["asset"], int(instr["amount"])
        self.ledger.debit(asset, self._origin_account(), amount)
        self._hold(asset, amount)

    def _op_ReceiveTeleportedAsset(self, instr: Instruction) -> None:
        self._require_remote("ReceiveTeleportedAsset")
        asset, amount = instr["asset"], int(instr["amount"])
        if asset in self.ctx.properties.reserve_assets:
            self.ledger.debit(asset, CHECKING_ACCOUNT.hex(), amount)
        else:
            self.ledger.mint(asset, amount)
        self._hold(asset, amount)

    def _op_ReserveAssetDeposited(self, instr: Instruction) -> None:
        self._require_remote("ReserveAssetDeposited")
        asset, amount = instr["asset"], int(instr["amount"])
        self.ledger.mint(asset, amount)
        self._hold(asset, amount)

    def _op_BuyExecution(self, instr: Instruction) -> None:
        asset = instr.get("asset") or next(iter(self.holding), None)
        fee = self.ctx.properties.execution_fee
        if asset is None or self.holding.get(asset, 0) < fee:
            raise HarnessError(ErrorCode.XCM_EXECUTION, "TooExpensive")
        self.holding[asset] -= fee
        if self.holding[asset] == 0:
            del self.holding[asset]
        self.ledger.credit(asset, TREASURY_ACCOUNT.hex(), fee)

    def _op_DepositAsset(self, instr: Instruction) -> None:
        beneficiary = instr.get("beneficiary")
        if not beneficiary:
            raise HarnessError(ErrorCode.XCM_EXECUTION, "DepositAsset without beneficiary")
        for asset, amount in self._take_holding().items():
            self.ledger.credit(asset, beneficiary, amount)

    def _op_ClearOrigin(self, instr: Instruction) -> None:
        pass

    def _op_InitiateTeleport(self, instr: Instruction) -> None:
        dest = Location.from_json(instr["dest"]).resolve(self.ctx.para_id)
        assets = self._take_holding()
        for asset, amount in assets.items():
            if asset in self.ctx.properties.reserve_assets:
                self.ledger.credit(asset, CHECKING_ACCOUNT.hex(), amount)
            else:
                self.ledger.burn(asset, amount)
        head = [receive_teleported_asset(a, n) for a, n in assets.items()]
        self._send(dest, head + list(instr.get("xcm", [])))

    def _op_DepositReserveAsset(self, instr: Instruction) -> None:
        dest = Location.from_json(instr["dest"]).resolve(self.ctx.para_id)
        sovereign = sovereign_account(self.ctx.para_id, dest).hex()
        assets = self._take_holding()
        for asset, amount in assets.items():
            self.ledger.credit(asset, sovereign, amount)
        head = [reserve_asset_deposited(a, n) for a, n in assets.items()]
        self._send(dest, head + list(instr.get("xcm", [])))

    def _op_InitiateReserveWithdraw(self, instr: Instruction) -> None:
        reserve = Location.from_json(instr["reserve"]).resolve(self.ctx.para_id)
        assets = self._take_holding()
        for asset, amount in assets.items():
            self.ledger.burn(asset, amount)
        head = [withdraw_asset(a, n) for a, n in assets.items()]
        self._send(reserve, head + list(instr.get("xcm", [])))

    def _send(self, dest: Optional[int], program: list[Instruction]) -> None:
        here = self.ctx.para_id
        if dest == here:
            raise HarnessError(ErrorCode.XCM_EXECUTION, "cannot send a message to self")
        if here is None:
            kind = MessageKind.DMP
        elif dest is None:
            kind = MessageKind.UMP
        else:
            kind = MessageKind.HRMP
        message = XcmMessage(
            kind=kind,
            sender=here,
            recipient=dest,
            program=tuple(program),
            sent_at=self.ctx.block_number,
        )
        self.result.sent.append(message)
        self.result.events.append(
            Event(
                self.section,
                "Sent",
                {"origin": here, "destination": dest, "message_id": message_id(message)},
            )
        )


def message_id(message: XcmMessage) -> str:
    return "0x" + compute_digest(message.to_json())


def _transactional(storage: dict[str, Any], fn):
    """Run ``fn(scratch)`` on a copy of ``storage``; commit only on success."""
    scratch = deepcopy(storage)
    result = fn(scratch)
    storage.clear()
    storage.update(scratch)
    return result


def apply_extrinsic(storage: dict[str, Any], ctx: ExecutionContext, ext: Extrinsic, tx: str) -> ExecutionResult:
    """Charge fees, dispatch the call and report its events."""
    props = ctx.properties
    ledger = Ledger(storage, props.native_asset)
    who = ext.signer.hex()
    result = ExecutionResult()

    def emit(section: str, method: str, **data: Any) -> None:
        result.events.append(Event(section, method, data, tx))

    try:
        ledger.debit(props.native_asset, who, props.tx_fee)
    except HarnessError:
        emit("system", "ExtrinsicFailed", error="InabilityToPayFees")
        return result
    ledger.credit(props.native_asset, TREASURY_ACCOUNT.hex(), props.tx_fee)
    ledger.bump_nonce(who)
    emit("balances", "Withdraw", who=who, amount=props.tx_fee)
    emit("transactionPayment", "TransactionFeePaid", who=who, actual_fee=props.tx_fee, tip=0)

    try:
        dispatched = _transactional(storage, lambda scratch: _dispatch(scratch, ctx, ext))
    except HarnessError as e:
        emit("system", "ExtrinsicFailed", error=e.message, code=e.code.name)
        return result

    for event in dispatched.events:
        result.events.append(Event(event.section, event.method, event.data, tx))
    result.sent.extend(dispatched.sent)
    emit("system", "ExtrinsicSuccess")
    return result


def _dispatch(storage: dict[str, Any], ctx: ExecutionContext, ext: Extrinsic) -> ExecutionResult:
    call = ext.call
    ledger = Ledger(storage, ctx.properties.native_asset)
    who = ext.signer.hex()

    if call.section == "balances" and call.method in ("transferKeepAlive", "transferAllowDeath"):
        dest, value = call.args["dest"], int(call.args["value"])
        ledger.debit(ctx.properties.native_asset, who, value)
        ledger.credit(ctx.properties.native_asset, dest, value)
        return ExecutionResult(events=[Event("balances", "Transfer", {"from": who, "to": dest, "amount": value})])

    if call.section in _XCM_SECTIONS and "message" in call.args:
        executor = XcmExecutor(ledger, ctx, Origin(account=who), section=call.section)
        result = executor.execute(list(call.args["message"]))
        if call.section == "xTokens":
            result.events.insert(0, Event("xTokens", "TransferredAssets", {"sender": who}))
        else:
            result.events.insert(0, Event(call.section, "Attempted", {"outcome": "Complete"}))
        return result

    raise HarnessError(ErrorCode.INVALID_TRANSACTION, f"unsupported call {call.section}.{call.method}")


def process_inbound(storage: dict[str, Any], ctx: ExecutionContext, messages: list[XcmMessage]) -> ExecutionResult:
    """Execute queued inbound messages in arrival order."""
    result = ExecutionResult()
    if not messages:
        return result

    dmp = [m for m in messages if m.kind == MessageKind.DMP]
    if dmp:
        section, method = _INBOUND_EVENTS[MessageKind.DMP]
        result.events.append(Event(section, method, {"count": len(dmp)}))

    for message in messages:
        if message.kind != MessageKind.DMP:
            section, method = _INBOUND_EVENTS[message.kind]
            result.events.append(Event(section, method, {"from": message.sender}))

        origin = Origin(chain=message.sender, remote=True)
        try:
            executed = _transactional(
                storage,
                lambda scratch: XcmExecutor(
                    Ledger(scratch, ctx.properties.native_asset), ctx, origin
                ).execute(list(message.program)),
            )
        except HarnessError as e:
            result.events.append(
                Event(
                    "messageQueue",
                    "Processed",
                    {
                        "id": message_id(message),
                        "origin": _origin_label(message),
                        "success": False,
                        "error": e.message,
                    },
                )
            )
            continue

        result.events.extend(executed.events)
        result.sent.extend(executed.sent)
        result.events.append(
            Event(
                "messageQueue",
                "Processed",
                {"id": message_id(message), "origin": _origin_label(message), "success": True},
            )
        )
    return result


def _origin_label(message: XcmMessage) -> str:
    if message.kind == MessageKind.DMP:
        return "Parent"
    if message.kind == MessageKind.UMP:
        return f"Ump(Para({message.sender}))"
    return f"Sibling({message.sender})"
