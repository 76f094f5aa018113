"""Harness error codes and exceptions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class ErrorCategory(IntEnum):
    DESCRIPTOR = 0x01
    BACKEND = 0x02
    TOPOLOGY = 0x03
    TRANSACTION = 0x04
    SCENARIO = 0x05
    TIMEOUT = 0x06


class ErrorCode(IntEnum):
    # Descriptor
    INVALID_DESCRIPTOR = 0x0100
    DUPLICATE_CHAIN = 0x0101
    INVALID_ADDRESS = 0x0102

    # Backend
    BACKEND_UNREACHABLE = 0x0200
    BACKEND_FAILURE = 0x0201
    UNKNOWN_BLOCK = 0x0202
    CLIENT_CLOSED = 0x0203

    # Topology
    INVALID_TOPOLOGY = 0x0300
    INVALID_SNAPSHOT = 0x0301

    # Transaction
    INVALID_TRANSACTION = 0x0400
    INVALID_SIGNATURE = 0x0401
    UNKNOWN_QUERY = 0x0402
    XCM_EXECUTION = 0x0403
    INSUFFICIENT_BALANCE = 0x0404

    # Scenario
    DISPATCH_FAILED = 0x0500
    MISSING_OUTBOUND_MESSAGE = 0x0501
    MISSING_ROUTE_EVENT = 0x0502
    MISSING_INBOUND_EVENT = 0x0503
    ISSUANCE_CHANGED = 0x0504
    SNAPSHOT_MISMATCH = 0x0505

    # Timeout
    SCENARIO_TIMEOUT = 0x0600

    @property
    def category(self) -> ErrorCategory:
        return ErrorCategory(self.value >> 8)


@dataclass(frozen=True)
class HarnessError(Exception):
    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.name}({self.code:#06x}): {self.message}"


@dataclass(frozen=True)
class ScenarioError(HarnessError, AssertionError):
    """A runner stage observed something other than what it expected."""

    stage: Optional[str] = None

    def __str__(self) -> str:
        base = HarnessError.__str__(self)
        if self.stage:
            return f"[{self.stage}] {base}"
        return base


# Allow Python's Exception machinery to set __traceback__/__context__/__cause__
# while keeping dataclass fields frozen (Python 3.13 contextlib compat).
_EXCEPTION_ATTRS = frozenset(("__traceback__", "__context__", "__cause__", "__suppress_context__", "__notes__"))


def _make_setattr(cls: type) -> None:
    frozen_setattr = cls.__setattr__

    def _setattr(self: HarnessError, name: str, value: object) -> None:
        if name in _EXCEPTION_ATTRS:
            object.__setattr__(self, name, value)
        else:
            frozen_setattr(self, name, value)

    cls.__setattr__ = _setattr  # type: ignore[method-assign]


_make_setattr(HarnessError)
_make_setattr(ScenarioError)
