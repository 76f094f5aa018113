"""Value checks: redaction, event and queue extraction, YAML snapshots."""

from __future__ import annotations

import contextlib
import logging
import re
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional, Union

import yaml

from .digest import to_plain
from .errors import ErrorCode, ScenarioError
from .types import MessageKind

if TYPE_CHECKING:
    from .network import Client

logger = logging.getLogger(__name__)

REDACTED = "(redacted)"


def _round_significant(value: Union[int, float], digits: int) -> Union[int, float]:
    if value == 0:
        return value
    if isinstance(value, int):
        magnitude = len(str(abs(value)))
        if magnitude <= digits:
            return value
        return round(value, digits - magnitude)
    return float(f"{value:.{digits}g}")


def redact(value: Any, number: Optional[int] = 3, redact_keys: Union[str, re.Pattern, None] = None) -> Any:
    """Plain copy of ``value`` with numbers rounded to ``number`` significant digits.

    Mapping keys matching ``redact_keys`` have their values replaced. Pass
    ``number=None`` to keep numbers exact.
    """
    pattern = re.compile(redact_keys) if isinstance(redact_keys, str) else redact_keys
    return _redact(to_plain(value), number, pattern)


def _redact(value: Any, number: Optional[int], pattern: Optional[re.Pattern]) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return value if number is None else _round_significant(value, number)
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if pattern is not None and pattern.search(k):
                out[k] = REDACTED
            else:
                out[k] = _redact(v, number, pattern)
        return out
    if isinstance(value, list):
        return [_redact(v, number, pattern) for v in value]
    return value


def _event_view(event) -> dict[str, Any]:
    return {"section": event.section, "method": event.method, "data": dict(event.data)}


async def check_events(client: "Client", tx_hash: str, *sections: str) -> list[dict[str, Any]]:
    """Events the head block emitted for ``tx_hash``, restricted to ``sections``."""
    return [
        _event_view(e)
        for e in await client.api.events()
        if e.tx == tx_hash and (not sections or e.section in sections)
    ]


async def check_system_events(client: "Client", *sections: str) -> list[dict[str, Any]]:
    """Events of the head block from ``sections`` (all when none given)."""
    return [_event_view(e) for e in await client.api.events() if not sections or e.section in sections]


async def _check_queue(client: "Client", kind: MessageKind) -> list[dict[str, Any]]:
    return [
        {"recipient": m.recipient, "program": [dict(i) for i in m.program]}
        for m in await client.api.outbound()
        if m.kind == kind
    ]


async def check_ump(client: "Client") -> list[dict[str, Any]]:
    return await _check_queue(client, MessageKind.UMP)


async def check_hrmp(client: "Client") -> list[dict[str, Any]]:
    return await _check_queue(client, MessageKind.HRMP)


async def check_dmp(client: "Client") -> list[dict[str, Any]]:
    return await _check_queue(client, MessageKind.DMP)


# --- snapshots ---


class _Dumper(yaml.SafeDumper):
    pass


def _str_representer(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=None)


_Dumper.add_representer(str, _str_representer)


class SnapshotStore:
    """Stored values for one test module, kept in a YAML file.

    The file maps test id -> snapshot key -> value. Keys are the label plus a
    per-test counter, so a label may be matched more than once in a test.
    """

    def __init__(self, path: Union[str, Path], update: bool = False):
        self.path = Path(path)
        self.update = update
        self.dirty = False
        self._data: Optional[dict[str, dict[str, Any]]] = None

    @property
    def data(self) -> dict[str, dict[str, Any]]:
        if self._data is None:
            if self.path.exists():
                self._data = yaml.safe_load(self.path.read_text()) or {}
            else:
                self._data = {}
        return self._data

    def match(self, test_id: str, key: str, value: Any) -> None:
        value = to_plain(value)
        entries = self.data.setdefault(test_id, {})
        if key in entries and not self.update:
            if entries[key] != value:
                raise ScenarioError(
                    ErrorCode.SNAPSHOT_MISMATCH,
                    f"{test_id} > {key}\n--- stored\n{_dump(entries[key])}+++ received\n{_dump(value)}",
                    stage=key,
                )
            return
        if key not in entries or entries[key] != value:
            entries[key] = value
            self.dirty = True

    def save(self) -> None:
        if not self.dirty:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(_dump(self.data))
        self.dirty = False
        logger.info(f"Wrote snapshots to {self.path}")


def _dump(value: Any) -> str:
    return yaml.dump(value, Dumper=_Dumper, sort_keys=False, width=4096)


class SnapshotSession:
    """Snapshot matching for one running test.

    Without a store, values are only recorded in ``values``.
    """

    def __init__(self, test_id: str, store: Optional[SnapshotStore] = None):
        self.test_id = test_id
        self.store = store
        self.values: dict[str, Any] = {}
        self._counts: dict[str, int] = {}

    def match(self, value: Any, label: str) -> Any:
        self._counts[label] = self._counts.get(label, 0) + 1
        key = f"{label} {self._counts[label]}"
        self.values[key] = to_plain(value)
        if self.store is not None:
            self.store.match(self.test_id, key, value)
        return value


_session: ContextVar[Optional[SnapshotSession]] = ContextVar("xcm_e2e_snapshot_session", default=None)


@contextlib.contextmanager
def snapshot_session(test_id: str, store: Optional[SnapshotStore] = None) -> Iterator[SnapshotSession]:
    session = SnapshotSession(test_id, store)
    token = _session.set(session)
    try:
        yield session
    finally:
        _session.reset(token)


def current_session() -> Optional[SnapshotSession]:
    return _session.get()


def match_snapshot(value: Any, label: str) -> Any:
    """Match ``value`` against the active session; without one it is passed through."""
    session = _session.get()
    if session is None:
        logger.debug(f"No snapshot session active, {label!r} not checked")
        return value
    return session.match(value, label)
