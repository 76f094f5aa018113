"""pytest integration for test trees.

Load with ``-p xcm_e2e.pytest_plugin``. In a test module::

    register_test_tree(build_suite(polkadot, asset_hub), globals())

Every describe becomes a nested ``Test*`` class and every test a method of
it. Hooks run the way a describe/it framework runs them: ``before_all`` when
the first test of a group starts, ``after_all`` once the group is left or the
module finishes, ``before_each``/``after_each`` around every test. The
coroutines of one registered tree share one event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, MutableMapping, Optional

import pytest

from .check import SnapshotStore, snapshot_session
from .config import HarnessConfig
from .errors import ErrorCode, ScenarioError
from .tree import FrameworkAdapter, Hook, Node, TestFn, register_node

logger = logging.getLogger(__name__)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "only: run only tests carrying this marker")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    focused = [item for item in items if item.get_closest_marker("only") is not None]
    if not focused:
        return
    deselected = [item for item in items if item.get_closest_marker("only") is None]
    config.hook.pytest_deselected(items=deselected)
    items[:] = focused


@dataclass(eq=False)
class _Scope:
    label: str
    before_all: list[Hook] = field(default_factory=list)
    after_all: list[Hook] = field(default_factory=list)
    before_each: list[Hook] = field(default_factory=list)
    after_each: list[Hook] = field(default_factory=list)
    attrs: dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None


class TreeRunner:
    """Runs the hooks and tests of one registered tree on its own loop."""

    def __init__(self, snapshots: Optional[SnapshotStore] = None):
        self.snapshots = snapshots
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.open: list[_Scope] = []

    def _call(self, fn: Callable[[], Any]) -> Any:
        if self.loop is None:
            self.loop = asyncio.new_event_loop()
        result = fn()
        if inspect.isawaitable(result):
            return self.loop.run_until_complete(result)
        return result

    def _leave(self, scope: _Scope) -> None:
        for hook in scope.after_all:
            try:
                self._call(hook)
            except Exception as e:
                logger.warning(f"after_all of {scope.label!r} failed: {e}", exc_info=True)

    def _enter(self, path: list[_Scope]) -> None:
        common = 0
        while common < min(len(self.open), len(path)) and self.open[common] is path[common]:
            common += 1
        while len(self.open) > common:
            self._leave(self.open.pop())
        for scope in path[common:]:
            self.open.append(scope)
            try:
                for hook in scope.before_all:
                    self._call(hook)
            except Exception as e:
                scope.error = e
                raise

    def run_test(self, path: list[_Scope], test_id: str, fn: TestFn, timeout_ms: Optional[int]) -> None:
        self._enter(path)
        for scope in path:
            if scope.error is not None:
                raise scope.error

        for scope in path:
            for hook in scope.before_each:
                self._call(hook)
        try:
            with snapshot_session(test_id, self.snapshots):
                self._call(lambda: _with_timeout(fn(), timeout_ms, test_id))
        except BaseException:
            self._after_each(path, raise_errors=False)
            raise
        self._after_each(path, raise_errors=True)

    def _after_each(self, path: list[_Scope], raise_errors: bool) -> None:
        for scope in reversed(path):
            for hook in scope.after_each:
                try:
                    self._call(hook)
                except Exception as e:
                    if raise_errors:
                        raise
                    logger.warning(f"after_each of {scope.label!r} failed: {e}")

    def finish(self) -> None:
        while self.open:
            self._leave(self.open.pop())
        if self.snapshots is not None:
            self.snapshots.save()
        if self.loop is not None:
            self.loop.close()
            self.loop = None


async def _with_timeout(coro, timeout_ms: Optional[int], test_id: str) -> None:
    if timeout_ms is None:
        await coro
        return
    try:
        await asyncio.wait_for(coro, timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise ScenarioError(
            ErrorCode.SCENARIO_TIMEOUT, f"{test_id} exceeded {timeout_ms} ms", stage="timeout"
        ) from None


def _words(label: str) -> list[str]:
    return [w for w in re.split(r"\W+", label) if w]


def _unique(name: str, taken: MutableMapping[str, Any]) -> str:
    candidate, n = name, 2
    while candidate in taken:
        candidate = f"{name}_{n}"
        n += 1
    return candidate


class PytestAdapter(FrameworkAdapter):
    """Materializes a tree as pytest classes and functions in ``namespace``."""

    def __init__(self, namespace: MutableMapping[str, Any], runner: TreeRunner):
        self.namespace = namespace
        self.runner = runner
        self.stack: list[_Scope] = []

    def _target(self) -> MutableMapping[str, Any]:
        return self.stack[-1].attrs if self.stack else self.namespace

    def describe(self, label: str, body: Callable[[], None], *, only: bool = False, skip: bool = False) -> None:
        scope = _Scope(label)
        self.stack.append(scope)
        try:
            body()
        finally:
            self.stack.pop()

        attrs = dict(scope.attrs)
        attrs["__doc__"] = label
        attrs["__module__"] = self.namespace.get("__name__", __name__)
        marks = []
        if skip:
            marks.append(pytest.mark.skip(reason="skipped in test tree"))
        if only:
            marks.append(pytest.mark.only)
        if marks:
            attrs["pytestmark"] = marks
        target = self._target()
        name = _unique("Test" + "".join(w[:1].upper() + w[1:] for w in _words(label)), target)
        target[name] = type(name, (), attrs)

    def test(
        self,
        label: str,
        fn: TestFn,
        *,
        only: bool = False,
        skip: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> None:
        path = list(self.stack)
        test_id = " > ".join([s.label for s in path] + [label])
        runner = self.runner
        in_class = bool(self.stack)

        if in_class:

            def case(self) -> None:
                runner.run_test(path, test_id, fn, timeout_ms)

        else:

            def case() -> None:
                runner.run_test(path, test_id, fn, timeout_ms)

        case.__doc__ = label
        if skip:
            case = pytest.mark.skip(reason="skipped in test tree")(case)
        if only:
            case = pytest.mark.only(case)

        target = self._target()
        name = _unique("test_" + "_".join(w.lower() for w in _words(label)), target)
        case.__name__ = name
        target[name] = case

    def before_all(self, fn: Hook) -> None:
        self.stack[-1].before_all.append(fn)

    def after_all(self, fn: Hook) -> None:
        self.stack[-1].after_all.append(fn)

    def before_each(self, fn: Hook) -> None:
        self.stack[-1].before_each.append(fn)

    def after_each(self, fn: Hook) -> None:
        self.stack[-1].after_each.append(fn)


def register_test_tree(
    tree: Node,
    namespace: MutableMapping[str, Any],
    config: Optional[HarnessConfig] = None,
) -> TreeRunner:
    """Register ``tree`` in a test module's ``globals()``.

    Snapshots go to ``<snapshot dir>/<module>.yaml`` next to the module.
    """
    config = config or HarnessConfig.from_env()
    store = None
    module_file = namespace.get("__file__")
    if module_file:
        module_path = Path(module_file)
        store = SnapshotStore(
            module_path.parent / config.snapshot_dir / f"{module_path.stem}.yaml",
            update=config.update_snapshots,
        )

    runner = TreeRunner(store)
    register_node(tree, PytestAdapter(namespace, runner))

    previous = namespace.get("teardown_module")

    def teardown_module(module=None) -> None:
        runner.finish()
        if previous is None:
            return
        if inspect.signature(previous).parameters:
            previous(module)
        else:
            previous()

    namespace["teardown_module"] = teardown_module
    return runner
