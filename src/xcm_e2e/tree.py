"""Declarative test trees.

Suite builders return a tree of :class:`DescribeNode` and :class:`TestNode`
values; :func:`register_node` walks it once against a test framework through a
:class:`FrameworkAdapter`. Builders never touch the framework themselves, so the
same builder can be instantiated for any number of chain pairs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, Union

Hook = Callable[[], Union[Awaitable[None], None]]
TestFn = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class TestNode:
    __test__ = False

    label: str
    run: TestFn
    only: bool = False
    skip: bool = False
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class DescribeNode:
    label: str
    children: tuple["Node", ...] = ()
    before_all: Optional[Hook] = None
    after_all: Optional[Hook] = None
    before_each: Optional[Hook] = None
    after_each: Optional[Hook] = None
    only: bool = False
    skip: bool = False


Node = Union[TestNode, DescribeNode]


class FrameworkAdapter(ABC):
    """Registration calls of a concrete test framework."""

    @abstractmethod
    def describe(self, label: str, body: Callable[[], None], *, only: bool = False, skip: bool = False) -> None:
        """Open a group, call ``body`` to register its contents, close it."""

    @abstractmethod
    def test(
        self,
        label: str,
        fn: TestFn,
        *,
        only: bool = False,
        skip: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> None:
        pass

    @abstractmethod
    def before_all(self, fn: Hook) -> None:
        pass

    @abstractmethod
    def after_all(self, fn: Hook) -> None:
        pass

    @abstractmethod
    def before_each(self, fn: Hook) -> None:
        pass

    @abstractmethod
    def after_each(self, fn: Hook) -> None:
        pass


def register_node(node: Node, adapter: FrameworkAdapter) -> None:
    if isinstance(node, TestNode):
        adapter.test(node.label, node.run, only=node.only, skip=node.skip, timeout_ms=node.timeout_ms)
        return

    def body() -> None:
        if node.before_all is not None:
            adapter.before_all(node.before_all)
        if node.after_all is not None:
            adapter.after_all(node.after_all)
        if node.before_each is not None:
            adapter.before_each(node.before_each)
        if node.after_each is not None:
            adapter.after_each(node.after_each)
        for child in node.children:
            register_node(child, adapter)

    adapter.describe(node.label, body, only=node.only, skip=node.skip)


def iter_tests(node: Node, path: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], TestNode]]:
    """Yield ``(describe labels, test)`` pairs in registration order."""
    if isinstance(node, TestNode):
        yield path, node
        return
    for child in node.children:
        yield from iter_tests(child, path + (node.label,))


def count_tests(node: Node) -> tuple[int, int]:
    """``(tests, suites)`` contained in ``node``, ``node`` itself included."""
    if isinstance(node, TestNode):
        return 1, 0
    tests, suites = 0, 1
    for child in node.children:
        t, s = count_tests(child)
        tests += t
        suites += s
    return tests, suites


def _flags(node: Node) -> str:
    marks = []
    if node.only:
        marks.append("only")
    if node.skip:
        marks.append("skip")
    return f" [{', '.join(marks)}]" if marks else ""


def format_tree(node: Node) -> str:
    lines: list[str] = []

    def visit(n: Node, indent: str, last: bool, root: bool) -> None:
        connector = "" if root else ("└─ " if last else "├─ ")
        if isinstance(n, TestNode):
            lines.append(f"{indent}{connector}✓ {n.label}{_flags(n)}")
            return
        lines.append(f"{indent}{connector}📦 {n.label}{_flags(n)}")
        child_indent = indent if root else indent + ("   " if last else "│  ")
        for i, child in enumerate(n.children):
            visit(child, child_indent, i == len(n.children) - 1, False)

    visit(node, "", True, True)
    return "\n".join(lines)
