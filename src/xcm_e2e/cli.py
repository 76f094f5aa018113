#!/usr/bin/env python3
"""
xcm-e2e command line tools.

    xcm-e2e tree my_tests.suites:build_suite
    xcm-e2e chains chains.yaml --start
"""

import asyncio
import importlib
import logging
import sys
from typing import Any

import click

from .chain import load_chains
from .errors import HarnessError
from .network import create_set
from .tree import DescribeNode, TestNode, count_tests, format_tree

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _load_target(target: str) -> Any:
    module_name, _, attr = target.partition(":")
    if not attr:
        raise click.BadParameter(f"expected module:attribute, got {target!r}")
    sys.path.insert(0, ".")
    module = importlib.import_module(module_name)
    obj = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    if not isinstance(obj, (TestNode, DescribeNode)) and callable(obj):
        obj = obj()
    if not isinstance(obj, (TestNode, DescribeNode)):
        raise click.BadParameter(f"{target} is not a test tree")
    return obj


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose output")
def main(verbose: bool) -> None:
    """Cross-chain test harness tools."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@main.command()
@click.argument("target")
def tree(target: str) -> None:
    """Print the test tree built by TARGET (module:attribute)."""
    node = _load_target(target)
    tests, suites = count_tests(node)
    click.echo("=" * 80)
    click.echo(f"TEST TREE: {target}")
    click.echo("=" * 80)
    click.echo(format_tree(node))
    click.echo("")
    click.echo(f"Total: {tests} tests in {suites} suites")


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--start", is_flag=True, help="Start the chains and report their heads")
def chains(path: str, start: bool) -> None:
    """Validate a YAML chain table and print the topology it wires."""
    try:
        table = load_chains(path)
    except HarnessError as e:
        logger.error(str(e))
        sys.exit(1)

    relays = [d for d in table.values() if d.is_relay]
    paras = [d for d in table.values() if not d.is_relay]
    for d in table.values():
        kind = "relay" if d.is_relay else f"para {d.para_id}"
        click.echo(f"{d.name:<24} {kind:<12} {', '.join(d.endpoints)}")
    if len(relays) > 1:
        logger.error(f"More than one relay chain: {', '.join(d.name for d in relays)}")
        sys.exit(1)
    for relay in relays:
        for para in paras:
            click.echo(f"vertical    {relay.name} <-> {para.name}")
    for i, a in enumerate(paras):
        for b in paras[i + 1:]:
            click.echo(f"horizontal  {a.name} <-> {b.name}")

    if not start:
        return

    async def run() -> int:
        try:
            network = await create_set(*table.values())
        except HarnessError as e:
            logger.error(str(e))
            return 1
        try:
            for client in network:
                click.echo(f"{client.name:<24} #{client.head.number} {client.head.hash}")
        finally:
            await network.teardown()
        return 0

    sys.exit(asyncio.run(run()))


@main.command()
@click.option("--host", default="127.0.0.1", help="Interface to listen on")
@click.option("--port", default=9944, type=int, help="Port to listen on")
def serve(host: str, port: int) -> None:
    """Serve one in-memory chain over HTTP for http:// endpoints."""
    from aiohttp import web

    from .engine.daemon import build_app

    logger.info(f"Simulation daemon listening on http://{host}:{port}")
    web.run_app(build_app(), host=host, port=port, print=None)


if __name__ == "__main__":
    main()
