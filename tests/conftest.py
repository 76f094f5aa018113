"""Shared chains, accounts and networks for the harness tests."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from xcm_e2e.accounts import TestAccounts, default_accounts
from xcm_e2e.chain import define_chain
from xcm_e2e.config import DEFAULT_ENDOWMENT, UNIT
from xcm_e2e.network import NetworkSet, create_set
from xcm_e2e.types import ChainDescriptor
from xcm_e2e.xcm import CHECKING_ACCOUNT, sovereign_account

RESERVE_FUNDS = 100 * UNIT
FEE_ONLY_FUNDS = 10**8

_ENV_NAMES = ("RELAY", "ASSET_HUB", "PARA_A", "PARA_B")


def account_patch(balances: dict[bytes, int]) -> dict[str, Any]:
    return {
        "System": {
            "Account": {key.hex(): {"nonce": 0, "data": {"free": amount}} for key, amount in balances.items()}
        }
    }


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(f"{name}_ENDPOINT", raising=False)
        monkeypatch.delenv(f"{name}_BLOCK_NUMBER", raising=False)
    monkeypatch.delenv("XCM_E2E_TIMEOUT", raising=False)


@pytest.fixture
def accounts() -> TestAccounts:
    return default_accounts()


@pytest.fixture
def relay(accounts: TestAccounts) -> ChainDescriptor:
    return define_chain(
        "relay",
        "memory://relay",
        is_relay=True,
        init_storages=account_patch(
            {
                accounts.alice.public_key: DEFAULT_ENDOWMENT,
                accounts.bob.public_key: DEFAULT_ENDOWMENT,
                accounts.charlie.public_key: FEE_ONLY_FUNDS,
                CHECKING_ACCOUNT: RESERVE_FUNDS,
                sovereign_account(None, 2000): RESERVE_FUNDS,
            }
        ),
    )


def _para(name: str, para_id: int, accounts: TestAccounts) -> ChainDescriptor:
    return define_chain(
        name,
        f"memory://{name}",
        para_id=para_id,
        init_storages=account_patch(
            {
                accounts.alice.public_key: DEFAULT_ENDOWMENT,
                accounts.bob.public_key: DEFAULT_ENDOWMENT,
            }
        ),
    )


@pytest.fixture
def asset_hub(accounts: TestAccounts) -> ChainDescriptor:
    return _para("asset_hub", 1000, accounts)


@pytest.fixture
def para_a(accounts: TestAccounts) -> ChainDescriptor:
    return _para("para_a", 2000, accounts)


@pytest.fixture
def para_b(accounts: TestAccounts) -> ChainDescriptor:
    return _para("para_b", 2001, accounts)


@pytest_asyncio.fixture
async def network(
    relay: ChainDescriptor,
    asset_hub: ChainDescriptor,
    para_a: ChainDescriptor,
    para_b: ChainDescriptor,
) -> NetworkSet:
    network = await create_set(relay, asset_hub, para_a, para_b)
    yield network
    await network.teardown()
