"""Shared fixtures: a funded fake chain and workflow settings."""

import pytest

from fakes import FACTORY, ORACLE, ROUTER, SENDER, TOKEN_A, TOKEN_B, WETH, FakeChain, make_spec
from poolboot.amm_types import PairSpec
from poolboot.workflow import WorkflowSettings


@pytest.fixture
def chain() -> FakeChain:
    fake = FakeChain(SENDER)
    fake.fund(TOKEN_A, 10**24)
    fake.fund(TOKEN_B, 10**24)
    fake.fund_native(10**24)
    return fake


@pytest.fixture
def settings() -> WorkflowSettings:
    return WorkflowSettings(
        factory=FACTORY,
        router=ROUTER,
        oracle=ORACLE,
        wrapped_native=WETH,
        minimum_liquidity=50,
    )


@pytest.fixture
def spec() -> PairSpec:
    return make_spec()
