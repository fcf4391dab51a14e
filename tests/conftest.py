"""
tests/conftest.py

Shared fixtures. Builders live in tests/helpers/session_builder.py.
"""

import pytest

from chipsettle.core.config import SettlementConfig, WarningConfig
from chipsettle.core.crypto import Ed25519KeyManager
from chipsettle.optimizer.optimizer import DebtOptimizer
from chipsettle.positions.calculator import PositionCalculator
from chipsettle.runtime.context import SettlementContext

from helpers.session_builder import FrozenClock, SessionBuilder, scenario_b


@pytest.fixture
def config():
    return SettlementConfig()


@pytest.fixture
def warning_config():
    return WarningConfig()


@pytest.fixture
def key():
    """A fresh Ed25519 key manager for each test."""
    return Ed25519KeyManager.generate()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def two_player():
    """Scenario A: Alice +50, Bob −50."""
    return (
        SessionBuilder("scenario-a")
        .player("alice", buy_in=100, chips=150)
        .player("bob",   buy_in=100, chips=50)
        .build()
    )


@pytest.fixture
def four_player():
    return scenario_b()


@pytest.fixture
def context(four_player, key, clock):
    source, _ = four_player
    ctx = SettlementContext.create(source, key_manager=key, clock=clock)
    yield ctx
    ctx.close()


@pytest.fixture
def optimizer():
    """Optimizer without a data source, for optimize_positions()."""
    return DebtOptimizer(config=SettlementConfig())


@pytest.fixture
def calculator_for():
    made = []

    def _make(source, config=None, clock=None):
        calc = PositionCalculator(source, config, **({"clock": clock} if clock else {}))
        made.append(calc)
        return calc

    yield _make
    for calc in made:
        calc.reader.close()
