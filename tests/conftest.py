"""Shared test fixtures for the Prism test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from prism.exchange.paper import PaperExchange
from prism.store.ledger import Ledger


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary SQLite path for ledger tests."""
    return tmp_path / "prism.db"


@pytest.fixture
def ledger(tmp_db_path: Path):
    """Ledger backed by a temporary SQLite database."""
    store = Ledger(tmp_db_path)
    yield store
    store.close()


@pytest.fixture
def paper() -> PaperExchange:
    """Paper exchange with BTC and ETH prices pinned."""
    exchange = PaperExchange(initial_balance=10_000.0)
    exchange.set_price("BTCUSDT", 100_000.0)
    exchange.set_price("ETHUSDT", 3_000.0)
    return exchange
