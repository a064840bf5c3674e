"""
Shared fixtures: record factories and a fresh store.
"""

from datetime import date

import pytest

from conciliacao.models import SaleRecord, SettlementRecord, Terminal
from conciliacao.store import InMemoryRecordStore

TERMINAL = "T1"
PERIOD = "2024-01"


def _as_date(day) -> date:
    return day if isinstance(day, date) else date(2024, 1, day)


@pytest.fixture
def make_sale():
    """Factory: make_sale("s1", 10000, day=10) -> SaleRecord with net 100.00 on 2024-01-10."""

    def factory(id, net_cents, day=10, terminal_id=TERMINAL, period=PERIOD, **kwargs):
        kwargs.setdefault("gross_amount_cents", net_cents)
        return SaleRecord(
            id=id,
            terminal_id=terminal_id,
            period=period,
            sale_date=_as_date(day),
            net_amount_cents=net_cents,
            **kwargs,
        )

    return factory


@pytest.fixture
def make_settlement():
    """Factory: make_settlement("p1", 10000, day=11) -> SettlementRecord."""

    def factory(id, amount_cents, day=10, terminal_id=TERMINAL, period=PERIOD, **kwargs):
        return SettlementRecord(
            id=id,
            terminal_id=terminal_id,
            period=period,
            settlement_date=_as_date(day),
            amount_cents=amount_cents,
            **kwargs,
        )

    return factory


@pytest.fixture
def store():
    store = InMemoryRecordStore()
    store.register_terminal(Terminal(id=TERMINAL, name="Loja Centro", processor="Rede"))
    return store
