"""
Shared fixtures for MetalBloom API tests.
"""
import pytest

from main import Currency, HistoricalTable, Metal, PriceSource, SpotSnapshot


# 2024-01-07T00:00:00Z
SNAPSHOT_TIMESTAMP = 1704585600


class StubPriceSource(PriceSource):
    """Price source returning fixed data, or raising the configured errors."""

    name = "stub"

    def __init__(self, live=None, table=None, live_error=None, history_error=None):
        self.live = live
        self.table = table
        self.live_error = live_error
        self.history_error = history_error
        self.calls = []

    async def get_live_rates(self, currency):
        self.calls.append(("live", currency))
        if self.live_error:
            raise self.live_error
        return self.live

    async def get_historical_rates(self, metal, currency, days):
        self.calls.append(("history", metal, currency, days))
        if self.history_error:
            raise self.history_error
        return self.table


@pytest.fixture
def snapshot():
    return SpotSnapshot(
        base=Currency.INR,
        timestamp=SNAPSHOT_TIMESTAMP,
        rates={"XAU": 6000, "XAG": 70, "XPT": 2500, "XPD": 3000},
    )


@pytest.fixture
def history_table():
    """A week of rates with a missing gold price on 2024-01-06."""
    gold = [5950, 5980, 6010, 5990, 6020, 0, 6050]
    rates = {}
    for day, price in enumerate(gold, start=1):
        rates[f"2024-01-{day:02d}"] = {"XAU": price, "XAG": 70 + day, "XPT": 2500, "XPD": 3000}
    return HistoricalTable(base=Currency.INR, rates=rates)


@pytest.fixture
def stub_source(snapshot, history_table):
    return StubPriceSource(live=snapshot, table=history_table)


@pytest.fixture
def gold():
    return Metal.XAU
