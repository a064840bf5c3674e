"""
Tests for tolerance suggestions and anomaly detection.
"""

from decimal import Decimal

import pytest

from conciliacao.models import MatchConfig, ReconciliationRun, RunCounts, RunStatus
from conciliacao.reconciliation.tolerance_advisor import ToleranceAdvisor


@pytest.fixture
def advisor():
    return ToleranceAdvisor()


def make_run(value_tolerance_cents, day_tolerance, loaded, matched, status=RunStatus.COMPLETED):
    return ReconciliationRun(
        terminal_id="T1",
        period="2024-01",
        config=MatchConfig(value_tolerance_cents=value_tolerance_cents, day_tolerance=day_tolerance),
        status=status,
        counts=RunCounts(sales_loaded=loaded, sales_matched=matched),
    )


class TestSuggestTolerance:

    @pytest.mark.parametrize("processor,value,days", [
        ("rede", Decimal("0.75"), 1),
        ("Rede", Decimal("0.75"), 1),
        ("sipag", Decimal("1.00"), 2),
        ("stone", Decimal("1.00"), 2),
        ("", Decimal("1.00"), 2),
    ])
    def test_processor_defaults_without_history(self, advisor, processor, value, days):
        suggestion = advisor.suggest_tolerance([], processor)

        assert suggestion.value_tolerance == value
        assert suggestion.day_tolerance == days
        assert suggestion.source == "processor_default"

    def test_average_of_successful_runs(self, advisor):
        runs = [
            make_run(50, 1, loaded=100, matched=95),
            make_run(150, 3, loaded=100, matched=90),
            make_run(500, 5, loaded=100, matched=40),  # below threshold
            make_run(900, 9, loaded=100, matched=100, status=RunStatus.FAILED),
        ]

        suggestion = advisor.suggest_tolerance(runs, "rede")

        assert suggestion.source == "history"
        assert suggestion.based_on_runs == 2
        assert suggestion.value_tolerance == Decimal("1.00")
        assert suggestion.day_tolerance == 2

    def test_unsuccessful_history_falls_back(self, advisor):
        runs = [make_run(500, 5, loaded=100, matched=85)]  # exactly 85% is not above

        suggestion = advisor.suggest_tolerance(runs, "sipag")

        assert suggestion.source == "processor_default"

    def test_to_dict(self, advisor):
        data = advisor.suggest_tolerance([], "rede").to_dict()

        assert data == {
            "value_tolerance": "0.75",
            "day_tolerance": 1,
            "source": "processor_default",
            "based_on_runs": 0,
        }


class TestDetectAnomalies:

    def test_balanced_inputs(self, advisor, make_sale, make_settlement):
        sales = [make_sale("s1", 10000), make_sale("s2", 5000)]
        settlements = [make_settlement("p1", 15000), make_settlement("p2", 100)]

        assert advisor.detect_anomalies(sales, settlements) == []

    def test_volume_divergence(self, advisor, make_sale, make_settlement):
        sales = [make_sale(f"s{i}", 1000) for i in range(10)]
        settlements = [make_settlement("p1", 10000)]

        anomalies = advisor.detect_anomalies(sales, settlements)

        assert len(anomalies) == 1
        assert anomalies[0].startswith("Volume divergence: 10 sales vs 1 settlements")

    def test_value_divergence(self, advisor, make_sale, make_settlement):
        sales = [make_sale("s1", 10000)]
        settlements = [make_settlement("p1", 11000)]

        anomalies = advisor.detect_anomalies(sales, settlements)

        assert len(anomalies) == 1
        assert "R$ 10,00" in anomalies[0]
        assert "10.0%" in anomalies[0]

    def test_empty_inputs(self, advisor, make_settlement):
        assert advisor.detect_anomalies([], []) == []
        assert advisor.detect_anomalies([], [make_settlement("p1", 100)]) == []
