"""
Tests for the Matcher (simple 1:1 and grouped N:1 phases).
"""

import pytest

from conciliacao.exceptions import InvalidScopeError
from conciliacao.models import MatchConfig, MatchKind, MatchStatus, RunStatus
from conciliacao.reconciliation.matcher import ReconciliationMatcher, match


@pytest.fixture
def matcher():
    return ReconciliationMatcher()


def group_signature(outcome):
    return sorted((g.sale_ids, g.settlement_id, g.kind) for g in outcome.groups)


class TestSimpleMatching:
    """Phase 1: greedy nearest-date 1:1 matching."""

    def test_scenario_next_day_settlement(self, matcher, make_sale, make_settlement):
        """150.00 sold on the 10th, settled on the 11th, zero value tolerance."""
        sales = [make_sale("1", 15000, day=10)]
        settlements = [make_settlement("1", 15000, day=11)]
        config = MatchConfig(value_tolerance_cents=0, day_tolerance=1)

        outcome = matcher.match(sales, settlements, config)

        assert len(outcome.groups) == 1
        group = outcome.groups[0]
        assert group.kind == MatchKind.SIMPLE
        assert group.sale_ids == ("1",)
        assert group.settlement_id == "1"
        assert group.day_delta == 1
        assert group.value_delta_cents == 0
        assert outcome.leftover_sales == []
        assert outcome.leftover_settlements == []

    def test_tolerance_boundary_is_inclusive(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 10000, day=1)]
        settlements = [make_settlement("p1", 10100, day=3)]

        outcome = matcher.match(sales, settlements, MatchConfig.from_units("1.00", 2))

        assert len(outcome.groups) == 1
        assert outcome.groups[0].value_delta_cents == -100
        assert outcome.groups[0].day_delta == 2

    @pytest.mark.parametrize("value_tolerance,day_tolerance", [
        ("1.00", 1),
        ("0.99", 2),
    ])
    def test_outside_tolerance_does_not_match(
        self, matcher, make_sale, make_settlement, value_tolerance, day_tolerance
    ):
        sales = [make_sale("s1", 10000, day=1)]
        settlements = [make_settlement("p1", 10100, day=3)]
        config = MatchConfig.from_units(value_tolerance, day_tolerance)

        outcome = matcher.match(sales, settlements, config)

        assert outcome.groups == []
        assert [s.id for s in outcome.leftover_sales] == ["s1"]
        assert [s.id for s in outcome.leftover_settlements] == ["p1"]

    def test_nearest_date_wins_over_nearest_value(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 10000, day=10)]
        settlements = [
            make_settlement("p1", 10000, day=12),  # exact value, two days away
            make_settlement("p2", 10050, day=10),  # same day, 0.50 off
        ]

        outcome = matcher.match(sales, settlements, MatchConfig.from_units("1.00", 2))

        assert outcome.groups[0].settlement_id == "p2"

    def test_full_tie_breaks_on_lowest_settlement_id(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 10000, day=10)]
        settlements = [
            make_settlement("p-b", 10000, day=9),
            make_settlement("p-a", 10000, day=11),
        ]

        outcome = matcher.match(sales, settlements, MatchConfig.from_units("0", 1))

        assert outcome.groups[0].settlement_id == "p-a"

    def test_greedy_order_is_not_globally_optimal(self, matcher, make_sale, make_settlement):
        """
        Known limitation: s1 takes p1 (its closest value) although pairing
        s1-p2 and s2-p1 would have matched everything.
        """
        sales = [
            make_sale("s1", 10000, day=10),
            make_sale("s2", 10150, day=10),
        ]
        settlements = [
            make_settlement("p1", 10050, day=10),
            make_settlement("p2", 9900, day=10),
        ]
        config = MatchConfig.from_units("1.00", 0, grouping_enabled=False)

        outcome = matcher.match(sales, settlements, config)

        assert group_signature(outcome) == [(("s1",), "p1", MatchKind.SIMPLE)]
        assert [s.id for s in outcome.leftover_sales] == ["s2"]
        assert [s.id for s in outcome.leftover_settlements] == ["p2"]

    def test_each_settlement_used_once(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 5000, day=10), make_sale("s2", 5000, day=10)]
        settlements = [make_settlement("p1", 5000, day=10)]
        config = MatchConfig.from_units("0", 0, grouping_enabled=False)

        outcome = matcher.match(sales, settlements, config)

        assert len(outcome.groups) == 1
        assert outcome.groups[0].sale_ids == ("s1",)
        assert [s.id for s in outcome.leftover_sales] == ["s2"]


class TestGroupedMatching:
    """Phase 2: N:1 accumulation."""

    def test_three_sales_one_settlement(self, matcher, make_sale, make_settlement):
        sales = [
            make_sale("s1", 3000, day=10),
            make_sale("s2", 4000, day=10),
            make_sale("s3", 2950, day=10),
        ]
        settlements = [make_settlement("p1", 9950, day=10)]
        config = MatchConfig.from_units("0.50", 0, grouping_enabled=True)

        outcome = matcher.match(sales, settlements, config)

        assert len(outcome.groups) == 1
        group = outcome.groups[0]
        assert group.kind == MatchKind.GROUPED
        assert group.matched_by == MatchKind.GROUPED
        assert set(group.sale_ids) == {"s1", "s2", "s3"}
        assert group.value_delta_cents == 0
        assert outcome.leftover_sales == []
        assert outcome.leftover_settlements == []

    def test_grouping_disabled_leaves_everything(self, matcher, make_sale, make_settlement):
        sales = [
            make_sale("s1", 3000, day=10),
            make_sale("s2", 4000, day=10),
            make_sale("s3", 2950, day=10),
        ]
        settlements = [make_settlement("p1", 9950, day=10)]
        config = MatchConfig.from_units("0.50", 0, grouping_enabled=False)

        outcome = matcher.match(sales, settlements, config)

        assert outcome.groups == []
        assert len(outcome.leftover_sales) == 3
        assert len(outcome.leftover_settlements) == 1

    def test_max_group_size_limits_accumulation(self, matcher, make_sale, make_settlement):
        sales = [make_sale(f"s{i}", 3000, day=10) for i in range(3)]
        settlements = [make_settlement("p1", 9000, day=10)]

        capped = matcher.match(
            sales, settlements, MatchConfig(value_tolerance_cents=0, day_tolerance=0, max_group_size=2)
        )
        uncapped = matcher.match(
            sales, settlements, MatchConfig(value_tolerance_cents=0, day_tolerance=0)
        )

        assert capped.groups == []
        assert len(uncapped.groups) == 1
        assert len(uncapped.groups[0].sale_ids) == 3

    def test_swap_reaches_target(self, matcher, make_sale, make_settlement):
        """10 + 12 falls short, adding 15 overshoots; swapping 12 for 15 lands on 25."""
        sales = [
            make_sale("s1", 1000, day=10),
            make_sale("s2", 1200, day=10),
            make_sale("s3", 1500, day=10),
        ]
        settlements = [make_settlement("p1", 2500, day=10)]
        config = MatchConfig(value_tolerance_cents=0, day_tolerance=0)

        outcome = matcher.match(sales, settlements, config)

        assert len(outcome.groups) == 1
        assert outcome.groups[0].sale_ids == ("s1", "s3")

    def test_day_delta_counts_from_latest_sale(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 4000, day=8), make_sale("s2", 6000, day=9)]
        settlements = [make_settlement("p1", 10000, day=10)]
        config = MatchConfig(value_tolerance_cents=0, day_tolerance=2)

        outcome = matcher.match(sales, settlements, config)

        assert outcome.groups[0].day_delta == 1

    def test_pool_respects_day_window(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 4000, day=1), make_sale("s2", 6000, day=10)]
        settlements = [make_settlement("p1", 10000, day=10)]
        config = MatchConfig(value_tolerance_cents=0, day_tolerance=2)

        outcome = matcher.match(sales, settlements, config)

        assert outcome.groups == []


class TestDescriptionMatching:
    """Reference similarity as a ranking signal."""

    def test_similarity_breaks_ties_when_enabled(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 10000, day=10, external_reference="123456", payment_method="debito")]
        settlements = [
            make_settlement("p1", 10000, day=10, description="RESUMO 999999"),
            make_settlement("p2", 10000, day=10, description="RESUMO 123456"),
        ]

        plain = matcher.match(sales, settlements, MatchConfig(value_tolerance_cents=0, day_tolerance=0))
        ranked = matcher.match(
            sales,
            settlements,
            MatchConfig(value_tolerance_cents=0, day_tolerance=0, description_matching_enabled=True),
        )

        assert plain.groups[0].settlement_id == "p1"
        assert ranked.groups[0].settlement_id == "p2"

    def test_similarity_never_bypasses_value_gate(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 10000, day=10, external_reference="123456")]
        settlements = [make_settlement("p1", 20000, day=10, external_reference="123456")]
        config = MatchConfig(
            value_tolerance_cents=100,
            day_tolerance=0,
            description_matching_enabled=True,
        )

        outcome = matcher.match(sales, settlements, config)

        assert outcome.groups == []


class TestMatcherContract:
    """Determinism, scope checks, partition and purity."""

    @pytest.fixture
    def mixed_inputs(self, make_sale, make_settlement):
        sales = [
            make_sale("s1", 15000, day=3),
            make_sale("s2", 3000, day=5),
            make_sale("s3", 4000, day=5),
            make_sale("s4", 2950, day=5),
            make_sale("s5", 77700, day=7),
            make_sale("s6", 15000, day=3),
        ]
        settlements = [
            make_settlement("p1", 15000, day=4),
            make_settlement("p2", 9950, day=6),
            make_settlement("p3", 15050, day=4),
            make_settlement("p4", 123400, day=20),
        ]
        return sales, settlements

    def test_determinism(self, matcher, mixed_inputs):
        sales, settlements = mixed_inputs
        config = MatchConfig.from_units("1.00", 2)

        first = matcher.match(sales, settlements, config)
        second = matcher.match(list(reversed(sales)), list(reversed(settlements)), config)

        assert group_signature(first) == group_signature(second)
        assert [s.id for s in first.leftover_sales] == [s.id for s in second.leftover_sales]

    def test_partition_completeness(self, matcher, mixed_inputs):
        sales, settlements = mixed_inputs

        outcome = matcher.match(sales, settlements, MatchConfig.from_units("1.00", 2))

        grouped_sales = [sid for g in outcome.groups for sid in g.sale_ids]
        assert len(grouped_sales) + len(outcome.leftover_sales) == len(sales)
        assert len(outcome.groups) + len(outcome.leftover_settlements) == len(settlements)
        assert set(grouped_sales).isdisjoint(s.id for s in outcome.leftover_sales)
        assert len(set(grouped_sales)) == len(grouped_sales)

    def test_empty_inputs(self, matcher):
        outcome = matcher.match([], [], MatchConfig())

        assert outcome.groups == []
        assert outcome.leftover_sales == []
        assert outcome.leftover_settlements == []

    def test_module_level_match(self, make_sale, make_settlement):
        outcome = match(
            [make_sale("s1", 1000)],
            [make_settlement("p1", 1000)],
            MatchConfig(),
        )
        assert len(outcome.groups) == 1

    def test_mixed_terminals_rejected(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 1000, terminal_id="T1")]
        settlements = [make_settlement("p1", 1000, terminal_id="T2")]

        with pytest.raises(InvalidScopeError) as exc_info:
            matcher.match(sales, settlements, MatchConfig())

        assert exc_info.value.details["scopes"] == ["T1/2024-01", "T2/2024-01"]

    def test_mixed_periods_rejected(self, matcher, make_sale):
        sales = [make_sale("s1", 1000, period="2024-01"), make_sale("s2", 1000, period="2024-02")]

        with pytest.raises(InvalidScopeError):
            matcher.match(sales, [], MatchConfig())

    def test_inputs_not_mutated(self, matcher, make_sale, make_settlement):
        sales = [make_sale("s1", 1000)]
        settlements = [make_settlement("p1", 1000)]

        matcher.match(sales, settlements, MatchConfig())

        assert sales[0].match_status == MatchStatus.UNMATCHED
        assert settlements[0].match_status == MatchStatus.UNMATCHED

    def test_phase_callbacks(self, matcher):
        phases = []

        matcher.match([], [], MatchConfig(grouping_enabled=True), on_phase=phases.append)
        assert phases == [RunStatus.MATCHING_SIMPLE, RunStatus.MATCHING_GROUPED]

        phases.clear()
        matcher.match([], [], MatchConfig(grouping_enabled=False), on_phase=phases.append)
        assert phases == [RunStatus.MATCHING_SIMPLE]
