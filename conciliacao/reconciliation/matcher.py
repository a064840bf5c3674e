"""
Matcher - pairs terminal sales with processor settlements.

Phase 1 (simple 1:1): greedy nearest-date match inside the value/day
tolerance window.
Phase 2 (grouped N:1): for each leftover settlement, accumulate leftover sales
in ascending amount until their sum lands inside the tolerance window.

Both phases are deterministic: the same inputs and config always produce the
same groups. Phase 1 is greedy and not globally optimal; an earlier sale can
take a settlement that a later sale needed. Downstream reports rely on this
exact order, so it is kept as is.
"""

from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import structlog

from ..exceptions import InvalidScopeError
from ..models import (
    MatchConfig,
    MatchGroup,
    MatchKind,
    RunStatus,
    SaleRecord,
    SettlementRecord,
)
from ..utils.text_similarity import TextSimilarityEngine

logger = structlog.get_logger()

PhaseCallback = Callable[[RunStatus], None]


@dataclass
class MatchOutcome:
    """Result of matching one (terminal, period)."""
    groups: List[MatchGroup]
    leftover_sales: List[SaleRecord]
    leftover_settlements: List[SettlementRecord]
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def simple_groups(self) -> List[MatchGroup]:
        return [g for g in self.groups if len(g.sale_ids) == 1]

    @property
    def grouped_groups(self) -> List[MatchGroup]:
        return [g for g in self.groups if len(g.sale_ids) > 1]


@dataclass
class CandidateMatch:
    """A settlement inside the tolerance window of a sale."""
    settlement: SettlementRecord
    day_delta: int  # settlement date - sale date
    value_delta_cents: int  # sale net - settlement amount
    text_similarity: float = 0.0

    def rank_key(self) -> Tuple[int, int, float, str]:
        return (
            abs(self.day_delta),
            abs(self.value_delta_cents),
            -self.text_similarity,
            self.settlement.id,
        )


class ReconciliationMatcher:
    """
    Matches sales against settlements for a single (terminal, period).

    The matcher never mutates its inputs; match-status changes are applied by
    the store when the run is committed.
    """

    def __init__(self, similarity_engine: Optional[TextSimilarityEngine] = None):
        self.similarity_engine = similarity_engine or TextSimilarityEngine()

    def match(
        self,
        sales: Sequence[SaleRecord],
        settlements: Sequence[SettlementRecord],
        config: MatchConfig,
        run_id: Optional[str] = None,
        on_phase: Optional[PhaseCallback] = None,
    ) -> MatchOutcome:
        """
        Match sales to settlements.

        Args:
            sales: Unmatched sale records of one (terminal, period)
            settlements: Unmatched settlement records of the same scope
            config: Tolerances and phase switches
            run_id: Run the produced groups are attributed to
            on_phase: Optional callback notified at each phase boundary

        Returns:
            MatchOutcome with groups and leftover records

        Raises:
            InvalidScopeError: if records span more than one terminal or period
        """
        self._validate_scope(sales, settlements)

        logger.info(
            "Starting matching",
            sales=len(sales),
            settlements=len(settlements),
            value_tolerance_cents=config.value_tolerance_cents,
            day_tolerance=config.day_tolerance,
            grouping=config.grouping_enabled,
        )

        ordered_sales = sorted(sales, key=lambda s: (s.sale_date, s.id))
        ordered_settlements = sorted(
            settlements,
            key=lambda s: (s.settlement_date, s.amount_cents, s.id),
        )

        taken_sales: Set[str] = set()
        taken_settlements: Set[str] = set()

        if on_phase:
            on_phase(RunStatus.MATCHING_SIMPLE)
        groups = self._match_simple(
            ordered_sales, ordered_settlements, config, run_id,
            taken_sales, taken_settlements,
        )
        simple_count = len(groups)

        if config.grouping_enabled:
            if on_phase:
                on_phase(RunStatus.MATCHING_GROUPED)
            groups.extend(self._match_grouped(
                ordered_sales, ordered_settlements, config, run_id,
                taken_sales, taken_settlements,
            ))

        leftover_sales = [s for s in ordered_sales if s.id not in taken_sales]
        leftover_settlements = [
            s for s in ordered_settlements if s.id not in taken_settlements
        ]

        stats = {
            "total_sales": len(sales),
            "total_settlements": len(settlements),
            "simple_groups": simple_count,
            "grouped_groups": len(groups) - simple_count,
            "leftover_sales": len(leftover_sales),
            "leftover_settlements": len(leftover_settlements),
        }

        logger.info("Matching complete", **stats)

        return MatchOutcome(
            groups=groups,
            leftover_sales=leftover_sales,
            leftover_settlements=leftover_settlements,
            stats=stats,
        )

    def _validate_scope(
        self,
        sales: Sequence[SaleRecord],
        settlements: Sequence[SettlementRecord],
    ) -> None:
        scopes = {(s.terminal_id, s.period) for s in sales}
        scopes.update((s.terminal_id, s.period) for s in settlements)
        if len(scopes) > 1:
            raise InvalidScopeError(
                "records span more than one terminal/period",
                details={"scopes": sorted(f"{t}/{p}" for t, p in scopes)},
            )

    # ------------------------------------------------------------------
    # Phase 1: simple 1:1
    # ------------------------------------------------------------------

    def _match_simple(
        self,
        sales: List[SaleRecord],
        settlements: List[SettlementRecord],
        config: MatchConfig,
        run_id: Optional[str],
        taken_sales: Set[str],
        taken_settlements: Set[str],
    ) -> List[MatchGroup]:
        groups = []

        # Settlements arrive sorted by date first, so the day window is a slice
        ordinals = [s.settlement_date.toordinal() for s in settlements]

        for sale in sales:
            candidates = []
            for settlement in self._in_day_window(
                settlements, ordinals, sale.sale_date, config.day_tolerance
            ):
                if settlement.id in taken_settlements:
                    continue
                value_delta = sale.net_amount_cents - settlement.amount_cents
                if abs(value_delta) > config.value_tolerance_cents:
                    continue
                candidates.append(CandidateMatch(
                    settlement=settlement,
                    day_delta=(settlement.settlement_date - sale.sale_date).days,
                    value_delta_cents=value_delta,
                    text_similarity=self._similarity(sale, settlement, config),
                ))

            if not candidates:
                continue

            best = min(candidates, key=CandidateMatch.rank_key)
            taken_sales.add(sale.id)
            taken_settlements.add(best.settlement.id)

            groups.append(MatchGroup(
                sale_ids=(sale.id,),
                settlement_id=best.settlement.id,
                run_id=run_id,
                value_delta_cents=best.value_delta_cents,
                day_delta=best.day_delta,
                match_reason=self._build_match_reason(
                    best.value_delta_cents, best.day_delta, best.text_similarity
                ),
            ))

            logger.debug(
                "Simple match",
                sale_id=sale.id,
                settlement_id=best.settlement.id,
                day_delta=best.day_delta,
                value_delta_cents=best.value_delta_cents,
                candidates=len(candidates),
            )

        return groups

    # ------------------------------------------------------------------
    # Phase 2: grouped N:1
    # ------------------------------------------------------------------

    def _match_grouped(
        self,
        sales: List[SaleRecord],
        settlements: List[SettlementRecord],
        config: MatchConfig,
        run_id: Optional[str],
        taken_sales: Set[str],
        taken_settlements: Set[str],
    ) -> List[MatchGroup]:
        groups = []

        # Sales arrive sorted by (date, id)
        ordinals = [s.sale_date.toordinal() for s in sales]

        for settlement in settlements:
            if settlement.id in taken_settlements:
                continue

            pool = [
                s for s in self._in_day_window(
                    sales, ordinals, settlement.settlement_date, config.day_tolerance
                )
                if s.id not in taken_sales
            ]
            if not pool:
                continue

            similarity = {
                s.id: self._similarity(s, settlement, config) for s in pool
            }
            pool.sort(key=lambda s: (
                s.net_amount_cents, -similarity[s.id], s.sale_date, s.id
            ))

            selected = self._accumulate(
                pool,
                settlement.amount_cents,
                config.value_tolerance_cents,
                config.max_group_size,
            )
            if not selected:
                continue

            taken_settlements.add(settlement.id)
            taken_sales.update(s.id for s in selected)

            total = sum(s.net_amount_cents for s in selected)
            latest_sale = max(s.sale_date for s in selected)
            value_delta = total - settlement.amount_cents
            day_delta = (settlement.settlement_date - latest_sale).days
            mean_similarity = sum(similarity[s.id] for s in selected) / len(selected)

            groups.append(MatchGroup(
                sale_ids=tuple(sorted(s.id for s in selected)),
                settlement_id=settlement.id,
                run_id=run_id,
                value_delta_cents=value_delta,
                day_delta=day_delta,
                matched_by=MatchKind.GROUPED,
                match_reason=self._build_match_reason(
                    value_delta, day_delta, mean_similarity, group_size=len(selected)
                ),
            ))

            logger.debug(
                "Grouped match",
                settlement_id=settlement.id,
                sales=len(selected),
                pool=len(pool),
                value_delta_cents=value_delta,
            )

        return groups

    @staticmethod
    def _accumulate(
        pool: List[SaleRecord],
        target_cents: int,
        tolerance_cents: int,
        max_size: int,
    ) -> Optional[List[SaleRecord]]:
        """
        Ascending-amount accumulation with one-step backtracking.

        ``pool`` must be sorted by ascending net amount. Candidates are added
        while the running sum stays under the upper bound and the group has
        room; otherwise the last accepted sale is swapped for the (larger)
        candidate. Since later candidates are never smaller, a swap that
        overshoots ends the search.
        """
        low = target_cents - tolerance_cents
        high = target_cents + tolerance_cents

        selected: List[SaleRecord] = []
        total = 0

        for candidate in pool:
            amount = candidate.net_amount_cents
            if len(selected) < max_size and total + amount <= high:
                selected.append(candidate)
                total += amount
            elif selected:
                swapped = total - selected[-1].net_amount_cents + amount
                if swapped > high:
                    break
                selected[-1] = candidate
                total = swapped
            else:
                break

            if low <= total <= high:
                return selected

        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _in_day_window(records: list, ordinals: List[int], center: date, days: int) -> list:
        """Slice of date-sorted ``records`` within ``days`` of ``center``."""
        start = bisect_left(ordinals, center.toordinal() - days)
        end = bisect_right(ordinals, center.toordinal() + days)
        return records[start:end]

    def _similarity(
        self,
        sale: SaleRecord,
        settlement: SettlementRecord,
        config: MatchConfig,
    ) -> float:
        if not config.description_matching_enabled:
            return 0.0
        return self.similarity_engine.similarity(
            sale.reference_text(), settlement.reference_text()
        )

    @staticmethod
    def _build_match_reason(
        value_delta: int,
        day_delta: int,
        similarity: float,
        group_size: int = 1,
    ) -> str:
        """Build human-readable match reason."""
        reasons = [f"grouped_{group_size}_sales"] if group_size > 1 else []
        reasons.append("exact_amount" if value_delta == 0 else "within_value_tolerance")
        reasons.append("same_day" if day_delta == 0 else "within_day_tolerance")
        if similarity >= 0.8:
            reasons.append("high_reference_similarity")
        return ", ".join(reasons)


def match(
    sales: Sequence[SaleRecord],
    settlements: Sequence[SettlementRecord],
    config: MatchConfig,
) -> MatchOutcome:
    """Match one (terminal, period) with a default matcher."""
    return ReconciliationMatcher().match(sales, settlements, config)
