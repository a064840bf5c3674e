"""
Divergence Builder - turns matcher leftovers into typed divergences.
"""

from typing import Dict, List, Optional, Sequence

import structlog

from ..config import get_settings
from ..models import (
    Divergence,
    DivergenceKind,
    MatchGroup,
    SaleRecord,
    SettlementRecord,
)
from ..utils.money import format_brl, to_cents

logger = structlog.get_logger()


class DivergenceBuilder:
    """
    Builds pending divergences.

    ``build`` covers the core flow: every leftover sale or settlement becomes
    one divergence. ``review`` is an optional stricter pass over groups the
    matcher already accepted, for manual review workflows; its output is
    stored with ``store.add_divergence`` and never goes through a run commit.
    """

    def build(
        self,
        leftover_sales: Sequence[SaleRecord],
        leftover_settlements: Sequence[SettlementRecord],
        run_id: Optional[str] = None,
    ) -> List[Divergence]:
        divergences = []

        for sale in leftover_sales:
            divergences.append(Divergence(
                kind=DivergenceKind.SALE_WITHOUT_SETTLEMENT,
                terminal_id=sale.terminal_id,
                period=sale.period,
                run_id=run_id,
                description=self._describe_sale(sale),
                expected_value_cents=sale.net_amount_cents,
                found_value_cents=0,
                sale_id=sale.id,
            ))

        for settlement in leftover_settlements:
            divergences.append(Divergence(
                kind=DivergenceKind.SETTLEMENT_WITHOUT_SALE,
                terminal_id=settlement.terminal_id,
                period=settlement.period,
                run_id=run_id,
                description=self._describe_settlement(settlement),
                expected_value_cents=0,
                found_value_cents=settlement.amount_cents,
                settlement_id=settlement.id,
            ))

        logger.info(
            "Divergences built",
            run_id=run_id,
            sales_without_settlement=len(leftover_sales),
            settlements_without_sale=len(leftover_settlements),
        )
        return divergences

    def review(
        self,
        groups: Sequence[MatchGroup],
        settlements: Sequence[SettlementRecord],
        run_id: Optional[str] = None,
        value_tolerance_cents: Optional[int] = None,
        day_tolerance: Optional[int] = None,
    ) -> List[Divergence]:
        """
        Flag accepted groups whose deltas exceed a stricter tolerance.

        A value delta beyond the strict value tolerance yields
        ``value_mismatch``; otherwise a day delta beyond the strict day
        tolerance yields ``date_mismatch``.
        """
        settings = get_settings()
        if value_tolerance_cents is None:
            value_tolerance_cents = to_cents(settings.review_value_tolerance)
        if day_tolerance is None:
            day_tolerance = settings.review_day_tolerance

        settlement_by_id: Dict[str, SettlementRecord] = {s.id: s for s in settlements}
        divergences = []

        for group in groups:
            settlement = settlement_by_id.get(group.settlement_id)
            if settlement is None:
                logger.warning(
                    "Review skipped group with unknown settlement",
                    group_id=group.id,
                    settlement_id=group.settlement_id,
                )
                continue

            expected = settlement.amount_cents + group.value_delta_cents

            if abs(group.value_delta_cents) > value_tolerance_cents:
                kind = DivergenceKind.VALUE_MISMATCH
                description = (
                    f"Sales total {format_brl(expected)} vs settlement "
                    f"{format_brl(settlement.amount_cents)} on "
                    f"{settlement.settlement_date:%d/%m/%Y} "
                    f"(difference {format_brl(group.value_delta_cents)})"
                )
            elif abs(group.day_delta) > day_tolerance:
                kind = DivergenceKind.DATE_MISMATCH
                description = (
                    f"Settlement of {format_brl(settlement.amount_cents)} on "
                    f"{settlement.settlement_date:%d/%m/%Y} arrived "
                    f"{group.day_delta} day(s) from its sales"
                )
            else:
                continue

            divergences.append(Divergence(
                kind=kind,
                terminal_id=settlement.terminal_id,
                period=settlement.period,
                run_id=run_id or group.run_id,
                description=description,
                expected_value_cents=expected,
                found_value_cents=settlement.amount_cents,
                settlement_id=settlement.id,
            ))

        logger.info("Review pass complete", groups=len(groups), flagged=len(divergences))
        return divergences

    @staticmethod
    def _describe_sale(sale: SaleRecord) -> str:
        label = f"NSU {sale.external_reference}" if sale.external_reference else sale.id
        method = f" ({sale.payment_method})" if sale.payment_method else ""
        return (
            f"Sale {label}{method} of {format_brl(sale.net_amount_cents)} on "
            f"{sale.sale_date:%d/%m/%Y} without matching settlement"
        )

    @staticmethod
    def _describe_settlement(settlement: SettlementRecord) -> str:
        text = f" - {settlement.description}" if settlement.description else ""
        return (
            f"Settlement of {format_brl(settlement.amount_cents)} on "
            f"{settlement.settlement_date:%d/%m/%Y} without matching sale{text}"
        )
