"""
Tolerance suggestions and anomaly detection for card-terminal reconciliation.

Suggestions come from past runs that reconciled well; without such history,
from known settlement behaviour of each processor.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Sequence

import numpy as np
import structlog

from ..config import get_settings
from ..models import ReconciliationRun, RunStatus, SaleRecord, SettlementRecord
from ..utils.money import format_brl, from_cents

logger = structlog.get_logger()


@dataclass(frozen=True)
class ToleranceSuggestion:
    value_tolerance: Decimal  # currency units
    day_tolerance: int
    source: str  # "history" or "processor_default"
    based_on_runs: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "value_tolerance": str(self.value_tolerance),
            "day_tolerance": self.day_tolerance,
            "source": self.source,
            "based_on_runs": self.based_on_runs,
        }


# Typical settlement behaviour per processor: fee rounding noise and deposit delay
PROCESSOR_DEFAULTS: Dict[str, ToleranceSuggestion] = {
    "rede": ToleranceSuggestion(Decimal("0.75"), 1, "processor_default"),
    "sipag": ToleranceSuggestion(Decimal("1.00"), 2, "processor_default"),
}
FALLBACK_DEFAULT = ToleranceSuggestion(Decimal("1.00"), 2, "processor_default")


class ToleranceAdvisor:
    """Suggests tolerances and flags anomalous inputs."""

    def __init__(self):
        self.settings = get_settings()

    def suggest_tolerance(
        self,
        runs: Sequence[ReconciliationRun],
        processor: str = "",
    ) -> ToleranceSuggestion:
        """
        Average the tolerances of completed runs whose success rate beats the
        threshold; fall back to the processor default when there are none.
        """
        successful = [
            r for r in runs
            if r.status == RunStatus.COMPLETED
            and r.counts.records_loaded > 0
            and r.counts.success_rate > self.settings.success_rate_threshold
        ]

        if not successful:
            return PROCESSOR_DEFAULTS.get(processor.lower(), FALLBACK_DEFAULT)

        value_cents = np.mean([r.config.value_tolerance_cents for r in successful])
        days = np.mean([r.config.day_tolerance for r in successful])

        suggestion = ToleranceSuggestion(
            value_tolerance=from_cents(int(round(float(value_cents)))),
            day_tolerance=int(round(float(days))),
            source="history",
            based_on_runs=len(successful),
        )
        logger.info(
            "Tolerance suggested from history",
            processor=processor,
            runs=len(successful),
            value_tolerance=str(suggestion.value_tolerance),
            day_tolerance=suggestion.day_tolerance,
        )
        return suggestion

    def detect_anomalies(
        self,
        sales: Sequence[SaleRecord],
        settlements: Sequence[SettlementRecord],
    ) -> List[str]:
        """Human-readable warnings about volume or value imbalance."""
        anomalies: List[str] = []
        if not sales:
            return anomalies

        volume_gap = abs(len(sales) - len(settlements)) / len(sales)
        if volume_gap > self.settings.anomaly_volume_ratio:
            anomalies.append(
                f"Volume divergence: {len(sales)} sales vs {len(settlements)} "
                f"settlements ({volume_gap * 100:.1f}% difference)"
            )

        sales_total = sum(s.net_amount_cents for s in sales)
        settled_total = sum(s.amount_cents for s in settlements)
        value_gap = abs(sales_total - settled_total)
        if sales_total > 0 and value_gap > sales_total * self.settings.anomaly_value_ratio:
            anomalies.append(
                f"Significant value difference: {format_brl(value_gap)} "
                f"({value_gap / sales_total * 100:.1f}% of net sales)"
            )

        return anomalies
