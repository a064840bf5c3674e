"""Reconciliation result models."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, List, Dict, Any, Tuple, FrozenSet
from uuid import uuid4

from ..exceptions import ValidationError
from ..utils.money import Number, to_cents, from_cents
from .enums import (
    AuditAction,
    DivergenceKind,
    DivergenceStatus,
    MatchKind,
    ResolutionKind,
    RunStatus,
)


@dataclass(frozen=True)
class MatchConfig:
    """
    Run-scoped matching parameters.

    ``learning_enabled`` is accepted and carried in run snapshots but has no
    behavioural effect.
    """
    value_tolerance_cents: int = 100
    day_tolerance: int = 2
    grouping_enabled: bool = True
    description_matching_enabled: bool = False
    learning_enabled: bool = False
    max_group_size: int = 10

    def __post_init__(self):
        if self.value_tolerance_cents < 0:
            raise ValidationError("value tolerance must be >= 0", field="value_tolerance")
        if self.day_tolerance < 0:
            raise ValidationError("day tolerance must be >= 0", field="day_tolerance")
        if self.max_group_size < 1:
            raise ValidationError("max group size must be >= 1", field="max_group_size")

    @classmethod
    def from_units(
        cls,
        value_tolerance: Number,
        day_tolerance: int,
        **kwargs: Any,
    ) -> "MatchConfig":
        """Build a config from a value tolerance in currency units (e.g. ``"1.00"``)."""
        try:
            cents = to_cents(value_tolerance)
        except ValueError as e:
            raise ValidationError(str(e), field="value_tolerance") from e
        return cls(value_tolerance_cents=cents, day_tolerance=day_tolerance, **kwargs)

    @classmethod
    def from_settings(cls) -> "MatchConfig":
        """Build the default config from application settings."""
        from ..config import get_settings

        settings = get_settings()
        return cls.from_units(
            settings.default_value_tolerance,
            settings.default_day_tolerance,
            grouping_enabled=settings.default_grouping_enabled,
            description_matching_enabled=settings.default_description_matching_enabled,
            max_group_size=settings.default_max_group_size,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value_tolerance_cents": self.value_tolerance_cents,
            "value_tolerance": str(from_cents(self.value_tolerance_cents)),
            "day_tolerance": self.day_tolerance,
            "grouping_enabled": self.grouping_enabled,
            "description_matching_enabled": self.description_matching_enabled,
            "learning_enabled": self.learning_enabled,
            "max_group_size": self.max_group_size,
        }


@dataclass(frozen=True)
class MatchGroup:
    """A confirmed match between one or more sales and a single settlement."""
    sale_ids: Tuple[str, ...]
    settlement_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    run_id: Optional[str] = None

    # Deltas: value = sum(sale net) - settlement amount, day = settlement - latest sale
    value_delta_cents: int = 0
    day_delta: int = 0

    # Phase that produced the group
    matched_by: MatchKind = MatchKind.SIMPLE

    # Audit
    matched_at: datetime = field(default_factory=datetime.utcnow)
    match_reason: str = ""

    def __post_init__(self):
        if not self.sale_ids:
            raise ValueError("A match group needs at least one sale")

    @property
    def kind(self) -> MatchKind:
        return MatchKind.SIMPLE if len(self.sale_ids) == 1 else MatchKind.GROUPED

    @property
    def is_exact(self) -> bool:
        """Check if amounts and dates match exactly."""
        return self.value_delta_cents == 0 and self.day_delta == 0

    @property
    def cardinality(self) -> int:
        """Number of records involved in this match."""
        return len(self.sale_ids) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "kind": self.kind.value,
            "matched_by": self.matched_by.value,
            "sale_ids": list(self.sale_ids),
            "settlement_id": self.settlement_id,
            "value_delta_cents": self.value_delta_cents,
            "day_delta": self.day_delta,
            "match_reason": self.match_reason,
        }


@dataclass(frozen=True)
class Resolution:
    """How a divergence left the pending state."""
    kind: ResolutionKind
    motive: str
    adjustment_value_cents: Optional[int] = None
    resolved_at: datetime = field(default_factory=datetime.utcnow)
    resolved_by: str = "system"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "motive": self.motive,
            "adjustment_value_cents": self.adjustment_value_cents,
            "resolved_at": self.resolved_at.isoformat(),
            "resolved_by": self.resolved_by,
        }


@dataclass(frozen=True)
class Divergence:
    """
    An unresolved or resolved discrepancy.

    Divergences are never mutated in place: the resolver stores a new version
    with a terminal status, and corrections are new divergences pointing at
    the one they supersede.
    """
    kind: DivergenceKind
    terminal_id: str
    period: str
    id: str = field(default_factory=lambda: str(uuid4()))
    run_id: Optional[str] = None

    description: str = ""
    expected_value_cents: int = 0
    found_value_cents: int = 0

    # Originating records
    sale_id: Optional[str] = None
    settlement_id: Optional[str] = None

    status: DivergenceStatus = DivergenceStatus.PENDING
    resolution: Optional[Resolution] = None
    supersedes_id: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def difference_cents(self) -> int:
        return self.found_value_cents - self.expected_value_cents

    @property
    def is_pending(self) -> bool:
        return self.status == DivergenceStatus.PENDING

    @property
    def resolution_seconds(self) -> Optional[float]:
        """Time from creation to resolution, None while pending."""
        if self.resolution is None:
            return None
        return (self.resolution.resolved_at - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "terminal_id": self.terminal_id,
            "period": self.period,
            "kind": self.kind.value,
            "description": self.description,
            "expected_value_cents": self.expected_value_cents,
            "found_value_cents": self.found_value_cents,
            "sale_id": self.sale_id,
            "settlement_id": self.settlement_id,
            "status": self.status.value,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "supersedes_id": self.supersedes_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RunCounts:
    """Outcome counts of a reconciliation run."""
    sales_loaded: int = 0
    settlements_loaded: int = 0
    matched_simple: int = 0
    matched_grouped: int = 0
    sales_matched: int = 0
    settlements_matched: int = 0
    divergences_created: int = 0

    @property
    def records_loaded(self) -> int:
        return self.sales_loaded + self.settlements_loaded

    @property
    def records_matched(self) -> int:
        return self.sales_matched + self.settlements_matched

    @property
    def success_rate(self) -> float:
        """Fraction of loaded records that ended up matched."""
        if self.records_loaded == 0:
            return 0.0
        return self.records_matched / self.records_loaded

    def to_dict(self) -> Dict[str, int]:
        return {
            "sales_loaded": self.sales_loaded,
            "settlements_loaded": self.settlements_loaded,
            "matched_simple": self.matched_simple,
            "matched_grouped": self.matched_grouped,
            "sales_matched": self.sales_matched,
            "settlements_matched": self.settlements_matched,
            "divergences_created": self.divergences_created,
        }


@dataclass
class ReconciliationRun:
    """One execution of the matcher for a (terminal, period)."""
    terminal_id: str
    period: str
    config: MatchConfig
    id: str = field(default_factory=lambda: str(uuid4()))

    status: RunStatus = RunStatus.PENDING
    counts: RunCounts = field(default_factory=RunCounts)

    # Timing
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    # Error handling
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def scope(self) -> Tuple[str, str]:
        return (self.terminal_id, self.period)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "terminal_id": self.terminal_id,
            "period": self.period,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "counts": self.counts.to_dict(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "warnings": self.warnings,
        }


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)

    # Action
    action: AuditAction = AuditAction.RUN_STARTED

    # Context
    run_id: Optional[str] = None
    divergence_id: Optional[str] = None
    record_ids: List[str] = field(default_factory=list)

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Outcome
    success: bool = True
    error_message: Optional[str] = None


@dataclass(frozen=True)
class StatsScope:
    """Terminal set and/or run date range for performance statistics."""
    terminal_ids: Optional[FrozenSet[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def includes(self, run: ReconciliationRun) -> bool:
        if self.terminal_ids is not None and run.terminal_id not in self.terminal_ids:
            return False
        run_date = run.started_at.date()
        if self.start_date is not None and run_date < self.start_date:
            return False
        if self.end_date is not None and run_date > self.end_date:
            return False
        return True


@dataclass
class ProcessorBreakdown:
    """Per-processor slice of the performance statistics."""
    processor: str
    total_records: int = 0
    matched_records: int = 0
    pending_divergences: int = 0
    resolved_divergences: int = 0

    @property
    def reconciliation_rate(self) -> float:
        if self.total_records == 0:
            return 0.0
        return self.matched_records / self.total_records


@dataclass
class PerformanceStats:
    """Performance metrics derived from persisted runs and divergences."""
    runs: int = 0
    total_records: int = 0
    matched_records: int = 0
    match_groups_simple: int = 0
    match_groups_grouped: int = 0

    pending_divergences: int = 0
    resolved_divergences: int = 0
    justified_divergences: int = 0
    pending_amount_cents: int = 0

    mean_resolution_seconds: float = 0.0

    by_processor: Dict[str, ProcessorBreakdown] = field(default_factory=dict)
    by_kind: Dict[DivergenceKind, int] = field(default_factory=dict)

    @property
    def reconciliation_rate(self) -> float:
        """Matched records over total records (0.0 - 1.0)."""
        if self.total_records == 0:
            return 0.0
        return self.matched_records / self.total_records

    @property
    def mean_resolution_hours(self) -> float:
        return self.mean_resolution_seconds / 3600

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "total_records": self.total_records,
            "matched_records": self.matched_records,
            "reconciliation_rate": self.reconciliation_rate,
            "match_groups_simple": self.match_groups_simple,
            "match_groups_grouped": self.match_groups_grouped,
            "pending_divergences": self.pending_divergences,
            "resolved_divergences": self.resolved_divergences,
            "justified_divergences": self.justified_divergences,
            "pending_amount_cents": self.pending_amount_cents,
            "mean_resolution_seconds": self.mean_resolution_seconds,
            "by_processor": {
                name: {
                    "total_records": b.total_records,
                    "matched_records": b.matched_records,
                    "reconciliation_rate": b.reconciliation_rate,
                    "pending_divergences": b.pending_divergences,
                    "resolved_divergences": b.resolved_divergences,
                }
                for name, b in self.by_processor.items()
            },
            "by_kind": {kind.value: count for kind, count in self.by_kind.items()},
        }
