"""Data models for the card-terminal reconciliation system."""

from .enums import (
    AuditAction,
    DivergenceKind,
    DivergenceStatus,
    MatchKind,
    MatchStatus,
    ResolutionKind,
    RunStatus,
)
from .records import (
    SaleRecord,
    SettlementRecord,
    Terminal,
)
from .reconciliation import (
    AuditEntry,
    Divergence,
    MatchConfig,
    MatchGroup,
    PerformanceStats,
    ProcessorBreakdown,
    ReconciliationRun,
    Resolution,
    RunCounts,
    StatsScope,
)

__all__ = [
    # Enums
    "AuditAction",
    "DivergenceKind",
    "DivergenceStatus",
    "MatchKind",
    "MatchStatus",
    "ResolutionKind",
    "RunStatus",
    # Records
    "SaleRecord",
    "SettlementRecord",
    "Terminal",
    # Reconciliation
    "AuditEntry",
    "Divergence",
    "MatchConfig",
    "MatchGroup",
    "PerformanceStats",
    "ProcessorBreakdown",
    "ReconciliationRun",
    "Resolution",
    "RunCounts",
    "StatsScope",
]
