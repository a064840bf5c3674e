"""
Statistics Aggregator - read-only performance metrics over persisted runs.
"""

from collections import Counter
from typing import Dict, Optional

import numpy as np
import structlog

from ..models import (
    DivergenceStatus,
    PerformanceStats,
    ProcessorBreakdown,
    RunStatus,
    StatsScope,
)
from ..store import InMemoryRecordStore

logger = structlog.get_logger()


class StatisticsAggregator:
    """
    Computes PerformanceStats for a scope of completed runs.

    Records are attributed to the run that loaded them, divergences to the
    run that created them (a reopened divergence keeps its original run).
    """

    def __init__(self, store: InMemoryRecordStore):
        self.store = store

    def compute_performance(self, scope: Optional[StatsScope] = None) -> PerformanceStats:
        scope = scope or StatsScope()
        stats = PerformanceStats()

        runs = [
            r for r in self.store.list_runs()
            if r.status == RunStatus.COMPLETED and scope.includes(r)
        ]
        if not runs:
            return stats

        processors: Dict[str, ProcessorBreakdown] = {}
        run_processor: Dict[str, str] = {}

        for run in runs:
            processor = self.store.processor_of(run.terminal_id)
            run_processor[run.id] = processor
            breakdown = processors.setdefault(processor, ProcessorBreakdown(processor))

            stats.runs += 1
            stats.total_records += run.counts.records_loaded
            stats.matched_records += run.counts.records_matched
            stats.match_groups_simple += run.counts.matched_simple
            stats.match_groups_grouped += run.counts.matched_grouped

            breakdown.total_records += run.counts.records_loaded
            breakdown.matched_records += run.counts.records_matched

        divergences = [
            d for d in self.store.list_divergences()
            if d.run_id in run_processor
        ]

        resolution_times = []
        for divergence in divergences:
            breakdown = processors[run_processor[divergence.run_id]]
            if divergence.status == DivergenceStatus.PENDING:
                stats.pending_divergences += 1
                stats.pending_amount_cents += abs(divergence.difference_cents)
                breakdown.pending_divergences += 1
                continue

            if divergence.status == DivergenceStatus.JUSTIFIED:
                stats.justified_divergences += 1
            else:
                stats.resolved_divergences += 1
            breakdown.resolved_divergences += 1

            seconds = divergence.resolution_seconds
            if seconds is not None:
                resolution_times.append(seconds)

        if resolution_times:
            stats.mean_resolution_seconds = float(np.mean(resolution_times))

        stats.by_processor = processors
        stats.by_kind = dict(Counter(d.kind for d in divergences))

        logger.info(
            "Performance computed",
            runs=stats.runs,
            total_records=stats.total_records,
            reconciliation_rate=round(stats.reconciliation_rate, 4),
            pending=stats.pending_divergences,
        )
        return stats
