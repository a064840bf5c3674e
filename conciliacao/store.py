"""
In-memory record store.

Holds the two record streams (sales and settlements) per terminal and period,
plus everything a reconciliation run persists: match groups, divergences and
the runs themselves. Writes that belong to one run go through ``commit_run``,
which is all-or-nothing.
"""

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from .exceptions import ConflictError, NotFoundError, PersistenceError, ReconciliationError
from .models import (
    Divergence,
    DivergenceStatus,
    MatchGroup,
    MatchKind,
    MatchStatus,
    ReconciliationRun,
    SaleRecord,
    SettlementRecord,
    Terminal,
)

logger = structlog.get_logger()


def _duplicate_ids(records: List, stored: Dict) -> List[str]:
    """Ids already stored or repeated within the batch, in batch order."""
    seen = set()
    duplicates = []
    for record in records:
        if record.id in stored or record.id in seen:
            duplicates.append(record.id)
        seen.add(record.id)
    return duplicates


class InMemoryRecordStore:
    """
    Thread-safe in-memory store.

    Records are immutable; a match-status change replaces the stored record.
    Divergences follow the same rule and are only ever replaced through
    ``replace_divergence``, which checks the expected current status.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._terminals: Dict[str, Terminal] = {}
        self._sales: Dict[str, SaleRecord] = {}
        self._settlements: Dict[str, SettlementRecord] = {}
        self._groups: Dict[str, MatchGroup] = {}
        self._divergences: Dict[str, Divergence] = {}
        self._runs: Dict[str, ReconciliationRun] = {}

    # ------------------------------------------------------------------
    # Terminals
    # ------------------------------------------------------------------

    def register_terminal(self, terminal: Terminal) -> None:
        with self._lock:
            self._terminals[terminal.id] = terminal

    def get_terminal(self, terminal_id: str) -> Optional[Terminal]:
        with self._lock:
            return self._terminals.get(terminal_id)

    def processor_of(self, terminal_id: str) -> str:
        """Processor name of a terminal, ``"unknown"`` when not registered."""
        terminal = self.get_terminal(terminal_id)
        if terminal is None or not terminal.processor:
            return "unknown"
        return terminal.processor.lower()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def add_sales(self, sales: Iterable[SaleRecord]) -> int:
        """Add parsed sale records. Duplicate ids are rejected as a batch."""
        sales = list(sales)
        with self._lock:
            duplicates = _duplicate_ids(sales, self._sales)
            if duplicates:
                raise ConflictError(
                    "sale records already exist",
                    details={"ids": duplicates},
                )
            for sale in sales:
                self._sales[sale.id] = sale
        return len(sales)

    def add_settlements(self, settlements: Iterable[SettlementRecord]) -> int:
        """Add parsed settlement records. Duplicate ids are rejected as a batch."""
        settlements = list(settlements)
        with self._lock:
            duplicates = _duplicate_ids(settlements, self._settlements)
            if duplicates:
                raise ConflictError(
                    "settlement records already exist",
                    details={"ids": duplicates},
                )
            for settlement in settlements:
                self._settlements[settlement.id] = settlement
        return len(settlements)

    def get_sale(self, sale_id: str) -> Optional[SaleRecord]:
        with self._lock:
            return self._sales.get(sale_id)

    def get_settlement(self, settlement_id: str) -> Optional[SettlementRecord]:
        with self._lock:
            return self._settlements.get(settlement_id)

    def list_sales(
        self,
        terminal_id: Optional[str] = None,
        period: Optional[str] = None,
    ) -> List[SaleRecord]:
        with self._lock:
            return [
                s for s in self._sales.values()
                if (terminal_id is None or s.terminal_id == terminal_id)
                and (period is None or s.period == period)
            ]

    def list_settlements(
        self,
        terminal_id: Optional[str] = None,
        period: Optional[str] = None,
    ) -> List[SettlementRecord]:
        with self._lock:
            return [
                s for s in self._settlements.values()
                if (terminal_id is None or s.terminal_id == terminal_id)
                and (period is None or s.period == period)
            ]

    def load_unmatched(
        self,
        terminal_id: str,
        period: str,
    ) -> Tuple[List[SaleRecord], List[SettlementRecord]]:
        """Unmatched sales and settlements of one (terminal, period)."""
        sales = [s for s in self.list_sales(terminal_id, period) if s.is_unmatched]
        settlements = [
            s for s in self.list_settlements(terminal_id, period) if s.is_unmatched
        ]
        return sales, settlements

    # ------------------------------------------------------------------
    # Runs, groups, divergences
    # ------------------------------------------------------------------

    def save_run(self, run: ReconciliationRun) -> None:
        with self._lock:
            self._write_run(run)

    def get_run(self, run_id: str) -> ReconciliationRun:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError(f"run not found: {run_id}")
        return run

    def list_runs(
        self,
        terminal_id: Optional[str] = None,
        period: Optional[str] = None,
    ) -> List[ReconciliationRun]:
        with self._lock:
            runs = [
                r for r in self._runs.values()
                if (terminal_id is None or r.terminal_id == terminal_id)
                and (period is None or r.period == period)
            ]
        return sorted(runs, key=lambda r: r.started_at)

    def list_groups(self, run_id: Optional[str] = None) -> List[MatchGroup]:
        with self._lock:
            return [
                g for g in self._groups.values()
                if run_id is None or g.run_id == run_id
            ]

    def get_divergence(self, divergence_id: str) -> Divergence:
        with self._lock:
            divergence = self._divergences.get(divergence_id)
        if divergence is None:
            raise NotFoundError(f"divergence not found: {divergence_id}")
        return divergence

    def list_divergences(
        self,
        terminal_id: Optional[str] = None,
        period: Optional[str] = None,
        status: Optional[DivergenceStatus] = None,
        search: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> List[Divergence]:
        """Divergences filtered by scope, status and free text over the description."""
        needle = search.strip().lower() if search else None
        with self._lock:
            divergences = list(self._divergences.values())

        result = [
            d for d in divergences
            if (terminal_id is None or d.terminal_id == terminal_id)
            and (period is None or d.period == period)
            and (status is None or d.status == status)
            and (run_id is None or d.run_id == run_id)
            and (needle is None or needle in d.description.lower())
        ]
        return sorted(result, key=lambda d: (d.created_at, d.id))

    def add_divergence(self, divergence: Divergence) -> None:
        with self._lock:
            if divergence.id in self._divergences:
                raise ConflictError(f"divergence already exists: {divergence.id}")
            self._write_divergence(divergence)

    def add_correction(self, correction: Divergence) -> None:
        """
        Add a divergence that supersedes another one.

        Raises ConflictError when the superseded divergence already has a
        correction; the check and the insert happen under one lock.
        """
        with self._lock:
            if any(
                d.supersedes_id == correction.supersedes_id
                for d in self._divergences.values()
            ):
                raise ConflictError(
                    "divergence already reopened",
                    details={"divergence_id": correction.supersedes_id},
                )
            self.add_divergence(correction)

    def replace_divergence(
        self,
        updated: Divergence,
        expected_status: DivergenceStatus,
    ) -> Divergence:
        """
        Compare-and-set a new version of a divergence.

        Raises ConflictError when the stored version is no longer in
        ``expected_status`` (another writer got there first).
        """
        with self._lock:
            current = self._divergences.get(updated.id)
            if current is None:
                raise NotFoundError(f"divergence not found: {updated.id}")
            if current.status != expected_status:
                raise ConflictError(
                    "divergence already resolved",
                    details={"divergence_id": updated.id, "status": current.status.value},
                )
            self._write_divergence(updated)
            return updated

    # ------------------------------------------------------------------
    # Atomic commit
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["InMemoryRecordStore"]:
        """
        All-or-nothing block: on any error every map is restored to its state
        at entry and the error is re-raised as PersistenceError.
        """
        with self._lock:
            snapshot = (
                dict(self._sales),
                dict(self._settlements),
                dict(self._groups),
                dict(self._divergences),
                dict(self._runs),
            )
            try:
                yield self
            except Exception as e:
                (
                    self._sales,
                    self._settlements,
                    self._groups,
                    self._divergences,
                    self._runs,
                ) = snapshot
                logger.error("Store transaction rolled back", error=str(e))
                if isinstance(e, PersistenceError):
                    raise
                message = e.message if isinstance(e, ReconciliationError) else str(e)
                raise PersistenceError(message, details={"cause": type(e).__name__}) from e

    def commit_run(
        self,
        run: ReconciliationRun,
        groups: List[MatchGroup],
        divergences: List[Divergence],
    ) -> None:
        """Persist the output of one run atomically."""
        with self.transaction():
            for group in groups:
                status = (
                    MatchStatus.MATCHED if group.kind == MatchKind.SIMPLE
                    else MatchStatus.GROUPED
                )
                for sale_id in group.sale_ids:
                    self._mark_sale(sale_id, status)
                self._mark_settlement(group.settlement_id, status)
                self._write_group(group)

            for divergence in divergences:
                if divergence.sale_id:
                    self._mark_sale(divergence.sale_id, MatchStatus.DIVERGENT)
                if divergence.settlement_id:
                    self._mark_settlement(divergence.settlement_id, MatchStatus.DIVERGENT)
                if divergence.id in self._divergences:
                    raise PersistenceError(f"divergence already exists: {divergence.id}")
                self._write_divergence(divergence)

            self._write_run(run)

    def _mark_sale(self, sale_id: str, status: MatchStatus) -> None:
        sale = self._sales.get(sale_id)
        if sale is None:
            raise PersistenceError(f"unknown sale: {sale_id}")
        if not sale.is_unmatched:
            raise PersistenceError(
                f"sale {sale_id} is no longer unmatched ({sale.match_status.value})"
            )
        self._sales[sale_id] = replace(sale, match_status=status)

    def _mark_settlement(self, settlement_id: str, status: MatchStatus) -> None:
        settlement = self._settlements.get(settlement_id)
        if settlement is None:
            raise PersistenceError(f"unknown settlement: {settlement_id}")
        if not settlement.is_unmatched:
            raise PersistenceError(
                f"settlement {settlement_id} is no longer unmatched "
                f"({settlement.match_status.value})"
            )
        self._settlements[settlement_id] = replace(settlement, match_status=status)

    # Single-entity writes; the seam a durable backend would replace.

    def _write_group(self, group: MatchGroup) -> None:
        self._groups[group.id] = group

    def _write_divergence(self, divergence: Divergence) -> None:
        self._divergences[divergence.id] = divergence

    def _write_run(self, run: ReconciliationRun) -> None:
        self._runs[run.id] = run
