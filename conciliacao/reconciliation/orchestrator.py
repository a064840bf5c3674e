"""
Reconciliation Coordinator - runs one full pass for a (terminal, period).

Pipeline:
1. Acquire the scope lock (single flight per terminal and period)
2. Load unmatched sales and settlements
3. Anomaly checks
4. Matching (simple, then grouped)
5. Divergences from leftovers
6. Atomic commit of groups, divergences and the run
"""

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from ..config import get_settings
from ..exceptions import ReconciliationError
from ..models import (
    AuditAction,
    AuditEntry,
    MatchConfig,
    ReconciliationRun,
    RunCounts,
    RunStatus,
)
from ..store import InMemoryRecordStore
from ..utils.audit_logger import AuditLogger
from .divergences import DivergenceBuilder
from .locks import ScopeLockRegistry
from .matcher import ReconciliationMatcher
from .tolerance_advisor import ToleranceAdvisor

logger = structlog.get_logger()

ProgressCallback = Callable[[ReconciliationRun], None]

FAILED_RUN_MESSAGE = "no changes made, retry"


class RunCancelled(Exception):
    """Raised internally when a run is cancelled before persisting."""


class ReconciliationCoordinator:
    """
    Orchestrates reconciliation runs and owns the ReconciliationRun records.

    Matcher and persistence failures are caught here and reported on the
    returned run (status ``failed``); a busy scope raises ConflictError since
    no run was started.
    """

    def __init__(
        self,
        store: InMemoryRecordStore,
        matcher: Optional[ReconciliationMatcher] = None,
        builder: Optional[DivergenceBuilder] = None,
        locks: Optional[ScopeLockRegistry] = None,
        audit_logger: Optional[AuditLogger] = None,
        advisor: Optional[ToleranceAdvisor] = None,
    ):
        self.settings = get_settings()
        self.store = store
        self.matcher = matcher or ReconciliationMatcher()
        self.builder = builder or DivergenceBuilder()
        self.locks = locks or ScopeLockRegistry()
        self.audit = audit_logger or AuditLogger()
        self.advisor = advisor or ToleranceAdvisor()

        self._active: Dict[str, ReconciliationRun] = {}
        self._active_lock = threading.Lock()

    def run(
        self,
        terminal_id: str,
        period: str,
        config: Optional[MatchConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconciliationRun:
        """
        Execute a reconciliation run.

        Args:
            terminal_id: Terminal to reconcile
            period: Processing period ("YYYY-MM")
            config: Matching config (defaults from settings)
            progress_callback: Called with the run at every phase boundary
            cancel_event: When set before persisting, the run is abandoned

        Returns:
            The run, with status completed, failed or cancelled

        Raises:
            ConflictError: a run for the same scope is already in flight
        """
        config = config or MatchConfig.from_settings()

        with self.locks.hold(
            terminal_id,
            period,
            blocking=self.settings.lock_mode == "block",
            timeout=self.settings.lock_timeout_seconds,
        ):
            run = ReconciliationRun(terminal_id=terminal_id, period=period, config=config)
            with self._active_lock:
                self._active[run.id] = run
            try:
                self._execute(run, progress_callback, cancel_event)
            finally:
                with self._active_lock:
                    self._active.pop(run.id, None)

        return run

    def _execute(
        self,
        run: ReconciliationRun,
        progress_callback: Optional[ProgressCallback],
        cancel_event: Optional[threading.Event],
    ) -> None:
        log = logger.bind(run_id=run.id, terminal_id=run.terminal_id, period=run.period)

        def update_phase(status: RunStatus):
            run.status = status
            log.debug("Run phase", status=status.value)
            if progress_callback:
                progress_callback(run)

        def finish(status: RunStatus):
            # Terminal statuses: callback errors are logged, not raised
            try:
                update_phase(status)
            except Exception:
                log.exception("Progress callback failed", status=status.value)

        def check_cancelled():
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled()

        self.audit.log(AuditEntry(
            action=AuditAction.RUN_STARTED,
            run_id=run.id,
            message=f"Run started for {run.terminal_id}/{run.period}",
            details=run.config.to_dict(),
        ))

        try:
            # Phase: Loading
            update_phase(RunStatus.LOADING)
            sales, settlements = self.store.load_unmatched(run.terminal_id, run.period)
            run.counts.sales_loaded = len(sales)
            run.counts.settlements_loaded = len(settlements)

            run.warnings = self.advisor.detect_anomalies(sales, settlements)
            for warning in run.warnings:
                self.audit.log(AuditEntry(
                    action=AuditAction.ANOMALY_DETECTED,
                    run_id=run.id,
                    message=warning,
                ))
            check_cancelled()

            # Phase: Matching (phase callbacks come from the matcher)
            outcome = self.matcher.match(
                sales, settlements, run.config, run_id=run.id, on_phase=update_phase,
            )
            check_cancelled()

            divergences = self.builder.build(
                outcome.leftover_sales, outcome.leftover_settlements, run_id=run.id,
            )

            simple = outcome.simple_groups
            grouped = outcome.grouped_groups
            run.counts.matched_simple = len(simple)
            run.counts.matched_grouped = len(grouped)
            run.counts.sales_matched = sum(len(g.sale_ids) for g in outcome.groups)
            run.counts.settlements_matched = len(outcome.groups)
            run.counts.divergences_created = len(divergences)
            check_cancelled()

            # Phase: Persisting (all-or-nothing)
            update_phase(RunStatus.PERSISTING)
            run.finished_at = datetime.utcnow()
            self.store.commit_run(run, outcome.groups, divergences)
            run.status = RunStatus.COMPLETED

        except RunCancelled:
            run.finished_at = datetime.utcnow()
            self.audit.log(AuditEntry(
                action=AuditAction.RUN_CANCELLED,
                run_id=run.id,
                message="Run cancelled before persisting, nothing committed",
            ))
            finish(RunStatus.CANCELLED)
            return

        except ReconciliationError as e:
            log.error("Reconciliation run failed", error=e.message, error_type=type(e).__name__)
            self._fail(run, e.message, finish)
            return

        except Exception as e:
            log.exception("Reconciliation run crashed")
            self._fail(run, str(e), finish)
            return

        self._audit_matches(run, outcome.groups, divergences)
        log.info(
            "Run complete",
            matched_simple=run.counts.matched_simple,
            matched_grouped=run.counts.matched_grouped,
            divergences=run.counts.divergences_created,
            warnings=len(run.warnings),
        )
        finish(RunStatus.COMPLETED)

    def _fail(
        self,
        run: ReconciliationRun,
        message: str,
        finish: Callable[[RunStatus], None],
    ) -> None:
        run.error = f"{message}; {FAILED_RUN_MESSAGE}"
        run.finished_at = datetime.utcnow()
        # Nothing was committed, so only the loaded counts still hold
        run.counts = RunCounts(
            sales_loaded=run.counts.sales_loaded,
            settlements_loaded=run.counts.settlements_loaded,
        )

        self.audit.log(AuditEntry(
            action=AuditAction.RUN_FAILED,
            run_id=run.id,
            message="Run failed, rolled back",
            success=False,
            error_message=message,
        ))

        # The failed run is kept for history; its groups and divergences are not
        run.status = RunStatus.FAILED
        try:
            self.store.save_run(run)
        except Exception:
            logger.exception("Could not record failed run", run_id=run.id)
        finish(RunStatus.FAILED)

    def _audit_matches(self, run: ReconciliationRun, groups: List, divergences: List) -> None:
        entries = [
            AuditEntry(
                action=AuditAction.MATCH_SIMPLE if len(g.sale_ids) == 1 else AuditAction.MATCH_GROUPED,
                run_id=run.id,
                record_ids=[*g.sale_ids, g.settlement_id],
                message=f"Match committed: {g.match_reason}",
                details={"value_delta_cents": g.value_delta_cents, "day_delta": g.day_delta},
            )
            for g in groups
        ]
        entries.extend(
            AuditEntry(
                action=AuditAction.DIVERGENCE_CREATED,
                run_id=run.id,
                divergence_id=d.id,
                record_ids=[i for i in (d.sale_id, d.settlement_id) if i],
                message=d.description,
            )
            for d in divergences
        )
        entries.append(AuditEntry(
            action=AuditAction.RUN_COMPLETED,
            run_id=run.id,
            message=f"Run completed for {run.terminal_id}/{run.period}",
            details=run.counts.to_dict(),
        ))
        self.audit.log_many(entries)

    def get_run(self, run_id: str) -> ReconciliationRun:
        """A run by id, including one still in flight."""
        with self._active_lock:
            run = self._active.get(run_id)
        return run if run is not None else self.store.get_run(run_id)

    def list_runs(
        self,
        terminal_id: Optional[str] = None,
        period: Optional[str] = None,
    ) -> List[ReconciliationRun]:
        return self.store.list_runs(terminal_id=terminal_id, period=period)
