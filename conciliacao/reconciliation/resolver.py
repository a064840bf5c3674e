"""
Divergence Resolver - the divergence lifecycle state machine.

    pending --justificativa--> justified
    pending --ajuste_manual--> resolved
    pending --exclusao-------> resolved

``justified`` and ``resolved`` are terminal. A correction never touches the
terminal record: ``reopen`` appends a new pending divergence that points at
the one it supersedes.
"""

from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from ..exceptions import ConflictError, ValidationError
from ..models import (
    AuditAction,
    AuditEntry,
    Divergence,
    DivergenceStatus,
    Resolution,
    ResolutionKind,
)
from ..store import InMemoryRecordStore
from ..utils.audit_logger import AuditLogger

logger = structlog.get_logger()


class DivergenceResolver:
    """Applies user resolutions to pending divergences."""

    def __init__(
        self,
        store: InMemoryRecordStore,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.audit = audit_logger or AuditLogger()
        self.clock = clock

    def resolve(self, divergence_id: str, resolution: Resolution) -> Divergence:
        """
        Move a pending divergence to its terminal state.

        Raises:
            NotFoundError: unknown divergence
            ConflictError: divergence is no longer pending
            ValidationError: missing motive or adjustment value
        """
        current = self.store.get_divergence(divergence_id)

        try:
            if not current.is_pending:
                raise ConflictError(
                    "divergence already resolved",
                    details={"divergence_id": divergence_id, "status": current.status.value},
                )
            self.validate(resolution)

            stamped = replace(resolution, resolved_at=self.clock())
            updated = replace(
                current,
                status=resolution.kind.target_status,
                resolution=stamped,
            )
            # Optimistic check: a concurrent writer may have closed it meanwhile
            self.store.replace_divergence(updated, expected_status=DivergenceStatus.PENDING)

        except (ConflictError, ValidationError) as e:
            self.audit.log(AuditEntry(
                action=AuditAction.RESOLUTION_REJECTED,
                divergence_id=divergence_id,
                message=f"Resolution rejected: {e.message}",
                details={"kind": resolution.kind.value},
                success=False,
                error_message=e.message,
            ))
            raise

        self.audit.log(AuditEntry(
            action=AuditAction.DIVERGENCE_RESOLVED,
            divergence_id=divergence_id,
            run_id=updated.run_id,
            record_ids=[i for i in (updated.sale_id, updated.settlement_id) if i],
            message=f"Divergence {updated.status.value} via {resolution.kind.value}",
            details={
                "kind": resolution.kind.value,
                "motive": resolution.motive,
                "adjustment_value_cents": resolution.adjustment_value_cents,
                "resolved_by": resolution.resolved_by,
            },
        ))
        return updated

    @staticmethod
    def validate(resolution: Resolution) -> None:
        """Field-level validation of a resolution."""
        if not resolution.motive or not resolution.motive.strip():
            raise ValidationError("motive required", field="motive")

        if resolution.kind == ResolutionKind.AJUSTE_MANUAL:
            if not resolution.adjustment_value_cents:
                raise ValidationError(
                    "adjustment value required", field="adjustment_value"
                )
        elif resolution.adjustment_value_cents:
            raise ValidationError(
                f"adjustment value not allowed for {resolution.kind.value}",
                field="adjustment_value",
            )

    def reopen(
        self,
        divergence_id: str,
        motive: str,
        reopened_by: str = "system",
    ) -> Divergence:
        """
        Append a new pending divergence correcting a terminal one.

        The original stays as it was; the new one references it through
        ``supersedes_id``.
        """
        current = self.store.get_divergence(divergence_id)
        if current.is_pending:
            raise ConflictError(
                "divergence is still pending",
                details={"divergence_id": divergence_id},
            )
        if not motive or not motive.strip():
            raise ValidationError("motive required", field="motive")

        correction = Divergence(
            kind=current.kind,
            terminal_id=current.terminal_id,
            period=current.period,
            run_id=current.run_id,
            description=current.description,
            expected_value_cents=current.expected_value_cents,
            found_value_cents=current.found_value_cents,
            sale_id=current.sale_id,
            settlement_id=current.settlement_id,
            supersedes_id=current.id,
            created_at=self.clock(),
        )
        # Raises ConflictError if this divergence was already reopened
        self.store.add_correction(correction)

        self.audit.log(AuditEntry(
            action=AuditAction.DIVERGENCE_REOPENED,
            divergence_id=correction.id,
            run_id=correction.run_id,
            message=f"Divergence reopened, supersedes {current.id}",
            details={"supersedes_id": current.id, "motive": motive, "reopened_by": reopened_by},
        ))
        return correction

    def list_divergences(
        self,
        terminal_id: Optional[str] = None,
        period: Optional[str] = None,
        status: Optional[DivergenceStatus] = None,
        search: Optional[str] = None,
    ) -> List[Divergence]:
        """Divergences for the resolution UI, filtered by status and free text."""
        return self.store.list_divergences(
            terminal_id=terminal_id,
            period=period,
            status=status,
            search=search,
        )
