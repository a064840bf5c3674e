"""
Audit logging for reconciliation decisions and divergence resolutions.
"""

import json
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from ..config import get_settings
from ..models import AuditAction, AuditEntry

logger = structlog.get_logger()


class AuditLogger:
    """
    Logger for audit trail of reconciliation decisions.
    Provides both in-memory and file-based logging.

    Shared by the coordinator and the resolver, so appends are serialized.
    """

    def __init__(self, name: str = "conciliacao"):
        self.name = name
        self.entries: List[AuditEntry] = []
        self.settings = get_settings()
        self._lock = threading.Lock()

    def log(self, entry: AuditEntry) -> None:
        """Add an audit entry."""
        with self._lock:
            self.entries.append(entry)

        # Also log to structlog
        log = logger.info if entry.success else logger.warning
        log(
            entry.message,
            action=entry.action.value,
            run_id=entry.run_id,
            divergence_id=entry.divergence_id,
            record_ids=entry.record_ids,
            success=entry.success,
        )

    def log_many(self, entries: List[AuditEntry]) -> None:
        """Add multiple audit entries."""
        for entry in entries:
            self.log(entry)

    def get_entries(
        self,
        action_filter: Optional[AuditAction] = None,
        run_id: Optional[str] = None,
        divergence_id: Optional[str] = None,
        success_only: bool = False,
    ) -> List[AuditEntry]:
        """Get filtered audit entries."""
        with self._lock:
            entries = list(self.entries)

        if action_filter:
            entries = [e for e in entries if e.action == action_filter]

        if run_id:
            entries = [e for e in entries if e.run_id == run_id]

        if divergence_id:
            entries = [e for e in entries if e.divergence_id == divergence_id]

        if success_only:
            entries = [e for e in entries if e.success]

        return entries

    def export_to_file(self, output_path: Optional[Path] = None) -> Path:
        """Export audit log to JSON file."""
        if output_path is None:
            stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S")
            output_path = self.settings.reports_dir / f"audit_{self.name}_{stamp}.json"

        output_path.parent.mkdir(parents=True, exist_ok=True)

        entries = self.get_entries()
        data = {
            "name": self.name,
            "exported_at": datetime.utcnow().isoformat(),
            "total_entries": len(entries),
            "entries": [
                {
                    "id": e.id,
                    "timestamp": e.timestamp.isoformat(),
                    "action": e.action.value,
                    "run_id": e.run_id,
                    "divergence_id": e.divergence_id,
                    "record_ids": e.record_ids,
                    "message": e.message,
                    "details": e.details,
                    "success": e.success,
                    "error_message": e.error_message,
                }
                for e in entries
            ],
        }

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)

        logger.info("Audit log exported", path=str(output_path))
        return output_path

    def summary(self) -> dict:
        """Get summary statistics of audit log."""
        entries = self.get_entries()
        action_counts = Counter(e.action.value for e in entries)
        success_count = sum(1 for e in entries if e.success)

        return {
            "total_entries": len(entries),
            "success_count": success_count,
            "error_count": len(entries) - success_count,
            "action_counts": dict(action_counts),
        }
