"""
Audit logging for reconciliation decisions.
"""

import json
from collections import Counter
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import structlog

from ..config import Settings, get_settings
from ..models import AuditEntry, utcnow

logger = structlog.get_logger()


class AuditLogger:
    """
    Audit trail of suggestion passes, applies, undos and pattern updates.
    Kept in memory; exported to JSON on demand.
    """

    def __init__(self, session_id: Optional[str] = None, settings: Optional[Settings] = None):
        self.session_id = session_id or uuid4().hex[:12]
        self.entries: List[AuditEntry] = []
        self.settings = settings or get_settings()

    def log(self, entry: AuditEntry) -> None:
        """Add an audit entry."""
        self.entries.append(entry)

        # Mirror to structlog
        log_method = logger.info if entry.success else logger.warning
        log_method(
            entry.message,
            action=entry.action.value,
            bank_entry_ids=entry.bank_entry_ids,
            record_ids=entry.record_ids,
            success=entry.success,
            error=entry.error_message,
        )

    def log_many(self, entries: List[AuditEntry]) -> None:
        """Add multiple audit entries."""
        for entry in entries:
            self.log(entry)

    def get_entries(
        self,
        action_filter: Optional[str] = None,
        success_only: bool = False,
        bank_entry_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Get filtered audit entries."""
        entries = self.entries

        if action_filter:
            entries = [e for e in entries if e.action.value == action_filter]

        if success_only:
            entries = [e for e in entries if e.success]

        if bank_entry_id:
            entries = [e for e in entries if bank_entry_id in e.bank_entry_ids]

        return entries

    def export_to_file(self, output_path: Optional[Path] = None) -> Path:
        """
        Write the reconciliation trail as JSON.

        Args:
            output_path: Target file; defaults to
                <reports_dir>/reconciliation_audit_<session>.json

        Returns:
            Path of the written report
        """
        output_path = Path(
            output_path or Path(self.settings.reports_dir) / f"reconciliation_audit_{self.session_id}.json"
        )
        output_path.parent.mkdir(parents=True, exist_ok=True)

        report = {
            **self.summary(),
            "exported_at": utcnow().isoformat(),
            "entries": [entry.to_dict() for entry in self.entries],
        }
        output_path.write_text(
            json.dumps(report, indent=2, ensure_ascii=False, default=str), encoding="utf-8"
        )

        logger.info("Audit trail exported", path=str(output_path), entries=len(self.entries))
        return output_path

    def summary(self) -> dict:
        """Get summary statistics of audit log."""
        action_counts = Counter(e.action.value for e in self.entries)
        success_count = sum(1 for e in self.entries if e.success)
        error_count = sum(1 for e in self.entries if not e.success)

        return {
            "session_id": self.session_id,
            "total_entries": len(self.entries),
            "success_count": success_count,
            "error_count": error_count,
            "action_counts": dict(action_counts),
        }
