"""Append-only audit trail: content edits and status changes."""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from mocflow.core.clock import utcnow
from mocflow.db.models import EditHistoryEntry, StatusChange

from .diff import FieldChange, summarize

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Writes history rows inside the caller's transaction."""

    def __init__(self, db: Session):
        self.db = db

    def record_edit(self, change_request, editor, changes: List[FieldChange]) -> EditHistoryEntry:
        """Append one entry describing a material edit."""
        entry = EditHistoryEntry(
            change_request_id=change_request.id,
            edited_by_id=editor.id,
            edited_by_name=editor.display_name or "Unknown",
            description=summarize(changes),
            field_changes=[change.to_dict() for change in changes],
            timestamp=utcnow(),
        )
        self.db.add(entry)
        logger.info(
            "Recorded edit of %s by %s (%d fields)",
            change_request.display_id, entry.edited_by_name, len(changes),
        )
        return entry

    def record_status_change(self, change_request, event) -> StatusChange:
        row = StatusChange(
            change_request_id=change_request.id,
            from_status=event.from_status.value,
            to_status=event.to_status.value,
            actor_id=event.actor_id,
            comments=event.comments,
            created_at=utcnow(),
        )
        self.db.add(row)
        return row

    def list_edit_history(self, change_request_id) -> List[Dict[str, Any]]:
        """Edit history for a request, newest first."""
        entries = self.db.query(EditHistoryEntry).filter(
            EditHistoryEntry.change_request_id == change_request_id
        ).order_by(EditHistoryEntry.timestamp.desc()).all()
        return [self._edit_to_dict(e) for e in entries]

    def list_status_history(self, change_request_id) -> List[Dict[str, Any]]:
        """Status changes for a request, oldest first."""
        rows = self.db.query(StatusChange).filter(
            StatusChange.change_request_id == change_request_id
        ).order_by(StatusChange.created_at.asc()).all()
        return [
            {
                "id": str(r.id),
                "from_status": r.from_status,
                "to_status": r.to_status,
                "actor_id": str(r.actor_id) if r.actor_id else None,
                "comments": r.comments,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]

    def _edit_to_dict(self, entry: EditHistoryEntry) -> Dict[str, Any]:
        return {
            "id": str(entry.id),
            "change_request_id": str(entry.change_request_id),
            "edited_by_id": str(entry.edited_by_id) if entry.edited_by_id else None,
            "edited_by_name": entry.edited_by_name,
            "description": entry.description,
            "field_changes": list(entry.field_changes or []),
            "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        }
