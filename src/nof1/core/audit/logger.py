"""Audit logger: a health-data-free trail of experiment activity.

Records every tool invocation, lifecycle transition and deletion in the
``audit_log`` table without storing observation values or notes:

* ``tool_input_hash``: SHA-256 of canonical JSON of the tool arguments.
* ``experiment_id``: which experiment was touched, if any.
* ``metadata``: small, non-health context (phase index, counts).
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from nof1.core.storage.database import DatabaseError, ExperimentDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON, or empty string if not serializable."""
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError):
        return ""
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'tool_invocation' | 'lifecycle' | 'data_delete'
    tool_name: str = ""
    tool_input_hash: str = ""
    experiment_id: str | None = None
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure' | 'ignored'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Writes are committed immediately. A failed write is logged and reported
    as an empty event id; it never interrupts the operation being audited.

    Usage::

        audit = AuditLogger(db)
        audit.log_lifecycle("phase_advanced", experiment.id, metadata={"phase": 2})
    """

    def __init__(self, database: ExperimentDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID ("" if the write failed)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, tool_name, tool_input_hash,
                    experiment_id, duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.tool_name or None,
                    event.tool_input_hash or None,
                    event.experiment_id,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except (sqlite3.Error, DatabaseError):
            logger.exception("Failed to write audit event; event lost")
            return ""

        return event_id

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        experiment_id: str | None = None,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a tool invocation. ``tool_input`` is hashed, never stored raw."""
        return self.log_event(AuditEvent(
            action="tool_invocation",
            tool_name=tool_name,
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            experiment_id=experiment_id,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_lifecycle(
        self,
        transition: str,
        experiment_id: str,
        *,
        status: str = "success",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log an experiment lifecycle transition (created, started, ...)."""
        return self.log_event(AuditEvent(
            action="lifecycle",
            tool_name=transition,
            experiment_id=experiment_id,
            status=status,
            metadata=metadata or {},
        ))

    def log_data_delete(
        self,
        *,
        tool_name: str = "",
        experiment_id: str | None = None,
        count: int = 0,
    ) -> str:
        return self.log_event(AuditEvent(
            action="data_delete",
            tool_name=tool_name,
            experiment_id=experiment_id,
            metadata={"records_deleted": count},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        experiment_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if experiment_id:
            conditions.append("experiment_id = ?")
            params.append(experiment_id)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            raw = event.pop("metadata_json")
            event["metadata"] = json.loads(raw) if raw else {}
            events.append(event)
        return events

    def count_events(self, *, since: str | None = None) -> int:
        if since:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM audit_log WHERE timestamp >= ?", (since,)
            ).fetchone()
        else:
            row = self._db.connection.execute("SELECT COUNT(*) FROM audit_log").fetchone()
        return row[0]
