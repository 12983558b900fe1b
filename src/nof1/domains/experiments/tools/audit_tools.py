"""MCP tool for reviewing the audit trail.

The trail records which tools ran, on which experiment, and with what
outcome. Observation values and notes never enter it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from nof1.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
        experiment_id: str = "",
    ) -> str:
        """View recent experiment activity from the audit trail.

        Args:
            days: Number of days to look back (default: 30).
            experiment_id: Restrict to one experiment.
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        events = audit_logger.get_events(
            experiment_id=experiment_id or None,
            since=since,
            limit=20,
        )

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": audit_logger.count_events(since=since),
            "recent_events": [
                {
                    "timestamp": e.get("timestamp"),
                    "action": e.get("action"),
                    "tool_name": e.get("tool_name"),
                    "experiment_id": e.get("experiment_id"),
                    "status": e.get("status"),
                    "duration_ms": e.get("duration_ms"),
                }
                for e in events
            ],
        }, indent=2)
