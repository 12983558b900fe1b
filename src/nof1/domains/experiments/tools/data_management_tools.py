"""MCP tools for experiment data management (deletion).

These tools let the user remove their experiment records from the data
bank. Every deletion is audit-logged.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from nof1.core.audit.logger import AuditLogger
    from nof1.core.storage.repository import ExperimentRepository
    from nof1.domains.experiments.domain_logic.lifecycle import ExperimentController

logger = logging.getLogger(__name__)


def register_data_management_tools(
    mcp: FastMCP,
    controller: ExperimentController,
    repository: ExperimentRepository,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register data management tools on the MCP server."""

    @mcp.tool
    async def delete_experiment(ctx: Context, experiment_id: str) -> str:
        """Delete an experiment, every data point it holds, and its results.

        Args:
            experiment_id: The id of the experiment to delete.
        """
        start_time = time.monotonic()
        removed = controller.remove(experiment_id)
        deleted = repository.delete_experiment(experiment_id)
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if not (removed or deleted):
            return json.dumps({
                "status": "error",
                "error": "not_found",
                "message": f"Experiment not found: {experiment_id!r}",
            })

        if audit_logger is not None:
            audit_logger.log_data_delete(
                tool_name="delete_experiment",
                experiment_id=experiment_id,
                count=1,
            )
        return json.dumps({
            "status": "deleted",
            "experiment_id": experiment_id,
            "duration_ms": round(elapsed_ms, 1),
        })

    @mcp.tool
    async def delete_all_experiment_data(ctx: Context, confirm: str = "") -> str:
        """Permanently delete ALL experiments and results. Cannot be undone.

        Args:
            confirm: Must be exactly 'DELETE_ALL' to proceed.
        """
        if confirm != "DELETE_ALL":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete all experiment data, call this tool with "
                    "confirm='DELETE_ALL'. This action cannot be undone."
                ),
            })

        start_time = time.monotonic()
        count = repository.delete_all_data()
        controller.load([])
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if audit_logger is not None:
            audit_logger.log_data_delete(tool_name="delete_all_experiment_data", count=count)

        return json.dumps({
            "status": "all_deleted",
            "experiments_deleted": count,
            "duration_ms": round(elapsed_ms, 1),
        })
