"""nof1 experiment MCP server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from nof1.core.audit.logger import AuditLogger
from nof1.core.config.settings import get_settings
from nof1.core.storage.database import DatabaseError, ExperimentDatabase
from nof1.core.storage.encryption import EncryptionError, FieldEncryptor
from nof1.core.storage.repository import ExperimentRepository
from nof1.domains.experiments.domain_logic.lifecycle import ExperimentController
from nof1.domains.experiments.tools.audit_tools import register_audit_tools
from nof1.domains.experiments.tools.data_management_tools import register_data_management_tools
from nof1.domains.experiments.tools.experiment_tools import register_experiment_tools

logger = logging.getLogger(__name__)

SERVER_VERSION = "0.1.0"


def create_app(
    *,
    controller_override: ExperimentController | None = None,
    repository_override: ExperimentRepository | None = None,
    audit_logger_override: AuditLogger | None = None,
) -> FastMCP:
    """Create and configure the nof1 MCP server.

    1. Creates the FastMCP server instance
    2. Initializes the encrypted storage layer, if a key is configured
    3. Rebuilds the experiment controller from storage
    4. Registers all tools
    """
    settings = get_settings()

    server = FastMCP(
        "nof1 Experiments",
        instructions=(
            "Personal N-of-1 self-experimentation engine. Design a trial for an "
            "intervention, log metric observations through baseline and "
            "intervention phases, and get a confidence-qualified verdict."
        ),
    )

    # --- Initialize encrypted storage (experiment data bank) ---
    repository: ExperimentRepository | None = repository_override
    audit_logger: AuditLogger | None = audit_logger_override
    if repository is None and settings.encryption_key:
        try:
            encryptor = FieldEncryptor(settings.encryption_key)
            database = ExperimentDatabase(settings.db_path)
            database.initialize()
            repository = ExperimentRepository(database, encryptor)
            if audit_logger is None:
                audit_logger = AuditLogger(database)
            logger.info(
                "Experiment data bank initialized: %s (schema v%d)",
                settings.db_path,
                database.get_schema_version(),
            )
        except (EncryptionError, DatabaseError) as exc:
            logger.error("Failed to initialize storage: %s", exc)
            logger.warning("Continuing without persistence; experiments will not be stored")
    elif repository is None:
        logger.info(
            "No ENCRYPTION_KEY configured, running without persistence. "
            "Set ENCRYPTION_KEY to enable the experiment data bank."
        )

    # --- Experiment controller ---
    if controller_override is not None:
        controller = controller_override
    else:
        controller = ExperimentController()
        if repository is not None:
            experiments, results = repository.load_controller_state()
            controller.load(experiments, results)

    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        active = controller.active_experiment
        return {
            "status": "ok",
            "server": "nof1 Experiments",
            "version": SERVER_VERSION,
            "storage_enabled": repository is not None,
            "audit_enabled": audit_logger is not None,
            "experiments_loaded": len(controller.experiments),
            "active_experiment_id": active.id if active else None,
        }

    register_experiment_tools(
        server,
        controller,
        repository,
        audit_logger,
        default_phase_duration_days=settings.default_phase_duration_days,
    )
    logger.info("Experiment tools registered")

    if repository is not None:
        register_data_management_tools(server, controller, repository, audit_logger)
        logger.info("Data management tools registered")

    if audit_logger is not None:
        register_audit_tools(server, audit_logger)
        logger.info("Audit tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
