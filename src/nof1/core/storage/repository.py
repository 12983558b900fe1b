"""Experiment repository — persistence bridge for the encrypted data bank.

The repository mediates between domain objects (Experiment,
ExperimentResults) and the SQLite database. Full records are encoded with
the serialization module and encrypted with FieldEncryptor; a handful of
index columns stay in the clear for listing and filtering.

Controllers never call the repository themselves. The caller saves the
touched experiment explicitly after each mutating operation.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable

from nof1.core.storage.database import ExperimentDatabase
from nof1.core.storage.encryption import FieldEncryptor
from nof1.domains.experiments.domain_logic.designs import ExperimentStatus
from nof1.domains.experiments.domain_logic.models import Experiment, ExperimentResults
from nof1.domains.experiments.domain_logic.serialization import (
    experiment_from_dict,
    experiment_to_dict,
    results_from_dict,
    results_to_dict,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when repository operations fail."""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ExperimentRepository:
    """CRUD repository for encrypted experiment records and their results.

    Usage::

        db = ExperimentDatabase(":memory:")
        db.initialize()
        repo = ExperimentRepository(db, FieldEncryptor(key))

        repo.save_experiment(experiment)
        experiments, results = repo.load_controller_state()
    """

    def __init__(self, database: ExperimentDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def save_experiment(self, experiment: Experiment, *, commit: bool = True) -> str:
        """Insert or replace an experiment record.

        Returns:
            The experiment ID.
        """
        conn = self._db.connection
        conn.execute(
            """INSERT INTO experiments (
                id, status, design, created_at, started_at, completed_at,
                record_enc, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                design = excluded.design,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at,
                record_enc = excluded.record_enc,
                updated_at = excluded.updated_at""",
            (
                experiment.id,
                experiment.status.value,
                experiment.design.value,
                _iso(experiment.created_at),
                _iso(experiment.started_at),
                _iso(experiment.completed_at),
                self._enc.encrypt(experiment_to_dict(experiment)),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        if commit:
            conn.commit()
        logger.debug("Saved experiment %s (status=%s)", experiment.id, experiment.status.value)
        return experiment.id

    def save_all(
        self,
        experiments: Iterable[Experiment],
        results: Iterable[ExperimentResults] = (),
    ) -> int:
        """Persist a whole collection in one transaction.

        Returns:
            Number of experiments written.
        """
        conn = self._db.connection
        count = 0
        try:
            for experiment in experiments:
                self.save_experiment(experiment, commit=False)
                count += 1
            for result in results:
                self.save_results(result, commit=False)
        except Exception:
            conn.rollback()
            raise
        conn.commit()
        logger.info("Saved %d experiments", count)
        return count

    def get_experiment(self, experiment_id: str) -> Experiment | None:
        """Retrieve and decrypt an experiment, or None if not found."""
        row = self._db.connection.execute(
            "SELECT record_enc FROM experiments WHERE id = ?", (experiment_id,)
        ).fetchone()
        if row is None:
            return None
        return experiment_from_dict(self._enc.decrypt(row["record_enc"]))

    def list_experiments(
        self,
        *,
        status: str | None = None,
        limit: int = 100,
    ) -> list[Experiment]:
        """List experiments in creation order, optionally filtered by status.

        Raises:
            RepositoryError: If ``status`` is not a known experiment status.
        """
        query = "SELECT record_enc FROM experiments"
        params: list[Any] = []
        if status:
            try:
                params.append(ExperimentStatus(status).value)
            except ValueError as exc:
                valid = sorted(s.value for s in ExperimentStatus)
                raise RepositoryError(
                    f"Invalid status: {status!r}. Valid: {valid}"
                ) from exc
            query += " WHERE status = ?"
        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [experiment_from_dict(self._enc.decrypt(row["record_enc"])) for row in rows]

    def count_experiments(self, *, status: str | None = None) -> int:
        if status:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM experiments WHERE status = ?", (status,)
            ).fetchone()
        else:
            row = self._db.connection.execute("SELECT COUNT(*) FROM experiments").fetchone()
        return row[0]

    def delete_experiment(self, experiment_id: str) -> bool:
        """Delete an experiment and its results.

        Returns:
            True if an experiment was found and deleted, False otherwise.
        """
        conn = self._db.connection
        conn.execute(
            "DELETE FROM experiment_results WHERE experiment_id = ?", (experiment_id,)
        )
        cursor = conn.execute("DELETE FROM experiments WHERE id = ?", (experiment_id,))
        conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted experiment %s", experiment_id)
        return deleted

    def delete_all_data(self) -> int:
        """Delete every experiment and result.

        Returns:
            Number of experiments deleted.
        """
        conn = self._db.connection
        count = conn.execute("SELECT COUNT(*) FROM experiments").fetchone()[0]
        conn.execute("DELETE FROM experiment_results")
        conn.execute("DELETE FROM experiments")
        conn.commit()
        logger.warning("Deleted ALL experiment data: %d experiments removed", count)
        return count

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def save_results(self, results: ExperimentResults, *, commit: bool = True) -> None:
        """Store an analysis result, replacing any prior one for the experiment.

        Raises:
            RepositoryError: If the experiment has not been saved.
        """
        conn = self._db.connection
        try:
            conn.execute(
                """INSERT INTO experiment_results
                   (experiment_id, overall_conclusion, confidence_level, generated_at, results_enc)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(experiment_id) DO UPDATE SET
                       overall_conclusion = excluded.overall_conclusion,
                       confidence_level = excluded.confidence_level,
                       generated_at = excluded.generated_at,
                       results_enc = excluded.results_enc""",
                (
                    results.experiment_id,
                    results.overall_conclusion.value,
                    results.confidence_level,
                    _iso(results.generated_at),
                    self._enc.encrypt(results_to_dict(results)),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise RepositoryError(
                f"Cannot store results for unsaved experiment {results.experiment_id!r}"
            ) from exc
        if commit:
            conn.commit()
        logger.debug("Saved results for experiment %s", results.experiment_id)

    def get_results(self, experiment_id: str) -> ExperimentResults | None:
        row = self._db.connection.execute(
            "SELECT results_enc FROM experiment_results WHERE experiment_id = ?",
            (experiment_id,),
        ).fetchone()
        if row is None:
            return None
        return results_from_dict(self._enc.decrypt(row["results_enc"]))

    def get_latest_results(self) -> ExperimentResults | None:
        """The most recently generated result across all experiments."""
        row = self._db.connection.execute(
            "SELECT results_enc FROM experiment_results ORDER BY generated_at DESC LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        return results_from_dict(self._enc.decrypt(row["results_enc"]))

    def list_results(self) -> list[ExperimentResults]:
        rows = self._db.connection.execute(
            "SELECT results_enc FROM experiment_results ORDER BY generated_at ASC"
        ).fetchall()
        return [results_from_dict(self._enc.decrypt(row["results_enc"])) for row in rows]

    # ------------------------------------------------------------------
    # Whole-collection load
    # ------------------------------------------------------------------

    def load_controller_state(
        self, *, limit: int = 1000
    ) -> tuple[list[Experiment], list[ExperimentResults]]:
        """Read everything needed to rebuild an ExperimentController."""
        experiments = self.list_experiments(limit=limit)
        results = self.list_results()
        logger.info(
            "Loaded %d experiments and %d results from storage",
            len(experiments),
            len(results),
        )
        return experiments, results
