import json
import logging
import sqlite3
from collections.abc import Collection
from contextlib import closing
from threading import Lock
from typing import Callable, Optional, Union

from namdrunner.sim_management.errors import UnknownJobIdError
from namdrunner.sim_management.jobs import JobId, JobRecord, JobStatus
from namdrunner.sim_management.types import FilePath

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    document TEXT NOT NULL
)
"""


class JobCache:
    """
    The local store of job records.

    Job records are kept in an SQLite database file, one row per job, with the full
    record stored as a JSON document. The cache is the only writer of job records:
    changes are made through `save`, `update` and `delete`, each of which opens the
    database, performs its work in a single transaction and closes the database
    again, so that the database is never held open across a remote call.

    Local file paths of input files are stored; secrets never are, since job records
    do not hold them.

    Parameters
    ----------
    path : namdrunner.sim_management.types.FilePath
        A path to the database file. It will be created if it doesn't already exist.
        The special path ``":memory:"`` is not supported, as each operation uses its
        own connection.
    """

    def __init__(self, path: FilePath):
        self._path = str(path)
        self._lock = Lock()
        with self._lock, closing(self._connect()) as conn, conn:
            conn.execute(_SCHEMA)

    @property
    def path(self) -> str:
        """(Read-only) The path to the database file."""
        return self._path

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._path)

    @staticmethod
    def _row_values(record: JobRecord) -> tuple[str, str, str, str]:
        record.check_invariants()
        return (
            str(record.job_id),
            record.status.value,
            record.created_at,
            json.dumps(record.to_dict()),
        )

    def save(self, record: JobRecord) -> None:
        """
        Insert a job record, or replace the stored record with the same job ID.

        Raises
        ------
        InvalidJobStatusError
            If the record is inconsistent, e.g. has a scheduler ID while in status
            ``CREATED``.
        """

        values = self._row_values(record)
        with self._lock, closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT OR REPLACE INTO jobs (job_id, status, created_at, document) "
                "VALUES (?, ?, ?, ?)",
                values,
            )

        logger.debug("Saved job %s with status %s", record.job_id, record.status.value)

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> JobRecord:
        row = conn.execute(
            "SELECT document FROM jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
        if row is None:
            raise UnknownJobIdError(
                f"No job with ID {job_id} exists in the local cache.", unknown_ids=[job_id]
            )

        return JobRecord.from_dict(json.loads(row[0]))

    def get(self, job_id: Union[str, JobId]) -> JobRecord:
        """
        Get the record of a job.

        Raises
        ------
        UnknownJobIdError
            If there is no record with the given job ID.
        """

        with self._lock, closing(self._connect()) as conn:
            return self._fetch(conn, str(job_id))

    def contains(self, job_id: Union[str, JobId]) -> bool:
        with self._lock, closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM jobs WHERE job_id = ?", (str(job_id),)
            ).fetchone()
            return row is not None

    def update(
        self, job_id: Union[str, JobId], change: Callable[[JobRecord], None]
    ) -> JobRecord:
        """
        Read, modify and write back the record of a job in one transaction.

        Parameters
        ----------
        job_id : Union[str, JobId]
            The ID of the job to update.
        change : Callable[[JobRecord], None]
            A function that modifies the record in place. It must not make remote calls.
            If it raises an error then the stored record is left unchanged.

        Returns
        -------
        JobRecord
            The updated record.

        Raises
        ------
        UnknownJobIdError
            If there is no record with the given job ID.
        """

        job_id_str = str(job_id)
        with self._lock, closing(self._connect()) as conn, conn:
            record = self._fetch(conn, job_id_str)
            change(record)
            values = self._row_values(record)
            conn.execute(
                "UPDATE jobs SET status = ?, created_at = ?, document = ? WHERE job_id = ?",
                values[1:] + values[:1],
            )

        return record

    def list_jobs(
        self, statuses: Optional[Collection[JobStatus]] = None
    ) -> list[JobRecord]:
        """
        Get job records, oldest first.

        Parameters
        ----------
        statuses : Collection[JobStatus], optional
            (Default: None) If provided, only records having one of these statuses are
            returned.
        """

        with self._lock, closing(self._connect()) as conn:
            if statuses is None:
                rows = conn.execute(
                    "SELECT document FROM jobs ORDER BY created_at, job_id"
                ).fetchall()
            else:
                values = [s.value for s in statuses]
                if not values:
                    return []

                placeholders = ", ".join("?" for _ in values)
                rows = conn.execute(
                    f"SELECT document FROM jobs WHERE status IN ({placeholders}) "
                    "ORDER BY created_at, job_id",
                    values,
                ).fetchall()

        return [JobRecord.from_dict(json.loads(row[0])) for row in rows]

    def delete(self, job_id: Union[str, JobId]) -> None:
        """
        Delete the record of a job.

        Raises
        ------
        UnknownJobIdError
            If there is no record with the given job ID.
        """

        job_id_str = str(job_id)
        with self._lock, closing(self._connect()) as conn, conn:
            cursor = conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id_str,))
            if cursor.rowcount == 0:
                raise UnknownJobIdError(
                    f"No job with ID {job_id_str} exists in the local cache.",
                    unknown_ids=[job_id_str],
                )

        logger.debug("Deleted job %s from the local cache", job_id_str)

    def is_empty(self) -> bool:
        with self._lock, closing(self._connect()) as conn:
            return conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0
