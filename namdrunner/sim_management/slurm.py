"""Commands for, and parsing of output from, the SLURM scheduler.

Status is queried with two batch commands: ``squeue`` for jobs the scheduler still
holds in its queue and ``sacct`` for jobs that have left it. Both produce one
pipe-delimited row per job, which is parsed into `JobStatusUpdate` objects. Parsing
functions are pure and have no side effects.
"""

import dataclasses
import logging
import re
from collections.abc import Iterable, Sequence
from pathlib import PurePosixPath
from typing import Optional, Union

from namdrunner.sim_management.cancellation import CancellationToken
from namdrunner.sim_management.errors import ValidationError, classify_remote_failure
from namdrunner.sim_management.jobs import JobStatus, StatusSource
from namdrunner.sim_management.paths import SUBMISSION_SCRIPT_NAME
from namdrunner.sim_management.retry import QUICK_RETRY
from namdrunner.sim_management.session import Session
from namdrunner.sim_management.shell import (
    Command,
    build_command,
    cd_and_run,
    escape_parameter,
)

logger = logging.getLogger(__name__)

SQUEUE_FORMAT = "%i|%j|%T|%M|%l|%S|%Z"
"""Fields of the active query: job ID, name, state, elapsed, time limit, start time and
working directory."""

SACCT_FORMAT = "JobID,JobName,State,ExitCode,Submit,Start,End,Elapsed,WorkDir"
"""Fields of the historical query."""

_SCHEDULER_JOB_ID = re.compile(r"^\d+$")

# Both the short codes and long names reported by SLURM.
_STATE_MAP = {
    "PD": JobStatus.PENDING,
    "PENDING": JobStatus.PENDING,
    "CF": JobStatus.PENDING,
    "CONFIGURING": JobStatus.PENDING,
    "RQ": JobStatus.PENDING,
    "REQUEUED": JobStatus.PENDING,
    "RS": JobStatus.PENDING,
    "RESIZING": JobStatus.PENDING,
    "S": JobStatus.RUNNING,
    "SUSPENDED": JobStatus.RUNNING,
    "R": JobStatus.RUNNING,
    "RUNNING": JobStatus.RUNNING,
    "CG": JobStatus.RUNNING,
    "COMPLETING": JobStatus.RUNNING,
    "SO": JobStatus.RUNNING,
    "STAGE_OUT": JobStatus.RUNNING,
    "CD": JobStatus.COMPLETED,
    "COMPLETED": JobStatus.COMPLETED,
    "CA": JobStatus.CANCELLED,
    "CANCELLED": JobStatus.CANCELLED,
}


def map_slurm_state(state: str) -> JobStatus:
    """Map a SLURM state code or name to a job status.

    Every state not explicitly recognised (e.g. ``F``, ``TO``, ``NF``, ``OOM``,
    ``PREEMPTED`` or a state unknown to this module) maps to ``JobStatus.FAILED``.
    Suffixes such as in ``CANCELLED by 1234`` or ``RUNNING+`` are ignored.

    Examples
    --------
    >>> map_slurm_state("CG")
    <JobStatus.RUNNING: 'Running'>
    >>> map_slurm_state("CANCELLED by 1234")
    <JobStatus.CANCELLED: 'Cancelled'>
    """

    words = state.strip().split()
    code = words[0].rstrip("+").upper() if words else ""
    return _STATE_MAP.get(code, JobStatus.FAILED)


@dataclasses.dataclass(frozen=True)
class JobStatusUpdate:
    """The state of one job as reported by the scheduler."""

    scheduler_job_id: str
    status: JobStatus
    raw_state: str
    name: Optional[str] = None
    elapsed: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    exit_code: Optional[str] = None
    work_dir: Optional[str] = None
    source: StatusSource = StatusSource.SCHEDULER


def _field(value: str) -> Optional[str]:
    value = value.strip()
    return value if value and value not in {"N/A", "Unknown", "None"} else None


def parse_squeue_output(output: str) -> list[JobStatusUpdate]:
    """Parse the output of the active query (see `active_status_command`).

    Lines that do not have the expected number of fields are skipped.
    """

    updates = []
    for line in output.splitlines():
        fields = line.strip().split("|")
        if len(fields) < 7 or not fields[0].strip():
            if line.strip():
                logger.debug("Skipping unparseable squeue line: %s", line)
            continue

        job_id, name, state, elapsed, _, start, work_dir = fields[:7]
        updates.append(
            JobStatusUpdate(
                scheduler_job_id=job_id.strip(),
                status=map_slurm_state(state),
                raw_state=state.strip(),
                name=_field(name),
                elapsed=_field(elapsed),
                start_time=_field(start),
                work_dir=_field(work_dir),
            )
        )

    return updates


def parse_sacct_output(output: str) -> list[JobStatusUpdate]:
    """Parse the output of the historical query (see `historical_status_command`).

    Rows for job steps (with IDs such as ``12345.batch``) are skipped, as are lines
    that do not have the expected number of fields.
    """

    updates = []
    for line in output.splitlines():
        fields = line.strip().split("|")
        if len(fields) < 9 or not fields[0].strip():
            if line.strip():
                logger.debug("Skipping unparseable sacct line: %s", line)
            continue

        job_id, name, state, exit_code, _, start, end, elapsed, work_dir = fields[:9]
        if "." in job_id:
            continue

        updates.append(
            JobStatusUpdate(
                scheduler_job_id=job_id.strip(),
                status=map_slurm_state(state),
                raw_state=state.strip(),
                name=_field(name),
                elapsed=_field(elapsed),
                start_time=_field(start),
                end_time=_field(end),
                exit_code=_field(exit_code),
                work_dir=_field(work_dir),
            )
        )

    return updates


def parse_sbatch_output(output: str) -> Optional[str]:
    """Extract the job ID from the output of ``sbatch``.

    Returns ``None`` if the output does not contain a line of the form
    ``Submitted batch job <digits>``.

    Examples
    --------
    >>> parse_sbatch_output("Submitted batch job 12345678\\n")
    '12345678'
    >>> parse_sbatch_output("Submitted batch job abc") is None
    True
    """

    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Submitted batch job"):
            token = line.split()[-1]
            return token if _SCHEDULER_JOB_ID.match(token) else None

    return None


def validate_scheduler_job_ids(ids: Iterable[str]) -> list[str]:
    """Check that scheduler job IDs are all numeric.

    Raises
    ------
    ValidationError
        If any ID is not a string of digits.
    """

    ids = [str(i) for i in ids]
    invalid = [i for i in ids if not _SCHEDULER_JOB_ID.match(i)]
    if invalid:
        raise ValidationError(f"Invalid scheduler job IDs: {', '.join(invalid)}")

    return ids


def submit_command(scratch_dir: Union[str, PurePosixPath]) -> Command:
    """The command to submit a job's script from its scratch directory."""

    return cd_and_run(
        scratch_dir,
        build_command("sbatch {script}", script=escape_parameter(SUBMISSION_SCRIPT_NAME)),
    )


def active_status_command(scheduler_job_ids: Sequence[str]) -> Command:
    return build_command(
        "squeue -j {ids} --format={fmt} --noheader",
        ids=escape_parameter(",".join(validate_scheduler_job_ids(scheduler_job_ids))),
        fmt=escape_parameter(SQUEUE_FORMAT),
    )


def historical_status_command(scheduler_job_ids: Sequence[str]) -> Command:
    return build_command(
        "sacct -j {ids} --format={fmt} --parsable2 --noheader",
        ids=escape_parameter(",".join(validate_scheduler_job_ids(scheduler_job_ids))),
        fmt=escape_parameter(SACCT_FORMAT),
    )


def cancel_command(scheduler_job_id: str) -> Command:
    (job_id,) = validate_scheduler_job_ids([scheduler_job_id])
    return build_command("scancel {job_id}", job_id=escape_parameter(job_id))


def rsync_command(
    source_dir: Union[str, PurePosixPath], destination_dir: Union[str, PurePosixPath]
) -> Command:
    """The command to copy the contents of one remote directory into another."""

    return build_command(
        "rsync -az {source} {destination}",
        source=escape_parameter(f"{str(source_dir).rstrip('/')}/"),
        destination=escape_parameter(f"{str(destination_dir).rstrip('/')}/"),
    )


class StatusPoller:
    """Queries the scheduler for the status of jobs.

    Parameters
    ----------
    session : Session
        The session to run the queries over.
    """

    def __init__(self, session: Session):
        self._session = session

    def poll(
        self,
        scheduler_job_ids: Sequence[str],
        cancel: Optional[CancellationToken] = None,
    ) -> list[JobStatusUpdate]:
        """Get the current status of jobs from the scheduler.

        The active query is issued first, for all jobs in one command; jobs it does not
        report are then looked up with the historical query, also in one command. Jobs
        reported by neither are left out of the result.

        Parameters
        ----------
        scheduler_job_ids : Sequence[str]
            Scheduler-assigned IDs of the jobs to query.
        cancel : CancellationToken, optional
            (Default: None) A token checked before each query.

        Returns
        -------
        list[JobStatusUpdate]
            Updates for the jobs the scheduler reported on.

        Raises
        ------
        ValidationError
            If any ID is not a valid scheduler job ID.
        RemoteCommandError
            If a query fails.
        NetworkError
            If the remote host cannot be reached.
        """

        ids = validate_scheduler_job_ids(dict.fromkeys(scheduler_job_ids))
        if not ids:
            return []

        active = self._run_query(
            active_status_command(ids), parse_squeue_output, "query active jobs", cancel
        )
        updates = {u.scheduler_job_id: u for u in active if u.scheduler_job_id in ids}

        remaining = [i for i in ids if i not in updates]
        if remaining:
            historical = self._run_query(
                historical_status_command(remaining),
                parse_sacct_output,
                "query job history",
                cancel,
            )
            for update in historical:
                if update.scheduler_job_id in remaining:
                    updates[update.scheduler_job_id] = update

        missing = [i for i in ids if i not in updates]
        if missing:
            logger.warning(
                "Scheduler did not report on jobs %s", ", ".join(missing)
            )

        return [updates[i] for i in ids if i in updates]

    def _run_query(self, command: Command, parser, action: str, cancel) -> list:
        result = self._session.execute(
            command,
            timeout=self._session.timeouts.status,
            cancel=cancel,
            retry_policy=QUICK_RETRY,
        )
        if result.ok:
            return parser(result.stdout)

        # squeue exits non-zero when none of the jobs are still queued.
        if "invalid job id" in result.stderr.lower():
            return []

        raise classify_remote_failure(
            result.exit_code, result.stderr, result.stdout, action=action
        )
