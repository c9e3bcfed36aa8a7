"""The automation chains that drive a job through its lifecycle.

A job is created by `CreationChain`, submitted to the scheduler by `SubmissionChain`,
has its status refreshed by `SyncChain`, has its results gathered by `CompletionChain`
once it finishes and is removed by `CleanupChain`. Each chain reports its progress as
`ProgressEvent` objects and can be asked to stop through a `CancellationToken`, in
which case no new remote operation is started (operations already finished are not
undone).

All changes to job records go through the local cache, in short read-modify-write
transactions that are never held open across a remote call. Failures of a chain step
are recorded on the job record, so that the step can be retried on its own.
"""

import dataclasses
import json
import logging
import pathlib
from abc import ABC
from threading import Lock
from typing import Callable, Optional, Union

from namdrunner.sim_management.cache import JobCache
from namdrunner.sim_management.cancellation import CancellationToken, check_cancelled
from namdrunner.sim_management.cluster import ClusterProfile
from namdrunner.sim_management.errors import (
    ChainCancelledError,
    FilesystemError,
    InvalidJobStatusError,
    RemoteCommandError,
    RemoteNotFoundError,
    RunnerError,
    ValidationError,
    classify_remote_failure,
)
from namdrunner.sim_management.jobs import (
    ACTIVE_STATUSES,
    JobId,
    JobIDGenerator,
    JobRecord,
    JobSpec,
    JobStatus,
    OutputFile,
    StatusSource,
    utc_now,
)
from namdrunner.sim_management.paths import (
    INPUT_FILES_DIRECTORY,
    OUTPUTS_DIRECTORY,
    RemoteLayout,
)
from namdrunner.sim_management.retry import NO_RETRY
from namdrunner.sim_management.scripts import generate
from namdrunner.sim_management.session import CommandResult, Session
from namdrunner.sim_management.shell import Command
from namdrunner.sim_management.slurm import (
    StatusPoller,
    cancel_command,
    parse_sbatch_output,
    rsync_command,
    submit_command,
)
from namdrunner.sim_management.transfer import FileTransfer
from namdrunner.sim_management.types import FilePath, ProgressCallback

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ProgressEvent:
    """A progress report from an automation chain.

    Attributes
    ----------
    chain : str
        The name of the chain, e.g. "creation".
    step : str
        A short, machine-friendly name of the step being started.
    current_step : int
        The number of the step being started, counting from 1.
    total_steps : int
        The number of steps in the chain.
    message : str
        A human-readable description of the step.
    """

    chain: str
    step: str
    current_step: int
    total_steps: int
    message: str

    @property
    def percentage(self) -> float:
        """(Read-only) How far through the chain the step is, from 0 to 100."""

        if self.total_steps <= 0:
            return 100.0

        return 100.0 * min(self.current_step, self.total_steps) / self.total_steps

    def __str__(self) -> str:
        return self.message


@dataclasses.dataclass
class ChainContext:
    """The resources shared by the automation chains for one connected user."""

    session: Session
    transfer: FileTransfer
    cache: JobCache
    layout: RemoteLayout
    profile: ClusterProfile
    poller: StatusPoller

    @classmethod
    def from_session(
        cls, session: Session, cache: JobCache, profile: ClusterProfile
    ) -> "ChainContext":
        return cls(
            session=session,
            transfer=FileTransfer(session),
            cache=cache,
            layout=RemoteLayout(profile, session.username),
            profile=profile,
            poller=StatusPoller(session),
        )


class JobClaims:
    """Jobs that a kind of chain is currently working on, shared between threads.

    Jobs are keyed on the path of their cache, so that chains working with different
    caches never block each other.
    """

    def __init__(self):
        self._claimed: set[tuple[str, str]] = set()
        self._lock = Lock()

    def claim(self, cache: JobCache, job_ids: list[str]) -> list[str]:
        """Claim jobs, returning the IDs of those that were not already claimed."""

        with self._lock:
            claimed = [i for i in job_ids if (cache.path, i) not in self._claimed]
            self._claimed.update((cache.path, i) for i in claimed)

        return claimed

    def release(self, cache: JobCache, job_ids: list[str]) -> None:
        with self._lock:
            self._claimed.difference_update((cache.path, i) for i in job_ids)


class AutomationChain(ABC):
    """Base class for the automation chains.

    Parameters
    ----------
    context : ChainContext
        The session, cache and remote layout to work with.
    progress : ProgressCallback, optional
        (Default: None) Called with a `ProgressEvent` as each step starts.
    cancel : CancellationToken, optional
        (Default: None) A token through which the chain can be asked to stop.
    """

    name: str = "chain"
    steps: tuple[str, ...] = ()

    def __init__(
        self,
        context: ChainContext,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ):
        self._context = context
        self._progress = progress
        self._cancel = cancel

    @property
    def context(self) -> ChainContext:
        return self._context

    def _report(self, step: str, message: str) -> None:
        check_cancelled(self._cancel, message[0].lower() + message[1:])
        current = self.steps.index(step) + 1 if step in self.steps else len(self.steps)
        event = ProgressEvent(self.name, step, current, len(self.steps), message)
        logger.info("[%s %d/%d] %s", self.name, current, len(self.steps), message)
        if self._progress is not None:
            self._progress(event)

    def _run_remote(
        self, command: Command, action: str, timeout: Optional[float] = None, **kwargs
    ) -> CommandResult:
        """Run a command, raising an error classified from its output if it fails."""

        result = self._context.session.execute(
            command, timeout=timeout, cancel=self._cancel, **kwargs
        )
        if not result.ok:
            raise classify_remote_failure(
                result.exit_code, result.stderr, result.stdout, action=action
            )

        return result

    def _upload_metadata(self, record: JobRecord) -> None:
        """Write the job's metadata file to the remote host, logging (rather than
        raising) any failure."""

        text = json.dumps(record.to_dict(include_local_paths=False), indent=2)
        try:
            self._context.transfer.upload_text(
                text, self._context.layout.metadata_file(record.job_id), cancel=self._cancel
            )
        except ChainCancelledError:
            raise
        except RunnerError as e:
            logger.warning("Could not write metadata for job %s: %s", record.job_id, e)

    def _record_failure(
        self,
        job_id: JobId,
        step: str,
        error: Exception,
        condition: Optional[Callable[[JobRecord], bool]] = None,
    ) -> None:
        """Record a failed step on a job, if the stored record meets a condition."""

        logger.error("Step '%s' failed for job %s: %s", step, job_id, error)

        def record(r: JobRecord) -> None:
            if condition is None or condition(r):
                r.record_failure(step, error)

        try:
            self._context.cache.update(job_id, record)
        except RunnerError as e:
            logger.error("Could not record failure on job %s: %s", job_id, e)


class CreationChain(AutomationChain):
    """Creates a job: validates it, sets up its directory on the remote host and
    uploads its input files and generated scripts.

    The job record is persisted as soon as the remote directory exists, but is only
    marked ready for submission once every file has been uploaded. If a step fails
    afterwards, the failure is recorded on the record and `retry` can be used to
    finish creating the job.
    """

    name = "creation"
    steps = ("validate", "directories", "persist", "upload_inputs", "upload_scripts", "finish")

    _id_generator = JobIDGenerator()

    def run(self, job_spec: JobSpec) -> JobRecord:
        """Create a job.

        Returns
        -------
        JobRecord
            The record of the new job, in status ``CREATED`` and ready for submission.

        Raises
        ------
        ValidationError
            If the job specification is invalid or an input file cannot be found. No
            remote call is made in this case.
        """

        layout = self._context.layout
        job_id = self._id_generator.generate_id()

        self._report("validate", "Validating job")
        artifacts = generate(job_spec, self._context.profile, layout.scratch_dir(job_id))
        self._check_local_files(job_spec)

        self._report("directories", "Creating job directories")
        self._context.transfer.mkdir(
            layout.project_dir(job_id) / INPUT_FILES_DIRECTORY, cancel=self._cancel
        )
        self._context.transfer.mkdir(
            layout.project_dir(job_id) / OUTPUTS_DIRECTORY, cancel=self._cancel
        )

        self._report("persist", "Saving job record")
        record = JobRecord.from_spec(job_id, job_spec)
        record.project_dir = str(layout.project_dir(job_id))
        self._context.cache.save(record)

        return self._upload(record, artifacts)

    def retry(self, job_id: Union[str, JobId]) -> JobRecord:
        """Finish creating a job whose creation failed after its record was saved.

        All input files and generated scripts are uploaded again.

        Raises
        ------
        InvalidJobStatusError
            If the job has already been created successfully or has been submitted.
        """

        record = self._context.cache.get(job_id)
        if record.ready or record.status != JobStatus.CREATED:
            raise InvalidJobStatusError(
                f"Job {record.job_id} has already been created.", status=record.status
            )

        self._report("validate", "Validating job")
        artifacts = generate(
            record.spec, self._context.profile, self._context.layout.scratch_dir(job_id)
        )
        self._check_local_files(record.spec)

        self._report("directories", "Creating job directories")
        project_dir = self._context.layout.project_dir(record.job_id)
        self._context.transfer.mkdir(project_dir / INPUT_FILES_DIRECTORY, cancel=self._cancel)
        self._context.transfer.mkdir(project_dir / OUTPUTS_DIRECTORY, cancel=self._cancel)
        return self._upload(record, artifacts)

    @staticmethod
    def _check_local_files(job_spec: JobSpec) -> None:
        missing = [f.name for f in job_spec.input_files if f.local_path is None]
        if missing:
            raise ValidationError(
                f"No local copy of input files: {', '.join(missing)}", issues=missing
            )

    def _upload(self, record: JobRecord, artifacts) -> JobRecord:
        layout, transfer = self._context.layout, self._context.transfer
        try:
            self._report("upload_inputs", "Uploading input files")
            for n, input_file in enumerate(record.input_files, start=1):
                logger.info(
                    "Uploading %s (%d of %d)", input_file.name, n, len(record.input_files)
                )
                transfer.upload(
                    input_file.local_path,
                    layout.input_file(record.job_id, input_file.name),
                    cancel=self._cancel,
                )

            self._report("upload_scripts", "Uploading job scripts")
            transfer.upload_text(
                artifacts.submission_script,
                layout.submission_script(record.job_id),
                cancel=self._cancel,
            )
            transfer.upload_text(
                artifacts.simulation_config,
                layout.simulation_config(record.job_id),
                cancel=self._cancel,
            )

            self._report("finish", "Finishing job creation")

            def mark_ready(r: JobRecord) -> None:
                r.ready = True
                r.error_info = None
                r.failed_step = None
                r.updated_at = utc_now()

            record = self._context.cache.update(record.job_id, mark_ready)
        except Exception as e:
            self._record_failure(record.job_id, "creation", e)
            raise

        self._upload_metadata(record)
        logger.info("Created job %s", record.job_id)
        return record


class SubmissionChain(AutomationChain):
    """Submits a created job to the scheduler.

    The job's files are copied from its persistent directory to a new scratch
    directory, from where the submission script is submitted. A job that already has a
    scheduler ID is never submitted again.
    """

    name = "submission"
    steps = ("check", "scratch", "copy", "submit", "record")

    _in_progress = JobClaims()

    def run(self, job_id: Union[str, JobId]) -> JobRecord:
        """Submit a job.

        Returns
        -------
        JobRecord
            The updated record, in status ``PENDING`` with its scheduler ID.

        Raises
        ------
        InvalidJobStatusError
            If the job has already been submitted, is being submitted by another chain,
            or its creation did not finish.
        RemoteCommandError
            If the scheduler rejects the job or its response cannot be understood.
        """

        self._report("check", "Checking job")
        job_id = str(self._context.cache.get(job_id).job_id)
        if not self._in_progress.claim(self._context.cache, [job_id]):
            raise InvalidJobStatusError(f"Job {job_id} is already being submitted.")

        try:
            return self._submit(job_id)
        finally:
            self._in_progress.release(self._context.cache, [job_id])

    def _submit(self, job_id: str) -> JobRecord:
        record = self._context.cache.get(job_id)
        if record.scheduler_job_id is not None or record.status != JobStatus.CREATED:
            raise InvalidJobStatusError(
                f"Job {record.job_id} has already been submitted "
                f"(scheduler ID {record.scheduler_job_id}).",
                status=record.status,
            )

        if not record.ready:
            raise InvalidJobStatusError(
                f"Job {record.job_id} was not fully created; retry its creation first.",
                status=record.status,
            )

        layout, timeouts = self._context.layout, self._context.session.timeouts
        project_dir = layout.project_dir(record.job_id)
        scratch_dir = layout.scratch_dir(record.job_id)
        try:
            self._report("scratch", "Creating scratch directory")
            self._context.transfer.mkdir(scratch_dir, cancel=self._cancel)

            self._report("copy", "Copying job files to scratch")
            self._run_remote(
                rsync_command(project_dir, scratch_dir),
                action="copy job files to scratch",
                timeout=timeouts.file_copy,
            )

            self._report("submit", "Submitting job to the scheduler")
            result = self._run_remote(
                submit_command(scratch_dir),
                action="submit job",
                timeout=timeouts.submit,
                retry_policy=NO_RETRY,
            )
            scheduler_job_id = parse_sbatch_output(result.stdout)
            if scheduler_job_id is None:
                raise RemoteCommandError(
                    "Could not submit job: unexpected response from the scheduler: "
                    f"{result.stdout.strip()!r}",
                    exit_code=result.exit_code,
                    stderr=result.stderr,
                    failure_kind="unparseable_output",
                )

            self._report("record", "Recording submission")
            record = self._context.cache.update(
                record.job_id, lambda r: r.mark_submitted(scheduler_job_id, str(scratch_dir))
            )
        except Exception as e:
            self._record_failure(
                record.job_id,
                "submission",
                e,
                condition=lambda r: r.scheduler_job_id is None,
            )
            raise

        self._upload_metadata(record)
        logger.info(
            "Submitted job %s with scheduler ID %s", record.job_id, scheduler_job_id
        )
        return record


@dataclasses.dataclass
class SyncReport:
    """The outcome of a sync.

    Attributes
    ----------
    updated : list[JobRecord]
        Records whose status changed.
    completed : list[JobRecord]
        Records for which completion was carried out.
    skipped : list[str]
        IDs of jobs not synced because a sync of them was already in progress.
    error : RunnerError, optional
        The error that stopped the scheduler from being queried, in which case no
        status was changed.
    completion_errors : dict[str, RunnerError]
        Errors from completion, by job ID. Completion is retried on the next sync.
    """

    updated: list[JobRecord] = dataclasses.field(default_factory=list)
    completed: list[JobRecord] = dataclasses.field(default_factory=list)
    skipped: list[str] = dataclasses.field(default_factory=list)
    error: Optional[RunnerError] = None
    completion_errors: dict[str, RunnerError] = dataclasses.field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.completion_errors


class SyncChain(AutomationChain):
    """Refreshes the status of active jobs from the scheduler.

    All active jobs are queried together. Status changes are applied only in the
    forward direction; a job that reaches a terminal status has `CompletionChain` run
    for it, as do terminal jobs whose completion has not yet finished. Syncing a job
    that is already being synced elsewhere is skipped.
    """

    name = "sync"
    steps = ("query", "update", "complete")

    _in_progress = JobClaims()

    @staticmethod
    def _needs_sync(record: JobRecord) -> bool:
        return record.scheduler_job_id is not None and (
            record.status in ACTIVE_STATUSES
            or (record.is_terminal and not record.completion_done)
        )

    def run(self, job_ids: Optional[list[Union[str, JobId]]] = None) -> SyncReport:
        """Sync jobs with the scheduler.

        Parameters
        ----------
        job_ids : list[Union[str, JobId]], optional
            (Default: None) The jobs to sync. If ``None`` all jobs that need syncing are
            synced. Jobs that are not active (or awaiting completion) are ignored.

        Returns
        -------
        SyncReport
            What changed. A failure to query the scheduler is reported here rather than
            raised, leaving the cache unchanged.
        """

        records = self._context.cache.list_jobs()
        if job_ids is not None:
            wanted = {str(i) for i in job_ids}
            records = [r for r in records if str(r.job_id) in wanted]

        records = {str(r.job_id): r for r in records if self._needs_sync(r)}
        claimed = self._in_progress.claim(self._context.cache, list(records))
        skipped = [i for i in records if i not in claimed]
        report = SyncReport(skipped=skipped)
        if skipped:
            logger.debug("Skipping jobs already being synced: %s", ", ".join(skipped))

        try:
            self._sync(records, claimed, report)
        finally:
            self._in_progress.release(self._context.cache, claimed)

        return report

    def _sync(self, records: dict[str, JobRecord], claimed: list[str], report: SyncReport):
        active = [records[i] for i in claimed if records[i].status in ACTIVE_STATUSES]
        if active:
            self._report("query", f"Querying scheduler for {len(active)} jobs")
            try:
                updates = self._context.poller.poll(
                    [r.scheduler_job_id for r in active], cancel=self._cancel
                )
            except ChainCancelledError:
                raise
            except RunnerError as e:
                logger.warning("Sync failed; job statuses left unchanged: %s", e)
                report.error = e
                return None

            self._report("update", "Updating job statuses")
            by_scheduler_id = {r.scheduler_job_id: r for r in active}
            for update in updates:
                record = by_scheduler_id.get(update.scheduler_job_id)
                if record is None or not record.can_transition_to(update.status):
                    continue

                def apply(r: JobRecord, status=update.status) -> None:
                    if r.can_transition_to(status):
                        r.transition_to(status, StatusSource.SCHEDULER)

                record = self._context.cache.update(record.job_id, apply)
                records[str(record.job_id)] = record
                report.updated.append(record)
                logger.info("Job %s is now %s", record.job_id, record.status.value)

        to_complete = [
            records[i]
            for i in claimed
            if records[i].is_terminal and not records[i].completion_done
        ]
        if to_complete:
            self._report("complete", f"Completing {len(to_complete)} finished jobs")

        for record in to_complete:
            check_cancelled(self._cancel, "completing jobs")
            try:
                completed = CompletionChain(
                    self._context, progress=self._progress, cancel=self._cancel
                ).run(record.job_id)
            except ChainCancelledError:
                raise
            except RunnerError as e:
                report.completion_errors[str(record.job_id)] = e
            else:
                report.completed.append(completed)

        return None


class CompletionChain(AutomationChain):
    """Gathers the results of a finished job.

    Files in the job's scratch directory are copied back to its persistent directory,
    the scheduler's log files are read (once only) into the job record and the files in
    the job's output directory are recorded. Running the chain again on a job whose
    completion has finished has no effect.
    """

    name = "completion"
    steps = ("copy", "logs", "outputs", "finish")

    def run(self, job_id: Union[str, JobId]) -> JobRecord:
        record = self._context.cache.get(job_id)
        if record.completion_done:
            return record

        if not record.is_terminal or record.scheduler_job_id is None:
            raise InvalidJobStatusError(
                f"Job {record.job_id} has not finished.", status=record.status
            )

        try:
            record = self._complete(record)
        except Exception as e:
            self._record_failure(record.job_id, "completion", e)
            raise

        self._upload_metadata(record)
        logger.info("Completed job %s", record.job_id)
        return record

    def _complete(self, record: JobRecord) -> JobRecord:
        layout, transfer = self._context.layout, self._context.transfer
        project_dir = layout.project_dir(record.job_id)

        self._report("copy", "Copying results from scratch")
        scratch_dir = record.scratch_dir or str(layout.scratch_dir(record.job_id))
        if transfer.exists(scratch_dir):
            self._run_remote(
                rsync_command(scratch_dir, project_dir),
                action="copy results from scratch",
                timeout=self._context.session.timeouts.file_copy,
            )
        else:
            logger.warning(
                "Scratch directory %s for job %s no longer exists", scratch_dir, record.job_id
            )

        if not record.logs_fetched:
            record = self._fetch_logs(record)

        self._report("outputs", "Recording output files")
        try:
            entries = transfer.list(layout.outputs_dir(record.job_id), cancel=self._cancel)
        except RemoteNotFoundError:
            entries = []

        outputs = tuple(
            OutputFile(
                name=e.name,
                relative_path=f"{OUTPUTS_DIRECTORY}/{e.name}",
                size=e.size,
                modified=e.modified,
            )
            for e in entries
            if not e.is_dir
        )

        self._report("finish", "Finishing completion")

        def finish(r: JobRecord) -> None:
            r.output_files = outputs
            r.completion_done = True
            r.error_info = None
            r.failed_step = None
            r.updated_at = utc_now()

        return self._context.cache.update(record.job_id, finish)

    def refetch_logs(self, job_id: Union[str, JobId]) -> JobRecord:
        """Read the scheduler logs of a job again, replacing any stored on its record.

        Logs are read from the job's persistent directory, where they are copied when
        the job completes.

        Raises
        ------
        InvalidJobStatusError
            If the job has not been submitted.
        """

        record = self._context.cache.get(job_id)
        if record.scheduler_job_id is None:
            raise InvalidJobStatusError(
                f"Job {record.job_id} has not been submitted, so has no logs.",
                status=record.status,
            )

        record = self._fetch_logs(record)
        logger.info("Fetched scheduler logs of job %s again", record.job_id)
        return record

    def _fetch_logs(self, record: JobRecord) -> JobRecord:
        self._report("logs", "Fetching scheduler logs")
        logs = {stream: self._read_log(record, stream) for stream in ("out", "err")}

        def store_logs(r: JobRecord) -> None:
            r.slurm_stdout = logs["out"]
            r.slurm_stderr = logs["err"]
            r.logs_fetched = True

        return self._context.cache.update(record.job_id, store_logs)

    def _read_log(self, record: JobRecord, stream: str) -> Optional[str]:
        path = self._context.layout.scheduler_log(
            record.job_id, record.job_name, record.scheduler_job_id, stream
        )
        try:
            return self._context.transfer.download_text(path, cancel=self._cancel)
        except RemoteNotFoundError:
            logger.info("No scheduler log at %s", path)
            return None


class CleanupChain(AutomationChain):
    """Deletes a job: cancels it at the scheduler if it is still active, removes its
    persistent and scratch directories and deletes its record.

    A cancelled job is marked ``CANCELLED`` straight away, so that retrying a cleanup
    whose removal step failed does not cancel it again. If cancellation fails then
    nothing is removed. Failures are recorded on the job record.
    """

    name = "cleanup"
    steps = ("cancel", "validate", "remove", "forget")

    def run(self, job_id: Union[str, JobId], delete_remote: bool = True) -> None:
        """Delete a job.

        Parameters
        ----------
        job_id : Union[str, JobId]
            The ID of the job to delete.
        delete_remote : bool, optional
            (Default: True) Whether to remove the job's directories on the remote host.
            If ``False`` only the local record is deleted (an active job is still
            cancelled first).

        Raises
        ------
        RemoteCommandError
            If the job could not be cancelled. Its directories are left in place.
        ValidationError
            If the job's directories are not within the managed job directories.
        """

        record = self._context.cache.get(job_id)

        if record.status in ACTIVE_STATUSES and record.scheduler_job_id is not None:
            self._report("cancel", f"Cancelling scheduler job {record.scheduler_job_id}")
            try:
                self._run_remote(
                    cancel_command(record.scheduler_job_id),
                    action=f"cancel job {record.scheduler_job_id}",
                    timeout=self._context.session.timeouts.quick,
                )
                record = self._context.cache.update(record.job_id, _mark_cancelled)
            except Exception as e:
                self._record_failure(record.job_id, "cleanup", e)
                raise

        if delete_remote:
            try:
                self._remove_directories(record)
            except Exception as e:
                self._record_failure(record.job_id, "cleanup", e)
                raise

        self._report("forget", "Deleting job record")
        self._context.cache.delete(record.job_id)
        logger.info("Deleted job %s", record.job_id)
        return None

    def _remove_directories(self, record: JobRecord) -> None:
        layout = self._context.layout

        self._report("validate", "Checking job directories")
        paths = [layout.project_dir(record.job_id), layout.scratch_dir(record.job_id)]
        for recorded in (record.project_dir, record.scratch_dir):
            if recorded is not None and recorded not in {str(p) for p in paths}:
                raise ValidationError(
                    f"Refusing to delete '{recorded}': not a managed job directory."
                )

        paths = [layout.validate_managed_path(p) for p in paths]

        self._report("remove", "Removing job directories")
        for path in paths:
            self._context.transfer.remove(path, recursive=True, cancel=self._cancel)


def _mark_cancelled(record: JobRecord) -> None:
    if record.can_transition_to(JobStatus.CANCELLED):
        record.transition_to(JobStatus.CANCELLED, StatusSource.LOCAL)


def cancel_job(
    context: ChainContext,
    job_id: Union[str, JobId],
    cancel: Optional[CancellationToken] = None,
) -> JobRecord:
    """Cancel an active job at the scheduler and mark it ``CANCELLED``.

    The job's directories are left in place.

    Raises
    ------
    InvalidJobStatusError
        If the job is not active.
    RemoteCommandError
        If the scheduler refuses to cancel the job.
    """

    record = context.cache.get(job_id)
    if record.status not in ACTIVE_STATUSES or record.scheduler_job_id is None:
        raise InvalidJobStatusError(
            f"Cannot cancel job {record.job_id} with status '{record.status.value}'.",
            status=record.status,
        )

    check_cancelled(cancel, f"cancelling job {record.job_id}")
    result = context.session.execute(
        cancel_command(record.scheduler_job_id),
        timeout=context.session.timeouts.quick,
        cancel=cancel,
    )
    if not result.ok:
        raise classify_remote_failure(
            result.exit_code,
            result.stderr,
            result.stdout,
            action=f"cancel job {record.scheduler_job_id}",
        )

    record = context.cache.update(record.job_id, _mark_cancelled)
    logger.info("Cancelled job %s", record.job_id)
    return record


def download_job_file(
    context: ChainContext,
    job_id: Union[str, JobId],
    relative_path: str,
    local_path: FilePath,
    cancel: Optional[CancellationToken] = None,
) -> pathlib.Path:
    """Copy a file of a job from its persistent directory to the local machine.

    Parameters
    ----------
    context : ChainContext
        The session, cache and remote layout to work with.
    job_id : Union[str, JobId]
        The ID of the job.
    relative_path : str
        The path of the file relative to the job's directory, e.g.
        ``outputs/equil.dcd`` or ``input_files/system.pdb``.
    local_path : FilePath
        Where to save the file. If this is an existing directory then the file is saved
        in it under its remote name.
    cancel : CancellationToken, optional
        (Default: None) A token through which the download can be stopped.

    Returns
    -------
    pathlib.Path
        The path the file was saved to.

    Raises
    ------
    ValidationError
        If the relative path is unsafe, e.g. contains a ``..`` segment. No remote call
        is made in this case.
    RemoteNotFoundError
        If the file does not exist on the remote host.
    FilesystemError
        If the file cannot be written locally.
    """

    record = context.cache.get(job_id)
    remote = context.layout.job_relative(record.job_id, relative_path)
    destination = pathlib.Path(local_path)
    if destination.is_dir():
        destination = destination / remote.name

    contents = context.transfer.download(remote, cancel=cancel)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(contents)
    except OSError as e:
        raise FilesystemError(f"Could not save {destination}: {e}") from e

    logger.info("Downloaded %s of job %s to %s", relative_path, record.job_id, destination)
    return destination


def download_job_files(
    context: ChainContext,
    job_id: Union[str, JobId],
    directory: str,
    local_dir: FilePath,
    cancel: Optional[CancellationToken] = None,
) -> list[pathlib.Path]:
    """Copy all files in one of a job's directories to a local directory.

    Parameters
    ----------
    directory : str
        Either ``"input_files"`` or ``"outputs"``.
    local_dir : FilePath
        The local directory to save the files in. It is created if it does not exist.

    Returns
    -------
    list[pathlib.Path]
        The paths the files were saved to.

    Raises
    ------
    ValidationError
        If `directory` is not one of the job's file directories.
    """

    if directory not in (INPUT_FILES_DIRECTORY, OUTPUTS_DIRECTORY):
        raise ValidationError(
            f"Cannot download '{directory}': expected '{INPUT_FILES_DIRECTORY}' or "
            f"'{OUTPUTS_DIRECTORY}'."
        )

    record = context.cache.get(job_id)
    local_dir = pathlib.Path(local_dir)
    try:
        local_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Could not create {local_dir}: {e}") from e

    entries = context.transfer.list(
        context.layout.project_dir(record.job_id) / directory, cancel=cancel
    )
    return [
        download_job_file(
            context, record.job_id, f"{directory}/{e.name}", local_dir / e.name, cancel
        )
        for e in entries
        if not e.is_dir
    ]


def discover_jobs(
    context: ChainContext, cancel: Optional[CancellationToken] = None
) -> list[JobRecord]:
    """Import jobs found on the remote host that are missing from the local cache.

    Each job directory in the persistent tree is checked for a metadata file, from
    which the job record is rebuilt. Directories without readable metadata are skipped.

    Returns
    -------
    list[JobRecord]
        The records imported.
    """

    try:
        entries = context.transfer.list(context.layout.project_base, cancel=cancel)
    except RemoteNotFoundError:
        return []

    imported = []
    for entry in entries:
        check_cancelled(cancel, "discovering jobs")
        if not entry.is_dir or context.cache.contains(entry.name):
            continue

        try:
            job_id = JobId(entry.name)
            text = context.transfer.download_text(
                context.layout.metadata_file(job_id), cancel=cancel
            )
            record = JobRecord.from_dict(json.loads(text))
            if record.job_id != job_id:
                raise ValueError(f"metadata is for job {record.job_id}")

            context.cache.save(record)
        except ChainCancelledError:
            raise
        except (RunnerError, ValueError, KeyError, TypeError) as e:
            logger.warning("Could not import job from %s: %s", entry.path, e)
            continue

        imported.append(record)
        logger.info("Discovered job %s on the remote host", record.job_id)

    return imported


def reconcile(
    context: ChainContext,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> SyncReport:
    """Bring the local cache up to date with the remote host after connecting.

    If the cache is empty, jobs are first discovered on the remote host. All jobs are
    then synced with the scheduler, which also completes any finished jobs whose
    completion had not finished.
    """

    if context.cache.is_empty():
        discover_jobs(context, cancel=cancel)

    return SyncChain(context, progress=progress, cancel=cancel).run()
