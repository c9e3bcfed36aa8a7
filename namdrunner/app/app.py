import atexit
import logging
import pathlib
from collections.abc import Sequence
from typing import Any, Optional, Union

from namdrunner.sim_management.cache import JobCache
from namdrunner.sim_management.chains import (
    ChainContext,
    CleanupChain,
    CompletionChain,
    CreationChain,
    SubmissionChain,
    SyncChain,
    SyncReport,
    cancel_job,
    download_job_file,
    download_job_files,
)
from namdrunner.sim_management.cluster import (
    ALPINE_PROFILE,
    ClusterProfile,
    ValidationResult,
    estimate_cost,
    estimate_queue_time,
    validate_resource_request,
)
from namdrunner.sim_management.errors import (
    InvalidJobStatusError,
    SessionError,
    UnknownJobIdError,
)
from namdrunner.sim_management.jobs import (
    ACTIVE_STATUSES,
    JobId,
    JobRecord,
    JobSpec,
    JobStatus,
    ResourceRequest,
)
from namdrunner.sim_management.manager import ChainHandle, JobManager
from namdrunner.sim_management.session import Session, connect
from namdrunner.sim_management.types import FilePath, ProgressCallback

logger = logging.getLogger(__name__)


class App:
    """
    Provides a high-level interface for creating, submitting and managing simulation jobs
    on a remote cluster.

    This class acts as a facade to the job engine, offering a simplified interface for
    connecting to the cluster and running the automation chains on jobs. It owns the
    session with the cluster, which is opened by `connect` and disposed of by
    `disconnect` (or `shutdown`, which is also called on interpreter exit). Job records
    are read from the local cache, so can be inspected while disconnected.

    Parameters
    ----------
    profile : ClusterProfile, optional
        (Default: ``ALPINE_PROFILE``) The cluster to work with.
    cache_path : FilePath, optional
        (Default: "jobs.db") Path to the local cache of job records.
    polling_interval : float, optional
        (Default: 60) Time interval, in seconds, between background syncs of job
        statuses while connected.
    """

    def __init__(
        self,
        profile: ClusterProfile = ALPINE_PROFILE,
        cache_path: FilePath = "jobs.db",
        polling_interval: float = 60,
    ):
        self._profile = profile
        self._cache = JobCache(cache_path)
        self._polling_interval = polling_interval
        self._session: Optional[Session] = None
        self._job_manager: Optional[JobManager] = None
        atexit.register(self.shutdown)

    @property
    def profile(self) -> ClusterProfile:
        """(Read-only) The cluster profile in use."""
        return self._profile

    @property
    def connected(self) -> bool:
        """(Read-only) Whether there is an open session with the cluster."""
        return self._session is not None and self._session.is_open

    @property
    def username(self) -> Optional[str]:
        return self._session.username if self._session is not None else None

    def connect(
        self,
        username: str,
        password: str,
        host: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncReport:
        """
        Open a session with the cluster and bring the local cache up to date.

        Any existing session is closed first. After connecting, jobs are discovered on
        the cluster if the local cache is empty, active jobs are synced with the
        scheduler and background syncing is started.

        Parameters
        ----------
        username : str
            The user's name on the cluster.
        password : str
            The user's password. It is not stored by the application.
        host : str, optional
            (Default: None) The host to connect to. If ``None`` then the host in the
            cluster profile is used.
        progress : ProgressCallback, optional
            (Default: None) Receives progress events from the initial sync.

        Returns
        -------
        SyncReport
            The outcome of the initial sync.

        Raises
        ------
        AuthenticationError
            If the password is rejected.
        NetworkError
            If the cluster cannot be reached.
        """

        self.disconnect()
        session = connect(
            host if host is not None else self._profile.host,
            username,
            password,
            bootstrap=self._profile.bootstrap,
            timeouts=self._profile.timeouts,
        )
        try:
            context = ChainContext.from_session(session, self._cache, self._profile)
            manager = JobManager(context, polling_interval=self._polling_interval)
            report = manager.reconcile(progress=progress)
        except BaseException:
            session.dispose()
            raise

        self._session, self._job_manager = session, manager
        manager.start_monitor()
        logger.info("Connected to %s as %s", session.host, username)
        return report

    def disconnect(self) -> None:
        """Stop background work and close the session with the cluster, if open."""

        if self._job_manager is not None:
            self._job_manager.shutdown()
            self._job_manager = None

        if self._session is not None:
            self._session.dispose()
            self._session = None
            logger.info("Disconnected")

    def _require_manager(self) -> JobManager:
        if self._job_manager is None or not self.connected:
            raise SessionError("Not connected to the cluster; connect first.")

        return self._job_manager

    @staticmethod
    def _wait(handle: ChainHandle) -> Any:
        """Wait for a chain to finish, cancelling it if the wait is interrupted."""

        try:
            return handle.result()
        except KeyboardInterrupt:
            handle.cancel()
            handle.join()
            raise

    def check_resources(self, request: ResourceRequest) -> dict[str, Any]:
        """
        Validate a resource request and estimate its cost and queue time.

        Returns
        -------
        dict[str, Any]
            With keys 'validation' (a ``ValidationResult``), 'cost' (service units) and
            'queue_time' (a rough description of the expected wait).
        """

        validation: ValidationResult = validate_resource_request(request, self._profile)
        return {
            "validation": validation,
            "cost": estimate_cost(request, self._profile),
            "queue_time": estimate_queue_time(request, self._profile),
        }

    def create_job(
        self, job_spec: JobSpec, progress: Optional[ProgressCallback] = None
    ) -> JobRecord:
        """Create a job on the cluster, uploading its files. See ``CreationChain``."""

        manager = self._require_manager()
        return self._wait(manager.run_chain(CreationChain, job_spec, progress=progress))

    def retry_creation(
        self, job_id: Union[str, JobId], progress: Optional[ProgressCallback] = None
    ) -> JobRecord:
        """Finish creating a job whose creation failed part way."""

        manager = self._require_manager()

        def retry(job_id, cancel):
            return CreationChain(
                manager.context, progress=progress, cancel=cancel
            ).retry(job_id)

        return self._wait(manager.start(retry, job_id))

    def submit_job(
        self, job_id: Union[str, JobId], progress: Optional[ProgressCallback] = None
    ) -> JobRecord:
        """Submit a created job to the scheduler. See ``SubmissionChain``."""

        manager = self._require_manager()
        return self._wait(manager.run_chain(SubmissionChain, job_id, progress=progress))

    def sync(
        self,
        job_ids: Optional[Sequence[Union[str, JobId]]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncReport:
        """Sync jobs with the scheduler, completing any that have finished."""

        manager = self._require_manager()
        job_ids = list(job_ids) if job_ids is not None else None
        return self._wait(manager.run_chain(SyncChain, job_ids, progress=progress))

    def delete_job(
        self,
        job_id: Union[str, JobId],
        delete_remote: bool = True,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Delete a job, cancelling it first if it is active. See ``CleanupChain``.

        Parameters
        ----------
        job_id : Union[str, JobId]
            The ID of the job to delete.
        delete_remote : bool, optional
            (Default: True) Whether to remove the job's directories on the cluster. If
            ``False`` then only the local record is deleted, which can be done while
            disconnected provided the job is not active.
        progress : ProgressCallback, optional
            (Default: None) Receives progress events from the cleanup.
        """

        if not delete_remote and not self.connected:
            record = self._cache.get(job_id)
            if record.status in ACTIVE_STATUSES:
                raise SessionError(
                    f"Job {record.job_id} is still active and must be cancelled; "
                    "connect first."
                )

            self._cache.delete(record.job_id)
            logger.info("Deleted local record of job %s", record.job_id)
            return None

        manager = self._require_manager()
        return self._wait(
            manager.run_chain(CleanupChain, job_id, delete_remote, progress=progress)
        )

    def refetch_logs(
        self, job_id: Union[str, JobId], progress: Optional[ProgressCallback] = None
    ) -> dict[str, Optional[str]]:
        """Fetch the scheduler logs of a job from the cluster again, replacing those
        stored locally. Returns the logs as for `get_logs`."""

        manager = self._require_manager()

        def refetch(job_id, cancel):
            return CompletionChain(
                manager.context, progress=progress, cancel=cancel
            ).refetch_logs(job_id)

        record = self._wait(manager.start(refetch, job_id))
        return {"stdout": record.slurm_stdout, "stderr": record.slurm_stderr}

    def download_file(
        self, job_id: Union[str, JobId], relative_path: str, local_path: FilePath
    ) -> pathlib.Path:
        """
        Download one of a job's files to the local machine.

        Parameters
        ----------
        job_id : Union[str, JobId]
            The ID of the job.
        relative_path : str
            The path of the file relative to the job's directory, e.g.
            ``outputs/equil.dcd``.
        local_path : FilePath
            Where to save the file, or an existing directory to save it in.

        Returns
        -------
        pathlib.Path
            The path the file was saved to.
        """

        manager = self._require_manager()
        return self._wait(
            manager.start(
                download_job_file, manager.context, job_id, relative_path, local_path
            )
        )

    def download_files(
        self, job_id: Union[str, JobId], directory: str, local_dir: FilePath
    ) -> list[pathlib.Path]:
        """Download all of a job's input files (``directory="input_files"``) or output
        files (``directory="outputs"``) into a local directory."""

        manager = self._require_manager()
        return self._wait(
            manager.start(download_job_files, manager.context, job_id, directory, local_dir)
        )

    def cancel(self, job_ids: Sequence[Union[str, JobId]]) -> dict[str, list[Any]]:
        """
        Cancel active jobs at the scheduler.

        Returns
        -------
        dict[str, list[Any]]
            A report with keys 'cancelled_jobs' (records of jobs cancelled),
            'non_existent_jobs' (IDs not in the local cache), 'unsubmitted_jobs' (IDs of
            jobs that were never submitted) and 'terminated_jobs' (IDs of jobs that had
            already finished).
        """

        manager = self._require_manager()
        report = {
            "cancelled_jobs": [],
            "non_existent_jobs": [],
            "unsubmitted_jobs": [],
            "terminated_jobs": [],
        }
        for job_id in job_ids:
            try:
                report["cancelled_jobs"].append(
                    self._wait(manager.start(self._cancel_one, job_id))
                )
            except UnknownJobIdError:
                report["non_existent_jobs"].append(job_id)
            except InvalidJobStatusError as e:
                if e.status is JobStatus.CREATED:
                    report["unsubmitted_jobs"].append(job_id)
                else:
                    report["terminated_jobs"].append(job_id)

        return report

    def _cancel_one(self, job_id, cancel) -> JobRecord:
        return cancel_job(self._require_manager().context, job_id, cancel=cancel)

    def get_job(self, job_id: Union[str, JobId]) -> JobRecord:
        """
        Get the record of a job from the local cache.

        Raises
        ------
        UnknownJobIdError
            If there is no job with the given ID.
        """

        return self._cache.get(job_id)

    def get_jobs(
        self,
        job_ids: Optional[Sequence[Union[str, JobId]]] = None,
        n_most_recent: Optional[int] = None,
        statuses: Optional[Sequence[JobStatus]] = None,
    ) -> list[JobRecord]:
        """
        Retrieves records of jobs from the local cache, with optional filtering.

        Parameters
        ----------
        job_ids : Sequence[Union[str, JobId]], optional
            (Default: None) IDs of the jobs to retrieve records for. If ``None``,
            retrieve all records, subject to other filters.
        n_most_recent : int, optional
            (Default: None) The number of job records to return, counting back from the
            most recently created. If ``None`` then do not restrict the number of records
            returned.
        statuses : Sequence[JobStatus], optional
            (Default: None) Job statuses to filter on. If ``None`` then do not restrict
            the records returned by status.

        Returns
        -------
        list[JobRecord]
            The records, oldest first.
        """

        if n_most_recent is not None and n_most_recent < 0:
            raise ValueError("'n_most_recent' must be non-negative")
        elif n_most_recent == 0:
            return []

        jobs = self._cache.list_jobs(statuses=statuses)
        if job_ids is not None:
            wanted = {str(job_id) for job_id in job_ids}
            jobs = [job for job in jobs if str(job.job_id) in wanted]

        if n_most_recent is not None:
            return jobs[-n_most_recent:]

        return jobs

    def get_logs(self, job_id: Union[str, JobId]) -> dict[str, Optional[str]]:
        """
        Get the scheduler logs of a job, as fetched when the job completed.

        Returns
        -------
        dict[str, Optional[str]]
            With keys 'stdout' and 'stderr'. Values are ``None`` if the logs have not
            been fetched or did not exist.
        """

        record = self._cache.get(job_id)
        return {"stdout": record.slurm_stdout, "stderr": record.slurm_stderr}

    def shutdown(self) -> None:
        """
        Cleanly stop background work and close the session with the cluster.

        This ensures that the application exits without leaving orphaned threads or an
        open connection, and that the password held by the session is overwritten.
        """

        self.disconnect()
