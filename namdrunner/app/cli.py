import getpass
import json
import pathlib
import re
from collections import OrderedDict
from collections.abc import Sequence
from typing import Any, Callable, Optional, Union

import cmd2

from namdrunner.app.app import App
from namdrunner.sim_management.chains import ProgressEvent, SyncReport
from namdrunner.sim_management.cluster import (
    ALPINE_PROFILE,
    ClusterProfile,
    load_cluster_profile,
    parse_memory_gb,
    parse_walltime_hours,
    suggest_qos,
)
from namdrunner.sim_management.errors import AuthenticationError, RunnerError
from namdrunner.sim_management.jobs import (
    InputFile,
    JobId,
    JobRecord,
    JobSpec,
    JobStatus,
    ResourceRequest,
    SimulationParameters,
)
from namdrunner.sim_management.types import FilePath

MAX_LOGIN_ATTEMPTS = 3


class ParsingError(Exception):
    """Raised when errors arise from parsing command line arguments."""

    def __init__(self, e: Union[str, Exception]):
        self._base_msg = str(e)

    def __str__(self):
        return self._base_msg


class Cli(cmd2.Cmd):
    """The command line interface to the namdrunner application.

    This class implements a command line interpreter using the ``cmd2`` third-party
    package. A 'workspace' directory is used to persist connection settings and the
    local cache of job records.

    Parameters
    ----------
    workspace_dir : namdrunner.sim_management.types.FilePath
        Path to the workspace directory to use for the app's session.
    """

    connect_parser = cmd2.Cmd2ArgumentParser()
    connect_parser.add_argument(
        "username",
        nargs="?",
        type=str,
        help="Your username on the cluster (defaults to the one saved in the workspace).",
    )
    connect_parser.add_argument(
        "--host",
        type=str,
        help="The host to connect to (defaults to the cluster's login node).",
    )

    create_parser = cmd2.Cmd2ArgumentParser()
    create_parser.add_argument("name", type=str, help="A name for the job.")
    create_parser.add_argument(
        "files",
        nargs="+",
        type=str,
        help="Paths to the input files (structure, coordinates and parameters).",
    )
    create_parser.add_argument(
        "-c", "--cores", type=int, default=24, help="number of cores (default %(default)s)"
    )
    create_parser.add_argument(
        "-m",
        "--memory",
        type=str,
        default="16GB",
        help="memory to request, e.g. '64GB' (default %(default)s)",
    )
    create_parser.add_argument(
        "-w",
        "--walltime",
        type=str,
        default="24:00:00",
        help="walltime as HH:MM:SS (default %(default)s)",
    )
    create_parser.add_argument(
        "-p", "--partition", type=str, help="partition (defaults to the cluster's default)"
    )
    create_parser.add_argument(
        "-q",
        "--qos",
        type=str,
        help="quality of service (defaults to the shortest that fits the walltime)",
    )
    create_parser.add_argument(
        "--steps", type=int, required=True, help="number of simulation steps"
    )
    create_parser.add_argument(
        "--temperature",
        type=float,
        default=300.0,
        help="temperature in kelvin (default %(default)s)",
    )
    create_parser.add_argument(
        "--timestep",
        type=float,
        default=2.0,
        help="timestep in femtoseconds (default %(default)s)",
    )
    create_parser.add_argument(
        "--output-name",
        type=str,
        help="base name of the simulation's output files (defaults to the job name)",
    )
    create_parser.add_argument(
        "--dcd-freq", type=int, default=1000, help="trajectory output frequency"
    )
    create_parser.add_argument(
        "--restart-freq", type=int, default=1000, help="restart file frequency"
    )
    create_parser.add_argument(
        "--minimize", type=int, default=0, help="minimization steps before the run"
    )
    create_parser.add_argument(
        "--pme", action="store_true", help="use particle mesh Ewald electrostatics"
    )
    create_parser.add_argument(
        "--npt", action="store_true", help="run at constant pressure"
    )
    create_parser.add_argument(
        "--cell",
        action="append",
        metavar="X,Y,Z",
        help="a periodic cell basis vector; give three times, in order",
    )
    create_parser.add_argument(
        "--cell-origin", type=str, metavar="X,Y,Z", help="the periodic cell origin"
    )
    create_parser.add_argument(
        "--margin", type=float, help="extra pair list distance in angstroms"
    )

    job_ids_parser = cmd2.Cmd2ArgumentParser()
    job_ids_parser.add_argument(
        "job_ids", nargs="+", type=str, help="IDs of the jobs to act on."
    )

    sync_parser = cmd2.Cmd2ArgumentParser()
    sync_parser.add_argument(
        "job_ids",
        nargs="*",
        type=str,
        help="IDs of the jobs to sync (defaults to all active jobs).",
    )

    show_parser = cmd2.Cmd2ArgumentParser()
    show_parser.add_argument(
        "job_ids",
        nargs="*",
        type=str,
        help=(
            "Job IDs to show information for. If not provided, then will show all jobs "
            "subject to the filtering provided by other options."
        ),
    )
    n_jobs_opt_short = "-n"
    n_jobs_opt = "--n-jobs"
    show_parser.add_argument(
        n_jobs_opt_short,
        n_jobs_opt,
        nargs="?",
        type=int,
        default=50,
        const=50,
        metavar="N_JOBS",
        help=(
            "the number of jobs to show, counting backwards from the most recently "
            "created (defaults to %(default)s)"
        ),
    )
    show_parser.add_argument(
        "-a",
        "--all",
        action="store_true",
        help=(
            "don't limit the number of jobs to show. This overrides the "
            f"{n_jobs_opt_short} argument."
        ),
    )
    show_parser.add_argument(
        "-s",
        "--status",
        nargs="?",
        default="",
        const="",
        metavar="STATUSES",
        help=(
            "a comma-separated list of statuses, so that only jobs having one of these "
            "statuses will be shown (defaults to '%(default)s', which means show all jobs)"
        ),
    )
    show_parser.add_argument(
        "-S",
        "--status-not",
        nargs="?",
        default="",
        const="",
        metavar="STATUSES",
        help=(
            "a comma-separated list of statuses, so that only jobs *not* having one of "
            "these statuses will be shown (defaults to '%(default)s', which means show "
            "all jobs)"
        ),
    )

    logs_parser = cmd2.Cmd2ArgumentParser()
    logs_parser.add_argument("job_id", type=str, help="ID of the job.")
    logs_parser.add_argument(
        "-e",
        "--stderr",
        action="store_true",
        help="show the scheduler's error log instead of its output log",
    )
    logs_parser.add_argument(
        "-r",
        "--refetch",
        action="store_true",
        help="fetch the logs from the cluster again before showing them",
    )

    download_parser = cmd2.Cmd2ArgumentParser()
    download_parser.add_argument("job_id", type=str, help="ID of the job.")
    download_parser.add_argument(
        "path",
        nargs="?",
        type=str,
        help="path of a file relative to the job's directory, e.g. outputs/equil.dcd",
    )
    download_parser.add_argument(
        "-a",
        "--all",
        dest="directory",
        choices=("input_files", "outputs"),
        help="download every file in one of the job's directories",
    )
    download_parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="local file or directory to save to (default: the workspace directory)",
    )

    delete_parser = cmd2.Cmd2ArgumentParser()
    delete_parser.add_argument(
        "job_ids", nargs="+", type=str, help="IDs of the jobs to delete."
    )
    delete_parser.add_argument(
        "-y", "--yes", action="store_true", help="don't ask for confirmation"
    )
    delete_parser.add_argument(
        "--local-only",
        action="store_true",
        help="only delete the local records, leaving the files on the cluster",
    )

    def __init__(self, workspace_dir: FilePath):
        super().__init__(allow_cli_args=False)
        self._workspace_dir = pathlib.Path(workspace_dir)
        self._settings_file = self._workspace_dir / "settings.json"
        self._settings: dict[str, Any] = {}
        self._app = None
        self.prompt = "(namdrunner)> "
        self._JOBID_HEADER = "JOBID"
        self._NAME_HEADER = "NAME"
        self._STATUS_HEADER = "STATUS"
        self._SCHEDULER_ID_HEADER = "SLURM_ID"
        self._CREATED_HEADER = "CREATED"
        self._HEADER_MAPPER = {
            "job_id": self._JOBID_HEADER,
            "job_name": self._NAME_HEADER,
            "status": self._STATUS_HEADER,
            "scheduler_job_id": self._SCHEDULER_ID_HEADER,
            "created_at": self._CREATED_HEADER,
        }
        self.table_formatters = {
            self._STATUS_HEADER: format_status,
            self._SCHEDULER_ID_HEADER: format_optional,
        }
        self.register_preloop_hook(self.initialise_app)

    def initialise_app(self) -> None:
        """Initialise the application with workspace settings.

        If no settings can be found in the workspace directory then a new workspace is
        set up, asking the user for their username on the cluster. The job cache is
        kept in the workspace, so that jobs can be inspected without connecting.
        """

        if not self._settings_file.exists():
            self.poutput(f"A new workspace '{self._workspace_dir}' will be set up.")
            self._workspace_dir.mkdir(parents=True, exist_ok=True)
            username = clean_input_string(input("  Username on the cluster: "))
            self._settings = {
                "host": ALPINE_PROFILE.host,
                "username": username,
                "cluster_profile": None,
            }
            write_settings_json(self._settings, self._settings_file)
            self.poutput(f"Thanks -- workspace '{self._workspace_dir}' is now set up.")
        else:
            self.poutput(f"Using workspace '{self._workspace_dir}'.")
            self._settings = read_settings_json(self._settings_file)

        self._app = App(
            profile=self._load_profile(),
            cache_path=self._workspace_dir / "jobs.db",
        )
        self.poutput("Type 'connect' to log in to the cluster.")
        return None

    def _load_profile(self) -> ClusterProfile:
        profile_file = self._settings.get("cluster_profile")
        if not profile_file:
            return ALPINE_PROFILE

        path = pathlib.Path(profile_file)
        if not path.is_absolute():
            path = self._workspace_dir / path

        return load_cluster_profile(path)

    def do_quit(self, args) -> Optional[bool]:
        """Exit the application."""

        if self._app is not None:
            self._app.shutdown()

        return super().do_quit(args)

    def _render_stdout(self, text: str, trailing_newline: bool = True) -> None:
        """Write text to standard output, with an optional trailing newline character."""

        if trailing_newline:
            self.poutput(text + "\n")
        else:
            self.poutput(text)

    def _render_error(self, text: str) -> None:
        """Write text as an error message to standard error."""

        self.perror("Error: " + text)

    def _render_warning(self, text: str) -> None:
        """Write text as a warning message to standard error."""

        self.pwarning("Warning: " + text)

    def _render_runner_error(self, e: RunnerError) -> None:
        """Write an application error, along with any suggested remedies."""

        self._render_error(str(e))
        if e.details:
            self.perror(f"  Details: {e.details}")

        for suggestion in e.suggestions:
            self.perror(f"  - {suggestion}")

    def _render_progress(self, event: ProgressEvent) -> None:
        self.poutput(f"  [{event.percentage:3.0f}%] {event}")

    def _render_sync_report(self, report: SyncReport) -> None:
        for record in report.updated:
            self.poutput(f"  {record.job_id}: {format_status(record.status)}")

        if report.error is not None:
            self._render_warning("Could not query the scheduler; statuses unchanged.")
            self._render_runner_error(report.error)

        for job_id, error in report.completion_errors.items():
            self._render_warning(f"Could not gather results of job {job_id}: {error}")

        if report.skipped:
            self.poutput(
                "Already being synced: " + ", ".join(str(i) for i in report.skipped)
            )

    def _make_table(self, data: OrderedDict[str, Sequence[Any]]) -> str:
        """Make a textual table from data."""

        return make_table(data, formatters=dict(self.table_formatters))

    def _make_show_table(self, jobs: Sequence[JobRecord]) -> str:
        """Make table of job information for displaying to the user."""

        data = OrderedDict(
            [
                (header, tuple(getattr(job, k) for job in jobs))
                for k, header in self._HEADER_MAPPER.items()
            ]
        )

        return self._make_table(data)

    @cmd2.with_argparser(connect_parser)
    def do_connect(self, args) -> None:
        """Connect to the cluster, then sync the workspace's jobs."""

        username = args.username or self._settings.get("username")
        if not username:
            self._render_error("No username given.")
            return None

        host = args.host or self._settings.get("host")
        for attempt in range(MAX_LOGIN_ATTEMPTS):
            password = getpass.getpass(f"Password for {username}@{host}: ")
            try:
                report = self._app.connect(
                    username, password, host=host, progress=self._render_progress
                )
            except AuthenticationError:
                self._render_error("Failed to authenticate. Please try again.")
                continue
            except RunnerError as e:
                self._render_runner_error(e)
                return None
            finally:
                del password

            if username != self._settings.get("username"):
                self._settings["username"] = username
                write_settings_json(self._settings, self._settings_file)

            self.poutput(f"Connected to {host} as {username}.")
            self._render_sync_report(report)
            return None

        self._render_error("Maximum number of attempts exceeded.")
        return None

    def do_disconnect(self, args) -> None:
        """Disconnect from the cluster."""

        self._app.disconnect()
        self.poutput("Disconnected.")

    def do_partitions(self, args) -> None:
        """List the partitions and QoS tiers of the cluster."""

        profile = self._app.profile
        partitions = OrderedDict(
            [
                ("PARTITION", tuple(p.name for p in profile.partitions)),
                ("MAX_CORES", tuple(p.max_cores for p in profile.partitions)),
                (
                    "GB/CORE",
                    tuple(p.max_memory_per_core_gb for p in profile.partitions),
                ),
                (
                    "QOS",
                    tuple(
                        ",".join(q.name for q in profile.qos_for_partition(p.name))
                        for p in profile.partitions
                    ),
                ),
                ("DESCRIPTION", tuple(p.description for p in profile.partitions)),
            ]
        )
        self._render_stdout(make_table(partitions))

    def _parse_create_args(self, args) -> JobSpec:
        """Convert command line arguments for the create command to a job spec."""

        profile = self._app.profile
        try:
            memory_gb = parse_memory_gb(args.memory)
            partition = args.partition or profile.default_partition.name
            qos = args.qos or suggest_qos(
                parse_walltime_hours(args.walltime), partition, profile
            )
        except ValueError as e:
            raise ParsingError(e)

        parameters = SimulationParameters(
            steps=args.steps,
            temperature=args.temperature,
            timestep=args.timestep,
            output_name=args.output_name or args.name,
            dcd_freq=args.dcd_freq,
            restart_freq=args.restart_freq,
            minimize_steps=args.minimize,
            pme_enabled=args.pme,
            npt_enabled=args.npt,
            cell_basis_vectors=(
                tuple(parse_vector(v) for v in args.cell) if args.cell else None
            ),
            cell_origin=parse_vector(args.cell_origin) if args.cell_origin else None,
            margin=args.margin,
        )
        resources = ResourceRequest(
            cores=args.cores,
            memory_gb=memory_gb,
            walltime=args.walltime,
            partition=partition,
            qos=qos,
        )
        input_files = tuple(InputFile.from_path(f) for f in args.files)
        return JobSpec(args.name, resources, parameters, input_files)

    @cmd2.with_argparser(create_parser)
    def do_create(self, args) -> None:
        """Create a job on the cluster and upload its input files."""

        try:
            spec = self._parse_create_args(args)
            check = self._app.check_resources(spec.resources)
            for warning in check["validation"].warnings:
                self._render_warning(warning)

            self.poutput(
                f"Estimated cost: {check['cost']} SUs; "
                f"expected queue time: {check['queue_time']}."
            )
            record = self._app.create_job(spec, progress=self._render_progress)
        except ParsingError as e:
            self._render_error(str(e))
        except RunnerError as e:
            self._render_runner_error(e)
        else:
            self.poutput(f"Created job {record.job_id}.")

    @cmd2.with_argparser(job_ids_parser)
    def do_submit(self, args) -> None:
        """Submit created jobs to the scheduler."""

        try:
            job_ids = parse_job_ids(args.job_ids)
        except ParsingError as e:
            self._render_error(str(e))
            return None

        for job_id in job_ids:
            try:
                record = self._app.submit_job(job_id, progress=self._render_progress)
            except RunnerError as e:
                self._render_runner_error(e)
            else:
                self.poutput(
                    f"Submitted job {record.job_id} (SLURM job {record.scheduler_job_id})."
                )

    @cmd2.with_argparser(sync_parser)
    def do_sync(self, args) -> None:
        """Refresh the status of jobs from the scheduler."""

        try:
            job_ids = parse_job_ids(args.job_ids) if args.job_ids else None
            report = self._app.sync(job_ids, progress=self._render_progress)
        except ParsingError as e:
            self._render_error(str(e))
        except RunnerError as e:
            self._render_runner_error(e)
        else:
            self._render_sync_report(report)
            if report.ok and not report.updated:
                self.poutput("No changes.")

    def _parse_show_args(self, args) -> dict[str, Any]:
        """Convert command line arguments for the show command to a dict of arguments for
        the application to process.
        """
        if args.n_jobs < 0:
            raise ParsingError(
                f"Value for {self.n_jobs_opt_short}/{self.n_jobs_opt} must be a "
                "non-negative integer."
            )

        statuses_included = parse_statuses_string_to_set(args.status, empty_to_all=True)
        statuses_excluded = parse_statuses_string_to_set(args.status_not)
        return {
            "job_ids": parse_job_ids(args.job_ids) if args.job_ids else None,
            "n_most_recent": args.n_jobs if not args.all else None,
            "statuses": statuses_included - statuses_excluded,
        }

    @cmd2.with_argparser(show_parser)
    def do_show(self, args) -> None:
        """Show information about jobs."""
        try:
            kwargs = self._parse_show_args(args)
            jobs = self._app.get_jobs(**kwargs)
            self._render_stdout(self._make_show_table(jobs))
        except ParsingError as e:
            self._render_error(str(e))
            return None

        failed = [job for job in jobs if job.error_info is not None]
        for job in failed:
            self._render_warning(
                f"Job {job.job_id}: step '{job.failed_step}' failed: "
                f"{job.error_info.get('message')} (run 'retry {job.job_id}')"
            )

    @cmd2.with_argparser(logs_parser)
    def do_logs(self, args) -> None:
        """Show the scheduler logs of a finished job."""

        try:
            (job_id,) = parse_job_ids([args.job_id])
            if args.refetch:
                logs = self._app.refetch_logs(job_id, progress=self._render_progress)
            else:
                logs = self._app.get_logs(job_id)
        except ParsingError as e:
            self._render_error(str(e))
            return None
        except RunnerError as e:
            self._render_runner_error(e)
            return None

        text = logs["stderr"] if args.stderr else logs["stdout"]
        if text is None:
            self._render_warning(f"No log has been fetched for job {job_id}.")
        else:
            self._render_stdout(text, trailing_newline=False)

    @cmd2.with_argparser(download_parser)
    def do_download(self, args) -> None:
        """Download a file of a job, or all of its input or output files."""

        if (args.path is None) == (args.directory is None):
            self._render_error("Give either a file path or '--all', but not both.")
            return None

        try:
            (job_id,) = parse_job_ids([args.job_id])
        except ParsingError as e:
            self._render_error(str(e))
            return None

        default_dir = self._workspace_dir / "downloads" / str(job_id)
        try:
            if args.directory is not None:
                local_dir = args.output if args.output is not None else default_dir
                paths = self._app.download_files(job_id, args.directory, local_dir)
            else:
                local_path = args.output
                if local_path is None:
                    local_path = default_dir / pathlib.PurePosixPath(args.path).name

                paths = [self._app.download_file(job_id, args.path, local_path)]
        except RunnerError as e:
            self._render_runner_error(e)
            return None

        if not paths:
            self._render_warning(f"No files to download for job {job_id}.")
        for path in paths:
            self.poutput(f"Downloaded {path}")

    def _make_cancel_table(self, jobs: Sequence[JobRecord]) -> str:
        """Make table of details of cancelled jobs for displaying to the user."""

        data = OrderedDict(
            [
                (self._JOBID_HEADER, tuple(job.job_id for job in jobs)),
                (self._NAME_HEADER, tuple(job.job_name for job in jobs)),
                (self._STATUS_HEADER, tuple(job.status for job in jobs)),
            ]
        )
        return self._make_table(data)

    @cmd2.with_argparser(job_ids_parser)
    def do_cancel(self, args) -> None:
        "Cancel active jobs at the scheduler."

        try:
            job_ids = parse_job_ids(args.job_ids)
            report = self._app.cancel(job_ids)
        except ParsingError as e:
            self._render_error(str(e))
            return None
        except RunnerError as e:
            self._render_runner_error(e)
            return None

        cancelled_jobs = report["cancelled_jobs"]
        if cancelled_jobs:
            self._render_stdout(self._make_cancel_table(cancelled_jobs))

        unsubmitted_jobs = [str(job_id) for job_id in report["unsubmitted_jobs"]]
        if unsubmitted_jobs:
            self._render_stdout(
                "The following jobs have not been submitted and were not cancelled:\n"
                + "\n".join(f"  {job_id}" for job_id in unsubmitted_jobs),
                trailing_newline=False,
            )

        terminated_jobs = [str(job_id) for job_id in report["terminated_jobs"]]
        if terminated_jobs:
            self._render_stdout(
                "The following jobs have already finished and were not cancelled:\n"
                + "\n".join(f"  {job_id}" for job_id in terminated_jobs),
                trailing_newline=False,
            )

        non_existent_jobs = [str(job_id) for job_id in report["non_existent_jobs"]]
        if non_existent_jobs:
            self._render_warning(
                "Could not find jobs with the following IDs:\n"
                + "\n".join(f"  {job_id}" for job_id in non_existent_jobs)
            )

    @cmd2.with_argparser(delete_parser)
    def do_delete(self, args) -> None:
        """Delete jobs, including their files on the cluster unless '--local-only' is
        given."""

        try:
            job_ids = parse_job_ids(args.job_ids)
        except ParsingError as e:
            self._render_error(str(e))
            return None

        if not args.yes:
            if args.local_only:
                question = f"Delete the local records of {len(job_ids)} job(s)? (y/n): "
            else:
                question = (
                    f"Delete {len(job_ids)} job(s) and all their files on the cluster? "
                    "(y/n): "
                )

            answer = input(question)
            if answer.strip().lower() != "y":
                self.poutput("Nothing deleted.")
                return None

        for job_id in job_ids:
            try:
                self._app.delete_job(
                    job_id,
                    delete_remote=not args.local_only,
                    progress=self._render_progress,
                )
            except RunnerError as e:
                self._render_runner_error(e)
            else:
                self.poutput(f"Deleted job {job_id}.")

    @cmd2.with_argparser(job_ids_parser)
    def do_retry(self, args) -> None:
        """Retry the failed step of jobs."""

        try:
            job_ids = parse_job_ids(args.job_ids)
        except ParsingError as e:
            self._render_error(str(e))
            return None

        for job_id in job_ids:
            try:
                self._retry(job_id)
            except RunnerError as e:
                self._render_runner_error(e)

    def _retry(self, job_id: JobId) -> None:
        record = self._app.get_job(job_id)
        if record.failed_step == "creation" or not record.ready:
            record = self._app.retry_creation(job_id, progress=self._render_progress)
            self.poutput(f"Created job {record.job_id}.")
        elif record.failed_step == "submission":
            record = self._app.submit_job(job_id, progress=self._render_progress)
            self.poutput(
                f"Submitted job {record.job_id} (SLURM job {record.scheduler_job_id})."
            )
        elif record.failed_step == "completion":
            self._render_sync_report(
                self._app.sync([job_id], progress=self._render_progress)
            )
        elif record.failed_step == "cleanup":
            self._app.delete_job(job_id, progress=self._render_progress)
            self.poutput(f"Deleted job {job_id}.")
        else:
            self._render_warning(f"Job {job_id} has no failed step to retry.")


def clean_input_string(string: str) -> str:
    """Remove leading and trailing whitespace and quotes from a string.

    Examples
    --------
    >>> clean_input_string("  foo\\n")
    'foo'
    >>> clean_input_string("\\"foo'")
    'foo'
    """
    return string.strip().strip("'\"")


def parse_statuses_string_to_set(
    statuses: str, empty_to_all: bool = False
) -> set[JobStatus]:
    """Convert a string listing of job statuses to a set.

    Before converting, the input string is cleaned by removing any leading and
    trailing whitespace and any quotation marks.

    Parameters
    ----------
    statuses : str
        A comma-separated list of job statuses. The statuses should match the names of
        the corresponding enums, with matching done case-insensitively.
    empty_to_all : bool, optional
        (Default: False) Whether to interpret the empty list as representing no job
        statuses (``False``) or all possible job statuses (``True``).

    Returns
    -------
    set[JobStatus]
        A set of the job statuses from the string.

    Examples
    --------
    >>> parse_statuses_string_to_set("cancelled,   FAILED") == {
    ...     JobStatus.CANCELLED, JobStatus.FAILED
    ... }
    True
    >>> parse_statuses_string_to_set("")
    set()
    >>> parse_statuses_string_to_set("", empty_to_all=True) == set(JobStatus)
    True
    """
    statuses = clean_input_string(statuses)

    # Remove whitespace around each component and convert to upper case
    statuses = {
        re.sub("\\s+", "_", status.strip()).upper() for status in statuses.split(",")
    }

    if statuses == {""} and empty_to_all:
        return set(JobStatus)
    else:
        return {x for x in JobStatus if x.name in statuses}


def parse_job_ids(job_ids: Sequence[str]) -> tuple[JobId, ...]:
    """Parse a sequence of string job IDs to a tuple of ``JobId``s.

    Removes any repeated IDs, keeping the order in which IDs were first given.

    Raises
    ------
    ParsingError
        If one of the supplied IDs does not define a valid job ID.
    """
    parsed_ids = {}
    for id_ in job_ids:
        try:
            parsed_ids[JobId(clean_input_string(id_))] = None
        except ValueError:
            raise ParsingError(
                f"{id_} does not define a valid job ID: should consist only of letters, "
                "digits, hyphens and underscores."
            )

    return tuple(parsed_ids)


def parse_vector(vector: str) -> tuple[float, float, float]:
    """Parse a comma-separated triple of numbers.

    Examples
    --------
    >>> parse_vector("50, 0, 0.5")
    (50.0, 0.0, 0.5)
    """
    try:
        components = tuple(float(x) for x in clean_input_string(vector).split(","))
    except ValueError as e:
        raise ParsingError(e)

    if len(components) != 3:
        raise ParsingError(f"'{vector}' does not define a vector of three numbers.")

    return components


def make_table(
    data: OrderedDict[str, Sequence[Any]],
    formatters: dict[str, Callable[[Any], str]] = None,
) -> str:
    """Make a table of data as a string.

    Each column in the table is left-justified and columns are separated with two spaces.
    The contents of each data cell in a column is formatted according to the supplied
    formatting function, if any, or else just as a string using Python's built-in ``str``
    function. The width of the column is equal to the length of the longest (string
    formatted) cell value in the column (including the column header).

    Parameters
    ----------
    data : OrderedDict[str, Sequence[Any]]
        The data to put into the table. The keys of the ordered dict should be the
        table column headers and the values should be the values in the columns.
    formatters : dict[str, Callable[[Any], str]], optional
        (Default: None) Formatting functions to apply to columns, keyed on column
        heading. Columns without a formatter are converted with ``str``.

    Returns
    -------
    str
        A table of the data, with columns formatted according to the supplied formatters.
    """

    formatters = formatters if formatters is not None else {}
    formatted_data = OrderedDict(
        [(k, tuple(map(formatters.get(k, str), v))) for k, v in data.items()]
    )

    # Make all cells the same width column-wise
    columns = [[k] + list(v) for k, v in formatted_data.items()]
    max_cell_widths = [max(map(len, col)) for col in columns]
    tidied_columns = []
    for width, column in zip(max_cell_widths, columns):
        fmt = "{" + f":<{width}" + "}"
        tidied_columns.append([fmt.format(cell) for cell in column])

    rows = ["  ".join(row_cells).rstrip() for row_cells in zip(*tidied_columns)]
    return "\n".join(rows)


def format_status(status: JobStatus) -> str:
    """Format a job status, returning the string value of the enum member."""
    return str(status.value)


def format_optional(x: Any) -> str:
    """Format a value as a string, with ``None`` shown as a dash."""
    return "-" if x is None else str(x)


def write_settings_json(settings: dict[str, Any], path: FilePath) -> None:
    """Serialise a dict of settings to a JSON file.

    Only connection settings are stored; passwords never are.

    Parameters
    ----------
    settings : dict[str, Any]
        The settings to be serialised.
    path : FilePath
        Path to a text file to write the JSON-serialised settings to.
    """
    with open(path, mode="w") as f:
        json.dump(settings, f, indent=4)


def read_settings_json(path: FilePath) -> dict[str, Any]:
    """Read settings from a JSON file."""
    with open(path, mode="r") as f:
        return json.load(f)
