from __future__ import annotations

import dataclasses
import os
import pathlib
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from time import sleep
from typing import Any, Optional, Union

from namdrunner.sim_management.errors import InvalidJobStatusError, ValidationError
from namdrunner.sim_management.types import FilePath
from namdrunner.utilities.string_validation import sanitize_filename, sanitize_identifier


class JobId:
    """A unique identifier for a job, assigned by the application.

    A job ID may only consist of ASCII letters, digits, hyphens and underscores, so that
    it can be used as a directory name on the remote host. A string representation of
    the ID can be obtained using the ``str`` function.

    Parameters
    ----------
    job_id : Union[str, int, JobId]
        A string satisfying the above constraints, a non-negative integer or another
        instance of ``JobId``.
    """

    def __init__(self, job_id: Union[str, int, JobId]):
        self._job_id = self._parse(job_id)

    @staticmethod
    def _parse(job_id) -> str:
        job_id_str = str(job_id)
        try:
            return sanitize_identifier(job_id_str, name="Job ID")
        except ValidationError:
            raise ValueError(
                "Expected 'job_id' to define a string consisting only of letters, digits, "
                f"hyphens and underscores, but received '{job_id_str}' instead."
            )

    def __str__(self) -> str:
        return self._job_id

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({repr(self._job_id)})"

    def __eq__(self, other) -> bool:
        return isinstance(other, self.__class__) and self._job_id == str(other)

    def __hash__(self):
        return hash(self._job_id)


class JobStatus(Enum):
    """The statuses a job passes through during its lifecycle.

    Statuses progress along ``CREATED -> PENDING -> RUNNING`` and end in one of the
    terminal statuses ``COMPLETED``, ``FAILED`` or ``CANCELLED``.
    """

    CREATED = "Created"
    """A job has been set up in the local cache and on the remote host but has not been
    submitted to the scheduler. Has the value 'Created'."""

    PENDING = "Pending"
    """A job has been accepted by the scheduler and is waiting to run. Has the value
    'Pending'."""

    RUNNING = "Running"
    """A job is running on the cluster (or completing). Has the value 'Running'."""

    COMPLETED = "Completed"
    """A job has run to completion without error. Has the value 'Completed'."""

    FAILED = "Failed"
    """A job has finished abnormally, e.g. with an error, a time-out or a node failure.
    Has the value 'Failed'."""

    CANCELLED = "Cancelled"
    """A job has been cancelled, either by the user or at the scheduler. Has the value
    'Cancelled'."""


TERMINAL_STATUSES = {
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
}
"""Statuses from which no further automatic transition occurs."""

ACTIVE_STATUSES = {
    JobStatus.PENDING,
    JobStatus.RUNNING,
}
"""Statuses of jobs that are known to the scheduler and have not yet finished."""

_STATUS_RANK = {
    JobStatus.CREATED: 0,
    JobStatus.PENDING: 1,
    JobStatus.RUNNING: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.FAILED: 3,
    JobStatus.CANCELLED: 3,
}


class StatusSource(Enum):
    """Where the most recent status of a job came from."""

    LOCAL = "local"
    """A local action, e.g. submission or cancellation."""

    SCHEDULER = "scheduler"
    """A status poll of the scheduler."""


class FileType(Enum):
    """Classification of simulation input files by extension."""

    STRUCTURE = "structure"
    TOPOLOGY = "topology"
    PARAMETERS = "parameters"
    EXTENDED_SYSTEM = "extended_system"
    COORDINATES = "coordinates"
    OTHER = "other"


_EXTENSION_TYPES = {
    ".pdb": FileType.STRUCTURE,
    ".psf": FileType.TOPOLOGY,
    ".prm": FileType.PARAMETERS,
    ".par": FileType.PARAMETERS,
    ".str": FileType.PARAMETERS,
    ".rtf": FileType.PARAMETERS,
    ".xsc": FileType.EXTENDED_SYSTEM,
    ".coor": FileType.COORDINATES,
    ".vel": FileType.COORDINATES,
}


def classify_file(name: str) -> FileType:
    """Classify a simulation input file by its (case-insensitive) extension."""

    return _EXTENSION_TYPES.get(pathlib.PurePath(name).suffix.lower(), FileType.OTHER)


def utc_now() -> str:
    """The current time as an ISO 8601 string in UTC."""

    return datetime.now(timezone.utc).isoformat()


@dataclasses.dataclass(frozen=True)
class InputFile:
    """A simulation input file to upload to the remote host.

    The remote copy of the file always has exactly the name `name`.

    Parameters
    ----------
    name : str
        The name of the file, used as-is on the remote host.
    local_path : str, optional
        (Default: None) The path to the file on the local machine. Not needed for
        records discovered on the remote host.
    size : int
        (Default: 0) The size of the file in bytes.
    file_type : FileType
        (Default: ``FileType.OTHER``) The classification of the file.
    """

    name: str
    local_path: Optional[str] = None
    size: int = 0
    file_type: FileType = FileType.OTHER

    def __post_init__(self):
        sanitize_filename(self.name)

    @classmethod
    def from_path(cls, path: FilePath) -> InputFile:
        """Make an input file from a path on the local machine.

        Raises
        ------
        ValidationError
            If the file does not exist or its name is not a safe file name.
        """

        local_path = pathlib.Path(path)
        if not local_path.is_file():
            raise ValidationError(f"Input file '{local_path}' does not exist.")

        return cls(
            name=local_path.name,
            local_path=str(local_path),
            size=os.path.getsize(local_path),
            file_type=classify_file(local_path.name),
        )

    def to_dict(self, include_local_path: bool = True) -> dict[str, Any]:
        record = {
            "name": self.name,
            "size": self.size,
            "file_type": self.file_type.value,
        }
        if include_local_path:
            record["local_path"] = self.local_path
        return record

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> InputFile:
        return cls(
            name=record["name"],
            local_path=record.get("local_path"),
            size=int(record.get("size", 0)),
            file_type=FileType(record.get("file_type", FileType.OTHER.value)),
        )


@dataclasses.dataclass(frozen=True)
class OutputFile:
    """A result file discovered in a job's directory after completion."""

    name: str
    relative_path: str
    size: int = 0
    modified: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> OutputFile:
        return cls(**record)


@dataclasses.dataclass(frozen=True)
class ResourceRequest:
    """The resources requested from the scheduler for a job.

    Parameters
    ----------
    cores : int
        The number of cores (tasks on a single node).
    memory_gb : float
        The total memory for the job, in gigabytes.
    walltime : str
        The wall-clock limit, in the form ``HH:MM:SS``.
    partition : str
        The name of the partition (queue) to submit to.
    qos : str
        The quality-of-service tier.
    """

    cores: int
    memory_gb: float
    walltime: str
    partition: str
    qos: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> ResourceRequest:
        return cls(**record)


@dataclasses.dataclass(frozen=True)
class SimulationParameters:
    """Parameters of a NAMD simulation.

    Parameters
    ----------
    steps : int
        The number of molecular dynamics steps to run.
    temperature : float
        The simulation temperature in kelvin.
    timestep : float
        The integration timestep in femtoseconds.
    output_name : str
        The prefix used for the simulator's output files.
    dcd_freq : int
        (Default: 1000) How often (in steps) trajectory frames are written.
    restart_freq : int
        (Default: 1000) How often (in steps) restart files are written.
    minimize_steps : int
        (Default: 0) The number of minimisation steps to run before dynamics.
    pme_enabled : bool
        (Default: False) Whether to use particle-mesh Ewald (periodic) electrostatics.
    npt_enabled : bool
        (Default: False) Whether to hold pressure constant (Langevin piston).
    cell_basis_vectors : tuple of three (float, float, float), optional
        (Default: None) The periodic cell basis vectors, required for periodic
        simulations unless an extended system (``.xsc``) file is supplied.
    cell_origin : (float, float, float), optional
        (Default: None) The centre of the periodic cell.
    margin : float, optional
        (Default: None) Extra distance added to the pair list, in angstroms.
    """

    steps: int
    temperature: float
    timestep: float
    output_name: str
    dcd_freq: int = 1000
    restart_freq: int = 1000
    minimize_steps: int = 0
    pme_enabled: bool = False
    npt_enabled: bool = False
    cell_basis_vectors: Optional[tuple[tuple[float, float, float], ...]] = None
    cell_origin: Optional[tuple[float, float, float]] = None
    margin: Optional[float] = None

    @property
    def is_periodic(self) -> bool:
        """Whether the simulation requires periodic boundary conditions."""

        return self.pme_enabled or self.npt_enabled

    def to_dict(self) -> dict[str, Any]:
        record = dataclasses.asdict(self)
        if self.cell_basis_vectors is not None:
            record["cell_basis_vectors"] = [list(v) for v in self.cell_basis_vectors]
        if self.cell_origin is not None:
            record["cell_origin"] = list(self.cell_origin)
        return record

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> SimulationParameters:
        record = dict(record)
        if record.get("cell_basis_vectors") is not None:
            record["cell_basis_vectors"] = tuple(
                tuple(v) for v in record["cell_basis_vectors"]
            )
        if record.get("cell_origin") is not None:
            record["cell_origin"] = tuple(record["cell_origin"])
        return cls(**record)


@dataclasses.dataclass(frozen=True)
class JobSpec:
    """Everything needed to create a job: a name, a resource request, simulation
    parameters and the input files to upload."""

    job_name: str
    resources: ResourceRequest
    parameters: SimulationParameters
    input_files: tuple[InputFile, ...]

    def __post_init__(self):
        sanitize_identifier(self.job_name, name="Job name")
        object.__setattr__(self, "input_files", tuple(self.input_files))


@dataclasses.dataclass
class JobRecord:
    """The local record of a simulation job.

    Job records are created by the creation chain and afterwards only modified by the
    automation chains, through the local cache. A record has a scheduler-assigned
    job ID if and only if its status is not ``CREATED``, and its status only moves
    forward along ``CREATED -> PENDING -> RUNNING -> {COMPLETED, FAILED, CANCELLED}``.
    """

    job_id: JobId
    job_name: str
    resources: ResourceRequest
    parameters: SimulationParameters
    input_files: tuple[InputFile, ...] = ()
    status: JobStatus = JobStatus.CREATED
    status_source: StatusSource = StatusSource.LOCAL
    scheduler_job_id: Optional[str] = None
    created_at: str = dataclasses.field(default_factory=utc_now)
    updated_at: Optional[str] = None
    submitted_at: Optional[str] = None
    completed_at: Optional[str] = None
    project_dir: Optional[str] = None
    scratch_dir: Optional[str] = None
    output_files: tuple[OutputFile, ...] = ()
    slurm_stdout: Optional[str] = None
    slurm_stderr: Optional[str] = None
    logs_fetched: bool = False
    completion_done: bool = False
    ready: bool = False
    error_info: Optional[dict[str, Any]] = None
    failed_step: Optional[str] = None

    @classmethod
    def from_spec(cls, job_id: JobId, spec: JobSpec) -> JobRecord:
        """Make a new record, in status ``CREATED``, for a job specification."""

        return cls(
            job_id=job_id,
            job_name=spec.job_name,
            resources=spec.resources,
            parameters=spec.parameters,
            input_files=spec.input_files,
        )

    @property
    def spec(self) -> JobSpec:
        """(Read-only) The job specification the record was created from."""

        return JobSpec(self.job_name, self.resources, self.parameters, self.input_files)

    @property
    def is_terminal(self) -> bool:
        """(Read-only) Whether the job is in one of the ``TERMINAL_STATUSES``."""

        return self.status in TERMINAL_STATUSES

    def check_invariants(self) -> None:
        """Check that the record is internally consistent.

        Raises
        ------
        InvalidJobStatusError
            If the presence of a scheduler job ID does not agree with the status.
        """

        if self.status == JobStatus.CREATED and self.scheduler_job_id is not None:
            raise InvalidJobStatusError(
                f"Job {self.job_id} has scheduler ID {self.scheduler_job_id} but has not "
                "been submitted.",
                status=self.status,
            )

        if self.status != JobStatus.CREATED and self.scheduler_job_id is None:
            raise InvalidJobStatusError(
                f"Job {self.job_id} has status '{self.status.value}' but no scheduler ID.",
                status=self.status,
            )

    def can_transition_to(self, status: JobStatus) -> bool:
        """Whether the record's status may move to `status`.

        Only forward moves are allowed, terminal statuses are final and a job can only
        leave ``CREATED`` by being submitted (see `mark_submitted`).
        """

        if status == self.status or self.status in TERMINAL_STATUSES:
            return False

        if self.scheduler_job_id is None:
            return False

        return _STATUS_RANK[status] > _STATUS_RANK[self.status]

    def transition_to(self, status: JobStatus, source: StatusSource) -> None:
        """Move the record to a new status, updating timestamps.

        Raises
        ------
        InvalidJobStatusError
            If the transition is not allowed (see `can_transition_to`).
        """

        if not self.can_transition_to(status):
            raise InvalidJobStatusError(
                f"Cannot change status of job {self.job_id} from '{self.status.value}' "
                f"to '{status.value}'.",
                status=self.status,
            )

        self.status = status
        self.status_source = source
        self.updated_at = utc_now()
        if status in TERMINAL_STATUSES:
            self.completed_at = self.updated_at

    def mark_submitted(self, scheduler_job_id: str, scratch_dir: str) -> None:
        """Record a successful submission to the scheduler."""

        if self.scheduler_job_id is not None or self.status != JobStatus.CREATED:
            raise InvalidJobStatusError(
                f"Job {self.job_id} has already been submitted.", status=self.status
            )

        self.scheduler_job_id = scheduler_job_id
        self.scratch_dir = scratch_dir
        self.status = JobStatus.PENDING
        self.status_source = StatusSource.LOCAL
        self.submitted_at = self.updated_at = utc_now()
        self.error_info = None
        self.failed_step = None

    def record_failure(self, step: str, error: Exception) -> None:
        """Record on the job that a chain step failed, so that the step can be retried."""

        self.failed_step = step
        self.error_info = (
            error.to_dict()
            if hasattr(error, "to_dict")
            else {"category": "Internal", "message": str(error)}
        )
        self.updated_at = utc_now()

    def to_dict(self, include_local_paths: bool = True) -> dict[str, Any]:
        """A JSON-serialisable dict of the record."""

        return {
            "job_id": str(self.job_id),
            "job_name": self.job_name,
            "status": self.status.value,
            "status_source": self.status_source.value,
            "scheduler_job_id": self.scheduler_job_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "submitted_at": self.submitted_at,
            "completed_at": self.completed_at,
            "resources": self.resources.to_dict(),
            "parameters": self.parameters.to_dict(),
            "input_files": [
                f.to_dict(include_local_path=include_local_paths)
                for f in self.input_files
            ],
            "output_files": [f.to_dict() for f in self.output_files],
            "project_dir": self.project_dir,
            "scratch_dir": self.scratch_dir,
            "slurm_stdout": self.slurm_stdout,
            "slurm_stderr": self.slurm_stderr,
            "logs_fetched": self.logs_fetched,
            "completion_done": self.completion_done,
            "ready": self.ready,
            "error_info": self.error_info,
            "failed_step": self.failed_step,
        }

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> JobRecord:
        """Make a job record from the output of `to_dict`."""

        return cls(
            job_id=JobId(record["job_id"]),
            job_name=record["job_name"],
            status=JobStatus(record["status"]),
            status_source=StatusSource(record.get("status_source", "local")),
            scheduler_job_id=record.get("scheduler_job_id"),
            created_at=record["created_at"],
            updated_at=record.get("updated_at"),
            submitted_at=record.get("submitted_at"),
            completed_at=record.get("completed_at"),
            resources=ResourceRequest.from_dict(record["resources"]),
            parameters=SimulationParameters.from_dict(record["parameters"]),
            input_files=tuple(
                InputFile.from_dict(f) for f in record.get("input_files", [])
            ),
            output_files=tuple(
                OutputFile.from_dict(f) for f in record.get("output_files", [])
            ),
            project_dir=record.get("project_dir"),
            scratch_dir=record.get("scratch_dir"),
            slurm_stdout=record.get("slurm_stdout"),
            slurm_stderr=record.get("slurm_stderr"),
            logs_fetched=record.get("logs_fetched", False),
            completion_done=record.get("completion_done", False),
            ready=record.get("ready", False),
            error_info=record.get("error_info"),
            failed_step=record.get("failed_step"),
        )


class JobIDGenerator:
    """
    A generator for unique job IDs based on the current datetime down to the
    millisecond, formatted as 'YYYYMMDDHHMMSSfff'.

    In scenarios where multiple IDs are requested within the same millisecond, this
    generator will wait until the next millisecond to generate a new ID, ensuring
    the uniqueness of each ID without relying on additional counters.

    Examples
    --------
    >>> id_generator = JobIDGenerator()
    >>> job_id = id_generator.generate_id()
    >>> print(job_id)
    20240101123001005
    """

    def __init__(self):
        self._lock = Lock()
        self._last_timestamp = None

    def generate_id(self) -> JobId:
        """Generate a unique job ID based on the current datetime."""

        with self._lock:
            while True:
                timestamp_str = datetime.now().strftime("%Y%m%d%H%M%S%f")[:-3]

                if self._last_timestamp == timestamp_str:
                    sleep(0.001)
                    continue
                else:
                    self._last_timestamp = timestamp_str
                    break

            return JobId(timestamp_str)
