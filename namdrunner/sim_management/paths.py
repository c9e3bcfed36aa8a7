"""Construction of remote paths for jobs.

Each job has two parallel directories on the remote host, keyed by job ID: one in the
persistent (project) tree, holding inputs, generated scripts, metadata and final
outputs, and one in the scratch tree, where the job executes. All remote paths used by
the package are made here.
"""

from pathlib import PurePosixPath
from typing import Union

from namdrunner.sim_management.cluster import ClusterProfile
from namdrunner.sim_management.errors import ValidationError
from namdrunner.sim_management.jobs import JobId
from namdrunner.utilities.string_validation import (
    sanitize_filename,
    sanitize_username,
    validate_relative_path,
)

JOB_BASE_DIRECTORY = "namdrunner_jobs"
INPUT_FILES_DIRECTORY = "input_files"
OUTPUTS_DIRECTORY = "outputs"
SUBMISSION_SCRIPT_NAME = "job.sbatch"
SIMULATION_CONFIG_NAME = "config.namd"
METADATA_FILE_NAME = "job_info.json"
SIMULATOR_LOG_NAME = "namd_output.log"


class RemoteLayout:
    """The remote directory layout for a user's jobs.

    Parameters
    ----------
    profile : ClusterProfile
        The cluster profile defining the roots of the persistent and scratch trees.
    username : str
        The user's name on the remote host.

    Raises
    ------
    ValidationError
        If `username` is not a valid username, or the roots in the profile are not
        absolute paths.
    """

    def __init__(self, profile: ClusterProfile, username: str):
        self._username = sanitize_username(username)
        self._project_base = self._make_base(profile.project_root)
        self._scratch_base = self._make_base(profile.scratch_root)

    def _make_base(self, root_template: str) -> PurePosixPath:
        root = PurePosixPath(root_template.format(username=self._username))
        if not root.is_absolute() or ".." in root.parts:
            raise ValidationError(
                f"Remote root '{root}' must be an absolute path without '..'."
            )
        return root / JOB_BASE_DIRECTORY

    @property
    def username(self) -> str:
        """(Read-only) The user's name on the remote host."""
        return self._username

    @property
    def project_base(self) -> PurePosixPath:
        """(Read-only) The directory under which all persistent job directories live."""
        return self._project_base

    @property
    def scratch_base(self) -> PurePosixPath:
        """(Read-only) The directory under which all scratch job directories live."""
        return self._scratch_base

    def project_dir(self, job_id: Union[JobId, str]) -> PurePosixPath:
        return self._project_base / str(JobId(job_id))

    def scratch_dir(self, job_id: Union[JobId, str]) -> PurePosixPath:
        return self._scratch_base / str(JobId(job_id))

    def input_file(self, job_id: Union[JobId, str], name: str) -> PurePosixPath:
        """The persistent-tree path of an uploaded input file."""

        return self.project_dir(job_id) / INPUT_FILES_DIRECTORY / sanitize_filename(name)

    def submission_script(self, job_id: Union[JobId, str]) -> PurePosixPath:
        return self.project_dir(job_id) / SUBMISSION_SCRIPT_NAME

    def simulation_config(self, job_id: Union[JobId, str]) -> PurePosixPath:
        return self.project_dir(job_id) / SIMULATION_CONFIG_NAME

    def metadata_file(self, job_id: Union[JobId, str]) -> PurePosixPath:
        return self.project_dir(job_id) / METADATA_FILE_NAME

    def outputs_dir(self, job_id: Union[JobId, str]) -> PurePosixPath:
        return self.project_dir(job_id) / OUTPUTS_DIRECTORY

    def scheduler_log(
        self, job_id: Union[JobId, str], job_name: str, scheduler_job_id: str, stream: str
    ) -> PurePosixPath:
        """The persistent-tree path of the scheduler's stdout (``stream='out'``) or
        stderr (``stream='err'``) log for a job."""

        if stream not in {"out", "err"}:
            raise ValueError(f"Unknown log stream '{stream}'.")

        name = sanitize_filename(f"{job_name}_{scheduler_job_id}.{stream}")
        return self.project_dir(job_id) / name

    def job_relative(self, job_id: Union[JobId, str], relative: str) -> PurePosixPath:
        """The persistent-tree path of a file given relative to the job directory."""

        return self.project_dir(job_id) / validate_relative_path(relative)

    def validate_managed_path(self, path: Union[str, PurePosixPath]) -> PurePosixPath:
        """Check that a path is a job directory managed by this layout.

        A managed path is exactly one level below either the persistent or the scratch
        job base directory, with a valid job ID as its name. This is checked before any
        remote directory is deleted.

        Raises
        ------
        ValidationError
            If the path is not a managed job directory.
        """

        text = str(path)
        candidate = PurePosixPath(text)
        if (
            not candidate.is_absolute()
            or ".." in candidate.parts
            or "//" in text
            or candidate.parent not in {self._project_base, self._scratch_base}
        ):
            raise ValidationError(
                f"Refusing to operate on '{text}': not a managed job directory."
            )

        try:
            JobId(candidate.name)
        except ValueError:
            raise ValidationError(
                f"Refusing to operate on '{text}': not a managed job directory."
            )

        return candidate
