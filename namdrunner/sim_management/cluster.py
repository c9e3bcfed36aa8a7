"""Cluster profiles: the partitions, QoS tiers, paths, timeouts and environment
bootstrap of a remote cluster, and validation of resource requests against them."""

from __future__ import annotations

import dataclasses
import json
import math
import re
from typing import Any, Optional

from namdrunner.sim_management.jobs import ResourceRequest
from namdrunner.sim_management.types import FilePath


@dataclasses.dataclass(frozen=True)
class PartitionSpec:
    """A scheduler partition and its per-job limits."""

    name: str
    title: str
    max_cores: int
    max_memory_per_core_gb: float
    description: str = ""
    gpu_type: Optional[str] = None
    gpu_count: int = 0
    is_default: bool = False

    @property
    def has_gpu(self) -> bool:
        return self.gpu_count > 0


@dataclasses.dataclass(frozen=True)
class QosSpec:
    """A quality-of-service tier and the partitions it can be used with."""

    name: str
    title: str
    max_walltime_hours: float
    valid_partitions: tuple[str, ...]
    description: str = ""
    min_memory_gb: Optional[float] = None
    is_default: bool = False


@dataclasses.dataclass(frozen=True)
class BillingRates:
    """Service-unit charges used for cost estimates."""

    cpu_cost_per_core_hour: float = 1.0
    gpu_cost_per_gpu_hour: float = 108.2


@dataclasses.dataclass(frozen=True)
class Timeouts:
    """Timeouts, in seconds, for the different kinds of remote operation.

    File transfers are timed per chunk rather than per file, so that a large upload is
    not held to a timeout sized for a quick status query.
    """

    connect: float = 30
    command: float = 120
    quick: float = 30
    status: float = 10
    submit: float = 30
    transfer_chunk: float = 60
    file_copy: float = 300


@dataclasses.dataclass(frozen=True)
class ClusterProfile:
    """Configuration of a remote cluster.

    Parameters
    ----------
    name : str
        A display name for the cluster.
    host : str
        The hostname of the cluster's login node.
    bootstrap : str
        Shell text run before every remote command to set up the environment, e.g.
        sourcing a profile and loading the scheduler module. Empty for none.
    project_root : str
        Template for the root of the persistent tree, with a ``{username}``
        placeholder.
    scratch_root : str
        Template for the root of the scratch tree, with a ``{username}`` placeholder.
    simulator_module : str
        The environment module that provides the simulator.
    simulator_executable : str
        The name of the simulator program.
    partitions : tuple[PartitionSpec, ...]
        The partitions that jobs may be submitted to.
    qos : tuple[QosSpec, ...]
        The quality-of-service tiers available.
    billing : BillingRates
        Charges used for cost estimates.
    timeouts : Timeouts
        Timeouts for remote operations.
    """

    name: str
    host: str
    bootstrap: str
    project_root: str
    scratch_root: str
    simulator_module: str
    simulator_executable: str
    partitions: tuple[PartitionSpec, ...]
    qos: tuple[QosSpec, ...]
    billing: BillingRates = BillingRates()
    timeouts: Timeouts = Timeouts()

    def get_partition(self, name: str) -> Optional[PartitionSpec]:
        return next((p for p in self.partitions if p.name == name), None)

    def get_qos(self, name: str) -> Optional[QosSpec]:
        return next((q for q in self.qos if q.name == name), None)

    def qos_for_partition(self, partition: str) -> tuple[QosSpec, ...]:
        """The QoS tiers that may be used with a partition."""

        return tuple(q for q in self.qos if partition in q.valid_partitions)

    @property
    def default_partition(self) -> PartitionSpec:
        return next((p for p in self.partitions if p.is_default), self.partitions[0])

    @property
    def default_qos(self) -> QosSpec:
        return next((q for q in self.qos if q.is_default), self.qos[0])

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: Optional[ClusterProfile] = None):
        """Make a profile from a dict, taking any fields not present from `base` (or
        from the built-in Alpine profile if `base` is ``None``)."""

        base = base if base is not None else ALPINE_PROFILE
        fields = {f.name: getattr(base, f.name) for f in dataclasses.fields(cls)}
        for key, value in data.items():
            if key not in fields:
                raise ValueError(f"Unknown cluster profile setting '{key}'.")
            elif key == "partitions":
                fields[key] = tuple(PartitionSpec(**p) for p in value)
            elif key == "qos":
                fields[key] = tuple(
                    QosSpec(**{**q, "valid_partitions": tuple(q["valid_partitions"])})
                    for q in value
                )
            elif key == "billing":
                fields[key] = BillingRates(**value)
            elif key == "timeouts":
                fields[key] = dataclasses.replace(base.timeouts, **value)
            else:
                fields[key] = value

        return cls(**fields)


_ALPINE_CPU_PARTITIONS = ("amilan", "amilan128c", "aa100", "ami100", "al40")

ALPINE_PROFILE = ClusterProfile(
    name="CU Boulder Alpine",
    host="login.rc.colorado.edu",
    bootstrap="source /etc/profile && module load slurm/alpine",
    project_root="/projects/{username}",
    scratch_root="/scratch/alpine/{username}",
    simulator_module="namd/3.0alpha13",
    simulator_executable="namd3",
    partitions=(
        PartitionSpec(
            "amilan", "Standard CPU", 64, 3.75, "General purpose CPU nodes", is_default=True
        ),
        PartitionSpec("amilan128c", "128-core CPU", 128, 2.01, "128-core CPU nodes"),
        PartitionSpec("amem", "High memory", 128, 21.5, "High-memory nodes"),
        PartitionSpec("aa100", "NVIDIA A100", 64, 3.75, "GPU nodes", "NVIDIA A100", 3),
        PartitionSpec("ami100", "AMD MI100", 64, 3.75, "GPU nodes", "AMD MI100", 3),
        PartitionSpec("al40", "NVIDIA L40", 64, 3.75, "GPU nodes", "NVIDIA L40", 3),
        PartitionSpec("atesting", "Testing", 16, 4.0, "Short test jobs"),
        PartitionSpec(
            "atesting_a100", "Testing (A100 MIG)", 10, 4.0, "", "NVIDIA A100 MIG", 1
        ),
        PartitionSpec("atesting_mi100", "Testing (MI100)", 64, 3.75, "", "AMD MI100", 3),
        PartitionSpec("acompile", "Compile", 4, 4.0, "Compilation jobs"),
    ),
    qos=(
        QosSpec("normal", "Normal", 24, _ALPINE_CPU_PARTITIONS, "Up to 24 hours", None, True),
        QosSpec("long", "Long", 168, _ALPINE_CPU_PARTITIONS, "Up to 7 days"),
        QosSpec("mem", "High memory", 168, ("amem",), "High-memory jobs on amem", 256),
        QosSpec(
            "testing", "Testing", 1, ("atesting", "atesting_a100", "atesting_mi100")
        ),
        QosSpec("compile", "Compile", 12, ("acompile",)),
    ),
)
"""The built-in profile for the Alpine cluster."""


def load_cluster_profile(path: FilePath) -> ClusterProfile:
    """Read a cluster profile from a JSON file.

    Settings absent from the file are taken from the built-in `ALPINE_PROFILE`.
    """

    with open(path, mode="r") as f:
        return ClusterProfile.from_dict(json.load(f))


def dump_cluster_profile(profile: ClusterProfile, path: FilePath) -> None:
    """Write a cluster profile to a JSON file."""

    with open(path, mode="w") as f:
        json.dump(profile.to_dict(), f, indent=4)


_WALLTIME_PATTERN = re.compile(r"^(\d+):(\d{2}):(\d{2})$")


def parse_walltime_hours(walltime: str) -> float:
    """Convert a wall-clock limit of the form ``HH:MM:SS`` to hours.

    Raises
    ------
    ValueError
        If the wall-clock limit is not of the form ``HH:MM:SS`` or the minutes or
        seconds are not less than 60.
    """

    match = _WALLTIME_PATTERN.match(walltime.strip()) if walltime else None
    if match is None:
        raise ValueError(f"Walltime '{walltime}' must be in HH:MM:SS format.")

    hours, minutes, seconds = (int(g) for g in match.groups())
    if minutes >= 60:
        raise ValueError("Minutes must be less than 60.")
    if seconds >= 60:
        raise ValueError("Seconds must be less than 60.")

    return hours + minutes / 60 + seconds / 3600


_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)B?\s*$", re.I)
_MEMORY_UNITS_GB = {"": 1.0, "K": 1 / 1024**2, "M": 1 / 1024, "G": 1.0, "T": 1024.0}


def parse_memory_gb(memory: str) -> float:
    """Convert a memory amount such as ``"16GB"``, ``"512M"`` or ``"2T"`` to gigabytes.

    A bare number is taken to be in gigabytes.
    """

    match = _MEMORY_PATTERN.match(str(memory))
    if match is None:
        raise ValueError(f"Could not parse memory amount '{memory}'.")

    amount, unit = match.groups()
    return float(amount) * _MEMORY_UNITS_GB[unit.upper()]


@dataclasses.dataclass(frozen=True)
class ValidationResult:
    """The outcome of validating a resource request."""

    is_valid: bool
    issues: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()


def suggest_qos(walltime_hours: float, partition: str, profile: ClusterProfile) -> str:
    """Suggest the QoS with the smallest walltime ceiling that fits a job."""

    candidates = sorted(
        (q for q in profile.qos_for_partition(partition)
         if q.max_walltime_hours >= walltime_hours),
        key=lambda q: q.max_walltime_hours,
    )
    if candidates:
        return candidates[0].name

    return profile.default_qos.name


def validate_resource_request(
    request: ResourceRequest, profile: ClusterProfile
) -> ValidationResult:
    """Check a resource request against the partition and QoS limits of a cluster.

    Parameters
    ----------
    request : ResourceRequest
        The resource request to validate.
    profile : ClusterProfile
        The cluster whose limits apply.

    Returns
    -------
    ValidationResult
        The outcome of validation. The request is valid only if there are no issues;
        warnings do not make a request invalid.
    """

    issues, warnings, suggestions = [], [], []

    partition = profile.get_partition(request.partition)
    qos = profile.get_qos(request.qos)
    if partition is None:
        issues.append(f"Unknown partition '{request.partition}'.")
    if qos is None:
        issues.append(f"Unknown QoS '{request.qos}'.")

    if not isinstance(request.cores, int) or isinstance(request.cores, bool):
        issues.append("Core count must be a whole number.")
    elif request.cores <= 0:
        issues.append("Core count must be greater than 0.")
    elif partition is not None and request.cores > partition.max_cores:
        issues.append(
            f"Requested {request.cores} cores exceeds the maximum of "
            f"{partition.max_cores} for partition '{partition.name}'."
        )

    if not request.memory_gb > 0:
        issues.append("Memory must be greater than 0.")
    elif partition is not None and isinstance(request.cores, int) and request.cores > 0:
        max_memory = request.cores * partition.max_memory_per_core_gb
        if request.memory_gb > max_memory:
            issues.append(
                f"Requested {request.memory_gb:g}GB memory exceeds the maximum of "
                f"{max_memory:g}GB for {request.cores} cores on partition "
                f"'{partition.name}'."
            )
            suggestions.append(
                f"Request at least {math.ceil(request.memory_gb / partition.max_memory_per_core_gb)} "
                "cores, or less memory."
            )
        elif request.memory_gb < 0.25 * max_memory:
            warnings.append(
                "Requested memory is well below what the cores provide; the job may be "
                "charged for memory it does not use."
            )

    try:
        walltime_hours = parse_walltime_hours(request.walltime)
    except ValueError as e:
        issues.append(str(e))
        walltime_hours = None

    if qos is not None:
        if partition is not None and partition.name not in qos.valid_partitions:
            issues.append(
                f"QoS '{qos.name}' is not valid for partition '{partition.name}'."
            )
            valid = [q.name for q in profile.qos_for_partition(partition.name)]
            if valid:
                suggestions.append(f"Use one of the QoS tiers: {', '.join(valid)}.")

        if walltime_hours is not None and walltime_hours > qos.max_walltime_hours:
            issues.append(
                f"Walltime of {request.walltime} exceeds the maximum of "
                f"{qos.max_walltime_hours:g} hours for QoS '{qos.name}'."
            )
            if partition is not None:
                suggestions.append(
                    f"Use QoS '{suggest_qos(walltime_hours, partition.name, profile)}'."
                )

        if qos.min_memory_gb is not None and request.memory_gb < qos.min_memory_gb:
            issues.append(
                f"QoS '{qos.name}' requires at least {qos.min_memory_gb:g}GB memory, "
                f"but {request.memory_gb:g}GB was requested."
            )

    if walltime_hours is not None and 0 < walltime_hours < 0.1:
        warnings.append("Very short walltime; the job may not finish.")

    return ValidationResult(
        is_valid=not issues,
        issues=tuple(issues),
        warnings=tuple(warnings),
        suggestions=tuple(suggestions),
    )


def estimate_cost(request: ResourceRequest, profile: ClusterProfile) -> int:
    """Estimate the cost of a job in service units, or 0 if the walltime is invalid."""

    try:
        hours = parse_walltime_hours(request.walltime)
    except ValueError:
        return 0

    partition = profile.get_partition(request.partition)
    core_cost = request.cores * hours * profile.billing.cpu_cost_per_core_hour
    gpu_cost = (
        partition.gpu_count * hours * profile.billing.gpu_cost_per_gpu_hour
        if partition is not None and partition.has_gpu
        else 0.0
    )
    return round(core_cost + gpu_cost)


def estimate_queue_time(request: ResourceRequest, profile: ClusterProfile) -> str:
    """A rough guide to how long a job will wait in the queue."""

    partition = profile.get_partition(request.partition)
    if partition is not None and partition.name.startswith(("atesting", "acompile")):
        return "< 15 minutes"

    if partition is not None and partition.has_gpu:
        if request.cores <= 32:
            return "1-4 hours"
        return "4-8 hours" if request.cores <= 64 else "> 8 hours"

    if request.cores <= 24:
        return "< 30 minutes"
    elif request.cores <= 48:
        return "< 2 hours"
    return "2-6 hours" if request.cores <= 128 else "> 6 hours"
