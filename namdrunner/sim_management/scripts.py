"""Generation of the SLURM submission script and NAMD configuration file for a job.

Both artifacts are rendered from named sections, each of which can be rendered (and
tested) on its own, concatenated in a fixed order. Values are written using
`format_value`, so that booleans appear as ``yes``/``no`` and numbers appear with
precision appropriate to their type.
"""

import dataclasses
import math
import shlex
import string
import textwrap
from collections.abc import Sequence
from pathlib import PurePosixPath
from typing import Union

from namdrunner.sim_management.cluster import ClusterProfile, validate_resource_request
from namdrunner.sim_management.errors import ValidationError
from namdrunner.sim_management.jobs import (
    FileType,
    InputFile,
    JobSpec,
    ResourceRequest,
    SimulationParameters,
    classify_file,
)
from namdrunner.sim_management.paths import (
    INPUT_FILES_DIRECTORY,
    OUTPUTS_DIRECTORY,
    SIMULATION_CONFIG_NAME,
    SIMULATOR_LOG_NAME,
)
from namdrunner.utilities.string_validation import sanitize_identifier

# Force field
EXCLUDE = "scaled1-4"
SCALING_1_4 = 1.0
SWITCH_DIST = 8.0
CUTOFF = 10.0
PAIRLIST_DIST = 12.0

# Integrator
NONBONDED_FREQ = 1
FULL_ELECT_FREQUENCY = 2
STEPS_PER_CYCLE = 12
RIGID_BONDS = "all"

# Temperature control
LANGEVIN_DAMPING = 1.0
LANGEVIN_HYDROGEN = False

# Periodic boundaries and pressure control
PME_GRID_SPACING = 1.5
LANGEVIN_PISTON_TARGET = 1.01325
LANGEVIN_PISTON_PERIOD = 1000.0
LANGEVIN_PISTON_DECAY = 500.0
WRAP_ALL = False
WRAP_WATER = False


class _Template(string.Template):
    """Subclass of ``string.Template`` that changes the default delimiter.

    Text that begins with '#PY_' will be replaced when applying text substitution.

    Examples
    --------

    >>> _Template("something=#PY_FOO").substitute({"FOO": "foo"})
    'something=foo'
    """

    delimiter = "#PY_"


def _render(template_str: str, values: dict) -> str:
    template_str = template_str[1:]  # remove leading newline character
    return _Template(textwrap.dedent(template_str)).substitute(values)


@dataclasses.dataclass(frozen=True)
class GeneratedArtifacts:
    """The text of the files generated for a job."""

    submission_script: str
    simulation_config: str


def format_value(value: Union[bool, int, float, str]) -> str:
    """Format a value as it should appear in a generated file.

    Booleans are written as ``yes`` or ``no``, integers without a decimal point and
    floats with at least one decimal place.

    Examples
    --------
    >>> format_value(True)
    'yes'
    >>> format_value(300)
    '300'
    >>> format_value(300.0)
    '300.0'
    """

    if isinstance(value, bool):
        return "yes" if value else "no"
    elif isinstance(value, int):
        return str(value)
    elif isinstance(value, float):
        return repr(value)
    else:
        return str(value)


def format_memory(memory_gb: float) -> str:
    """Format a memory request for SLURM's ``--mem`` option, in whole gigabytes where
    possible and otherwise in whole megabytes."""

    if float(memory_gb).is_integer():
        return f"{int(memory_gb)}G"

    return f"{math.ceil(memory_gb * 1024)}M"


def _vector(values: Sequence[float]) -> str:
    return " ".join(format_value(float(v)) for v in values)


def _input_path(name: str) -> str:
    return str(PurePosixPath(INPUT_FILES_DIRECTORY) / name)


def _files_of_type(input_files: Sequence[InputFile], file_type: FileType) -> list[str]:
    return [f.name for f in input_files if classify_file(f.name) is file_type]


# Submission script sections


def render_header(job_name: str, resources: ResourceRequest) -> str:
    """The shebang line and SLURM directives."""

    return _render(
        r"""
        #!/bin/bash
        #SBATCH --job-name=#PY_JOB_NAME
        #SBATCH --nodes=1
        #SBATCH --ntasks-per-node=#PY_CORES
        #SBATCH --mem=#PY_MEMORY
        #SBATCH --time=#PY_WALLTIME
        #SBATCH --partition=#PY_PARTITION
        #SBATCH --qos=#PY_QOS
        #SBATCH --output=#PY_{JOB_NAME}_%j.out
        #SBATCH --error=#PY_{JOB_NAME}_%j.err
        """,
        {
            "JOB_NAME": job_name,
            "CORES": format_value(resources.cores),
            "MEMORY": format_memory(resources.memory_gb),
            "WALLTIME": resources.walltime,
            "PARTITION": resources.partition,
            "QOS": resources.qos,
        },
    )


def render_environment(profile: ClusterProfile) -> str:
    """Loading of the simulator's environment module."""

    return _render(
        r"""

        # Load required modules
        module load #PY_MODULE
        """,
        {"MODULE": shlex.quote(profile.simulator_module)},
    )


def render_input_checks(
    scratch_dir: Union[str, PurePosixPath], input_files: Sequence[InputFile]
) -> str:
    """Change to the job's scratch directory and check each input file is present."""

    checks = "\n".join(
        f"test -f {shlex.quote(_input_path(f.name))} || "
        f'{{ echo "Missing input file: {f.name}" >&2; exit 1; }}'
        for f in input_files
    )
    return _render(
        r"""

        # Change to job directory
        cd #PY_SCRATCH_DIR

        # Check input files
        """,
        {"SCRATCH_DIR": shlex.quote(str(scratch_dir))},
    ) + checks + "\n"


def render_execution(profile: ClusterProfile, resources: ResourceRequest) -> str:
    """The command that runs the simulator."""

    return _render(
        r"""

        # Run NAMD simulation
        #PY_EXECUTABLE +p#PY_CORES #PY_CONFIG > #PY_LOG 2>&1

        echo "Job completed at $(date)"
        """,
        {
            "EXECUTABLE": shlex.quote(profile.simulator_executable),
            "CORES": format_value(resources.cores),
            "CONFIG": SIMULATION_CONFIG_NAME,
            "LOG": SIMULATOR_LOG_NAME,
        },
    )


def render_submission_script(
    job_spec: JobSpec, profile: ClusterProfile, scratch_dir: Union[str, PurePosixPath]
) -> str:
    return "".join(
        [
            render_header(job_spec.job_name, job_spec.resources),
            render_environment(profile),
            render_input_checks(scratch_dir, job_spec.input_files),
            render_execution(profile, job_spec.resources),
        ]
    )


# Simulation configuration sections


def render_config_inputs(input_files: Sequence[InputFile]) -> str:
    """References to the structure, coordinate and parameter files."""

    lines = ["# Input files"]
    for name in _files_of_type(input_files, FileType.TOPOLOGY):
        lines.append(f"structure          {_input_path(name)}")
    for name in _files_of_type(input_files, FileType.STRUCTURE):
        lines.append(f"coordinates        {_input_path(name)}")
    for name in _files_of_type(input_files, FileType.COORDINATES):
        keyword = "binvelocities" if name.lower().endswith(".vel") else "bincoordinates"
        lines.append(f"{keyword:<18} {_input_path(name)}")
    for name in _files_of_type(input_files, FileType.EXTENDED_SYSTEM):
        lines.append(f"extendedSystem     {_input_path(name)}")

    lines.append("paraTypeCharmm     on")
    for name in _files_of_type(input_files, FileType.PARAMETERS):
        lines.append(f"parameters         {_input_path(name)}")

    return "\n".join(lines) + "\n"


def render_config_parameters(
    parameters: SimulationParameters, input_files: Sequence[InputFile]
) -> str:
    """Temperature, integrator and force-field settings."""

    has_velocities = any(f.name.lower().endswith(".vel") for f in input_files)
    temperature = format_value(float(parameters.temperature))
    text = _render(
        r"""

        # Simulation parameters
        #PY_TEMPERATURE_LINE
        timestep           #PY_TIMESTEP
        rigidBonds         #PY_RIGID_BONDS
        nonbondedFreq      #PY_NONBONDED_FREQ
        fullElectFrequency #PY_FULL_ELECT_FREQUENCY
        stepspercycle      #PY_STEPS_PER_CYCLE

        # Force field
        exclude            #PY_EXCLUDE
        1-4scaling         #PY_SCALING_1_4
        cutoff             #PY_CUTOFF
        switching          on
        switchdist         #PY_SWITCH_DIST
        pairlistdist       #PY_PAIRLIST_DIST

        # Temperature control
        langevin           on
        langevinDamping    #PY_LANGEVIN_DAMPING
        langevinTemp       #PY_TEMPERATURE
        langevinHydrogen   #PY_LANGEVIN_HYDROGEN
        """,
        {
            "TEMPERATURE_LINE": (
                "# initial velocities read from binvelocities"
                if has_velocities
                else f"temperature        {temperature}"
            ),
            "TEMPERATURE": temperature,
            "TIMESTEP": format_value(float(parameters.timestep)),
            "RIGID_BONDS": RIGID_BONDS,
            "NONBONDED_FREQ": format_value(NONBONDED_FREQ),
            "FULL_ELECT_FREQUENCY": format_value(FULL_ELECT_FREQUENCY),
            "STEPS_PER_CYCLE": format_value(STEPS_PER_CYCLE),
            "EXCLUDE": EXCLUDE,
            "SCALING_1_4": format_value(SCALING_1_4),
            "CUTOFF": format_value(CUTOFF),
            "SWITCH_DIST": format_value(SWITCH_DIST),
            "PAIRLIST_DIST": format_value(PAIRLIST_DIST),
            "LANGEVIN_DAMPING": format_value(LANGEVIN_DAMPING),
            "LANGEVIN_HYDROGEN": format_value(LANGEVIN_HYDROGEN),
        },
    )
    if parameters.margin is not None:
        text += f"margin             {format_value(float(parameters.margin))}\n"

    return text


def render_config_periodic(parameters: SimulationParameters) -> str:
    """Periodic cell, PME and constant-pressure settings; empty for a non-periodic
    simulation."""

    if not parameters.is_periodic:
        return ""

    lines = ["", "# Periodic boundary conditions"]
    if parameters.cell_basis_vectors is not None:
        for i, vector in enumerate(parameters.cell_basis_vectors, start=1):
            lines.append(f"cellBasisVector{i}   {_vector(vector)}")
    if parameters.cell_origin is not None:
        lines.append(f"cellOrigin         {_vector(parameters.cell_origin)}")

    lines += [
        f"wrapAll            {format_value(WRAP_ALL)}",
        f"wrapWater          {format_value(WRAP_WATER)}",
        f"xstFreq            {format_value(parameters.restart_freq)}",
    ]

    if parameters.pme_enabled:
        lines += [
            "",
            "# Particle mesh Ewald",
            f"PME                {format_value(True)}",
            f"PMEGridSpacing     {format_value(PME_GRID_SPACING)}",
        ]

    if parameters.npt_enabled:
        lines += [
            "",
            "# Constant pressure",
            f"useGroupPressure   {format_value(True)}",
            f"useFlexibleCell    {format_value(False)}",
            f"useConstantArea    {format_value(False)}",
            "langevinPiston     on",
            f"langevinPistonTarget {format_value(LANGEVIN_PISTON_TARGET)}",
            f"langevinPistonPeriod {format_value(LANGEVIN_PISTON_PERIOD)}",
            f"langevinPistonDecay  {format_value(LANGEVIN_PISTON_DECAY)}",
            f"langevinPistonTemp   {format_value(float(parameters.temperature))}",
        ]

    return "\n".join(lines) + "\n"


def render_config_output(parameters: SimulationParameters) -> str:
    return _render(
        r"""

        # Output
        outputName         #PY_OUTPUT_NAME
        dcdfreq            #PY_DCD_FREQ
        restartfreq        #PY_RESTART_FREQ
        outputEnergies     #PY_DCD_FREQ
        """,
        {
            "OUTPUT_NAME": str(PurePosixPath(OUTPUTS_DIRECTORY) / parameters.output_name),
            "DCD_FREQ": format_value(parameters.dcd_freq),
            "RESTART_FREQ": format_value(parameters.restart_freq),
        },
    )


def render_config_execution(parameters: SimulationParameters) -> str:
    """Minimisation (if requested) followed by the dynamics run."""

    lines = ["", "# Execution"]
    if parameters.minimize_steps > 0:
        lines.append(f"minimize           {format_value(parameters.minimize_steps)}")
    lines.append(f"run                {format_value(parameters.steps)}")
    return "\n".join(lines) + "\n"


def render_simulation_config(job_spec: JobSpec) -> str:
    parameters = job_spec.parameters
    return "".join(
        [
            render_config_inputs(job_spec.input_files),
            render_config_parameters(parameters, job_spec.input_files),
            render_config_periodic(parameters),
            render_config_output(parameters),
            render_config_execution(parameters),
        ]
    )


# Validation


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_vector(value) -> bool:
    return (
        isinstance(value, (tuple, list))
        and len(value) == 3
        and all(_is_number(v) for v in value)
    )


def validate_parameters(
    parameters: SimulationParameters, input_files: Sequence[InputFile]
) -> list[str]:
    """Check simulation parameters, returning a list of problems found."""

    issues = []
    for name in ("steps", "dcd_freq", "restart_freq"):
        value = getattr(parameters, name)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            issues.append(f"'{name}' must be a positive whole number.")

    if (
        isinstance(parameters.minimize_steps, bool)
        or not isinstance(parameters.minimize_steps, int)
        or parameters.minimize_steps < 0
    ):
        issues.append("'minimize_steps' must be a non-negative whole number.")

    if not _is_number(parameters.temperature) or not parameters.temperature > 0:
        issues.append("Temperature must be greater than 0 K.")

    if not _is_number(parameters.timestep) or not parameters.timestep > 0:
        issues.append("Timestep must be greater than 0 fs.")

    try:
        sanitize_identifier(parameters.output_name, name="Output name")
    except ValidationError as e:
        issues.append(str(e))

    if parameters.is_periodic:
        has_xsc = bool(_files_of_type(input_files, FileType.EXTENDED_SYSTEM))
        vectors = parameters.cell_basis_vectors
        if vectors is None and not has_xsc:
            issues.append(
                "Periodic simulations (PME or NPT) require cell basis vectors or an "
                "extended system (.xsc) input file."
            )
        elif vectors is not None and (
            not isinstance(vectors, (tuple, list))
            or len(vectors) != 3
            or not all(_is_vector(v) for v in vectors)
        ):
            issues.append(
                "Cell basis vectors must be three vectors of three numeric values."
            )

        if parameters.cell_origin is not None and not _is_vector(parameters.cell_origin):
            issues.append("Cell origin must have three numeric values.")

    if parameters.margin is not None and (
        not _is_number(parameters.margin) or parameters.margin < 0
    ):
        issues.append("Margin must be a non-negative number of angstroms.")

    return issues


def validate_manifest(input_files: Sequence[InputFile]) -> list[str]:
    """Check that the input files are complete for a simulation, returning a list of
    problems found."""

    issues = []
    names = [f.name for f in input_files]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        issues.append(f"Duplicate input file names: {', '.join(duplicates)}.")

    required = (
        (FileType.STRUCTURE, "a structure (.pdb) file"),
        (FileType.TOPOLOGY, "a topology (.psf) file"),
        (FileType.PARAMETERS, "a parameter (.prm, .par, .str or .rtf) file"),
    )
    for file_type, description in required:
        if not _files_of_type(input_files, file_type):
            issues.append(f"Input files must include {description}.")

    return issues


def validate_job_spec(job_spec: JobSpec, profile: ClusterProfile) -> None:
    """Check a job specification can be rendered and submitted.

    Raises
    ------
    ValidationError
        If the resource request exceeds the cluster's limits, required simulation
        parameters are missing or the input files are incomplete. All problems found are
        listed in the error's ``issues``.
    """

    resource_check = validate_resource_request(job_spec.resources, profile)
    issues = list(resource_check.issues)
    issues += validate_parameters(job_spec.parameters, job_spec.input_files)
    issues += validate_manifest(job_spec.input_files)
    if issues:
        raise ValidationError(
            f"Job '{job_spec.job_name}' is not valid: {issues[0]}",
            issues=issues,
            suggestions=resource_check.suggestions or None,
        )


def generate(
    job_spec: JobSpec, profile: ClusterProfile, scratch_dir: Union[str, PurePosixPath]
) -> GeneratedArtifacts:
    """Generate the submission script and simulation configuration for a job.

    Parameters
    ----------
    job_spec : JobSpec
        The job to generate files for.
    profile : ClusterProfile
        The cluster the job will run on.
    scratch_dir : Union[str, PurePosixPath]
        The scratch directory the job will execute in.

    Returns
    -------
    GeneratedArtifacts
        The text of the submission script and of the simulation configuration.

    Raises
    ------
    ValidationError
        If the job specification is not valid (see `validate_job_spec`).
    """

    validate_job_spec(job_spec, profile)
    return GeneratedArtifacts(
        submission_script=render_submission_script(job_spec, profile, scratch_dir),
        simulation_config=render_simulation_config(job_spec),
    )
