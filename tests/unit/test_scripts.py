import unittest

from namdrunner.sim_management.cluster import ALPINE_PROFILE
from namdrunner.sim_management.errors import ValidationError
from namdrunner.sim_management.jobs import (
    FileType,
    InputFile,
    JobSpec,
    ResourceRequest,
    SimulationParameters,
)
from namdrunner.sim_management.scripts import (
    format_memory,
    format_value,
    generate,
    render_config_execution,
    render_config_inputs,
    render_config_parameters,
    render_config_periodic,
    render_header,
    render_input_checks,
    validate_manifest,
    validate_parameters,
)

SCRATCH_DIR = "/scratch/alpine/jdoe/namdrunner_jobs/20240101120000000"

INPUT_FILES = (
    InputFile("system.pdb", size=10, file_type=FileType.STRUCTURE),
    InputFile("system.psf", size=10, file_type=FileType.TOPOLOGY),
    InputFile("par_all36_prot.prm", size=10, file_type=FileType.PARAMETERS),
    InputFile("toppar_water_ions.str", size=10, file_type=FileType.PARAMETERS),
)


def make_parameters(**changes) -> SimulationParameters:
    values = dict(steps=50000, temperature=310, timestep=2, output_name="equil")
    values.update(changes)
    return SimulationParameters(**values)


def make_spec(resources=None, parameters=None, input_files=INPUT_FILES) -> JobSpec:
    return JobSpec(
        job_name="equilibration",
        resources=resources or ResourceRequest(24, 16, "04:00:00", "amilan", "normal"),
        parameters=parameters or make_parameters(),
        input_files=input_files,
    )


class TestFormatting(unittest.TestCase):
    def test_format_value(self):
        self.assertEqual("yes", format_value(True))
        self.assertEqual("no", format_value(False))
        self.assertEqual("300", format_value(300))
        self.assertEqual("300.0", format_value(300.0))
        self.assertEqual("1.01325", format_value(1.01325))
        self.assertEqual("scaled1-4", format_value("scaled1-4"))

    def test_format_memory(self):
        self.assertEqual("16G", format_memory(16))
        self.assertEqual("256G", format_memory(256.0))
        self.assertEqual("1536M", format_memory(1.5))


class TestSubmissionScript(unittest.TestCase):
    def test_header(self):
        header = render_header(
            "equilibration", ResourceRequest(24, 16, "04:00:00", "amilan", "normal")
        )
        lines = header.splitlines()
        self.assertEqual("#!/bin/bash", lines[0])
        for directive in (
            "#SBATCH --job-name=equilibration",
            "#SBATCH --nodes=1",
            "#SBATCH --ntasks-per-node=24",
            "#SBATCH --mem=16G",
            "#SBATCH --time=04:00:00",
            "#SBATCH --partition=amilan",
            "#SBATCH --qos=normal",
            "#SBATCH --output=equilibration_%j.out",
            "#SBATCH --error=equilibration_%j.err",
        ):
            with self.subTest(directive=directive):
                self.assertIn(directive, lines)

    def test_high_memory_request(self):
        header = render_header(
            "bigjob", ResourceRequest(12, 256, "24:00:00", "amem", "mem")
        )
        self.assertIn("#SBATCH --mem=256G", header.splitlines())

    def test_input_checks_cover_every_file(self):
        checks = render_input_checks(SCRATCH_DIR, INPUT_FILES)
        self.assertIn(f"cd {SCRATCH_DIR}", checks)
        for input_file in INPUT_FILES:
            with self.subTest(name=input_file.name):
                self.assertIn(f"test -f input_files/{input_file.name}", checks)

    def test_generated_script(self):
        artifacts = generate(make_spec(), ALPINE_PROFILE, SCRATCH_DIR)
        script = artifacts.submission_script

        self.assertTrue(script.startswith("#!/bin/bash\n"))
        self.assertIn("module load namd/3.0alpha13", script)
        self.assertIn("namd3 +p24 config.namd > namd_output.log 2>&1", script)
        self.assertNotIn("#PY_", script)


class TestSimulationConfig(unittest.TestCase):
    def test_every_input_file_referenced(self):
        config = generate(make_spec(), ALPINE_PROFILE, SCRATCH_DIR).simulation_config
        for input_file in INPUT_FILES:
            with self.subTest(name=input_file.name):
                self.assertIn(f"input_files/{input_file.name}", config)

    def test_inputs_by_type(self):
        lines = render_config_inputs(
            INPUT_FILES
            + (InputFile("restart.coor"), InputFile("restart.vel"), InputFile("cell.xsc"))
        ).splitlines()
        self.assertIn("structure          input_files/system.psf", lines)
        self.assertIn("coordinates        input_files/system.pdb", lines)
        self.assertIn("bincoordinates     input_files/restart.coor", lines)
        self.assertIn("binvelocities      input_files/restart.vel", lines)
        self.assertIn("extendedSystem     input_files/cell.xsc", lines)
        self.assertIn("parameters         input_files/toppar_water_ions.str", lines)

    def test_temperature(self):
        text = render_config_parameters(make_parameters(), INPUT_FILES)
        self.assertIn("temperature        310.0", text.splitlines())
        self.assertIn("langevinTemp       310.0", text.splitlines())
        self.assertIn("timestep           2.0", text.splitlines())

    def test_temperature_omitted_with_velocities(self):
        text = render_config_parameters(
            make_parameters(), INPUT_FILES + (InputFile("restart.vel"),)
        )
        self.assertNotIn("temperature        310.0", text.splitlines())
        self.assertIn("langevinTemp       310.0", text.splitlines())

    def test_non_periodic(self):
        self.assertEqual("", render_config_periodic(make_parameters()))

    def test_periodic(self):
        parameters = make_parameters(
            pme_enabled=True,
            npt_enabled=True,
            cell_basis_vectors=((60, 0, 0), (0, 60, 0), (0, 0, 60)),
            cell_origin=(0, 0, 0),
        )
        lines = render_config_periodic(parameters).splitlines()

        self.assertIn("cellBasisVector1   60.0 0.0 0.0", lines)
        self.assertIn("cellBasisVector3   0.0 0.0 60.0", lines)
        self.assertIn("cellOrigin         0.0 0.0 0.0", lines)
        self.assertIn("PME                yes", lines)
        self.assertIn("langevinPiston     on", lines)
        self.assertIn("langevinPistonTemp   310.0", lines)

    def test_execution(self):
        self.assertEqual(
            ["", "# Execution", "run                50000"],
            render_config_execution(make_parameters()).splitlines(),
        )
        self.assertIn(
            "minimize           500",
            render_config_execution(make_parameters(minimize_steps=500)).splitlines(),
        )

    def test_output_prefix(self):
        config = generate(make_spec(), ALPINE_PROFILE, SCRATCH_DIR).simulation_config
        self.assertIn("outputName         outputs/equil", config.splitlines())


class TestValidation(unittest.TestCase):
    def test_valid_parameters(self):
        self.assertEqual([], validate_parameters(make_parameters(), INPUT_FILES))

    def test_invalid_parameters(self):
        cases = [
            dict(steps=0),
            dict(steps=1.5),
            dict(temperature=0),
            dict(timestep=-1),
            dict(dcd_freq=0),
            dict(minimize_steps=-1),
            dict(temperature="hot"),
            dict(margin="wide"),
            dict(margin=-1.0),
            dict(output_name="out/../x"),
        ]
        for changes in cases:
            with self.subTest(changes=changes):
                self.assertEqual(
                    1, len(validate_parameters(make_parameters(**changes), INPUT_FILES))
                )

    def test_periodic_needs_cell(self):
        parameters = make_parameters(pme_enabled=True)
        self.assertEqual(1, len(validate_parameters(parameters, INPUT_FILES)))
        self.assertEqual(
            [], validate_parameters(parameters, INPUT_FILES + (InputFile("cell.xsc"),))
        )

    def test_periodic_cell_values(self):
        cell = ((40.0, 0, 0), (0, 40.0, 0), (0, 0, 40.0))
        cases = [
            (dict(cell_basis_vectors=cell), 0),
            (dict(cell_basis_vectors=cell, cell_origin=(0, 0, 0), margin=2.5), 0),
            (dict(cell_basis_vectors=((40.0, "a", 0), (0, 40.0, 0), (0, 0, 40.0))), 1),
            (dict(cell_basis_vectors=cell[:2]), 1),
            (dict(cell_basis_vectors=cell, cell_origin=("x", 0, 0)), 1),
            (dict(cell_basis_vectors=cell, cell_origin=(0, 0)), 1),
        ]
        for changes, n_issues in cases:
            with self.subTest(changes=changes):
                parameters = make_parameters(pme_enabled=True, **changes)
                self.assertEqual(
                    n_issues, len(validate_parameters(parameters, INPUT_FILES))
                )

    def test_generate_rejects_non_numeric_values(self):
        parameters = make_parameters(
            pme_enabled=True,
            cell_basis_vectors=((40.0, 0, 0), (0, "40", 0), (0, 0, 40.0)),
            margin="wide",
        )
        with self.assertRaises(ValidationError) as cm:
            generate(make_spec(parameters=parameters), ALPINE_PROFILE, SCRATCH_DIR)

        self.assertEqual(2, len(cm.exception.issues))

    def test_manifest(self):
        self.assertEqual([], validate_manifest(INPUT_FILES))
        self.assertEqual(2, len(validate_manifest(INPUT_FILES[:1])))
        self.assertEqual(1, len(validate_manifest(INPUT_FILES + INPUT_FILES[:1])))

    def test_generate_rejects_invalid_job(self):
        spec = make_spec(
            resources=ResourceRequest(500, 16, "04:00:00", "amilan", "normal"),
            parameters=make_parameters(steps=0),
            input_files=INPUT_FILES[:2],
        )
        with self.assertRaises(ValidationError) as cm:
            generate(spec, ALPINE_PROFILE, SCRATCH_DIR)

        self.assertGreaterEqual(len(cm.exception.issues), 3)


if __name__ == "__main__":
    unittest.main()
