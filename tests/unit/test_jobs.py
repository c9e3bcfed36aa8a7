import json
import pathlib
import tempfile
import unittest

from namdrunner.sim_management.errors import InvalidJobStatusError, ValidationError
from namdrunner.sim_management.jobs import (
    FileType,
    InputFile,
    JobId,
    JobIDGenerator,
    JobRecord,
    JobSpec,
    JobStatus,
    ResourceRequest,
    SimulationParameters,
    StatusSource,
    classify_file,
)


def make_record(**changes) -> JobRecord:
    record = JobRecord(
        job_id=JobId("20240101120000000"),
        job_name="equilibration",
        resources=ResourceRequest(24, 16.0, "04:00:00", "amilan", "normal"),
        parameters=SimulationParameters(
            steps=1000, temperature=310.0, timestep=2.0, output_name="equil"
        ),
        input_files=(
            InputFile("system.pdb", "/home/me/system.pdb", 10, FileType.STRUCTURE),
        ),
    )
    for key, value in changes.items():
        setattr(record, key, value)
    return record


class TestJobId(unittest.TestCase):
    def test_from_str_and_int(self):
        self.assertEqual("123", str(JobId(123)))
        self.assertEqual(JobId("abc_1"), JobId(JobId("abc_1")))

    def test_hashable(self):
        self.assertEqual(1, len({JobId("a"), JobId("a")}))

    def test_not_equal_to_str(self):
        self.assertNotEqual("a", JobId("a"))

    def test_invalid_ids(self):
        for value in ("", "a/b", "../x", "has space", "a.b"):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    JobId(value)


class TestJobIDGenerator(unittest.TestCase):
    def test_unique_ids(self):
        generator = JobIDGenerator()
        ids = [generator.generate_id() for _ in range(5)]
        self.assertEqual(5, len(set(ids)))
        for job_id in ids:
            self.assertRegex(str(job_id), r"^\d{17}$")


class TestInputFile(unittest.TestCase):
    def test_classify_file(self):
        cases = {
            "a.pdb": FileType.STRUCTURE,
            "a.PSF": FileType.TOPOLOGY,
            "toppar.str": FileType.PARAMETERS,
            "a.xsc": FileType.EXTENDED_SYSTEM,
            "a.vel": FileType.COORDINATES,
            "notes.txt": FileType.OTHER,
        }
        for name, file_type in cases.items():
            with self.subTest(name=name):
                self.assertEqual(file_type, classify_file(name))

    def test_from_path(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = pathlib.Path(tmp) / "system.psf"
            path.write_bytes(b"x" * 42)
            input_file = InputFile.from_path(path)

        self.assertEqual("system.psf", input_file.name)
        self.assertEqual(42, input_file.size)
        self.assertEqual(FileType.TOPOLOGY, input_file.file_type)
        self.assertEqual(str(path), input_file.local_path)

    def test_from_missing_path(self):
        with self.assertRaises(ValidationError):
            InputFile.from_path("/no/such/file.pdb")

    def test_unsafe_name_rejected(self):
        with self.assertRaises(ValidationError):
            InputFile("my system.pdb")

    def test_to_dict_without_local_path(self):
        input_file = InputFile("a.pdb", "/secret/place/a.pdb", 1, FileType.STRUCTURE)
        self.assertNotIn("local_path", input_file.to_dict(include_local_path=False))


class TestJobSpec(unittest.TestCase):
    def test_invalid_job_name(self):
        with self.assertRaises(ValidationError):
            JobSpec(
                "bad name",
                ResourceRequest(1, 1, "01:00:00", "amilan", "normal"),
                SimulationParameters(1, 300, 2, "out"),
                [],
            )

    def test_input_files_stored_as_tuple(self):
        spec = JobSpec(
            "ok",
            ResourceRequest(1, 1, "01:00:00", "amilan", "normal"),
            SimulationParameters(1, 300, 2, "out"),
            [InputFile("a.pdb")],
        )
        self.assertIsInstance(spec.input_files, tuple)


class TestJobRecord(unittest.TestCase):
    def test_new_record_is_created(self):
        record = make_record()
        self.assertEqual(JobStatus.CREATED, record.status)
        self.assertIsNone(record.scheduler_job_id)
        record.check_invariants()

    def test_created_cannot_transition_without_submission(self):
        record = make_record()
        for status in JobStatus:
            with self.subTest(status=status):
                self.assertFalse(record.can_transition_to(status))

    def test_mark_submitted(self):
        record = make_record()
        record.mark_submitted("12345", "/scratch/alpine/me/namdrunner_jobs/x")
        self.assertEqual(JobStatus.PENDING, record.status)
        self.assertEqual("12345", record.scheduler_job_id)
        self.assertIsNotNone(record.submitted_at)
        record.check_invariants()

    def test_cannot_submit_twice(self):
        record = make_record()
        record.mark_submitted("12345", "/scratch/x")
        with self.assertRaises(InvalidJobStatusError):
            record.mark_submitted("12346", "/scratch/x")

    def test_forward_transitions_only(self):
        record = make_record()
        record.mark_submitted("1", "/scratch/x")
        record.transition_to(JobStatus.RUNNING, StatusSource.SCHEDULER)
        self.assertFalse(record.can_transition_to(JobStatus.PENDING))
        with self.assertRaises(InvalidJobStatusError):
            record.transition_to(JobStatus.PENDING, StatusSource.SCHEDULER)

        record.transition_to(JobStatus.COMPLETED, StatusSource.SCHEDULER)
        self.assertTrue(record.is_terminal)
        self.assertIsNotNone(record.completed_at)
        self.assertEqual(StatusSource.SCHEDULER, record.status_source)

    def test_terminal_statuses_are_final(self):
        record = make_record()
        record.mark_submitted("1", "/scratch/x")
        record.transition_to(JobStatus.CANCELLED, StatusSource.LOCAL)
        for status in JobStatus:
            with self.subTest(status=status):
                self.assertFalse(record.can_transition_to(status))

    def test_pending_can_skip_to_terminal(self):
        record = make_record()
        record.mark_submitted("1", "/scratch/x")
        self.assertTrue(record.can_transition_to(JobStatus.FAILED))

    def test_invariants_checked(self):
        with self.assertRaises(InvalidJobStatusError):
            make_record(scheduler_job_id="1").check_invariants()

        with self.assertRaises(InvalidJobStatusError):
            make_record(status=JobStatus.RUNNING).check_invariants()

    def test_record_failure(self):
        record = make_record()
        record.record_failure("submission", ValidationError("Bad"))
        self.assertEqual("submission", record.failed_step)
        self.assertEqual("Bad", record.error_info["message"])

        record.record_failure("completion", RuntimeError("boom"))
        self.assertEqual("Internal", record.error_info["category"])

    def test_dict_round_trip_through_json(self):
        record = make_record(
            parameters=SimulationParameters(
                steps=1000,
                temperature=310.0,
                timestep=2.0,
                output_name="equil",
                pme_enabled=True,
                cell_basis_vectors=((50.0, 0.0, 0.0), (0.0, 50.0, 0.0), (0.0, 0.0, 50.0)),
                cell_origin=(0.0, 0.0, 0.0),
            )
        )
        record.mark_submitted("99", "/scratch/x")
        restored = JobRecord.from_dict(json.loads(json.dumps(record.to_dict())))
        self.assertEqual(record, restored)

    def test_metadata_form_omits_local_paths(self):
        text = json.dumps(make_record().to_dict(include_local_paths=False))
        self.assertNotIn("/home/me", text)


if __name__ == "__main__":
    unittest.main()
