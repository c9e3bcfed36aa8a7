import unittest

from namdrunner.sim_management.errors import RemoteCommandError, ValidationError
from namdrunner.sim_management.jobs import JobStatus
from namdrunner.sim_management.slurm import (
    StatusPoller,
    active_status_command,
    cancel_command,
    historical_status_command,
    map_slurm_state,
    parse_sacct_output,
    parse_sbatch_output,
    parse_squeue_output,
    rsync_command,
    submit_command,
    validate_scheduler_job_ids,
)
from tests.unit.fakes import FakeRemoteTestCase

SQUEUE_OUTPUT = """\
12345|equilibration|RUNNING|1:02:03|4:00:00|2024-01-01T12:00:00|/scratch/alpine/jdoe/namdrunner_jobs/a
12346|production|PENDING|0:00|4:00:00|N/A|/scratch/alpine/jdoe/namdrunner_jobs/b
"""

SACCT_OUTPUT = """\
12347|equilibration|COMPLETED|0:0|2024-01-01T10:00:00|2024-01-01T10:01:00|2024-01-01T11:00:00|00:59:00|/scratch/alpine/jdoe/namdrunner_jobs/c
12347.batch|batch|COMPLETED|0:0|2024-01-01T10:00:00|2024-01-01T10:01:00|2024-01-01T11:00:00|00:59:00|
12348|minimize|CANCELLED by 1001|0:15|2024-01-01T10:00:00|Unknown|2024-01-01T10:05:00|00:00:00|/scratch/alpine/jdoe/namdrunner_jobs/d
"""


class TestStateMapping(unittest.TestCase):
    def test_known_states(self):
        cases = {
            "PD": JobStatus.PENDING,
            "PENDING": JobStatus.PENDING,
            "CONFIGURING": JobStatus.PENDING,
            "R": JobStatus.RUNNING,
            "RUNNING": JobStatus.RUNNING,
            "CG": JobStatus.RUNNING,
            "COMPLETING": JobStatus.RUNNING,
            "SUSPENDED": JobStatus.RUNNING,
            "CD": JobStatus.COMPLETED,
            "COMPLETED": JobStatus.COMPLETED,
            "CA": JobStatus.CANCELLED,
            "CANCELLED by 1234": JobStatus.CANCELLED,
            "running": JobStatus.RUNNING,
            "RUNNING+": JobStatus.RUNNING,
        }
        for state, status in cases.items():
            with self.subTest(state=state):
                self.assertEqual(status, map_slurm_state(state))

    def test_failure_and_unknown_states(self):
        for state in ("F", "FAILED", "TO", "TIMEOUT", "NF", "OUT_OF_MEMORY", "PREEMPTED",
                      "BOOT_FAIL", "SOMETHING_NEW", ""):
            with self.subTest(state=state):
                self.assertEqual(JobStatus.FAILED, map_slurm_state(state))


class TestParsing(unittest.TestCase):
    def test_parse_squeue_output(self):
        updates = parse_squeue_output(SQUEUE_OUTPUT)

        self.assertEqual(["12345", "12346"], [u.scheduler_job_id for u in updates])
        self.assertEqual(JobStatus.RUNNING, updates[0].status)
        self.assertEqual("1:02:03", updates[0].elapsed)
        self.assertEqual("/scratch/alpine/jdoe/namdrunner_jobs/a", updates[0].work_dir)
        self.assertEqual(JobStatus.PENDING, updates[1].status)
        self.assertIsNone(updates[1].start_time)

    def test_parse_sacct_output_skips_steps(self):
        updates = parse_sacct_output(SACCT_OUTPUT)

        self.assertEqual(["12347", "12348"], [u.scheduler_job_id for u in updates])
        self.assertEqual(JobStatus.COMPLETED, updates[0].status)
        self.assertEqual("0:0", updates[0].exit_code)
        self.assertEqual("2024-01-01T11:00:00", updates[0].end_time)
        self.assertEqual(JobStatus.CANCELLED, updates[1].status)
        self.assertEqual("CANCELLED by 1001", updates[1].raw_state)
        self.assertIsNone(updates[1].start_time)

    def test_malformed_lines_skipped(self):
        self.assertEqual([], parse_squeue_output("garbage\n\n12345|only|two\n"))
        self.assertEqual([], parse_sacct_output("JobID|JobName\n"))

    def test_parse_sbatch_output(self):
        self.assertEqual("12345678", parse_sbatch_output("Submitted batch job 12345678\n"))
        self.assertEqual(
            "42", parse_sbatch_output("sbatch: note: something\nSubmitted batch job 42")
        )
        self.assertIsNone(parse_sbatch_output("Submitted batch job abc"))
        self.assertIsNone(parse_sbatch_output("sbatch: error: Batch job submission failed"))
        self.assertIsNone(parse_sbatch_output(""))


class TestCommands(unittest.TestCase):
    def test_validate_scheduler_job_ids(self):
        self.assertEqual(["1", "2"], validate_scheduler_job_ids([1, "2"]))
        with self.assertRaises(ValidationError):
            validate_scheduler_job_ids(["1", "2; rm -rf ~"])

    def test_status_commands(self):
        self.assertEqual(
            "squeue -j 1,2 --format='%i|%j|%T|%M|%l|%S|%Z' --noheader",
            active_status_command(["1", "2"]),
        )
        self.assertTrue(historical_status_command(["3"]).startswith("sacct -j 3 --format="))
        self.assertIn("--parsable2", historical_status_command(["3"]))

    def test_cancel_command(self):
        self.assertEqual("scancel 12345", cancel_command("12345"))
        with self.assertRaises(ValidationError):
            cancel_command("12345 && reboot")

    def test_submit_command(self):
        self.assertEqual(
            "cd '/scratch/alpine/a b' && sbatch job.sbatch",
            submit_command("/scratch/alpine/a b"),
        )

    def test_rsync_command(self):
        self.assertEqual(
            "rsync -az /projects/jdoe/x/ /scratch/alpine/jdoe/x/",
            rsync_command("/projects/jdoe/x", "/scratch/alpine/jdoe/x/"),
        )


class TestStatusPoller(FakeRemoteTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.poller = StatusPoller(self.session)

    def test_no_jobs_no_query(self):
        self.assertEqual([], self.poller.poll([]))
        self.assertEqual([], self.remote.commands)

    def test_active_jobs_only_queried_once(self):
        self.remote.script("squeue", stdout=SQUEUE_OUTPUT)
        updates = self.poller.poll(["12345", "12346"])

        self.assertEqual(["12345", "12346"], [u.scheduler_job_id for u in updates])
        self.assertEqual(1, len(self.remote.calls("squeue")))
        self.assertEqual([], self.remote.calls("sacct"))

    def test_falls_back_to_history(self):
        self.remote.script("squeue", stdout=SQUEUE_OUTPUT)
        self.remote.script("sacct", stdout=SACCT_OUTPUT)
        updates = self.poller.poll(["12348", "12345", "12347", "99999"])

        self.assertEqual(
            ["12348", "12345", "12347"], [u.scheduler_job_id for u in updates]
        )
        (sacct_call,) = self.remote.calls("sacct")
        self.assertEqual("12348,12347,99999", sacct_call[2])

    def test_invalid_job_id_from_squeue(self):
        self.remote.script(
            "squeue", stderr="slurm_load_jobs error: Invalid job id specified", exit_code=1
        )
        self.remote.script("sacct", stdout=SACCT_OUTPUT)

        updates = self.poller.poll(["12347"])
        self.assertEqual([JobStatus.COMPLETED], [u.status for u in updates])

    def test_query_failure_raised(self):
        self.remote.script("squeue", stderr="slurm_load_jobs error: Socket timed out", exit_code=1)
        with self.assertRaises(RemoteCommandError):
            self.poller.poll(["12345"])

    def test_invalid_ids_rejected_before_query(self):
        with self.assertRaises(ValidationError):
            self.poller.poll(["abc"])
        self.assertEqual([], self.remote.commands)


if __name__ == "__main__":
    unittest.main()
