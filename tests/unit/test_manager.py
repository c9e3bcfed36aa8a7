import time
import unittest
from threading import Event
from unittest.mock import Mock

from namdrunner.sim_management.chains import CreationChain, SubmissionChain
from namdrunner.sim_management.errors import ChainCancelledError, ValidationError
from namdrunner.sim_management.jobs import JobStatus
from namdrunner.sim_management.manager import ChainHandle, JobManager
from tests.unit.fakes import FakeRemoteTestCase, make_job_spec

TIMEOUT = 5


def wait_for(condition, timeout=TIMEOUT):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        time.sleep(0.01)


class TestChainHandle(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = JobManager(Mock())
        self.addCleanup(self.manager.shutdown, TIMEOUT)

    def test_result(self):
        handle = self.manager.start(lambda x, cancel: x + 1, 41)
        self.assertEqual(42, handle.result(timeout=TIMEOUT))
        self.assertTrue(handle.done)

    def test_error_raised_from_result(self):
        def fail(cancel):
            raise ValidationError("Bad input")

        handle = self.manager.start(fail)
        with self.assertRaises(ValidationError):
            handle.result(timeout=TIMEOUT)

    def test_result_timeout(self):
        release = Event()
        handle = self.manager.start(lambda cancel: release.wait(TIMEOUT))
        with self.assertRaises(TimeoutError):
            handle.result(timeout=0.01)

        release.set()
        self.assertTrue(handle.result(timeout=TIMEOUT))

    def test_cancel(self):
        started = Event()

        def work(cancel):
            started.set()
            cancel.wait(TIMEOUT)
            cancel.raise_if_cancelled("finishing")

        handle = self.manager.start(work)
        started.wait(TIMEOUT)
        handle.cancel()

        with self.assertRaises(ChainCancelledError):
            handle.result(timeout=TIMEOUT)
        self.assertTrue(handle.cancellation_token.cancelled)

    def test_handle_named_after_work(self):
        def do_work(cancel):
            return None

        handle = self.manager.start(do_work)
        handle.join(TIMEOUT)
        self.assertEqual("do_work", handle.name)

    def test_shutdown_cancels_running_chains(self):
        handle = self.manager.start(lambda cancel: cancel.wait(TIMEOUT))
        self.manager.shutdown(timeout=TIMEOUT)

        self.assertTrue(handle.done)
        self.assertTrue(handle.result())


class TestJobManager(FakeRemoteTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager = JobManager(self.context, polling_interval=0.01)
        self.addCleanup(self.manager.shutdown, TIMEOUT)

    def test_run_chain(self):
        spec = make_job_spec(self.make_input_files())
        handle = self.manager.run_chain(CreationChain, spec)
        self.assertIsInstance(handle, ChainHandle)
        self.assertEqual("creation chain", handle.name)

        record = handle.result(timeout=TIMEOUT)
        self.assertTrue(self.cache.get(record.job_id).ready)

    def test_run_chain_reports_progress(self):
        events = []
        spec = make_job_spec(self.make_input_files())
        self.manager.run_chain(CreationChain, spec, progress=events.append).result(TIMEOUT)
        self.assertEqual("finish", events[-1].step)

    def test_monitor_syncs_active_jobs(self):
        spec = make_job_spec(self.make_input_files())
        record = self.manager.run_chain(CreationChain, spec).result(TIMEOUT)
        record = self.manager.run_chain(SubmissionChain, record.job_id).result(TIMEOUT)
        self.remote.script(
            "squeue",
            stdout="1001|equilibration|RUNNING|0:10|4:00:00|2024-01-01T12:00:00|/scratch\n",
        )

        self.manager.start_monitor()
        self.assertTrue(self.manager.monitoring)
        wait_for(lambda: self.cache.get(record.job_id).status == JobStatus.RUNNING)

        self.manager.shutdown(timeout=TIMEOUT)
        self.assertFalse(self.manager.monitoring)

    def test_monitor_survives_sync_failures(self):
        spec = make_job_spec(self.make_input_files())
        record = self.manager.run_chain(CreationChain, spec).result(TIMEOUT)
        self.manager.run_chain(SubmissionChain, record.job_id).result(TIMEOUT)
        self.remote.script("squeue", stderr="Socket timed out", exit_code=1)

        self.manager.start_monitor()
        wait_for(lambda: len(self.remote.calls("squeue")) >= 2)
        self.assertTrue(self.manager.monitoring)

    def test_start_monitor_twice(self):
        self.manager.start_monitor()
        thread = self.manager._thread
        self.manager.start_monitor()
        self.assertIs(thread, self.manager._thread)

    def test_reconcile(self):
        report = self.manager.reconcile()
        self.assertTrue(report.ok)


if __name__ == "__main__":
    unittest.main()
