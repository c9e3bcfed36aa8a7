import pathlib
import tempfile
import unittest

from namdrunner.sim_management.cache import JobCache
from namdrunner.sim_management.errors import InvalidJobStatusError, UnknownJobIdError
from namdrunner.sim_management.jobs import JobId, JobStatus, StatusSource
from tests.unit.test_jobs import make_record


class TestJobCache(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.db_path = pathlib.Path(tmp.name) / "jobs.db"
        self.cache = JobCache(self.db_path)

    def test_new_cache_is_empty(self):
        self.assertTrue(self.cache.is_empty())
        self.assertEqual([], self.cache.list_jobs())
        self.assertTrue(self.db_path.exists())

    def test_save_and_get(self):
        record = make_record()
        self.cache.save(record)

        self.assertTrue(self.cache.contains(record.job_id))
        self.assertEqual(record, self.cache.get(record.job_id))
        self.assertEqual(record, self.cache.get(str(record.job_id)))

    def test_records_persist_between_instances(self):
        record = make_record()
        self.cache.save(record)
        self.assertEqual(record, JobCache(self.db_path).get(record.job_id))

    def test_get_unknown_job(self):
        with self.assertRaises(UnknownJobIdError) as cm:
            self.cache.get("999")

        self.assertEqual(["999"], list(cm.exception.unknown_ids))

    def test_inconsistent_record_not_saved(self):
        with self.assertRaises(InvalidJobStatusError):
            self.cache.save(make_record(scheduler_job_id="1"))

        self.assertTrue(self.cache.is_empty())

    def test_update(self):
        record = make_record()
        self.cache.save(record)

        def submit(r):
            r.mark_submitted("1234", "/scratch/x")

        updated = self.cache.update(record.job_id, submit)
        self.assertEqual(JobStatus.PENDING, updated.status)
        self.assertEqual(updated, self.cache.get(record.job_id))

    def test_failed_update_leaves_record_unchanged(self):
        record = make_record()
        self.cache.save(record)

        def bad_change(r):
            r.ready = True
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.cache.update(record.job_id, bad_change)

        self.assertFalse(self.cache.get(record.job_id).ready)

    def test_update_rejects_inconsistent_result(self):
        record = make_record()
        self.cache.save(record)

        def illegal(r):
            r.status = JobStatus.RUNNING

        with self.assertRaises(InvalidJobStatusError):
            self.cache.update(record.job_id, illegal)

        self.assertEqual(JobStatus.CREATED, self.cache.get(record.job_id).status)

    def test_update_unknown_job(self):
        with self.assertRaises(UnknownJobIdError):
            self.cache.update("999", lambda r: None)

    def test_list_jobs_oldest_first(self):
        records = [
            make_record(job_id=JobId("c"), created_at="2024-01-01T00:00:03+00:00"),
            make_record(job_id=JobId("a"), created_at="2024-01-01T00:00:01+00:00"),
            make_record(job_id=JobId("b"), created_at="2024-01-01T00:00:02+00:00"),
        ]
        for record in records:
            self.cache.save(record)

        self.assertEqual(
            ["a", "b", "c"], [str(r.job_id) for r in self.cache.list_jobs()]
        )

    def test_list_jobs_filtered_by_status(self):
        created = make_record(job_id=JobId("a"))
        running = make_record(job_id=JobId("b"))
        running.mark_submitted("1", "/scratch/b")
        running.transition_to(JobStatus.RUNNING, StatusSource.SCHEDULER)
        self.cache.save(created)
        self.cache.save(running)

        self.assertEqual(
            [running], self.cache.list_jobs(statuses={JobStatus.RUNNING})
        )
        self.assertEqual([], self.cache.list_jobs(statuses=[]))
        self.assertEqual(
            2,
            len(self.cache.list_jobs(statuses=[JobStatus.CREATED, JobStatus.RUNNING])),
        )

    def test_delete(self):
        record = make_record()
        self.cache.save(record)
        self.cache.delete(record.job_id)

        self.assertFalse(self.cache.contains(record.job_id))
        with self.assertRaises(UnknownJobIdError):
            self.cache.delete(record.job_id)


if __name__ == "__main__":
    unittest.main()
