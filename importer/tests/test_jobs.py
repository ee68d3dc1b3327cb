import datetime
import threading
import uuid

from django.test import SimpleTestCase, override_settings
from django.utils import timezone

from importer.exceptions import InvalidJobTransition, JobNotFound
from importer.jobs import JobRegistry, JobStatus


class JobRegistryTests(SimpleTestCase):
    def setUp(self):
        self.registry = JobRegistry(retention=datetime.timedelta(hours=1))
        self.job = self.registry.create(4)

    def test_create(self):
        self.assertEqual(self.job.status, JobStatus.PENDING)
        self.assertEqual(self.job.total, 4)
        self.assertEqual(self.job.progress, 0)
        self.assertIsNone(self.job.completed_at)
        self.assertEqual(len(self.registry), 1)

    def test_get_returns_a_snapshot(self):
        snapshot = self.registry.get(self.job.id)
        self.registry.add_created(self.job.id)

        self.assertEqual(snapshot.created, 0)
        self.assertEqual(self.registry.get(self.job.id).created, 1)

    def test_unknown_job(self):
        with self.assertRaises(JobNotFound):
            self.registry.get(uuid.uuid4())

    def test_lifecycle(self):
        job = self.registry.set_processing(self.job.id)
        self.assertEqual(job.status, JobStatus.PROCESSING)

        job = self.registry.complete(self.job.id, JobStatus.COMPLETED)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.progress, 100)
        self.assertIsNotNone(job.completed_at)

    def test_failed_jobs_keep_their_progress(self):
        self.registry.set_processing(self.job.id)
        self.registry.set_progress(self.job.id, 40)

        job = self.registry.complete(self.job.id, JobStatus.FAILED)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.progress, 40)

    def test_invalid_transitions(self):
        with self.assertRaises(InvalidJobTransition):
            self.registry.complete(self.job.id, JobStatus.COMPLETED)

        self.registry.set_processing(self.job.id)
        with self.assertRaises(InvalidJobTransition):
            self.registry.set_processing(self.job.id)
        with self.assertRaises(InvalidJobTransition):
            self.registry.complete(self.job.id, JobStatus.PENDING)

        self.registry.complete(self.job.id, JobStatus.FAILED)
        with self.assertRaises(InvalidJobTransition):
            self.registry.complete(self.job.id, JobStatus.COMPLETED)

    def test_progress_is_clamped_and_monotonic(self):
        self.assertEqual(self.registry.set_progress(self.job.id, 150).progress, 100)

        job = self.registry.create(1)
        self.registry.set_progress(job.id, 60)
        self.assertEqual(self.registry.set_progress(job.id, 30).progress, 60)
        self.assertEqual(self.registry.set_progress(job.id, -5).progress, 60)

    def test_mark_processed_scales_to_ceiling(self):
        for expected in (21, 42, 63, 85):
            job = self.registry.mark_processed(self.job.id, ceiling=85)
            self.assertEqual(job.progress, expected)
        self.assertEqual(job.processed, 4)

    def test_failures(self):
        self.registry.add_failure(self.job.id, 3, "Apple", {"cost_price": "bad"})

        job = self.registry.get(self.job.id)
        self.assertEqual(job.failed, 1)
        self.assertEqual(job.errors[0].row, 3)
        self.assertEqual(job.as_dict()["errors"][0]["fields"], {"cost_price": "bad"})

    def test_reclassify_as_failed(self):
        self.registry.add_created(self.job.id, 2)

        job = self.registry.reclassify_as_failed(
            self.job.id, "created", 2, "Apple", {"product": "duplicate"}
        )

        self.assertEqual(job.created, 1)
        self.assertEqual(job.failed, 1)
        with self.assertRaises(ValueError):
            self.registry.reclassify_as_failed(self.job.id, "deleted", 2, "Apple", {})

    def test_concurrent_updates_are_not_lost(self):
        def work():
            for _ in range(100):
                self.registry.add_updated(self.job.id)

        threads = [threading.Thread(target=work) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(self.registry.get(self.job.id).updated, 500)

    def test_cleanup_forgets_old_finished_jobs(self):
        self.registry.set_processing(self.job.id)
        self.registry.complete(self.job.id, JobStatus.COMPLETED)
        running = self.registry.create(1)

        self.registry.cleanup(now=timezone.now() + datetime.timedelta(hours=2))

        with self.assertRaises(JobNotFound):
            self.registry.get(self.job.id)
        self.assertEqual(self.registry.get(running.id).status, JobStatus.PENDING)

    def test_watchdog_fails_stalled_jobs(self):
        registry = JobRegistry(watchdog=datetime.timedelta(minutes=5))
        job = registry.create(1)
        registry.set_processing(job.id)

        with self.assertLogs("importer.jobs", level="WARNING"):
            registry.cleanup(now=timezone.now() + datetime.timedelta(minutes=10))

        job = registry.get(job.id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIsNotNone(job.completed_at)

    @override_settings(IMPORT_JOB_WATCHDOG_SECONDS=0)
    def test_watchdog_can_be_disabled(self):
        registry = JobRegistry()
        job = registry.create(1)
        registry.set_processing(job.id)

        registry.cleanup(now=timezone.now() + datetime.timedelta(days=30))

        self.assertEqual(registry.get(job.id).status, JobStatus.PROCESSING)
