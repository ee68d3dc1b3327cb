"""
In-process registry of product import jobs.

Jobs are only held in memory: they exist so a client can poll the progress of
an import running on a background thread of the same process. A restart
discards every job.
"""

import copy
import datetime
import threading
import uuid
from dataclasses import dataclass, field
from logging import getLogger
from typing import Callable, Optional

from django.conf import settings
from django.db import models
from django.utils import timezone

from .exceptions import InvalidJobTransition, JobNotFound

logger = getLogger(__name__)


class JobStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class JobError:
    #: 1-indexed spreadsheet row, counting the header as row 1
    row: int
    product: str
    fields: dict[str, str]


@dataclass
class Job:
    total: int
    id: uuid.UUID = field(default_factory=uuid.uuid4)  # noqa: A003
    status: str = JobStatus.PENDING
    progress: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    errors: list[JobError] = field(default_factory=list)
    started_at: datetime.datetime = field(default_factory=timezone.now)
    completed_at: Optional[datetime.datetime] = None
    last_updated_at: datetime.datetime = field(default_factory=timezone.now)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def as_dict(self):
        return {
            "id": str(self.id),
            "status": str(self.status),
            "progress": self.progress,
            "total": self.total,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
            "errors": [
                {"row": error.row, "product": error.product, "fields": error.fields}
                for error in self.errors
            ],
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }


class JobRegistry:
    """
    Thread-safe store of import jobs.

    Every mutation happens under one lock so a background import and any
    number of status requests can share a job. ``get`` returns a copy, which
    callers may read at leisure without seeing later updates.
    """

    def __init__(self, retention=None, watchdog=None):
        self._jobs: dict[uuid.UUID, Job] = {}
        self._lock = threading.Lock()
        self._retention = retention
        self._watchdog = watchdog

    @property
    def retention(self):
        if self._retention is not None:
            return self._retention
        return datetime.timedelta(seconds=settings.IMPORT_JOB_RETENTION_SECONDS)

    @property
    def watchdog(self):
        if self._watchdog is not None:
            return self._watchdog
        seconds = settings.IMPORT_JOB_WATCHDOG_SECONDS
        return datetime.timedelta(seconds=seconds) if seconds else None

    def create(self, total: int) -> Job:
        self.cleanup()

        job = Job(total=total)
        with self._lock:
            self._jobs[job.id] = job
            return copy.deepcopy(job)

    def get(self, job_id) -> Job:
        with self._lock:
            return copy.deepcopy(self._get(job_id))

    def _get(self, job_id) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFound(f"Import job {job_id} does not exist") from None

    def update(self, job_id, mutator: Callable[[Job], None]) -> Job:
        """
        Apply ``mutator`` to the live job under the registry lock and return a
        copy of the result.
        """
        with self._lock:
            job = self._get(job_id)
            mutator(job)
            job.last_updated_at = timezone.now()
            return copy.deepcopy(job)

    def set_processing(self, job_id) -> Job:
        def mutate(job):
            if job.status != JobStatus.PENDING:
                raise InvalidJobTransition(
                    f"Job {job.id} cannot start processing from {job.status}"
                )
            job.status = JobStatus.PROCESSING

        return self.update(job_id, mutate)

    def complete(self, job_id, status) -> Job:
        if status not in TERMINAL_STATUSES:
            raise InvalidJobTransition(f"{status} is not a terminal job status")

        def mutate(job):
            if job.status != JobStatus.PROCESSING:
                raise InvalidJobTransition(
                    f"Job {job.id} cannot move from {job.status} to {status}"
                )
            job.status = status
            job.completed_at = timezone.now()
            if status == JobStatus.COMPLETED:
                job.progress = 100

        return self.update(job_id, mutate)

    def set_progress(self, job_id, progress: int) -> Job:
        progress = max(0, min(100, int(progress)))

        def mutate(job):
            # Progress never moves backwards, whatever order workers report in
            job.progress = max(job.progress, progress)

        return self.update(job_id, mutate)

    def mark_processed(self, job_id, ceiling: int = 85) -> Job:
        """
        Count one more processed row and scale progress to ``ceiling``.
        """

        def mutate(job):
            job.processed += 1
            if job.total:
                job.progress = max(job.progress, job.processed * ceiling // job.total)

        return self.update(job_id, mutate)

    def add_created(self, job_id, count: int = 1) -> Job:
        def mutate(job):
            job.created += count

        return self.update(job_id, mutate)

    def add_updated(self, job_id, count: int = 1) -> Job:
        def mutate(job):
            job.updated += count

        return self.update(job_id, mutate)

    def add_deleted(self, job_id, count: int = 1) -> Job:
        def mutate(job):
            job.deleted += count

        return self.update(job_id, mutate)

    def add_failure(self, job_id, row: int, product: str, fields: dict) -> Job:
        def mutate(job):
            job.failed += 1
            job.errors.append(JobError(row=row, product=product, fields=dict(fields)))

        return self.update(job_id, mutate)

    def reclassify_as_failed(
        self, job_id, counter: str, row: int, product: str, fields: dict
    ) -> Job:
        """
        Move a row already counted under ``counter`` ("created" or "updated")
        to the failures, for products which could not be written after all.
        """
        if counter not in ("created", "updated"):
            raise ValueError(f"Unknown job counter {counter!r}")

        def mutate(job):
            setattr(job, counter, max(0, getattr(job, counter) - 1))
            job.failed += 1
            job.errors.append(JobError(row=row, product=product, fields=dict(fields)))

        return self.update(job_id, mutate)

    def cleanup(self, now: Optional[datetime.datetime] = None) -> None:
        """
        Forget finished jobs past the retention period and fail jobs which
        have stopped reporting for longer than the watchdog interval.
        """
        now = now or timezone.now()
        retention = self.retention
        watchdog = self.watchdog

        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.is_terminal:
                    if job.completed_at and now - job.completed_at > retention:
                        del self._jobs[job_id]
                elif (
                    watchdog is not None
                    and job.status == JobStatus.PROCESSING
                    and now - job.last_updated_at > watchdog
                ):
                    logger.warning(
                        "Import job %s has not reported progress since %s; "
                        "marking it as failed",
                        job_id,
                        job.last_updated_at,
                    )
                    job.status = JobStatus.FAILED
                    job.completed_at = now

    def __len__(self):
        with self._lock:
            return len(self._jobs)


registry = JobRegistry()
