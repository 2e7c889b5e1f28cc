from __future__ import annotations

import logging
import time
import traceback
import uuid

from .app_logging import log_with_fields
from .errors import NotFound, SideJobError, Suspension, Unregistered
from .job import Job
from .models import JobStatus
from .registry import WorkerEntry
from .runtime import Runtime
from .utils import utc_now_iso

RATE_KEY_TTL_SECONDS = 300


class Runner:
    """Pulls job ids off the configured queues and runs their workers.

    A job may be delivered several times; `execute` decides whether a delivery
    still needs to run from the job's status when it is pulled.
    """

    def __init__(self, runtime: Runtime, queues: list[str] | None = None) -> None:
        self.runtime = runtime
        self.store = runtime.store
        self.logger = runtime.logger
        self.queues = list(queues or runtime.config.queues)

    def run_forever(self) -> None:
        while True:
            if self.single_cycle() == 0:
                time.sleep(self.runtime.config.poll_interval_seconds)

    def run_once(self) -> int:
        return self.single_cycle()

    def single_cycle(self) -> int:
        self.runtime.job_queue.promote_due()
        executed = 0
        for queue in self.queues:
            job_id = self.runtime.job_queue.dequeue(queue)
            if job_id is None:
                continue
            self.execute(job_id)
            executed += 1
        return executed

    def execute(self, job_id: int) -> None:
        job = self.runtime.find(job_id)
        if job is None:
            log_with_fields(self.logger, logging.DEBUG, "job_missing", job_id=job_id)
            return

        record = job.record()
        entry = self.runtime.registry.get(record.queue, record.worker_class)
        if record.status is JobStatus.TERMINATING:
            self._terminate(job, entry)
            return
        if record.status is not JobStatus.QUEUED:
            return
        if entry is None:
            job.status = JobStatus.TERMINATED
            job.log({"type": "error", "error": str(Unregistered(record.queue, record.worker_class))})
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_unregistered",
                job_id=job.id,
                queue=record.queue,
                worker_class=record.worker_class,
            )
            self._run_parent(job)
            return

        self._run(job, entry, record.args)

    def _terminate(self, job: Job, entry: WorkerEntry | None) -> None:
        try:
            if entry is not None:
                shutdown = getattr(entry.factory(job), "shutdown", None)
                if callable(shutdown):
                    shutdown()
        except Exception as exc:
            self._record_exception(job, exc, "job_shutdown_failed")
        finally:
            job.status = JobStatus.TERMINATED
            log_with_fields(self.logger, logging.INFO, "job_terminated", job_id=job.id)
            self._run_parent(job)

    def _run(self, job: Job, entry: WorkerEntry, args: list) -> None:
        lock_key = self.store.job_key(job.id, "lock")
        token = uuid.uuid4().hex
        lock_expiration = getattr(entry.factory, "lock_expiration", None) or self.runtime.config.lock_expiration
        with self.store.pipeline() as pipe:
            pipe.get(lock_key)
            pipe.set(lock_key, token, ex=lock_expiration)
            previous = pipe.execute()[0]
        if previous is not None:
            # the holder sees its token replaced and re-runs the job
            log_with_fields(self.logger, logging.DEBUG, "job_locked", job_id=job.id)
            return

        try:
            rate_key = self.store.job_key(job.id, "rate", int(time.time()) // 60)
            with self.store.pipeline() as pipe:
                pipe.incr(rate_key)
                pipe.expire(rate_key, RATE_KEY_TTL_SECONDS)
                rate = int(pipe.execute()[0])

            max_runs = getattr(entry.factory, "max_runs_per_minute", None) or self.runtime.config.max_runs_per_minute
            if rate > max_runs:
                job.log({"type": "error", "error": "Job was terminated due to being called too rapidly"})
                log_with_fields(self.logger, logging.WARNING, "job_rate_limited", job_id=job.id, runs=rate)
                job.terminate()
            else:
                self.store.update_job(job.id, status=JobStatus.RUNNING, ran_at=utc_now_iso(), clear_error=True)
                log_with_fields(self.logger, logging.DEBUG, "job_running", job_id=job.id)
                entry.factory(job).perform(*args)
                if job.status is JobStatus.RUNNING:
                    job.status = JobStatus.COMPLETED
        except Suspension:
            if job.exists() and job.status is JobStatus.RUNNING:
                job.status = JobStatus.SUSPENDED
        except Exception as exc:
            if job.exists() and job.status is JobStatus.RUNNING:
                self.store.update_job(job.id, status=JobStatus.FAILED, error=str(exc))
            self._record_exception(job, exc)
        finally:
            with self.store.pipeline() as pipe:
                pipe.get(lock_key)
                pipe.delete(lock_key)
                current = pipe.execute()[0]
            if current is not None and current != token:
                try:
                    job.run()
                except SideJobError as exc:
                    log_with_fields(self.logger, logging.WARNING, "job_rerun_failed", job_id=job.id, error=str(exc))
            self._run_parent(job)

    def _run_parent(self, job: Job) -> None:
        parent = job.parent
        if parent is None:
            return
        try:
            parent.run()
        except (NotFound, Unregistered) as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "parent_wake_failed",
                job_id=job.id,
                parent=parent.id,
                error=str(exc),
            )

    def _record_exception(self, job: Job, exc: Exception, event: str = "job_failed") -> None:
        if job.exists():
            job.log(
                {
                    "type": "error",
                    "error": str(exc),
                    "backtrace": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                }
            )
        log_with_fields(self.logger, logging.ERROR, event, job_id=job.id, error=str(exc))
