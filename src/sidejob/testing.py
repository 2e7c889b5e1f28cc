from __future__ import annotations

from .errors import SideJobError, WorkerFault
from .models import JobStatus
from .runner import Runner
from .runtime import Runtime


def drain_queue(runtime: Runtime, raise_on_errors: bool = True, max_runs: int = 1000) -> int:
    """Run queued jobs inline until every queue is empty.

    Jobs scheduled in the future stay scheduled. With `raise_on_errors`, a job
    that ends up failed raises `WorkerFault` carrying its stored error.
    Returns the number of deliveries executed.
    """
    queues = sorted(set(runtime.registry.queues()) | set(runtime.config.queues))
    runner = Runner(runtime, queues)
    executed = 0
    while True:
        runtime.job_queue.promote_due()
        job_id = None
        for queue in queues:
            job_id = runtime.job_queue.dequeue(queue)
            if job_id is not None:
                break
        if job_id is None:
            return executed

        executed += 1
        if executed > max_runs:
            raise SideJobError(f"drain_queue gave up after {max_runs} runs")
        before = runtime.store.get_status(job_id)
        runner.execute(job_id)

        if raise_on_errors and before is not JobStatus.FAILED:
            job = runtime.find(job_id)
            if job is not None and job.status is JobStatus.FAILED:
                errors = [entry for entry in job.logs() if entry.get("type") == "error"]
                if errors:
                    raise WorkerFault(errors[-1]["error"])
                raise WorkerFault(f"job {job_id} failed but has no error log")
