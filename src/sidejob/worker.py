from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterator

from .errors import Suspension
from .job import Job
from .models import NONE
from .port import Port

if TYPE_CHECKING:
    from .runtime import Runtime


class Worker:
    """Base class for job bodies.

    Subclasses implement `perform(*args)`, which is called with the job's
    arguments each time the job runs. A worker may also define `shutdown()`,
    which is called once when the job is terminated. `lock_expiration` and
    `max_runs_per_minute` override the runner configuration for this class.
    """

    lock_expiration: int | None = None
    max_runs_per_minute: int | None = None

    def __init__(self, job: Job) -> None:
        self.job = Job(job.runtime, job.id, {"by": f"job:{job.id}"})

    @property
    def id(self) -> int:
        return self.job.id

    @property
    def by(self) -> str:
        return f"job:{self.id}"

    @property
    def runtime(self) -> Runtime:
        return self.job.runtime

    def perform(self, *args: Any) -> None:
        raise NotImplementedError

    def suspend(self) -> None:
        raise Suspension()

    def input(self, name: str) -> Port:
        return self.job.input(name)

    def output(self, name: str) -> Port:
        return self.job.output(name)

    def get(self, key: str, default: Any = None) -> Any:
        return self.job.get(key, default)

    def set(self, values: dict[str, Any] | None = None, **kwargs: Any) -> None:
        self.job.set(values, **kwargs)

    def queue(self, queue: str, worker_class: str, args: list[Any] | None = None, **kwargs: Any) -> Job:
        return self.runtime.queue(queue, worker_class, args, parent=self.job, by=self.by, **kwargs)

    def find(self, job_id: int) -> Job | None:
        return self.runtime.find(job_id, context={"by": self.by})

    def get_config(self, field: str) -> Any:
        """Last value received on input `field`, remembered in state across runs."""
        values = self.input(field).drain()
        if not values:
            return self.get(field)
        self.set({field: values[-1]})
        return values[-1]

    def for_inputs(self, *names: str) -> Iterator[tuple[Any, ...]]:
        """Yield one tuple per round while every named input can be read.

        Stops once no input has queued data left, so defaults alone never
        produce a round.
        """
        ports = [self.input(name) for name in names]
        while ports and any(port.size() > 0 for port in ports) and all(port.has_data() for port in ports):
            values = tuple(port.read() for port in ports)
            if any(value is NONE for value in values):
                return
            yield values
