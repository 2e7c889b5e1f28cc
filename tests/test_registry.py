import unittest

import fakeredis

from sidejob.models import NONE
from sidejob.registry import DuplicateWorkerError, WorkerRegistry
from sidejob.store import Store
from sidejob.worker import Worker


class Noop(Worker):
    def perform(self, *args: object) -> None:
        return None


class RegistryTest(unittest.TestCase):
    def test_register_logs_structured_event(self) -> None:
        registry = WorkerRegistry()
        with self.assertLogs("sidejob", level="DEBUG") as logs:
            registry.register("q", "Noop", Noop)
        record = logs.records[0]
        self.assertEqual(record.getMessage(), "worker_registered")
        self.assertEqual(record.extra_fields, {"queue": "q", "worker_class": "Noop"})

    def test_register_and_publish(self) -> None:
        registry = WorkerRegistry()
        entry = registry.register("q", "Noop", Noop, inports={"in": {"default": 1}}, outports={"out": {}})
        registry.register("other", "Noop", Noop)
        self.assertIs(registry.get("q", "Noop"), entry)
        self.assertEqual(entry.inports["in"].default, 1)
        self.assertIs(entry.outports["out"].default, NONE)
        self.assertEqual(registry.queues(), ["other", "q"])

        store = Store(fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True), "test")
        registry.publish(store)
        self.assertEqual(
            store.get_worker_spec("q", "Noop"),
            {"description": "", "inports": {"in": {"default": 1}}, "outports": {"out": {}}},
        )

    def test_duplicate_rejected(self) -> None:
        registry = WorkerRegistry()
        registry.register("q", "Noop", Noop)
        with self.assertRaises(DuplicateWorkerError):
            registry.register("q", "Noop", Noop)
        registry.unregister("q", "Noop")
        self.assertIsNone(registry.get("q", "Noop"))

    def test_invalid_port_name(self) -> None:
        with self.assertRaises(ValueError):
            WorkerRegistry().register("q", "Noop", Noop, inports={"bad name": {}})


if __name__ == "__main__":
    unittest.main()
