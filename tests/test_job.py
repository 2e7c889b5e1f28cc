from __future__ import annotations

import logging
import time
import unittest

import fakeredis

from sidejob.errors import NotFound, SideJobError, Unregistered
from sidejob.models import JobStatus
from sidejob.runtime import Runtime
from sidejob.store import Store
from sidejob.testing import drain_queue
from sidejob.worker import Worker


class Idle(Worker):
    shutdowns: list[int] = []

    def perform(self, *args: object) -> None:
        return None

    def shutdown(self) -> None:
        Idle.shutdowns.append(self.id)


def make_runtime() -> Runtime:
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    runtime = Runtime(Store(client, "test"), logger=logging.getLogger("sidejob.test"))
    runtime.register("q", "Idle", Idle, inports={"in": {}, "opt": {"default": 1}}, outports={"out": {}})
    return runtime


class JobQueueingTest(unittest.TestCase):
    def setUp(self) -> None:
        self.runtime = make_runtime()

    def test_queue_creates_queued_job(self) -> None:
        job = self.runtime.queue("q", "Idle", [1, "a"], by="user:test")
        record = job.record()
        self.assertEqual(record.status, JobStatus.QUEUED)
        self.assertEqual(record.args, [1, "a"])
        self.assertEqual(record.created_by, "user:test")
        self.assertEqual([port.name for port in job.inports()], ["in", "opt"])
        self.assertEqual(job.input("opt").default, 1)
        self.assertEqual(self.runtime.job_queue.size("q"), 1)

    def test_job_ids_increase(self) -> None:
        first = self.runtime.queue("q", "Idle")
        second = self.runtime.queue("q", "Idle")
        self.assertGreater(second.id, first.id)

    def test_queue_unregistered_raises(self) -> None:
        with self.assertRaises(Unregistered):
            self.runtime.queue("q", "Missing")
        with self.assertRaises(Unregistered):
            self.runtime.queue("other", "Idle")

    def test_port_overrides_merge_with_worker_spec(self) -> None:
        job = self.runtime.queue("q", "Idle", inports={"opt": {"default": 2}, "extra": {}})
        self.assertEqual([port.name for port in job.inports()], ["extra", "in", "opt"])
        self.assertEqual(job.input("opt").default, 2)

    def test_child_names_are_unique(self) -> None:
        parent = self.runtime.queue("q", "Idle")
        child = parent.queue("q", "Idle", name="kid")
        self.assertEqual(parent.child("kid"), child)
        self.assertEqual(child.name, "kid")
        with self.assertRaises(SideJobError):
            parent.queue("q", "Idle", name="kid")

    def test_run_later(self) -> None:
        job = self.runtime.queue("q", "Idle", at=time.time() + 60)
        self.assertEqual(self.runtime.job_queue.size("q"), 0)
        self.assertIsNotNone(self.runtime.job_queue.scheduled_at(job.id, "q"))

        drain_queue(self.runtime)
        job.run(wait=30)
        self.assertEqual(job.status, JobStatus.QUEUED)
        self.assertEqual(self.runtime.job_queue.size("q"), 0)

    def test_run_after_unregister_terminates(self) -> None:
        job = self.runtime.queue("q", "Idle")
        self.runtime.unregister("q", "Idle")
        with self.assertRaises(Unregistered):
            job.run()
        self.assertEqual(job.status, JobStatus.TERMINATED)

    def test_find_missing_job(self) -> None:
        self.assertIsNone(self.runtime.find(12345))


class JobTerminationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.runtime = make_runtime()
        Idle.shutdowns.clear()

    def test_terminate_completed_job(self) -> None:
        job = self.runtime.queue("q", "Idle")
        drain_queue(self.runtime)
        self.assertEqual(job.status, JobStatus.COMPLETED)

        job.terminate()
        self.assertEqual(job.status, JobStatus.TERMINATING)
        drain_queue(self.runtime)
        self.assertEqual(job.status, JobStatus.TERMINATED)
        self.assertEqual(Idle.shutdowns, [job.id])

        job.terminate()
        self.assertEqual(job.status, JobStatus.TERMINATED)
        self.assertEqual(self.runtime.job_queue.size("q"), 0)

    def test_run_is_noop_once_terminated(self) -> None:
        job = self.runtime.queue("q", "Idle")
        job.terminate()
        drain_queue(self.runtime)
        job.run()
        self.assertEqual(job.status, JobStatus.TERMINATED)
        job.run(force=True)
        self.assertEqual(job.status, JobStatus.QUEUED)

    def test_terminate_recursive(self) -> None:
        root = self.runtime.queue("q", "Idle")
        child = root.queue("q", "Idle", name="child")
        grandchild = child.queue("q", "Idle", name="grandchild")
        drain_queue(self.runtime)

        root.terminate(recursive=True)
        drain_queue(self.runtime)
        for job in (root, child, grandchild):
            self.assertEqual(job.status, JobStatus.TERMINATED)
        self.assertTrue(root.is_terminated())

    def test_delete_requires_terminated_subtree(self) -> None:
        root = self.runtime.queue("q", "Idle")
        child = root.queue("q", "Idle", name="child")
        child.input("in").write("pending")
        drain_queue(self.runtime)

        root.terminate()
        drain_queue(self.runtime)
        self.assertFalse(root.is_terminated())
        self.assertFalse(root.delete())
        self.assertTrue(root.exists())

        child.terminate()
        drain_queue(self.runtime)
        self.assertTrue(root.delete())

        store = self.runtime.store
        self.assertEqual(store.redis.keys(f"{store.job_key(root.id)}*"), [])
        self.assertEqual(store.redis.keys(f"{store.job_key(child.id)}*"), [])
        self.assertEqual(store.list_job_ids(), [])
        with self.assertRaises(NotFound):
            root.run()

    def test_delete_removes_subscriptions_and_parent_index(self) -> None:
        parent = self.runtime.queue("q", "Idle")
        child = parent.queue("q", "Idle", name="kid", inports={"in": {"channels": ["/a"]}})
        child.terminate()
        drain_queue(self.runtime)
        self.assertTrue(child.delete())
        self.assertIsNone(parent.child("kid"))
        self.assertEqual(self.runtime.store.redis.smembers(self.runtime.store.channel_key("/a")), set())


class JobTreeTest(unittest.TestCase):
    def setUp(self) -> None:
        self.runtime = make_runtime()

    def test_ancestors(self) -> None:
        root = self.runtime.queue("q", "Idle")
        child = root.queue("q", "Idle", name="child")
        grandchild = child.queue("q", "Idle", name="grandchild")
        self.assertEqual(grandchild.ancestors(), [child, root])
        self.assertEqual(root.ancestors(), [])
        self.assertEqual(root.children(), {"child": child})

    def test_adopt_and_disown(self) -> None:
        parent = self.runtime.queue("q", "Idle")
        orphan = self.runtime.queue("q", "Idle")

        parent.adopt(orphan, "kid")
        self.assertEqual(parent.child("kid"), orphan)
        self.assertEqual(orphan.parent, parent)
        self.assertEqual(orphan.name, "kid")

        other = self.runtime.queue("q", "Idle")
        with self.assertRaises(SideJobError):
            other.adopt(orphan, "again")
        with self.assertRaises(SideJobError):
            orphan.adopt(parent, "loop")
        with self.assertRaises(SideJobError):
            parent.adopt(parent)

        parent.disown("kid")
        self.assertIsNone(parent.child("kid"))
        self.assertIsNone(orphan.parent)
        other.adopt(orphan)
        self.assertEqual(other.child(str(orphan.id)), orphan)

        other.disown(orphan)
        self.assertEqual(other.children(), {})

    def test_disown_unknown_child(self) -> None:
        parent = self.runtime.queue("q", "Idle")
        with self.assertRaises(SideJobError):
            parent.disown("nobody")


class JobStateTest(unittest.TestCase):
    def setUp(self) -> None:
        self.runtime = make_runtime()
        self.job = self.runtime.queue("q", "Idle")

    def test_state_round_trip(self) -> None:
        self.job.set({"count": 1}, name="x", nested={"a": [1, 2]})
        self.assertEqual(self.job.get("count"), 1)
        self.assertEqual(self.job.get("nested"), {"a": [1, 2]})
        self.assertEqual(self.job.get("missing", "default"), "default")
        self.job.unset("count", "name")
        self.assertEqual(self.job.state(), {"nested": {"a": [1, 2]}})

    def test_log_and_clear(self) -> None:
        self.job.log({"type": "note", "text": "hi"})
        logs = self.job.logs(clear=True)
        self.assertEqual(logs[-1]["text"], "hi")
        self.assertEqual(self.job.logs(), [])

    def test_set_inports_replaces_declarations(self) -> None:
        self.job.input("in").write("keep")
        self.job.input("opt").write("drop")
        self.job.set_inports({"in": {}, "fresh": {"default": "d"}})
        self.assertEqual([port.name for port in self.job.inports()], ["fresh", "in"])
        self.assertEqual(self.job.input("in").read(), "keep")
        self.assertEqual(self.job.input("fresh").read(), "d")
        with self.assertRaises(NotFound):
            self.job.input("opt")

    def test_set_outports_with_wildcard(self) -> None:
        self.job.set_outports({"*": {"default": 0}})
        self.assertEqual(self.job.outports(), [])
        self.assertEqual(self.job.output("made").default, 0)
        self.assertEqual([port.name for port in self.job.outports()], ["made"])


if __name__ == "__main__":
    unittest.main()
