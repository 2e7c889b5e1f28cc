from __future__ import annotations

import logging
import unittest

import fakeredis

from sidejob.runtime import Runtime
from sidejob.store import Store
from sidejob.testing import drain_queue
from sidejob.worker import Worker


class Idle(Worker):
    def perform(self, *args: object) -> None:
        return None


def make_runtime() -> Runtime:
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    runtime = Runtime(Store(client, "test"), logger=logging.getLogger("sidejob.test"))
    runtime.register("q", "Idle", Idle, inports={"in": {}}, outports={"out": {}})
    return runtime


class ChannelPublishTest(unittest.TestCase):
    def setUp(self) -> None:
        self.runtime = make_runtime()
        self.store = self.runtime.store

    def subscriber(self, *channels: str):
        return self.runtime.queue("q", "Idle", inports={"in": {"channels": list(channels)}})

    def test_publish_reaches_every_ancestor_level(self) -> None:
        exact = self.subscriber("/a/b/c")
        middle = self.subscriber("/a/b")
        root = self.subscriber("/a")
        unrelated = self.subscriber("/x")
        sibling = self.subscriber("/a/bc")

        writes = self.runtime.publish("/a/b/c", "m")

        self.assertEqual(writes, 3)
        for job in (exact, middle, root):
            self.assertEqual(job.input("in").drain(), ["m"])
        self.assertEqual(unrelated.input("in").size(), 0)
        self.assertEqual(sibling.input("in").size(), 0)

    def test_publish_carries_context(self) -> None:
        job = self.subscriber("/a")
        self.runtime.publish("/a/b", {"temp": 20}, context={"by": "sensor:1"})
        message = job.input("in").read_message()
        self.assertEqual(message.value, {"temp": 20})
        self.assertEqual(message.context, {"by": "sensor:1"})

    def test_publish_wakes_subscriber(self) -> None:
        job = self.subscriber("/a")
        drain_queue(self.runtime)
        self.runtime.publish("/a", 1)
        self.assertEqual(job.status.value, "queued")

    def test_deleted_job_subscription_is_pruned(self) -> None:
        self.store.redis.sadd(self.store.channel_key("/a"), 999)
        self.assertEqual(self.runtime.publish("/a/b", "m"), 0)
        self.assertFalse(self.store.redis.sismember(self.store.channel_key("/a"), 999))

    def test_stale_subscription_is_pruned(self) -> None:
        job = self.subscriber("/a")
        self.store.redis.sadd(self.store.channel_key("/z"), job.id)
        self.assertEqual(self.runtime.publish("/z", "m"), 0)
        self.assertFalse(self.store.redis.sismember(self.store.channel_key("/z"), job.id))
        self.assertTrue(self.store.redis.sismember(self.store.channel_key("/a"), job.id))

    def test_changing_channels_updates_index(self) -> None:
        job = self.subscriber("/a", "/b")
        port = job.input("in")
        port.channels = ["/b", "/c"]
        self.assertEqual(port.channels, ["/b", "/c"])
        self.assertFalse(self.store.redis.sismember(self.store.channel_key("/a"), job.id))
        self.assertTrue(self.store.redis.sismember(self.store.channel_key("/c"), job.id))

        self.assertEqual(self.runtime.publish("/a", "m"), 0)
        self.assertEqual(self.runtime.publish("/c", "m"), 1)

    def test_output_port_republishes(self) -> None:
        producer = self.runtime.queue("q", "Idle", outports={"out": {"channels": ["/news"]}})
        listener = self.subscriber("/news")

        producer.output("out").write("headline")

        self.assertEqual(listener.input("in").drain(), ["headline"])
        self.assertEqual(producer.output("out").drain(), ["headline"])

    def test_redis_publish_is_emitted(self) -> None:
        pubsub = self.store.redis.pubsub()
        pubsub.subscribe(self.store.channel_key("/a/b"))
        self.runtime.publish("/a/b", "m")

        message = None
        for _ in range(10):
            message = pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
            if message is not None:
                break
        pubsub.close()
        self.assertIsNotNone(message)
        self.assertEqual(message["data"], '{"data": "m"}')


if __name__ == "__main__":
    unittest.main()
