import tempfile
import threading
import unittest
from pathlib import Path

from fakes import FakeHttp, entity_document

from unlinked_wikibase.cache_sqlite import SQLiteCacheStore
from unlinked_wikibase.context import RenderContext
from unlinked_wikibase.gateway import create_gateway
from unlinked_wikibase.jobs import JobQueue, JobQueueError
from unlinked_wikibase.refresh import FETCH_JOB_NAME

BASE = "https://example.org/wiki"
Q1_URL = "https://example.org/wiki/Special:EntityData/Q1.json"


class JobQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = JobQueue(max_workers=2, max_attempts=3)

    def tearDown(self) -> None:
        self.queue.shutdown()

    def test_runs_registered_handler(self) -> None:
        seen = []
        self.queue.register("job", seen.append)
        self.queue.enqueue("job", {"n": 1})
        self.assertTrue(self.queue.wait_idle(5))
        self.assertEqual(seen, [{"n": 1}])

    def test_unknown_job_name_raises(self) -> None:
        with self.assertRaises(ValueError):
            self.queue.enqueue("nope", {})

    def test_pending_duplicates_are_dropped(self) -> None:
        gate = threading.Event()
        runs = []

        def handler(params):
            gate.wait(5)
            runs.append(params)

        queue = JobQueue(max_workers=1)
        try:
            queue.register("job", handler)
            queue.enqueue("job", {"n": 0})  # occupies the only worker
            queue.enqueue("job", {"n": 1})
            queue.enqueue("job", {"n": 1})
            self.assertEqual(queue.stats["duplicates"], 1)
            self.assertEqual(queue.queue_depth("job"), 2)
            gate.set()
            self.assertTrue(queue.wait_idle(5))
        finally:
            queue.shutdown()
        self.assertEqual(sorted(params["n"] for params in runs), [0, 1])
        self.assertEqual(queue.queue_depth("job"), 0)

    def test_failing_handler_is_retried(self) -> None:
        attempts = []

        def flaky(params):
            attempts.append(1)
            if len(attempts) < 2:
                raise RuntimeError("boom")

        self.queue.register("job", flaky)
        self.queue.enqueue("job", {})
        self.assertTrue(self.queue.wait_idle(5))
        self.assertEqual(len(attempts), 2)
        self.assertEqual(self.queue.stats["retries"], 1)
        self.assertEqual(self.queue.stats["failures"], 0)

    def test_gives_up_after_max_attempts(self) -> None:
        def broken(params):
            raise RuntimeError("boom")

        self.queue.register("job", broken)
        self.queue.enqueue("job", {})
        self.assertTrue(self.queue.wait_idle(5))
        self.assertEqual(self.queue.stats["runs"], 3)
        self.assertEqual(self.queue.stats["failures"], 1)

    def test_enqueue_after_shutdown(self) -> None:
        self.queue.register("job", lambda params: None)
        self.queue.shutdown()
        with self.assertRaises(JobQueueError):
            self.queue.enqueue("job", {})

    def test_invalid_settings(self) -> None:
        with self.assertRaises(ValueError):
            JobQueue(max_workers=0)
        with self.assertRaises(ValueError):
            JobQueue(max_attempts=0)


class BackgroundRefreshTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.cache = SQLiteCacheStore(Path(self.tmp.name) / "cache.sqlite")
        self.http = FakeHttp({Q1_URL: entity_document("Q1", "Earth")})
        self.queue = JobQueue(max_workers=2)
        self.gateway = create_gateway(cache=self.cache, http=self.http, job_queue=self.queue, base_url=BASE)

    def tearDown(self) -> None:
        self.queue.shutdown()
        self.cache.close()
        self.tmp.cleanup()

    def test_first_view_empty_second_view_populated(self) -> None:
        first = RenderContext()
        self.assertIsNone(self.gateway.get_entity(first, "Q1"))
        self.assertTrue(self.queue.wait_idle(5))
        second = RenderContext()
        entity = self.gateway.get_entity(second, "Q1")
        self.assertEqual(entity["labels"]["en"]["value"], "Earth")
        self.assertEqual(self.http.calls, [Q1_URL])
        self.assertEqual(self.gateway.status()["job_queue_size"], 0)

    def test_concurrent_cold_renders_fetch_once(self) -> None:
        self.http.delay = 0.1
        threads = [
            threading.Thread(target=self.gateway.get_entity, args=(RenderContext(), "Q1")) for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        self.assertTrue(self.queue.wait_idle(5))
        self.assertEqual(self.http.calls, [Q1_URL])
        self.assertEqual(self.queue.stats["enqueued"], 1)
        self.assertEqual(self.gateway.status(), {"job_queue_size": 0, "can_cache": True, "durability": "DISK"})

    def test_job_is_registered_under_fetch_name(self) -> None:
        self.queue.enqueue(FETCH_JOB_NAME, {"url": Q1_URL, "ttl": 60})
        self.assertTrue(self.queue.wait_idle(5))
        self.assertIsNotNone(self.cache.get(self.gateway.make_cache_key(Q1_URL)))


if __name__ == "__main__":
    unittest.main()
