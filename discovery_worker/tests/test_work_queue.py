import threading
import unittest

from discovery_worker.models import IntakeEntry
from discovery_worker.work_queue import FileWorkQueue, InMemoryWorkQueue


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _entry(job_id="job-1"):
    return IntakeEntry(job_id=job_id, source_location=f"sources/{job_id}.zip")


class TestInMemoryWorkQueue(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.queue = InMemoryWorkQueue(visibility_timeout=30.0, clock=self.clock)

    def test_claim_then_ack_removes_message(self):
        self.queue.enqueue(_entry())
        claim = self.queue.claim("worker-a")

        self.assertEqual(claim.entry.job_id, "job-1")
        self.assertEqual(claim.delivery_count, 1)
        self.assertIsNone(self.queue.claim("worker-b"))
        self.assertTrue(self.queue.ack(claim))
        self.assertEqual(self.queue.pending_count(), 0)

    def test_expired_claim_is_redelivered_and_stale_ack_ignored(self):
        self.queue.enqueue(_entry())
        first = self.queue.claim("worker-a")
        self.clock.now += 31.0

        second = self.queue.claim("worker-b")

        self.assertEqual(second.message_id, first.message_id)
        self.assertEqual(second.delivery_count, 2)
        self.assertFalse(self.queue.ack(first))
        self.assertTrue(self.queue.ack(second))

    def test_release_makes_message_claimable_again(self):
        self.queue.enqueue(_entry())
        claim = self.queue.claim("worker-a")
        self.assertTrue(self.queue.release(claim))

        again = self.queue.claim("worker-b")
        self.assertEqual(again.delivery_count, 2)

    def test_same_job_not_claimed_twice_concurrently(self):
        self.queue.enqueue(_entry("job-1"))
        self.queue.enqueue(_entry("job-1"))
        self.queue.enqueue(_entry("job-2"))

        first = self.queue.claim("worker-a")
        second = self.queue.claim("worker-b")

        self.assertEqual(first.entry.job_id, "job-1")
        self.assertEqual(second.entry.job_id, "job-2")
        self.assertIsNone(self.queue.claim("worker-c"))

    def test_extended_claim_outlives_the_original_window(self):
        self.queue.enqueue(_entry())
        claim = self.queue.claim("worker-a")
        self.clock.now += 20.0

        extended = self.queue.extend(claim)
        self.clock.now += 20.0

        self.assertEqual(extended.expires_at, 1050.0)
        self.assertIsNone(self.queue.claim("worker-b"))
        self.assertTrue(self.queue.ack(extended))

    def test_lapsed_claim_cannot_be_extended(self):
        self.queue.enqueue(_entry())
        first = self.queue.claim("worker-a")
        self.clock.now += 31.0
        second = self.queue.claim("worker-b")

        self.assertIsNone(self.queue.extend(first))
        self.assertIsNotNone(self.queue.extend(second))


def test_file_queue_survives_restart(tmp_path):
    path = tmp_path / "queue" / "jobs.json"
    FileWorkQueue(path).enqueue(_entry("job-9"))

    restarted = FileWorkQueue(path)
    claim = restarted.claim("worker-a")

    assert claim.entry.job_id == "job-9"
    assert FileWorkQueue(path).claim("worker-b") is None
    assert restarted.ack(claim)
    assert FileWorkQueue(path).pending_count() == 0


def test_file_queues_sharing_a_path_hand_out_one_claim(tmp_path):
    path = tmp_path / "queue" / "jobs.json"
    FileWorkQueue(path).enqueue(_entry("job-1"))
    workers = [FileWorkQueue(path) for _ in range(4)]
    claims = []

    def _claim(queue, worker_id):
        claims.append(queue.claim(worker_id))

    threads = [
        threading.Thread(target=_claim, args=(queue, f"worker-{index}")) for index, queue in enumerate(workers)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len([claim for claim in claims if claim is not None]) == 1
    assert (tmp_path / "queue" / "jobs.json.lock").exists()
