import hashlib
import io
import json
import unittest
import zipfile

from discovery_worker.artifact_store import InMemoryArtifactStore, artifact_key
from discovery_worker.errors import ExternalServiceError, StorageError, UnsupportedFormat
from discovery_worker.models import JobStatus, NodeStatus, OutputKind
from discovery_worker.orchestrator import NodeRef, PipelineOrchestrator
from discovery_worker.retry_policy import RetryPolicy
from discovery_worker.scheduler import ThreadPoolScheduler
from discovery_worker.tika_client import ExternalResult

OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


def _zip_bytes(entries: list) -> bytes:
    payload = io.BytesIO()
    with zipfile.ZipFile(payload, mode="w") as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return payload.getvalue()


def _md5(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


def _retry_policy(attempts=2):
    return RetryPolicy(attempts=attempts, base_seconds=0.0, sleep=lambda seconds: None)


class FlakyStore(InMemoryArtifactStore):
    def __init__(self, failing_node_id):
        super().__init__()
        self.failing_node_id = failing_node_id
        self.failing = True

    def put(self, key, data):
        if self.failing and f"/{self.failing_node_id}/" in key:
            raise StorageError(f"Simulated outage writing {key}")
        super().put(key, data)


class FlakyReadStore(InMemoryArtifactStore):
    def __init__(self):
        super().__init__()
        self.failed_reads = 0
        self.fail_next_read = False

    def get(self, key):
        if self.fail_next_read:
            self.fail_next_read = False
            self.failed_reads += 1
            raise StorageError(f"Simulated read timeout for {key}")
        return super().get(key)


class FakeTika:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    def detect(self, content, filename=None):
        return "application/octet-stream"

    def _attempt(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result

    def request(self, content, type_hint=None, *, want_text=True, want_metadata=True, retry_policy=None):
        if retry_policy is None:
            return self._attempt()
        return retry_policy.call(self._attempt)


class TestPipelineOrchestrator(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryArtifactStore()
        self.orchestrator = PipelineOrchestrator(self.store, retry_policy=_retry_policy())

    def test_container_with_k_children_yields_k_plus_one_nodes(self):
        content = _zip_bytes([("a.txt", "alpha body"), ("b.txt", "beta body"), ("c.txt", "gamma body")])
        outcome = self.orchestrator.run("job-k", content, name="evidence.zip")

        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(outcome.manifest.node_count, 4)
        self.assertTrue(all(node.status == NodeStatus.DONE for node in outcome.manifest.nodes))
        child_id = _md5(b"beta body")
        self.assertEqual(self.store.get(artifact_key("job-k", child_id, OutputKind.TEXT)), b"beta body")
        # Three text children write text and metadata; the zip root writes metadata only.
        self.assertEqual(len(outcome.written_keys), 7)

    def test_node_limit_breach_fails_job_without_writes(self):
        orchestrator = PipelineOrchestrator(self.store, retry_policy=_retry_policy(), max_nodes=2)
        content = _zip_bytes([("a.txt", "a"), ("b.txt", "b"), ("c.txt", "c")])
        outcome = orchestrator.run("job-n", content, name="evidence.zip")

        self.assertEqual(outcome.status, JobStatus.FAILED)
        self.assertEqual(self.store.writes, [])
        self.assertEqual(outcome.manifest.error["kind"], "ResourceLimitExceeded")
        self.assertEqual(outcome.failed_stage, JobStatus.EXPANDING.value)
        self.assertTrue(all(node.status == NodeStatus.FAILED for node in outcome.manifest.nodes))

    def test_children_at_node_limit_complete(self):
        orchestrator = PipelineOrchestrator(self.store, retry_policy=_retry_policy(), max_nodes=3)
        content = _zip_bytes([("a.txt", "a"), ("b.txt", "b"), ("c.txt", "c")])
        outcome = orchestrator.run("job-k", content, name="evidence.zip")

        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(outcome.manifest.node_count, 4)

    def test_rerun_of_completed_job_writes_nothing(self):
        content = _zip_bytes([("a.txt", "alpha body"), ("b.txt", "beta body")])
        first = self.orchestrator.run("job-r", content, name="evidence.zip")
        writes_after_first = list(self.store.writes)

        second = self.orchestrator.run("job-r", content, name="evidence.zip", attempt=2)

        self.assertEqual(first.status, JobStatus.COMPLETED)
        self.assertEqual(second.status, JobStatus.COMPLETED)
        self.assertEqual(second.written_keys, [])
        self.assertEqual(self.store.writes, writes_after_first)
        self.assertEqual(
            {node.node_id: node.artifacts for node in first.manifest.nodes},
            {node.node_id: node.artifacts for node in second.manifest.nodes},
        )

    def test_resume_retries_reading_stored_metadata(self):
        store = FlakyReadStore()
        orchestrator = PipelineOrchestrator(store, retry_policy=_retry_policy())
        first = orchestrator.run("job-read", b"plain words", name="note.txt")

        store.fail_next_read = True
        second = orchestrator.run("job-read", b"plain words", name="note.txt", attempt=2)

        self.assertEqual(first.status, JobStatus.COMPLETED)
        self.assertEqual(second.status, JobStatus.COMPLETED)
        self.assertEqual(store.failed_reads, 1)
        self.assertEqual(second.written_keys, [])
        self.assertEqual(second.manifest.nodes[0].document_class, first.manifest.nodes[0].document_class)

    def test_resume_after_storage_outage_writes_only_missing_artifacts(self):
        alpha, beta = b"alpha body", b"beta body"
        store = FlakyStore(_md5(beta))
        orchestrator = PipelineOrchestrator(store, retry_policy=_retry_policy())
        content = _zip_bytes([("a.txt", alpha), ("b.txt", beta)])

        first = orchestrator.run("job-c", content, name="evidence.zip")
        self.assertEqual(first.status, JobStatus.FAILED)
        self.assertEqual(first.manifest.error["kind"], "StorageError")
        alpha_key = artifact_key("job-c", _md5(alpha), OutputKind.TEXT)
        alpha_before = store.get(alpha_key)
        writes_before = len(store.writes)

        store.failing = False
        second = orchestrator.run("job-c", content, name="evidence.zip", attempt=2)

        self.assertEqual(second.status, JobStatus.COMPLETED)
        self.assertEqual(
            set(store.writes[writes_before:]),
            {
                artifact_key("job-c", _md5(beta), OutputKind.TEXT),
                artifact_key("job-c", _md5(beta), OutputKind.METADATA),
            },
        )
        self.assertEqual(store.get(alpha_key), alpha_before)

    def test_corrupt_child_fails_alone(self):
        content = _zip_bytes(
            [("a.txt", "alpha body"), ("b.txt", "beta body"), ("broken.zip", b"PK\x03\x04not really a zip")]
        )
        outcome = self.orchestrator.run("job-e2e", content, name="evidence.zip")

        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(outcome.manifest.node_count, 4)
        nodes = {node.name: node for node in outcome.manifest.nodes}
        self.assertEqual(nodes["evidence.zip"].status, NodeStatus.DONE)
        self.assertEqual(nodes["a.txt"].status, NodeStatus.DONE)
        self.assertEqual(nodes["b.txt"].status, NodeStatus.DONE)
        self.assertEqual(nodes["broken.zip"].status, NodeStatus.FAILED)
        self.assertEqual(nodes["broken.zip"].error["kind"], "CorruptInput")
        self.assertFalse(any(f"/{nodes['broken.zip'].node_id}/" in key for key in self.store.writes))

    def test_failed_root_fails_job_without_writes(self):
        outcome = self.orchestrator.run("job-root", b"PK\x03\x04not really a zip", name="broken.zip")

        self.assertEqual(outcome.status, JobStatus.FAILED)
        self.assertEqual(outcome.manifest.error["kind"], "CorruptInput")
        self.assertEqual(outcome.failed_stage, JobStatus.EXPANDING.value)
        self.assertEqual(self.store.writes, [])

    def test_metadata_artifact_holds_projected_record(self):
        message = b"From: alice@example.com\nTo: bob@example.com\nSubject: Contract\n\nSee you."
        outcome = self.orchestrator.run("job-msg", message, name="mail.eml")

        root = outcome.manifest.nodes[0]
        self.assertEqual(root.document_class.value, "Message")
        payload = json.loads(self.store.get(artifact_key("job-msg", root.node_id, OutputKind.METADATA)))
        self.assertEqual(payload["record"]["From"], "alice@example.com")
        self.assertEqual(payload["record"]["Subject"], "Contract")
        self.assertFalse(payload["record"]["HasAttachments"])
        text = self.store.get(artifact_key("job-msg", root.node_id, OutputKind.TEXT)).decode("utf-8")
        self.assertIn("See you.", text)

    def test_external_text_fallback_for_legacy_office(self):
        tika = FakeTika(result=ExternalResult(extracted_text="legacy words", raw_properties={"dc:title": "Memo"}))
        orchestrator = PipelineOrchestrator(self.store, external=tika, retry_policy=_retry_policy())
        outcome = orchestrator.run("job-doc", OLE_MAGIC + b"\x00" * 64, name="memo.doc")

        root = outcome.manifest.nodes[0]
        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(root.mimetype, "application/msword")
        self.assertEqual(self.store.get(artifact_key("job-doc", root.node_id, OutputKind.TEXT)), b"legacy words")
        payload = json.loads(self.store.get(artifact_key("job-doc", root.node_id, OutputKind.METADATA)))
        self.assertEqual(payload["record"]["Title"], "Memo")

    def test_external_service_exhaustion_fails_node(self):
        tika = FakeTika(error=ExternalServiceError("HTTP 503"))
        orchestrator = PipelineOrchestrator(self.store, external=tika, retry_policy=_retry_policy(attempts=3))
        outcome = orchestrator.run("job-down", OLE_MAGIC + b"\x00" * 64, name="memo.doc")

        self.assertEqual(tika.calls, 3)
        self.assertEqual(outcome.status, JobStatus.FAILED)
        self.assertEqual(outcome.manifest.nodes[0].error["kind"], "ExternalServiceUnavailable")

    def test_external_unsupported_is_capability_error(self):
        tika = FakeTika(error=UnsupportedFormat("application/msword", "extract_text"))
        orchestrator = PipelineOrchestrator(self.store, external=tika, retry_policy=_retry_policy())
        outcome = orchestrator.run("job-415", OLE_MAGIC + b"\x00" * 64, name="memo.doc")

        root = outcome.manifest.nodes[0]
        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(tika.calls, 1)
        self.assertEqual(root.capability_errors[0]["capability"], "extract_text")
        self.assertNotIn("text", root.artifacts)

    def test_render_requested(self):
        outcome = self.orchestrator.run(
            "job-render", b"hello render", name="note.txt", requested_outputs=["text", "metadata", "render"]
        )
        root = outcome.manifest.nodes[0]
        self.assertTrue(self.store.get(artifact_key("job-render", root.node_id, OutputKind.RENDER)).startswith(b"%PDF"))

    def test_render_unavailable_is_not_fatal(self):
        outcome = self.orchestrator.run(
            "job-blob", b"\x00\x01\x02\x03binary-blob", name="blob", requested_outputs=["metadata", "render"]
        )
        root = outcome.manifest.nodes[0]
        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertTrue(root.render_unavailable)
        self.assertEqual(set(root.artifacts), {"metadata"})

    def test_render_failure_leaves_node_done(self):
        outcome = self.orchestrator.run(
            "job-bad-png", b"\x89PNG\r\n\x1a\n" + b"\x00" * 32, name="broken.png", requested_outputs=["render"]
        )
        root = outcome.manifest.nodes[0]

        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(root.mimetype, "image/png")
        self.assertEqual(root.status, NodeStatus.DONE)
        self.assertTrue(root.render_unavailable)
        self.assertEqual([error["capability"] for error in root.capability_errors], ["render"])
        self.assertEqual(self.store.writes, [])

    def test_stage_handlers_replay_as_no_ops(self):
        handlers = self.orchestrator.stage_handlers()
        self.assertEqual(set(handlers), {"detect", "expand", "extract_node", "persist"})
        replays = {}

        def _replay_before_persisting(event):
            if event.node_id is None and event.status == JobStatus.PERSISTING.value:
                ref = NodeRef(event.job_id, _md5(b"plain words"))
                replays["events_before"] = len(events)
                replays["detect"] = handlers["detect"](ref)
                replays["extract_node"] = handlers["extract_node"](ref)
                replays["events_after"] = len(events)

        events = []
        self.orchestrator.add_listener(events.append)
        self.orchestrator.add_listener(_replay_before_persisting)
        outcome = self.orchestrator.run("job-replay", b"plain words", name="note.txt")

        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(replays["detect"], "text/plain")
        self.assertEqual(replays["extract_node"], NodeStatus.DONE)
        self.assertEqual(replays["events_before"], replays["events_after"])
        self.assertEqual(len(self.store.writes), 2)

    def test_embedded_not_requested_skips_expansion(self):
        content = _zip_bytes([("a.txt", "alpha body")])
        outcome = self.orchestrator.run("job-flat", content, name="evidence.zip", requested_outputs=["metadata"])
        self.assertEqual(outcome.manifest.node_count, 1)

    def test_cancelled_job_writes_nothing(self):
        orchestrator = PipelineOrchestrator(
            self.store, retry_policy=_retry_policy(), cancellation_check=lambda job_id: True
        )
        outcome = orchestrator.run("job-x", _zip_bytes([("a.txt", "a")]), name="evidence.zip")

        self.assertEqual(outcome.status, JobStatus.CANCELLED)
        self.assertEqual(self.store.writes, [])
        self.assertTrue(all(node.status == NodeStatus.FAILED for node in outcome.manifest.nodes))

    def test_job_status_events_in_order(self):
        events = []
        self.orchestrator.add_listener(events.append)
        self.orchestrator.run("job-ev", b"plain words", name="note.txt")

        self.assertEqual(
            [event.status for event in events if event.node_id is None],
            ["Queued", "Detecting", "Expanding", "PerNodeExtraction", "Persisting", "Completed"],
        )
        self.assertIn("Done", [event.status for event in events if event.node_id is not None])

    def test_thread_pool_scheduler_matches_synchronous_result(self):
        content = _zip_bytes([(f"doc-{index}.txt", f"body {index}") for index in range(6)])
        scheduler = ThreadPoolScheduler(max_workers=3)
        try:
            orchestrator = PipelineOrchestrator(
                self.store, retry_policy=_retry_policy(), scheduler=scheduler, node_parallelism=3
            )
            outcome = orchestrator.run("job-pool", content, name="evidence.zip")
        finally:
            scheduler.shutdown()

        self.assertEqual(outcome.status, JobStatus.COMPLETED)
        self.assertEqual(outcome.manifest.node_count, 7)
        self.assertEqual(len(self.store.writes), 13)


if __name__ == "__main__":
    unittest.main()
