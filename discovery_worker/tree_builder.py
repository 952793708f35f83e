from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Callable

from discovery_worker.detection import Detection, TypeDetector
from discovery_worker.errors import CorruptInput, JobCancelled, ProcessingError, ResourceLimitExceeded
from discovery_worker.models import Capability, FileNode, NodeStatus
from discovery_worker.processors import EmbeddedItem, dedupe_checksum
from discovery_worker.registry import PROCESSOR_REGISTRY, ProcessorRegistry

logger = logging.getLogger(__name__)

TransitionListener = Callable[[FileNode, NodeStatus], None]


@dataclass
class ExtractionTree:
    """Arena of a job's nodes keyed by node id; insertion order is depth-first discovery order."""

    job_id: str
    root_id: str | None = None
    nodes: dict[str, FileNode] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def get(self, node_id: str) -> FileNode:
        return self.nodes[node_id]

    @property
    def root(self) -> FileNode | None:
        return self.nodes.get(self.root_id) if self.root_id else None

    def ordered(self) -> list[FileNode]:
        return list(self.nodes.values())

    def ancestors(self, node_id: str) -> list[FileNode]:
        lineage = []
        current = self.nodes[node_id].parent_id
        while current is not None:
            parent = self.nodes[current]
            lineage.append(parent)
            current = parent.parent_id
        return lineage

    def path(self, node_id: str) -> str:
        names = [node.name for node in reversed(self.ancestors(node_id))]
        names.append(self.nodes[node_id].name)
        return "/".join(names)


def _cycle_node_id(content_hash: str, position: str) -> str:
    return hashlib.md5(f"{content_hash}:{position}".encode("utf-8")).hexdigest()


class TreeBuilder:
    """Expands containers depth-first into a bounded, deduplicated node arena.

    ``max_depth`` bounds how deep a node may sit (the root is depth 0); a deeper child is allocated and
    failed with a subtree-scoped ``ResourceLimitExceeded``. ``max_nodes`` bounds the number of embedded nodes
    under the root; breaching it raises a job-scoped ``ResourceLimitExceeded`` out of ``expand``.
    """

    def __init__(
        self,
        detector: TypeDetector,
        registry: ProcessorRegistry = PROCESSOR_REGISTRY,
        *,
        max_depth: int = 8,
        max_nodes: int = 10000,
        on_transition: TransitionListener | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.detector = detector
        self.registry = registry
        self.max_depth = max_depth
        self.max_nodes = max_nodes
        self.on_transition = on_transition
        self.should_stop = should_stop

    def _move(self, node: FileNode, status: NodeStatus) -> None:
        if node.status == status:
            return
        node.transition(status)
        if self.on_transition is not None:
            self.on_transition(node, status)

    def _fail(self, node: FileNode, error: ProcessingError) -> None:
        node.fail(error.kind, error.message)
        if self.on_transition is not None:
            self.on_transition(node, NodeStatus.FAILED)
        logger.info("Node %s (%s) failed: %s", node.node_id, node.name, error)

    def _check_cancelled(self, tree: ExtractionTree) -> None:
        if self.should_stop is not None and self.should_stop():
            raise JobCancelled(f"Job {tree.job_id} was cancelled during expansion.")

    def _reserve(self, tree: ExtractionTree) -> None:
        # the root does not count against the embedded-node budget
        if len(tree) - 1 >= self.max_nodes:
            raise ResourceLimitExceeded(
                f"Job {tree.job_id} exceeded the node-count limit of {self.max_nodes}.",
                scope="job",
                limit=self.max_nodes,
            )

    def create_root(self, job_id: str, content: bytes, name: str) -> ExtractionTree:
        tree = ExtractionTree(job_id=job_id)
        content_hash = dedupe_checksum(content)
        root = FileNode(
            node_id=content_hash,
            name=name,
            position="0",
            depth=0,
            content_hash=content_hash,
            content=content,
        )
        tree.nodes[root.node_id] = root
        tree.root_id = root.node_id
        return tree

    def detect_node(self, node: FileNode, detection: Detection | None = None) -> None:
        """Classify ``node``; a node that already carries a mimetype is left untouched."""

        if node.mimetype is not None or node.is_terminal:
            return
        self._move(node, NodeStatus.DETECTING)
        detection = detection or self.detector.detect(node.content or b"", node.name)
        node.mimetype = detection.mimetype
        node.detection_source = detection.source
        node.warnings.extend(detection.warnings)
        node.processor = self.registry.resolve(detection.mimetype).kind.value

    def expand(self, tree: ExtractionTree, node: FileNode, *, expand_embedded: bool = True) -> None:
        """Detect and expand ``node`` and, recursively, every child it yields."""

        ancestor_ids = {ancestor.content_hash: ancestor.node_id for ancestor in tree.ancestors(node.node_id)}
        self._expand(tree, node, ancestor_ids, expand_embedded)

    def _expand(
        self,
        tree: ExtractionTree,
        node: FileNode,
        ancestor_ids: dict[str, str],
        expand_embedded: bool,
    ) -> None:
        self._check_cancelled(tree)
        if node.is_terminal:
            return
        self.detect_node(node)

        resolved = self.registry.resolve(node.mimetype)
        if not expand_embedded or not resolved.declares(Capability.EXTRACT_EMBEDDED):
            return

        self._move(node, NodeStatus.EXPANDING)
        try:
            expansion = resolved.processor.extract_embedded(node.content or b"", node.name, node.mimetype)
        except ProcessingError as exc:
            self._fail(node, exc)
            return
        except Exception as exc:  # noqa: BLE001
            self._fail(node, CorruptInput(f"Embedded extraction failed: {exc}"))
            return

        node.warnings.extend(expansion.warnings)
        lineage = {**ancestor_ids, node.content_hash: node.node_id}
        for index, item in enumerate(expansion.children):
            self._check_cancelled(tree)
            child = self._attach_child(tree, node, item, index, lineage)
            if child is not None and not child.is_terminal:
                self._expand(tree, child, lineage, expand_embedded)

    def _attach_child(
        self,
        tree: ExtractionTree,
        parent: FileNode,
        item: EmbeddedItem,
        index: int,
        lineage: dict[str, str],
    ) -> FileNode | None:
        position = f"{parent.position}/{index}"
        depth = parent.depth + 1
        if item.mimetype_hint:
            detection = Detection(item.mimetype_hint, "container")
        else:
            detection = self.detector.detect(item.content, item.name)
        content_hash = dedupe_checksum(item.content, detection.mimetype)

        if content_hash in lineage:
            self._reserve(tree)
            leaf = FileNode(
                node_id=_cycle_node_id(content_hash, position),
                name=item.name,
                position=position,
                depth=depth,
                content_hash=content_hash,
                parent_id=parent.node_id,
                content=item.content,
                cycle_of=lineage[content_hash],
            )
            tree.nodes[leaf.node_id] = leaf
            parent.children.append(leaf.node_id)
            self.detect_node(leaf, detection)
            leaf.warnings.append(f"Content repeats ancestor {leaf.cycle_of}; not expanded.")
            self._move(leaf, NodeStatus.DONE)
            return leaf

        existing = tree.nodes.get(content_hash)
        if existing is not None:
            if existing.node_id not in parent.children:
                parent.children.append(existing.node_id)
            existing.occurrences.append(position)
            return None

        self._reserve(tree)
        child = FileNode(
            node_id=content_hash,
            name=item.name,
            position=position,
            depth=depth,
            content_hash=content_hash,
            parent_id=parent.node_id,
            content=item.content,
        )
        tree.nodes[child.node_id] = child
        parent.children.append(child.node_id)
        if depth > self.max_depth:
            self._fail(
                child,
                ResourceLimitExceeded(
                    f"Node at depth {depth} exceeds the depth limit of {self.max_depth}.",
                    scope="subtree",
                    limit=self.max_depth,
                ),
            )
            return child
        self.detect_node(child, detection)
        return child
