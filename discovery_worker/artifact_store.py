from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Protocol

from discovery_worker.errors import StorageError
from discovery_worker.models import OutputKind

logger = logging.getLogger(__name__)


def artifact_key(job_id: str, node_id: str, kind: OutputKind | str) -> str:
    kind_value = kind.value if isinstance(kind, OutputKind) else kind
    return f"{job_id}/{node_id}/{kind_value}"


class ArtifactStore(Protocol):
    def get(self, key: str) -> bytes:
        ...

    def put(self, key: str, data: bytes) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...

    def list(self, prefix: str = "") -> list[str]:
        ...


class FilesystemArtifactStore:
    """Keyed blob store rooted at a local directory; key segments map to path segments."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    @classmethod
    def from_config(cls, config) -> "FilesystemArtifactStore":
        return cls(config.artifact_root)

    def _path(self, key: str) -> Path:
        segments = [segment for segment in key.replace("\\", "/").split("/") if segment]
        if not segments or any(segment in {".", ".."} for segment in segments):
            raise StorageError(f"Invalid artifact key '{key}'.")
        return self.root.joinpath(*segments)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"Artifact '{key}' does not exist.", {"key": key}) from exc
        except OSError as exc:
            raise StorageError(f"Failed to read artifact '{key}': {exc}", {"key": key}) from exc

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        temporary = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temporary.write_bytes(data)
            temporary.replace(path)
        except OSError as exc:
            raise StorageError(f"Failed to write artifact '{key}': {exc}", {"key": key}) from exc
        logger.debug("Stored artifact %s (%d bytes)", key, len(data))

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class InMemoryArtifactStore:
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.writes: list[str] = []

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self._blobs:
                raise StorageError(f"Artifact '{key}' does not exist.", {"key": key})
            return self._blobs[key]

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._blobs[key] = bytes(data)
            self.writes.append(key)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs

    def list(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._blobs if key.startswith(prefix))
