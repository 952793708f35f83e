from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterator, Protocol

from filelock import FileLock, Timeout

from discovery_worker.errors import StorageError
from discovery_worker.models import IntakeEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claim:
    message_id: str
    token: str
    worker_id: str
    entry: IntakeEntry
    delivery_count: int
    expires_at: float


class WorkQueue(Protocol):
    visibility_timeout: float

    def enqueue(self, entry: IntakeEntry) -> str:
        ...

    def claim(self, worker_id: str) -> Claim | None:
        ...

    def extend(self, claim: Claim) -> Claim | None:
        ...

    def ack(self, claim: Claim) -> bool:
        ...

    def release(self, claim: Claim) -> bool:
        ...


class _ClaimLedger:
    """At-least-once claim bookkeeping over a list of message records.

    A record is claimable when it has no live claim and no other live claim holds the same job id.
    Claims expire after ``visibility_timeout`` seconds unless the holder extends them; an expired
    record is delivered again.
    """

    def __init__(self, visibility_timeout: float, clock: Callable[[], float]) -> None:
        self.visibility_timeout = visibility_timeout
        self.clock = clock
        self._lock = threading.Lock()

    def _load(self) -> list[dict]:
        raise NotImplementedError

    def _save(self, records: list[dict]) -> None:
        raise NotImplementedError

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            yield

    def _is_live(self, record: dict, now: float) -> bool:
        return record.get("claim_token") is not None and record.get("claim_expires_at", 0.0) > now

    def enqueue(self, entry: IntakeEntry) -> str:
        with self._guard():
            records = self._load()
            message_id = uuid.uuid4().hex
            records.append(
                {
                    "message_id": message_id,
                    "entry": entry.model_dump(mode="json"),
                    "delivery_count": 0,
                    "claim_token": None,
                    "claim_worker": None,
                    "claim_expires_at": 0.0,
                    "enqueued_at": self.clock(),
                }
            )
            self._save(records)
        logger.info("Enqueued job %s as message %s", entry.job_id, message_id)
        return message_id

    def claim(self, worker_id: str) -> Claim | None:
        with self._guard():
            records = self._load()
            now = self.clock()
            active_jobs = {record["entry"]["job_id"] for record in records if self._is_live(record, now)}
            for record in records:
                if self._is_live(record, now) or record["entry"]["job_id"] in active_jobs:
                    continue
                if record.get("claim_token") is not None:
                    logger.warning(
                        "Claim on message %s by %s expired; redelivering.",
                        record["message_id"],
                        record.get("claim_worker"),
                    )
                record["claim_token"] = uuid.uuid4().hex
                record["claim_worker"] = worker_id
                record["claim_expires_at"] = now + self.visibility_timeout
                record["delivery_count"] = int(record.get("delivery_count", 0)) + 1
                self._save(records)
                return Claim(
                    message_id=record["message_id"],
                    token=record["claim_token"],
                    worker_id=worker_id,
                    entry=IntakeEntry.model_validate(record["entry"]),
                    delivery_count=record["delivery_count"],
                    expires_at=record["claim_expires_at"],
                )
        return None

    def extend(self, claim: Claim) -> Claim | None:
        """Push a live claim's expiry a full visibility window forward; ``None`` once the claim is lost."""

        with self._guard():
            records = self._load()
            now = self.clock()
            for record in records:
                if record["message_id"] != claim.message_id:
                    continue
                if record.get("claim_token") != claim.token or not self._is_live(record, now):
                    break
                record["claim_expires_at"] = now + self.visibility_timeout
                self._save(records)
                return replace(claim, expires_at=record["claim_expires_at"])
        logger.warning("Claim %s on message %s can no longer be extended.", claim.token, claim.message_id)
        return None

    def _settle(self, claim: Claim, *, remove: bool) -> bool:
        with self._guard():
            records = self._load()
            for index, record in enumerate(records):
                if record["message_id"] != claim.message_id:
                    continue
                if record.get("claim_token") != claim.token:
                    logger.warning("Stale claim %s on message %s ignored.", claim.token, claim.message_id)
                    return False
                if remove:
                    del records[index]
                else:
                    record["claim_token"] = None
                    record["claim_worker"] = None
                    record["claim_expires_at"] = 0.0
                self._save(records)
                return True
        return False

    def ack(self, claim: Claim) -> bool:
        return self._settle(claim, remove=True)

    def release(self, claim: Claim) -> bool:
        return self._settle(claim, remove=False)

    def pending_count(self) -> int:
        with self._guard():
            return len(self._load())


class InMemoryWorkQueue(_ClaimLedger):
    def __init__(self, visibility_timeout: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(visibility_timeout, clock)
        self._records: list[dict] = []

    def _load(self) -> list[dict]:
        return self._records

    def _save(self, records: list[dict]) -> None:
        self._records = records


class FileWorkQueue(_ClaimLedger):
    """Queue state kept in one JSON file so claims survive a worker restart.

    Every load-modify-save runs under a sidecar ``.lock`` file so worker processes sharing the file see
    each other's claims.
    """

    def __init__(
        self,
        path: str | Path,
        visibility_timeout: float = 300.0,
        clock: Callable[[], float] = time.time,
        lock_timeout: float = 30.0,
    ) -> None:
        super().__init__(visibility_timeout, clock)
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._file_lock = FileLock(str(self.lock_path), timeout=lock_timeout)

    @classmethod
    def from_config(cls, config) -> "FileWorkQueue":
        return cls(config.queue_target, visibility_timeout=config.visibility_timeout_seconds)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            try:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                self._file_lock.acquire()
            except (OSError, Timeout) as exc:
                raise StorageError(f"Queue lock '{self.lock_path}' could not be acquired: {exc}") from exc
            try:
                yield
            finally:
                self._file_lock.release()

    def _load(self) -> list[dict]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Queue state '{self.path}' could not be read: {exc}") from exc
        return payload.get("messages", []) if isinstance(payload, dict) else []

    def _save(self, records: list[dict]) -> None:
        temporary = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temporary.write_text(json.dumps({"messages": records}, indent=2), encoding="utf-8")
            temporary.replace(self.path)
        except OSError as exc:
            raise StorageError(f"Queue state '{self.path}' could not be written: {exc}") from exc
