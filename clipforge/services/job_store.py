"""Job store with TTL-based eviction of finished jobs.

The job manager only talks to the ``JobStore`` protocol (get/set/delete), so a
durable backend can replace the in-memory one without touching the pipeline.
The in-memory store keeps jobs per process; a restart loses them.
"""

import threading
import time
from dataclasses import dataclass
from typing import Protocol

from clipforge.models.job import Job


class JobStore(Protocol):
    def get(self, job_id: str) -> Job | None: ...

    def set(self, job: Job) -> None: ...

    def delete(self, job_id: str) -> bool: ...


@dataclass
class _StoredJob:
    job: Job
    stored_at: float


class InMemoryJobStore:
    """Thread-safe in-memory job table.

    Jobs in a terminal state expire ``ttl_seconds`` after they were last
    written. Active jobs never expire.
    """

    def __init__(self, ttl_seconds: int = 3600) -> None:
        self._store: dict[str, _StoredJob] = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds

    def get(self, job_id: str) -> Job | None:
        """Get a job by id, or None if not found/expired."""
        with self._lock:
            entry = self._store.get(job_id)
            if entry is None:
                return None
            if self._is_expired(entry, time.monotonic()):
                del self._store[job_id]
                return None
            return entry.job

    def set(self, job: Job) -> None:
        """Store (or replace) a job snapshot."""
        with self._lock:
            self._cleanup_expired()
            self._store[job.id] = _StoredJob(job=job, stored_at=time.monotonic())

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._store.pop(job_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def _is_expired(self, entry: _StoredJob, now: float) -> bool:
        return entry.job.is_terminal and now - entry.stored_at > self._ttl

    def _cleanup_expired(self) -> None:
        """Remove expired entries (called under lock)."""
        now = time.monotonic()
        expired = [k for k, v in self._store.items() if self._is_expired(v, now)]
        for k in expired:
            del self._store[k]
