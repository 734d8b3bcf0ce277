"""
Auto-trigger indexing: content mutations -> background (re)embedding jobs.

Jobs for one (tenant, content_type, content_id) key wait in a FIFO lane and run
one at a time, so a later update is never overtaken by an earlier job that is
still retrying. Keys whose lane head is runnable sit in a queue.Queue; worker
threads block on it with a timeout. drain() runs the same loop inline.

Job state is held in memory; terminal jobs are kept for observability until
cleanup_completed_jobs() purges them.
"""

import logging
import queue
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from apps.context_engine.errors import (
    AdmissionDeniedError,
    ConfigurationError,
    ContextEngineError,
    NotFoundError,
    ValidationError,
)
from apps.context_engine.models.base import utcnow
from apps.context_engine.schemas.content import ContentType, parse_content, parse_content_type
from apps.context_engine.schemas.responses import IndexingJobView
from apps.context_engine.services.embedding_generator import EmbeddingGenerator
from apps.context_engine.services.tenant_guard import require_tenant_id
from apps.context_engine.services.text import estimate_tokens
from apps.context_engine.services.usage import UsageTracker
from apps.context_engine.services.vector_store import VectorStore

logger = logging.getLogger(__name__)

JobKey = tuple[str, str, str]


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


TERMINAL = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass
class IndexingJob:
    job_id: str
    tenant_id: str
    operation: JobOperation
    content_type: ContentType
    content_id: str
    payload: dict[str, Any]
    max_attempts: int
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    batch_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def key(self) -> JobKey:
        return (self.tenant_id, self.content_type.value, self.content_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_view(self) -> IndexingJobView:
        return IndexingJobView(
            job_id=self.job_id,
            batch_id=self.batch_id,
            tenant_id=self.tenant_id,
            operation=self.operation.value,
            content_type=self.content_type.value,
            content_id=self.content_id,
            status=self.status.value,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            last_error=self.last_error,
            created_at=self.created_at.isoformat(),
            started_at=self.started_at.isoformat() if self.started_at else None,
            completed_at=self.completed_at.isoformat() if self.completed_at else None,
        )


def _parse_operation(value: "JobOperation | str") -> JobOperation:
    try:
        return JobOperation(str(getattr(value, "value", value)).strip().lower())
    except ValueError:
        raise ValidationError(f"invalid operation {value!r}; must be create, update or delete") from None


class IndexingService:
    """In-process job queue with per-key lanes and a fixed worker pool."""

    def __init__(
        self,
        generator: EmbeddingGenerator,
        store: VectorStore,
        usage: UsageTracker | None = None,
        *,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        poll_seconds: float = 1.0,
        rate_limit_tokens_per_hour: int = 0,
        rate_limit_calls_per_hour: int = 0,
        sleep: Callable[[float], Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.generator = generator
        self.store = store
        self.usage = usage
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.poll_seconds = poll_seconds
        self.rate_limit_tokens_per_hour = rate_limit_tokens_per_hour
        self.rate_limit_calls_per_hour = rate_limit_calls_per_hour
        self.enabled = True
        self._clock = clock

        self._lock = threading.RLock()
        self._jobs: dict[str, IndexingJob] = {}
        self._lanes: dict[JobKey, deque[str]] = {}
        self._latest: dict[JobKey, str] = {}
        self._batches: dict[str, list[str]] = {}
        self._batch_recorded: set[str] = set()
        # Keys in the ready queue or being worked on. A key is never queued twice.
        self._busy: set[JobKey] = set()
        self._ready: "queue.Queue[JobKey]" = queue.Queue()

        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []
        # Default backoff wait wakes up early on stop()
        self._sleep = sleep or self._stop.wait

    # -- enqueue --------------------------------------------------------

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        logger.info("auto-trigger indexing %s", "enabled" if self.enabled else "disabled")

    def _admit(self, tenant_id: str) -> None:
        if self.usage is None:
            return
        if not self.usage.is_within_rate_limit(
            tenant_id, self.rate_limit_tokens_per_hour, self.rate_limit_calls_per_hour
        ):
            raise AdmissionDeniedError(
                f"tenant {tenant_id} is over its indexing usage limit",
                details={
                    "max_tokens_per_hour": self.rate_limit_tokens_per_hour,
                    "max_calls_per_hour": self.rate_limit_calls_per_hour,
                },
            )

    def _build_job(
        self,
        tenant_id: str,
        operation: "JobOperation | str",
        content_type: "ContentType | str",
        content_id: str,
        payload: dict[str, Any] | None,
        batch_id: str | None = None,
    ) -> IndexingJob:
        op = _parse_operation(operation)
        ct = parse_content_type(content_type)
        if content_id is None or not str(content_id).strip():
            raise ValidationError("content_id is required")
        payload = dict(payload or {})
        if op is not JobOperation.DELETE:
            # Reject bad payloads now rather than after the worker picks them up
            parse_content(ct, payload)
        return IndexingJob(
            job_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            operation=op,
            content_type=ct,
            content_id=str(content_id).strip(),
            payload=payload,
            max_attempts=self.max_attempts,
            batch_id=batch_id,
            created_at=self._clock(),
        )

    def _enqueue(self, job: IndexingJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job
            self._lanes.setdefault(job.key, deque()).append(job.job_id)
            self._latest[job.key] = job.job_id
            self._schedule(job.key)

    def _schedule(self, key: JobKey) -> None:
        """Put key on the ready queue unless it is already queued or running. Caller holds the lock."""
        if key in self._busy or not self._lanes.get(key):
            return
        self._busy.add(key)
        self._ready.put(key)

    def queue_trigger_job(
        self,
        tenant_id: str,
        operation: "JobOperation | str",
        content_type: "ContentType | str",
        content_id: str,
        payload: dict[str, Any] | None = None,
    ) -> str | None:
        """Enqueue one job; returns its id without waiting. None when auto-trigger is disabled."""
        tenant_id = require_tenant_id(tenant_id)
        if not self.enabled:
            logger.debug("auto-trigger disabled; skipping tenant=%s %s/%s", tenant_id, content_type, content_id)
            return None
        job = self._build_job(tenant_id, operation, content_type, content_id, payload)
        self._admit(tenant_id)
        self._enqueue(job)
        logger.info(
            "job queued tenant=%s job=%s op=%s %s/%s",
            tenant_id, job.job_id, job.operation.value, job.content_type.value, job.content_id,
        )
        return job.job_id

    def queue_batch_trigger_jobs(self, tenant_id: str, jobs: Iterable[Any]) -> str | None:
        """Enqueue several jobs under one batch id. All jobs are validated before any is queued.

        Each item is a mapping (or pydantic model) with operation, content_type, content_id, payload.
        """
        tenant_id = require_tenant_id(tenant_id)
        if not self.enabled:
            logger.debug("auto-trigger disabled; skipping batch tenant=%s", tenant_id)
            return None
        batch_id = str(uuid.uuid4())
        built = []
        for item in jobs:
            if not isinstance(item, dict):
                item = item.model_dump()
            built.append(
                self._build_job(
                    tenant_id,
                    item.get("operation"),
                    item.get("content_type") or item.get("contentType"),
                    item.get("content_id") or item.get("contentId"),
                    item.get("payload"),
                    batch_id=batch_id,
                )
            )
        if not built:
            raise ValidationError("batch must contain at least one job")
        self._admit(tenant_id)
        with self._lock:
            self._batches[batch_id] = [j.job_id for j in built]
            for job in built:
                self._enqueue(job)
        logger.info("batch queued tenant=%s batch=%s jobs=%s", tenant_id, batch_id, len(built))
        return batch_id

    def _trigger(self, tenant_id: str, operation: str, content_type: ContentType, item: dict[str, Any]) -> str | None:
        content_id = item.get("id")
        if content_id is None:
            raise ValidationError(f"{content_type.value} payload must include an id")
        payload = {} if _parse_operation(operation) is JobOperation.DELETE else item
        return self.queue_trigger_job(tenant_id, operation, content_type, str(content_id), payload)

    def trigger_menu_item(self, tenant_id: str, operation: str, item: dict[str, Any]) -> str | None:
        return self._trigger(tenant_id, operation, ContentType.MENU, item)

    def trigger_policy(self, tenant_id: str, operation: str, policy: dict[str, Any]) -> str | None:
        return self._trigger(tenant_id, operation, ContentType.POLICY, policy)

    def trigger_faq(self, tenant_id: str, operation: str, faq: dict[str, Any]) -> str | None:
        return self._trigger(tenant_id, operation, ContentType.FAQ, faq)

    def trigger_business(self, tenant_id: str, operation: str, business: dict[str, Any]) -> str | None:
        return self._trigger(tenant_id, operation, ContentType.BUSINESS, business)

    # -- processing -----------------------------------------------------

    def _execute(self, job: IndexingJob) -> int:
        """Run the job once. Returns tokens embedded. Raises on failure."""
        if job.operation is JobOperation.DELETE:
            deleted = self.store.soft_delete(job.tenant_id, job.content_type, job.content_id)
            if not deleted:
                logger.debug("delete no-op job=%s: no active record", job.job_id)
            return 0
        content = parse_content(job.content_type, job.payload)
        text = content.to_text()
        vector = self.generator.embed(text, tenant_id=job.tenant_id, content_type=job.content_type.value)
        self.store.upsert(
            job.tenant_id,
            job.content_type,
            job.content_id,
            text,
            vector,
            content.to_metadata(),
        )
        return estimate_tokens(text)

    def _run_job(self, job: IndexingJob) -> None:
        """Attempt the job until it completes, fails for good or the service stops."""
        start = time.perf_counter()
        tokens = 0
        while True:
            with self._lock:
                job.status = JobStatus.PROCESSING
                job.attempts += 1
                job.started_at = job.started_at or self._clock()
            try:
                tokens = self._execute(job)
            except (ValidationError, ConfigurationError) as e:
                self._finish(job, JobStatus.FAILED, e.message, tokens, start)
                logger.error("job failed job=%s tenant=%s (not retryable): %s", job.job_id, job.tenant_id, e.message)
                return
            except Exception as e:
                msg = e.message if isinstance(e, ContextEngineError) else f"{type(e).__name__}: {e}"
                if not isinstance(e, ContextEngineError):
                    logger.exception("job raised job=%s tenant=%s", job.job_id, job.tenant_id)
                if job.attempts >= job.max_attempts:
                    self._finish(job, JobStatus.FAILED, msg, tokens, start)
                    logger.error(
                        "job failed job=%s tenant=%s after %s attempts: %s",
                        job.job_id, job.tenant_id, job.attempts, msg,
                    )
                    return
                with self._lock:
                    job.status = JobStatus.PENDING
                    job.last_error = msg
                delay = self.retry_delay * 2 ** (job.attempts - 1)
                logger.warning(
                    "job retry job=%s tenant=%s attempt=%s/%s in %.2fs: %s",
                    job.job_id, job.tenant_id, job.attempts, job.max_attempts, delay, msg,
                )
                self._sleep(delay)
                if self._stop.is_set():
                    return
                continue
            self._finish(job, JobStatus.COMPLETED, None, tokens, start)
            logger.info("job completed job=%s tenant=%s attempts=%s", job.job_id, job.tenant_id, job.attempts)
            return

    def _finish(self, job: IndexingJob, status: JobStatus, error: str | None, tokens: int, start: float) -> None:
        with self._lock:
            job.status = status
            job.last_error = error if status is JobStatus.FAILED else job.last_error
            job.completed_at = self._clock()
        if self.usage is not None:
            self.usage.record_usage(
                job.tenant_id,
                "indexing_job",
                content_type=job.content_type.value,
                # Tokens and provider calls are already counted on the embedding_generation rows
                token_count=0,
                api_calls=0,
                processing_time_ms=int((time.perf_counter() - start) * 1000),
                success=status is JobStatus.COMPLETED,
                error_code=None if status is JobStatus.COMPLETED else "INDEXING_FAILED",
                details={
                    "job_id": job.job_id,
                    "operation": job.operation.value,
                    "attempts": job.attempts,
                    "tokens": tokens,
                },
            )
        if job.batch_id:
            self._maybe_record_batch(job.batch_id)

    def _maybe_record_batch(self, batch_id: str) -> None:
        with self._lock:
            if batch_id in self._batch_recorded:
                return
            members = [self._jobs[j] for j in self._batches.get(batch_id, []) if j in self._jobs]
            if not members or not all(j.is_terminal for j in members):
                return
            self._batch_recorded.add(batch_id)
        failed = sum(1 for j in members if j.status is JobStatus.FAILED)
        if self.usage is not None:
            self.usage.record_usage(
                members[0].tenant_id,
                "batch_processing",
                success=failed == 0,
                details={"batch_id": batch_id, "total": len(members), "failed": failed},
            )
        logger.info("batch done batch=%s total=%s failed=%s", batch_id, len(members), failed)

    def _process_key(self, key: JobKey) -> int:
        """Run the head job of key's lane. Returns 1 if a job reached a terminal state."""
        with self._lock:
            lane = self._lanes.get(key)
            job = self._jobs.get(lane[0]) if lane else None
        if job is None:
            with self._lock:
                self._busy.discard(key)
                self._lanes.pop(key, None)
            return 0
        self._run_job(job)
        with self._lock:
            if not job.is_terminal:
                # Stopped mid-retry: leave the lane intact for the next start()/drain()
                self._busy.discard(key)
                return 0
            lane.popleft()
            self._busy.discard(key)
            if lane:
                self._schedule(key)
            else:
                self._lanes.pop(key, None)
        return 1

    def drain(self, max_jobs: int | None = None) -> int:
        """Process queued jobs inline until the queue is empty. Returns jobs finished."""
        done = 0
        while max_jobs is None or done < max_jobs:
            try:
                key = self._ready.get_nowait()
            except queue.Empty:
                break
            try:
                done += self._process_key(key)
            finally:
                self._ready.task_done()
        return done

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                key = self._ready.get(timeout=self.poll_seconds)
            except queue.Empty:
                continue
            try:
                self._process_key(key)
            except Exception:
                logger.exception("worker error key=%s", key)
                with self._lock:
                    self._busy.discard(key)
            finally:
                self._ready.task_done()

    def start(self, workers: int = 2) -> None:
        """Start the worker pool. No-op if already running."""
        if self.is_running:
            return
        self._stop.clear()
        with self._lock:
            # Lanes left behind by a previous stop() are runnable again
            for key in list(self._lanes):
                self._schedule(key)
        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"indexing-worker-{i}", daemon=True)
            for i in range(max(1, workers))
        ]
        for t in self._workers:
            t.start()
        logger.info("indexing workers started n=%s", len(self._workers))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._workers:
            t.join(timeout)
        alive = sum(1 for t in self._workers if t.is_alive())
        if alive:
            logger.warning("indexing workers still running after stop n=%s", alive)
        self._workers = []
        logger.info("indexing workers stopped")

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._workers)

    # -- status / operator actions ---------------------------------------

    def get_job_status(self, job_id: str, tenant_id: str | None = None) -> IndexingJob:
        """Snapshot of the job. Jobs of other tenants read as not found."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (tenant_id is not None and job.tenant_id != tenant_id):
                raise NotFoundError(f"job {job_id} not found")
            return replace(job, payload=dict(job.payload))

    def get_batch_status(self, batch_id: str, tenant_id: str | None = None) -> dict[str, Any]:
        with self._lock:
            ids = self._batches.get(batch_id)
            members = [self._jobs[j] for j in ids or [] if j in self._jobs]
            if not members or (tenant_id is not None and members[0].tenant_id != tenant_id):
                raise NotFoundError(f"batch {batch_id} not found")
            counts = {s: sum(1 for j in members if j.status is s) for s in JobStatus}
        total = len(members)
        completed, failed = counts[JobStatus.COMPLETED], counts[JobStatus.FAILED]
        if completed == total:
            status = "completed"
        elif failed == total:
            status = "failed"
        elif completed + failed == total:
            status = "partial"
        elif counts[JobStatus.PENDING] == total:
            status = "pending"
        else:
            status = "processing"
        return {
            "batch_id": batch_id,
            "status": status,
            "total": total,
            "pending": counts[JobStatus.PENDING],
            "processing": counts[JobStatus.PROCESSING],
            "completed": completed,
            "failed": failed,
        }

    def list_jobs(self, tenant_id: str | None = None, status: "JobStatus | str | None" = None) -> list[IndexingJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if tenant_id is not None:
            jobs = [j for j in jobs if j.tenant_id == tenant_id]
        if status is not None:
            jobs = [j for j in jobs if j.status is JobStatus(status)]
        return sorted(jobs, key=lambda j: j.created_at)

    def retry_failed_jobs(self, tenant_id: str | None = None) -> int:
        """Operator retry: failed jobs go back to pending with a fresh attempt budget.

        A failed job that a newer job for the same key has superseded stays failed;
        re-running it would overwrite newer content.
        """
        retried = 0
        with self._lock:
            for job in list(self._jobs.values()):
                if job.status is not JobStatus.FAILED:
                    continue
                if tenant_id is not None and job.tenant_id != tenant_id:
                    continue
                if self._latest.get(job.key) != job.job_id:
                    logger.info("retry skipped job=%s: superseded by a newer job", job.job_id)
                    continue
                job.status = JobStatus.PENDING
                job.max_attempts = job.attempts + self.max_attempts
                job.completed_at = None
                if job.batch_id:
                    self._batch_recorded.discard(job.batch_id)
                self._lanes.setdefault(job.key, deque()).append(job.job_id)
                self._schedule(job.key)
                retried += 1
        logger.info("retry_failed_jobs tenant=%s retried=%s", tenant_id or "*", retried)
        return retried

    def cleanup_completed_jobs(self, older_than_hours: float = 24) -> int:
        """Drop terminal jobs finished before the retention window. Returns jobs removed."""
        cutoff = self._clock() - timedelta(hours=older_than_hours)
        with self._lock:
            stale = [
                j.job_id
                for j in self._jobs.values()
                if j.is_terminal and j.completed_at is not None and j.completed_at < cutoff
            ]
            for job_id in stale:
                job = self._jobs.pop(job_id)
                if self._latest.get(job.key) == job_id:
                    del self._latest[job.key]
            for batch_id, ids in list(self._batches.items()):
                remaining = [j for j in ids if j in self._jobs]
                if remaining:
                    self._batches[batch_id] = remaining
                else:
                    del self._batches[batch_id]
                    self._batch_recorded.discard(batch_id)
        if stale:
            logger.info("cleanup_completed_jobs removed=%s", len(stale))
        return len(stale)

    def queue_size(self) -> int:
        """Jobs not yet terminal."""
        with self._lock:
            return sum(1 for j in self._jobs.values() if not j.is_terminal)

    def get_service_stats(self) -> dict[str, Any]:
        with self._lock:
            by_status = {s.value: 0 for s in JobStatus}
            for j in self._jobs.values():
                by_status[j.status.value] += 1
            return {
                "enabled": self.enabled,
                "running": self.is_running,
                "workers": len(self._workers),
                "queue_size": by_status["pending"] + by_status["processing"],
                "ready_keys": self._ready.qsize(),
                "total_jobs": len(self._jobs),
                "batches": len(self._batches),
                "by_status": by_status,
            }
