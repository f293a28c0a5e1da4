"""
Database-backed job queue.

Delivery is at-least-once: a job may run again after a crash (stale
recovery) or a retry, so handlers re-derive their effect from the database.
Claiming uses optimistic locking (UPDATE ... WHERE status = 'pending'), which
keeps several worker instances from running the same job.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared_utils.retry import RetryPolicy
from .models import Job, QueueControl, JOB_STATUSES, LIVE_STATUSES

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE = "webhook-processing"
DELIVERY_QUEUE = "message-delivery"


@dataclass(frozen=True)
class QueuePolicy:
    name: str
    concurrency: int
    max_attempts: int
    backoff: RetryPolicy


# Webhook work: fewer, faster retries. Delivery: more retries, provider hiccups are common.
QUEUE_POLICIES = {
    WEBHOOK_QUEUE: QueuePolicy(
        WEBHOOK_QUEUE, concurrency=5, max_attempts=3,
        backoff=RetryPolicy(delay_ms=2000, max_delay_ms=60000, jitter_ms=1000),
    ),
    DELIVERY_QUEUE: QueuePolicy(
        DELIVERY_QUEUE, concurrency=10, max_attempts=5,
        backoff=RetryPolicy(delay_ms=1000, max_delay_ms=60000, jitter_ms=1000),
    ),
}


class JobQueue:

    def __init__(
        self,
        db: Session,
        policies: Dict[str, QueuePolicy] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.policies = policies or QUEUE_POLICIES
        self.clock = clock

    def policy_for(self, queue: str) -> QueuePolicy:
        try:
            return self.policies[queue]
        except KeyError:
            raise ValueError(f"Unknown queue: {queue}")

    def enqueue(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        priority: int = 0,
        delay_seconds: float = 0,
        run_at: Optional[datetime] = None,
        ordering_key: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Job:
        """
        Add a job. With ``dedupe_key``, an existing pending/processing job
        with the same key is returned instead of creating a second one.
        """
        policy = self.policy_for(queue)

        if dedupe_key:
            existing = self.find_live(dedupe_key)
            if existing:
                logger.debug(f"[Job {existing.id}] Already queued for {dedupe_key}")
                return existing

        now = self.clock()
        job = Job(
            queue=queue,
            name=name,
            payload=payload,
            priority=priority,
            ordering_key=ordering_key,
            dedupe_key=dedupe_key,
            status="pending",
            attempts=0,
            max_attempts=policy.max_attempts,
            run_at=run_at or now + timedelta(seconds=max(0, delay_seconds)),
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_live(dedupe_key) if dedupe_key else None
            if existing:
                return existing
            raise

        self.db.refresh(job)
        logger.info(f"[Job {job.id}] Enqueued {name} on {queue} (priority {priority}, run_at {job.run_at})")
        return job

    def find_live(self, dedupe_key: str) -> Optional[Job]:
        return (
            self.db.query(Job)
            .filter(Job.dedupe_key == dedupe_key, Job.status.in_(LIVE_STATUSES))
            .first()
        )

    def claim(self, queue: str, limit: int) -> List[Job]:
        """
        Lock up to ``limit`` due jobs for this worker, highest priority first.
        A job whose ordering key has an earlier live job is left for later.
        A paused queue hands out nothing.
        """
        if self.is_paused(queue):
            logger.debug(f"[Queue] {queue} is paused, not claiming")
            return []

        now = self.clock()
        candidates = (
            self.db.query(Job)
            .filter(Job.queue == queue, Job.status == "pending", Job.run_at <= now)
            .order_by(Job.priority.desc(), Job.id)
            .limit(limit * 5)
            .all()
        )

        claimed = []
        for job in candidates:
            if len(claimed) >= limit:
                break
            if job.ordering_key and self._has_earlier_live(job):
                continue
            if self._acquire(job):
                claimed.append(job)
        return claimed

    def _has_earlier_live(self, job: Job) -> bool:
        earlier = (
            self.db.query(Job.id)
            .filter(
                Job.ordering_key == job.ordering_key,
                Job.id < job.id,
                Job.status.in_(LIVE_STATUSES),
            )
            .first()
        )
        return earlier is not None

    def _acquire(self, job: Job) -> bool:
        """Optimistic lock: only flips the row if it is still pending"""
        result = self.db.execute(
            update(Job)
            .where(Job.id == job.id, Job.status == "pending")
            .values(status="processing", updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            logger.debug(f"[Lock] Job {job.id} already claimed by another worker")
            return False

        self.db.refresh(job)
        return True

    def complete(self, job: Job) -> None:
        now = self.clock()
        job.status = "completed"
        job.completed_at = now
        job.updated_at = now
        self.db.commit()
        logger.info(f"[Job {job.id}] {job.name} completed")

    def fail(self, job: Job, error: str, retryable: bool = True) -> bool:
        """
        Record a failed run. Returns True when the job was rescheduled,
        False when it is now permanently failed.
        """
        now = self.clock()
        job.attempts += 1
        job.last_error = (error or "")[:1000]
        job.updated_at = now

        if not retryable or job.attempts >= job.max_attempts:
            job.status = "failed"
            self.db.commit()
            logger.error(f"[Job {job.id}] {job.name} failed permanently after {job.attempts} attempts: {error}")
            return False

        delay = self.policy_for(job.queue).backoff.compute_delay(job.attempts)
        job.status = "pending"
        job.run_at = now + timedelta(seconds=delay)
        self.db.commit()
        logger.warning(
            f"[Job {job.id}] {job.name} failed (attempt {job.attempts}/{job.max_attempts}), "
            f"retrying in {delay:.1f}s: {error}"
        )
        return True

    def recover_stale(self, timeout_minutes: int = 10) -> int:
        """Jobs stuck in 'processing' (worker crashed mid-run) go back to pending."""
        cutoff = self.clock() - timedelta(minutes=timeout_minutes)
        stuck_jobs = (
            self.db.query(Job)
            .filter(Job.status == "processing", Job.updated_at < cutoff)
            .all()
        )

        for job in stuck_jobs:
            job.attempts += 1
            job.last_error = f"Recovered from stuck 'processing' state after {timeout_minutes} minutes"
            job.updated_at = self.clock()
            if job.attempts >= job.max_attempts:
                job.status = "failed"
                logger.error(f"[Recovery] Job {job.id} marked as failed after recovery (max attempts reached)")
            else:
                job.status = "pending"
                job.run_at = self.clock()
                logger.warning(f"[Recovery] Job {job.id} recovered from stuck state (attempt {job.attempts}/{job.max_attempts})")

        if stuck_jobs:
            self.db.commit()
            logger.info(f"[Recovery] Recovered {len(stuck_jobs)} stuck jobs")
        return len(stuck_jobs)

    def retry_job(self, job_id: int) -> Optional[Job]:
        """Put a permanently failed job back in the queue with a fresh attempt budget"""
        job = self.db.get(Job, job_id)
        if not job or job.status != "failed":
            return None
        job.status = "pending"
        job.attempts = 0
        job.last_error = None
        job.run_at = self.clock()
        try:
            self.db.commit()
        except IntegrityError:
            # a newer live job already holds the dedupe key
            self.db.rollback()
            return None
        return job

    def stats(self) -> Dict[str, Dict[str, int]]:
        rows = (
            self.db.query(Job.queue, Job.status, func.count(Job.id))
            .group_by(Job.queue, Job.status)
            .all()
        )
        stats = {queue: {status: 0 for status in JOB_STATUSES} for queue in self.policies}
        for queue, status, count in rows:
            stats.setdefault(queue, {s: 0 for s in JOB_STATUSES})[status] = count
        return stats

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    def pause(self, queue: str, reason: Optional[str] = None) -> QueueControl:
        """Stop handing out jobs from ``queue``; enqueueing still works."""
        control = self._control(queue)
        if not control.paused:
            control.paused = True
            control.paused_at = self.clock()
        control.reason = reason
        control.updated_at = self.clock()
        self.db.commit()
        logger.warning(f"⏸️ Queue {queue} paused{': ' + reason if reason else ''}")
        return control

    def resume(self, queue: str) -> QueueControl:
        control = self._control(queue)
        control.paused = False
        control.paused_at = None
        control.reason = None
        control.updated_at = self.clock()
        self.db.commit()
        logger.info(f"▶️ Queue {queue} resumed")
        return control

    def is_paused(self, queue: str) -> bool:
        control = self.db.get(QueueControl, queue)
        return bool(control and control.paused)

    def queue_status(self) -> Dict[str, Dict[str, Any]]:
        controls = {c.queue: c for c in self.db.query(QueueControl).all()}
        counts = self.stats()
        status = {}
        for queue in self.policies:
            control = controls.get(queue)
            status[queue] = {
                "paused": bool(control and control.paused),
                "paused_at": control.paused_at if control else None,
                "reason": control.reason if control else None,
                "jobs": counts.get(queue, {}),
            }
        return status

    def _control(self, queue: str) -> QueueControl:
        self.policy_for(queue)
        control = self.db.get(QueueControl, queue)
        if control is None:
            control = QueueControl(queue=queue, paused=False)
            self.db.add(control)
        return control
