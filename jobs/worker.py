"""
Job worker: polls the job table on an apscheduler BackgroundScheduler.

One interval job per queue claims up to the queue's concurrency and runs the
claimed jobs concurrently on a fresh event loop. Maintenance jobs recover
stuck jobs, enqueue replies that were never queued, remove expired sessions
and prune old webhook logs.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.cache import SessionCache
from sessions.service import SessionService
from shared_utils.errors import DeliveryFailed, PermanentProviderError, ValidationError
from webhook.service import enqueue_missing_replies, prune_webhook_logs
from .handlers import JobHandlers
from .models import Job
from .queue import JobQueue, QUEUE_POLICIES

logger = logging.getLogger(__name__)

# Not worth another attempt: bad input or a provider rejection
NON_RETRYABLE_ERRORS = (ValidationError, PermanentProviderError, ValueError)


class JobWorker:
    """Manages the polling and maintenance schedule for the job queues"""

    def __init__(
        self,
        session_factory: Callable,
        handlers: JobHandlers,
        settings,
        cache: SessionCache,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.settings = settings
        self.cache = cache
        self.scheduler = scheduler or BackgroundScheduler()
        self.is_running = False
        self.last_poll: Dict[str, Optional[str]] = {queue: None for queue in QUEUE_POLICIES}

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll(self, queue_name: str) -> int:
        """Claim and run one round of due jobs. Returns how many ran."""
        policy = QUEUE_POLICIES[queue_name]
        db = self.session_factory()
        try:
            jobs = JobQueue(db).claim(queue_name, policy.concurrency)
            job_ids = [job.id for job in jobs]
        except Exception as e:
            logger.error(f"[Worker] Error claiming jobs on {queue_name}: {e}")
            db.rollback()
            return 0
        finally:
            db.close()

        self.last_poll[queue_name] = datetime.utcnow().isoformat()
        if not job_ids:
            return 0

        logger.info(f"[Worker] Running {len(job_ids)} jobs from {queue_name}")
        asyncio.run(self._run_batch(job_ids))
        return len(job_ids)

    async def _run_batch(self, job_ids: List[int]) -> None:
        await asyncio.gather(*(self._run_one(job_id) for job_id in job_ids))

    async def _run_one(self, job_id: int) -> None:
        db = self.session_factory()
        try:
            queue = JobQueue(db)
            job = db.get(Job, job_id)
            if job is None or job.status != "processing":
                return

            try:
                outcome = await self.handlers.run(job, db)
            except DeliveryFailed as e:
                db.rollback()
                queue.fail(job, str(e), retryable=True)
            except NON_RETRYABLE_ERRORS as e:
                db.rollback()
                queue.fail(job, f"{type(e).__name__}: {e}", retryable=False)
            except Exception as e:
                logger.error(f"[Job {job_id}] Unexpected error: {e}", exc_info=True)
                db.rollback()
                queue.fail(job, f"{type(e).__name__}: {e}", retryable=True)
            else:
                logger.debug(f"[Job {job_id}] outcome: {outcome}")
                queue.complete(job)
        except Exception as e:
            logger.error(f"[Job {job_id}] Error recording job outcome: {e}")
            db.rollback()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def recover_stale_jobs(self) -> int:
        db = self.session_factory()
        try:
            return JobQueue(db).recover_stale(self.settings.job_stale_timeout_minutes)
        except Exception as e:
            logger.error(f"[Recovery] Error recovering stale jobs: {e}")
            db.rollback()
            return 0
        finally:
            db.close()

    def enqueue_missing_replies(self) -> int:
        db = self.session_factory()
        try:
            return enqueue_missing_replies(db)
        except Exception as e:
            logger.error(f"Error enqueueing missing replies: {e}")
            db.rollback()
            return 0
        finally:
            db.close()

    def cleanup_sessions(self) -> int:
        db = self.session_factory()
        try:
            return SessionService(db, self.cache, self.settings.session_ttl_seconds).cleanup_expired()
        except Exception as e:
            logger.error(f"Error cleaning up expired sessions: {e}")
            db.rollback()
            return 0
        finally:
            db.close()

    def prune_webhook_logs(self) -> int:
        db = self.session_factory()
        try:
            return prune_webhook_logs(db, self.settings.webhook_log_retention_days)
        except Exception as e:
            logger.error(f"Error pruning webhook logs: {e}")
            db.rollback()
            return 0
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self.is_running:
            logger.warning("Job worker is already running")
            return

        interval = self.settings.job_poll_interval_seconds
        for queue_name in QUEUE_POLICIES:
            self.scheduler.add_job(
                func=self.poll,
                trigger=IntervalTrigger(seconds=interval),
                args=[queue_name],
                id=f"poll_{queue_name}",
                name=f"Poll {queue_name}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.add_job(
            func=self.recover_stale_jobs,
            trigger=IntervalTrigger(minutes=1),
            id="recover_stale_jobs",
            name="Recover stuck jobs",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            func=self.enqueue_missing_replies,
            trigger=IntervalTrigger(minutes=1),
            id="enqueue_missing_replies",
            name="Enqueue missing replies",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            func=self.cleanup_sessions,
            trigger=IntervalTrigger(minutes=15),
            id="cleanup_sessions",
            name="Remove expired sessions",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            func=self.prune_webhook_logs,
            trigger=IntervalTrigger(hours=1),
            id="prune_webhook_logs",
            name="Prune webhook logs",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self.is_running = True
        logger.info(f"✅ Job worker started (polling every {interval}s)")

    def stop(self):
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Job worker stopped")

    def get_status(self) -> Dict:
        jobs = self.scheduler.get_jobs() if self.is_running else []
        return {
            "is_running": self.is_running,
            "last_poll": self.last_poll,
            "scheduled_jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                }
                for job in jobs
            ],
        }
