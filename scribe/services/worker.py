# scribe/services/worker.py
"""Worker loop: claim a bounded batch of pending jobs and drive them through the dispatcher."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from scribe import background
from scribe.errors import StoreError, is_retryable
from scribe.jobs import JobFilter, JobStore
from scribe.models import CLAIMABLE_STATUSES, Job, JobStatus, JobType, LogLevel, ProgressStage, utcnow
from scribe.services.dispatcher import Dispatcher
from scribe.services.transcription_job import JobOutcome, TranscriptionHandler
from scribe.settings.config import settings

logger = logging.getLogger(__name__)

CONTINUOUS_TASK_NAME = "scribe-worker-loop"


class Worker:
    def __init__(self, store: JobStore, dispatcher: Dispatcher, *, requeue_transient: Optional[bool] = None):
        self.store = store
        self.dispatcher = dispatcher
        self.requeue_transient = (
            settings.REQUEUE_TRANSIENT_FAILURES if requeue_transient is None else requeue_transient
        )
        self.passes = 0
        self.last_run_at: Optional[datetime] = None
        self.last_processed = 0
        self._stop: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # single pass
    # ------------------------------------------------------------------
    async def run_batch(self, max_jobs: int = 10) -> Dict[str, Any]:
        """Process up to ``max_jobs`` claimable jobs, oldest first, one at a time."""
        results: List[Dict[str, Any]] = []
        await self._sweep_exhausted()
        try:
            jobs = await self.store.list_jobs(
                JobFilter(statuses=CLAIMABLE_STATUSES, exhausted=False, limit=max_jobs)
            )
        except StoreError:
            logger.exception("Worker could not list pending jobs")
            jobs = []

        for job in jobs:
            try:
                claimed = await self.store.claim_job(job.id)
            except StoreError as e:
                logger.warning("Claim of job %s failed: %s", job.id, e)
                continue
            if claimed is None:
                logger.debug("Job %s was claimed elsewhere; skipping", job.id)
                continue

            logger.info("Processing job %s (%s), attempt %d/%d",
                        claimed.id, claimed.job_type, claimed.attempts, claimed.max_attempts)
            await self.store.log(claimed.id, f"Started attempt {claimed.attempts} of {claimed.max_attempts}")
            try:
                outcome = await self.dispatcher.dispatch(claimed)
            except Exception as e:  # noqa: BLE001
                logger.exception("Handler raised for job %s", claimed.id)
                outcome = JobOutcome.failure(str(e) or e.__class__.__name__, retryable=is_retryable(e))

            results.append(await self._finish(claimed, outcome))

        self.passes += 1
        self.last_run_at = utcnow()
        self.last_processed = len(results)
        return {"processed": len(results), "results": results}

    async def _finish(self, job: Job, outcome: JobOutcome) -> Dict[str, Any]:
        now = utcnow()
        if outcome.success:
            status = JobStatus.completed
            patch = {"status": status, "completed_at": now, "result": outcome.result,
                     "error_message": None, "progress_stage": ProgressStage.done}
        elif self.requeue_transient and outcome.retryable and job.attempts < job.max_attempts:
            status = JobStatus.retrying
            patch = {"status": status, "completed_at": None, "error_message": outcome.error,
                     "progress_stage": ProgressStage.queued}
        else:
            status = JobStatus.failed
            patch = {"status": status, "completed_at": now, "result": outcome.result,
                     "error_message": outcome.error}

        entry = {"job_id": job.id, "job_type": job.job_type, "status": status.value, "success": outcome.success}
        if outcome.success:
            entry["result"] = outcome.result
        else:
            entry["error"] = outcome.error
        try:
            written = await self.store.update_job(job.id, patch, expected_status=JobStatus.processing)
        except StoreError as e:
            # left in processing; the stuck-job reclaimer picks it up later
            logger.error("Could not record %s for job %s: %s", status.value, job.id, e)
            entry["status"] = JobStatus.processing.value
            entry["error"] = f"Failed to record job status: {e}"
            return entry
        if not written:
            return await self._superseded(job, entry, status)

        if outcome.success:
            logger.info("Job %s completed", job.id)
            await self.store.log(job.id, "Job completed")
        else:
            logger.warning("Job %s %s: %s", job.id, status.value, outcome.error)
            level = LogLevel.warning if status == JobStatus.retrying else LogLevel.error
            await self.store.log(job.id, f"Job {status.value}: {outcome.error}", level)
        return entry

    async def _superseded(self, job: Job, entry: Dict[str, Any], status: JobStatus) -> Dict[str, Any]:
        """The row left ``processing`` while the handler ran (reclaimed or reset); report what it holds now."""
        try:
            current = await self.store.get_job(job.id)
        except StoreError as e:
            logger.warning("Could not reload superseded job %s: %s", job.id, e)
            current = None
        now_status = getattr(current.status, "value", current.status) if current is not None else "missing"
        logger.warning("Job %s moved to %s before its %s result was recorded; result dropped",
                       job.id, now_status, status.value)
        entry["status"] = now_status
        entry["superseded"] = True
        return entry

    async def _sweep_exhausted(self) -> None:
        try:
            exhausted = await self.store.list_jobs(JobFilter(statuses=CLAIMABLE_STATUSES, exhausted=True))
        except StoreError:
            logger.exception("Worker could not list exhausted jobs")
            return
        for job in exhausted:
            await self._exhaust(job)

    async def _exhaust(self, job: Job) -> None:
        msg = f"Job exceeded maximum attempts ({job.attempts}/{job.max_attempts})"
        try:
            done = await self.store.update_job(
                job.id,
                {"status": JobStatus.failed, "completed_at": utcnow(), "error_message": msg,
                 "result": {"success": False, "error": msg}},
                expected_status=job.status,
            )
        except StoreError as e:
            logger.warning("Could not fail exhausted job %s: %s", job.id, e)
            return
        if done:
            logger.warning("Job %s: %s", job.id, msg)
            await self.store.log(job.id, msg, LogLevel.error)

    # ------------------------------------------------------------------
    # continuous mode
    # ------------------------------------------------------------------
    @property
    def continuous_running(self) -> bool:
        return background.is_running(CONTINUOUS_TASK_NAME)

    async def run_forever(self, max_jobs: int, poll_interval: float) -> None:
        if self._stop is None:
            self._stop = asyncio.Event()
        logger.info("Continuous worker started (max_jobs=%d, every %.1fs)", max_jobs, poll_interval)
        try:
            while not self._stop.is_set():
                try:
                    report = await self.run_batch(max_jobs)
                    if report["processed"]:
                        logger.info("Worker pass processed %d job(s)", report["processed"])
                except Exception:  # noqa: BLE001
                    logger.exception("Worker pass failed")
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._stop = None
            logger.info("Continuous worker stopped after %d pass(es)", self.passes)

    def start_continuous(self, max_jobs: int, poll_interval: Optional[float] = None) -> bool:
        """Spawn the loop as a background task. False if one is already running."""
        if self.continuous_running:
            return False
        interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        self._stop = asyncio.Event()
        background.spawn(self.run_forever(max_jobs, interval), name=CONTINUOUS_TASK_NAME)
        return True

    async def stop_continuous(self, timeout: float = 30.0) -> bool:
        """Let the current pass finish, then end the loop; cancel it if it overruns ``timeout``."""
        task = background.get_task(CONTINUOUS_TASK_NAME)
        if task is None or task.done():
            return False
        if self._stop is not None:
            self._stop.set()
        await asyncio.wait({task}, timeout=timeout)
        if not task.done():
            await background.cancel(CONTINUOUS_TASK_NAME)
        return True

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "continuous_running": self.continuous_running,
            "passes": self.passes,
            "last_run_at": self.last_run_at,
            "last_processed": self.last_processed,
        }


def build_worker(store: Optional[JobStore] = None) -> Worker:
    from scribe.jobs import default_store
    from scribe.storage import StorageClient
    from scribe.stt_client import ElevenLabsClient

    storage = StorageClient()
    store = store or default_store()
    handler = TranscriptionHandler(store, ElevenLabsClient(), storage)
    return Worker(store, Dispatcher({JobType.transcription: handler}))


_worker: Optional[Worker] = None


def get_worker() -> Worker:
    global _worker
    if _worker is None:
        _worker = build_worker()
    return _worker
