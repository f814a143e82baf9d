# scribe/services/reclaimer.py
import logging
from datetime import timedelta
from typing import Dict

from scribe.jobs import JobFilter, JobStore
from scribe.models import JobStatus, JobType, LogLevel, ProgressStage, TranscriptionStatus, utcnow

logger = logging.getLogger(__name__)


async def reset_stuck_jobs(store: JobStore, max_time_minutes: int = 30) -> Dict[str, int]:
    """Put jobs stuck in ``processing`` for longer than ``max_time_minutes`` back to ``pending``.

    A job that finished between the scan and the reset is left alone (the reset
    is conditional on the row still being ``processing``). ``attempts`` is
    bumped so a job that keeps hanging eventually runs out of attempts.
    """
    cutoff = utcnow() - timedelta(minutes=max_time_minutes)
    stuck = await store.list_jobs(JobFilter(statuses=[JobStatus.processing], started_before=cutoff))
    reset_count = 0
    failed_resets = 0

    for job in stuck:
        msg = (
            f"Job was stuck in processing state for more than {max_time_minutes} minutes "
            f"and was automatically reset"
        )
        try:
            changed = await store.update_job(
                job.id,
                {
                    "status": JobStatus.pending,
                    "started_at": None,
                    "completed_at": None,
                    "error_message": msg,
                    "attempts": min(job.attempts + 1, job.max_attempts),
                    "progress_stage": ProgressStage.queued,
                },
                expected_status=JobStatus.processing,
            )
            if not changed:
                logger.info("Job %s left processing before it could be reset", job.id)
                continue

            tid = (job.payload or {}).get("transcription_id")
            if job.job_type == JobType.transcription.value and tid:
                await store.update_transcription(
                    tid,
                    {
                        "status": TranscriptionStatus.pending,
                        "error_message": f"Reset due to stuck job after {max_time_minutes} minutes",
                    },
                )
            reset_count += 1
            await store.log(job.id, msg, LogLevel.warning)
        except Exception:  # noqa: BLE001
            failed_resets += 1
            logger.exception("Failed to reset stuck job %s", job.id)

    if stuck:
        logger.warning("Reclaimer: %d stuck job(s), %d reset, %d failed", len(stuck), reset_count, failed_resets)
    return {"reset_count": reset_count, "total_found": len(stuck), "failed_resets": failed_resets}


async def reset_job(store: JobStore, job_id: str) -> bool:
    """Manual reset of one job (any status) to a fresh ``pending`` with its attempt count cleared."""
    job = await store.get_job(job_id)
    if job is None:
        return False
    await store.update_job(
        job_id,
        {
            "status": JobStatus.pending,
            "attempts": 0,
            "started_at": None,
            "completed_at": None,
            "result": None,
            "error_message": None,
            "progress_stage": ProgressStage.queued,
        },
    )
    tid = (job.payload or {}).get("transcription_id")
    if tid:
        try:
            await store.update_transcription(tid, {"status": TranscriptionStatus.pending, "error_message": None})
        except Exception:  # noqa: BLE001
            logger.warning("Job %s reset but transcription %s was not", job_id, tid, exc_info=True)
    await store.log(job_id, "Job manually reset to pending")
    return True
