import logging
from typing import Awaitable, Callable, Dict

from scribe.models import Job
from scribe.services.transcription_job import JobOutcome

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[JobOutcome]]


class Dispatcher:
    """Closed registry of job handlers keyed by job type."""

    def __init__(self, handlers: Dict[str, Handler]):
        self._handlers = {getattr(k, "value", k): v for k, v in handlers.items()}

    @property
    def job_types(self):
        return sorted(self._handlers)

    async def dispatch(self, job: Job) -> JobOutcome:
        job_type = getattr(job.job_type, "value", job.job_type)
        handler = self._handlers.get(job_type)
        if handler is None:
            logger.error("No handler for job %s of type %r", job.id, job_type)
            return JobOutcome.failure(
                f"Unknown job type {job_type!r}; supported: {', '.join(self.job_types) or 'none'}"
            )
        return await handler(job)
