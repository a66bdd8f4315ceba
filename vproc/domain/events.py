from typing import Optional
from pydantic import BaseModel
from vproc.domain.models import JobError, ProcessingJob, ProcessingResult


class Event(BaseModel):
    """Base class for all domain events."""
    pass


class JobEvent(Event):
    job: ProcessingJob

    @property
    def job_id(self) -> str:
        return self.job.id


class JobCreated(JobEvent):
    pass


class JobStarted(JobEvent):
    pass


class JobProgress(JobEvent):
    percent: int


class JobCompleted(JobEvent):
    result: ProcessingResult


class JobFailed(JobEvent):
    error: JobError


class JobCancelled(JobEvent):
    reason: Optional[str] = None
