import concurrent.futures
import logging
import threading
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Protocol
from pydantic import BaseModel
from vproc.config.models import ProcessingConfig
from vproc.domain.errors import (
    InvalidStateTransitionError,
    JobCancelledError,
    JobNotFoundError,
    ProcessingError,
    ProcessingTimedOutError,
)
from vproc.domain.events import JobCancelled, JobCompleted, JobCreated, JobFailed, JobProgress, JobStarted
from vproc.domain.models import (
    ErrorKind,
    JobError,
    JobState,
    ProcessingJob,
    ProcessingRequest,
    ProcessingResult,
    ResolvedParameters,
    SourceMetadata,
    TranscodeResult,
)
from vproc.domain.state import validate_job_transition
from vproc.infrastructure.event_bus import EventBus
from vproc.infrastructure.ffmpeg import ProgressCallback
from vproc.infrastructure.memory_ledger import MemoryStats, ResourceLedger
from vproc.pipeline.enrichment import ContentEnrichmentAdapter
from vproc.pipeline.resolver import resolve_parameters
from vproc.pipeline.validator import InputValidator

logger = logging.getLogger(__name__)

# Progress milestones
PROGRESS_VALIDATED = 10
PROGRESS_ENRICHED = 30
PROGRESS_EXECUTION_START = 40
PROGRESS_EXECUTION_SPAN = 50
PROGRESS_EXECUTION_DONE = 95

ENCODER_POLL_INTERVAL = 0.05


class Encoder(Protocol):
    def transcode(
        self,
        source: Path,
        dest: Path,
        params: ResolvedParameters,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscodeResult: ...


class ProcessingStats(BaseModel):
    total_jobs: int
    queued: int
    processing: int
    completed: int
    failed: int
    cancelled: int
    success_rate: float
    avg_processing_time: float
    ledger_usage: MemoryStats


class _JobRecord:
    """Live job state; never handed out, readers get snapshots."""

    def __init__(self, job: ProcessingJob):
        self.job = job
        self.cancel_requested = threading.Event()
        # Tells the encoder to stop (user cancel or timeout)
        self.abort = threading.Event()
        self.done = threading.Event()
        # Serialises encoder progress events against the terminal event
        self.emit_lock = threading.Lock()
        self.abandoned = False


class JobOrchestrator:
    """Owns job records and runs each job through validation, enrichment,
    admission, resolution and encoding on a bounded worker pool.

    At most ``max_concurrent_jobs`` jobs are PROCESSING at any time; later
    submissions stay QUEUED until a worker frees up.
    """

    def __init__(
        self,
        config: ProcessingConfig,
        event_bus: EventBus,
        validator: InputValidator,
        ledger: ResourceLedger,
        encoder: Encoder,
        enrichment: Optional[ContentEnrichmentAdapter] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.validator = validator
        self.ledger = ledger
        self.encoder = encoder
        self.enrichment = enrichment

        self._jobs: Dict[str, _JobRecord] = {}
        self._lock = threading.RLock()
        self._closed = False
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.max_concurrent_jobs, thread_name_prefix="vproc-job"
        )

    # Public API

    def submit(self, request: ProcessingRequest) -> str:
        job = ProcessingJob(id=f"job_{uuid.uuid4().hex[:12]}", request=request)
        record = _JobRecord(job)
        with self._lock:
            if self._closed:
                raise RuntimeError("Orchestrator is shut down")
            self._jobs[job.id] = record
            snapshot = job.model_copy(deep=True)

        logger.info(f"Job {job.id} created: {request.source} -> {request.destination}")
        self.event_bus.publish(JobCreated(job=snapshot))

        try:
            self._executor.submit(self._run_job, record)
        except RuntimeError as e:
            self._finish(record, JobState.FAILED, error=JobError(kind=ErrorKind.INTERNAL, message=str(e)))
        return job.id

    def get_job(self, job_id: str) -> ProcessingJob:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            return record.job.model_copy(deep=True)

    def list_jobs(self) -> List[ProcessingJob]:
        """All jobs, newest first."""
        with self._lock:
            return [r.job.model_copy(deep=True) for r in reversed(list(self._jobs.values()))]

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.job.is_terminal:
                return False
            record.cancel_requested.set()
            record.abort.set()
        logger.info(f"Job {job_id} cancellation requested")
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> ProcessingJob:
        """Blocks until the job is terminal (or timeout) and returns its snapshot."""
        with self._lock:
            record = self._jobs.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        record.done.wait(timeout)
        return self.get_job(job_id)

    def stats(self) -> ProcessingStats:
        with self._lock:
            jobs = [r.job for r in self._jobs.values()]
            counts = {state: 0 for state in JobState}
            for job in jobs:
                counts[job.state] += 1
            durations = [
                job.processing_time_seconds for job in jobs
                if job.state == JobState.COMPLETED and job.processing_time_seconds is not None
            ]

        total = len(jobs)
        return ProcessingStats(
            total_jobs=total,
            queued=counts[JobState.QUEUED],
            processing=counts[JobState.PROCESSING],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.FAILED],
            cancelled=counts[JobState.CANCELLED],
            success_rate=counts[JobState.COMPLETED] / total * 100 if total else 0.0,
            avg_processing_time=sum(durations) / len(durations) if durations else 0.0,
            ledger_usage=self.ledger.stats(),
        )

    def cleanup_old_jobs(self, max_age_seconds: Optional[float] = None) -> int:
        """Evicts terminal jobs that finished more than max_age_seconds ago."""
        max_age = self.config.job_max_age_seconds if max_age_seconds is None else max_age_seconds
        cutoff = datetime.now() - timedelta(seconds=max_age)
        with self._lock:
            stale = [
                job_id for job_id, r in self._jobs.items()
                if r.job.is_terminal and r.job.completed_at is not None and r.job.completed_at <= cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        logger.info(f"Cleaned up old jobs: {len(stale)}")
        return len(stale)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False):
        with self._lock:
            self._closed = True
            records = list(self._jobs.values())
        if cancel_pending:
            for record in records:
                if not record.job.is_terminal:
                    record.cancel_requested.set()
                    record.abort.set()
        self._executor.shutdown(wait=wait)
        if self.enrichment is not None:
            self.enrichment.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True, cancel_pending=exc_type is not None)

    # Job execution

    def _transition(self, record: _JobRecord, target: JobState, **updates) -> ProcessingJob:
        with self._lock:
            validate_job_transition(record.job.state, target)
            record.job.state = target
            for key, value in updates.items():
                setattr(record.job, key, value)
            return record.job.model_copy(deep=True)

    def _set_progress(self, record: _JobRecord, percent: int):
        with record.emit_lock:
            if record.abandoned:
                return
            with self._lock:
                if percent <= record.job.progress or record.job.is_terminal:
                    return
                record.job.progress = percent
                snapshot = record.job.model_copy(deep=True)
            self.event_bus.publish(JobProgress(job=snapshot, percent=percent))

    def _checkpoint(self, record: _JobRecord):
        if record.cancel_requested.is_set():
            raise JobCancelledError("Cancelled by user")

    def _finish(
        self,
        record: _JobRecord,
        target: JobState,
        error: Optional[JobError] = None,
        result: Optional[ProcessingResult] = None,
    ):
        with record.emit_lock:
            record.abandoned = True
        updates = {"completed_at": datetime.now(), "error": error, "result": result}
        if target == JobState.COMPLETED:
            updates["progress"] = 100
        try:
            snapshot = self._transition(record, target, **updates)
        except InvalidStateTransitionError:
            logger.exception(f"Job {record.job.id} could not be finished as {target.value}")
            record.done.set()
            return

        if target == JobState.COMPLETED:
            self.event_bus.publish(JobCompleted(job=snapshot, result=result))
        elif target == JobState.CANCELLED:
            self.event_bus.publish(JobCancelled(job=snapshot, reason=error.message if error else None))
        else:
            self.event_bus.publish(JobFailed(job=snapshot, error=error))
        record.done.set()

    def _run_job(self, record: _JobRecord):
        job_id = record.job.id
        request = record.job.request
        try:
            started = self._transition(record, JobState.PROCESSING, started_at=datetime.now())
        except InvalidStateTransitionError:
            logger.exception(f"Job {job_id} could not be started")
            return
        logger.info(f"Job {job_id} started")
        self.event_bus.publish(JobStarted(job=started))
        start_time = time.monotonic()

        try:
            result = self._process(record, request)
            result.processing_time_seconds = time.monotonic() - start_time
            logger.info(
                f"Job {job_id} completed in {result.processing_time_seconds:.2f}s "
                f"(ratio={result.parameters.compression_ratio:.6f}, score={result.parameters.quality_score:.2f})"
            )
            self._finish(record, JobState.COMPLETED, result=result)
        except JobCancelledError as e:
            logger.info(f"Job {job_id} cancelled: {e}")
            self._finish(record, JobState.CANCELLED, error=JobError(kind=ErrorKind.CANCELLED, message=str(e)))
        except ProcessingError as e:
            logger.error(f"Job {job_id} failed [{e.kind.value}]: {e}")
            self._finish(record, JobState.FAILED, error=JobError(kind=e.kind, message=str(e)))
        except Exception as e:
            logger.exception(f"Exception processing job {job_id}")
            self._finish(record, JobState.FAILED, error=JobError(kind=ErrorKind.INTERNAL, message=f"Exception: {e}"))

    def _process(self, record: _JobRecord, request: ProcessingRequest) -> ProcessingResult:
        job_id = record.job.id

        # 1. Validation
        self._checkpoint(record)
        metadata = self.validator.validate_source(request.source)
        self._set_progress(record, PROGRESS_VALIDATED)

        # 2. Enrichment (never fails the job)
        options = request.options
        enrichment_applied = False
        if request.enrich and self.enrichment is not None:
            self._checkpoint(record)
            enrichment = self.enrichment.enrich(request.source, metadata)
            options, enrichment_applied = self.enrichment.merge(options, enrichment, metadata)
            self._set_progress(record, PROGRESS_ENRICHED)

        self.validator.validate_options(options, metadata)
        with self._lock:
            record.job.options = options.model_copy()

        # 3. Admission, resolution and execution
        self._checkpoint(record)
        working_set = int(metadata.byte_size * self.config.working_set_factor)
        with self.ledger.reservation(job_id, working_set):
            params = resolve_parameters(options, metadata)
            self._set_progress(record, PROGRESS_EXECUTION_START)
            self._checkpoint(record)
            transcode = self._execute(record, request, params)
            self._set_progress(record, PROGRESS_EXECUTION_DONE)

        return ProcessingResult(
            output_path=request.destination,
            output_metadata=_output_metadata(metadata, params, transcode),
            parameters=params,
            output_byte_size=transcode.output_byte_size,
            processing_time_seconds=0.0,
            enrichment_applied=enrichment_applied,
        )

    def _execute(self, record: _JobRecord, request: ProcessingRequest, params: ResolvedParameters) -> TranscodeResult:
        """Runs the encoder on its own thread and waits in short slices for
        completion, cancellation or the deadline."""
        timeout = request.timeout_seconds or self.config.encoder_timeout_seconds

        def on_progress(percent: float):
            self._set_progress(record, PROGRESS_EXECUTION_START + int(percent * PROGRESS_EXECUTION_SPAN / 100))

        future: concurrent.futures.Future = concurrent.futures.Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.encoder.transcode(
                    request.source, request.destination, params,
                    cancel_event=record.abort, on_progress=on_progress,
                ))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=run, name=f"vproc-encoder-{record.job.id}", daemon=True).start()

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            done, _ = concurrent.futures.wait([future], timeout=max(0.0, min(ENCODER_POLL_INTERVAL, remaining)))
            if done:
                break
            if record.cancel_requested.is_set():
                self._abandon_encoder(record)
                raise JobCancelledError("Cancelled by user")
            if time.monotonic() >= deadline:
                self._abandon_encoder(record)
                raise ProcessingTimedOutError(f"Encoder did not finish within {timeout:g}s")

        return future.result()

    def _abandon_encoder(self, record: _JobRecord):
        with record.emit_lock:
            record.abandoned = True
        record.abort.set()


def _output_metadata(metadata: SourceMetadata, params: ResolvedParameters, transcode: TranscodeResult) -> SourceMetadata:
    return metadata.model_copy(update={
        "width": params.width,
        "height": params.height,
        "bitrate": params.bitrate,
        "frame_rate": params.frame_rate,
        "format": params.output_format,
        "byte_size": transcode.output_byte_size,
        "duration": params.duration or metadata.duration,
        "has_audio": metadata.has_audio and not params.remove_audio,
        "audio_codec": None if params.remove_audio else metadata.audio_codec,
    })
