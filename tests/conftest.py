import threading
import pytest
from pathlib import Path
from typing import List, Optional
from vproc.config.models import ProcessingConfig
from vproc.domain.errors import EncoderFailedError, JobCancelledError
from vproc.domain.events import Event
from vproc.domain.models import EnrichmentResult, ResolvedParameters, SourceMetadata, TranscodeResult
from vproc.infrastructure.artifact_store import LocalArtifactStore
from vproc.infrastructure.event_bus import EventBus
from vproc.infrastructure.memory_ledger import ResourceLedger
from vproc.pipeline.enrichment import ContentEnrichmentAdapter
from vproc.pipeline.orchestrator import JobOrchestrator
from vproc.pipeline.validator import InputValidator

MP4_HEADER = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00"
MB = 1024 * 1024


def make_metadata(**overrides) -> SourceMetadata:
    values = dict(
        duration=120.0,
        width=1920,
        height=1080,
        frame_rate=30.0,
        bitrate=5_000_000,
        codec="h264",
        audio_codec="aac",
        byte_size=100 * MB,
        format="mp4",
        has_audio=True,
        color_space="yuv420p",
        aspect_ratio="16:9",
    )
    values.update(overrides)
    return SourceMetadata(**values)


class FakeProbe:
    """Returns fixed stream metadata, taking size and format from the validator."""

    def __init__(self, **overrides):
        self.overrides = overrides
        self.calls = 0

    def probe(self, file_path: Path, byte_size: int, format_name: str) -> SourceMetadata:
        self.calls += 1
        return make_metadata(**{"byte_size": byte_size, "format": format_name, **self.overrides})


class FakeEncoder:
    """Writes a small output file, reporting progress in steps.

    With ``gate`` set, blocks after the first progress step until the gate or
    the abort event is set. ``ignore_abort`` makes it keep blocking on the gate.
    """

    def __init__(
        self,
        output_bytes: int = 1000,
        steps: int = 4,
        gate: Optional[threading.Event] = None,
        fail: bool = False,
        ignore_abort: bool = False,
    ):
        self.output_bytes = output_bytes
        self.steps = steps
        self.gate = gate
        self.fail = fail
        self.ignore_abort = ignore_abort
        self.calls: List[ResolvedParameters] = []
        self.entered = threading.Event()
        self._active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def transcode(self, source, dest, params, cancel_event=None, on_progress=None) -> TranscodeResult:
        with self._lock:
            self.calls.append(params)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if on_progress:
                on_progress(100 / self.steps)
            self.entered.set()
            if self.gate is not None:
                while not self.gate.wait(0.01):
                    if cancel_event is not None and cancel_event.is_set() and not self.ignore_abort:
                        raise JobCancelledError("encoder aborted")
            if self.fail:
                raise EncoderFailedError("ffmpeg exited with code 1")
            for step in range(2, self.steps + 1):
                if on_progress:
                    on_progress(step * 100 / self.steps)
            Path(dest).parent.mkdir(parents=True, exist_ok=True)
            Path(dest).write_bytes(b"\0" * self.output_bytes)
            return TranscodeResult(output_byte_size=self.output_bytes)
        finally:
            with self._lock:
                self._active -= 1


class FakeAnalyzer:
    def __init__(self, result: Optional[EnrichmentResult] = None, error: Optional[Exception] = None,
                 block: Optional[threading.Event] = None):
        self.result = result or EnrichmentResult()
        self.error = error
        self.block = block
        self.calls = 0
        self.closed = False

    def analyze(self, source: Path, metadata: SourceMetadata) -> EnrichmentResult:
        self.calls += 1
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        return self.result

    def close(self):
        self.closed = True


class EventRecorder:
    def __init__(self, bus: EventBus):
        self.events: List[Event] = []
        self._lock = threading.Lock()
        bus.subscribe(Event, self)

    def __call__(self, event: Event):
        with self._lock:
            self.events.append(event)

    def for_job(self, job_id: str) -> List[Event]:
        with self._lock:
            return [e for e in self.events if getattr(e, "job", None) is not None and e.job.id == job_id]

    def names(self, job_id: str) -> List[str]:
        return [type(e).__name__ for e in self.for_job(job_id)]


@pytest.fixture
def make_source(tmp_path):
    """Writes a source file with a valid container header, padded to size."""
    def _make(name: str = "input.mp4", header: bytes = MP4_HEADER, size: int = 4096) -> Path:
        path = tmp_path / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(header + b"\0" * max(0, size - len(header)))
        return path
    return _make


@pytest.fixture
def validator():
    return InputValidator(store=LocalArtifactStore(), probe=FakeProbe(), max_file_size=500 * MB)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_orchestrator(bus):
    """Builds an orchestrator wired to fakes; shut down after the test."""
    created = []

    def _make(
        encoder=None,
        analyzer=None,
        memory_limit: int = 1024 * MB,
        max_file_size: int = 500 * MB,
        max_concurrent_jobs: int = 2,
        analyzer_timeout: float = 5.0,
        probe=None,
        **config_overrides,
    ) -> JobOrchestrator:
        config = ProcessingConfig(
            memory_limit_bytes=memory_limit,
            max_file_size_bytes=max_file_size,
            max_concurrent_jobs=max_concurrent_jobs,
            **config_overrides,
        )
        validator = InputValidator(LocalArtifactStore(), probe or FakeProbe(), max_file_size)
        orchestrator = JobOrchestrator(
            config=config,
            event_bus=bus,
            validator=validator,
            ledger=ResourceLedger(memory_limit),
            encoder=encoder or FakeEncoder(),
            enrichment=ContentEnrichmentAdapter(analyzer, validator, timeout_seconds=analyzer_timeout),
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown(wait=True, cancel_pending=True)
