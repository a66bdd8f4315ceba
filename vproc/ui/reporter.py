import threading
from typing import Dict, Optional
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn
from vproc.domain.events import (
    JobCancelled, JobCompleted, JobCreated, JobFailed, JobProgress, JobStarted
)
from vproc.infrastructure.event_bus import EventBus
from vproc.infrastructure.memory_ledger import format_bytes


class ConsoleReporter:
    """Subscribes to EventBus and renders job progress with rich."""

    def __init__(self, bus: EventBus, console: Optional[Console] = None):
        self.bus = bus
        self.console = console or Console(stderr=True)
        self.progress = Progress(
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        )
        self._tasks: Dict[str, TaskID] = {}
        self._lock = threading.Lock()
        self._handlers = [
            (JobCreated, self.on_job_created),
            (JobStarted, self.on_job_started),
            (JobProgress, self.on_job_progress),
            (JobCompleted, self.on_job_completed),
            (JobFailed, self.on_job_failed),
            (JobCancelled, self.on_job_cancelled),
        ]
        for event_type, handler in self._handlers:
            self.bus.subscribe(event_type, handler)

    def __enter__(self):
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.progress.stop()
        for event_type, handler in self._handlers:
            self.bus.unsubscribe(handler, event_type)

    def _task(self, job_id: str, description: str = "") -> TaskID:
        with self._lock:
            if job_id not in self._tasks:
                self._tasks[job_id] = self.progress.add_task(description or job_id, total=100)
            return self._tasks[job_id]

    def _remove(self, job_id: str):
        with self._lock:
            task_id = self._tasks.pop(job_id, None)
        if task_id is not None:
            self.progress.remove_task(task_id)

    def on_job_created(self, event: JobCreated):
        self._task(event.job_id, event.job.request.source.name)

    def on_job_started(self, event: JobStarted):
        self.progress.start_task(self._task(event.job_id, event.job.request.source.name))

    def on_job_progress(self, event: JobProgress):
        self.progress.update(self._task(event.job_id), completed=event.percent)

    def on_job_completed(self, event: JobCompleted):
        self._remove(event.job_id)
        result = event.result
        params = result.parameters
        self.console.print(
            f"[green]✓[/green] {event.job.request.source.name} -> {result.output_path} "
            f"({params.width}x{params.height} @ {params.bitrate} bps, "
            f"{format_bytes(result.output_byte_size)}, quality score {params.quality_score:.1f}, "
            f"{result.processing_time_seconds:.1f}s)"
        )

    def on_job_failed(self, event: JobFailed):
        self._remove(event.job_id)
        self.console.print(
            f"[red]✗[/red] {event.job.request.source.name}: [{event.error.kind.value}] {event.error.message}"
        )

    def on_job_cancelled(self, event: JobCancelled):
        self._remove(event.job_id)
        self.console.print(f"[yellow]•[/yellow] {event.job.request.source.name}: cancelled")
