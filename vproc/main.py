import typer
from pathlib import Path
from typing import Optional, List

from vproc.config.loader import load_config
from vproc.config.models import AppConfig
from vproc.infrastructure.logging import setup_logging
from vproc.infrastructure.event_bus import EventBus
from vproc.infrastructure.artifact_store import LocalArtifactStore
from vproc.infrastructure.content_analyzer import GeminiContentAnalyzer
from vproc.infrastructure.ffprobe import FFprobeAdapter
from vproc.infrastructure.ffmpeg import FFmpegAdapter
from vproc.infrastructure.memory_ledger import ResourceLedger, format_bytes
from vproc.pipeline.enrichment import ContentEnrichmentAdapter
from vproc.pipeline.orchestrator import JobOrchestrator
from vproc.pipeline.resolver import resolve_parameters
from vproc.pipeline.validator import InputValidator
from vproc.domain.errors import ProcessingError
from vproc.domain.models import JobState, ProcessingOptions, ProcessingRequest, QualityTier
from vproc.ui.reporter import ConsoleReporter

app = typer.Typer(help="vproc - tracked media transcoding jobs")


def build_validator(config: AppConfig) -> InputValidator:
    return InputValidator(
        store=LocalArtifactStore(),
        probe=FFprobeAdapter(ffprobe_path=config.encoder.ffprobe_path),
        max_file_size=config.processing.max_file_size_bytes,
    )


def build_orchestrator(config: AppConfig, bus: EventBus) -> JobOrchestrator:
    validator = build_validator(config)

    analyzer = None
    api_key = config.analyzer.resolved_api_key()
    if config.analyzer.enabled and api_key:
        analyzer = GeminiContentAnalyzer(
            api_key=api_key,
            api_url_base=config.analyzer.api_url_base,
            model=config.analyzer.model,
            timeout_seconds=config.analyzer.timeout_seconds,
        )

    return JobOrchestrator(
        config=config.processing,
        event_bus=bus,
        validator=validator,
        ledger=ResourceLedger(config.processing.memory_limit_bytes),
        encoder=FFmpegAdapter(
            ffmpeg_path=config.encoder.ffmpeg_path,
            gpu=config.encoder.gpu,
            debug=config.processing.debug,
            temp_dir=config.processing.temp_directory,
        ),
        enrichment=ContentEnrichmentAdapter(
            analyzer, validator, timeout_seconds=config.analyzer.timeout_seconds
        ),
    )


@app.command()
def process(
    sources: List[Path] = typer.Argument(..., help="Source video file(s)"),
    output_dir: Path = typer.Option(..., "--output-dir", "-o", help="Directory for transcoded files"),
    config_path: Optional[Path] = typer.Option(Path("conf/vproc.yaml"), "--config", "-c", help="Path to YAML config"),
    output_format: str = typer.Option("mp4", "--format", "-f", help="Output container: mp4, avi, mov, webm, mkv"),
    quality: QualityTier = typer.Option(QualityTier.MEDIUM, "--quality", "-q", help="Quality tier"),
    width: Optional[int] = typer.Option(None, "--width", min=1, help="Output width"),
    height: Optional[int] = typer.Option(None, "--height", min=1, help="Output height"),
    bitrate: Optional[int] = typer.Option(None, "--bitrate", min=1, help="Output video bitrate (bps)"),
    frame_rate: Optional[float] = typer.Option(None, "--fps", help="Output frame rate"),
    codec: Optional[str] = typer.Option(None, "--codec", help="Video codec hint"),
    remove_audio: bool = typer.Option(False, "--remove-audio", help="Drop audio streams"),
    start: Optional[float] = typer.Option(None, "--start", help="Trim start (seconds)"),
    end: Optional[float] = typer.Option(None, "--end", help="Trim end (seconds)"),
    enrich: bool = typer.Option(False, "--enrich/--no-enrich", help="Ask the content analyzer for recommendations"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Encoder timeout per job (seconds)"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", min=1, help="Override max concurrent jobs"),
    gpu: Optional[bool] = typer.Option(None, "--gpu/--cpu", help="Enable/disable GPU encoder"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Transcode one or more videos as tracked jobs."""
    config = load_config(config_path)
    if jobs:
        config.processing.max_concurrent_jobs = jobs
    if gpu is not None:
        config.encoder.gpu = gpu
    if debug:
        config.processing.debug = True

    logger = setup_logging(output_dir, debug=config.processing.debug)
    logger.info(f"vproc started: sources={len(sources)}, output={output_dir}")
    logger.info(
        f"Config: jobs={config.processing.max_concurrent_jobs}, "
        f"memory={format_bytes(config.processing.memory_limit_bytes)}, gpu={config.encoder.gpu}"
    )

    options = ProcessingOptions(
        output_format=output_format.lower(),
        quality=quality,
        width=width,
        height=height,
        bitrate=bitrate,
        frame_rate=frame_rate,
        codec=codec,
        remove_audio=remove_audio,
        start_time=start,
        end_time=end,
    )

    bus = EventBus()
    orchestrator = build_orchestrator(config, bus)
    job_ids = []
    try:
        with ConsoleReporter(bus):
            for source in sources:
                dest = output_dir / f"{source.stem}_processed.{options.output_format}"
                job_ids.append(orchestrator.submit(ProcessingRequest(
                    source=source,
                    destination=dest,
                    options=options,
                    enrich=enrich,
                    timeout_seconds=timeout,
                )))
            for job_id in job_ids:
                orchestrator.wait(job_id)
    except KeyboardInterrupt:
        for job_id in job_ids:
            orchestrator.cancel(job_id)
        typer.echo("\nInterrupted by user")
        raise typer.Exit(code=130)
    finally:
        orchestrator.shutdown(wait=True)

    stats = orchestrator.stats()
    typer.echo(
        f"{stats.completed}/{stats.total_jobs} completed, {stats.failed} failed, "
        f"{stats.cancelled} cancelled (avg {stats.avg_processing_time:.1f}s)"
    )
    if any(orchestrator.get_job(j).state != JobState.COMPLETED for j in job_ids):
        raise typer.Exit(code=1)


@app.command()
def probe(
    source: Path = typer.Argument(..., help="Source video file"),
    config_path: Optional[Path] = typer.Option(Path("conf/vproc.yaml"), "--config", "-c", help="Path to YAML config"),
    output_format: str = typer.Option("mp4", "--format", "-f", help="Output container to plan for"),
    quality: QualityTier = typer.Option(QualityTier.MEDIUM, "--quality", "-q", help="Quality tier to plan for"),
):
    """Validate a source and show the parameters a job would resolve to."""
    config = load_config(config_path)
    validator = build_validator(config)
    options = ProcessingOptions(output_format=output_format.lower(), quality=quality)
    try:
        metadata = validator.validate_source(source)
        validator.validate_options(options, metadata)
    except ProcessingError as e:
        typer.secho(f"Error [{e.kind.value}]: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    params = resolve_parameters(options, metadata)
    typer.echo(f"Source:     {metadata.width}x{metadata.height} {metadata.codec} @ {metadata.frame_rate:g} fps, "
               f"{metadata.bitrate} bps, {metadata.duration:.1f}s, {format_bytes(metadata.byte_size)}")
    typer.echo(f"Resolved:   {params.width}x{params.height} @ {params.frame_rate:g} fps, {params.bitrate} bps")
    typer.echo(f"Ratio:      {params.compression_ratio:.6f}")
    typer.echo(f"Quality:    {params.quality_score:.2f}")


if __name__ == "__main__":
    app()
