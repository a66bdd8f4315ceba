import concurrent.futures
import logging
import math
from pathlib import Path
from typing import Optional, Protocol, Tuple
from vproc.domain.models import (
    EnrichmentResult,
    MotionLevel,
    ProcessingOptions,
    QualityAssessment,
    QualityTier,
    Recommendations,
    SceneMetadata,
    SourceMetadata,
)
from vproc.domain.errors import InvalidOptionsError
from vproc.pipeline.validator import InputValidator


class ContentAnalyzer(Protocol):
    def analyze(self, source: Path, metadata: SourceMetadata) -> EnrichmentResult: ...


def estimate_video_quality(metadata: SourceMetadata) -> float:
    """Estimates video quality (0-100) from resolution, bits per pixel and frame rate."""
    score = 50
    pixel_count = metadata.width * metadata.height

    if pixel_count >= 1920 * 1080:
        score += 20
    elif pixel_count >= 1280 * 720:
        score += 10

    bitrate_per_pixel = metadata.bitrate / pixel_count if pixel_count > 0 else 0
    if bitrate_per_pixel > 0.1:
        score += 15
    elif bitrate_per_pixel > 0.05:
        score += 10
    elif bitrate_per_pixel > 0.02:
        score += 5

    if metadata.frame_rate >= 60:
        score += 10
    elif metadata.frame_rate >= 30:
        score += 5

    return min(100, max(0, score))


def fallback_enrichment(metadata: SourceMetadata) -> EnrichmentResult:
    """Local, metadata-only result; carries no format or quality recommendation."""
    return EnrichmentResult(
        content_type="unknown",
        duration=metadata.duration,
        quality_assessment=QualityAssessment(
            video_quality=estimate_video_quality(metadata),
            audio_quality=75 if metadata.has_audio else 0,
            overall_score=70,
        ),
        recommendations=Recommendations(),
        scene_metadata=SceneMetadata(
            scenes=max(1, math.floor(metadata.duration / 30)),
            motion_level=MotionLevel.MEDIUM,
            complexity=50,
        ),
        fallback=True,
    )


class ContentEnrichmentAdapter:
    """Best-effort enrichment.

    ``enrich`` never raises: analyzer errors and timeouts turn into the
    fallback result. ``merge`` only touches output format and quality and
    keeps the caller's options whenever the merged copy would fail validation.
    """

    def __init__(
        self,
        analyzer: Optional[ContentAnalyzer],
        validator: InputValidator,
        timeout_seconds: float = 30.0,
    ):
        self.analyzer = analyzer
        self.validator = validator
        self.timeout_seconds = timeout_seconds
        self.logger = logging.getLogger(__name__)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="vproc-analyzer"
        )

    def enrich(self, source: Path, metadata: SourceMetadata) -> EnrichmentResult:
        if self.analyzer is None:
            return fallback_enrichment(metadata)

        future = self._executor.submit(self.analyzer.analyze, source, metadata)
        try:
            result = future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError:
            future.cancel()
            self.logger.warning(
                f"Content analysis timed out after {self.timeout_seconds}s for {source.name}, using fallback"
            )
            return fallback_enrichment(metadata)
        except Exception as e:
            self.logger.warning(f"Content analysis failed for {source.name}, using fallback: {e}")
            return fallback_enrichment(metadata)

        if not isinstance(result, EnrichmentResult):
            self.logger.warning(f"Content analyzer returned {type(result).__name__}, using fallback")
            return fallback_enrichment(metadata)
        return result

    def merge(
        self,
        options: ProcessingOptions,
        result: EnrichmentResult,
        metadata: SourceMetadata,
    ) -> Tuple[ProcessingOptions, bool]:
        """Returns (options to use, whether recommendations were applied)."""
        recs = result.recommendations
        changes = {}

        if recs.suggested_format and recs.suggested_format.lower() != options.output_format:
            changes["output_format"] = recs.suggested_format.lower()
            self.logger.info(f"Recommended format change: {options.output_format} -> {changes['output_format']}")

        if recs.suggested_quality and recs.suggested_quality.lower() != options.quality.value:
            try:
                changes["quality"] = QualityTier(recs.suggested_quality.lower())
            except ValueError:
                self.logger.warning(f"Ignoring unknown recommended quality {recs.suggested_quality!r}")
            else:
                self.logger.info(f"Recommended quality change: {options.quality.value} -> {changes['quality'].value}")

        if not changes:
            return options, False

        merged = options.model_copy(update=changes)
        try:
            self.validator.validate_options(merged, metadata)
        except InvalidOptionsError as e:
            self.logger.warning(f"Rejected enrichment merge, keeping requested options: {e}")
            return options, False
        return merged, True

    def close(self):
        """Stops the analyzer pool and closes the analyzer's client, if it has one."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        close_analyzer = getattr(self.analyzer, "close", None)
        if close_analyzer is not None:
            close_analyzer()
