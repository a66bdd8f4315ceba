"""Deterministic output parameters.

``resolve_parameters`` is a pure function of (options, metadata): no I/O, no
clock, no randomness. Its compression ratio and quality score feed the
result record of every completed job.
"""

import math
from typing import Dict
from vproc.domain.models import ProcessingOptions, QualityTier, ResolvedParameters, SourceMetadata

QUALITY_MULTIPLIER: Dict[QualityTier, float] = {
    QualityTier.LOW: 0.5,
    QualityTier.MEDIUM: 1.0,
    QualityTier.HIGH: 1.5,
    QualityTier.ULTRA: 2.0,
}

QUALITY_ADJUSTMENT: Dict[QualityTier, float] = {
    QualityTier.LOW: 0.3,
    QualityTier.MEDIUM: 0.6,
    QualityTier.HIGH: 0.8,
    QualityTier.ULTRA: 1.0,
}

BASE_SCORE: Dict[QualityTier, float] = {
    QualityTier.LOW: 60,
    QualityTier.MEDIUM: 75,
    QualityTier.HIGH: 85,
    QualityTier.ULTRA: 95,
}


def optimal_bitrate(width: int, height: int, quality: QualityTier) -> int:
    return math.floor((width * height / 1000) * QUALITY_MULTIPLIER[quality])


def compression_ratio(bitrate: int, source_bitrate: int, quality: QualityTier) -> float:
    # Unknown source bitrate counts as a 1:1 base ratio
    base = bitrate / source_bitrate if source_bitrate > 0 else 1.0
    return base * QUALITY_ADJUSTMENT[quality]


def quality_score(quality: QualityTier, ratio: float) -> float:
    penalty = max(0.0, (1 - ratio) * 20)
    return max(0.0, min(100.0, BASE_SCORE[quality] - penalty))


def output_duration(options: ProcessingOptions, metadata: SourceMetadata) -> float:
    start = options.start_time or 0.0
    end = options.end_time if options.end_time is not None else metadata.duration
    if metadata.duration > 0:
        end = min(end, metadata.duration)
    return max(0.0, end - start)


def resolve_parameters(options: ProcessingOptions, metadata: SourceMetadata) -> ResolvedParameters:
    width = options.width if options.width is not None else metadata.width
    height = options.height if options.height is not None else metadata.height
    bitrate = options.bitrate if options.bitrate is not None else optimal_bitrate(width, height, options.quality)
    frame_rate = options.frame_rate if options.frame_rate is not None else metadata.frame_rate
    ratio = compression_ratio(bitrate, metadata.bitrate, options.quality)

    trimmed = options.start_time is not None or options.end_time is not None

    return ResolvedParameters(
        width=width,
        height=height,
        bitrate=bitrate,
        frame_rate=frame_rate,
        compression_ratio=ratio,
        quality_score=quality_score(options.quality, ratio),
        output_format=options.output_format,
        quality=options.quality,
        codec=options.codec,
        audio_codec=options.audio_codec,
        remove_audio=options.remove_audio,
        start_time=(options.start_time or 0.0) if trimmed else None,
        duration=output_duration(options, metadata),
    )
