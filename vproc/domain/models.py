from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field

SUPPORTED_FORMATS = ("mp4", "avi", "mov", "webm", "mkv")


class VideoFormat(str, Enum):
    MP4 = "mp4"
    AVI = "avi"
    MOV = "mov"
    WEBM = "webm"
    MKV = "mkv"


class QualityTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"

    @property
    def rank(self) -> int:
        return _QUALITY_ORDER.index(self)


_QUALITY_ORDER = [QualityTier.LOW, QualityTier.MEDIUM, QualityTier.HIGH, QualityTier.ULTRA]


class JobState(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    TOO_LARGE = "TOO_LARGE"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    CORRUPT_OR_INVALID = "CORRUPT_OR_INVALID"
    INVALID_OPTIONS = "INVALID_OPTIONS"
    INSUFFICIENT_MEMORY = "INSUFFICIENT_MEMORY"
    ENRICHMENT_FAILED = "ENRICHMENT_FAILED"
    ENCODER_FAILED = "ENCODER_FAILED"
    PROCESSING_TIMED_OUT = "PROCESSING_TIMED_OUT"
    CANCELLED = "CANCELLED"
    INTERNAL = "INTERNAL"


class MotionLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProcessingOptions(BaseModel):
    # Kept as a plain string so an unknown format reaches validation instead of
    # failing at construction time.
    output_format: str = VideoFormat.MP4.value
    quality: QualityTier = QualityTier.MEDIUM
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    bitrate: Optional[int] = Field(default=None, gt=0)
    frame_rate: Optional[float] = Field(default=None, gt=0)
    codec: Optional[str] = None
    audio_codec: Optional[str] = None
    remove_audio: bool = False
    start_time: Optional[float] = None
    end_time: Optional[float] = None


class ProcessingRequest(BaseModel):
    model_config = {"frozen": True}

    source: Path
    destination: Path
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)
    enrich: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class SourceMetadata(BaseModel):
    model_config = {"frozen": True}

    duration: float
    width: int
    height: int
    frame_rate: float
    bitrate: int
    codec: str
    audio_codec: Optional[str] = None
    byte_size: int
    format: str
    has_audio: bool = False
    color_space: Optional[str] = None
    aspect_ratio: Optional[str] = None


class ResolvedParameters(BaseModel):
    model_config = {"frozen": True}

    width: int
    height: int
    bitrate: int
    frame_rate: float
    compression_ratio: float
    quality_score: float
    output_format: str
    quality: QualityTier
    codec: Optional[str] = None
    audio_codec: Optional[str] = None
    remove_audio: bool = False
    start_time: Optional[float] = None
    duration: float = 0.0


class QualityAssessment(BaseModel):
    video_quality: float = 75
    audio_quality: float = 75
    overall_score: float = 75


class SceneMetadata(BaseModel):
    scenes: int = 1
    motion_level: MotionLevel = MotionLevel.MEDIUM
    complexity: float = 50


class Recommendations(BaseModel):
    suggested_format: Optional[str] = None
    suggested_quality: Optional[str] = None
    optimizations: List[str] = Field(default_factory=list)


class EnrichmentResult(BaseModel):
    content_type: str = "unknown"
    duration: float = 0.0
    quality_assessment: QualityAssessment = Field(default_factory=QualityAssessment)
    recommendations: Recommendations = Field(default_factory=Recommendations)
    scene_metadata: SceneMetadata = Field(default_factory=SceneMetadata)
    fallback: bool = False


class JobError(BaseModel):
    kind: ErrorKind
    message: str


class ProcessingResult(BaseModel):
    output_path: Path
    output_metadata: SourceMetadata
    parameters: ResolvedParameters
    output_byte_size: int
    processing_time_seconds: float
    enrichment_applied: bool = False


class ProcessingJob(BaseModel):
    id: str
    request: ProcessingRequest
    state: JobState = JobState.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    options: Optional[ProcessingOptions] = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[JobError] = None
    result: Optional[ProcessingResult] = None

    @property
    def is_terminal(self) -> bool:
        from vproc.domain.state import is_job_terminal
        return is_job_terminal(self.state)

    @property
    def processing_time_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class TranscodeResult(BaseModel):
    output_byte_size: int
