import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator

GIB = 1024 * 1024 * 1024


class ProcessingConfig(BaseModel):
    memory_limit_bytes: int = Field(default=GIB, gt=0)
    max_file_size_bytes: int = Field(default=2 * GIB, gt=0)
    max_concurrent_jobs: int = Field(default=2, gt=0)
    working_set_factor: float = Field(default=1.0, gt=0)
    encoder_timeout_seconds: float = Field(default=3600.0, gt=0)
    job_max_age_seconds: float = Field(default=24 * 60 * 60, gt=0)
    # Encoder scratch output; None writes the .tmp file next to the destination
    temp_directory: Optional[Path] = None
    debug: bool = False


class EncoderConfig(BaseModel):
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    gpu: bool = False


class AnalyzerConfig(BaseModel):
    enabled: bool = False
    api_url_base: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-1.5-pro"
    api_key: Optional[str] = None
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("api_url_base")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def resolved_api_key(self) -> Optional[str]:
        return self.api_key or os.getenv("GEMINI_API_KEY")


class AppConfig(BaseModel):
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
