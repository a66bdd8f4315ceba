"""Gemini-backed content analyzer.

Sends the source's technical profile to the Gemini ``generateContent``
endpoint, asks for a JSON assessment and turns the reply into an
``EnrichmentResult``. Any transport or parsing problem is raised as
``EnrichmentFailedError``; deciding what to do about it is the caller's job.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

import httpx

from vproc.domain.errors import EnrichmentFailedError
from vproc.domain.models import (
    EnrichmentResult,
    MotionLevel,
    QualityAssessment,
    QualityTier,
    Recommendations,
    SceneMetadata,
    SourceMetadata,
    VideoFormat,
)

logger = logging.getLogger(__name__)

ONE_GIB = 1024 * 1024 * 1024

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


def build_analysis_prompt(metadata: SourceMetadata) -> str:
    return f"""
Analyze this video content and provide a detailed assessment. The video has the following technical specifications:
- Duration: {metadata.duration} seconds
- Resolution: {metadata.width}x{metadata.height}
- Frame Rate: {metadata.frame_rate} fps
- Bitrate: {metadata.bitrate} bps
- Codec: {metadata.codec}
- File Size: {metadata.byte_size} bytes

Provide:
1. Content type: documentary, entertainment, educational, promotional, artistic, web, streaming or other
2. Quality assessment (0-100): video quality, audio quality, overall score
3. Scene analysis: number of scenes, motion level (low/medium/high), complexity score (0-100)
4. Optimization recommendations

Respond with JSON only:
{{
  "contentType": "string",
  "qualityAssessment": {{"videoQuality": number, "audioQuality": number, "overallScore": number}},
  "sceneAnalysis": {{"sceneCount": number, "motionLevel": "low|medium|high", "complexityScore": number}},
  "recommendations": {{"suggestedFormat": "string", "suggestedQuality": "string", "optimizations": ["string"]}}
}}
"""


def build_recommendations(
    content_type: str,
    assessment: QualityAssessment,
    scene: SceneMetadata,
    metadata: SourceMetadata,
) -> Recommendations:
    """Derives format/quality suggestions and optimisation hints from an assessment."""
    optimizations = []

    suggested_format = VideoFormat.MP4.value
    if content_type in ("web", "streaming"):
        suggested_format = VideoFormat.WEBM.value

    suggested_quality = QualityTier.MEDIUM.value
    if assessment.overall_score > 85:
        suggested_quality = QualityTier.HIGH.value
    elif assessment.overall_score < 60:
        suggested_quality = QualityTier.LOW.value

    if scene.motion_level == MotionLevel.HIGH:
        optimizations.append("Use higher bitrate for motion-heavy content")
        optimizations.append("Consider 60fps for smooth motion")

    if scene.complexity > 70:
        optimizations.append("Use advanced encoding settings for complex scenes")
        optimizations.append("Consider two-pass encoding for better quality")

    if metadata.byte_size > ONE_GIB:
        optimizations.append("Apply compression to reduce file size")
        optimizations.append("Consider segmented encoding for large files")

    if assessment.video_quality < 70:
        optimizations.append("Apply noise reduction filters")
        optimizations.append("Use sharpening filters to improve clarity")

    return Recommendations(
        suggested_format=suggested_format,
        suggested_quality=suggested_quality,
        optimizations=optimizations,
    )


def parse_analysis_text(text: str, metadata: SourceMetadata) -> EnrichmentResult:
    match = _JSON_BLOCK.search(text)
    if not match:
        raise EnrichmentFailedError("No JSON found in analyzer response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise EnrichmentFailedError(f"Malformed analyzer JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise EnrichmentFailedError("Analyzer JSON is not an object")

    quality = parsed.get("qualityAssessment") or {}
    scene = parsed.get("sceneAnalysis") or {}

    motion = str(scene.get("motionLevel") or "medium").lower()
    if motion not in {m.value for m in MotionLevel}:
        motion = MotionLevel.MEDIUM.value

    try:
        assessment = QualityAssessment(
            video_quality=quality.get("videoQuality") or 75,
            audio_quality=quality.get("audioQuality") or 75,
            overall_score=quality.get("overallScore") or 75,
        )
        scene_metadata = SceneMetadata(
            scenes=scene.get("sceneCount") or 1,
            motion_level=motion,
            complexity=scene.get("complexityScore") or 50,
        )
    except ValueError as exc:
        raise EnrichmentFailedError(f"Unexpected analyzer values: {exc}") from exc

    content_type = str(parsed.get("contentType") or "unknown")
    return EnrichmentResult(
        content_type=content_type,
        duration=metadata.duration,
        quality_assessment=assessment,
        recommendations=build_recommendations(content_type, assessment, scene_metadata, metadata),
        scene_metadata=scene_metadata,
    )


class GeminiContentAnalyzer:
    """Calls the Gemini REST API with a bounded timeout."""

    def __init__(
        self,
        api_key: str,
        api_url_base: str = "https://generativelanguage.googleapis.com/v1beta",
        model: str = "gemini-1.5-pro",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if not api_key:
            raise ValueError("Gemini API key is required")
        self.api_key = api_key
        self.api_url_base = api_url_base
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def analyze(self, source: Path, metadata: SourceMetadata) -> EnrichmentResult:
        logger.info(f"Starting content analysis for {source.name}")
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": build_analysis_prompt(metadata)}]}],
            "generationConfig": {
                "temperature": 0.1,
                "topK": 32,
                "topP": 1,
                "maxOutputTokens": 4096,
                "responseMimeType": "application/json",
            },
        }
        url = f"{self.api_url_base}/models/{self.model}:generateContent"

        try:
            response = self._client.post(url, headers=self._headers(), json=body, timeout=self.timeout_seconds)
        except httpx.HTTPError as exc:
            raise EnrichmentFailedError(f"Analyzer HTTP error: {exc}") from exc

        if response.status_code != 200:
            raise EnrichmentFailedError(
                f"Analyzer API error: {response.status_code} {response.text[:200]}"
            )

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EnrichmentFailedError("No analysis results in analyzer response") from exc

        result = parse_analysis_text(text, metadata)
        logger.info(
            f"Content analysis finished for {source.name}: type={result.content_type} "
            f"overall={result.quality_assessment.overall_score}"
        )
        return result

    def test_connection(self) -> bool:
        try:
            response = self._client.get(
                f"{self.api_url_base}/models", headers=self._headers(), timeout=self.timeout_seconds
            )
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def close(self):
        self._client.close()
