import subprocess
import json
from math import gcd
from pathlib import Path
from typing import Dict, Any
from vproc.domain.models import SourceMetadata


class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    def get_stream_info(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and parses JSON output."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr}")

        data = json.loads(result.stdout)
        streams = data.get("streams", [])
        fmt = data.get("format", {})

        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise ValueError(f"No video stream found in {file_path}")
        audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

        # Parse FPS (prefer avg_frame_rate; r_frame_rate is often timebase)
        fps = 0.0
        fps_str = video_stream.get("avg_frame_rate", "0/0")
        if "/" in fps_str:
            try:
                num, den = map(float, fps_str.split("/"))
                if den != 0:
                    candidate = num / den
                    if candidate <= 240:
                        fps = round(candidate, 3)
            except ValueError:
                fps = 0.0
        else:
            try:
                candidate = float(fps_str)
                if candidate <= 240:
                    fps = round(candidate, 3)
            except ValueError:
                fps = 0.0

        bitrate = fmt.get("bit_rate") or video_stream.get("bit_rate") or 0

        return {
            "width": int(video_stream.get("width", 0)),
            "height": int(video_stream.get("height", 0)),
            "codec": video_stream.get("codec_name", "unknown"),
            "fps": fps,
            "duration": float(fmt.get("duration", 0.0)),
            "bitrate": int(bitrate),
            "color_space": video_stream.get("color_space") or video_stream.get("pix_fmt"),
            "aspect_ratio": video_stream.get("display_aspect_ratio"),
            "audio_codec": audio_stream.get("codec_name") if audio_stream else None,
        }

    def probe(self, file_path: Path, byte_size: int, format_name: str) -> SourceMetadata:
        """Builds SourceMetadata for a validated source."""
        info = self.get_stream_info(file_path)
        width, height = info["width"], info["height"]
        duration = info["duration"]

        bitrate = info["bitrate"]
        if not bitrate and duration > 0:
            bitrate = int(byte_size * 8 / duration)

        aspect_ratio = info["aspect_ratio"]
        if not aspect_ratio or aspect_ratio == "0:1":
            divisor = gcd(width, height) or 1
            aspect_ratio = f"{width // divisor}:{height // divisor}"

        return SourceMetadata(
            duration=duration,
            width=width,
            height=height,
            frame_rate=info["fps"],
            bitrate=bitrate,
            codec=info["codec"],
            audio_codec=info["audio_codec"],
            byte_size=byte_size,
            format=format_name,
            has_audio=info["audio_codec"] is not None,
            color_space=info["color_space"],
            aspect_ratio=aspect_ratio,
        )
