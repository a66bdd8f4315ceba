import subprocess
import re
import logging
import threading
import time
import shutil
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from vproc.domain.models import ResolvedParameters, TranscodeResult
from vproc.domain.errors import EncoderFailedError, JobCancelledError

ProgressCallback = Callable[[float], None]

_VIDEO_CODECS = {
    "mp4": "libx264",
    "mov": "libx264",
    "mkv": "libx264",
    "webm": "libvpx-vp9",
    "avi": "mpeg4",
}

_AUDIO_CODECS = {
    "webm": "libopus",
    "avi": "libmp3lame",
}


class FFmpegAdapter:
    """Wrapper around ffmpeg for transcoding with resolved parameters."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        gpu: bool = False,
        debug: bool = False,
        temp_dir: Optional[Path] = None,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.temp_dir = temp_dir
        self.gpu = gpu
        self.debug = debug
        self.logger = logging.getLogger(__name__)

    def _video_codec(self, params: ResolvedParameters) -> str:
        if params.codec:
            return params.codec
        if self.gpu and params.output_format in ("mp4", "mov", "mkv"):
            return "h264_nvenc"
        return _VIDEO_CODECS.get(params.output_format, "libx264")

    def _build_command(self, source: Path, dest: Path, params: ResolvedParameters) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        cmd = [self.ffmpeg_path, "-y", "-hide_banner"]

        # Input seeking for the trim window
        if params.start_time:
            cmd.extend(["-ss", f"{params.start_time:g}"])
        cmd.extend(["-i", str(source)])
        if params.start_time is not None and params.duration > 0:
            cmd.extend(["-t", f"{params.duration:g}"])

        # Video encoding settings
        cmd.extend([
            "-c:v", self._video_codec(params),
            "-b:v", str(params.bitrate),
            "-vf", f"scale={params.width}:{params.height}",
            "-r", f"{params.frame_rate:g}",
        ])

        # Audio settings
        if params.remove_audio:
            cmd.append("-an")
        else:
            audio_codec = params.audio_codec or _AUDIO_CODECS.get(params.output_format, "aac")
            cmd.extend(["-c:a", audio_codec])

        cmd.extend(["-f", _muxer(params.output_format), str(dest)])
        return cmd

    def _watch_cancel(self, process: subprocess.Popen, cancel_event: threading.Event):
        """Kills ffmpeg when the cancel event is set while it is still running."""
        while process.poll() is None:
            if cancel_event.wait(0.2):
                if process.poll() is None:
                    process.kill()
                return

    def _temp_output(self, dest: Path) -> Path:
        """Encode target; moved onto dest only after ffmpeg succeeds."""
        if self.temp_dir is None:
            return dest.with_name(f"{dest.stem}.tmp")
        return self.temp_dir / f"{dest.stem}_{uuid.uuid4().hex[:8]}.tmp"

    def transcode(
        self,
        source: Path,
        dest: Path,
        params: ResolvedParameters,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscodeResult:
        """Executes the transcode and returns the output size."""
        filename = source.name
        start_time = time.monotonic()
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._temp_output(dest)
        tmp_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self._build_command(source, tmp_path, params)

        if self.debug:
            self.logger.info(f"FFMPEG_START: {filename} -> {dest.name} ({' '.join(cmd)})")

        try:
            returncode, tail = self._run(cmd, params, cancel_event, on_progress)
            elapsed = time.monotonic() - start_time

            if cancel_event is not None and cancel_event.is_set():
                self.logger.info(f"FFMPEG_END: {filename} status=cancelled elapsed={elapsed:.2f}s")
                raise JobCancelledError(f"ffmpeg aborted for {filename}")

            if returncode != 0:
                self.logger.info(f"FFMPEG_END: {filename} status=failed code={returncode} elapsed={elapsed:.2f}s")
                detail = tail[-1] if tail else ""
                raise EncoderFailedError(f"ffmpeg exited with code {returncode}: {detail}".rstrip(": "))

            if not tmp_path.exists():
                raise EncoderFailedError(f"ffmpeg reported success but {tmp_path} was not written")

            shutil.move(str(tmp_path), str(dest))
        finally:
            # Partial output from a failed, killed or timed-out encode
            if tmp_path.exists():
                tmp_path.unlink()

        if self.debug:
            self.logger.info(f"FFMPEG_END: {filename} status=completed elapsed={elapsed:.2f}s")
        return TranscodeResult(output_byte_size=dest.stat().st_size)

    def _run(
        self,
        cmd: List[str],
        params: ResolvedParameters,
        cancel_event: Optional[threading.Event],
        on_progress: Optional[ProgressCallback],
    ) -> Tuple[int, List[str]]:
        """Runs ffmpeg to completion, reporting progress; returns (returncode, last output lines)."""
        # Regex to parse 'time=00:00:00.00' from ffmpeg output
        time_regex = re.compile(r"time=(\d+):(\d+):(\d+\.\d+)")
        tail: List[str] = []

        with subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            universal_newlines=True,
            bufsize=1
        ) as process:
            watcher = None
            if cancel_event is not None:
                watcher = threading.Thread(target=self._watch_cancel, args=(process, cancel_event), daemon=True)
                watcher.start()

            try:
                for line in process.stdout:
                    tail = (tail + [line.rstrip()])[-5:]
                    match = time_regex.search(line)
                    if match and on_progress and params.duration > 0:
                        h, m, s = map(float, match.groups())
                        current_seconds = h * 3600 + m * 60 + s
                        on_progress(min(100.0, current_seconds / params.duration * 100))
            except BaseException:
                process.kill()
                raise

            process.wait()
            if watcher is not None:
                watcher.join(timeout=1.0)
            return process.returncode, tail


def _muxer(output_format: str) -> str:
    return {"mkv": "matroska"}.get(output_format, output_format)
