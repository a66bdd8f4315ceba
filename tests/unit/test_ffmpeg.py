import threading
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch
from vproc.infrastructure.ffmpeg import FFmpegAdapter
from vproc.domain.errors import EncoderFailedError, JobCancelledError
from vproc.domain.models import QualityTier, ResolvedParameters


def make_params(**overrides) -> ResolvedParameters:
    values = dict(
        width=1280,
        height=720,
        bitrate=2_000_000,
        frame_rate=30.0,
        compression_ratio=0.24,
        quality_score=59.8,
        output_format="mp4",
        quality=QualityTier.MEDIUM,
        duration=10.0,
    )
    values.update(overrides)
    return ResolvedParameters(**values)


def test_ffmpeg_command_generation_cpu():
    cmd = FFmpegAdapter()._build_command(Path("input.mp4"), Path("out/output.mp4"), make_params())

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-i") + 1] == "input.mp4"
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-b:v") + 1] == "2000000"
    assert "scale=1280:720" in cmd
    assert cmd[cmd.index("-r") + 1] == "30"
    assert cmd[cmd.index("-c:a") + 1] == "aac"
    assert cmd[-3:] == ["-f", "mp4", "out/output.mp4"]
    assert "-ss" not in cmd
    assert "-t" not in cmd


def test_ffmpeg_command_generation_gpu():
    cmd = FFmpegAdapter(gpu=True)._build_command(Path("input.mp4"), Path("output.mp4"), make_params())
    assert "h264_nvenc" in cmd


def test_ffmpeg_codec_hint_wins_over_gpu():
    cmd = FFmpegAdapter(gpu=True)._build_command(
        Path("input.mp4"), Path("output.mp4"), make_params(codec="libx265")
    )
    assert cmd[cmd.index("-c:v") + 1] == "libx265"


@pytest.mark.parametrize("fmt,video,audio,muxer", [
    ("webm", "libvpx-vp9", "libopus", "webm"),
    ("avi", "mpeg4", "libmp3lame", "avi"),
    ("mkv", "libx264", "aac", "matroska"),
])
def test_ffmpeg_codecs_per_format(fmt, video, audio, muxer):
    cmd = FFmpegAdapter()._build_command(Path("in.mp4"), Path(f"out.{fmt}"), make_params(output_format=fmt))
    assert cmd[cmd.index("-c:v") + 1] == video
    assert cmd[cmd.index("-c:a") + 1] == audio
    assert cmd[cmd.index("-f") + 1] == muxer


def test_ffmpeg_remove_audio():
    cmd = FFmpegAdapter()._build_command(Path("in.mp4"), Path("out.mp4"), make_params(remove_audio=True))
    assert "-an" in cmd
    assert "-c:a" not in cmd


def test_ffmpeg_trim_window():
    cmd = FFmpegAdapter()._build_command(
        Path("in.mp4"), Path("out.mp4"), make_params(start_time=12.5, duration=30.0)
    )
    assert cmd.index("-ss") < cmd.index("-i")
    assert cmd[cmd.index("-ss") + 1] == "12.5"
    assert cmd[cmd.index("-t") + 1] == "30"


def fake_ffmpeg(lines, returncode=0, output=None):
    """Popen stand-in that optionally writes `output` bytes to the command's output path."""
    processes = []

    def _popen(cmd, **kwargs):
        if output is not None:
            Path(cmd[-1]).write_bytes(output)
        process = MagicMock()
        process.__enter__.return_value = process
        process.__exit__.return_value = False
        process.stdout = lines
        process.returncode = returncode
        process.poll.return_value = returncode
        processes.append((cmd, process))
        return process

    return _popen, processes


def test_ffmpeg_transcode_success(tmp_path):
    dest = tmp_path / "out" / "output.mp4"
    progress = []
    popen, processes = fake_ffmpeg(
        [
            "frame= 100 fps=10.0 q=28.0 size= 100kB time=00:00:05.00 bitrate= 100.0kbits/s speed=1.0x",
            "frame= 200 fps=10.0 q=28.0 Lsize= 200kB time=00:00:10.00 bitrate= 100.0kbits/s speed=1.0x",
        ],
        output=b"\0" * 2048,
    )

    with patch("subprocess.Popen", side_effect=popen):
        result = FFmpegAdapter().transcode(Path("input.mp4"), dest, make_params(), on_progress=progress.append)

    cmd, _ = processes[0]
    assert Path(cmd[-1]) == dest.with_name("output.tmp")
    assert result.output_byte_size == 2048
    assert dest.stat().st_size == 2048
    assert not dest.with_name("output.tmp").exists()
    assert progress == [50.0, 100.0]


def test_ffmpeg_transcode_uses_temp_directory(tmp_path):
    scratch = tmp_path / "scratch"
    dest = tmp_path / "out" / "output.mp4"
    popen, processes = fake_ffmpeg([], output=b"\0" * 512)

    with patch("subprocess.Popen", side_effect=popen):
        result = FFmpegAdapter(temp_dir=scratch).transcode(Path("input.mp4"), dest, make_params())

    cmd, _ = processes[0]
    assert Path(cmd[-1]).parent == scratch
    assert result.output_byte_size == 512
    assert dest.exists()
    assert list(scratch.iterdir()) == []


def test_ffmpeg_transcode_failure_leaves_no_partial_output(tmp_path):
    dest = tmp_path / "out.mp4"
    popen, _ = fake_ffmpeg(["Error message from ffmpeg"], returncode=1, output=b"partial")

    with patch("subprocess.Popen", side_effect=popen):
        with pytest.raises(EncoderFailedError) as exc_info:
            FFmpegAdapter().transcode(Path("input.mp4"), dest, make_params())

    assert "ffmpeg exited with code 1" in str(exc_info.value)
    assert "Error message from ffmpeg" in str(exc_info.value)
    assert list(tmp_path.iterdir()) == []


def test_ffmpeg_transcode_missing_output(tmp_path):
    popen, _ = fake_ffmpeg([])

    with patch("subprocess.Popen", side_effect=popen):
        with pytest.raises(EncoderFailedError):
            FFmpegAdapter().transcode(Path("input.mp4"), tmp_path / "out.mp4", make_params())


def test_ffmpeg_transcode_cancelled_removes_partial_output(tmp_path):
    cancel = threading.Event()
    cancel.set()
    popen, _ = fake_ffmpeg([], returncode=-9, output=b"partial")

    with patch("subprocess.Popen", side_effect=popen):
        with pytest.raises(JobCancelledError):
            FFmpegAdapter().transcode(Path("input.mp4"), tmp_path / "out.mp4", make_params(), cancel_event=cancel)

    assert list(tmp_path.iterdir()) == []


def test_ffmpeg_progress_callback_error_kills_process(tmp_path):
    popen, processes = fake_ffmpeg(["frame= 1 time=00:00:01.00 bitrate= 1kbits/s"], output=b"partial")

    def broken(percent):
        raise RuntimeError("listener bug")

    with patch("subprocess.Popen", side_effect=popen):
        with pytest.raises(RuntimeError):
            FFmpegAdapter().transcode(Path("input.mp4"), tmp_path / "out.mp4", make_params(), on_progress=broken)

    _, process = processes[0]
    assert process.kill.called
    assert list(tmp_path.iterdir()) == []
