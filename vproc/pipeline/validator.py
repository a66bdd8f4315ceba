import logging
from pathlib import Path
from typing import Protocol
from vproc.domain.models import ProcessingOptions, SourceMetadata, SUPPORTED_FORMATS
from vproc.domain.errors import (
    CorruptSourceError,
    InvalidOptionsError,
    SourceNotFoundError,
    SourceTooLargeError,
    UnsupportedFormatError,
)

logger = logging.getLogger(__name__)

HEADER_PROBE_BYTES = 12
MAX_BITRATE = 50_000_000
MAX_FRAME_RATE = 120
MAX_UPSCALE = 2

_EBML_MAGIC = b"\x1a\x45\xdf\xa3"
_QUICKTIME_ATOMS = (b"ftyp", b"moov", b"mdat", b"wide", b"free", b"skip")


class ArtifactStore(Protocol):
    def exists(self, location: Path) -> bool: ...
    def size(self, location: Path) -> int: ...
    def read_range(self, location: Path, offset: int, length: int) -> bytes: ...


class MetadataProbe(Protocol):
    def probe(self, file_path: Path, byte_size: int, format_name: str) -> SourceMetadata: ...


def header_matches(format_name: str, header: bytes) -> bool:
    """Checks the first bytes of a file against the container signature of its claimed format."""
    if format_name == "mp4":
        return header[4:8] == b"ftyp"
    if format_name == "mov":
        return header[4:8] in _QUICKTIME_ATOMS
    if format_name == "avi":
        return header[0:4] == b"RIFF" and header[8:12] == b"AVI "
    if format_name in ("webm", "mkv"):
        return header[0:4] == _EBML_MAGIC
    return False


class InputValidator:
    """Existence, size, format and integrity gate for source artifacts."""

    def __init__(self, store: ArtifactStore, probe: MetadataProbe, max_file_size: int):
        self.store = store
        self.probe = probe
        self.max_file_size = max_file_size

    def validate_source(self, source: Path) -> SourceMetadata:
        if not self.store.exists(source):
            raise SourceNotFoundError(f"Input file not found: {source}")

        size = self.store.size(source)
        if size > self.max_file_size:
            raise SourceTooLargeError(size, self.max_file_size)

        format_name = source.suffix.lower().lstrip(".")
        if format_name not in SUPPORTED_FORMATS:
            raise UnsupportedFormatError(f"Unsupported video format: {format_name or '(none)'}")

        if size == 0:
            raise CorruptSourceError(f"Invalid or corrupted video file: {source} is empty")

        header = self.store.read_range(source, 0, HEADER_PROBE_BYTES)
        if not header_matches(format_name, header):
            raise CorruptSourceError(f"Invalid or corrupted video file: {source} is not a valid {format_name}")

        try:
            metadata = self.probe.probe(source, size, format_name)
        except (RuntimeError, ValueError) as exc:
            raise CorruptSourceError(f"Failed to extract video metadata: {exc}") from exc

        logger.debug(f"Source validated: {source} ({metadata.width}x{metadata.height}, {size} bytes)")
        return metadata

    def validate_options(self, options: ProcessingOptions, metadata: SourceMetadata):
        if options.output_format not in SUPPORTED_FORMATS:
            raise InvalidOptionsError(f"Unsupported output format: {options.output_format}")

        if options.width is not None and options.width > metadata.width * MAX_UPSCALE:
            raise InvalidOptionsError("Output width cannot exceed 2x input width")

        if options.height is not None and options.height > metadata.height * MAX_UPSCALE:
            raise InvalidOptionsError("Output height cannot exceed 2x input height")

        if options.bitrate is not None and options.bitrate > MAX_BITRATE:
            raise InvalidOptionsError("Bitrate exceeds maximum allowed value")

        if options.frame_rate is not None and options.frame_rate > MAX_FRAME_RATE:
            raise InvalidOptionsError("Frame rate exceeds maximum allowed value")

        self._validate_trim(options, metadata)

    def _validate_trim(self, options: ProcessingOptions, metadata: SourceMetadata):
        start, end = options.start_time, options.end_time
        if start is not None:
            if start < 0:
                raise InvalidOptionsError("Trim start cannot be negative")
            if metadata.duration > 0 and start >= metadata.duration:
                raise InvalidOptionsError("Trim start is beyond the end of the source")
        if end is not None and end <= (start or 0):
            raise InvalidOptionsError("Trim end must be after trim start")
