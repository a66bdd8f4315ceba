from pathlib import Path


class LocalArtifactStore:
    """Existence, size and byte-range reads on the local filesystem."""

    def exists(self, location: Path) -> bool:
        return Path(location).is_file()

    def size(self, location: Path) -> int:
        return Path(location).stat().st_size

    def read_range(self, location: Path, offset: int, length: int) -> bytes:
        with open(location, "rb") as f:
            f.seek(offset)
            return f.read(length)
