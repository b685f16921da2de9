import math
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class FileChunk:
    """A byte range of a file on disk, read lazily at upload time."""

    path: Path
    index: int
    offset: int
    length: int

    def read(self) -> bytes:
        with self.path.open("rb") as fh:
            fh.seek(self.offset)
            return fh.read(self.length)


def split_file(path: Path, chunk_size: int) -> list[FileChunk]:
    """Cut ``path`` into ordered chunks of ``chunk_size`` bytes; the last one may be shorter."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}.")
    file_size = path.stat().st_size
    total = math.ceil(file_size / chunk_size)
    chunks = []
    for index in range(total):
        offset = index * chunk_size
        chunks.append(
            FileChunk(
                path=path,
                index=index,
                offset=offset,
                length=min(chunk_size, file_size - offset),
            )
        )
    return chunks
