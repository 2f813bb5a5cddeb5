import hashlib
import logging
import os
import shutil
from pathlib import Path

from mediacache.errors import CorruptIndexEntry

log = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024
TMP_SUFFIX = ".tmp"


def resource_key(resource: str) -> str:
    return hashlib.sha256(resource.encode("utf-8")).hexdigest()


class SegmentStore:
    """
    Payload files for cached spans, one file per span.

    Layout: <root>/<sha256(resource)>/<start>.bin. A file may be longer than
    its span after an interrupted append; verify() trims it back.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure(self):
        self.root.mkdir(parents=True, exist_ok=True)

    def resource_dir(self, resource: str) -> Path:
        return self.root / resource_key(resource)

    def path_for(self, resource: str, start: int) -> Path:
        return self.resource_dir(resource) / f"{start:012d}.bin"

    def write(self, resource: str, start: int, data: bytes):
        """Create the payload file for a new span atomically."""
        dest = self.path_for(resource, start)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_suffix(TMP_SUFFIX)
        try:
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, dest)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def append(self, resource: str, start: int, at: int, data: bytes):
        """Write data at offset `at` of a span's payload, dropping anything after it."""
        with open(self.path_for(resource, start), "r+b") as f:
            f.seek(at)
            f.write(data)
            f.truncate()

    def copy_into(self, resource: str, dst_start: int, at: int, src_start: int, size: int,
                  truncate: bool = True):
        """
        Copy `size` bytes of the span at src_start to offset `at` of the span at dst_start.

        With truncate=False bytes past the copied range are left in place.
        """
        with open(self.path_for(resource, dst_start), "r+b") as dst, \
                open(self.path_for(resource, src_start), "rb") as src:
            dst.seek(at)
            remaining = size
            while remaining > 0:
                chunk = src.read(min(COPY_CHUNK_SIZE, remaining))
                if not chunk:
                    raise OSError(f"Payload for {resource} at {src_start} ended early")
                dst.write(chunk)
                remaining -= len(chunk)
            if truncate:
                dst.truncate()

    def read(self, resource: str, span_start: int, pos: int, size: int) -> bytes:
        with open(self.path_for(resource, span_start), "rb") as f:
            f.seek(pos - span_start)
            return f.read(size)

    def delete(self, resource: str, start: int):
        self.path_for(resource, start).unlink(missing_ok=True)

    def delete_resource(self, resource: str):
        path = self.resource_dir(resource)
        if path.exists():
            shutil.rmtree(path)

    def verify(self, resource: str, start: int, size: int):
        """
        Check that a span's payload exists with at least `size` bytes.

        Longer files are truncated to the declared size. Raises
        CorruptIndexEntry for missing or short files.
        """
        path = self.path_for(resource, start)
        try:
            actual = path.stat().st_size
        except FileNotFoundError:
            raise CorruptIndexEntry(
                f"Missing payload for {resource} at {start}",
                details={"resource": resource, "start": start, "size": size},
            )
        if actual < size:
            raise CorruptIndexEntry(
                f"Short payload for {resource} at {start}: {actual} < {size}",
                details={"resource": resource, "start": start, "size": size, "actual": actual},
            )
        if actual > size:
            log.info("Trimming payload %s from %d to %d bytes", path.name, actual, size)
            os.truncate(path, size)

    def sweep(self, known: dict[str, set[int]]) -> int:
        """
        Remove payload files the index does not reference.

        `known` maps resource key -> span starts. Returns the number of files
        removed.
        """
        if not self.root.exists():
            return 0
        removed = 0
        for res_dir in self.root.iterdir():
            if not res_dir.is_dir():
                continue
            starts = known.get(res_dir.name)
            if starts is None:
                shutil.rmtree(res_dir, ignore_errors=True)
                log.info("Removed orphaned cache directory: %s", res_dir.name)
                removed += 1
                continue
            for f in res_dir.iterdir():
                keep = f.suffix == ".bin" and f.stem.isdigit() and int(f.stem) in starts
                if not keep:
                    f.unlink(missing_ok=True)
                    removed += 1
        return removed

    def size_on_disk(self) -> int:
        total = 0
        if not self.root.exists():
            return total
        for res_dir in self.root.iterdir():
            if res_dir.is_dir():
                total += sum(f.stat().st_size for f in res_dir.iterdir() if f.is_file())
        return total
