"""
Byte-range disk cache with LRU eviction.

RangeCache sits between a streaming reader and an upstream byte source. Reads
are served from cached spans when possible; each gap is fetched from the
upstream once, written to disk, merged into the span index and then served.
When the configured budget is exceeded, whole spans are evicted in order of
last access, skipping spans pinned by open read handles.
"""

import asyncio
import logging
import time
from collections import defaultdict
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path

from mediacache.config import FETCH_TIMEOUT, MAX_CACHE_SIZE, MERGE_INLINE_LIMIT, READ_CHUNK_SIZE
from mediacache.database import IndexStore
from mediacache.errors import (
    CachePersistenceError, CorruptIndexEntry, FetchFailed, HandleClosed,
    ResourceUnavailable,
)
from mediacache.spans import (
    ResourceEntry, Span, adjacent, find_span, missing_ranges, next_span_start,
    overlaps,
)
from mediacache.storage import SegmentStore, resource_key
from mediacache.upstream import Upstream

log = logging.getLogger(__name__)


class ReadHandle:
    """Sequential reader over [start, end) of one resource."""

    def __init__(self, cache: "RangeCache", resource: str, start: int, end: int | None):
        self.cache = cache
        self.resource = resource
        self.start = start
        self.end = end
        self.position = start
        self.closed = False
        self._fetch: "InFlightFetch | None" = None
        self._closed_event = asyncio.Event()

    async def read(self, max_bytes: int = READ_CHUNK_SIZE) -> bytes:
        return await self.cache.read(self, max_bytes)

    async def close(self):
        await self.cache.close(self)

    async def iter_chunks(self, chunk_size: int = READ_CHUNK_SIZE):
        while True:
            data = await self.read(chunk_size)
            if not data:
                return
            yield data

    async def __aenter__(self) -> "ReadHandle":
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def __repr__(self):
        return f"ReadHandle({self.resource!r}, [{self.start}, {self.end}), at={self.position})"


@dataclass
class InFlightFetch:
    resource: str
    start: int
    end: int | None
    generation: int
    task: asyncio.Task | None = None
    waiters: int = 0

    def covers(self, pos: int) -> bool:
        return self.start <= pos and (self.end is None or pos < self.end)


class RangeCache:
    def __init__(
        self,
        storage_dir: Path,
        upstream: Upstream,
        index_store: IndexStore | None = None,
        max_cache_size: int = MAX_CACHE_SIZE,
        fetch_timeout: float | None = FETCH_TIMEOUT,
        fetch_window: int | None = None,
        merge_inline_limit: int = MERGE_INLINE_LIMIT,
        clock=time.time,
    ):
        if max_cache_size <= 0:
            raise ValueError("max_cache_size must be positive")
        self.storage = SegmentStore(storage_dir)
        self.upstream = upstream
        self.index_store = index_store
        self.max_cache_size = max_cache_size
        self.fetch_timeout = fetch_timeout
        self.fetch_window = fetch_window
        self.merge_inline_limit = merge_inline_limit
        self.total_bytes = 0
        self.persistence_error: CachePersistenceError | None = None
        self._clock = clock
        self._last_tick = 0.0
        self._entries: dict[str, ResourceEntry] = {}
        self._handles: dict[str, list[ReadHandle]] = defaultdict(list)
        self._inflight: dict[str, list[InFlightFetch]] = defaultdict(list)
        self._generation: dict[str, int] = defaultdict(int)
        self._pending: set[str] = set()
        self._touched: dict[tuple[str, int], float] = {}
        self._lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()

    # Lifecycle

    async def start(self):
        """Rebuild the in-memory index from the persisted one, dropping corrupt entries."""
        self.storage.ensure()
        entries: dict[str, ResourceEntry] = {}
        if self.index_store is not None:
            await self.index_store.init()
            entries = await self.index_store.load()

        dropped = 0
        async with self._lock:
            for resource, entry in entries.items():
                kept: list[Span] = []
                for span in sorted(entry.spans, key=lambda s: s.start):
                    if span.size <= 0 or (kept and span.start < kept[-1].end):
                        log.warning("Dropping malformed span %s [%d, %d)", resource, span.start, span.end)
                        dropped += 1
                        self._pending.add(resource)
                        continue
                    try:
                        self.storage.verify(resource, span.start, span.size)
                    except CorruptIndexEntry as e:
                        log.warning("Dropping corrupt index entry: %s", e)
                        dropped += 1
                        self._pending.add(resource)
                        continue
                    if kept and kept[-1].end == span.start:
                        left = kept[-1]
                        try:
                            self.storage.copy_into(resource, left.start, left.size, span.start, span.size)
                        except OSError as e:
                            log.warning("Could not merge adjacent spans of %s: %s", resource, e)
                            dropped += 1
                        else:
                            self._delete_payload(resource, span.start)
                            left.end = span.end
                            left.last_access = max(left.last_access, span.last_access)
                        self._pending.add(resource)
                        continue
                    kept.append(span)
                entry.spans = kept
                self._entries[resource] = entry
                self._last_tick = max([self._last_tick] + [s.last_access for s in kept])

            self.total_bytes = sum(e.size for e in self._entries.values())
            removed = self.storage.sweep(
                {resource_key(r): {s.start for s in e.spans} for r, e in self._entries.items()}
            )
            self._evict_locked(0)

        await self._flush_pending()
        log.info(
            "Cache ready: %d resources, %d bytes of %d (%d corrupt entries dropped, %d orphan files removed)",
            len(self._entries), self.total_bytes, self.max_cache_size, dropped, removed,
        )

    async def shutdown(self):
        """Cancel in-flight fetches, close open handles and flush the index."""
        tasks = [f.task for fetches in self._inflight.values() for f in fetches if f.task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for handles in list(self._handles.values()):
            for handle in list(handles):
                await self.close(handle)
        await self._flush_pending()

    # Public operations

    async def open(self, resource: str, start: int = 0, end: int | None = None) -> ReadHandle:
        """
        Open a sequential read handle for [start, end) of a resource.

        end=None reads to the end of the resource. If the range is not fully
        cached, the upstream is probed; ResourceUnavailable is raised when the
        probe fails and no cached byte overlaps the range.
        """
        if start < 0 or (end is not None and end < start):
            raise ValueError(f"Invalid range [{start}, {end})")

        async with self._lock:
            entry = self._entries.get(resource)
            spans = entry.spans if entry else []
            length = entry.length if entry else None
            eff_end = self._clamp(end, length)
            if eff_end is None:
                fully_cached = False
            else:
                fully_cached = start >= eff_end or not missing_ranges(spans, start, eff_end)
            any_cached = any(overlaps(s.start, s.end, start, eff_end) for s in spans)

        if not fully_cached:
            try:
                length = await self.upstream.probe(resource)
            except Exception as e:
                if not any_cached:
                    raise ResourceUnavailable(
                        f"Upstream unreachable and nothing cached for {resource}",
                        details={"resource": resource, "start": start, "end": end, "original_error": str(e)},
                    ) from e
                log.warning("Upstream unreachable for %s, serving cached bytes only: %s", resource, e)
            else:
                if length is not None:
                    async with self._lock:
                        self._set_length_locked(resource, length)

        handle = ReadHandle(self, resource, start, end)
        async with self._lock:
            self._handles[resource].append(handle)
        log.debug("Opened %r", handle)
        return handle

    async def read(self, handle: ReadHandle, max_bytes: int = READ_CHUNK_SIZE) -> bytes:
        """
        Return the next bytes of the handle's range, or b"" at the end of it.

        Cached bytes are served from disk. A gap is fetched from the upstream
        once; concurrent readers of the same gap wait for that fetch.
        """
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        while True:
            if handle.closed:
                raise HandleClosed(f"Read on closed handle for {handle.resource}")
            resource = handle.resource
            async with self._lock:
                end = self._effective_end(handle)
                pos = handle.position
                if end is not None and pos >= end:
                    return b""
                entry = self._entries.get(resource)
                span = find_span(entry.spans, pos) if entry else None
                if span is not None:
                    size = min(max_bytes, span.end - pos)
                    if end is not None:
                        size = min(size, end - pos)
                    data = self._read_span_locked(resource, entry, span, pos, size)
                    if data is not None:
                        handle.position += len(data)
                        return data
                    continue
                fetch = self._inflight_at(resource, pos)
                if fetch is None:
                    fetch = self._start_fetch_locked(resource, pos, end)
                fetch.waiters += 1
                handle._fetch = fetch

            await self._wait_for_fetch(handle, fetch)

            if handle.closed:
                raise HandleClosed(f"Handle for {resource} closed during fetch")
            if fetch.task.cancelled():
                raise FetchFailed(
                    f"Fetch cancelled for {resource} [{fetch.start}, {fetch.end})",
                    details={"resource": resource, "start": fetch.start, "end": fetch.end},
                )
            exc = fetch.task.exception()
            if exc is not None:
                details = exc.details if isinstance(exc, FetchFailed) else {"resource": resource}
                raise FetchFailed(str(exc), details=details) from exc

    async def close(self, handle: ReadHandle):
        """Release the handle's pins and its interest in any in-flight fetch."""
        if handle.closed:
            return
        handle.closed = True
        handle._closed_event.set()
        handles = self._handles.get(handle.resource)
        if handles and handle in handles:
            handles.remove(handle)
            if not handles:
                del self._handles[handle.resource]
        if handle._fetch is not None:
            fetch, handle._fetch = handle._fetch, None
            self._release(fetch)
        log.debug("Closed %r", handle)
        if self.total_bytes > self.max_cache_size:
            # Spans this handle pinned may now be evictable
            async with self._lock:
                self._evict_locked(0)
        await self._flush_pending()

    async def invalidate(self, resource: str):
        """
        Drop every span of a resource and delete its payload files.

        Bytes of fetches already in flight for the resource are discarded when
        they arrive.
        """
        async with self._lock:
            self._generation[resource] += 1
            entry = self._entries.pop(resource, None)
            freed = entry.size if entry else 0
            self.total_bytes -= freed
            for key in [k for k in self._touched if k[0] == resource]:
                del self._touched[key]
            try:
                self.storage.delete_resource(resource)
            except OSError as e:
                log.warning("Could not delete payloads of %s: %s", resource, e)
            self._pending.add(resource)
        log.info("Invalidated %s (%d bytes freed)", resource, freed)
        await self._flush_pending(raise_errors=True)

    async def flush(self):
        """Persist pending index changes and batched access times."""
        await self._flush_pending(raise_errors=True)

    # Introspection

    def spans(self, resource: str) -> list[Span]:
        entry = self._entries.get(resource)
        if not entry:
            return []
        return [Span(s.start, s.end, s.last_access) for s in entry.spans]

    def resources(self) -> list[str]:
        return sorted(r for r, e in self._entries.items() if e.spans)

    def length(self, resource: str) -> int | None:
        entry = self._entries.get(resource)
        return entry.length if entry else None

    def pin_count(self, resource: str, span: Span) -> int:
        return sum(
            1 for h in self._handles.get(resource, ())
            if overlaps(h.start, h.end, span.start, span.end)
        )

    def stats(self) -> dict:
        return {
            "total_bytes": self.total_bytes,
            "max_bytes": self.max_cache_size,
            "resources": len(self.resources()),
            "spans": sum(len(e.spans) for e in self._entries.values()),
            "open_handles": sum(len(h) for h in self._handles.values()),
            "inflight_fetches": sum(len(f) for f in self._inflight.values()),
        }

    # Internals

    def _now(self) -> float:
        now = self._clock()
        if now <= self._last_tick:
            now = self._last_tick + 1e-6
        self._last_tick = now
        return now

    @staticmethod
    def _clamp(end: int | None, length: int | None) -> int | None:
        if end is None:
            return length
        return end if length is None else min(end, length)

    def _effective_end(self, handle: ReadHandle) -> int | None:
        entry = self._entries.get(handle.resource)
        return self._clamp(handle.end, entry.length if entry else None)

    def _set_length_locked(self, resource: str, length: int):
        entry = self._entries.setdefault(resource, ResourceEntry())
        if entry.length != length:
            entry.length = length
            self._pending.add(resource)

    def _touch_locked(self, resource: str, span: Span):
        span.last_access = self._now()
        self._touched[(resource, span.start)] = span.last_access

    def _read_span_locked(self, resource: str, entry: ResourceEntry, span: Span, pos: int, size: int) -> bytes | None:
        try:
            data = self.storage.read(resource, span.start, pos, size)
        except OSError as e:
            log.warning("Cached payload unreadable for %s [%d, %d): %s", resource, span.start, span.end, e)
            data = b""
        if len(data) < size:
            # Payload vanished or was truncated underneath us: forget it and refetch
            log.warning("Dropping damaged span %s [%d, %d)", resource, span.start, span.end)
            entry.spans.remove(span)
            self.total_bytes -= span.size
            self._delete_payload(resource, span.start)
            self._pending.add(resource)
            return None
        self._touch_locked(resource, span)
        return data

    def _delete_payload(self, resource: str, start: int) -> bool:
        try:
            self.storage.delete(resource, start)
            return True
        except OSError as e:
            log.warning("Could not delete payload %s at %d: %s", resource, start, e)
            return False

    def _inflight_at(self, resource: str, pos: int) -> InFlightFetch | None:
        for fetch in self._inflight.get(resource, ()):
            if fetch.covers(pos):
                return fetch
        return None

    def _start_fetch_locked(self, resource: str, pos: int, end: int | None) -> InFlightFetch:
        entry = self._entries.get(resource)
        limits = [end]
        if entry:
            limits.append(next_span_start(entry.spans, pos))
        limits.extend(f.start for f in self._inflight.get(resource, ()) if f.start > pos)
        if self.fetch_window:
            limits.append(pos + self.fetch_window)
        bounded = [x for x in limits if x is not None]
        fetch_end = min(bounded) if bounded else None

        fetch = InFlightFetch(resource, pos, fetch_end, self._generation[resource])
        fetch.task = asyncio.create_task(self._run_fetch(fetch))
        # Waiters may all have gone by the time a fetch fails
        fetch.task.add_done_callback(lambda t: t.cancelled() or t.exception())
        self._inflight[resource].append(fetch)
        log.debug("Fetching %s [%d, %s)", resource, pos, fetch_end)
        return fetch

    async def _wait_for_fetch(self, handle: ReadHandle, fetch: InFlightFetch):
        closed = asyncio.create_task(handle._closed_event.wait())
        try:
            await asyncio.wait({fetch.task, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if handle._fetch is fetch:
                handle._fetch = None
                self._release(fetch)

    def _release(self, fetch: InFlightFetch):
        fetch.waiters -= 1
        if fetch.waiters <= 0 and fetch.task is not None and not fetch.task.done():
            log.debug("Cancelling fetch %s [%d, %s) with no waiters", fetch.resource, fetch.start, fetch.end)
            fetch.task.cancel()

    async def _run_fetch(self, fetch: InFlightFetch):
        try:
            try:
                data = await asyncio.wait_for(self._download(fetch), self.fetch_timeout)
            except asyncio.TimeoutError as e:
                raise FetchFailed(
                    f"Fetch timed out after {self.fetch_timeout}s for {fetch.resource}",
                    details={"resource": fetch.resource, "start": fetch.start, "end": fetch.end},
                ) from e
            except FetchFailed:
                raise
            except Exception as e:
                raise FetchFailed(
                    f"Fetch failed for {fetch.resource} [{fetch.start}, {fetch.end}): {e}",
                    details={"resource": fetch.resource, "start": fetch.start, "end": fetch.end,
                             "original_error": str(e)},
                ) from e
            async with self._lock:
                merges = self._commit_locked(fetch, data)
            if merges:
                # Finishes even if the fetch is cancelled meanwhile
                await asyncio.shield(self._merge_large_neighbours(fetch.resource, fetch.generation, merges))
            await self._flush_pending()
        except FetchFailed as e:
            log.warning("%s", e)
            raise
        finally:
            fetches = self._inflight.get(fetch.resource)
            if fetches and fetch in fetches:
                fetches.remove(fetch)
                if not fetches:
                    del self._inflight[fetch.resource]

    async def _download(self, fetch: InFlightFetch) -> bytes:
        expected = None if fetch.end is None else fetch.end - fetch.start
        buf = bytearray()
        async with aclosing(self.upstream.fetch(fetch.resource, fetch.start, fetch.end)) as chunks:
            async for chunk in chunks:
                buf.extend(chunk)
                if expected is not None and len(buf) >= expected:
                    break
        if expected is not None:
            del buf[expected:]
        return bytes(buf)

    def _commit_locked(self, fetch: InFlightFetch, data: bytes) -> list[Span]:
        """Insert fetched bytes; returns right neighbours left for _merge_large_neighbours."""
        resource = fetch.resource
        if self._generation[resource] != fetch.generation:
            log.info("Discarding %d fetched bytes for invalidated %s", len(data), resource)
            return []
        entry = self._entries.setdefault(resource, ResourceEntry())
        received_end = fetch.start + len(data)
        if fetch.end is None or received_end < fetch.end:
            # Short read: the upstream reached the end of the resource
            self._set_length_locked(resource, received_end)
        merges = []
        for gap_start, gap_end in missing_ranges(entry.spans, fetch.start, received_end):
            piece = data[gap_start - fetch.start:gap_end - fetch.start]
            self._evict_locked(len(piece))
            unmerged = self._insert_locked(resource, entry, gap_start, piece)
            if unmerged is not None:
                merges.append(unmerged)
        return merges

    def _insert_locked(self, resource: str, entry: ResourceEntry, start: int, data: bytes) -> Span | None:
        """
        Store bytes for a gap and merge the new span with adjacent neighbours.

        A right neighbour larger than merge_inline_limit is not merged here
        and is returned instead.
        """
        end = start + len(data)
        left, right = adjacent(entry.spans, start, end)
        merge_right = right is not None and right.size <= self.merge_inline_limit
        base = left.start if left else start
        created = False
        try:
            if left:
                self.storage.append(resource, left.start, left.size, data)
            else:
                self.storage.write(resource, start, data)
                created = True
            if merge_right:
                self.storage.copy_into(resource, base, end - base, right.start, right.size)
        except OSError as e:
            if created:
                self._delete_payload(resource, start)
            raise FetchFailed(
                f"Could not store bytes for {resource} [{start}, {end}): {e}",
                details={"resource": resource, "start": start, "end": end, "original_error": str(e)},
            ) from e

        if merge_right:
            self._absorb_locked(resource, entry, right)
        if left:
            span = left
            span.end = right.end if merge_right else end
        else:
            span = Span(start, right.end if merge_right else end)
            entry.spans.append(span)
            entry.spans.sort(key=lambda s: s.start)
        self._touch_locked(resource, span)
        self.total_bytes += len(data)
        self._pending.add(resource)
        if right is not None and not merge_right:
            return right
        return None

    def _absorb_locked(self, resource: str, entry: ResourceEntry, right: Span):
        """Forget a right span whose bytes were copied into its left neighbour."""
        self._delete_payload(resource, right.start)
        entry.spans.remove(right)
        self._touched.pop((resource, right.start), None)

    async def _merge_large_neighbours(self, resource: str, generation: int, merges: list[Span]):
        """
        Merge right spans that _insert_locked left next to their left neighbour.

        The payload copy runs in a worker thread without the index lock, so
        readers keep being served. Under the lock the pair is checked again:
        if either span changed meanwhile the copy is redone from the current
        neighbour, and nothing happens when the spans are no longer adjacent.
        """
        for right in merges:
            left = self._left_neighbour(resource, generation, right)
            if left is None:
                continue
            at, size = left.size, right.size
            try:
                await asyncio.to_thread(
                    self.storage.copy_into, resource, left.start, at, right.start, size, False,
                )
                copied_at = at
            except OSError as e:
                log.debug("Merge copy for %s at %d retried under the index lock: %s", resource, right.start, e)
                copied_at = None
            async with self._lock:
                self._finish_merge_locked(resource, generation, left, right, copied_at, size)

    def _left_neighbour(self, resource: str, generation: int, right: Span) -> Span | None:
        entry = self._entries.get(resource)
        if entry is None or self._generation[resource] != generation:
            return None
        if not any(s is right for s in entry.spans):
            return None
        left, _ = adjacent(entry.spans, right.start, right.start)
        return left

    def _finish_merge_locked(self, resource: str, generation: int, left: Span, right: Span,
                             copied_at: int | None, copied_size: int):
        current = self._left_neighbour(resource, generation, right)
        if current is None:
            return
        unchanged = current is left and copied_at == left.size and copied_size == right.size
        if not unchanged:
            try:
                self.storage.copy_into(resource, current.start, current.size, right.start, right.size)
            except OSError as e:
                log.warning("Could not merge %s [%d, %d) into [%d, %d): %s",
                            resource, right.start, right.end, current.start, current.end, e)
                return
        self._absorb_locked(resource, self._entries[resource], right)
        current.end = right.end
        current.last_access = max(current.last_access, right.last_access)
        self._touched[(resource, current.start)] = current.last_access
        self._pending.add(resource)

    def _evict_locked(self, bytes_needed: int) -> int:
        """
        Evict least-recently-used unpinned spans until bytes_needed fits.

        Returns the number of bytes freed. If only pinned spans remain the
        budget is left exceeded (soft budget).
        """
        if self.total_bytes + bytes_needed <= self.max_cache_size:
            return 0
        candidates = sorted(
            ((span.last_access, resource, span)
             for resource, entry in self._entries.items() for span in entry.spans),
            key=lambda c: c[0],
        )
        freed = 0
        for _, resource, span in candidates:
            if self.total_bytes + bytes_needed <= self.max_cache_size:
                break
            if self.pin_count(resource, span):
                continue
            if not self._delete_payload(resource, span.start):
                continue
            self._entries[resource].spans.remove(span)
            self._touched.pop((resource, span.start), None)
            self.total_bytes -= span.size
            freed += span.size
            self._pending.add(resource)
            log.info("Evicted %s [%d, %d) (%d bytes)", resource, span.start, span.end, span.size)
        if self.total_bytes + bytes_needed > self.max_cache_size:
            log.warning(
                "Cache over budget by %d bytes: remaining spans are pinned by open readers",
                self.total_bytes + bytes_needed - self.max_cache_size,
            )
        return freed

    async def _flush_pending(self, raise_errors: bool = False):
        if self.index_store is None:
            self._pending.clear()
            self._touched.clear()
            return
        async with self._persist_lock:
            pending, self._pending = self._pending, set()
            touched, self._touched = self._touched, {}
            saved: set[str] = set()
            try:
                for resource in sorted(pending):
                    entry = self._entries.get(resource)
                    if entry is None:
                        await self.index_store.delete_resource(resource)
                    else:
                        snapshot = ResourceEntry(
                            entry.length, [Span(s.start, s.end, s.last_access) for s in entry.spans],
                        )
                        await self.index_store.save_resource(resource, snapshot)
                    saved.add(resource)
                # Saved resources already carry their latest access times
                rows = [(r, start, ts) for (r, start), ts in touched.items() if r not in saved]
                await self.index_store.touch(rows)
            except CachePersistenceError as e:
                # In-memory index stays authoritative; retry on the next flush
                self.persistence_error = e
                self._requeue(pending - saved, touched)
                log.error("Index persistence failed: %s", e)
                if raise_errors:
                    raise
            except asyncio.CancelledError:
                self._requeue(pending - saved, touched)
                raise

    def _requeue(self, pending: set[str], touched: dict[tuple[str, int], float]):
        self._pending |= pending
        for key, ts in touched.items():
            self._touched.setdefault(key, ts)
