import logging
import re
from typing import AsyncGenerator, Protocol

import httpx

from mediacache.config import READ_CHUNK_SIZE, UPSTREAM_HEADERS
from mediacache.errors import FetchFailed

log = logging.getLogger(__name__)

# Example: "bytes 0-0/12345" or "bytes 0-0/*"
CONTENT_RANGE_RE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$", re.IGNORECASE)


class Upstream(Protocol):
    """Byte-range capable source the cache fetches gaps from."""

    def fetch(self, resource: str, start: int, end: int | None) -> AsyncGenerator[bytes, None]:
        """Yield the bytes of [start, end); end=None reads to the end of the resource."""
        ...

    async def probe(self, resource: str) -> int | None:
        """Return the total length if known. Raises when the source is unreachable."""
        ...


def parse_content_range(value: str | None) -> tuple[int, int, int | None] | None:
    if not value:
        return None
    m = CONTENT_RANGE_RE.match(value)
    if not m:
        return None
    total = None if m.group(3) == "*" else int(m.group(3))
    return int(m.group(1)), int(m.group(2)), total


def range_header(start: int, end: int | None) -> str:
    if end is None:
        return f"bytes={start}-"
    return f"bytes={start}-{end - 1}"


class HttpUpstream:
    """HTTP range-request upstream for resolved stream URLs."""

    def __init__(self, client: httpx.AsyncClient | None = None, headers: dict | None = None):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self.headers = {**UPSTREAM_HEADERS, **(headers or {})}

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def probe(self, resource: str) -> int | None:
        """Learn the resource length with a single-byte range request."""
        headers = {**self.headers, "Range": "bytes=0-0"}
        async with self.client.stream("GET", resource, headers=headers) as resp:
            if resp.status_code == 206:
                parsed = parse_content_range(resp.headers.get("Content-Range"))
                return parsed[2] if parsed else None
            if resp.status_code == 200:
                length = resp.headers.get("Content-Length")
                return int(length) if length and length.isdigit() else None
            if resp.status_code == 416:
                # Nothing to serve at offset 0: empty resource
                return 0
            raise FetchFailed(
                f"Probe failed HTTP {resp.status_code}: {resource}",
                details={"resource": resource, "status_code": resp.status_code},
            )

    async def fetch(self, resource: str, start: int, end: int | None) -> AsyncGenerator[bytes, None]:
        headers = {**self.headers, "Range": range_header(start, end)}
        async with self.client.stream("GET", resource, headers=headers) as resp:
            if resp.status_code == 416:
                log.debug("Range %s beyond end of %s", headers["Range"], resource)
                return
            if resp.status_code == 200:
                if start > 0:
                    # Origin ignored the Range header; the body starts at offset 0
                    raise FetchFailed(
                        f"Upstream ignored range request: {resource}",
                        details={"resource": resource, "start": start, "end": end},
                    )
            elif resp.status_code == 206:
                parsed = parse_content_range(resp.headers.get("Content-Range"))
                if parsed and parsed[0] != start:
                    raise FetchFailed(
                        f"Upstream served bytes from {parsed[0]}, expected {start}: {resource}",
                        details={"resource": resource, "start": start, "served_start": parsed[0]},
                    )
            else:
                raise FetchFailed(
                    f"Fetch failed HTTP {resp.status_code}: {resource}",
                    details={"resource": resource, "status_code": resp.status_code},
                )
            async for chunk in resp.aiter_bytes(chunk_size=READ_CHUNK_SIZE):
                yield chunk
