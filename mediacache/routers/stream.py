import logging
import re
from urllib.parse import urlparse

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from mediacache.config import PARTIAL_RESPONSE_MAX, READ_CHUNK_SIZE
from mediacache.errors import FetchFailed, ResourceUnavailable

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["stream"])

RANGE_RE = re.compile(r"^\s*bytes=(\d+)-(\d*)\s*$")


def parse_range(value: str | None) -> tuple[int, int | None] | None:
    """
    Parse a single "bytes=a-b" or "bytes=a-" header into a closed-open range.

    Returns None when no header was sent; raises ValueError for forms this
    service does not serve (suffix and multi-range requests).
    """
    if not value:
        return None
    m = RANGE_RE.match(value)
    if not m:
        raise ValueError(f"Unsupported range: {value}")
    start = int(m.group(1))
    if not m.group(2):
        return start, None
    last = int(m.group(2))
    if last < start:
        raise ValueError(f"Unsupported range: {value}")
    return start, last + 1


def content_type_for_url(url: str) -> str:
    path = urlparse(url).path.lower()
    ext = path.rsplit(".", 1)[-1] if "." in path else ""
    return {
        "ogg": "audio/ogg",
        "opus": "audio/ogg",
        "mp3": "audio/mpeg",
        "m4a": "audio/mp4",
        "mp4": "audio/mp4",
        "webm": "audio/webm",
        "wav": "audio/wav",
        "flac": "audio/flac",
    }.get(ext, "application/octet-stream")


def past_end(length: int | None, start: int, requested: tuple | None) -> bool:
    # An unranged request for an empty resource is still a valid 200
    return length is not None and start >= length and (start > 0 or bool(requested))


def unsatisfiable(length: int) -> Response:
    return Response(status_code=416, headers={"Content-Range": f"bytes */{length}"})


@router.get("/stream")
async def stream_resource(
    request: Request,
    url: str = Query(..., min_length=1),
    range_header: str | None = Header(None, alias="Range"),
):
    cache = request.app.state.cache

    try:
        requested = parse_range(range_header)
    except ValueError:
        raise HTTPException(416, "Unsupported range")
    start, end = requested if requested else (0, None)

    try:
        handle = await cache.open(url, start, end)
    except ResourceUnavailable as e:
        log.warning("Stream unavailable: %s", e)
        raise HTTPException(503, "Resource unavailable")

    if past_end(cache.length(url), start, requested):
        await handle.close()
        return unsatisfiable(cache.length(url))

    # Read ahead eagerly so upstream failures still map to a status code. A
    # range response needs the total length or the exact body size for its
    # headers, so range requests keep reading until one of them is known.
    buffered: list[bytes] = []
    size = 0
    try:
        while True:
            limit = min(READ_CHUNK_SIZE, PARTIAL_RESPONSE_MAX - size) if requested else READ_CHUNK_SIZE
            chunk = await handle.read(limit)
            if chunk:
                buffered.append(chunk)
                size += len(chunk)
            if not chunk or not requested or cache.length(url) is not None or size >= PARTIAL_RESPONSE_MAX:
                break
    except FetchFailed as e:
        await handle.close()
        log.warning("Stream fetch failed: %s", e)
        raise HTTPException(502, "Upstream fetch failed")

    length = cache.length(url)
    if past_end(length, start, requested):
        await handle.close()
        return unsatisfiable(length)

    if length is not None:
        stop = length if end is None else min(end, length)
    elif requested:
        # Length still unknown: answer with exactly the bytes read so far
        stop = start + size
        await handle.close()
    else:
        stop = None

    headers = {"Accept-Ranges": "bytes"}
    status = 200
    if stop is not None:
        headers["Content-Length"] = str(stop - start)
        if requested:
            status = 206
            total = length if length is not None else "*"
            headers["Content-Range"] = f"bytes {start}-{stop - 1}/{total}"

    async def body():
        try:
            for chunk in buffered:
                yield chunk
            if not handle.closed:
                async for chunk in handle.iter_chunks(READ_CHUNK_SIZE):
                    yield chunk
        except FetchFailed as e:
            log.warning("Stream aborted for %s: %s", url, e)
            raise
        finally:
            await handle.close()

    return StreamingResponse(
        body(),
        status_code=status,
        headers=headers,
        media_type=content_type_for_url(url),
    )
