import logging

from fastapi import APIRouter, Query, Request

from mediacache.cache import RangeCache
from mediacache.errors import CachePersistenceError
from mediacache.models import CacheStatusOut, ResourceOut, SpanOut

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


def _mb(size: int) -> float:
    return round(size / (1024 * 1024), 1)


def _resource_out(cache: RangeCache, resource: str) -> ResourceOut:
    spans = cache.spans(resource)
    return ResourceOut(
        resource=resource,
        length=cache.length(resource),
        cached_bytes=sum(s.size for s in spans),
        spans=[
            SpanOut(
                start=s.start,
                end=s.end,
                size=s.size,
                last_access=s.last_access,
                pinned=cache.pin_count(resource, s) > 0,
            )
            for s in spans
        ],
    )


@router.get("/status")
async def cache_status(request: Request) -> CacheStatusOut:
    cache = request.app.state.cache
    stats = cache.stats()
    disk_bytes = cache.storage.size_on_disk()
    return CacheStatusOut(
        usage_mb=_mb(stats["total_bytes"]),
        disk_bytes=disk_bytes,
        disk_usage_mb=_mb(disk_bytes),
        **stats,
    )


@router.get("/resources")
async def list_resources(request: Request) -> list[ResourceOut]:
    cache = request.app.state.cache
    return [_resource_out(cache, r) for r in cache.resources()]


@router.delete("/resources")
async def invalidate_resource(request: Request, url: str = Query(..., min_length=1)):
    cache = request.app.state.cache
    freed = sum(s.size for s in cache.spans(url))
    try:
        await cache.invalidate(url)
    except CachePersistenceError as e:
        # Already dropped in memory; only durability of the removal is at stake
        log.error("Invalidate of %s not persisted: %s", url, e)
        return {"status": "invalidated", "resource": url, "freed_bytes": freed, "persisted": False}
    return {"status": "invalidated", "resource": url, "freed_bytes": freed, "persisted": True}
