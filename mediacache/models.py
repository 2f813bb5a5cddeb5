from pydantic import BaseModel


class SpanOut(BaseModel):
    start: int
    end: int
    size: int
    last_access: float
    pinned: bool = False


class ResourceOut(BaseModel):
    resource: str
    length: int | None = None
    cached_bytes: int = 0
    spans: list[SpanOut] = []


class CacheStatusOut(BaseModel):
    total_bytes: int = 0
    max_bytes: int = 0
    usage_mb: float = 0.0
    disk_bytes: int = 0
    disk_usage_mb: float = 0.0
    resources: int = 0
    spans: int = 0
    open_handles: int = 0
    inflight_fetches: int = 0
