import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mediacache.cache import RangeCache
from mediacache.config import (
    FETCH_TIMEOUT, FETCH_WINDOW, INDEX_DB_PATH, MAX_CACHE_SIZE, MEDIA_CACHE,
)
from mediacache.database import IndexStore
from mediacache.upstream import HttpUpstream

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    upstream = HttpUpstream()
    cache = RangeCache(
        MEDIA_CACHE,
        upstream,
        index_store=IndexStore(INDEX_DB_PATH),
        max_cache_size=MAX_CACHE_SIZE,
        fetch_timeout=FETCH_TIMEOUT,
        fetch_window=FETCH_WINDOW,
    )
    await cache.start()
    app.state.cache = cache

    yield

    await cache.shutdown()
    await upstream.aclose()
    log.info("Cache shut down with %d bytes stored", cache.total_bytes)


app = FastAPI(title="Media Range Cache", lifespan=lifespan)

# Register routers
from mediacache.routers.stream import router as stream_router
from mediacache.routers.cache import router as cache_router

app.include_router(stream_router)
app.include_router(cache_router)
