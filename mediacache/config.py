import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# Local paths
CACHE_DIR = Path(os.environ.get("MEDIACACHE_DIR", BASE_DIR / "cache"))
MEDIA_CACHE = CACHE_DIR / "media"
INDEX_DB_PATH = CACHE_DIR / "index.db"

# Cache limits (bytes)
MAX_CACHE_SIZE = int(os.environ.get("MEDIACACHE_MAX_BYTES", 512 * 1024 * 1024))  # 512 MB

# Upstream settings
FETCH_TIMEOUT = float(os.environ.get("MEDIACACHE_FETCH_TIMEOUT", 60.0))  # seconds
FETCH_WINDOW = int(os.environ.get("MEDIACACHE_FETCH_WINDOW", 4 * 1024 * 1024))  # max bytes per upstream request
UPSTREAM_HEADERS = {
    "User-Agent": os.environ.get("MEDIACACHE_USER_AGENT", "mediacache/0.1"),
    "Accept": "*/*",
    # Byte ranges must map 1:1 onto the stored payload
    "Accept-Encoding": "identity",
}

# Streaming settings
READ_CHUNK_SIZE = 65536

# Right-neighbour merges larger than this are copied outside the index lock (bytes)
MERGE_INLINE_LIMIT = int(os.environ.get("MEDIACACHE_MERGE_INLINE_LIMIT", 1024 * 1024))

# Largest body sent for a range request while the resource length is still unknown
PARTIAL_RESPONSE_MAX = int(os.environ.get("MEDIACACHE_PARTIAL_RESPONSE_MAX", 1024 * 1024))
