import logging
import sqlite3
from pathlib import Path

import aiosqlite

from mediacache.errors import CachePersistenceError
from mediacache.spans import ResourceEntry, Span

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS resources (
    resource TEXT PRIMARY KEY,
    length INTEGER
);

CREATE TABLE IF NOT EXISTS spans (
    resource TEXT NOT NULL REFERENCES resources(resource) ON DELETE CASCADE,
    span_start INTEGER NOT NULL,
    span_end INTEGER NOT NULL,
    last_access REAL NOT NULL,
    PRIMARY KEY (resource, span_start)
);

CREATE INDEX IF NOT EXISTS idx_spans_last_access ON spans(last_access);
"""


class IndexStore:
    """SQLite-backed persistence of the span index."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def get_db(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(str(self.db_path))
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA foreign_keys=ON")
        return db

    async def init(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        await self._with_retry("init", self._init)

    async def _init(self):
        db = await self.get_db()
        try:
            await db.executescript(SCHEMA)
            await db.commit()
        finally:
            await db.close()

    async def load(self) -> dict[str, ResourceEntry]:
        db = await self.get_db()
        try:
            entries: dict[str, ResourceEntry] = {}
            cursor = await db.execute("SELECT resource, length FROM resources")
            for row in await cursor.fetchall():
                entries[row["resource"]] = ResourceEntry(length=row["length"])
            cursor = await db.execute(
                "SELECT resource, span_start, span_end, last_access FROM spans ORDER BY resource, span_start"
            )
            for row in await cursor.fetchall():
                entry = entries.setdefault(row["resource"], ResourceEntry())
                entry.spans.append(Span(row["span_start"], row["span_end"], row["last_access"]))
            return entries
        finally:
            await db.close()

    async def save_resource(self, resource: str, entry: ResourceEntry):
        """Replace the stored spans of one resource in a single transaction."""
        await self._with_retry(resource, self._save_resource, resource, entry)

    async def _save_resource(self, resource: str, entry: ResourceEntry):
        db = await self.get_db()
        try:
            await db.execute(
                "INSERT INTO resources(resource, length) VALUES(?, ?) "
                "ON CONFLICT(resource) DO UPDATE SET length=?",
                (resource, entry.length, entry.length),
            )
            await db.execute("DELETE FROM spans WHERE resource=?", (resource,))
            await db.executemany(
                "INSERT INTO spans(resource, span_start, span_end, last_access) VALUES(?, ?, ?, ?)",
                [(resource, s.start, s.end, s.last_access) for s in entry.spans],
            )
            await db.commit()
        finally:
            await db.close()

    async def delete_resource(self, resource: str):
        await self._with_retry(resource, self._delete_resource, resource)

    async def _delete_resource(self, resource: str):
        db = await self.get_db()
        try:
            await db.execute("DELETE FROM spans WHERE resource=?", (resource,))
            await db.execute("DELETE FROM resources WHERE resource=?", (resource,))
            await db.commit()
        finally:
            await db.close()

    async def touch(self, rows: list[tuple[str, int, float]]):
        """Batch-update last_access for (resource, start, last_access) rows."""
        if rows:
            await self._with_retry("touch", self._touch, rows)

    async def _touch(self, rows: list[tuple[str, int, float]]):
        db = await self.get_db()
        try:
            await db.executemany(
                "UPDATE spans SET last_access=? WHERE resource=? AND span_start=?",
                [(ts, resource, start) for resource, start, ts in rows],
            )
            await db.commit()
        finally:
            await db.close()

    async def _with_retry(self, what: str, func, *args):
        try:
            await func(*args)
            return
        except (sqlite3.Error, OSError) as e:
            log.warning("Index write failed for %s, retrying: %s", what, e)
        try:
            await func(*args)
        except (sqlite3.Error, OSError) as e:
            raise CachePersistenceError(
                f"Could not persist index for {what}: {e}",
                details={"resource": what, "original_error": str(e)},
            ) from e
