"""Async SQLite ledger of per-source pipeline progress.

Records what each source has already achieved remotely so a re-run after
a later-stage failure resumes instead of repeating work:

* an unchanged payload (same content hash) is not uploaded again;
* an already-submitted job is not submitted again.

Each write method commits immediately; no transaction is held across an
``await`` boundary.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiosqlite

from rvtmeta.models import DEFAULT_OUTPUT_SPEC, JobHandle, JobStatus, ObjectRef, OutputFormat, Stage

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    source        TEXT PRIMARY KEY,
    content_hash  TEXT,
    bucket_key    TEXT,
    object_key    TEXT,
    object_id     TEXT,
    object_size   INTEGER,
    urn           TEXT,
    submitted_at  TEXT,
    output_spec   TEXT,
    state         TEXT NOT NULL DEFAULT 'new',
    failed_stage  TEXT,
    message       TEXT,
    result_file   TEXT,
    updated_at    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_urn ON jobs(urn);
"""


# Output spec column format: "svf:3d,2d;thumbnail:"
def _format_output_spec(formats: tuple[OutputFormat, ...]) -> str:
    return ";".join(f"{fmt.type}:{','.join(fmt.views)}" for fmt in formats)


def _parse_output_spec(text: str | None) -> tuple[OutputFormat, ...]:
    formats: list[OutputFormat] = []
    for item in (text or "").split(";"):
        if ":" not in item:
            continue
        fmt_type, views = item.split(":", 1)
        formats.append(OutputFormat(type=fmt_type, views=tuple(v for v in views.split(",") if v)))
    return tuple(formats)


class JobLedger:
    """Async SQLite ledger keyed by source identifier.

    Usage::

        async with JobLedger("data/jobs.db") as ledger:
            row = await ledger.get("models/tower.rvt")
            await ledger.record_upload("models/tower.rvt", digest, object_ref)
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection (WAL mode) and create the schema."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> JobLedger:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, source: str) -> dict | None:
        db = self._ensure_connected()
        cursor = await db.execute("SELECT * FROM jobs WHERE source = ?", (source,))
        row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def list_jobs(self, limit: int = 1000) -> list[dict]:
        """Most recently updated first."""
        db = self._ensure_connected()
        cursor = await db.execute(
            "SELECT * FROM jobs ORDER BY updated_at DESC LIMIT ?", (limit,)
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def uploaded_object(self, source: str, content_hash: str) -> ObjectRef | None:
        """The recorded object for *source* if its payload is unchanged."""
        row = await self.get(source)
        if row is None or row["object_id"] is None or row["content_hash"] != content_hash:
            return None
        return ObjectRef(
            bucket_key=row["bucket_key"],
            object_key=row["object_key"],
            object_id=row["object_id"],
            size=row["object_size"],
        )

    async def submitted_handle(self, source: str, object_id: str) -> JobHandle | None:
        """The recorded job for *source* if it was submitted for *object_id*
        and the service has not reported it failed."""
        row = await self.get(source)
        if (
            row is None
            or row["urn"] is None
            or row["object_id"] != object_id
            or row["state"] == "failed"
        ):
            return None
        return JobHandle(
            urn=row["urn"],
            object_id=row["object_id"],
            submitted_at=datetime.fromisoformat(row["submitted_at"]),
            output_formats=_parse_output_spec(row["output_spec"]) or DEFAULT_OUTPUT_SPEC,
        )

    # ------------------------------------------------------------------
    # Writes (each commits immediately)
    # ------------------------------------------------------------------

    async def record_upload(self, source: str, content_hash: str, ref: ObjectRef) -> None:
        db = self._ensure_connected()
        now = self._now_iso()
        await db.execute(
            """INSERT INTO jobs (source, content_hash, bucket_key, object_key, object_id,
                                 object_size, state, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 'uploaded', ?)
               ON CONFLICT(source) DO UPDATE SET
                   content_hash = excluded.content_hash,
                   bucket_key = excluded.bucket_key,
                   object_key = excluded.object_key,
                   object_id = excluded.object_id,
                   object_size = excluded.object_size,
                   urn = NULL, submitted_at = NULL, output_spec = NULL,
                   state = 'uploaded', failed_stage = NULL, message = NULL,
                   updated_at = excluded.updated_at""",
            (source, content_hash, ref.bucket_key, ref.object_key, ref.object_id, ref.size, now),
        )
        await db.commit()
        logger.debug("Ledger: %s uploaded as %s", source, ref.object_id)

    async def record_submission(self, source: str, handle: JobHandle) -> None:
        db = self._ensure_connected()
        output_spec = _format_output_spec(handle.output_formats)
        await db.execute(
            """UPDATE jobs
               SET urn = ?, submitted_at = ?, output_spec = ?, state = 'submitted',
                   failed_stage = NULL, message = NULL, updated_at = ?
               WHERE source = ?""",
            (handle.urn, handle.submitted_at.isoformat(), output_spec, self._now_iso(), source),
        )
        await db.commit()
        logger.debug("Ledger: %s submitted as %s", source, handle.urn)

    async def record_status(self, source: str, status: JobStatus) -> None:
        db = self._ensure_connected()
        await db.execute(
            "UPDATE jobs SET state = ?, message = ?, updated_at = ? WHERE source = ?",
            (status.state.value, status.reason, self._now_iso(), source),
        )
        await db.commit()

    async def record_result(self, source: str, result_file: str) -> None:
        db = self._ensure_connected()
        await db.execute(
            """UPDATE jobs SET state = 'extracted', result_file = ?, failed_stage = NULL,
                   message = NULL, updated_at = ?
               WHERE source = ?""",
            (result_file, self._now_iso(), source),
        )
        await db.commit()

    async def record_failure(self, source: str, stage: Stage, message: str) -> None:
        """Record a failed stage without discarding earlier progress."""
        db = self._ensure_connected()
        now = self._now_iso()
        await db.execute(
            """INSERT INTO jobs (source, failed_stage, message, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(source) DO UPDATE SET
                   failed_stage = excluded.failed_stage,
                   message = excluded.message,
                   updated_at = excluded.updated_at""",
            (source, stage.value, message, now),
        )
        await db.commit()
        logger.debug("Ledger: %s failed at %s", source, stage.value)
