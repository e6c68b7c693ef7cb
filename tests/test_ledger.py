"""Tests for the async SQLite job ledger."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from rvtmeta.ledger import JobLedger
from rvtmeta.models import JobHandle, JobStatus, ObjectRef, OutputFormat, Stage

SOURCE = "models/tower.rvt"
REF = ObjectRef("rvtmeta-test", "tower.rvt", "urn:adsk.objects:os.object:rvtmeta-test/tower.rvt", 42)
HANDLE = JobHandle(
    urn="dXJuOmFkc2s",
    object_id=REF.object_id,
    submitted_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    output_formats=(OutputFormat("svf", ("3d", "2d")), OutputFormat("thumbnail", ())),
)


@pytest.fixture
async def ledger(tmp_path: Path):
    async with JobLedger(str(tmp_path / "jobs.db")) as ledger:
        yield ledger


class TestUploads:
    async def test_unknown_source(self, ledger):
        assert await ledger.get(SOURCE) is None
        assert await ledger.uploaded_object(SOURCE, "hash") is None

    async def test_upload_reused_for_same_hash(self, ledger):
        await ledger.record_upload(SOURCE, "hash-1", REF)

        assert await ledger.uploaded_object(SOURCE, "hash-1") == REF
        assert await ledger.uploaded_object(SOURCE, "hash-2") is None

    async def test_new_upload_clears_submission(self, ledger):
        await ledger.record_upload(SOURCE, "hash-1", REF)
        await ledger.record_submission(SOURCE, HANDLE)

        await ledger.record_upload(SOURCE, "hash-2", REF)

        row = await ledger.get(SOURCE)
        assert row["urn"] is None
        assert row["state"] == "uploaded"


class TestSubmissions:
    async def test_handle_round_trip(self, ledger):
        await ledger.record_upload(SOURCE, "hash-1", REF)
        await ledger.record_submission(SOURCE, HANDLE)

        assert await ledger.submitted_handle(SOURCE, REF.object_id) == HANDLE

    async def test_handle_for_other_object_ignored(self, ledger):
        await ledger.record_upload(SOURCE, "hash-1", REF)
        await ledger.record_submission(SOURCE, HANDLE)

        assert await ledger.submitted_handle(SOURCE, "urn:other") is None

    async def test_failed_job_is_not_reused(self, ledger):
        await ledger.record_upload(SOURCE, "hash-1", REF)
        await ledger.record_submission(SOURCE, HANDLE)
        await ledger.record_status(SOURCE, JobStatus.failed("corrupt"))

        assert await ledger.submitted_handle(SOURCE, REF.object_id) is None

    async def test_timed_out_job_is_reused(self, ledger):
        """A job that outlived the local deadline may still finish remotely."""
        await ledger.record_upload(SOURCE, "hash-1", REF)
        await ledger.record_submission(SOURCE, HANDLE)
        await ledger.record_status(SOURCE, JobStatus.timed_out("deadline"))

        assert await ledger.submitted_handle(SOURCE, REF.object_id) == HANDLE


class TestOutcomes:
    async def test_failure_keeps_progress(self, ledger):
        await ledger.record_upload(SOURCE, "hash-1", REF)
        await ledger.record_failure(SOURCE, Stage.SUBMIT, "rejected")

        row = await ledger.get(SOURCE)
        assert row["failed_stage"] == "submit"
        assert row["message"] == "rejected"
        assert await ledger.uploaded_object(SOURCE, "hash-1") == REF

    async def test_failure_for_unknown_source_inserts(self, ledger):
        await ledger.record_failure("models/missing.rvt", Stage.READ, "No such file")
        row = await ledger.get("models/missing.rvt")
        assert row["state"] == "new"
        assert row["failed_stage"] == "read"

    async def test_result_recorded(self, ledger):
        await ledger.record_upload(SOURCE, "hash-1", REF)
        await ledger.record_result(SOURCE, "tower.rvt.json")

        row = await ledger.get(SOURCE)
        assert row["state"] == "extracted"
        assert row["result_file"] == "tower.rvt.json"

    async def test_list_jobs_most_recent_first(self, ledger):
        await ledger.record_upload("a.rvt", "h", REF)
        await ledger.record_upload("b.rvt", "h", REF)

        rows = await ledger.list_jobs()

        assert [r["source"] for r in rows] == ["b.rvt", "a.rvt"]

    async def test_persists_across_connections(self, tmp_path: Path):
        db_path = str(tmp_path / "jobs.db")
        async with JobLedger(db_path) as ledger:
            await ledger.record_upload(SOURCE, "hash-1", REF)
        async with JobLedger(db_path) as ledger:
            assert await ledger.uploaded_object(SOURCE, "hash-1") == REF

    async def test_requires_connection(self, tmp_path: Path):
        with pytest.raises(RuntimeError, match="Not connected"):
            await JobLedger(str(tmp_path / "jobs.db")).get(SOURCE)
