"""
HTTP tests for the upload and profile lookup endpoints.
"""

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from profile_ingest.api import NO_MATCH_MESSAGE, app
from profile_ingest.db import get_session
from profile_ingest.pipelines import reconciliation
from profile_ingest.pipelines.processing import NOTHING_NEW_MESSAGE, SAVED_MESSAGE

from helpers import build_workbook, profile_row

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def upload_files(payload: bytes, filename: str = "profiles.xlsx", content_type: str = XLSX) -> dict:
    return {"file": (filename, payload, content_type)}


class TestUpload:
    """POST /api/upload"""

    @pytest.mark.asyncio
    async def test_three_row_sheet_with_missing_username(self, client, three_row_sheet):
        response = await client.post("/api/upload", files=upload_files(three_row_sheet))

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == SAVED_MESSAGE
        assert body["data"]["inserted_count"] == 2
        assert body["data"]["inserted"] == ["alice", "carol"]
        assert body["data"]["skipped_rows"][0]["row_number"] == 3

    @pytest.mark.asyncio
    async def test_reupload_is_idempotent(self, client, three_row_sheet):
        await client.post("/api/upload", files=upload_files(three_row_sheet))
        response = await client.post("/api/upload", files=upload_files(three_row_sheet))

        assert response.status_code == 200
        assert response.json()["message"] == NOTHING_NEW_MESSAGE
        assert response.json()["data"]["inserted_count"] == 0

        listing = await client.get("/api/data")
        assert [p["username"] for p in listing.json()] == ["alice", "carol"]

    @pytest.mark.asyncio
    async def test_existing_username_not_overwritten(self, client):
        original = build_workbook([profile_row("1", "alice", {"Full name": "Alice Original"})])
        changed = build_workbook([profile_row("1", "alice", {"Full name": "Alice Changed"})])

        await client.post("/api/upload", files=upload_files(original))
        response = await client.post("/api/upload", files=upload_files(changed))

        assert response.status_code == 200
        assert response.json()["data"]["duplicates"] == ["alice"]
        stored = (await client.get("/api/data/alice")).json()
        assert stored[0]["full_name"] == "Alice Original"

    @pytest.mark.asyncio
    async def test_no_file(self, client):
        class UntouchableSession:
            def __getattr__(self, name):
                raise AssertionError(f"storage accessed via {name}")

        async def untouchable_session():
            yield UntouchableSession()

        app.dependency_overrides[get_session] = untouchable_session

        response = await client.post("/api/upload", data={"comment": "forgot the file"})

        assert response.status_code == 400
        assert response.json()["error"] == "no_file"

    @pytest.mark.asyncio
    async def test_file_field_without_attachment(self, client):
        response = await client.post(
            "/api/upload",
            data={"file": "not-a-file"},
            files={"attachment": ("profiles.xlsx", build_workbook([profile_row("1", "alice")]), XLSX)},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "no_file"

    @pytest.mark.asyncio
    async def test_csv_rejected(self, client):
        response = await client.post(
            "/api/upload",
            files=upload_files(b"Instagram ID,Username\n1,alice\n", "profiles.csv", "text/csv"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "format_error"

    @pytest.mark.asyncio
    async def test_corrupt_workbook_rejected(self, client):
        response = await client.post("/api/upload", files=upload_files(b"not really a workbook"))

        assert response.status_code == 400
        assert response.json()["error"] == "format_error"

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, client):
        response = await client.get("/api/upload")

        assert response.status_code == 405

    @pytest.mark.asyncio
    async def test_storage_unreachable(self, client, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nope.db'}")
        factory = async_sessionmaker(bind=engine)

        async def broken_session():
            async with factory() as sess:
                yield sess

        app.dependency_overrides[get_session] = broken_session
        try:
            response = await client.post(
                "/api/upload",
                files=upload_files(build_workbook([profile_row("1", "alice")])),
            )
        finally:
            await engine.dispose()

        assert response.status_code == 500
        assert response.json()["error"] == "storage_connection_error"

    @pytest.mark.asyncio
    async def test_failed_batch_insert(self, client, monkeypatch):
        real_to_model = reconciliation.to_model

        def without_external_id(candidate):
            profile = real_to_model(candidate)
            profile.external_id = None
            return profile

        monkeypatch.setattr(reconciliation, "to_model", without_external_id)

        response = await client.post(
            "/api/upload",
            files=upload_files(build_workbook([profile_row("1", "alice")])),
        )

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "storage_write_error"
        assert "not rolled back" in body["detail"]

        monkeypatch.undo()
        assert (await client.get("/api/data")).json() == []


class TestProfileLookup:
    """GET /api/data and /api/data/{username}"""

    @pytest.mark.asyncio
    async def test_list_empty(self, client):
        response = await client.get("/api/data")

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive_substring(self, client):
        payload = build_workbook([
            profile_row("1", "alice_photo"),
            profile_row("2", "MALICE"),
            profile_row("3", "bob"),
        ])
        await client.post("/api/upload", files=upload_files(payload))

        response = await client.get("/api/data/ALIC")

        assert response.status_code == 200
        assert sorted(p["username"] for p in response.json()) == ["MALICE", "alice_photo"]

    @pytest.mark.asyncio
    async def test_search_wildcards_are_literal(self, client):
        await client.post("/api/upload", files=upload_files(build_workbook([profile_row("1", "bob")])))

        response = await client.get("/api/data/%25")

        assert response.json() == {"message": NO_MATCH_MESSAGE}

    @pytest.mark.asyncio
    async def test_search_no_match(self, client):
        response = await client.get("/api/data/nobody")

        assert response.status_code == 200
        assert response.json() == {"message": NO_MATCH_MESSAGE}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["database"] == "connected"
