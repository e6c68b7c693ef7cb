"""Tests for the HTTP service routes."""

from __future__ import annotations

import dataclasses

import httpx
import pytest
from fastapi.testclient import TestClient

from rvtmeta.models import encode_urn
from rvtmeta.orchestrator import PipelineRunner
from rvtmeta.server import create_app, resolve_model

URN = encode_urn("urn:adsk.objects:os.object:rvtmeta-test/tower.rvt")


@pytest.fixture
def make_client(fake_aps, pipeline_config, model_file):
    def _make(**overrides) -> TestClient:
        config = dataclasses.replace(pipeline_config, ledger_path=None, **overrides)
        runner = PipelineRunner.from_config(config, transport=fake_aps.transport())
        return TestClient(create_app(runner=runner))

    return _make


@pytest.fixture
def client(make_client):
    with make_client() as client:
        yield client


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestExtract:
    def test_success(self, client, fake_aps):
        fake_aps.script_manifest(URN, ["pending", "success"])

        response = client.post("/extract", json={"file": "tower.rvt"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "succeeded"
        assert body["result_file"] == "tower.rvt.json"
        assert body["node_count"] == 2

    @pytest.mark.parametrize("name", ["missing.rvt", "../tower.rvt", "/etc/passwd", "", ".."])
    def test_unknown_file_is_404(self, client, fake_aps, name):
        response = client.post("/extract", json={"file": name})

        assert response.status_code == 404
        assert fake_aps.requests == []

    def test_remote_failure_is_502(self, client, fake_aps):
        fake_aps.script_manifest(URN, ["failed"])

        response = client.post("/extract", json={"file": "tower.rvt"})

        assert response.status_code == 502
        body = response.json()
        assert body["stage"] == "poll"
        assert body["operation_id"].startswith("op-")
        assert "Revit file is corrupt" in body["message"]
        assert "Traceback" not in response.text

    def test_auth_failure_is_502(self, client, fake_aps):
        fake_aps.token_status = 401

        response = client.post("/extract", json={"file": "tower.rvt"})

        assert response.status_code == 502
        assert response.json()["stage"] == "auth"

    def test_timeout_is_504(self, make_client, fake_aps):
        fake_aps.script_manifest(URN, ["inprogress"])

        with make_client(poll_timeout_seconds=0.1) as client:
            response = client.post("/extract", json={"file": "tower.rvt"})

        assert response.status_code == 504
        assert response.json()["stage"] == "poll"

    def test_missing_body_field_is_422(self, client):
        assert client.post("/extract", json={}).status_code == 422

    def test_non_json_upload_response_is_502_with_stage(self, client, fake_aps):
        fake_aps.responders.append(
            lambda r: httpx.Response(200, text="<html>proxy</html>")
            if r.method == "GET" and r.url.path.endswith("signeds3upload")
            else None
        )

        response = client.post("/extract", json={"file": "tower.rvt"})

        assert response.status_code == 502
        body = response.json()
        assert body["stage"] == "upload"
        assert body["operation_id"].startswith("op-")
        assert "not JSON" in body["message"]


class TestExtractAll:
    def test_reports_each_model(self, client, fake_aps, model_file):
        (model_file.parent / "bridge.rvt").write_bytes(b"bridge")
        (model_file.parent / "notes.txt").write_text("not a model")
        fake_aps.script_manifest(URN, ["success"])
        fake_aps.script_manifest(
            encode_urn("urn:adsk.objects:os.object:rvtmeta-test/bridge.rvt"), ["failed"]
        )

        response = client.post("/extract-all")

        assert response.status_code == 200
        body = response.json()
        assert body["succeeded"] == 1
        assert body["failed"] == 1
        assert [r["source"].rsplit("/", 1)[-1] for r in body["results"]] == ["bridge.rvt", "tower.rvt"]


class TestResults:
    @pytest.fixture
    def extracted(self, client, fake_aps):
        fake_aps.script_manifest(URN, ["success"])
        assert client.post("/extract", json={"file": "tower.rvt"}).status_code == 200

    def test_list(self, client, extracted):
        assert client.get("/results").json() == {"results": ["tower.rvt.json"]}

    def test_list_empty(self, client):
        assert client.get("/results").json() == {"results": []}

    def test_unreadable_result_is_500(self, client, tmp_path):
        results = tmp_path / "results"
        results.mkdir(exist_ok=True)
        (results / "broken.rvt.json").write_text('{"source": "broken.rvt"}')

        response = client.get("/results/broken.rvt.json")

        assert response.status_code == 500
        assert response.json() == {"message": "Stored result is unreadable"}

    def test_show(self, client, extracted):
        body = client.get("/results/tower.rvt.json").json()
        assert body["properties"] == {"1": {"Length": "10ft"}, "2": {"Material": "Concrete"}}

    def test_download_is_attachment(self, client, extracted):
        response = client.get("/download/tower.rvt.json")

        assert response.status_code == 200
        assert response.headers["content-disposition"].startswith("attachment")
        assert response.json()["view_guid"] == "view-3d"

    @pytest.mark.parametrize("name", ["missing.json", "tower.rvt", "..%2Ftower.rvt.json"])
    def test_unknown_result_is_404(self, client, extracted, name):
        assert client.get(f"/results/{name}").status_code == 404
        assert client.get(f"/download/{name}").status_code == 404


class TestHelpers:
    def test_resolve_model_stays_inside_directory(self, model_file):
        models_dir = model_file.parent
        assert resolve_model(models_dir, "tower.rvt") == model_file.resolve()
        assert resolve_model(models_dir, "../models/tower.rvt") is None
        assert resolve_model(models_dir, "missing.rvt") is None

    def test_create_app_needs_config_or_runner(self):
        with pytest.raises(ValueError):
            create_app()
