"""Shared pytest fixtures for the APS pipeline tests.

Provides an in-process fake of the APS endpoints (served through
``httpx.MockTransport``), transports and credential providers wired to it,
a fast-polling pipeline config, and a sample model file.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.aps.transport import ApsTransport
from rvtmeta.models import DEFAULT_SCOPES, PipelineConfig

BASE_URL = "https://aps.test"
S3_HOST = "s3.test"
BUCKET = "rvtmeta-test"

_OBJECT_PATH = re.compile(r"^/oss/v2/buckets/([^/]+)/objects/([^/]+)/signeds3upload$")
_MANIFEST_PATH = re.compile(r"^/modelderivative/v2/designdata/([^/]+)/manifest$")
_VIEWS_PATH = re.compile(r"^/modelderivative/v2/designdata/([^/]+)/metadata$")
_TREE_PATH = re.compile(r"^/modelderivative/v2/designdata/([^/]+)/metadata/([^/]+)$")
_PROPS_PATH = re.compile(r"^/modelderivative/v2/designdata/([^/]+)/metadata/([^/]+)/properties$")


def _json(status: int, payload: dict) -> httpx.Response:
    return httpx.Response(status, json=payload)


class FakeAps:
    """Scriptable stand-in for the APS token, OSS and Model Derivative APIs.

    Manifest statuses are served per URN from a script; the last entry
    repeats once the script is exhausted.  URNs without a script get 404.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.token_status = 200
        self.job_status = 200
        self.buckets: set[str] = set()
        self.parts: dict[str, list[bytes]] = {}
        self.jobs: list[dict] = []
        self.manifests: dict[str, list[str]] = {}
        self.manifest_polls: dict[str, int] = {}
        self.failure_message = "Revit file is corrupt"
        self.views = [
            {"name": "New Construction", "role": "2d", "guid": "view-2d"},
            {"name": "{3D}", "role": "3d", "guid": "view-3d"},
        ]
        self.tree: list[dict] = [
            {"objectid": 1, "name": "Wall [101]"},
            {"objectid": 2, "name": "Floor [202]"},
        ]
        self.properties: dict[int, dict] = {
            1: {"Length": "10ft"},
            2: {"Material": "Concrete"},
        }
        self.failing_nodes: set[int] = set()
        # checked before the default routes; return None to fall through
        self.responders: list[Callable[[httpx.Request], httpx.Response | None]] = []

    # ------------------------------------------------------------------
    # Scripting helpers
    # ------------------------------------------------------------------

    def script_manifest(self, urn: str, statuses: list[str]) -> None:
        self.manifests[urn] = list(statuses)

    def count(self, method: str, pattern: str) -> int:
        return sum(
            1 for r in self.requests if r.method == method and re.search(pattern, r.url.path)
        )

    def transport(self) -> ApsTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return ApsTransport(BASE_URL, client=client)

    # ------------------------------------------------------------------
    # Request routing
    # ------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        for responder in self.responders:
            response = responder(request)
            if response is not None:
                return response

        if request.url.host == S3_HOST and request.method == "PUT":
            self.parts.setdefault(path, []).append(request.content)
            return httpx.Response(200)

        if path == "/authentication/v2/token" and request.method == "POST":
            self.token_calls += 1
            if self.token_status != 200:
                return _json(self.token_status, {"developerMessage": "The client_id is invalid"})
            return _json(
                200,
                {
                    "access_token": f"token-{self.token_calls}",
                    "token_type": "Bearer",
                    "expires_in": 3599,
                },
            )

        if path == "/oss/v2/buckets" and request.method == "POST":
            key = json.loads(request.content)["bucketKey"]
            if key in self.buckets:
                return _json(409, {"reason": "Bucket already exists"})
            self.buckets.add(key)
            return _json(200, {"bucketKey": key, "policyKey": "transient"})

        match = _OBJECT_PATH.match(path)
        if match:
            bucket, name = match.groups()
            if request.method == "GET":
                parts = int(request.url.params["parts"])
                first = int(request.url.params["firstPart"])
                urls = [f"https://{S3_HOST}/{name}/part{n}" for n in range(first, first + parts)]
                return _json(200, {"uploadKey": f"upload-{name}", "urls": urls})
            size = sum(len(c) for p, chunks in self.parts.items() if p.startswith(f"/{name}/") for c in chunks)
            return _json(
                200,
                {
                    "bucketKey": bucket,
                    "objectKey": name,
                    "objectId": f"urn:adsk.objects:os.object:{bucket}/{name}",
                    "size": size,
                },
            )

        if path == "/modelderivative/v2/designdata/job" and request.method == "POST":
            body = json.loads(request.content)
            self.jobs.append({"body": body, "force": request.headers.get("x-ads-force")})
            if self.job_status != 200:
                return _json(self.job_status, {"diagnostic": "Unsupported input"})
            return _json(200, {"result": "created", "urn": body["input"]["urn"]})

        match = _MANIFEST_PATH.match(path)
        if match:
            urn = match.group(1)
            self.manifest_polls[urn] = self.manifest_polls.get(urn, 0) + 1
            script = self.manifests.get(urn)
            if not script:
                return _json(404, {"diagnostic": "Manifest not found"})
            status = script.pop(0) if len(script) > 1 else script[0]
            return _json(200, self._manifest(urn, status))

        match = _PROPS_PATH.match(path)
        if match:
            object_id = int(request.url.params["objectid"])
            if object_id in self.failing_nodes:
                return _json(404, {"diagnostic": f"Object {object_id} has no properties"})
            return _json(
                200,
                {
                    "data": {
                        "type": "properties",
                        "collection": [
                            {
                                "objectid": object_id,
                                "name": f"node {object_id}",
                                "properties": self.properties.get(object_id, {}),
                            }
                        ],
                    }
                },
            )

        match = _TREE_PATH.match(path)
        if match:
            return _json(200, {"data": {"type": "objects", "objects": self.tree}})

        match = _VIEWS_PATH.match(path)
        if match:
            return _json(200, {"data": {"type": "metadata", "metadata": self.views}})

        return _json(404, {"diagnostic": f"No route for {request.method} {path}"})

    def _manifest(self, urn: str, status: str) -> dict:
        payload = {
            "urn": urn,
            "status": status,
            "progress": "complete" if status in ("success", "failed") else "40% complete",
            "derivatives": [],
        }
        if status == "failed":
            payload["derivatives"] = [
                {
                    "status": "failed",
                    "outputType": "svf",
                    "messages": [
                        {"type": "error", "code": "TranslationWorker-InternalFailure", "message": self.failure_message}
                    ],
                }
            ]
        return payload


@pytest.fixture
def fake_aps() -> FakeAps:
    return FakeAps()


@pytest.fixture
async def transport(fake_aps: FakeAps):
    transport = fake_aps.transport()
    yield transport
    await transport.close()


@pytest.fixture
def credentials(transport: ApsTransport) -> CredentialProvider:
    return CredentialProvider(transport, "client-id", "client-secret", DEFAULT_SCOPES)


@pytest.fixture
def model_file(tmp_path: Path) -> Path:
    """A small stand-in for a Revit model inside a models directory."""
    models = tmp_path / "models"
    models.mkdir()
    path = models / "tower.rvt"
    path.write_bytes(b"RVT" + bytes(range(256)) * 8)
    return path


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    """Pipeline config pointing at the fake service with near-zero waits."""
    return PipelineConfig(
        client_id="client-id",
        client_secret="client-secret",
        bucket_key=BUCKET,
        base_url=BASE_URL,
        models_dir=str(tmp_path / "models"),
        results_dir=str(tmp_path / "results"),
        ledger_path=str(tmp_path / "jobs.db"),
        poll_interval=0.01,
        poll_max_wait=0.02,
        poll_jitter=0.0,
        poll_timeout_seconds=5.0,
        retry_min_wait=0.0,
        retry_max_wait=0.0,
    )
