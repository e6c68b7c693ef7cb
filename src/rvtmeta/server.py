"""HTTP service exposing the extraction pipeline.

Routes resolve model files inside the configured models directory only and
serve result files by exact sanitized filename.  Pipeline failures are
returned as ``{operation_id, stage, message}`` bodies, never tracebacks.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from rvtmeta.models import PipelineConfig, PipelineResult, RunStatus, Stage
from rvtmeta.orchestrator import PipelineRunner
from rvtmeta.store import ResultStore

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".rvt"

_STATUS_CODES = {
    RunStatus.TIMED_OUT: 504,
    RunStatus.CANCELLED: 503,
}
# Stages that fail locally rather than at the remote service
_LOCAL_STAGES = frozenset({Stage.READ, Stage.PERSIST})


class ExtractRequest(BaseModel):
    file: str


def resolve_model(models_dir: Path, name: str) -> Path | None:
    """Path of model *name* inside *models_dir*, or ``None`` if it is not
    a plain file name of an existing file there."""
    if not name or name != Path(name).name or name in (".", ".."):
        return None
    root = models_dir.resolve()
    candidate = (root / name).resolve()
    if candidate.parent != root or not candidate.is_file():
        return None
    return candidate


def failure_response(result: PipelineResult) -> JSONResponse:
    if result.status in _STATUS_CODES:
        status_code = _STATUS_CODES[result.status]
    elif result.failed_stage in _LOCAL_STAGES:
        status_code = 500
    else:
        status_code = 502
    return JSONResponse(
        status_code=status_code,
        content={
            "operation_id": result.operation_id,
            "stage": result.failed_stage.value if result.failed_stage else None,
            "message": result.message,
        },
    )


def _not_found(message: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"message": message})


def create_app(
    config: PipelineConfig | None = None,
    runner: PipelineRunner | None = None,
    store: ResultStore | None = None,
) -> FastAPI:
    """Build the service.

    Args:
        config: Pipeline settings; required unless *runner* is given.
        runner: Pre-built runner (tests inject one wired to a mock service).
        store: Result store (default: the runner's).
    """
    if runner is None and config is None:
        raise ValueError("create_app needs a config or a runner")
    owns_runner = runner is None
    if runner is None:
        runner = PipelineRunner.from_config(config)
    config = config or runner.config
    store = store or runner.store
    models_dir = Path(config.models_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_runner:
            await runner.close()

    app = FastAPI(title="rvtmeta", lifespan=lifespan)
    app.state.runner = runner
    app.state.store = store

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.post("/extract")
    async def extract(request: ExtractRequest):
        path = resolve_model(models_dir, request.file)
        if path is None:
            return _not_found(f"Unknown model file: {request.file}")
        result = await runner.run(str(path))
        if not result.ok:
            return failure_response(result)
        return result.to_dict()

    @app.post("/extract-all")
    async def extract_all():
        paths = sorted(models_dir.glob(f"*{MODEL_SUFFIX}")) if models_dir.is_dir() else []
        results = await runner.run_many(str(p.resolve()) for p in paths)
        failed = [r for r in results if not r.ok]
        return {
            "succeeded": len(results) - len(failed),
            "failed": len(failed),
            "results": [r.to_dict() for r in results],
        }

    @app.get("/results")
    def list_results():
        return {"results": store.filenames()}

    @app.get("/results/{filename}")
    def show_result(filename: str):
        try:
            result = store.load(filename)
        except FileNotFoundError:
            return _not_found(f"No result named {filename}")
        except ValueError as exc:
            logger.error("Unreadable result %s: %s", filename, exc)
            return JSONResponse(status_code=500, content={"message": "Stored result is unreadable"})
        return result.to_dict()

    @app.get("/download/{filename}")
    def download_result(filename: str):
        try:
            path = store.path_for(filename)
        except FileNotFoundError:
            return _not_found(f"No result named {filename}")
        return FileResponse(
            path=path,
            media_type="application/json",
            filename=path.name,
            content_disposition_type="attachment",
        )

    return app
