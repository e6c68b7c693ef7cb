"""Data models and enums for the APS metadata extraction pipeline."""

from __future__ import annotations

import base64
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# APS bucket keys: 3-128 chars of lowercase letters, digits, '-', '_' and '.'
_BUCKET_KEY_RE = re.compile(r"^[-_.a-z0-9]{3,128}$")

DEFAULT_SCOPES: tuple[str, ...] = (
    "data:read",
    "data:write",
    "data:create",
    "bucket:create",
    "bucket:read",
)


def encode_urn(object_id: str) -> str:
    """Encode an OSS object id as the URL-safe, unpadded base64 URN."""
    return base64.urlsafe_b64encode(object_id.encode("utf-8")).decode("ascii").rstrip("=")


class JobState(str, Enum):
    """State of a Model Derivative translation job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES: frozenset[JobState] = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT}
)


class Stage(str, Enum):
    """Pipeline stage names used in failure reports."""

    READ = "read"
    AUTH = "auth"
    BUCKET = "bucket"
    UPLOAD = "upload"
    SUBMIT = "submit"
    POLL = "poll"
    FETCH = "fetch"
    PERSIST = "persist"


class RunStatus(str, Enum):
    """Overall outcome of one pipeline run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Credential:
    """A two-legged bearer token and its absolute expiry (epoch seconds)."""

    token: str
    expires_at: float
    token_type: str = "Bearer"
    scope: str = ""

    def is_fresh(self, now: float, margin: float = 0.0) -> bool:
        """True while the token is usable for at least *margin* more seconds."""
        return now + margin < self.expires_at


@dataclass(slots=True)
class UploadTarget:
    """A payload headed for a bucket, created per request."""

    bucket_key: str
    object_name: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class ObjectRef:
    """Reference to a finalized object in OSS."""

    bucket_key: str
    object_key: str
    object_id: str
    size: int | None = None

    @property
    def urn(self) -> str:
        return encode_urn(self.object_id)


@dataclass(frozen=True, slots=True)
class OutputFormat:
    """One requested derivative output (e.g. ``svf`` with ``3d``/``2d`` views)."""

    type: str
    views: tuple[str, ...] = ("3d", "2d")

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, "views": list(self.views)}


DEFAULT_OUTPUT_SPEC: tuple[OutputFormat, ...] = (OutputFormat("svf", ("3d", "2d")),)


@dataclass(frozen=True, slots=True)
class JobHandle:
    """Identity of a submitted translation job.

    The URN is the join key between submission and polling.
    """

    urn: str
    object_id: str
    submitted_at: datetime
    output_formats: tuple[OutputFormat, ...] = DEFAULT_OUTPUT_SPEC


@dataclass(frozen=True, slots=True)
class JobStatus:
    """Observed status of a job.

    Only ``SUCCEEDED``, ``FAILED`` and ``TIMED_OUT`` are terminal.
    ``CANCELLED`` is the sentinel returned when polling is stopped early.
    """

    state: JobState
    progress: int | None = None
    result_ref: str | None = None
    reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @classmethod
    def pending(cls) -> JobStatus:
        return cls(JobState.PENDING, progress=0)

    @classmethod
    def in_progress(cls, progress: int | None = None) -> JobStatus:
        return cls(JobState.IN_PROGRESS, progress=progress)

    @classmethod
    def succeeded(cls, result_ref: str) -> JobStatus:
        return cls(JobState.SUCCEEDED, progress=100, result_ref=result_ref)

    @classmethod
    def failed(cls, reason: str) -> JobStatus:
        return cls(JobState.FAILED, reason=reason)

    @classmethod
    def timed_out(cls, reason: str) -> JobStatus:
        return cls(JobState.TIMED_OUT, reason=reason)

    @classmethod
    def cancelled(cls) -> JobStatus:
        return cls(JobState.CANCELLED, reason="polling cancelled")


@dataclass(frozen=True, slots=True)
class MetadataNode:
    """One node of a model view's object tree."""

    object_id: int
    name: str
    parent_id: int | None = None


@dataclass(frozen=True, slots=True)
class NodeError:
    """A node whose property bag could not be retrieved."""

    object_id: int
    message: str


@dataclass(frozen=True)
class ExtractedResult:
    """Metadata extracted for one source model.

    ``properties`` maps object id -> category -> property -> value.
    """

    source: str
    urn: str
    view_guid: str
    view_name: str
    nodes: list[MetadataNode] = field(default_factory=list)
    properties: dict[int, dict[str, Any]] = field(default_factory=dict)
    errors: list[NodeError] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict (object ids become string keys)."""
        return {
            "source": self.source,
            "urn": self.urn,
            "view_guid": self.view_guid,
            "view_name": self.view_name,
            "nodes": [asdict(node) for node in self.nodes],
            "properties": {str(oid): bag for oid, bag in self.properties.items()},
            "errors": [asdict(err) for err in self.errors],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtractedResult:
        return cls(
            source=data["source"],
            urn=data["urn"],
            view_guid=data["view_guid"],
            view_name=data.get("view_name", ""),
            nodes=[MetadataNode(**node) for node in data.get("nodes", [])],
            properties={int(oid): bag for oid, bag in data.get("properties", {}).items()},
            errors=[NodeError(**err) for err in data.get("errors", [])],
        )


@dataclass
class PipelineConfig:
    """Configuration for one APS credential scope and bucket.

    Passed explicitly into the runner and its components so that several
    scopes/buckets can run side by side in one process.
    """

    client_id: str
    client_secret: str
    bucket_key: str
    base_url: str = "https://developer.api.autodesk.com"
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    bucket_policy: str = "transient"
    models_dir: str = "models"
    results_dir: str = "data/results"
    ledger_path: str | None = "data/jobs.db"
    chunk_size: int = 20 * 1024 * 1024
    poll_interval: float = 2.0
    poll_max_wait: float = 30.0
    poll_jitter: float = 1.0
    poll_timeout_seconds: float = 1800.0
    max_concurrent_jobs: int = 4
    max_concurrent_fetches: int = 8
    max_attempts: int = 3
    retry_min_wait: float = 1.0
    retry_max_wait: float = 10.0
    token_refresh_margin: float = 60.0
    request_timeout: float = 60.0

    def __post_init__(self) -> None:
        if not _BUCKET_KEY_RE.match(self.bucket_key):
            raise ValueError(
                f"Invalid bucket key {self.bucket_key!r}: use 3-128 characters "
                "from lowercase letters, digits, '-', '_' and '.'"
            )
        if self.chunk_size < 5 * 1024 * 1024:
            raise ValueError("chunk_size must be at least 5 MiB (S3 part minimum)")
        self.scopes = tuple(self.scopes)


@dataclass
class PipelineResult:
    """Outcome of one pipeline run, suitable for user-facing reports."""

    operation_id: str
    source: str
    status: RunStatus = RunStatus.FAILED
    failed_stage: Stage | None = None
    message: str | None = None
    object_ref: ObjectRef | None = None
    handle: JobHandle | None = None
    job_status: JobStatus | None = None
    result: ExtractedResult | None = None
    result_file: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Summary dict: identifiers, stage and diagnostic, never a traceback."""
        return {
            "operation_id": self.operation_id,
            "source": self.source,
            "status": self.status.value,
            "stage": self.failed_stage.value if self.failed_stage else None,
            "message": self.message,
            "urn": self.handle.urn if self.handle else None,
            "result_file": self.result_file,
            "node_count": len(self.result.nodes) if self.result else 0,
            "node_errors": len(self.result.errors) if self.result else 0,
        }
