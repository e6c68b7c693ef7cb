"""Pydantic models for APS response payloads.

Each remote response is validated against exactly one model at the point
it enters the pipeline.  A payload that does not fit raises
:class:`ResponseParseError` rather than being checked field by field.
"""

from __future__ import annotations

import re
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from rvtmeta.exceptions import ResponseParseError

_PERCENT_RE = re.compile(r"(\d{1,3})\s*%")

T = TypeVar("T", bound=BaseModel)


class _ApsModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TokenResponse(_ApsModel):
    access_token: str = Field(min_length=1)
    token_type: str = "Bearer"
    expires_in: int = Field(gt=0)
    scope: str = ""


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------


class BucketResponse(_ApsModel):
    bucket_key: str = Field(alias="bucketKey")
    policy_key: str | None = Field(default=None, alias="policyKey")


class SignedUploadResponse(_ApsModel):
    upload_key: str = Field(alias="uploadKey")
    urls: list[str] = Field(min_length=1)


class ObjectResponse(_ApsModel):
    bucket_key: str = Field(alias="bucketKey")
    object_key: str = Field(alias="objectKey")
    object_id: str = Field(alias="objectId")
    size: int | None = None


# ---------------------------------------------------------------------------
# Model Derivative
# ---------------------------------------------------------------------------


class JobAcknowledgement(_ApsModel):
    result: Literal["success", "created"]
    urn: str


class ManifestMessage(_ApsModel):
    type: str = ""
    code: str = ""
    message: str | list[str] = ""


class ManifestDerivative(_ApsModel):
    status: str = ""
    output_type: str = Field(default="", alias="outputType")
    messages: list[ManifestMessage] = Field(default_factory=list)


class ManifestResponse(_ApsModel):
    urn: str = ""
    status: Literal["pending", "inprogress", "success", "failed", "timeout"]
    progress: str = ""
    derivatives: list[ManifestDerivative] = Field(default_factory=list)

    def progress_percent(self) -> int | None:
        """Parse ``"45% complete"`` / ``"complete"`` into a percentage."""
        if self.progress.strip().lower() == "complete":
            return 100
        match = _PERCENT_RE.search(self.progress)
        if match:
            return min(100, int(match.group(1)))
        return None

    def failure_reason(self) -> str:
        """Join the error messages reported on failed derivatives."""
        reasons: list[str] = []
        for derivative in self.derivatives:
            for msg in derivative.messages:
                if msg.type != "error":
                    continue
                text = " ".join(msg.message) if isinstance(msg.message, list) else msg.message
                reasons.append(f"{msg.code}: {text}" if msg.code else text)
        if reasons:
            return "; ".join(reasons)
        return f"translation {self.status}"


class ViewDescriptor(_ApsModel):
    name: str = ""
    role: str = ""
    guid: str


class _ViewsData(_ApsModel):
    type: Literal["metadata"]
    metadata: list[ViewDescriptor]


class MetadataViewsResponse(_ApsModel):
    data: _ViewsData


class ObjectTreeNode(_ApsModel):
    objectid: int
    name: str = ""
    objects: list[ObjectTreeNode] = Field(default_factory=list)


class _ObjectTreeData(_ApsModel):
    type: Literal["objects"]
    objects: list[ObjectTreeNode]


class ObjectTreeResponse(_ApsModel):
    data: _ObjectTreeData


class PropertyRecord(_ApsModel):
    objectid: int
    name: str = ""
    external_id: str | None = Field(default=None, alias="externalId")
    properties: dict[str, Any] = Field(default_factory=dict)


class _PropertiesData(_ApsModel):
    type: Literal["properties"]
    collection: list[PropertyRecord]


class PropertiesResponse(_ApsModel):
    data: _PropertiesData


ObjectTreeNode.model_rebuild()


def parse_response(model: type[T], payload: Any, *, context: str) -> T:
    """Validate *payload* against *model*.

    Raises:
        ResponseParseError: The payload does not have the expected shape.
    """
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ResponseParseError(
            f"Unexpected {context} response: {exc.error_count()} validation error(s)"
            + (f" (first at '{location}': {first.get('msg')})" if location else ""),
            diagnostic=str(payload)[:500],
        ) from exc
