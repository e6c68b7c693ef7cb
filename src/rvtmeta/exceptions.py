"""Exception types for the APS pipeline.

Two layers: transport errors classify an HTTP outcome (retry or not), domain
errors name the pipeline step that failed and carry the remote diagnostic.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rvtmeta.models import ExtractedResult, NodeError


# ---------------------------------------------------------------------------
# Transport classification
# ---------------------------------------------------------------------------


class RemoteCallError(Exception):
    """Base for classified HTTP failures."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.diagnostic = diagnostic


class TransientError(RemoteCallError):
    """Network failure or 5xx response that may succeed on retry."""


class RateLimitError(TransientError):
    """429 response from the service."""


class PermanentError(RemoteCallError):
    """4xx response (except 429) that should not be retried."""


# ---------------------------------------------------------------------------
# Domain errors
# ---------------------------------------------------------------------------


class ApsError(Exception):
    """Base for pipeline step failures."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.diagnostic = diagnostic

    @classmethod
    def wrap(cls, message: str, exc: RemoteCallError) -> ApsError:
        """Build a domain error from a classified transport error."""
        detail = f"{message}: {exc}"
        return cls(detail, status_code=exc.status_code, diagnostic=exc.diagnostic)


class AuthError(ApsError):
    """Invalid client credentials or token endpoint unreachable."""


class StorageError(ApsError):
    """Bucket creation or object upload failed."""


class SubmitError(ApsError):
    """Translation job rejected or submission outcome unknown."""


class PollError(ApsError):
    """Manifest polling hit a non-retryable error."""


class FetchError(ApsError):
    """Metadata retrieval failed; carries per-node errors when known."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        diagnostic: str | None = None,
        errors: list[NodeError] | None = None,
        partial: ExtractedResult | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, diagnostic=diagnostic)
        self.errors = errors or []
        self.partial = partial


class ResponseParseError(ApsError):
    """A remote payload matched none of the accepted shapes."""


class PipelineCancelled(Exception):
    """Cancellation flag observed between pipeline stages."""


class ConfigError(RuntimeError):
    """Missing credentials or invalid configuration."""
