"""Model Derivative job submission.

Submission is **not** idempotent: every accepted POST starts a remote
translation.  The submitter therefore never retries and keeps a per-URN
guard so that each object is submitted at most once per submitter:

* a second ``submit()`` for the same URN returns the existing handle;
* a submission whose outcome is unknown (network failure, 5xx) is
  remembered, and later calls raise :class:`SubmitError` instead of
  sending another request.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.aps.schemas import JobAcknowledgement, parse_response
from rvtmeta.aps.transport import ApsTransport
from rvtmeta.exceptions import PermanentError, ResponseParseError, SubmitError, TransientError
from rvtmeta.models import JobHandle, ObjectRef, OutputFormat, encode_urn

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobSubmitter:
    """Requests translation jobs keyed by object URN.

    Args:
        transport: Shared APS transport.
        credentials: Token source.
        clock: Returns the submission timestamp; injectable for tests.
    """

    JOB_PATH = "/modelderivative/v2/designdata/job"

    def __init__(
        self,
        transport: ApsTransport,
        credentials: CredentialProvider,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._clock = clock
        self._handles: dict[str, JobHandle] = {}
        self._ambiguous: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def register(self, handle: JobHandle) -> None:
        """Seed the guard with a handle submitted earlier (e.g. from the ledger)."""
        self._handles.setdefault(handle.urn, handle)

    def handle_for(self, urn: str) -> JobHandle | None:
        return self._handles.get(urn)

    def forget(self, urn: str) -> bool:
        """Drop what is known about *urn* after its object was replaced.

        Returns whether a job had been submitted for it.
        """
        self._ambiguous.pop(urn, None)
        return self._handles.pop(urn, None) is not None

    async def submit(
        self,
        object_ref: ObjectRef,
        output_spec: Sequence[OutputFormat],
        force: bool = False,
    ) -> JobHandle:
        """Submit a translation job for *object_ref*.

        Args:
            object_ref: Finalized OSS object.
            output_spec: Requested output formats; must not be empty.
            force: Ask the service to regenerate existing derivatives
                (``x-ads-force``).  Does not bypass the local guard.

        Returns:
            The job handle (the existing one if already submitted).

        Raises:
            SubmitError: Empty output spec, malformed object id, remote
                rejection, or an earlier submission with unknown outcome.
        """
        if not output_spec:
            raise SubmitError("Output spec is empty: request at least one output format")
        object_id = object_ref.object_id
        if not object_id or not object_id.startswith("urn:"):
            raise SubmitError(f"Malformed object id {object_id!r}: expected an 'urn:' identifier")

        urn = encode_urn(object_id)
        async with self._locks[urn]:
            existing = self._handles.get(urn)
            if existing is not None:
                logger.info("Job for %s already submitted at %s", urn, existing.submitted_at)
                return existing
            if urn in self._ambiguous:
                raise SubmitError(
                    f"Earlier submission for {urn} has unknown outcome "
                    f"({self._ambiguous[urn]}); not resubmitting"
                )

            formats = tuple(output_spec)
            headers = {"Content-Type": "application/json"}
            if force:
                headers["x-ads-force"] = "true"
            payload = {
                "input": {"urn": urn},
                "output": {"formats": [fmt.to_payload() for fmt in formats]},
            }

            token = await self._credentials.get_token()
            try:
                response = await self._transport.request(
                    "POST", self.JOB_PATH, token=token.token, json=payload, headers=headers
                )
            except PermanentError as exc:
                logger.error("Job for %s rejected: %s", urn, exc.diagnostic)
                raise SubmitError.wrap("Translation job rejected", exc) from exc
            except TransientError as exc:
                self._ambiguous[urn] = str(exc)
                logger.error("Job submission for %s has unknown outcome: %s", urn, exc)
                raise SubmitError.wrap("Translation job submission failed", exc) from exc

            try:
                ack = parse_response(JobAcknowledgement, response.json(), context="job submission")
            except (ValueError, ResponseParseError) as exc:
                self._ambiguous[urn] = str(exc)
                raise SubmitError(f"Unreadable job acknowledgement for {urn}: {exc}") from exc

            handle = JobHandle(
                urn=urn,
                object_id=object_id,
                submitted_at=self._clock(),
                output_formats=formats,
            )
            self._handles[urn] = handle
            logger.info("Submitted translation job %s (%s)", handle.urn, ack.result)
            return handle
