"""Manifest poller: drives a submitted job to a terminal status.

Polling is one tenacity ``AsyncRetrying`` loop per call, so every job has
its own backoff state and deadline and many jobs can be awaited
concurrently on one event loop:

* ``retry``  -- keep polling while the job is ``pending``/``in_progress``
* ``wait``   -- capped exponential backoff with jitter
* ``stop``   -- never start a query past the deadline, or stop when the
  cancellation event is set
* ``sleep``  -- waits on the cancellation event so a cancel wakes the
  loop immediately

Outcomes:
  ``succeeded`` / ``failed``  -- reported by the service (terminal)
  ``timed_out``               -- local deadline elapsed (terminal, not an exception)
  ``cancelled``               -- cancellation event set (non-terminal sentinel)

Terminal statuses are recorded per URN and never overwritten; asking again
for a finished handle returns the recorded status without a query.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from functools import partial

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_before_delay,
    stop_when_event_set,
    wait_exponential_jitter,
)

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.aps.fsm import advance, create_fsm, current_job_state
from rvtmeta.aps.schemas import ManifestResponse, parse_response
from rvtmeta.aps.transport import ApsTransport
from rvtmeta.exceptions import PermanentError, PollError, ResponseParseError, TransientError
from rvtmeta.models import JobHandle, JobState, JobStatus

logger = logging.getLogger(__name__)

_KEEP_POLLING = frozenset({JobState.PENDING, JobState.IN_PROGRESS})

# 404 is "not visible yet" until the first manifest read; afterwards it
# (and 410) means the derivative is gone.
_GONE_STATUSES = frozenset({404, 410})


@dataclass
class PollSettings:
    """Backoff and deadline defaults for :class:`JobPoller`."""

    interval: float = 2.0
    max_wait: float = 30.0
    exp_base: float = 2.0
    jitter: float = 1.0
    timeout: float = 1800.0


def classify_manifest(manifest: ManifestResponse, urn: str) -> JobStatus:
    """Map a manifest payload onto a :class:`JobStatus`.

    A remote ``timeout`` is a failure of the translation itself and maps to
    ``failed``; ``timed_out`` is reserved for the local deadline.
    """
    if manifest.status == "success":
        return JobStatus.succeeded(result_ref=urn)
    if manifest.status == "inprogress":
        return JobStatus.in_progress(manifest.progress_percent())
    if manifest.status in ("failed", "timeout"):
        return JobStatus.failed(manifest.failure_reason())
    return JobStatus.pending()


class _JobWatch:
    """Per-call polling state for one handle."""

    def __init__(self, handle: JobHandle) -> None:
        self.handle = handle
        self.fsm = create_fsm()
        self.polls = 0
        self.manifest_seen = False
        self.last = JobStatus.pending()

    def observe(self, status: JobStatus) -> JobStatus:
        """Apply an observation; backwards moves keep the previous status."""
        advance(self.fsm, status.state)
        if current_job_state(self.fsm) == status.state:
            self.last = status
        return self.last


async def _wait_or_cancel(cancel: asyncio.Event | None, seconds: float) -> None:
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class JobPoller:
    """Polls the Model Derivative manifest until a job is terminal.

    Usage::

        poller = JobPoller(transport, credentials, PollSettings(timeout=600))
        status = await poller.await_terminal(handle, cancel=shutdown_event)
        if status.state is JobState.SUCCEEDED:
            ...

    Args:
        transport: Shared APS transport.
        credentials: Token source.
        settings: Backoff/deadline defaults.
    """

    MANIFEST_PATH = "/modelderivative/v2/designdata/{urn}/manifest"

    def __init__(
        self,
        transport: ApsTransport,
        credentials: CredentialProvider,
        settings: PollSettings | None = None,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._settings = settings or PollSettings()
        self._terminal: dict[str, JobStatus] = {}

    def terminal_status(self, urn: str) -> JobStatus | None:
        """The recorded terminal status for *urn*, if any."""
        return self._terminal.get(urn)

    def forget(self, urn: str) -> None:
        """Discard the recorded terminal status for *urn*."""
        self._terminal.pop(urn, None)

    async def await_terminal(
        self,
        handle: JobHandle,
        poll_interval: float | None = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> JobStatus:
        """Poll until *handle* reaches a terminal status, the deadline passes,
        or *cancel* is set.

        Args:
            handle: Job to poll.
            poll_interval: First wait between polls (grows exponentially).
            timeout: Overall deadline in seconds from the first poll.
            cancel: Event that stops polling promptly when set.

        Returns:
            ``succeeded``, ``failed`` or ``timed_out`` status, or the
            ``cancelled`` sentinel.

        Raises:
            PollError: The manifest is gone or access was refused.
            AuthError: A token could not be obtained.
        """
        recorded = self._terminal.get(handle.urn)
        if recorded is not None:
            return recorded

        settings = self._settings
        interval = settings.interval if poll_interval is None else poll_interval
        deadline = settings.timeout if timeout is None else timeout
        watch = _JobWatch(handle)

        stop = stop_before_delay(deadline)
        if cancel is not None:
            stop = stop | stop_when_event_set(cancel)

        retrying = AsyncRetrying(
            stop=stop,
            wait=wait_exponential_jitter(
                multiplier=interval,
                max=max(interval, settings.max_wait),
                exp_base=settings.exp_base,
                jitter=settings.jitter,
            ),
            retry=retry_if_result(lambda status: status.state in _KEEP_POLLING),
            retry_error_callback=partial(self._exhausted, watch, cancel),
            sleep=partial(_wait_or_cancel, cancel),
        )

        logger.info("Polling manifest for %s (timeout=%.0fs)", handle.urn, deadline)
        status = await retrying(self._poll_once, watch, cancel)

        if status.is_terminal:
            status = self._terminal.setdefault(handle.urn, status)
            logger.info(
                "Job %s finished: %s after %d poll(s)%s",
                handle.urn,
                status.state.value,
                watch.polls,
                f" ({status.reason})" if status.reason else "",
            )
        return status

    async def await_many(
        self,
        handles: Iterable[JobHandle],
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> dict[str, JobStatus]:
        """Await several handles concurrently; returns statuses keyed by URN."""
        handles = list(handles)
        statuses = await asyncio.gather(
            *(self.await_terminal(h, timeout=timeout, cancel=cancel) for h in handles)
        )
        return {h.urn: s for h, s in zip(handles, statuses)}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _poll_once(self, watch: _JobWatch, cancel: asyncio.Event | None) -> JobStatus:
        if cancel is not None and cancel.is_set():
            return JobStatus.cancelled()

        urn = watch.handle.urn
        watch.polls += 1
        token = await self._credentials.get_token()
        try:
            response = await self._transport.request(
                "GET", self.MANIFEST_PATH.format(urn=urn), token=token.token
            )
        except TransientError as exc:
            logger.warning("Manifest poll %d for %s failed, will retry: %s", watch.polls, urn, exc)
            return watch.last
        except PermanentError as exc:
            if exc.status_code == 404 and not watch.manifest_seen:
                logger.debug("Manifest for %s not visible yet", urn)
                return watch.last
            if exc.status_code in _GONE_STATUSES:
                raise PollError.wrap(f"Manifest for {urn} is gone", exc) from exc
            raise PollError.wrap(f"Manifest for {urn} unavailable", exc) from exc

        try:
            manifest = parse_response(ManifestResponse, response.json(), context="manifest")
        except (ValueError, ResponseParseError) as exc:
            raise PollError(f"Unreadable manifest for {urn}: {exc}") from exc

        watch.manifest_seen = True
        status = watch.observe(classify_manifest(manifest, urn))
        logger.debug(
            "Manifest poll %d for %s: %s (%s)",
            watch.polls,
            urn,
            status.state.value,
            manifest.progress or "-",
        )
        return status

    def _exhausted(
        self,
        watch: _JobWatch,
        cancel: asyncio.Event | None,
        retry_state: RetryCallState,
    ) -> JobStatus:
        if cancel is not None and cancel.is_set():
            logger.info("Polling for %s cancelled after %d poll(s)", watch.handle.urn, watch.polls)
            return JobStatus.cancelled()

        advance(watch.fsm, JobState.TIMED_OUT)
        elapsed = retry_state.seconds_since_start or 0.0
        logger.warning(
            "Job %s timed out after %.1fs (%d poll(s), last state %s)",
            watch.handle.urn,
            elapsed,
            watch.polls,
            watch.last.state.value,
        )
        return JobStatus.timed_out(
            reason=(
                f"no terminal status after {elapsed:.1f}s and {watch.polls} poll(s); "
                f"last state {watch.last.state.value}"
            )
        )
