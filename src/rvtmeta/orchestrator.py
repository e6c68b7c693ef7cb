"""Pipeline runner for the APS metadata extraction job.

Sequences the stages for each source model:

* Read the local payload and hash it
* Ensure the bucket exists, upload the payload
* Submit the translation job and poll it to a terminal state
* Fetch the metadata and persist it as a JSON result file

Work already done remotely (uploads, submissions) is remembered in memory
and in the :class:`~rvtmeta.ledger.JobLedger`, so re-running a source after a
later-stage failure resumes instead of repeating it.  The cancellation
event is checked before each stage; a stage already in flight completes.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import signal
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.aps.fetcher import ResultFetcher
from rvtmeta.aps.jobs import JobSubmitter
from rvtmeta.aps.poller import JobPoller, PollSettings
from rvtmeta.aps.storage import ObjectStoreClient
from rvtmeta.aps.transport import ApsTransport
from rvtmeta.exceptions import ApsError, AuthError, PipelineCancelled
from rvtmeta.ledger import JobLedger
from rvtmeta.models import (
    DEFAULT_OUTPUT_SPEC,
    JobHandle,
    JobState,
    ObjectRef,
    OutputFormat,
    PipelineConfig,
    PipelineResult,
    RunStatus,
    Stage,
)
from rvtmeta.store import ResultStore

logger = logging.getLogger(__name__)

_RUN_STATUS_FOR_JOB = {
    JobState.FAILED: RunStatus.FAILED,
    JobState.TIMED_OUT: RunStatus.TIMED_OUT,
    JobState.CANCELLED: RunStatus.CANCELLED,
}


def _new_operation_id() -> str:
    return f"op-{uuid.uuid4().hex[:8]}"


def _describe(exc: BaseException) -> str:
    diagnostic = getattr(exc, "diagnostic", None)
    message = str(exc) or type(exc).__name__
    if diagnostic and diagnostic not in message:
        return f"{message} ({diagnostic})"
    return message


class PipelineRunner:
    """Runs the upload/translate/extract pipeline for one credential scope.

    Usage::

        async with PipelineRunner.from_config(config) as runner:
            result = await runner.run("models/tower.rvt")
            if not result.ok:
                print(result.failed_stage, result.message)

    Args:
        config: Bucket, concurrency and timing settings.
        transport: Shared HTTP transport (closed by :meth:`close`).
        credentials: Token cache shared by every stage and job.
        storage: OSS client.
        submitter: Translation job client.
        poller: Manifest poller.
        fetcher: Metadata client.
        store: Where result files are written.
        ledger: Optional persistent progress ledger.
        progress: Optional Rich progress tracker (omit for headless mode).
        output_spec: Derivative formats to request.
    """

    def __init__(
        self,
        config: PipelineConfig,
        transport: ApsTransport,
        credentials: CredentialProvider,
        storage: ObjectStoreClient,
        submitter: JobSubmitter,
        poller: JobPoller,
        fetcher: ResultFetcher,
        store: ResultStore,
        ledger: JobLedger | None = None,
        progress: Any | None = None,
        output_spec: Sequence[OutputFormat] = DEFAULT_OUTPUT_SPEC,
    ) -> None:
        self.config = config
        self.store = store
        self.ledger = ledger
        self.progress = progress
        self._transport = transport
        self._credentials = credentials
        self._storage = storage
        self._submitter = submitter
        self._poller = poller
        self._fetcher = fetcher
        self._output_spec = tuple(output_spec)
        self._job_semaphore = asyncio.Semaphore(max(1, config.max_concurrent_jobs))
        # source -> (content hash, object) of the latest upload
        self._uploads: dict[str, tuple[str, ObjectRef]] = {}
        self._source_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # URNs whose last job failed; the next submit regenerates them
        self._failed_urns: set[str] = set()
        self._ledger_ready = False
        self._signal_count = 0

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        transport: ApsTransport | None = None,
        progress: Any | None = None,
    ) -> PipelineRunner:
        """Wire every component from *config*."""
        transport = transport or ApsTransport(config.base_url, timeout=config.request_timeout)
        credentials = CredentialProvider(
            transport,
            config.client_id,
            config.client_secret,
            config.scopes,
            refresh_margin=config.token_refresh_margin,
        )
        retry = {
            "max_attempts": config.max_attempts,
            "retry_min_wait": config.retry_min_wait,
            "retry_max_wait": config.retry_max_wait,
        }
        storage = ObjectStoreClient(
            transport,
            credentials,
            policy_key=config.bucket_policy,
            chunk_size=config.chunk_size,
            **retry,
        )
        poller = JobPoller(
            transport,
            credentials,
            PollSettings(
                interval=config.poll_interval,
                max_wait=config.poll_max_wait,
                jitter=config.poll_jitter,
                timeout=config.poll_timeout_seconds,
            ),
        )
        fetcher = ResultFetcher(
            transport,
            credentials,
            max_concurrency=config.max_concurrent_fetches,
            **retry,
        )
        ledger = JobLedger(config.ledger_path) if config.ledger_path else None
        return cls(
            config,
            transport,
            credentials,
            storage,
            JobSubmitter(transport, credentials),
            poller,
            fetcher,
            ResultStore(config.results_dir),
            ledger=ledger,
            progress=progress,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect the ledger (creating its directory)."""
        if self.ledger is not None and not self._ledger_ready:
            Path(self.ledger.db_path).parent.mkdir(parents=True, exist_ok=True)
            await self.ledger.connect()
            self._ledger_ready = True

    async def close(self) -> None:
        if self.ledger is not None and self._ledger_ready:
            await self.ledger.close()
            self._ledger_ready = False
        await self._transport.close()

    async def __aenter__(self) -> PipelineRunner:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def setup_signal_handlers(self, cancel: asyncio.Event) -> None:
        """Map SIGINT/SIGTERM onto *cancel*.

        First signal sets the event (in-flight stages complete, no new
        stage starts).  Second signal forces immediate exit.
        """
        self._signal_count = 0

        def _handler(signum: int, frame: Any) -> None:
            self._signal_count += 1
            if self._signal_count == 1:
                logger.warning("Cancellation requested, finishing in-flight stages...")
                cancel.set()
            else:
                logger.warning("Forced shutdown. Exiting immediately.")
                raise SystemExit(1)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except (OSError, ValueError):
            # signal handlers can only be set in main thread
            logger.debug("Could not set signal handlers (not main thread)")

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run(
        self,
        source: str,
        cancel: asyncio.Event | None = None,
        *,
        force: bool = False,
    ) -> PipelineResult:
        """Run the whole pipeline for one local model file.

        Never raises for pipeline failures: the returned result names the
        failed stage and carries the remote diagnostic.

        Args:
            source: Path of the model file; also the result identifier.
            cancel: Event checked before each stage.
            force: Ask the service to regenerate existing derivatives.
        """
        # one run per source at a time, whichever caller started it
        async with self._source_locks[str(Path(source).resolve())]:
            return await self._run(source, cancel, force)

    async def _run(self, source: str, cancel: asyncio.Event | None, force: bool) -> PipelineResult:
        await self.open()
        outcome = PipelineResult(operation_id=_new_operation_id(), source=source)
        stage = Stage.READ
        if self.progress is not None:
            self.progress.job_started(source)

        def enter(next_stage: Stage) -> None:
            nonlocal stage
            stage = next_stage
            if cancel is not None and cancel.is_set():
                raise PipelineCancelled(f"Cancelled before {next_stage.value}")
            if self.progress is not None:
                self.progress.stage_changed(source, next_stage)

        try:
            enter(Stage.READ)
            payload = await asyncio.to_thread(Path(source).read_bytes)
            digest = hashlib.sha256(payload).hexdigest()

            enter(Stage.BUCKET)
            await self._storage.ensure_bucket(self.config.bucket_key)

            enter(Stage.UPLOAD)
            outcome.object_ref, replaced = await self._upload(source, digest, payload)
            del payload

            enter(Stage.SUBMIT)
            outcome.handle = await self._submit(source, outcome.object_ref, force or replaced)

            enter(Stage.POLL)
            status = await self._poller.await_terminal(
                outcome.handle, timeout=self.config.poll_timeout_seconds, cancel=cancel
            )
            outcome.job_status = status
            if status.state is JobState.CANCELLED:
                raise PipelineCancelled("Cancelled while polling")
            if self.ledger is not None:
                await self.ledger.record_status(source, status)
            if status.state is not JobState.SUCCEEDED:
                self._release_job(outcome.handle.urn, status.state)
                outcome.status = _RUN_STATUS_FOR_JOB[status.state]
                outcome.failed_stage = Stage.POLL
                outcome.message = status.reason or f"Job {status.state.value}"
                return await self._finish(outcome)

            enter(Stage.FETCH)
            outcome.result = await self._fetcher.fetch(outcome.handle, status, source=source)
            if outcome.result.is_partial:
                logger.warning(
                    "%s: %d node(s) without properties", source, len(outcome.result.errors)
                )

            enter(Stage.PERSIST)
            path = await asyncio.to_thread(self.store.save, outcome.result)
            outcome.result_file = path.name
            if self.ledger is not None:
                await self.ledger.record_result(source, path.name)
            outcome.status = RunStatus.SUCCEEDED

        except PipelineCancelled as exc:
            outcome.status = RunStatus.CANCELLED
            outcome.failed_stage = stage
            outcome.message = str(exc)
        except AuthError as exc:
            outcome.failed_stage = Stage.AUTH
            outcome.message = _describe(exc)
        except ApsError as exc:
            outcome.failed_stage = stage
            outcome.message = _describe(exc)
        except OSError as exc:
            # reading the model or writing the result file
            outcome.failed_stage = stage
            outcome.message = _describe(exc)

        return await self._finish(outcome)

    async def run_many(
        self,
        sources: Iterable[str],
        cancel: asyncio.Event | None = None,
        *,
        force: bool = False,
    ) -> list[PipelineResult]:
        """Run several sources concurrently, at most ``max_concurrent_jobs``
        at a time.  Results are returned in input order."""
        sources = list(sources)
        await self.open()

        async def _limited(source: str) -> PipelineResult:
            async with self._job_semaphore:
                return await self.run(source, cancel, force=force)

        outcomes = await asyncio.gather(
            *(_limited(source) for source in sources), return_exceptions=True
        )

        results: list[PipelineResult] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Pipeline task for %s raised: %s", source, outcome, exc_info=outcome)
                outcome = PipelineResult(
                    operation_id=_new_operation_id(),
                    source=source,
                    message=_describe(outcome),
                )
            results.append(outcome)

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            "Pipeline complete: %d succeeded, %d not succeeded of %d total",
            succeeded,
            len(results) - succeeded,
            len(results),
        )
        return results

    # ------------------------------------------------------------------
    # Stages with resume
    # ------------------------------------------------------------------

    async def _upload(self, source: str, digest: str, payload: bytes) -> tuple[ObjectRef, bool]:
        """Upload unless unchanged; returns the object and whether an
        earlier translation of it is now stale."""
        cached = self._uploads.get(source)
        known = cached[1] if cached is not None and cached[0] == digest else None
        if known is None and self.ledger is not None:
            known = await self.ledger.uploaded_object(source, digest)
        if known is not None and known.bucket_key == self.config.bucket_key:
            logger.info("%s unchanged since last upload, reusing %s", source, known.object_id)
            self._uploads[source] = (digest, known)
            return known, False

        previous = await self.ledger.get(source) if self.ledger is not None else None
        ref = await self._storage.upload(self.config.bucket_key, Path(source).name, payload)
        self._uploads[source] = (digest, ref)
        if self.ledger is not None:
            await self.ledger.record_upload(source, digest, ref)

        # same object key means same URN: old derivatives must be regenerated
        replaced = self._submitter.forget(ref.urn) or bool(previous and previous["urn"] == ref.urn)
        self._poller.forget(ref.urn)
        if replaced:
            logger.info("%s changed since its last translation, forcing a new job", source)
        return ref, replaced

    async def _submit(self, source: str, object_ref: ObjectRef, force: bool) -> JobHandle:
        urn = object_ref.urn
        if urn in self._failed_urns:
            force = True
        elif self.ledger is not None and self._submitter.handle_for(urn) is None:
            recorded = await self.ledger.submitted_handle(source, object_ref.object_id)
            if recorded is not None:
                self._submitter.register(recorded)
            else:
                row = await self.ledger.get(source)
                if row is not None and row["urn"] == urn and row["state"] == JobState.FAILED.value:
                    force = True

        handle = await self._submitter.submit(object_ref, self._output_spec, force=force)
        self._failed_urns.discard(urn)
        if self.ledger is not None:
            await self.ledger.record_submission(source, handle)
        return handle

    def _release_job(self, urn: str, state: JobState) -> None:
        """Let the next run of an unsuccessful job make progress.

        A timed-out job is still running remotely and is polled again.  A
        failed job is submitted again with regeneration forced.
        """
        self._poller.forget(urn)
        if state is JobState.FAILED:
            self._submitter.forget(urn)
            self._failed_urns.add(urn)

    async def _finish(self, outcome: PipelineResult) -> PipelineResult:
        if outcome.ok:
            logger.info(
                "[%s] %s extracted to %s", outcome.operation_id, outcome.source, outcome.result_file
            )
        else:
            level = logging.WARNING if outcome.status is RunStatus.CANCELLED else logging.ERROR
            logger.log(
                level,
                "[%s] %s %s at stage %s: %s",
                outcome.operation_id,
                outcome.source,
                outcome.status.value,
                outcome.failed_stage.value if outcome.failed_stage else "-",
                outcome.message,
            )
            if self.ledger is not None and outcome.failed_stage is not None:
                await self.ledger.record_failure(
                    outcome.source, outcome.failed_stage, outcome.message or ""
                )
        if self.progress is not None:
            self.progress.job_finished(outcome)
        return outcome
