"""Metadata retrieval for translated models.

Assembles an :class:`ExtractedResult` from three Model Derivative calls:

  1. ``GET .../{urn}/metadata``                         -- model views
  2. ``GET .../{urn}/metadata/{guid}``                  -- object tree
  3. ``GET .../{urn}/metadata/{guid}/properties?objectid=N`` per node

A ``202 Accepted`` from steps 2-3 means the service is still preparing
the data; it is retried like any transient failure.  Per-node failures are
collected as :class:`NodeError` entries so one bad node does not discard
the rest of the batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator
from typing import Any

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.aps.schemas import (
    MetadataViewsResponse,
    ObjectTreeNode,
    ObjectTreeResponse,
    PropertiesResponse,
    ViewDescriptor,
    parse_response,
)
from rvtmeta.aps.transport import ApsTransport, transient_retrying
from rvtmeta.exceptions import (
    FetchError,
    RemoteCallError,
    ResponseParseError,
    TransientError,
)
from rvtmeta.models import (
    ExtractedResult,
    JobHandle,
    JobState,
    JobStatus,
    MetadataNode,
    NodeError,
)

logger = logging.getLogger(__name__)


def flatten_tree(
    objects: Iterable[ObjectTreeNode], parent_id: int | None = None
) -> Iterator[MetadataNode]:
    """Depth-first walk of the object tree, parents before children."""
    for obj in objects:
        yield MetadataNode(object_id=obj.objectid, name=obj.name, parent_id=parent_id)
        yield from flatten_tree(obj.objects, obj.objectid)


def select_view(
    views: list[ViewDescriptor], view_guid: str | None = None, role: str = "3d"
) -> ViewDescriptor:
    """Pick *view_guid* if given, else the first view with *role*, else the first view."""
    if not views:
        raise FetchError("Model has no metadata views")
    if view_guid is not None:
        for view in views:
            if view.guid == view_guid:
                return view
        raise FetchError(f"View {view_guid} not found among {len(views)} view(s)")
    for view in views:
        if view.role == role:
            return view
    return views[0]


class ResultFetcher:
    """Retrieves the metadata tree and per-node property bags.

    Args:
        transport: Shared APS transport.
        credentials: Token source.
        max_concurrency: Parallel property requests.
        max_attempts: Attempts per request on transient errors / 202.
        retry_min_wait: Initial backoff (seconds).
        retry_max_wait: Backoff cap (seconds).
    """

    METADATA_PATH = "/modelderivative/v2/designdata/{urn}/metadata"

    def __init__(
        self,
        transport: ApsTransport,
        credentials: CredentialProvider,
        *,
        max_concurrency: int = 8,
        max_attempts: int = 5,
        retry_min_wait: float = 1.0,
        retry_max_wait: float = 10.0,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._max_concurrency = max(1, max_concurrency)
        self._max_attempts = max_attempts
        self._retry_min_wait = retry_min_wait
        self._retry_max_wait = retry_max_wait

    async def fetch(
        self,
        handle: JobHandle,
        status: JobStatus | None = None,
        *,
        node_ids: Iterable[int] | None = None,
        view_guid: str | None = None,
        source: str | None = None,
    ) -> ExtractedResult:
        """Fetch the metadata of a successfully translated job.

        Args:
            handle: The job whose derivatives to read.
            status: Terminal status from the poller; anything other than
                ``succeeded`` is refused.
            node_ids: Subset of object ids to fetch properties for
                (default: every node in the tree).
            view_guid: Model view to read (default: first 3D view).
            source: Source identifier recorded on the result.

        Returns:
            The assembled result; ``errors`` lists nodes whose properties
            could not be retrieved.

        Raises:
            FetchError: Job not succeeded, no views, empty tree, or every
                requested node failed.
        """
        if status is not None and status.state is not JobState.SUCCEEDED:
            raise FetchError(
                f"Cannot fetch metadata for {handle.urn}: job is {status.state.value}"
            )

        base = self.METADATA_PATH.format(urn=handle.urn)
        try:
            views_payload = await self._get_json(base, context="metadata views")
            views = parse_response(MetadataViewsResponse, views_payload, context="metadata views")
            view = select_view(views.data.metadata, view_guid)

            tree_payload = await self._get_json(f"{base}/{view.guid}", context="object tree")
            tree = parse_response(ObjectTreeResponse, tree_payload, context="object tree")
        except RemoteCallError as exc:
            raise FetchError.wrap(f"Metadata for {handle.urn} unavailable", exc) from exc
        except ResponseParseError as exc:
            raise FetchError(str(exc), diagnostic=exc.diagnostic) from exc

        nodes = list(flatten_tree(tree.data.objects))
        if not nodes:
            raise FetchError(f"Metadata tree for view {view.guid} is empty")
        logger.info(
            "View %s (%s) of %s has %d node(s)", view.name or view.guid, view.role, handle.urn, len(nodes)
        )

        known = {node.object_id for node in nodes}
        targets = list(dict.fromkeys(node_ids)) if node_ids is not None else [n.object_id for n in nodes]
        errors: list[NodeError] = [
            NodeError(oid, "object id not present in the metadata tree") for oid in targets if oid not in known
        ]
        targets = [oid for oid in targets if oid in known]

        semaphore = asyncio.Semaphore(self._max_concurrency)
        outcomes = await asyncio.gather(
            *(self._fetch_node(base, view.guid, oid, semaphore) for oid in targets)
        )

        properties: dict[int, dict[str, Any]] = {}
        for oid, outcome in zip(targets, outcomes):
            if isinstance(outcome, NodeError):
                errors.append(outcome)
            else:
                properties[oid] = outcome
        errors.sort(key=lambda err: err.object_id)

        if not properties and errors:
            raise FetchError(
                f"Properties unavailable for all {len(errors)} requested node(s) of {handle.urn}",
                errors=errors,
            )
        if errors:
            logger.warning(
                "Fetched %d node(s) of %s with %d error(s)", len(properties), handle.urn, len(errors)
            )

        return ExtractedResult(
            source=source or handle.object_id,
            urn=handle.urn,
            view_guid=view.guid,
            view_name=view.name,
            nodes=nodes,
            properties=properties,
            errors=errors,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, *, context: str, params: dict[str, Any] | None = None) -> Any:
        """GET *path*, retrying transient errors and ``202 Accepted``."""
        async for attempt in transient_retrying(
            self._max_attempts, self._retry_min_wait, self._retry_max_wait
        ):
            with attempt:
                token = await self._credentials.get_token()
                response = await self._transport.request("GET", path, token=token.token, params=params)
                if response.status_code == 202:
                    raise TransientError(f"{context} for {path} still being prepared", status_code=202)
        try:
            return response.json()
        except ValueError as exc:
            raise ResponseParseError(f"Unexpected {context} response: not JSON") from exc

    async def _fetch_node(
        self, base: str, guid: str, object_id: int, semaphore: asyncio.Semaphore
    ) -> dict[str, Any] | NodeError:
        async with semaphore:
            try:
                payload = await self._get_json(
                    f"{base}/{guid}/properties",
                    context="properties",
                    params={"objectid": object_id},
                )
                props = parse_response(PropertiesResponse, payload, context="properties")
            except (RemoteCallError, ResponseParseError) as exc:
                logger.debug("Properties for node %d failed: %s", object_id, exc)
                return NodeError(object_id, _describe(exc))

        for record in props.data.collection:
            if record.objectid == object_id:
                return record.properties
        return NodeError(object_id, "no property record returned for node")


def _describe(exc: Exception) -> str:
    diagnostic = getattr(exc, "diagnostic", None)
    status_code = getattr(exc, "status_code", None)
    if diagnostic and status_code:
        return f"{status_code}: {diagnostic}"
    return str(exc)
