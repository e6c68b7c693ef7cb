"""OSS (Object Storage Service) client: buckets and signed S3 uploads.

Upload follows the three-call signed URL flow:
  1. ``GET  .../objects/{name}/signeds3upload?parts=N`` -- upload key + URLs
  2. ``PUT`` each part to its signed URL (no bearer token)
  3. ``POST .../objects/{name}/signeds3upload`` with the upload key -- finalize

A payload that fits in one chunk is a single-part (single-shot) upload.
Larger payloads are split into ``chunk_size`` parts; signed URLs are
requested in groups of at most :data:`MAX_URLS_PER_REQUEST`, reusing the
upload key across groups.
"""

from __future__ import annotations

import logging
import math
from urllib.parse import quote

import httpx

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.aps.schemas import ObjectResponse, SignedUploadResponse, parse_response
from rvtmeta.aps.transport import ApsTransport, transient_retrying
from rvtmeta.exceptions import PermanentError, ResponseParseError, StorageError, TransientError
from rvtmeta.models import ObjectRef, UploadTarget

logger = logging.getLogger(__name__)

MAX_URLS_PER_REQUEST = 25
DEFAULT_CHUNK_SIZE = 20 * 1024 * 1024


class ObjectStoreClient:
    """Bucket management and object upload against OSS v2.

    Args:
        transport: Shared APS transport.
        credentials: Token source.
        policy_key: Retention policy for new buckets.
        chunk_size: Part size for multipart uploads.
        max_attempts: Attempts per network step on transient failures.
        retry_min_wait: Initial backoff between attempts (seconds).
        retry_max_wait: Backoff cap (seconds).
    """

    BUCKETS_PATH = "/oss/v2/buckets"

    def __init__(
        self,
        transport: ApsTransport,
        credentials: CredentialProvider,
        *,
        policy_key: str = "transient",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_attempts: int = 3,
        retry_min_wait: float = 1.0,
        retry_max_wait: float = 10.0,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._transport = transport
        self._credentials = credentials
        self._policy_key = policy_key
        self._chunk_size = chunk_size
        self._max_attempts = max_attempts
        self._retry_min_wait = retry_min_wait
        self._retry_max_wait = retry_max_wait
        self._known_buckets: set[str] = set()

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    async def ensure_bucket(self, bucket_key: str) -> None:
        """Create *bucket_key* unless it already exists.

        409 Conflict (bucket exists) counts as success.

        Raises:
            StorageError: Any other failure, after transient retries.
        """
        if bucket_key in self._known_buckets:
            return

        try:
            async for attempt in self._retrying():
                with attempt:
                    token = await self._credentials.get_token()
                    await self._transport.request(
                        "POST",
                        self.BUCKETS_PATH,
                        token=token.token,
                        json={"bucketKey": bucket_key, "policyKey": self._policy_key},
                    )
            logger.info("Created bucket %s (policy=%s)", bucket_key, self._policy_key)
        except PermanentError as exc:
            if exc.status_code != 409:
                raise StorageError.wrap(f"Could not create bucket {bucket_key!r}", exc) from exc
            logger.debug("Bucket %s already exists", bucket_key)
        except TransientError as exc:
            raise StorageError.wrap(f"Could not create bucket {bucket_key!r}", exc) from exc

        self._known_buckets.add(bucket_key)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(self, bucket_key: str, object_name: str, payload: bytes) -> ObjectRef:
        """Upload *payload* as *object_name* and return the finalized reference.

        Raises:
            StorageError: A step failed permanently or exhausted its retries.
        """
        parts = max(1, math.ceil(len(payload) / self._chunk_size))
        object_path = f"{self.BUCKETS_PATH}/{quote(bucket_key, safe='')}/objects/{quote(object_name, safe='')}"
        signed_path = f"{object_path}/signeds3upload"

        logger.info(
            "Uploading %s to bucket %s (%d bytes, %d part%s)",
            object_name,
            bucket_key,
            len(payload),
            parts,
            "" if parts == 1 else "s",
        )

        try:
            upload_key: str | None = None
            for first_part in range(1, parts + 1, MAX_URLS_PER_REQUEST):
                count = min(MAX_URLS_PER_REQUEST, parts - first_part + 1)
                signed = await self._request_urls(signed_path, count, first_part, upload_key)
                if len(signed.urls) < count:
                    raise StorageError(
                        f"Expected {count} signed URLs for {object_name}, got {len(signed.urls)}"
                    )
                upload_key = signed.upload_key
                for offset, url in enumerate(signed.urls[:count]):
                    index = first_part - 1 + offset
                    chunk = payload[index * self._chunk_size : (index + 1) * self._chunk_size]
                    await self._put_part(url, chunk, index + 1, parts)

            finalized = await self._finalize(signed_path, upload_key)
        except PermanentError as exc:
            raise StorageError.wrap(f"Upload of {object_name!r} failed", exc) from exc
        except TransientError as exc:
            raise StorageError.wrap(
                f"Upload of {object_name!r} failed after {self._max_attempts} attempts", exc
            ) from exc
        except ResponseParseError as exc:
            raise StorageError(f"Upload of {object_name!r} failed: {exc}", diagnostic=exc.diagnostic) from exc

        logger.info("Uploaded %s -> %s", object_name, finalized.object_id)
        return ObjectRef(
            bucket_key=finalized.bucket_key,
            object_key=finalized.object_key,
            object_id=finalized.object_id,
            size=finalized.size if finalized.size is not None else len(payload),
        )

    async def upload_target(self, target: UploadTarget) -> ObjectRef:
        """Upload an :class:`UploadTarget`."""
        return await self.upload(target.bucket_key, target.object_name, target.payload)

    # ------------------------------------------------------------------
    # Internal steps
    # ------------------------------------------------------------------

    def _retrying(self):
        return transient_retrying(self._max_attempts, self._retry_min_wait, self._retry_max_wait)

    async def _request_urls(
        self, signed_path: str, count: int, first_part: int, upload_key: str | None
    ) -> SignedUploadResponse:
        params: dict[str, str | int] = {"parts": count, "firstPart": first_part}
        if upload_key is not None:
            params["uploadKey"] = upload_key
        async for attempt in self._retrying():
            with attempt:
                token = await self._credentials.get_token()
                response = await self._transport.request(
                    "GET", signed_path, token=token.token, params=params
                )
        return _parse(SignedUploadResponse, response, "signed upload")

    async def _put_part(self, url: str, chunk: bytes, number: int, total: int) -> None:
        async for attempt in self._retrying():
            with attempt:
                await self._transport.request(
                    "PUT",
                    url,
                    content=chunk,
                    headers={"Content-Type": "application/octet-stream"},
                )
        logger.debug("Uploaded part %d/%d (%d bytes)", number, total, len(chunk))

    async def _finalize(self, signed_path: str, upload_key: str | None) -> ObjectResponse:
        async for attempt in self._retrying():
            with attempt:
                token = await self._credentials.get_token()
                response = await self._transport.request(
                    "POST", signed_path, token=token.token, json={"uploadKey": upload_key}
                )
        return _parse(ObjectResponse, response, "upload finalize")


def _parse(model, response: httpx.Response, context: str):
    try:
        payload = response.json()
    except ValueError as exc:
        raise ResponseParseError(
            f"Unexpected {context} response: not JSON",
            diagnostic=response.text[:200] or None,
        ) from exc
    return parse_response(model, payload, context=context)
