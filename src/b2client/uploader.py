"""Upload of one byte range (a whole small file, or one part of a large file).

Each upload reads its range twice: once to compute the SHA-1 that goes in
the ``X-Bz-Content-Sha1`` header, and once while streaming the request body.
The streamed bytes are hashed again so a source modified in between is
reported as :class:`SourceChanged` rather than as a server-side checksum
error.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import AsyncIterator
from urllib.parse import quote

from b2client import metrics
from b2client.api import B2Api
from b2client.errors import ApiError, SourceChanged
from b2client.leases import LeasePool
from b2client.models import ByteRange, PartResult, UploadLease
from b2client.retry import RetryPolicy, is_retryable
from b2client.source import BLOCK_SIZE, UploadSource, iter_range, sha1_of_range

logger = logging.getLogger(__name__)

B2_INFO_PREFIX = "X-Bz-Info-"
MAX_FILE_INFO = 10


def cap_file_info(file_info: dict[str, str] | None) -> dict[str, str]:
    """The first ten file-info entries; the rest are dropped with a warning."""
    if not file_info:
        return {}
    items = list(file_info.items())
    if len(items) > MAX_FILE_INFO:
        dropped = [key for key, _ in items[MAX_FILE_INFO:]]
        logger.warning("Dropping file info beyond %d entries: %s", MAX_FILE_INFO, dropped)
        items = items[:MAX_FILE_INFO]
    return dict(items)


def info_headers(file_info: dict[str, str] | None) -> dict[str, str]:
    """``X-Bz-Info-*`` headers for the first ten file-info entries."""
    return {
        f"{B2_INFO_PREFIX}{quote(str(key), safe='')}": quote(str(value), safe="")
        for key, value in cap_file_info(file_info).items()
    }


class PartUploader:
    """Streams byte ranges of an upload source to B2 upload URLs.

    Attributes:
        retry_policy: Budget and backoff for :meth:`upload_with_retry`.
        block_size: Read buffer size for digesting and streaming.
    """

    def __init__(
        self,
        api: B2Api,
        pool: LeasePool,
        retry_policy: RetryPolicy | None = None,
        block_size: int = BLOCK_SIZE,
    ) -> None:
        self._api = api
        self._pool = pool
        self.retry_policy = retry_policy or RetryPolicy()
        self.block_size = block_size

    async def upload_part(
        self,
        lease: UploadLease,
        source: UploadSource,
        byte_range: ByteRange,
        *,
        part_number: int | None = None,
        file_name: str | None = None,
        content_type: str | None = None,
        file_info: dict[str, str] | None = None,
    ) -> PartResult:
        """Upload ``byte_range`` of ``source`` using ``lease``.

        Pass ``part_number`` for a large-file part (the lease must be a part
        upload lease) or ``file_name`` for a whole-file upload.

        Returns:
            The digest and size that were sent, plus the server's reply.

        Raises:
            ApiError: The upload was rejected; ``lease`` has been invalidated.
            SourceChanged: The bytes sent differ from the bytes digested.
        """
        if (part_number is None) == (file_name is None):
            raise ValueError("Pass exactly one of part_number or file_name")

        sha1 = sha1_of_range(source.fileobj, byte_range, self.block_size)
        headers = {
            "Authorization": lease.upload_auth_token,
            "Content-Length": str(byte_range.length),
            "X-Bz-Content-Sha1": sha1,
        }
        if part_number is not None:
            headers["X-Bz-Part-Number"] = str(part_number)
        else:
            headers["X-Bz-File-Name"] = quote(file_name, safe="/")
            headers["Content-Type"] = content_type or "b2/x-auto"
            headers.update(info_headers(file_info))

        sent = hashlib.sha1()
        sent_bytes = 0

        async def body() -> AsyncIterator[bytes]:
            nonlocal sent_bytes
            for chunk in iter_range(source.fileobj, byte_range, self.block_size):
                sent.update(chunk)
                sent_bytes += len(chunk)
                yield chunk

        extra = {"bucket_id": lease.bucket_id, "file_id": lease.file_id, "part_number": part_number}
        try:
            response = await self._api.post_upload(lease.upload_url, headers, body())
        except ApiError as exc:
            lease.invalidate()
            metrics.record_part_upload("error")
            if sent_bytes == byte_range.length and sent.hexdigest() != sha1:
                raise SourceChanged(
                    f"Source changed while uploading bytes {byte_range.offset}-{byte_range.end}"
                ) from exc
            raise
        except BaseException:
            lease.invalidate()
            metrics.record_part_upload("error")
            raise

        metrics.record_part_upload("ok", byte_range.length)
        logger.debug("Uploaded %d bytes (sha1 %s)", byte_range.length, sha1, extra=extra)
        return PartResult(
            sha1=sha1,
            size=byte_range.length,
            part_number=part_number,
            file_id=response.get("fileId"),
            response=response,
        )

    async def _attempt(
        self,
        bucket_id: str,
        source: UploadSource,
        byte_range: ByteRange,
        file_id: str | None,
        **kwargs,
    ) -> PartResult:
        lease = await self._pool.acquire(bucket_id, file_id)
        try:
            return await self.upload_part(lease, source, byte_range, **kwargs)
        finally:
            await self._pool.release(lease)

    async def upload_with_retry(
        self,
        bucket_id: str,
        source: UploadSource,
        byte_range: ByteRange,
        *,
        file_id: str | None = None,
        part_number: int | None = None,
        file_name: str | None = None,
        content_type: str | None = None,
        file_info: dict[str, str] | None = None,
    ) -> PartResult:
        """Upload a range, leasing a URL per attempt and retrying transient failures.

        Each attempt gets its own lease; a failed attempt's lease is retired.
        Non-retryable errors propagate at once; the last retryable error
        propagates once the policy's attempts are spent.
        """
        attempt = 1
        while True:
            try:
                return await self._attempt(
                    bucket_id,
                    source,
                    byte_range,
                    file_id,
                    part_number=part_number,
                    file_name=file_name,
                    content_type=content_type,
                    file_info=file_info,
                )
            except ApiError as exc:
                extra = {
                    "bucket_id": bucket_id,
                    "file_id": file_id,
                    "part_number": part_number,
                    "attempt": attempt,
                }
                if not is_retryable(exc, upload=True):
                    raise
                if attempt >= self.retry_policy.attempts:
                    logger.error(
                        "Upload gave up after %d attempts: %r", attempt, exc, extra=extra
                    )
                    raise
                delay = self.retry_policy.delay_for(attempt, exc)
                logger.warning(
                    "Upload attempt %d failed (%r); retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                    extra=extra,
                )
            metrics.record_retry()
            await asyncio.sleep(delay)
            attempt += 1
