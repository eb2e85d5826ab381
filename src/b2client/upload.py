"""Managed uploads: one-shot for small sources, multi-part for large ones.

An :class:`Upload` is configured, then run once. Running decides between a
single whole-file POST and a B2 "large file":

    b2_start_large_file
      -> up to ``max_threads`` concurrent part uploads (leases from the pool)
      -> b2_finish_large_file with the part digests in part-number order

If any part exhausts its retries, no further parts are scheduled, in-flight
parts are allowed to finish, and the large file is canceled. A rejected
finish also cancels, and is reported as :class:`FinalizeError` so callers can
tell it apart from a part failure.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from typing import Any

from b2client.api import B2Api
from b2client.errors import (
    ApiError,
    FinalizeError,
    LargeFileUploadError,
    UploadInProgress,
)
from b2client.leases import LeasePool
from b2client.models import (
    Bucket,
    ByteRange,
    FileVersion,
    LargeFileSession,
    LargeFileState,
    Session,
)
from b2client.retry import call_with_retry
from b2client.source import UploadSource, open_source
from b2client.uploader import PartUploader, cap_file_info

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = "/"
DEFAULT_CONTENT_TYPE = "b2/x-auto"
DEFAULT_MAX_THREADS = 4
# B2 accepts at most this many parts per large file, and at least two.
MAX_PARTS = 10000
MIN_PARTS = 2


class UploadMode(str, enum.Enum):
    AUTO = "auto"
    ONE_SHOT = "one_shot"
    LARGE_FILE = "large_file"


def compute_part_ranges(size: int, part_size: int) -> list[ByteRange]:
    """Split ``[0, size)`` into contiguous parts of ``part_size`` bytes.

    The last part holds the remainder, which B2 allows to be smaller than
    the account minimum.

    Raises:
        ValueError: If ``part_size`` is not positive or the split needs more
            than MAX_PARTS parts.
    """
    if part_size <= 0:
        raise ValueError(f"part_size must be positive, got {part_size}")
    ranges = [
        ByteRange(offset, min(part_size, size - offset)) for offset in range(0, size, part_size)
    ]
    if len(ranges) > MAX_PARTS:
        raise ValueError(
            f"{size} bytes in parts of {part_size} needs {len(ranges)} parts (max {MAX_PARTS})"
        )
    return ranges


class Upload:
    """A configurable, run-once upload of one source into one bucket.

    Configuration attributes may be changed freely until :meth:`run` (or
    :meth:`start`) is called; afterwards any change raises
    :class:`UploadInProgress`.

    Attributes:
        bucket: Destination bucket (a slim id+name bucket is enough).
        source: bytes, str, path, or binary file object.
        file_name: Name within the bucket. Defaults to the file's base name
            for path sources.
        prefix: Optional "folder" joined to file_name with ``delimiter``.
        content_type: MIME type; ``b2/x-auto`` lets B2 pick one.
        file_info: Up to ten custom info entries stored with the file.
        mode: ``auto``, ``one_shot`` or ``large_file``. A source that would
            split into a single part is always sent as one whole file.
        part_size: Desired part size; never below the account minimum.
        max_threads: Concurrent part uploads.
        large_file_sha1: Whole-file SHA-1, recorded as ``large_file_sha1``.
    """

    def __init__(
        self,
        api: B2Api,
        pool: LeasePool,
        uploader: PartUploader,
        bucket: Bucket,
        source: Any,
        file_name: str | None = None,
        *,
        prefix: str | None = None,
        delimiter: str = DEFAULT_DELIMITER,
        content_type: str = DEFAULT_CONTENT_TYPE,
        file_info: dict[str, str] | None = None,
        mode: UploadMode | str = UploadMode.AUTO,
        part_size: int | None = None,
        max_threads: int = DEFAULT_MAX_THREADS,
        large_file_sha1: str | None = None,
    ) -> None:
        self._locked = False
        self._api = api
        self._pool = pool
        self._uploader = uploader
        self._large_file: LargeFileSession | None = None
        self.bucket = bucket
        self.source = source
        self.file_name = file_name
        self.prefix = prefix
        self.delimiter = delimiter
        self.content_type = content_type
        self.file_info = dict(file_info or {})
        self.mode = UploadMode(mode)
        self.part_size = part_size
        self.max_threads = max_threads
        self.large_file_sha1 = large_file_sha1

    def __setattr__(self, name: str, value: Any) -> None:
        if not name.startswith("_") and getattr(self, "_locked", False):
            raise UploadInProgress("Upload already in progress. Cannot modify")
        super().__setattr__(name, value)

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def large_file(self) -> LargeFileSession | None:
        """The large-file session, once one has been started."""
        return self._large_file

    @property
    def state(self) -> LargeFileState | None:
        return self._large_file.state if self._large_file else None

    def full_file_name(self, source: UploadSource | None = None) -> str:
        """``prefix/file_name`` with repeated and leading delimiters collapsed."""
        name = self.file_name or (source.name if source else None)
        if not name:
            raise ValueError("A file_name is required unless uploading from a path")
        if self.prefix:
            name = f"{self.prefix}{self.delimiter}{name}"
        if self.delimiter:
            name = re.sub(f"{re.escape(self.delimiter)}+", self.delimiter, name)
            name = name.lstrip(self.delimiter)
        return name

    def _lock(self) -> None:
        if self._locked:
            raise UploadInProgress("Upload already in progress. Cannot modify")
        if self.max_threads < 1:
            raise ValueError("max_threads must be at least 1")
        self._locked = True

    def start(self) -> asyncio.Task:
        """Run the upload in the background and return its task."""
        self._lock()
        return asyncio.create_task(self._run())

    async def run(self) -> FileVersion:
        """Perform the upload.

        Raises:
            UploadInProgress: If the upload already ran or is running.
            LargeFileUploadError: A part failed; the large file was canceled.
            FinalizeError: Finishing failed; the large file was canceled.
            ApiError: A one-shot upload or start_large_file failed.
        """
        self._lock()
        return await self._run()

    async def _run(self) -> FileVersion:
        session = self._api.session
        with open_source(self.source) as source:
            file_name = self.full_file_name(source)
            if self._use_large_file(source.size, session):
                ranges = compute_part_ranges(source.size, self._part_size_for(session))
                if len(ranges) >= MIN_PARTS:
                    return await self._upload_large(source, file_name, ranges)
                logger.info(
                    "%s fits in one part; uploading it as a single file",
                    file_name,
                    extra={"bucket_id": self.bucket.id},
                )
            return await self._upload_single(source, file_name)

    def _use_large_file(self, size: int, session: Session) -> bool:
        if self.mode is UploadMode.ONE_SHOT:
            return False
        if self.mode is UploadMode.LARGE_FILE:
            return size >= MIN_PARTS * session.absolute_min_part_size
        return size > session.recommended_part_size

    def _part_size_for(self, session: Session) -> int:
        return max(session.absolute_min_part_size, self.part_size or session.recommended_part_size)

    def _file_info_for(self, source: UploadSource, large: bool) -> dict[str, str]:
        info = dict(self.file_info)
        if source.mtime_millis is not None:
            info.setdefault("src_last_modified_millis", str(source.mtime_millis))
        if large and self.large_file_sha1:
            info.setdefault("large_file_sha1", self.large_file_sha1)
        return cap_file_info(info)

    async def _upload_single(self, source: UploadSource, file_name: str) -> FileVersion:
        result = await self._uploader.upload_with_retry(
            self.bucket.id,
            source,
            source.full_range(),
            file_name=file_name,
            content_type=self.content_type,
            file_info=self._file_info_for(source, large=False),
        )
        logger.info(
            "Uploaded %s (%d bytes)",
            file_name,
            result.size,
            extra={"bucket_id": self.bucket.id, "file_id": result.file_id},
        )
        return FileVersion.from_api(result.response)

    async def _upload_large(
        self, source: UploadSource, file_name: str, ranges: list[ByteRange]
    ) -> FileVersion:
        policy = self._uploader.retry_policy

        data = await call_with_retry(
            policy,
            lambda: self._api.start_large_file(
                self.bucket.id,
                file_name,
                self.content_type,
                self._file_info_for(source, large=True),
            ),
            description="b2_start_large_file",
        )
        large = LargeFileSession.from_api(data)
        self._large_file = large
        extra = {"bucket_id": large.bucket_id, "file_id": large.file_id}
        logger.info(
            "Started large file %s: %d parts of up to %d bytes",
            file_name,
            len(ranges),
            ranges[0].length,
            extra=extra,
        )

        try:
            large.transition(LargeFileState.UPLOADING_PARTS)
            failures = await self._upload_parts(large, source, ranges)
            if failures:
                cancel_error = await self._cancel(large)
                raise LargeFileUploadError(large.file_id, failures, cancel_error)

            large.transition(LargeFileState.FINISHING)
            try:
                data = await call_with_retry(
                    policy,
                    lambda: self._api.finish_large_file(large.file_id, large.ordered_sha1s()),
                    description="b2_finish_large_file",
                )
            except ApiError as exc:
                cancel_error = await self._cancel(large)
                raise FinalizeError(large.file_id, exc, cancel_error) from exc
            large.transition(LargeFileState.FINISHED)
        finally:
            await self._pool.discard(large.bucket_id, large.file_id)

        logger.info("Finished large file %s (%d bytes)", file_name, source.size, extra=extra)
        return FileVersion.from_api(data)

    async def _upload_parts(
        self,
        large: LargeFileSession,
        source: UploadSource,
        ranges: list[ByteRange],
    ) -> dict[int, BaseException]:
        """Upload every range as a part; return failures keyed by part number.

        Part numbers follow byte order (part 1 starts at offset 0) whatever
        order the parts complete in. After the first failure, parts that have
        not started yet are skipped; running parts finish on their own.
        """
        semaphore = asyncio.Semaphore(self.max_threads)
        failed = asyncio.Event()
        failures: dict[int, BaseException] = {}

        async def upload_one(part_number: int, byte_range: ByteRange) -> None:
            async with semaphore:
                if failed.is_set():
                    return
                try:
                    result = await self._uploader.upload_with_retry(
                        large.bucket_id,
                        source,
                        byte_range,
                        file_id=large.file_id,
                        part_number=part_number,
                    )
                except Exception as exc:
                    failed.set()
                    failures[part_number] = exc
                    logger.error(
                        "Part %d failed: %r",
                        part_number,
                        exc,
                        extra={"file_id": large.file_id, "part_number": part_number},
                    )
                    return
                large.record_part(part_number, result.sha1)

        await asyncio.gather(
            *(upload_one(number, byte_range) for number, byte_range in enumerate(ranges, start=1))
        )
        return failures

    async def _cancel(self, large: LargeFileSession) -> ApiError | None:
        """Cancel the large file; return the error instead of raising it."""
        large.transition(LargeFileState.CANCELING)
        try:
            await call_with_retry(
                self._uploader.retry_policy,
                lambda: self._api.cancel_large_file(large.file_id),
                description="b2_cancel_large_file",
            )
        except ApiError as exc:
            logger.error(
                "Canceling large file failed: %r", exc, extra={"file_id": large.file_id}
            )
            return exc
        large.transition(LargeFileState.CANCELED)
        logger.info("Canceled large file", extra={"file_id": large.file_id})
        return None
