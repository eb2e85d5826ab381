"""High-level client: buckets, files, and managed uploads.

:class:`B2Client` wires the pieces together for one account: a
:class:`~b2client.api.B2Api` (and its connection pool), a per-bucket
:class:`~b2client.leases.LeasePool` of upload URLs, and a
:class:`~b2client.uploader.PartUploader`. Nothing is global; create one
client and pass it around::

    async with B2Client(credentials) as b2:
        bucket = await b2.get_bucket("photos")
        version = await b2.upload(bucket, Path("cat.jpg"), prefix="2024")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from typing import Any, Literal

import httpx

from b2client import metrics
from b2client.logging_config import configure_logging
from b2client.api import B2Api
from b2client.config import B2ClientConfig
from b2client.errors import ApiError, NotFound, PartialDestroyFailure
from b2client.leases import LeasePool
from b2client.listing import ALL, ItemCallback, iter_items, paginate
from b2client.models import Bucket, Credentials, FileVersion, Session, StoredFile
from b2client.retry import RetryPolicy
from b2client.upload import Upload
from b2client.uploader import PartUploader

logger = logging.getLogger(__name__)

DEFAULT_DESTROY_THREADS = 4


class B2Client:
    """An authorized connection to one B2 account.

    Use as an async context manager. Entering opens the HTTP connection pool
    and authorizes; leaving closes the pool.

    Attributes:
        config: The configuration this client was built from.
    """

    def __init__(
        self,
        credentials: Credentials,
        config: B2ClientConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or B2ClientConfig()
        self.api = B2Api(credentials, http_config=self.config.http, http_client=http_client)
        self.pool = LeasePool(self.api, self.config.upload.concurrency)
        self.uploader = PartUploader(
            self.api, self.pool, RetryPolicy.from_config(self.config.upload.retry)
        )

    @classmethod
    def from_config(
        cls, config: B2ClientConfig, *, http_client: httpx.AsyncClient | None = None
    ) -> B2Client:
        """Build a client using the credentials section of ``config``."""
        return cls(config.credentials.to_credentials(), config, http_client=http_client)

    async def __aenter__(self) -> B2Client:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> Session:
        """Open the connection pool and authorize the account.

        Logging and metrics are set up first when the config asks for them.

        Raises:
            AuthError: If the credentials are rejected. The pool is closed
                again before the error propagates.
        """
        if self.config.logging.configure:
            configure_logging(self.config.logging.level, self.config.logging.format)
        if self.config.metrics.enabled:
            metrics.init_metrics()
        await self.api.open()
        try:
            return await self.api.authorize()
        except BaseException:
            await self.api.close()
            raise

    async def close(self) -> None:
        await self.api.close()

    @property
    def session(self) -> Session:
        return self.api.session

    # -- buckets ---------------------------------------------------------------

    async def list_buckets(self, types: list[str] | None = None) -> list[Bucket]:
        page = await self.api.list_buckets(types=types)
        return [Bucket.from_api(item) for item in page.items]

    async def get_bucket(self, name: str) -> Bucket | None:
        """The bucket called ``name``, or None if there is none."""
        page = await self.api.list_buckets(bucket_name=name)
        for item in page.items:
            if item.get("bucketName") == name:
                return Bucket.from_api(item)
        return None

    async def create_bucket(
        self,
        name: str,
        bucket_type: str = "allPrivate",
        *,
        info: dict[str, Any] | None = None,
        cors_rules: list[dict[str, Any]] | None = None,
        lifecycle_rules: list[dict[str, Any]] | None = None,
    ) -> Bucket:
        data = await self.api.create_bucket(
            name,
            bucket_type,
            info=info,
            cors_rules=cors_rules,
            lifecycle_rules=lifecycle_rules,
        )
        logger.info("Created bucket %s", name, extra={"bucket_id": data.get("bucketId")})
        return Bucket.from_api(data)

    async def update_bucket(
        self,
        bucket: Bucket,
        *,
        bucket_type: str | None = None,
        info: dict[str, Any] | None = None,
        cors_rules: list[dict[str, Any]] | None = None,
        lifecycle_rules: list[dict[str, Any]] | None = None,
        if_revision_is: int | None = None,
    ) -> Bucket:
        """Change bucket settings and return the updated bucket.

        Only the settings passed are sent. With ``if_revision_is`` the update
        is rejected (:class:`~b2client.errors.Conflict`) if someone else
        changed the bucket since that revision.
        """
        data = await self.api.update_bucket(
            bucket.id,
            bucket_type=bucket_type,
            info=info,
            cors_rules=cors_rules,
            lifecycle_rules=lifecycle_rules,
            if_revision_is=if_revision_is,
        )
        return Bucket.from_api(data)

    async def delete_bucket(self, bucket: Bucket) -> None:
        await self.api.delete_bucket(bucket.id)
        logger.info("Deleted bucket %s", bucket.name, extra={"bucket_id": bucket.id})

    async def reload_bucket(self, bucket: Bucket) -> Bucket:
        """Fetch full metadata for ``bucket`` (e.g. one from ``from_storage``).

        Raises:
            NotFound: If the bucket no longer exists.
        """
        page = await self.api.list_buckets(bucket_id=bucket.id)
        for item in page.items:
            if item.get("bucketId") == bucket.id:
                return Bucket.from_api(item)
        raise NotFound(f"Bucket {bucket.id} not found", code="not_found", status=404)

    async def set_upload_concurrency(self, bucket: Bucket, limit: int) -> int:
        """Change how many uploads may run against ``bucket`` at once.

        Returns the limit actually applied (clamped to 1..128).
        """
        return await self.pool.resize(bucket.id, limit)

    # -- uploads ---------------------------------------------------------------

    def new_upload(
        self, bucket: Bucket, source: Any, file_name: str | None = None, **options: Any
    ) -> Upload:
        """A configurable upload; call ``run()`` (or ``start()``) on it."""
        options.setdefault("part_size", self.config.upload.part_size)
        options.setdefault("max_threads", self.config.upload.max_threads)
        return Upload(self.api, self.pool, self.uploader, bucket, source, file_name, **options)

    async def upload(
        self, bucket: Bucket, source: Any, file_name: str | None = None, **options: Any
    ) -> FileVersion:
        """Upload ``source`` and return the stored version.

        See :class:`~b2client.upload.Upload` for the accepted options.
        """
        return await self.new_upload(bucket, source, file_name, **options).run()

    # -- files -----------------------------------------------------------------

    def download_url(self, bucket: Bucket, file_name: str) -> str:
        return self.api.download_url(bucket.name, file_name)

    async def get_download_authorization(
        self, bucket: Bucket, prefix: str, valid_duration: int
    ) -> str:
        data = await self.api.get_download_authorization(bucket.id, prefix, valid_duration)
        return data["authorizationToken"]

    async def find_files(
        self,
        bucket: Bucket,
        *,
        count: int | Literal["all"] = ALL,
        start_at: str | None = None,
        batch_size: int | None = None,
        prefix: str | None = None,
        delimiter: str | None = None,
        on_item: ItemCallback | None = None,
    ) -> list[FileVersion]:
        """Latest version of each file, in name order.

        If ``on_item`` is given it receives each :class:`FileVersion` as it
        arrives and nothing is collected; the returned list is then empty.
        """

        async def fetch(start: dict[str, Any] | None, max_count: int):
            return await self.api.list_file_names(
                bucket.id, start=start, max_count=max_count, prefix=prefix, delimiter=delimiter
            )

        return await self._collect(
            fetch,
            count=count,
            start={"startFileName": start_at} if start_at else None,
            batch_size=batch_size,
            on_item=on_item,
        )

    async def find_file_versions(
        self,
        bucket: Bucket,
        *,
        count: int | Literal["all"] = ALL,
        start_at: str | None = None,
        start_file_id: str | None = None,
        batch_size: int | None = None,
        prefix: str | None = None,
        delimiter: str | None = None,
        on_item: ItemCallback | None = None,
    ) -> list[FileVersion]:
        """Every version of every file, by name and then newest first."""

        async def fetch(start: dict[str, Any] | None, max_count: int):
            return await self.api.list_file_versions(
                bucket.id, start=start, max_count=max_count, prefix=prefix, delimiter=delimiter
            )

        start = None
        if start_at:
            start = {"startFileName": start_at, "startFileId": start_file_id}
        return await self._collect(
            fetch, count=count, start=start, batch_size=batch_size, on_item=on_item
        )

    async def _collect(
        self,
        fetch,
        *,
        count: int | Literal["all"],
        start: dict[str, Any] | None,
        batch_size: int | None,
        on_item: ItemCallback | None,
    ) -> list[FileVersion]:
        collected: list[FileVersion] = []

        async def handle(item: dict[str, Any]) -> None:
            version = FileVersion.from_api(item)
            if on_item is None:
                collected.append(version)
                return
            outcome = on_item(version)
            if inspect.isawaitable(outcome):
                await outcome

        result = await paginate(
            fetch,
            count=count,
            batch_size=batch_size or self.config.listing.batch_size,
            start=start,
            on_item=handle,
        )
        logger.debug(
            "Listed %d file(s) in %d page(s), stopped: %s",
            result.total_fetched,
            result.pages,
            result.stopped_reason.value if result.stopped_reason else None,
        )
        return collected

    async def find_versions_of_file(self, bucket: Bucket, file_name: str) -> StoredFile:
        """All versions of exactly ``file_name``, newest first."""
        stored = StoredFile(file_name=file_name, bucket_id=bucket.id)

        async def fetch(start: dict[str, Any] | None, max_count: int):
            return await self.api.list_file_versions(
                bucket.id, start=start, max_count=max_count, prefix=file_name
            )

        items = iter_items(
            fetch,
            batch_size=self.config.listing.batch_size,
            start={"startFileName": file_name},
        )
        async with aclosing(items):
            async for item in items:
                if item["fileName"] != file_name:
                    break
                stored.versions.append(FileVersion.from_api(item))
        return stored

    async def latest_version(self, bucket: Bucket, file_name: str) -> FileVersion | None:
        """The current visible version of ``file_name``, or None."""
        page = await self.api.list_file_names(
            bucket.id, start={"startFileName": file_name}, max_count=1
        )
        for item in page.items:
            if item["fileName"] == file_name and item.get("action") == "upload":
                return FileVersion.from_api(item)
        return None

    async def get_file_info(self, file_id: str) -> FileVersion:
        return FileVersion.from_api(await self.api.get_file_info(file_id))

    async def hide_file(self, bucket: Bucket, file_name: str) -> FileVersion:
        return FileVersion.from_api(await self.api.hide_file(bucket.id, file_name))

    async def delete_file_version(self, version: FileVersion) -> None:
        await self.api.delete_file_version(version.file_name, version.file_id)

    async def destroy_file(
        self, stored_file: StoredFile, thread_count: int = DEFAULT_DESTROY_THREADS
    ) -> None:
        """Delete every version of a file, ``thread_count`` at a time.

        Deleted versions are removed from ``stored_file.versions``.

        Raises:
            PartialDestroyFailure: If any deletion failed. Versions that were
                deleted stay deleted; the error lists each failure.
        """
        semaphore = asyncio.Semaphore(max(1, thread_count))
        errors: list[ApiError] = []
        deleted: list[FileVersion] = []

        async def destroy(version: FileVersion) -> None:
            async with semaphore:
                try:
                    await self.delete_file_version(version)
                except ApiError as exc:
                    logger.warning(
                        "Could not delete %s: %r",
                        version.file_name,
                        exc,
                        extra={"file_id": version.file_id},
                    )
                    errors.append(exc)
                    return
                deleted.append(version)

        await asyncio.gather(*(destroy(version) for version in list(stored_file.versions)))
        stored_file.versions = [v for v in stored_file.versions if v not in deleted]
        if errors:
            raise PartialDestroyFailure(errors)

    # -- large-file housekeeping -------------------------------------------------

    async def list_unfinished_large_files(
        self, bucket: Bucket, prefix: str | None = None
    ) -> list[FileVersion]:
        """Large files that were started but never finished or canceled."""
        files: list[FileVersion] = []

        async def fetch(start: dict[str, Any] | None, max_count: int):
            return await self.api.list_unfinished_large_files(
                bucket.id, start=start, max_count=max_count, prefix=prefix
            )

        await paginate(
            fetch,
            batch_size=min(self.config.listing.batch_size, 100),
            on_item=lambda item: files.append(FileVersion.from_api(item)),
        )
        return files

    async def cancel_unfinished_large_files(
        self, bucket: Bucket, prefix: str | None = None
    ) -> list[str]:
        """Cancel every unfinished large file; return the canceled file ids."""
        canceled = []
        for version in await self.list_unfinished_large_files(bucket, prefix):
            await self.api.cancel_large_file(version.file_id)
            await self.pool.discard(bucket.id, version.file_id)
            canceled.append(version.file_id)
        logger.info(
            "Canceled %d unfinished large file(s)", len(canceled), extra={"bucket_id": bucket.id}
        )
        return canceled
