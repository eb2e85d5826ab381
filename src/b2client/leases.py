"""Per-bucket pool of reusable upload URLs.

B2 hands out upload URLs (each with its own token) that may be used by one
upload at a time and reused afterwards. The pool bounds how many URLs exist
per bucket, which in turn bounds how many uploads run against that bucket
concurrently, and avoids asking for a fresh URL for every upload.

Leases come in two scopes inside a bucket: whole-file upload URLs
(``file_id is None``, from b2_get_upload_url) and part upload URLs for one
large file (from b2_get_upload_part_url). Both count against the bucket's
limit.

Locking:
    All bookkeeping lives behind one ``asyncio.Condition`` per pool. Minting a
    URL is a network call and happens outside the lock; the slot it fills is
    reserved inside the lock first and given back if minting fails.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from b2client import metrics
from b2client.errors import LeaseError
from b2client.models import UploadLease

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 4
MAX_LIMIT = 128


def clamp_limit(limit: int) -> int:
    """Clamp a concurrency limit into ``1..MAX_LIMIT``."""
    return max(1, min(int(limit), MAX_LIMIT))


class UploadUrlSource(Protocol):
    """The part of B2Api the pool needs."""

    async def get_upload_url(self, bucket_id: str) -> dict[str, Any]: ...

    async def get_upload_part_url(self, file_id: str) -> dict[str, Any]: ...


@dataclass
class LeaseStats:
    limit: int
    outstanding: int
    idle: int
    in_use: int


@dataclass
class _BucketLeases:
    limit: int
    outstanding: int = 0
    idle: list[UploadLease] = field(default_factory=list)
    checked_out: set[UploadLease] = field(default_factory=set)


class LeasePool:
    """Bounded, per-bucket pool of upload leases.

    Attributes:
        default_limit: Limit applied to buckets not explicitly resized.
    """

    def __init__(self, api: UploadUrlSource, default_limit: int = DEFAULT_LIMIT) -> None:
        self._api = api
        self.default_limit = clamp_limit(default_limit)
        self._buckets: dict[str, _BucketLeases] = {}
        self._available = asyncio.Condition()

    def _bucket(self, bucket_id: str) -> _BucketLeases:
        state = self._buckets.get(bucket_id)
        if state is None:
            state = _BucketLeases(limit=self.default_limit)
            self._buckets[bucket_id] = state
        return state

    def _retire(self, state: _BucketLeases, lease: UploadLease) -> None:
        state.outstanding -= 1
        metrics.record_outstanding(lease.bucket_id, state.outstanding)
        logger.debug(
            "Retired upload lease (valid=%s expired=%s)",
            lease.valid,
            lease.expired,
            extra={"bucket_id": lease.bucket_id, "file_id": lease.file_id},
        )

    def _take_idle(self, state: _BucketLeases, file_id: str | None) -> UploadLease | None:
        """Pop a usable idle lease for ``file_id``, retiring dead ones seen on the way."""
        found = None
        for lease in list(state.idle):
            if not lease.usable:
                state.idle.remove(lease)
                self._retire(state, lease)
            elif found is None and lease.file_id == file_id:
                state.idle.remove(lease)
                found = lease
        return found

    def _retire_foreign_idle(self, state: _BucketLeases, file_id: str | None) -> bool:
        """Free a slot held by an idle lease of another scope."""
        for lease in state.idle:
            if lease.file_id != file_id:
                state.idle.remove(lease)
                self._retire(state, lease)
                return True
        return False

    async def _mint(self, bucket_id: str, file_id: str | None) -> UploadLease:
        if file_id is None:
            data = await self._api.get_upload_url(bucket_id)
        else:
            data = await self._api.get_upload_part_url(file_id)
        return UploadLease(
            bucket_id=bucket_id,
            upload_url=data["uploadUrl"],
            upload_auth_token=data["authorizationToken"],
            file_id=file_id,
        )

    async def acquire(self, bucket_id: str, file_id: str | None = None) -> UploadLease:
        """Check out a lease, waiting while the bucket is at its limit.

        Args:
            bucket_id: Bucket the upload goes to.
            file_id: Large file id for part uploads; None for whole files.

        Returns:
            A lease no other caller holds until it is released.

        Raises:
            ApiError: If minting a fresh upload URL fails. The reserved slot
                is given back first, as it is when the caller is cancelled.
        """
        async with self._available:
            while True:
                state = self._bucket(bucket_id)
                lease = self._take_idle(state, file_id)
                if lease is not None:
                    state.checked_out.add(lease)
                    return lease
                if state.outstanding < state.limit:
                    state.outstanding += 1
                    break
                if self._retire_foreign_idle(state, file_id):
                    continue
                await self._available.wait()

        try:
            lease = await self._mint(bucket_id, file_id)
            async with self._available:
                state.checked_out.add(lease)
                metrics.record_outstanding(bucket_id, state.outstanding)
        except BaseException:
            async with self._available:
                state.outstanding -= 1
                self._available.notify_all()
            raise

        logger.debug(
            "Minted upload lease",
            extra={"bucket_id": bucket_id, "file_id": file_id},
        )
        return lease

    async def release(self, lease: UploadLease) -> None:
        """Return a lease to the pool.

        Invalid or expired leases, and leases above a shrunk limit, are
        retired instead of kept. Releasing a lease that is not checked out
        (e.g. a second release) does nothing.

        Raises:
            LeaseError: If this pool never issued leases for the lease's bucket.
        """
        async with self._available:
            state = self._buckets.get(lease.bucket_id)
            if state is None:
                raise LeaseError(f"No leases were issued for bucket {lease.bucket_id}")
            if lease not in state.checked_out:
                logger.debug(
                    "Ignoring release of a lease that is not checked out",
                    extra={"bucket_id": lease.bucket_id},
                )
                return
            state.checked_out.discard(lease)
            if not lease.usable or state.outstanding > state.limit:
                self._retire(state, lease)
            else:
                state.idle.append(lease)
            self._available.notify_all()

    def invalidate(self, lease: UploadLease) -> None:
        """Mark a lease as unusable; it is retired when released."""
        lease.invalidate()

    @asynccontextmanager
    async def lease(self, bucket_id: str, file_id: str | None = None) -> AsyncIterator[UploadLease]:
        """Hold a lease for the duration of a block.

        If the block raises, the lease is invalidated before it goes back.
        """
        lease = await self.acquire(bucket_id, file_id)
        try:
            yield lease
        except BaseException:
            lease.invalidate()
            raise
        finally:
            await self.release(lease)

    async def resize(self, bucket_id: str, new_limit: int) -> int:
        """Change a bucket's limit and return the clamped value.

        Shrinking retires idle leases right away and checked-out ones as
        they come back; nothing in use is revoked.
        """
        async with self._available:
            state = self._bucket(bucket_id)
            state.limit = clamp_limit(new_limit)
            while state.idle and state.outstanding > state.limit:
                self._retire(state, state.idle.pop(0))
            self._available.notify_all()
            return state.limit

    async def discard(self, bucket_id: str, file_id: str) -> None:
        """Retire the idle part-upload leases of a finished or canceled large file."""
        async with self._available:
            state = self._buckets.get(bucket_id)
            if state is None:
                return
            for lease in [lease for lease in state.idle if lease.file_id == file_id]:
                state.idle.remove(lease)
                self._retire(state, lease)
            self._available.notify_all()

    def stats(self, bucket_id: str) -> LeaseStats:
        state = self._buckets.get(bucket_id)
        if state is None:
            return LeaseStats(limit=self.default_limit, outstanding=0, idle=0, in_use=0)
        return LeaseStats(
            limit=state.limit,
            outstanding=state.outstanding,
            idle=len(state.idle),
            in_use=len(state.checked_out),
        )

