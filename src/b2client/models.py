"""Data model types for b2client.

These dataclasses represent the entities exchanged with the B2 service
(sessions, buckets, file versions, upload leases, large-file sessions) and
the containers returned by list operations.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any

from b2client.errors import InvalidStateTransition

# Upload URLs are good for at most a day.
LEASE_TTL = 24 * 60 * 60


@dataclass(frozen=True)
class Credentials:
    """Application key used to authorize an account.

    Attributes:
        key_id: The application key id.
        key_secret: The application key.
        api_url: Optional authorization host override.
    """

    key_id: str
    key_secret: str = field(repr=False)
    api_url: str | None = None

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> Credentials:
        """Build credentials from a plain mapping.

        Accepts the keys ``application_key_id``, ``application_key`` and the
        optional ``api_path``.

        Raises:
            KeyError: If either key field is missing.
        """
        return cls(
            key_id=data["application_key_id"],
            key_secret=data["application_key"],
            api_url=data.get("api_path") or None,
        )


@dataclass(frozen=True)
class Session:
    """The result of a successful b2_authorize_account call."""

    auth_token: str = field(repr=False)
    api_url: str
    download_url: str
    account_id: str
    absolute_min_part_size: int
    recommended_part_size: int
    allowed: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Session:
        return cls(
            auth_token=data["authorizationToken"],
            api_url=data["apiUrl"],
            download_url=data["downloadUrl"],
            account_id=data["accountId"],
            absolute_min_part_size=int(data["absoluteMinimumPartSize"]),
            recommended_part_size=int(data["recommendedPartSize"]),
            allowed=data.get("allowed") or {},
        )


@dataclass
class Bucket:
    """A B2 bucket.

    Only ``id`` and ``name`` are required; a bucket built from storage (see
    :meth:`from_storage`) carries nothing else and reports ``is_partial``.
    Call ``B2Client.reload_bucket()`` to fetch the rest.
    """

    id: str
    name: str
    type: str | None = None
    info: dict[str, Any] = field(default_factory=dict)
    cors_rules: list[dict[str, Any]] = field(default_factory=list)
    lifecycle_rules: list[dict[str, Any]] = field(default_factory=list)
    revision: int | None = None
    account_id: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Bucket:
        return cls(
            id=data["bucketId"],
            name=data["bucketName"],
            type=data.get("bucketType"),
            info=data.get("bucketInfo") or {},
            cors_rules=data.get("corsRules") or [],
            lifecycle_rules=data.get("lifecycleRules") or [],
            revision=data.get("revision"),
            account_id=data.get("accountId"),
        )

    @classmethod
    def from_storage(cls, name: str, id: str) -> Bucket:
        """Create the slim id+name variant, e.g. from a cache."""
        return cls(id=id, name=name)

    @property
    def is_partial(self) -> bool:
        return self.revision is None


@dataclass
class FileVersion:
    """One immutable stored revision of a file."""

    file_id: str
    file_name: str
    bucket_id: str
    size: int = 0
    content_type: str | None = None
    sha1: str | None = None
    upload_timestamp: int = 0
    action: str = "upload"
    file_info: dict[str, str] = field(default_factory=dict)
    account_id: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> FileVersion:
        return cls(
            file_id=data.get("fileId") or "",
            file_name=data["fileName"],
            bucket_id=data.get("bucketId") or "",
            size=int(data.get("contentLength") or 0),
            content_type=data.get("contentType"),
            sha1=data.get("contentSha1"),
            upload_timestamp=int(data.get("uploadTimestamp") or 0),
            action=data.get("action") or "upload",
            file_info=data.get("fileInfo") or {},
            account_id=data.get("accountId"),
        )


@dataclass
class StoredFile:
    """A file name together with its known versions, newest first."""

    file_name: str
    bucket_id: str
    versions: list[FileVersion] = field(default_factory=list)

    def latest_version(self) -> FileVersion | None:
        return self.versions[0] if self.versions else None


@dataclass(eq=False)
class UploadLease:
    """An upload URL plus its token, checked out of a LeasePool.

    ``file_id`` is None for whole-file upload URLs (b2_get_upload_url) and
    the large file's id for part upload URLs (b2_get_upload_part_url).
    Leases compare by identity.
    """

    bucket_id: str
    upload_url: str
    upload_auth_token: str = field(repr=False)
    issued_at: float = field(default_factory=time.monotonic)
    file_id: str | None = None
    valid: bool = True

    @property
    def expired(self) -> bool:
        return time.monotonic() - self.issued_at >= LEASE_TTL

    @property
    def usable(self) -> bool:
        return self.valid and not self.expired

    def invalidate(self) -> None:
        self.valid = False


@dataclass(frozen=True)
class ByteRange:
    """A contiguous slice ``[offset, offset + length)`` of a source."""

    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass
class PartResult:
    """What one successful upload POST produced."""

    sha1: str
    size: int
    part_number: int | None = None
    file_id: str | None = None
    response: dict[str, Any] = field(default_factory=dict)


class LargeFileState(str, enum.Enum):
    CREATED = "created"
    UPLOADING_PARTS = "uploading_parts"
    FINISHING = "finishing"
    FINISHED = "finished"
    CANCELING = "canceling"
    CANCELED = "canceled"


_TRANSITIONS: dict[LargeFileState, set[LargeFileState]] = {
    LargeFileState.CREATED: {LargeFileState.UPLOADING_PARTS, LargeFileState.CANCELING},
    LargeFileState.UPLOADING_PARTS: {LargeFileState.FINISHING, LargeFileState.CANCELING},
    LargeFileState.FINISHING: {LargeFileState.FINISHED, LargeFileState.CANCELING},
    LargeFileState.CANCELING: {LargeFileState.CANCELED},
    LargeFileState.FINISHED: set(),
    LargeFileState.CANCELED: set(),
}


@dataclass
class LargeFileSession:
    """Client-side view of a started large file.

    ``parts`` maps part number to the sha1 of that part's bytes. Part numbers
    are 1-based and must be contiguous by the time the file is finished.
    """

    file_id: str
    bucket_id: str
    file_name: str
    content_type: str = "b2/x-auto"
    file_info: dict[str, str] = field(default_factory=dict)
    state: LargeFileState = LargeFileState.CREATED
    parts: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> LargeFileSession:
        return cls(
            file_id=data["fileId"],
            bucket_id=data["bucketId"],
            file_name=data["fileName"],
            content_type=data.get("contentType") or "b2/x-auto",
            file_info=data.get("fileInfo") or {},
        )

    def transition(self, target: LargeFileState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state.value, target.value)
        self.state = target

    def record_part(self, part_number: int, sha1: str) -> None:
        if self.state is not LargeFileState.UPLOADING_PARTS:
            raise InvalidStateTransition(self.state.value, "record_part")
        self.parts[part_number] = sha1

    def ordered_sha1s(self) -> list[str]:
        """Part digests in ascending part-number order.

        Raises:
            ValueError: If the recorded part numbers are not exactly 1..n.
        """
        numbers = sorted(self.parts)
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"Part numbers are not contiguous from 1: {numbers}")
        return [self.parts[n] for n in numbers]


@dataclass(frozen=True)
class ListCursor:
    """Where the next page of a listing starts.

    ``start`` holds the request fields to send verbatim with the next page
    request (e.g. ``{"startFileName": ...}`` or a name/id pair). ``stop`` is
    set once the server reports no further results.
    """

    start: dict[str, Any] = field(default_factory=dict)
    stop: bool = False


@dataclass
class Page:
    """One page of list results."""

    items: list[dict[str, Any]]
    cursor: ListCursor
