"""B2 error definitions and response classification for b2client."""

from __future__ import annotations

import json
import logging

logger = logging.getLogger(__name__)


class B2Error(Exception):
    """Base class for every error raised by b2client."""


class ApiError(B2Error):
    """An error returned by (or while talking to) the B2 service.

    Attributes:
        code: The B2 error code string (e.g. "bad_request", "not_found").
        message: Human-readable error description.
        status: The HTTP status code, or -1 when no response was received.
        retry_after: Seconds the server asked us to wait, if it said so.
    """

    retryable = False

    def __init__(
        self,
        message: str = "",
        code: str = "__unspecified",
        status: int = -1,
        retry_after: int | None = None,
    ) -> None:
        """Initialize the API error.

        Args:
            message: Error description.
            code: B2 error code.
            status: HTTP status code (default -1).
            retry_after: Optional Retry-After value in seconds.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.retry_after = retry_after

    @property
    def has_retry(self) -> bool:
        """Whether the server supplied a Retry-After hint."""
        return self.retry_after is not None

    def __repr__(self) -> str:
        retry = " retry" if self.has_retry else ""
        return (
            f"<{type(self).__name__}:{retry} code={self.code} "
            f"status={self.status}: {self.message}>"
        )


# -- API error kinds -----------------------------------------------------------


class AuthError(ApiError):
    """The authorization call itself failed (bad key id / key)."""


class AuthTokenExpired(ApiError):
    """The session or upload token was rejected and must be renewed."""


class BadRequest(ApiError):
    """The request was malformed."""


class NotAuthorized(ApiError):
    """The key lacks the capability for this operation."""


class NotFound(ApiError):
    """The requested resource does not exist."""


class UsageExceeded(ApiError):
    """A usage cap or quota was hit."""


class Conflict(ApiError):
    """Optimistic-concurrency failure, e.g. a bucket revision mismatch."""


class Unsupported(ApiError):
    """The service does not support the requested operation."""


class RequestTimeout(ApiError):
    """The request timed out, either server-side (408) or on our side."""

    retryable = True


class RetryLater(ApiError):
    """The service is busy; try again after a pause."""

    retryable = True


class ServerError(ApiError):
    """The service failed internally."""

    retryable = True


class MangledResponse(ServerError):
    """The service returned an error body we could not parse."""


class TransportFailure(ApiError):
    """The connection failed before a response was received."""

    retryable = True


# -- Local errors --------------------------------------------------------------


class UploadInProgress(B2Error):
    """An upload's configuration was changed after it started."""


class InvalidStateTransition(B2Error):
    """A large-file session was driven through an illegal transition."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move large file from {current!r} to {target!r}")
        self.current = current
        self.target = target


class SourceChanged(B2Error):
    """The bytes streamed for a part did not match the digest sent for it."""


class LeaseError(B2Error):
    """An upload lease was used outside of the pool's rules."""


# -- Aggregates ----------------------------------------------------------------


class LargeFileUploadError(B2Error):
    """One or more parts of a large file could not be uploaded.

    The large file has been canceled (or a cancel was attempted) by the time
    this is raised.

    Attributes:
        file_id: The id of the canceled large file.
        failed_parts: Mapping of part number to the error that ended it.
        cancel_error: The error raised by the cancel call, if it failed too.
    """

    def __init__(
        self,
        file_id: str,
        failed_parts: dict[int, BaseException],
        cancel_error: BaseException | None = None,
    ) -> None:
        parts = ", ".join(str(n) for n in sorted(failed_parts))
        super().__init__(f"Large file {file_id} failed on part(s) {parts}")
        self.file_id = file_id
        self.failed_parts = dict(sorted(failed_parts.items()))
        self.cancel_error = cancel_error


class FinalizeError(B2Error):
    """All parts uploaded but b2_finish_large_file was rejected."""

    def __init__(
        self,
        file_id: str,
        cause: BaseException,
        cancel_error: BaseException | None = None,
    ) -> None:
        super().__init__(f"Finishing large file {file_id} failed: {cause}")
        self.file_id = file_id
        self.cause = cause
        self.cancel_error = cancel_error


class PartialDestroyFailure(B2Error):
    """Some file versions could not be deleted.

    Versions that were deleted stay deleted; ``errors`` lists every failure.
    """

    def __init__(self, errors: list[ApiError]) -> None:
        super().__init__(f"{len(errors)} file version(s) could not be deleted")
        self.errors = errors


# -- Classification ------------------------------------------------------------

# Not meant to be exhaustive, only to map the common cases.
ERROR_CODE_MAP: dict[str, type[ApiError]] = {
    "bad_auth_token": AuthTokenExpired,
    "expired_auth_token": AuthTokenExpired,
    "bad_request": BadRequest,
    "duplicate_bucket_name": BadRequest,
    "invalid_bucket_id": BadRequest,
    "range_not_satisfiable": BadRequest,
    "too_many_buckets": BadRequest,
    "unauthorized": NotAuthorized,
    "not_found": NotFound,
    "no_such_file": NotFound,
    "file_not_present": NotFound,
    "cap_exceeded": UsageExceeded,
    "download_cap_exceeded": UsageExceeded,
    "storage_cap_exceeded": UsageExceeded,
    "transaction_cap_exceeded": UsageExceeded,
    "conflict": Conflict,
    "unsupported": Unsupported,
    "request_timeout": RequestTimeout,
    "too_many_requests": RetryLater,
    "service_unavailable": RetryLater,
    "internal_error": ServerError,
}

ERROR_STATUS_MAP: dict[int, type[ApiError]] = {
    400: BadRequest,
    401: NotAuthorized,
    403: UsageExceeded,
    404: NotFound,
    408: RequestTimeout,
    409: Conflict,
    429: RetryLater,
    500: ServerError,
    501: Unsupported,
    503: RetryLater,
    508: ServerError,
}


def _parse_retry_after(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def find_error_class(code: str, status: int) -> type[ApiError]:
    """Resolve the error class for a B2 error code, falling back on status."""
    if code in ERROR_CODE_MAP:
        return ERROR_CODE_MAP[code]
    if status in ERROR_STATUS_MAP:
        return ERROR_STATUS_MAP[status]
    if status >= 500:
        return ServerError
    return ApiError


def error_from_response(
    status: int,
    body: bytes | str,
    retry_after: str | None = None,
    error_class: type[ApiError] | None = None,
) -> ApiError:
    """Build a typed error from a non-2xx response.

    Args:
        status: The HTTP status code.
        body: The raw response body.
        retry_after: The raw Retry-After header value, if present.
        error_class: Force this class instead of looking it up (used for
            authorization failures, which are always AuthError).

    Returns:
        An ApiError subclass instance. Unparseable bodies produce a
        MangledResponse carrying the raw body in its message.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(body)
        code = data["code"]
        message = data["message"]
    except (ValueError, KeyError, TypeError):
        logger.warning("Unparseable error response (status %s): %r", status, body)
        return MangledResponse(
            f"Could not parse bad response from server: {body}",
            code="mangled_response",
            status=status,
            retry_after=_parse_retry_after(retry_after),
        )

    cls = error_class or find_error_class(code, status)
    return cls(message, code=code, status=status, retry_after=_parse_retry_after(retry_after))
