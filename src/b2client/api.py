"""Thin asynchronous wrapper around the B2 native API.

One :class:`B2Api` instance owns one authorized :class:`Session` and one
``httpx.AsyncClient`` connection pool. Each call performs exactly one request;
the only recovery done here is a single re-authorization when the session
token is rejected. Retry policies for transient failures belong to callers.

Endpoints:
    {auth_url}/b2api/v2/b2_authorize_account   (GET, basic auth)
    {api_url}/b2api/v2/{endpoint}              (POST, JSON)
    upload URLs handed out by b2_get_upload_url / b2_get_upload_part_url
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterable
from urllib.parse import quote

import httpx

from b2client import metrics
from b2client.config import DEFAULT_AUTH_URL, HttpConfig
from b2client.errors import (
    AuthError,
    AuthTokenExpired,
    B2Error,
    MangledResponse,
    RequestTimeout,
    TransportFailure,
    error_from_response,
)
from b2client.models import Credentials, ListCursor, Page, Session

logger = logging.getLogger(__name__)

VERSION = "0.3.0"
API_VERSION = "v2"
USER_AGENT = f"b2client/{VERSION}"

ONE_DAY = 24 * 60 * 60
# Download authorizations are valid between one second and one week.
MIN_DOWNLOAD_DURATION = 1
MAX_DOWNLOAD_DURATION = 7 * ONE_DAY


def _compact(body: dict[str, Any]) -> dict[str, Any]:
    """Drop null fields; B2 treats absent and null differently for some calls."""
    return {key: value for key, value in body.items() if value is not None}


class B2Api:
    """Authenticated access to the B2 API for one set of credentials.

    Use as an async context manager so the connection pool is released::

        async with B2Api(credentials) as api:
            await api.authorize()
            buckets = await api.list_buckets()

    An existing ``httpx.AsyncClient`` may be passed in; it is then borrowed
    and left open on exit.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        http_config: HttpConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        http_config = http_config or HttpConfig()
        self._timeout = httpx.Timeout(
            connect=http_config.connect_timeout,
            read=http_config.read_timeout,
            write=http_config.write_timeout,
            pool=http_config.pool_timeout,
        )
        self._http = http_client
        self._owns_http = http_client is None
        self._session: Session | None = None
        self._auth_lock = asyncio.Lock()

    async def __aenter__(self) -> B2Api:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the connection pool if none was supplied."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
            self._owns_http = True

    async def close(self) -> None:
        """Close the connection pool if this instance created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise B2Error("B2Api is not open; use 'async with B2Api(...)'")
        return self._http

    @property
    def session(self) -> Session:
        """The live session.

        Raises:
            B2Error: If :meth:`authorize` has not succeeded yet.
        """
        if self._session is None:
            raise B2Error("Not authorized; call authorize() first")
        return self._session

    @property
    def authorized(self) -> bool:
        return self._session is not None

    # -- transport -------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one request, wrapping transport failures in ApiError kinds."""
        try:
            return await self.http.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise RequestTimeout(
                f"{method} {url} timed out: {exc!r}", code="client_timeout"
            ) from exc
        except httpx.TransportError as exc:
            raise TransportFailure(
                f"{method} {url} failed: {exc!r}", code="transport_error"
            ) from exc

    @staticmethod
    def _parse_json(response: httpx.Response) -> dict[str, Any]:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MangledResponse(
                f"Could not parse response from server: {response.text!r}",
                code="mangled_response",
                status=response.status_code,
            ) from exc

    # -- authorization -----------------------------------------------------------

    async def _authorize_account(self) -> Session:
        base = (self._credentials.api_url or DEFAULT_AUTH_URL).rstrip("/")
        url = f"{base}/b2api/{API_VERSION}/b2_authorize_account"
        response = await self._send(
            "GET",
            url,
            auth=(self._credentials.key_id, self._credentials.key_secret),
        )
        metrics.record_api_call("b2_authorize_account", response.status_code)
        if not response.is_success:
            raise error_from_response(
                response.status_code,
                response.content,
                response.headers.get("Retry-After"),
                error_class=AuthError,
            )
        return Session.from_api(self._parse_json(response))

    async def authorize(self) -> Session:
        """Log in and replace the live session.

        Raises:
            AuthError: If the credentials are rejected.
        """
        async with self._auth_lock:
            self._session = await self._authorize_account()
            logger.info(
                "Authorized account %s (api %s)", self._session.account_id, self._session.api_url
            )
            return self._session

    async def _refresh(self, stale_token: str) -> Session:
        """Re-authorize unless another caller already replaced ``stale_token``."""
        async with self._auth_lock:
            if self._session is not None and self._session.auth_token != stale_token:
                return self._session
            logger.info("Auth token expired; re-authorizing")
            self._session = await self._authorize_account()
            return self._session

    # -- generic call ------------------------------------------------------------

    async def _post_api(
        self, session: Session, endpoint: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        url = f"{session.api_url}/b2api/{API_VERSION}/{endpoint}"
        start = time.monotonic()
        response = await self._send(
            "POST",
            url,
            json=_compact(body),
            headers={"Authorization": session.auth_token},
        )
        duration_ms = round((time.monotonic() - start) * 1000, 1)
        metrics.record_api_call(endpoint, response.status_code)
        logger.debug(
            "%s -> %s",
            endpoint,
            response.status_code,
            extra={
                "endpoint": endpoint,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        if not response.is_success:
            raise error_from_response(
                response.status_code, response.content, response.headers.get("Retry-After")
            )
        return self._parse_json(response)

    async def call(self, endpoint: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST ``body`` to ``endpoint`` and return the parsed JSON reply.

        A rejected session token triggers one re-authorization and one retry;
        a second rejection propagates.

        Raises:
            ApiError: A subclass matching the error code / status.
        """
        session = self.session
        body = body or {}
        try:
            return await self._post_api(session, endpoint, body)
        except AuthTokenExpired:
            session = await self._refresh(session.auth_token)
            return await self._post_api(session, endpoint, body)

    async def post_upload(
        self,
        url: str,
        headers: dict[str, str],
        content: bytes | AsyncIterable[bytes],
    ) -> dict[str, Any]:
        """POST raw bytes to an upload URL handed out with a lease.

        The lease's own token authorizes this request, so an auth-token error
        here means the lease is dead, not the session; it is not retried.
        """
        response = await self._send("POST", url, headers=headers, content=content)
        endpoint = "b2_upload_part" if "X-Bz-Part-Number" in headers else "b2_upload_file"
        metrics.record_api_call(endpoint, response.status_code)
        if not response.is_success:
            raise error_from_response(
                response.status_code, response.content, response.headers.get("Retry-After")
            )
        return self._parse_json(response)

    # -- URLs ----------------------------------------------------------------------

    def download_url(self, bucket_name: str, file_name: str) -> str:
        """Friendly download URL for a file (no request is made)."""
        return f"{self.session.download_url}/file/{bucket_name}/{quote(file_name)}"

    def file_id_download_url(self, file_id: str) -> str:
        return (
            f"{self.session.download_url}/b2api/{API_VERSION}/b2_download_file_by_id"
            f"?fileId={quote(file_id)}"
        )

    # -- uploads ---------------------------------------------------------------------

    async def get_upload_url(self, bucket_id: str) -> dict[str, Any]:
        return await self.call("b2_get_upload_url", {"bucketId": bucket_id})

    async def get_upload_part_url(self, file_id: str) -> dict[str, Any]:
        return await self.call("b2_get_upload_part_url", {"fileId": file_id})

    async def start_large_file(
        self,
        bucket_id: str,
        file_name: str,
        content_type: str = "b2/x-auto",
        file_info: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "b2_start_large_file",
            {
                "bucketId": bucket_id,
                "fileName": file_name,
                "contentType": content_type,
                "fileInfo": file_info or {},
            },
        )

    async def finish_large_file(self, file_id: str, part_sha1s: list[str]) -> dict[str, Any]:
        return await self.call(
            "b2_finish_large_file", {"fileId": file_id, "partSha1Array": part_sha1s}
        )

    async def cancel_large_file(self, file_id: str) -> dict[str, Any]:
        return await self.call("b2_cancel_large_file", {"fileId": file_id})

    async def list_parts(
        self,
        file_id: str,
        *,
        start: dict[str, Any] | None = None,
        max_count: int | None = None,
    ) -> Page:
        data = await self.call(
            "b2_list_parts",
            {"fileId": file_id, "maxPartCount": max_count, **(start or {})},
        )
        next_part = data.get("nextPartNumber")
        return Page(
            items=data.get("parts", []),
            cursor=ListCursor(start={"startPartNumber": next_part}, stop=next_part is None),
        )

    async def list_unfinished_large_files(
        self,
        bucket_id: str,
        *,
        start: dict[str, Any] | None = None,
        max_count: int | None = None,
        prefix: str | None = None,
    ) -> Page:
        data = await self.call(
            "b2_list_unfinished_large_files",
            {
                "bucketId": bucket_id,
                "maxFileCount": max_count,
                "namePrefix": prefix,
                **(start or {}),
            },
        )
        next_id = data.get("nextFileId")
        return Page(
            items=data.get("files", []),
            cursor=ListCursor(start={"startFileId": next_id}, stop=next_id is None),
        )

    # -- buckets -----------------------------------------------------------------------

    async def list_buckets(
        self,
        *,
        bucket_id: str | None = None,
        bucket_name: str | None = None,
        types: list[str] | None = None,
    ) -> Page:
        data = await self.call(
            "b2_list_buckets",
            {
                "accountId": self.session.account_id,
                "bucketId": bucket_id,
                "bucketName": bucket_name,
                "bucketTypes": types,
            },
        )
        return Page(items=data.get("buckets", []), cursor=ListCursor(stop=True))

    async def create_bucket(
        self,
        name: str,
        bucket_type: str = "allPrivate",
        *,
        info: dict[str, Any] | None = None,
        cors_rules: list[dict[str, Any]] | None = None,
        lifecycle_rules: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "b2_create_bucket",
            {
                "accountId": self.session.account_id,
                "bucketName": name,
                "bucketType": bucket_type,
                "bucketInfo": info or {},
                "corsRules": cors_rules or [],
                "lifecycleRules": lifecycle_rules or [],
            },
        )

    async def update_bucket(
        self,
        bucket_id: str,
        *,
        bucket_type: str | None = None,
        info: dict[str, Any] | None = None,
        cors_rules: list[dict[str, Any]] | None = None,
        lifecycle_rules: list[dict[str, Any]] | None = None,
        if_revision_is: int | None = None,
    ) -> dict[str, Any]:
        """Update bucket settings.

        Raises:
            Conflict: If ``if_revision_is`` no longer matches the server.
        """
        return await self.call(
            "b2_update_bucket",
            {
                "accountId": self.session.account_id,
                "bucketId": bucket_id,
                "bucketType": bucket_type,
                "bucketInfo": info,
                "corsRules": cors_rules,
                "lifecycleRules": lifecycle_rules,
                "ifRevisionIs": if_revision_is,
            },
        )

    async def delete_bucket(self, bucket_id: str) -> dict[str, Any]:
        return await self.call(
            "b2_delete_bucket",
            {"accountId": self.session.account_id, "bucketId": bucket_id},
        )

    # -- files -------------------------------------------------------------------------

    async def list_file_names(
        self,
        bucket_id: str,
        *,
        start: dict[str, Any] | None = None,
        max_count: int | None = None,
        prefix: str | None = None,
        delimiter: str | None = None,
    ) -> Page:
        data = await self.call(
            "b2_list_file_names",
            {
                "bucketId": bucket_id,
                "maxFileCount": max_count,
                "prefix": prefix,
                "delimiter": delimiter,
                **(start or {}),
            },
        )
        next_name = data.get("nextFileName")
        return Page(
            items=data.get("files", []),
            cursor=ListCursor(start={"startFileName": next_name}, stop=next_name is None),
        )

    async def list_file_versions(
        self,
        bucket_id: str,
        *,
        start: dict[str, Any] | None = None,
        max_count: int | None = None,
        prefix: str | None = None,
        delimiter: str | None = None,
    ) -> Page:
        data = await self.call(
            "b2_list_file_versions",
            {
                "bucketId": bucket_id,
                "maxFileCount": max_count,
                "prefix": prefix,
                "delimiter": delimiter,
                **(start or {}),
            },
        )
        next_name = data.get("nextFileName")
        next_id = data.get("nextFileId")
        return Page(
            items=data.get("files", []),
            cursor=ListCursor(
                start={"startFileName": next_name, "startFileId": next_id},
                stop=next_name is None and next_id is None,
            ),
        )

    async def get_file_info(self, file_id: str) -> dict[str, Any]:
        return await self.call("b2_get_file_info", {"fileId": file_id})

    async def hide_file(self, bucket_id: str, file_name: str) -> dict[str, Any]:
        return await self.call("b2_hide_file", {"bucketId": bucket_id, "fileName": file_name})

    async def delete_file_version(self, file_name: str, file_id: str) -> dict[str, Any]:
        return await self.call(
            "b2_delete_file_version", {"fileName": file_name, "fileId": file_id}
        )

    async def get_download_authorization(
        self,
        bucket_id: str,
        prefix: str,
        valid_duration: int,
        **b2_headers: str,
    ) -> dict[str, Any]:
        """Token for downloading files under ``prefix`` from a private bucket.

        ``valid_duration`` is clamped to one second .. one week. Extra keyword
        arguments (e.g. ``b2ContentDisposition``) are sent verbatim.
        """
        duration = max(MIN_DOWNLOAD_DURATION, min(int(valid_duration), MAX_DOWNLOAD_DURATION))
        return await self.call(
            "b2_get_download_authorization",
            {
                "bucketId": bucket_id,
                "fileNamePrefix": prefix,
                "validDurationInSeconds": duration,
                **b2_headers,
            },
        )
