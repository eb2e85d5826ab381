"""Shared pytest fixtures for b2client tests.

Network traffic goes to :class:`FakeB2`, a small in-memory model of the B2
service mounted behind ``httpx.MockTransport``. It keeps buckets, file
versions and unfinished large files, checks every upload's SHA-1 against
the bytes actually received, and can be told to fail chosen calls.
"""

import asyncio
import base64
import hashlib
import itertools
import json
from urllib.parse import unquote, urlsplit

import httpx
import pytest

from b2client.api import B2Api
from b2client.client import B2Client
from b2client.config import B2ClientConfig, RetryConfig, UploadConfig
from b2client.models import Credentials

MB = 1000 * 1000

AUTH_URL = "https://auth.fake-b2.test"
API_URL = "https://api001.fake-b2.test"
DOWNLOAD_URL = "https://f001.fake-b2.test"
POD_URL = "https://pod-000.fake-b2.test"


def error_response(status, code, message="", headers=None):
    return httpx.Response(
        status,
        json={"status": status, "code": code, "message": message or code},
        headers=headers,
    )


class FakeB2:
    """In-memory B2 service.

    Attributes:
        calls: Endpoint name of every request, in arrival order.
        requests: (endpoint, parsed JSON body) of every API POST.
        finished: partSha1Array of every successful b2_finish_large_file.
        part_completion_order: Part numbers in the order their uploads ended.
        part_delays: Seconds to stall before answering a part upload.
        max_in_flight: Most part uploads ever being answered at once.
    """

    key_id = "key-id"
    key_secret = "key-secret"
    account_id = "acct-1"

    def __init__(self, min_part_size=5 * MB, recommended_part_size=5 * MB):
        self.min_part_size = min_part_size
        self.recommended_part_size = recommended_part_size
        self._ids = itertools.count(1)
        self._clock = itertools.count(1_700_000_000_000)
        self.session_tokens = set()
        self.upload_tokens = {}
        self.reject_all_tokens = False
        self.buckets = {}
        self.versions = []
        self.large_files = {}
        self.calls = []
        self.requests = []
        self.finished = []
        self.part_completion_order = []
        self.part_delays = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._failures = {}
        self._part_failures = {}

    # -- test controls ---------------------------------------------------------

    def fail_next(self, endpoint, status=503, code="service_unavailable", times=1,
                  body=None, headers=None):
        """Make the next ``times`` calls to ``endpoint`` fail."""
        queue = self._failures.setdefault(endpoint, [])
        queue.extend([(status, code, body, headers)] * times)

    def fail_part(self, part_number, status=503, code="service_unavailable", times=None):
        """Fail uploads of ``part_number``; ``times=None`` fails every attempt."""
        self._part_failures[part_number] = [status, code, times]

    def expire_session_tokens(self):
        self.session_tokens.clear()

    def _id(self, prefix):
        return f"{prefix}_{next(self._ids):06d}"

    def _injected(self, endpoint):
        queue = self._failures.get(endpoint)
        if not queue:
            return None
        status, code, body, headers = queue.pop(0)
        if body is not None:
            return httpx.Response(status, content=body, headers=headers)
        return error_response(status, code, headers=headers)

    # -- transport -------------------------------------------------------------

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = urlsplit(str(request.url))
        endpoint = url.path.split("/")[3] if url.path.startswith("/b2api/v2/") else url.path
        self.calls.append(endpoint)

        injected = self._injected(endpoint)
        if injected is not None:
            return injected

        origin = f"{url.scheme}://{url.netloc}"
        if origin == AUTH_URL and endpoint == "b2_authorize_account":
            return self._authorize(request)
        if origin == API_URL:
            token = request.headers.get("Authorization")
            if self.reject_all_tokens or token not in self.session_tokens:
                return error_response(401, "expired_auth_token", "Authorization token has expired")
            body = json.loads(request.content or b"{}")
            self.requests.append((endpoint, body))
            method = getattr(self, f"_ep_{endpoint}", None)
            if method is None:
                return error_response(400, "bad_request", f"unknown endpoint {endpoint}")
            return method(body)
        if origin == POD_URL:
            return await self._upload(request, endpoint)
        return error_response(404, "not_found", f"no route for {request.url}")

    def _authorize(self, request):
        expected = base64.b64encode(f"{self.key_id}:{self.key_secret}".encode()).decode()
        if request.headers.get("Authorization") != f"Basic {expected}":
            return error_response(401, "bad_auth_token", "Invalid application key")
        token = self._id("session")
        self.session_tokens.add(token)
        return httpx.Response(
            200,
            json={
                "accountId": self.account_id,
                "authorizationToken": token,
                "apiUrl": API_URL,
                "downloadUrl": DOWNLOAD_URL,
                "absoluteMinimumPartSize": self.min_part_size,
                "recommendedPartSize": self.recommended_part_size,
                "allowed": {"capabilities": ["listBuckets", "writeFiles"], "bucketId": None},
            },
        )

    # -- uploads ---------------------------------------------------------------

    def _mint_upload_url(self, kind, bucket_id, file_id=None):
        token = self._id("upload")
        target = file_id or bucket_id
        url = f"{POD_URL}/b2api/v2/{kind}/{target}/{token}"
        self.upload_tokens[token] = (url, bucket_id, file_id)
        return url, token

    async def _upload(self, request, endpoint):
        token = request.headers.get("Authorization")
        lease = self.upload_tokens.get(token)
        if lease is None or lease[0] != str(request.url):
            return error_response(401, "expired_auth_token", "Upload token is not valid")
        _, bucket_id, file_id = lease

        content = request.content
        if int(request.headers["Content-Length"]) != len(content):
            return error_response(400, "bad_request", "Content-Length mismatch")
        sha1 = hashlib.sha1(content).hexdigest()
        if request.headers["X-Bz-Content-Sha1"] != sha1:
            return error_response(400, "bad_request", "Checksum did not match data received")

        if endpoint == "b2_upload_part":
            part_number = int(request.headers["X-Bz-Part-Number"])
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await asyncio.sleep(self.part_delays.get(part_number, 0))
            finally:
                self.in_flight -= 1
            failure = self._part_failures.get(part_number)
            if failure is not None and failure[2] != 0:
                if failure[2] is not None:
                    failure[2] -= 1
                return error_response(failure[0], failure[1])
            large = self.large_files.get(file_id)
            if large is None:
                return error_response(400, "bad_request", "No active upload for this file")
            large["parts"][part_number] = (sha1, len(content))
            self.part_completion_order.append(part_number)
            return httpx.Response(
                200,
                json={
                    "fileId": file_id,
                    "partNumber": part_number,
                    "contentLength": len(content),
                    "contentSha1": sha1,
                },
            )

        info = {
            key[len("X-Bz-Info-"):].lower(): unquote(value)
            for key, value in request.headers.items()
            if key.lower().startswith("x-bz-info-")
        }
        version = self._store_version(
            bucket_id,
            unquote(request.headers["X-Bz-File-Name"]),
            size=len(content),
            sha1=sha1,
            content_type=request.headers.get("Content-Type"),
            file_info=info,
        )
        return httpx.Response(200, json=version)

    def _store_version(self, bucket_id, file_name, *, size=0, sha1=None,
                       content_type=None, file_info=None, action="upload", file_id=None):
        version = {
            "accountId": self.account_id,
            "action": action,
            "bucketId": bucket_id,
            "contentLength": size,
            "contentSha1": sha1,
            "contentType": content_type or "application/octet-stream",
            "fileId": file_id or self._id("file"),
            "fileInfo": file_info or {},
            "fileName": file_name,
            "uploadTimestamp": next(self._clock),
        }
        self.versions.append(version)
        return version

    # -- API endpoints -----------------------------------------------------------

    def _ep_b2_get_upload_url(self, body):
        if body["bucketId"] not in self.buckets:
            return error_response(400, "bad_request", "Invalid bucketId")
        url, token = self._mint_upload_url("b2_upload_file", body["bucketId"])
        return httpx.Response(
            200, json={"bucketId": body["bucketId"], "uploadUrl": url, "authorizationToken": token}
        )

    def _ep_b2_get_upload_part_url(self, body):
        large = self.large_files.get(body["fileId"])
        if large is None:
            return error_response(400, "bad_request", "No active upload for this file")
        url, token = self._mint_upload_url("b2_upload_part", large["bucketId"], body["fileId"])
        return httpx.Response(
            200, json={"fileId": body["fileId"], "uploadUrl": url, "authorizationToken": token}
        )

    def _ep_b2_start_large_file(self, body):
        file_id = self._id("large")
        large = {
            "accountId": self.account_id,
            "action": "start",
            "bucketId": body["bucketId"],
            "contentType": body.get("contentType"),
            "fileId": file_id,
            "fileInfo": body.get("fileInfo") or {},
            "fileName": body["fileName"],
            "uploadTimestamp": next(self._clock),
        }
        self.large_files[file_id] = {**large, "parts": {}}
        return httpx.Response(200, json=large)

    def _ep_b2_finish_large_file(self, body):
        large = self.large_files.get(body["fileId"])
        if large is None:
            return error_response(400, "bad_request", "No active upload for this file")
        parts = large["parts"]
        expected = [parts[n][0] for n in sorted(parts)]
        if sorted(parts) != list(range(1, len(parts) + 1)) or body["partSha1Array"] != expected:
            return error_response(400, "bad_request", "Part sha1 array does not match parts")
        del self.large_files[body["fileId"]]
        self.finished.append(body["partSha1Array"])
        version = self._store_version(
            large["bucketId"],
            large["fileName"],
            size=sum(size for _, size in parts.values()),
            sha1="none",
            content_type=large["contentType"],
            file_info=large["fileInfo"],
            file_id=large["fileId"],
        )
        return httpx.Response(200, json=version)

    def _ep_b2_cancel_large_file(self, body):
        large = self.large_files.pop(body["fileId"], None)
        if large is None:
            return error_response(400, "bad_request", "No active upload for this file")
        return httpx.Response(
            200,
            json={
                "accountId": self.account_id,
                "bucketId": large["bucketId"],
                "fileId": large["fileId"],
                "fileName": large["fileName"],
            },
        )

    def _ep_b2_list_unfinished_large_files(self, body):
        files = [
            {k: v for k, v in large.items() if k != "parts"}
            for large in self.large_files.values()
            if large["bucketId"] == body["bucketId"]
            and large["fileName"].startswith(body.get("namePrefix", ""))
        ]
        return httpx.Response(200, json={"files": files, "nextFileId": None})

    def _ep_b2_list_buckets(self, body):
        buckets = [
            bucket
            for bucket in self.buckets.values()
            if body.get("bucketId") in (None, bucket["bucketId"])
            and body.get("bucketName") in (None, bucket["bucketName"])
            and (not body.get("bucketTypes") or bucket["bucketType"] in body["bucketTypes"])
        ]
        return httpx.Response(200, json={"buckets": buckets})

    def _ep_b2_create_bucket(self, body):
        if any(b["bucketName"] == body["bucketName"] for b in self.buckets.values()):
            return error_response(400, "duplicate_bucket_name", "Bucket name is already in use")
        bucket = {
            "accountId": self.account_id,
            "bucketId": self._id("bucket"),
            "bucketName": body["bucketName"],
            "bucketType": body["bucketType"],
            "bucketInfo": body.get("bucketInfo", {}),
            "corsRules": body.get("corsRules", []),
            "lifecycleRules": body.get("lifecycleRules", []),
            "revision": 1,
        }
        self.buckets[bucket["bucketId"]] = bucket
        return httpx.Response(200, json=bucket)

    def _ep_b2_update_bucket(self, body):
        bucket = self.buckets.get(body["bucketId"])
        if bucket is None:
            return error_response(400, "bad_request", "Invalid bucketId")
        if "ifRevisionIs" in body and body["ifRevisionIs"] != bucket["revision"]:
            return error_response(409, "conflict", "Revision mismatch")
        for field, key in (
            ("bucketType", "bucketType"),
            ("bucketInfo", "bucketInfo"),
            ("corsRules", "corsRules"),
            ("lifecycleRules", "lifecycleRules"),
        ):
            if field in body:
                bucket[key] = body[field]
        bucket["revision"] += 1
        return httpx.Response(200, json=bucket)

    def _ep_b2_delete_bucket(self, body):
        bucket = self.buckets.pop(body["bucketId"], None)
        if bucket is None:
            return error_response(400, "bad_request", "Invalid bucketId")
        return httpx.Response(200, json=bucket)

    def _sorted_versions(self, bucket_id, prefix):
        versions = [
            v for v in self.versions
            if v["bucketId"] == bucket_id and v["fileName"].startswith(prefix or "")
        ]
        return sorted(versions, key=lambda v: (v["fileName"], -v["uploadTimestamp"]))

    def _ep_b2_list_file_names(self, body):
        latest = {}
        for version in self._sorted_versions(body["bucketId"], body.get("prefix")):
            latest.setdefault(version["fileName"], version)
        files = [
            v for name, v in sorted(latest.items())
            if v["action"] == "upload" and name >= body.get("startFileName", "")
        ]
        count = body.get("maxFileCount", 100)
        page, rest = files[:count], files[count:]
        return httpx.Response(
            200,
            json={"files": page, "nextFileName": rest[0]["fileName"] if rest else None},
        )

    def _ep_b2_list_file_versions(self, body):
        versions = self._sorted_versions(body["bucketId"], body.get("prefix"))
        start_name = body.get("startFileName")
        if start_name is not None:
            start_id = body.get("startFileId")
            index = next(
                (
                    i for i, v in enumerate(versions)
                    if v["fileName"] > start_name
                    or (
                        v["fileName"] == start_name
                        and (start_id is None or v["fileId"] == start_id)
                    )
                ),
                len(versions),
            )
            versions = versions[index:]
        count = body.get("maxFileCount", 100)
        page, rest = versions[:count], versions[count:]
        return httpx.Response(
            200,
            json={
                "files": page,
                "nextFileName": rest[0]["fileName"] if rest else None,
                "nextFileId": rest[0]["fileId"] if rest else None,
            },
        )

    def _ep_b2_get_file_info(self, body):
        for version in self.versions:
            if version["fileId"] == body["fileId"]:
                return httpx.Response(200, json=version)
        return error_response(404, "not_found", "File not present")

    def _ep_b2_hide_file(self, body):
        version = self._store_version(body["bucketId"], body["fileName"], action="hide")
        return httpx.Response(200, json=version)

    def _ep_b2_delete_file_version(self, body):
        for version in self.versions:
            if version["fileId"] == body["fileId"] and version["fileName"] == body["fileName"]:
                self.versions.remove(version)
                return httpx.Response(
                    200, json={"fileId": body["fileId"], "fileName": body["fileName"]}
                )
        return error_response(400, "file_not_present", "File not present")

    def _ep_b2_get_download_authorization(self, body):
        return httpx.Response(
            200,
            json={
                "authorizationToken": self._id("download"),
                "bucketId": body["bucketId"],
                "fileNamePrefix": body["fileNamePrefix"],
            },
        )


@pytest.fixture
def fake_b2() -> FakeB2:
    return FakeB2()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(FakeB2.key_id, FakeB2.key_secret, api_url=AUTH_URL)


@pytest.fixture
async def http_client(fake_b2):
    """An AsyncClient whose every request is answered by ``fake_b2``."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_b2.handler)) as client:
        yield client


@pytest.fixture
def config() -> B2ClientConfig:
    """Default config with instant retries so failure tests run fast."""
    return B2ClientConfig(
        upload=UploadConfig(retry=RetryConfig(attempts=3, base_delay=0, max_delay=0)),
    )


@pytest.fixture
async def api(credentials, http_client):
    """An authorized B2Api talking to the fake service."""
    async with B2Api(credentials, http_client=http_client) as api:
        await api.authorize()
        yield api


@pytest.fixture
async def b2(credentials, config, http_client):
    """An open B2Client talking to the fake service."""
    async with B2Client(credentials, config, http_client=http_client) as client:
        yield client


@pytest.fixture
async def bucket(b2):
    return await b2.create_bucket("test-bucket")
