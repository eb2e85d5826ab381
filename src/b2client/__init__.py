"""Asynchronous client for the Backblaze B2 native API."""

from b2client.api import VERSION, B2Api
from b2client.client import B2Client
from b2client.config import B2ClientConfig, load_config, load_credentials
from b2client.errors import (
    ApiError,
    B2Error,
    FinalizeError,
    LargeFileUploadError,
    PartialDestroyFailure,
)
from b2client.leases import LeasePool
from b2client.listing import ALL, paginate
from b2client.models import Bucket, Credentials, FileVersion, StoredFile
from b2client.upload import Upload, UploadMode

__version__ = VERSION

__all__ = [
    "ALL",
    "ApiError",
    "B2Api",
    "B2Client",
    "B2ClientConfig",
    "B2Error",
    "Bucket",
    "Credentials",
    "FileVersion",
    "FinalizeError",
    "LargeFileUploadError",
    "LeasePool",
    "PartialDestroyFailure",
    "StoredFile",
    "Upload",
    "UploadMode",
    "load_config",
    "load_credentials",
    "paginate",
]
