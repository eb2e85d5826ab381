"""Tests for b2client configuration loading."""

import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from b2client.config import (
    DEFAULT_AUTH_URL,
    B2ClientConfig,
    UploadConfig,
    load_config,
    load_credentials,
)
from b2client.models import Credentials


def _write_yaml(data) -> Path:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump(data, f)
        f.flush()
        return Path(f.name)


class TestLoadConfig:
    """Tests for load_config()."""

    def test_load_example_config(self):
        """Loading the example config file populates all fields."""
        config = load_config(Path(__file__).resolve().parent.parent / "b2client.example.yaml")
        assert config.credentials.application_key_id == "000a1b2c3d4e5f60000000001"
        assert config.credentials.api_path == "https://api.backblazeb2.com"
        assert config.http.connect_timeout == 30
        assert config.http.read_timeout == 120
        assert config.upload.concurrency == 8
        assert config.upload.retry.attempts == 5
        assert config.listing.batch_size == 1000
        assert config.logging.configure is True
        assert config.logging.format == "json"
        assert config.metrics.enabled is False

    def test_load_minimal_config(self):
        """Loading an empty YAML uses defaults for all fields."""
        config = load_config(_write_yaml({}))
        assert config == B2ClientConfig()
        assert config.credentials.api_path == DEFAULT_AUTH_URL
        assert config.upload.concurrency == 4
        assert config.upload.part_size is None
        assert config.logging.configure is False
        assert config.http.read_timeout == 60.0

    def test_single_timeout_seeds_all(self):
        config = load_config(_write_yaml({"http": {"timeout": 5}}))
        assert config.http.connect_timeout == 5
        assert config.http.read_timeout == 5
        assert config.http.write_timeout == 5
        assert config.http.pool_timeout == 5

    def test_nested_retry(self):
        config = load_config(
            _write_yaml({"upload": {"part_size": 10_000_000, "retry": {"attempts": 2}}})
        )
        assert config.upload.part_size == 10_000_000
        assert config.upload.retry.attempts == 2
        assert config.upload.retry.base_delay == 1.0

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(Path("/nonexistent/b2client.yaml"))

    def test_concurrency_is_bounded(self):
        with pytest.raises(ValidationError):
            UploadConfig(concurrency=0)
        with pytest.raises(ValidationError):
            UploadConfig(concurrency=129)


class TestLoadCredentials:
    """Tests for load_credentials() and CredentialsConfig."""

    def test_plain_mapping(self):
        creds = load_credentials({"application_key_id": "id", "application_key": "secret"})
        assert creds == Credentials("id", "secret")

    def test_whole_document(self):
        creds = load_credentials(
            {
                "credentials": {
                    "application_key_id": "id",
                    "application_key": "secret",
                    "api_path": "https://example.test",
                }
            }
        )
        assert creds.key_id == "id"
        assert creds.api_url == "https://example.test"

    def test_missing_key_raises(self):
        with pytest.raises(KeyError):
            load_credentials({"application_key_id": "id"})

    def test_secret_not_in_repr(self):
        assert "secret" not in repr(Credentials("id", "secret"))

    def test_config_section_to_credentials(self):
        section = {"application_key_id": "a", "application_key": "b"}
        config = load_config(_write_yaml({"credentials": section}))
        creds = config.credentials.to_credentials()
        assert creds.key_id == "a"
        assert creds.key_secret == "b"
        assert creds.api_url == DEFAULT_AUTH_URL
