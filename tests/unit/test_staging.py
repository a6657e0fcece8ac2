"""
Unit tests for staging files, runtime settings and metrics.
"""

import base64
import hashlib

import pytest
from google.api_core import exceptions as api_exceptions

from gcs_output import retry as retry_module
from gcs_output.errors import LocalResourceError
from gcs_output.metrics import metrics_registry
from gcs_output.output import GcsTransactionalFileOutput
from gcs_output.settings import OutputRuntimeSettings, get_settings
from gcs_output.staging import StagingFile


class TestStagingFile:
    def test_write_tracks_size_and_md5(self, staging_dir):
        staging = StagingFile.create(staging_dir)
        staging.write(b"hello ")
        staging.write(memoryview(b"world"))
        staging.close()

        assert staging.closed
        assert staging.size == 11
        assert staging.md5() == base64.b64encode(hashlib.md5(b"hello world").digest()).decode()
        with staging.open_for_read() as f:
            assert f.read() == b"hello world"

    def test_write_after_close(self, staging_dir):
        staging = StagingFile.create(staging_dir)
        staging.close()
        with pytest.raises(LocalResourceError):
            staging.write(b"x")

    def test_delete_is_idempotent(self, staging_dir):
        staging = StagingFile.create(staging_dir)
        staging.write(b"x")
        staging.delete()
        staging.delete()
        assert list(staging_dir.iterdir()) == []

    def test_missing_temp_dir(self, tmp_path):
        with pytest.raises(LocalResourceError, match="Failed to create staging file"):
            StagingFile.create(tmp_path / "does-not-exist")


class TestSettings:
    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GCS_OUTPUT_UPLOAD_WORKERS", "8")
        monkeypatch.setenv("GCS_OUTPUT_TEMP_DIR", str(tmp_path))
        settings = OutputRuntimeSettings()
        assert settings.upload_workers == 8
        assert settings.temp_dir == tmp_path
        assert settings.log_level == "INFO"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


def _counter(metric, **labels):
    samples = list(metric.collect())[0].samples
    return sum(s.value for s in samples if s.name.endswith("_total") and s.labels == labels)


def test_upload_metrics(monkeypatch, make_task, fake_client):
    monkeypatch.setattr(retry_module, "_sleep", lambda ms, event: None)
    before = (
        _counter(metrics_registry.uploads_total, kind="insert", status="success"),
        _counter(metrics_registry.uploaded_bytes_total, kind="insert"),
        _counter(metrics_registry.retries_total, operation="GCS put request"),
    )

    fake_client.fail("upload", api_exceptions.ServiceUnavailable("down"))
    out = GcsTransactionalFileOutput(make_task(), fake_client, 0)
    out.next_file()
    out.add(b"12345")
    out.finish()

    assert _counter(metrics_registry.uploads_total, kind="insert", status="success") == before[0] + 1
    assert _counter(metrics_registry.uploaded_bytes_total, kind="insert") == before[1] + 5
    assert _counter(metrics_registry.retries_total, operation="GCS put request") == before[2] + 1

    samples = list(metrics_registry.upload_latency.collect())[0].samples
    assert any(s.name.endswith("_count") and s.labels == {"kind": "insert"} and s.value >= 1 for s in samples)
