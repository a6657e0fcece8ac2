"""
Pytest configuration and fixtures for gcs-file-output.

Provides a baseline output configuration shared by unit and integration tests.
"""

import pytest


@pytest.fixture
def staging_dir(tmp_path):
    """Directory that receives the staging files of a test."""
    d = tmp_path / "staging"
    d.mkdir()
    return d


@pytest.fixture
def base_config(staging_dir):
    """Minimal valid configuration; compute_engine needs no key material."""
    return {
        "bucket": "test-bucket",
        "path_prefix": "output/sample",
        "file_ext": ".csv",
        "auth_method": "compute_engine",
        "max_connection_retry": 3,
        "initial_retry_interval_millis": 1,
        "maximum_retry_interval_millis": 5,
        "temp_dir": str(staging_dir),
    }
