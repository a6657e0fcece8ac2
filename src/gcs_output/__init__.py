"""
GCS File Output

Per-partition, fault-tolerant writer of files into a Google Cloud Storage bucket.

Usage:
    from gcs_output import GcsOutputPlugin

    config = {"bucket": "my-bucket", "path_prefix": "logs/out", "file_ext": ".csv",
              "auth_method": "json_key", "json_keyfile": "/path/to/key.json"}

    with GcsOutputPlugin() as plugin:
        reports = plugin.run_partitions(config, [[[b"a,b\n", b"c,d\n"]]])
        # reports[0].files == ["gs://my-bucket/logs/out.000.00.csv"]
"""

from .auth import ComputeEngineCredential, Credential, JsonKeyCredential, PrivateKeyCredential, resolve
from .client import ClientFactory, delete_existing
from .errors import (
    CancellationError,
    ChecksumMismatch,
    ConfigurationError,
    GcsOutputError,
    LocalResourceError,
    NonRetryable,
    RetryExhausted,
    TransientIOError,
)
from .models import AuthMethod, CommitReport, PluginTask, RemoteObject
from .output import GcsTransactionalFileOutput, OutputState
from .plugin import GcsOutputPlugin
from .retry import RetryPolicy, RetryResult, attempt_with_retry, run_with_retry

__version__ = "0.1.0"
__all__ = [
    "GcsOutputPlugin",
    "GcsTransactionalFileOutput",
    "OutputState",
    "ClientFactory",
    "delete_existing",
    "PluginTask",
    "AuthMethod",
    "RemoteObject",
    "CommitReport",
    "Credential",
    "PrivateKeyCredential",
    "JsonKeyCredential",
    "ComputeEngineCredential",
    "resolve",
    "RetryPolicy",
    "RetryResult",
    "attempt_with_retry",
    "run_with_retry",
    "GcsOutputError",
    "ConfigurationError",
    "TransientIOError",
    "ChecksumMismatch",
    "RetryExhausted",
    "NonRetryable",
    "LocalResourceError",
    "CancellationError",
]
