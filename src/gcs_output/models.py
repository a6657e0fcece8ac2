"""
Pydantic data models for the GCS file output.

PluginTask is the immutable per-job configuration shared by every partition;
RemoteObject and CommitReport describe what a partition left in the bucket.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ByteSize, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .retry import RetryPolicy


class AuthMethod(str, Enum):
    """Supported authentication methods."""

    PRIVATE_KEY = "private_key"
    JSON_KEY = "json_key"
    COMPUTE_ENGINE = "compute_engine"


class PluginTask(BaseModel):
    """Per-job output configuration. Frozen once built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    bucket: str
    path_prefix: str
    file_ext: str
    sequence_format: str = ".%03d.%02d"
    content_type: str = "application/octet-stream"

    auth_method: AuthMethod = AuthMethod.PRIVATE_KEY
    service_account_email: Optional[str] = None
    p12_keyfile_path: Optional[str] = None  # kept for backward compatibility
    p12_keyfile: Optional[Path] = None
    json_keyfile: Optional[Path] = None
    store_pass: str = "notasecret"
    key_pass: str = "notasecret"
    application_name: str = "gcs-file-output"
    project: Optional[str] = None

    max_connection_retry: int = Field(10, ge=0)  # 10 times retry to connect GCS server if failed.
    max_upload_retry: Optional[int] = Field(None, ge=0)
    initial_retry_interval_millis: int = Field(500, ge=0)
    maximum_retry_interval_millis: int = Field(30_000, ge=0)
    connect_timeout_millis: int = Field(30_000, gt=0)
    read_timeout_millis: int = Field(30_000, gt=0)

    delete_in_advance: bool = False
    flush_threshold: Optional[ByteSize] = None
    fail_on_hash_mismatch: bool = False
    temp_dir: Optional[Path] = None

    @field_validator("bucket")
    @classmethod
    def _bucket_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("bucket must not be empty")
        return v

    @field_validator("sequence_format")
    @classmethod
    def _two_integer_placeholders(cls, v: str) -> str:
        try:
            v % (0, 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                f"sequence_format must take two integers (task index, file index): {exc}"
            ) from exc
        return v

    @field_validator("flush_threshold")
    @classmethod
    def _positive_threshold(cls, v: Optional[ByteSize]) -> Optional[ByteSize]:
        if v is not None and v <= 0:
            raise ValueError("flush_threshold must be positive")
        return v

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PluginTask":
        """Build a task from a raw mapping; validation failures become ConfigurationError."""
        try:
            return cls.model_validate(dict(config))
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    @property
    def timeout(self) -> tuple[float, float]:
        """(connect, read) timeout in seconds, as accepted by google-cloud-storage calls."""
        return (self.connect_timeout_millis / 1000.0, self.read_timeout_millis / 1000.0)

    def connection_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retry_limit=self.max_connection_retry,
            initial_wait_ms=self.initial_retry_interval_millis,
            max_wait_ms=self.maximum_retry_interval_millis,
        )

    def upload_retry_policy(self) -> RetryPolicy:
        limit = self.max_upload_retry
        return RetryPolicy(
            retry_limit=self.max_connection_retry if limit is None else limit,
            initial_wait_ms=self.initial_retry_interval_millis,
            max_wait_ms=self.maximum_retry_interval_millis,
        )


class RemoteObject(BaseModel):
    """An object the store acknowledged."""

    model_config = ConfigDict(frozen=True)

    bucket: str
    name: str
    size: Optional[int] = None
    md5_hash: Optional[str] = None
    crc32c: Optional[str] = None
    generation: Optional[int] = None

    @property
    def identifier(self) -> str:
        return f"gs://{self.bucket}/{self.name}"

    @classmethod
    def from_blob(cls, blob: Any) -> "RemoteObject":
        bucket = getattr(blob, "bucket", None)
        return cls(
            bucket=getattr(bucket, "name", bucket),
            name=blob.name,
            size=blob.size,
            md5_hash=blob.md5_hash,
            crc32c=blob.crc32c,
            generation=blob.generation,
        )


class CommitReport(BaseModel):
    """Final per-task report: the ordered list of uploaded objects."""

    task_index: int
    files: List[str] = Field(default_factory=list)
    objects: List[RemoteObject] = Field(default_factory=list)

    @classmethod
    def of(cls, task_index: int, objects: List[RemoteObject]) -> "CommitReport":
        return cls(
            task_index=task_index,
            files=[o.identifier for o in objects],
            objects=list(objects),
        )
