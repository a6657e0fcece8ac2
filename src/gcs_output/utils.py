"""
Utility functions for the GCS file output.

Includes remote object naming and the hash encodings GCS reports.
"""

from __future__ import annotations

import base64
import hashlib
import re
from pathlib import Path
from typing import Union

import google_crc32c

# GCS object names may not start with "./" or "/" variations.
# See https://cloud.google.com/storage/docs/naming#objectnames
_LEADING_DOTS_AND_SLASHES = re.compile(r"^[./]+")

COMPOSE_FAN_IN = 32
MAX_INTERMEDIATE_CHUNKS = COMPOSE_FAN_IN - 1


def canonical_name(
    path_prefix: str, sequence_format: str, task_index: int, file_index: int, suffix: str
) -> str:
    """Build the remote object name for one output file.

    Only the leading run of "." and "/" is stripped; embedded segments stay:

        >>> canonical_name("......///sample", ".%03d.%02d", 0, 1, ".csv")
        'sample.000.01.csv'
        >>> canonical_name("path/to/../sample", ".%03d.%02d", 0, 1, ".csv")
        'path/to/../sample.000.01.csv'
    """
    path = path_prefix + (sequence_format % (task_index, file_index)) + suffix
    return _LEADING_DOTS_AND_SLASHES.sub("", path, count=1)


def chunk_name(final_name: str, chunk_index: int) -> str:
    return f"{final_name}.chunk{chunk_index}"


def b64(digest: bytes) -> str:
    """GCS reports md5Hash / crc32c base64-encoded."""
    return base64.b64encode(digest).decode("ascii")


def md5_base64(path: Union[str, Path], block_size: int = 1024 * 1024) -> str:
    """MD5 of a local file, encoded like GCS does.

    Same value as `gsutil hash -m FILE` or
    `openssl dgst -md5 -binary FILE | openssl enc -base64`.
    """
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(block_size), b""):
            md5.update(block)
    return b64(md5.digest())


class RunningCrc32c:
    """Incremental CRC32C over every byte of a logical output."""

    def __init__(self) -> None:
        self._checksum = google_crc32c.Checksum()

    def update(self, data: Union[bytes, bytearray, memoryview]) -> None:
        self._checksum.update(bytes(data))

    def base64(self) -> str:
        return b64(self._checksum.digest())
