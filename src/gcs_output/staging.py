"""Local staging files: one open temporary buffer per logical output unit."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Optional, Union

from loguru import logger

from .errors import LocalResourceError
from .utils import md5_base64


class StagingFile:
    """Append-only temporary file; closed before any upload reads it."""

    def __init__(self, path: Path, stream: BinaryIO):
        self.path = path
        self._stream: Optional[BinaryIO] = stream
        self.size = 0

    @classmethod
    def create(cls, temp_dir: Optional[Union[str, Path]] = None, prefix: str = "gcs-output-") -> "StagingFile":
        try:
            fd, name = tempfile.mkstemp(prefix=prefix, suffix=".tmp", dir=temp_dir)
            stream = os.fdopen(fd, "wb")
        except OSError as exc:
            raise LocalResourceError(f"Failed to create staging file in {temp_dir or tempfile.gettempdir()}: {exc}") from exc
        logger.debug(f"Staging file created: {name}")
        return cls(Path(name), stream)

    @property
    def closed(self) -> bool:
        return self._stream is None

    def write(self, data: Union[bytes, bytearray, memoryview]) -> int:
        if self._stream is None:
            raise LocalResourceError(f"Staging file {self.path} is already closed")
        try:
            self._stream.write(data)
        except OSError as exc:
            raise LocalResourceError(f"Failed to write staging file {self.path}: {exc}") from exc
        n = len(data)
        self.size += n
        return n

    def close(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        try:
            stream.close()
        except OSError as exc:
            raise LocalResourceError(f"Failed to flush staging file {self.path}: {exc}") from exc

    def open_for_read(self) -> BinaryIO:
        """Re-open from the start; used once per upload attempt."""
        try:
            return open(self.path, "rb")
        except OSError as exc:
            raise LocalResourceError(f"Failed to open staging file {self.path}: {exc}") from exc

    def md5(self) -> str:
        try:
            return md5_base64(self.path)
        except OSError as exc:
            raise LocalResourceError(f"Failed to hash staging file {self.path}: {exc}") from exc

    def delete(self) -> None:
        """Best-effort removal; never raises."""
        try:
            self.close()
        except LocalResourceError as exc:
            logger.warning(f"Failed to close staging file {self.path}: {exc}")
        try:
            self.path.unlink()
            logger.debug(f"Delete generated file: {self.path}")
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(f"Failed to delete generated file: {self.path} due to {exc}")
