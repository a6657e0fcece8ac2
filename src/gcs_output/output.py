"""
Transactional file output: one instance per partition.

Lifecycle driven by the upstream writer:

    out.next_file()            # open staging for prefix.000.00.csv
    out.add(buf); out.add(buf)
    out.next_file()            # queue upload of .00, open staging for .01
    out.add(buf)
    out.finish()               # queue upload of .01, wait for every upload
    report = out.commit()      # ["gs://bucket/prefix.000.00.csv", "gs://bucket/prefix.000.01.csv"]

Bytes are appended to a local staging file on the caller's thread. Uploads run
on the upload lane (at most one in flight). With ``flush_threshold`` set, a
large logical file is uploaded as ``<name>.chunk<N>`` objects that are composed
into ``<name>`` by finish() / the next next_file().
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Executor
from enum import Enum
from typing import Any, List, Optional, Sequence, Union

from loguru import logger

from .errors import ChecksumMismatch
from .metrics import HASH_MISMATCH_TOTAL, UPLOAD_LATENCY, UPLOADED_BYTES_TOTAL, UPLOADS_TOTAL
from .models import CommitReport, PluginTask, RemoteObject
from .retry import log_retry, run_with_retry
from .staging import StagingFile
from .uploads import UploadLane
from .utils import MAX_INTERMEDIATE_CHUNKS, RunningCrc32c, canonical_name, chunk_name

Buffer = Union[bytes, bytearray, memoryview]


class OutputState(str, Enum):
    IDLE = "idle"
    STAGING = "staging"
    UPLOADING = "uploading"
    COMPOSING = "composing"
    FINISHED = "finished"
    COMMITTED = "committed"
    ABORTED = "aborted"


class _LogicalFile:
    """Bookkeeping for the logical output currently being staged."""

    def __init__(self, name: str, staging: StagingFile):
        self.name = name
        self.staging = staging
        self.chunks: List[str] = []
        self.crc = RunningCrc32c()
        self.total_bytes = 0

    @property
    def composed(self) -> bool:
        return bool(self.chunks)


class GcsTransactionalFileOutput:
    """Per-partition staging / upload / compose state machine."""

    def __init__(
        self,
        task: PluginTask,
        client: Any,
        task_index: int,
        *,
        executor: Optional[Executor] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._task = task
        self._task_index = task_index
        self._bucket = client.bucket(task.bucket)
        self._policy = task.upload_retry_policy()
        self._cancel_event = cancel_event
        self._lane = UploadLane(executor, name=f"task-{task_index}")

        self._objects: List[RemoteObject] = []  # appended by lane jobs, one at a time
        self._file_index = 0
        self._current: Optional[_LogicalFile] = None
        self._terminal: Optional[OutputState] = None
        self._composing = False
        self._add_calls = 0

    # --------------------------- public API

    @property
    def task_index(self) -> int:
        return self._task_index

    @property
    def state(self) -> OutputState:
        if self._terminal is not None:
            return self._terminal
        if self._composing:
            return OutputState.COMPOSING
        if self._lane.busy:
            return OutputState.UPLOADING
        if self._current is not None:
            return OutputState.STAGING
        return OutputState.IDLE

    @property
    def remote_objects(self) -> List[RemoteObject]:
        return list(self._objects)

    def next_file(self) -> None:
        """Finalize the previous file and start staging the next one."""
        self._ensure_writable()
        self._lane.join()
        self._finalize_current()

        name = canonical_name(
            self._task.path_prefix,
            self._task.sequence_format,
            self._task_index,
            self._file_index,
            self._task.file_ext,
        )
        self._current = _LogicalFile(name, StagingFile.create(self._task.temp_dir))
        self._file_index += 1
        self._add_calls = 0
        logger.info(f"Task {self._task_index}: staging '{name}'")

    def add(self, data: Buffer) -> None:
        """Append ``data`` to the current file.

        The buffer belongs to the output from here on; callers must not reuse it.
        Never waits on the network.
        """
        cur = self._current
        if cur is None:
            raise RuntimeError("next_file() must be called before add()")
        if self._lane.error is not None:
            raise self._lane.error

        logger.debug(f"#add called {self._add_calls} times for taskIndex {self._task_index}")
        n = cur.staging.write(data)
        cur.crc.update(data)
        cur.total_bytes += n
        self._add_calls += 1

        threshold = self._task.flush_threshold
        if threshold and cur.staging.size > threshold and len(cur.chunks) < MAX_INTERMEDIATE_CHUNKS:
            self._rotate_chunk(cur)

    def finish(self) -> None:
        """Upload what is staged, compose chunked files, and wait for all uploads."""
        self._ensure_writable()
        self._finalize_current()
        self._lane.join()
        self._terminal = OutputState.FINISHED
        total = sum(o.size or 0 for o in self._objects)
        logger.info(f"Task {self._task_index}: uploaded {len(self._objects)} object(s), {total} bytes in total")

    def close(self) -> None:
        """Release local resources. Remote objects are left as they are."""
        if self._current is not None:
            self._current.staging.delete()
            self._current = None

    def abort(self) -> None:
        """Stop issuing uploads and drop local staging files.

        An upload already on the wire is allowed to complete. Objects already
        uploaded or composed stay in the bucket.
        """
        if self._terminal in (OutputState.COMMITTED, OutputState.ABORTED):
            return
        self._terminal = OutputState.ABORTED
        dropped = self._lane.discard_pending()
        self.close()
        logger.warning(
            f"Task {self._task_index}: aborted; dropped {dropped} queued upload(s), "
            f"{len(self._objects)} uploaded object(s) left in gs://{self._task.bucket}"
        )

    def commit(self) -> CommitReport:
        if self._terminal is not OutputState.FINISHED:
            raise RuntimeError(f"commit() must be called after finish() (state: {self.state.value})")
        self._terminal = OutputState.COMMITTED
        return CommitReport.of(self._task_index, self._objects)

    # --------------------------- staging

    def _ensure_writable(self) -> None:
        if self._terminal is not None:
            raise RuntimeError(f"Output for task {self._task_index} is {self._terminal.value}")

    def _rotate_chunk(self, cur: _LogicalFile) -> None:
        staging = cur.staging
        staging.close()
        name = chunk_name(cur.name, len(cur.chunks))
        cur.chunks.append(name)
        self._submit(lambda: self._upload(staging, name, "chunk"), staging, name)
        cur.staging = StagingFile.create(self._task.temp_dir)
        logger.info(f"Task {self._task_index}: '{cur.name}' passed flush threshold, chunk {name} queued")

    def _finalize_current(self) -> None:
        cur = self._current
        if cur is None:
            return
        self._current = None
        staging = cur.staging
        staging.close()
        logger.info(
            f"Task {self._task_index}: '{cur.name}' closed at {cur.total_bytes} bytes"
            + (f" ({len(cur.chunks)} chunk(s) already queued)" if cur.composed else "")
        )

        if not cur.composed:
            self._submit(lambda: self._record(self._upload(staging, cur.name, "insert")), staging, cur.name)
            return

        expected_crc = cur.crc.base64()
        if staging.size == 0:
            staging.delete()
            chunks = tuple(cur.chunks)
            self._submit(lambda: self._record(self._compose(cur.name, chunks, expected_crc)), None, cur.name)
            return

        tail = chunk_name(cur.name, len(cur.chunks))
        cur.chunks.append(tail)
        chunks = tuple(cur.chunks)

        def _tail_and_compose() -> None:
            self._upload(staging, tail, "chunk")
            self._record(self._compose(cur.name, chunks, expected_crc))

        self._submit(_tail_and_compose, staging, cur.name)

    def _submit(self, job, staging: Optional[StagingFile], label: str) -> None:
        def _run() -> None:
            try:
                job()
            finally:
                if staging is not None:
                    staging.delete()

        on_discard = staging.delete if staging is not None else None
        self._lane.submit(_run, on_discard=on_discard, label=label)

    def _record(self, obj: RemoteObject) -> None:
        self._objects.append(obj)

    # --------------------------- remote calls (run on the upload lane)

    def _upload(self, staging: StagingFile, name: str, kind: str) -> RemoteObject:
        task = self._task
        local_md5 = staging.md5()

        def _attempt():
            blob = self._bucket.blob(name)
            with staging.open_for_read() as f:
                blob.upload_from_file(
                    f,
                    size=staging.size,
                    content_type=task.content_type,
                    timeout=task.timeout,
                    retry=None,
                    checksum=None,
                )
            self._verify(name, "MD5", local_md5, blob.md5_hash, kind)
            return blob

        blob = self._timed(kind, lambda: self._retry(_attempt, "GCS put request"))
        UPLOADED_BYTES_TOTAL.labels(kind=kind).inc(staging.size)
        obj = RemoteObject.from_blob(blob)
        logger.info(f"Uploaded '{obj.bucket}/{obj.name}' to {obj.size}bytes")
        return obj

    def _compose(self, name: str, chunks: Sequence[str], expected_crc: str) -> RemoteObject:
        task = self._task

        def _attempt():
            destination = self._bucket.blob(name)
            destination.content_type = task.content_type
            sources = [self._bucket.blob(c) for c in chunks]
            destination.compose(sources, timeout=task.timeout, retry=None)
            self._verify(name, "CRC32C", expected_crc, destination.crc32c, "compose")
            return destination

        self._composing = True
        try:
            blob = self._timed("compose", lambda: self._retry(_attempt, "GCS compose request"))
        finally:
            self._composing = False

        obj = RemoteObject.from_blob(blob)
        logger.info(f"Composed {len(chunks)} chunk(s) into '{obj.bucket}/{obj.name}' ({obj.size}bytes)")
        self._delete_chunks(chunks)
        return obj

    def _delete_chunks(self, chunks: Sequence[str]) -> None:
        for c in chunks:
            try:
                self._bucket.delete_blob(c, timeout=self._task.timeout, retry=None)
            except Exception as exc:
                # the composed object is already in place; a leftover chunk is only garbage
                logger.warning(f"Failed to delete chunk object: {c}, error message: {exc}")

    def _retry(self, attempt, label: str):
        return run_with_retry(
            attempt,
            self._policy,
            on_retry=log_retry(label),
            cancel_event=self._cancel_event,
            label=label,
        )

    def _timed(self, kind: str, call):
        started = time.monotonic()
        try:
            result = call()
        except Exception:
            UPLOADS_TOTAL.labels(kind=kind, status="failure").inc()
            raise
        finally:
            UPLOAD_LATENCY.labels(kind=kind).observe(time.monotonic() - started)
        UPLOADS_TOTAL.labels(kind=kind, status="success").inc()
        return result

    def _verify(self, name: str, algorithm: str, local: str, remote: Optional[str], kind: str) -> None:
        logger.info(f"Local Hash({algorithm}): {local} / Remote Hash({algorithm}): {remote}")
        if remote == local:
            return
        HASH_MISMATCH_TOTAL.labels(kind=kind).inc()
        if self._task.fail_on_hash_mismatch:
            raise ChecksumMismatch(name, local, remote, algorithm)
        logger.warning(f"{algorithm} mismatch for '{name}': local={local} remote={remote}")
