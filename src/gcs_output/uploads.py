"""
Per-output upload lane.

Jobs queued on a lane run one at a time, in submission order, on a shared
bounded executor. Producers never wait on the network to enqueue; they only
wait in join(), which also surfaces the first failure.
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from loguru import logger

Job = Callable[[], None]


@dataclass
class _Entry:
    job: Job
    on_discard: Optional[Callable[[], None]]
    label: str


class UploadLane:
    """FIFO of upload jobs with at most one in flight.

    With ``executor=None`` jobs run inline on the submitting thread.
    After a failure, queued jobs are discarded and new submissions are refused.
    """

    def __init__(self, executor: Optional[Executor] = None, name: str = "lane"):
        self._executor = executor
        self._name = name
        self._jobs: Deque[_Entry] = deque()
        self._lock = threading.Lock()
        self._drain_future: Optional[Future] = None
        self._error: Optional[BaseException] = None

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._drain_future is not None or bool(self._jobs)

    def submit(self, job: Job, on_discard: Optional[Callable[[], None]] = None, label: str = "") -> bool:
        """Queue a job. Returns False (and discards it) if the lane already failed."""
        entry = _Entry(job, on_discard, label)
        with self._lock:
            if self._error is not None:
                refused = True
            else:
                refused = False
                self._jobs.append(entry)
                if self._executor is not None and self._drain_future is None:
                    self._drain_future = self._executor.submit(self._drain)

        if refused:
            logger.debug(f"[{self._name}] refusing '{label}' after earlier failure")
            self._discard(entry)
            return False

        if self._executor is None:
            self._drain()
        return True

    def join(self) -> None:
        """Wait until the lane is idle; re-raise the first failure, if any."""
        while True:
            with self._lock:
                fut = self._drain_future
            if fut is None:
                break
            fut.result()

        if self._error is not None:
            raise self._error

    def discard_pending(self) -> int:
        """Drop queued (not yet started) jobs. The running one, if any, completes."""
        with self._lock:
            pending = list(self._jobs)
            self._jobs.clear()
        for entry in pending:
            self._discard(entry)
        return len(pending)

    # --------------------------- internals

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._jobs:
                    self._drain_future = None
                    return
                entry = self._jobs.popleft()
            self._run(entry)

    def _run(self, entry: _Entry) -> None:
        try:
            entry.job()
        except Exception as exc:
            logger.error(f"[{self._name}] '{entry.label}' failed: {type(exc).__name__}: {exc}")
            with self._lock:
                if self._error is None:
                    self._error = exc
                pending = list(self._jobs)
                self._jobs.clear()
            for other in pending:
                self._discard(other)

    def _discard(self, entry: _Entry) -> None:
        if entry.on_discard is None:
            return
        try:
            entry.on_discard()
        except Exception as exc:
            logger.warning(f"[{self._name}] cleanup of '{entry.label}' failed: {exc}")
