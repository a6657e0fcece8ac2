"""
Plugin controller: transaction setup and per-partition output factory.

Usage:
    with GcsOutputPlugin() as plugin:
        reports = plugin.run_partitions(config, [[[b"a,b\\n"], [b"c,d\\n"]]])

Or, driven by an external writer:
    with GcsOutputPlugin() as plugin:
        def control(task):
            out = plugin.open(task, 0)
            ...
            return [out.commit()]
        plugin.transaction(config, 1, control)
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from google.cloud import storage
from loguru import logger

from .auth import resolve_task_credential
from .client import ClientFactory, delete_existing
from .models import CommitReport, PluginTask
from .output import GcsTransactionalFileOutput
from .settings import OutputRuntimeSettings, get_settings

Control = Callable[[PluginTask], List[CommitReport]]
Partition = Iterable[Iterable[bytes]]


class GcsOutputPlugin:
    """Owns the upload pool, the cancellation event and the shared client."""

    def __init__(self, settings: Optional[OutputRuntimeSettings] = None):
        self._settings = settings or get_settings()
        self._cancel_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._factory: Optional[ClientFactory] = None
        self._client: Optional[storage.Client] = None
        self._lock = threading.Lock()

    def __enter__(self) -> "GcsOutputPlugin":
        self._executor = ThreadPoolExecutor(
            max_workers=self._settings.upload_workers,
            thread_name_prefix="gcs-upload",
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Stop retry waits in every output of this plugin."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    # --------------------------- controller side

    def configure(self, config: Mapping[str, Any]) -> PluginTask:
        task = PluginTask.from_config(config)
        if task.temp_dir is None and self._settings.temp_dir is not None:
            task = task.model_copy(update={"temp_dir": self._settings.temp_dir})
        return task

    def check(self, config: Mapping[str, Any]) -> PluginTask:
        """Validate config, credentials and bucket access. Never writes or deletes."""
        task, _client = self._connect(config)
        return task

    def transaction(self, config: Mapping[str, Any], task_count: int, control: Control) -> List[CommitReport]:
        task, client = self._connect(config)
        if task.delete_in_advance:
            delete_existing(client, task, self._cancel_event)

        logger.info(f"Starting transaction for gs://{task.bucket}/{task.path_prefix} with {task_count} task(s)")
        reports = control(task)
        self.cleanup(task, task_count, reports)
        return reports

    def resume(self, task: PluginTask, task_count: int, control: Control) -> List[CommitReport]:
        # nothing is kept between attempts; tasks start over
        return control(task)

    def cleanup(self, task: PluginTask, task_count: int, reports: List[CommitReport]) -> None:
        pass

    def open(self, task: PluginTask, task_index: int) -> GcsTransactionalFileOutput:
        return GcsTransactionalFileOutput(
            task,
            self._client_for(task),
            task_index,
            executor=self._executor,
            cancel_event=self._cancel_event,
        )

    def _connect(self, config: Mapping[str, Any]) -> Tuple[PluginTask, storage.Client]:
        task = self.configure(config)
        credential = resolve_task_credential(task)
        with self._lock:
            self._factory = ClientFactory(task, credential, self._cancel_event)
            self._client = None
        return task, self._client_for(task)

    def _client_for(self, task: PluginTask) -> storage.Client:
        with self._lock:
            if self._factory is None:
                self._factory = ClientFactory(task, resolve_task_credential(task), self._cancel_event)
            if self._client is None:
                self._client = self._factory.build()
            return self._client

    # --------------------------- local driver

    def run_partitions(self, config: Mapping[str, Any], partitions: Iterable[Partition]) -> List[CommitReport]:
        """Write each partition (files of byte buffers); at most ``partition_workers`` run at once."""
        partitions = list(partitions)

        def control(task: PluginTask) -> List[CommitReport]:
            if not partitions:
                return []
            workers = min(len(partitions), self._settings.partition_workers)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gcs-partition") as pool:
                futures = [
                    pool.submit(self._write_partition, task, index, files)
                    for index, files in enumerate(partitions)
                ]
                return [f.result() for f in futures]

        return self.transaction(config, len(partitions), control)

    def _write_partition(self, task: PluginTask, task_index: int, files: Partition) -> CommitReport:
        output = self.open(task, task_index)
        try:
            for buffers in files:
                output.next_file()
                for buf in buffers:
                    output.add(buf)
            output.finish()
            return output.commit()
        except BaseException:
            output.abort()
            raise
        finally:
            output.close()
