"""
Storage client construction.

Client construction runs under the retry executor and ends with one cheap
read-only call (list the first object of the bucket) so that bad credentials
or a missing bucket fail the job before any data flows.
"""

from __future__ import annotations

import threading
from typing import Optional

from google.api_core.client_info import ClientInfo
from google.auth import exceptions as auth_exceptions
from google.cloud import storage
from loguru import logger

from .auth import Credential
from .errors import ConfigurationError, NonRetryable, is_client_error
from .models import PluginTask
from .retry import log_retry, run_with_retry


class ClientFactory:
    """Builds validated google-cloud-storage clients for a task."""

    def __init__(
        self,
        task: PluginTask,
        credential: Credential,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._task = task
        self._credential = credential
        self._cancel_event = cancel_event
        self._token_source = None
        self._lock = threading.Lock()

    def _credentials(self):
        # minted once and shared by every partition; it refreshes its own token
        with self._lock:
            if self._token_source is None:
                self._token_source = self._credential.token_source()
            return self._token_source

    def _new_client(self) -> storage.Client:
        return storage.Client(
            project=self._task.project,
            credentials=self._credentials(),
            client_info=ClientInfo(user_agent=self._task.application_name),
        )

    def build(self) -> storage.Client:
        """Return a client whose credentials and bucket were checked by the store."""
        task = self._task

        def _connect() -> storage.Client:
            client = self._new_client()
            # For ConfigurationError when authentication fails or the bucket is missing.
            next(iter(client.list_blobs(task.bucket, max_results=1, timeout=task.timeout, retry=None)), None)
            return client

        try:
            client = run_with_retry(
                _connect,
                task.connection_retry_policy(),
                on_retry=log_retry("GCS GET request"),
                cancel_event=self._cancel_event,
                label="GCS GET request",
            )
        except NonRetryable as exc:
            if isinstance(exc.error, ConfigurationError):
                raise exc.error
            if isinstance(exc.error, auth_exceptions.RefreshError):
                raise ConfigurationError(
                    f"Could not authenticate as {self._credential.method.value}: {exc.error}"
                ) from exc.error
            if is_client_error(exc.error):
                raise ConfigurationError(
                    f"Cannot access bucket '{task.bucket}': {type(exc.error).__name__}: {exc.error}"
                ) from exc.error
            raise

        logger.info(f"Connected to gs://{task.bucket} as {self._credential.method.value}")
        return client


def delete_existing(
    client: storage.Client,
    task: PluginTask,
    cancel_event: Optional[threading.Event] = None,
) -> int:
    """Delete objects directly under ``path_prefix`` before the run.

    Uses a paginated prefix + delimiter listing, so objects in deeper
    "directories" are left alone. Returns the number of deleted objects.
    """
    prefix = task.path_prefix.lstrip("./")
    policy = task.connection_retry_policy()

    def _list() -> list[str]:
        blobs = client.list_blobs(task.bucket, prefix=prefix, delimiter="/", timeout=task.timeout, retry=None)
        return [blob.name for blob in blobs]

    names = run_with_retry(_list, policy, cancel_event=cancel_event, label="GCS list request")
    bucket = client.bucket(task.bucket)

    for name in names:
        run_with_retry(
            lambda name=name: bucket.delete_blob(name, timeout=task.timeout, retry=None),
            policy,
            cancel_event=cancel_event,
            label="GCS delete request",
        )
        logger.info(f"Deleted existing object gs://{task.bucket}/{name}")

    logger.info(f"Deleted {len(names)} existing object(s) under gs://{task.bucket}/{prefix}")
    return len(names)
