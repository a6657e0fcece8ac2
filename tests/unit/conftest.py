"""
In-memory stand-in for the google-cloud-storage surface used by gcs_output.

Failures are injected per operation with google.api_core exception classes:

    fake_client.fail("upload", ServiceUnavailable("try later"))
"""

import base64
import hashlib
import itertools
from collections import defaultdict, deque

import google_crc32c
import pytest
from google.api_core import exceptions as api_exceptions

from gcs_output.models import PluginTask


# stands in for google.cloud.storage.retry.DEFAULT_RETRY: callers must opt out
LIBRARY_DEFAULT = object()


def _no_library_retry(retry) -> None:
    assert retry is None, "library-level retry must be disabled (retry=None)"


def _b64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str):
        self.bucket = bucket
        self.name = name
        self.content_type = None
        self.size = None
        self.md5_hash = None
        self.crc32c = None
        self.generation = None

    def _store(self, data: bytes) -> None:
        client = self.bucket.client
        self.bucket.objects[self.name] = data
        self.size = len(data)
        self.md5_hash = "bogus-md5==" if client.tamper_hashes else _b64(hashlib.md5(data).digest())
        crc = google_crc32c.Checksum()
        crc.update(data)
        self.crc32c = "bogus-crc==" if client.tamper_hashes else _b64(crc.digest())
        self.generation = next(client.generations)

    def upload_from_file(self, file_obj, size=None, content_type=None, timeout=None, retry=LIBRARY_DEFAULT, checksum=None):
        _no_library_retry(retry)
        client = self.bucket.client
        client.record("upload", self.name)
        self.bucket.check_exists()
        client.maybe_fail("upload")
        data = file_obj.read()
        assert size is None or size == len(data)
        self.content_type = content_type
        self._store(data)
        client.content_types[self.name] = content_type

    def compose(self, sources, timeout=None, retry=LIBRARY_DEFAULT):
        _no_library_retry(retry)
        client = self.bucket.client
        client.record("compose", self.name, [s.name for s in sources])
        self.bucket.check_exists()
        if len(sources) > 32:
            raise api_exceptions.BadRequest("The number of source components provided exceeds 32")
        client.maybe_fail("compose")
        parts = []
        for s in sources:
            if s.name not in self.bucket.objects:
                raise api_exceptions.NotFound(f"No such object: {self.bucket.name}/{s.name}")
            parts.append(self.bucket.objects[s.name])
        self._store(b"".join(parts))
        client.content_types[self.name] = self.content_type


class FakeBucket:
    def __init__(self, client: "FakeClient", name: str):
        self.client = client
        self.name = name

    @property
    def objects(self):
        return self.client.buckets.setdefault(self.name, {})

    def check_exists(self) -> None:
        if self.name not in self.client.buckets:
            raise api_exceptions.NotFound(f"The specified bucket does not exist: {self.name}")

    def blob(self, name: str) -> FakeBlob:
        return FakeBlob(self, name)

    def delete_blob(self, name, timeout=None, retry=LIBRARY_DEFAULT):
        _no_library_retry(retry)
        self.client.record("delete", name)
        self.check_exists()
        self.client.maybe_fail("delete")
        if name not in self.objects:
            raise api_exceptions.NotFound(f"No such object: {self.name}/{name}")
        del self.objects[name]


class FakeClient:
    def __init__(self, *bucket_names: str):
        self.buckets = {name: {} for name in bucket_names}
        self.calls = []
        self.content_types = {}
        self.tamper_hashes = False
        self.generations = itertools.count(1)
        self._failures = defaultdict(deque)

    # test helpers

    def fail(self, operation: str, *errors: Exception) -> None:
        self._failures[operation].extend(errors)

    def maybe_fail(self, operation: str) -> None:
        queue = self._failures[operation]
        if queue:
            raise queue.popleft()

    def record(self, operation: str, *args) -> None:
        self.calls.append((operation,) + args)

    def calls_of(self, operation: str):
        return [c for c in self.calls if c[0] == operation]

    def objects(self, bucket: str = "test-bucket"):
        return self.buckets[bucket]

    # storage.Client surface

    def bucket(self, name: str) -> FakeBucket:
        return FakeBucket(self, name)

    def list_blobs(
        self, bucket_or_name, prefix=None, delimiter=None, max_results=None, timeout=None, retry=LIBRARY_DEFAULT
    ):
        _no_library_retry(retry)
        return self._iter_blobs(bucket_or_name, prefix, delimiter, max_results)

    def _iter_blobs(self, bucket_or_name, prefix, delimiter, max_results):
        self.record("list", bucket_or_name, prefix)
        bucket = self.bucket(bucket_or_name)
        bucket.check_exists()
        self.maybe_fail("list")
        names = sorted(n for n in bucket.objects if n.startswith(prefix or ""))
        if delimiter:
            names = [n for n in names if delimiter not in n[len(prefix or ""):]]
        if max_results is not None:
            names = names[:max_results]
        for name in names:
            blob = bucket.blob(name)
            blob.size = len(bucket.objects[name])
            yield blob


@pytest.fixture
def fake_client():
    return FakeClient("test-bucket")


@pytest.fixture
def make_task(base_config):
    def _make(**overrides) -> PluginTask:
        return PluginTask.from_config({**base_config, **overrides})

    return _make


@pytest.fixture
def patched_storage(monkeypatch, fake_client):
    """Route every storage.Client(...) built by gcs_output to the fake."""
    created = []

    def _client(**kwargs):
        created.append(kwargs)
        return fake_client

    monkeypatch.setattr("gcs_output.client.storage.Client", _client)
    return created
