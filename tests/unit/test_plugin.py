"""
Unit tests for the plugin controller.
"""

import threading

import pytest
from google.api_core import exceptions as api_exceptions

from gcs_output import retry as retry_module
from gcs_output.errors import ConfigurationError, NonRetryable
from gcs_output.output import OutputState
from gcs_output.plugin import GcsOutputPlugin
from gcs_output.settings import OutputRuntimeSettings


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(retry_module, "_sleep", lambda ms, event: None)


@pytest.fixture
def settings():
    return OutputRuntimeSettings(upload_workers=2)


def test_run_partitions_reports_in_task_order(settings, base_config, fake_client, patched_storage):
    partitions = [
        [[b"a0"], [b"a1"]],
        [[b"b0"]],
        [],
    ]
    with GcsOutputPlugin(settings) as plugin:
        reports = plugin.run_partitions(base_config, partitions)

    assert [r.task_index for r in reports] == [0, 1, 2]
    assert reports[0].files == [
        "gs://test-bucket/output/sample.000.00.csv",
        "gs://test-bucket/output/sample.000.01.csv",
    ]
    assert reports[1].files == ["gs://test-bucket/output/sample.001.00.csv"]
    assert reports[2].files == []
    assert fake_client.objects()["output/sample.001.00.csv"] == b"b0"


def test_client_is_built_once_and_shared(settings, base_config, patched_storage):
    with GcsOutputPlugin(settings) as plugin:
        plugin.run_partitions(base_config, [[[b"x"]], [[b"y"]], [[b"z"]]])
    assert len(patched_storage) == 1


def test_invalid_config_stops_before_any_request(settings, base_config, fake_client, patched_storage):
    with GcsOutputPlugin(settings) as plugin:
        with pytest.raises(ConfigurationError):
            plugin.run_partitions({**base_config, "bucket": ""}, [[[b"x"]]])
        with pytest.raises(ConfigurationError, match="json_keyfile"):
            plugin.run_partitions({**base_config, "auth_method": "json_key"}, [[[b"x"]]])
    assert fake_client.calls == []
    assert patched_storage == []


def test_delete_in_advance(settings, base_config, fake_client, patched_storage):
    objects = fake_client.objects()
    objects["output/old.csv"] = b"old"
    objects["output/keep/nested.csv"] = b"nested"

    with GcsOutputPlugin(settings) as plugin:
        plugin.run_partitions({**base_config, "path_prefix": "output/", "delete_in_advance": True}, [[[b"new"]]])

    assert sorted(objects) == ["output/.000.00.csv", "output/keep/nested.csv"]


def test_failed_partition_is_aborted(settings, base_config, fake_client, patched_storage, staging_dir):
    fake_client.fail("upload", api_exceptions.Forbidden("denied"))
    with GcsOutputPlugin(settings) as plugin:
        with pytest.raises(NonRetryable):
            plugin.run_partitions(base_config, [[[b"a"], [b"b"]]])
    assert list(staging_dir.iterdir()) == []


def test_transaction_with_external_writer(settings, base_config, patched_storage):
    with GcsOutputPlugin(settings) as plugin:

        def control(task):
            out = plugin.open(task, 5)
            out.next_file()
            out.add(b"row\n")
            out.finish()
            assert out.state is OutputState.FINISHED
            return [out.commit()]

        reports = plugin.transaction(base_config, 1, control)

    assert reports[0].files == ["gs://test-bucket/output/sample.005.00.csv"]


def test_resume_reruns_control(settings, make_task):
    plugin = GcsOutputPlugin(settings)
    task = make_task()
    assert plugin.resume(task, 2, lambda t: [t.bucket]) == ["test-bucket"]


def test_settings_temp_dir_is_default(tmp_path, base_config):
    cfg = dict(base_config)
    cfg.pop("temp_dir")
    plugin = GcsOutputPlugin(OutputRuntimeSettings(temp_dir=tmp_path))
    assert plugin.configure(cfg).temp_dir == tmp_path
    # explicit task setting wins
    assert plugin.configure(base_config).temp_dir != tmp_path


def test_cancel_sets_event(settings):
    plugin = GcsOutputPlugin(settings)
    plugin.cancel()
    assert plugin.cancel_event.is_set()


def test_check_never_deletes(settings, base_config, fake_client, patched_storage):
    fake_client.objects()["output/keep.csv"] = b"live"
    with GcsOutputPlugin(settings) as plugin:
        task = plugin.check({**base_config, "path_prefix": "output/", "delete_in_advance": True})

    assert task.delete_in_advance is True
    assert fake_client.objects() == {"output/keep.csv": b"live"}
    assert fake_client.calls_of("delete") == []
    assert len(fake_client.calls_of("list")) == 1


def test_partition_threads_are_bounded(base_config, patched_storage):
    plugin = GcsOutputPlugin(OutputRuntimeSettings(upload_workers=2, partition_workers=2))
    write_partition = plugin._write_partition
    threads = set()
    lock = threading.Lock()

    def recording(task, task_index, files):
        with lock:
            threads.add(threading.current_thread().name)
        return write_partition(task, task_index, files)

    plugin._write_partition = recording
    with plugin:
        reports = plugin.run_partitions(base_config, [[[b"%d" % i]] for i in range(8)])

    assert [r.task_index for r in reports] == list(range(8))
    assert 1 <= len(threads) <= 2
