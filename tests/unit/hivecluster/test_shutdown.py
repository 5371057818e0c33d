from pathlib import Path
from unittest import mock

import pytest

from cookbooks.hivecluster.libs.executor import TestUtils
from cookbooks.hivecluster.libs.shutdown import DELETE_VOLUMES_PROMPT, ClusterStopper


@pytest.fixture(name="data_directory")
def fixture_data_directory(tmp_path: Path) -> Path:
    data = tmp_path / "data"
    (data / "hdfs" / "namenode").mkdir(parents=True)
    (data / "hdfs" / "namenode" / "fsimage").write_text("image")
    (data / "metastore-postgres").mkdir()
    (data / "README").write_text("readme")
    return data


def test_stop_gracefully_keeps_the_data(data_directory: Path):
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result()] * 2 + [TestUtils.result("")])
    confirm = mock.Mock(return_value=True)

    result = ClusterStopper(fake_executor, data_directory).stop(confirm=confirm)

    assert result.ok
    assert [name for name, _ in result.steps] == ["stop", "rm"]
    assert not result.volumes_removed
    assert not result.data_cleaned
    assert result.still_running == 0
    assert fake_executor.compose.call_args_list == [
        mock.call("stop", is_safe=False, timeout=300),
        mock.call("rm", "-f", is_safe=False),
        mock.call("ps", "-q"),
    ]
    confirm.assert_not_called()
    assert (data_directory / "README").exists()


def test_stop_force_kills_the_containers():
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result()] * 3)

    ClusterStopper(fake_executor).stop(force=True)

    assert fake_executor.compose.call_args_list[0] == mock.call("kill", is_safe=False)


def test_stop_does_not_remove_containers_that_failed_to_stop():
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result(exit_code=1)])

    result = ClusterStopper(fake_executor).stop(full=True, confirm=lambda _: True)

    assert not result.ok
    assert [name for name, _ in result.steps] == ["stop"]
    assert fake_executor.compose.call_count == 1
    assert result.still_running is None


def test_stop_full_declined_preserves_everything(data_directory: Path):
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result()] * 2 + [TestUtils.result("")])
    confirm = mock.Mock(return_value=False)

    result = ClusterStopper(fake_executor, data_directory).stop(full=True, confirm=confirm)

    assert result.ok
    assert not result.volumes_removed
    assert not result.data_cleaned
    assert confirm.call_count == 2
    assert confirm.call_args_list[0] == mock.call(DELETE_VOLUMES_PROMPT)
    assert mock.call("down", "-v", is_safe=False, timeout=300) not in fake_executor.compose.call_args_list
    assert (data_directory / "hdfs" / "namenode" / "fsimage").exists()


def test_stop_full_confirmed_deletes_volumes_and_data(data_directory: Path):
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result()] * 3 + [TestUtils.result("")])

    result = ClusterStopper(fake_executor, data_directory).stop(full=True, confirm=lambda _: True)

    assert result.ok
    assert result.volumes_removed
    assert result.data_cleaned
    assert [name for name, _ in result.steps] == ["stop", "rm", "down"]
    assert data_directory.is_dir()
    assert list(data_directory.iterdir()) == []


def test_stop_full_in_dry_run_keeps_the_data(data_directory: Path):
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result()] * 3 + [TestUtils.result("")])

    result = ClusterStopper(fake_executor, data_directory, dry_run=True).stop(full=True, confirm=lambda _: True)

    assert result.data_cleaned
    assert (data_directory / "README").exists()


def test_stop_full_without_data_directory(tmp_path: Path):
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result()] * 3 + [TestUtils.result("")])
    confirm = mock.Mock(return_value=True)

    result = ClusterStopper(fake_executor, tmp_path / "missing").stop(full=True, confirm=confirm)

    assert result.volumes_removed
    assert not result.data_cleaned
    confirm.assert_called_once_with(DELETE_VOLUMES_PROMPT)


def test_stop_reports_containers_still_running():
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result()] * 2 + [TestUtils.result("abc\ndef\n")])

    result = ClusterStopper(fake_executor).stop()

    assert result.still_running == 2
