import subprocess
from pathlib import Path
from unittest import mock

import pytest

from cookbooks.hivecluster.libs.executor import (
    CommandExecutor,
    CommandResult,
    ExecStatus,
    RuntimeNotInstalledError,
    RuntimeUnavailableError,
    TestUtils,
)


def completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.mark.parametrize(
    **TestUtils.to_parametrize(
        {
            "Completed with success": {
                "result": CommandResult(command=("true",)),
                "expected_ok": True,
                "expected_description": "ok",
            },
            "Non zero exit code": {
                "result": CommandResult(command=("false",), stdout="line1\nlast line\n", exit_code=3),
                "expected_ok": False,
                "expected_description": "exit code 3: last line",
            },
            "Timed out": {
                "result": CommandResult(command=("sleep", "100"), exit_code=None, status=ExecStatus.TIMED_OUT),
                "expected_ok": False,
                "expected_description": "timed out: sleep 100",
            },
            "Target not found": {
                "result": CommandResult(
                    command=("ls",), stderr="service \"namenode\" is not running\n", exit_code=1,
                    status=ExecStatus.TARGET_NOT_FOUND,
                ),
                "expected_ok": False,
                "expected_description": "target not found: service \"namenode\" is not running",
            },
            "Dry run": {
                "result": CommandResult(command=("docker", "compose", "stop"), status=ExecStatus.DRY_RUN),
                "expected_ok": True,
                "expected_description": "ok",
            },
        }
    )
)
def test_CommandResult_ok_and_describe(result: CommandResult, expected_ok: bool, expected_description: str):
    assert result.ok is expected_ok
    assert result.describe() == expected_description


def test_CommandResult_output_joins_stdout_and_stderr():
    result = CommandResult(command=("cmd",), stdout="out\n", stderr="err\n")

    assert result.output == "out\nerr\n"


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_run_returns_the_command_output(mocked_run):
    mocked_run.return_value = completed(stdout="hello\n")
    executor = CommandExecutor(default_timeout=10)

    result = executor.run(["echo", "hello"])

    assert result == CommandResult(command=("echo", "hello"), stdout="hello\n", exit_code=0)
    mocked_run.assert_called_once_with(
        ("echo", "hello"), capture_output=True, text=True, timeout=10, check=False, cwd=None
    )


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_run_does_not_raise_on_failure(mocked_run):
    mocked_run.return_value = completed(stderr="boom\n", returncode=2)

    result = CommandExecutor().run(["false"])

    assert not result.ok
    assert result.exit_code == 2
    assert result.status is ExecStatus.COMPLETED


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_run_reports_timeouts(mocked_run):
    mocked_run.side_effect = subprocess.TimeoutExpired(cmd=["sleep", "5"], timeout=1, output=b"partial")

    result = CommandExecutor().run(["sleep", "5"], timeout=1)

    assert result.timed_out
    assert result.exit_code is None
    assert result.stdout == "partial"


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_run_raises_if_the_runtime_is_not_installed(mocked_run):
    mocked_run.side_effect = FileNotFoundError("docker")

    with pytest.raises(RuntimeNotInstalledError):
        CommandExecutor().run(["docker", "ps"])


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_run_reports_other_missing_commands(mocked_run):
    mocked_run.side_effect = FileNotFoundError("free")

    result = CommandExecutor().run(["free", "-h"])

    assert result.exit_code == 127
    assert not result.ok


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_run_skips_unsafe_commands_in_dry_run(mocked_run):
    executor = CommandExecutor(dry_run=True)

    result = executor.run(["docker", "compose", "stop"], is_safe=False)

    assert result.status is ExecStatus.DRY_RUN
    assert result.ok
    mocked_run.assert_not_called()


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_run_executes_safe_commands_in_dry_run(mocked_run):
    mocked_run.return_value = completed(stdout="ok")
    executor = CommandExecutor(dry_run=True)

    result = executor.run(["docker", "ps"])

    assert result.status is ExecStatus.COMPLETED
    mocked_run.assert_called_once()


def test_compose_prefix():
    executor = CommandExecutor(project_directory="/srv/cluster", compose_file="compose.yml")

    assert executor.compose_prefix() == [
        "docker", "compose", "--project-directory", str(Path("/srv/cluster")), "-f", "compose.yml"
    ]


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_in_service_runs_compose_exec(mocked_run):
    mocked_run.return_value = completed(stdout="Found 2 items")

    result = CommandExecutor().in_service("hadoop-cli", ["hdfs", "dfs", "-ls", "/"], timeout=30)

    assert result.ok
    assert mocked_run.call_args[0][0] == (
        "docker", "compose", "exec", "-T", "hadoop-cli", "hdfs", "dfs", "-ls", "/"
    )
    assert mocked_run.call_args[1]["timeout"] == 30


@pytest.mark.parametrize(
    "stderr",
    (
        "no such service: hadoop-kli",
        "service \"namenode\" is not running",
        "Error response from daemon: No such container: abc",
    ),
)
@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_in_service_detects_a_missing_target(mocked_run, stderr):
    mocked_run.return_value = completed(stderr=stderr, returncode=1)

    result = CommandExecutor().in_service("namenode", ["jps"])

    assert result.status is ExecStatus.TARGET_NOT_FOUND
    assert not result.ok


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_in_service_keeps_command_failures(mocked_run):
    mocked_run.return_value = completed(stderr="ls: /nope: No such file or directory", returncode=1)

    result = CommandExecutor().in_service("hadoop-cli", ["ls", "/nope"])

    assert result.status is ExecStatus.COMPLETED
    assert result.exit_code == 1


@pytest.mark.parametrize(
    "stderr",
    (
        "Error: the metastore is not running, start it first",
        "2024-05-01 12:00:00 WARN hive-metastore is not running yet",
        "zkServer.sh: Service zookeeper is not running",
    ),
)
@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_in_service_keeps_failures_mentioning_not_running(mocked_run, stderr):
    mocked_run.return_value = completed(stderr=stderr, returncode=1)

    result = CommandExecutor().in_service("hive-cli", ["beeline", "-e", "SELECT 1;"])

    assert result.status is ExecStatus.COMPLETED
    assert result.exit_code == 1


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
def test_execute_on_the_host_without_target(mocked_run):
    mocked_run.return_value = completed(stdout="42%")

    CommandExecutor().execute(["df", "-P", "."])

    assert mocked_run.call_args[0][0] == ("df", "-P", ".")


@mock.patch("cookbooks.hivecluster.libs.executor.shutil.which", return_value=None)
def test_ensure_installed_raises_without_the_binary(_mocked_which):
    with pytest.raises(RuntimeNotInstalledError, match="docker is not installed"):
        CommandExecutor().ensure_installed()


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
@mock.patch("cookbooks.hivecluster.libs.executor.shutil.which", return_value="/usr/bin/docker")
def test_check_runtime_raises_if_the_daemon_is_down(_mocked_which, mocked_run):
    mocked_run.return_value = completed(stderr="Cannot connect to the Docker daemon", returncode=1)

    with pytest.raises(RuntimeUnavailableError, match="daemon is not running"):
        CommandExecutor().check_runtime()


@mock.patch("cookbooks.hivecluster.libs.executor.subprocess.run")
@mock.patch("cookbooks.hivecluster.libs.executor.shutil.which", return_value="/usr/bin/docker")
def test_check_runtime_raises_without_compose(_mocked_which, mocked_run):
    mocked_run.side_effect = [completed(), completed(stderr="'compose' is not a docker command", returncode=1)]

    with pytest.raises(RuntimeUnavailableError, match="compose is not available"):
        CommandExecutor().check_runtime()


def test_fake_executor_returns_the_responses_in_order():
    fake_executor = TestUtils.get_fake_executor(responses=[TestUtils.result("one"), TestUtils.result("two")])

    assert fake_executor.compose("ps").stdout == "one"
    assert fake_executor.in_service("namenode", ["jps"]).stdout == "two"
