import json
from unittest import mock

import pytest

from cookbooks.hivecluster.libs.config import ClusterConfig, ServiceDescriptor, Subsystem, SubsystemCheck
from cookbooks.hivecluster.libs.diagnostics import DiagnosticsCollector, EntryStatus
from cookbooks.hivecluster.libs.executor import RuntimeNotInstalledError, TestUtils

CONFIG = ClusterConfig(
    services=(
        ServiceDescriptor(name="zookeeper", subsystem="zookeeper"),
        ServiceDescriptor(name="namenode", depends_on=frozenset({"zookeeper"}), subsystem="hdfs"),
        ServiceDescriptor(name="hadoop-cli", depends_on=frozenset({"namenode"})),
    ),
    subsystems={
        "zookeeper": Subsystem(
            name="zookeeper",
            requires="zookeeper",
            checks=(
                SubsystemCheck(
                    description="ZooKeeper is responding",
                    command=("bash", "-c", "echo ruok | nc zookeeper 2181"),
                    context="hadoop-cli",
                    pattern="imok",
                    severity="warn",
                ),
                SubsystemCheck(description="ZooKeeper server status", command=("zkServer.sh", "status"),
                               context="zookeeper", show_output=1),
            ),
        ),
        "hdfs": Subsystem(
            name="hdfs",
            requires="namenode",
            checks=(SubsystemCheck(description="HDFS report", command=("hdfs", "dfsadmin", "-report")),),
        ),
    },
    network="hadoop",
    published_ports=(8020, 9870),
)


def ps_json(service: str, state: str):
    return TestUtils.result(json.dumps({"Service": service, "State": state}))


def entries(section):
    return [(entry.status, entry.message) for entry in section.entries]


def test_targets():
    collector = DiagnosticsCollector(TestUtils.get_fake_executor(), CONFIG)

    assert collector.targets == ["all", "system", "zookeeper", "hdfs", "namenode", "hadoop-cli"]


def test_diagnose_unknown_target():
    fake_executor = TestUtils.get_fake_executor()

    with pytest.raises(ValueError, match="Unknown diagnose target nope"):
        DiagnosticsCollector(fake_executor, CONFIG).diagnose("nope")

    fake_executor.ensure_installed.assert_not_called()


def test_diagnose_runtime_not_installed():
    fake_executor = TestUtils.get_fake_executor()
    fake_executor.ensure_installed.side_effect = RuntimeNotInstalledError("docker is not installed or not in PATH")

    with pytest.raises(RuntimeNotInstalledError):
        DiagnosticsCollector(fake_executor, CONFIG).diagnose("system")


@mock.patch("cookbooks.hivecluster.libs.diagnostics.is_port_open", return_value=False)
@mock.patch("cookbooks.hivecluster.libs.diagnostics.shutil.disk_usage")
def test_diagnose_system_with_the_daemon_down(mocked_disk_usage, _mocked_is_port_open):
    mocked_disk_usage.return_value = mock.Mock(total=100 * 2**30, used=50 * 2**30, free=50 * 2**30)
    failure = TestUtils.result(stderr="Cannot connect to the Docker daemon", exit_code=1)
    fake_executor = TestUtils.get_fake_executor(side_effect=lambda *_args, **_kwargs: failure)

    report = DiagnosticsCollector(fake_executor, CONFIG).diagnose("system")

    assert [section.title for section in report.sections] == ["System Information"]
    messages = entries(report.sections[0])
    assert (EntryStatus.FAIL, "Cannot connect to the Docker daemon: exit code 1: Cannot connect to the Docker daemon") \
        in messages
    assert (EntryStatus.WARN, "hadoop network not found") in messages
    assert (EntryStatus.WARN, "Port 8020 is closed") in messages
    assert (EntryStatus.WARN, "Port 9870 is closed") in messages
    assert report.count(EntryStatus.PASS) == 1  # disk usage


@mock.patch("cookbooks.hivecluster.libs.diagnostics.is_port_open", return_value=False)
@mock.patch("cookbooks.hivecluster.libs.diagnostics.shutil.disk_usage")
def test_diagnose_all_with_the_daemon_down(mocked_disk_usage, _mocked_is_port_open):
    mocked_disk_usage.return_value = mock.Mock(total=100 * 2**30, used=50 * 2**30, free=50 * 2**30)
    failure = TestUtils.result(stderr="Cannot connect to the Docker daemon", exit_code=1)
    fake_executor = TestUtils.get_fake_executor(side_effect=lambda *_args, **_kwargs: failure)

    report = DiagnosticsCollector(fake_executor, CONFIG).diagnose("all")

    assert [section.title for section in report.sections] == [
        "System Information",
        "Overall Cluster Status",
        "ZOOKEEPER Diagnostics",
        "HDFS Diagnostics",
    ]
    assert entries(report.sections[1]) == [
        (EntryStatus.FAIL, "No containers found: exit code 1: Cannot connect to the Docker daemon"),
        (EntryStatus.WARN, "Could not retrieve stats: exit code 1: Cannot connect to the Docker daemon"),
    ]
    assert entries(report.sections[2]) == [(EntryStatus.FAIL, "zookeeper is not running")]
    assert entries(report.sections[3]) == [(EntryStatus.FAIL, "namenode is not running")]
    # runtime and compose versions, daemon, compose ps and the two subsystems
    assert report.count(EntryStatus.FAIL) == 6


@mock.patch("cookbooks.hivecluster.libs.diagnostics.is_port_open", return_value=True)
@mock.patch("cookbooks.hivecluster.libs.diagnostics.shutil.disk_usage", side_effect=OSError("No such file"))
def test_diagnose_system_isolates_broken_checks(_mocked_disk_usage, _mocked_is_port_open):
    networks = TestUtils.result("hadoop_default")
    fake_executor = TestUtils.get_fake_executor(side_effect=lambda *_args, **_kwargs: networks)

    report = DiagnosticsCollector(fake_executor, CONFIG).diagnose("system")

    messages = entries(report.sections[0])
    assert (EntryStatus.FAIL, "disk space: OSError: No such file") in messages
    assert (EntryStatus.PASS, "Docker network found: hadoop_default") in messages
    assert (EntryStatus.PASS, "Port 9870 is open") in messages


def test_diagnose_exited_service():
    fake_executor = TestUtils.get_fake_executor(
        responses=[
            ps_json("namenode", "exited"),
            TestUtils.result("java.io.IOException: NameNode is not formatted."),
            ps_json("namenode", "exited"),
        ]
    )

    report = DiagnosticsCollector(fake_executor, CONFIG).diagnose("namenode")

    assert [section.title for section in report.sections] == ["Diagnostics for: namenode", "HDFS Diagnostics"]
    container = report.sections[0].entries[0]
    assert container.status is EntryStatus.FAIL
    assert container.message == "Container is exited. Recent logs:"
    assert "NameNode is not formatted" in container.output
    assert entries(report.sections[1]) == [(EntryStatus.FAIL, "namenode is not running")]


def test_diagnose_running_service_without_subsystem():
    fake_executor = TestUtils.get_fake_executor(
        responses=[
            ps_json("hadoop-cli", "running"),
            TestUtils.result("3f2a9c\n"),
            TestUtils.result("NAME CPU % MEM USAGE\nhadoop-cli 0.1% 100MiB"),
            TestUtils.result("INFO started\nERROR something failed\nINFO ready"),
            TestUtils.result("INFO ready"),
        ]
    )

    report = DiagnosticsCollector(fake_executor, CONFIG).diagnose("hadoop-cli")

    assert len(report.sections) == 1
    assert entries(report.sections[0]) == [
        (EntryStatus.PASS, "Container is running"),
        (EntryStatus.PASS, "Container ID: 3f2a9c"),
        (EntryStatus.INFO, "Resource usage:"),
        (EntryStatus.WARN, "Found 1 error(s)/exception(s) in logs, most recent:"),
        (EntryStatus.INFO, "Last 20 log lines:"),
    ]
    assert report.sections[0].entries[3].output == "ERROR something failed"


def test_diagnose_subsystem_checks():
    fake_executor = TestUtils.get_fake_executor(
        responses=[
            ps_json("zookeeper", "running"),
            TestUtils.result(""),
            TestUtils.result("Mode: standalone\nmore output"),
        ]
    )

    report = DiagnosticsCollector(fake_executor, CONFIG).diagnose("zookeeper")

    assert [section.title for section in report.sections] == ["ZOOKEEPER Diagnostics"]
    subsystem = report.sections[0]
    assert entries(subsystem) == [
        (EntryStatus.WARN, "ZooKeeper is responding: /imok/ not found in the output"),
        (EntryStatus.PASS, "ZooKeeper server status"),
    ]
    assert subsystem.entries[1].output == "Mode: standalone"
    fake_executor.execute.assert_any_call(("zkServer.sh", "status"), timeout=None, target="zookeeper")
