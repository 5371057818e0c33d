#!/usr/bin/env python3
"""Collect diagnostics for the operator, for one service, one subsystem or the whole cluster.

Everything here is read-only. Every check is isolated from the others, a broken check is reported as a FAIL entry and
the collection goes on with the next one.
"""
from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from cookbooks.hivecluster.libs.config import ClusterConfig, Subsystem
from cookbooks.hivecluster.libs.executor import CommandExecutor, CommandResult, RuntimeNotInstalledError
from cookbooks.hivecluster.libs.probes import RUNNING_STATE, container_state, head_lines, is_port_open

LOGGER = logging.getLogger(__name__)
ERROR_LINE_RE = re.compile(r"error|exception|fail", re.IGNORECASE)
ALL_TARGET = "all"
SYSTEM_TARGET = "system"
RECENT_ERRORS = 5
EXITED_LOG_TAIL = 30


class EntryStatus(str, Enum):
    """Status of a diagnostics entry."""

    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"
    INFO = "INFO"


@dataclass(frozen=True)
class DiagnosticEntry:
    """A single finding."""

    status: EntryStatus
    message: str
    output: str = ""


@dataclass
class DiagnosticSection:
    """A titled group of findings."""

    title: str
    entries: List[DiagnosticEntry] = field(default_factory=list)

    def add(self, status: EntryStatus, message: str, output: str = "") -> None:
        """Add a finding to the section."""
        self.entries.append(DiagnosticEntry(status=status, message=message, output=output))


@dataclass
class DiagnosticReport:
    """All the findings of a diagnose run."""

    target: str
    sections: List[DiagnosticSection] = field(default_factory=list)

    def count(self, status: EntryStatus) -> int:
        """Number of entries with the given status."""
        return sum(1 for section in self.sections for entry in section.entries if entry.status is status)

    def render(self) -> None:
        """Log the report to the operator console."""
        for section in self.sections:
            LOGGER.info("==== %s ====", section.title)
            for entry in section.entries:
                if entry.status is EntryStatus.FAIL:
                    LOGGER.error("%s: %s", entry.status.value, entry.message)
                elif entry.status is EntryStatus.WARN:
                    LOGGER.warning("%s: %s", entry.status.value, entry.message)
                else:
                    LOGGER.info("%s: %s", entry.status.value, entry.message)
                if entry.output:
                    LOGGER.info("%s", entry.output.rstrip())

        LOGGER.info(
            "Diagnostics for %s complete: %s passed, %s warnings, %s failures",
            self.target,
            self.count(EntryStatus.PASS),
            self.count(EntryStatus.WARN),
            self.count(EntryStatus.FAIL),
        )


def _output_or_error(result: CommandResult) -> str:
    return result.output.strip() if result.ok else result.describe()


class DiagnosticsCollector:
    """Gather status, resource usage and logs for human triage."""

    def __init__(self, executor: CommandExecutor, config: ClusterConfig):
        """Init."""
        self._executor = executor
        self._config = config

    @property
    def targets(self) -> List[str]:
        """All the valid diagnose targets, a subsystem takes precedence over a service with the same name."""
        targets = [ALL_TARGET, SYSTEM_TARGET, *self._config.subsystems.keys(), *self._config.service_names]
        return list(dict.fromkeys(targets))

    def diagnose(self, target: str = ALL_TARGET) -> DiagnosticReport:
        """Collect the diagnostics for the given target."""
        if target not in self.targets:
            raise ValueError(f"Unknown diagnose target {target}, must be one of: {', '.join(self.targets)}")

        self._executor.ensure_installed()
        report = DiagnosticReport(target=target)
        if target == ALL_TARGET:
            report.sections.append(self.system())
            report.sections.append(self.cluster_status())
            for subsystem in self._config.subsystems.values():
                report.sections.append(self.subsystem(subsystem))
        elif target == SYSTEM_TARGET:
            report.sections.append(self.system())
        elif target in self._config.subsystems:
            report.sections.append(self.subsystem(self._config.subsystems[target]))
        else:
            service = self._config.service(target)
            report.sections.append(self.container(service.name))
            if service.subsystem is not None:
                report.sections.append(self.subsystem(self._config.subsystems[service.subsystem]))

        return report

    def _isolated(self, section: DiagnosticSection, description: str, check: Callable[[], None]) -> None:
        try:
            check()
        except RuntimeNotInstalledError:
            raise
        # pylint: disable=broad-except
        except Exception as error:
            LOGGER.exception("Diagnostics check '%s' raised an error", description)
            section.add(EntryStatus.FAIL, f"{description}: {error.__class__.__name__}: {error}")

    def system(self) -> DiagnosticSection:
        """Runtime, host resources and network checks."""
        section = DiagnosticSection(title="System Information")
        binary = self._executor.binary

        def versions():
            for description, result in (
                ("Runtime version", self._executor.run([binary, "--version"], timeout=30)),
                ("Compose version", self._executor.run([binary, "compose", "version"], timeout=30)),
            ):
                status = EntryStatus.INFO if result.ok else EntryStatus.FAIL
                section.add(status, f"{description}: {_output_or_error(result)}")

        def daemon():
            result = self._executor.run([binary, "ps"], timeout=30)
            if result.ok:
                section.add(EntryStatus.PASS, "Docker daemon is running")
            else:
                section.add(EntryStatus.FAIL, f"Cannot connect to the Docker daemon: {result.describe()}")

        def disk():
            path = self._executor.project_directory or Path(".")
            usage = shutil.disk_usage(path)
            percent = round(usage.used * 100 / usage.total) if usage.total else 0
            message = (f"Disk usage of {path}: {percent}% (Total: {usage.total // 2**30}GiB, "
                       f"Used: {usage.used // 2**30}GiB, Available: {usage.free // 2**30}GiB)")
            if percent < 80:
                section.add(EntryStatus.PASS, message)
            elif percent < 95:
                section.add(EntryStatus.WARN, message)
            else:
                section.add(EntryStatus.FAIL, f"{message} - LOW DISK SPACE!")

        def memory():
            result = self._executor.run(["free", "-h"], timeout=10)
            if result.ok:
                section.add(EntryStatus.INFO, "Available memory:", head_lines(result.stdout, 2))
            else:
                section.add(EntryStatus.INFO, f"Available memory unknown: {result.describe()}")

        def runtime_disk():
            result = self._executor.run([binary, "system", "df"], timeout=60)
            status = EntryStatus.INFO if result.ok else EntryStatus.WARN
            section.add(status, "Docker disk usage:", _output_or_error(result))

        def network():
            if self._config.network is None:
                return
            result = self._executor.run([binary, "network", "ls", "--format", "{{.Name}}"], timeout=30)
            names = [line for line in result.stdout.splitlines() if self._config.network in line]
            if result.ok and names:
                section.add(EntryStatus.PASS, f"Docker network found: {', '.join(names)}")
            else:
                section.add(EntryStatus.WARN, f"{self._config.network} network not found")

        def ports():
            for port in self._config.published_ports:
                if is_port_open("localhost", port, timeout=1):
                    section.add(EntryStatus.PASS, f"Port {port} is open")
                else:
                    section.add(EntryStatus.WARN, f"Port {port} is closed")

        for description, check in (
            ("versions", versions),
            ("daemon", daemon),
            ("disk space", disk),
            ("memory", memory),
            ("docker disk usage", runtime_disk),
            ("network", network),
            ("port sweep", ports),
        ):
            self._isolated(section, description, check)

        return section

    def cluster_status(self) -> DiagnosticSection:
        """Status and resource usage of all the containers."""
        section = DiagnosticSection(title="Overall Cluster Status")

        def status():
            result = self._executor.compose("ps", timeout=30)
            if result.ok:
                section.add(EntryStatus.INFO, "Container status:", result.stdout)
            else:
                section.add(EntryStatus.FAIL, f"No containers found: {result.describe()}")

        def stats():
            result = self._executor.run([self._executor.binary, "stats", "--no-stream"], timeout=60)
            if result.ok:
                section.add(EntryStatus.INFO, "Container resource usage:", result.stdout)
            else:
                section.add(EntryStatus.WARN, f"Could not retrieve stats: {result.describe()}")

        self._isolated(section, "container status", status)
        self._isolated(section, "container stats", stats)
        return section

    def container(self, service: str) -> DiagnosticSection:
        """Status, resources and logs of the container of a single service."""
        section = DiagnosticSection(title=f"Diagnostics for: {service}")
        state: List[Optional[str]] = [None]

        def status():
            state[0] = container_state(self._executor, service)
            if state[0] == RUNNING_STATE:
                section.add(EntryStatus.PASS, "Container is running")
            elif state[0] is None:
                section.add(EntryStatus.FAIL, "Container not found")
            else:
                logs = self._executor.compose("logs", "--no-color", "--tail", str(EXITED_LOG_TAIL), service)
                section.add(EntryStatus.FAIL, f"Container is {state[0]}. Recent logs:", _output_or_error(logs))

        self._isolated(section, "container status", status)
        if state[0] != RUNNING_STATE:
            return section

        def resources():
            container_id = self._executor.compose("ps", "-q", service).stdout.strip()
            if not container_id:
                section.add(EntryStatus.FAIL, "Could not get the container ID")
                return
            section.add(EntryStatus.PASS, f"Container ID: {container_id}")
            stats = self._executor.run(
                [self._executor.binary, "stats", "--no-stream", "--format",
                 "table {{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}", container_id],
                timeout=60,
            )
            status = EntryStatus.INFO if stats.ok else EntryStatus.WARN
            section.add(status, "Resource usage:", _output_or_error(stats))

        def errors():
            logs = self._executor.compose("logs", "--no-color", service, timeout=120)
            if not logs.ok:
                section.add(EntryStatus.WARN, f"Could not retrieve logs: {logs.describe()}")
                return
            error_lines = [line for line in logs.output.splitlines() if ERROR_LINE_RE.search(line)]
            if error_lines:
                section.add(
                    EntryStatus.WARN,
                    f"Found {len(error_lines)} error(s)/exception(s) in logs, most recent:",
                    "\n".join(error_lines[-RECENT_ERRORS:]),
                )
            else:
                section.add(EntryStatus.PASS, "No errors found in the logs")

        def last_lines():
            tail = self._config.defaults.log_tail
            logs = self._executor.compose("logs", "--no-color", "--tail", str(tail), service)
            status = EntryStatus.INFO if logs.ok else EntryStatus.WARN
            section.add(status, f"Last {tail} log lines:", _output_or_error(logs))

        self._isolated(section, "resource usage", resources)
        self._isolated(section, "log errors", errors)
        self._isolated(section, "recent logs", last_lines)
        return section

    def subsystem(self, subsystem: Subsystem) -> DiagnosticSection:
        """Read-only status commands of a subsystem, e.g. the HDFS report."""
        section = DiagnosticSection(title=f"{subsystem.name.upper()} Diagnostics")
        if subsystem.requires is not None:
            running: List[bool] = [False]

            def required():
                running[0] = container_state(self._executor, subsystem.requires) == RUNNING_STATE
                if not running[0]:
                    section.add(EntryStatus.FAIL, f"{subsystem.requires} is not running")

            self._isolated(section, f"{subsystem.requires} status", required)
            if not running[0]:
                return section

        for check in subsystem.checks:

            def run_check(check=check):
                result = self._executor.execute(check.command, timeout=check.timeout, target=check.context)
                passed = result.ok and (check.pattern is None or re.search(check.pattern, result.output) is not None)
                output = head_lines(result.output, check.show_output) if check.show_output else ""
                if passed:
                    section.add(EntryStatus.PASS, check.description, output)
                    return

                status = EntryStatus.WARN if check.severity == "warn" else EntryStatus.FAIL
                reason = result.describe() if not result.ok else f"/{check.pattern}/ not found in the output"
                section.add(status, f"{check.description}: {reason}", output)

            self._isolated(section, check.description, run_check)

        return section
