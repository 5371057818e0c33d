#!/usr/bin/env python3
"""Health probes against the services of the cluster.

Every probe is read-only and yields a ProbeResult with a PASS, WARN or FAIL outcome. All the signals come from the
text output of commands, the parsing is done by the small functions below so that it can be tested on its own.
"""
from __future__ import annotations

import json
import logging
import re
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import requests

from cookbooks.hivecluster.libs.config import ClusterConfig, Comparator, Defaults, ProbeKind, ProbeSpec
from cookbooks.hivecluster.libs.executor import CommandExecutor, CommandResult, RuntimeNotInstalledError

LOGGER = logging.getLogger(__name__)
RUNNING_STATE = "running"
PORT_CONNECT_TIMEOUT = 3


class Outcome(str, Enum):
    """Outcome of a single probe."""

    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


@dataclass(frozen=True)
class ProbeResult:
    """Result of running a probe once."""

    spec: ProbeSpec
    outcome: Outcome
    detail: str
    value: Optional[int] = None
    output: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, object]:
        """Machine readable representation of the result."""
        return {
            "name": self.spec.name,
            "phase": self.spec.phase,
            "kind": str(self.spec.kind),
            "target": self.spec.target,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "value": self.value,
            "output": self.output,
            "timestamp": self.timestamp.isoformat(),
        }


def parse_container_states(output: str) -> Dict[str, str]:
    """Parse the output of `docker compose ps --all --format json` into a {service: state} dict.

    Older compose releases print a single JSON array, newer ones print one JSON object per line, e.g.:
    ```
    {"Name":"hadoop-namenode","Service":"namenode","State":"running","Status":"Up 2 hours", ...}
    {"Name":"hadoop-datanode1","Service":"datanode1","State":"exited","Status":"Exited (1) 3 minutes ago", ...}
    ```
    """
    output = output.strip()
    if not output:
        return {}

    try:
        loaded = json.loads(output)
        entries = loaded if isinstance(loaded, list) else [loaded]
    except json.JSONDecodeError:
        entries = []
        for line in output.splitlines():
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                LOGGER.debug("Skipping unparsable compose ps line: %s", line)

    states = {}
    for entry in entries:
        if not isinstance(entry, dict) or "Service" not in entry:
            continue
        states[entry["Service"]] = str(entry.get("State", "unknown")).lower()

    return states


def container_state(executor: CommandExecutor, service: str) -> Optional[str]:
    """Get the state of the container of a service, None if there's no container at all."""
    result = executor.compose("ps", "--all", "--format", "json", service)
    if not result.ok:
        LOGGER.debug("Unable to get the state of %s: %s", service, result.describe())
        return None

    return parse_container_states(result.stdout).get(service)


def parse_labelled_number(output: str, label: str) -> Optional[int]:
    """Extract the integer captured by the first group of the label regex, None if not found."""
    match = re.search(label, output)
    if match is None:
        return None

    try:
        return int(match.group(1))
    except (IndexError, TypeError, ValueError):
        return None


def classify_threshold(value: Optional[int], expected: int, minimum: int, comparator: Comparator = Comparator.GE
                       ) -> Outcome:
    """Classify a number against its expected and minimum acceptable values.

    With the GE comparator higher is better, with LE lower is better and minimum is the highest acceptable value.
    """
    if value is None:
        return Outcome.FAIL

    if comparator is Comparator.LE:
        if value <= expected:
            return Outcome.PASS
        if value <= minimum:
            return Outcome.WARN
        return Outcome.FAIL

    if value >= expected:
        return Outcome.PASS
    if value >= minimum:
        return Outcome.WARN
    return Outcome.FAIL


def classify_port(reachable: bool, critical: bool) -> Outcome:
    """Unreachable control-plane ports fail, unreachable peer-to-peer ports only warn."""
    if reachable:
        return Outcome.PASS

    return Outcome.FAIL if critical else Outcome.WARN


def classify_log(found: bool, running: bool) -> Outcome:
    """A running service without the log line is considered still initializing."""
    if found:
        return Outcome.PASS

    return Outcome.WARN if running else Outcome.FAIL


def head_lines(output: str, lines: int) -> str:
    """The first lines of a command output."""
    return "\n".join(output.strip().splitlines()[:lines])


def is_port_open(host: str, port: int, timeout: float = PORT_CONNECT_TIMEOUT) -> bool:
    """Try a TCP connection from the orchestration host."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _mismatch_outcome(spec: ProbeSpec) -> Outcome:
    return Outcome.WARN if spec.on_mismatch == "warn" else Outcome.FAIL


def _probe_container_up(spec: ProbeSpec, executor: CommandExecutor, _defaults: Defaults) -> ProbeResult:
    state = container_state(executor, spec.target)
    if state == RUNNING_STATE:
        return ProbeResult(spec, Outcome.PASS, f"Container '{spec.target}' is running")
    if state is None:
        return ProbeResult(spec, Outcome.FAIL, f"Container '{spec.target}' not found")

    return ProbeResult(spec, Outcome.FAIL, f"Container '{spec.target}' is {state}")


def _probe_port_reachable(spec: ProbeSpec, executor: CommandExecutor, defaults: Defaults) -> ProbeResult:
    timeout = spec.timeout or PORT_CONNECT_TIMEOUT
    vantage = spec.context or defaults.probe_vantage
    endpoint = f"{spec.host}:{spec.port}"
    if vantage is None:
        reachable = is_port_open(spec.host, spec.port, timeout=timeout)
        where = "the orchestration host"
    else:
        result = executor.in_service(
            vantage,
            ["timeout", str(timeout), "bash", "-c", f"echo > /dev/tcp/{spec.host}/{spec.port}"],
            timeout=timeout + 10,
        )
        reachable = result.ok
        where = vantage

    outcome = classify_port(reachable, spec.critical)
    if reachable:
        return ProbeResult(spec, outcome, f"{endpoint} is reachable from {where}")
    if outcome is Outcome.WARN:
        return ProbeResult(spec, outcome, f"Cannot reach {endpoint} from {where} (may be normal if no connections)")

    return ProbeResult(spec, outcome, f"Cannot reach {endpoint} from {where}")


def _probe_log_contains(spec: ProbeSpec, executor: CommandExecutor, defaults: Defaults) -> ProbeResult:
    tail = spec.tail or defaults.log_tail
    logs = executor.compose("logs", "--no-color", "--tail", str(tail), spec.target, timeout=spec.timeout)
    found = logs.ok and re.search(spec.pattern, logs.output) is not None
    running = found or container_state(executor, spec.target) == RUNNING_STATE
    outcome = classify_log(found, running)
    if outcome is Outcome.PASS:
        return ProbeResult(spec, outcome, f"Found /{spec.pattern}/ in the last {tail} log lines of {spec.target}")
    if outcome is Outcome.WARN:
        return ProbeResult(spec, outcome, f"{spec.target} is running but its logs don't show /{spec.pattern}/ yet "
                                          "(service may still be initializing)")

    return ProbeResult(spec, outcome, f"{spec.target} is not running")


def _probe_command_output(spec: ProbeSpec, executor: CommandExecutor, _defaults: Defaults) -> ProbeResult:
    result = executor.execute(spec.command, timeout=spec.timeout, target=spec.context)
    if spec.pattern is None:
        matched = result.ok
        match_line = "command succeeded"
    else:
        match = re.search(spec.pattern, result.output)
        matched = match is not None
        match_line = match.group(0).strip() if match else ""

    if matched:
        return ProbeResult(spec, Outcome.PASS, match_line, output=head_lines(result.output, spec.show_output))

    return ProbeResult(spec, _mismatch_outcome(spec), _describe_mismatch(spec, result))


def _probe_numeric_threshold(spec: ProbeSpec, executor: CommandExecutor, _defaults: Defaults) -> ProbeResult:
    result = executor.execute(spec.command, timeout=spec.timeout, target=spec.context)
    value = parse_labelled_number(result.output, spec.label)
    outcome = classify_threshold(value, spec.expected, spec.minimum, spec.comparator)
    if value is None:
        return ProbeResult(spec, outcome, f"Could not determine the value: {_describe_mismatch(spec, result)}")

    limits = f"expected: {'<=' if spec.comparator is Comparator.LE else '>='}{spec.expected}"
    return ProbeResult(spec, outcome, f"Found {value} ({limits})", value=value)


def _probe_http_ok(spec: ProbeSpec, _executor: CommandExecutor, _defaults: Defaults) -> ProbeResult:
    try:
        response = requests.get(spec.url, timeout=spec.timeout or 5)
    except requests.RequestException as error:
        return ProbeResult(spec, Outcome.WARN, f"{spec.url} is not responding ({error.__class__.__name__}), "
                                               "service may be initializing")

    if response.status_code == 200:
        return ProbeResult(spec, Outcome.PASS, f"{spec.url} is accessible")

    return ProbeResult(spec, Outcome.WARN, f"{spec.url} returned HTTP {response.status_code} "
                                           "(service may be initializing)")


def _describe_mismatch(spec: ProbeSpec, result: CommandResult) -> str:
    if not result.ok:
        return result.describe()
    if spec.pattern is not None:
        return f"/{spec.pattern}/ not found in the output"
    return "unexpected output"


PROBES: Dict[ProbeKind, Callable[[ProbeSpec, CommandExecutor, Defaults], ProbeResult]] = {
    ProbeKind.CONTAINER_UP: _probe_container_up,
    ProbeKind.PORT_REACHABLE: _probe_port_reachable,
    ProbeKind.LOG_CONTAINS: _probe_log_contains,
    ProbeKind.COMMAND_OUTPUT_MATCHES: _probe_command_output,
    ProbeKind.NUMERIC_THRESHOLD: _probe_numeric_threshold,
    ProbeKind.HTTP_OK: _probe_http_ok,
}


def run_probe(spec: ProbeSpec, executor: CommandExecutor, defaults: Optional[Defaults] = None) -> ProbeResult:
    """Run a single probe, any unexpected error is reported as a FAIL result."""
    defaults = defaults or Defaults()
    try:
        return PROBES[spec.kind](spec, executor, defaults)
    except RuntimeNotInstalledError:
        raise
    # pylint: disable=broad-except
    except Exception as error:
        LOGGER.exception("Probe '%s' raised an error", spec.name)
        return ProbeResult(spec, Outcome.FAIL, f"Probe raised {error.__class__.__name__}: {error}")


class HealthProber:
    """Run all the configured probes, phase by phase."""

    def __init__(self, executor: CommandExecutor, config: ClusterConfig):
        """Init."""
        self._executor = executor
        self._config = config

    def probes_for(self, phases: Optional[Iterable[str]] = None) -> List[ProbeSpec]:
        """The probes to run, in report order, optionally limited to some phases."""
        selected = list(phases) if phases is not None else self._config.phases
        unknown = set(selected) - set(self._config.phases)
        if unknown:
            raise ValueError(f"Unknown probe phases: {', '.join(sorted(unknown))}")

        return [probe for phase in selected for probe in self._config.probes if probe.phase == phase]

    def run(
        self,
        phases: Optional[Iterable[str]] = None,
        on_result: Optional[Callable[[ProbeResult], None]] = None,
    ) -> List[ProbeResult]:
        """Run the probes sequentially and return their results in order."""
        results = []
        for probe in self.probes_for(phases):
            result = run_probe(probe, self._executor, self._config.defaults)
            if on_result is not None:
                on_result(result)
            results.append(result)

        return results
