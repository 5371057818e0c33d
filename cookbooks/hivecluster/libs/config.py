#!/usr/bin/env python3
"""Service descriptor table for the Hadoop/Hive compose project.

The table is a YAML document (see cookbooks/hivecluster/cluster.yaml for the default one) listing, in start order,
the services of the cluster, the health probes to run against them and the read-only checks used to diagnose each
subsystem.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from wmflib.config import load_yaml_config

from cookbooks.hivecluster.libs.executor import HiveClusterError

LOGGER = logging.getLogger(__name__)
DEFAULT_CONFIG_FILE = Path(__file__).resolve().parent.parent / "cluster.yaml"


class ClusterConfigError(HiveClusterError):
    """Raised when the cluster configuration is not valid."""


class ProbeKind(Enum):
    """Supported kinds of health probes."""

    CONTAINER_UP = "container_up"
    PORT_REACHABLE = "port_reachable"
    LOG_CONTAINS = "log_contains"
    COMMAND_OUTPUT_MATCHES = "command_output_matches"
    NUMERIC_THRESHOLD = "numeric_threshold"
    HTTP_OK = "http_ok"

    def __str__(self):
        """Needed to show the nice string values."""
        return self.value


class Comparator(Enum):
    """How a NumericThreshold value is compared with its limits."""

    GE = "ge"
    LE = "le"

    def __str__(self):
        """Needed to show the nice string values."""
        return self.value


@dataclass(frozen=True)
class ServiceDescriptor:
    """A compose service, its start order constraints and how long to let it settle."""

    name: str
    depends_on: frozenset = field(default_factory=frozenset)
    settle_seconds: int = 0
    start_command: Tuple[str, ...] = ()
    ready_timeout: Optional[int] = None
    subsystem: Optional[str] = None
    description: str = ""

    @property
    def compose_start_args(self) -> Tuple[str, ...]:
        """The docker compose arguments to start the service."""
        return self.start_command or ("up", "-d", self.name)


@dataclass(frozen=True)
class ProbeSpec:
    """A single read-only health check against one service."""

    name: str
    target: Optional[str]
    kind: ProbeKind
    phase: str = "general"
    host: Optional[str] = None
    port: Optional[int] = None
    critical: bool = True
    pattern: Optional[str] = None
    tail: Optional[int] = None
    command: Tuple[str, ...] = ()
    context: Optional[str] = None
    on_mismatch: str = "fail"
    label: Optional[str] = None
    expected: Optional[int] = None
    minimum: Optional[int] = None
    comparator: Comparator = Comparator.GE
    url: Optional[str] = None
    timeout: Optional[int] = None
    show_output: int = 0


@dataclass(frozen=True)
class SubsystemCheck:
    """A read-only command run to diagnose a subsystem."""

    description: str
    command: Tuple[str, ...]
    context: Optional[str] = None
    pattern: Optional[str] = None
    severity: str = "fail"
    show_output: int = 0
    timeout: Optional[int] = None


@dataclass(frozen=True)
class Subsystem:
    """A group of services diagnosed together, e.g. HDFS."""

    name: str
    requires: Optional[str] = None
    checks: Tuple[SubsystemCheck, ...] = ()


@dataclass(frozen=True)
class Defaults:
    """Tunables shared by all the cookbooks."""

    command_timeout: int = 60
    probe_vantage: Optional[str] = None
    ready_timeout: int = 60
    ready_interval: int = 5
    degraded_max_failures: int = 3
    log_tail: int = 20


@dataclass(frozen=True)
class ClusterConfig:
    """The whole descriptor table."""

    services: Tuple[ServiceDescriptor, ...]
    probes: Tuple[ProbeSpec, ...] = ()
    subsystems: Dict[str, Subsystem] = field(default_factory=dict)
    defaults: Defaults = field(default_factory=Defaults)
    binary: str = "docker"
    compose_file: Optional[str] = None
    network: Optional[str] = None
    data_directories: Tuple[str, ...] = ()
    published_ports: Tuple[int, ...] = ()
    dashboards: Dict[str, str] = field(default_factory=dict)

    @property
    def service_names(self) -> List[str]:
        """The service names in start order."""
        return [service.name for service in self.services]

    def service(self, name: str) -> ServiceDescriptor:
        """Get a service descriptor by name."""
        for service in self.services:
            if service.name == name:
                return service

        raise KeyError(name)

    @property
    def phases(self) -> List[str]:
        """The probe phases, in the order they first appear."""
        phases: List[str] = []
        for probe in self.probes:
            if probe.phase not in phases:
                phases.append(probe.phase)

        return phases

    @property
    def data_root(self) -> Optional[str]:
        """The top level local data directory, the first path component of the data directories."""
        for directory in self.data_directories:
            return Path(directory).parts[0]

        return None


def _as_int(value: Any, what: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ClusterConfigError(f"{what} must be an integer, got {value!r}")

    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ClusterConfigError(f"{what} must be an integer, got {value!r}") from error


def _as_data_directory(value: Any) -> str:
    """Data directories are wiped by a full stop, they must stay inside the project directory."""
    path = Path(str(value))
    if path.is_absolute():
        raise ClusterConfigError(f"Data directory {value} must be relative to the project directory")
    if not path.parts or ".." in path.parts:
        raise ClusterConfigError(f"Data directory {value!r} must be a subdirectory of the project directory")

    return str(path)


def _as_tuple(value: Any, what: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        raise ClusterConfigError(f"{what} must be a list of arguments, got the string {value!r}")

    return tuple(str(item) for item in value)


def _parse_service(data: Dict[str, Any], known: List[str]) -> ServiceDescriptor:
    try:
        name = data["name"]
    except KeyError as error:
        raise ClusterConfigError(f"Service without a name: {data}") from error

    if name in known:
        raise ClusterConfigError(f"Duplicated service {name}")

    depends_on = frozenset(data.get("depends_on") or ())
    unknown = depends_on - set(known)
    if unknown:
        raise ClusterConfigError(
            f"Service {name} depends on {sorted(unknown)}, that must be defined before it in the start order"
        )

    settle_seconds = _as_int(data.get("settle_seconds"), f"Service {name} settle_seconds") or 0
    if settle_seconds < 0:
        raise ClusterConfigError(f"Service {name} has a negative settle_seconds ({settle_seconds})")

    ready_timeout = _as_int(data.get("ready_timeout"), f"Service {name} ready_timeout")
    return ServiceDescriptor(
        name=name,
        depends_on=depends_on,
        settle_seconds=settle_seconds,
        start_command=_as_tuple(data.get("start_command"), f"{name} start_command"),
        ready_timeout=ready_timeout,
        subsystem=data.get("subsystem"),
        description=data.get("description", ""),
    )


def _parse_probe(data: Dict[str, Any], services: List[str]) -> ProbeSpec:
    name = data.get("name") or f"{data.get('kind')} {data.get('target')}"
    try:
        kind = ProbeKind(data["kind"])
    except (KeyError, ValueError) as error:
        raise ClusterConfigError(f"Probe '{name}' has an invalid kind: {data.get('kind')}") from error

    target = data.get("target")
    if target is None and kind in (ProbeKind.CONTAINER_UP, ProbeKind.LOG_CONTAINS):
        raise ClusterConfigError(f"Probe '{name}' ({kind}) needs a target service")
    if target is not None and target not in services:
        raise ClusterConfigError(f"Probe '{name}' targets the unknown service {target}")

    context = data.get("context")
    if context is not None and context not in services:
        raise ClusterConfigError(f"Probe '{name}' runs in the unknown service {context}")

    try:
        comparator = Comparator(data.get("comparator", "ge"))
    except ValueError as error:
        raise ClusterConfigError(f"Probe '{name}' has an invalid comparator: {data['comparator']}") from error

    on_mismatch = data.get("on_mismatch", "fail")
    if on_mismatch not in ("warn", "fail"):
        raise ClusterConfigError(f"Probe '{name}' on_mismatch must be warn or fail, got {on_mismatch}")

    probe = ProbeSpec(
        name=name,
        target=target,
        kind=kind,
        phase=data.get("phase", "general"),
        host=data.get("host"),
        port=_as_int(data.get("port"), f"Probe '{name}' port"),
        critical=bool(data.get("critical", True)),
        pattern=data.get("pattern"),
        tail=_as_int(data.get("tail"), f"Probe '{name}' tail"),
        command=_as_tuple(data.get("command"), f"Probe '{name}' command"),
        context=context,
        on_mismatch=on_mismatch,
        label=data.get("label"),
        expected=_as_int(data.get("expected"), f"Probe '{name}' expected"),
        minimum=_as_int(data.get("minimum"), f"Probe '{name}' minimum"),
        comparator=comparator,
        url=data.get("url"),
        timeout=_as_int(data.get("timeout"), f"Probe '{name}' timeout"),
        show_output=_as_int(data.get("show_output"), f"Probe '{name}' show_output") or 0,
    )
    _check_probe_parameters(probe)
    return probe


def _check_probe_parameters(probe: ProbeSpec) -> None:
    required = {
        ProbeKind.CONTAINER_UP: (),
        ProbeKind.PORT_REACHABLE: ("host", "port"),
        ProbeKind.LOG_CONTAINS: ("pattern",),
        ProbeKind.COMMAND_OUTPUT_MATCHES: ("command",),
        ProbeKind.NUMERIC_THRESHOLD: ("command", "label", "expected", "minimum"),
        ProbeKind.HTTP_OK: ("url",),
    }[probe.kind]
    missing = [param for param in required if getattr(probe, param) in (None, ())]
    if missing:
        raise ClusterConfigError(f"Probe '{probe.name}' ({probe.kind}) is missing: {', '.join(missing)}")

    if probe.kind is not ProbeKind.NUMERIC_THRESHOLD:
        return

    if probe.comparator is Comparator.GE and probe.minimum > probe.expected:
        raise ClusterConfigError(f"Probe '{probe.name}': minimum {probe.minimum} is above expected {probe.expected}")
    if probe.comparator is Comparator.LE and probe.minimum < probe.expected:
        raise ClusterConfigError(f"Probe '{probe.name}': limit {probe.minimum} is below expected {probe.expected}")


def _parse_subsystem(name: str, data: Dict[str, Any], services: List[str]) -> Subsystem:
    requires = data.get("requires")
    if requires is not None and requires not in services:
        raise ClusterConfigError(f"Subsystem {name} requires the unknown service {requires}")

    checks = []
    for check in data.get("checks") or ():
        context = check.get("context")
        if context is not None and context not in services:
            raise ClusterConfigError(f"Subsystem {name} check runs in the unknown service {context}")
        severity = check.get("severity", "fail")
        if severity not in ("warn", "fail"):
            raise ClusterConfigError(f"Subsystem {name} check severity must be warn or fail, got {severity}")

        checks.append(
            SubsystemCheck(
                description=check["description"],
                command=_as_tuple(check["command"], f"Subsystem {name} command"),
                context=context,
                pattern=check.get("pattern"),
                severity=severity,
                show_output=_as_int(check.get("show_output"), f"Subsystem {name} show_output") or 0,
                timeout=_as_int(check.get("timeout"), f"Subsystem {name} timeout"),
            )
        )

    return Subsystem(name=name, requires=requires, checks=tuple(checks))


def parse_cluster_config(data: Dict[str, Any]) -> ClusterConfig:
    """Build and validate a ClusterConfig from its loaded YAML representation."""
    if not data or not data.get("services"):
        raise ClusterConfigError("The cluster configuration must define at least one service")

    services: List[ServiceDescriptor] = []
    for service_data in data["services"]:
        services.append(_parse_service(service_data, [service.name for service in services]))

    names = [service.name for service in services]
    probes = tuple(_parse_probe(probe_data, names) for probe_data in data.get("probes") or ())
    subsystems = {
        name: _parse_subsystem(name, subsystem_data or {}, names)
        for name, subsystem_data in (data.get("subsystems") or {}).items()
    }
    for service in services:
        if service.subsystem is not None and service.subsystem not in subsystems:
            raise ClusterConfigError(f"Service {service.name} refers to the unknown subsystem {service.subsystem}")

    defaults_data = {
        key: value if key == "probe_vantage" else _as_int(value, f"Default {key}")
        for key, value in (data.get("defaults") or {}).items()
    }
    try:
        defaults = Defaults(**defaults_data)
    except TypeError as error:
        raise ClusterConfigError(f"Invalid defaults: {error}") from error

    if defaults.probe_vantage is not None and defaults.probe_vantage not in names:
        raise ClusterConfigError(f"The probe vantage {defaults.probe_vantage} is not a known service")

    compose = data.get("compose") or {}
    return ClusterConfig(
        services=tuple(services),
        probes=probes,
        subsystems=subsystems,
        defaults=defaults,
        binary=compose.get("binary", "docker"),
        compose_file=compose.get("file"),
        network=compose.get("network"),
        data_directories=tuple(_as_data_directory(directory) for directory in compose.get("data_directories") or ()),
        published_ports=tuple(_as_int(port, "Published port") for port in data.get("published_ports") or ()),
        dashboards=dict(data.get("dashboards") or {}),
    )


def load_cluster_config(config_file: Optional[Union[str, Path]] = None) -> ClusterConfig:
    """Load the cluster configuration from the given YAML file, or the bundled default one."""
    path = Path(config_file) if config_file is not None else DEFAULT_CONFIG_FILE
    LOGGER.debug("Loading the cluster configuration from %s", path)
    return parse_cluster_config(load_yaml_config(path))
