#!/usr/bin/env python3
"""Start the services of the cluster one stage at a time."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum, auto
from typing import Iterable, List, Optional, Union

from wmflib.decorators import retry

from cookbooks.hivecluster.libs.config import ServiceDescriptor
from cookbooks.hivecluster.libs.executor import CommandExecutor, HiveClusterError
from cookbooks.hivecluster.libs.probes import RUNNING_STATE, container_state

LOGGER = logging.getLogger(__name__)


class DependencyOrderError(HiveClusterError):
    """Raised when a service would be started before one of its dependencies."""


class ServiceNotReadyError(HiveClusterError):
    """Raised while polling a service that is not running yet."""


class ServiceState(Enum):
    """Lifecycle of a single service during a run."""

    NOT_STARTED = auto()
    STARTING = auto()
    SETTLED = auto()
    FAILED = auto()


class RunState(Enum):
    """Lifecycle of a whole orchestration run."""

    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    ABORTED = auto()


@dataclass
class StageRecord:
    """What happened to one service in a run."""

    descriptor: ServiceDescriptor
    state: ServiceState = ServiceState.NOT_STARTED
    error: Optional[str] = None

    @property
    def name(self) -> str:
        """The service name."""
        return self.descriptor.name


@dataclass
class StageRun:
    """Record of one orchestration attempt."""

    records: List[StageRecord] = field(default_factory=list)
    state: RunState = RunState.IDLE

    @classmethod
    def for_services(cls, services: Iterable[ServiceDescriptor]) -> "StageRun":
        """Get a new idle run for the given services."""
        return cls(records=[StageRecord(descriptor=service) for service in services])

    def record(self, name: str) -> StageRecord:
        """Get the record of a service by name."""
        for record in self.records:
            if record.name == name:
                return record

        raise KeyError(name)

    @property
    def settled(self) -> List[str]:
        """The services that reached the settled state."""
        return [record.name for record in self.records if record.state is ServiceState.SETTLED]

    @property
    def failed_stage(self) -> Optional[StageRecord]:
        """The record of the service that aborted the run, if any."""
        for record in self.records:
            if record.state is ServiceState.FAILED:
                return record

        return None

    def summary_lines(self) -> List[str]:
        """Human readable summary of the run."""
        lines = [f"Run {self.state.name.lower()}: {len(self.settled)}/{len(self.records)} services settled"]
        for position, record in enumerate(self.records, start=1):
            line = f"  {position:>2}. {record.name}: {record.state.name}"
            if record.error:
                line += f" ({record.error})"
            lines.append(line)

        return lines


class StageOrchestrator:
    """Start services strictly in order, waiting for each one to be ready before the next.

    The first failure aborts the run, the remaining services are left untouched. Starting a service that is already
    running is a no-op at the compose level, so a run can just be repeated after fixing the issue.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        services: Iterable[ServiceDescriptor],
        dry_run: bool = False,
        ready_timeout: int = 60,
        ready_interval: int = 5,
    ):
        """Init."""
        self._executor = executor
        self._services = list(services)
        self._dry_run = dry_run
        self._ready_timeout = ready_timeout
        self._ready_interval = ready_interval

    def start_all(self) -> StageRun:
        """Run all the stages and return the record of the run."""
        run = StageRun.for_services(self._services)
        run.state = RunState.RUNNING
        total = len(run.records)
        for position, record in enumerate(run.records, start=1):
            self._check_dependencies(record.descriptor, run)
            LOGGER.info("[%s/%s] Starting %s", position, total, record.name)
            self._start(record)
            if record.state is ServiceState.FAILED:
                run.state = RunState.ABORTED
                LOGGER.error("Stage %s (%s) failed, aborting the remaining stages: %s",
                             position, record.name, record.error)
                return run

            LOGGER.info("%s started", record.name)

        run.state = RunState.COMPLETED
        return run

    def _check_dependencies(self, descriptor: ServiceDescriptor, run: StageRun) -> None:
        pending = sorted(
            name for name in descriptor.depends_on if run.record(name).state is not ServiceState.SETTLED
        )
        if pending:
            raise DependencyOrderError(f"Refusing to start {descriptor.name}, dependencies not settled: {pending}")

    def _start(self, record: StageRecord) -> None:
        record.state = ServiceState.STARTING
        result = self._executor.compose(*record.descriptor.compose_start_args, is_safe=False)
        if not result.ok:
            record.state = ServiceState.FAILED
            record.error = result.describe()
            if result.output.strip():
                LOGGER.error("Output of the failed start of %s:\n%s", record.name, result.output.strip())
            return

        self._sleep(record.descriptor.settle_seconds, record.name)
        try:
            self._wait_ready(record.descriptor)
        except ServiceNotReadyError as error:
            record.state = ServiceState.FAILED
            record.error = str(error)
            return

        record.state = ServiceState.SETTLED

    def _sleep(self, seconds: Union[int, float], name: str) -> None:
        """A DRY-RUN aware version of time.sleep()."""
        if not seconds:
            return

        if self._dry_run:
            LOGGER.info("Would have waited %s seconds for %s to initialize", seconds, name)
        else:
            LOGGER.info("Waiting %s seconds for %s to initialize...", seconds, name)
            time.sleep(seconds)

    def _wait_ready(self, descriptor: ServiceDescriptor) -> None:
        """Poll the container state until it's running or the ready timeout expires."""
        timeout = descriptor.ready_timeout if descriptor.ready_timeout is not None else self._ready_timeout
        if self._dry_run or timeout <= 0:
            return

        if self._ready_interval > 0:
            tries = max(1, math.ceil(timeout / self._ready_interval)) + 1
        else:
            tries = 1

        @retry(
            tries=tries,
            delay=timedelta(seconds=self._ready_interval),
            backoff_mode="constant",
            exceptions=(ServiceNotReadyError,),
            failure_message=f"{descriptor.name} is not running yet",
        )
        def poll():
            state = container_state(self._executor, descriptor.name)
            if state != RUNNING_STATE:
                raise ServiceNotReadyError(
                    f"{descriptor.name} not ready after {timeout}s (container state: {state or 'not found'})"
                )

        poll()
