#!/usr/bin/env python3
"""Run docker compose commands against the local Hadoop/Hive project."""
from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum, auto
from itertools import chain
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
from unittest import mock

LOGGER = logging.getLogger(__name__)
DEFAULT_COMMAND_TIMEOUT = 60
# Errors printed by docker compose itself when the exec target is not usable
TARGET_NOT_FOUND_PATTERNS = (
    re.compile(r"^no such service: \S+", re.IGNORECASE | re.MULTILINE),
    re.compile(r'^(error: )?service "[\w.-]+" is not running', re.IGNORECASE | re.MULTILINE),
    re.compile(r"^(error: )?no container found for ", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^error response from daemon: no such container", re.IGNORECASE | re.MULTILINE),
)


class HiveClusterError(Exception):
    """Parent exception for all the Hadoop/Hive cluster errors."""


class RuntimeUnavailableError(HiveClusterError):
    """Raised when the container runtime can't be reached."""


class RuntimeNotInstalledError(RuntimeUnavailableError):
    """Raised when the container runtime binary is not installed."""


class ExecStatus(Enum):
    """How a command execution ended."""

    COMPLETED = auto()
    TIMED_OUT = auto()
    TARGET_NOT_FOUND = auto()
    DRY_RUN = auto()


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single command execution."""

    command: tuple
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = 0
    status: ExecStatus = ExecStatus.COMPLETED

    @property
    def ok(self) -> bool:
        """True if the command ran to completion with a zero exit code."""
        return self.status in (ExecStatus.COMPLETED, ExecStatus.DRY_RUN) and self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        """True if the command was killed for exceeding its timeout."""
        return self.status is ExecStatus.TIMED_OUT

    @property
    def output(self) -> str:
        """Stdout and stderr together, as a shell 2>&1 would show them."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def describe(self) -> str:
        """Short human readable description of the failure, if any."""
        if self.timed_out:
            return f"timed out: {shlex.join(self.command)}"
        if self.status is ExecStatus.TARGET_NOT_FOUND:
            return f"target not found: {self.stderr.strip()}"
        if self.exit_code != 0:
            last_line = self.output.strip().splitlines()[-1:] or [""]
            return f"exit code {self.exit_code}: {last_line[0]}"
        return "ok"


class CommandExecutor:
    """Execute commands on the orchestration host or inside a compose service."""

    def __init__(
        self,
        binary: str = "docker",
        project_directory: Optional[Union[str, Path]] = None,
        compose_file: Optional[Union[str, Path]] = None,
        default_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        dry_run: bool = False,
    ):
        """Init."""
        self.binary = binary
        self.project_directory = Path(project_directory) if project_directory is not None else None
        self.compose_file = compose_file
        self.default_timeout = default_timeout
        self.dry_run = dry_run

    def ensure_installed(self) -> None:
        """Fail if the runtime binary is not in the PATH."""
        if shutil.which(self.binary) is None:
            raise RuntimeNotInstalledError(f"{self.binary} is not installed or not in PATH")

    def check_runtime(self) -> None:
        """Make sure the runtime binary, its daemon and the compose plugin are usable."""
        self.ensure_installed()
        daemon = self.run([self.binary, "ps"], timeout=30)
        if not daemon.ok:
            raise RuntimeUnavailableError(f"{self.binary} daemon is not running: {daemon.describe()}")

        compose = self.run([self.binary, "compose", "version"], timeout=30)
        if not compose.ok:
            raise RuntimeUnavailableError(f"{self.binary} compose is not available: {compose.describe()}")

    def compose_prefix(self) -> List[str]:
        """The argv prefix for any docker compose invocation."""
        prefix = [self.binary, "compose"]
        if self.project_directory is not None:
            prefix.extend(["--project-directory", str(self.project_directory)])
        if self.compose_file is not None:
            prefix.extend(["-f", str(self.compose_file)])

        return prefix

    def run(self, command: Sequence[str], timeout: Optional[float] = None, is_safe: bool = True) -> CommandResult:
        """Run a command on the orchestration host.

        Commands that change state (is_safe=False) are only logged when in dry-run mode.
        A missing runtime binary raises RuntimeNotInstalledError, everything else is reported in the result.
        """
        command = tuple(command)
        if self.dry_run and not is_safe:
            LOGGER.info("Would have run: %s", shlex.join(command))
            return CommandResult(command=command, status=ExecStatus.DRY_RUN)

        timeout = self.default_timeout if timeout is None else timeout
        LOGGER.debug("Running (timeout %ss): %s", timeout, shlex.join(command))
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                cwd=self.project_directory,
            )
        except FileNotFoundError as error:
            if command[0] == self.binary:
                raise RuntimeNotInstalledError(f"{command[0]} is not installed or not in PATH") from error
            return CommandResult(command=command, stderr=f"{command[0]}: command not found", exit_code=127)
        except subprocess.TimeoutExpired as error:
            LOGGER.debug("Timed out after %ss: %s", timeout, shlex.join(command))
            return CommandResult(
                command=command,
                stdout=_to_text(error.stdout),
                stderr=_to_text(error.stderr),
                exit_code=None,
                status=ExecStatus.TIMED_OUT,
            )

        LOGGER.debug("Exit code %s: %s", completed.returncode, shlex.join(command))
        return CommandResult(
            command=command,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )

    def compose(self, *args: str, timeout: Optional[float] = None, is_safe: bool = True) -> CommandResult:
        """Run a docker compose subcommand for the project."""
        return self.run([*self.compose_prefix(), *args], timeout=timeout, is_safe=is_safe)

    def in_service(self, service: str, command: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a read-only command inside the running container of a compose service."""
        result = self.compose("exec", "-T", service, *command, timeout=timeout)
        if result.exit_code not in (0, None) and _is_target_missing(result.stderr):
            return CommandResult(
                command=result.command,
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
                status=ExecStatus.TARGET_NOT_FOUND,
            )

        return result

    def execute(
        self,
        command: Sequence[str],
        timeout: Optional[float] = None,
        target: Optional[str] = None,
    ) -> CommandResult:
        """Run a command on the host, or inside the given service when a target is passed."""
        if target is None:
            return self.run(command, timeout=timeout)

        return self.in_service(target, command, timeout=timeout)


def _to_text(data: Union[bytes, str, None]) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data


def _is_target_missing(stderr: str) -> bool:
    return any(pattern.search(stderr) for pattern in TARGET_NOT_FOUND_PATTERNS)


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class TestUtils:
    """Generic testing utilities."""

    @staticmethod
    def to_parametrize(test_cases: Dict[str, Dict[str, Any]]) -> Dict[str, Union[str, List[Any]]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**TestUtils.to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        _param_names = sorted(set(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            return [test_case_params.get(must_param, None) for must_param in _param_names]

        if len(_param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]

        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(_param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def result(stdout: str = "", exit_code: Optional[int] = 0, **kwargs) -> CommandResult:
        """Build a CommandResult for a fake command."""
        return CommandResult(command=("fake",), stdout=stdout, exit_code=exit_code, **kwargs)

    @staticmethod
    def get_fake_executor(
        responses: Optional[List[CommandResult]] = None, side_effect: Optional[Any] = None
    ) -> mock.MagicMock:
        """Create a fake executor.

        Every call to run/compose/in_service/execute pops the next of the given responses. If side_effect is
        passed it is used as is on all of them instead.
        """
        fake_executor = mock.create_autospec(spec=CommandExecutor, instance=True)
        fake_executor.dry_run = False
        fake_executor.binary = "docker"
        fake_executor.project_directory = None
        if side_effect is None:
            queue = list(responses or [])

            def side_effect(*_args, **_kwargs):
                return queue.pop(0)

        for method in (fake_executor.run, fake_executor.compose, fake_executor.in_service, fake_executor.execute):
            method.side_effect = side_effect

        return fake_executor
