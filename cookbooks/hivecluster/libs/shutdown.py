#!/usr/bin/env python3
"""Stop the cluster and optionally wipe its data."""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from cookbooks.hivecluster.libs.executor import CommandExecutor, CommandResult

LOGGER = logging.getLogger(__name__)
DELETE_VOLUMES_PROMPT = "This will DELETE ALL DATA in HDFS and Hive. Continue?"


def never_confirm(_message: str) -> bool:
    """Default confirmation that keeps the data."""
    return False


@dataclass
class StopResult:
    """What a stop did."""

    steps: List[Tuple[str, CommandResult]] = field(default_factory=list)
    volumes_removed: bool = False
    data_cleaned: bool = False
    still_running: Optional[int] = None

    @property
    def ok(self) -> bool:
        """True if all the executed steps succeeded."""
        return all(result.ok for _, result in self.steps)


class ClusterStopper:
    """Stop and remove the containers of the project, destroying data only when explicitly confirmed."""

    def __init__(self, executor: CommandExecutor, data_directory: Optional[Path] = None, dry_run: bool = False):
        """Init."""
        self._executor = executor
        self._data_directory = data_directory
        self._dry_run = dry_run

    def stop(self, force: bool = False, full: bool = False, confirm: Callable[[str], bool] = never_confirm
             ) -> StopResult:
        """Stop the cluster.

        Arguments:
            force (bool): kill the containers instead of stopping them gracefully.
            full (bool): also remove the volumes and the local data directory contents.
            confirm (callable): asked before each destructive action, data is preserved unless it returns True.

        """
        result = StopResult()
        if force:
            LOGGER.warning("Force stopping containers (may cause data loss)...")
            stop = self._executor.compose("kill", is_safe=False)
        else:
            LOGGER.info("Gracefully stopping containers...")
            stop = self._executor.compose("stop", is_safe=False, timeout=300)

        result.steps.append(("stop", stop))
        if not stop.ok:
            LOGGER.error("Unable to stop the containers: %s", stop.describe())
            return result

        LOGGER.info("All containers stopped")
        remove = self._executor.compose("rm", "-f", is_safe=False)
        result.steps.append(("rm", remove))
        if not remove.ok:
            LOGGER.error("Unable to remove the containers: %s", remove.describe())
            return result

        LOGGER.info("Containers removed")
        if full:
            result.volumes_removed = self._remove_volumes(result, confirm)
            result.data_cleaned = self._clean_data_directory(confirm)

        result.still_running = self.running_containers()
        return result

    def _remove_volumes(self, result: StopResult, confirm: Callable[[str], bool]) -> bool:
        if not confirm(DELETE_VOLUMES_PROMPT):
            LOGGER.info("Data volumes preserved")
            return False

        LOGGER.warning("Removing data volumes...")
        down = self._executor.compose("down", "-v", is_safe=False, timeout=300)
        result.steps.append(("down", down))
        if not down.ok:
            LOGGER.error("Unable to remove the volumes: %s", down.describe())
            return False

        LOGGER.info("Volumes removed")
        return True

    def _clean_data_directory(self, confirm: Callable[[str], bool]) -> bool:
        directory = self._data_directory
        if directory is None or not directory.is_dir():
            LOGGER.info("Data directory not found")
            return False

        if not confirm(f"This will DELETE all files in {directory} directory. Continue?"):
            LOGGER.info("Data directory preserved")
            return False

        if self._dry_run:
            LOGGER.info("Would have removed the contents of %s", directory)
            return True

        LOGGER.warning("Removing the contents of %s...", directory)
        for child in directory.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()

        LOGGER.info("Data directory cleaned")
        return True

    def running_containers(self) -> Optional[int]:
        """Number of containers of the project still running, None if unknown."""
        result = self._executor.compose("ps", "-q")
        if not result.ok:
            LOGGER.warning("Unable to verify the containers status: %s", result.describe())
            return None

        running = len([line for line in result.stdout.splitlines() if line.strip()])
        if running:
            LOGGER.warning("%s containers may still be running", running)
        else:
            LOGGER.info("All containers have been stopped")

        return running
