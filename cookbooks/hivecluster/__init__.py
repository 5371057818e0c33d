"""Hadoop/Hive Docker Compose cluster operations

The cluster is a single-host Docker Compose project made of:
- Zookeeper, used by the Hadoop daemons for coordination
- HDFS: one Namenode and two Datanodes
- Yarn: a ResourceManager, a NodeManager and the MapReduce History Server
- Hive: a Postgres database backing the Metastore, the Metastore itself and HiveServer2
- Two client containers (hadoop-cli and hive-cli) used to run commands against the cluster

Services depend on each other and need some time to initialize, so they are started strictly one at a time in the
order of the service table (cluster.yaml), each one only after the previous ones are up and running.

Usage example:
    cookbook hivecluster.start-cluster --project-directory /srv/hadoop-hive
    cookbook hivecluster.validate-cluster --json
    cookbook hivecluster.diagnose hdfs
    cookbook hivecluster.stop-cluster --full

"""
import argparse
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from spicerack.cookbook import CookbookRunnerBase

from cookbooks.hivecluster.libs.config import DEFAULT_CONFIG_FILE, ClusterConfig, load_cluster_config
from cookbooks.hivecluster.libs.executor import CommandExecutor

__owner_team__ = "Data Platform"
__title__ = __doc__


@dataclass(frozen=True)
class ClusterOpts:
    """Common Hadoop/Hive cluster cookbook options."""

    config: Optional[str] = None
    project_directory: Optional[str] = None

    def load_config(self) -> ClusterConfig:
        """Load and validate the service table."""
        return load_cluster_config(self.config)

    def get_executor(self, config: ClusterConfig, dry_run: bool = False) -> CommandExecutor:
        """Get a command executor for the compose project."""
        return CommandExecutor(
            binary=config.binary,
            project_directory=self.project_directory,
            compose_file=config.compose_file,
            default_timeout=config.defaults.command_timeout,
            dry_run=dry_run,
        )

    def path(self, relative: str) -> Path:
        """Resolve a path relative to the project directory."""
        base = Path(self.project_directory) if self.project_directory is not None else Path.cwd()
        return base / relative


def add_cluster_opts(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Adds the common cluster options to a cookbook parser."""
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to the YAML service table, the one shipped with the cookbooks ({DEFAULT_CONFIG_FILE.name}) "
        "is used if not set.",
    )
    parser.add_argument(
        "--project-directory",
        default=None,
        help="Directory of the Docker Compose project, the current working directory is used if not set.",
    )

    return parser


def with_cluster_opts(args: argparse.Namespace, runner: CookbookRunnerBase) -> Callable:
    """Helper to add ClusterOpts to a cookbook instantation."""
    cluster_opts = ClusterOpts(config=args.config, project_directory=args.project_directory)

    return partial(runner, cluster_opts=cluster_opts)
