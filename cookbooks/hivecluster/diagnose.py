"""Collect diagnostics to troubleshoot the Hadoop/Hive cluster.

The target can be:
- all: system checks, status of all the containers and the diagnostics of all the subsystems (the default)
- system: container runtime, disk, memory, network and published ports checks
- a subsystem: zookeeper, hdfs, yarn or hive
- a service: its container status, resource usage and logs, plus the diagnostics of its subsystem if any

Only read-only commands are run. The findings are for a human to read, so the cookbook always exits with 0 unless the
container runtime is not installed.

Usage example:
    cookbook hivecluster.diagnose
    cookbook hivecluster.diagnose namenode

"""
import argparse
import logging
from typing import Optional

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase, CookbookRunnerBase

from cookbooks import ArgparseFormatter
from cookbooks.hivecluster import ClusterOpts, add_cluster_opts, with_cluster_opts
from cookbooks.hivecluster.libs.diagnostics import ALL_TARGET, DiagnosticsCollector, EntryStatus

LOGGER = logging.getLogger(__name__)


class Diagnose(CookbookBase):
    """Gather status, resource usage and logs of the Hadoop/Hive cluster."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = argparse.ArgumentParser(
            prog=__name__,
            description=__doc__,
            formatter_class=ArgparseFormatter,
        )
        add_cluster_opts(parser)
        parser.add_argument(
            "target",
            nargs="?",
            default=ALL_TARGET,
            help="What to diagnose: all, system, a subsystem or a service name.",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> CookbookRunnerBase:
        """Get runner"""
        return with_cluster_opts(args, DiagnoseRunner)(target=args.target, spicerack=self.spicerack)


class DiagnoseRunner(CookbookRunnerBase):
    """Runner for Diagnose"""

    def __init__(self, cluster_opts: ClusterOpts, spicerack: Spicerack, target: str = ALL_TARGET):
        """Init"""
        self.config = cluster_opts.load_config()
        self.executor = cluster_opts.get_executor(self.config, dry_run=spicerack.dry_run)
        self.collector = DiagnosticsCollector(executor=self.executor, config=self.config)
        if target not in self.collector.targets:
            raise ValueError(f"Unknown target {target}, must be one of: {', '.join(self.collector.targets)}")

        self.target = target

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for {self.target}"

    def run(self) -> Optional[int]:
        """Main entry point"""
        report = self.collector.diagnose(self.target)
        report.render()
        if report.count(EntryStatus.FAIL) or report.count(EntryStatus.WARN):
            LOGGER.info("Run 'cookbook hivecluster.validate-cluster' for the overall health of the cluster")

        return 0
