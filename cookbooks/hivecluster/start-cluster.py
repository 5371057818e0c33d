"""Start the Hadoop/Hive cluster one service at a time.

Every service is started only after all the services before it in the service table are up and settled, the first
failure stops the start-up and leaves the remaining services untouched. Services already running are left as they
are, so the cookbook can be run again after fixing the issue.

Usage example:
    cookbook hivecluster.start-cluster --project-directory /srv/hadoop-hive

"""
import argparse
import logging
from typing import Optional

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase, CookbookRunnerBase
from wmflib.interactive import ensure_shell_is_durable

from cookbooks import ArgparseFormatter
from cookbooks.hivecluster import ClusterOpts, add_cluster_opts, with_cluster_opts
from cookbooks.hivecluster.libs.orchestrator import RunState, StageOrchestrator

LOGGER = logging.getLogger(__name__)
QUICK_COMMANDS = {
    "Validate cluster health": "cookbook hivecluster.validate-cluster",
    "Diagnose issues": "cookbook hivecluster.diagnose [TARGET]",
    "Open Hadoop CLI": "docker compose exec hadoop-cli bash",
    "Open Hive CLI": "docker compose exec hive-cli bash",
    "View logs": "docker compose logs -f <service>",
    "Stop cluster": "cookbook hivecluster.stop-cluster",
}


class StartCluster(CookbookBase):
    """Start all the services of the Hadoop/Hive cluster in dependency order."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = argparse.ArgumentParser(
            prog=__name__,
            description=__doc__,
            formatter_class=ArgparseFormatter,
        )
        add_cluster_opts(parser)

        return parser

    def get_runner(self, args: argparse.Namespace) -> CookbookRunnerBase:
        """Get runner"""
        return with_cluster_opts(args, StartClusterRunner)(spicerack=self.spicerack)


class StartClusterRunner(CookbookRunnerBase):
    """Runner for StartCluster"""

    def __init__(self, cluster_opts: ClusterOpts, spicerack: Spicerack):
        """Init"""
        self.cluster_opts = cluster_opts
        self.dry_run = spicerack.dry_run
        self.config = cluster_opts.load_config()
        self.executor = cluster_opts.get_executor(self.config, dry_run=self.dry_run)

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for the {len(self.config.services)} services of {self.cluster_opts.path('.').resolve()}"

    def run(self) -> Optional[int]:
        """Main entry point"""
        ensure_shell_is_durable()
        LOGGER.info("Running pre-flight checks...")
        self.executor.check_runtime()
        LOGGER.info("%s and compose are available", self.executor.binary)
        self.create_data_directories()

        orchestrator = StageOrchestrator(
            executor=self.executor,
            services=self.config.services,
            dry_run=self.dry_run,
            ready_timeout=self.config.defaults.ready_timeout,
            ready_interval=self.config.defaults.ready_interval,
        )
        stage_run = orchestrator.start_all()
        for line in stage_run.summary_lines():
            LOGGER.info("%s", line)

        if stage_run.state is not RunState.COMPLETED:
            failed = stage_run.failed_stage
            LOGGER.error(
                "Cluster start-up aborted at %s. Check its logs with 'docker compose logs %s', fix the issue and run "
                "the cookbook again.",
                failed.name if failed else "unknown stage",
                failed.name if failed else "<service>",
            )
            return 1

        self.show_status()
        return 0

    def create_data_directories(self) -> None:
        """Create the local directories mounted by the containers."""
        for directory in self.config.data_directories:
            path = self.cluster_opts.path(directory)
            if self.dry_run:
                LOGGER.info("Would have created directory %s", path)
                continue

            path.mkdir(parents=True, exist_ok=True)
            LOGGER.debug("Created directory %s", path)

        LOGGER.info("Data directories are in place")

    def show_status(self) -> None:
        """Show the containers and how to reach the cluster."""
        status = self.executor.compose("ps", timeout=30)
        if status.ok:
            print(status.stdout)
        else:
            LOGGER.warning("Unable to get the containers status: %s", status.describe())

        LOGGER.info("CLUSTER IS READY!")
        if self.config.dashboards:
            LOGGER.info("Access the cluster dashboards:")
            for name, url in self.config.dashboards.items():
                LOGGER.info("  %s: %s", name, url)

        LOGGER.info("Quick commands:")
        for description, command in QUICK_COMMANDS.items():
            LOGGER.info("  %s: %s", description, command)
