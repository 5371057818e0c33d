"""Stop the Hadoop/Hive cluster.

By default the containers are gracefully stopped and removed, while the data volumes and the local data directory
are preserved so that the next start-up finds HDFS and the Hive metastore as they were.

With --full the volumes and the contents of the local data directory are deleted too, each only after an explicit
confirmation. --yes answers yes to all the confirmations and is meant for scripting.

Usage example:
    cookbook hivecluster.stop-cluster
    cookbook hivecluster.stop-cluster --force
    cookbook hivecluster.stop-cluster --full

"""
import argparse
import logging
from typing import Optional

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase, CookbookRunnerBase
from wmflib.interactive import AbortError, ask_confirmation, ensure_shell_is_durable

from cookbooks import ArgparseFormatter
from cookbooks.hivecluster import ClusterOpts, add_cluster_opts, with_cluster_opts
from cookbooks.hivecluster.libs.shutdown import ClusterStopper

LOGGER = logging.getLogger(__name__)


class StopCluster(CookbookBase):
    """Stop and remove the containers of the Hadoop/Hive cluster, optionally deleting all its data."""

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
            "--full",
            action="store_true",
            help="Remove the containers AND delete all the data volumes and the local data directory contents.",
        )
        parser.add_argument(
            "--force",
            action="store_true",
            help="Kill the containers immediately instead of stopping them gracefully.",
        )
        parser.add_argument(
            "--yes",
            action="store_true",
            help="Do not ask for any confirmation, including the ones before deleting data.",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> CookbookRunnerBase:
        """Get runner"""
        return with_cluster_opts(args, StopClusterRunner)(
            full=args.full,
            force=args.force,
            assume_yes=args.yes,
            spicerack=self.spicerack,
        )


class StopClusterRunner(CookbookRunnerBase):
    """Runner for StopCluster"""

    def __init__(
        self,
        cluster_opts: ClusterOpts,
        spicerack: Spicerack,
        full: bool = False,
        force: bool = False,
        assume_yes: bool = False,
    ):
        """Init"""
        self.full = full
        self.force = force
        self.assume_yes = assume_yes
        self.config = cluster_opts.load_config()
        self.executor = cluster_opts.get_executor(self.config, dry_run=spicerack.dry_run)
        data_root = self.config.data_root
        self.stopper = ClusterStopper(
            executor=self.executor,
            data_directory=cluster_opts.path(data_root) if data_root is not None else None,
            dry_run=spicerack.dry_run,
        )

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        mode = "forced" if self.force else "graceful"
        return f"{mode} stop{' and full data cleanup' if self.full else ''}"

    def confirm(self, message: str) -> bool:
        """Ask the operator, a refusal is not an error."""
        if self.assume_yes:
            return True

        try:
            ask_confirmation(message)
        except AbortError:
            return False

        return True

    def run(self) -> Optional[int]:
        """Main entry point"""
        ensure_shell_is_durable()
        self.executor.check_runtime()
        LOGGER.info("Full cleanup: %s, force stop: %s", self.full, self.force)
        if self.full:
            LOGGER.warning(
                "Full cleanup will DELETE ALL DATA: the containers, the data volumes (HDFS, Hive metastore "
                "database) and the contents of the local data directory."
            )

        if not self.confirm("Proceed with shutdown?"):
            LOGGER.info("Shutdown cancelled")
            return 0

        result = self.stopper.stop(force=self.force, full=self.full, confirm=self.confirm)
        if not result.ok:
            failed = [name for name, step in result.steps if not step.ok]
            if any(name in ("stop", "rm") for name in failed):
                LOGGER.error("Cluster shutdown failed at: %s", ", ".join(failed))
                return 1

        LOGGER.info("Cluster shutdown completed")
        if not result.volumes_removed:
            LOGGER.info("Data volumes are preserved, start the cluster again with 'cookbook hivecluster.start-cluster'")

        return 0
