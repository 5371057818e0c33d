"""Validate the health of the Hadoop/Hive cluster.

Runs read-only probes phase by phase (containers, network, HDFS, Yarn, Hive, Zookeeper, web UIs, disk and container
resources) and classifies each one as PASS, WARN or FAIL. The overall health only depends on the number of failures:
- EXCELLENT: no failures
- DEGRADED: up to 3 failures (tunable in the service table)
- CRITICAL: more failures

The cookbook exits with 0 only if the cluster health is EXCELLENT.

Usage example:
    cookbook hivecluster.validate-cluster
    cookbook hivecluster.validate-cluster --phase hdfs --phase yarn --json

"""
import argparse
import json
import logging
from typing import List, Optional

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase, CookbookRunnerBase

from cookbooks import ArgparseFormatter
from cookbooks.hivecluster import ClusterOpts, add_cluster_opts, with_cluster_opts
from cookbooks.hivecluster.libs.probes import HealthProber, ProbeResult
from cookbooks.hivecluster.libs.report import Report, log_result, render

LOGGER = logging.getLogger(__name__)


class ValidateCluster(CookbookBase):
    """Run the health probes against the Hadoop/Hive cluster and report its health."""

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
            "--phase",
            dest="phases",
            action="append",
            default=None,
            help="Run only the probes of the given phase, can be repeated. All the phases are run if not set.",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Print the report as JSON instead of the per probe lines and the summary table.",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> CookbookRunnerBase:
        """Get runner"""
        return with_cluster_opts(args, ValidateClusterRunner)(
            phases=args.phases,
            as_json=args.json,
            spicerack=self.spicerack,
        )


class ValidateClusterRunner(CookbookRunnerBase):
    """Runner for ValidateCluster"""

    def __init__(
        self,
        cluster_opts: ClusterOpts,
        spicerack: Spicerack,
        phases: Optional[List[str]] = None,
        as_json: bool = False,
    ):
        """Init"""
        self.cluster_opts = cluster_opts
        self.as_json = as_json
        self.config = cluster_opts.load_config()
        self.executor = cluster_opts.get_executor(self.config, dry_run=spicerack.dry_run)
        self.prober = HealthProber(executor=self.executor, config=self.config)
        # Fail early on unknown phases, before running anything
        self.probes = self.prober.probes_for(phases)
        self.phases = phases
        self._current_phase: Optional[str] = None

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"running {len(self.probes)} probes"

    def run(self) -> Optional[int]:
        """Main entry point"""
        self.executor.ensure_installed()
        if not self.as_json:
            LOGGER.info("Validating the cluster with %s probes...", len(self.probes))

        results = self.prober.run(phases=self.phases, on_result=None if self.as_json else self._log_live)
        report = Report.from_results(results, degraded_max_failures=self.config.defaults.degraded_max_failures)
        if self.as_json:
            print(json.dumps(report.to_dict(), indent=4))
        else:
            render(report, log_results=False, dashboards=self.config.dashboards)

        return report.exit_code

    def _log_live(self, result: ProbeResult) -> None:
        if result.spec.phase != self._current_phase:
            self._current_phase = result.spec.phase
            LOGGER.info("==== %s ====", result.spec.phase.upper())
        log_result(result)
