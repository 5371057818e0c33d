#!/usr/bin/env python3
"""Aggregate probe results into a validation report."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from prettytable import PrettyTable

from cookbooks.hivecluster.libs.probes import Outcome, ProbeResult

LOGGER = logging.getLogger(__name__)
DEFAULT_DEGRADED_MAX_FAILURES = 3
START_CLUSTER_COMMAND = "cookbook hivecluster.start-cluster"


class Verdict(str, Enum):
    """Overall health of the cluster."""

    EXCELLENT = "EXCELLENT"
    DEGRADED = "DEGRADED"
    CRITICAL = "CRITICAL"


VERDICT_EXPLANATIONS = {
    Verdict.EXCELLENT: "All critical services are running and healthy.",
    Verdict.DEGRADED: "Some services are not responding but core functionality may work. "
                      "Check the failures above and review the container logs.",
    Verdict.CRITICAL: "Multiple services are not running. Start the cluster and try again.",
}


def verdict_for(fail_count: int, degraded_max_failures: int = DEFAULT_DEGRADED_MAX_FAILURES) -> Verdict:
    """Only the number of failures counts, warnings never affect the verdict."""
    if fail_count == 0:
        return Verdict.EXCELLENT
    if fail_count <= degraded_max_failures:
        return Verdict.DEGRADED
    return Verdict.CRITICAL


@dataclass(frozen=True)
class Counts:
    """Number of results per outcome."""

    passed: int = 0
    warned: int = 0
    failed: int = 0

    def add(self, outcome: Outcome) -> "Counts":
        """Return new counts with the given outcome accounted for."""
        if outcome is Outcome.PASS:
            return Counts(self.passed + 1, self.warned, self.failed)
        if outcome is Outcome.WARN:
            return Counts(self.passed, self.warned + 1, self.failed)
        return Counts(self.passed, self.warned, self.failed + 1)

    @property
    def total(self) -> int:
        """Total number of results."""
        return self.passed + self.warned + self.failed


@dataclass(frozen=True)
class Report:
    """The outcome of a validation run."""

    counts: Counts
    results: Tuple[ProbeResult, ...]
    verdict: Verdict

    @classmethod
    def from_results(
        cls, results: Iterable[ProbeResult], degraded_max_failures: int = DEFAULT_DEGRADED_MAX_FAILURES
    ) -> "Report":
        """Fold the results into a report."""
        counts = Counts()
        collected = []
        for result in results:
            counts = counts.add(result.outcome)
            collected.append(result)

        return cls(
            counts=counts,
            results=tuple(collected),
            verdict=verdict_for(counts.failed, degraded_max_failures),
        )

    @property
    def exit_code(self) -> int:
        """0 only for a healthy cluster, for scripting."""
        return 0 if self.verdict is Verdict.EXCELLENT else 1

    def to_dict(self) -> Dict[str, object]:
        """Machine readable representation of the report."""
        return {
            "counts": {"pass": self.counts.passed, "warn": self.counts.warned, "fail": self.counts.failed},
            "verdict": self.verdict.value,
            "results": [result.to_dict() for result in self.results],
        }

    def summary_table(self) -> PrettyTable:
        """The counts as a table."""
        table = PrettyTable()
        table.field_names = ["Tests passed", "Tests warning", "Tests failed", "Cluster health"]
        table.add_row([self.counts.passed, self.counts.warned, self.counts.failed, self.verdict.value])
        return table


def log_result(result: ProbeResult) -> None:
    """Log a probe result as a tagged line."""
    message = "%s: %s - %s"
    args = (result.outcome.value, result.spec.name, result.detail)
    if result.outcome is Outcome.PASS:
        LOGGER.info(message, *args)
    elif result.outcome is Outcome.WARN:
        LOGGER.warning(message, *args)
    else:
        LOGGER.error(message, *args)

    if result.output:
        LOGGER.info("%s", result.output)


def render(report: Report, log_results: bool = True, dashboards: Optional[Dict[str, str]] = None) -> None:
    """Print the report to the operator console."""
    if log_results:
        phase = None
        for result in report.results:
            if result.spec.phase != phase:
                phase = result.spec.phase
                LOGGER.info("==== %s ====", phase.upper())
            log_result(result)

    LOGGER.info("==== VALIDATION SUMMARY ====")
    print(report.summary_table())
    if report.verdict is Verdict.EXCELLENT:
        LOGGER.info("CLUSTER HEALTH: %s. %s", report.verdict.value, VERDICT_EXPLANATIONS[report.verdict])
        for name, url in (dashboards or {}).items():
            LOGGER.info("  - %s: %s", name, url)
    else:
        LOGGER.error("CLUSTER HEALTH: %s. %s", report.verdict.value, VERDICT_EXPLANATIONS[report.verdict])
        if report.verdict is Verdict.CRITICAL:
            LOGGER.info("Start the cluster with: %s", START_CLUSTER_COMMAND)
