"""
Batch coordination

Drives every target node through census, cordon, drain and uncordon, one
node at a time and in input order. A failing node is recorded and the batch
moves on; only an operator "no" stops the run.
"""

from dataclasses import replace
from typing import List, Sequence

from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .census import PodCensus
from .confirm import ConfirmationGate
from .cordon import CordonController
from .errors import ConfirmationDenied, CordonFailed, UncordonFailed
from .kube import error_reason
from .models import BatchSummary, DrainOptions, DrainOutcome, NodeTarget
from .scheduler import UncordonScheduler
from .supervisor import DrainSupervisor


class BatchCoordinator:
    def __init__(self, census: PodCensus, cordon: CordonController, supervisor: DrainSupervisor,
                 scheduler: UncordonScheduler, gate: ConfirmationGate,
                 cordon_only: bool = False, uncordon_after: bool = False,
                 uncordon_delay: float = 0, dry_run: bool = False, assume_yes: bool = False):
        self.census = census
        self.cordon = cordon
        self.supervisor = supervisor
        self.scheduler = scheduler
        self.gate = gate
        self.cordon_only = cordon_only
        self.uncordon_after = uncordon_after
        self.uncordon_delay = uncordon_delay
        self.dry_run = dry_run
        self.assume_yes = assume_yes

    def run(self, targets: Sequence[NodeTarget], options: DrainOptions) -> BatchSummary:
        summary = BatchSummary(target_count=len(targets), dry_run=self.dry_run)
        names = [target.name for target in targets]

        if not self.dry_run:
            action = "cordon" if self.cordon_only else "drain"
            logger.warning(f"You are about to {action} the following nodes: {' '.join(names)}")
            logger.warning("This might cause pod disruption and service unavailability.")
            self.gate.require("Do you want to continue?", forced=self.assume_yes)

        for target in targets:
            logger.info(f"Processing node: {target.name}")
            try:
                outcome = self._process_node(target.name, options, summary)
            except ConfirmationDenied as e:
                e.summary = summary
                self.render(summary)
                raise
            summary.record(target.name, outcome)

        self.render(summary)
        return summary

    def _process_node(self, node: str, options: DrainOptions, summary: BatchSummary) -> DrainOutcome:
        try:
            unmanaged = self.census.check(node, options)
        except (ApiException, HTTPError) as e:
            logger.error(f"Failed to list pods on node {node}: {error_reason(e)}")
            return DrainOutcome.failed(f"pod census failed: {error_reason(e)}")

        if unmanaged and not options.force and not self.dry_run:
            logger.warning("Some pods may not be evicted (use --force to override)")
            self.gate.require(
                f"Node {node} runs {len(unmanaged)} pod(s) without a controller; "
                "draining deletes them for good. Continue?",
                forced=self.assume_yes,
            )
            options = replace(options, allow_unmanaged=True)

        try:
            self.cordon.cordon(node)
        except CordonFailed as e:
            logger.error(str(e))
            return DrainOutcome.failed(str(e))

        if not self.cordon_only:
            outcome = self.supervisor.drain(node, options)
            if not outcome.ok:
                return outcome

        if self.uncordon_after:
            try:
                self.scheduler.schedule(node, self.uncordon_delay)
            except UncordonFailed as e:
                logger.error(str(e))
                return DrainOutcome.failed(str(e))
            if self.uncordon_delay > 0 and not self.dry_run:
                summary.deferred_uncordons.append(node)

        return DrainOutcome.success()

    def render(self, summary: BatchSummary):
        for line in render_summary(summary, self.uncordon_delay):
            if summary.failed:
                logger.warning(line)
            else:
                logger.info(line)


def render_summary(summary: BatchSummary, uncordon_delay: float = 0) -> List[str]:
    lines = ["=" * 70, "Summary:"]
    if summary.dry_run:
        lines.append(f"Dry run completed for {summary.target_count} nodes.")
    else:
        lines.append(
            f"Processed {len(summary.outcomes)} of {summary.target_count} nodes: "
            f"{summary.succeeded} succeeded, {summary.failed} failed."
        )
        for node, outcome in summary.outcomes.items():
            lines.append(f"  {node:30s} {outcome}")
        if summary.failed:
            lines.append("Some nodes failed to process. Review the logs for details.")
        if summary.deferred_uncordons:
            nodes = " ".join(summary.deferred_uncordons)
            lines.append(f"Nodes will be automatically uncordoned after {uncordon_delay:g} seconds.")
            lines.append(f"To manually uncordon, run: kubectl uncordon {nodes}")
    lines.append("=" * 70)
    return lines
