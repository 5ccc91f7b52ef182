"""
Drain supervision

Starts the eviction of a node through an EvictionBackend and watches it
until it completes or the wall-clock budget runs out:

    NOT_STARTED -> EVICTING -> SUCCEEDED | TIMED_OUT | FAILED

A timed out drain is cancelled and never retried within the same run.
"""

import time
from typing import Callable, List, Optional

from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .census import PodCensus
from .errors import DrainFailed, DrainTimedOut
from .eviction import DrainHandle, EvictionBackend, build_drain_command
from .kube import error_reason
from .models import DrainAttempt, DrainOptions, DrainOutcome, DrainState, EvictionResult, ProgressObservation

ProgressCallback = Callable[[ProgressObservation], None]


class DrainSupervisor:
    def __init__(self, backend: EvictionBackend, census: PodCensus, dry_run: bool = False,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 on_progress: Optional[ProgressCallback] = None):
        self.backend = backend
        self.census = census
        self.dry_run = dry_run
        self.clock = clock
        self.sleep = sleep
        self.on_progress = on_progress
        self.attempts: List[DrainAttempt] = []

    def drain(self, node: str, options: DrainOptions) -> DrainOutcome:
        logger.info(f"Draining node: {node}")
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would run: {' '.join(build_drain_command(node, options))}")
            return DrainOutcome.success()

        attempt = DrainAttempt(node=node)
        self.attempts.append(attempt)
        attempt.transition(DrainState.EVICTING)

        try:
            handle = self.backend.start_drain(node, options)
        except DrainFailed as e:
            logger.error(str(e))
            attempt.transition(DrainState.FAILED)
            return DrainOutcome.failed(e.reason)

        attempt.started_at = self.clock()
        attempt.deadline = attempt.started_at + options.timeout

        try:
            result = self._supervise(attempt, handle, options)
        except DrainTimedOut as e:
            logger.error(f"Drain operation timed out after {options.timeout:g} seconds.")
            attempt.transition(DrainState.TIMED_OUT)
            return DrainOutcome.timed_out(str(e))
        except Exception as e:
            logger.exception(f"Supervision of node {node} failed, cancelling eviction")
            self.backend.cancel(handle)
            attempt.transition(DrainState.FAILED)
            return DrainOutcome.failed(f"supervision failed: {e}")

        if result.ok:
            attempt.transition(DrainState.SUCCEEDED)
            logger.success(f"Node {node} drained successfully.")
            return DrainOutcome.success()

        attempt.transition(DrainState.FAILED)
        logger.error(f"Failed to drain node {node} ({result.error}).")
        return DrainOutcome.failed(result.error or "eviction failed")

    def _supervise(self, attempt: DrainAttempt, handle: DrainHandle, options: DrainOptions) -> EvictionResult:
        while True:
            result = self.backend.wait(handle, timeout=0)
            if result is not None:
                return result

            now = self.clock()
            if now >= attempt.deadline:
                self.backend.cancel(handle)
                raise DrainTimedOut(attempt.node, options.timeout)

            observation = ProgressObservation(
                node=attempt.node,
                elapsed=now - attempt.started_at,
                remaining_pods=self._remaining_pods(attempt.node, options),
                remaining_time=attempt.deadline - now,
            )
            attempt.observations.append(observation)
            self._report(observation)

            self.sleep(min(options.poll_interval, attempt.deadline - now))

    def _remaining_pods(self, node: str, options: DrainOptions) -> Optional[int]:
        try:
            return self.census.remaining(node, options)
        except (ApiException, HTTPError) as e:
            logger.warning(f"Could not count remaining pods on {node}: {error_reason(e)}")
            return None

    def _report(self, observation: ProgressObservation):
        remaining = "?" if observation.remaining_pods is None else observation.remaining_pods
        logger.info(
            f"Draining in progress: {remaining} pods remaining "
            f"({observation.elapsed:.0f}s elapsed, {observation.remaining_time:.0f}s remaining)"
        )
        if self.on_progress is not None:
            self.on_progress(observation)
