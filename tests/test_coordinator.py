import time
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from conftest import FakeEvictionBackend, RecordingGate
from k8s_node_drain.coordinator import render_summary
from k8s_node_drain.errors import ConfirmationDenied
from k8s_node_drain.eviction import ApiEvictionBackend
from k8s_node_drain.models import (
    BatchSummary,
    DrainOptions,
    DrainOutcome,
    EvictionResult,
    NodeTarget,
    OutcomeStatus,
    TaskState,
)

TARGETS = [NodeTarget("node-1"), NodeTarget("node-2")]


class TestBatchRun:
    def test_cordon_only_batch(self, cluster, make_coordinator):
        coordinator, parts = make_coordinator(cordon_only=True)

        summary = coordinator.run(TARGETS, DrainOptions())

        assert cluster.schedulable("node-1") is False
        assert cluster.schedulable("node-2") is False
        assert parts["backend"].started == []
        assert (summary.succeeded, summary.failed) == (2, 0)
        assert summary.exit_code == 0

    def test_every_node_gets_exactly_one_outcome(self, make_coordinator):
        coordinator, _ = make_coordinator()

        summary = coordinator.run(TARGETS + [NodeTarget("node-3")], DrainOptions())

        assert list(summary.outcomes) == ["node-1", "node-2", "node-3"]
        assert all(outcome.ok for outcome in summary.outcomes.values())

    def test_cordon_precedes_drain(self, cluster, make_coordinator):
        backend = FakeEvictionBackend(cluster, {"node-1": EvictionResult(ok=True)})
        coordinator, _ = make_coordinator(backend=backend)
        cordoned_at_start = []
        original_start = backend.start_drain

        def start_drain(node, options):
            cordoned_at_start.append(cluster.schedulable(node))
            return original_start(node, options)

        backend.start_drain = start_drain
        coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert cordoned_at_start == [False]

    def test_failed_drain_does_not_stop_next_node(self, cluster, make_coordinator):
        backend = FakeEvictionBackend(cluster, {
            "node-1": EvictionResult(ok=False, error="pod disruption budget"),
            "node-2": EvictionResult(ok=True),
        })
        coordinator, _ = make_coordinator(backend=backend)

        summary = coordinator.run(TARGETS, DrainOptions())

        assert summary.outcomes["node-1"] == DrainOutcome.failed("pod disruption budget")
        assert summary.outcomes["node-2"].ok
        assert summary.exit_code == 1

    def test_timed_out_node_counts_as_failure(self, cluster, make_coordinator):
        backend = FakeEvictionBackend(cluster, {"node-2": EvictionResult(ok=True)})
        coordinator, _ = make_coordinator(backend=backend)

        summary = coordinator.run(TARGETS, DrainOptions(timeout=5, poll_interval=1))

        assert summary.outcomes["node-1"].status is OutcomeStatus.TIMED_OUT
        assert summary.outcomes["node-2"].ok
        assert [handle.node for handle in backend.cancelled] == ["node-1"]
        assert (summary.succeeded, summary.failed) == (1, 1)

    def test_cordon_failure_skips_drain_and_continues(self, cluster, make_coordinator):
        cluster.fail_patch["node-1"] = ApiException(status=403, reason="Forbidden")
        coordinator, parts = make_coordinator()

        summary = coordinator.run(TARGETS, DrainOptions())

        assert summary.outcomes["node-1"].status is OutcomeStatus.FAILED
        assert "cordon" in summary.outcomes["node-1"].reason
        assert [node for node, _ in parts["backend"].started] == ["node-2"]

    def test_census_failure_marks_node_failed(self, cluster, make_coordinator):
        coordinator, parts = make_coordinator()
        original = cluster.list_pods

        def list_pods(filters):
            if filters.node_name == "node-1":
                raise ApiException(status=500, reason="Internal Server Error")
            return original(filters)

        cluster.list_pods = list_pods
        summary = coordinator.run(TARGETS, DrainOptions())

        assert summary.outcomes["node-1"].status is OutcomeStatus.FAILED
        assert summary.outcomes["node-2"].ok
        assert cluster.schedulable("node-1") is True

    def test_connection_drop_on_cordon_does_not_stop_batch(self, cluster, make_coordinator):
        cluster.fail_get["node-1"] = ProtocolError("Connection aborted.")
        coordinator, parts = make_coordinator()

        summary = coordinator.run(TARGETS, DrainOptions())

        assert summary.outcomes["node-1"].status is OutcomeStatus.FAILED
        assert "Connection aborted." in summary.outcomes["node-1"].reason
        assert summary.outcomes["node-2"].ok
        assert [node for node, _ in parts["backend"].started] == ["node-2"]

    def test_connection_drop_during_census_does_not_stop_batch(self, cluster, make_coordinator):
        coordinator, _ = make_coordinator()
        original = cluster.list_pods

        def list_pods(filters):
            if filters.node_name == "node-1":
                raise ProtocolError("Connection aborted.")
            return original(filters)

        cluster.list_pods = list_pods
        summary = coordinator.run(TARGETS, DrainOptions())

        assert summary.outcomes["node-1"] == DrainOutcome.failed("pod census failed: Connection aborted.")
        assert summary.outcomes["node-2"].ok


class TestUncordon:
    def test_immediate_uncordon_after_drain(self, cluster, make_coordinator):
        coordinator, _ = make_coordinator(uncordon_after=True, uncordon_delay=0)

        summary = coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert summary.outcomes["node-1"].ok
        assert cluster.schedulable("node-1") is True
        assert summary.deferred_uncordons == []

    def test_delayed_uncordon_leaves_node_cordoned(self, cluster, make_coordinator):
        coordinator, parts = make_coordinator(uncordon_after=True, uncordon_delay=3600)

        summary = coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert summary.outcomes["node-1"].ok
        assert cluster.schedulable("node-1") is False
        assert summary.deferred_uncordons == ["node-1"]
        pending = parts["scheduler"].pending()
        assert [task.node for task in pending] == ["node-1"]
        assert pending[0].state is TaskState.PENDING

    def test_delayed_uncordon_completes_later(self, cluster, make_coordinator):
        coordinator, parts = make_coordinator(uncordon_after=True, uncordon_delay=0.05)

        coordinator.run([NodeTarget("node-1")], DrainOptions())
        parts["scheduler"].shutdown(wait=True, timeout=5)

        assert cluster.schedulable("node-1") is True

    def test_no_uncordon_after_failed_drain(self, cluster, make_coordinator):
        backend = FakeEvictionBackend(cluster, {"node-1": EvictionResult(ok=False, error="boom")})
        coordinator, _ = make_coordinator(backend=backend, uncordon_after=True, uncordon_delay=0)

        coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert cluster.schedulable("node-1") is False

    def test_cordon_only_may_still_uncordon(self, cluster, make_coordinator):
        coordinator, _ = make_coordinator(cordon_only=True, uncordon_after=True, uncordon_delay=0)

        summary = coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert summary.outcomes["node-1"].ok
        assert cluster.set_schedulable_calls() == [
            ("set_schedulable", "node-1", False),
            ("set_schedulable", "node-1", True),
        ]


class TestConfirmation:
    def test_operator_declines_batch(self, cluster, make_coordinator):
        coordinator, parts = make_coordinator(gate=RecordingGate([False]))

        with pytest.raises(ConfirmationDenied):
            coordinator.run(TARGETS, DrainOptions())

        assert cluster.set_schedulable_calls() == []
        assert parts["backend"].started == []

    def test_assume_yes_skips_prompts(self, cluster, make_coordinator):
        cluster.add_pod("node-1", "bare", owner=None)
        gate = RecordingGate()
        coordinator, _ = make_coordinator(gate=gate, assume_yes=True)

        coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert gate.prompts == []

    def test_unmanaged_pods_need_confirmation(self, cluster, make_coordinator):
        cluster.add_pod("node-2", "bare", owner=None)
        gate = RecordingGate([True, False])
        coordinator, parts = make_coordinator(gate=gate)

        with pytest.raises(ConfirmationDenied) as excinfo:
            coordinator.run(TARGETS, DrainOptions())

        assert len(gate.prompts) == 2
        assert "node-2" in gate.prompts[1]
        partial = excinfo.value.summary
        assert list(partial.outcomes) == ["node-1"]
        assert cluster.schedulable("node-2") is True
        assert [node for node, _ in parts["backend"].started] == ["node-1"]

    def test_force_skips_unmanaged_prompt(self, cluster, make_coordinator):
        cluster.add_pod("node-1", "bare", owner=None)
        gate = RecordingGate([True])
        coordinator, _ = make_coordinator(gate=gate)

        summary = coordinator.run([NodeTarget("node-1")], DrainOptions(force=True))

        assert len(gate.prompts) == 1
        assert summary.outcomes["node-1"].ok

    def test_confirmation_lets_backend_evict_unmanaged_pods(self, cluster, make_coordinator):
        cluster.add_pod("node-1", "bare", owner=None)
        gate = RecordingGate([True, True])
        coordinator, parts = make_coordinator(gate=gate)

        summary = coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert len(gate.prompts) == 2
        assert summary.outcomes["node-1"].ok
        options = parts["backend"].started[0][1]
        assert options.allow_unmanaged is True
        assert options.force is False

    def test_confirmed_unmanaged_pods_drain_through_eviction_api(self, cluster, make_coordinator):
        bare = cluster.add_pod("node-1", "bare", owner=None)
        k8s = MagicMock()
        k8s.list_pods.return_value = [bare]
        k8s.get_pod.return_value = None
        coordinator, parts = make_coordinator(
            backend=ApiEvictionBackend(k8s, pod_poll_interval=0.01), gate=RecordingGate([True, True])
        )
        parts["supervisor"].clock = time.monotonic
        parts["supervisor"].sleep = time.sleep

        summary = coordinator.run([NodeTarget("node-1")], DrainOptions(timeout=5, poll_interval=0.01))

        assert summary.outcomes["node-1"].status is OutcomeStatus.SUCCESS
        k8s.evict_pod.assert_called_once_with("default", "bare", 30)
        k8s.delete_pod.assert_not_called()

    def test_cordon_only_still_asks_about_unmanaged_pods(self, cluster, make_coordinator):
        cluster.add_pod("node-1", "bare", owner=None)
        gate = RecordingGate([True, False])
        coordinator, _ = make_coordinator(gate=gate, cordon_only=True)

        with pytest.raises(ConfirmationDenied):
            coordinator.run([NodeTarget("node-1")], DrainOptions())

        assert "node-1" in gate.prompts[1]
        assert cluster.schedulable("node-1") is True


class TestDryRun:
    def test_dry_run_is_pure(self, cluster, make_coordinator, log_messages):
        cluster.add_pod("node-1", "bare", owner=None)
        gate = RecordingGate([False])
        coordinator, parts = make_coordinator(gate=gate, dry_run=True, uncordon_after=True, uncordon_delay=60)

        summary = coordinator.run(TARGETS, DrainOptions())

        assert cluster.set_schedulable_calls() == []
        assert parts["backend"].started == []
        assert gate.prompts == []
        assert parts["scheduler"].pending() == []
        assert summary.exit_code == 0
        assert "Dry run completed for 2 nodes." in log_messages


def test_summary_refuses_second_outcome():
    summary = BatchSummary(target_count=1)
    summary.record("node-1", DrainOutcome.success())

    with pytest.raises(RuntimeError):
        summary.record("node-1", DrainOutcome.failed("again"))


def test_render_summary():
    summary = BatchSummary(target_count=2, deferred_uncordons=["node-2"])
    summary.record("node-1", DrainOutcome.timed_out())
    summary.record("node-2", DrainOutcome.success())

    lines = render_summary(summary, uncordon_delay=3600)

    assert "Processed 2 of 2 nodes: 1 succeeded, 1 failed." in lines
    assert "Nodes will be automatically uncordoned after 3600 seconds." in lines
    assert "To manually uncordon, run: kubectl uncordon node-2" in lines
