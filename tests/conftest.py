"""Pytest fixtures: an in-memory cluster, a controllable eviction backend and a fake clock."""
from typing import Dict, List, Optional

import pytest
from loguru import logger

from k8s_node_drain.census import PodCensus
from k8s_node_drain.confirm import ConfirmationGate
from k8s_node_drain.coordinator import BatchCoordinator
from k8s_node_drain.cordon import CordonController
from k8s_node_drain.errors import NodeNotFound
from k8s_node_drain.eviction import DrainHandle
from k8s_node_drain.models import DrainOptions, EvictionResult, NodeInfo, PodFilters, PodRef
from k8s_node_drain.scheduler import UncordonScheduler
from k8s_node_drain.supervisor import DrainSupervisor


# =============================================================================
# In-memory cluster
# =============================================================================

class FakeCluster:
    """ClusterNodeAPI + ClusterPodAPI backed by dicts, recording every call"""

    def __init__(self, nodes: Optional[Dict[str, Dict[str, str]]] = None):
        self.nodes: Dict[str, NodeInfo] = {}
        self.pods: List[PodRef] = []
        self.calls: List[tuple] = []
        self.fail_patch: Dict[str, Exception] = {}
        self.fail_get: Dict[str, Exception] = {}
        for name, labels in (nodes or {}).items():
            self.add_node(name, labels)

    def add_node(self, name: str, labels: Optional[Dict[str, str]] = None, unschedulable: bool = False):
        self.nodes[name] = NodeInfo(name=name, unschedulable=unschedulable, labels=labels or {})

    def add_pod(self, node: str, name: str, namespace: str = "default", owner: Optional[str] = "ReplicaSet",
                phase: str = "Running") -> PodRef:
        pod = PodRef(namespace=namespace, name=name, node_name=node,
                     owner_kinds=(owner,) if owner else (), phase=phase)
        self.pods.append(pod)
        return pod

    def schedulable(self, name: str) -> bool:
        return not self.nodes[name].unschedulable

    def set_schedulable_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] == "set_schedulable"]

    # ClusterNodeAPI
    def get_node(self, name: str) -> NodeInfo:
        self.calls.append(("get_node", name))
        if name in self.fail_get:
            raise self.fail_get[name]
        if name not in self.nodes:
            raise NodeNotFound(name)
        return self.nodes[name]

    def list_nodes(self, selector: Optional[str] = None) -> List[NodeInfo]:
        self.calls.append(("list_nodes", selector))
        if not selector:
            return list(self.nodes.values())
        wanted = dict(term.split("=", 1) for term in selector.split(","))
        return [
            node for node in self.nodes.values()
            if all(node.labels.get(key) == value for key, value in wanted.items())
        ]

    def set_schedulable(self, name: str, schedulable: bool):
        self.calls.append(("set_schedulable", name, schedulable))
        if name in self.fail_patch:
            raise self.fail_patch[name]
        if name not in self.nodes:
            raise NodeNotFound(name)
        node = self.nodes[name]
        self.nodes[name] = NodeInfo(name=name, unschedulable=not schedulable, labels=node.labels, ready=node.ready)

    # ClusterPodAPI
    def list_pods(self, filters: PodFilters) -> List[PodRef]:
        self.calls.append(("list_pods", filters))
        return [
            pod for pod in self.pods
            if pod.node_name == filters.node_name
            and (not filters.namespace or pod.namespace == filters.namespace)
        ]


# =============================================================================
# Controllable eviction backend and clock
# =============================================================================

class FakeEvictionBackend:
    """
    EvictionBackend whose drains finish after a set number of polls.

    `results[node]` is returned once `polls_until_done` checks have been made;
    a node without a result never finishes.
    """

    def __init__(self, cluster: Optional[FakeCluster] = None, results: Optional[Dict[str, EvictionResult]] = None,
                 polls_until_done: int = 0):
        self.cluster = cluster
        self.results = results or {}
        self.polls_until_done = polls_until_done
        self.started: List[tuple] = []
        self.cancelled: List[DrainHandle] = []
        self._polls: Dict[int, int] = {}

    def start_drain(self, node: str, options: DrainOptions) -> DrainHandle:
        handle = DrainHandle(handle_id=len(self.started) + 1, node=node)
        self.started.append((node, options))
        self._polls[handle.handle_id] = 0
        return handle

    def cancel(self, handle: DrainHandle):
        self.cancelled.append(handle)

    def wait(self, handle: DrainHandle, timeout: Optional[float] = None) -> Optional[EvictionResult]:
        self._polls[handle.handle_id] += 1
        result = self.results.get(handle.node)
        if result is None or self._polls[handle.handle_id] <= self.polls_until_done:
            return None
        if result.ok and self.cluster is not None:
            self.cluster.pods = [pod for pod in self.cluster.pods if pod.node_name != handle.node]
        return result


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingGate(ConfirmationGate):
    def __init__(self, answers: Optional[List[bool]] = None):
        self.answers = list(answers or [])
        self.prompts: List[str] = []
        super().__init__(prompt_fn=self._answer)

    def _answer(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster({
        "node-1": {"role": "worker"},
        "node-2": {"role": "worker"},
        "node-3": {"role": "infra"},
    })


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def log_messages():
    messages: List[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def make_coordinator(cluster, clock):
    """Wire a BatchCoordinator around the fake cluster; returns (coordinator, parts)"""
    created_schedulers: List[UncordonScheduler] = []

    def _make(backend: Optional[FakeEvictionBackend] = None, gate: Optional[ConfirmationGate] = None,
              dry_run: bool = False, **kwargs):
        backend = backend or FakeEvictionBackend(
            cluster, results={name: EvictionResult(ok=True) for name in cluster.nodes}
        )
        gate = gate or RecordingGate()
        census = PodCensus(cluster)
        cordon = CordonController(cluster, dry_run=dry_run)
        scheduler = UncordonScheduler(cordon, dry_run=dry_run)
        created_schedulers.append(scheduler)
        supervisor = DrainSupervisor(backend, census, dry_run=dry_run, clock=clock, sleep=clock.sleep)
        kwargs.setdefault("assume_yes", False)
        coordinator = BatchCoordinator(census, cordon, supervisor, scheduler, gate, dry_run=dry_run, **kwargs)
        parts = {"backend": backend, "gate": gate, "scheduler": scheduler, "supervisor": supervisor}
        return coordinator, parts

    yield _make

    for scheduler in created_schedulers:
        scheduler.cancel_all()
