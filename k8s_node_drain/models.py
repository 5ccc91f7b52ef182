"""Data types shared by the node drain components."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

CONTROLLER_KINDS = ("ReplicaSet", "DaemonSet", "StatefulSet", "Job")
TERMINATED_PHASES = ("Succeeded", "Failed")


class ResolvedFrom(str, Enum):
    EXPLICIT = "explicit"
    SELECTOR = "selector"


@dataclass(frozen=True)
class NodeInfo:
    name: str
    unschedulable: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    ready: bool = True


@dataclass(frozen=True)
class NodeTarget:
    name: str
    resolved_from: ResolvedFrom = ResolvedFrom.EXPLICIT


@dataclass(frozen=True)
class PodRef:
    """A pod scheduled on a node, reduced to what the drain logic needs"""
    namespace: str
    name: str
    node_name: str
    owner_kinds: Tuple[str, ...] = ()
    phase: str = "Running"
    is_mirror: bool = False
    has_local_storage: bool = False

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def has_controller(self) -> bool:
        return any(kind in CONTROLLER_KINDS for kind in self.owner_kinds)

    @property
    def is_daemonset(self) -> bool:
        return "DaemonSet" in self.owner_kinds

    @property
    def is_terminated(self) -> bool:
        return self.phase in TERMINATED_PHASES


@dataclass(frozen=True)
class PodFilters:
    node_name: str
    namespace: Optional[str] = None
    label_selector: Optional[str] = None


@dataclass(frozen=True)
class DrainOptions:
    ignore_daemonsets: bool = True
    delete_local_data: bool = False
    force: bool = False
    timeout: float = 300
    poll_interval: float = 5
    grace_period: Optional[int] = 30
    namespace: Optional[str] = None
    pod_selector: Optional[str] = None
    max_unavailable: int = 0
    # set once the operator accepted losing the pods without a controller
    allow_unmanaged: bool = False

    def filters_for(self, node: str) -> PodFilters:
        return PodFilters(node_name=node, namespace=self.namespace, label_selector=self.pod_selector)


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class DrainOutcome:
    status: OutcomeStatus
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "DrainOutcome":
        return cls(OutcomeStatus.SUCCESS)

    @classmethod
    def timed_out(cls, reason: Optional[str] = None) -> "DrainOutcome":
        return cls(OutcomeStatus.TIMED_OUT, reason)

    @classmethod
    def failed(cls, reason: str) -> "DrainOutcome":
        return cls(OutcomeStatus.FAILED, reason)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value} ({self.reason})"
        return self.status.value


class DrainState(str, Enum):
    NOT_STARTED = "not_started"
    EVICTING = "evicting"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    DrainState.NOT_STARTED: {DrainState.EVICTING},
    DrainState.EVICTING: {DrainState.SUCCEEDED, DrainState.TIMED_OUT, DrainState.FAILED},
}


@dataclass(frozen=True)
class ProgressObservation:
    node: str
    elapsed: float
    remaining_pods: Optional[int]
    remaining_time: float


@dataclass
class DrainAttempt:
    """State machine record for one drain of one node"""
    node: str
    state: DrainState = DrainState.NOT_STARTED
    started_at: Optional[float] = None
    deadline: Optional[float] = None
    observations: List[ProgressObservation] = field(default_factory=list)

    def transition(self, new_state: DrainState):
        if new_state not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Invalid drain transition for {self.node}: {self.state.value} -> {new_state.value}")
        self.state = new_state


@dataclass(frozen=True)
class EvictionResult:
    ok: bool
    error: Optional[str] = None


class TaskState(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class UncordonTask:
    """Handle for a scheduled uncordon; for observability only"""
    task_id: int
    node: str
    delay: float
    scheduled_at: datetime
    state: TaskState = TaskState.PENDING
    error: Optional[str] = None
    _finished: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def finish(self, state: TaskState, error: Optional[str] = None):
        self.state = state
        self.error = error
        self._finished.set()

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)


@dataclass
class BatchSummary:
    target_count: int
    dry_run: bool = False
    outcomes: Dict[str, DrainOutcome] = field(default_factory=dict)
    deferred_uncordons: List[str] = field(default_factory=list)

    def record(self, node: str, outcome: DrainOutcome):
        if node in self.outcomes:
            raise RuntimeError(f"Outcome for node {node} already recorded: {self.outcomes[node]}")
        self.outcomes[node] = outcome

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.ok)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes.values() if not outcome.ok)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0
