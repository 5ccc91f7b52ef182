"""
Eviction backends

A backend starts the eviction of every pod on a node and lets the caller
observe or abort it. DrainSupervisor owns the wall-clock budget; backends
only report completion and honour cancellation.

- ApiEvictionBackend: evicts through the Eviction API from a worker thread
- KubectlEvictionBackend: runs `kubectl drain` as a subprocess
"""

import itertools
import subprocess
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import IO, Dict, List, Optional, Protocol

from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .errors import DrainFailed
from .kube import KubernetesHelper, error_reason
from .models import DrainOptions, EvictionResult, PodRef


@dataclass(frozen=True)
class DrainHandle:
    handle_id: int
    node: str
    started_at: float = field(default_factory=time.time, compare=False)


class EvictionBackend(Protocol):
    def start_drain(self, node: str, options: DrainOptions) -> DrainHandle: ...

    def cancel(self, handle: DrainHandle) -> None: ...

    def wait(self, handle: DrainHandle, timeout: Optional[float] = None) -> Optional[EvictionResult]:
        """Result of the drain, or None if it is still running after `timeout`"""
        ...


def _pod_names(pods: List[PodRef]) -> str:
    return ",".join(pod.key for pod in pods)


@dataclass
class EvictionPlan:
    to_evict: List[PodRef] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def plan_evictions(pods: List[PodRef], options: DrainOptions) -> EvictionPlan:
    """Split the pods on a node into evictable pods, warnings and blocking errors"""
    plan = EvictionPlan()
    mirror, daemonset, unmanaged, local_storage = [], [], [], []

    for pod in pods:
        # mirror pods cannot be deleted through the API server
        if pod.is_mirror:
            mirror.append(pod)
            continue
        if pod.is_terminated:
            plan.to_evict.append(pod)
            continue
        if pod.is_daemonset:
            daemonset.append(pod)
            continue

        blocked = False
        if not pod.has_controller:
            unmanaged.append(pod)
            blocked = blocked or not (options.force or options.allow_unmanaged)
        if pod.has_local_storage:
            local_storage.append(pod)
            blocked = blocked or not options.delete_local_data
        if not blocked:
            plan.to_evict.append(pod)

    if mirror:
        plan.warnings.append(f"cannot delete mirror Pods using API server: {_pod_names(mirror)}")

    if daemonset:
        if options.ignore_daemonsets:
            plan.warnings.append(f"Ignoring DaemonSet-managed Pods: {_pod_names(daemonset)}")
        else:
            plan.errors.append(
                f"cannot delete DaemonSet-managed Pods (drop --no-ignore-daemonsets): {_pod_names(daemonset)}"
            )

    if unmanaged:
        if options.force or options.allow_unmanaged:
            plan.warnings.append(
                f"Deleting Pods not managed by ReplicaSet, Job, DaemonSet or StatefulSet: {_pod_names(unmanaged)}"
            )
        else:
            plan.errors.append(
                "cannot delete Pods not managed by ReplicaSet, Job, DaemonSet or StatefulSet "
                f"(use --force): {_pod_names(unmanaged)}"
            )

    if local_storage:
        if options.delete_local_data:
            plan.warnings.append(f"Deleting Pods with local storage: {_pod_names(local_storage)}")
        else:
            plan.errors.append(f"cannot delete Pods with local storage (use --delete-local-data): {_pod_names(local_storage)}")

    return plan


@dataclass
class _ApiDrainRun:
    future: object
    cancelled: threading.Event


class ApiEvictionBackend:
    """Drain a node through the Eviction API"""

    def __init__(self, k8s: KubernetesHelper, pod_poll_interval: float = 2.0):
        self.k8s = k8s
        self.pod_poll_interval = pod_poll_interval
        self._ids = itertools.count(1)
        self._runs: Dict[int, _ApiDrainRun] = {}

    def start_drain(self, node: str, options: DrainOptions) -> DrainHandle:
        handle = DrainHandle(handle_id=next(self._ids), node=node)
        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"drain-{node}")
        future = executor.submit(self._drain, node, options, cancelled)
        executor.shutdown(wait=False)
        self._runs[handle.handle_id] = _ApiDrainRun(future=future, cancelled=cancelled)
        return handle

    def cancel(self, handle: DrainHandle):
        run = self._runs.get(handle.handle_id)
        if run is not None:
            logger.warning(f"Cancelling eviction of node {handle.node}")
            run.cancelled.set()

    def wait(self, handle: DrainHandle, timeout: Optional[float] = None) -> Optional[EvictionResult]:
        run = self._runs[handle.handle_id]
        try:
            run.future.result(timeout=timeout)
        except FuturesTimeout:
            return None
        except DrainFailed as e:
            result = EvictionResult(ok=False, error=e.reason)
        except (ApiException, HTTPError) as e:
            result = EvictionResult(ok=False, error=error_reason(e))
        except Exception as e:
            logger.exception(f"Unexpected error draining node {handle.node}")
            result = EvictionResult(ok=False, error=str(e))
        else:
            result = EvictionResult(ok=True)

        del self._runs[handle.handle_id]
        return result

    def _drain(self, node: str, options: DrainOptions, cancelled: threading.Event):
        pods = self.k8s.list_pods(options.filters_for(node))
        plan = plan_evictions(pods, options)
        for warning in plan.warnings:
            logger.warning(f"{node}: {warning}")
        if plan.errors:
            raise DrainFailed(node, "; ".join(plan.errors))

        if not plan.to_evict:
            logger.info(f"No pods to evict from node: {node}")
            return

        workers = options.max_unavailable or len(plan.to_evict)
        logger.info(f"Evicting {len(plan.to_evict)} pods from node: {node} ({workers} at a time)")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"evict-{node}") as executor:
            futures = {
                executor.submit(self._evict_and_wait, node, pod, options, cancelled): pod
                for pod in plan.to_evict
            }
            try:
                for future in as_completed(futures):
                    future.result()
            except Exception:
                cancelled.set()
                raise

    def _evict_and_wait(self, node: str, pod: PodRef, options: DrainOptions, cancelled: threading.Event):
        if cancelled.is_set():
            raise DrainFailed(node, "eviction cancelled")
        try:
            self.k8s.evict_pod(pod.namespace, pod.name, options.grace_period)
            logger.info(f"evicting pod {pod.key}")
        except ApiException as e:
            if e.status == 404:
                return
            if e.status != 429:
                raise DrainFailed(node, f"failed to evict pod {pod.key}: {e.reason}") from e
            # Too Many Requests: refused by a PodDisruptionBudget
            if not options.force:
                raise DrainFailed(node, f"eviction of pod {pod.key} blocked by PodDisruptionBudget") from e
            logger.warning(f"Force deleting pod {pod.key} due to PDB")
            self.k8s.delete_pod(pod.namespace, pod.name, grace_period=0)

        while not cancelled.is_set():
            current = self.k8s.get_pod(pod.namespace, pod.name)
            if current is None or current.node_name != node:
                logger.info(f"pod {pod.key} evicted")
                return
            cancelled.wait(self.pod_poll_interval)
        raise DrainFailed(node, "eviction cancelled")


def build_drain_command(node: str, options: DrainOptions, kubeconfig: Optional[str] = None,
                        context: Optional[str] = None) -> List[str]:
    cmd = ["kubectl"]
    if kubeconfig:
        cmd.extend(["--kubeconfig", kubeconfig])
    if context:
        cmd.extend(["--context", context])
    cmd.extend(["drain", node])

    if options.ignore_daemonsets:
        cmd.append("--ignore-daemonsets")
    if options.delete_local_data:
        cmd.append("--delete-emptydir-data")
    if options.force or options.allow_unmanaged:
        cmd.append("--force")
    cmd.append(f"--timeout={options.timeout:g}s")
    if options.grace_period is not None:
        cmd.append(f"--grace-period={options.grace_period}")
    if options.pod_selector:
        cmd.append(f"--pod-selector={options.pod_selector}")
    return cmd


@dataclass
class _KubectlDrainRun:
    process: subprocess.Popen
    stderr: IO[bytes]
    result: Optional[EvictionResult] = None

    def finish(self, result: EvictionResult) -> EvictionResult:
        self.result = result
        self.stderr.close()
        return result


class KubectlEvictionBackend:
    """Drain a node by running `kubectl drain` in the background"""

    def __init__(self, kubeconfig: Optional[str] = None, context: Optional[str] = None):
        self.kubeconfig = kubeconfig
        self.context = context
        self._ids = itertools.count(1)
        self._runs: Dict[int, _KubectlDrainRun] = {}

    def start_drain(self, node: str, options: DrainOptions) -> DrainHandle:
        if options.namespace:
            logger.warning(f"kubectl drain cannot filter by namespace, ignoring --namespace {options.namespace}")
        if options.max_unavailable:
            logger.warning(f"kubectl drain has no eviction concurrency cap, ignoring --max-unavailable {options.max_unavailable}")

        cmd = build_drain_command(node, options, self.kubeconfig, self.context)
        logger.info(f"Running: {' '.join(cmd)}")
        stderr = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=stderr)
        except FileNotFoundError as e:
            stderr.close()
            raise DrainFailed(node, "kubectl not found on PATH") from e
        except OSError as e:
            stderr.close()
            raise DrainFailed(node, f"cannot run kubectl: {e}") from e

        handle = DrainHandle(handle_id=next(self._ids), node=node)
        self._runs[handle.handle_id] = _KubectlDrainRun(process=process, stderr=stderr)
        return handle

    def cancel(self, handle: DrainHandle):
        run = self._runs.get(handle.handle_id)
        if run is not None and run.process.poll() is None:
            logger.warning(f"Killing kubectl drain for node {handle.node} (pid {run.process.pid})")
            run.process.kill()
            run.process.wait()
            run.finish(EvictionResult(ok=False, error="killed"))

    def wait(self, handle: DrainHandle, timeout: Optional[float] = None) -> Optional[EvictionResult]:
        run = self._runs[handle.handle_id]
        if run.result is None:
            try:
                returncode = run.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                return None

            if returncode == 0:
                run.finish(EvictionResult(ok=True))
            else:
                run.stderr.seek(0)
                details = run.stderr.read().decode(errors="replace").strip()
                run.finish(EvictionResult(ok=False, error=f"exit code {returncode}: {details or 'Unknown error'}"))

        del self._runs[handle.handle_id]
        return run.result
