"""
Kubernetes node drain

Safely cordons and drains Kubernetes nodes for maintenance:
1. Resolves the target nodes (names or label selector)
2. Warns about pods that would be lost
3. Cordons, then drains each node within a time budget
4. Optionally uncordons the nodes again, now or after a delay
"""

import shutil
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from dotenv import load_dotenv
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from loguru import logger
from urllib3.exceptions import HTTPError

from .census import PodCensus
from .config import Backend, Config
from .confirm import ConfirmationGate
from .coordinator import BatchCoordinator
from .cordon import CordonController
from .errors import ConfirmationDenied, NoMatchingNodes, NoValidNodes
from .eviction import ApiEvictionBackend, EvictionBackend, KubectlEvictionBackend
from .kube import KubernetesHelper
from .logger_config import setup_logger
from .models import DrainOptions
from .scheduler import UncordonScheduler
from .selector import NodeSelector
from .supervisor import DrainSupervisor

load_dotenv()

app = typer.Typer(add_completion=False, help="Safely cordon and drain Kubernetes nodes for maintenance.")


def build_backend(config: Config, k8s: KubernetesHelper) -> EvictionBackend:
    if config.backend is Backend.KUBECTL:
        return KubectlEvictionBackend(kubeconfig=config.kubeconfig, context=config.context)
    return ApiEvictionBackend(k8s)


def build_coordinator(config: Config, k8s: KubernetesHelper, backend: Optional[EvictionBackend] = None,
                      gate: Optional[ConfirmationGate] = None) -> Tuple[BatchCoordinator, UncordonScheduler]:
    census = PodCensus(k8s)
    cordon = CordonController(k8s, dry_run=config.dry_run)
    scheduler = UncordonScheduler(cordon, dry_run=config.dry_run)
    supervisor = DrainSupervisor(backend or build_backend(config, k8s), census, dry_run=config.dry_run)
    coordinator = BatchCoordinator(
        census=census,
        cordon=cordon,
        supervisor=supervisor,
        scheduler=scheduler,
        gate=gate or ConfirmationGate(),
        cordon_only=config.cordon_only,
        uncordon_after=config.uncordon_after,
        uncordon_delay=config.uncordon_delay,
        dry_run=config.dry_run,
        assume_yes=config.assume_yes,
    )
    return coordinator, scheduler


def preflight_checks(k8s: KubernetesHelper, config: Config) -> bool:
    """Check the tools and cluster access the run depends on"""
    logger.info("Checking requirements...")

    if config.backend is Backend.KUBECTL and not shutil.which("kubectl"):
        logger.error("kubectl not found. Please install it first: https://kubernetes.io/docs/tasks/tools/install-kubectl/")
        return False

    try:
        k8s.list_nodes()
    except (ApiException, HTTPError) as e:
        logger.error(f"Cannot connect to Kubernetes cluster. Check your connection and credentials. ({e})")
        return False

    logger.success("All required tools are available.")
    return True


def await_deferred_uncordons(scheduler: UncordonScheduler, wait: bool) -> int:
    """Settle scheduled uncordons before the process exits"""
    pending = scheduler.pending()
    if not pending:
        return 0

    nodes = " ".join(task.node for task in pending)
    if not wait:
        scheduler.shutdown(wait=False)
        logger.warning(f"Not waiting for scheduled uncordons, these nodes stay cordoned: {nodes}")
        logger.warning(f"To manually uncordon, run: kubectl uncordon {nodes}")
        return 0

    try:
        left = scheduler.shutdown(wait=True)
    except KeyboardInterrupt:
        left = scheduler.cancel_all()
        logger.warning(f"Interrupted, these nodes stay cordoned: {' '.join(task.node for task in left)}")
        return 130

    if left:
        logger.warning(f"Uncordon did not finish for: {' '.join(task.node for task in left)}")
    return 0


def run(config: Config, k8s: Optional[KubernetesHelper] = None, backend: Optional[EvictionBackend] = None,
        gate: Optional[ConfirmationGate] = None) -> int:
    """Run one batch and return the process exit code"""
    if k8s is None:
        try:
            k8s = KubernetesHelper.from_kubeconfig(config.kubeconfig, config.context)
        except ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            return 1

    if not preflight_checks(k8s, config):
        return 1

    try:
        targets = NodeSelector(k8s).resolve(config.nodes, config.selector)
    except (NoMatchingNodes, NoValidNodes) as e:
        logger.error(str(e))
        return 1

    coordinator, scheduler = build_coordinator(config, k8s, backend=backend, gate=gate)
    try:
        summary = coordinator.run(targets, config.drain)
    except ConfirmationDenied as e:
        exit_code = e.summary.exit_code if e.summary is not None else 0
        return await_deferred_uncordons(scheduler, config.wait_uncordon) or exit_code

    exit_code = 0 if summary.dry_run else summary.exit_code
    return await_deferred_uncordons(scheduler, config.wait_uncordon) or exit_code


@app.command()
def main(
    nodes: Optional[List[str]] = typer.Argument(None, help="Names of nodes to drain"),
    selector: Optional[str] = typer.Option(None, "--selector", envvar="DRAIN_NODE_SELECTOR",
                                           help="Select nodes by label selector (replaces node names)"),
    cordon_only: bool = typer.Option(False, "--cordon-only", help="Only cordon nodes, don't drain"),
    no_ignore_daemonsets: bool = typer.Option(False, "--no-ignore-daemonsets",
                                              help="Don't ignore DaemonSets when draining"),
    delete_local_data: bool = typer.Option(False, "--delete-local-data", help="Delete local data when draining"),
    force: bool = typer.Option(False, "--force", help="Continue even if pods are not managed by controllers"),
    timeout: float = typer.Option(300, "--timeout", min=1, envvar="DRAIN_TIMEOUT",
                                  help="Timeout for drain operation in seconds"),
    poll_interval: float = typer.Option(5, "--poll-interval", min=0.1, envvar="DRAIN_POLL_INTERVAL",
                                        help="Interval between status checks in seconds"),
    grace_period: int = typer.Option(30, "--grace-period", min=0, envvar="DRAIN_GRACE_PERIOD",
                                     help="Grace period for pod eviction in seconds"),
    namespace: Optional[str] = typer.Option(None, "--namespace", help="Filter pods by namespace"),
    pod_selector: Optional[str] = typer.Option(None, "--pod-selector", help="Filter pods by label selector"),
    max_unavailable: int = typer.Option(0, "--max-unavailable", min=0,
                                        help="Maximum number of pods evicted at the same time (0: no limit)"),
    uncordon_after: bool = typer.Option(False, "--uncordon-after", help="Uncordon nodes after drain"),
    uncordon_delay: float = typer.Option(0, "--uncordon-delay", min=0,
                                         help="Delay in seconds before uncordoning nodes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only print what would be done"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
    wait_uncordon: bool = typer.Option(True, "--wait-uncordon/--no-wait-uncordon",
                                       help="Keep running until delayed uncordons are done"),
    backend: Backend = typer.Option(Backend.API, "--backend", case_sensitive=False,
                                    help="Evict through the Eviction API or by running kubectl drain"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to the kubeconfig file"),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context to use"),
    log_file: Optional[Path] = typer.Option(None, "--log", help="Log output to specified file"),
    log_level: str = typer.Option("INFO", "--log-level", envvar="DRAIN_LOG_LEVEL", help="Log level"),
):
    """
    Safely cordon and drain Kubernetes nodes for maintenance.

    Examples:
        k8s-node-drain worker-node-1 worker-node-2
        k8s-node-drain --selector role=worker --cordon-only
        k8s-node-drain --timeout 600 --force --delete-local-data node-maintenance
        k8s-node-drain --uncordon-after --uncordon-delay 3600 worker-node-1
    """
    config = Config(
        nodes=list(nodes or []),
        selector=selector,
        cordon_only=cordon_only,
        drain=DrainOptions(
            ignore_daemonsets=not no_ignore_daemonsets,
            delete_local_data=delete_local_data,
            force=force,
            timeout=timeout,
            poll_interval=poll_interval,
            grace_period=grace_period,
            namespace=namespace,
            pod_selector=pod_selector,
            max_unavailable=max_unavailable,
        ),
        uncordon_after=uncordon_after,
        uncordon_delay=uncordon_delay,
        dry_run=dry_run,
        assume_yes=yes,
        wait_uncordon=wait_uncordon,
        backend=backend,
        kubeconfig=kubeconfig,
        context=context,
        log_file=log_file,
        log_level=log_level,
    )

    if not config.nodes and not config.selector:
        typer.echo("Error: No nodes specified via arguments or selector.", err=True)
        raise typer.Exit(code=2)

    try:
        setup_logger(config.log_level, config.log_file)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    logger.info("=" * 70)
    logger.info("Kubernetes Node Drain")
    logger.info("=" * 70)
    logger.info("Starting node drain process...")
    config.log_configuration()

    raise typer.Exit(code=run(config))


if __name__ == "__main__":
    app()
