"""Evict pods that violate their topology spread constraints.

Example:
    spread-equalizer --namespace web --policy policy.yaml --dry-run

Run with --dry-run first to review the eviction plan before applying it.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from collections import defaultdict
from typing import List, Optional, Sequence

from kubernetes.client.exceptions import ApiException
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from .cluster import KubernetesClusterState, load_client
from .errors import ClusterStateError, PolicyError
from .evictions import PodEvictor, eviction_api_for
from .policy import FailurePolicy, Policy, Namespaces, load_policy
from .topology import EvictionCandidate, PassResult, dispatch_evictions, plan_topology_spread

_THEME = Theme(
    {
        "title": "bold cyan",
        "success": "bold green",
        "warning": "bold yellow",
        "error": "bold red",
        "muted": "dim",
        "value": "bold white",
    }
)
STDOUT_CONSOLE = Console(theme=_THEME)
STDERR_CONSOLE = Console(theme=_THEME, stderr=True)

logger = logging.getLogger(__name__)


def _print_info(message: str) -> None:
    STDOUT_CONSOLE.print(message)


def _print_success(message: str) -> None:
    STDOUT_CONSOLE.print(f"[success]{message}[/success]")


def _print_warning(message: str) -> None:
    STDERR_CONSOLE.print(f"[warning]{message}[/warning]")


def _print_error(message: str) -> None:
    STDERR_CONSOLE.print(f"[error]{message}[/error]")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=STDERR_CONSOLE, show_path=False)],
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Evict pods so that topology spread constraints are satisfied again."
    )
    parser.add_argument(
        "--policy",
        default=None,
        help="Policy file (YAML) with strategy parameters and eviction limits.",
    )
    parser.add_argument(
        "--namespace",
        action="append",
        default=[],
        help="Only rebalance this namespace; may be repeated.",
    )
    parser.add_argument(
        "--exclude-namespace",
        action="append",
        default=[],
        help="Never rebalance this namespace; may be repeated.",
    )
    parser.add_argument(
        "--node-selector",
        default=None,
        help="Label selector to limit which nodes participate in balancing.",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Explicit path to kubeconfig; falls back to in-cluster or default config.",
    )
    parser.add_argument(
        "--context",
        default=None,
        help="Named context inside kubeconfig.",
    )
    parser.add_argument(
        "--grace-period",
        type=int,
        default=None,
        help="Optional grace period (seconds) passed to the eviction API.",
    )
    parser.add_argument(
        "--max-evictions",
        type=int,
        default=None,
        help="Upper bound on number of evictions performed in a single run.",
    )
    parser.add_argument(
        "--max-evictions-per-node",
        type=int,
        default=None,
        help="Upper bound on evictions per node in a single run.",
    )
    parser.add_argument(
        "--threshold-priority",
        type=int,
        default=None,
        help="Pods with this priority or higher are never evicted.",
    )
    parser.add_argument(
        "--evict-local-storage-pods",
        action="store_true",
        default=None,
        help="Allow evicting pods that use emptyDir volumes.",
    )
    parser.add_argument(
        "--count-non-evictable",
        action="store_true",
        default=None,
        help="Count pods that cannot be evicted when computing skew.",
    )
    parser.add_argument(
        "--on-error",
        choices=[policy.value for policy in FailurePolicy],
        default=None,
        help="Stop (abort) or keep going (continue) after an eviction API error.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan balancing actions without evicting pods.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: %(default)s).",
    )
    return parser.parse_args(argv)


def build_policy(args: argparse.Namespace) -> Policy:
    """Load the policy file, if any, and apply command line overrides."""
    policy = load_policy(args.policy) if args.policy else Policy()
    params = policy.params
    if args.namespace or args.exclude_namespace:
        params.namespaces = Namespaces(
            include=list(args.namespace),
            exclude=list(args.exclude_namespace),
        )
    if args.count_non_evictable is not None:
        params.count_non_evictable = args.count_non_evictable
    if args.on_error is not None:
        params.on_error = FailurePolicy(args.on_error)
    if args.node_selector is not None:
        policy.node_selector = args.node_selector
    if args.evict_local_storage_pods is not None:
        policy.evict_local_storage_pods = args.evict_local_storage_pods
    if args.max_evictions_per_node is not None:
        policy.max_pods_to_evict_per_node = args.max_evictions_per_node
    if args.threshold_priority is not None:
        policy.threshold_priority = args.threshold_priority
    return policy


def print_plan(result: PassResult) -> None:
    if not result.candidates:
        STDOUT_CONSOLE.rule(Text("Spread Equalizer Status", style="title"))
        STDOUT_CONSOLE.print(
            Panel.fit(
                Text(
                    "Pods already satisfy their topology spread constraints.",
                    style="success",
                ),
                border_style="success",
                title="Balanced",
            )
        )
        return
    _render_rich_plan(result.candidates)


def _render_rich_plan(candidates: List[EvictionCandidate]) -> None:
    affected_domains = sorted({candidate.domain for candidate in candidates})
    affected_nodes = sorted({candidate.node_name for candidate in candidates})

    STDOUT_CONSOLE.rule(Text("Topology Spread Eviction Plan", style="title"))

    overview = Table.grid(padding=(0, 2))
    overview.add_column(style="muted", justify="right")
    overview.add_column(style="value")
    overview.add_row("Planned evictions", str(len(candidates)))
    overview.add_row("Affected domains", str(len(affected_domains)))
    overview.add_row("Affected nodes", str(len(affected_nodes)))

    STDOUT_CONSOLE.print(
        Panel.fit(
            overview,
            title="Plan Snapshot",
            border_style="title",
        )
    )

    table = Table(
        title="Eviction Rollout",
        box=box.ROUNDED,
        show_header=True,
        header_style="title",
        expand=True,
    )
    table.add_column("Namespace/Pod", style="value", no_wrap=False)
    table.add_column("Node", style="value", no_wrap=True)
    table.add_column("Domain", style="value", no_wrap=True)
    table.add_column("Constraint", style="muted", no_wrap=False)
    table.add_column("Skew", style="value", no_wrap=True)
    table.add_column("Max", justify="right", style="value", no_wrap=True)

    seen = defaultdict(int)
    for candidate in candidates:
        record = candidate.record
        key = (id(record), candidate.domain)
        seen[key] += 1
        before = record.skew(candidate.domain) - (seen[key] - 1)
        after = max(before - 1, 0)
        max_skew = record.membership.max_skew
        target_style = "success" if after <= max_skew else "warning"
        constraints = "; ".join(description for description, _ in candidate.selected_by)
        table.add_row(
            str(candidate.identity),
            candidate.node_name,
            str(candidate.domain),
            constraints,
            f"{before} → {after}",
            f"[{target_style}]{max_skew}[/]",
        )

    STDOUT_CONSOLE.print(table)
    STDOUT_CONSOLE.print(
        Text("Tip: run with --dry-run first to preview the rollout safely.", style="muted")
    )


def _install_stop_handlers(stop: threading.Event) -> None:
    def _handle(signum, _frame):
        logger.warning("received signal %s, stopping after the current request", signum)
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _handle)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        policy = build_policy(args)
    except PolicyError as exc:
        _print_error(f"Invalid policy: {exc}")
        return 2
    if not policy.enabled:
        _print_info("Strategy RemovePodsViolatingTopologySpreadConstraint is disabled.")
        return 0

    client = load_client(args.kubeconfig, args.context)
    core_api = client.CoreV1Api()
    cluster = KubernetesClusterState(core_api, policy.node_selector)
    evictor = PodEvictor(
        eviction_api_for(client, core_api),
        dry_run=args.dry_run,
        grace_period=args.grace_period,
        max_evictions=args.max_evictions,
        max_pods_to_evict_per_node=policy.max_pods_to_evict_per_node,
        evict_local_storage_pods=policy.evict_local_storage_pods,
        threshold_priority=policy.threshold_priority,
    )
    stop = threading.Event()
    _install_stop_handlers(stop)

    try:
        result = plan_topology_spread(cluster, evictor.is_evictable, policy.params, stop)
    except (ClusterStateError, ApiException) as exc:
        _print_error(f"Could not read cluster state: {exc}")
        return 1
    print_plan(result)
    if result.cancelled:
        _print_warning("Cancelled before any eviction was requested.")
        return 1
    dispatch_evictions(result.candidates, evictor, policy.params.on_error, stop, result)
    if result.refused:
        _print_warning(
            f"{len(result.refused)} eviction(s) refused by limits or disruption budgets; "
            "they will be retried on the next run."
        )
    if result.aborted:
        _print_warning("Stopped after an eviction error; remaining candidates were skipped.")
    if result.evicted and args.dry_run:
        _print_success(f"Dry run: {len(result.evicted)} pod(s) would be evicted.")
    elif result.evicted:
        _print_success(f"Successfully issued {len(result.evicted)} eviction request(s).")
    else:
        _print_info("No eviction requests were issued.")
    for error in result.errors:
        _print_error(str(error))
    return 1 if result.errors or result.cancelled else 0


if __name__ == "__main__":
    sys.exit(main())
