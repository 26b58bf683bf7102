"""Data models shared by every stage of a compatibility run.

A ``Run`` owns two ``Revision`` builds, one ``Topology`` of ``Node``
objects wired into a ring, and the ordered ``PollAttempt`` history that
the convergence poller produces.  ``Revision``, ``Layout``,
``NodeSnapshot`` and ``PollAttempt`` are immutable once created; ``Node``
and ``Run`` are mutated in place by their single owners.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from .exceptions import EXIT_CODES, ExitCode, FailureKind, ProvisioningFailure

logger = logging.getLogger(__name__)


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Revisions and layouts
# ---------------------------------------------------------------------------


class RevisionId(StrEnum):
    """The two daemon revisions a run can deploy."""

    A = "A"
    B = "B"


@dataclass(frozen=True)
class RevisionSource:
    """Where a revision comes from, before it is built.

    Attributes:
        revision_id: ``A`` or ``B``.
        remote: Local path or git URL.
        ref: Branch, tag or commit; ``None`` builds *remote* as-is.

    """

    revision_id: RevisionId
    remote: str
    ref: str | None = None

    @property
    def is_remote(self) -> bool:
        """Return ``True`` if *remote* is a URL rather than a local path."""
        return "://" in self.remote or self.remote.startswith("git@")

    def describe(self) -> str:
        """Return a short ``remote@ref`` label for logs and reports."""
        return f"{self.remote}@{self.ref}" if self.ref else self.remote


@dataclass(frozen=True)
class Revision:
    """A built daemon revision.

    Attributes:
        source: The source the artifact was built from.
        artifact: Path to the runnable daemon binary.
        build_hash: Content-identifying hash of the built sources.
        cached: ``True`` if the artifact came from the per-hash cache.

    """

    source: RevisionSource
    artifact: Path
    build_hash: str
    cached: bool = False

    @property
    def revision_id(self) -> RevisionId:
        """Return the revision identifier."""
        return self.source.revision_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for reports."""
        return {
            "revision_id": self.revision_id.value,
            "source": self.source.describe(),
            "artifact": str(self.artifact),
            "build_hash": self.build_hash,
            "cached": self.cached,
        }


@dataclass(frozen=True)
class Layout:
    """Named rule mapping a ring position to the revision it runs.

    Attributes:
        name: Layout name as given in ``COMPAT_LAYOUT``.
        description: One-line explanation for reports.
        assign: ``assign(position, size) -> RevisionId``.
        uses_revision_b: Whether the layout ever assigns revision B.

    """

    name: str
    description: str
    assign: Callable[[int, int], RevisionId] = field(compare=False, repr=False)
    uses_revision_b: bool = True

    def revision_for(self, position: int, size: int) -> RevisionId:
        """Return the revision a node at *position* runs in a ring of *size*."""
        if not 0 <= position < size:
            raise ValueError(f"position {position} outside ring of size {size}")
        return self.assign(position, size)


# ---------------------------------------------------------------------------
# Nodes and topology
# ---------------------------------------------------------------------------


class NodeStatus(StrEnum):
    """Lifecycle status of an emulated node."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class LinkEnd:
    """One node's end of a point-to-point ring link.

    Attributes:
        ifname: Interface name inside the node's namespace.
        address: Interface address with prefix length.
        peer: Name of the node on the other end.

    """

    ifname: str
    address: str
    peer: str


@dataclass(frozen=True)
class NetworkIdentity:
    """Network identity assigned to a node by the topology builder.

    Attributes:
        namespace: Network namespace the daemon runs in.
        mesh_ip: Mesh IPv6 address, bound to the namespace loopback.
        mgmt_ip: Management address reachable from the host bridge.
        links: The node's two ring link ends.
        wg_public_key: WireGuard public key.
        wg_private_key: WireGuard private key.

    """

    namespace: str
    mesh_ip: str
    mgmt_ip: str
    links: tuple[LinkEnd, ...] = ()
    wg_public_key: str = ""
    wg_private_key: str = field(default="", repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary, leaving out the private key."""
        data = asdict(self)
        data.pop("wg_private_key", None)
        return data


@dataclass(frozen=True)
class NodeSnapshot:
    """Observed daemon state of one node at one point in time.

    Attributes:
        node: Node name.
        timestamp: ISO-8601 capture time.
        responded: ``False`` if the query failed or timed out.
        tunnels: Mapping of peer mesh IP to tunnel state.
        routes: Mapping of destination prefix to route details.
        ledger: Mapping of peer mesh IP to recorded debt.
        error: Query error text when *responded* is ``False``.

    """

    node: str
    timestamp: str = field(default_factory=utc_now)
    responded: bool = True
    tunnels: dict[str, str] = field(default_factory=dict)
    routes: dict[str, dict[str, Any]] = field(default_factory=dict)
    ledger: dict[str, int] = field(default_factory=dict)
    error: str = ""

    @classmethod
    def unanswered(cls, node: str, error: str) -> NodeSnapshot:
        """Build the snapshot recorded for a node that did not answer."""
        return cls(node=node, responded=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary."""
        return asdict(self)


@dataclass
class Node:
    """One emulated mesh node.

    Created by the topology builder, its ``status``/``pid``/``exit_code``
    are owned by the node supervisor and ``last_snapshot`` by the
    convergence poller.

    Attributes:
        name: Node name, unique in the topology.
        position: Ordinal ring position ``0..N-1``.
        revision_id: Revision this node runs.
        artifact: Daemon binary for that revision.
        identity: Network identity inside the emulated ring.
        config_path: Generated daemon configuration file.
        log_path: File receiving the daemon's stdout and stderr.
        status: Lifecycle status.
        pid: Daemon process id while running.
        exit_code: Daemon exit status once it has exited.
        failure: Reason the node was marked failed.
        last_snapshot: Most recent observed state.

    """

    name: str
    position: int
    revision_id: RevisionId
    artifact: Path
    identity: NetworkIdentity
    config_path: Path
    log_path: Path
    status: NodeStatus = NodeStatus.PENDING
    pid: int | None = None
    exit_code: int | None = None
    failure: str = ""
    last_snapshot: NodeSnapshot | None = None

    @property
    def is_live(self) -> bool:
        """Return ``True`` while the node's daemon is confirmed running."""
        return self.status == NodeStatus.RUNNING

    def log_tail(self, max_chars: int = 4000) -> str:
        """Return the last *max_chars* characters of the daemon log."""
        try:
            text = self.log_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""
        return text[-max_chars:]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for reports."""
        return {
            "name": self.name,
            "position": self.position,
            "revision": self.revision_id.value,
            "artifact": str(self.artifact),
            "identity": self.identity.to_dict(),
            "status": self.status.value,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "failure": self.failure,
            "last_snapshot": self.last_snapshot.to_dict() if self.last_snapshot else None,
        }


@dataclass(frozen=True)
class ResourceHandle:
    """A provisioned OS-level network resource and how to release it.

    Attributes:
        kind: ``bridge``, ``filter_rule`` or ``netns``.
        name: Resource name for logs.
        release_argv: Command that releases the resource.

    """

    kind: str
    name: str
    release_argv: tuple[str, ...]


@dataclass
class Topology:
    """Ring of nodes plus the network resources that back it.

    Node ``i`` neighbours nodes ``i-1`` and ``i+1`` modulo ``N``.  The
    resource list is owned by the topology builder; it is emptied as
    resources are released.

    Attributes:
        nodes: Nodes ordered by ring position.
        layout: Layout used to assign revisions.
        prefix: Namespace/interface name prefix.
        bridge: Host management bridge name.
        resources: Provisioned resources, in creation order.

    """

    nodes: list[Node]
    layout: Layout
    prefix: str = "rc-"
    bridge: str = ""
    resources: list[ResourceHandle] = field(default_factory=list)

    @property
    def size(self) -> int:
        """Number of nodes in the ring."""
        return len(self.nodes)

    def node(self, name: str) -> Node:
        """Look up a node by name."""
        for candidate in self.nodes:
            if candidate.name == name:
                return candidate
        raise KeyError(name)

    def neighbors(self, node: Node) -> tuple[Node, Node]:
        """Return the ``(previous, next)`` ring neighbours of *node*."""
        size = self.size
        return self.nodes[(node.position - 1) % size], self.nodes[(node.position + 1) % size]

    def ring_edges(self) -> list[tuple[Node, Node]]:
        """Return every adjacent pair once, as ``(i, i+1 mod N)``."""
        return [(n, self.nodes[(n.position + 1) % self.size]) for n in self.nodes]

    def live_nodes(self) -> list[Node]:
        """Return nodes whose daemons are confirmed running."""
        return [n for n in self.nodes if n.is_live]

    def assert_ring(self) -> None:
        """Verify the adjacency forms a single cycle of length ``N >= 3``.

        Walks the cycle from position 0 and checks that it visits every
        node exactly once before returning to the start.

        Raises:
            ProvisioningFailure: If the structure is not a single ring.

        """
        if self.size < 3:
            raise ProvisioningFailure(
                f"A ring needs at least 3 nodes, got {self.size}",
            )
        positions = [n.position for n in self.nodes]
        if positions != list(range(self.size)):
            raise ProvisioningFailure(
                "Node positions are not 0..N-1 in order",
                details={"positions": positions},
            )

        visited: set[str] = set()
        current = self.nodes[0]
        for _ in range(self.size):
            if current.name in visited:
                break
            visited.add(current.name)
            current = self.neighbors(current)[1]

        if current is not self.nodes[0] or len(visited) != self.size:
            raise ProvisioningFailure(
                "Ring adjacency is not a single cycle",
                details={"visited": sorted(visited)},
            )

    def to_mermaid(self) -> str:
        """Render the ring as a Mermaid graph for the HTML report."""
        lines = ["graph LR"]
        for a, b in self.ring_edges():
            lines.append(
                f"    {a.name}[{a.name} {a.revision_id.value}] --- "
                f"{b.name}[{b.name} {b.revision_id.value}]"
            )
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Polling history and verdict
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CrashEvent:
    """A daemon exit observed while the run was in progress.

    Attributes:
        node: Node name.
        returncode: Exit status reported by the process.
        elapsed: Seconds since polling started when it was applied.
        timestamp: ISO-8601 time the exit was observed.

    """

    node: str
    returncode: int | None
    elapsed: float = 0.0
    timestamp: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class PollAttempt:
    """Immutable record of one poll round.

    Attributes:
        sequence: Round number, starting at 1.
        scheduled_interval: Wait before this round, from the backoff schedule.
        started_at: ISO-8601 time the round's queries were issued.
        elapsed: Seconds since polling started when the round began.
        duration: Seconds the round's queries took.
        query_timeout: Per-node query timeout used this round.
        snapshots: Per-node state observed this round.
        observed: Per-node raw predicate outcome this round.
        node_converged: Per-node latched convergence flag.
        failures: Per-node failed assertion messages.
        live_nodes: Nodes evaluated this round.
        converged: ``True`` if every live node satisfied the predicate.

    """

    sequence: int
    scheduled_interval: float
    started_at: str
    elapsed: float
    duration: float
    query_timeout: float
    snapshots: dict[str, NodeSnapshot] = field(default_factory=dict)
    observed: dict[str, bool] = field(default_factory=dict)
    node_converged: dict[str, bool] = field(default_factory=dict)
    failures: dict[str, list[str]] = field(default_factory=dict)
    live_nodes: tuple[str, ...] = ()
    converged: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for reports."""
        return {
            "sequence": self.sequence,
            "scheduled_interval": round(self.scheduled_interval, 6),
            "started_at": self.started_at,
            "elapsed": round(self.elapsed, 6),
            "duration": round(self.duration, 6),
            "query_timeout": round(self.query_timeout, 6),
            "live_nodes": list(self.live_nodes),
            "converged": self.converged,
            "observed": dict(self.observed),
            "node_converged": dict(self.node_converged),
            "failures": {k: list(v) for k, v in self.failures.items()},
            "snapshots": {k: v.to_dict() for k, v in self.snapshots.items()},
        }


class VerdictKind(StrEnum):
    """Top-level outcome of a run."""

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


@dataclass(frozen=True)
class Verdict:
    """Final outcome of a run.

    ``Fail`` carries a reason (``ConvergenceTimeout`` or
    ``AllNodesFailed``); ``Error`` carries the cause of an aborted run.

    Attributes:
        kind: Pass, fail or error.
        reason: Failure kind for fail/error verdicts.
        message: Human-readable explanation.

    """

    kind: VerdictKind
    reason: FailureKind | None = None
    message: str = ""

    @classmethod
    def passed(cls, message: str = "") -> Verdict:
        """Build a passing verdict."""
        return cls(kind=VerdictKind.PASS, message=message)

    @classmethod
    def failed(cls, reason: FailureKind, message: str = "") -> Verdict:
        """Build a failing verdict."""
        return cls(kind=VerdictKind.FAIL, reason=reason, message=message)

    @classmethod
    def errored(cls, cause: FailureKind, message: str = "") -> Verdict:
        """Build an error verdict."""
        return cls(kind=VerdictKind.ERROR, reason=cause, message=message)

    @property
    def exit_code(self) -> ExitCode:
        """Return the process exit code for this verdict."""
        if self.kind == VerdictKind.PASS:
            return ExitCode.PASS
        return EXIT_CODES[self.reason or FailureKind.INTERNAL_ERROR]

    def label(self) -> str:
        """Return ``Pass``, ``Fail(reason)`` or ``Error(cause)``."""
        if self.kind == VerdictKind.PASS:
            return "Pass"
        reason = self.reason.value if self.reason else FailureKind.INTERNAL_ERROR.value
        return f"{self.kind.value.capitalize()}({reason})"


@dataclass
class Run:
    """One end-to-end compatibility run.

    Attributes:
        run_id: Unique identifier used for the run's work directory.
        sources: Revision sources requested for this run.
        layout_name: Layout name the topology uses.
        settings: Configuration summary for the report.
        revisions: Built revisions keyed by id.
        topology: The provisioned ring, once built.
        attempts: Poll history, strictly ordered.
        crash_events: Daemon exits observed during polling.
        verdict: Final verdict, once decided.
        cleanup_issues: Resources that could not be released.
        error_trace: Traceback text for internal errors.
        started_at: ISO-8601 start time.
        finished_at: ISO-8601 finish time.

    """

    run_id: str
    sources: list[RevisionSource] = field(default_factory=list)
    layout_name: str = ""
    settings: dict[str, Any] = field(default_factory=dict)
    revisions: dict[RevisionId, Revision] = field(default_factory=dict)
    topology: Topology | None = None
    attempts: list[PollAttempt] = field(default_factory=list)
    crash_events: list[CrashEvent] = field(default_factory=list)
    verdict: Verdict | None = None
    cleanup_issues: list[str] = field(default_factory=list)
    error_trace: str = ""
    started_at: str = field(default_factory=utc_now)
    finished_at: str = ""
