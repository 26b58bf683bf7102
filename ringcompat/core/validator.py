"""Assertion-style checks that make up the convergence predicate.

A live node is converged when, in the same poll round:

* it reports an established tunnel to each ring neighbour that is still
  live (tunnels to failed neighbours are not required),
* it has an installed host route to the mesh address of every other
  live node, and
* for each live neighbour it holds a ledger entry whose debt cancels
  the neighbour's entry for it, within the configured tolerance.

The topology is converged when every live node passes in one round.
Each ``assert_*`` method returns a ``ValidationResult`` instead of
raising, so a round's outcome can be reported in full.

Usage::

    validator = ConvergenceValidator(ledger_tolerance=0)
    reports = validator.evaluate_round(topology, snapshots)
    converged = all(r.passed for r in reports.values())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .models import Node, NodeSnapshot, Topology

logger = logging.getLogger(__name__)

ESTABLISHED_STATES = frozenset({"established", "up"})


class Severity(StrEnum):
    """Severity level for validation results."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    INFO = "info"


@dataclass
class ValidationResult:
    """Outcome of a single validation assertion.

    Attributes:
        name: Short identifier for the assertion.
        passed: Whether the assertion succeeded.
        message: Human-readable description of the outcome.
        severity: Impact level if the assertion failed.
        expected: The expected value or condition.
        actual: The observed value.
        node: Name of the node the assertion ran against.

    """

    name: str
    passed: bool
    message: str
    severity: Severity = Severity.MEDIUM
    expected: Any = None
    actual: Any = None
    node: str = ""


@dataclass
class ValidationReport:
    """Aggregated validation results for one node in one round.

    Attributes:
        node: Node name.
        results: Ordered list of individual validation outcomes.

    """

    node: str
    results: list[ValidationResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """Return ``True`` only if every result passed."""
        return all(r.passed for r in self.results)

    @property
    def failures(self) -> list[ValidationResult]:
        """Return the failed results."""
        return [r for r in self.results if not r.passed]

    def add(self, result: ValidationResult) -> None:
        """Append a validation result to the report."""
        self.results.append(result)

    def summary(self) -> str:
        """Return a one-line summary string."""
        total = len(self.results)
        return f"[{self.node}] {total - len(self.failures)}/{total} passed"


def host_prefix(mesh_ip: str) -> str:
    """Return the /128 host prefix of a mesh address."""
    return f"{mesh_ip}/128"


class ConvergenceValidator:
    """Evaluate the convergence predicate over one round's snapshots.

    Args:
        ledger_tolerance: Largest allowed ``|debt(a->b) + debt(b->a)|``.

    """

    def __init__(self, ledger_tolerance: int = 0) -> None:
        """Initialize the validator with the ledger tolerance."""
        self._ledger_tolerance = ledger_tolerance
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def assert_responded(self, snapshot: NodeSnapshot) -> ValidationResult:
        """Assert the node answered its state query this round."""
        return ValidationResult(
            name="state_query",
            passed=snapshot.responded,
            message=(
                "state query answered"
                if snapshot.responded
                else f"no state this round: {snapshot.error or 'no response'}"
            ),
            severity=Severity.INFO if snapshot.responded else Severity.HIGH,
            node=snapshot.node,
        )

    def assert_tunnel_established(
        self,
        snapshot: NodeSnapshot,
        peer: Node,
    ) -> ValidationResult:
        """Assert *snapshot* shows an established tunnel to *peer*.

        Args:
            snapshot: The node's state this round.
            peer: The ring neighbour the tunnel should reach.

        Returns:
            A ``ValidationResult`` indicating pass or fail.

        """
        state = snapshot.tunnels.get(peer.identity.mesh_ip)
        if state is None:
            return ValidationResult(
                name="tunnel_established",
                passed=False,
                message=f"no tunnel to {peer.name} ({peer.identity.mesh_ip})",
                severity=Severity.CRITICAL,
                expected="established",
                actual="not_found",
                node=snapshot.node,
            )
        passed = state.lower() in ESTABLISHED_STATES
        return ValidationResult(
            name="tunnel_established",
            passed=passed,
            message=(
                f"tunnel to {peer.name} is {state}"
                if passed
                else f"tunnel to {peer.name} expected established, got {state}"
            ),
            severity=Severity.INFO if passed else Severity.CRITICAL,
            expected="established",
            actual=state,
            node=snapshot.node,
        )

    def assert_route_installed(
        self,
        snapshot: NodeSnapshot,
        destination: Node,
    ) -> ValidationResult:
        """Assert *snapshot* holds an installed host route to *destination*."""
        prefix = host_prefix(destination.identity.mesh_ip)
        route = snapshot.routes.get(prefix)
        if route is None:
            return ValidationResult(
                name="route_installed",
                passed=False,
                message=f"no route to {destination.name} ({prefix})",
                severity=Severity.HIGH,
                expected=prefix,
                actual="not_found",
                node=snapshot.node,
            )
        installed = bool(route.get("installed", True))
        return ValidationResult(
            name="route_installed",
            passed=installed,
            message=(
                f"route to {destination.name} installed"
                if installed
                else f"route to {destination.name} known but not installed"
            ),
            severity=Severity.INFO if installed else Severity.HIGH,
            expected=prefix,
            actual=route,
            node=snapshot.node,
        )

    def assert_ledger_consistent(
        self,
        snapshot: NodeSnapshot,
        peer_snapshot: NodeSnapshot,
        node: Node,
        peer: Node,
    ) -> ValidationResult:
        """Assert *node* and *peer* agree on what they owe each other.

        Both sides must hold an entry for the other, and the two debts
        must cancel within the ledger tolerance.
        """
        ours = snapshot.ledger.get(peer.identity.mesh_ip)
        theirs = peer_snapshot.ledger.get(node.identity.mesh_ip) if peer_snapshot.responded else None
        if ours is None or theirs is None:
            missing = peer.name if ours is None else f"{peer.name}'s view of {node.name}"
            return ValidationResult(
                name="ledger_consistent",
                passed=False,
                message=f"no ledger entry for {missing}",
                severity=Severity.HIGH,
                expected="entry on both sides",
                actual={"ours": ours, "theirs": theirs},
                node=node.name,
            )
        divergence = abs(ours + theirs)
        passed = divergence <= self._ledger_tolerance
        return ValidationResult(
            name="ledger_consistent",
            passed=passed,
            message=(
                f"ledger with {peer.name} consistent"
                if passed
                else f"ledger with {peer.name} diverges by {divergence}"
            ),
            severity=Severity.INFO if passed else Severity.HIGH,
            expected=f"|{ours} + {theirs}| <= {self._ledger_tolerance}",
            actual=divergence,
            node=node.name,
        )

    def evaluate_node(
        self,
        node: Node,
        topology: Topology,
        snapshots: dict[str, NodeSnapshot],
    ) -> ValidationReport:
        """Run every assertion for *node* against this round's snapshots.

        Expectations only cover nodes that are live when this is called.
        """
        report = ValidationReport(node=node.name)
        snapshot = snapshots.get(node.name) or NodeSnapshot.unanswered(node.name, "not queried")
        responded = self.assert_responded(snapshot)
        report.add(responded)
        if not responded.passed:
            return report

        live_neighbors = {n.name: n for n in topology.neighbors(node) if n.is_live}
        for peer in live_neighbors.values():
            report.add(self.assert_tunnel_established(snapshot, peer))

        for other in topology.live_nodes():
            if other is node:
                continue
            report.add(self.assert_route_installed(snapshot, other))

        for peer in live_neighbors.values():
            peer_snapshot = snapshots.get(peer.name) or NodeSnapshot.unanswered(peer.name, "not queried")
            report.add(self.assert_ledger_consistent(snapshot, peer_snapshot, node, peer))

        return report

    def evaluate_round(
        self,
        topology: Topology,
        snapshots: dict[str, NodeSnapshot],
    ) -> dict[str, ValidationReport]:
        """Evaluate the predicate for every live node.

        Returns:
            Mapping of node name to its ``ValidationReport``.

        """
        reports = {
            node.name: self.evaluate_node(node, topology, snapshots)
            for node in topology.live_nodes()
        }
        passing = sum(1 for r in reports.values() if r.passed)
        self._logger.debug("Round predicate: %d/%d live nodes converged", passing, len(reports))
        return reports
