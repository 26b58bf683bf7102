"""Unit tests for the topology, node and verdict models."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from ringcompat.core.exceptions import ExitCode, FailureKind, ProvisioningFailure
from ringcompat.core.models import (
    NodeStatus,
    RevisionId,
    RevisionSource,
    Topology,
    Verdict,
    VerdictKind,
)


class TestTopology:
    """Tests for ring adjacency and structural checks."""

    def test_neighbors_wrap_around(self, topology: Topology) -> None:
        n0, n1, n2 = topology.nodes
        assert topology.neighbors(n0) == (n2, n1)
        assert topology.neighbors(n2) == (n1, n0)

    def test_ring_edges_cover_each_pair_once(self, make_topology: Callable[..., Topology]) -> None:
        ring = make_topology(5)
        edges = [(a.name, b.name) for a, b in ring.ring_edges()]
        assert edges == [("n0", "n1"), ("n1", "n2"), ("n2", "n3"), ("n3", "n4"), ("n4", "n0")]

    def test_assert_ring_accepts_valid_ring(self, make_topology: Callable[..., Topology]) -> None:
        for size in (3, 4, 7):
            make_topology(size).assert_ring()

    def test_assert_ring_rejects_small_ring(self, make_topology: Callable[..., Topology]) -> None:
        ring = make_topology(3)
        ring.nodes.pop()
        with pytest.raises(ProvisioningFailure, match="at least 3"):
            ring.assert_ring()

    def test_assert_ring_rejects_bad_positions(self, make_topology: Callable[..., Topology]) -> None:
        ring = make_topology(4)
        ring.nodes[1], ring.nodes[2] = ring.nodes[2], ring.nodes[1]
        with pytest.raises(ProvisioningFailure, match="positions"):
            ring.assert_ring()

    def test_live_nodes_excludes_failed(self, topology: Topology) -> None:
        topology.nodes[1].status = NodeStatus.FAILED
        assert [n.name for n in topology.live_nodes()] == ["n0", "n2"]

    def test_node_lookup(self, topology: Topology) -> None:
        assert topology.node("n2").position == 2
        with pytest.raises(KeyError):
            topology.node("n9")

    def test_mermaid_lists_every_edge(self, topology: Topology) -> None:
        text = topology.to_mermaid()
        assert text.startswith("graph LR")
        assert text.count("---") == 3


class TestNode:
    """Tests for node helpers."""

    def test_private_key_not_exported(self, topology: Topology) -> None:
        data = topology.nodes[0].to_dict()
        assert "wg_private_key" not in data["identity"]
        assert data["identity"]["wg_public_key"] == "pub0"

    def test_log_tail(self, topology: Topology) -> None:
        node = topology.nodes[0]
        assert node.log_tail() == ""
        node.log_path.write_text("x" * 100 + "END", encoding="utf-8")
        assert node.log_tail(5) == "xxEND"


class TestRevisionSource:
    """Tests for revision source classification."""

    @pytest.mark.parametrize(
        ("remote", "is_remote"),
        [
            (".", False),
            ("/src/althea_rs", False),
            ("https://github.com/althea-mesh/althea_rs.git", True),
            ("git@github.com:althea-mesh/althea_rs.git", True),
        ],
    )
    def test_is_remote(self, remote: str, is_remote: bool) -> None:
        assert RevisionSource(RevisionId.B, remote, "master").is_remote is is_remote

    def test_describe(self) -> None:
        assert RevisionSource(RevisionId.A, ".").describe() == "."
        assert RevisionSource(RevisionId.B, "repo", "release").describe() == "repo@release"


class TestVerdict:
    """Tests for verdict labels and exit codes."""

    def test_pass(self) -> None:
        verdict = Verdict.passed("ok")
        assert verdict.kind == VerdictKind.PASS
        assert verdict.label() == "Pass"
        assert verdict.exit_code == ExitCode.PASS

    def test_fail(self) -> None:
        verdict = Verdict.failed(FailureKind.CONVERGENCE_TIMEOUT)
        assert verdict.label() == "Fail(ConvergenceTimeout)"
        assert verdict.exit_code == ExitCode.CONVERGENCE_TIMEOUT

    def test_error(self) -> None:
        verdict = Verdict.errored(FailureKind.BUILD_FAILURE, "cargo failed")
        assert verdict.label() == "Error(BuildFailure)"
        assert verdict.exit_code == ExitCode.BUILD_FAILURE

    def test_exit_codes_are_distinct(self) -> None:
        codes = [Verdict.errored(kind).exit_code for kind in FailureKind]
        assert len(set(codes)) == len(codes)
        assert ExitCode.PASS not in codes
