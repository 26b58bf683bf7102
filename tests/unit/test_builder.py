"""Unit tests for the TopologyBuilder, run against a recording fake runner."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from ringcompat.core.config import HarnessConfig
from ringcompat.core.exceptions import ProvisioningFailure
from ringcompat.core.models import Revision, RevisionId, RevisionSource, Topology
from ringcompat.topology.builder import TopologyBuilder
from ringcompat.topology.layouts import get_layout


@pytest.fixture
def revisions(tmp_path: Path) -> dict[RevisionId, Revision]:
    return {
        rev: Revision(
            source=RevisionSource(rev, "."),
            artifact=tmp_path / f"rita-{rev.value}",
            build_hash=f"hash-{rev.value}",
        )
        for rev in RevisionId
    }


@pytest.fixture
def builder(harness_config: HarnessConfig, fake_runner) -> TopologyBuilder:
    return TopologyBuilder(harness_config, runner=fake_runner, check_privileges=False)


@pytest.fixture
def provision(builder: TopologyBuilder, revisions, tmp_path: Path) -> Callable[..., Topology]:
    def _provision(layout: str = "homogeneous") -> Topology:
        return builder.provision(get_layout(layout), revisions, tmp_path / "run")

    return _provision


class TestProvision:
    """Tests for successful provisioning."""

    def test_builds_ring(self, provision: Callable[..., Topology]) -> None:
        topology = provision()
        assert topology.size == 3
        topology.assert_ring()
        assert [n.identity.namespace for n in topology.nodes] == ["rc-n0", "rc-n1", "rc-n2"]
        assert [n.identity.mesh_ip for n in topology.nodes] == ["fd00::1", "fd00::2", "fd00::3"]
        assert [n.identity.mgmt_ip for n in topology.nodes] == ["10.254.0.1", "10.254.0.2", "10.254.0.3"]

    def test_each_node_has_two_ring_links(self, provision: Callable[..., Topology]) -> None:
        topology = provision()
        for node in topology.nodes:
            prev_node, next_node = topology.neighbors(node)
            links = {link.ifname: link.peer for link in node.identity.links}
            assert links == {"ring_next": next_node.name, "ring_prev": prev_node.name}

    def test_link_addresses_share_a_subnet(self, provision: Callable[..., Topology]) -> None:
        topology = provision()
        n0_next = next(l for l in topology.node("n0").identity.links if l.ifname == "ring_next")
        n1_prev = next(l for l in topology.node("n1").identity.links if l.ifname == "ring_prev")
        assert n0_next.address == "10.253.0.1/30"
        assert n1_prev.address == "10.253.0.2/30"

    def test_argv_sequence(self, provision: Callable[..., Topology], fake_runner) -> None:
        provision()
        commands = fake_runner.commands()
        assert commands[0] == "ip netns list"
        assert "ip link add rc-br0 type bridge" in commands
        assert "iptables -I FORWARD -i rc-br0 -o rc-br0 -j DROP" in commands
        assert "ip netns add rc-n0" in commands
        assert "ip -n rc-n0 -6 addr add fd00::1/128 dev lo" in commands
        assert "ip link add rc-m0 type veth peer name mgmt0 netns rc-n0" in commands
        assert "ip link set rc-m0 master rc-br0" in commands
        assert (
            "ip -n rc-n2 link add ring_next type veth peer name ring_prev netns rc-n0" in commands
        )
        assert (
            "ip netns exec rc-n1 iptables -A INPUT -i mgmt0 -p tcp --dport 4877 -j ACCEPT"
            in commands
        )
        assert commands.index("ip link add rc-br0 type bridge") < commands.index("ip netns add rc-n0")

    def test_layout_assigns_artifacts(self, fast_config, revisions, tmp_path: Path, fake_runner) -> None:
        config = fast_config(node_count=4, revision_b="release")
        topology = TopologyBuilder(config, runner=fake_runner, check_privileges=False).provision(
            get_layout("inner_ring_old"), revisions, tmp_path / "run"
        )
        assert [n.revision_id for n in topology.nodes] == [
            RevisionId.A, RevisionId.B, RevisionId.A, RevisionId.B,
        ]
        assert topology.node("n1").artifact == revisions[RevisionId.B].artifact

    def test_writes_node_config(self, provision: Callable[..., Topology]) -> None:
        topology = provision()
        node = topology.node("n1")
        document = yaml.safe_load(node.config_path.read_text(encoding="utf-8"))
        assert document["node"] == "n1"
        assert document["network"]["mesh_ip"] == "fd00::2"
        assert document["network"]["wg_private_key"] == node.identity.wg_private_key
        assert {p["name"] for p in document["peers"]} == {"n0", "n2"}
        assert len(node.identity.wg_public_key) == 44

    def test_records_releasable_resources(self, provision: Callable[..., Topology]) -> None:
        topology = provision()
        kinds = [h.kind for h in topology.resources]
        assert kinds == ["bridge", "filter_rule", "filter_rule", "netns", "netns", "netns"]


class TestPreflight:
    """Tests for checks that run before anything is created."""

    def test_missing_revision_fails_before_commands(self, builder: TopologyBuilder, revisions, tmp_path: Path, fake_runner) -> None:
        del revisions[RevisionId.B]
        with pytest.raises(ProvisioningFailure, match="not built"):
            builder.provision(get_layout("inner_ring_old"), revisions, tmp_path / "run")
        assert fake_runner.calls == []

    def test_stale_namespaces_rejected(self, provision: Callable[..., Topology], fake_runner) -> None:
        fake_runner.respond("ip", "netns", "list", stdout="rc-n0 (id: 0)\nother\n")
        with pytest.raises(ProvisioningFailure, match="earlier run") as exc_info:
            provision()
        assert exc_info.value.details["namespaces"] == "rc-n0"
        assert fake_runner.commands() == ["ip netns list"]

    def test_stale_namespaces_cleaned(self, fast_config, revisions, tmp_path: Path, fake_runner) -> None:
        fake_runner.respond("ip", "netns", "list", stdout="rc-n0 (id: 0)\nother\n")
        builder = TopologyBuilder(fast_config(cleanup_stale=True), runner=fake_runner, check_privileges=False)
        builder.provision(get_layout("homogeneous"), revisions, tmp_path / "run")
        commands = fake_runner.commands()
        assert "ip netns del rc-n0" in commands
        assert "ip netns del other" not in commands


class TestRollbackAndTeardown:
    """Tests for all-or-nothing provisioning and idempotent teardown."""

    def test_partial_failure_rolls_back(self, provision: Callable[..., Topology], fake_runner) -> None:
        fake_runner.fail_on("ip", "netns", "add", "rc-n2")
        with pytest.raises(ProvisioningFailure, match="rolled back"):
            provision()
        commands = fake_runner.commands()
        released = [c for c in commands if " del" in c or " -D " in c]
        assert released == [
            "ip netns del rc-n1",
            "ip netns del rc-n0",
            "ip6tables -D FORWARD -i rc-br0 -o rc-br0 -j DROP",
            "iptables -D FORWARD -i rc-br0 -o rc-br0 -j DROP",
            "ip link del rc-br0",
        ]

    def test_teardown_releases_in_reverse_once(self, builder: TopologyBuilder, provision: Callable[..., Topology], fake_runner) -> None:
        topology = provision()
        fake_runner.calls.clear()
        assert builder.teardown(topology) == []
        assert fake_runner.commands()[0] == "ip netns del rc-n2"
        assert fake_runner.commands()[-1] == "ip link del rc-br0"
        assert len(fake_runner.calls) == 6
        assert topology.resources == []

    def test_teardown_twice_is_noop(self, builder: TopologyBuilder, provision: Callable[..., Topology], fake_runner) -> None:
        topology = provision()
        builder.teardown(topology)
        fake_runner.calls.clear()
        assert builder.teardown(topology) == []
        assert fake_runner.calls == []

    def test_teardown_none_is_noop(self, builder: TopologyBuilder, fake_runner) -> None:
        assert builder.teardown(None) == []
        assert fake_runner.calls == []

    def test_release_failure_is_reported_not_raised(self, builder: TopologyBuilder, provision: Callable[..., Topology], fake_runner) -> None:
        topology = provision()
        fake_runner.fail_on("ip", "netns", "del", "rc-n1")
        issues = builder.teardown(topology)
        assert len(issues) == 1
        assert "netns rc-n1" in issues[0]
        assert "ip link del rc-br0" in fake_runner.commands()
        assert topology.resources == []

    def test_release_uses_teardown_timeout(self, builder: TopologyBuilder, provision: Callable[..., Topology], fake_runner, harness_config: HarnessConfig) -> None:
        topology = provision()
        fake_runner.kwargs.clear()
        builder.teardown(topology)
        assert {kw["timeout"] for kw in fake_runner.kwargs} == {harness_config.teardown_timeout}
