"""Provision and release the emulated ring.

Each node gets its own network namespace holding:

* a loopback mesh address ``<mesh_prefix> + position + 1``,
* two point-to-point veth links (``ring_prev``, ``ring_next``) to its ring
  neighbours, each with a /30 from the link pool,
* a management veth (``mgmt0``) attached to a host bridge so the harness
  can reach the daemon's HTTP state port, with packet-filter rules that
  allow only that port over the management link.

The host side carries the bridge and a FORWARD rule that stops nodes from
talking to each other across it, so mesh traffic stays on the ring.

Every created resource that needs an explicit release is recorded as a
``ResourceHandle`` on the ``Topology``.  A namespace handle covers
everything created inside it (the ring links, ``mgmt0``, its filter
rules, and the host end of its management veth).  Teardown pops handles
in reverse creation order, so each is released exactly once and a second
teardown is a no-op.

Usage::

    builder = TopologyBuilder(config)
    topology = builder.provision(layout, revisions, run_dir)
    try:
        ...
    finally:
        builder.teardown(topology)
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml  # type: ignore[import-untyped]

from ..core.commands import CommandRunner
from ..core.exceptions import (
    CleanupFailure,
    CommandExecutionError,
    ProvisioningFailure,
)
from ..core.models import (
    Layout,
    LinkEnd,
    NetworkIdentity,
    Node,
    ResourceHandle,
    Revision,
    RevisionId,
    Topology,
)
from .layouts import assignments
from .netns import ensure_privileges, generate_wg_keypair, ip, list_netns, netns_exec, tune_namespace

if TYPE_CHECKING:
    from ..core.config import HarnessConfig

logger = logging.getLogger(__name__)

MGMT_IFNAME = "mgmt0"
PREV_IFNAME = "ring_prev"
NEXT_IFNAME = "ring_next"
LINK_PREFIXLEN = 30


class TopologyBuilder:
    """Build the ring of namespaces and tear it down again.

    Args:
        config: Harness configuration (sizes, prefixes, subnets, timeouts).
        runner: Command runner; a fresh ``CommandRunner`` by default.
        check_privileges: Verify root and tools before provisioning.

    """

    def __init__(
        self,
        config: HarnessConfig,
        runner: CommandRunner | None = None,
        check_privileges: bool = True,
    ) -> None:
        """Initialize the builder with configuration and a command runner."""
        self._config = config
        self._runner = runner or CommandRunner()
        self._check_privileges = check_privileges
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # -- Public API ---------------------------------------------------------

    def provision(
        self,
        layout: Layout,
        revisions: dict[RevisionId, Revision],
        run_dir: Path,
    ) -> Topology:
        """Provision ``N`` nodes wired into a ring.

        All-or-nothing: if any step fails, every resource created so far
        is released before ``ProvisioningFailure`` propagates.

        Args:
            layout: Assigns a revision to each ring position.
            revisions: Built revisions keyed by id.
            run_dir: Per-run directory for node configs and logs.

        Returns:
            The provisioned ``Topology``.

        Raises:
            ProvisioningFailure: If any resource cannot be allocated.

        """
        size = self._config.node_count
        plan = assignments(layout, size)
        missing = sorted({rev.value for rev in plan if rev not in revisions})
        if missing:
            raise ProvisioningFailure(
                f"Layout '{layout.name}' needs revisions that were not built",
                details={"missing": ", ".join(missing)},
            )

        if self._check_privileges:
            ensure_privileges()
        self._clear_stale()

        prefix = self._config.netns_prefix
        topology = Topology(nodes=[], layout=layout, prefix=prefix, bridge=f"{prefix}br0")
        self._logger.info(
            "Provisioning %d-node ring (layout=%s, prefix=%s)", size, layout.name, prefix
        )
        try:
            self._create_bridge(topology)
            for position, revision_id in enumerate(plan):
                topology.nodes.append(
                    self._create_node(topology, position, revisions[revision_id], run_dir)
                )
            self._wire_ring(topology)
            for node in topology.nodes:
                self._write_node_config(topology, node)
            topology.assert_ring()
        except Exception as exc:
            self._logger.error("Provisioning failed, rolling back: %s", exc)
            issues = self.teardown(topology)
            if isinstance(exc, ProvisioningFailure):
                raise
            raise ProvisioningFailure(
                "Provisioning failed and was rolled back",
                details={"error": str(exc), "cleanup_issues": len(issues)},
            ) from exc

        self._logger.info(
            "Ring ready: %s",
            ", ".join(f"{n.name}({n.revision_id.value})" for n in topology.nodes),
        )
        return topology

    def teardown(self, topology: Topology | None) -> list[str]:
        """Release every provisioned resource exactly once.

        Idempotent and safe after a partial provisioning failure.  A
        resource that cannot be released within ``teardown_timeout`` is
        logged and skipped.

        Args:
            topology: The topology to release; ``None`` is a no-op.

        Returns:
            Descriptions of resources that could not be released.

        """
        issues: list[str] = []
        if topology is None:
            return issues
        if topology.resources:
            self._logger.info("Tearing down %d resources", len(topology.resources))
        while topology.resources:
            handle = topology.resources.pop()
            try:
                self._runner.run(
                    list(handle.release_argv), timeout=self._config.teardown_timeout
                )
                self._logger.debug("Released %s %s", handle.kind, handle.name)
            except CommandExecutionError as exc:
                issue = CleanupFailure(
                    f"Could not release {handle.kind} {handle.name}",
                    details={"error": exc.message},
                )
                self._logger.warning("%s", issue)
                issues.append(str(issue))
        return issues

    # -- Provisioning steps -------------------------------------------------

    def _clear_stale(self) -> None:
        """Refuse, or remove, namespaces left over with the same prefix."""
        prefix = self._config.netns_prefix
        stale = [ns for ns in list_netns(self._runner) if ns.startswith(prefix)]
        if not stale:
            return
        if not self._config.cleanup_stale:
            raise ProvisioningFailure(
                "Namespaces from an earlier run still exist (enable cleanup_stale)",
                details={"namespaces": ", ".join(sorted(stale))},
            )
        self._logger.warning("Removing %d stale namespaces", len(stale))
        for ns in sorted(stale):
            self._runner.run(["ip", "netns", "del", ns], check=False)
        ip(self._runner, "link", "del", f"{prefix}br0", check=False)

    def _create_bridge(self, topology: Topology) -> None:
        """Create the host management bridge and isolate it."""
        mgmt = ipaddress.ip_network(self._config.mgmt_subnet)
        host_addr = list(mgmt.hosts())[-1]
        bridge = topology.bridge

        ip(self._runner, "link", "add", bridge, "type", "bridge")
        topology.resources.append(
            ResourceHandle("bridge", bridge, ("ip", "link", "del", bridge))
        )
        ip(self._runner, "addr", "add", f"{host_addr}/{mgmt.prefixlen}", "dev", bridge)
        ip(self._runner, "link", "set", bridge, "up")

        for tool in ("iptables", "ip6tables"):
            rule = ("FORWARD", "-i", bridge, "-o", bridge, "-j", "DROP")
            self._runner.run([tool, "-I", *rule])
            topology.resources.append(
                ResourceHandle("filter_rule", f"{tool} {bridge} isolation", (tool, "-D", *rule))
            )

    def _create_node(
        self,
        topology: Topology,
        position: int,
        revision: Revision,
        run_dir: Path,
    ) -> Node:
        """Create one node's namespace, addresses, management link and rules."""
        cfg = self._config
        name = f"n{position}"
        ns = f"{topology.prefix}{name}"

        ip(self._runner, "netns", "add", ns)
        topology.resources.append(ResourceHandle("netns", ns, ("ip", "netns", "del", ns)))
        ip(self._runner, "link", "set", "lo", "up", ns=ns)
        tune_namespace(self._runner, ns)

        mesh_ip = str(ipaddress.IPv6Address(cfg.mesh_prefix) + position + 1)
        ip(self._runner, "-6", "addr", "add", f"{mesh_ip}/128", "dev", "lo", ns=ns)

        mgmt = ipaddress.ip_network(cfg.mgmt_subnet)
        mgmt_ip = str(mgmt.network_address + position + 1)
        host_if = f"{topology.prefix}m{position}"
        ip(self._runner, "link", "add", host_if, "type", "veth", "peer", "name", MGMT_IFNAME, "netns", ns)
        ip(self._runner, "link", "set", host_if, "master", topology.bridge)
        ip(self._runner, "link", "set", host_if, "up")
        ip(self._runner, "addr", "add", f"{mgmt_ip}/{mgmt.prefixlen}", "dev", MGMT_IFNAME, ns=ns)
        ip(self._runner, "link", "set", MGMT_IFNAME, "up", ns=ns)
        self._scope_management(ns)

        private_key, public_key = generate_wg_keypair(self._runner)
        node_dir = run_dir / name
        node_dir.mkdir(parents=True, exist_ok=True)

        self._logger.debug("Created %s in %s (mesh=%s mgmt=%s)", name, ns, mesh_ip, mgmt_ip)
        return Node(
            name=name,
            position=position,
            revision_id=revision.revision_id,
            artifact=revision.artifact,
            identity=NetworkIdentity(
                namespace=ns,
                mesh_ip=mesh_ip,
                mgmt_ip=mgmt_ip,
                wg_public_key=public_key,
                wg_private_key=private_key,
            ),
            config_path=node_dir / "config.yaml",
            log_path=node_dir / "daemon.log",
        )

    def _scope_management(self, ns: str) -> None:
        """Allow only the dashboard port over ``mgmt0``; drop everything else."""
        port = str(self._config.dashboard_port)
        rules: list[tuple[str, ...]] = [
            ("iptables", "-A", "INPUT", "-i", MGMT_IFNAME, "-p", "tcp", "--dport", port, "-j", "ACCEPT"),
            ("iptables", "-A", "INPUT", "-i", MGMT_IFNAME, "-j", "DROP"),
            ("iptables", "-A", "FORWARD", "-i", MGMT_IFNAME, "-j", "DROP"),
            ("iptables", "-A", "FORWARD", "-o", MGMT_IFNAME, "-j", "DROP"),
            ("ip6tables", "-A", "INPUT", "-i", MGMT_IFNAME, "-j", "DROP"),
            ("ip6tables", "-A", "OUTPUT", "-o", MGMT_IFNAME, "-j", "DROP"),
        ]
        for rule in rules:
            netns_exec(self._runner, ns, *rule)

    def _wire_ring(self, topology: Topology) -> None:
        """Connect node ``i`` to node ``i+1 mod N`` with a veth pair."""
        pool = ipaddress.ip_network(self._config.link_subnet).subnets(new_prefix=LINK_PREFIXLEN)
        ends: dict[str, list[LinkEnd]] = {n.name: [] for n in topology.nodes}

        for a, b in topology.ring_edges():
            try:
                subnet = next(pool)
            except StopIteration:
                raise ProvisioningFailure(
                    "link_subnet exhausted",
                    details={"subnet": self._config.link_subnet},
                ) from None
            host_a, host_b = list(subnet.hosts())[:2]
            ns_a = a.identity.namespace
            ns_b = b.identity.namespace

            ip(self._runner, "link", "add", NEXT_IFNAME, "type", "veth",
               "peer", "name", PREV_IFNAME, "netns", ns_b, ns=ns_a)
            ip(self._runner, "addr", "add", f"{host_a}/{LINK_PREFIXLEN}", "dev", NEXT_IFNAME, ns=ns_a)
            ip(self._runner, "addr", "add", f"{host_b}/{LINK_PREFIXLEN}", "dev", PREV_IFNAME, ns=ns_b)
            ip(self._runner, "link", "set", NEXT_IFNAME, "up", ns=ns_a)
            ip(self._runner, "link", "set", PREV_IFNAME, "up", ns=ns_b)

            ends[a.name].append(LinkEnd(NEXT_IFNAME, f"{host_a}/{LINK_PREFIXLEN}", b.name))
            ends[b.name].append(LinkEnd(PREV_IFNAME, f"{host_b}/{LINK_PREFIXLEN}", a.name))
            self._logger.debug("Linked %s <-> %s over %s", a.name, b.name, subnet)

        for node in topology.nodes:
            node.identity = replace(
                node.identity, links=tuple(sorted(ends[node.name], key=lambda e: e.ifname))
            )

    def _write_node_config(self, topology: Topology, node: Node) -> None:
        """Write the daemon configuration for *node* as YAML."""
        peers: list[dict[str, Any]] = []
        for link in node.identity.links:
            peer = topology.node(link.peer)
            peers.append({
                "name": peer.name,
                "mesh_ip": peer.identity.mesh_ip,
                "interface": link.ifname,
                "wg_public_key": peer.identity.wg_public_key,
            })
        document = {
            "node": node.name,
            "position": node.position,
            "revision": node.revision_id.value,
            "network": {
                "mesh_ip": node.identity.mesh_ip,
                "mgmt_ip": node.identity.mgmt_ip,
                "dashboard_port": self._config.dashboard_port,
                "peer_interfaces": [link.ifname for link in node.identity.links],
                "wg_private_key": node.identity.wg_private_key,
                "wg_public_key": node.identity.wg_public_key,
            },
            "peers": peers,
        }
        node.config_path.parent.mkdir(parents=True, exist_ok=True)
        with node.config_path.open("w", encoding="utf-8") as fh:
            yaml.safe_dump(document, fh, sort_keys=False)
