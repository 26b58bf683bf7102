"""Shared pytest fixtures for the ring compatibility harness.

Provides a fast harness configuration rooted in ``tmp_path``, a ring
topology factory, snapshot builders for converged and unconverged
nodes, and a ``FakeRunner`` that records argv instead of running
commands.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from ringcompat.core.commands import CommandResult, CommandRunner
from ringcompat.core.config import ENV_VARS, HarnessConfig
from ringcompat.core.exceptions import CommandExecutionError
from ringcompat.core.models import (
    NetworkIdentity,
    Node,
    NodeSnapshot,
    NodeStatus,
    Topology,
)
from ringcompat.core.validator import host_prefix
from ringcompat.topology.layouts import get_layout

# ---------------------------------------------------------------------------
# Fake command runner
# ---------------------------------------------------------------------------


class FakeRunner(CommandRunner):
    """Records every argv and answers from canned responses.

    Responses and failures match on an argv prefix; the longest matching
    response wins.  ``wg genkey``/``wg pubkey`` answer with well-formed
    keys by default.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[list[str]] = []
        self.kwargs: list[dict[str, Any]] = []
        self._responses: dict[tuple[str, ...], tuple[str, int]] = {}
        self._failures: list[tuple[str, ...]] = []
        self._hooks: dict[tuple[str, ...], Callable[[list[str], dict[str, Any]], None]] = {}
        self._keys = itertools.count(1)

    def respond(self, *prefix: str, stdout: str = "", returncode: int = 0) -> None:
        self._responses[tuple(prefix)] = (stdout, returncode)

    def fail_on(self, *prefix: str) -> None:
        self._failures.append(tuple(prefix))

    def on(self, *prefix: str, hook: Callable[[list[str], dict[str, Any]], None]) -> None:
        self._hooks[tuple(prefix)] = hook

    def commands(self) -> list[str]:
        """Return every recorded argv joined with spaces."""
        return [" ".join(argv) for argv in self.calls]

    def run(
        self,
        argv: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        input_text: str | None = None,
    ) -> CommandResult:
        argv = [str(token) for token in argv]
        kwargs = {"check": check, "timeout": timeout, "cwd": cwd, "env": env, "input_text": input_text}
        self.calls.append(argv)
        self.kwargs.append(kwargs)

        for prefix in self._failures:
            if tuple(argv[: len(prefix)]) == prefix:
                raise CommandExecutionError(f"Command failed (1): {' '.join(argv)}")
        for prefix, hook in self._hooks.items():
            if tuple(argv[: len(prefix)]) == prefix:
                hook(argv, kwargs)

        stdout, returncode = "", 0
        matches = [p for p in self._responses if tuple(argv[: len(p)]) == p]
        if matches:
            stdout, returncode = self._responses[max(matches, key=len)]
        elif argv[:2] == ["wg", "genkey"]:
            stdout = f"{next(self._keys):043d}=\n"
        elif argv[:2] == ["wg", "pubkey"]:
            stdout = "P" + (input_text or "").strip()[1:] + "\n"

        result = CommandResult(tuple(argv), returncode, stdout, "")
        if check and returncode != 0:
            raise CommandExecutionError(f"Command failed ({returncode}): {' '.join(argv)}")
        return result


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A fresh FakeRunner."""
    return FakeRunner()


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's environment out of configuration loading."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def harness_config(tmp_path: Path) -> HarnessConfig:
    """A valid homogeneous configuration with fast timings."""
    return HarnessConfig(
        work_dir=tmp_path / "work",
        cache_dir=tmp_path / "cache",
        report_dir=tmp_path / "report",
        initial_poll_interval=0.01,
        backoff_factor=1.5,
        convergence_deadline=2.0,
        query_timeout=0.5,
        start_timeout=5.0,
        start_grace_period=0.2,
        stop_grace_period=2.0,
        teardown_timeout=1.0,
    ).validate()


@pytest.fixture
def fast_config(harness_config: HarnessConfig) -> Callable[..., HarnessConfig]:
    """Return ``harness_config`` with selected fields replaced."""

    def _make(**changes: Any) -> HarnessConfig:
        return replace(harness_config, **changes)

    return _make


# ---------------------------------------------------------------------------
# Topology fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_topology(tmp_path: Path) -> Callable[..., Topology]:
    """Factory for an already-running ring of *size* nodes."""

    def _make(size: int = 3, layout: str = "homogeneous", status: NodeStatus = NodeStatus.RUNNING) -> Topology:
        chosen = get_layout(layout)
        nodes = []
        for position in range(size):
            name = f"n{position}"
            node_dir = tmp_path / "run" / name
            node_dir.mkdir(parents=True, exist_ok=True)
            nodes.append(Node(
                name=name,
                position=position,
                revision_id=chosen.revision_for(position, size),
                artifact=tmp_path / "bin" / "rita",
                identity=NetworkIdentity(
                    namespace=f"rc-{name}",
                    mesh_ip=f"fd00::{position + 1}",
                    mgmt_ip=f"10.254.0.{position + 1}",
                    wg_public_key=f"pub{position}",
                    wg_private_key=f"priv{position}",
                ),
                config_path=node_dir / "config.yaml",
                log_path=node_dir / "daemon.log",
                status=status,
            ))
        return Topology(nodes=nodes, layout=chosen, prefix="rc-", bridge="rc-br0")

    return _make


@pytest.fixture
def topology(make_topology: Callable[..., Topology]) -> Topology:
    """A running three-node homogeneous ring."""
    return make_topology(3)


def build_converged_snapshot(topology: Topology, node: Node) -> NodeSnapshot:
    """Snapshot of *node* with tunnels, routes and ledger for the full ring."""
    tunnels = {peer.identity.mesh_ip: "established" for peer in topology.neighbors(node)}
    routes = {
        host_prefix(other.identity.mesh_ip): {"installed": True, "metric": 256}
        for other in topology.nodes
        if other is not node
    }
    # Pairwise debts cancel: a owes 10*(a-b), b owes 10*(b-a).
    ledger = {
        peer.identity.mesh_ip: 10 * (node.position - peer.position)
        for peer in topology.neighbors(node)
    }
    return NodeSnapshot(node=node.name, tunnels=tunnels, routes=routes, ledger=ledger)


@pytest.fixture
def converged_snapshot() -> Callable[[Topology, Node], NodeSnapshot]:
    """Builder for a snapshot that satisfies the predicate on the full ring."""
    return build_converged_snapshot


@pytest.fixture
def converged_round(topology: Topology) -> dict[str, NodeSnapshot]:
    """Converged snapshots for every node of ``topology``."""
    return {node.name: build_converged_snapshot(topology, node) for node in topology.nodes}


# ---------------------------------------------------------------------------
# Pytest configuration
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test (needs root)")
    config.addinivalue_line("markers", "slow: mark test as slow-running")
