"""Structured diagnostic produced at the end of every run.

The diagnostic is the one artifact CI collects: the verdict, the final
state of every node, the full poll history (enough to replay the
backoff timeline), crash events, cleanup warnings, and the log tail of
every node that failed.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from ..core.exceptions import ExitCode, FailureKind
from ..core.models import NodeStatus, Run, Verdict


@dataclass
class NodeDiagnostic:
    """Final state of one node.

    Attributes:
        name: Node name.
        position: Ring position.
        revision: Revision the node ran.
        status: Final lifecycle status.
        exit_code: Daemon exit status, if it exited.
        failure: Why the node failed, if it did.
        identity: Network identity (without private key).
        last_snapshot: Last observed daemon state.
        log_tail: End of the daemon log (failed nodes only).

    """

    name: str
    position: int
    revision: str
    status: str
    exit_code: int | None = None
    failure: str = ""
    identity: dict[str, Any] = field(default_factory=dict)
    last_snapshot: dict[str, Any] | None = None
    log_tail: str = ""


@dataclass
class Diagnostic:
    """Everything known about a finished run.

    Attributes:
        run_id: Run identifier.
        verdict: ``Pass``, ``Fail(reason)`` or ``Error(cause)``.
        message: Verdict explanation.
        exit_code: Process exit code for the verdict.
        started_at: ISO-8601 start time.
        finished_at: ISO-8601 finish time.
        layout: Layout name.
        settings: Effective configuration.
        revisions: Built revisions.
        nodes: Per-node final state.
        attempts: Full poll history.
        crash_events: Daemon exits observed while polling.
        warnings: Cleanup failures and other non-fatal problems.
        error_trace: Traceback of an internal error.
        topology_mermaid: Mermaid source of the ring.

    """

    run_id: str
    verdict: str
    message: str = ""
    exit_code: int = int(ExitCode.INTERNAL_ERROR)
    started_at: str = ""
    finished_at: str = ""
    layout: str = ""
    settings: dict[str, Any] = field(default_factory=dict)
    revisions: list[dict[str, Any]] = field(default_factory=list)
    nodes: list[NodeDiagnostic] = field(default_factory=list)
    attempts: list[dict[str, Any]] = field(default_factory=list)
    crash_events: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_trace: str = ""
    topology_mermaid: str = ""

    @classmethod
    def from_run(cls, run: Run, log_tail_chars: int = 4000) -> Diagnostic:
        """Build the diagnostic of a finished *run*."""
        verdict = run.verdict or Verdict.errored(
            FailureKind.INTERNAL_ERROR, "run ended without a verdict"
        )
        nodes: list[NodeDiagnostic] = []
        mermaid = ""
        if run.topology is not None:
            mermaid = run.topology.to_mermaid()
            for node in run.topology.nodes:
                failed = node.status == NodeStatus.FAILED
                nodes.append(NodeDiagnostic(
                    name=node.name,
                    position=node.position,
                    revision=node.revision_id.value,
                    status=node.status.value,
                    exit_code=node.exit_code,
                    failure=node.failure,
                    identity=node.identity.to_dict(),
                    last_snapshot=node.last_snapshot.to_dict() if node.last_snapshot else None,
                    log_tail=node.log_tail(log_tail_chars) if failed else "",
                ))
        return cls(
            run_id=run.run_id,
            verdict=verdict.label(),
            message=verdict.message,
            exit_code=int(verdict.exit_code),
            started_at=run.started_at,
            finished_at=run.finished_at,
            layout=run.layout_name,
            settings=dict(run.settings),
            revisions=[r.to_dict() for r in run.revisions.values()],
            nodes=nodes,
            attempts=[a.to_dict() for a in run.attempts],
            crash_events=[asdict(e) for e in run.crash_events],
            warnings=list(run.cleanup_issues),
            error_trace=run.error_trace,
            topology_mermaid=mermaid,
        )

    @property
    def passed(self) -> bool:
        """Return ``True`` for a passing verdict."""
        return self.exit_code == ExitCode.PASS

    def backoff_timeline(self) -> list[dict[str, Any]]:
        """Return one row per round: interval, start offset, outcome."""
        return [
            {
                "round": a["sequence"],
                "interval": a["scheduled_interval"],
                "elapsed": a["elapsed"],
                "converged": a["converged"],
            }
            for a in self.attempts
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary."""
        data = asdict(self)
        data["backoff_timeline"] = self.backoff_timeline()
        return data

    def to_json(self) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def to_markdown(self) -> str:
        """Render a short Markdown summary for the terminal or a CI log."""
        node_rows = "\n".join(
            f"| {n.name} | {n.position} | {n.revision} | {n.status} | "
            f"{'' if n.exit_code is None else n.exit_code} | {n.failure or '-'} |"
            for n in self.nodes
        )
        rounds = "\n".join(
            f"| {r['round']} | {r['interval']:.2f}s | {r['elapsed']:.2f}s | "
            f"{'yes' if r['converged'] else 'no'} |"
            for r in self.backoff_timeline()
        )
        warnings = "\n".join(f"- {w}" for w in self.warnings)
        logs = "\n\n".join(
            f"### {n.name}\n\n```\n{n.log_tail[-2000:]}\n```" for n in self.nodes if n.log_tail
        )

        return f"""# Ring compatibility run {self.run_id}

**Verdict:** {self.verdict}
**Exit code:** {self.exit_code}
**Layout:** {self.layout or 'N/A'}
**Started:** {self.started_at}
**Finished:** {self.finished_at}

{self.message}

## Nodes

| Node | Position | Revision | Status | Exit | Failure |
|------|----------|----------|--------|------|---------|
{node_rows if node_rows else '| - | - | - | - | - | no topology |'}

## Poll rounds

| Round | Interval | Started at | Converged |
|-------|----------|------------|-----------|
{rounds if rounds else '| - | - | - | no rounds |'}

## Warnings

{warnings if warnings else 'None.'}

## Failed node logs

{logs if logs else 'No failed nodes.'}
"""

