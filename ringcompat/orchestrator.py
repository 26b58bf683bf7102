"""Single coordinating flow of one compatibility run.

Resolve -> provision -> start -> poll -> verdict -> stop -> report and
teardown.  Independent work inside a stage runs concurrently (the two
builds, the N node starts, the N queries of a round); the stages
themselves run strictly in order.

This is the only place where exceptions become a ``Verdict``:

* ``ConvergenceTimeout`` and ``AllNodesFailed`` yield ``Fail(reason)``,
* every other harness error yields ``Error(kind)``,
* anything unexpected yields ``Error(InternalError)`` with its traceback.

Nodes are stopped and the topology is torn down whatever happened.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from datetime import UTC, datetime

from .core.config import HarnessConfig
from .core.exceptions import CompatTestError, FailureKind, InternalError
from .core.models import Run, Verdict
from .polling.client import NodeStateClient
from .polling.poller import ConvergencePoller
from .reporting.diagnostic import Diagnostic
from .reporting.report_generator import VerdictReporter
from .revisions.resolver import RevisionResolver
from .supervisor.supervisor import NodeSupervisor
from .topology.builder import TopologyBuilder

logger = logging.getLogger(__name__)

VERDICT_FAILURES = frozenset({FailureKind.CONVERGENCE_TIMEOUT, FailureKind.ALL_NODES_FAILED})


def new_run_id() -> str:
    """Return a sortable, unique run identifier."""
    return f"{datetime.now(UTC):%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:6]}"


def verdict_for(exc: CompatTestError) -> Verdict:
    """Map a harness error to the verdict it stands for."""
    if exc.kind in VERDICT_FAILURES:
        return Verdict.failed(exc.kind, str(exc))
    return Verdict.errored(exc.kind or FailureKind.INTERNAL_ERROR, str(exc))


class Orchestrator:
    """Run one end-to-end compatibility test.

    Every collaborator can be injected; defaults are built from
    *config*.

    Args:
        config: Validated harness configuration.
        resolver: Builds the revisions.
        builder: Provisions and tears down the ring.
        supervisor: Owns the daemon processes.
        poller: Decides convergence.
        reporter: Writes the diagnostic and triggers teardown.
        run_id: Identifier of the run; generated by default.

    """

    def __init__(
        self,
        config: HarnessConfig,
        *,
        resolver: RevisionResolver | None = None,
        builder: TopologyBuilder | None = None,
        supervisor: NodeSupervisor | None = None,
        poller: ConvergencePoller | None = None,
        reporter: VerdictReporter | None = None,
        run_id: str | None = None,
    ) -> None:
        """Initialize the orchestrator and its collaborators."""
        self._config = config
        client = NodeStateClient(config)
        self._resolver = resolver or RevisionResolver(config)
        self._builder = builder or TopologyBuilder(config)
        self._supervisor = supervisor or NodeSupervisor(config, probe=client.probe)
        self._poller = poller or ConvergencePoller(config, client)
        self._reporter = reporter or VerdictReporter(config.report_dir)
        self._run_id = run_id or new_run_id()
        self.diagnostic: Diagnostic | None = None
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def run(self) -> Run:
        """Execute the run and return it with its verdict set."""
        cfg = self._config
        run = Run(
            run_id=self._run_id,
            sources=cfg.revision_sources(),
            layout_name=cfg.layout_name,
            settings=cfg.to_dict(),
        )
        run_dir = cfg.work_dir / "runs" / run.run_id
        self._logger.info(
            "Run %s: %d nodes, layout %s, revisions %s",
            run.run_id,
            cfg.node_count,
            run.layout_name,
            ", ".join(s.describe() for s in run.sources),
        )

        try:
            layout = cfg.resolve_layout()
            run.revisions = await self._resolver.resolve_all(run.sources)
            run.topology = await asyncio.to_thread(
                self._builder.provision, layout, run.revisions, run_dir
            )
            await self._supervisor.start_all(run.topology.nodes)
            outcome = await self._poller.poll(
                run.topology, self._supervisor.events, run.attempts, run.crash_events
            )
            run.verdict = Verdict.passed(
                f"Converged in round {outcome.rounds} after {outcome.elapsed:.1f}s"
            )
        except CompatTestError as exc:
            run.verdict = verdict_for(exc)
            self._logger.error("Run %s: %s", run.verdict.label(), exc)
        except Exception as exc:
            run.verdict = verdict_for(InternalError(f"{type(exc).__name__}: {exc}"))
            run.error_trace = traceback.format_exc()
            self._logger.exception("Run aborted by an internal error")
        finally:
            await self._finish(run)
        return run

    async def _finish(self, run: Run) -> None:
        topology = run.topology
        if topology is not None:
            await self._supervisor.stop_all(topology.nodes)
        self.diagnostic = await asyncio.to_thread(
            self._reporter.conclude, run, lambda: self._builder.teardown(topology)
        )
