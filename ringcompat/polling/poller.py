"""Convergence Poller: drive a running ring to a verdict.

Rounds follow a ``BackoffSchedule``: round ``n`` starts
``min(t0 * f**(n-1), t_max)`` seconds after round ``n-1`` finished (or
after polling started, for round 1).  Within a round every live node is
queried concurrently, each with a query timeout of
``min(query_timeout, 0.8 * interval)``; a node that does not answer in
time is simply not converged this round.

Crash events from the supervisor are consumed while waiting between
rounds, so the loop reacts as soon as they arrive, and drained again
before every predicate evaluation.  The supervisor has already marked
the node ``FAILED``; the poller only records the event, resets the
node's convergence latch, and stops expecting anything of it.

The deadline ``T`` is the only cancellation authority: when it is
reached, in-flight queries are abandoned and ``ConvergenceTimeout`` is
raised with the last known state of every node.

Usage::

    poller = ConvergencePoller(config, client)
    outcome = await poller.poll(topology, supervisor.events, run.attempts, run.crash_events)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from ..core.backoff import BackoffSchedule
from ..core.exceptions import AllNodesFailed, ConvergenceTimeout, QueryError
from ..core.models import CrashEvent, Node, NodeSnapshot, PollAttempt, Topology, utc_now
from ..core.validator import ConvergenceValidator
from .client import NodeStateClient

if TYPE_CHECKING:
    from ..core.config import HarnessConfig

logger = logging.getLogger(__name__)

QUERY_TIMEOUT_SHARE = 0.8


@dataclass(frozen=True)
class PollOutcome:
    """Result of a poll loop that converged.

    Attributes:
        rounds: Number of rounds run.
        elapsed: Seconds from poll start to the converging round's end.
        final: The converging ``PollAttempt``.

    """

    rounds: int
    elapsed: float
    final: PollAttempt


class ConvergencePoller:
    """Poll live nodes on a backoff schedule until they converge.

    Args:
        config: Harness configuration (t0, f, t_max, T, query timeout).
        client: Source of node snapshots.
        validator: Convergence predicate; built from *config* by default.

    """

    def __init__(
        self,
        config: HarnessConfig,
        client: NodeStateClient,
        validator: ConvergenceValidator | None = None,
    ) -> None:
        """Initialize the poller."""
        self._config = config
        self._client = client
        self._validator = validator or ConvergenceValidator(config.ledger_tolerance)
        self._latched: dict[str, bool] = {}
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def new_schedule(self) -> BackoffSchedule:
        """Return a fresh schedule for one run."""
        cfg = self._config
        return BackoffSchedule(
            initial=cfg.initial_poll_interval,
            factor=cfg.backoff_factor,
            cap=cfg.max_poll_interval,
            deadline=cfg.convergence_deadline,
        )

    def query_timeout_for(self, interval: float) -> float:
        """Per-node query timeout for a round scheduled after *interval*."""
        return min(self._config.query_timeout, QUERY_TIMEOUT_SHARE * interval)

    # -- Main loop ----------------------------------------------------------

    async def poll(
        self,
        topology: Topology,
        events: asyncio.Queue[CrashEvent],
        attempts: list[PollAttempt],
        crash_events: list[CrashEvent],
    ) -> PollOutcome:
        """Run rounds until convergence, deadline or total node loss.

        Args:
            topology: The running ring.
            events: Crash notifications from the supervisor.
            attempts: History list; one ``PollAttempt`` appended per round.
            crash_events: List receiving every consumed crash event.

        Returns:
            The ``PollOutcome`` of the converging round.

        Raises:
            ConvergenceTimeout: If the deadline passes first.
            AllNodesFailed: If no live node remains.

        """
        loop = asyncio.get_running_loop()
        schedule = self.new_schedule()
        schedule.start(loop.time())
        self._latched = {}
        self._logger.info(
            "Polling %d nodes (t0=%ss f=%s t_max=%s T=%ss)",
            len(topology.live_nodes()),
            schedule.initial,
            schedule.factor,
            schedule.cap,
            schedule.deadline,
        )
        self._drain(topology, events, crash_events, schedule.elapsed(loop.time()))

        while True:
            interval = schedule.next_interval()
            wait = min(interval, schedule.remaining(loop.time()))
            await self._sleep_or_crash(wait, topology, events, crash_events, schedule)
            if schedule.expired(loop.time()):
                raise self._timeout(topology, schedule.round - 1, schedule.deadline)

            attempt = await self._run_round(topology, events, crash_events, schedule, interval)
            attempts.append(attempt)

            if attempt.converged:
                self._logger.info(
                    "Converged in round %d after %.2fs", attempt.sequence, attempt.elapsed
                )
                return PollOutcome(
                    rounds=attempt.sequence,
                    elapsed=schedule.elapsed(loop.time()),
                    final=attempt,
                )
            if schedule.expired(loop.time()):
                raise self._timeout(topology, attempt.sequence, schedule.deadline)

    async def _run_round(
        self,
        topology: Topology,
        events: asyncio.Queue[CrashEvent],
        crash_events: list[CrashEvent],
        schedule: BackoffSchedule,
        interval: float,
    ) -> PollAttempt:
        loop = asyncio.get_running_loop()
        live = topology.live_nodes()
        if not live:
            raise self._all_failed(topology)

        query_timeout = self.query_timeout_for(interval)
        started_at = utc_now()
        round_start = loop.time()
        snapshots = await self._query_all(
            live, query_timeout, schedule.remaining(round_start)
        )

        # Crashes that arrived during the round apply before the predicate.
        self._drain(topology, events, crash_events, schedule.elapsed(loop.time()))
        live = topology.live_nodes()
        if not live:
            raise self._all_failed(topology)

        for name, snapshot in snapshots.items():
            topology.node(name).last_snapshot = snapshot

        reports = self._validator.evaluate_round(topology, snapshots)
        observed = {name: report.passed for name, report in reports.items()}
        for name, ok in observed.items():
            previous = self._latched.get(name, False)
            if previous and not ok:
                self._logger.warning(
                    "%s flapped in round %d: %s",
                    name,
                    schedule.round,
                    "; ".join(r.message for r in reports[name].failures),
                )
            self._latched[name] = previous or ok

        attempt = PollAttempt(
            sequence=schedule.round,
            scheduled_interval=interval,
            started_at=started_at,
            elapsed=schedule.elapsed(round_start),
            duration=loop.time() - round_start,
            query_timeout=query_timeout,
            snapshots=snapshots,
            observed=observed,
            node_converged={n.name: self._latched.get(n.name, False) for n in live},
            failures={
                name: [r.message for r in report.failures]
                for name, report in reports.items()
                if not report.passed
            },
            live_nodes=tuple(n.name for n in live),
            converged=bool(observed) and all(observed.values()),
        )
        self._logger.info(
            "Round %d (interval %.2fs): %d/%d live nodes converged",
            attempt.sequence,
            interval,
            sum(observed.values()),
            len(observed),
        )
        return attempt

    # -- Queries ------------------------------------------------------------

    async def _query_all(
        self,
        nodes: list[Node],
        query_timeout: float,
        budget: float,
    ) -> dict[str, NodeSnapshot]:
        """Query *nodes* concurrently, abandoning whatever is left at *budget*."""
        tasks = {
            node.name: asyncio.create_task(self._query_one(node, query_timeout))
            for node in nodes
        }
        _done, pending = await asyncio.wait(tasks.values(), timeout=max(budget, 0.0))
        for task in pending:
            task.cancel()

        snapshots: dict[str, NodeSnapshot] = {}
        for name, task in tasks.items():
            if task in pending:
                snapshots[name] = NodeSnapshot.unanswered(name, "abandoned at deadline")
            else:
                snapshots[name] = task.result()
        return snapshots

    async def _query_one(self, node: Node, timeout: float) -> NodeSnapshot:
        try:
            return await asyncio.wait_for(self._client.query(node, timeout), timeout=timeout)
        except TimeoutError:
            self._logger.warning("%s did not answer within %.2fs", node.name, timeout)
            return NodeSnapshot.unanswered(node.name, f"query timed out after {timeout:.2f}s")
        except QueryError as exc:
            self._logger.warning("%s", exc)
            return NodeSnapshot.unanswered(node.name, exc.message)

    # -- Crash handling -----------------------------------------------------

    async def _sleep_or_crash(
        self,
        wait: float,
        topology: Topology,
        events: asyncio.Queue[CrashEvent],
        crash_events: list[CrashEvent],
        schedule: BackoffSchedule,
    ) -> None:
        """Sleep *wait* seconds, applying crash events as they arrive."""
        loop = asyncio.get_running_loop()
        end = loop.time() + wait
        while True:
            remaining = end - loop.time()
            if remaining <= 0:
                return
            try:
                event = await asyncio.wait_for(events.get(), timeout=remaining)
            except TimeoutError:
                return
            self._record(topology, event, crash_events, schedule.elapsed(loop.time()))
            if not topology.live_nodes():
                raise self._all_failed(topology)

    def _drain(
        self,
        topology: Topology,
        events: asyncio.Queue[CrashEvent],
        crash_events: list[CrashEvent],
        elapsed: float,
    ) -> None:
        while True:
            try:
                event = events.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._record(topology, event, crash_events, elapsed)

    def _record(
        self,
        topology: Topology,
        event: CrashEvent,
        crash_events: list[CrashEvent],
        elapsed: float,
    ) -> None:
        crash_events.append(replace(event, elapsed=elapsed))
        self._latched.pop(event.node, None)
        self._logger.warning(
            "%s failed at %.2fs (exit %s); %d nodes remain live",
            event.node,
            elapsed,
            event.returncode,
            len(topology.live_nodes()),
        )

    # -- Failures -----------------------------------------------------------

    def _all_failed(self, topology: Topology) -> AllNodesFailed:
        return AllNodesFailed(
            "Every node failed before the ring converged",
            details={"failed": ", ".join(n.name for n in topology.nodes)},
        )

    def _timeout(self, topology: Topology, rounds: int, deadline: float) -> ConvergenceTimeout:
        pending = [
            n.name for n in topology.live_nodes() if not self._latched.get(n.name, False)
        ]
        return ConvergenceTimeout(
            f"Ring did not converge within {deadline}s",
            details={
                "rounds": rounds,
                "unconverged": ", ".join(pending) or "none (never simultaneously)",
            },
        )
