"""Node Supervisor: one daemon process per node.

``start`` returns only once the daemon is confirmed running, either by
a successful state probe or by the process surviving the start grace
period.  A watcher task per node turns an unrequested exit into a
``CrashEvent`` on ``events``, marking the node ``FAILED`` at the moment
the exit is observed.  ``stop`` sends SIGTERM, waits the stop grace
period, then sends SIGKILL.

The supervisor is the only component that touches process handles or
changes ``Node.status``/``pid``/``exit_code``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import IO, TYPE_CHECKING

from ..core.exceptions import NodeCrash, NodeStartFailure, QueryError
from ..core.models import CrashEvent, Node, NodeStatus
from ..topology.netns import netns_exec_argv

if TYPE_CHECKING:
    from ..core.config import HarnessConfig

logger = logging.getLogger(__name__)

Probe = Callable[[Node], Awaitable[bool]]

# How often start confirmation re-checks the process and probe.
START_CHECK_INTERVAL = 0.25


class NodeSupervisor:
    """Start, watch and stop the daemon of every node.

    Args:
        config: Harness configuration (daemon args, start/stop timeouts).
        probe: Optional coroutine returning ``True`` once a node answers
            its state query; used to confirm a start early.
        wrap_netns: Launch through ``ip netns exec <namespace>``.

    Attributes:
        events: Queue of ``CrashEvent`` for exits nobody asked for.

    """

    def __init__(
        self,
        config: HarnessConfig,
        probe: Probe | None = None,
        wrap_netns: bool = True,
    ) -> None:
        """Initialize the supervisor."""
        self._config = config
        self._probe = probe
        self._wrap_netns = wrap_netns
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._logs: dict[str, IO[bytes]] = {}
        self._stopping: set[str] = set()
        self.events: asyncio.Queue[CrashEvent] = asyncio.Queue()
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def command(self, node: Node) -> list[str]:
        """Return the argv that launches *node*'s daemon."""
        argv = [str(node.artifact)]
        argv += [
            arg.format(config=node.config_path, node=node.name)
            for arg in self._config.daemon_args
        ]
        if self._wrap_netns:
            return netns_exec_argv(node.identity.namespace, *argv)
        return argv

    # -- Start --------------------------------------------------------------

    async def start(self, node: Node) -> None:
        """Launch *node*'s daemon and wait until it is confirmed running.

        Raises:
            NodeStartFailure: If the process cannot be spawned, exits
                during startup, or is not confirmed within
                ``start_timeout``.

        """
        node.status = NodeStatus.STARTING
        node.log_path.parent.mkdir(parents=True, exist_ok=True)
        log = node.log_path.open("ab")
        argv = self.command(node)
        self._logger.debug("Starting %s: %s", node.name, " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            log.close()
            node.status = NodeStatus.FAILED
            node.failure = f"spawn failed: {exc}"
            raise NodeStartFailure(
                "Daemon could not be spawned", node=node.name, details={"error": str(exc)}
            ) from exc

        self._processes[node.name] = proc
        self._logs[node.name] = log
        node.pid = proc.pid

        try:
            how = await self._confirm(node, proc)
        except NodeStartFailure as exc:
            node.status = NodeStatus.FAILED
            node.failure = exc.message
            await self._terminate(node.name, proc)
            node.exit_code = proc.returncode
            node.pid = None
            self._release(node.name)
            raise

        node.status = NodeStatus.RUNNING
        self._watchers[node.name] = asyncio.create_task(
            self.watch(node), name=f"watch-{node.name}"
        )
        self._logger.info("%s running (pid=%s, confirmed by %s)", node.name, proc.pid, how)

    async def start_all(self, nodes: list[Node]) -> None:
        """Start every node concurrently; raise the first failure."""
        results = await asyncio.gather(
            *(self.start(node) for node in nodes), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _confirm(self, node: Node, proc: asyncio.subprocess.Process) -> str:
        """Wait for a successful probe or the grace period to pass."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        grace_end = started + self._config.start_grace_period
        deadline = started + self._config.start_timeout

        while True:
            if proc.returncode is not None:
                raise NodeStartFailure(
                    "Daemon exited during startup",
                    node=node.name,
                    details={"returncode": proc.returncode},
                )
            if self._probe is not None and await self._probe_once(self._probe, node):
                return "state query"
            now = loop.time()
            if now >= grace_end:
                return "grace period"
            if now >= deadline:
                raise NodeStartFailure(
                    f"Daemon not confirmed running within {self._config.start_timeout}s",
                    node=node.name,
                )
            wait = min(START_CHECK_INTERVAL, grace_end - now, deadline - now)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=wait)

    async def _probe_once(self, probe: Probe, node: Node) -> bool:
        try:
            return await asyncio.wait_for(probe(node), timeout=self._config.query_timeout)
        except (QueryError, TimeoutError):
            return False

    # -- Watch --------------------------------------------------------------

    async def watch(self, node: Node) -> None:
        """Wait for *node*'s daemon to exit and report unrequested exits."""
        proc = self._processes[node.name]
        returncode = await proc.wait()
        node.exit_code = returncode
        node.pid = None
        if node.name in self._stopping:
            return

        crash = NodeCrash(
            "Daemon exited unexpectedly", node=node.name, details={"returncode": returncode}
        )
        node.status = NodeStatus.FAILED
        node.failure = str(crash)
        self._release(node.name)
        self._logger.warning("%s", crash)
        await self.events.put(CrashEvent(node=node.name, returncode=returncode))

    # -- Stop ---------------------------------------------------------------

    async def stop(self, node: Node) -> None:
        """Stop *node*'s daemon: SIGTERM, bounded wait, then SIGKILL."""
        proc = self._processes.get(node.name)
        if proc is None:
            return
        self._stopping.add(node.name)
        await self._terminate(node.name, proc)

        watcher = self._watchers.pop(node.name, None)
        if watcher is not None:
            await watcher
        node.exit_code = proc.returncode
        node.pid = None
        if node.status != NodeStatus.FAILED:
            node.status = NodeStatus.STOPPED
        self._release(node.name)
        self._logger.info("%s stopped (exit=%s)", node.name, proc.returncode)

    async def stop_all(self, nodes: list[Node]) -> None:
        """Stop every node concurrently."""
        await asyncio.gather(*(self.stop(node) for node in nodes))

    async def _terminate(self, name: str, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace_period)
        except TimeoutError:
            self._logger.warning(
                "%s ignored SIGTERM for %ss, killing", name, self._config.stop_grace_period
            )
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    def _release(self, name: str) -> None:
        self._processes.pop(name, None)
        log = self._logs.pop(name, None)
        if log is not None:
            log.close()
