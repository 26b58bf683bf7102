"""Custom exception hierarchy for the ring compatibility harness.

All harness exceptions inherit from ``CompatTestError`` so a single
top-level handler can turn any of them into a verdict, while the fatal
kinds still carry the ``FailureKind`` and ``ExitCode`` that CI consumers
branch on.

Exception tree::

    CompatTestError
    ├── ConfigError                 (fatal, before anything runs)
    ├── ResolutionFailure           (fatal, before provisioning)
    ├── BuildFailure                (fatal, before provisioning)
    ├── ProvisioningFailure         (fatal, partial resources rolled back)
    ├── NodeStartFailure            (fatal, run aborts and tears down)
    ├── ConvergenceTimeout          (verdict Fail)
    ├── AllNodesFailed              (verdict Fail)
    ├── InternalError               (verdict Error)
    ├── NodeCrash                   (absorbed into node status)
    ├── CleanupFailure              (report warning only)
    ├── QueryError                  (absorbed: node not converged this round)
    └── CommandExecutionError       (wrapped by the calling component)
"""

from __future__ import annotations

from enum import IntEnum, StrEnum


class FailureKind(StrEnum):
    """Classification of a run-level failure."""

    CONFIG_ERROR = "ConfigError"
    RESOLUTION_FAILURE = "ResolutionFailure"
    BUILD_FAILURE = "BuildFailure"
    PROVISIONING_FAILURE = "ProvisioningFailure"
    NODE_START_FAILURE = "NodeStartFailure"
    CONVERGENCE_TIMEOUT = "ConvergenceTimeout"
    ALL_NODES_FAILED = "AllNodesFailed"
    INTERNAL_ERROR = "InternalError"


class ExitCode(IntEnum):
    """Process exit codes, one per failure kind."""

    PASS = 0
    INTERNAL_ERROR = 1
    RESOLUTION_FAILURE = 2
    BUILD_FAILURE = 3
    PROVISIONING_FAILURE = 4
    NODE_START_FAILURE = 5
    CONVERGENCE_TIMEOUT = 6
    ALL_NODES_FAILED = 7
    CONFIG_ERROR = 64


EXIT_CODES: dict[FailureKind, ExitCode] = {
    FailureKind.CONFIG_ERROR: ExitCode.CONFIG_ERROR,
    FailureKind.RESOLUTION_FAILURE: ExitCode.RESOLUTION_FAILURE,
    FailureKind.BUILD_FAILURE: ExitCode.BUILD_FAILURE,
    FailureKind.PROVISIONING_FAILURE: ExitCode.PROVISIONING_FAILURE,
    FailureKind.NODE_START_FAILURE: ExitCode.NODE_START_FAILURE,
    FailureKind.CONVERGENCE_TIMEOUT: ExitCode.CONVERGENCE_TIMEOUT,
    FailureKind.ALL_NODES_FAILED: ExitCode.ALL_NODES_FAILED,
    FailureKind.INTERNAL_ERROR: ExitCode.INTERNAL_ERROR,
}


class CompatTestError(Exception):
    """Base exception for all harness errors.

    Attributes:
        message: Human-readable error description.
        node: Optional node name that triggered the error.
        details: Optional mapping of additional contextual data.
        kind: Failure kind for fatal errors, ``None`` for absorbed ones.

    """

    kind: FailureKind | None = None

    def __init__(
        self,
        message: str,
        node: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize with a message, optional node context, and details."""
        self.message = message
        self.node = node
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the exception message with optional node context."""
        parts: list[str] = []
        if self.node:
            parts.append(f"[{self.node}]")
        parts.append(self.message)
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    @property
    def exit_code(self) -> ExitCode:
        """Exit code for this error; absorbed kinds map to ``INTERNAL_ERROR``."""
        if self.kind is None:
            return ExitCode.INTERNAL_ERROR
        return EXIT_CODES[self.kind]


class ConfigError(CompatTestError):
    """Raised when the harness configuration fails validation.

    Examples:
        - ``BACKOFF_FACTOR`` not greater than 1
        - Unknown ``COMPAT_LAYOUT`` name
        - Mixed layout requested without ``REVISION_B``

    """

    kind = FailureKind.CONFIG_ERROR


class ResolutionFailure(CompatTestError):
    """Raised when a revision's source cannot be fetched or checked out.

    Examples:
        - Remote URL unreachable
        - Branch or tag does not exist
        - Local workspace path missing

    """

    kind = FailureKind.RESOLUTION_FAILURE


class BuildFailure(CompatTestError):
    """Raised when compiling a revision fails.

    Examples:
        - Compiler error in the checked-out sources
        - Dependency resolution failure
        - Build succeeded but the expected artifact is missing

    """

    kind = FailureKind.BUILD_FAILURE


class ProvisioningFailure(CompatTestError):
    """Raised when emulated network resources cannot be allocated.

    Any partially created resources are released before this propagates.

    Examples:
        - Not running as root, or ``ip``/``iptables`` missing
        - Stale namespaces from an earlier run
        - veth creation or address assignment rejected by the kernel

    """

    kind = FailureKind.PROVISIONING_FAILURE


class NodeStartFailure(CompatTestError):
    """Raised when a node's daemon never reaches confirmed-running state."""

    kind = FailureKind.NODE_START_FAILURE


class ConvergenceTimeout(CompatTestError):
    """Raised when the deadline elapses before the ring converges."""

    kind = FailureKind.CONVERGENCE_TIMEOUT


class AllNodesFailed(CompatTestError):
    """Raised when every node has crashed before convergence."""

    kind = FailureKind.ALL_NODES_FAILED


class InternalError(CompatTestError):
    """Raised for harness defects that fit no other category."""

    kind = FailureKind.INTERNAL_ERROR


class NodeCrash(CompatTestError):
    """A node's daemon exited unexpectedly while the run was in progress.

    Recorded against the node rather than raised through the run.
    """


class CleanupFailure(CompatTestError):
    """A provisioned resource could not be released during teardown."""


class QueryError(CompatTestError):
    """A node's state query failed, timed out, or returned garbage."""


class CommandExecutionError(CompatTestError):
    """Raised when an external command exits non-zero or times out.

    Examples:
        - ``ip netns add`` rejected
        - ``git fetch`` of an unknown ref
        - ``cargo build`` compile error

    """
