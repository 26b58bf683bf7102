"""Core module: exceptions, configuration, data models and the convergence predicate.

This module contains the pieces every stage of a run shares: the
exception hierarchy and exit codes, the validated harness
configuration, the run/topology data model, the backoff state machine,
and the per-node convergence assertions.
"""

from .exceptions import (
    AllNodesFailed,
    BuildFailure,
    CleanupFailure,
    CommandExecutionError,
    CompatTestError,
    ConfigError,
    ConvergenceTimeout,
    ExitCode,
    FailureKind,
    InternalError,
    NodeCrash,
    NodeStartFailure,
    ProvisioningFailure,
    QueryError,
    ResolutionFailure,
)

__all__ = [
    "AllNodesFailed",
    "BuildFailure",
    "CleanupFailure",
    "CommandExecutionError",
    "CompatTestError",
    "ConfigError",
    "ConvergenceTimeout",
    "ExitCode",
    "FailureKind",
    "InternalError",
    "NodeCrash",
    "NodeStartFailure",
    "ProvisioningFailure",
    "QueryError",
    "ResolutionFailure",
]
