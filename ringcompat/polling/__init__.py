"""Convergence polling.

Queries every live node's tunnels, routes and ledger over HTTP on an
exponential backoff schedule and evaluates the convergence predicate
once per round.
"""

from .client import NodeStateClient
from .poller import ConvergencePoller, PollOutcome

__all__ = ["ConvergencePoller", "NodeStateClient", "PollOutcome"]
