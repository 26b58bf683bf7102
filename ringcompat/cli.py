"""Command-line entry point.

Subcommands::

    ringcompat run       [--config FILE] [--nodes N] [--layout NAME] ...
    ringcompat plan      [--config FILE] ...     # positions and backoff timeline
    ringcompat validate  [--config FILE]         # configuration check only
    ringcompat layouts                           # list known layouts

``run`` exits with the verdict's exit code; a configuration error exits
with ``ExitCode.CONFIG_ERROR`` before anything runs.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .core.backoff import BackoffSchedule
from .core.config import HarnessConfig, load_config
from .core.exceptions import ConfigError, ExitCode
from .orchestrator import Orchestrator
from .polling.poller import QUERY_TIMEOUT_SHARE
from .topology.layouts import LAYOUTS, assignments

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """Configure the root logger once: DEBUG when verbose, INFO otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def _add_config_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--nodes", type=int, dest="node_count", help="ring size N")
    parser.add_argument("--layout", help="compatibility layout name")
    parser.add_argument("--deadline", type=float, dest="convergence_deadline",
                        help="convergence deadline T in seconds")
    parser.add_argument("--report-dir", type=Path, dest="report_dir", help="report directory")
    parser.add_argument("--cleanup-stale", action="store_true",
                        help="remove namespaces left over from an earlier run")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ringcompat",
        description="Cross-revision compatibility test for a ring of mesh daemons",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    _add_config_options(sub.add_parser("run", help="Build, deploy and poll until a verdict"))
    _add_config_options(sub.add_parser("plan", help="Show layout assignment and backoff timeline"))
    _add_config_options(sub.add_parser("validate", help="Validate the configuration"))
    sub.add_parser("layouts", help="List known compatibility layouts")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "node_count": args.node_count,
        "layout": args.layout,
        "convergence_deadline": args.convergence_deadline,
        "report_dir": args.report_dir,
        "cleanup_stale": True if args.cleanup_stale else None,
        "verbose": True if args.verbose else None,
    }


def plan(config: HarnessConfig) -> dict[str, Any]:
    """Describe what a run with *config* would do, without doing it."""
    layout = config.resolve_layout()
    schedule = BackoffSchedule(
        initial=config.initial_poll_interval,
        factor=config.backoff_factor,
        cap=config.max_poll_interval,
        deadline=config.convergence_deadline,
    )
    timeline = []
    elapsed = 0.0
    while True:
        interval = schedule.next_interval()
        elapsed += interval
        if elapsed > config.convergence_deadline:
            break
        timeline.append({
            "round": schedule.round,
            "interval": round(interval, 3),
            "earliest_start": round(elapsed, 3),
            "query_timeout": round(min(config.query_timeout, QUERY_TIMEOUT_SHARE * interval), 3),
        })
    return {
        "layout": layout.name,
        "nodes": [
            {"position": i, "revision": rev.value}
            for i, rev in enumerate(assignments(layout, config.node_count))
        ],
        "revisions": [s.describe() for s in config.revision_sources()],
        "max_rounds": len(timeline),
        "timeline": timeline,
    }


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "layouts":
        for name, layout in sorted(LAYOUTS.items()):
            print(f"{name:16} {layout.description}")
        return int(ExitCode.PASS)

    try:
        config = load_config(args.config, overrides=_overrides(args))
    except ConfigError as exc:
        configure_logging(bool(args.verbose))
        logger.error("%s", exc)
        return int(exc.exit_code)
    configure_logging(config.verbose)

    if args.cmd == "validate":
        print(json.dumps({"ok": True, "config": config.to_dict()}, indent=2, default=str))
        return int(ExitCode.PASS)

    if args.cmd == "plan":
        print(json.dumps(plan(config), indent=2))
        return int(ExitCode.PASS)

    orchestrator = Orchestrator(config)
    run = asyncio.run(orchestrator.run())
    if orchestrator.diagnostic is not None:
        print(orchestrator.diagnostic.to_markdown())
    if run.verdict is None:
        logger.error("Run %s finished without a verdict", run.run_id)
        return int(ExitCode.INTERNAL_ERROR)
    return int(run.verdict.exit_code)


if __name__ == "__main__":
    sys.exit(main())
