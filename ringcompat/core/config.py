"""Harness configuration: one validated structure, built once at startup.

Values are layered, later layers winning:

1. dataclass defaults,
2. an optional YAML file (keys are the field names),
3. the recognized environment variables (``INITIAL_POLL_INTERVAL`` etc.),
4. explicit overrides from the command line.

No component reads the environment on its own; they all receive the
``HarnessConfig`` produced here.

Usage::

    config = load_config(Path("harness.yml"), environ=os.environ)
    for source in config.revision_sources():
        ...
"""

from __future__ import annotations

import ipaddress
import logging
import math
import os
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from ..topology.layouts import DEFAULT_MIXED_LAYOUT, HOMOGENEOUS, get_layout
from .exceptions import ConfigError
from .models import Layout, RevisionId, RevisionSource

logger = logging.getLogger(__name__)

MIN_NODES = 3
MAX_NODES = 250

# Settings parsed as floats; each must be finite once loaded.
FLOAT_SETTINGS = (
    "initial_poll_interval",
    "backoff_factor",
    "max_poll_interval",
    "convergence_deadline",
    "query_timeout",
    "start_timeout",
    "start_grace_period",
    "stop_grace_period",
    "teardown_timeout",
    "build_timeout",
)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_optional_str(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _parse_optional_float(raw: Any) -> float | None:
    if raw is None or str(raw).strip() == "":
        return None
    return float(raw)


def _parse_tuple(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, str):
        return tuple(raw.split())
    return tuple(str(token) for token in raw)


@dataclass(frozen=True)
class HarnessConfig:
    """Validated settings for one compatibility run.

    Attributes:
        remote_a: Source of revision A (local path or git URL).
        revision_a: Optional ref for A; ``None`` builds *remote_a* as-is.
        remote_b: Source of revision B; defaults to *remote_a*.
        revision_b: Ref for B; ``None`` means a homogeneous run.
        layout: Layout name; defaults depend on *revision_b*.
        node_count: Ring size ``N``.
        initial_poll_interval: ``t0`` in seconds.
        backoff_factor: ``f``, greater than 1.
        max_poll_interval: ``t_max`` in seconds, or ``None``.
        convergence_deadline: ``T`` in seconds.
        query_timeout: Upper bound for a single node state query.
        start_timeout: Time allowed for a daemon to confirm it is running.
        start_grace_period: Liveness period that confirms a start without a query.
        stop_grace_period: Wait between SIGTERM and SIGKILL.
        teardown_timeout: Time allowed to release one resource.
        build_timeout: Time allowed for one fetch or build command.
        ledger_tolerance: Allowed mismatch between neighbours' debts.
        verbose: Log at DEBUG level; no behaviour change.
        work_dir: Root for sources, builds and per-run node files.
        cache_dir: Per-hash artifact cache.
        report_dir: Where the diagnostic report is written.
        netns_prefix: Prefix for namespaces, bridge and host interfaces.
        mgmt_subnet: Subnet of the host management bridge.
        link_subnet: Pool for ring link /30 subnets.
        mesh_prefix: IPv6 prefix of node mesh addresses.
        dashboard_port: Daemon HTTP state port.
        cleanup_stale: Delete leftover namespaces with the same prefix.
        build_command: Command that builds a revision.
        artifact_name: Artifact path relative to the build's target dir.
        daemon_args: Daemon arguments; ``{config}`` and ``{node}`` expand.
        tunnels_endpoint: HTTP path listing tunnels to neighbours.
        routes_endpoint: HTTP path listing routes.
        ledger_endpoint: HTTP path listing debts.

    """

    remote_a: str = "."
    revision_a: str | None = None
    remote_b: str | None = None
    revision_b: str | None = None
    layout: str | None = None
    node_count: int = 3
    initial_poll_interval: float = 5.0
    backoff_factor: float = 1.5
    max_poll_interval: float | None = None
    convergence_deadline: float = 600.0
    query_timeout: float = 5.0
    start_timeout: float = 30.0
    start_grace_period: float = 2.0
    stop_grace_period: float = 10.0
    teardown_timeout: float = 10.0
    build_timeout: float = 3600.0
    ledger_tolerance: int = 0
    verbose: bool = False
    work_dir: Path = Path(".ringcompat/work")
    cache_dir: Path = Path(".ringcompat/cache")
    report_dir: Path = Path(".ringcompat/report")
    netns_prefix: str = "rc-"
    mgmt_subnet: str = "10.254.0.0/24"
    link_subnet: str = "10.253.0.0/16"
    mesh_prefix: str = "fd00::"
    dashboard_port: int = 4877
    cleanup_stale: bool = False
    build_command: tuple[str, ...] = ("cargo", "build", "--release")
    artifact_name: str = "release/rita"
    daemon_args: tuple[str, ...] = ("--config", "{config}")
    tunnels_endpoint: str = "/neighbors"
    routes_endpoint: str = "/routes"
    ledger_endpoint: str = "/debts"

    # -- Derived values -----------------------------------------------------

    @property
    def layout_name(self) -> str:
        """Return the effective layout name."""
        if self.layout:
            return self.layout
        return DEFAULT_MIXED_LAYOUT if self.revision_b else HOMOGENEOUS

    def resolve_layout(self) -> Layout:
        """Return the effective ``Layout``."""
        return get_layout(self.layout_name)

    def revision_sources(self) -> list[RevisionSource]:
        """Return the revisions to build: always A, B only when requested."""
        sources = [RevisionSource(RevisionId.A, self.remote_a, self.revision_a)]
        if self.revision_b:
            sources.append(
                RevisionSource(RevisionId.B, self.remote_b or self.remote_a, self.revision_b)
            )
        return sources

    # -- Validation ---------------------------------------------------------

    def validate(self) -> HarnessConfig:
        """Check ranges and references once, at startup.

        Returns:
            ``self``, so calls can be chained.

        Raises:
            ConfigError: On the first invalid setting.

        """
        for name in FLOAT_SETTINGS:
            value = getattr(self, name)
            if value is not None and not math.isfinite(value):
                raise ConfigError(f"{name} must be a finite number", details={"value": value})
        if self.initial_poll_interval <= 0:
            raise ConfigError(
                "INITIAL_POLL_INTERVAL must be > 0",
                details={"value": self.initial_poll_interval},
            )
        if self.backoff_factor <= 1:
            raise ConfigError(
                "BACKOFF_FACTOR must be > 1",
                details={"value": self.backoff_factor},
            )
        if self.max_poll_interval is not None and self.max_poll_interval < self.initial_poll_interval:
            raise ConfigError(
                "MAX_POLL_INTERVAL must not be below INITIAL_POLL_INTERVAL",
                details={"value": self.max_poll_interval},
            )
        for name in (
            "convergence_deadline",
            "query_timeout",
            "start_timeout",
            "stop_grace_period",
            "teardown_timeout",
            "build_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0", details={"value": getattr(self, name)})
        if self.start_grace_period < 0:
            raise ConfigError("start_grace_period must be >= 0")
        if self.start_grace_period >= self.start_timeout:
            raise ConfigError(
                "start_grace_period must be below start_timeout",
                details={"start_grace_period": self.start_grace_period, "start_timeout": self.start_timeout},
            )
        if self.ledger_tolerance < 0:
            raise ConfigError("ledger_tolerance must be >= 0")
        if not MIN_NODES <= self.node_count <= MAX_NODES:
            raise ConfigError(
                f"NODE_COUNT must be between {MIN_NODES} and {MAX_NODES}",
                details={"value": self.node_count},
            )
        if not self.remote_a.strip():
            raise ConfigError("REMOTE_A must not be empty")
        if self.remote_b is not None and not self.remote_b.strip():
            raise ConfigError("REMOTE_B must not be empty")
        if self.revision_b is None and self.remote_b is not None:
            logger.warning("REMOTE_B is set but REVISION_B is not; revision B will not be built")
        if not self.netns_prefix or len(self.netns_prefix) > 6:
            raise ConfigError(
                "NETNS_PREFIX must be 1-6 characters (interface names are limited to 15)",
                details={"value": self.netns_prefix},
            )
        if not 0 < self.dashboard_port < 65536:
            raise ConfigError("DASHBOARD_PORT out of range", details={"value": self.dashboard_port})
        if not self.build_command:
            raise ConfigError("build_command must not be empty")

        try:
            mgmt = ipaddress.ip_network(self.mgmt_subnet)
            ipaddress.ip_network(self.link_subnet)
            ipaddress.IPv6Address(self.mesh_prefix)
        except ValueError as exc:
            raise ConfigError("Invalid address setting", details={"error": str(exc)}) from exc
        if mgmt.num_addresses - 3 < self.node_count:
            raise ConfigError(
                "mgmt_subnet too small for NODE_COUNT",
                details={"subnet": self.mgmt_subnet, "nodes": self.node_count},
            )

        layout = self.resolve_layout()
        if layout.uses_revision_b and not self.revision_b:
            raise ConfigError(
                f"Layout '{layout.name}' assigns revision B but REVISION_B is not set",
                details={"layout": layout.name},
            )
        if self.revision_b and not layout.uses_revision_b:
            logger.warning(
                "REVISION_B=%s is set but layout '%s' never runs it", self.revision_b, layout.name
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for reports."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Path):
                data[key] = str(value)
            elif isinstance(value, tuple):
                data[key] = list(value)
        data["layout"] = self.layout_name
        return data


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_FIELD_PARSERS: dict[str, Callable[[Any], Any]] = {
    "remote_a": str,
    "revision_a": _parse_optional_str,
    "remote_b": _parse_optional_str,
    "revision_b": _parse_optional_str,
    "layout": _parse_optional_str,
    "node_count": int,
    "initial_poll_interval": float,
    "backoff_factor": float,
    "max_poll_interval": _parse_optional_float,
    "convergence_deadline": float,
    "query_timeout": float,
    "start_timeout": float,
    "start_grace_period": float,
    "stop_grace_period": float,
    "teardown_timeout": float,
    "build_timeout": float,
    "ledger_tolerance": int,
    "verbose": _parse_bool,
    "work_dir": Path,
    "cache_dir": Path,
    "report_dir": Path,
    "netns_prefix": str,
    "mgmt_subnet": str,
    "link_subnet": str,
    "mesh_prefix": str,
    "dashboard_port": int,
    "cleanup_stale": _parse_bool,
    "build_command": _parse_tuple,
    "artifact_name": str,
    "daemon_args": _parse_tuple,
    "tunnels_endpoint": str,
    "routes_endpoint": str,
    "ledger_endpoint": str,
}

ENV_VARS: dict[str, str] = {
    "INITIAL_POLL_INTERVAL": "initial_poll_interval",
    "BACKOFF_FACTOR": "backoff_factor",
    "VERBOSE": "verbose",
    "REVISION_A": "revision_a",
    "REVISION_B": "revision_b",
    "REMOTE_A": "remote_a",
    "REMOTE_B": "remote_b",
    "COMPAT_LAYOUT": "layout",
    "NODE_COUNT": "node_count",
    "MAX_POLL_INTERVAL": "max_poll_interval",
    "CONVERGENCE_DEADLINE": "convergence_deadline",
    "QUERY_TIMEOUT": "query_timeout",
    "WORK_DIR": "work_dir",
    "CACHE_DIR": "cache_dir",
    "REPORT_DIR": "report_dir",
    "NETNS_PREFIX": "netns_prefix",
    "DASHBOARD_PORT": "dashboard_port",
}


def _coerce(values: Mapping[str, Any], origin: str) -> dict[str, Any]:
    """Parse raw values into field types, naming *origin* on errors."""
    known = {f.name for f in fields(HarnessConfig)}
    parsed: dict[str, Any] = {}
    for key, raw in values.items():
        if key not in known:
            raise ConfigError(f"Unknown setting '{key}' in {origin}")
        try:
            parsed[key] = _FIELD_PARSERS[key](raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"Invalid value for '{key}' in {origin}",
                details={"value": raw, "error": str(exc)},
            ) from exc
    return parsed


def _load_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping of setting names to values."""
    import yaml  # type: ignore[import-untyped]

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Malformed config file: {path}", details={"error": str(exc)}) from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping in {path}")
    return raw


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> HarnessConfig:
    """Build and validate the harness configuration.

    Args:
        path: Optional YAML file with settings keyed by field name.
        environ: Environment mapping; defaults to ``os.environ``.
        overrides: Explicit values (e.g. from the CLI) applied last.

    Returns:
        A validated ``HarnessConfig``.

    Raises:
        ConfigError: If any layer is malformed or the result is invalid.

    """
    env = os.environ if environ is None else environ
    config = HarnessConfig()

    if path is not None:
        config = replace(config, **_coerce(_load_yaml(Path(path)), str(path)))

    env_values = {field_name: env[var] for var, field_name in ENV_VARS.items() if var in env}
    if env_values:
        config = replace(config, **_coerce(env_values, "environment"))

    if overrides:
        present = {k: v for k, v in overrides.items() if v is not None}
        config = replace(config, **_coerce(present, "command line"))

    return config.validate()
