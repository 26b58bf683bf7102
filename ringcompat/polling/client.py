"""HTTP state queries against a node's daemon dashboard.

Each node exposes three JSON endpoints on its management address:

* tunnels (default ``/neighbors``): list of neighbours with a tunnel,
* routes (default ``/routes``): routing table entries,
* ledger (default ``/debts``): per-neighbour debt.

Field names vary between daemon revisions, so parsing accepts both the
flat form (``{"mesh_ip": ..., "debt": ...}``) and the nested identity
form (``{"identity": {"mesh_ip": ...}, "payment_details": {"debt": ...}}``).
A neighbour listed without an explicit state is taken as established.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import requests

from ..core.exceptions import QueryError
from ..core.models import Node, NodeSnapshot

if TYPE_CHECKING:
    from ..core.config import HarnessConfig

logger = logging.getLogger(__name__)


def _mesh_ip(entry: dict[str, Any]) -> str | None:
    for key in ("identity", "id"):
        nested = entry.get(key)
        if isinstance(nested, dict) and nested.get("mesh_ip"):
            return str(nested["mesh_ip"])
    for key in ("mesh_ip", "ip"):
        if entry.get(key):
            return str(entry[key])
    return None


def _entries(payload: Any, what: str) -> list[dict[str, Any]]:
    """Normalise a list, or a mapping keyed by id, into a list of dicts."""
    if isinstance(payload, dict):
        items = []
        for key, value in payload.items():
            item = dict(value) if isinstance(value, dict) else {"value": value}
            item.setdefault("_key", key)
            items.append(item)
        return items
    if isinstance(payload, list) and all(isinstance(item, dict) for item in payload):
        return payload
    raise QueryError(f"Unexpected {what} payload", details={"type": type(payload).__name__})


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1", "installed")
    return bool(value)


def parse_tunnels(payload: Any) -> dict[str, str]:
    """Return a mapping of peer mesh IP to tunnel state.

    A mapping of peer to a bare value is read as that peer's state; a
    boolean means established or down.
    """
    tunnels: dict[str, str] = {}
    for entry in _entries(payload, "tunnels"):
        peer = _mesh_ip(entry) or entry.get("_key")
        if not peer:
            continue
        state = next(
            (entry[key] for key in ("tunnel_state", "state", "value") if entry.get(key) is not None),
            None,
        )
        if isinstance(state, bool):
            state = "established" if state else "down"
        tunnels[str(peer)] = str(state or "established")
    return tunnels


def parse_routes(payload: Any) -> dict[str, dict[str, Any]]:
    """Return a mapping of destination prefix to ``installed``/``metric``."""
    routes: dict[str, dict[str, Any]] = {}
    for entry in _entries(payload, "routes"):
        prefix = entry.get("prefix") or entry.get("destination") or entry.get("_key")
        if not prefix:
            continue
        prefix = str(prefix)
        if "/" not in prefix:
            prefix = f"{prefix}/128"
        routes[prefix] = {
            "installed": _flag(entry.get("installed", entry.get("value", True))),
            "metric": entry.get("metric"),
        }
    return routes


def parse_ledger(payload: Any) -> dict[str, int]:
    """Return a mapping of peer mesh IP to debt."""
    ledger: dict[str, int] = {}
    for entry in _entries(payload, "ledger"):
        peer = _mesh_ip(entry) or entry.get("_key")
        if not peer:
            continue
        details = entry.get("payment_details")
        raw = details.get("debt") if isinstance(details, dict) else entry.get("debt", entry.get("value"))
        try:
            ledger[str(peer)] = int(str(raw))
        except ValueError as exc:
            raise QueryError(
                "Ledger debt is not an integer", details={"peer": peer, "debt": raw}
            ) from exc
    return ledger


class NodeStateClient:
    """Query a node's tunnels, routes and ledger over HTTP.

    Args:
        config: Harness configuration (port and endpoint paths).

    """

    def __init__(self, config: HarnessConfig) -> None:
        """Initialize the client."""
        self._config = config
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def base_url(self, node: Node) -> str:
        """Return the dashboard base URL of *node*."""
        return f"http://{node.identity.mgmt_ip}:{self._config.dashboard_port}"

    def _get(self, node: Node, endpoint: str, timeout: float) -> Any:
        url = f"{self.base_url(node)}{endpoint}"
        try:
            resp = requests.get(url, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            raise QueryError(
                f"GET {endpoint} failed", node=node.name, details={"error": str(exc)}
            ) from exc
        except ValueError as exc:
            raise QueryError(
                f"GET {endpoint} returned invalid JSON", node=node.name
            ) from exc

    def fetch(self, node: Node, timeout: float) -> NodeSnapshot:
        """Query all three endpoints and build a ``NodeSnapshot``.

        Raises:
            QueryError: If any endpoint fails or returns malformed data.

        """
        cfg = self._config
        try:
            tunnels = parse_tunnels(self._get(node, cfg.tunnels_endpoint, timeout))
            routes = parse_routes(self._get(node, cfg.routes_endpoint, timeout))
            ledger = parse_ledger(self._get(node, cfg.ledger_endpoint, timeout))
        except QueryError as exc:
            if exc.node is None:
                raise QueryError(exc.message, node=node.name, details=exc.details) from exc
            raise
        return NodeSnapshot(node=node.name, tunnels=tunnels, routes=routes, ledger=ledger)

    async def query(self, node: Node, timeout: float) -> NodeSnapshot:
        """Run ``fetch`` on a worker thread."""
        return await asyncio.to_thread(self.fetch, node, timeout)

    async def probe(self, node: Node) -> bool:
        """Return ``True`` if *node* answers its tunnels endpoint."""
        try:
            await asyncio.to_thread(
                self._get, node, self._config.tunnels_endpoint, self._config.query_timeout
            )
        except QueryError as exc:
            self._logger.debug("Probe of %s failed: %s", node.name, exc)
            return False
        return True
