"""Ring topology: layouts, namespace helpers and the topology builder.

Each node lives in its own network namespace, wired to its two ring
neighbours by veth pairs and reachable from the host over a
management bridge.
"""

from .builder import TopologyBuilder
from .layouts import LAYOUTS, get_layout

__all__ = ["LAYOUTS", "TopologyBuilder", "get_layout"]
