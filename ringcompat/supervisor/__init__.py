"""Daemon process supervision: start, watch and stop one process per node."""

from .supervisor import NodeSupervisor

__all__ = ["NodeSupervisor"]
