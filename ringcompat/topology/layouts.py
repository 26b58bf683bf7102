"""Named compatibility layouts.

A layout decides which daemon revision each ring position runs.  The
names are what ``COMPAT_LAYOUT`` accepts.

Usage::

    layout = get_layout("inner_ring_old")
    layout.revision_for(position=1, size=4)   # RevisionId.B
"""

from __future__ import annotations

import logging

from ..core.exceptions import ConfigError
from ..core.models import Layout, RevisionId

logger = logging.getLogger(__name__)

HOMOGENEOUS = "homogeneous"
DEFAULT_MIXED_LAYOUT = "inner_ring_old"


def _all_a(position: int, size: int) -> RevisionId:
    return RevisionId.A


def _odd_old(position: int, size: int) -> RevisionId:
    return RevisionId.B if position % 2 == 1 else RevisionId.A


def _even_old(position: int, size: int) -> RevisionId:
    return RevisionId.B if position % 2 == 0 else RevisionId.A


def _second_half_old(position: int, size: int) -> RevisionId:
    return RevisionId.B if position >= size - size // 2 else RevisionId.A


def _single_old(position: int, size: int) -> RevisionId:
    return RevisionId.B if position == 0 else RevisionId.A


LAYOUTS: dict[str, Layout] = {
    layout.name: layout
    for layout in (
        Layout(
            name=HOMOGENEOUS,
            description="every node runs revision A",
            assign=_all_a,
            uses_revision_b=False,
        ),
        Layout(
            name="inner_ring_old",
            description="revisions alternate by position, odd positions run revision B",
            assign=_odd_old,
        ),
        Layout(
            name="inner_ring_new",
            description="revisions alternate by position, even positions run revision B",
            assign=_even_old,
        ),
        Layout(
            name="half_ring_old",
            description="the second half of the ring runs revision B",
            assign=_second_half_old,
        ),
        Layout(
            name="single_old",
            description="only position 0 runs revision B",
            assign=_single_old,
        ),
    )
}


def get_layout(name: str) -> Layout:
    """Look up a layout by name.

    Raises:
        ConfigError: If the name is not registered.

    """
    layout = LAYOUTS.get(name)
    if layout is None:
        supported = ", ".join(sorted(LAYOUTS))
        raise ConfigError(
            f"Unknown layout '{name}'. Supported: {supported}",
            details={"layout": name},
        )
    return layout


def assignments(layout: Layout, size: int) -> list[RevisionId]:
    """Return the revision of every position ``0..size-1``."""
    return [layout.revision_for(position, size) for position in range(size)]
