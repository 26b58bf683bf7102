"""Unit tests for the compatibility layout registry."""

from __future__ import annotations

import pytest

from ringcompat.core.exceptions import ConfigError
from ringcompat.core.models import RevisionId
from ringcompat.topology.layouts import LAYOUTS, assignments, get_layout

A, B = RevisionId.A, RevisionId.B


class TestLayouts:
    """Tests for layout position-to-revision mappings."""

    def test_homogeneous_runs_only_a(self) -> None:
        layout = get_layout("homogeneous")
        assert assignments(layout, 5) == [A] * 5
        assert layout.uses_revision_b is False

    def test_inner_ring_old_alternates(self) -> None:
        assert assignments(get_layout("inner_ring_old"), 4) == [A, B, A, B]

    def test_inner_ring_new_alternates_the_other_way(self) -> None:
        assert assignments(get_layout("inner_ring_new"), 4) == [B, A, B, A]

    def test_half_ring_old(self) -> None:
        assert assignments(get_layout("half_ring_old"), 5) == [A, A, A, B, B]
        assert assignments(get_layout("half_ring_old"), 4) == [A, A, B, B]

    def test_single_old(self) -> None:
        assert assignments(get_layout("single_old"), 3) == [B, A, A]

    def test_every_mixed_layout_uses_both_revisions(self) -> None:
        for name, layout in LAYOUTS.items():
            used = set(assignments(layout, 4))
            if layout.uses_revision_b:
                assert used == {A, B}, name
            else:
                assert used == {A}, name

    def test_unknown_layout(self) -> None:
        with pytest.raises(ConfigError, match="Unknown layout"):
            get_layout("outer_ring_sideways")

    def test_position_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            get_layout("inner_ring_old").revision_for(4, 4)
