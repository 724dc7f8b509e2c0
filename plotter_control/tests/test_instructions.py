"""Tests for the motion instruction vocabulary."""

from __future__ import annotations

import dataclasses

import pytest

from plotter_control.job_ir.instructions import (
    Comment,
    Draw,
    ManualPause,
    Move,
    PenDown,
    PenUp,
    SetFeed,
    instruction_from_dict,
    instruction_to_dict,
)


class TestInstructions:
    def test_immutable(self) -> None:
        move = Move(1.0, 2.0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            move.x = 5.0  # type: ignore[misc]

    def test_set_feed_positive(self) -> None:
        with pytest.raises(ValueError):
            SetFeed(0)

    def test_draw_feed_is_optional(self) -> None:
        assert Draw(5, 0).feed is None
        assert Draw(5, 0, 900) != Draw(5, 0)


class TestSerialisation:
    def test_dict_form(self) -> None:
        assert instruction_to_dict(Move(1.5, 2.0)) == {"op": "Move", "x": 1.5, "y": 2.0}
        assert instruction_to_dict(Draw(1.0, 2.0)) == {"op": "Draw", "x": 1.0, "y": 2.0}
        assert instruction_to_dict(PenUp()) == {"op": "PenUp"}

    def test_every_type_survives(self) -> None:
        ops = [
            Move(1, 2), Draw(3, 4), Draw(3, 4, 600), PenUp(), PenDown(),
            SetFeed(1500), Comment("layer 1"), ManualPause("Change pen to red"),
        ]
        assert [instruction_from_dict(instruction_to_dict(op)) for op in ops] == ops

    def test_unknown_op(self) -> None:
        with pytest.raises(ValueError, match="Unknown instruction"):
            instruction_from_dict({"op": "Spin"})

    def test_unexpected_field(self) -> None:
        with pytest.raises(ValueError, match="unexpected fields"):
            instruction_from_dict({"op": "Move", "x": 1, "y": 2, "z": 3})
