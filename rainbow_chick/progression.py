from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    EGG = "egg"
    HATCHING = "hatching"
    BABY = "baby"
    ADULT = "adult"
    GOLDEN = "golden"
    LEGEND = "legend"


class Color(str, Enum):
    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    INDIGO = "indigo"
    VIOLET = "violet"


STAGES = list(Stage)
COLORS = list(Color)
CYCLE_LENGTH = len(COLORS)


def on_attend(stage: Stage, color: Color) -> tuple[Stage, Color]:
    """One attended day: next color, or next stage from violet."""
    idx = COLORS.index(color)
    if idx == CYCLE_LENGTH - 1:
        stage_idx = STAGES.index(stage)
        next_stage = STAGES[min(stage_idx + 1, len(STAGES) - 1)]
        return next_stage, Color.RED
    return stage, COLORS[idx + 1]


def on_absence(stage: Stage, color: Color, consecutive_absence: int) -> tuple[Stage, Color, int]:
    """One missed study day.

    Off red the color steps back and the red counter clears. The first miss
    on red is a grace day; the next one drops a stage and lands on violet.
    An egg cannot drop, it just keeps counting.
    """
    idx = COLORS.index(color)
    if idx == 0 and consecutive_absence >= 1:
        stage_idx = STAGES.index(stage)
        if stage_idx == 0:
            return Stage.EGG, Color.RED, consecutive_absence + 1
        return STAGES[stage_idx - 1], Color.VIOLET, 0
    if idx == 0:
        return stage, Color.RED, consecutive_absence + 1
    return stage, COLORS[idx - 1], 0


def color_progress(color: Color) -> tuple[int, int]:
    return COLORS.index(color) + 1, CYCLE_LENGTH


def colors_to_next_stage(color: Color) -> int:
    return CYCLE_LENGTH - COLORS.index(color)
