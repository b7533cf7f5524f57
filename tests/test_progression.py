from __future__ import annotations

import unittest

from rainbow_chick.progression import (
    COLORS,
    STAGES,
    Color,
    Stage,
    color_progress,
    colors_to_next_stage,
    on_absence,
    on_attend,
)


class AttendTests(unittest.TestCase):
    def test_full_cycle_promotes_exactly_once(self) -> None:
        for idx, stage in enumerate(STAGES[:-1]):
            current = (stage, Color.RED)
            seen_stages = set()
            for _ in range(7):
                current = on_attend(*current)
                seen_stages.add(current[0])
            self.assertEqual(current, (STAGES[idx + 1], Color.RED))
            self.assertEqual(seen_stages, {stage, STAGES[idx + 1]})

    def test_legend_saturates_but_color_resets(self) -> None:
        self.assertEqual(on_attend(Stage.LEGEND, Color.VIOLET), (Stage.LEGEND, Color.RED))

    def test_single_step_only(self) -> None:
        for stage in STAGES:
            for color in COLORS:
                new_stage, new_color = on_attend(stage, color)
                self.assertLessEqual(STAGES.index(new_stage) - STAGES.index(stage), 1)
                if new_stage == stage and color is not Color.VIOLET:
                    self.assertEqual(COLORS.index(new_color), COLORS.index(color) + 1)


class AbsenceTests(unittest.TestCase):
    def test_egg_floor(self) -> None:
        self.assertEqual(on_absence(Stage.EGG, Color.RED, 1), (Stage.EGG, Color.RED, 2))
        self.assertEqual(on_absence(Stage.EGG, Color.RED, 5), (Stage.EGG, Color.RED, 6))

    def test_grace_day_then_demotion(self) -> None:
        first = on_absence(Stage.ADULT, Color.RED, 0)
        self.assertEqual(first, (Stage.ADULT, Color.RED, 1))
        self.assertEqual(on_absence(*first), (Stage.BABY, Color.VIOLET, 0))

    def test_color_retreats_and_clears_counter(self) -> None:
        self.assertEqual(on_absence(Stage.GOLDEN, Color.BLUE, 0), (Stage.GOLDEN, Color.GREEN, 0))
        self.assertEqual(on_absence(Stage.BABY, Color.ORANGE, 3), (Stage.BABY, Color.RED, 0))

    def test_never_moves_more_than_one_step(self) -> None:
        for stage in STAGES:
            for color in COLORS:
                for absence in range(3):
                    new_stage, new_color, _ = on_absence(stage, color, absence)
                    self.assertIn(STAGES.index(stage) - STAGES.index(new_stage), (0, 1))
                    if new_stage == stage:
                        self.assertIn(COLORS.index(color) - COLORS.index(new_color), (0, 1))


class ProgressHelperTests(unittest.TestCase):
    def test_color_progress(self) -> None:
        self.assertEqual(color_progress(Color.RED), (1, 7))
        self.assertEqual(color_progress(Color.VIOLET), (7, 7))
        self.assertEqual(colors_to_next_stage(Color.RED), 7)
        self.assertEqual(colors_to_next_stage(Color.VIOLET), 1)


if __name__ == "__main__":
    unittest.main()
