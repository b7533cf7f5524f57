from __future__ import annotations

MOOD_MIN = 0
MOOD_MAX = 100
INITIAL_MOOD = 50

# (streak threshold, extra gain)
STREAK_BONUSES = ((7, 5), (14, 5), (30, 10))
ATTEND_GAIN = 10
TEST_PASS_GAIN = 20
TEST_FAIL_LOSS = 5

MOOD_STATES = (
    (90, "very_happy"),
    (70, "happy"),
    (50, "neutral"),
    (30, "sad"),
    (10, "depressed"),
    (0, "dying"),
)


def clamp_mood(value: int) -> int:
    return max(MOOD_MIN, min(MOOD_MAX, value))


def on_attend_morale(mood: int, consecutive_days: int) -> int:
    """``consecutive_days`` is the streak including the day being applied."""
    gain = ATTEND_GAIN
    for threshold, bonus in STREAK_BONUSES:
        if consecutive_days >= threshold:
            gain += bonus
    return clamp_mood(mood + gain)


def absence_penalty(ordinal: int) -> int:
    if ordinal >= 3:
        return 35
    if ordinal == 2:
        return 25
    return 15


def on_absence_morale(mood: int, ordinal: int) -> int:
    return clamp_mood(mood - absence_penalty(ordinal))


def on_test_pass(mood: int) -> int:
    return clamp_mood(mood + TEST_PASS_GAIN)


def on_test_fail(mood: int) -> int:
    return clamp_mood(mood - TEST_FAIL_LOSS)


def mood_state(level: int) -> str:
    for floor, name in MOOD_STATES:
        if level >= floor:
            return name
    return MOOD_STATES[-1][1]
