"""Bet payout formula.

    reward = round_half_up(wager * (1 + 0.15 * ln(ln(streak + e)) + time_bonus))

The double logarithm makes the streak bonus strictly increasing but quickly
flattening; a zero streak contributes nothing since ln(ln(e)) == 0. The time
bonus rewards committing to a deadline well ahead of the task's due date,
capped at two weeks of slack.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

STREAK_MULTIPLIER = 0.15
TIME_BONUS_MAX = 0.25
TIME_BONUS_WINDOW = timedelta(days=14)
# Bets without a due date get 30% of the maximum time bonus.
DEFAULT_TIME_BONUS = TIME_BONUS_MAX * 0.3


def streak_bonus(streak: int) -> float:
    return STREAK_MULTIPLIER * math.log(math.log(max(streak, 0) + math.e))


def time_bonus(deadline: datetime, task_due_time: datetime | None) -> float:
    if task_due_time is None:
        return DEFAULT_TIME_BONUS
    slack = min(max(task_due_time - deadline, timedelta(0)), TIME_BONUS_WINDOW)
    return slack / TIME_BONUS_WINDOW * TIME_BONUS_MAX


def calculate_reward(wager: int, streak: int, deadline: datetime, task_due_time: datetime | None = None) -> int:
    """Points credited for a won bet, given the streak *before* this win."""
    raw = wager * (1 + streak_bonus(streak) + time_bonus(deadline, task_due_time))
    return math.floor(raw + 0.5)
