import math
from dataclasses import dataclass

from .catalog import RewardTable
from .errors import OutOfRange


@dataclass(frozen=True)
class Reward:
    earnings: float
    experience_points: int
    streak_multiplier: float


def streak_multiplier(table: RewardTable, max_streak: int) -> float:
    multiplier = 1.0
    for tier in table.streak_bonuses:
        if max_streak >= tier.min_streak:
            multiplier = tier.multiplier
    return multiplier


def calculate_reward(table: RewardTable, difficulty: str, correct_count: int,
                     max_streak: int = 0, doubles_day: bool = False) -> Reward:
    """Map a terminal grade to earnings and XP using the type's fixed tables."""
    if difficulty not in table.difficulty_multipliers:
        raise OutOfRange('Invalid difficulty level')
    difficulty_multiplier = table.difficulty_multipliers[difficulty]
    streak = streak_multiplier(table, max_streak)

    earnings = correct_count * table.base_rate * difficulty_multiplier * streak
    if table.max_earnings is not None:
        earnings = min(earnings, table.max_earnings)
    if doubles_day and table.doubles_day:
        earnings *= 2
    # Half-up rounding for XP
    xp = int(math.floor(correct_count * table.xp_rate * difficulty_multiplier * streak + 0.5))
    return Reward(earnings=round(earnings, 2), experience_points=xp, streak_multiplier=streak)
