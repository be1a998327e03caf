import random
from typing import List, Sequence

from .catalog import ChallengeCatalog, Problem
from .errors import OutOfRange


def draw_problems(bucket: Sequence[Problem], count: int, rng: random.Random) -> List[Problem]:
    """Draw ``count`` problems uniformly at random, with replacement."""
    if count < 1:
        raise OutOfRange('count must be >= 1')
    if not bucket:
        raise OutOfRange('Problem bucket is empty')
    return [rng.choice(bucket) for _ in range(count)]


def select_problems(catalog: ChallengeCatalog, challenge_type: str, difficulty: str,
                    count: int, rng: random.Random) -> List[Problem]:
    return draw_problems(catalog.bucket(challenge_type, difficulty), count, rng)
