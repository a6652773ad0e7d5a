import logging
import math
import random
from typing import Any, Sequence, Tuple

logger = logging.getLogger(__name__)

MIN_LEVEL = 1
MAX_LEVEL = 10
STRONG_LEVEL = 8
BEST_MOVE_PROBABILITY = 0.9
RANK_DECAY = 0.7


class NoLegalMovesError(ValueError):
    pass


def candidate_count(level: int, available: int) -> int:
    """How many of the top moves a weaker level samples from."""
    randomness = (MAX_LEVEL - level) / 10
    return min(available, max(1, math.floor(2 + randomness * 5)))


def sample_size(level: int, available: int) -> int:
    """How many top-ranked moves select_move may return at this level."""
    level = max(MIN_LEVEL, min(MAX_LEVEL, int(level)))
    if level >= STRONG_LEVEL:
        return min(2, available)
    return candidate_count(level, available)


def select_move(scored_moves: Sequence[Tuple[Any, float]], level: int, rng: random.Random | None = None) -> Any:
    """
    Pick one move from externally scored (move, score) pairs.

    Higher scores are better for the side to move. Levels 8-10 take the best
    move 90% of the time and the runner-up otherwise; lower levels sample the
    top few moves with weights decaying by 0.7 per rank.
    """
    if not scored_moves:
        raise NoLegalMovesError("No legal moves to choose from.")

    rng = rng or random
    level = max(MIN_LEVEL, min(MAX_LEVEL, int(level)))
    ranked = sorted(scored_moves, key=lambda pair: pair[1], reverse=True)
    top = ranked[:sample_size(level, len(ranked))]

    if level >= STRONG_LEVEL:
        if rng.random() < BEST_MOVE_PROBABILITY or len(top) == 1:
            return top[0][0]
        return top[1][0]

    weights = [RANK_DECAY ** rank for rank in range(len(top))]

    remaining = rng.random() * sum(weights)
    selected = 0
    for i, weight in enumerate(weights):
        remaining -= weight
        if remaining <= 0:
            selected = i
            break
    else:
        # float rounding left a sliver; the draw belongs to the last bucket
        selected = len(top) - 1

    logger.debug("Level %s sampled rank %s of %s candidates", level, selected, len(top))
    return top[selected][0]
