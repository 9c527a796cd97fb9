"""
Pairing algorithms for Arena and Swiss tournaments.

Both functions are pure: they take plain candidate records and return who
plays whom. Claiming the players in the database (compare-and-swap on their
status) is the pairing service's job.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

Pair = Tuple["Candidate", "Candidate"]


@dataclass(frozen=True)
class Candidate:
    user_id: str
    rating: float
    score: float = 0.0
    lobby_since: Optional[datetime] = None
    last_opponent_id: Optional[str] = None
    bye_count: int = 0


@dataclass
class ArenaPairing:
    pairs: List[Pair] = field(default_factory=list)
    waiting: List[Candidate] = field(default_factory=list)
    rematches: int = 0


@dataclass
class SwissPairing:
    pairs: List[Pair] = field(default_factory=list)
    bye: Optional[Candidate] = None
    repeats: int = 0


# --- Arena ---

def is_rematch(a: Candidate, b: Candidate) -> bool:
    return a.last_opponent_id == b.user_id or b.last_opponent_id == a.user_id


def _lobby_order(candidate: Candidate):
    # Players without a timestamp have been waiting "forever"
    return (candidate.lobby_since or datetime.min, candidate.user_id)


def pair_arena(pool: Sequence[Candidate]) -> ArenaPairing:
    """
    Longest-waiting player first, matched with the closest rating that is not
    an immediate rematch. A rematch is only accepted when it is the head's
    sole option, so two lonely players never starve.
    """
    remaining = sorted(pool, key=_lobby_order)
    result = ArenaPairing()

    while len(remaining) >= 2:
        head = remaining.pop(0)
        fresh = [c for c in remaining if not is_rematch(head, c)]
        choices = fresh or remaining

        # min() keeps the first of equal gaps, i.e. the longest-waiting one
        opponent = min(choices, key=lambda c: abs(c.rating - head.rating))
        remaining.remove(opponent)

        if not fresh:
            result.rematches += 1
        result.pairs.append((head, opponent))

    result.waiting = remaining
    return result


# --- Swiss ---

def swiss_order(players: Sequence[Candidate]) -> List[Candidate]:
    return sorted(players, key=lambda c: (-c.score, -c.rating, c.user_id))


def _has_played(a: Candidate, b: Candidate, played: Mapping[str, Set[str]]) -> bool:
    return b.user_id in played.get(a.user_id, ()) or a.user_id in played.get(b.user_id, ())


def choose_bye(ordered: Sequence[Candidate]) -> Candidate:
    """Lowest-ranked player among those with the fewest byes."""
    fewest = min(c.bye_count for c in ordered)
    return next(c for c in reversed(ordered) if c.bye_count == fewest)


class _Budget:
    def __init__(self, steps: int):
        self.steps = steps

    def spend(self) -> bool:
        self.steps -= 1
        return self.steps >= 0


def _slide_search(
    remaining: List[Candidate],
    played: Mapping[str, Set[str]],
    lookahead: int,
    budget: _Budget,
) -> Optional[List[Pair]]:
    """Depth-first slide: the top player tries its next `lookahead` fresh opponents."""
    if not remaining:
        return []
    if not budget.spend():
        return None

    top, rest = remaining[0], remaining[1:]
    tried = 0
    for i, candidate in enumerate(rest):
        if tried >= lookahead:
            break
        if _has_played(top, candidate, played):
            continue
        tried += 1
        tail = _slide_search(rest[:i] + rest[i + 1:], played, lookahead, budget)
        if tail is not None:
            return [(top, candidate)] + tail
    return None


def _greedy_slide(
    remaining: List[Candidate],
    played: Mapping[str, Set[str]],
    lookahead: int,
) -> Tuple[List[Pair], int]:
    pairs: List[Pair] = []
    repeats = 0
    remaining = list(remaining)
    while len(remaining) >= 2:
        top = remaining.pop(0)
        index = 0
        for i, candidate in enumerate(remaining[:lookahead]):
            if not _has_played(top, candidate, played):
                index = i
                break
        else:
            repeats += 1
        pairs.append((top, remaining.pop(index)))
    return pairs, repeats


def pair_swiss(
    players: Sequence[Candidate],
    played: Optional[Mapping[str, Set[str]]] = None,
    lookahead: int = 4,
    search_budget: int = 5000,
) -> SwissPairing:
    """
    Pairs adjacent ranks (1v2, 3v4, ...) sliding down the list to avoid
    rematches. If no rematch-free pairing is found within the bounds, a greedy
    pass accepts repeats instead of failing the round.
    """
    played = played or {}
    ordered = swiss_order(players)
    result = SwissPairing()

    if len(ordered) % 2 == 1:
        result.bye = choose_bye(ordered)
        ordered = [c for c in ordered if c.user_id != result.bye.user_id]

    pairs = _slide_search(ordered, played, max(1, lookahead), _Budget(search_budget))
    if pairs is None:
        pairs, result.repeats = _greedy_slide(ordered, played, max(1, lookahead))
        logger.info("Swiss slide fell back to greedy pairing with %s repeat(s)", result.repeats)

    result.pairs = pairs
    return result


def opponents_by_player(games) -> Dict[str, Set[str]]:
    """Builds the who-played-whom map from game rows (byes ignored)."""
    played: Dict[str, Set[str]] = {}
    for game in games:
        if game.player_b_id is None:
            continue
        played.setdefault(game.player_a_id, set()).add(game.player_b_id)
        played.setdefault(game.player_b_id, set()).add(game.player_a_id)
    return played
