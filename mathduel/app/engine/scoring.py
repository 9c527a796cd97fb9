"""
Scoring & streak rules.

Pure functions: given a game outcome and a participant's standing before the
game, produce the points awarded and the standing after it. Nothing here
touches the database, so the game service can compute everything first and
then write it in the same transaction as the status transition.
"""

import math
from dataclasses import dataclass, replace
from typing import Optional

from mathduel.app.core.settings import EngineSettings
from mathduel.app.models.enums import Outcome


@dataclass(frozen=True)
class ScoringRules:
    win_points: float = 2.0
    berserk_bonus: float = 1.0
    fire_streak_threshold: int = 3
    on_fire_doubles_points: bool = False
    default_difficulty: float = 5.0
    loss_rating_factor: float = 0.7

    @property
    def bye_points(self) -> float:
        return self.win_points / 2

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "ScoringRules":
        return cls(
            win_points=settings.win_points,
            berserk_bonus=settings.berserk_bonus,
            fire_streak_threshold=settings.fire_streak_threshold,
            on_fire_doubles_points=settings.on_fire_doubles_points,
            default_difficulty=settings.default_difficulty,
            loss_rating_factor=settings.loss_rating_factor,
        )


@dataclass(frozen=True)
class Standing:
    """The scoring-relevant slice of a participant row."""
    score: float = 0.0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    streak: int = 0
    is_on_fire: bool = False
    bye_count: int = 0

    @classmethod
    def of(cls, participant) -> "Standing":
        return cls(
            score=participant.score or 0.0,
            wins=participant.wins or 0,
            losses=participant.losses or 0,
            draws=participant.draws or 0,
            streak=participant.streak or 0,
            is_on_fire=bool(participant.is_on_fire),
            bye_count=participant.bye_count or 0,
        )

    def write_to(self, participant):
        participant.score = self.score
        participant.wins = self.wins
        participant.losses = self.losses
        participant.draws = self.draws
        participant.streak = self.streak
        participant.is_on_fire = self.is_on_fire
        participant.bye_count = self.bye_count


@dataclass(frozen=True)
class ScoreUpdate:
    points: float
    standing: Standing


def points_for(outcome: Outcome, berserk: bool, prior: Standing, rules: ScoringRules) -> float:
    """Tournament points for one side of a resolved game."""
    if outcome == Outcome.BYE:
        return rules.bye_points
    if outcome != Outcome.WIN:
        return 0.0

    points = rules.win_points
    if rules.on_fire_doubles_points and prior.is_on_fire:
        points *= 2
    if berserk:
        points += rules.berserk_bonus
    return points


def apply_outcome(prior: Standing, outcome: Outcome, berserk: bool, rules: ScoringRules) -> ScoreUpdate:
    points = points_for(outcome, berserk, prior, rules)

    if outcome == Outcome.BYE:
        # A bye scores but is not a game played: streak and W/L/D untouched
        after = replace(prior, score=prior.score + points, bye_count=prior.bye_count + 1)
        return ScoreUpdate(points=points, standing=after)

    if outcome == Outcome.WIN:
        streak = prior.streak + 1
        after = replace(prior, wins=prior.wins + 1)
    elif outcome == Outcome.LOSS:
        streak = 0
        after = replace(prior, losses=prior.losses + 1)
    else:
        streak = 0
        after = replace(prior, draws=prior.draws + 1)

    after = replace(
        after,
        score=prior.score + points,
        streak=streak,
        is_on_fire=streak >= rules.fire_streak_threshold,
    )
    return ScoreUpdate(points=points, standing=after)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def rating_gain(difficulty: Optional[float], rules: ScoringRules) -> int:
    if difficulty is None:
        difficulty = rules.default_difficulty
    return round_half_up(10 + 2 * difficulty)


def rating_delta(difficulty: Optional[float], outcome: Outcome, rules: ScoringRules) -> int:
    """
    Rating change for one side. Harder problems move rating further, and a
    loss costs 70% of what the matching win would have paid.
    """
    if outcome == Outcome.WIN:
        return rating_gain(difficulty, rules)
    if outcome == Outcome.LOSS:
        return -round_half_up(rules.loss_rating_factor * rating_gain(difficulty, rules))
    return 0


def clamp_rating(rating: float, delta: float) -> float:
    return max(0.0, rating + delta)
