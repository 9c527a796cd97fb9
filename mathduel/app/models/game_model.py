from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from mathduel.app.core.clock import utcnow
from mathduel.app.core.database import Base
from mathduel.app.models.enums import GameStatus

SIDES = ("a", "b")

class Game(Base):
    __tablename__ = "tournament_games"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime, default=utcnow) # Countdown starts here

    # Tournament Links
    tournament_id = Column(Integer, ForeignKey("tournaments.id"), nullable=False, index=True)
    round_number = Column(Integer, nullable=True) # Swiss only

    tournament = relationship("Tournament", back_populates="games")

    player_a_id = Column(String, nullable=False, index=True)
    player_b_id = Column(String, nullable=True, index=True) # None for a bye
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=True)

    status = Column(String, default=GameStatus.COUNTDOWN, index=True) # countdown, active, finished

    # --- Player A ---
    player_a_answer = Column(String, nullable=True)
    player_a_time_ms = Column(Integer, nullable=True)
    player_a_mistakes = Column(Integer, default=0)
    player_a_berserk = Column(Boolean, default=False)
    player_a_locked_until = Column(DateTime, nullable=True)
    player_a_last_seen_at = Column(DateTime, nullable=True)
    player_a_afk_warned_at = Column(DateTime, nullable=True)

    # --- Player B ---
    player_b_answer = Column(String, nullable=True)
    player_b_time_ms = Column(Integer, nullable=True)
    player_b_mistakes = Column(Integer, default=0)
    player_b_berserk = Column(Boolean, default=False)
    player_b_locked_until = Column(DateTime, nullable=True)
    player_b_last_seen_at = Column(DateTime, nullable=True)
    player_b_afk_warned_at = Column(DateTime, nullable=True)

    # --- Result ---
    winner_id = Column(String, nullable=True)
    is_draw = Column(Boolean, default=False)
    is_bye = Column(Boolean, default=False)
    result_type = Column(String, nullable=True)
    points_awarded_a = Column(Float, default=0.0)
    points_awarded_b = Column(Float, default=0.0)
    rating_delta_a = Column(Integer, default=0)
    rating_delta_b = Column(Integer, default=0)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    def player_id(self, side: str):
        return self.player_a_id if side == "a" else self.player_b_id

    def side_of(self, user_id: str):
        """Returns 'a' or 'b' for a player of this game, None otherwise."""
        if user_id == self.player_a_id:
            return "a"
        if self.player_b_id is not None and user_id == self.player_b_id:
            return "b"
        return None

    def sides(self):
        return SIDES if self.player_b_id is not None else ("a",)

    def field(self, side: str, name: str):
        return getattr(self, f"player_{side}_{name}")

    def has_valid_outcome(self) -> bool:
        """Exactly one of winner / draw / bye once finished."""
        flags = [self.winner_id is not None, bool(self.is_draw), bool(self.is_bye)]
        return sum(flags) == 1


def other_side(side: str) -> str:
    return "b" if side == "a" else "a"
