from sqlalchemy import Column, Integer, String, Float, DateTime, UniqueConstraint
from mathduel.app.core.clock import utcnow
from mathduel.app.core.database import Base

class UserRating(Base):
    __tablename__ = "user_ratings"

    user_id = Column(String, primary_key=True, index=True)
    rating = Column(Float, default=1000.0)
    games_played = Column(Integer, default=0)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)

class RatingHistory(Base):
    """
    One row per rating change caused by a finished game.
    The (game_id, user_id) pair makes rating writes idempotent.
    """
    __tablename__ = "rating_history"
    __table_args__ = (
        UniqueConstraint("game_id", "user_id", name="uq_rating_history_game_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True)
    game_id = Column(Integer, nullable=True)
    delta = Column(Integer, default=0)
    rating = Column(Float)
    timestamp = Column(DateTime, default=utcnow)
