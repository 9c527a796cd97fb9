from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from mathduel.app.core.clock import utcnow
from mathduel.app.core.database import Base
from mathduel.app.models.enums import TournamentStatus, TournamentType

class Tournament(Base):
    __tablename__ = "tournaments"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime, default=utcnow)
    name = Column(String, nullable=False)

    tournament_type = Column(String, default=TournamentType.ARENA) # arena, swiss
    status = Column(String, default=TournamentStatus.SCHEDULED, index=True) # scheduled, active, finished
    category = Column(String, nullable=True) # Problem filter

    start_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, default=60)
    time_per_problem_seconds = Column(Integer, default=120)

    # Entry window on the player's rating
    min_rating = Column(Integer, default=0)
    max_rating = Column(Integer, default=10000)

    # Swiss only
    total_rounds = Column(Integer, default=0)
    current_round = Column(Integer, default=0)

    participants = relationship("Participant", back_populates="tournament", cascade="all, delete-orphan")
    games = relationship("Game", back_populates="tournament", cascade="all, delete-orphan")
