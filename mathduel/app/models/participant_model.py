from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from mathduel.app.core.clock import utcnow
from mathduel.app.core.database import Base
from mathduel.app.models.enums import ParticipantStatus

class Participant(Base):
    __tablename__ = "tournament_participants"
    __table_args__ = (
        UniqueConstraint("tournament_id", "user_id", name="uq_participant_tournament_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tournament_id = Column(Integer, ForeignKey("tournaments.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    joined_at = Column(DateTime, default=utcnow)

    tournament = relationship("Tournament", back_populates="participants")

    status = Column(String, default=ParticipantStatus.REGISTERED, index=True)

    # --- Standings ---
    score = Column(Float, default=0.0)
    wins = Column(Integer, default=0)
    losses = Column(Integer, default=0)
    draws = Column(Integer, default=0)
    streak = Column(Integer, default=0)
    is_on_fire = Column(Boolean, default=False)
    bye_count = Column(Integer, default=0)

    # --- Pairing memory ---
    is_berserk_next = Column(Boolean, default=False)
    last_opponent_id = Column(String, nullable=True)
    lobby_since = Column(DateTime, nullable=True)

    # --- Pause cooldown ---
    pause_count = Column(Integer, default=0)
    last_paused_at = Column(DateTime, nullable=True)
    can_rejoin_at = Column(DateTime, nullable=True)
