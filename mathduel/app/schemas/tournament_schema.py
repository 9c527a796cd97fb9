from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional
from datetime import datetime

from mathduel.app.models.enums import TournamentType

class TournamentCreate(BaseModel):
    name: str
    tournament_type: TournamentType = TournamentType.ARENA
    start_time: datetime
    duration_minutes: int = Field(default=60, gt=0)
    time_per_problem_seconds: int = Field(default=120, gt=0)
    min_rating: int = 0
    max_rating: int = 10000
    total_rounds: int = Field(default=0, ge=0)
    category: Optional[str] = None

    @model_validator(mode="after")
    def check_rounds(self):
        if self.tournament_type == TournamentType.SWISS and self.total_rounds < 1:
            raise ValueError("Swiss tournaments need total_rounds >= 1")
        if self.min_rating > self.max_rating:
            raise ValueError("min_rating must not exceed max_rating")
        return self

class TournamentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    tournament_type: str
    status: str
    category: Optional[str] = None
    start_time: datetime
    duration_minutes: int
    time_per_problem_seconds: int
    min_rating: int
    max_rating: int
    total_rounds: int
    current_round: int

class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    user_id: str
    status: str
    score: float
    wins: int
    losses: int
    draws: int
    streak: int
    is_on_fire: bool
    is_berserk_next: bool
    bye_count: int = 0
    last_opponent_id: Optional[str] = None
    lobby_since: Optional[datetime] = None
    pause_count: int = 0
    can_rejoin_at: Optional[datetime] = None

class JoinRequest(BaseModel):
    user_id: str

class PauseRequest(BaseModel):
    user_id: str
    paused: bool

class BerserkNextRequest(BaseModel):
    user_id: str
    enabled: bool = True
