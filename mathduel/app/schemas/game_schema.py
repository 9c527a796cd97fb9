from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime

class GameResponse(BaseModel):
    # The problem's answer never leaves the server
    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    round_number: Optional[int] = None
    status: str

    player_a_id: str
    player_b_id: Optional[str] = None
    problem_id: Optional[int] = None

    player_a_mistakes: int = 0
    player_b_mistakes: int = 0
    player_a_berserk: bool = False
    player_b_berserk: bool = False
    player_a_time_ms: Optional[int] = None
    player_b_time_ms: Optional[int] = None
    player_a_locked_until: Optional[datetime] = None
    player_b_locked_until: Optional[datetime] = None

    winner_id: Optional[str] = None
    is_draw: bool = False
    is_bye: bool = False
    result_type: Optional[str] = None
    points_awarded_a: float = 0.0
    points_awarded_b: float = 0.0
    rating_delta_a: int = 0
    rating_delta_b: int = 0

    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class ProblemView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: Optional[str] = None
    statement: str
    difficulty: Optional[float] = None

class PlayerAction(BaseModel):
    user_id: str

class AnswerSubmit(BaseModel):
    user_id: str
    answer: str
    # Client-observed elapsed time; informational only, the server clock decides
    elapsed_ms: Optional[int] = Field(default=None, ge=0)

class AnswerResultResponse(BaseModel):
    is_correct: bool
    accepted: bool
    mistakes: int
    locked_until: Optional[datetime] = None
    game_status: str
    winner_id: Optional[str] = None
