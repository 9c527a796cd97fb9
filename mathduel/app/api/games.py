from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from mathduel.app.api.errors import to_http
from mathduel.app.core.database import get_db
from mathduel.app.core.exceptions import EngineError, InvalidStateError
from mathduel.app.schemas.game_schema import (
    AnswerResultResponse,
    AnswerSubmit,
    GameResponse,
    PlayerAction,
    ProblemView,
)
from mathduel.app.models.enums import GameStatus
from mathduel.app.services.game_service import game_service
from mathduel.app.services.problem_supplier import problem_supplier

router = APIRouter()

@router.get("/{game_id}", response_model=GameResponse)
async def get_game(game_id: int, db: AsyncSession = Depends(get_db)):
    """Reading a game also applies any transition that is already due."""
    try:
        return await game_service.reconcile(db, game_id)
    except EngineError as e:
        raise to_http(e)

@router.get("/{game_id}/problem", response_model=ProblemView)
async def get_problem(game_id: int, db: AsyncSession = Depends(get_db)):
    """The statement is only revealed once the countdown is over."""
    try:
        game = await game_service.reconcile(db, game_id)
        if game.status == GameStatus.COUNTDOWN or game.problem_id is None:
            raise InvalidStateError(f"Game {game_id} has not started yet")
        return await problem_supplier.get_by_id(db, game.problem_id)
    except EngineError as e:
        raise to_http(e)

@router.post("/{game_id}/berserk", response_model=GameResponse)
async def activate_berserk(game_id: int, payload: PlayerAction, db: AsyncSession = Depends(get_db)):
    try:
        return await game_service.activate_berserk(db, game_id, payload.user_id)
    except EngineError as e:
        raise to_http(e)

@router.post("/{game_id}/answer", response_model=AnswerResultResponse)
async def submit_answer(game_id: int, payload: AnswerSubmit, db: AsyncSession = Depends(get_db)):
    try:
        result = await game_service.submit_answer(
            db, game_id, payload.user_id, payload.answer, payload.elapsed_ms
        )
    except EngineError as e:
        raise to_http(e)
    return AnswerResultResponse(
        is_correct=result.is_correct,
        accepted=result.accepted,
        mistakes=result.mistakes,
        locked_until=result.locked_until,
        game_status=result.game_status,
        winner_id=result.winner_id,
    )

@router.post("/{game_id}/give-up", response_model=GameResponse)
async def give_up(game_id: int, payload: PlayerAction, db: AsyncSession = Depends(get_db)):
    try:
        return await game_service.give_up(db, game_id, payload.user_id)
    except EngineError as e:
        raise to_http(e)

@router.post("/{game_id}/ping", response_model=GameResponse)
async def ping(game_id: int, payload: PlayerAction, db: AsyncSession = Depends(get_db)):
    """Heartbeat: proves the player is at the board and clears any AFK warning."""
    try:
        return await game_service.record_interaction(db, game_id, payload.user_id)
    except EngineError as e:
        raise to_http(e)
