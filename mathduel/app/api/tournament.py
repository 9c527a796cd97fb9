from fastapi import APIRouter, Depends, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from mathduel.app.api.errors import to_http
from mathduel.app.api.websocket_manager import manager
from mathduel.app.core.database import get_db
from mathduel.app.core.exceptions import EngineError
from mathduel.app.schemas.game_schema import GameResponse
from mathduel.app.schemas.tournament_schema import (
    BerserkNextRequest,
    JoinRequest,
    ParticipantResponse,
    PauseRequest,
    TournamentCreate,
    TournamentResponse,
)
from mathduel.app.services.participant_service import participant_service
from mathduel.app.services.tournament_service import tournament_service

router = APIRouter()

@router.post("", response_model=TournamentResponse)
async def create_tournament(payload: TournamentCreate, db: AsyncSession = Depends(get_db)):
    return await tournament_service.create_tournament(db, payload)

@router.get("", response_model=List[TournamentResponse])
async def list_tournaments(status: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    return await tournament_service.list_tournaments(db, status)

@router.get("/{id}", response_model=TournamentResponse)
async def get_tournament(id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await tournament_service.get_tournament(db, id)
    except EngineError as e:
        raise to_http(e)

@router.get("/{id}/standings", response_model=List[ParticipantResponse])
async def get_standings(id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await participant_service.standings(db, id)
    except EngineError as e:
        raise to_http(e)

@router.get("/{id}/games", response_model=List[GameResponse])
async def list_games(id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await tournament_service.list_games(db, id)
    except EngineError as e:
        raise to_http(e)

@router.post("/{id}/join", response_model=ParticipantResponse)
async def join_tournament(id: int, payload: JoinRequest, db: AsyncSession = Depends(get_db)):
    try:
        return await participant_service.join_tournament(db, id, payload.user_id)
    except EngineError as e:
        raise to_http(e)

@router.post("/{id}/withdraw", response_model=ParticipantResponse)
async def withdraw(id: int, payload: JoinRequest, db: AsyncSession = Depends(get_db)):
    try:
        return await participant_service.withdraw(db, id, payload.user_id)
    except EngineError as e:
        raise to_http(e)

@router.post("/{id}/pause", response_model=ParticipantResponse)
async def set_paused(id: int, payload: PauseRequest, db: AsyncSession = Depends(get_db)):
    """Pause (or resume) pairing for a player. Resuming early is refused while the cooldown runs."""
    try:
        return await participant_service.set_paused(db, id, payload.user_id, payload.paused)
    except EngineError as e:
        raise to_http(e)

@router.post("/{id}/berserk-next", response_model=ParticipantResponse)
async def set_berserk_next(id: int, payload: BerserkNextRequest, db: AsyncSession = Depends(get_db)):
    try:
        return await participant_service.set_berserk_next(db, id, payload.user_id, payload.enabled)
    except EngineError as e:
        raise to_http(e)

@router.websocket("/{id}/ws")
async def tournament_websocket(websocket: WebSocket, id: int):
    await manager.handle_session(websocket, id)
