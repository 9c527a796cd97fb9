"""
Tournament Service - phase controller

Creates tournaments and drives each one through scheduled -> active ->
finished on the server clock. One tick per tournament: start or end it if
due, otherwise sweep its games and run Arena pairing or Swiss round
advancement.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mathduel.app.core.clock import utcnow
from mathduel.app.core.events import EngineEvents, engine_events
from mathduel.app.core.exceptions import CorruptStateError, EngineError, NotFoundError
from mathduel.app.models.enums import GameStatus, ParticipantStatus, TournamentStatus, TournamentType
from mathduel.app.models.game_model import Game
from mathduel.app.models.participant_model import Participant
from mathduel.app.models.tournament_model import Tournament
from mathduel.app.schemas.tournament_schema import TournamentCreate, TournamentResponse
from mathduel.app.services.game_service import GameService, game_service as default_game_service
from mathduel.app.services.pairing_service import PairingService, pairing_service as default_pairing_service
from mathduel.app.services.tournament_bus import TournamentBus, tournament_bus

logger = logging.getLogger(__name__)


class TournamentService:

    def __init__(
        self,
        games: Optional[GameService] = None,
        pairing: Optional[PairingService] = None,
        events: Optional[EngineEvents] = None,
        bus: Optional[TournamentBus] = None,
    ):
        self.games = games or default_game_service
        self.pairing = pairing or default_pairing_service
        self.events = events or engine_events
        self.bus = bus or tournament_bus

    async def create_tournament(self, db: AsyncSession, data: TournamentCreate) -> Tournament:
        start_time = data.start_time
        if start_time.tzinfo is not None:
            # Stored as naive UTC like every other timestamp
            start_time = start_time.astimezone(timezone.utc).replace(tzinfo=None)

        tournament = Tournament(
            name=data.name,
            tournament_type=data.tournament_type,
            status=TournamentStatus.SCHEDULED,
            category=data.category,
            start_time=start_time,
            duration_minutes=data.duration_minutes,
            time_per_problem_seconds=data.time_per_problem_seconds,
            min_rating=data.min_rating,
            max_rating=data.max_rating,
            total_rounds=data.total_rounds if data.tournament_type == TournamentType.SWISS else 0,
            current_round=0,
        )
        db.add(tournament)
        await db.commit()
        await db.refresh(tournament)

        logger.info("Created %s tournament %s '%s' starting %s", tournament.tournament_type, tournament.id, tournament.name, start_time)
        self.bus.schedule(start_time)
        self.bus.trigger()
        return tournament

    async def get_tournament(self, db: AsyncSession, tournament_id: int) -> Tournament:
        result = await db.execute(select(Tournament).where(Tournament.id == tournament_id))
        tournament = result.scalar_one_or_none()
        if tournament is None:
            raise NotFoundError(f"Tournament {tournament_id} not found")
        return tournament

    async def list_tournaments(self, db: AsyncSession, status: Optional[str] = None) -> List[Tournament]:
        query = select(Tournament)
        if status:
            query = query.where(Tournament.status == status)
        result = await db.execute(query.order_by(Tournament.start_time.desc(), Tournament.id.desc()))
        return result.scalars().all()

    async def list_games(self, db: AsyncSession, tournament_id: int) -> List[Game]:
        await self.get_tournament(db, tournament_id)
        result = await db.execute(
            select(Game).where(Game.tournament_id == tournament_id).order_by(Game.id)
        )
        return result.scalars().all()

    def ends_at(self, tournament: Tournament) -> datetime:
        return tournament.start_time + timedelta(minutes=tournament.duration_minutes)

    async def _lock_tournament(self, db: AsyncSession, tournament_id: int) -> Tournament:
        result = await db.execute(
            select(Tournament)
            .where(Tournament.id == tournament_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        tournament = result.scalar_one_or_none()
        if tournament is None:
            raise NotFoundError(f"Tournament {tournament_id} not found")
        return tournament

    async def _set_status(self, db: AsyncSession, tournament: Tournament, expected: TournamentStatus, new: TournamentStatus) -> bool:
        result = await db.execute(
            update(Tournament)
            .where(Tournament.id == tournament.id, Tournament.status == expected)
            .values(status=new)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await db.refresh(tournament)
        return True

    # --- Phases ---

    async def start_tournament(self, db: AsyncSession, tournament: Tournament, now: datetime) -> bool:
        try:
            if not await self._set_status(db, tournament, TournamentStatus.SCHEDULED, TournamentStatus.ACTIVE):
                await db.rollback()
                return False
            await db.execute(
                update(Participant)
                .where(
                    Participant.tournament_id == tournament.id,
                    Participant.status == ParticipantStatus.REGISTERED
                )
                .values(status=ParticipantStatus.IN_LOBBY, lobby_since=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Tournament %s started", tournament.id)
        await self._publish_tournament(tournament)
        self.bus.schedule(self.ends_at(tournament))
        return True

    async def end_tournament(self, db: AsyncSession, tournament: Tournament, now: datetime) -> bool:
        """Closes every open game as a draw without scoring, then freezes the standings."""
        events = []
        try:
            if not await self._set_status(db, tournament, TournamentStatus.ACTIVE, TournamentStatus.FINISHED):
                await db.rollback()
                return False

            result = await db.execute(
                select(Game.id).where(
                    Game.tournament_id == tournament.id,
                    Game.status != GameStatus.FINISHED
                )
            )
            for game_id in result.scalars().all():
                game = await db.get(Game, game_id)
                events += await self.games.force_draw(db, game, tournament, now)

            await db.execute(
                update(Participant)
                .where(
                    Participant.tournament_id == tournament.id,
                    Participant.status == ParticipantStatus.IN_GAME
                )
                .values(status=ParticipantStatus.IN_LOBBY)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(Participant)
                .where(Participant.tournament_id == tournament.id)
                .values(lobby_since=None, is_berserk_next=False)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Tournament %s finished (%s open games closed)", tournament.id, len([e for e in events if e[0] == "game.finished"]))
        await self.games.publish(events)
        await self._publish_tournament(tournament)
        return True

    async def tick_tournament(self, db: AsyncSession, tournament_id: int, now: Optional[datetime] = None):
        """One phase-controller step for a single tournament."""
        now = now or utcnow()
        async with self.bus.lock_for(tournament_id):
            tournament = await self._lock_tournament(db, tournament_id)

            if tournament.status == TournamentStatus.SCHEDULED:
                if now < tournament.start_time:
                    self.bus.schedule(tournament.start_time)
                    await db.rollback()
                    return
                if not await self.start_tournament(db, tournament, now):
                    return

            if tournament.status == TournamentStatus.ACTIVE and now >= self.ends_at(tournament):
                await self.end_tournament(db, tournament, now)
                return

            if tournament.status != TournamentStatus.ACTIVE:
                await db.rollback()
                return

            # Release the row lock before sweeping; each game takes its own
            await db.commit()
            await self.games.sweep(db, tournament.id, now)
            # A lost race inside the sweep rolls back and expires the row
            await db.refresh(tournament)

            if tournament.tournament_type == TournamentType.SWISS:
                await self._advance_swiss(db, tournament, now)
            else:
                await self.pairing.pair_arena(db, tournament, now)

    async def _advance_swiss(self, db: AsyncSession, tournament: Tournament, now: datetime):
        if tournament.current_round >= tournament.total_rounds:
            # Final round over: no reason to wait for the clock
            if await self.pairing.round_complete(db, tournament):
                await self.end_tournament(db, tournament, now)
            return
        await self.pairing.pair_swiss_round(db, tournament, now)

    async def tick(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Runs every non-finished tournament once. Returns how many were visited."""
        now = now or utcnow()
        result = await db.execute(
            select(Tournament.id).where(Tournament.status != TournamentStatus.FINISHED).order_by(Tournament.id)
        )
        tournament_ids = result.scalars().all()
        await db.rollback()

        for tournament_id in tournament_ids:
            try:
                await self.tick_tournament(db, tournament_id, now)
            except CorruptStateError as e:
                await db.rollback()
                logger.error("Tournament %s needs an operator: %s", tournament_id, e)
                await self.events.publish("operator.alert", tournament_id, {"error": str(e)})
            except EngineError:
                await db.rollback()
                logger.exception("Tick failed for tournament %s", tournament_id)
            except Exception as e:
                # One broken tournament must not starve the rest of the pass
                await db.rollback()
                logger.exception("Unexpected failure ticking tournament %s", tournament_id)
                await self.events.publish("operator.alert", tournament_id, {"error": repr(e)})
        return len(tournament_ids)

    async def _publish_tournament(self, tournament: Tournament):
        await self.events.publish(
            "tournament.updated", tournament.id,
            TournamentResponse.model_validate(tournament).model_dump(mode="json")
        )


# Singleton instance
tournament_service = TournamentService()
