import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mathduel.app.core.clock import utcnow
from mathduel.app.core.events import EngineEvents, engine_events
from mathduel.app.core.exceptions import EngineValidationError, InvalidStateError, NotFoundError
from mathduel.app.core.settings import EngineSettings, settings as default_settings
from mathduel.app.engine.rating import get_rating
from mathduel.app.models.enums import ParticipantStatus, TournamentStatus
from mathduel.app.models.participant_model import Participant
from mathduel.app.models.tournament_model import Tournament
from mathduel.app.schemas.tournament_schema import ParticipantResponse
from mathduel.app.services.tournament_bus import TournamentBus, tournament_bus

logger = logging.getLogger(__name__)


class ParticipantService:
    """Join / withdraw / pause / berserk opt-in for tournament players."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        events: Optional[EngineEvents] = None,
        bus: Optional[TournamentBus] = None,
    ):
        self.settings = settings or default_settings
        self.events = events or engine_events
        self.bus = bus or tournament_bus

    async def _get_tournament(self, db: AsyncSession, tournament_id: int) -> Tournament:
        result = await db.execute(select(Tournament).where(Tournament.id == tournament_id))
        tournament = result.scalar_one_or_none()
        if tournament is None:
            raise NotFoundError(f"Tournament {tournament_id} not found")
        return tournament

    async def get_participant(self, db: AsyncSession, tournament_id: int, user_id: str) -> Participant:
        result = await db.execute(
            select(Participant)
            .where(Participant.tournament_id == tournament_id, Participant.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        participant = result.scalar_one_or_none()
        if participant is None:
            raise NotFoundError(f"User {user_id} is not in tournament {tournament_id}")
        return participant

    async def _save(self, db: AsyncSession, participant: Participant) -> Participant:
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        await db.refresh(participant)
        await self.events.publish(
            "participant.updated", participant.tournament_id,
            ParticipantResponse.model_validate(participant).model_dump(mode="json")
        )
        return participant

    async def join_tournament(self, db: AsyncSession, tournament_id: int, user_id: str, now: Optional[datetime] = None) -> Participant:
        now = now or utcnow()
        tournament = await self._get_tournament(db, tournament_id)
        if tournament.status == TournamentStatus.FINISHED:
            raise InvalidStateError(f"Tournament {tournament_id} is finished")

        rating = await get_rating(db, user_id)
        if not (tournament.min_rating <= rating <= tournament.max_rating):
            raise EngineValidationError(
                f"Rating {rating:.0f} outside [{tournament.min_rating}, {tournament.max_rating}]"
            )

        result = await db.execute(
            select(Participant)
            .where(Participant.tournament_id == tournament_id, Participant.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        participant = result.scalar_one_or_none()
        if participant is not None and participant.status != ParticipantStatus.WITHDRAWN:
            # Joining twice is a no-op
            return participant
        if participant is None:
            participant = Participant(tournament_id=tournament_id, user_id=user_id, joined_at=now)
            db.add(participant)

        if tournament.status == TournamentStatus.ACTIVE:
            participant.status = ParticipantStatus.IN_LOBBY
            participant.lobby_since = now
        else:
            participant.status = ParticipantStatus.REGISTERED
            participant.lobby_since = None

        participant = await self._save(db, participant)
        logger.info("User %s joined tournament %s (%s)", user_id, tournament_id, participant.status)
        self.bus.trigger()
        return participant

    async def withdraw(self, db: AsyncSession, tournament_id: int, user_id: str) -> Participant:
        participant = await self.get_participant(db, tournament_id, user_id)
        if participant.status == ParticipantStatus.IN_GAME:
            await db.rollback()
            raise InvalidStateError("Cannot withdraw while a game is in progress")
        participant.status = ParticipantStatus.WITHDRAWN
        participant.lobby_since = None
        participant.is_berserk_next = False
        logger.info("User %s withdrew from tournament %s", user_id, tournament_id)
        return await self._save(db, participant)

    def pause_cooldown(self, pause_count: int) -> timedelta:
        """The first pause is free; each later one waits longer, up to the cap."""
        seconds = self.settings.pause_cooldown_seconds * max(0, pause_count - 1)
        return timedelta(seconds=min(seconds, self.settings.max_pause_cooldown_seconds))

    async def set_paused(self, db: AsyncSession, tournament_id: int, user_id: str, paused: bool, now: Optional[datetime] = None) -> Participant:
        now = now or utcnow()
        tournament = await self._get_tournament(db, tournament_id)
        participant = await self.get_participant(db, tournament_id, user_id)

        try:
            if participant.status in (ParticipantStatus.WITHDRAWN, ParticipantStatus.IN_GAME):
                raise InvalidStateError(f"Cannot change pause while {participant.status}")

            if paused:
                if participant.status == ParticipantStatus.PAUSED:
                    await db.rollback()
                    await db.refresh(participant)
                    return participant
                participant.status = ParticipantStatus.PAUSED
                participant.pause_count = (participant.pause_count or 0) + 1
                participant.last_paused_at = now
                participant.can_rejoin_at = now + self.pause_cooldown(participant.pause_count)
                participant.lobby_since = None
            else:
                if participant.status != ParticipantStatus.PAUSED:
                    await db.rollback()
                    await db.refresh(participant)
                    return participant
                if participant.can_rejoin_at and now < participant.can_rejoin_at:
                    raise InvalidStateError(f"Cannot resume before {participant.can_rejoin_at.isoformat()}")
                if tournament.status == TournamentStatus.ACTIVE:
                    participant.status = ParticipantStatus.IN_LOBBY
                    participant.lobby_since = now
                else:
                    participant.status = ParticipantStatus.REGISTERED
        except InvalidStateError:
            await db.rollback()
            raise

        participant = await self._save(db, participant)
        if not paused:
            self.bus.trigger()
        return participant

    async def set_berserk_next(self, db: AsyncSession, tournament_id: int, user_id: str, enabled: bool = True) -> Participant:
        participant = await self.get_participant(db, tournament_id, user_id)
        if participant.status == ParticipantStatus.WITHDRAWN:
            await db.rollback()
            raise InvalidStateError("Withdrawn players cannot opt in to berserk")
        participant.is_berserk_next = enabled
        return await self._save(db, participant)

    async def standings(self, db: AsyncSession, tournament_id: int) -> List[Participant]:
        await self._get_tournament(db, tournament_id)
        result = await db.execute(
            select(Participant)
            .where(Participant.tournament_id == tournament_id)
            .order_by(Participant.score.desc(), Participant.wins.desc(), Participant.joined_at.asc(), Participant.id.asc())
        )
        return result.scalars().all()


participant_service = ParticipantService()
