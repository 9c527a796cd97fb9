"""Shared fixtures: an in-memory database and engine services wired to it."""

import unittest
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from mathduel.app.core.database import Base, build_engine
from mathduel.app.core.events import EngineEvents
from mathduel.app.core.settings import EngineSettings
from mathduel.app.models import Participant, Problem, Tournament, UserRating
from mathduel.app.models.enums import AnswerType, ParticipantStatus, TournamentStatus, TournamentType
from mathduel.app.services.game_service import GameService
from mathduel.app.services.pairing_service import PairingService
from mathduel.app.services.participant_service import ParticipantService
from mathduel.app.services.problem_supplier import ProblemSupplier
from mathduel.app.services.tournament_bus import TournamentBus
from mathduel.app.services.tournament_service import TournamentService

T0 = datetime(2026, 1, 1, 12, 0, 0)


class RecordingEvents(EngineEvents):
    def __init__(self):
        super().__init__()
        self.published = []

    async def publish(self, event_type, tournament_id, payload):
        self.published.append((event_type, tournament_id, payload))
        await super().publish(event_type, tournament_id, payload)

    def types(self):
        return [event_type for event_type, _, _ in self.published]


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    """Fresh in-memory database and service graph per test."""

    settings_overrides = {}

    async def asyncSetUp(self):
        self.engine = build_engine("sqlite+aiosqlite://")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = sessionmaker(bind=self.engine, class_=AsyncSession, expire_on_commit=False)
        self.db = self.Session()

        self.settings = EngineSettings(**self.settings_overrides)
        self.events = RecordingEvents()
        self.bus = TournamentBus()
        self.problems = ProblemSupplier()
        self.games = GameService(self.settings, self.events, self.bus, self.problems)
        self.pairing = PairingService(self.settings, self.events, self.bus, self.problems)
        self.participants = ParticipantService(self.settings, self.events, self.bus)
        self.tournaments = TournamentService(self.games, self.pairing, self.events, self.bus)

    async def asyncTearDown(self):
        await self.db.close()
        await self.engine.dispose()

    async def add_problem(self, answer="42", answer_type=AnswerType.NUMERIC, difficulty=5.0, rating=1000, category=None):
        problem = Problem(
            title="p", statement="What is the answer?", answer=answer, answer_type=answer_type,
            difficulty=difficulty, rating=rating, category=category, is_published=True,
        )
        self.db.add(problem)
        await self.db.commit()
        return problem

    async def add_tournament(self, tournament_type=TournamentType.ARENA, status=TournamentStatus.ACTIVE, **kwargs):
        values = dict(
            name="Test Cup",
            tournament_type=tournament_type,
            status=status,
            start_time=T0,
            duration_minutes=60,
            time_per_problem_seconds=120,
            total_rounds=3 if tournament_type == TournamentType.SWISS else 0,
            current_round=0,
        )
        values.update(kwargs)
        tournament = Tournament(**values)
        self.db.add(tournament)
        await self.db.commit()
        return tournament

    async def add_player(self, tournament, user_id, status=ParticipantStatus.IN_LOBBY, rating=None, lobby_since=T0, **kwargs):
        if rating is not None:
            self.db.add(UserRating(user_id=user_id, rating=rating, games_played=0))
        participant = Participant(
            tournament_id=tournament.id, user_id=user_id, status=status,
            lobby_since=lobby_since if status == ParticipantStatus.IN_LOBBY else None,
            joined_at=T0, **kwargs
        )
        self.db.add(participant)
        await self.db.commit()
        return participant

    async def reload(self, row):
        await self.db.refresh(row)
        return row


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)
