"""
Pairing Service - claims players and creates games

Runs the pure pairing algorithms over the current lobby / standings, then
claims the chosen participants with a compare-and-swap on their status so a
participant can never end up in two simultaneous games. Callers hold the
tournament's lock (see TournamentService.tick).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mathduel.app.core.clock import utcnow
from mathduel.app.core.events import EngineEvents, engine_events
from mathduel.app.core.exceptions import CorruptStateError, OracleUnavailableError
from mathduel.app.core.settings import EngineSettings, settings as default_settings
from mathduel.app.engine.pairing import Candidate, opponents_by_player, pair_arena, pair_swiss
from mathduel.app.engine.rating import get_ratings
from mathduel.app.engine.scoring import ScoringRules, Standing, apply_outcome
from mathduel.app.models.enums import GameStatus, Outcome, ParticipantStatus, ResultType
from mathduel.app.models.game_model import Game
from mathduel.app.models.participant_model import Participant
from mathduel.app.models.tournament_model import Tournament
from mathduel.app.schemas.game_schema import GameResponse
from mathduel.app.schemas.tournament_schema import ParticipantResponse
from mathduel.app.services.problem_supplier import ProblemSupplier, problem_supplier
from mathduel.app.services.tournament_bus import TournamentBus, tournament_bus

logger = logging.getLogger(__name__)

# Swiss may pull anyone who is neither playing nor gone
SWISS_CLAIMABLE = (ParticipantStatus.REGISTERED, ParticipantStatus.IN_LOBBY, ParticipantStatus.PAUSED)


@dataclass
class RoundResult:
    round_number: int
    games: List[Game] = field(default_factory=list)
    bye_game: Optional[Game] = None
    repeats: int = 0


class PairingService:

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        events: Optional[EngineEvents] = None,
        bus: Optional[TournamentBus] = None,
        problems: Optional[ProblemSupplier] = None,
    ):
        self.settings = settings or default_settings
        self.events = events or engine_events
        self.bus = bus or tournament_bus
        self.problems = problems or problem_supplier
        self.rules = ScoringRules.from_settings(self.settings)

    async def _candidates(self, db: AsyncSession, participants: Sequence[Participant]) -> List[Candidate]:
        ratings = await get_ratings(db, [p.user_id for p in participants])
        return [
            Candidate(
                user_id=p.user_id,
                rating=ratings[p.user_id],
                score=p.score or 0.0,
                lobby_since=p.lobby_since,
                last_opponent_id=p.last_opponent_id,
                bye_count=p.bye_count or 0,
            )
            for p in participants
        ]

    def _rating_range(self, a: Candidate, b: Candidate):
        mean = (a.rating + b.rating) / 2
        window = self.settings.problem_rating_window
        return (mean - window, mean + window)

    async def _claim(self, db: AsyncSession, tournament_id: int, user_id: str, opponent_id: str, claimable) -> Optional[Participant]:
        """Atomically flips a free participant to in_game. None if someone else was faster."""
        result = await db.execute(
            update(Participant)
            .where(
                Participant.tournament_id == tournament_id,
                Participant.user_id == user_id,
                Participant.status.in_([str(s) for s in claimable])
            )
            .values(
                status=ParticipantStatus.IN_GAME,
                last_opponent_id=opponent_id,
                lobby_since=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        claimed = await db.execute(
            select(Participant)
            .where(Participant.tournament_id == tournament_id, Participant.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return claimed.scalar_one()

    def _new_game(self, tournament_id: int, a: Participant, b: Participant, problem_id: int, now: datetime, round_number=None) -> Game:
        game = Game(
            tournament_id=tournament_id,
            round_number=round_number,
            player_a_id=a.user_id,
            player_b_id=b.user_id,
            problem_id=problem_id,
            status=GameStatus.COUNTDOWN,
            created_at=now,
            # Berserk chosen in the lobby is consumed by this game
            player_a_berserk=bool(a.is_berserk_next),
            player_b_berserk=bool(b.is_berserk_next),
        )
        a.is_berserk_next = False
        b.is_berserk_next = False
        return game

    # --- Arena ---

    async def pair_arena(self, db: AsyncSession, tournament: Tournament, now: Optional[datetime] = None) -> List[Game]:
        """One Arena pairing cycle. Unpaired players simply keep waiting."""
        now = now or utcnow()
        # A lost claim rolls back and expires every loaded row, tournament included
        tournament_id, category = tournament.id, tournament.category
        result = await db.execute(
            select(Participant)
            .where(
                Participant.tournament_id == tournament_id,
                Participant.status == ParticipantStatus.IN_LOBBY
            )
            .order_by(Participant.lobby_since.asc(), Participant.id.asc())
            .execution_options(populate_existing=True)
        )
        lobby = result.scalars().all()
        if len(lobby) < 2:
            return []

        pairing = pair_arena(await self._candidates(db, lobby))
        if pairing.rematches:
            logger.info("Tournament %s: %s rematch(es) accepted for lack of fresh opponents", tournament_id, pairing.rematches)

        created = []
        for head, opponent in pairing.pairs:
            try:
                problem = await self.problems.get_problem(
                    db, category=category, rating_range=self._rating_range(head, opponent)
                )
            except OracleUnavailableError as e:
                # Everyone stays in the lobby; the next tick tries again
                logger.warning("Tournament %s: pairing deferred: %s", tournament_id, e)
                break
            problem_id = problem.id

            a = await self._claim(db, tournament_id, head.user_id, opponent.user_id, (ParticipantStatus.IN_LOBBY,))
            b = await self._claim(db, tournament_id, opponent.user_id, head.user_id, (ParticipantStatus.IN_LOBBY,)) if a else None
            if a is None or b is None:
                await db.rollback()
                logger.info("Tournament %s: lost the race for %s vs %s", tournament_id, head.user_id, opponent.user_id)
                continue

            game = self._new_game(tournament_id, a, b, problem_id, now)
            db.add(game)
            # Commit per pair so other workers never see half a pairing
            await db.commit()
            await db.refresh(game)
            logger.info("Tournament %s: game %s %s vs %s", tournament_id, game.id, a.user_id, b.user_id)
            # Publish before a later rollback can expire these rows
            await self._publish_created(game, [a, b])
            created.append(game)

        for game in created:
            await db.refresh(game)
        return created

    # --- Swiss ---

    async def _current_round_games(self, db: AsyncSession, tournament: Tournament) -> List[Game]:
        result = await db.execute(
            select(Game).where(
                Game.tournament_id == tournament.id,
                Game.round_number == tournament.current_round
            )
        )
        return result.scalars().all()

    async def round_complete(self, db: AsyncSession, tournament: Tournament) -> bool:
        """True when every game of the current round is finished (vacuously for round 0)."""
        if not tournament.current_round:
            return True
        games = await self._current_round_games(db, tournament)
        for game in games:
            if game.status != GameStatus.FINISHED:
                return False
            if not game.has_valid_outcome():
                raise CorruptStateError(
                    f"Game {game.id} is finished without exactly one of winner/draw/bye"
                )
        return True

    async def pair_swiss_round(self, db: AsyncSession, tournament: Tournament, now: Optional[datetime] = None) -> Optional[RoundResult]:
        """
        Creates the next Swiss round if the current one is complete.
        Returns None when nothing was created (round still running, all rounds
        played, pairing deferred or lost to a concurrent writer).
        """
        now = now or utcnow()
        tournament_id, category = tournament.id, tournament.category
        if tournament.current_round >= tournament.total_rounds:
            return None
        if not await self.round_complete(db, tournament):
            return None

        result = await db.execute(
            select(Participant)
            .where(
                Participant.tournament_id == tournament_id,
                Participant.status != ParticipantStatus.WITHDRAWN
            )
            .execution_options(populate_existing=True)
        )
        participants = {p.user_id: p for p in result.scalars().all()}
        if len(participants) < 2:
            logger.info("Tournament %s: not enough participants for a Swiss round", tournament_id)
            return None

        history = await db.execute(select(Game).where(Game.tournament_id == tournament_id))
        played = opponents_by_player(history.scalars().all())
        pairing = pair_swiss(
            await self._candidates(db, list(participants.values())),
            played,
            lookahead=self.settings.swiss_lookahead,
            search_budget=self.settings.swiss_search_budget,
        )

        current_round = tournament.current_round
        round_number = current_round + 1
        outcome = RoundResult(round_number=round_number, repeats=pairing.repeats)
        touched: List[Participant] = []
        try:
            for top, opponent in pairing.pairs:
                problem = await self.problems.get_problem(
                    db, category=category, rating_range=self._rating_range(top, opponent)
                )
                a = await self._claim(db, tournament_id, top.user_id, opponent.user_id, SWISS_CLAIMABLE)
                b = await self._claim(db, tournament_id, opponent.user_id, top.user_id, SWISS_CLAIMABLE) if a else None
                if a is None or b is None:
                    # The round is all-or-nothing
                    await db.rollback()
                    logger.info("Tournament %s: round %s lost a claim race, retrying later", tournament_id, round_number)
                    return None
                game = self._new_game(tournament_id, a, b, problem.id, now, round_number=round_number)
                db.add(game)
                outcome.games.append(game)
                touched += [a, b]

            if pairing.bye is not None:
                bye_player = participants[pairing.bye.user_id]
                outcome.bye_game = self._award_bye(tournament_id, bye_player, round_number, now)
                db.add(outcome.bye_game)
                touched.append(bye_player)

            advanced = await db.execute(
                update(Tournament)
                .where(Tournament.id == tournament_id, Tournament.current_round == current_round)
                .values(current_round=round_number)
                .execution_options(synchronize_session=False)
            )
            if advanced.rowcount != 1:
                await db.rollback()
                logger.info("Tournament %s: round %s already created elsewhere", tournament_id, round_number)
                return None

            await db.commit()
        except OracleUnavailableError as e:
            await db.rollback()
            logger.warning("Tournament %s: round %s deferred: %s", tournament_id, round_number, e)
            return None
        except Exception:
            await db.rollback()
            raise

        await db.refresh(tournament)
        logger.info(
            "Tournament %s: round %s paired (%s games, bye=%s, repeats=%s)",
            tournament_id, round_number, len(outcome.games),
            pairing.bye.user_id if pairing.bye else None, pairing.repeats
        )
        for game in outcome.games:
            await self._publish_created(game, [])
        if outcome.bye_game is not None:
            await self.events.publish(
                "game.finished", tournament_id, GameResponse.model_validate(outcome.bye_game).model_dump(mode="json")
            )
        for participant in touched:
            await self.events.publish(
                "participant.updated", tournament_id, ParticipantResponse.model_validate(participant).model_dump(mode="json")
            )
        return outcome

    def _award_bye(self, tournament_id: int, participant: Participant, round_number: int, now: datetime) -> Game:
        update_ = apply_outcome(Standing.of(participant), Outcome.BYE, False, self.rules)
        update_.standing.write_to(participant)
        if participant.status in (ParticipantStatus.REGISTERED, ParticipantStatus.IN_LOBBY):
            participant.status = ParticipantStatus.IN_LOBBY
            participant.lobby_since = now
        return Game(
            tournament_id=tournament_id,
            round_number=round_number,
            player_a_id=participant.user_id,
            player_b_id=None,
            status=GameStatus.FINISHED,
            is_bye=True,
            result_type=ResultType.BYE,
            points_awarded_a=update_.points,
            created_at=now,
            started_at=now,
            finished_at=now,
        )

    async def _publish_created(self, game: Game, participants: List[Participant]):
        await self.events.publish(
            "game.created", game.tournament_id, GameResponse.model_validate(game).model_dump(mode="json")
        )
        for participant in participants:
            await self.events.publish(
                "participant.updated", game.tournament_id,
                ParticipantResponse.model_validate(participant).model_dump(mode="json")
            )
        # Wake the scheduler when the countdown ends
        self.bus.schedule(game.created_at + timedelta(seconds=self.settings.countdown_seconds))


# Singleton instance
pairing_service = PairingService()
