"""
Game Service - Game lifecycle state machine

This service is the single source of truth for all game state modifications:
- Countdown -> active activation (server clock, never the client's)
- Berserk opt-in during the countdown
- Answer submission, wrong-answer lock and the mistake cap
- Resignation, timeouts and AFK auto-resign
- Scoring, streak and rating updates when a game finishes

Every transition is a conditional UPDATE on the game's current status, so a
duplicate submission or a sweep racing a player can never resolve a game twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mathduel.app.core.clock import utcnow
from mathduel.app.core.events import EngineEvents, engine_events
from mathduel.app.core.exceptions import (
    EngineError,
    InputLockedError,
    InvalidStateError,
    NotFoundError,
    OracleUnavailableError,
    RaceLostError,
)
from mathduel.app.core.settings import EngineSettings, settings as default_settings
from mathduel.app.engine.answers import compare_answers
from mathduel.app.engine.rating import apply_rating_delta
from mathduel.app.engine.scoring import ScoringRules, Standing, apply_outcome, rating_delta
from mathduel.app.models.enums import GameStatus, Outcome, ParticipantStatus, ResultType, TournamentStatus
from mathduel.app.models.game_model import Game, other_side
from mathduel.app.models.participant_model import Participant
from mathduel.app.models.tournament_model import Tournament
from mathduel.app.schemas.game_schema import GameResponse
from mathduel.app.schemas.tournament_schema import ParticipantResponse
from mathduel.app.services.problem_supplier import ProblemSupplier, problem_supplier
from mathduel.app.services.tournament_bus import TournamentBus, tournament_bus

logger = logging.getLogger(__name__)

OPEN_STATUSES = (GameStatus.COUNTDOWN, GameStatus.ACTIVE)

# (event_type, row, extra payload)
PendingEvent = Tuple[str, Any, Dict[str, Any]]


@dataclass
class AnswerResult:
    is_correct: bool
    accepted: bool
    mistakes: int
    game_status: str
    locked_until: Optional[datetime] = None
    winner_id: Optional[str] = None


class GameService:
    """Centralized service for all game operations"""

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

    # --- Loading ---

    async def get_game(self, db: AsyncSession, game_id: int) -> Game:
        """Load game from DB (READ ONLY)"""
        result = await db.execute(
            select(Game).where(Game.id == game_id).execution_options(populate_existing=True)
        )
        game = result.scalar_one_or_none()
        if not game:
            raise NotFoundError(f"Game {game_id} not found")
        return game

    async def _get_game_for_update(self, db: AsyncSession, game_id: int) -> Game:
        """
        Load game from DB with row locking (FOR UPDATE).
        populate_existing makes sure a stale identity-map copy is never used.
        """
        result = await db.execute(
            select(Game)
            .where(Game.id == game_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        game = result.scalar_one_or_none()
        if not game:
            raise NotFoundError(f"Game {game_id} not found")
        return game

    async def _get_tournament(self, db: AsyncSession, tournament_id: int) -> Tournament:
        result = await db.execute(select(Tournament).where(Tournament.id == tournament_id))
        tournament = result.scalar_one_or_none()
        if not tournament:
            raise NotFoundError(f"Tournament {tournament_id} not found")
        return tournament

    async def _participants_for_update(self, db: AsyncSession, game: Game) -> Dict[str, Optional[Participant]]:
        user_ids = [game.player_id(side) for side in game.sides()]
        result = await db.execute(
            select(Participant)
            .where(
                Participant.tournament_id == game.tournament_id,
                Participant.user_id.in_(user_ids)
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        by_user = {p.user_id: p for p in result.scalars().all()}
        return {side: by_user.get(game.player_id(side)) for side in game.sides()}

    def _require_side(self, game: Game, user_id: str) -> str:
        side = game.side_of(user_id)
        if side is None:
            raise InvalidStateError(f"User {user_id} is not a player of game {game.id}")
        return side

    # --- Clock ---

    def countdown_ends_at(self, game: Game) -> datetime:
        return game.created_at + timedelta(seconds=self.settings.countdown_seconds)

    def time_limit_seconds(self, game: Game, tournament: Tournament, side: str) -> int:
        base = tournament.time_per_problem_seconds
        return base // 2 if game.field(side, "berserk") else base

    def deadline(self, game: Game, tournament: Tournament, side: str) -> Optional[datetime]:
        if game.started_at is None:
            return None
        return game.started_at + timedelta(seconds=self.time_limit_seconds(game, tournament, side))

    def afk_warning_at(self, game: Game, side: str) -> Optional[datetime]:
        """Only a player who never interacted since activation can be AFK."""
        if game.started_at is None:
            return None
        if game.field(side, "last_seen_at") is not None or game.field(side, "afk_warned_at") is not None:
            return None
        return game.started_at + timedelta(seconds=self.settings.afk_warning_seconds)

    def loss_instant(self, game: Game, tournament: Tournament, side: str) -> Tuple[datetime, ResultType]:
        """When this side loses if nothing else happens, and how."""
        deadline = self.deadline(game, tournament, side)
        warned_at = game.field(side, "afk_warned_at")
        if warned_at is not None:
            afk_at = warned_at + timedelta(seconds=self.settings.afk_resign_seconds)
            if afk_at < deadline:
                return afk_at, ResultType.AFK
        return deadline, ResultType.TIMEOUT

    def _schedule_wakeups(self, game: Game, tournament: Tournament):
        if game.status == GameStatus.COUNTDOWN:
            self.bus.schedule(self.countdown_ends_at(game))
        elif game.status == GameStatus.ACTIVE:
            for side in game.sides():
                self.bus.schedule(self.loss_instant(game, tournament, side)[0])
                self.bus.schedule(self.afk_warning_at(game, side))

    # --- Conditional update ---

    async def _transition(self, db: AsyncSession, game: Game, expected, *conditions, **values) -> bool:
        """UPDATE ... WHERE id = :id AND status IN (:expected); True if we won the row."""
        stmt = (
            update(Game)
            .where(Game.id == game.id, Game.status.in_([str(s) for s in expected]), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            return False
        await db.refresh(game)
        return True

    # --- Player actions ---

    async def activate_berserk(self, db: AsyncSession, game_id: int, user_id: str, now: Optional[datetime] = None) -> Game:
        now = now or utcnow()
        game = await self._get_game_for_update(db, game_id)
        try:
            side = self._require_side(game, user_id)
            tournament = await self._get_tournament(db, game.tournament_id)
            events = await self._reconcile_locked(db, game, tournament, now)

            if game.status != GameStatus.COUNTDOWN:
                raise InvalidStateError("Berserk is only available during the countdown")

            if not game.field(side, "berserk"):
                values = {f"player_{side}_berserk": True, f"player_{side}_last_seen_at": now}
                if not await self._transition(db, game, (GameStatus.COUNTDOWN,), **values):
                    raise RaceLostError(f"Game {game_id} left the countdown")
                events.append(("game.updated", game, {"berserk": user_id}))

            await db.commit()
        except RaceLostError:
            await db.rollback()
            raise InvalidStateError("Berserk is only available during the countdown")
        except Exception:
            await db.rollback()
            raise

        await self.publish(events)
        self._schedule_wakeups(game, tournament)
        return game

    async def submit_answer(
        self,
        db: AsyncSession,
        game_id: int,
        user_id: str,
        answer: str,
        elapsed_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AnswerResult:
        now = now or utcnow()
        game = await self._get_game_for_update(db, game_id)
        side = None
        is_correct = False
        try:
            side = self._require_side(game, user_id)
            tournament = await self._get_tournament(db, game.tournament_id)
            events = await self._reconcile_locked(db, game, tournament, now)

            if game.status == GameStatus.FINISHED:
                # Duplicate submission, or the clock beat the player to it
                await db.commit()
                await self.publish(events)
                return self._answer_result(game, side, is_correct=False, accepted=False)

            if game.status == GameStatus.COUNTDOWN:
                raise InvalidStateError("Game has not started yet")

            locked_until = game.field(side, "locked_until")
            if locked_until is not None and now < locked_until:
                raise InputLockedError("Input locked after a wrong answer", locked_until=locked_until)

            problem = await self.problems.get_by_id(db, game.problem_id)
            is_correct = compare_answers(answer, problem.answer, problem.answer_type)
            elapsed = int((now - game.started_at).total_seconds() * 1000)
            logger.debug("Game %s: %s answered after %sms (client says %s)", game_id, user_id, elapsed, elapsed_ms)

            record = {
                f"player_{side}_answer": answer,
                f"player_{side}_time_ms": elapsed,
                f"player_{side}_last_seen_at": now,
                f"player_{side}_afk_warned_at": None,
            }

            if is_correct:
                events += await self._finish(
                    db, game, tournament, now,
                    result_type=ResultType.WIN, winner_side=side, extra_values=record
                )
            else:
                mistakes = game.field(side, "mistakes") or 0
                record[f"player_{side}_mistakes"] = mistakes + 1
                record[f"player_{side}_locked_until"] = now + timedelta(seconds=self.settings.wrong_answer_lock_seconds)
                mistakes_column = getattr(Game, f"player_{side}_mistakes")
                if not await self._transition(db, game, (GameStatus.ACTIVE,), mistakes_column == mistakes, **record):
                    raise RaceLostError(f"Game {game_id} changed under answer submission")

                if mistakes + 1 >= self.settings.max_mistakes:
                    events += await self._finish(
                        db, game, tournament, now,
                        result_type=ResultType.MISTAKES, winner_side=other_side(side)
                    )
                else:
                    events.append(("game.updated", game, {}))

            await db.commit()
        except RaceLostError:
            await db.rollback()
            game = await self.get_game(db, game_id)
            return self._answer_result(game, side, is_correct=False, accepted=False)
        except Exception:
            await db.rollback()
            raise

        await self.publish(events)
        self._schedule_wakeups(game, tournament)
        return self._answer_result(game, side, is_correct=is_correct, accepted=True)

    def _answer_result(self, game: Game, side: str, is_correct: bool, accepted: bool) -> AnswerResult:
        return AnswerResult(
            is_correct=is_correct,
            accepted=accepted,
            mistakes=game.field(side, "mistakes") or 0,
            game_status=game.status,
            locked_until=game.field(side, "locked_until"),
            winner_id=game.winner_id,
        )

    async def give_up(self, db: AsyncSession, game_id: int, user_id: str, now: Optional[datetime] = None) -> Game:
        now = now or utcnow()
        game = await self._get_game_for_update(db, game_id)
        try:
            side = self._require_side(game, user_id)
            tournament = await self._get_tournament(db, game.tournament_id)
            events = await self._reconcile_locked(db, game, tournament, now)

            if game.status != GameStatus.FINISHED:
                events += await self._finish(
                    db, game, tournament, now,
                    result_type=ResultType.RESIGN, winner_side=other_side(side),
                    extra_values={f"player_{side}_last_seen_at": now}
                )
            await db.commit()
        except RaceLostError:
            await db.rollback()
            return await self.get_game(db, game_id)
        except Exception:
            await db.rollback()
            raise

        await self.publish(events)
        return game

    async def record_interaction(self, db: AsyncSession, game_id: int, user_id: str, now: Optional[datetime] = None) -> Game:
        """Client heartbeat: the player is present, cancel any AFK warning."""
        now = now or utcnow()
        game = await self._get_game_for_update(db, game_id)
        try:
            side = self._require_side(game, user_id)
            tournament = await self._get_tournament(db, game.tournament_id)
            events = await self._reconcile_locked(db, game, tournament, now)

            if game.status != GameStatus.FINISHED:
                values = {f"player_{side}_last_seen_at": now, f"player_{side}_afk_warned_at": None}
                if not await self._transition(db, game, OPEN_STATUSES, **values):
                    raise RaceLostError(f"Game {game_id} finished under heartbeat")
            await db.commit()
        except RaceLostError:
            await db.rollback()
            return await self.get_game(db, game_id)
        except Exception:
            await db.rollback()
            raise

        await self.publish(events)
        self._schedule_wakeups(game, tournament)
        return game

    # --- Server-side clock ---

    async def reconcile(self, db: AsyncSession, game_id: int, now: Optional[datetime] = None) -> Game:
        """Applies every transition that is due at `now` (activation, timeouts, AFK)."""
        now = now or utcnow()
        game = await self._get_game_for_update(db, game_id)
        try:
            tournament = await self._get_tournament(db, game.tournament_id)
            events = await self._reconcile_locked(db, game, tournament, now)
            await db.commit()
        except RaceLostError:
            await db.rollback()
            return await self.get_game(db, game_id)
        except Exception:
            await db.rollback()
            raise

        await self.publish(events)
        self._schedule_wakeups(game, tournament)
        return game

    async def sweep(self, db: AsyncSession, tournament_id: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Reconciles every open game; one broken game never stops the others."""
        now = now or utcnow()
        query = select(Game.id).where(Game.status.in_([str(s) for s in OPEN_STATUSES]))
        if tournament_id is not None:
            query = query.where(Game.tournament_id == tournament_id)
        result = await db.execute(query.order_by(Game.id))
        game_ids = result.scalars().all()

        for game_id in game_ids:
            try:
                await self.reconcile(db, game_id, now)
            except OracleUnavailableError as e:
                logger.warning("Deferring game %s: %s", game_id, e)
            except EngineError:
                logger.exception("Sweep failed for game %s", game_id)
        return len(game_ids)

    async def _reconcile_locked(self, db: AsyncSession, game: Game, tournament: Tournament, now: datetime) -> List[PendingEvent]:
        events: List[PendingEvent] = []

        if game.status == GameStatus.COUNTDOWN:
            starts_at = self.countdown_ends_at(game)
            if now < starts_at:
                return events
            # Activation is pinned to the end of the countdown, however late we are
            if not await self._transition(db, game, (GameStatus.COUNTDOWN,), status=GameStatus.ACTIVE, started_at=starts_at):
                raise RaceLostError(f"Game {game.id} activated elsewhere")
            events.append(("game.active", game, {}))

        if game.status != GameStatus.ACTIVE:
            return events

        due = {}
        for side in game.sides():
            instant, kind = self.loss_instant(game, tournament, side)
            if instant <= now:
                due[side] = (instant, kind)

        if len(due) == 2 and due["a"][0] == due["b"][0]:
            kinds = {kind for _, kind in due.values()}
            result_type = ResultType.TIMEOUT if kinds == {ResultType.TIMEOUT} else ResultType.AFK
            events += await self._finish(db, game, tournament, now, result_type=result_type, is_draw=True)
            return events
        if due:
            loser = min(due, key=lambda s: due[s][0])
            events += await self._finish(
                db, game, tournament, now,
                result_type=due[loser][1], winner_side=other_side(loser)
            )
            return events

        for side in game.sides():
            warn_at = self.afk_warning_at(game, side)
            if warn_at is None or now < warn_at:
                continue
            warned_column = getattr(Game, f"player_{side}_afk_warned_at")
            if await self._transition(db, game, (GameStatus.ACTIVE,), warned_column.is_(None), **{f"player_{side}_afk_warned_at": now}):
                logger.info("Game %s: AFK warning for %s", game.id, game.player_id(side))
                events.append(("game.afk_warning", game, {"user_id": game.player_id(side)}))

        return events

    # --- Resolution ---

    async def _finish(
        self,
        db: AsyncSession,
        game: Game,
        tournament: Tournament,
        now: datetime,
        result_type: ResultType,
        winner_side: Optional[str] = None,
        is_draw: bool = False,
        apply_standings: bool = True,
        extra_values: Optional[Dict[str, Any]] = None,
    ) -> List[PendingEvent]:
        """
        Moves the game to finished and, in the same transaction, updates both
        participants and their ratings. Raises RaceLostError if another writer
        already finished it; the caller rolls everything back.
        """
        values: Dict[str, Any] = dict(extra_values or {})
        values.update(
            status=GameStatus.FINISHED,
            finished_at=now,
            result_type=result_type,
            is_draw=is_draw,
            winner_id=game.player_id(winner_side) if winner_side else None,
        )

        participants = await self._participants_for_update(db, game)
        updates = {}
        deltas = {}
        if apply_standings:
            # Loaded before the transition so a supplier outage leaves the game untouched
            problem = await self.problems.get_by_id(db, game.problem_id) if game.problem_id else None
            difficulty = problem.difficulty if problem else None
            for side in game.sides():
                if side == winner_side:
                    outcome = Outcome.WIN
                elif is_draw:
                    outcome = Outcome.DRAW
                else:
                    outcome = Outcome.LOSS
                participant = participants.get(side)
                prior = Standing.of(participant) if participant else Standing()
                updates[side] = apply_outcome(prior, outcome, bool(game.field(side, "berserk")), self.rules)
                deltas[side] = rating_delta(difficulty, outcome, self.rules)
                values[f"points_awarded_{side}"] = updates[side].points
                values[f"rating_delta_{side}"] = deltas[side]

        if not await self._transition(db, game, OPEN_STATUSES, **values):
            raise RaceLostError(f"Game {game.id} already finished")

        events: List[PendingEvent] = [("game.finished", game, {})]
        for side, participant in participants.items():
            if participant is None:
                logger.error("Game %s: no participant row for %s", game.id, game.player_id(side))
                continue
            if side in updates:
                updates[side].standing.write_to(participant)
            if deltas.get(side):
                await apply_rating_delta(db, participant.user_id, deltas[side], game.id)
            if participant.status == ParticipantStatus.IN_GAME:
                participant.status = ParticipantStatus.IN_LOBBY
                participant.lobby_since = now if tournament.status == TournamentStatus.ACTIVE else None
            events.append(("participant.updated", participant, {}))

        await db.flush()
        logger.info(
            "Game %s finished (%s): winner=%s draw=%s", game.id, result_type, game.winner_id, is_draw
        )
        return events

    async def force_draw(self, db: AsyncSession, game: Game, tournament: Tournament, now: datetime) -> List[PendingEvent]:
        """Tournament buzzer: close an open game without touching standings. Caller commits."""
        game = await self._get_game_for_update(db, game.id)
        if game.status == GameStatus.FINISHED:
            return []
        return await self._finish(
            db, game, tournament, now,
            result_type=ResultType.TOURNAMENT_END, is_draw=True, apply_standings=False
        )

    # --- Notifications ---

    async def publish(self, events: List[PendingEvent]):
        finished = False
        for event_type, row, extra in events:
            if isinstance(row, Game):
                payload = GameResponse.model_validate(row).model_dump(mode="json")
                tournament_id = row.tournament_id
                finished = finished or event_type == "game.finished"
            else:
                payload = ParticipantResponse.model_validate(row).model_dump(mode="json")
                tournament_id = row.tournament_id
            payload.update(extra)
            await self.events.publish(event_type, tournament_id, payload)
        if finished:
            # Freed players should not wait for the next periodic tick
            self.bus.trigger()


# Singleton instance
game_service = GameService()
