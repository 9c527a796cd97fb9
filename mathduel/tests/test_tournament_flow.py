import unittest

from sqlalchemy import update
from sqlalchemy.future import select

from mathduel.app.api.errors import to_http
from mathduel.app.core.exceptions import (
    EngineValidationError,
    InputLockedError,
    InvalidStateError,
    NotFoundError,
    OracleUnavailableError,
)
from mathduel.app.engine.rating import apply_rating_delta, get_rating
from mathduel.app.models import Game, Participant
from mathduel.app.models.enums import (
    GameStatus,
    ParticipantStatus,
    ResultType,
    TournamentStatus,
    TournamentType,
)
from mathduel.app.services.pairing_service import PairingService
from mathduel.app.services.problem_supplier import ProblemSupplier
from mathduel.app.services.tournament_service import TournamentService

from mathduel.tests.helpers import EngineTestCase, at


class FlowTestCase(EngineTestCase):
    async def games_of(self, tournament, round_number=None):
        query = select(Game).where(Game.tournament_id == tournament.id).execution_options(populate_existing=True)
        if round_number is not None:
            query = query.where(Game.round_number == round_number)
        result = await self.db.execute(query.order_by(Game.id))
        return result.scalars().all()

    async def participant(self, tournament, user_id):
        result = await self.db.execute(
            select(Participant)
            .where(Participant.tournament_id == tournament.id, Participant.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()


class PausesBobOnce(ProblemSupplier):
    """Another worker pauses bob between the lobby read and the claim."""

    def __init__(self):
        super().__init__()
        self.fired = False

    async def get_problem(self, db, category=None, rating_range=None):
        if not self.fired:
            self.fired = True
            await db.execute(
                update(Participant)
                .where(Participant.user_id == "bob")
                .values(status=ParticipantStatus.PAUSED, lobby_since=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return await super().get_problem(db, category=category, rating_range=rating_range)


class BrokenForCategory(ProblemSupplier):
    async def get_problem(self, db, category=None, rating_range=None):
        if category == "broken":
            raise RuntimeError("supplier crashed")
        return await super().get_problem(db, category=category, rating_range=rating_range)


class TestSwissFlow(FlowTestCase):
    async def swiss_with(self, count, total_rounds=3):
        await self.add_problem()
        tournament = await self.add_tournament(
            TournamentType.SWISS, status=TournamentStatus.SCHEDULED, total_rounds=total_rounds
        )
        for i in range(count):
            await self.add_player(tournament, f"p{i}", status=ParticipantStatus.REGISTERED, rating=1500 - 50 * i)
        return tournament

    async def test_five_players_round_one(self):
        tournament = await self.swiss_with(5)

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))

        tournament = await self.reload(tournament)
        self.assertEqual(tournament.status, TournamentStatus.ACTIVE)
        self.assertEqual(tournament.current_round, 1)

        games = await self.games_of(tournament, round_number=1)
        played = [g for g in games if not g.is_bye]
        byes = [g for g in games if g.is_bye]
        self.assertEqual(len(played), 2)
        self.assertEqual(len(byes), 1)
        self.assertEqual(byes[0].player_a_id, "p4")
        self.assertEqual(byes[0].status, GameStatus.FINISHED)
        self.assertEqual(byes[0].result_type, ResultType.BYE)
        self.assertTrue(byes[0].has_valid_outcome())

        bye_player = await self.participant(tournament, "p4")
        self.assertEqual(bye_player.score, 1.0)
        self.assertEqual(bye_player.streak, 0)
        self.assertEqual(bye_player.bye_count, 1)
        self.assertEqual(bye_player.status, ParticipantStatus.IN_LOBBY)

        in_games = {g.player_a_id for g in played} | {g.player_b_id for g in played}
        self.assertEqual(in_games, {"p0", "p1", "p2", "p3"})
        for user_id in in_games:
            self.assertEqual((await self.participant(tournament, user_id)).status, ParticipantStatus.IN_GAME)

    async def test_next_round_waits_for_current(self):
        tournament = await self.swiss_with(4)
        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))
        first = await self.games_of(tournament, round_number=1)

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(2))
        self.assertEqual((await self.reload(tournament)).current_round, 1)

        for game in first:
            await self.games.give_up(self.db, game.id, game.player_b_id, now=at(3))
        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(4))

        tournament = await self.reload(tournament)
        self.assertEqual(tournament.current_round, 2)
        round_one = {frozenset((g.player_a_id, g.player_b_id)) for g in first}
        round_two = {frozenset((g.player_a_id, g.player_b_id)) for g in await self.games_of(tournament, round_number=2)}
        self.assertEqual(len(round_two), 2)
        self.assertFalse(round_one & round_two)

    async def test_bye_rotates_between_rounds(self):
        tournament = await self.swiss_with(3)
        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))
        for game in await self.games_of(tournament, round_number=1):
            if not game.is_bye:
                await self.games.give_up(self.db, game.id, game.player_b_id, now=at(3))

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(4))

        byes = [g.player_a_id for g in await self.games_of(tournament) if g.is_bye]
        self.assertEqual(len(byes), 2)
        self.assertEqual(len(set(byes)), 2)

    async def test_finishes_after_final_round(self):
        tournament = await self.swiss_with(2, total_rounds=1)
        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))
        game = (await self.games_of(tournament))[0]
        await self.games.give_up(self.db, game.id, game.player_b_id, now=at(2))

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(3))

        tournament = await self.reload(tournament)
        self.assertEqual(tournament.status, TournamentStatus.FINISHED)
        winner = await self.participant(tournament, game.player_a_id)
        self.assertEqual(winner.score, 2.0)

    async def test_malformed_result_raises_operator_alert(self):
        tournament = await self.swiss_with(2)
        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))
        game = (await self.games_of(tournament))[0]
        await self.db.execute(update(Game).where(Game.id == game.id).values(status=GameStatus.FINISHED))
        await self.db.commit()

        await self.tournaments.tick(self.db, now=at(2))

        self.assertIn("operator.alert", self.events.types())
        self.assertEqual((await self.reload(tournament)).current_round, 1)


class TestArenaFlow(FlowTestCase):
    async def test_tick_pairs_lobby_without_double_booking(self):
        await self.add_problem()
        tournament = await self.add_tournament()
        for i in range(5):
            await self.add_player(tournament, f"p{i}", rating=1200 + 10 * i)

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))
        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(2))

        games = await self.games_of(tournament)
        self.assertEqual(len(games), 2)
        players = [g.player_a_id for g in games] + [g.player_b_id for g in games]
        self.assertEqual(len(players), len(set(players)))
        statuses = [(await self.participant(tournament, f"p{i}")).status for i in range(5)]
        self.assertEqual(statuses.count(ParticipantStatus.IN_GAME), 4)
        self.assertEqual(statuses.count(ParticipantStatus.IN_LOBBY), 1)

    async def test_claim_refuses_player_already_in_game(self):
        tournament = await self.add_tournament()
        await self.add_player(tournament, "busy", status=ParticipantStatus.IN_GAME)

        claimed = await self.pairing._claim(self.db, tournament.id, "busy", "other", (ParticipantStatus.IN_LOBBY,))

        self.assertIsNone(claimed)

    async def test_lost_claim_does_not_stop_the_cycle(self):
        await self.add_problem()
        tournament = await self.add_tournament()
        await self.add_player(tournament, "alice", rating=1500, lobby_since=at(-40))
        await self.add_player(tournament, "bob", rating=1510, lobby_since=at(-30))
        await self.add_player(tournament, "carol", rating=1000, lobby_since=at(-20))
        await self.add_player(tournament, "dave", rating=1010, lobby_since=at(-10))
        pairing = PairingService(self.settings, self.events, self.bus, PausesBobOnce())

        created = await pairing.pair_arena(self.db, tournament, now=at(1))

        self.assertEqual([(g.player_a_id, g.player_b_id) for g in created], [("carol", "dave")])
        await self.reload(tournament)
        self.assertEqual(len(await self.games_of(tournament)), 1)
        self.assertEqual((await self.participant(tournament, "alice")).status, ParticipantStatus.IN_LOBBY)
        self.assertEqual((await self.participant(tournament, "bob")).status, ParticipantStatus.PAUSED)
        self.assertEqual((await self.participant(tournament, "carol")).status, ParticipantStatus.IN_GAME)
        self.assertEqual(self.events.types().count("game.created"), 1)

    async def test_tick_survives_unexpected_failure_in_one_tournament(self):
        await self.add_problem()
        broken = await self.add_tournament(category="broken")
        healthy = await self.add_tournament()
        for tournament in (broken, healthy):
            await self.add_player(tournament, "a")
            await self.add_player(tournament, "b")
        broken_id, healthy_id = broken.id, healthy.id
        pairing = PairingService(self.settings, self.events, self.bus, BrokenForCategory())
        tournaments = TournamentService(self.games, pairing, self.events, self.bus)

        visited = await tournaments.tick(self.db, now=at(1))

        self.assertEqual(visited, 2)
        await self.reload(broken)
        await self.reload(healthy)
        self.assertEqual(await self.games_of(broken), [])
        self.assertEqual(len(await self.games_of(healthy)), 1)
        self.assertEqual((await self.participant(broken, "a")).status, ParticipantStatus.IN_LOBBY)
        alerts = [tid for event_type, tid, _ in self.events.published if event_type == "operator.alert"]
        self.assertEqual(alerts, [broken_id])
        self.assertNotIn(healthy_id, alerts)

    async def test_finished_players_return_to_lobby_and_repair(self):
        await self.add_problem()
        tournament = await self.add_tournament()
        for user_id in ("a", "b", "c", "d"):
            await self.add_player(tournament, user_id)
        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))
        first = await self.games_of(tournament)
        for game in first:
            await self.games.give_up(self.db, game.id, game.player_b_id, now=at(10))

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(11))

        games = await self.games_of(tournament)
        self.assertEqual(len(games), 4)
        for game in games[2:]:
            a = await self.participant(tournament, game.player_a_id)
            self.assertNotEqual(a.last_opponent_id, None)
            self.assertEqual(a.last_opponent_id, game.player_b_id)

    async def test_no_problem_leaves_players_waiting(self):
        tournament = await self.add_tournament()
        await self.add_player(tournament, "a")
        await self.add_player(tournament, "b")

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(1))

        self.assertEqual(await self.games_of(tournament), [])
        self.assertEqual((await self.participant(tournament, "a")).status, ParticipantStatus.IN_LOBBY)


class TestPhases(FlowTestCase):
    async def test_start_and_end_on_the_clock(self):
        await self.add_problem()
        tournament = await self.add_tournament(status=TournamentStatus.SCHEDULED)
        await self.add_player(tournament, "a", status=ParticipantStatus.REGISTERED)
        await self.add_player(tournament, "b", status=ParticipantStatus.REGISTERED)

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(-10))
        self.assertEqual((await self.reload(tournament)).status, TournamentStatus.SCHEDULED)

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(0))
        self.assertEqual((await self.reload(tournament)).status, TournamentStatus.ACTIVE)
        games = await self.games_of(tournament)
        self.assertEqual(len(games), 1)

        await self.tournaments.tick_tournament(self.db, tournament.id, now=at(3600))

        self.assertEqual((await self.reload(tournament)).status, TournamentStatus.FINISHED)
        game = (await self.games_of(tournament))[0]
        self.assertEqual(game.status, GameStatus.FINISHED)
        self.assertTrue(game.is_draw)
        self.assertEqual(game.result_type, ResultType.TOURNAMENT_END)
        for user_id in ("a", "b"):
            participant = await self.participant(tournament, user_id)
            self.assertEqual(participant.status, ParticipantStatus.IN_LOBBY)
            self.assertIsNone(participant.lobby_since)
            self.assertEqual((participant.score, participant.draws), (0.0, 0))

    async def test_finished_tournament_is_not_ticked(self):
        tournament = await self.add_tournament(status=TournamentStatus.FINISHED)
        visited = await self.tournaments.tick(self.db, now=at(0))
        self.assertEqual(visited, 0)
        self.assertEqual((await self.reload(tournament)).status, TournamentStatus.FINISHED)


class TestParticipants(FlowTestCase):
    async def test_join_depends_on_phase(self):
        scheduled = await self.add_tournament(status=TournamentStatus.SCHEDULED)
        active = await self.add_tournament()

        early = await self.participants.join_tournament(self.db, scheduled.id, "u1", now=at(0))
        late = await self.participants.join_tournament(self.db, active.id, "u1", now=at(5))

        self.assertEqual(early.status, ParticipantStatus.REGISTERED)
        self.assertEqual(late.status, ParticipantStatus.IN_LOBBY)
        self.assertEqual(late.lobby_since, at(5))

    async def test_join_rejects_bad_requests(self):
        finished = await self.add_tournament(status=TournamentStatus.FINISHED)
        elite = await self.add_tournament(min_rating=1800)

        with self.assertRaises(InvalidStateError):
            await self.participants.join_tournament(self.db, finished.id, "u1")
        with self.assertRaises(EngineValidationError):
            await self.participants.join_tournament(self.db, elite.id, "u1")
        with self.assertRaises(NotFoundError):
            await self.participants.join_tournament(self.db, 999, "u1")

    async def test_rejoin_revives_withdrawn_row(self):
        tournament = await self.add_tournament()
        first = await self.participants.join_tournament(self.db, tournament.id, "u1", now=at(0))
        await self.participants.withdraw(self.db, tournament.id, "u1")

        again = await self.participants.join_tournament(self.db, tournament.id, "u1", now=at(9))

        self.assertEqual(again.id, first.id)
        self.assertEqual(again.status, ParticipantStatus.IN_LOBBY)

    async def test_withdraw_rejected_in_game(self):
        tournament = await self.add_tournament()
        await self.add_player(tournament, "u1", status=ParticipantStatus.IN_GAME)
        with self.assertRaises(InvalidStateError):
            await self.participants.withdraw(self.db, tournament.id, "u1")
        await self.reload(tournament)
        self.assertEqual((await self.participant(tournament, "u1")).status, ParticipantStatus.IN_GAME)

    async def test_pause_cooldown_grows(self):
        tournament = await self.add_tournament()
        await self.add_player(tournament, "u1")

        paused = await self.participants.set_paused(self.db, tournament.id, "u1", True, now=at(0))
        self.assertEqual(paused.can_rejoin_at, at(0))
        await self.participants.set_paused(self.db, tournament.id, "u1", False, now=at(1))

        paused = await self.participants.set_paused(self.db, tournament.id, "u1", True, now=at(2))
        self.assertEqual(paused.pause_count, 2)
        self.assertEqual(paused.can_rejoin_at, at(12))
        with self.assertRaises(InvalidStateError):
            await self.participants.set_paused(self.db, tournament.id, "u1", False, now=at(5))
        await self.reload(tournament)

        resumed = await self.participants.set_paused(self.db, tournament.id, "u1", False, now=at(12))
        self.assertEqual(resumed.status, ParticipantStatus.IN_LOBBY)
        self.assertEqual(resumed.lobby_since, at(12))

    async def test_pause_cooldown_is_capped(self):
        self.assertEqual(self.participants.pause_cooldown(100).total_seconds(), 120)

    async def test_berserk_next_and_standings(self):
        tournament = await self.add_tournament()
        await self.add_player(tournament, "low", score=1.0, wins=0)
        await self.add_player(tournament, "high", score=4.0, wins=2)
        await self.add_player(tournament, "mid", score=4.0, wins=1)

        updated = await self.participants.set_berserk_next(self.db, tournament.id, "low", True)
        self.assertTrue(updated.is_berserk_next)

        standings = await self.participants.standings(self.db, tournament.id)
        self.assertEqual([p.user_id for p in standings], ["high", "mid", "low"])


class TestRatingStore(FlowTestCase):
    async def test_rating_never_below_zero(self):
        tournament = await self.add_tournament()
        await self.add_player(tournament, "u1", rating=5.0)

        new_rating = await apply_rating_delta(self.db, "u1", -14)
        await self.db.commit()

        self.assertEqual(new_rating, 0.0)
        self.assertEqual(await get_rating(self.db, "u1"), 0.0)


class TestHttpErrors(unittest.TestCase):
    def test_status_codes(self):
        self.assertEqual(to_http(NotFoundError("x")).status_code, 404)
        self.assertEqual(to_http(InvalidStateError("x")).status_code, 409)
        self.assertEqual(to_http(InputLockedError("x")).status_code, 409)
        self.assertEqual(to_http(EngineValidationError("x")).status_code, 400)
        self.assertEqual(to_http(OracleUnavailableError("x")).status_code, 503)
