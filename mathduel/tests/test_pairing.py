import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace

from mathduel.app.engine.pairing import (
    Candidate,
    choose_bye,
    opponents_by_player,
    pair_arena,
    pair_swiss,
    swiss_order,
)

T0 = datetime(2026, 1, 1, 12, 0, 0)


def waiting(user_id, rating, seconds=0, last_opponent_id=None):
    return Candidate(user_id=user_id, rating=rating, lobby_since=T0 + timedelta(seconds=seconds), last_opponent_id=last_opponent_id)


def ids(pair):
    return {pair[0].user_id, pair[1].user_id}


class TestArenaPairing(unittest.TestCase):
    def test_longest_waiting_gets_closest_rating(self):
        pool = [
            waiting("early", 1500, seconds=0),
            waiting("far", 1000, seconds=1),
            waiting("near", 1480, seconds=2),
        ]
        result = pair_arena(pool)
        self.assertEqual(len(result.pairs), 1)
        self.assertEqual(ids(result.pairs[0]), {"early", "near"})
        self.assertEqual([c.user_id for c in result.waiting], ["far"])

    def test_avoids_immediate_rematch(self):
        pool = [
            waiting("a", 1500, seconds=0, last_opponent_id="b"),
            waiting("b", 1500, seconds=1, last_opponent_id="a"),
            waiting("c", 1200, seconds=2),
        ]
        result = pair_arena(pool)
        self.assertEqual(ids(result.pairs[0]), {"a", "c"})
        self.assertEqual(result.rematches, 0)

    def test_rematch_accepted_when_nothing_else(self):
        pool = [
            waiting("a", 1500, last_opponent_id="b"),
            waiting("b", 1500, seconds=1, last_opponent_id="a"),
        ]
        result = pair_arena(pool)
        self.assertEqual(len(result.pairs), 1)
        self.assertEqual(result.rematches, 1)

    def test_every_player_in_at_most_one_pair(self):
        pool = [waiting(f"p{i}", 1000 + 37 * i, seconds=i) for i in range(9)]
        result = pair_arena(pool)
        seen = [c.user_id for pair in result.pairs for c in pair] + [c.user_id for c in result.waiting]
        self.assertEqual(len(seen), len(set(seen)))
        self.assertEqual(len(result.pairs), 4)
        for a, b in result.pairs:
            self.assertNotEqual(a.user_id, b.user_id)

    def test_fewer_than_two_waits(self):
        result = pair_arena([waiting("solo", 1000)])
        self.assertEqual(result.pairs, [])
        self.assertEqual(len(result.waiting), 1)


class TestSwissPairing(unittest.TestCase):
    def players(self, n):
        return [Candidate(user_id=f"p{i}", rating=2000 - 100 * i) for i in range(n)]

    def test_five_players_two_games_one_bye(self):
        result = pair_swiss(self.players(5))
        self.assertEqual(len(result.pairs), 2)
        self.assertEqual(result.bye.user_id, "p4")
        paired = {c.user_id for pair in result.pairs for c in pair}
        self.assertNotIn("p4", paired)
        self.assertEqual(len(paired), 4)

    def test_adjacent_ranks_pair(self):
        result = pair_swiss(self.players(4))
        self.assertEqual([ids(p) for p in result.pairs], [{"p0", "p1"}, {"p2", "p3"}])

    def test_order_by_score_then_rating_then_id(self):
        players = [
            Candidate(user_id="b", rating=1000, score=2.0),
            Candidate(user_id="a", rating=1000, score=2.0),
            Candidate(user_id="c", rating=1500, score=0.0),
            Candidate(user_id="d", rating=1200, score=2.0),
        ]
        self.assertEqual([c.user_id for c in swiss_order(players)], ["d", "a", "b", "c"])

    def test_bye_rotates_to_fewest_byes(self):
        players = self.players(5)
        players[4] = Candidate(user_id="p4", rating=1600, bye_count=1)
        self.assertEqual(choose_bye(swiss_order(players)).user_id, "p3")

    def test_slides_to_avoid_repeat(self):
        played = {"p0": {"p1"}, "p1": {"p0"}}
        result = pair_swiss(self.players(4), played)
        self.assertEqual(result.repeats, 0)
        for a, b in result.pairs:
            self.assertNotIn(b.user_id, played.get(a.user_id, set()))
        self.assertEqual(ids(result.pairs[0]), {"p0", "p2"})

    def test_repeat_accepted_when_unavoidable(self):
        played = {"p0": {"p1"}, "p1": {"p0"}}
        result = pair_swiss(self.players(2), played)
        self.assertEqual(len(result.pairs), 1)
        self.assertEqual(result.repeats, 1)

    def test_opponents_ignore_byes(self):
        games = [
            SimpleNamespace(player_a_id="a", player_b_id="b"),
            SimpleNamespace(player_a_id="c", player_b_id=None),
        ]
        self.assertEqual(opponents_by_player(games), {"a": {"b"}, "b": {"a"}})
