#!/usr/bin/env python3
"""
Tournament Diagnostic Script
Lists unfinished games per tournament and flags finished games whose result
is malformed (not exactly one of winner / draw / bye), which would block
Swiss round advancement.
"""

import asyncio
import os
import sys

# Add project root to path so we can import from mathduel.app
sys.path.append(os.path.join(os.path.dirname(__file__), '../../'))

from sqlalchemy import func
from sqlalchemy.future import select

from mathduel.app.core.clock import utcnow
from mathduel.app.core.database import get_session_maker
from mathduel.app.models.enums import GameStatus, TournamentStatus
from mathduel.app.models.game_model import Game
from mathduel.app.models.participant_model import Participant
from mathduel.app.models.tournament_model import Tournament


async def diagnose(env: str = "prod", tournament_id: int = None):
    SessionLocal = get_session_maker(env)
    async with SessionLocal() as db:
        query = select(Tournament).order_by(Tournament.id.asc())
        if tournament_id is not None:
            query = query.where(Tournament.id == tournament_id)
        res = await db.execute(query)
        tournaments = res.scalars().all()

        if not tournaments:
            print("No tournaments found in database.")
            return 0

        problems_found = 0
        now = utcnow()
        for t in tournaments:
            print(f"--- Tournament #{t.id} '{t.name}' ({t.tournament_type}, {t.status}) ---")
            if t.tournament_type == "swiss":
                print(f"Round: {t.current_round}/{t.total_rounds}")

            print("Game Status Breakdown:")
            for s in GameStatus:
                count = await db.execute(select(func.count(Game.id)).where(Game.tournament_id == t.id, Game.status == s))
                print(f"  {s}: {count.scalar()}")

            in_game = await db.execute(
                select(func.count(Participant.id)).where(
                    Participant.tournament_id == t.id,
                    Participant.status == "in_game"
                )
            )
            print(f"Participants in game: {in_game.scalar()}")

            open_games = await db.execute(
                select(Game).where(
                    Game.tournament_id == t.id,
                    Game.status != GameStatus.FINISHED
                ).order_by(Game.id.asc())
            )
            open_list = open_games.scalars().all()
            if open_list:
                print(f"Unfinished games: {len(open_list)}")
                for g in open_list[:10]:
                    age = now - g.created_at if g.created_at else None
                    print(f"  Game {g.id}: {g.player_a_id} vs {g.player_b_id} ({g.status}, age {age})")
            if t.status == TournamentStatus.FINISHED and open_list:
                problems_found += len(open_list)
                print(f"WARNING: Tournament #{t.id} is finished but has {len(open_list)} unfinished games!")

            finished = await db.execute(
                select(Game).where(Game.tournament_id == t.id, Game.status == GameStatus.FINISHED)
            )
            malformed = [g for g in finished.scalars().all() if not g.has_valid_outcome()]
            if malformed:
                problems_found += len(malformed)
                print(f"WARNING: {len(malformed)} finished games with a malformed result:")
                for g in malformed:
                    print(f"  Game {g.id} (round {g.round_number}): winner={g.winner_id} draw={g.is_draw} bye={g.is_bye}")
            print()

        if problems_found:
            print(f"{problems_found} problem(s) need an operator.")
        else:
            print("No problems found.")
        return problems_found


if __name__ == "__main__":
    args = sys.argv[1:]
    env = "test" if "--test" in args else "prod"
    ids = [int(a) for a in args if a.isdigit()]
    found = asyncio.run(diagnose(env, ids[0] if ids else None))
    sys.exit(1 if found else 0)
