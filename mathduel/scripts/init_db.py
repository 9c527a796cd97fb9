#!/usr/bin/env python3
"""
Creates the tables. With --seed, also inserts a small set of sample problems
so a fresh install can run a tournament end to end.
"""

import asyncio
import os
import sys

# Add project root to path so we can import from mathduel.app
sys.path.append(os.path.join(os.path.dirname(__file__), '../../'))

from sqlalchemy import func
from sqlalchemy.future import select

from mathduel.app.core.database import engine, Base, AsyncSessionLocal
# IMPORT ALL MODELS
from mathduel.app.models import Game, Participant, Problem, RatingHistory, Tournament, UserRating  # noqa: F401
from mathduel.app.models.enums import AnswerType

SAMPLE_PROBLEMS = [
    ("Warm-up", "What is 17 * 23?", "391", AnswerType.NUMERIC, 1.0, 800),
    ("Halves", "Simplify 14/28.", "1/2", AnswerType.FRACTION, 2.0, 900),
    ("Squares", "What is the sum of the first 10 square numbers?", "385", AnswerType.NUMERIC, 3.0, 1000),
    ("Primes", "How many primes are there below 50?", "15", AnswerType.NUMERIC, 4.0, 1100),
    ("Root", "To three decimals, what is the square root of 2?", "1.414", AnswerType.NUMERIC, 5.0, 1200),
    ("Digits", "What is the digit sum of 2^15?", "26", AnswerType.NUMERIC, 6.0, 1300),
    ("Name it", "What is the name of the constant e?", "euler's number", AnswerType.EXACT, 2.0, 900),
]


async def init_models():
    async with engine.begin() as conn:
        # Safe create (only creates if missing)
        await conn.run_sync(Base.metadata.create_all)
        print("Database tables updated.")


async def seed_problems():
    async with AsyncSessionLocal() as db:
        existing = await db.execute(select(func.count(Problem.id)))
        if existing.scalar():
            print("Problems already present, skipping seed.")
            return
        for title, statement, answer, answer_type, difficulty, rating in SAMPLE_PROBLEMS:
            db.add(Problem(
                title=title,
                statement=statement,
                answer=answer,
                answer_type=answer_type,
                difficulty=difficulty,
                rating=rating,
                is_published=True,
            ))
        await db.commit()
        print(f"Seeded {len(SAMPLE_PROBLEMS)} problems.")


async def main(seed: bool):
    await init_models()
    if seed:
        await seed_problems()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main("--seed" in sys.argv[1:]))
