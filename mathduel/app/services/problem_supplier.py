import logging
import random
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mathduel.app.core.exceptions import OracleUnavailableError
from mathduel.app.models.problem_model import Problem

logger = logging.getLogger(__name__)


class ProblemSupplier:
    """Picks a random published problem for a new game."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def get_problem(
        self,
        db: AsyncSession,
        category: Optional[str] = None,
        rating_range: Optional[Tuple[float, float]] = None,
    ) -> Problem:
        query = select(Problem).where(Problem.is_published.is_(True))
        if category:
            query = query.where(Problem.category == category)

        try:
            problems = []
            if rating_range:
                low, high = rating_range
                ranged = await db.execute(query.where(Problem.rating.between(low, high)))
                problems = ranged.scalars().all()
            if not problems:
                # Widen to the whole category rather than stall the pairing
                result = await db.execute(query)
                problems = result.scalars().all()
        except SQLAlchemyError as e:
            raise OracleUnavailableError(f"Problem supplier unavailable: {e}") from e

        if not problems:
            raise OracleUnavailableError(f"No published problems for category={category!r}")

        return self.rng.choice(problems)

    async def get_by_id(self, db: AsyncSession, problem_id: int) -> Problem:
        try:
            result = await db.execute(select(Problem).where(Problem.id == problem_id))
        except SQLAlchemyError as e:
            raise OracleUnavailableError(f"Problem supplier unavailable: {e}") from e
        problem = result.scalar_one_or_none()
        if problem is None:
            raise OracleUnavailableError(f"Problem {problem_id} vanished")
        return problem


problem_supplier = ProblemSupplier()
