import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mathduel.app.core.exceptions import OracleUnavailableError
from mathduel.app.core.settings import settings
from mathduel.app.engine.scoring import clamp_rating
from mathduel.app.models.rating_model import UserRating, RatingHistory

logger = logging.getLogger(__name__)


async def get_or_create_rating(db: AsyncSession, user_id: str, default_rating: Optional[float] = None) -> UserRating:
    result = await db.execute(select(UserRating).where(UserRating.user_id == user_id))
    rating_obj = result.scalar_one_or_none()
    if not rating_obj:
        initial = settings.default_rating if default_rating is None else default_rating
        rating_obj = UserRating(user_id=user_id, rating=initial, games_played=0)
        db.add(rating_obj)
        # We don't commit here, we let the caller commit transactionally
    return rating_obj


async def get_rating(db: AsyncSession, user_id: str) -> float:
    try:
        result = await db.execute(select(UserRating.rating).where(UserRating.user_id == user_id))
    except SQLAlchemyError as e:
        raise OracleUnavailableError(f"Rating store unavailable: {e}") from e
    rating = result.scalar_one_or_none()
    return settings.default_rating if rating is None else rating


async def get_ratings(db: AsyncSession, user_ids) -> dict:
    user_ids = list(user_ids)
    if not user_ids:
        return {}
    try:
        result = await db.execute(
            select(UserRating.user_id, UserRating.rating).where(UserRating.user_id.in_(user_ids))
        )
    except SQLAlchemyError as e:
        raise OracleUnavailableError(f"Rating store unavailable: {e}") from e
    found = {user_id: rating for user_id, rating in result.all()}
    return {user_id: found.get(user_id, settings.default_rating) for user_id in user_ids}


async def apply_rating_delta(db: AsyncSession, user_id: str, delta: int, game_id: Optional[int] = None) -> float:
    """
    Applies a rating change, clamped at 0, and returns the new rating.
    With a game_id the write is idempotent: a game moves a user's rating once.
    Caller must await db.commit()
    """
    try:
        if game_id is not None:
            existing = await db.execute(
                select(RatingHistory).where(
                    RatingHistory.game_id == game_id,
                    RatingHistory.user_id == user_id
                )
            )
            if existing.first():
                logger.info("Skipping rating update for game %s / %s: already processed", game_id, user_id)
                return await get_rating(db, user_id)

        rating_obj = await get_or_create_rating(db, user_id)
        rating_obj.rating = clamp_rating(rating_obj.rating or 0.0, delta)
        rating_obj.games_played = (rating_obj.games_played or 0) + 1

        db.add(RatingHistory(user_id=user_id, game_id=game_id, delta=delta, rating=rating_obj.rating))
        await db.flush()
    except SQLAlchemyError as e:
        raise OracleUnavailableError(f"Rating store unavailable: {e}") from e

    return rating_obj.rating
