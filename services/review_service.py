"""
Review synthesis for auto-released holds

When the sweep releases a hold nobody complained about, a default
maximum-satisfaction review is posted on the customer's behalf. This runs
after the release has committed and is safe to retry or skip.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import Hold, Review

logger = logging.getLogger(__name__)

AUTO_REVIEW_COMMENT = (
    "Auto-generated review: payment was released automatically after the "
    "review period with no issues reported."
)


class ReviewService:
    """Creates and reads contractor reviews"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def synthesize_auto_review(self, hold: Hold) -> Optional[Review]:
        """Post the default review for a released hold; None if one already exists"""
        try:
            async with async_managed_session(self.session_factory) as session:
                existing = await session.execute(select(Review).where(Review.hold_id == hold.id))
                if existing.scalar_one_or_none() is not None:
                    logger.info(f"⏭️ REVIEW: hold {hold.id} already has a review")
                    return None

                review = Review(
                    hold_id=hold.id,
                    job_id=hold.job_id,
                    contractor_id=hold.contractor_id,
                    customer_id=hold.customer_id,
                    rating=Config.AUTO_REVIEW_RATING,
                    comment=AUTO_REVIEW_COMMENT,
                    is_auto_generated=True,
                )
                session.add(review)
                await session.flush()

            logger.info(f"⭐ REVIEW: auto-generated {review.rating}-star review for hold {hold.id}")
            return review
        except IntegrityError:
            # Another worker posted it first
            logger.info(f"⏭️ REVIEW: concurrent review for hold {hold.id}, skipping")
            return None

    async def get_reviews_for_contractor(self, contractor_id: str) -> List[Review]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Review)
                .where(Review.contractor_id == contractor_id)
                .order_by(Review.created_at.desc())
            )
            return list(result.scalars().all())
