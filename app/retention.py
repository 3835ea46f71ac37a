import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import cache
from app.config import ScoringConfig, scoring_config
from app.database import utcnow
from app.models import Rating, UrlStats

logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    deleted_ratings: int = 0
    purged_cache_entries: int = 0
    failed_urls: int = 0

    def summary(self) -> dict:
        return {
            "deleted_ratings": self.deleted_ratings,
            "purged_cache_entries": self.purged_cache_entries,
            "failed_urls": self.failed_urls,
        }


class RetentionSweeper:
    """
    Deletes processed ratings older than the retention window.

    Deleted ratings are folded into their URL's archived counters in the same
    transaction, so the aggregate keeps the full history and rating_count never drops.
    Unprocessed ratings are never touched, whatever their age.
    """

    def __init__(self, db_factory: Callable[[], Session], config: ScoringConfig = None):
        self.db_factory = db_factory
        self.config = config or scoring_config

    def run(self, now: datetime = None) -> RetentionResult:
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.retention.rating_retention_days)
        result = RetentionResult()

        db = self.db_factory()
        try:
            url_hashes = [
                h for (h,) in db.query(Rating.url_hash)
                .filter(Rating.processed == True, Rating.created_at < cutoff)
                .distinct()
                .all()
            ]
        finally:
            db.close()

        for url_hash in url_hashes:
            db = self.db_factory()
            try:
                result.deleted_ratings += self._sweep_url(db, url_hash, cutoff)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[retention] Failed to sweep {url_hash[:12]}: {e}")
                result.failed_urls += 1
            finally:
                db.close()

        db = self.db_factory()
        try:
            result.purged_cache_entries = cache.purge_expired(db, self.config.cache.cache_purge_grace_days, now)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[retention] Failed to purge expired domain cache entries: {e}")
        finally:
            db.close()

        logger.info(f"[retention] Completed: {result.summary()} (cutoff={cutoff.isoformat()})")
        return result

    def _sweep_url(self, db: Session, url_hash: str, cutoff: datetime) -> int:
        stats = (
            db.query(UrlStats)
            .filter(UrlStats.url_hash == url_hash)
            .with_for_update()
            .one_or_none()
        )
        expired = (
            db.query(Rating)
            .filter(
                Rating.url_hash == url_hash,
                Rating.processed == True,
                Rating.created_at < cutoff,
            )
            .all()
        )
        if not expired:
            return 0

        if stats is not None:
            totals = defaultdict(int)
            for rating in expired:
                totals["count"] += 1
                totals["sum"] += rating.rating
                totals["spam"] += int(rating.is_spam)
                totals["misleading"] += int(rating.is_misleading)
                totals["scam"] += int(rating.is_scam)

            stats.archived_rating_count += totals["count"]
            stats.archived_rating_sum += totals["sum"]
            stats.archived_spam_count += totals["spam"]
            stats.archived_misleading_count += totals["misleading"]
            stats.archived_scam_count += totals["scam"]
        else:
            logger.warning(f"[retention] {url_hash[:12]} has no aggregate row; deleting {len(expired)} ratings anyway")

        for rating in expired:
            db.delete(rating)
        return len(expired)
