from datetime import timedelta
from unittest.mock import patch

import pytest

from app.aggregator import Aggregator, collect_community, derive_status, next_status
from app.models import Rating, UrlStats
from app.schemas import InvalidStatusTransition, ProcessingStatus

from conftest import NOW, insert_cache, insert_content_rule, insert_rating, insert_stats, url_key

URL = "https://example.com/article"


def stats_for(db, raw_url=URL) -> UrlStats:
    db.expire_all()
    return db.get(UrlStats, url_key(raw_url)[1])


# ---------------------------------------------------------------------------
# Status helpers
# ---------------------------------------------------------------------------

class TestStatus:
    def test_derive_status(self):
        assert derive_status(None, False) is ProcessingStatus.COMMUNITY_ONLY
        assert derive_status("unknown", True) is ProcessingStatus.COMMUNITY_ONLY
        assert derive_status("example.com", False) is ProcessingStatus.COMMUNITY_WITH_BASIC_DOMAIN
        assert derive_status("example.com", True) is ProcessingStatus.ENHANCED_WITH_DOMAIN_ANALYSIS

    def test_forward_transitions_allowed(self):
        assert next_status("community_only", ProcessingStatus.ENHANCED_WITH_DOMAIN_ANALYSIS) \
            is ProcessingStatus.ENHANCED_WITH_DOMAIN_ANALYSIS
        assert next_status(None, ProcessingStatus.COMMUNITY_WITH_BASIC_DOMAIN) \
            is ProcessingStatus.COMMUNITY_WITH_BASIC_DOMAIN

    def test_enhanced_may_fall_back_to_basic(self):
        assert next_status("enhanced_with_domain_analysis", ProcessingStatus.COMMUNITY_WITH_BASIC_DOMAIN) \
            is ProcessingStatus.COMMUNITY_WITH_BASIC_DOMAIN

    def test_cannot_fall_back_to_community_only(self):
        with pytest.raises(InvalidStatusTransition):
            next_status("community_with_basic_domain", ProcessingStatus.COMMUNITY_ONLY)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class TestAggregator:
    def test_scores_three_rating_scenario(self, db, session_factory):
        insert_stats(db, URL)
        insert_rating(db, URL, "u1", 5)
        insert_rating(db, URL, "u2", 4, is_spam=True)
        insert_rating(db, URL, "u3", 3)

        result = Aggregator(session_factory).run()

        stats = stats_for(db)
        assert result.processed_urls == 1
        assert stats.rating_count == 3
        assert stats.average_rating == 4.0
        assert stats.spam_reports_count == 1
        assert stats.community_trust_score == pytest.approx(59.0)
        # no cache entry: domain score is the .com baseline
        assert stats.domain_trust_score == 60
        assert stats.final_trust_score == pytest.approx(0.4 * 60 + 0.6 * 59.0)
        assert stats.trust_score == stats.final_trust_score
        assert stats.content_type == "general"
        assert stats.processing_status == "community_with_basic_domain"

    def test_marks_ratings_processed(self, db, session_factory):
        insert_stats(db, URL)
        insert_rating(db, URL, "u1", 5)

        Aggregator(session_factory).run()

        db.expire_all()
        assert db.query(Rating).filter(Rating.processed == False).count() == 0

    def test_second_run_is_a_no_op(self, db, session_factory):
        insert_stats(db, URL)
        insert_rating(db, URL, "u1", 5)
        Aggregator(session_factory).run()
        first = stats_for(db)
        before = (first.final_trust_score, first.last_updated)

        result = Aggregator(session_factory).run()

        after = stats_for(db)
        assert result.processed_urls == 0
        assert (after.final_trust_score, after.last_updated) == before

    def test_recomputes_over_full_history(self, db, session_factory):
        insert_stats(db, URL)
        insert_rating(db, URL, "u1", 5, processed=True)
        insert_rating(db, URL, "u2", 1)

        Aggregator(session_factory).run()

        stats = stats_for(db)
        assert stats.rating_count == 2
        assert stats.average_rating == 3.0

    def test_includes_archived_history(self, db, session_factory):
        insert_stats(
            db, URL,
            archived_rating_count=2, archived_rating_sum=10, archived_scam_count=1,
        )
        insert_rating(db, URL, "u1", 2)

        Aggregator(session_factory).run()

        stats = stats_for(db)
        assert stats.rating_count == 3
        assert stats.average_rating == 4.0
        assert stats.scam_reports_count == 1

    def test_uses_fresh_cache_and_reaches_enhanced(self, db, session_factory):
        insert_stats(db, URL)
        insert_cache(db, "example.com", domain_age_days=6 * 365, ssl_valid=True, now=NOW)
        insert_rating(db, URL, "u1", 4)

        Aggregator(session_factory).process_url(db, url_key(URL)[1], now=NOW)
        db.commit()

        stats = stats_for(db)
        assert stats.domain_trust_score == 80
        assert stats.processing_status == "enhanced_with_domain_analysis"

    def test_expired_cache_falls_back_to_basic(self, db, session_factory):
        insert_stats(db, URL, processing_status="enhanced_with_domain_analysis")
        insert_cache(db, "example.com", expires_in=timedelta(days=-1), domain_age_days=6 * 365)
        insert_rating(db, URL, "u1", 4)

        Aggregator(session_factory).process_url(db, url_key(URL)[1], now=NOW)
        db.commit()

        stats = stats_for(db)
        assert stats.domain_trust_score == 60
        assert stats.processing_status == "community_with_basic_domain"

    def test_content_rule_modifier_and_type(self, db, session_factory):
        insert_stats(db, URL)
        insert_content_rule(db, "example.com", "article", url_pattern=r"/article", trust_score_modifier=10)
        insert_rating(db, URL, "u1", 3)

        Aggregator(session_factory).run()

        stats = stats_for(db)
        assert stats.content_type == "article"
        assert stats.final_trust_score == pytest.approx(0.4 * 60 + 0.6 * 50 + 10)

    def test_missing_stats_row_is_created(self, db, session_factory):
        insert_rating(db, URL, "u1", 5)

        Aggregator(session_factory).run()

        stats = stats_for(db)
        assert stats is not None
        assert stats.rating_count == 1
        assert stats.processing_status == "community_only"

    def test_failure_isolated_to_one_url(self, db, session_factory):
        other = "https://other.example.org/page"
        insert_stats(db, URL)
        insert_stats(db, other)
        insert_rating(db, URL, "u1", 5)
        insert_rating(db, other, "u1", 2)

        failing_hash = url_key(URL)[1]
        aggregator = Aggregator(session_factory)
        original = aggregator.process_url

        def flaky(session, url_hash, now=None):
            if url_hash == failing_hash:
                raise RuntimeError("boom")
            return original(session, url_hash, now)

        with patch.object(aggregator, "process_url", side_effect=flaky):
            result = aggregator.run()

        assert result.processed_urls == 1
        assert result.failed_urls == [failing_hash]
        db.expire_all()
        failed = db.query(Rating).filter(Rating.url_hash == failing_hash).one()
        assert failed.processed is False
        assert stats_for(db, other).rating_count == 1

    def test_rating_revised_after_snapshot_stays_unprocessed(self, db, session_factory):
        insert_stats(db, URL)
        late = insert_rating(db, URL, "u1", 5, created_at=NOW - timedelta(hours=1), updated_at=NOW + timedelta(minutes=1))
        insert_rating(db, URL, "u2", 3, created_at=NOW - timedelta(hours=1))

        Aggregator(session_factory).process_url(db, url_key(URL)[1], now=NOW)
        db.commit()

        db.expire_all()
        assert db.get(Rating, late.id).processed is False
        assert db.query(Rating).filter(Rating.processed == True).count() == 1

    def test_no_ratings_is_an_error(self, db, session_factory):
        insert_stats(db, URL)
        with pytest.raises(ValueError):
            Aggregator(session_factory).process_url(db, url_key(URL)[1], now=NOW)


class TestCollectCommunity:
    def test_average_is_rounded(self, db):
        stats = insert_stats(db, URL)
        ratings = [Rating(rating=r, is_spam=False, is_misleading=False, is_scam=False) for r in (5, 4, 4)]
        community = collect_community(stats, ratings)
        assert community.rating_count == 3
        assert community.average_rating == 4.33
