from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from app.database import Base, utcnow


class Rating(Base):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url_hash = Column(String(64), nullable=False, index=True)      # SHA-256 of the normalized URL
    user_id_hash = Column(String(64), nullable=False)              # SHA-256 of the principal subject
    rating = Column(Integer, nullable=False)                       # 1-5 stars
    is_spam = Column(Boolean, nullable=False, default=False)
    is_misleading = Column(Boolean, nullable=False, default=False)
    is_scam = Column(Boolean, nullable=False, default=False)
    comment = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_ratings_url_user", "url_hash", "user_id_hash"),
        Index("idx_ratings_processed_created", "processed", "created_at"),
    )


class UrlStats(Base):
    __tablename__ = "url_stats"

    url_hash = Column(String(64), primary_key=True)
    url = Column(Text, nullable=True)
    domain = Column(String, nullable=True, index=True)
    content_type = Column(String, nullable=True)

    # --- Scores (0-100) ---
    trust_score = Column(Float, nullable=True)            # mirrors final_trust_score for older clients
    final_trust_score = Column(Float, nullable=True)
    domain_trust_score = Column(Float, nullable=True)
    community_trust_score = Column(Float, nullable=True)

    # --- Community aggregate over the full rating history ---
    rating_count = Column(Integer, nullable=False, default=0)
    average_rating = Column(Float, nullable=True)
    spam_reports_count = Column(Integer, nullable=False, default=0)
    misleading_reports_count = Column(Integer, nullable=False, default=0)
    scam_reports_count = Column(Integer, nullable=False, default=0)

    # --- Ratings already deleted by the retention sweeper, folded in here ---
    archived_rating_count = Column(Integer, nullable=False, default=0)
    archived_rating_sum = Column(Integer, nullable=False, default=0)
    archived_spam_count = Column(Integer, nullable=False, default=0)
    archived_misleading_count = Column(Integer, nullable=False, default=0)
    archived_scam_count = Column(Integer, nullable=False, default=0)

    processing_status = Column(String, nullable=False, default="community_only", index=True)
    last_updated = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class DomainCache(Base):
    __tablename__ = "domain_cache"

    domain = Column(String, primary_key=True)
    domain_age_days = Column(Integer, nullable=True)
    age_source = Column(String, nullable=True)            # "registry" or "heuristic"
    http_status = Column(Integer, nullable=True)          # 0 = unreachable
    ssl_valid = Column(Boolean, nullable=True)
    threat_verdicts = Column(JSON, nullable=False, default=dict)   # provider -> verdict
    threat_score = Column(Float, nullable=True)           # 0-100 safety score, null = no data
    last_checked = Column(DateTime(timezone=True), nullable=False)
    cache_expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class BlacklistRule(Base):
    __tablename__ = "domain_blacklist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_pattern = Column(String, nullable=False, index=True)  # exact domain or glob like "*.bad.example"
    blacklist_type = Column(String, nullable=False)              # malware, phishing, spam, scam, ...
    severity = Column(Integer, nullable=False)                   # 1 = low, 10 = critical
    source = Column(String, nullable=False, default="manual")
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ContentTypeRule(Base):
    __tablename__ = "content_type_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain = Column(String, nullable=False, index=True)
    content_type = Column(String, nullable=False)
    url_pattern = Column(String, nullable=True)          # regex; null matches every URL on the domain
    trust_score_modifier = Column(Float, nullable=False, default=0)
    min_ratings_required = Column(Integer, nullable=False, default=3)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    auto_generated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalysisRequest(Base):
    """Durable queue entry asking for a domain to be (re)analyzed."""
    __tablename__ = "domain_analysis_queue"

    domain = Column(String, primary_key=True)
    priority = Column(String, nullable=False, default="high")
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)


class JobRun(Base):
    __tablename__ = "job_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String, nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    status = Column(String, nullable=False)               # "success" or "failed"
    summary = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    overran = Column(Boolean, nullable=False, default=False)
