import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).resolve().parents[1] / ".env", override=False)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Service settings
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./trust.db")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "trust-score-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

GOOGLE_SAFE_BROWSING_API_KEY = os.getenv("GOOGLE_SAFE_BROWSING_API_KEY")
PHISHTANK_API_KEY = os.getenv("PHISHTANK_API_KEY")

RDAP_ENABLED = _env_bool("RDAP_ENABLED", True)
RDAP_BASE_URL = os.getenv("RDAP_BASE_URL", "https://rdap.org")

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

# Job intervals (seconds)
SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
AGGREGATION_INTERVAL_SECONDS = int(os.getenv("AGGREGATION_INTERVAL_SECONDS", "300"))        # 5 minutes
RETENTION_INTERVAL_SECONDS = int(os.getenv("RETENTION_INTERVAL_SECONDS", "86400"))          # daily
ANALYSIS_QUEUE_INTERVAL_SECONDS = int(os.getenv("ANALYSIS_QUEUE_INTERVAL_SECONDS", "60"))
DOMAIN_REFRESH_INTERVAL_SECONDS = int(os.getenv("DOMAIN_REFRESH_INTERVAL_SECONDS", "900"))  # 15 minutes
CONTENT_RULES_INTERVAL_SECONDS = int(os.getenv("CONTENT_RULES_INTERVAL_SECONDS", "86400"))

TRUST_SCORING_CONFIG = os.getenv("TRUST_SCORING_CONFIG")


# ---------------------------------------------------------------------------
# Scoring configuration: tunable without redeploying the calculator
# ---------------------------------------------------------------------------

# Domain-specific baselines based on reputation
DEFAULT_DOMAIN_BASELINES: Dict[str, float] = {
    # High trust
    "google.com": 85, "youtube.com": 75, "wikipedia.org": 85,
    "github.com": 80, "stackoverflow.com": 82, "microsoft.com": 78,
    "apple.com": 80, "amazon.com": 72, "netflix.com": 75,
    # Educational
    "mit.edu": 85, "stanford.edu": 85, "harvard.edu": 85,
    "coursera.org": 78, "khanacademy.org": 80,
    # News
    "cnn.com": 70, "bbc.com": 78, "reuters.com": 80,
    "nytimes.com": 75, "npr.org": 78,
    # Social media
    "facebook.com": 60, "twitter.com": 58, "x.com": 58,
    "instagram.com": 62, "linkedin.com": 68, "reddit.com": 65,
    "tiktok.com": 55,
    # E-commerce
    "ebay.com": 65, "etsy.com": 68, "paypal.com": 75,
}

DEFAULT_TLD_BASELINES: Dict[str, float] = {
    ".edu": 75, ".gov": 75,
    ".org": 65,
    ".com": 60, ".net": 60,
}


class WeightsConfig(BaseModel):
    domain_weight: float = 0.4
    community_weight: float = 0.6


class AgeBonusConfig(BaseModel):
    five_years_plus: float = 15
    two_years_plus: float = 10
    one_year_plus: float = 5
    new_domain_penalty: float = -10
    new_domain_days: int = 30


class DomainScoringConfig(BaseModel):
    baselines: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_DOMAIN_BASELINES))
    tld_baselines: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_TLD_BASELINES))
    default_baseline: float = 50
    age_bonus: AgeBonusConfig = Field(default_factory=AgeBonusConfig)
    ssl_bonus: float = 5
    ssl_penalty: float = -15
    http_error_penalty: float = -20
    # provider -> verdict -> penalty; only the worst single penalty is applied
    threat_penalties: Dict[str, Dict[str, float]] = Field(default_factory=lambda: {
        "google_safe_browsing": {
            "malicious": -50, "phishing": -45, "unwanted": -30, "suspicious": -25,
        },
        "phishtank": {
            "phishing": -40, "malicious": -40, "suspicious": -25,
        },
        "heuristic": {
            "suspicious": -25,
        },
    })


class CommunityScoringConfig(BaseModel):
    spam_penalty: float = 30
    misleading_penalty: float = 25
    scam_penalty: float = 40
    min_ratings_for_full_confidence: int = 5
    neutral_score: float = 50


class BlacklistConfig(BaseModel):
    severity_multiplier: float = 5
    max_penalty: float = 50


class CacheConfig(BaseModel):
    domain_cache_days: int = 7
    cache_purge_grace_days: int = 7
    batch_analysis_limit: int = 10
    analysis_concurrency: int = 3
    high_priority_concurrency: int = 5
    analysis_delay_seconds: float = 1.0
    queue_max_attempts: int = 5


class RetentionConfig(BaseModel):
    rating_retention_days: int = 7
    dedup_window_hours: int = 24


class ScoringConfig(BaseModel):
    weights: WeightsConfig = Field(default_factory=WeightsConfig)
    domain: DomainScoringConfig = Field(default_factory=DomainScoringConfig)
    community: CommunityScoringConfig = Field(default_factory=CommunityScoringConfig)
    blacklist: BlacklistConfig = Field(default_factory=BlacklistConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)


def load_scoring_config(path: Optional[str] = None) -> ScoringConfig:
    """
    Build the scoring configuration, overlaying values from a JSON file if one is given.

    Missing keys keep their defaults, so the file only needs the values being tuned.
    """
    path = path or TRUST_SCORING_CONFIG
    if not path:
        return ScoringConfig()

    with open(path, encoding="utf-8") as fh:
        overrides = json.load(fh)

    config = ScoringConfig.model_validate(overrides)
    weight_sum = config.weights.domain_weight + config.weights.community_weight
    if abs(weight_sum - 1.0) > 1e-6:
        raise ValueError(f"Scoring weights must sum to 1.0, got {weight_sum}")

    logger.info(f"Loaded scoring configuration from {path}")
    return config


# Shared instance: loaded once at import
scoring_config = load_scoring_config()
