import fnmatch
import logging
import re
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import BlacklistRule, ContentTypeRule, UrlStats

logger = logging.getLogger(__name__)

MIN_RATINGS_FOR_GENERATED_RULE = 3
GENERATED_RULES_PER_RUN = 50

# ---------------------------------------------------------------------------
# Default rules for major platforms:
# (domain, content_type, url_pattern, modifier, min_ratings, description)
# ---------------------------------------------------------------------------

DEFAULT_CONTENT_RULES = [
    ("youtube.com", "video", r"/watch\?v=", 5, 2, "YouTube videos - established platform"),
    ("wikipedia.org", "article", r"/wiki/", 10, 1, "Wikipedia articles - educational content"),
    ("reddit.com", "discussion", r"/r/.*/(comments|post)", 0, 3, "Reddit posts - require more ratings"),
    ("twitter.com", "social", r"/(.*)/status/", -2, 5, "Twitter posts - require more ratings"),
    ("x.com", "social", r"/(.*)/status/", -2, 5, "X posts - require more ratings"),
    ("linkedin.com", "professional", r"/in/|/company/", 3, 2, "LinkedIn profiles"),
    ("github.com", "code", r"/.*/.*", 5, 2, "GitHub repositories - open source"),
    ("stackoverflow.com", "qa", r"/questions/", 8, 1, "Stack Overflow - technical Q&A"),
    ("medium.com", "article", r"/@.*/", 2, 3, "Medium articles"),
    ("news.ycombinator.com", "discussion", r"/item\?id=", 5, 2, "Hacker News - tech community"),
]

# Platform tables used when generating rules for domains without one:
# content_type -> (domains, modifier, min_ratings, description)
PLATFORM_CLASSES = {
    "video": (
        {"youtube.com", "youtu.be", "vimeo.com", "dailymotion.com", "twitch.tv"},
        5, 2, "Video platform - established content hosting",
    ),
    "social": (
        {"facebook.com", "twitter.com", "x.com", "instagram.com", "tiktok.com", "snapchat.com", "pinterest.com"},
        -2, 5, "Social media - requires more community validation",
    ),
    "code": (
        {"github.com", "gitlab.com", "bitbucket.org", "sourceforge.net", "codepen.io"},
        5, 2, "Code repository - open source development platform",
    ),
    "ecommerce": (
        {"amazon.com", "ebay.com", "etsy.com", "shopify.com", "walmart.com", "target.com"},
        2, 3, "E-commerce platform - product listings",
    ),
    "documentation": (
        {"stackoverflow.com", "stackexchange.com", "developer.mozilla.org", "w3schools.com", "docs.microsoft.com"},
        8, 1, "Technical documentation - reference material",
    ),
    "professional": (
        {"linkedin.com", "glassdoor.com", "indeed.com"},
        3, 2, "Professional networking platform",
    ),
}

ESTABLISHED_NEWS = {"cnn.com", "bbc.com", "reuters.com", "ap.org", "npr.org", "pbs.org"}
EDUCATION_PLATFORMS = {"coursera.org", "edx.org", "khanacademy.org", "udemy.com"}


# ---------------------------------------------------------------------------
# Lookups used by the aggregator and the stats read path
# ---------------------------------------------------------------------------

def _pattern_matches(pattern: Optional[str], url: Optional[str]) -> bool:
    if not pattern:
        return True
    if not url:
        return False
    try:
        return re.search(pattern, url) is not None
    except re.error:
        logger.warning(f"Ignoring invalid content rule pattern '{pattern}'")
        return False


def match_content_rule(db: Session, url: Optional[str], domain: Optional[str]) -> Optional[ContentTypeRule]:
    """First active rule for the domain whose URL pattern matches (rules without a pattern match everything)."""
    if not domain:
        return None
    rules = (
        db.query(ContentTypeRule)
        .filter(ContentTypeRule.domain == domain, ContentTypeRule.is_active == True)
        .order_by(ContentTypeRule.id)
        .all()
    )
    for rule in rules:
        if _pattern_matches(rule.url_pattern, url):
            return rule
    return None


def blacklist_pattern_matches(pattern: str, domain: str) -> bool:
    pattern = pattern.lower()
    if pattern == domain:
        return True
    # "*.bad.example" also covers the apex "bad.example"
    if pattern.startswith("*.") and domain == pattern[2:]:
        return True
    return fnmatch.fnmatchcase(domain, pattern)


def match_blacklist(db: Session, domain: Optional[str]) -> Optional[BlacklistRule]:
    """Highest-severity active blacklist rule matching the domain."""
    if not domain:
        return None
    rules = db.query(BlacklistRule).filter(BlacklistRule.is_active == True).all()
    matches = [r for r in rules if blacklist_pattern_matches(r.domain_pattern, domain)]
    if not matches:
        return None
    return max(matches, key=lambda r: (r.severity, -r.id))


# ---------------------------------------------------------------------------
# Rule maintenance
# ---------------------------------------------------------------------------

def seed_default_rules(db: Session) -> int:
    """Install the default platform rules if the table is empty. Returns the number inserted."""
    if db.query(ContentTypeRule).count() > 0:
        return 0
    for domain, content_type, pattern, modifier, min_ratings, description in DEFAULT_CONTENT_RULES:
        db.add(ContentTypeRule(
            domain=domain,
            content_type=content_type,
            url_pattern=pattern,
            trust_score_modifier=modifier,
            min_ratings_required=min_ratings,
            description=description,
        ))
    db.commit()
    logger.info(f"Seeded {len(DEFAULT_CONTENT_RULES)} default content type rules")
    return len(DEFAULT_CONTENT_RULES)


def classify_domain(domain: str) -> tuple[str, float, int, str]:
    """Pick (content_type, modifier, min_ratings, description) for a domain without a rule."""
    for content_type, (domains, modifier, min_ratings, description) in PLATFORM_CLASSES.items():
        if domain in domains:
            return content_type, modifier, min_ratings, description

    if domain in ESTABLISHED_NEWS:
        return "news", 8, 2, "Established news media - verified journalism source"
    if re.search(r"\.(com|org|net)$", domain) and any(word in domain for word in ("news", "times", "post")):
        return "news", 2, 4, "News-like domain - requires community validation"

    if domain.endswith(".edu") or domain in EDUCATION_PLATFORMS:
        return "education", 7, 2, "Educational content - academic or learning platform"

    return "general", 0, 3, "Auto-generated rule based on domain analysis"


def generate_content_rules(db: Session) -> dict:
    """
    Create rules for well-rated domains that have none yet.
    Only domains with at least MIN_RATINGS_FOR_GENERATED_RULE ratings qualify.
    """
    covered = {d for (d,) in db.query(ContentTypeRule.domain).filter(ContentTypeRule.is_active == True).distinct()}

    candidates = (
        db.query(UrlStats.domain, func.sum(UrlStats.rating_count).label("ratings"))
        .filter(UrlStats.domain.isnot(None))
        .group_by(UrlStats.domain)
        .having(func.sum(UrlStats.rating_count) >= MIN_RATINGS_FOR_GENERATED_RULE)
        .order_by(func.sum(UrlStats.rating_count).desc())
        .all()
    )

    created = []
    for domain, _ in candidates:
        if domain in covered:
            continue
        content_type, modifier, min_ratings, description = classify_domain(domain)
        db.add(ContentTypeRule(
            domain=domain,
            content_type=content_type,
            url_pattern=None,
            trust_score_modifier=modifier,
            min_ratings_required=min_ratings,
            description=description,
            auto_generated=True,
        ))
        created.append(domain)
        if len(created) >= GENERATED_RULES_PER_RUN:
            break

    db.commit()
    logger.info(f"[content-rules] Generated {len(created)} content type rules")
    return {"created": len(created), "domains": created}
