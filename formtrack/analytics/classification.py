"""
classification.py — deterministic document classifiers used by the
business-intelligence aggregation.

  - detect_industry():     keyword hits over line-item descriptions
  - revenue_range():       fixed half-open buckets over the grand total
  - email_domain() / is_free_email_domain()

Industry rule: an industry scores one hit per DISTINCT keyword found anywhere
in the lowercased, concatenated descriptions. The highest score wins; ties go
to the industry listed first in INDUSTRY_KEYWORDS. Zero hits everywhere means
"unclassified".
"""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional, Union

UNCLASSIFIED = "unclassified"
UNKNOWN_RANGE = "unknown"

# Iteration order is the tie-break order: most specific industries first.
INDUSTRY_KEYWORDS: dict[str, list[str]] = {
    "design": ["logo", "design", "branding", "illustration", "mockup", "graphic", "typography"],
    "technology": ["website", "software", "hosting", "app development", "api integration",
                   "server", "database", "saas", "it support", "cloud"],
    "consulting": ["consulting", "consultancy", "advisory", "strategy", "workshop", "audit"],
    "construction": ["construction", "renovation", "plumbing", "electrical", "roofing",
                     "carpentry", "concrete", "drywall"],
    "photography": ["photo", "photography", "shoot", "retouch", "prints"],
    "marketing": ["marketing", "seo", "advertising", "campaign", "social media", "copywriting"],
    "medical": ["medical", "therapy", "treatment", "dental", "clinic", "patient", "physio"],
    "legal": ["legal", "contract review", "attorney", "litigation", "notary"],
    "education": ["tutoring", "lesson", "course", "training", "coaching"],
    "hospitality": ["hotel", "night stay", "catering", "accommodation", "breakfast"],
    "repair": ["repair", "maintenance", "service call", "diagnostic", "spare parts"],
    "rental": ["rental", "lease", "monthly rent", "security deposit"],
    "retail": ["wholesale", "merchandise", "shipping", "retail"],
    "freelance": ["hourly", "freelance", "translation", "writing"],
}

# (exclusive upper bound, label); half-open ranges [lower, upper)
REVENUE_BUCKETS: list[tuple[Decimal, str]] = [
    (Decimal("1000"), "<1k"),
    (Decimal("5000"), "1k-5k"),
    (Decimal("25000"), "5k-25k"),
    (Decimal("100000"), "25k-100k"),
]
TOP_REVENUE_BUCKET = "100k+"
REVENUE_ORDER = [label for _, label in REVENUE_BUCKETS] + [TOP_REVENUE_BUCKET, UNKNOWN_RANGE]

FREE_EMAIL_DOMAINS = frozenset({
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
    "icloud.com", "mail.com", "protonmail.com", "yandex.com",
})


def industry_scores(
    descriptions: Iterable[str],
    table: Optional[dict[str, list[str]]] = None,
) -> dict[str, int]:
    """Distinct keyword hits per industry, in table order."""
    table = INDUSTRY_KEYWORDS if table is None else table
    text = " ".join(d for d in descriptions if d).lower()
    return {
        industry: sum(1 for kw in keywords if kw in text)
        for industry, keywords in table.items()
    }


def detect_industry(
    descriptions: Iterable[str],
    table: Optional[dict[str, list[str]]] = None,
) -> str:
    best, best_score = UNCLASSIFIED, 0
    for industry, score in industry_scores(descriptions, table).items():
        # strict '>' keeps the first table entry on ties
        if score > best_score:
            best, best_score = industry, score
    return best


def revenue_range(grand_total: Union[Decimal, float, int, str, None]) -> str:
    if grand_total is None:
        return UNKNOWN_RANGE
    try:
        amount = Decimal(str(grand_total))
    except ArithmeticError:
        return UNKNOWN_RANGE
    if not amount.is_finite():
        return UNKNOWN_RANGE
    for upper, label in REVENUE_BUCKETS:
        if amount < upper:
            return label
    return TOP_REVENUE_BUCKET


def email_domain(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].strip().lower()
    return domain or None


def is_free_email_domain(domain: str) -> bool:
    return domain.lower() in FREE_EMAIL_DOMAINS
