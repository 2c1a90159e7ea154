from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from threading import Lock
from typing import Any, Protocol


logger = logging.getLogger("educrm.crm.scoring")

BASE_SCORE = 50
GENERIC_EMAIL_DOMAINS = frozenset({"gmail.com", "yahoo.com", "hotmail.com", "outlook.com"})
HIGH_INTENT_SOURCES = ("referral", "website", "linkedin")

# first match wins
SOURCE_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("website", ("web", "site")),
    ("referral", ("referral",)),
    ("social_media", ("social", "facebook", "linkedin")),
    ("email", ("email", "newsletter")),
    ("event", ("event", "webinar")),
    ("search_engine", ("search", "google")),
)


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def score_lead(lead: Any) -> int:
    """Rule-based lead score in ``[0, 100]``.

    Works on anything exposing the lead attributes, ORM rows and DTOs alike.
    """

    score = BASE_SCORE

    email = getattr(lead, "email", None) or ""
    domain = email.rsplit("@", 1)[-1].lower() if "@" in email else ""
    if domain and domain not in GENERIC_EMAIL_DOMAINS:
        score += 15

    if getattr(lead, "phone", None):
        score += 10

    program_interest = getattr(lead, "program_interest", None)
    if program_interest and len(program_interest) > 10:
        score += 10

    if getattr(lead, "target_country", None):
        score += 10

    budget = _as_decimal(getattr(lead, "budget", None))
    if budget is not None and budget > 0:
        score += 15

    source = (getattr(lead, "source", None) or "").lower()
    if any(token in source for token in HIGH_INTENT_SOURCES):
        score += 10

    return max(0, min(100, score))


def categorize_source(raw: str | None) -> str:
    lowered = (raw or "").lower()
    for category, tokens in SOURCE_CATEGORIES:
        if any(token in lowered for token in tokens):
            return category
    return "other"


class LeadScorer(Protocol):
    name: str

    def score(self, lead: Any) -> int:
        ...


class RuleBasedLeadScorer:
    name = "rules"

    def score(self, lead: Any) -> int:
        return score_lead(lead)


class FallbackLeadScorer:
    """Try ``primary`` (typically a remote model) and fall back to the rules on any failure."""

    def __init__(self, primary: LeadScorer, fallback: LeadScorer | None = None) -> None:
        self.primary = primary
        self.fallback = fallback or RuleBasedLeadScorer()
        self.name = f"{primary.name}+{self.fallback.name}"

    def score(self, lead: Any) -> int:
        try:
            value = int(self.primary.score(lead))
        except Exception as exc:
            logger.warning(
                "lead.scoring_fallback",
                extra={"lead_id": str(getattr(lead, "id", "")), "error": str(exc)},
            )
            return self.fallback.score(lead)
        return max(0, min(100, value))


_LEAD_SCORER: LeadScorer = RuleBasedLeadScorer()
_SCORER_LOCK = Lock()


def get_lead_scorer() -> LeadScorer:
    return _LEAD_SCORER


def set_lead_scorer(scorer: LeadScorer) -> None:
    global _LEAD_SCORER
    with _SCORER_LOCK:
        _LEAD_SCORER = scorer
