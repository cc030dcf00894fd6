"""Lead scoring, the status workflow and lead-to-client mapping.

Pure functions over model instances; callers own the session.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from mariacrm.crm.models import Lead


BASE_SCORE = 10
MAX_SCORE = 100
QUALIFIED_THRESHOLD = 60
QUALIFIED_STATUSES = frozenset({"qualified", "proposal", "negotiation", "won"})

PRIORITY_BONUS = {"urgent": 20, "high": 15, "medium": 10, "low": 5}
SOURCE_BONUS = {"referral": 10, "website": 10, "social_media": 5, "advertisement": 5}

CONVERTED_TAG = "convertido-desde-lead"
DEFAULT_CREDIT_LIMIT = Decimal("10000")
MIN_CREDIT_SCORE = 600


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_qualification_score(
    *,
    email: str | None,
    company: str | None,
    position: str | None,
    interest_level: int | None,
    priority: str | None,
    source: str | None,
) -> int:
    score = BASE_SCORE
    if email:
        score += 10
    if company:
        score += 15
    if position:
        score += 10
    if interest_level:
        score += interest_level * 10
    score += PRIORITY_BONUS.get(priority or "", 0)
    score += SOURCE_BONUS.get(source or "", 0)
    return min(score, MAX_SCORE)


def is_qualified_for(score: int, status: str) -> bool:
    return score >= QUALIFIED_THRESHOLD or status in QUALIFIED_STATUSES


def append_note(existing: str | None, note: str | None, now: datetime) -> str | None:
    if not note:
        return existing
    entry = f"[{now.date().isoformat()}] {note}"
    return f"{existing}\n{entry}" if existing else entry


def apply_status_transition(lead: Lead, new_status: str, notes: str | None, now: datetime) -> bool:
    """Move ``lead`` to ``new_status`` with the workflow side effects.

    Returns False (and leaves the lead untouched) when the status is unchanged.
    """

    if lead.status == new_status:
        return False

    lead.status = new_status
    lead.notes = append_note(lead.notes, notes, now)

    if new_status == "contacted":
        lead.last_contact_date = now
        lead.contact_attempts = (lead.contact_attempts or 0) + 1
    elif new_status == "interested":
        lead.qualification_score = min(MAX_SCORE, (lead.qualification_score or 0) + 10)
        lead.last_contact_date = now
    elif new_status == "qualified":
        lead.is_qualified = True
        lead.qualification_score = max(QUALIFIED_THRESHOLD, lead.qualification_score or 0)
        if notes:
            lead.qualification_notes = notes
    elif new_status == "proposal":
        lead.is_qualified = True
        lead.last_contact_date = now
        lead.next_follow_up_date = now + timedelta(days=7)
    elif new_status == "negotiation":
        lead.is_qualified = True
        lead.last_contact_date = now
        lead.next_follow_up_date = now + timedelta(days=3)
    elif new_status == "won":
        lead.converted_to_client = True
        lead.conversion_date = now
        lead.is_qualified = True
        lead.next_follow_up_date = None
    elif new_status == "lost":
        lead.converted_to_client = False
        lead.next_follow_up_date = None
        if not notes or "definitivo" not in notes:
            lead.next_follow_up_date = add_months(now, 6)
    elif new_status == "nurturing":
        lead.next_follow_up_date = add_months(now, 1)
    elif new_status == "follow_up":
        lead.next_follow_up_date = now + timedelta(days=2)
    elif new_status == "cold":
        lead.next_follow_up_date = add_months(now, 3)

    lead.updated_at = now
    return True


def apply_bulk_status_effects(lead: Lead, new_status: str, now: datetime) -> None:
    """Lighter side effects used by bulk updates."""

    if new_status == "contacted":
        lead.last_contact_date = now
        lead.contact_attempts = (lead.contact_attempts or 0) + 1
    elif new_status == "qualified":
        lead.is_qualified = True
    elif new_status == "won":
        lead.converted_to_client = True
        lead.conversion_date = now
        lead.is_qualified = True
    elif new_status == "lost":
        lead.converted_to_client = False
    elif new_status == "follow_up":
        lead.next_follow_up_date = now + timedelta(days=3)


def risk_category_for(score: int) -> str:
    if score >= 80:
        return "prime"
    if score >= 60:
        return "near-prime"
    return "subprime"


def client_fields_from_lead(lead: Lead, conversion_value: Decimal | None, now: datetime) -> dict[str, Any]:
    score = lead.qualification_score or 0
    credit_limit = conversion_value * 2 if conversion_value else DEFAULT_CREDIT_LIMIT
    tags = list(lead.tags or [])
    if CONVERTED_TAG not in tags:
        tags.append(CONVERTED_TAG)
    return {
        "name": lead.name,
        "national_id": lead.national_id,
        "phone": lead.phone,
        "email": lead.email,
        "address": lead.address,
        "city": lead.city,
        "country": lead.country or "Panamá",
        "debt": conversion_value or Decimal("0"),
        "status": "current",
        "loan_letter": f"CONV-{int(now.timestamp() * 1000)}",
        "employer": lead.company,
        "position": lead.position,
        "credit_score": max(MIN_CREDIT_SCORE, score * 8),
        "risk_category": risk_category_for(score),
        "credit_limit": credit_limit,
        "available_credit": credit_limit,
        "recovery_probability": score,
        "notes": lead.notes,
        "tags": tags,
        "lead_id": lead.id,
    }
