from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from mariacrm.crm.models import Lead
from mariacrm.crm.scoring import (
    add_months,
    append_note,
    apply_bulk_status_effects,
    apply_status_transition,
    client_fields_from_lead,
    compute_qualification_score,
    is_qualified_for,
    risk_category_for,
)


NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


def _lead(**overrides) -> Lead:
    values = {
        "name": "Ana Pérez",
        "phone": "61234567",
        "status": "new",
        "source": "website",
        "priority": "medium",
        "country": "Panamá",
        "tags": [],
        "qualification_score": 30,
        "is_qualified": False,
        "contact_attempts": 0,
        "converted_to_client": False,
        **overrides,
    }
    return Lead(**values)


def test_score_adds_field_priority_and_source_bonuses() -> None:
    assert compute_qualification_score(
        email=None, company=None, position=None, interest_level=None, priority="low", source="other"
    ) == 15
    assert compute_qualification_score(
        email="a@b.com", company="Copa", position=None, interest_level=2, priority="urgent", source="social_media"
    ) == 80


def test_score_is_capped() -> None:
    assert compute_qualification_score(
        email="a@b.com", company="Copa", position="CEO", interest_level=5, priority="urgent", source="referral"
    ) == 100


def test_qualification_by_score_or_status() -> None:
    assert is_qualified_for(60, "new") is True
    assert is_qualified_for(59, "new") is False
    assert is_qualified_for(10, "negotiation") is True


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(NOW, 1) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert add_months(NOW, 6) == datetime(2024, 7, 31, 12, 0, tzinfo=timezone.utc)
    assert add_months(NOW, 12).year == 2025


def test_append_note_keeps_history() -> None:
    assert append_note(None, None, NOW) is None
    first = append_note(None, "Llamar mañana", NOW)
    assert first == "[2024-01-31] Llamar mañana"
    assert append_note(first, "Confirmado", NOW) == "[2024-01-31] Llamar mañana\n[2024-01-31] Confirmado"


def test_unchanged_status_is_a_no_op() -> None:
    lead = _lead(status="contacted")
    assert apply_status_transition(lead, "contacted", "nota", NOW) is False
    assert lead.notes is None


def test_interested_raises_score() -> None:
    lead = _lead(qualification_score=95)
    apply_status_transition(lead, "interested", None, NOW)
    assert lead.qualification_score == 100
    assert lead.last_contact_date == NOW


def test_negotiation_and_nurturing_schedule_follow_ups() -> None:
    lead = _lead()
    apply_status_transition(lead, "negotiation", None, NOW)
    assert lead.next_follow_up_date == datetime(2024, 2, 3, 12, 0, tzinfo=timezone.utc)
    assert lead.is_qualified is True

    apply_status_transition(lead, "nurturing", None, NOW)
    assert lead.next_follow_up_date == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

    apply_status_transition(lead, "cold", None, NOW)
    assert lead.next_follow_up_date == datetime(2024, 4, 30, 12, 0, tzinfo=timezone.utc)


def test_lost_reopens_in_six_months_unless_final() -> None:
    lead = _lead()
    apply_status_transition(lead, "lost", "Sin presupuesto", NOW)
    assert lead.next_follow_up_date == datetime(2024, 7, 31, 12, 0, tzinfo=timezone.utc)

    final = _lead()
    apply_status_transition(final, "lost", "Rechazo definitivo", NOW)
    assert final.next_follow_up_date is None


def test_won_marks_conversion() -> None:
    lead = _lead()
    apply_status_transition(lead, "won", None, NOW)
    assert lead.converted_to_client is True
    assert lead.conversion_date == NOW


def test_bulk_follow_up_uses_three_days() -> None:
    lead = _lead()
    apply_bulk_status_effects(lead, "follow_up", NOW)
    assert lead.next_follow_up_date == datetime(2024, 2, 3, 12, 0, tzinfo=timezone.utc)


def test_risk_categories() -> None:
    assert risk_category_for(80) == "prime"
    assert risk_category_for(60) == "near-prime"
    assert risk_category_for(59) == "subprime"


def test_client_fields_from_lead() -> None:
    lead = _lead(company="Copa", tags=["vip"], qualification_score=90)
    fields = client_fields_from_lead(lead, Decimal("2500"), NOW)

    assert fields["debt"] == Decimal("2500")
    assert fields["credit_limit"] == Decimal("5000")
    assert fields["available_credit"] == Decimal("5000")
    assert fields["credit_score"] == 720
    assert fields["risk_category"] == "prime"
    assert fields["employer"] == "Copa"
    assert fields["tags"] == ["vip", "convertido-desde-lead"]
    assert fields["loan_letter"].startswith("CONV-")

    low = client_fields_from_lead(_lead(qualification_score=20), None, NOW)
    assert low["debt"] == Decimal("0")
    assert low["credit_limit"] == Decimal("10000")
    assert low["credit_score"] == 600
    assert low["risk_category"] == "subprime"
