from datetime import date

import pytest

from crm_models import (
    UserRole,
    chargeback_terms,
    format_currency,
    months_paid_between,
    public_user,
    title_for,
)


def test_chargeback_terms_scenario() -> None:
    terms = chargeback_terms("2024-01-15", "2024-06-20", 100, 0.8)
    assert terms.months_paid == 5
    assert terms.months_to_clawback == 7
    assert terms.debt_amount == pytest.approx(560.0)


def test_chargeback_terms_anniversary_is_exempt() -> None:
    assert chargeback_terms("2024-01-15", "2025-01-15", 100, 0.8) is None
    assert chargeback_terms("2024-01-15", "2025-01-14", 100, 0.8) is None  # 12 months paid


def test_chargeback_terms_leap_day_start() -> None:
    # anniversary of Feb 29 falls on Feb 28
    assert chargeback_terms("2024-02-29", "2025-02-28", 100, 0.5) is None
    terms = chargeback_terms("2024-02-29", "2025-01-31", 100, 0.5)
    assert terms.months_paid == 11
    assert terms.debt_amount == pytest.approx(50.0)


def test_cancellation_in_start_month_claws_back_full_year() -> None:
    terms = chargeback_terms(date(2024, 3, 10), date(2024, 3, 25), 200, 0.75)
    assert terms.months_paid == 0
    assert terms.months_to_clawback == 12
    assert terms.debt_amount == pytest.approx(1800.0)


def test_months_paid_never_negative() -> None:
    assert months_paid_between(date(2024, 5, 1), date(2024, 3, 1)) == 0


def test_title_for_roles() -> None:
    assert title_for(UserRole.SUB_ADMIN) == "Lead Manager"
    assert title_for("Manager") == "Regional Manager"
    assert title_for("Underwriting") == "Underwriting Specialist"
    assert title_for("Agent") == "Insurance Agent"
    assert title_for("Something Else") == "Insurance Agent"


def test_format_currency() -> None:
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(-500) == "-$500.00"


def test_public_user_strips_credentials() -> None:
    user = {"id": 1, "email": "a@b.c", "password_hash": "x", "password": "y"}
    assert public_user(user) == {"id": 1, "email": "a@b.c"}
