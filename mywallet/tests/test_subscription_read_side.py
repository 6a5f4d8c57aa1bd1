"""Summary, upcoming charges and alerts."""
from datetime import date, timedelta

import pytest
from sqlalchemy import update

from mywallet.core.database import get_db_session, subscriptions
from mywallet.core.errors import ValidationError
from mywallet.features.subscriptions import service

TODAY = date(2024, 6, 10)


def _create(owner, next_billing_date=None, **overrides):
    data = {
        "name": "Spotify",
        "amount": "21.90",
        "frequency": "MONTHLY",
        "category": "MUSIC",
        "start_date": "2024-05-10",
        "auto_generate": False,
    }
    data.update(overrides)
    sub = service.create_subscription(owner, data, today=TODAY)
    if next_billing_date is not None:
        with get_db_session() as session:
            session.execute(
                update(subscriptions).where(subscriptions.c.id == sub.id).values(next_billing_date=next_billing_date)
            )
    return sub


def test_upcoming_charge_within_alert_window_is_high(owner):
    sub = _create(owner, next_billing_date=TODAY + timedelta(days=1), alert_days_before=3)

    alerts = service.get_alerts(owner, today=TODAY)

    assert len(alerts) == 1
    assert alerts[0]["type"] == "UPCOMING_CHARGE"
    assert alerts[0]["severity"] == "HIGH"
    assert alerts[0]["subscription_id"] == sub.id
    assert alerts[0]["days_until"] == 1


def test_upcoming_charge_severity_and_window(owner):
    _create(owner, name="Due today", next_billing_date=TODAY, alert_days_before=3)
    _create(owner, name="In three days", next_billing_date=TODAY + timedelta(days=3), alert_days_before=3)
    _create(owner, name="Outside window", next_billing_date=TODAY + timedelta(days=4), alert_days_before=3)
    _create(owner, name="Overdue", next_billing_date=TODAY - timedelta(days=1), alert_days_before=3)

    alerts = service.get_alerts(owner, today=TODAY)

    assert [(a["name"], a["severity"]) for a in alerts] == [
        ("Due today", "HIGH"),
        ("In three days", "MEDIUM"),
    ]


def test_alert_window_is_per_subscription(owner):
    _create(owner, name="Short", next_billing_date=TODAY + timedelta(days=5), alert_days_before=2)
    _create(owner, name="Long", next_billing_date=TODAY + timedelta(days=5), alert_days_before=7)

    alerts = service.get_alerts(owner, today=TODAY)

    assert [a["name"] for a in alerts] == ["Long"]


def test_no_card_alert_is_low_and_sorted_last(owner, make_card):
    card_id = make_card(owner)
    _create(owner, name="No card", auto_generate=True, next_billing_date=TODAY + timedelta(days=20))
    _create(owner, name="Soon", card_id=card_id, auto_generate=True, next_billing_date=TODAY + timedelta(days=2))

    alerts = service.get_alerts(owner, today=TODAY)

    assert [(a["type"], a["severity"]) for a in alerts] == [
        ("UPCOMING_CHARGE", "MEDIUM"),
        ("NO_CARD_ASSIGNED", "LOW"),
    ]
    assert alerts[1]["name"] == "No card"


def test_cancelled_subscriptions_raise_no_alerts(owner):
    sub = _create(owner, next_billing_date=TODAY, auto_generate=True)
    service.cancel_subscription(owner, sub.id, today=TODAY)

    assert service.get_alerts(owner, today=TODAY) == []


def test_upcoming_sorted_ascending_within_horizon(owner, make_card):
    card_id = make_card(owner)
    _create(owner, name="Far", next_billing_date=TODAY + timedelta(days=20))
    _create(owner, name="Near", card_id=card_id, next_billing_date=TODAY + timedelta(days=2))
    _create(owner, name="Beyond", next_billing_date=TODAY + timedelta(days=45))
    _create(owner, name="Past", next_billing_date=TODAY - timedelta(days=2))

    upcoming = service.get_upcoming(owner, 30, today=TODAY)

    assert [(u["name"], u["days_until"]) for u in upcoming] == [("Near", 2), ("Far", 20)]
    assert upcoming[0]["card"]["name"] == "Roxinho"
    assert upcoming[1]["card"] is None


def test_upcoming_rejects_negative_horizon(owner):
    with pytest.raises(ValidationError):
        service.get_upcoming(owner, -1, today=TODAY)


def test_summary_rolls_up_by_category(owner):
    _create(owner, name="Netflix", amount="29.90", category="STREAMING")
    _create(owner, name="IDE", amount="120.00", frequency="YEARLY", category="SOFTWARE")
    _create(owner, name="Prime", amount="14.90", category="STREAMING")
    gone = _create(owner, name="Old", amount="99.00", category="GAMING")
    service.cancel_subscription(owner, gone.id, today=TODAY)

    summary = service.get_summary(owner)

    assert summary["total_active"] == 3
    assert summary["monthly_total"] == pytest.approx(54.80)
    assert summary["yearly_total"] == pytest.approx(657.60)
    assert summary["by_category"] == [
        {"category": "STREAMING", "monthly": pytest.approx(44.80), "count": 2},
        {"category": "SOFTWARE", "monthly": pytest.approx(10.00), "count": 1},
    ]


def test_summary_empty(owner):
    assert service.get_summary(owner) == {
        "total_active": 0,
        "monthly_total": 0.0,
        "yearly_total": 0.0,
        "by_category": [],
    }
