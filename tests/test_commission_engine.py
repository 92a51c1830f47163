from datetime import date

import pandas as pd
import pytest

from commission_engine import CommissionEngine
from crm_errors import NotFound
from record_store import RecordStore


@pytest.fixture
def engine(store: RecordStore) -> CommissionEngine:
    return CommissionEngine(store)


def test_agent_commission_over_active_policies(engine: CommissionEngine) -> None:
    result = engine.agent_commission(3)
    assert result["total_premium"] == pytest.approx(1800.0)
    assert result["gross_commission"] == pytest.approx(1440.0)
    assert result["unpaid_debt"] == 0
    assert result["net_commission"] == pytest.approx(1440.0)
    assert list(result["by_policy_type"]) == ["Whole Life", "Term Life"]
    assert result["by_policy_type"]["Whole Life"] == pytest.approx(960.0)
    assert result["by_policy_type"]["Term Life"] == pytest.approx(480.0)


def test_inactive_policies_earn_nothing(engine: CommissionEngine, store: RecordStore) -> None:
    store.update("policies", 2, {"status": "Expired"})
    result = engine.agent_commission(3)
    assert result["gross_commission"] == pytest.approx(960.0)
    assert "Term Life" not in result["by_policy_type"]


def test_net_commission_can_go_negative(engine: CommissionEngine, store: RecordStore) -> None:
    """An agent with no premium and a $500 unpaid chargeback nets -500."""
    store.create("chargebacks", {"agent_id": 5, "debt_amount": 500.0, "status": "Unpaid"})
    store.create("chargebacks", {"agent_id": 5, "debt_amount": 300.0, "status": "Paid"})
    result = engine.agent_commission(5)
    assert result["gross_commission"] == 0
    assert result["net_commission"] == pytest.approx(-500.0)


def test_unknown_agent_raises(engine: CommissionEngine) -> None:
    with pytest.raises(NotFound):
        engine.agent_commission(42)


def test_agency_overrides(engine: CommissionEngine) -> None:
    overrides = engine.agency_overrides().set_index("agent_id")
    assert overrides.loc[3, "agency_override"] == pytest.approx(360.0)
    assert overrides.loc[4, "agency_override"] == pytest.approx(450.0)
    assert overrides.loc[5, "total_premium"] == 0

    totals = engine.agency_totals()
    assert totals["total_premium"] == pytest.approx(3600.0)
    assert totals["total_override"] == pytest.approx(810.0)


def test_leaderboard_excludes_inactive_agents(engine: CommissionEngine) -> None:
    board = engine.leaderboard()
    assert list(board["agent_id"]) == [3, 4]
    assert list(board["rank"]) == [1, 2]
    assert list(board["client_count"]) == [2, 1]


def test_leaderboard_ties_broken_by_approved_policies(engine: CommissionEngine, store: RecordStore) -> None:
    # equal premium; the expired policy only adds to agent 4's approved count
    store.create("policies", {
        "client_id": 3, "policy_number": "P-1005", "type": "Term Life",
        "monthly_premium": 20.0, "annual_premium": 240.0, "start_date": "2022-01-01",
        "status": "Expired", "underwriting_status": "Approved",
    })
    board = engine.leaderboard()
    assert list(board["agent_id"]) == [4, 3]
    assert list(board["approved_policies"]) == [2, 1]


def test_leaderboard_premium_dominates(engine: CommissionEngine, store: RecordStore) -> None:
    store.update("policies", 3, {"annual_premium": 5000.0})
    assert engine.leaderboard().iloc[0]["agent_id"] == 4


def test_recommended_agent_has_lightest_load(engine: CommissionEngine, store: RecordStore) -> None:
    assert engine.recommended_agent()["id"] == 4

    store.create("clients", {"first_name": "New", "last_name": "Client", "agent_id": 4})
    # 2 clients each: first in roster order wins
    assert engine.recommended_agent()["id"] == 3


def test_recommended_agent_none_without_active_agents(engine: CommissionEngine, store: RecordStore) -> None:
    for agent_id in (3, 4):
        store.update("agents", agent_id, {"status": "Inactive"})
    assert engine.recommended_agent() is None


def test_commission_report_range(engine: CommissionEngine, store: RecordStore) -> None:
    store.create("chargebacks", {
        "agent_id": 3, "client_id": 1, "cancellation_date": "2024-05-01",
        "debt_amount": 100.0, "status": "Unpaid",
    })
    store.create("chargebacks", {
        "agent_id": 3, "client_id": 1, "cancellation_date": "2023-05-01",
        "debt_amount": 999.0, "status": "Unpaid",
    })
    report = engine.commission_report(date(2024, 1, 1), date(2024, 6, 30))
    assert sorted(report["commission_details"]["policy_number"]) == ["P-1001", "P-1003"]
    assert report["total_gross_commission"] == pytest.approx(2310.0)
    assert report["total_chargebacks"] == pytest.approx(100.0)
    assert report["total_net_commission"] == pytest.approx(2210.0)

    mine = engine.commission_report(date(2024, 1, 1), date(2024, 6, 30), agent_id=3)
    assert mine["total_gross_commission"] == pytest.approx(960.0)


def test_export_commission_report(engine: CommissionEngine, tmp_path) -> None:
    out = tmp_path / "commissions.csv"
    engine.export_commission_report(date(2024, 1, 1), date(2024, 6, 30), str(out))
    exported = pd.read_csv(out)
    assert len(exported) == 2
    assert "commission_amount" in exported.columns


def test_empty_store_aggregates_to_zero() -> None:
    with RecordStore() as empty:
        engine = CommissionEngine(empty)
        assert engine.leaderboard().empty
        assert engine.agency_totals() == {"total_premium": 0.0, "total_override": 0.0}
        assert engine.recommended_agent() is None
