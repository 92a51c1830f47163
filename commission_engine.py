"""
Agency CRM Commission Engine

Read-only commission accounting over the record store: per-agent earned
commission net of unpaid chargebacks, agency overrides, the agent
leaderboard, workload-based assignment and the dated commission report.

Usage:
    engine = CommissionEngine(store)
    engine.agent_commission(agent_id=3)
    engine.leaderboard()
    engine.export_commission_report(date(2026, 1, 1), date(2026, 2, 13), "commissions.csv")
    engine.print_summary()
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from crm_config import CRMSettings, configure_logging
from crm_errors import NotFound
from crm_models import (
    AgentStatus,
    ChargebackStatus,
    PolicyStatus,
    UnderwritingStatus,
    format_currency,
    full_name,
    parse_date,
)
from record_store import RecordId, RecordStore

logger = logging.getLogger("CommissionEngine")

POLICY_COLUMNS = [
    "id", "client_id", "agent_id", "policy_number", "type",
    "annual_premium", "status", "underwriting_status", "start_date",
]
CHARGEBACK_COLUMNS = [
    "id", "agent_id", "client_id", "client_name", "policy_id",
    "cancellation_date", "debt_amount", "status",
]

# =============================================================================
# 1. THE ENGINE
# =============================================================================


class CommissionEngine:
    def __init__(self, store: RecordStore):
        self.store = store

    # -----------------------------------------------------------------
    # FRAMES
    # -----------------------------------------------------------------
    def _agents(self) -> List[Dict]:
        return self.store.find("agents")

    def _client_owners(self) -> Dict[Any, Any]:
        return {
            c["id"]: c.get("agent_id")
            for c in self.store.find("clients")
            if c.get("agent_id") is not None
        }

    def _policy_frame(self) -> pd.DataFrame:
        """Policies whose client has an assigned agent, tagged with that agent."""
        owners = self._client_owners()
        rows = []
        for p in self.store.find("policies"):
            agent_id = owners.get(p.get("client_id"))
            if agent_id is None:
                continue
            rows.append({**p, "agent_id": agent_id})
        df = pd.DataFrame(rows, columns=POLICY_COLUMNS)
        df["annual_premium"] = pd.to_numeric(df["annual_premium"], errors="coerce").fillna(0.0)
        return df

    def _chargeback_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(self.store.find("chargebacks"), columns=CHARGEBACK_COLUMNS)
        df["debt_amount"] = pd.to_numeric(df["debt_amount"], errors="coerce").fillna(0.0)
        return df

    def _active_premium_by_agent(self, policies: pd.DataFrame) -> pd.Series:
        active = policies[policies["status"] == PolicyStatus.ACTIVE.value]
        return active.groupby("agent_id")["annual_premium"].sum()

    # -----------------------------------------------------------------
    # PER-AGENT COMMISSION
    # -----------------------------------------------------------------
    def agent_commission(self, agent_id: RecordId) -> Dict[str, Any]:
        """
        Earned commission for one agent.

        Gross is annual premium x commission rate over the agent's Active
        policies; net subtracts every Unpaid chargeback and may go negative.
        """
        agent = self.store.find_by_id("agents", agent_id)
        if agent is None:
            raise NotFound(f"Agent {agent_id} not found")
        rate = float(agent.get("commission_rate") or 0.0)

        policies = self._policy_frame()
        active = policies[
            (policies["agent_id"] == agent_id)
            & (policies["status"] == PolicyStatus.ACTIVE.value)
        ].copy()
        active["commission"] = active["annual_premium"] * rate

        chargebacks = self._chargeback_frame()
        unpaid = chargebacks[
            (chargebacks["agent_id"] == agent_id)
            & (chargebacks["status"] == ChargebackStatus.UNPAID.value)
        ]

        total_premium = float(active["annual_premium"].sum())
        gross = float(active["commission"].sum())
        debt = float(unpaid["debt_amount"].sum())
        by_type = active.groupby("type", sort=False)["commission"].sum()

        return {
            "agent_id": agent["id"],
            "agent_name": agent.get("name", ""),
            "commission_rate": rate,
            "total_premium": total_premium,
            "gross_commission": gross,
            "unpaid_debt": debt,
            "net_commission": gross - debt,
            "by_policy_type": {str(k): float(v) for k, v in by_type.items()},
        }

    # -----------------------------------------------------------------
    # AGENCY OVERRIDES
    # -----------------------------------------------------------------
    def agency_overrides(self) -> pd.DataFrame:
        """Premium, agent commission and agency override for every agent."""
        premium = self._active_premium_by_agent(self._policy_frame())
        rows = []
        for agent in self._agents():
            rate = float(agent.get("commission_rate") or 0.0)
            total = float(premium.get(agent["id"], 0.0))
            rows.append({
                "agent_id": agent["id"],
                "agent_name": agent.get("name", ""),
                "commission_rate": rate,
                "total_premium": total,
                "agent_commission": total * rate,
                "agency_override": total * (1 - rate),
            })
        return pd.DataFrame(rows, columns=[
            "agent_id", "agent_name", "commission_rate",
            "total_premium", "agent_commission", "agency_override",
        ])

    def agency_totals(self) -> Dict[str, float]:
        overrides = self.agency_overrides()
        return {
            "total_premium": float(overrides["total_premium"].sum()),
            "total_override": float(overrides["agency_override"].sum()),
        }

    # -----------------------------------------------------------------
    # LEADERBOARD & ASSIGNMENT
    # -----------------------------------------------------------------
    def leaderboard(self) -> pd.DataFrame:
        """
        Active agents ranked by active premium, then by approved policy count.
        Remaining ties keep roster order.
        """
        policies = self._policy_frame()
        premium = self._active_premium_by_agent(policies)
        approved = (
            policies[policies["underwriting_status"] == UnderwritingStatus.APPROVED.value]
            .groupby("agent_id")["id"].count()
        )
        clients = pd.Series(list(self._client_owners().values()), dtype=object).value_counts()

        rows = []
        for agent in self._agents():
            if agent.get("status") != AgentStatus.ACTIVE.value:
                continue
            rows.append({
                "agent_id": agent["id"],
                "agent_name": agent.get("name", ""),
                "client_count": int(clients.get(agent["id"], 0)),
                "total_premium": float(premium.get(agent["id"], 0.0)),
                "approved_policies": int(approved.get(agent["id"], 0)),
            })
        # sorted() is stable, so roster order breaks the remaining ties
        rows = sorted(rows, key=lambda r: (-r["total_premium"], -r["approved_policies"]))
        board = pd.DataFrame(rows, columns=[
            "agent_id", "agent_name", "client_count", "total_premium", "approved_policies",
        ])
        board.insert(0, "rank", list(range(1, len(board) + 1)))
        return board

    def recommended_agent(self) -> Optional[Dict]:
        """Active agent with the lightest client load, first on ties."""
        active = [a for a in self._agents() if a.get("status") == AgentStatus.ACTIVE.value]
        if not active:
            return None
        owners = list(self._client_owners().values())
        workload = pd.Series([owners.count(a["id"]) for a in active])
        return active[int(workload.idxmin())]

    # -----------------------------------------------------------------
    # COMMISSION REPORT
    # -----------------------------------------------------------------
    def commission_report(
        self,
        start: date,
        end: date,
        agent_id: Optional[RecordId] = None,
    ) -> Dict[str, Any]:
        """
        Commission earned on policies started in [start, end] and chargebacks
        cancelled in the same range. Without an agent_id, covers all Active agents.
        """
        agents = {a["id"]: a for a in self._agents()}
        if agent_id is None:
            relevant = {k for k, a in agents.items() if a.get("status") == AgentStatus.ACTIVE.value}
        else:
            if agent_id not in agents:
                raise NotFound(f"Agent {agent_id} not found")
            relevant = {agent_id}

        client_names = {c["id"]: full_name(c) for c in self.store.find("clients")}

        details = []
        for p in self._policy_frame().to_dict(orient="records"):
            if p["agent_id"] not in relevant or not p.get("start_date"):
                continue
            if not start <= parse_date(p["start_date"]) <= end:
                continue
            agent = agents[p["agent_id"]]
            rate = float(agent.get("commission_rate") or 0.0)
            details.append({
                "agent_id": p["agent_id"],
                "agent_name": agent.get("name", ""),
                "client_name": client_names.get(p["client_id"], "Unknown"),
                "policy_id": p["id"],
                "policy_number": p["policy_number"],
                "policy_type": p["type"],
                "start_date": p["start_date"],
                "annual_premium": p["annual_premium"],
                "commission_rate": rate,
                "commission_amount": p["annual_premium"] * rate,
            })
        detail_df = pd.DataFrame(details, columns=[
            "agent_id", "agent_name", "client_name", "policy_id", "policy_number",
            "policy_type", "start_date", "annual_premium", "commission_rate", "commission_amount",
        ])

        chargebacks = self._chargeback_frame()
        in_range = [
            bool(c_agent in relevant and c_date and start <= parse_date(c_date) <= end)
            for c_agent, c_date in zip(chargebacks["agent_id"], chargebacks["cancellation_date"])
        ]
        chargeback_df = chargebacks[pd.Series(in_range, index=chargebacks.index, dtype=bool)]

        gross = round(float(detail_df["commission_amount"].sum()), 2)
        clawed = round(float(chargeback_df["debt_amount"].sum()), 2)
        return {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "total_gross_commission": gross,
            "total_chargebacks": clawed,
            "total_net_commission": round(gross - clawed, 2),
            "commission_details": detail_df,
            "chargebacks": chargeback_df.reset_index(drop=True),
        }

    # -----------------------------------------------------------------
    # EXPORTS
    # -----------------------------------------------------------------
    def export_commission_report(
        self, start: date, end: date, output_path: str, agent_id: Optional[RecordId] = None
    ) -> str:
        """Export per-policy commission detail to CSV."""
        report = self.commission_report(start, end, agent_id)
        report["commission_details"].to_csv(output_path, index=False)
        logger.info(f"Commission report exported to {output_path}")
        return output_path

    def export_chargebacks(self, start: date, end: date, output_path: str) -> str:
        report = self.commission_report(start, end)
        report["chargebacks"].to_csv(output_path, index=False)
        logger.info(f"Chargeback report exported to {output_path}")
        return output_path

    def export_leaderboard(self, output_path: str) -> str:
        self.leaderboard().to_csv(output_path, index=False)
        logger.info(f"Leaderboard exported to {output_path}")
        return output_path

    def print_summary(self) -> None:
        """Print agency totals and the leaderboard to console."""
        totals = self.agency_totals()
        board = self.leaderboard()
        unpaid = self._chargeback_frame()
        unpaid = unpaid[unpaid["status"] == ChargebackStatus.UNPAID.value]

        print("\n" + "=" * 80)
        print(f"  AGENCY COMMISSION SUMMARY - {datetime.now().strftime('%B %d, %Y')}")
        print("=" * 80)
        print(f"  Active Agents:     {len(board)}")
        print(f"  Active Premium:    {format_currency(totals['total_premium'])}")
        print(f"  Agency Override:   {format_currency(totals['total_override'])}")
        print(f"  Unpaid Chargebacks: {len(unpaid)} ({format_currency(float(unpaid['debt_amount'].sum()))})")
        print("=" * 80)
        print()
        if board.empty:
            print("No active agents.")
        else:
            print(board.to_string(index=False))


# =============================================================================
# 2. COMPLETE REPORT WORKFLOW
# =============================================================================


def run_commission_report(
    db_path: str,
    start: str,
    end: str,
    output_prefix: str = "commissions",
) -> CommissionEngine:
    """
    End-to-end commission report over a stored CRM database.

    Args:
        db_path:        Path to the CRM SQLite file
        start, end:     Report range as YYYY-MM-DD strings (inclusive)
        output_prefix:  Prefix for output files

    Returns:
        The engine, bound to a store that is closed on return
    """
    with RecordStore(db_path) as store:
        engine = CommissionEngine(store)
        start_d, end_d = parse_date(start), parse_date(end)
        engine.export_commission_report(start_d, end_d, f"{output_prefix}_detail_{start}_{end}.csv")
        engine.export_chargebacks(start_d, end_d, f"{output_prefix}_chargebacks_{start}_{end}.csv")
        engine.export_leaderboard(f"{output_prefix}_leaderboard_{end}.csv")
        engine.print_summary()
    return engine


if __name__ == "__main__":
    import sys

    settings = CRMSettings.from_env()
    configure_logging(settings.log_level)
    if len(sys.argv) != 3:
        print("Usage: python commission_engine.py START END  (dates as YYYY-MM-DD, CRM_DB_PATH set)")
        sys.exit(2)
    run_commission_report(settings.db_path, sys.argv[1], sys.argv[2])
