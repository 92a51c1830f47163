"""
Agency CRM domain vocabulary.

Enumerations mirror the display strings stored on records. Records
themselves are plain dicts as returned by the record store; this module
holds the pure helpers that interpret them.
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from dateutil.relativedelta import relativedelta

from crm_config import CHARGEBACK_WINDOW_MONTHS

# =============================================================================
# 1. ENUMERATIONS
# =============================================================================


class ClientStatus(str, Enum):
    LEAD = "Lead"
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class PolicyType(str, Enum):
    WHOLE_LIFE = "Whole Life"
    UNIVERSAL_LIFE = "Universal Life"
    INDEXED_UNIVERSAL_LIFE = "Indexed Universal Life (IUL)"
    FINAL_EXPENSE = "Final Expense"
    CRITICAL_ILLNESS = "Critical Illness"
    TERM_LIFE_WLB = "Term Life WLB"
    TERM_LIFE = "Term Life"
    HOME = "Home Insurance"
    AUTO = "Auto Insurance"
    COMMERCIAL = "Commercial Insurance"
    PROPERTY = "Property Insurance"
    E_AND_O = "E&O Insurance"
    REAL_ESTATE = "Real Estate Insurance"
    PROPERTY_AND_CASUALTY = "Property & Casualty"


class PolicyStatus(str, Enum):
    ACTIVE = "Active"
    EXPIRED = "Expired"
    CANCELLED = "Cancelled"


class UnderwritingStatus(str, Enum):
    PENDING = "Pending Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    MORE_INFO_REQUIRED = "More Info Required"


class InteractionType(str, Enum):
    CALL = "Call"
    EMAIL = "Email"
    MEETING = "Meeting"
    NOTE = "Note"


class UserRole(str, Enum):
    ADMIN = "Admin"
    SUB_ADMIN = "Sub-Admin"
    AGENT = "Agent"
    MANAGER = "Manager"
    UNDERWRITING = "Underwriting"


class AgentStatus(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class NotificationType(str, Enum):
    LEAD_ASSIGNED = "lead_assigned"
    TASK_DUE = "task_due"
    AGENT_APPROVED = "agent_approved"
    BROADCAST = "broadcast"
    POLICY_RENEWAL = "policy_renewal"
    CHARGEBACK_ISSUED = "chargeback_issued"
    UNDERWRITING_REVIEWED = "underwriting_reviewed"
    GENERIC = "generic"


class ChargebackStatus(str, Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"
    ADJUSTED = "Adjusted"


# =============================================================================
# 2. ROLE TITLES
# =============================================================================

ROLE_TITLES: Dict[str, str] = {
    UserRole.ADMIN.value: "System Administrator",
    UserRole.SUB_ADMIN.value: "Lead Manager",
    UserRole.MANAGER.value: "Regional Manager",
    UserRole.UNDERWRITING.value: "Underwriting Specialist",
    UserRole.AGENT.value: "Insurance Agent",
}

INACTIVE_AGENT_TITLE = "Inactive Agent"


def title_for(role: Union[str, UserRole, None]) -> str:
    """Display title for a role. Unknown roles get the agent title."""
    key = role.value if isinstance(role, UserRole) else role
    return ROLE_TITLES.get(key, ROLE_TITLES[UserRole.AGENT.value])


# =============================================================================
# 3. RECORD HELPERS
# =============================================================================


def parse_date(value: Union[str, date, datetime]) -> date:
    """Accept ISO strings (date or datetime) as stored on records."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)[:10]).date()


def full_name(client: Dict[str, Any]) -> str:
    return f"{client.get('first_name', '')} {client.get('last_name', '')}".strip()


def format_currency(amount: float) -> str:
    if amount < 0:
        return f"-${abs(amount):,.2f}"
    return f"${amount:,.2f}"


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """User record without credentials."""
    return {k: v for k, v in user.items() if k not in ("password", "password_hash")}


# =============================================================================
# 4. CHARGEBACK TERMS
# =============================================================================


@dataclass
class ChargebackTerms:
    months_paid: int
    months_to_clawback: int
    debt_amount: float


def months_paid_between(start: date, cancelled: date) -> int:
    """Calendar-month difference, ignoring the day of month, never negative."""
    months = (cancelled.year - start.year) * 12 + (cancelled.month - start.month)
    return max(0, months)


def chargeback_terms(
    start_date: Union[str, date],
    cancellation_date: Union[str, date],
    monthly_premium: float,
    commission_rate: float,
) -> Optional[ChargebackTerms]:
    """
    Clawback owed when a policy is cancelled inside its first year.

    Returns None when the cancellation is at or past the anniversary, or
    when no months remain to claw back.
    """
    start = parse_date(start_date)
    cancelled = parse_date(cancellation_date)

    # strict: a cancellation on the anniversary itself owes nothing
    if not cancelled < start + relativedelta(months=CHARGEBACK_WINDOW_MONTHS):
        return None

    months_paid = months_paid_between(start, cancelled)
    months_to_clawback = max(0, CHARGEBACK_WINDOW_MONTHS - months_paid)
    if months_to_clawback == 0:
        return None

    debt = float(monthly_premium) * float(commission_rate) * months_to_clawback
    return ChargebackTerms(months_paid, months_to_clawback, max(0.0, debt))
