"""
Agency CRM Policy Lifecycle Rules

Reacts to policy creation and updates with the side-effect records the
agency relies on: follow-up tasks for the owning agent, underwriting
notifications, and chargebacks for first-year cancellations.

Usage:
    lifecycle = PolicyLifecycle(store)
    policy = lifecycle.create_policy({...})
    lifecycle.update_policy(policy["id"], {"status": "Cancelled"})
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from crm_config import FOLLOW_UP_DAYS, FOLLOW_UP_TASK_TITLE, RENEWAL_NOTICE_DAYS
from crm_errors import require_fields
from crm_models import (
    ChargebackStatus,
    NotificationType,
    PolicyStatus,
    chargeback_terms,
    format_currency,
    full_name,
    parse_date,
)
from record_store import RecordId, RecordStore

logger = logging.getLogger("PolicyLifecycle")

POLICY_REQUIRED_FIELDS = (
    "client_id",
    "policy_number",
    "type",
    "monthly_premium",
    "annual_premium",
    "start_date",
)


class PolicyLifecycle:
    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    # -----------------------------------------------------------------
    # OWNERSHIP LOOKUP
    # -----------------------------------------------------------------
    def _owner(self, client_id: Any) -> Tuple[Optional[Dict], Optional[Any]]:
        """(client, agent_id) for a policy's client; agent_id is None when unassigned."""
        if client_id is None:
            return None, None
        client = self.store.find_by_id("clients", client_id)
        if not client:
            return None, None
        return client, client.get("agent_id")

    # -----------------------------------------------------------------
    # SIDE EFFECTS
    # -----------------------------------------------------------------
    def _notify(self, user_id: Any, kind: NotificationType, message: str, link: str, **fields: Any) -> Dict:
        return self.store.create("notifications", {
            "user_id": user_id,
            "type": kind.value,
            "message": message,
            "timestamp": self.clock().isoformat(timespec="seconds"),
            "is_read": False,
            "link": link,
            **fields,
        })

    def _schedule_follow_up(self, client_id: Any) -> Optional[Dict]:
        client, agent_id = self._owner(client_id)
        if not client or not agent_id:
            logger.debug(f"No follow-up for client {client_id}: no assigned agent")
            return None
        due = (self.clock() + timedelta(days=FOLLOW_UP_DAYS)).date()
        return self.store.create("tasks", {
            "title": FOLLOW_UP_TASK_TITLE,
            "agent_id": agent_id,
            "client_id": client["id"],
            "completed": False,
            "due_date": due.isoformat(),
        })

    def _notify_underwriting(self, policy: Dict) -> Optional[Dict]:
        client, agent_id = self._owner(policy.get("client_id"))
        if not client or not agent_id:
            logger.debug(f"No underwriting notice for policy {policy['id']}: no assigned agent")
            return None
        return self._notify(
            agent_id,
            NotificationType.UNDERWRITING_REVIEWED,
            f"Policy #{policy.get('policy_number')} for {full_name(client)} "
            f"was updated to: {policy.get('underwriting_status')}.",
            f"client/{client['id']}",
        )

    def _issue_chargeback(self, original: Dict) -> Optional[Dict]:
        """Chargeback for a first-year cancellation, built from the pre-update policy."""
        cancelled_on = self.clock().date()
        client, agent_id = self._owner(original.get("client_id"))
        if not client or not agent_id:
            logger.debug(f"No chargeback for policy {original['id']}: no assigned agent")
            return None
        agent = self.store.find_by_id("agents", agent_id)
        if not agent:
            logger.debug(f"No chargeback for policy {original['id']}: agent {agent_id} has no profile")
            return None

        terms = chargeback_terms(
            original["start_date"],
            cancelled_on,
            original.get("monthly_premium") or 0.0,
            agent.get("commission_rate") or 0.0,
        )
        if terms is None:
            return None

        chargeback = self.store.create("chargebacks", {
            "agent_id": agent["id"],
            "client_id": client["id"],
            "client_name": full_name(client),
            "policy_id": original["id"],
            "policy_type": original.get("type"),
            "policy_start_date": original["start_date"],
            "cancellation_date": cancelled_on.isoformat(),
            "months_paid": terms.months_paid,
            "monthly_premium": original.get("monthly_premium"),
            "debt_amount": terms.debt_amount,
            "status": ChargebackStatus.UNPAID.value,
        })
        self._notify(
            agent["id"],
            NotificationType.CHARGEBACK_ISSUED,
            f"A chargeback of {format_currency(terms.debt_amount)} was issued "
            f"for {full_name(client)}'s policy.",
            "chargebacks",
        )
        logger.info(
            f"Chargeback {chargeback['id']} issued to agent {agent['id']} on policy {original['id']}: "
            f"{terms.months_paid} months paid, {terms.months_to_clawback} clawed back, "
            f"{format_currency(terms.debt_amount)}"
        )
        return chargeback

    # -----------------------------------------------------------------
    # OPERATIONS
    # -----------------------------------------------------------------
    def create_policy(self, data: Dict[str, Any]) -> Dict:
        require_fields(data, POLICY_REQUIRED_FIELDS)
        record = {"status": PolicyStatus.ACTIVE.value, **data}
        with self.store.transaction():
            policy = self.store.create("policies", record)
            self._schedule_follow_up(policy.get("client_id"))
        logger.info(f"Policy {policy['id']} ({policy.get('policy_number')}) created")
        return policy

    def update_policy(self, policy_id: RecordId, patch: Dict[str, Any]) -> Dict:
        """
        Apply a patch and derive its side effects.

        An underwriting change notifies the agent and suppresses the generic
        follow-up task; a first cancellation may issue a chargeback. Both
        can fire from the same patch. The whole update is one transaction.
        """
        with self.store.transaction():
            original = self.store.get("policies", policy_id)

            new_underwriting = patch.get("underwriting_status")
            is_underwriting_update = bool(new_underwriting) and (
                new_underwriting != original.get("underwriting_status")
            )
            is_cancelling = (
                patch.get("status") == PolicyStatus.CANCELLED.value
                and original.get("status") != PolicyStatus.CANCELLED.value
            )
            if original.get("status") == PolicyStatus.CANCELLED.value and (
                patch.get("status") not in (None, PolicyStatus.CANCELLED.value)
            ):
                # cancellation is one-way
                patch = {k: v for k, v in patch.items() if k != "status"}
                logger.warning(f"Ignored status change on cancelled policy {policy_id}")

            policy = self.store.update("policies", policy_id, patch)

            if is_underwriting_update:
                self._notify_underwriting(policy)

            if is_cancelling:
                self._issue_chargeback(original)

            if not is_underwriting_update:
                self._schedule_follow_up(policy.get("client_id"))

        return policy

    def check_renewals(self) -> List[Dict]:
        """Notify agents once about Active policies expiring within the notice window."""
        today = self.clock().date()
        horizon = today + timedelta(days=RENEWAL_NOTICE_DAYS)
        notifications = self.store.find("notifications")
        created = []

        for policy in self.store.find("policies"):
            if policy.get("status") != PolicyStatus.ACTIVE.value or not policy.get("end_date"):
                continue
            try:
                end_date = parse_date(policy["end_date"])
            except ValueError:
                logger.warning(f"Policy {policy['id']} has an invalid end date: {policy['end_date']!r}")
                continue
            if not today <= end_date <= horizon:
                continue

            client, agent_id = self._owner(policy.get("client_id"))
            if not client or not agent_id:
                continue

            already_sent = any(
                n.get("user_id") == agent_id
                and n.get("type") == NotificationType.POLICY_RENEWAL.value
                and n.get("policy_id") == policy["id"]
                for n in notifications
            )
            if already_sent:
                continue

            notice = self._notify(
                agent_id,
                NotificationType.POLICY_RENEWAL,
                f"Policy #{policy.get('policy_number')} for {full_name(client)} "
                f"is expiring on {policy['end_date']}.",
                f"client/{client['id']}",
                policy_id=policy["id"],
            )
            notifications.append(notice)
            created.append(notice)

        if created:
            logger.info(f"Created {len(created)} renewal notifications")
        return created
