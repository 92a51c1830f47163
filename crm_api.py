"""
Agency CRM Request Layer

Dispatches HTTP-like calls to the record store and the business services,
and turns every CRMError into a uniform error response.

Usage:
    api = CRMApi(store, CRMSettings.from_env())
    response = api.handle_request("PUT", "/api/policies/7", {"status": "Cancelled"}, current_user)
    response.status, response.body
"""

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import parse_qs, urlparse

import bcrypt
import pandas as pd

from calendar_service import CalendarService
from commission_engine import CommissionEngine
from crm_config import AGENCY_NAME, CRMSettings
from crm_errors import (
    CRMError,
    Conflict,
    Forbidden,
    NotFound,
    Unauthorized,
    ValidationError,
    require_fields,
)
from crm_models import (
    INACTIVE_AGENT_TITLE,
    AgentStatus,
    ChargebackStatus,
    ClientStatus,
    NotificationType,
    UserRole,
    full_name,
    parse_date,
    public_user,
    title_for,
)
from messaging import MessagingService, messages_collection
from policy_lifecycle import PolicyLifecycle
from record_store import COLLECTIONS, RecordStore

logger = logging.getLogger("CRMApi")

# Collections reachable through the generic resource routes
RESOURCE_COLLECTIONS = frozenset(c for c in COLLECTIONS if c not in ("users", "conversations"))

PRIVILEGED_ROLES = (UserRole.ADMIN.value, UserRole.MANAGER.value)

PENDING_AGENT_TITLE = "Agent Applicant"

# Generic PUT may only touch these fields; the rest is fixed at creation
UPDATABLE_FIELDS = {
    "chargebacks": ("status",),
    "notifications": ("is_read",),
}


@dataclass
class ApiResponse:
    status: int
    body: Any = field(default=None)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash password using bcrypt with a per-password salt"""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


def unassign_clients(store: RecordStore, agent_id: Any) -> int:
    """Detach every client owned by an agent; returns how many were detached."""
    count = 0
    for client in store.find("clients", agent_id=agent_id):
        store.update("clients", client["id"], {"agent_id": None})
        count += 1
    return count


def _frame_records(value: Any) -> Any:
    if isinstance(value, pd.DataFrame):
        return value.to_dict(orient="records")
    if isinstance(value, dict):
        return {k: _frame_records(v) for k, v in value.items()}
    return value


# =============================================================================
# 1. THE API
# =============================================================================


class CRMApi:
    def __init__(
        self,
        store: RecordStore,
        settings: Optional[CRMSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.settings = settings or CRMSettings()
        self.clock = clock
        self.policies = PolicyLifecycle(store, clock)
        self.commissions = CommissionEngine(store)
        self.messaging = MessagingService(store, clock)
        self.calendar = CalendarService(store)
        self._routes = [
            ("POST", r"^/api/agents/(\d+)/approve$", self._approve_agent_route),
            ("PUT", r"^/api/agents/(\d+)/status$", self._agent_status_route),
            ("DELETE", r"^/api/agents/(\d+)$", self._delete_agent_route),
            ("GET", r"^/api/agents/recommended$", self._recommended_agent_route),
            ("POST", r"^/api/leads/from-profile$", self._lead_from_profile_route),
            ("POST", r"^/api/clients/(\d+)/onboarding-data$", self._onboarding_route),
            ("PUT", r"^/api/users/me$", self._update_me_route),
            ("POST", r"^/api/messages/broadcast$", self._broadcast_route),
            ("PUT", r"^/api/messages/mark-as-read$", self._mark_read_route),
            ("POST", r"^/api/messages$", self._send_message_route),
            ("PUT", r"^/api/messages/(\d+_\d+)/(\d+)$", self._edit_message_route),
            ("DELETE", r"^/api/messages/(\d+_\d+)/(\d+)$", self._delete_message_route),
            ("PUT", r"^/api/notifications/mark-all-read$", self._mark_notifications_route),
            ("POST", r"^/api/day-off/toggle$", self._toggle_day_off_route),
            ("POST", r"^/api/day-off/batch-add$", self._batch_add_route),
            ("POST", r"^/api/day-off/batch-delete$", self._batch_delete_route),
            ("GET", r"^/api/commissions/(\d+)$", self._commission_route),
            ("GET", r"^/api/commission-report$", self._commission_report_route),
            ("GET", r"^/api/leaderboard$", self._leaderboard_route),
            ("GET", r"^/api/data$", self._data_route),
        ]
        self._routes = [(m, re.compile(p), h) for m, p, h in self._routes]

    def _now(self) -> str:
        return self.clock().isoformat(timespec="seconds")

    def _today(self) -> str:
        return self.clock().date().isoformat()

    def _notify(self, user_id: Any, kind: NotificationType, message: str, link: str) -> Dict:
        return self.store.create("notifications", {
            "user_id": user_id,
            "type": kind.value,
            "message": message,
            "timestamp": self._now(),
            "is_read": False,
            "link": link,
        })

    # -----------------------------------------------------------------
    # DISPATCH
    # -----------------------------------------------------------------
    def handle_request(
        self,
        method: str,
        path: str,
        body: Optional[Dict] = None,
        current_user: Union[Dict, int, None] = None,
    ) -> ApiResponse:
        method = method.upper()
        logger.debug(f"[API Request] {method} {path}")
        try:
            result = self._dispatch(method, path, body or {}, current_user)
            return ApiResponse(200, _frame_records(result))
        except CRMError as e:
            logger.warning(f"[API Error] {method} {path}: {e.status} {e.message}")
            return ApiResponse(e.status, {"error": e.message})
        except Exception:
            logger.exception(f"[API Error] {method} {path}")
            return ApiResponse(500, {"error": "Internal server error"})

    def _dispatch(self, method: str, path: str, body: Dict, current_user: Any) -> Any:
        parsed = urlparse(path)
        route = parsed.path
        query = parse_qs(parsed.query)

        if route.startswith("/api/auth/"):
            if route == "/api/auth/register" and method == "POST":
                return self.register(body)
            if route == "/api/auth/login" and method == "POST":
                return self.login(body)
            raise NotFound("Auth endpoint not found")

        user = self._resolve_user(current_user)

        for route_method, pattern, handler in self._routes:
            if route_method != method:
                continue
            match = pattern.match(route)
            if match:
                return handler(user, body, query, *match.groups())

        match = re.match(r"^/api/([a-z_]+)(?:/(\d+))?$", route)
        if match and match.group(1) in RESOURCE_COLLECTIONS:
            resource, id_str = match.groups()
            record_id = int(id_str) if id_str else None
            if method == "POST" and record_id is None:
                return self._create_resource(user, resource, body)
            if method == "PUT" and record_id is not None:
                return self._update_resource(user, resource, record_id, body)
            if method == "DELETE" and record_id is not None:
                return self._delete_resource(resource, record_id)

        raise NotFound("API endpoint not found")

    def _resolve_user(self, current_user: Any) -> Dict:
        if current_user is None:
            raise Unauthorized("No user provided")
        user_id = current_user["id"] if isinstance(current_user, dict) else current_user
        user = self.store.find_by_id("users", user_id)
        if not user:
            raise Unauthorized("User not found")
        return user

    @staticmethod
    def _require_role(user: Dict, roles, message: str) -> None:
        if user.get("role") not in roles:
            raise Forbidden(message)

    # -----------------------------------------------------------------
    # AUTH
    # -----------------------------------------------------------------
    def find_user_by_email(self, email: str) -> Optional[Dict]:
        wanted = email.strip().lower()
        for user in self.store.find("users"):
            if str(user.get("email", "")).lower() == wanted:
                return user
        return None

    def register(self, body: Dict) -> Dict:
        require_fields(body, ("name", "email", "password"))
        role = body.get("role") or UserRole.AGENT.value
        if role not in {r.value for r in UserRole}:
            raise ValidationError(f"Unknown role: {role}")

        with self.store.transaction():
            if self.find_user_by_email(body["email"]):
                raise Conflict("An account with this email already exists.")
            user = self.store.create("users", {
                "name": body["name"],
                "email": body["email"].strip(),
                "password_hash": hash_password(body["password"], self.settings.bcrypt_rounds),
                "role": role,
                "avatar": body.get("avatar", ""),
                "title": PENDING_AGENT_TITLE if role == UserRole.AGENT.value else title_for(role),
            })
            agent = None
            if role == UserRole.AGENT.value:
                # agent profiles share the user's id
                agent = self.store.create("agents", {
                    "id": user["id"],
                    "name": user["name"],
                    "slug": re.sub(r"[^a-z0-9]+", "-", user["name"].lower()).strip("-"),
                    "email": user["email"],
                    "commission_rate": self.settings.default_commission_rate,
                    "status": AgentStatus.PENDING.value,
                    "join_date": self._today(),
                })
        logger.info(f"Registered user {user['id']} ({role})")
        return {"user": public_user(user), "agent": agent}

    def login(self, body: Dict) -> Dict:
        require_fields(body, ("email", "password"))
        user = self.find_user_by_email(body["email"])
        if not user or not verify_password(body["password"], user.get("password_hash")):
            raise Unauthorized("Invalid credentials")
        agent = self.store.find_by_id("agents", user["id"])
        if agent and agent.get("status") == AgentStatus.PENDING.value:
            raise Forbidden("Your application is pending approval.")
        return {"user": public_user(user)}

    def update_my_profile(self, user: Dict, body: Dict) -> Dict:
        patch = {k: body[k] for k in ("name", "email", "avatar") if k in body}
        if "email" in patch:
            other = self.find_user_by_email(patch["email"])
            if other and other["id"] != user["id"]:
                raise Conflict("An account with this email already exists.")
        if body.get("password"):
            patch["password_hash"] = hash_password(body["password"], self.settings.bcrypt_rounds)
        with self.store.transaction():
            updated = self.store.update("users", user["id"], patch)
            mirrored = {k: patch[k] for k in ("name", "email") if k in patch}
            if mirrored and self.store.find_by_id("agents", user["id"]):
                self.store.update("agents", user["id"], mirrored)
        return public_user(updated)

    # -----------------------------------------------------------------
    # AGENTS
    # -----------------------------------------------------------------
    def approve_agent(self, agent_id: int, role: str = UserRole.AGENT.value) -> Dict:
        if role not in {r.value for r in UserRole}:
            raise ValidationError(f"Unknown role: {role}")
        agent = self.store.find_by_id("agents", agent_id)
        user = self.store.find_by_id("users", agent_id)
        if not agent or not user:
            raise NotFound("Agent or user not found.")

        with self.store.transaction():
            agent = self.store.update("agents", agent_id, {
                "status": AgentStatus.ACTIVE.value,
                "join_date": self._today(),
            })
            user = self.store.update("users", agent_id, {"role": role, "title": title_for(role)})
            self._notify(
                agent_id,
                NotificationType.AGENT_APPROVED,
                f"Congratulations! Your application has been approved. Welcome to {AGENCY_NAME}.",
                "dashboard",
            )
        logger.info(f"Agent {agent_id} approved as {role}")
        return {"agent": agent, "user": public_user(user)}

    def update_agent_status(self, agent_id: int, status: str) -> Dict:
        if status not in {s.value for s in AgentStatus}:
            raise ValidationError(f"Unknown agent status: {status}")
        if not self.store.find_by_id("agents", agent_id):
            raise NotFound("Agent not found.")

        with self.store.transaction():
            agent = self.store.update("agents", agent_id, {"status": status})
            user = self.store.find_by_id("users", agent_id)
            if user and status == AgentStatus.INACTIVE.value:
                self.store.update("users", agent_id, {"title": INACTIVE_AGENT_TITLE})
            elif user and status == AgentStatus.ACTIVE.value:
                role = UserRole.SUB_ADMIN if user.get("role") == UserRole.SUB_ADMIN.value else UserRole.AGENT
                self.store.update("users", agent_id, {"title": title_for(role)})
        return agent

    def delete_agent(self, agent_id: int) -> Dict:
        """Unassign the agent's clients, then remove the login and the profile."""
        with self.store.transaction():
            if not self.store.find_by_id("agents", agent_id):
                raise NotFound("Agent not found.")
            unassigned = unassign_clients(self.store, agent_id)
            if self.store.find_by_id("users", agent_id):
                self.store.delete("users", agent_id)
            self.store.delete("agents", agent_id)
        logger.info(f"Agent {agent_id} deleted, {unassigned} clients unassigned")
        return {"success": True, "unassigned_clients": unassigned}

    def _create_agent(self, user: Dict, body: Dict) -> Dict:
        self._require_role(user, (UserRole.ADMIN.value,), "Only Admins can add agents.")
        require_fields(body, ("name", "email"))
        temporary_password = secrets.token_urlsafe(9)
        with self.store.transaction():
            registered = self.register({
                "name": body["name"],
                "email": body["email"],
                "password": temporary_password,
                "role": UserRole.AGENT.value,
            })
            profile = {k: v for k, v in body.items() if k not in ("id", "role", "password")}
            agent = self.store.update("agents", registered["user"]["id"], profile)
        return {"agent": agent, "temporary_password": temporary_password}

    def _update_agent(self, user: Dict, agent_id: int, body: Dict) -> Dict:
        self._require_role(user, PRIVILEGED_ROLES, "Only Admins and Managers can edit agent profiles.")
        role = body.get("role")
        agent_data = {k: v for k, v in body.items() if k != "role"}
        with self.store.transaction():
            agent = self.store.update("agents", agent_id, agent_data)
            if role and user.get("role") == UserRole.ADMIN.value:
                target = self.store.find_by_id("users", agent_id)
                if target and target.get("role") != role:
                    self.store.update("users", agent_id, {"role": role, "title": title_for(role)})
        return agent

    # -----------------------------------------------------------------
    # LEADS & ONBOARDING
    # -----------------------------------------------------------------
    def create_lead_from_profile(self, body: Dict) -> Dict:
        require_fields(body, ("agent_id", "first_name", "last_name"))
        agent = self.store.find_by_id("agents", body["agent_id"])
        if not agent:
            raise NotFound("Agent not found.")
        with self.store.transaction():
            client = self.store.create("clients", {
                "email": "",
                "phone": "",
                "address": "",
                **body,
                "status": ClientStatus.LEAD.value,
                "join_date": self._today(),
                "agent_id": agent["id"],
            })
            self._notify(
                agent["id"],
                NotificationType.LEAD_ASSIGNED,
                f"New lead {full_name(client)} was submitted through your profile.",
                f"client/{client['id']}",
            )
        return client

    def save_onboarding_data(self, client_id: int, body: Dict) -> Dict:
        client_patch = body.get("client") or {}
        with self.store.transaction():
            client = self.store.update("clients", client_id, client_patch)
            interactions = [
                self.store.create("interactions", {
                    "date": self._today(),
                    **item,
                    "client_id": client_id,
                })
                for item in body.get("interactions") or []
            ]
        return {"client": client, "interactions": interactions}

    # -----------------------------------------------------------------
    # MESSAGES & NOTIFICATIONS
    # -----------------------------------------------------------------
    def broadcast_message(self, sender: Dict, text: str) -> Dict:
        self._require_role(sender, PRIVILEGED_ROLES, "Only Admins and Managers can broadcast.")
        if not text or not text.strip():
            raise ValidationError("Message text is required")
        recipients = [u for u in self.store.find("users") if u["id"] != sender["id"]]
        with self.store.transaction():
            for receiver in recipients:
                conversation = self.messaging.create_or_get_conversation(sender, receiver)
                self.messaging.send_message(conversation["id"], sender, receiver, text)
                self._notify(
                    receiver["id"],
                    NotificationType.BROADCAST,
                    f"Broadcast from {sender.get('name', '')}: {text}",
                    "messages",
                )
        logger.info(f"User {sender['id']} broadcast to {len(recipients)} users")
        return {"success": True, "recipients": len(recipients)}

    def mark_all_notifications_read(self, user_id: Any) -> Dict:
        updated = 0
        with self.store.transaction():
            for note in self.store.find("notifications", user_id=user_id, is_read=False):
                self.store.update("notifications", note["id"], {"is_read": True})
                updated += 1
        return {"success": True, "updated": updated}

    # -----------------------------------------------------------------
    # DATA SNAPSHOT
    # -----------------------------------------------------------------
    def get_all_data(self, user: Dict) -> Dict[str, List[Dict]]:
        """Every collection, scoped down to the user's own book for the Agent role."""
        self.policies.check_renewals()

        data = {name: self.store.find(name) for name in COLLECTIONS if name != "conversations"}
        data["users"] = [public_user(u) for u in data["users"]]

        if user.get("role") == UserRole.AGENT.value:
            me = user["id"]
            client_ids = {c["id"] for c in data["clients"] if c.get("agent_id") == me}
            data["clients"] = [c for c in data["clients"] if c["id"] in client_ids]
            data["policies"] = [p for p in data["policies"] if p.get("client_id") in client_ids]
            data["interactions"] = [i for i in data["interactions"] if i.get("client_id") in client_ids]
            data["tasks"] = [
                t for t in data["tasks"]
                if t.get("agent_id") == me or t.get("client_id") in client_ids
            ]
            data["licenses"] = [l for l in data["licenses"] if l.get("agent_id") == me]
            data["testimonials"] = [t for t in data["testimonials"] if t.get("agent_id") == me]
            data["chargebacks"] = [c for c in data["chargebacks"] if c.get("agent_id") == me]
            data["calendar_notes"] = [n for n in data["calendar_notes"] if n.get("user_id") == me]
        return data

    # -----------------------------------------------------------------
    # GENERIC RESOURCES
    # -----------------------------------------------------------------
    def _create_resource(self, user: Dict, resource: str, body: Dict) -> Any:
        if resource == "agents":
            return self._create_agent(user, body)
        if resource == "policies":
            return self.policies.create_policy(body)
        if resource == "calendar_notes":
            return self.calendar.create_note({"user_id": user["id"], **body})
        if resource == "clients":
            require_fields(body, ("first_name", "last_name"))
            record = {"status": ClientStatus.LEAD.value, "join_date": self._today(), **body}
            if user.get("role") == UserRole.AGENT.value:
                record["agent_id"] = user["id"]
            return self.store.create("clients", record)
        return self.store.create(resource, body)

    def _update_resource(self, user: Dict, resource: str, record_id: int, body: Dict) -> Any:
        if resource == "agents":
            return self._update_agent(user, record_id, body)
        if resource == "policies":
            return self.policies.update_policy(record_id, body)
        if resource == "calendar_notes":
            return self.calendar.update_note(record_id, body)
        if resource in UPDATABLE_FIELDS:
            return self._update_restricted(resource, record_id, body)
        return self.store.update(resource, record_id, body)

    def _update_restricted(self, resource: str, record_id: int, body: Dict) -> Dict:
        allowed = UPDATABLE_FIELDS[resource]
        rejected = sorted(k for k in body if k not in allowed)
        if rejected or not body:
            raise ValidationError(f"Only {', '.join(allowed)} can be updated on {resource}")
        if resource == "chargebacks" and body["status"] not in {s.value for s in ChargebackStatus}:
            raise ValidationError(f"Unknown chargeback status: {body['status']}")
        if resource == "notifications" and not isinstance(body["is_read"], bool):
            raise ValidationError("is_read must be true or false")
        return self.store.update(resource, record_id, body)

    def _delete_resource(self, resource: str, record_id: int) -> Any:
        if resource == "calendar_notes":
            return {"success": self.calendar.delete_note(record_id)}
        return {"success": self.store.delete(resource, record_id)}

    # -----------------------------------------------------------------
    # ROUTE HANDLERS
    # -----------------------------------------------------------------
    def _approve_agent_route(self, user, body, query, agent_id):
        self._require_role(user, PRIVILEGED_ROLES, "Only Admins and Managers can approve agents.")
        return self.approve_agent(int(agent_id), body.get("role") or UserRole.AGENT.value)

    def _agent_status_route(self, user, body, query, agent_id):
        self._require_role(user, PRIVILEGED_ROLES, "Only Admins and Managers can change agent status.")
        require_fields(body, ("status",))
        return self.update_agent_status(int(agent_id), body["status"])

    def _delete_agent_route(self, user, body, query, agent_id):
        self._require_role(user, PRIVILEGED_ROLES, "Only Admins and Managers can delete agents.")
        return self.delete_agent(int(agent_id))

    def _recommended_agent_route(self, user, body, query):
        return self.commissions.recommended_agent()

    def _lead_from_profile_route(self, user, body, query):
        return self.create_lead_from_profile(body)

    def _onboarding_route(self, user, body, query, client_id):
        return self.save_onboarding_data(int(client_id), body)

    def _update_me_route(self, user, body, query):
        return self.update_my_profile(user, body)

    def _broadcast_route(self, user, body, query):
        return self.broadcast_message(user, body.get("text", ""))

    def _mark_read_route(self, user, body, query):
        require_fields(body, ("conversation_id",))
        self._own_conversation(user, str(body["conversation_id"]))
        self.messaging.mark_conversation_as_read(body["conversation_id"], user["id"])
        return {"success": True}

    def _send_message_route(self, user, body, query):
        require_fields(body, ("receiver_id", "text"))
        receiver = self.store.find_by_id("users", body["receiver_id"])
        if not receiver:
            raise NotFound("Recipient not found.")
        conversation = self.messaging.create_or_get_conversation(user, receiver)
        return self.messaging.send_message(conversation["id"], user, receiver, body["text"])

    def _own_conversation(self, user: Dict, conversation_id: str) -> None:
        participants = conversation_id.split("_")
        if str(user["id"]) not in participants:
            raise Forbidden("Not a participant of this conversation.")

    def _edit_message_route(self, user, body, query, conversation_id, message_id):
        self._own_conversation(user, conversation_id)
        return self.messaging.edit_message(conversation_id, int(message_id), user, body.get("text", ""))

    def _delete_message_route(self, user, body, query, conversation_id, message_id):
        self._own_conversation(user, conversation_id)
        message = self.store.get(messages_collection(conversation_id), int(message_id))
        if message.get("sender_id") != user["id"]:
            raise Forbidden("Only the sender can delete a message.")
        return self.messaging.delete_message(conversation_id, int(message_id))

    def _mark_notifications_route(self, user, body, query):
        return self.mark_all_notifications_read(user["id"])

    def _toggle_day_off_route(self, user, body, query):
        require_fields(body, ("date",))
        return self.calendar.toggle_day_off(user, body["date"])

    def _batch_add_route(self, user, body, query):
        return {"success": True, "created": self.calendar.batch_add_days_off(user, body.get("dates") or [])}

    def _batch_delete_route(self, user, body, query):
        return {"success": True, "deleted": self.calendar.batch_delete_days_off(user, body.get("dates") or [])}

    def _commission_route(self, user, body, query, agent_id):
        agent_id = int(agent_id)
        if user.get("role") == UserRole.AGENT.value and user["id"] != agent_id:
            raise Forbidden("Agents can only view their own commissions.")
        return self.commissions.agent_commission(agent_id)

    def _commission_report_route(self, user, body, query):
        start = query.get("start", [""])[0]
        end = query.get("end", [""])[0]
        if not start or not end:
            raise ValidationError("start and end dates are required")
        try:
            start_d, end_d = parse_date(start), parse_date(end)
        except ValueError:
            raise ValidationError("Dates must be YYYY-MM-DD")
        agent_id = query.get("agent_id", [None])[0]
        try:
            agent_id = int(agent_id) if agent_id else None
        except ValueError:
            raise ValidationError("agent_id must be a number")
        if user.get("role") == UserRole.AGENT.value:
            agent_id = user["id"]
        return self.commissions.commission_report(start_d, end_d, agent_id)

    def _leaderboard_route(self, user, body, query):
        return self.commissions.leaderboard()

    def _data_route(self, user, body, query):
        return self.get_all_data(user)
