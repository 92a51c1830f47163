from datetime import datetime

import pytest

from crm_api import CRMApi, hash_password
from crm_config import CRMSettings
from policy_lifecycle import PolicyLifecycle
from record_store import RecordStore

NOW = datetime(2024, 6, 20, 10, 0, 0)
SETTINGS = CRMSettings(bcrypt_rounds=4, default_commission_rate=0.75)
SEED_PASSWORD_HASH = hash_password("secret123", SETTINGS.bcrypt_rounds)


def fixed_clock() -> datetime:
    return NOW


def _user(user_id, name, email, role, title):
    return {
        "id": user_id,
        "name": name,
        "email": email,
        "password_hash": SEED_PASSWORD_HASH,
        "role": role,
        "avatar": "",
        "title": title,
    }


SEED = {
    "users": [
        _user(1, "Adama Lee", "admin@agency.test", "Admin", "System Administrator"),
        _user(3, "Kara Thrace", "kara@agency.test", "Agent", "Insurance Agent"),
        _user(4, "Alex Ray", "alex@agency.test", "Agent", "Insurance Agent"),
        _user(5, "Saul Tigh", "saul@agency.test", "Agent", "Agent Applicant"),
        _user(9, "Felix Gaeta", "manager@agency.test", "Manager", "Regional Manager"),
    ],
    "agents": [
        {"id": 3, "name": "Kara Thrace", "email": "kara@agency.test", "commission_rate": 0.8, "status": "Active"},
        {"id": 4, "name": "Alex Ray", "email": "alex@agency.test", "commission_rate": 0.75, "status": "Active"},
        {"id": 5, "name": "Saul Tigh", "email": "saul@agency.test", "commission_rate": 0.75, "status": "Pending"},
    ],
    "clients": [
        {"id": 1, "first_name": "Jane", "last_name": "Doe", "status": "Active", "agent_id": 3},
        {"id": 2, "first_name": "John", "last_name": "Smith", "status": "Active", "agent_id": 3},
        {"id": 3, "first_name": "Lee", "last_name": "Adama", "status": "Active", "agent_id": 4},
        {"id": 4, "first_name": "Ann", "last_name": "Orphan", "status": "Lead", "agent_id": None},
    ],
    "policies": [
        {
            "id": 1, "client_id": 1, "policy_number": "P-1001", "type": "Whole Life",
            "monthly_premium": 100.0, "annual_premium": 1200.0,
            "start_date": "2024-01-15", "end_date": "2025-01-15",
            "status": "Active", "underwriting_status": "Approved",
        },
        {
            "id": 2, "client_id": 2, "policy_number": "P-1002", "type": "Term Life",
            "monthly_premium": 50.0, "annual_premium": 600.0,
            "start_date": "2023-03-01", "end_date": "2024-07-01",
            "status": "Active", "underwriting_status": "Pending Review",
        },
        {
            "id": 3, "client_id": 3, "policy_number": "P-1003", "type": "Auto Insurance",
            "monthly_premium": 150.0, "annual_premium": 1800.0,
            "start_date": "2024-02-01", "end_date": "2025-02-01",
            "status": "Active", "underwriting_status": "Approved",
        },
        {
            "id": 4, "client_id": 4, "policy_number": "P-1004", "type": "Home Insurance",
            "monthly_premium": 80.0, "annual_premium": 960.0,
            "start_date": "2024-01-01", "end_date": "2025-01-01",
            "status": "Active", "underwriting_status": "Pending Review",
        },
    ],
}


@pytest.fixture
def store():
    s = RecordStore(":memory:").open()
    s.seed(SEED)
    yield s
    s.close()


@pytest.fixture
def lifecycle(store: RecordStore) -> PolicyLifecycle:
    return PolicyLifecycle(store, clock=fixed_clock)


@pytest.fixture
def api(store: RecordStore) -> CRMApi:
    return CRMApi(store, SETTINGS, clock=fixed_clock)


@pytest.fixture
def admin(store: RecordStore) -> dict:
    return store.get("users", 1)


@pytest.fixture
def manager(store: RecordStore) -> dict:
    return store.get("users", 9)


@pytest.fixture
def kara(store: RecordStore) -> dict:
    return store.get("users", 3)


@pytest.fixture
def clock():
    return fixed_clock
