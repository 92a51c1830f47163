"""
Agency CRM configuration.

Business constants used by the policy rules and the commission engine, plus
runtime settings read from the environment.

Usage:
    settings = CRMSettings.from_env()
    configure_logging(settings.log_level)
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict

# =============================================================================
# 1. BUSINESS CONSTANTS
# =============================================================================

# Follow-up task created after any non-underwriting policy interaction
FOLLOW_UP_DAYS = 3
FOLLOW_UP_TASK_TITLE = "Follow up with client after policy interaction"

# Cancellations inside this window claw back unearned commission
CHARGEBACK_WINDOW_MONTHS = 12

# Active policies ending within this many days get a renewal notice
RENEWAL_NOTICE_DAYS = 30

DELETED_MESSAGE_TEXT = "This message was deleted"

# Calendar note color -> calendar event color
NOTE_EVENT_COLORS: Dict[str, str] = {
    "Blue": "blue",
    "Green": "green",
    "Yellow": "orange",
    "Red": "red",
    "Purple": "purple",
    "Gray": "blue",
}

AGENCY_NAME = "New Holland Financial"

# =============================================================================
# 2. RUNTIME SETTINGS
# =============================================================================

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] %(message)s"


@dataclass
class CRMSettings:
    db_path: str = ":memory:"
    log_level: str = "INFO"
    bcrypt_rounds: int = 12
    default_commission_rate: float = 0.75

    @classmethod
    def from_env(cls) -> "CRMSettings":
        return cls(
            db_path=os.environ.get("CRM_DB_PATH", ":memory:"),
            log_level=os.environ.get("CRM_LOG_LEVEL", "INFO").upper(),
            bcrypt_rounds=int(os.environ.get("CRM_BCRYPT_ROUNDS", "12")),
            default_commission_rate=float(os.environ.get("CRM_DEFAULT_COMMISSION_RATE", "0.75")),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the whole process."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
