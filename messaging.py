"""
Agency CRM Messaging

One conversation document per pair of users, with its messages held in a
"messages" subcollection. Unread counters live on the conversation and are
changed only through the store's atomic field operations.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List

from crm_config import DELETED_MESSAGE_TEXT
from crm_errors import Forbidden, ValidationError
from record_store import RecordStore

logger = logging.getLogger("Messaging")


def conversation_id_for(user_a_id: int, user_b_id: int) -> str:
    return "_".join(str(i) for i in sorted([user_a_id, user_b_id]))


def messages_collection(conversation_id: str) -> str:
    return f"conversations/{conversation_id}/messages"


def soft_deleted(message: Dict[str, Any]) -> Dict[str, Any]:
    """The deleted placeholder of a message; sender, receiver and timestamp are kept."""
    return {**message, "message_text": DELETED_MESSAGE_TEXT, "is_deleted": True}


class MessagingService:
    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    def _now(self) -> str:
        return self.clock().isoformat(timespec="seconds")

    # -----------------------------------------------------------------
    # CONVERSATIONS
    # -----------------------------------------------------------------
    def create_or_get_conversation(self, user_a: Dict, user_b: Dict) -> Dict:
        """Idempotent: the id is the sorted pair of user ids."""
        conversation_id = conversation_id_for(user_a["id"], user_b["id"])
        with self.store.transaction():
            existing = self.store.find_by_id("conversations", conversation_id)
            if existing:
                return existing
            participants = sorted([user_a, user_b], key=lambda u: u["id"])
            conversation = self.store.create("conversations", {
                "id": conversation_id,
                "participant_ids": [u["id"] for u in participants],
                "participant_info": {
                    str(u["id"]): {"name": u.get("name", ""), "avatar": u.get("avatar", "")}
                    for u in participants
                },
                "last_message_text": "",
                "last_message_timestamp": self._now(),
                "last_message_sender_id": 0,
                "unread_counts": {str(u["id"]): 0 for u in participants},
            })
        logger.debug(f"Conversation {conversation_id} created")
        return conversation

    def list_conversations(self, user_id: int) -> List[Dict]:
        """Conversations the user takes part in, most recent first."""
        mine = [c for c in self.store.find("conversations") if user_id in c.get("participant_ids", [])]
        return sorted(mine, key=lambda c: c.get("last_message_timestamp") or "", reverse=True)

    def unread_total(self, user_id: int) -> int:
        return sum(
            int(c.get("unread_counts", {}).get(str(user_id), 0))
            for c in self.list_conversations(user_id)
        )

    # -----------------------------------------------------------------
    # MESSAGES
    # -----------------------------------------------------------------
    def send_message(self, conversation_id: str, sender: Dict, receiver: Dict, text: str) -> Dict:
        if not text or not text.strip():
            raise ValidationError("Message text is required")
        with self.store.transaction():
            self.store.get("conversations", conversation_id)
            timestamp = self._now()
            message = self.store.create(messages_collection(conversation_id), {
                "sender_id": sender["id"],
                "receiver_id": receiver["id"],
                "message_text": text,
                "timestamp": timestamp,
                "is_deleted": False,
            })
            self.store.update("conversations", conversation_id, {
                "last_message_text": text,
                "last_message_timestamp": timestamp,
                "last_message_sender_id": sender["id"],
            })
            self.store.increment("conversations", conversation_id, f"unread_counts.{receiver['id']}", 1)
        return message

    def list_messages(self, conversation_id: str) -> List[Dict]:
        self.store.get("conversations", conversation_id)
        return self.store.find(messages_collection(conversation_id))

    def mark_conversation_as_read(self, conversation_id: str, user_id: int) -> None:
        self.store.set_path("conversations", conversation_id, f"unread_counts.{user_id}", 0)

    def edit_message(self, conversation_id: str, message_id: int, editor: Dict, text: str) -> Dict:
        collection = messages_collection(conversation_id)
        message = self.store.get(collection, message_id)
        if message.get("sender_id") != editor["id"]:
            raise Forbidden("Only the sender can edit a message.")
        if message.get("is_deleted"):
            raise ValidationError("A deleted message cannot be edited.")
        if not text or not text.strip():
            raise ValidationError("Message text is required")
        return self.store.update(collection, message_id, {"message_text": text, "edited_at": self._now()})

    def delete_message(self, conversation_id: str, message_id: int) -> Dict:
        """Soft delete: the record stays, its text is replaced and it is flagged."""
        collection = messages_collection(conversation_id)
        message = self.store.get(collection, message_id)
        return self.store.update(collection, message_id, soft_deleted(message))
