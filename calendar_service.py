"""
Agency CRM Calendar

Days off and calendar notes, each mirrored by a calendar event so the
calendar view reads a single collection.
"""

import logging
from typing import Dict, Iterable, Optional

from crm_config import NOTE_EVENT_COLORS
from crm_errors import require_fields
from record_store import RecordId, RecordStore

logger = logging.getLogger("Calendar")


def note_event_title(note: Dict) -> str:
    if note.get("reason") and note.get("name"):
        return f"{note['reason']} for {note['name']}"
    return note.get("reason") or note.get("text") or "Calendar Note"


class CalendarService:
    def __init__(self, store: RecordStore):
        self.store = store

    def _event_for(self, link_field: str, link_id: RecordId) -> Optional[Dict]:
        for event in self.store.find("calendar_events"):
            if event.get(link_field) == link_id:
                return event
        return None

    # -----------------------------------------------------------------
    # DAYS OFF
    # -----------------------------------------------------------------
    def _add_day_off(self, user: Dict, day: str) -> Dict:
        day_off = self.store.create("days_off", {"user_id": user["id"], "date": day})
        self.store.create("calendar_events", {
            "date": day,
            "time": "All Day",
            "title": f"Day Off: {user.get('name', '')}",
            "tag": "personal",
            "color": "red",
            "location": "Out of Office",
            "agent_id": user["id"],
            "source": "internal",
            "day_off_id": day_off["id"],
        })
        return day_off

    def _remove_day_off(self, day_off: Dict) -> None:
        event = self._event_for("day_off_id", day_off["id"])
        if event:
            self.store.delete("calendar_events", event["id"])
        self.store.delete("days_off", day_off["id"])

    def toggle_day_off(self, user: Dict, day: str) -> Dict:
        """Remove the user's day off on that date if present, otherwise add it."""
        with self.store.transaction():
            existing = self.store.find("days_off", user_id=user["id"], date=day)
            if existing:
                self._remove_day_off(existing[0])
                return {"success": True, "removed": existing[0]}
            return self._add_day_off(user, day)

    def batch_add_days_off(self, user: Dict, days: Iterable[str]) -> int:
        with self.store.transaction():
            taken = {d["date"] for d in self.store.find("days_off", user_id=user["id"])}
            created = 0
            for day in days:
                if day in taken:
                    continue
                self._add_day_off(user, day)
                taken.add(day)
                created += 1
        logger.info(f"User {user['id']}: {created} days off added")
        return created

    def batch_delete_days_off(self, user: Dict, days: Iterable[str]) -> int:
        with self.store.transaction():
            by_date = {d["date"]: d for d in self.store.find("days_off", user_id=user["id"])}
            deleted = 0
            for day in days:
                day_off = by_date.pop(day, None)
                if day_off:
                    self._remove_day_off(day_off)
                    deleted += 1
        logger.info(f"User {user['id']}: {deleted} days off removed")
        return deleted

    # -----------------------------------------------------------------
    # NOTES
    # -----------------------------------------------------------------
    def create_note(self, data: Dict) -> Dict:
        require_fields(data, ("user_id", "date"))
        with self.store.transaction():
            note = self.store.create("calendar_notes", data)
            self.store.create("calendar_events", {
                "date": note["date"],
                "time": "12:00 PM",
                "title": note_event_title(note),
                "tag": "note",
                "color": NOTE_EVENT_COLORS.get(note.get("color"), "blue"),
                "location": "Note",
                "agent_id": note["user_id"],
                "source": "internal",
                "note_id": note["id"],
            })
        return note

    def update_note(self, note_id: RecordId, patch: Dict) -> Dict:
        with self.store.transaction():
            note = self.store.update("calendar_notes", note_id, patch)
            event = self._event_for("note_id", note["id"])
            if event:
                self.store.update("calendar_events", event["id"], {
                    "date": note["date"],
                    "title": note_event_title(note),
                    "color": NOTE_EVENT_COLORS.get(note.get("color"), "blue"),
                })
        return note

    def delete_note(self, note_id: RecordId) -> bool:
        with self.store.transaction():
            event = self._event_for("note_id", note_id)
            if event:
                self.store.delete("calendar_events", event["id"])
            return self.store.delete("calendar_notes", note_id)
