import pytest

from calendar_service import CalendarService, note_event_title
from crm_errors import NotFound, ValidationError
from record_store import RecordStore


@pytest.fixture
def calendar(store: RecordStore) -> CalendarService:
    return CalendarService(store)


def test_toggle_day_off_adds_then_removes(calendar: CalendarService, store: RecordStore, kara) -> None:
    day_off = calendar.toggle_day_off(kara, "2024-07-04")
    assert day_off["user_id"] == 3

    [event] = store.find("calendar_events")
    assert event["title"] == "Day Off: Kara Thrace"
    assert event["time"] == "All Day"
    assert event["color"] == "red"
    assert event["day_off_id"] == day_off["id"]

    result = calendar.toggle_day_off(kara, "2024-07-04")
    assert result["success"] is True
    assert result["removed"]["id"] == day_off["id"]
    assert store.find("days_off") == []
    assert store.find("calendar_events") == []


def test_days_off_are_per_user(calendar: CalendarService, store: RecordStore, kara, admin) -> None:
    calendar.toggle_day_off(kara, "2024-07-04")
    calendar.toggle_day_off(admin, "2024-07-04")
    assert len(store.find("days_off", date="2024-07-04")) == 2


def test_batch_add_skips_existing_dates(calendar: CalendarService, store: RecordStore, kara) -> None:
    calendar.toggle_day_off(kara, "2024-07-01")
    created = calendar.batch_add_days_off(kara, ["2024-07-01", "2024-07-02", "2024-07-03", "2024-07-03"])
    assert created == 2
    assert sorted(d["date"] for d in store.find("days_off")) == ["2024-07-01", "2024-07-02", "2024-07-03"]
    assert len(store.find("calendar_events")) == 3


def test_batch_delete_counts_removed(calendar: CalendarService, store: RecordStore, kara) -> None:
    calendar.batch_add_days_off(kara, ["2024-07-01", "2024-07-02"])
    assert calendar.batch_delete_days_off(kara, ["2024-07-02", "2024-07-09"]) == 1
    assert [d["date"] for d in store.find("days_off")] == ["2024-07-01"]
    assert len(store.find("calendar_events")) == 1


def test_note_event_title() -> None:
    assert note_event_title({"reason": "Call", "name": "Jane"}) == "Call for Jane"
    assert note_event_title({"reason": "Birthday"}) == "Birthday"
    assert note_event_title({"text": "Bring docs"}) == "Bring docs"
    assert note_event_title({}) == "Calendar Note"


def test_note_mirrors_calendar_event(calendar: CalendarService, store: RecordStore) -> None:
    note = calendar.create_note({
        "user_id": 3, "date": "2024-06-25", "reason": "Call", "name": "Jane", "color": "Yellow",
    })
    [event] = store.find("calendar_events")
    assert event["title"] == "Call for Jane"
    assert event["time"] == "12:00 PM"
    assert event["color"] == "orange"
    assert event["note_id"] == note["id"]

    calendar.update_note(note["id"], {"color": "Green", "date": "2024-06-26"})
    event = store.get("calendar_events", event["id"])
    assert event["color"] == "green"
    assert event["date"] == "2024-06-26"

    assert calendar.delete_note(note["id"]) is True
    assert store.find("calendar_events") == []
    with pytest.raises(NotFound):
        calendar.delete_note(note["id"])


def test_note_requires_owner_and_date(calendar: CalendarService) -> None:
    with pytest.raises(ValidationError):
        calendar.create_note({"reason": "Call"})
