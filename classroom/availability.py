"""
Office-hour slots: grouping for the public page and seat math for bookings.

A slot covers the half-open window [start_time, end_time). Seats per slot are
`max_bookings`; cancelled bookings give their seat back.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterable, List

from classroom.timeutil import utc_z

Row = Dict[str, Any]


def slot_status(slot: Row, now: datetime) -> str:
    if not slot.get("is_active", True):
        return "inactive"
    if now < slot["start_time"]:
        return "upcoming"
    if now >= slot["end_time"]:
        return "past"
    return "active"

def seats_taken(bookings: Iterable[Row]) -> int:
    return sum(1 for b in bookings if b.get("status") != "cancelled")

def seats_left(slot: Row, bookings: Iterable[Row]) -> int:
    return max(0, int(slot.get("max_bookings") or 1) - seats_taken(bookings))

def day_key(dt: datetime) -> str:
    # e.g. "Monday, January 06"
    return dt.strftime("%A, %B %d")

def slot_view(slot: Row, bookings: Iterable[Row], now: datetime) -> dict:
    return {
        "id": slot["id"],
        "title": slot["title"],
        "description": slot.get("description"),
        "slot_type": slot.get("slot_type"),
        "start_time": utc_z(slot["start_time"]),
        "end_time": utc_z(slot["end_time"]),
        "location": slot.get("location"),
        "virtual_link": slot.get("virtual_link"),
        "max_bookings": slot.get("max_bookings"),
        "seats_left": seats_left(slot, bookings),
        "status": slot_status(slot, now),
    }

def group_slots_by_day(slots: List[Row], bookings_by_slot: Dict[int, List[Row]], now: datetime) -> List[dict]:
    """
    Slots are expected sorted by start_time already; day order follows that.
    returns [{"day": "Monday, January 06", "slots": [...]}, ...]
    """
    grouped: Dict[str, List[dict]] = {}
    for slot in slots:
        key = day_key(slot["start_time"])
        grouped.setdefault(key, []).append(slot_view(slot, bookings_by_slot.get(slot["id"], []), now))
    return [{"day": day, "slots": items} for day, items in grouped.items()]
