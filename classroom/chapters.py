'''
What is this for? Chapters come out of the backend as raw rows.
Pages need more than that: which ones a viewer may open, what to say about the
locked ones, which order index a new chapter gets, and a card per chapter
for the list page.
'''
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from classroom.access import can_view_chapter
from classroom.timeutil import utc_z

FILTERS = ("all", "available", "scheduled")

#order_index is only "dense-ish": new chapters go after the current max, gaps are fine
def next_order_index(chapters: List[Dict[str, Any]]) -> int:
    if not chapters:
        return 1
    return max(int(ch.get("order_index") or 0) for ch in chapters) + 1

def filter_chapters(chapters: List[Dict[str, Any]], flt: str = "all") -> List[Dict[str, Any]]:
    """
    "available" -> published only
    "scheduled" -> scheduled only
    anything else -> everything
    """
    if flt == "available":
        return [ch for ch in chapters if ch.get("status") == "published"]
    if flt == "scheduled":
        return [ch for ch in chapters if ch.get("status") == "scheduled"]
    return list(chapters)

def status_message(chapter: Optional[Dict[str, Any]]) -> str:
    if not chapter:
        return "Chapter not found"

    status = chapter.get("status")
    if status == "published":
        return "This chapter is available."
    if status == "draft":
        return "This chapter is still in draft and not yet published."
    if status == "scheduled":
        release: Optional[datetime] = chapter.get("release_date")
        if release:
            return f"This chapter is scheduled to be released on {release.date().isoformat()}."
        return "This chapter is scheduled for release soon."
    if status == "archived":
        return "This chapter has been archived and is no longer available."
    return "This chapter is not currently available."

#one card on the chapter list page
def chapter_card(chapter: Dict[str, Any], role: Optional[str]) -> dict:
    accessible = can_view_chapter(role, chapter["status"])
    return {
        "id": chapter["id"],
        "title": chapter["title"],
        "description": chapter.get("description") or "No description available",
        "duration": chapter.get("duration"),
        "order_index": chapter["order_index"],
        "status": chapter["status"],
        "release_date": utc_z(chapter.get("release_date")),
        "created_at": utc_z(chapter.get("created_at")),
        "accessible": accessible,
        "note": None if chapter["status"] == "published" else status_message(chapter),
        "href": f"/chapters/{chapter['id']}",
    }
