from datetime import datetime

from classroom.chapters import chapter_card, filter_chapters, next_order_index, status_message


def ch(pk, status="published", order=None, **extra):
    row = {"id": pk, "title": f"Chapter {pk}", "order_index": order if order is not None else pk, "status": status}
    row.update(extra)
    return row


def test_next_order_index():
    assert next_order_index([]) == 1
    assert next_order_index([ch(1, order=1), ch(2, order=7), ch(3, order=3)]) == 8


def test_filters():
    rows = [ch(1), ch(2, "draft"), ch(3, "scheduled"), ch(4, "archived")]
    assert [c["id"] for c in filter_chapters(rows, "all")] == [1, 2, 3, 4]
    assert [c["id"] for c in filter_chapters(rows, "available")] == [1]
    assert [c["id"] for c in filter_chapters(rows, "scheduled")] == [3]
    # unknown filter falls back to everything
    assert len(filter_chapters(rows, "completed")) == 4


def test_status_messages():
    assert "draft" in status_message(ch(1, "draft"))
    assert "2026-03-01" in status_message(ch(1, "scheduled", release_date=datetime(2026, 3, 1, 9, 0)))
    assert "soon" in status_message(ch(1, "scheduled"))
    assert "archived" in status_message(ch(1, "archived"))
    assert status_message(None) == "Chapter not found"


def test_cards_mark_locked_chapters():
    draft = ch(2, "draft", description=None)

    student_card = chapter_card(draft, "student")
    assert student_card["accessible"] is False
    assert student_card["note"]
    assert student_card["description"] == "No description available"

    assert chapter_card(draft, "admin")["accessible"] is True
    published = chapter_card(ch(1), None)
    assert published["accessible"] is True
    assert published["note"] is None
    assert published["href"] == "/chapters/1"
