"""Tests for cursor persistence and the resume algorithm."""

from __future__ import annotations

import pytest

from mailsync.errors import ConsistencyError
from mailsync.storage.cursor import CursorTracker, ResumePlan


# ============================================================================
# Cursor persistence
# ============================================================================


def test_missing_cursor_returns_none(cursor_tracker: CursorTracker):
    assert cursor_tracker.get_cursor("conn-1") is None


def test_reset_creates_cursor_at_zero(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 42)

    cursor = cursor_tracker.get_cursor("conn-1")
    assert cursor.mailbox_epoch == 42
    assert cursor.last_sequence == 0
    assert cursor.mailbox == "INBOX"


def test_advance_moves_forward(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 7)
    cursor_tracker.advance_cursor("conn-1", 12, 7)
    cursor_tracker.advance_cursor("conn-1", 12, 7)

    assert cursor_tracker.get_cursor("conn-1").last_sequence == 12


def test_advance_rejects_moving_backwards(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 7)
    cursor_tracker.advance_cursor("conn-1", 20, 7)

    with pytest.raises(ConsistencyError) as exc_info:
        cursor_tracker.advance_cursor("conn-1", 10, 7)

    assert exc_info.value.details["stored_sequence"] == 20
    assert cursor_tracker.get_cursor("conn-1").last_sequence == 20


def test_advance_rejects_stale_epoch(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 8)

    with pytest.raises(ConsistencyError) as exc_info:
        cursor_tracker.advance_cursor("conn-1", 5, 7)

    assert exc_info.value.details["stored_epoch"] == 8


def test_advance_without_cursor_fails(cursor_tracker: CursorTracker):
    with pytest.raises(ConsistencyError):
        cursor_tracker.advance_cursor("conn-1", 5, 7)


def test_cursors_are_per_mailbox(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 1, "INBOX")
    cursor_tracker.reset_cursor("conn-1", 2, "Archive")
    cursor_tracker.advance_cursor("conn-1", 9, 2, "Archive")

    assert cursor_tracker.get_cursor("conn-1", "INBOX").last_sequence == 0
    assert cursor_tracker.get_cursor("conn-1", "Archive").last_sequence == 9
    assert [c.mailbox for c in cursor_tracker.list_cursors()] == ["Archive", "INBOX"]


def test_cursor_survives_reopen(tmp_path):
    from mailsync.storage.database import Database

    db = Database(tmp_path / "state.db")
    CursorTracker(db).reset_cursor("conn-1", 3)
    CursorTracker(db).advance_cursor("conn-1", 30, 3)
    db.close()

    reopened = Database(tmp_path / "state.db")
    try:
        assert CursorTracker(reopened).get_cursor("conn-1").last_sequence == 30
    finally:
        reopened.close()


# ============================================================================
# Resume planning
# ============================================================================


def test_plan_without_cursor_is_full_resync(cursor_tracker: CursorTracker):
    plan = cursor_tracker.plan_resume("conn-1", 7, 12)

    assert plan == ResumePlan(mailbox_epoch=7, start=1, end=12, full_resync=True)
    assert cursor_tracker.get_cursor("conn-1").mailbox_epoch == 7


def test_plan_same_epoch_resumes_after_cursor(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 7)
    cursor_tracker.advance_cursor("conn-1", 100, 7)

    plan = cursor_tracker.plan_resume("conn-1", 7, 150)

    assert (plan.start, plan.end) == (101, 150)
    assert plan.full_resync is False
    assert plan.previous_epoch == 7


def test_plan_caught_up_is_empty(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 7)
    cursor_tracker.advance_cursor("conn-1", 150, 7)

    plan = cursor_tracker.plan_resume("conn-1", 7, 150)

    assert plan.is_empty


def test_plan_epoch_change_resets_cursor(cursor_tracker: CursorTracker, caplog):
    cursor_tracker.reset_cursor("conn-1", 7)
    cursor_tracker.advance_cursor("conn-1", 100, 7)

    with caplog.at_level("WARNING"):
        plan = cursor_tracker.plan_resume("conn-1", 8, 60)

    assert (plan.start, plan.end) == (1, 60)
    assert plan.full_resync is True
    assert plan.previous_epoch == 7
    cursor = cursor_tracker.get_cursor("conn-1")
    assert (cursor.mailbox_epoch, cursor.last_sequence) == (8, 0)
    assert "epoch changed" in caplog.text


def test_plan_cursor_ahead_of_server_raises(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 7)
    cursor_tracker.advance_cursor("conn-1", 200, 7)

    with pytest.raises(ConsistencyError):
        cursor_tracker.plan_resume("conn-1", 7, 150)

    assert cursor_tracker.get_cursor("conn-1").last_sequence == 200


def test_plan_searched_maximum_below_cursor_fetches_nothing(cursor_tracker: CursorTracker):
    cursor_tracker.reset_cursor("conn-1", 7)
    cursor_tracker.advance_cursor("conn-1", 200, 7)

    plan = cursor_tracker.plan_resume("conn-1", 7, 150, server_max_exact=False)

    assert plan.is_empty
    assert not plan.full_resync
    assert cursor_tracker.get_cursor("conn-1").last_sequence == 200


def test_plan_empty_mailbox(cursor_tracker: CursorTracker):
    plan = cursor_tracker.plan_resume("conn-1", 1, 0)

    assert plan.is_empty
    assert cursor_tracker.get_cursor("conn-1").last_sequence == 0
