from app.services.revisions import (
    PendingUpdate,
    accumulate,
    diff_fields,
    effective_price,
    record_price_change,
)

PUBLISHED = {"title": "Sea Ray Sundancer 320", "price": 85000, "year": 2012}
T1, T2, T3 = "2026-03-01T10:00:00+00:00", "2026-03-02T10:00:00+00:00", "2026-03-03T10:00:00+00:00"


def test_diff_only_reports_changed_fields():
    entries = diff_fields(PUBLISHED, {"price": 82000, "year": 2012}, actor="u1", now=T1)
    assert [(e.field, e.old_value, e.new_value) for e in entries] == [("price", 85000, 82000)]


def test_first_edit_creates_pending_update():
    acc = accumulate(None, {"price": 82000}, PUBLISHED, actor="u1", now=T1)
    pu = acc.pending_update
    assert pu.changes == {"price": 82000}
    assert pu.submitted_at == pu.last_updated_at == T1
    assert pu.submitted_by == "u1"
    assert len(acc.new_entries) == 1


def test_merge_is_last_writer_wins_and_keeps_first_submission_time():
    first = accumulate(None, {"price": 82000}, PUBLISHED, actor="u1", now=T1).pending_update
    second = accumulate(first, {"title": "Sea Ray 320 Reduced"}, PUBLISHED, actor="u1", now=T2).pending_update
    third = accumulate(second, {"price": 80000}, PUBLISHED, actor="u1", now=T3).pending_update

    assert third.changes == {"price": 80000, "title": "Sea Ray 320 Reduced"}
    assert third.submitted_at == T1
    assert third.last_updated_at == T3
    assert [(c.field, c.old_value, c.new_value) for c in third.change_history] == [
        ("price", 85000, 82000),
        ("title", "Sea Ray Sundancer 320", "Sea Ray 320 Reduced"),
        ("price", 82000, 80000),
    ]


def test_identical_edit_adds_no_history():
    first = accumulate(None, {"price": 82000}, PUBLISHED, actor="u1", now=T1).pending_update
    again = accumulate(first, {"price": 82000}, PUBLISHED, actor="u1", now=T2)
    assert again.new_entries == ()
    assert len(again.pending_update.change_history) == 1


def test_first_edit_keeps_only_fields_that_differ_from_published():
    acc = accumulate(None, {"price": 82000, "year": 2012}, PUBLISHED, actor="u1", now=T1)
    assert acc.pending_update.changes == {"price": 82000}

    assert accumulate(None, {"year": 2012}, PUBLISHED, actor="u1", now=T1).pending_update is None


def test_reverting_to_published_value_drops_the_field():
    first = accumulate(None, {"price": 82000, "title": "Sea Ray 320 Reduced"}, PUBLISHED, actor="u1", now=T1).pending_update
    second = accumulate(first, {"price": 85000}, PUBLISHED, actor="u1", now=T2)
    assert second.pending_update.changes == {"title": "Sea Ray 320 Reduced"}
    assert [(c.field, c.old_value, c.new_value) for c in second.new_entries] == [("price", 82000, 85000)]
    assert len(second.pending_update.change_history) == 3


def test_reverting_every_field_clears_the_pending_update():
    first = accumulate(None, {"price": 82000}, PUBLISHED, actor="u1", now=T1).pending_update
    acc = accumulate(first, {"price": 85000}, PUBLISHED, actor="u1", now=T2)
    assert acc.pending_update is None
    assert len(acc.new_entries) == 1


def test_inputs_are_not_mutated():
    published = dict(PUBLISHED)
    incoming = {"price": 1}
    first = accumulate(None, incoming, published, actor="u1", now=T1).pending_update
    accumulate(first, {"price": 2}, published, actor="u1", now=T2)
    assert published == PUBLISHED
    assert incoming == {"price": 1}
    assert first.changes == {"price": 1}


def test_pending_update_dict_round_trip():
    pu = accumulate(None, {"price": 82000}, PUBLISHED, actor="u1", now=T1).pending_update
    assert PendingUpdate.from_dict(pu.to_dict()) == pu
    assert PendingUpdate.from_dict(None) is None
    assert PendingUpdate.from_dict({}) is None


def test_effective_price_prefers_pending_price():
    pu = accumulate(None, {"price": 82000}, PUBLISHED, actor="u1", now=T1).pending_update
    assert effective_price(PUBLISHED, pu) == 82000
    assert effective_price(PUBLISHED, None) == 85000


def test_price_history_appends_only_on_change():
    history = [{"price": 85000, "reason": "initial_listing"}]
    unchanged = record_price_change(history, current_price=85000, new_price=85000, actor="u1", now=T1, reason="direct_edit")
    assert unchanged == history
    assert record_price_change(history, current_price=85000, new_price=None, actor="u1", now=T1, reason="x") == history

    changed = record_price_change(history, current_price=85000, new_price=82000, actor="u1", now=T1, reason="pending_update")
    assert changed[-1] == {
        "price": 82000,
        "previous_price": 85000,
        "timestamp": T1,
        "changed_by": "u1",
        "reason": "pending_update",
    }
    assert len(history) == 1
