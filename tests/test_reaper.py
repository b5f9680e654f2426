"""Tests for expiry deletion and orphan flagging."""

import warnings
from datetime import timedelta

import pytest

from amre.errors import DataIntegrityWarning
from amre.maintenance import Reaper
from amre.models import KnowledgeEntry, SourceType


def conversation_entry(store, conversation_id, user="u1"):
    e = KnowledgeEntry(user_id=user, content="I work at Microsoft", source_type=SourceType.CONVERSATION,
                       source_id=conversation_id)
    store.add_entry(e)
    return e


def test_expired_entries_are_deleted(store, base_time):
    expired = KnowledgeEntry(user_id="u1", content="flash sale", expires_at=base_time)
    live = KnowledgeEntry(user_id="u1", content="evergreen", expires_at=base_time + timedelta(days=1))
    store.add_entry(expired)
    store.add_entry(live)
    report = Reaper(store).sweep(now=base_time)
    assert report.expired == 1
    assert store.get_entry(expired.id) is None
    assert store.get_entry(live.id) is not None


def test_dry_run_counts_but_keeps_expired(store, base_time):
    expired = KnowledgeEntry(user_id="u1", content="flash sale", expires_at=base_time)
    store.add_entry(expired)
    report = Reaper(store).sweep(dry_run=True, now=base_time)
    assert report.expired == 1
    assert store.get_entry(expired.id) is not None


def test_orphans_are_flagged_not_deleted(store, make_turn):
    turn = make_turn("hello again", conversation_id="alive")
    store.claim(turn.id, "u1", turn)
    kept = conversation_entry(store, "alive")
    orphan = conversation_entry(store, "deleted")

    with pytest.warns(DataIntegrityWarning, match="deleted"):
        report = Reaper(store).sweep()

    assert report.orphaned == 1
    assert report.orphan_ids == [orphan.id]
    flagged = store.get_entry(orphan.id)
    assert flagged is not None and flagged.is_orphaned
    assert "deleted" in flagged.metadata["orphan_reason"]
    assert not store.get_entry(kept.id).is_orphaned


def test_flagged_orphans_are_not_reported_twice(store):
    conversation_entry(store, "gone")
    reaper = Reaper(store)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DataIntegrityWarning)
        assert reaper.sweep().orphaned == 1
        assert reaper.sweep().orphaned == 0


def test_dry_run_does_not_flag(store):
    orphan = conversation_entry(store, "gone")
    with pytest.warns(DataIntegrityWarning):
        Reaper(store).sweep(dry_run=True)
    assert not store.get_entry(orphan.id).is_orphaned


def test_custom_source_check(store):
    conversation_entry(store, "archived")
    report = Reaper(store, source_exists=lambda user, cid: cid == "archived").sweep()
    assert report.orphaned == 0


def test_purge_only_deletes_flagged_entries(store):
    orphan = conversation_entry(store, "gone")
    healthy = KnowledgeEntry(user_id="u1", content="keep me")
    store.add_entry(healthy)
    reaper = Reaper(store)
    with pytest.warns(DataIntegrityWarning):
        reaper.sweep()
    assert reaper.purge_orphans([orphan.id, healthy.id, "missing"]) == 1
    assert store.get_entry(orphan.id) is None
    assert store.get_entry(healthy.id) is not None


def test_user_scope(store):
    conversation_entry(store, "gone", user="u1")
    conversation_entry(store, "gone", user="u2")
    with pytest.warns(DataIntegrityWarning):
        report = Reaper(store).sweep(user_id="u2")
    assert report.orphaned == 1
