"""Tests for change tracking against baselines."""

from __future__ import annotations

import asyncio
from typing import Any

from tokenlayer.core import (
    ChangeTracker,
    CoreDocument,
    InMemoryDocumentStore,
    MergeEngine,
    SourceKey,
)


class FakeRemote:
    def __init__(self, authenticated: bool = True, selected: Any = "acme/tokens"):
        self.authenticated = authenticated
        self.selected = selected

    def is_authenticated(self) -> bool:
        return self.authenticated

    def selected_source(self) -> Any:
        return self.selected


def _published_store(core: CoreDocument) -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    store.set_many(MergeEngine().merge(core).resolved.to_collections())
    return store


def _edit_token(store: InMemoryDocumentStore, token_id: str, **fields: Any) -> None:
    tokens = store.get("tokens")
    for token in tokens:
        if token["id"] == token_id:
            token.update(fields)
    store.set("tokens", tokens)


def test_no_baseline_means_no_changes(core_document: CoreDocument) -> None:
    store = _published_store(core_document)
    tracker = ChangeTracker(store, override_changes=lambda: 3)

    assert tracker.has_local_changes() is False
    assert tracker.get_change_count() == 0
    assert tracker.get_change_breakdown() == {}


def test_single_token_edit_counts_once(core_document: CoreDocument) -> None:
    store = _published_store(core_document)
    tracker = ChangeTracker(store)
    tracker.capture_baseline()
    assert tracker.has_local_changes() is False

    _edit_token(store, "T1", valuesByMode=[{"modeIds": ["light"], "value": "#111"}, {"modeIds": ["dark"], "value": "#fff"}])

    assert tracker.has_local_changes() is True
    assert tracker.get_change_count() == 1
    assert tracker.get_change_breakdown()["tokens"].modified == ["T1"]


def test_change_count_is_additive(core_document: CoreDocument) -> None:
    store = _published_store(core_document)
    tracker = ChangeTracker(store, override_changes=lambda: 2, config_changes=lambda: 1)
    tracker.capture_baseline()
    assert tracker.get_change_count() == 3
    assert tracker.has_local_changes() is True

    tokens = [token for token in store.get("tokens") if token["id"] != "T3"]
    tokens.append({"id": "T9", "displayName": "New", "resolvedValueTypeId": "color"})
    store.set("tokens", tokens)
    store.set("taxonomyOrder", [])

    breakdown = tracker.get_change_breakdown()
    assert breakdown["tokens"].added == ["T9"]
    assert breakdown["tokens"].removed == ["T3"]
    assert tracker.get_change_count() == 2 + 1 + 3


def test_negative_external_counts_are_ignored(core_document: CoreDocument) -> None:
    store = _published_store(core_document)
    tracker = ChangeTracker(store, override_changes=lambda: -4)
    tracker.capture_baseline()

    assert tracker.get_change_count() == 0
    assert tracker.has_local_changes() is False


def test_baseline_reads_are_copies(core_document: CoreDocument) -> None:
    store = _published_store(core_document)
    baseline = ChangeTracker(store).capture_baseline()

    data = baseline.data
    data["tokens"].clear()

    assert len(baseline.data["tokens"]) == 3


def test_divergence_requires_session_and_baseline(core_document: CoreDocument) -> None:
    store = _published_store(core_document)
    _edit_token(store, "T2", displayName="Edited")

    assert asyncio.run(ChangeTracker(store).has_github_divergence()) is False
    assert asyncio.run(ChangeTracker(store, remote=FakeRemote()).has_github_divergence()) is False

    tracker = ChangeTracker(store, remote=FakeRemote())
    tracker.capture_baseline()
    _edit_token(store, "T2", displayName="Edited again")

    assert asyncio.run(tracker.has_github_divergence()) is True
    assert asyncio.run(
        ChangeTracker(store, remote=FakeRemote(authenticated=False)).has_github_divergence()
    ) is False
    assert asyncio.run(
        ChangeTracker(store, remote=FakeRemote(selected=None)).has_github_divergence()
    ) is False


def test_export_gate(core_document: CoreDocument) -> None:
    store = _published_store(core_document)
    tracker = ChangeTracker(store, remote=FakeRemote())
    tracker.capture_baseline()

    clean = asyncio.run(tracker.get_change_tracking_state())
    assert clean.can_export is True
    assert clean.change_count == 0

    _edit_token(store, "T1", displayName="Edited")
    dirty = asyncio.run(tracker.get_change_tracking_state())
    assert dirty.has_local_changes is True
    assert dirty.has_github_divergence is True
    assert dirty.can_export is False
    assert dirty.to_dict()["changeCount"] == 1

    offline = ChangeTracker(store, remote=FakeRemote(authenticated=False))
    assert asyncio.run(offline.get_change_tracking_state()).can_export is True


def test_mark_synced_sets_last_sync(core_document: CoreDocument) -> None:
    tracker = ChangeTracker(_published_store(core_document))
    assert asyncio.run(tracker.get_change_tracking_state()).last_sync is None

    tracker.mark_synced()

    assert asyncio.run(tracker.get_change_tracking_state()).last_sync is not None


def test_per_source_change_set() -> None:
    store = InMemoryDocumentStore()
    tracker = ChangeTracker(store)
    key = SourceKey.platform("ios")
    tracker.capture_source_baseline(key, {"platformId": "ios", "version": "1.0.0", "omittedModes": []})

    changes = tracker.diff_source(
        key, {"platformId": "ios", "version": "1.1.0", "tokenOverrides": []}
    )

    assert changes.added == ["tokenOverrides"]
    assert changes.modified == ["version"]
    assert changes.removed == ["omittedModes"]
    assert changes.to_dict()["totalChanges"] == 3

    tracker.clear_source_baseline(key)
    assert store.get_snapshot(key.snapshot_name) is None
