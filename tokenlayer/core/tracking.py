"""Local-change and remote-divergence tracking against captured baselines."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol

from pydantic import BaseModel

from .config import DIVERGENCE_COLLECTIONS, TRACKED_COLLECTIONS
from .documents import SourceKey, to_payload
from .store import COLLECTIONS, Baseline, DocumentStore, canonical_json

logger = logging.getLogger("tokenlayer.tracking")

ChangeCounter = Callable[[], int]


class RemoteSession(Protocol):
    def is_authenticated(self) -> bool: ...

    def selected_source(self) -> Any | None: ...


@dataclass
class ChangeSet:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)

    def __bool__(self) -> bool:
        return self.total_changes > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": list(self.added),
            "modified": list(self.modified),
            "removed": list(self.removed),
            "totalChanges": self.total_changes,
        }


@dataclass
class ChangeTrackingState:
    has_local_changes: bool
    has_github_divergence: bool
    can_export: bool
    change_count: int
    last_sync: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasLocalChanges": self.has_local_changes,
            "hasGitHubDivergence": self.has_github_divergence,
            "canExport": self.can_export,
            "changeCount": self.change_count,
            "lastGitHubSync": self.last_sync.isoformat() if self.last_sync else None,
        }


def diff_entities(current: Iterable[Any], baseline: Iterable[Any]) -> ChangeSet:
    """Id-based diff of two entity lists. Entries without an id are ignored."""

    def index(items: Iterable[Any]) -> dict[str, str]:
        indexed: dict[str, str] = {}
        for item in items:
            if isinstance(item, Mapping) and isinstance(item.get("id"), str) and item["id"]:
                indexed[item["id"]] = canonical_json(item)
        return indexed

    now = index(current)
    before = index(baseline)
    return ChangeSet(
        added=[item_id for item_id in now if item_id not in before],
        modified=[
            item_id for item_id in now if item_id in before and now[item_id] != before[item_id]
        ],
        removed=[item_id for item_id in before if item_id not in now],
    )


def diff_mappings(current: Mapping[str, Any], baseline: Mapping[str, Any]) -> ChangeSet:
    """Top-level key diff using canonical serialisation for equality."""
    return ChangeSet(
        added=[key for key in current if key not in baseline],
        modified=[
            key
            for key in current
            if key in baseline and canonical_json(current[key]) != canonical_json(baseline[key])
        ],
        removed=[key for key in baseline if key not in current],
    )


def _as_payload(document: BaseModel | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(document, BaseModel):
        return to_payload(document)
    return dict(document)


class ChangeTracker:
    """Derive change state from the document store and its baselines.

    Nothing is cached between calls: every query reads the store afresh.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        remote: RemoteSession | None = None,
        override_changes: ChangeCounter | None = None,
        config_changes: ChangeCounter | None = None,
        tracked_collections: Iterable[str] | None = None,
        divergence_collections: Iterable[str] | None = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.override_changes = override_changes
        self.config_changes = config_changes
        self.tracked_collections = list(tracked_collections or TRACKED_COLLECTIONS)
        self.divergence_collections = list(divergence_collections or DIVERGENCE_COLLECTIONS)
        self.last_sync: datetime | None = None

    def current_snapshot(self) -> dict[str, Any]:
        return {name: self.store.get(name) for name in COLLECTIONS}

    def capture_baseline(self) -> Baseline:
        baseline = Baseline.capture(self.current_snapshot())
        self.store.set_baseline(baseline)
        logger.debug("baseline_captured", extra={"captured_at": baseline.captured_at.isoformat()})
        return baseline

    def _external_count(self) -> int:
        total = 0
        for counter in (self.override_changes, self.config_changes):
            if counter is not None:
                total += max(0, counter())
        return total

    def has_local_changes(self) -> bool:
        baseline = self.store.get_baseline()
        if baseline is None:
            return False
        if self.has_unsaved_edits():
            return True
        return self._external_count() > 0

    def has_unsaved_edits(self) -> bool:
        """True when the store differs from the baseline. External counters are ignored."""
        baseline = self.store.get_baseline()
        if baseline is None:
            return False
        return canonical_json(self.current_snapshot()) != baseline.text

    def get_change_breakdown(self) -> dict[str, ChangeSet]:
        baseline = self.store.get_baseline()
        if baseline is None:
            return {}
        before = baseline.data
        return {
            name: diff_entities(self.store.get(name), before.get(name) or [])
            for name in self.tracked_collections
        }

    def get_change_count(self) -> int:
        baseline = self.store.get_baseline()
        if baseline is None:
            return 0
        total = sum(changes.total_changes for changes in self.get_change_breakdown().values())
        if canonical_json(self.store.get("taxonomyOrder")) != canonical_json(
            baseline.data.get("taxonomyOrder") or []
        ):
            total += 1
        return total + self._external_count()

    async def has_github_divergence(self) -> bool:
        if self.remote is None or not self.remote.is_authenticated():
            return False
        if self.remote.selected_source() is None:
            return False
        baseline = self.store.get_baseline()
        if baseline is None:
            return False
        before = baseline.data
        for name in [*self.divergence_collections, "taxonomyOrder"]:
            if canonical_json(self.store.get(name)) != canonical_json(before.get(name) or []):
                logger.info("divergence_detected", extra={"collection": name})
                return True
        return False

    async def get_change_tracking_state(self) -> ChangeTrackingState:
        has_local = self.has_local_changes()
        diverged = await self.has_github_divergence()
        return ChangeTrackingState(
            has_local_changes=has_local,
            has_github_divergence=diverged,
            can_export=not has_local or not diverged,
            change_count=self.get_change_count(),
            last_sync=self.last_sync,
        )

    def mark_synced(self, at: datetime | None = None) -> None:
        self.last_sync = at or datetime.now(timezone.utc)

    def capture_source_baseline(
        self, key: SourceKey, document: BaseModel | Mapping[str, Any]
    ) -> Baseline:
        baseline = Baseline.capture(_as_payload(document))
        self.store.set_snapshot(key.snapshot_name, baseline)
        return baseline

    def diff_source(
        self, key: SourceKey, current: BaseModel | Mapping[str, Any]
    ) -> ChangeSet:
        baseline = self.store.get_snapshot(key.snapshot_name)
        before = baseline.data if baseline is not None else {}
        return diff_mappings(_as_payload(current), before)

    def clear_source_baseline(self, key: SourceKey) -> None:
        self.store.delete_snapshot(key.snapshot_name)
