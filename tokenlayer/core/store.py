"""Document store holding the published collections and named snapshots."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol

from .errors import StoreWriteError

logger = logging.getLogger("tokenlayer.store")

ENTITY_COLLECTIONS: tuple[str, ...] = (
    "tokens",
    "collections",
    "modes",
    "dimensions",
    "platforms",
    "themes",
    "taxonomies",
    "algorithms",
    "valueTypes",
)
ORDER_COLLECTIONS: tuple[str, ...] = ("taxonomyOrder", "dimensionOrder")
COLLECTIONS: tuple[str, ...] = ENTITY_COLLECTIONS + ORDER_COLLECTIONS

STORE_SCHEMA_VERSION = "1.0"


def canonical_json(value: Any) -> str:
    """Serialise ``value`` so that structurally equal data yields equal text."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class Baseline:
    """Immutable, timestamped copy of the current-data shape.

    The data is held as canonical JSON text; ``data`` decodes a fresh copy on
    every access so callers can never alter the snapshot.
    """

    text: str
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def capture(cls, data: Mapping[str, Any]) -> "Baseline":
        return cls(text=canonical_json(dict(data)))

    @property
    def data(self) -> dict[str, Any]:
        return json.loads(self.text)

    def to_dict(self) -> dict[str, Any]:
        return {"capturedAt": self.captured_at.isoformat(), "data": self.data}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Baseline":
        return cls(
            text=canonical_json(payload.get("data", {})),
            captured_at=datetime.fromisoformat(payload["capturedAt"]),
        )


class DocumentStore(Protocol):
    def get(self, name: str) -> list[Any]: ...

    def set(self, name: str, entities: list[Any]) -> None: ...

    def set_many(self, collections: Mapping[str, list[Any]]) -> None: ...

    def get_baseline(self) -> Baseline | None: ...

    def set_baseline(self, snapshot: Baseline | None) -> None: ...

    def get_snapshot(self, name: str) -> Baseline | None: ...

    def set_snapshot(self, name: str, snapshot: Baseline) -> None: ...

    def delete_snapshot(self, name: str) -> None: ...


def check_collection(name: str, entities: Any) -> list[str]:
    """Return the reasons ``entities`` cannot be written to ``name``."""

    if name not in COLLECTIONS:
        return [f"unknown collection {name!r}"]
    if not isinstance(entities, list):
        return [f"{name} must be a list, got {type(entities).__name__}"]
    problems: list[str] = []
    if name in ORDER_COLLECTIONS:
        for index, item in enumerate(entities):
            if not isinstance(item, str):
                problems.append(f"{name}[{index}] must be a string id")
        return problems
    seen: set[str] = set()
    for index, item in enumerate(entities):
        if not isinstance(item, Mapping):
            problems.append(f"{name}[{index}] must be an object")
            continue
        item_id = item.get("id")
        if not isinstance(item_id, str) or not item_id:
            problems.append(f"{name}[{index}] is missing an id")
        elif item_id in seen:
            problems.append(f"{name}[{index}] duplicates id {item_id!r}")
        else:
            seen.add(item_id)
    return problems


class InMemoryDocumentStore:
    """Collections and snapshots kept in process memory."""

    def __init__(self, collections: Mapping[str, list[Any]] | None = None):
        self.collections: Dict[str, list[Any]] = {name: [] for name in COLLECTIONS}
        self.baseline: Baseline | None = None
        self.snapshots: Dict[str, Baseline] = {}
        if collections:
            self.set_many(collections)

    def get(self, name: str) -> list[Any]:
        if name not in COLLECTIONS:
            raise KeyError(name)
        return copy.deepcopy(self.collections[name])

    def set(self, name: str, entities: list[Any]) -> None:
        problems = check_collection(name, entities)
        if problems:
            raise StoreWriteError(name, problems)
        self.collections[name] = copy.deepcopy(entities)
        self._changed()

    def set_many(self, collections: Mapping[str, list[Any]]) -> None:
        """Write several collections, or none of them if any is invalid."""
        for name, entities in collections.items():
            problems = check_collection(name, entities)
            if problems:
                raise StoreWriteError(name, problems)
        for name, entities in collections.items():
            self.collections[name] = copy.deepcopy(entities)
        self._changed()

    def snapshot(self) -> dict[str, Any]:
        return {name: self.get(name) for name in COLLECTIONS}

    def get_baseline(self) -> Baseline | None:
        return self.baseline

    def set_baseline(self, snapshot: Baseline | None) -> None:
        self.baseline = snapshot
        self._changed()

    def get_snapshot(self, name: str) -> Baseline | None:
        return self.snapshots.get(name)

    def set_snapshot(self, name: str, snapshot: Baseline) -> None:
        self.snapshots[name] = snapshot
        self._changed()

    def delete_snapshot(self, name: str) -> None:
        if self.snapshots.pop(name, None) is not None:
            self._changed()

    def _changed(self) -> None:
        """Hook for persistent subclasses."""


class JsonFileDocumentStore(InMemoryDocumentStore):
    """Document store persisted to a single JSON file after every write."""

    def __init__(self, store_path: Path):
        self.store_path = store_path
        self._loading = True
        super().__init__()
        self._load()
        self._loading = False

    def _load(self) -> None:
        if not self.store_path.exists():
            return
        data = json.loads(self.store_path.read_text(encoding="utf-8"))
        collections = data.get("collections", {})
        self.set_many({name: collections[name] for name in COLLECTIONS if name in collections})
        if data.get("baseline"):
            self.baseline = Baseline.from_dict(data["baseline"])
        for name, payload in data.get("snapshots", {}).items():
            self.snapshots[name] = Baseline.from_dict(payload)
        logger.debug("store_loaded", extra={"path": str(self.store_path)})

    def save(self) -> None:
        payload = {
            "schema_version": STORE_SCHEMA_VERSION,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "collections": self.collections,
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "snapshots": {name: snap.to_dict() for name, snap in self.snapshots.items()},
        }
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        self.store_path.write_text(
            json.dumps(payload, indent=2) + "\n", encoding="utf-8"
        )

    def _changed(self) -> None:
        if not self._loading:
            self.save()
