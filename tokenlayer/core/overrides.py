"""Minimal override fragments for edits made through a platform or theme lens."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, assert_never

from pydantic import BaseModel

from .documents import DEFAULT_VERSION, TOKEN_OVERRIDE_FIELDS, SourceKey, SourceType, mode_set
from .errors import PolicyViolation, TokenLayerError, ValidationIssue
from .store import canonical_json
from .validation import non_themeable_target

logger = logging.getLogger("tokenlayer.overrides")

TokenLike = BaseModel | Mapping[str, Any]


@dataclass(frozen=True)
class EditContext:
    """Which source document an edit should be persisted to."""

    source_type: SourceType
    source_id: str | None = None
    system_id: str = ""
    version: str = DEFAULT_VERSION

    @property
    def source_key(self) -> SourceKey:
        return SourceKey(self.source_type, self.source_id)


@dataclass
class FieldChanges:
    token_id: str
    changed_fields: List[str] = field(default_factory=list)
    original_values: Dict[str, Any] = field(default_factory=dict)
    new_values: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "changedFields": list(self.changed_fields),
            "originalValues": self.original_values,
            "newValues": self.new_values,
        }


@dataclass
class SynthesisResult:
    payload: dict[str, Any] | None
    changes: FieldChanges
    error: ValidationIssue | PolicyViolation | None = None
    context: EditContext | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def fragment(self) -> dict[str, Any] | None:
        if not self.payload or not self.payload.get("tokenOverrides"):
            return None
        return self.payload["tokenOverrides"][0]


@dataclass
class OverrideChange:
    """Latest pending edit of one token inside an override session."""

    token_id: str
    original_value: Dict[str, Any]
    new_value: Dict[str, Any]
    source_type: SourceType
    source_id: str
    fragment: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "originalValue": self.original_value,
            "newValue": self.new_value,
            "sourceType": self.source_type.value,
            "sourceId": self.source_id,
            "timestamp": self.timestamp.isoformat(),
        }


def _token_data(token: TokenLike) -> dict[str, Any]:
    if isinstance(token, BaseModel):
        return token.model_dump(mode="json", exclude_none=True)
    return {key: copy.deepcopy(value) for key, value in token.items() if value is not None}


def _changed(original: Any, modified: Any) -> bool:
    return canonical_json(original) != canonical_json(modified)


def detect_changes(edited: dict[str, Any], original: dict[str, Any] | None) -> FieldChanges:
    token_id = edited["id"]
    if original is None:
        fields = [name for name in edited if name != "id"]
        return FieldChanges(
            token_id=token_id,
            changed_fields=fields,
            new_values={name: edited[name] for name in fields},
        )
    changes = FieldChanges(token_id=token_id)
    for name in TOKEN_OVERRIDE_FIELDS:
        before = original.get(name)
        after = edited.get(name)
        if _changed(before, after):
            changes.changed_fields.append(name)
            changes.original_values[name] = before
            changes.new_values[name] = after
    return changes


def changed_values_by_mode(
    edited: dict[str, Any], original: dict[str, Any] | None
) -> list[dict[str, Any]]:
    """Entries of ``edited`` that are new or whose value or metadata changed.

    Entries are matched by mode-id set. Entries only present in ``original``
    cannot be expressed as an override and are ignored.
    """

    entries = edited.get("valuesByMode") or []
    if original is None:
        return copy.deepcopy(entries)
    before = {
        mode_set(entry.get("modeIds") or []): entry
        for entry in original.get("valuesByMode") or []
    }
    delta: list[dict[str, Any]] = []
    for entry in entries:
        match = before.get(mode_set(entry.get("modeIds") or []))
        if (
            match is None
            or _changed(match.get("value"), entry.get("value"))
            or _changed(match.get("metadata"), entry.get("metadata"))
        ):
            delta.append(copy.deepcopy(entry))
    return delta


class OverrideSynthesizer:
    """Turn an edited token into the smallest fragment for its source."""

    def synthesize(
        self,
        edited: TokenLike,
        original: TokenLike | None,
        context: EditContext,
    ) -> SynthesisResult:
        edited_data = _token_data(edited)
        original_data = _token_data(original) if original is not None else None
        token_id = edited_data["id"]
        source_type = context.source_type

        if source_type is SourceType.CORE:
            return SynthesisResult(None, FieldChanges(token_id), context=context)
        if not context.source_id:
            return SynthesisResult(
                None,
                FieldChanges(token_id),
                error=ValidationIssue(
                    "sourceId", "No source id specified for override creation"
                ),
                context=context,
            )

        if source_type is SourceType.PLATFORM_EXTENSION:
            changes = detect_changes(edited_data, original_data)
            payload = self._platform_payload(edited_data, original_data, changes, context)
        elif source_type is SourceType.THEME_OVERRIDE:
            if not edited_data.get("themeable", False):
                violation = non_themeable_target(token_id, context.source_id)
                logger.info("override_rejected", extra={"code": violation.code, "token_id": token_id})
                return SynthesisResult(None, FieldChanges(token_id), error=violation, context=context)
            changes = detect_changes(edited_data, original_data)
            payload = self._theme_payload(edited_data, original_data, changes, context)
        else:
            assert_never(source_type)

        return SynthesisResult(payload, changes, context=context)

    def _platform_payload(
        self,
        edited: dict[str, Any],
        original: dict[str, Any] | None,
        changes: FieldChanges,
        context: EditContext,
    ) -> dict[str, Any] | None:
        fragment: dict[str, Any] = {"id": changes.token_id}
        for name in changes.changed_fields:
            if name == "valuesByMode":
                entries = changed_values_by_mode(edited, original)
                if entries:
                    fragment[name] = entries
            elif name in edited:
                fragment[name] = copy.deepcopy(edited[name])
        if len(fragment) == 1:
            return None
        return {
            "systemId": context.system_id,
            "platformId": context.source_id,
            "version": context.version,
            "tokenOverrides": [fragment],
        }

    def _theme_payload(
        self,
        edited: dict[str, Any],
        original: dict[str, Any] | None,
        changes: FieldChanges,
        context: EditContext,
    ) -> dict[str, Any] | None:
        if "valuesByMode" not in changes.changed_fields:
            return None
        entries = changed_values_by_mode(edited, original)
        if not entries:
            return None
        return {
            "systemId": context.system_id,
            "themeId": context.source_id,
            "tokenOverrides": [{"tokenId": changes.token_id, "valuesByMode": entries}],
        }


def _fragment_key(payload: Mapping[str, Any]) -> str:
    return "tokenId" if "themeId" in payload else "id"


def _fold_values(
    existing: list[dict[str, Any]], updates: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    merged = copy.deepcopy(existing)
    positions = {mode_set(entry.get("modeIds") or []): i for i, entry in enumerate(merged)}
    for entry in updates:
        key = mode_set(entry.get("modeIds") or [])
        if key in positions:
            merged[positions[key]] = copy.deepcopy(entry)
        else:
            positions[key] = len(merged)
            merged.append(copy.deepcopy(entry))
    return merged


def fold_override(
    existing: Mapping[str, Any] | None, payload: Mapping[str, Any]
) -> dict[str, Any]:
    """Fold an override payload into a persisted override document.

    Fragments are matched by ``id`` (platform) or ``tokenId`` (theme) and
    their ``valuesByMode`` entries by mode-id set; untouched data is kept.
    """

    if existing is None:
        document = {key: copy.deepcopy(value) for key, value in payload.items() if key != "tokenOverrides"}
        document["tokenOverrides"] = []
    else:
        document = copy.deepcopy(dict(existing))
        document.setdefault("tokenOverrides", [])
    key = _fragment_key(document if existing is not None else payload)
    overrides: list[dict[str, Any]] = document["tokenOverrides"]
    positions = {item.get(key): index for index, item in enumerate(overrides)}
    for fragment in payload.get("tokenOverrides", []):
        target_id = fragment.get(key)
        if target_id not in positions:
            positions[target_id] = len(overrides)
            overrides.append(copy.deepcopy(dict(fragment)))
            continue
        target = overrides[positions[target_id]]
        for name, value in fragment.items():
            if name == "valuesByMode":
                target[name] = _fold_values(target.get(name) or [], value)
            else:
                target[name] = copy.deepcopy(value)
    return document


class OverrideTracker:
    """Pending overrides for one ``(sourceType, sourceId)`` edit context."""

    def __init__(self) -> None:
        self.context: EditContext | None = None
        self.changes: Dict[str, OverrideChange] = {}
        self.created_at: datetime | None = None
        self.last_modified: datetime | None = None

    def begin(self, context: EditContext) -> None:
        """Start a session, or resume it when the context is unchanged."""
        if context.source_type is SourceType.CORE or not context.source_id:
            raise TokenLayerError("Override sessions need a platform or theme source")
        if self.context is not None and self.context.source_key == context.source_key:
            self.context = context
            self._touch()
            return
        self.context = context
        self.changes = {}
        self.created_at = datetime.now(timezone.utc)
        self._touch()

    def record(self, result: SynthesisResult) -> OverrideChange | None:
        if self.context is None:
            raise TokenLayerError("No override session has been started")
        if not result.ok:
            return None
        if result.context is not None and result.context.source_key != self.context.source_key:
            raise TokenLayerError(
                f"Result for {result.context.source_key} recorded in session "
                f"{self.context.source_key}"
            )
        fragment = result.fragment
        if fragment is None:
            self.remove(result.changes.token_id)
            return None
        source_id = self.context.source_id
        if not source_id:
            raise TokenLayerError("Override session has no source id")
        change = OverrideChange(
            token_id=result.changes.token_id,
            original_value=result.changes.original_values,
            new_value=result.changes.new_values,
            source_type=self.context.source_type,
            source_id=source_id,
            fragment=copy.deepcopy(fragment),
        )
        self.changes.pop(change.token_id, None)
        self.changes[change.token_id] = change
        self._touch()
        return change

    def remove(self, token_id: str) -> None:
        if self.changes.pop(token_id, None) is not None:
            self._touch()

    def pending(self) -> list[OverrideChange]:
        return list(self.changes.values())

    def get(self, token_id: str) -> OverrideChange | None:
        return self.changes.get(token_id)

    @property
    def change_count(self) -> int:
        return len(self.changes)

    @property
    def has_pending(self) -> bool:
        return self.change_count > 0

    def build_commit_document(self) -> dict[str, Any] | None:
        if self.context is None or not self.changes:
            return None
        context = self.context
        if context.source_type is SourceType.PLATFORM_EXTENSION:
            document: dict[str, Any] = {
                "systemId": context.system_id,
                "platformId": context.source_id,
                "version": context.version,
                "tokenOverrides": [],
            }
        elif context.source_type is SourceType.THEME_OVERRIDE:
            document = {
                "systemId": context.system_id,
                "themeId": context.source_id,
                "tokenOverrides": [],
            }
        elif context.source_type is SourceType.CORE:
            return None
        else:
            assert_never(context.source_type)
        fragments = [change.fragment for change in self.changes.values()]
        return fold_override(document, {**document, "tokenOverrides": fragments})

    def clear(self) -> None:
        self.context = None
        self.changes = {}
        self.created_at = None
        self.last_modified = None

    def _touch(self) -> None:
        self.last_modified = datetime.now(timezone.utc)
