"""Layer a core document with platform extensions and a theme override.

Layering order is strict: core, then each platform extension in the order
supplied, then the theme override. Repeated writes to the same field resolve
to the last writer. Inputs are never mutated; every merge recomputes the
resolved view and analytics from scratch.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from pydantic import ValidationError as ModelValidationError

from .documents import (
    CoreDocument,
    Dimension,
    Entity,
    Platform,
    PlatformExtensionDocument,
    SourceKey,
    SourceType,
    Theme,
    ThemeOverrideDocument,
    Token,
    TokenOverride,
    ValueByMode,
    to_payload,
)
from .errors import PolicyViolation, RejectedSource
from .validation import SchemaValidator, non_themeable_target, unknown_theme_target

logger = logging.getLogger("tokenlayer.merge")


@dataclass
class MergeOptions:
    target_platform_id: str | None = None
    include_omitted: bool = False


@dataclass
class TokenProvenance:
    """Where a resolved token came from and which sources rewrote it."""

    origin: SourceKey
    overrides: list[SourceKey] = field(default_factory=list)
    fields: dict[str, SourceKey] = field(default_factory=dict)

    @property
    def is_override(self) -> bool:
        return bool(self.overrides)

    @property
    def last_writer(self) -> SourceKey:
        return self.overrides[-1] if self.overrides else self.origin

    def record(self, source: SourceKey, changed_fields: Iterable[str]) -> None:
        if source not in self.overrides:
            self.overrides.append(source)
        for name in changed_fields:
            self.fields[name] = source

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin.to_dict(),
            "overrides": [source.to_dict() for source in self.overrides],
            "fields": {name: source.to_dict() for name, source in self.fields.items()},
        }


@dataclass
class MergeAnalytics:
    total_tokens: int = 0
    overridden_tokens: int = 0
    new_tokens: int = 0
    omitted_tokens: int = 0
    platform_count: int = 0
    theme_count: int = 0
    core_tokens: int = 0
    platform_breakdown: dict[str, int] = field(default_factory=dict)
    theme_breakdown: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "overriddenTokens": self.overridden_tokens,
            "newTokens": self.new_tokens,
            "omittedTokens": self.omitted_tokens,
            "platformCount": self.platform_count,
            "themeCount": self.theme_count,
            "sourceBreakdown": {
                "core": self.core_tokens,
                "platformExtensions": dict(self.platform_breakdown),
                "themeOverrides": dict(self.theme_breakdown),
            },
        }


@dataclass
class MergedView:
    """The resolved token system after every layer has been applied."""

    system_id: str
    version: str
    tokens: list[Token]
    platforms: list[Platform]
    themes: list[Theme]
    dimensions: list[Dimension]
    collections: list[Entity]
    taxonomies: list[Entity]
    algorithms: list[Entity]
    value_types: list[Entity]
    taxonomy_order: list[str]
    dimension_order: list[str]
    omitted_modes: list[str] = field(default_factory=list)
    omitted_dimensions: list[str] = field(default_factory=list)
    provenance: dict[str, TokenProvenance] = field(default_factory=dict)
    platform_ids: list[str] = field(default_factory=list)
    theme_id: str | None = None

    def token(self, token_id: str) -> Token | None:
        for token in self.tokens:
            if token.id == token_id:
                return token
        return None

    def modes(self) -> list[Any]:
        return [mode for dimension in self.dimensions for mode in dimension.modes]

    def to_collections(self) -> dict[str, list[Any]]:
        """Collection map in the shape the document store persists."""
        return {
            "tokens": [to_payload(token) for token in self.tokens],
            "collections": [to_payload(item) for item in self.collections],
            "modes": [to_payload(mode) for mode in self.modes()],
            "dimensions": [to_payload(item) for item in self.dimensions],
            "platforms": [to_payload(item) for item in self.platforms],
            "themes": [to_payload(item) for item in self.themes],
            "taxonomies": [to_payload(item) for item in self.taxonomies],
            "algorithms": [to_payload(item) for item in self.algorithms],
            "valueTypes": [to_payload(item) for item in self.value_types],
            "taxonomyOrder": list(self.taxonomy_order),
            "dimensionOrder": list(self.dimension_order),
        }


@dataclass
class MergeResult:
    resolved: MergedView
    analytics: MergeAnalytics
    warnings: list[PolicyViolation] = field(default_factory=list)
    rejected: list[RejectedSource] = field(default_factory=list)


def merge_values_by_mode(
    base: Sequence[ValueByMode], updates: Sequence[ValueByMode]
) -> list[ValueByMode]:
    """Layer ``updates`` onto ``base`` matching entries by mode-id set.

    A matched entry is replaced in place; an unmatched entry is appended, so
    the result never holds two entries with the same mode set.
    """

    merged = [entry.model_copy(deep=True) for entry in base]
    positions = {entry.mode_key(): index for index, entry in enumerate(merged)}
    for update in updates:
        key = update.mode_key()
        if key in positions:
            merged[positions[key]] = update.model_copy(deep=True)
        else:
            positions[key] = len(merged)
            merged.append(update.model_copy(deep=True))
    return merged


def _dump(model: Any) -> Any:
    if isinstance(model, list):
        return [_dump(item) for item in model]
    if hasattr(model, "model_dump"):
        return model.model_dump(mode="json", exclude_none=True)
    return model


def _apply_fields(token: Token, updates: Mapping[str, Any]) -> tuple[Token, list[str]]:
    data = token.model_dump()
    changed: list[str] = []
    for name, value in updates.items():
        if name == "valuesByMode":
            value = merge_values_by_mode(token.valuesByMode, value)
        if _dump(getattr(token, name, None)) == _dump(value):
            continue
        data[name] = _dump(value)
        changed.append(name)
    if not changed:
        return token, changed
    return Token.model_validate(data), changed


def _token_from_fragment(fragment: TokenOverride) -> Token | None:
    data = fragment.model_dump(exclude_none=True, exclude={"omit"})
    try:
        return Token.model_validate(data)
    except ModelValidationError:
        return None


def _strip_modes(token: Token, omitted: set[str]) -> Token | None:
    """Drop entries resolving through omitted modes; None when nothing is left."""
    if not omitted or not token.valuesByMode:
        return token
    kept = [entry for entry in token.valuesByMode if not omitted & set(entry.modeIds)]
    if len(kept) == len(token.valuesByMode):
        return token
    if not kept:
        return None
    return token.model_copy(update={"valuesByMode": kept})


def _resolved_platforms(
    platforms: list[Platform], extension: PlatformExtensionDocument
) -> list[Platform]:
    patterns = extension.syntaxPatterns.model_copy()
    if patterns.capitalization == "camel":
        patterns.capitalization = "none"
    resolved: list[Platform] = []
    for platform in platforms:
        if platform.id == extension.platformId:
            platform = platform.model_copy(
                update={
                    "syntaxPatterns": patterns,
                    "valueFormatters": extension.valueFormatters,
                }
            )
        resolved.append(platform)
    return resolved


class MergeEngine:
    """Combine validated source documents into one resolved view."""

    def __init__(self, validator: SchemaValidator | None = None) -> None:
        self.validator = validator or SchemaValidator()

    def merge(
        self,
        core: CoreDocument,
        platform_extensions: Sequence[PlatformExtensionDocument | Mapping[str, Any]] = (),
        theme_override: ThemeOverrideDocument | Mapping[str, Any] | None = None,
        options: MergeOptions | None = None,
    ) -> MergeResult:
        options = options or MergeOptions()
        rejected: list[RejectedSource] = []
        warnings: list[PolicyViolation] = []

        extensions = self._accept_extensions(platform_extensions, rejected)
        if options.target_platform_id is not None:
            extensions = [
                ext for ext in extensions if ext.platformId == options.target_platform_id
            ]
        theme = self._accept_theme(theme_override, rejected)

        core_index = core.token_index()
        tokens: dict[str, Token] = {
            token.id: token.model_copy(deep=True) for token in core.tokens
        }
        provenance = {token_id: TokenProvenance(origin=SourceKey.core()) for token_id in tokens}
        changed_by: dict[SourceKey, set[str]] = defaultdict(set)
        platforms = [platform.model_copy(deep=True) for platform in core.platforms]
        dimension_modes = {
            dimension.id: {mode.id for mode in dimension.modes}
            for dimension in core.dimensions
        }
        omitted_modes: set[str] = set()
        stripped_modes: set[str] = set()
        omitted_dimensions: set[str] = set()

        for extension in extensions:
            source = extension.source_key
            omission = set(extension.omittedModes)
            for dimension_id in extension.omittedDimensions:
                omission |= dimension_modes.get(dimension_id, set())
            omitted_modes |= set(extension.omittedModes)
            stripped_modes |= omission
            omitted_dimensions |= set(extension.omittedDimensions)

            for fragment in extension.tokenOverrides:
                if fragment.omit and not options.include_omitted:
                    if tokens.pop(fragment.id, None) is not None:
                        provenance[fragment.id].record(source, ["omit"])
                        changed_by[source].add(fragment.id)
                    continue
                existing = tokens.get(fragment.id)
                if existing is None:
                    token = _token_from_fragment(fragment)
                    if token is None:
                        warnings.append(
                            PolicyViolation(
                                code="incomplete-token",
                                message=(
                                    f"Platform {extension.platformId!r} introduces token "
                                    f"{fragment.id!r} without the fields a token requires"
                                ),
                                token_id=fragment.id,
                                source_type=source.source_type.value,
                                source_id=source.source_id,
                            )
                        )
                        continue
                    tokens[fragment.id] = token
                    provenance[fragment.id] = TokenProvenance(origin=source)
                    changed_by[source].add(fragment.id)
                    continue
                updated, changed = _apply_fields(existing, fragment.present_fields())
                if changed:
                    tokens[fragment.id] = updated
                    provenance[fragment.id].record(source, changed)
                    changed_by[source].add(fragment.id)

            for token_id, token in list(tokens.items()):
                stripped = _strip_modes(token, stripped_modes)
                if stripped is token or (stripped is None and options.include_omitted):
                    continue
                if stripped is None:
                    del tokens[token_id]
                else:
                    tokens[token_id] = stripped
                provenance[token_id].record(source, ["valuesByMode"])
                changed_by[source].add(token_id)

            platforms = _resolved_platforms(platforms, extension)

        if theme is not None:
            source = theme.source_key
            for theme_fragment in theme.tokenOverrides:
                target = tokens.get(theme_fragment.tokenId)
                if target is None:
                    warnings.append(unknown_theme_target(theme_fragment.tokenId, theme.themeId))
                    continue
                guard = core_index.get(theme_fragment.tokenId, target)
                if not guard.themeable:
                    warnings.append(non_themeable_target(theme_fragment.tokenId, theme.themeId))
                    continue
                entries = [
                    entry
                    for entry in theme_fragment.valuesByMode
                    if not stripped_modes & set(entry.modeIds)
                ]
                updated, changed = _apply_fields(target, {"valuesByMode": entries})
                if changed:
                    tokens[theme_fragment.tokenId] = updated
                    provenance[theme_fragment.tokenId].record(source, changed)
                    changed_by[source].add(theme_fragment.tokenId)

        for violation in warnings:
            logger.warning(
                "merge_policy_violation",
                extra={"code": violation.code, "token_id": violation.token_id},
            )

        view = MergedView(
            system_id=core.systemId,
            version=core.version,
            tokens=list(tokens.values()),
            platforms=platforms,
            themes=[theme_entry.model_copy(deep=True) for theme_entry in core.themes],
            dimensions=_resolved_dimensions(core.dimensions, omitted_modes, omitted_dimensions),
            collections=[item.model_copy(deep=True) for item in core.tokenCollections],
            taxonomies=[item.model_copy(deep=True) for item in core.taxonomies],
            algorithms=[item.model_copy(deep=True) for item in core.algorithms],
            value_types=[item.model_copy(deep=True) for item in core.resolvedValueTypes],
            taxonomy_order=list(core.namingRules.taxonomyOrder),
            dimension_order=[
                dim_id for dim_id in core.dimensionOrder if dim_id not in omitted_dimensions
            ],
            omitted_modes=sorted(omitted_modes),
            omitted_dimensions=sorted(omitted_dimensions),
            provenance={token_id: provenance[token_id] for token_id in tokens},
            platform_ids=[ext.platformId for ext in extensions],
            theme_id=theme.themeId if theme is not None else None,
        )
        analytics = _analytics(core, view, extensions, theme, changed_by)
        logger.info(
            "merge_complete",
            extra={"system_id": core.systemId, "analytics": analytics.to_dict()},
        )
        return MergeResult(
            resolved=view, analytics=analytics, warnings=warnings, rejected=rejected
        )

    def _accept_extensions(
        self,
        candidates: Sequence[PlatformExtensionDocument | Mapping[str, Any]],
        rejected: list[RejectedSource],
    ) -> list[PlatformExtensionDocument]:
        accepted: list[PlatformExtensionDocument] = []
        for candidate in candidates:
            if isinstance(candidate, PlatformExtensionDocument):
                accepted.append(candidate)
                continue
            outcome = self.validator.validate(SourceType.PLATFORM_EXTENSION, candidate)
            if outcome.ok and isinstance(outcome.document, PlatformExtensionDocument):
                accepted.append(outcome.document)
                continue
            platform_id = candidate.get("platformId") if isinstance(candidate, Mapping) else None
            logger.warning(
                "platform_extension_rejected",
                extra={"platform_id": platform_id, "errors": outcome.messages()},
            )
            rejected.append(
                RejectedSource(
                    SourceType.PLATFORM_EXTENSION.value,
                    str(platform_id) if platform_id else None,
                    outcome.errors,
                )
            )
        return accepted

    def _accept_theme(
        self,
        candidate: ThemeOverrideDocument | Mapping[str, Any] | None,
        rejected: list[RejectedSource],
    ) -> ThemeOverrideDocument | None:
        if candidate is None or isinstance(candidate, ThemeOverrideDocument):
            return candidate
        outcome = self.validator.validate(SourceType.THEME_OVERRIDE, candidate)
        if outcome.ok and isinstance(outcome.document, ThemeOverrideDocument):
            return outcome.document
        theme_id = candidate.get("themeId") if isinstance(candidate, Mapping) else None
        logger.warning(
            "theme_override_rejected",
            extra={"theme_id": theme_id, "errors": outcome.messages()},
        )
        rejected.append(
            RejectedSource(
                SourceType.THEME_OVERRIDE.value,
                str(theme_id) if theme_id else None,
                outcome.errors,
            )
        )
        return None


def _resolved_dimensions(
    dimensions: list[Dimension], omitted_modes: set[str], omitted_dimensions: set[str]
) -> list[Dimension]:
    resolved: list[Dimension] = []
    for dimension in dimensions:
        if dimension.id in omitted_dimensions:
            continue
        modes = [mode for mode in dimension.modes if mode.id not in omitted_modes]
        resolved.append(dimension.model_copy(update={"modes": modes}, deep=True))
    return resolved


def _analytics(
    core: CoreDocument,
    view: MergedView,
    extensions: list[PlatformExtensionDocument],
    theme: ThemeOverrideDocument | None,
    changed_by: Mapping[SourceKey, set[str]],
) -> MergeAnalytics:
    core_dumps = {token.id: _dump(token) for token in core.tokens}
    resolved_ids = {token.id for token in view.tokens}
    overridden = sum(
        1
        for token in view.tokens
        if token.id in core_dumps and _dump(token) != core_dumps[token.id]
    )
    analytics = MergeAnalytics(
        total_tokens=len(view.tokens),
        overridden_tokens=overridden,
        new_tokens=len(resolved_ids - core_dumps.keys()),
        omitted_tokens=len(core_dumps.keys() - resolved_ids),
        platform_count=len(extensions),
        theme_count=1 if theme is not None else 0,
        core_tokens=sum(
            1
            for provenance in view.provenance.values()
            if provenance.origin.source_type is SourceType.CORE
        ),
    )
    for extension in extensions:
        analytics.platform_breakdown[extension.platformId] = len(
            changed_by.get(extension.source_key, set())
        )
    if theme is not None:
        analytics.theme_breakdown[theme.themeId] = len(changed_by.get(theme.source_key, set()))
    return analytics


def merge(
    core: CoreDocument,
    platform_extensions: Sequence[PlatformExtensionDocument | Mapping[str, Any]] = (),
    theme_override: ThemeOverrideDocument | Mapping[str, Any] | None = None,
    options: MergeOptions | None = None,
) -> MergeResult:
    """Merge with a default engine; see ``MergeEngine.merge``."""
    return MergeEngine().merge(core, platform_extensions, theme_override, options)


def find_integrity_problems(view: MergedView) -> list[str]:
    """Report duplicate ids, missing value types and ambiguous mode sets."""

    problems: list[str] = []
    for label, ids in (
        ("token", [token.id for token in view.tokens]),
        ("collection", [item.id for item in view.collections]),
        ("dimension", [item.id for item in view.dimensions]),
    ):
        seen: set[str] = set()
        for item_id in ids:
            if item_id in seen:
                problems.append(f"Duplicate {label} ID: {item_id}")
            seen.add(item_id)
    for token in view.tokens:
        if not token.resolvedValueTypeId:
            problems.append(f"Token missing resolvedValueTypeId: {token.id}")
        keys = [entry.mode_key() for entry in token.valuesByMode]
        if len(keys) != len(set(keys)):
            problems.append(f"Token {token.id} resolves the same mode set twice")
    return problems
