"""Schema validation for core, platform-extension and theme-override documents."""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from jsonschema import Draft202012Validator  # type: ignore[import-not-found]
from jsonschema.exceptions import ValidationError  # type: ignore[import-not-found]
from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from .documents import (
    DOCUMENT_MODELS,
    CoreDocument,
    PlatformExtensionDocument,
    SourceType,
    ThemeOverrideDocument,
    TypedDocument,
    ValueByMode,
)
from .errors import DocumentValidationError, PolicyViolation, ValidationIssue

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_SCHEMA_DIR = PACKAGE_ROOT / "schemas"
SCHEMA_FILES: dict[SourceType, str] = {
    SourceType.CORE: "core.schema.json",
    SourceType.PLATFORM_EXTENSION: "platform-extension.schema.json",
    SourceType.THEME_OVERRIDE: "theme-override.schema.json",
}

RawDocument = Mapping[str, Any] | str | bytes


@dataclass
class ValidationOutcome:
    """Result of validating one document: a typed value or a list of issues."""

    kind: SourceType
    document: TypedDocument | None = None
    errors: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.document is not None and not self.errors

    def messages(self) -> list[str]:
        return [str(issue) for issue in self.errors]


class SchemaValidator:
    """Validate raw documents against JSON Schema and the typed models."""

    def __init__(self, schema_dir: Path | None = None) -> None:
        self.schema_dir = schema_dir or DEFAULT_SCHEMA_DIR
        self.validators = {
            kind: self._build_validator(self.schema_dir / filename)
            for kind, filename in SCHEMA_FILES.items()
        }

    def _build_validator(self, schema_path: Path) -> Draft202012Validator:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        Draft202012Validator.check_schema(schema)
        return Draft202012Validator(schema)

    def validate(self, kind: SourceType | str, raw: RawDocument) -> ValidationOutcome:
        kind = SourceType(kind)
        payload, issue = _decode(raw)
        if payload is None:
            return ValidationOutcome(kind=kind, errors=[issue] if issue is not None else [])

        errors = list(self._iter_schema_issues(kind, payload))
        if errors:
            return ValidationOutcome(kind=kind, errors=errors)

        model = DOCUMENT_MODELS[kind]
        try:
            document = model.model_validate(payload)
        except ModelValidationError as exc:
            return ValidationOutcome(kind=kind, errors=list(_model_issues(exc)))

        errors = list(_iter_value_issues(document))  # type: ignore[arg-type]
        if errors:
            return ValidationOutcome(kind=kind, errors=errors)
        return ValidationOutcome(kind=kind, document=document)  # type: ignore[arg-type]

    def collect_errors(self, kind: SourceType | str, raw: RawDocument) -> list[str]:
        return self.validate(kind, raw).messages()

    def validate_or_raise(
        self, kind: SourceType | str, raw: RawDocument
    ) -> TypedDocument:
        outcome = self.validate(kind, raw)
        if not outcome.ok or outcome.document is None:
            raise DocumentValidationError(SourceType(kind).value, outcome.errors)
        return outcome.document

    def _iter_schema_issues(
        self, kind: SourceType, payload: Mapping[str, Any]
    ) -> Iterable[ValidationIssue]:
        validator = self.validators[kind]
        errors = sorted(
            validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path]
        )
        for error in errors:
            path = ".".join(str(idx) for idx in error.path) or "$"
            if isinstance(error, ValidationError):
                yield ValidationIssue(path, error.message)
            else:
                yield ValidationIssue(path, str(error))


def _decode(raw: RawDocument) -> tuple[dict[str, Any] | None, ValidationIssue | None]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            return None, ValidationIssue("$", f"document is not UTF-8: {exc}")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            return None, ValidationIssue("$", f"invalid JSON: {exc.msg} (line {exc.lineno})")
    if not isinstance(raw, Mapping):
        return None, ValidationIssue("$", "document must be a JSON object")
    return dict(raw), None


def _model_issues(exc: ModelValidationError) -> Iterable[ValidationIssue]:
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ())) or "$"
        yield ValidationIssue(path, error.get("msg", "invalid value"))


def _values_by_mode_issues(
    path: str, entries: list[ValueByMode]
) -> Iterable[ValidationIssue]:
    seen: dict[frozenset[str], int] = {}
    for index, entry in enumerate(entries):
        key = entry.mode_key()
        if key in seen:
            yield ValidationIssue(
                f"{path}.{index}.modeIds",
                f"duplicates the mode set of entry {seen[key]}",
            )
        else:
            seen[key] = index
    if len(entries) > 1 and any(not entry.modeIds for entry in entries):
        yield ValidationIssue(
            path, "an entry with empty modeIds must be the only entry"
        )


def _iter_value_issues(document: BaseModel) -> Iterable[ValidationIssue]:
    if isinstance(document, CoreDocument):
        seen_ids: set[str] = set()
        for index, token in enumerate(document.tokens):
            if token.id in seen_ids:
                yield ValidationIssue(f"tokens.{index}.id", f"duplicate token id {token.id!r}")
            seen_ids.add(token.id)
            yield from _values_by_mode_issues(
                f"tokens.{index}.valuesByMode", token.valuesByMode
            )
    elif isinstance(document, PlatformExtensionDocument):
        for index, override in enumerate(document.tokenOverrides):
            if override.valuesByMode:
                yield from _values_by_mode_issues(
                    f"tokenOverrides.{index}.valuesByMode", override.valuesByMode
                )
    elif isinstance(document, ThemeOverrideDocument):
        for index, override in enumerate(document.tokenOverrides):
            yield from _values_by_mode_issues(
                f"tokenOverrides.{index}.valuesByMode", override.valuesByMode
            )


def check_extension_against_core(
    core: CoreDocument, extension: PlatformExtensionDocument
) -> list[ValidationIssue]:
    """Referential checks of a platform extension against the core document."""

    issues: list[ValidationIssue] = []
    if extension.systemId != core.systemId:
        issues.append(
            ValidationIssue(
                "systemId",
                f"extension has {extension.systemId!r}, core has {core.systemId!r}",
            )
        )
    if not any(platform.id == extension.platformId for platform in core.platforms):
        issues.append(
            ValidationIssue(
                "platformId",
                f"platform {extension.platformId!r} not found in core platforms",
            )
        )

    mode_ids = core.mode_ids()
    dimension_ids = {dimension.id for dimension in core.dimensions}
    core_tokens = core.token_index()
    for index, override in enumerate(extension.tokenOverrides):
        path = f"tokenOverrides.{index}"
        if override.id not in core_tokens and not override.resolvedValueTypeId:
            issues.append(
                ValidationIssue(
                    f"{path}.resolvedValueTypeId",
                    f"new token {override.id!r} must specify resolvedValueTypeId",
                )
            )
        for entry_index, entry in enumerate(override.valuesByMode or []):
            for mode_id in entry.modeIds:
                if mode_id not in mode_ids:
                    issues.append(
                        ValidationIssue(
                            f"{path}.valuesByMode.{entry_index}.modeIds",
                            f"mode {mode_id!r} not found in core dimensions",
                        )
                    )
    for index, var_override in enumerate(extension.algorithmVariableOverrides):
        for entry in var_override.valuesByMode:
            for mode_id in entry.modeIds:
                if mode_id not in mode_ids:
                    issues.append(
                        ValidationIssue(
                            f"algorithmVariableOverrides.{index}",
                            f"mode {mode_id!r} not found for "
                            f"{var_override.algorithmId}.{var_override.variableId}",
                        )
                    )
    for mode_id in extension.omittedModes:
        if mode_id not in mode_ids:
            issues.append(
                ValidationIssue("omittedModes", f"omitted mode {mode_id!r} not found")
            )
    for dimension_id in extension.omittedDimensions:
        if dimension_id not in dimension_ids:
            issues.append(
                ValidationIssue(
                    "omittedDimensions", f"omitted dimension {dimension_id!r} not found"
                )
            )
    return issues


def check_theme_against_core(
    core: CoreDocument, theme: ThemeOverrideDocument
) -> tuple[list[ValidationIssue], list[PolicyViolation]]:
    """Referential and policy checks of a theme override against the core."""

    issues: list[ValidationIssue] = []
    violations: list[PolicyViolation] = []
    if theme.systemId != core.systemId:
        issues.append(
            ValidationIssue(
                "systemId", f"theme has {theme.systemId!r}, core has {core.systemId!r}"
            )
        )
    if not any(candidate.id == theme.themeId for candidate in core.themes):
        issues.append(
            ValidationIssue("themeId", f"theme {theme.themeId!r} not found in core themes")
        )
    core_tokens = core.token_index()
    for override in theme.tokenOverrides:
        token = core_tokens.get(override.tokenId)
        if token is None:
            violations.append(unknown_theme_target(override.tokenId, theme.themeId))
        elif not token.themeable:
            violations.append(non_themeable_target(override.tokenId, theme.themeId))
    return issues, violations


def non_themeable_target(token_id: str, theme_id: str | None) -> PolicyViolation:
    return PolicyViolation(
        code="non-themeable-token",
        message=f"Token {token_id!r} is not themeable and cannot be overridden by a theme",
        token_id=token_id,
        source_type=SourceType.THEME_OVERRIDE.value,
        source_id=theme_id,
    )


def unknown_theme_target(token_id: str, theme_id: str | None) -> PolicyViolation:
    return PolicyViolation(
        code="theme-introduces-token",
        message=f"Theme override targets unknown token {token_id!r}; themes cannot introduce tokens",
        token_id=token_id,
        source_type=SourceType.THEME_OVERRIDE.value,
        source_id=theme_id,
    )


def find_duplicate_extension_sources(core: CoreDocument) -> dict[str, list[str]]:
    """Map ``repositoryUri:filePath`` to platform ids when shared by several platforms."""

    usage: dict[str, list[str]] = defaultdict(list)
    for platform in core.platforms:
        if platform.extensionSource is None:
            continue
        source = platform.extensionSource
        usage[f"{source.repositoryUri}:{source.filePath}"].append(platform.id)
    return {key: ids for key, ids in usage.items() if len(ids) > 1}
