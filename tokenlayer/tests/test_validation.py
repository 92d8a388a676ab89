"""Tests for document validation and referential checks."""

from __future__ import annotations

import json
from typing import Any

import pytest

from tokenlayer.core import (
    CoreDocument,
    DocumentValidationError,
    PlatformExtensionDocument,
    SchemaValidator,
    SourceType,
)
from tokenlayer.core.validation import (
    check_extension_against_core,
    check_theme_against_core,
    find_duplicate_extension_sources,
)


def _base_extension(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "systemId": "acme-ds",
        "platformId": "ios",
        "tokenOverrides": [{"id": "T1", "valuesByMode": [{"modeIds": ["light"], "value": "#111"}]}],
    }
    payload.update(overrides)
    return payload


def test_validator_accepts_core_document(core_payload: dict[str, Any]) -> None:
    outcome = SchemaValidator().validate(SourceType.CORE, core_payload)

    assert outcome.ok
    assert isinstance(outcome.document, CoreDocument)
    assert outcome.document.version == "1.0.0"
    assert [token.id for token in outcome.document.tokens] == ["T1", "T2", "T3"]


def test_validator_reports_every_problem(core_payload: dict[str, Any]) -> None:
    del core_payload["systemId"]
    del core_payload["tokens"][0]["displayName"]

    errors = SchemaValidator().collect_errors(SourceType.CORE, core_payload)

    assert len(errors) >= 2
    assert any("systemId" in error for error in errors)
    assert any("displayName" in error for error in errors)


def test_validator_reports_invalid_json_text() -> None:
    outcome = SchemaValidator().validate("platform-extension", "{not json")

    assert not outcome.ok
    assert outcome.errors[0].path == "$"
    assert "invalid JSON" in outcome.errors[0].message


def test_validator_accepts_json_bytes() -> None:
    raw = json.dumps(_base_extension()).encode("utf-8")

    outcome = SchemaValidator().validate(SourceType.PLATFORM_EXTENSION, raw)

    assert outcome.ok
    assert isinstance(outcome.document, PlatformExtensionDocument)


def test_validator_rejects_duplicate_mode_sets(core_payload: dict[str, Any]) -> None:
    core_payload["tokens"][0]["valuesByMode"].append({"modeIds": ["light"], "value": "#222"})

    outcome = SchemaValidator().validate(SourceType.CORE, core_payload)

    assert not outcome.ok
    assert outcome.errors[0].path == "tokens.0.valuesByMode.2.modeIds"


def test_validator_rejects_global_entry_next_to_mode_entries(
    core_payload: dict[str, Any],
) -> None:
    core_payload["tokens"][1]["valuesByMode"].append({"modeIds": ["dark"], "value": 8})

    errors = SchemaValidator().collect_errors(SourceType.CORE, core_payload)

    assert any("must be the only entry" in error for error in errors)


def test_validate_or_raise_raises_with_issues() -> None:
    with pytest.raises(DocumentValidationError) as excinfo:
        SchemaValidator().validate_or_raise(
            SourceType.THEME_OVERRIDE, {"systemId": "acme-ds"}
        )

    assert excinfo.value.kind == "theme-override"
    assert excinfo.value.issues


def test_syntax_patterns_are_normalized() -> None:
    validator = SchemaValidator()
    without = validator.validate_or_raise(SourceType.PLATFORM_EXTENSION, _base_extension())
    with_null_case = validator.validate_or_raise(
        SourceType.PLATFORM_EXTENSION,
        _base_extension(syntaxPatterns={"prefix": "ac", "capitalization": None}),
    )

    assert isinstance(without, PlatformExtensionDocument)
    assert isinstance(with_null_case, PlatformExtensionDocument)
    assert without.syntaxPatterns.capitalization == "none"
    assert without.version == "1.0.0"
    assert with_null_case.syntaxPatterns.prefix == "ac"
    assert with_null_case.syntaxPatterns.capitalization == "none"


def test_extension_checked_against_core(core_document: CoreDocument) -> None:
    extension = PlatformExtensionDocument.model_validate(
        _base_extension(
            platformId="web",
            omittedModes=["sepia"],
            tokenOverrides=[
                {"id": "T1", "valuesByMode": [{"modeIds": ["hc"], "value": "#111"}]},
                {"id": "NEW", "displayName": "New"},
            ],
        )
    )

    messages = [str(issue) for issue in check_extension_against_core(core_document, extension)]

    assert any("platform 'web' not found" in message for message in messages)
    assert any("mode 'hc' not found" in message for message in messages)
    assert any("must specify resolvedValueTypeId" in message for message in messages)
    assert any("omitted mode 'sepia'" in message for message in messages)


def test_theme_checked_against_core(core_document: CoreDocument) -> None:
    theme = SchemaValidator().validate_or_raise(
        SourceType.THEME_OVERRIDE,
        {
            "systemId": "acme-ds",
            "themeId": "brand",
            "tokenOverrides": [
                {"tokenId": "T2", "valuesByMode": [{"modeIds": [], "value": 6}]},
                {"tokenId": "NOPE", "valuesByMode": [{"modeIds": [], "value": 1}]},
            ],
        },
    )

    issues, violations = check_theme_against_core(core_document, theme)  # type: ignore[arg-type]

    assert issues == []
    assert [violation.code for violation in violations] == [
        "non-themeable-token",
        "theme-introduces-token",
    ]


def test_duplicate_extension_sources_detected(core_payload: dict[str, Any]) -> None:
    core_payload["platforms"].append(
        {
            "id": "ipados",
            "extensionSource": {"repositoryUri": "acme/tokens", "filePath": "platforms/ios.json"},
        }
    )
    core = CoreDocument.model_validate(core_payload)

    duplicates = find_duplicate_extension_sources(core)

    assert duplicates == {"acme/tokens:platforms/ios.json": ["ios", "ipados"]}
