"""Typed models for core, platform-extension and theme-override documents.

Attribute names mirror the JSON wire format (camelCase) so that
``model_dump()`` reproduces the document shape other tools consume.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, List, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_VERSION = "1.0.0"
DEFAULT_CAPITALIZATION = "none"


class SourceType(str, Enum):
    """Closed set of document kinds a token can come from."""

    CORE = "core"
    PLATFORM_EXTENSION = "platform-extension"
    THEME_OVERRIDE = "theme-override"


@dataclass(frozen=True)
class SourceKey:
    """Identify one logical source: the core, a platform, or a theme."""

    source_type: SourceType
    source_id: str | None = None

    @classmethod
    def core(cls) -> "SourceKey":
        return cls(SourceType.CORE, None)

    @classmethod
    def platform(cls, platform_id: str) -> "SourceKey":
        return cls(SourceType.PLATFORM_EXTENSION, platform_id)

    @classmethod
    def theme(cls, theme_id: str) -> "SourceKey":
        return cls(SourceType.THEME_OVERRIDE, theme_id)

    @property
    def snapshot_name(self) -> str:
        return f"source:{self.source_type.value}:{self.source_id or '-'}"

    def __str__(self) -> str:
        if self.source_id is None:
            return self.source_type.value
        return f"{self.source_type.value}/{self.source_id}"

    def to_dict(self) -> dict[str, str | None]:
        return {"sourceType": self.source_type.value, "sourceId": self.source_id}


def mode_set(mode_ids: list[str] | tuple[str, ...]) -> frozenset[str]:
    """Return the identity of a ``valuesByMode`` entry (order-insensitive)."""
    return frozenset(mode_ids)


class ValueByMode(BaseModel):
    modeIds: List[str] = Field(default_factory=list)
    value: Any = None
    metadata: dict[str, Any] | None = None

    model_config = ConfigDict(extra="allow")

    def mode_key(self) -> frozenset[str]:
        return mode_set(self.modeIds)


class Mode(BaseModel):
    id: str
    name: str | None = None
    dimensionId: str | None = None

    model_config = ConfigDict(extra="allow")


class Dimension(BaseModel):
    id: str
    displayName: str | None = None
    modes: List[Mode] = Field(default_factory=list)
    defaultMode: str | None = None
    required: bool = False

    model_config = ConfigDict(extra="allow")


class SourceLocation(BaseModel):
    """Repository file backing a platform extension or theme override."""

    repositoryUri: str
    filePath: str
    branch: str | None = None


class SyntaxPatterns(BaseModel):
    prefix: str = ""
    suffix: str = ""
    delimiter: str = ""
    capitalization: str = DEFAULT_CAPITALIZATION
    formatString: str = ""

    @field_validator("capitalization", mode="before")
    @classmethod
    def _default_capitalization(cls, value: Any) -> Any:
        return DEFAULT_CAPITALIZATION if value is None else value


class ValueFormatters(BaseModel):
    color: str | None = None
    dimension: str | None = None
    numberPrecision: int | None = None


class Platform(BaseModel):
    id: str
    displayName: str | None = None
    syntaxPatterns: SyntaxPatterns | None = None
    valueFormatters: ValueFormatters | None = None
    extensionSource: SourceLocation | None = None

    model_config = ConfigDict(extra="allow")


class Theme(BaseModel):
    id: str
    displayName: str | None = None
    isDefault: bool = False
    overrideSource: SourceLocation | None = None

    model_config = ConfigDict(extra="allow")


class Entity(BaseModel):
    """Any id-bearing entity the engine passes through untouched."""

    id: str

    model_config = ConfigDict(extra="allow")


# Token fields the merge and override logic treat as individually overridable.
TOKEN_OVERRIDE_FIELDS: tuple[str, ...] = (
    "displayName",
    "description",
    "themeable",
    "private",
    "status",
    "tokenTier",
    "resolvedValueTypeId",
    "generatedByAlgorithm",
    "algorithmId",
    "taxonomies",
    "propertyTypes",
    "codeSyntax",
    "valuesByMode",
)


class Token(BaseModel):
    id: str
    displayName: str
    resolvedValueTypeId: str
    themeable: bool = False
    private: bool = False
    status: str | None = None
    valuesByMode: List[ValueByMode] = Field(default_factory=list)
    description: str | None = None
    tokenCollectionId: str | None = None
    tokenTier: str | None = None
    generatedByAlgorithm: bool | None = None
    algorithmId: str | None = None
    taxonomies: List[Any] | None = None
    propertyTypes: List[Any] | None = None
    codeSyntax: List[Any] | None = None

    model_config = ConfigDict(extra="allow")

    def value_for(self, mode_ids: list[str]) -> ValueByMode | None:
        key = mode_set(mode_ids)
        for entry in self.valuesByMode:
            if entry.mode_key() == key:
                return entry
        return None


class NamingRules(BaseModel):
    taxonomyOrder: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class CoreDocument(BaseModel):
    kind: ClassVar[SourceType] = SourceType.CORE

    systemId: str
    systemName: str | None = None
    version: str = DEFAULT_VERSION
    tokens: List[Token] = Field(default_factory=list)
    tokenCollections: List[Entity] = Field(default_factory=list)
    dimensions: List[Dimension] = Field(default_factory=list)
    dimensionOrder: List[str] = Field(default_factory=list)
    platforms: List[Platform] = Field(default_factory=list)
    themes: List[Theme] = Field(default_factory=list)
    taxonomies: List[Entity] = Field(default_factory=list)
    algorithms: List[Entity] = Field(default_factory=list)
    resolvedValueTypes: List[Entity] = Field(default_factory=list)
    namingRules: NamingRules = Field(default_factory=NamingRules)

    model_config = ConfigDict(extra="allow")

    @property
    def source_key(self) -> SourceKey:
        return SourceKey.core()

    def token_index(self) -> dict[str, Token]:
        return {token.id: token for token in self.tokens}

    def mode_ids(self) -> set[str]:
        return {mode.id for dimension in self.dimensions for mode in dimension.modes}

    def modes(self) -> list[Mode]:
        return [mode for dimension in self.dimensions for mode in dimension.modes]


class TokenOverride(BaseModel):
    """Partial token fragment inside a platform extension (keyed by ``id``)."""

    id: str
    displayName: str | None = None
    description: str | None = None
    themeable: bool | None = None
    private: bool | None = None
    status: str | None = None
    tokenTier: str | None = None
    resolvedValueTypeId: str | None = None
    generatedByAlgorithm: bool | None = None
    algorithmId: str | None = None
    taxonomies: List[Any] | None = None
    propertyTypes: List[Any] | None = None
    codeSyntax: List[Any] | None = None
    valuesByMode: List[ValueByMode] | None = None
    omit: bool = False

    model_config = ConfigDict(extra="allow")

    def present_fields(self) -> dict[str, Any]:
        """Overridable fields explicitly carried by this fragment."""
        return {
            name: getattr(self, name)
            for name in TOKEN_OVERRIDE_FIELDS
            if name in self.model_fields_set and getattr(self, name) is not None
        }


class AlgorithmVariableOverride(BaseModel):
    algorithmId: str
    variableId: str
    valuesByMode: List[ValueByMode] = Field(default_factory=list)


class PlatformExtensionDocument(BaseModel):
    kind: ClassVar[SourceType] = SourceType.PLATFORM_EXTENSION

    systemId: str
    platformId: str
    version: str = DEFAULT_VERSION
    figmaFileKey: str | None = None
    metadata: dict[str, Any] | None = None
    syntaxPatterns: SyntaxPatterns = Field(default_factory=SyntaxPatterns)
    valueFormatters: ValueFormatters | None = None
    algorithmVariableOverrides: List[AlgorithmVariableOverride] = Field(
        default_factory=list
    )
    tokenOverrides: List[TokenOverride] = Field(default_factory=list)
    omittedModes: List[str] = Field(default_factory=list)
    omittedDimensions: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    @field_validator("syntaxPatterns", mode="before")
    @classmethod
    def _default_syntax_patterns(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def source_key(self) -> SourceKey:
        return SourceKey.platform(self.platformId)


class ThemeTokenOverride(BaseModel):
    """Theme fragment (keyed by ``tokenId``, values only)."""

    tokenId: str
    valuesByMode: List[ValueByMode] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class ThemeOverrideDocument(BaseModel):
    kind: ClassVar[SourceType] = SourceType.THEME_OVERRIDE

    systemId: str
    themeId: str
    figmaFileKey: str | None = None
    tokenOverrides: List[ThemeTokenOverride] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    @property
    def source_key(self) -> SourceKey:
        return SourceKey.theme(self.themeId)


TypedDocument = Union[CoreDocument, PlatformExtensionDocument, ThemeOverrideDocument]

DOCUMENT_MODELS: dict[SourceType, type[BaseModel]] = {
    SourceType.CORE: CoreDocument,
    SourceType.PLATFORM_EXTENSION: PlatformExtensionDocument,
    SourceType.THEME_OVERRIDE: ThemeOverrideDocument,
}


def to_payload(document: BaseModel) -> dict[str, Any]:
    """Serialise a document or entity to its JSON wire shape."""
    return document.model_dump(mode="json", exclude_none=True)
