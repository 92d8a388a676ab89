"""tokenlayer core package - merge, change tracking and override synthesis."""

from .config import TokenLayerSettings, configure_logging, load_settings
from .documents import (
    CoreDocument,
    PlatformExtensionDocument,
    SourceKey,
    SourceType,
    ThemeOverrideDocument,
    Token,
    ValueByMode,
)
from .errors import (
    DocumentValidationError,
    PolicyViolation,
    RejectedSource,
    SourceUnavailable,
    StoreWriteError,
    TokenLayerError,
    UnsavedChangesError,
    ValidationIssue,
)
from .merge import (
    MergeAnalytics,
    MergedView,
    MergeEngine,
    MergeOptions,
    MergeResult,
    TokenProvenance,
    find_integrity_problems,
    merge,
)
from .overrides import (
    EditContext,
    OverrideChange,
    OverrideSynthesizer,
    OverrideTracker,
    SynthesisResult,
    fold_override,
)
from .sources import FetchedFile, LinkStatus, NetworkGateway, SourceLink, SourceManager
from .store import Baseline, DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore
from .tracking import ChangeSet, ChangeTracker, ChangeTrackingState, RemoteSession
from .validation import SchemaValidator, ValidationOutcome

__all__ = [
    "Baseline",
    "ChangeSet",
    "ChangeTracker",
    "ChangeTrackingState",
    "CoreDocument",
    "DocumentStore",
    "DocumentValidationError",
    "EditContext",
    "FetchedFile",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "LinkStatus",
    "MergeAnalytics",
    "MergeEngine",
    "MergeOptions",
    "MergeResult",
    "MergedView",
    "NetworkGateway",
    "OverrideChange",
    "OverrideSynthesizer",
    "OverrideTracker",
    "PlatformExtensionDocument",
    "PolicyViolation",
    "RejectedSource",
    "RemoteSession",
    "SchemaValidator",
    "SourceKey",
    "SourceLink",
    "SourceManager",
    "SourceType",
    "SourceUnavailable",
    "StoreWriteError",
    "SynthesisResult",
    "ThemeOverrideDocument",
    "Token",
    "TokenLayerError",
    "UnsavedChangesError",
    "TokenLayerSettings",
    "TokenProvenance",
    "ValidationIssue",
    "ValidationOutcome",
    "ValueByMode",
    "configure_logging",
    "find_integrity_problems",
    "fold_override",
    "load_settings",
    "merge",
]
