"""tokenlayer package root exposing the token merge engine."""

from .core import (  # isort: skip
    ChangeTracker,
    CoreDocument,
    MergeEngine,
    OverrideSynthesizer,
    SchemaValidator,
    SourceManager,
)

__all__ = [
    "ChangeTracker",
    "CoreDocument",
    "MergeEngine",
    "OverrideSynthesizer",
    "SchemaValidator",
    "SourceManager",
]
