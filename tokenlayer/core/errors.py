"""Error types shared by the tokenlayer components."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class TokenLayerError(RuntimeError):
    """Base class for every exception raised by tokenlayer."""


@dataclass(frozen=True)
class ValidationIssue:
    """A single field-level problem found while validating a document."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message}


@dataclass(frozen=True)
class PolicyViolation:
    """A structurally valid request that a business rule disallows.

    Reported as a value so callers can explain the rule instead of showing a
    generic validation failure.
    """

    code: str
    message: str
    token_id: str | None = None
    source_type: str | None = None
    source_id: str | None = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.token_id:
            payload["tokenId"] = self.token_id
        if self.source_type:
            payload["sourceType"] = self.source_type
        if self.source_id:
            payload["sourceId"] = self.source_id
        return payload


class DocumentValidationError(TokenLayerError):
    """Raised by ``validate_or_raise`` when a document fails validation."""

    def __init__(self, kind: str, issues: list[ValidationIssue]) -> None:
        self.kind = kind
        self.issues = list(issues)
        lines = "\n".join(str(issue) for issue in self.issues)
        super().__init__(f"{kind} document failed validation:\n{lines}")


class SourceUnavailable(TokenLayerError):
    """Raised by a network gateway when a linked source cannot be reached."""

    def __init__(self, message: str, *, uri: str | None = None) -> None:
        self.uri = uri
        super().__init__(message)


class StoreWriteError(TokenLayerError):
    """Raised when a document store write is rejected. Nothing is written."""

    def __init__(self, collection: str, problems: list[str]) -> None:
        self.collection = collection
        self.problems = problems
        super().__init__(
            f"Refusing to write collection {collection!r}: " + "; ".join(problems)
        )


class UnsavedChangesError(TokenLayerError):
    """Raised when an operation would replace unsaved edits in the document store."""


@dataclass
class RejectedSource:
    """A source document excluded from a merge because it failed validation."""

    source_type: str
    source_id: str | None
    issues: list[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceType": self.source_type,
            "sourceId": self.source_id,
            "issues": [issue.to_dict() for issue in self.issues],
        }
