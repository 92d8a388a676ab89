"""Link, refresh and persist the remote documents feeding the merge."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Protocol

from .config import TokenLayerSettings
from .documents import (
    CoreDocument,
    PlatformExtensionDocument,
    SourceKey,
    SourceType,
    ThemeOverrideDocument,
    TypedDocument,
)
from .errors import StoreWriteError, TokenLayerError, UnsavedChangesError
from .merge import MergeEngine, MergeResult
from .overrides import SynthesisResult, fold_override
from .store import DocumentStore
from .tracking import ChangeTracker
from .validation import (
    SchemaValidator,
    check_extension_against_core,
    check_theme_against_core,
    find_duplicate_extension_sources,
)

logger = logging.getLogger("tokenlayer.sources")

CANCELLED_MESSAGE = "refresh cancelled"


@dataclass
class FetchedFile:
    content: str | bytes
    sha: str | None = None


class NetworkGateway(Protocol):
    async def fetch_file(self, repo_uri: str, path: str, branch: str) -> FetchedFile: ...

    async def write_file(
        self, repo_uri: str, path: str, branch: str, content: str, message: str
    ) -> None: ...


class LinkStatus(str, Enum):
    LOADING = "loading"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class SourceLink:
    key: SourceKey
    uri: str
    file_path: str
    branch: str
    status: LinkStatus = LinkStatus.LOADING
    error: str | None = None
    last_synced_at: datetime | None = None
    generation: int = 0
    previous: tuple[LinkStatus, str | None] | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.key.to_dict(),
            "uri": self.uri,
            "filePath": self.file_path,
            "branch": self.branch,
            "status": self.status.value,
            "error": self.error,
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }


def _identity_problem(key: SourceKey, document: TypedDocument) -> str | None:
    if isinstance(document, PlatformExtensionDocument) and document.platformId != key.source_id:
        return f"document declares platform {document.platformId!r}, link expects {key.source_id!r}"
    if isinstance(document, ThemeOverrideDocument) and document.themeId != key.source_id:
        return f"document declares theme {document.themeId!r}, link expects {key.source_id!r}"
    return None


class SourceManager:
    """Own the linked sources and keep the published merge current.

    Fetches run concurrently; every validate, store and re-merge step runs
    under one lock and recomputes the merge from all validated documents.
    """

    def __init__(
        self,
        gateway: NetworkGateway,
        store: DocumentStore,
        *,
        validator: SchemaValidator | None = None,
        engine: MergeEngine | None = None,
        tracker: ChangeTracker | None = None,
        settings: TokenLayerSettings | None = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.validator = validator or SchemaValidator()
        self.engine = engine or MergeEngine(self.validator)
        self.settings = settings or TokenLayerSettings()
        self.tracker = tracker or ChangeTracker(
            store,
            tracked_collections=self.settings.tracked_collections,
            divergence_collections=self.settings.divergence_collections,
        )
        self.links: Dict[SourceKey, SourceLink] = {}
        self.documents: Dict[SourceKey, TypedDocument] = {}
        # Documents as fetched, before model defaults are applied.
        self.raw_documents: Dict[SourceKey, dict[str, Any]] = {}
        self.active_theme_id: str | None = None
        self.last_result: MergeResult | None = None
        self._lock: asyncio.Lock | None = None

    def _merge_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def core(self) -> CoreDocument | None:
        document = self.documents.get(SourceKey.core())
        return document if isinstance(document, CoreDocument) else None

    def get_link(self, key: SourceKey) -> SourceLink | None:
        return self.links.get(key)

    async def link(
        self, key: SourceKey, uri: str, file_path: str, branch: str | None = None
    ) -> SourceLink:
        existing = self.links.get(key)
        source_link = SourceLink(
            key=key,
            uri=uri,
            file_path=file_path,
            branch=branch or self.settings.default_branch,
            generation=existing.generation + 1 if existing else 0,
        )
        self.links[key] = source_link
        logger.info("source_linked", extra={"source": str(key), "uri": uri, "path": file_path})
        return await self.refresh(key)

    async def refresh(self, key: SourceKey) -> SourceLink:
        source_link = self.links.get(key)
        if source_link is None:
            raise TokenLayerError(f"Source {key} is not linked")
        source_link.generation += 1
        generation = source_link.generation
        if source_link.status is not LinkStatus.LOADING or source_link.last_synced_at:
            source_link.previous = (source_link.status, source_link.error)
        source_link.status = LinkStatus.LOADING
        source_link.error = None

        try:
            fetched = await self.gateway.fetch_file(
                source_link.uri, source_link.file_path, source_link.branch
            )
        except Exception as exc:  # gateways raise whatever their transport raises
            if self._is_current(source_link, generation):
                self._fail(source_link, f"fetch failed: {exc}")
            return source_link

        async with self._merge_lock():
            if not self._is_current(source_link, generation):
                logger.info("refresh_discarded", extra={"source": str(key)})
                return source_link
            outcome = self.validator.validate(key.source_type, fetched.content)
            if not outcome.ok or outcome.document is None:
                self._fail(source_link, "; ".join(outcome.messages()))
                return source_link
            problem = _identity_problem(key, outcome.document)
            if problem:
                self._fail(source_link, problem)
                return source_link
            self._warn_referential(key, outcome.document)

            self.documents[key] = outcome.document
            self.raw_documents[key] = json.loads(fetched.content)
            self.tracker.capture_source_baseline(key, outcome.document)
            try:
                self._remerge()
            except StoreWriteError as exc:
                self._fail(source_link, str(exc))
                return source_link
            self._mark_synced(source_link)
        return source_link

    async def refresh_all(self) -> list[SourceLink]:
        return list(await asyncio.gather(*(self.refresh(key) for key in list(self.links))))

    async def unlink(self, key: SourceKey, *, discard_local_changes: bool = False) -> None:
        """Drop a source and re-merge without it.

        Raises ``UnsavedChangesError`` when the store holds unsaved edits,
        unless ``discard_local_changes`` is set.
        """

        async with self._merge_lock():
            self._check_unsaved("unlink", discard_local_changes)
            source_link = self.links.pop(key, None)
            if source_link is not None:
                source_link.generation += 1
            self.tracker.clear_source_baseline(key)
            self.documents.pop(key, None)
            self.raw_documents.pop(key, None)
            if key.source_type is SourceType.THEME_OVERRIDE and key.source_id == self.active_theme_id:
                self.active_theme_id = None
            self._remerge()
        logger.info("source_unlinked", extra={"source": str(key)})

    def cancel(self, key: SourceKey) -> None:
        source_link = self.links.get(key)
        if source_link is None or source_link.status is not LinkStatus.LOADING:
            return
        source_link.generation += 1
        if source_link.previous is not None:
            source_link.status, source_link.error = source_link.previous
        else:
            source_link.status = LinkStatus.ERROR
            source_link.error = CANCELLED_MESSAGE
        logger.info("refresh_cancelled", extra={"source": str(key)})

    async def set_active_theme(
        self, theme_id: str | None, *, discard_local_changes: bool = False
    ) -> MergeResult | None:
        async with self._merge_lock():
            self._check_unsaved("set_active_theme", discard_local_changes)
            self.active_theme_id = theme_id
            return self._remerge()

    async def link_declared_sources(self) -> list[SourceLink]:
        """Link every extension and override source the core document declares."""

        core = self.core
        if core is None:
            raise TokenLayerError("The core document must be linked first")
        duplicates = find_duplicate_extension_sources(core)
        claimed: set[str] = set()
        pending = []
        for platform in core.platforms:
            source = platform.extensionSource
            if source is None:
                continue
            location = f"{source.repositoryUri}:{source.filePath}"
            if location in claimed:
                logger.warning(
                    "duplicate_extension_source",
                    extra={"platform_id": platform.id, "platforms": duplicates.get(location, [])},
                )
                continue
            claimed.add(location)
            pending.append(
                self.link(
                    SourceKey.platform(platform.id),
                    source.repositoryUri,
                    source.filePath,
                    source.branch,
                )
            )
        for theme in core.themes:
            source = theme.overrideSource
            if source is None:
                continue
            pending.append(
                self.link(
                    SourceKey.theme(theme.id), source.repositoryUri, source.filePath, source.branch
                )
            )
        return list(await asyncio.gather(*pending))

    async def persist_override(
        self,
        override: SynthesisResult | Mapping[str, Any],
        message: str | None = None,
    ) -> SourceLink | None:
        """Fold an override payload into its source document and write it back."""

        if isinstance(override, SynthesisResult):
            if not override.ok:
                raise TokenLayerError(f"Cannot persist a failed synthesis: {override.error}")
            payload = override.payload
        else:
            payload = dict(override)
        if not payload:
            return None
        if not payload.get("systemId") and self.core is not None:
            payload = {**payload, "systemId": self.core.systemId}
        if "platformId" in payload:
            key = SourceKey.platform(payload["platformId"])
        elif "themeId" in payload:
            key = SourceKey.theme(payload["themeId"])
        else:
            raise TokenLayerError("Override payload names neither a platform nor a theme")
        source_link = self.links.get(key)
        if source_link is None:
            raise TokenLayerError(f"Source {key} is not linked")

        folded = fold_override(self.raw_documents.get(key), payload)
        outcome = self.validator.validate(key.source_type, folded)
        if not outcome.ok or outcome.document is None:
            self._fail(source_link, "; ".join(outcome.messages()))
            return source_link

        content = json.dumps(folded, indent=2) + "\n"
        commit_message = message or self.settings.commit_message.format(source=key)
        generation = source_link.generation
        try:
            await self.gateway.write_file(
                source_link.uri,
                source_link.file_path,
                source_link.branch,
                content,
                commit_message,
            )
        except Exception as exc:
            self._fail(source_link, f"write failed: {exc}")
            return source_link

        async with self._merge_lock():
            if not self._is_current(source_link, generation):
                return source_link
            self.documents[key] = outcome.document
            self.raw_documents[key] = folded
            self.tracker.capture_source_baseline(key, outcome.document)
            try:
                self._remerge()
            except StoreWriteError as exc:
                self._fail(source_link, str(exc))
                return source_link
            self._mark_synced(source_link)
        logger.info("override_persisted", extra={"source": str(key)})
        return source_link

    def _remerge(self) -> MergeResult | None:
        core = self.core
        if core is None:
            self.last_result = None
            return None
        extensions = [
            document
            for key, document in self._linked_documents()
            if isinstance(document, PlatformExtensionDocument)
        ]
        theme = None
        if self.active_theme_id is not None:
            candidate = self.documents.get(SourceKey.theme(self.active_theme_id))
            if isinstance(candidate, ThemeOverrideDocument):
                theme = candidate
        result = self.engine.merge(core, extensions, theme)
        self.store.set_many(result.resolved.to_collections())
        self.tracker.capture_baseline()
        self.last_result = result
        return result

    def _linked_documents(self) -> list[tuple[SourceKey, TypedDocument]]:
        return [(key, self.documents[key]) for key in self.links if key in self.documents]

    def _warn_referential(self, key: SourceKey, document: TypedDocument) -> None:
        core = self.core
        if core is None:
            return
        issues: list[Any] = []
        if isinstance(document, PlatformExtensionDocument):
            issues = check_extension_against_core(core, document)
        elif isinstance(document, ThemeOverrideDocument):
            found, violations = check_theme_against_core(core, document)
            issues = [*found, *violations]
        if issues:
            logger.warning(
                "source_references_unknown_entities",
                extra={"source": str(key), "issues": [str(issue) for issue in issues]},
            )

    def _check_unsaved(self, operation: str, discard: bool) -> None:
        if not self.tracker.has_unsaved_edits():
            return
        if not discard:
            raise UnsavedChangesError(
                f"{operation} would replace unsaved edits in the document store"
            )
        logger.warning("local_changes_discarded", extra={"operation": operation})

    def _is_current(self, source_link: SourceLink, generation: int) -> bool:
        return (
            self.links.get(source_link.key) is source_link
            and source_link.generation == generation
        )

    def _fail(self, source_link: SourceLink, message: str) -> None:
        source_link.status = LinkStatus.ERROR
        source_link.error = message
        logger.warning("source_error", extra={"source": str(source_link.key), "error": message})

    def _mark_synced(self, source_link: SourceLink) -> None:
        now = datetime.now(timezone.utc)
        source_link.status = LinkStatus.SYNCED
        source_link.error = None
        source_link.last_synced_at = now
        source_link.previous = None
        self.tracker.mark_synced(now)
