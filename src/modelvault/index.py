from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .client import InvalidArgumentError, ModelVaultError, RepositoryIOError
from .metadata import IndexEntry, ModelIndex, ModelMetadata, now_ticks
from .repository import ModelRepository, relative_to_prefix
from .semver import sort_versions_desc, try_parse

logger = logging.getLogger(__name__)


def should_advance_latest(current: str | None, incoming: str | None) -> bool:
    """
    Incoming replaces the stored latest version when it is >= under SemVer order.
    If either side does not parse the incoming value is always accepted.
    """
    old = try_parse(current)
    new = try_parse(incoming)
    if old is None or new is None:
        return True
    return new >= old


def apply_metadata(index: ModelIndex, metadata: ModelMetadata, *, now: int) -> IndexEntry:
    """Create or update the index entry for ``metadata``. Returns the entry."""
    if metadata is None or metadata.identity is None or not (metadata.identity.id or "").strip():
        raise InvalidArgumentError("Cannot update index: metadata identity/id is missing.")

    model_id = metadata.identity.id
    entry = index.get(model_id)
    if entry is None:
        release = metadata.upload_ticks or metadata.created_ticks or now
        entry = IndexEntry(
            id=model_id,
            name=metadata.identity.name or "",
            description=metadata.description or "",
            latest_version=metadata.version or "",
            tags=list(metadata.tags),
            updated_ticks=metadata.updated_ticks or now,
            release_ticks=release,
            scopes=list(metadata.scopes),
        )
        index.entries[model_id] = entry
    elif should_advance_latest(entry.latest_version, metadata.version):
        entry.latest_version = metadata.version or entry.latest_version
        if metadata.identity.name is not None:
            entry.name = metadata.identity.name
        if metadata.description:
            entry.description = metadata.description
        entry.updated_ticks = metadata.updated_ticks or now
        entry.release_ticks = metadata.upload_ticks or entry.updated_ticks
        entry.tags = list(metadata.tags)
        entry.scopes = list(metadata.scopes)

    if metadata.version:
        index.record_version(model_id, metadata.version)
    return entry


class ModelIndexService:
    """
    In-memory cache of the repository index. Owned by one service instance; every
    check-then-reload and read-modify-write sequence runs under ``_lock``.
    """

    def __init__(self, repo: ModelRepository, *, clock: Callable[[], int] = now_ticks) -> None:
        self._repo = repo
        self._clock = clock
        self._cache: ModelIndex | None = None
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._cache is not None

    async def _load_locked(self) -> ModelIndex:
        if self._cache is None:
            self._cache = await self._repo.load_index()
            logger.info("Loaded index with %d entries from %s", len(self._cache), self._repo.root)
        return self._cache

    async def get(self) -> ModelIndex:
        async with self._lock:
            return await self._load_locked()

    async def refresh(self) -> ModelIndex:
        async with self._lock:
            self._cache = await self._repo.load_index()
            logger.info("Refreshed index: %d entries", len(self._cache))
            return self._cache

    def invalidate(self) -> None:
        self._cache = None

    async def get_entry(self, model_id: str) -> IndexEntry | None:
        return (await self.get()).get(model_id)

    async def update_entry(self, metadata: ModelMetadata) -> IndexEntry:
        if metadata is None or metadata.identity is None or not (metadata.identity.id or "").strip():
            raise InvalidArgumentError("Cannot update index: metadata identity/id is missing.")

        async with self._lock:
            index = await self._load_locked()
            entry = apply_metadata(index, metadata, now=self._clock())
            try:
                await self._repo.save_index(index)
            except ModelVaultError:
                # The cache was mutated in place; drop it so the next read reflects the backend.
                self._cache = None
                raise
            self._cache = index
            logger.info("Index entry %s now advertises %s", entry.id, entry.latest_version)
            return entry

    async def forget_version(self, model_id: str, version: str) -> bool:
        async with self._lock:
            index = await self._load_locked()
            if not index.forget_version(model_id, version):
                return False
            try:
                await self._repo.save_index(index)
            except ModelVaultError:
                self._cache = None
                raise
            return True

    async def list_versions(self, model_id: str) -> list[str]:
        """All known versions of ``model_id``, newest first."""
        index = await self.get()
        seen: dict[str, str] = {}
        for version in index.known_versions(model_id):
            seen.setdefault(version.lower(), version)

        try:
            paths = await self._repo.list_files(model_id)
        except RepositoryIOError as e:
            logger.warning("Could not list repository versions of %s: %s", model_id, e)
            paths = []

        for path in paths:
            remainder = relative_to_prefix(path, model_id)
            if remainder is None or "/" not in remainder:
                continue
            candidate = remainder.split("/", 1)[0].strip()
            if candidate:
                seen.setdefault(candidate.lower(), candidate)

        versions = sort_versions_desc(seen.values())
        if not versions:
            entry = index.get(model_id)
            if entry is not None and entry.latest_version:
                versions.append(entry.latest_version)
        return versions
