from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .client import ModelVaultError
from .config import DEFAULT_UPDATE_CHECK_INTERVAL_S
from .index import ModelIndexService
from .install import InstallRecordLocator, find_install_records
from .metadata import ModelIndex, ModelMetadata
from .repository import ModelRepository
from .semver import UNKNOWN_VERSION, has_update, try_parse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateInfo:
    model_id: str
    name: str
    local_version: str
    remote_version: str
    has_update: bool
    description: str
    last_checked: float


def is_refresh_due(now: float, last_checked: float | None, interval_s: float) -> bool:
    if last_checked is None:
        return True
    if now < last_checked:
        # Clock moved backwards.
        return True
    return now - last_checked >= interval_s


def describe_update(local_version: str, remote_version: str, remote_metadata: ModelMetadata | None = None) -> str:
    if remote_metadata is not None and remote_metadata.changelog:
        # Ties go to the entry written last.
        _, newest = max(enumerate(remote_metadata.changelog), key=lambda pair: (pair[1].timestamp, pair[0]))
        if newest.summary.strip():
            return newest.summary.strip()

    local = try_parse(local_version)
    remote = try_parse(remote_version)
    if local is not None and remote is not None:
        if remote.major > local.major:
            kind = "Major"
        elif remote.minor > local.minor:
            kind = "Minor"
        else:
            kind = "Patch"
        return f"{kind} update available: {local_version} -> {remote_version}"
    return f"Update available: {local_version} -> {remote_version}"


class LocalVersionSource(Protocol):
    async def scan(self, index: ModelIndex) -> dict[str, str]:
        """Map of model id -> locally installed version, for models that could be detected."""
        ...


class WorkspaceVersionScanner:
    """
    Detects installed versions from install markers. Models without a marker fall back to
    asset-identifier presence when a repository and locator are available.
    """

    def __init__(
        self,
        workspace_root: str | Path,
        repository: ModelRepository | None = None,
        locator: InstallRecordLocator | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root).expanduser()
        self._repo = repository
        self._locator = locator

    async def scan(self, index: ModelIndex) -> dict[str, str]:
        records = await asyncio.to_thread(find_install_records, self.workspace_root)
        found: dict[str, str] = {}
        for record in records:
            if record.model_id in index and record.version:
                found.setdefault(record.model_id, record.version)

        if self._repo is None or self._locator is None:
            return found

        snapshot = await asyncio.to_thread(self._locator.snapshot)
        if not snapshot:
            return found
        for entry in index.entries.values():
            if entry.id in found or not entry.latest_version:
                continue
            try:
                meta = await self._repo.load_metadata(entry.id, entry.latest_version)
            except ModelVaultError as e:
                logger.debug("No metadata for %s %s: %s", entry.id, entry.latest_version, e)
                continue
            if meta.asset_ids and all(a in snapshot for a in meta.asset_ids):
                found[entry.id] = entry.latest_version
        return found


class UpdateDetector:
    """
    Cached view of which installed models have newer versions in the index. The cache is
    rebuilt by whichever call arrives after ``interval_s`` has elapsed.
    """

    def __init__(
        self,
        index: ModelIndexService,
        local_versions: LocalVersionSource,
        *,
        repo: ModelRepository | None = None,
        interval_s: float = DEFAULT_UPDATE_CHECK_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._index = index
        self._local = local_versions
        self._repo = repo
        self.interval_s = interval_s
        self._clock = clock
        self._cache: dict[str, UpdateInfo] = {}
        self._last_checked: float | None = None
        self._lock = asyncio.Lock()

    @property
    def last_checked(self) -> float | None:
        return self._last_checked

    async def _ensure_fresh(self, *, force: bool = False) -> dict[str, UpdateInfo]:
        async with self._lock:
            now = self._clock()
            if force or is_refresh_due(now, self._last_checked, self.interval_s):
                self._cache = await self._rescan(now)
                self._last_checked = now
            return self._cache

    async def _rescan(self, now: float) -> dict[str, UpdateInfo]:
        index = await self._index.refresh()
        local = await self._local.scan(index)

        out: dict[str, UpdateInfo] = {}
        for model_id, local_version in local.items():
            entry = index.get(model_id)
            if entry is None or not local_version or local_version == UNKNOWN_VERSION:
                continue
            remote_version = entry.latest_version
            update = has_update(local_version, remote_version)
            description = ""
            if update:
                remote_meta = await self._remote_metadata(entry.id, remote_version)
                description = describe_update(local_version, remote_version, remote_meta)
            out[model_id] = UpdateInfo(
                model_id=model_id,
                name=entry.name or model_id,
                local_version=local_version,
                remote_version=remote_version,
                has_update=update,
                description=description,
                last_checked=now,
            )

        updates = sum(1 for i in out.values() if i.has_update)
        logger.info("Update scan: %d installed model(s), %d with updates", len(out), updates)
        return out

    async def _remote_metadata(self, model_id: str, version: str) -> ModelMetadata | None:
        if self._repo is None:
            return None
        try:
            return await self._repo.load_metadata(model_id, version)
        except ModelVaultError as e:
            logger.debug("Could not load %s %s for the update description: %s", model_id, version, e)
            return None

    async def get_available_updates(self) -> list[UpdateInfo]:
        cache = await self._ensure_fresh()
        return sorted((i for i in cache.values() if i.has_update), key=lambda i: (i.name.lower(), i.model_id))

    async def get_update_info(self, model_id: str) -> UpdateInfo | None:
        return (await self._ensure_fresh()).get(model_id)

    async def has_update(self, model_id: str) -> bool:
        info = await self.get_update_info(model_id)
        return info is not None and info.has_update

    async def get_update_count(self) -> int:
        return len(await self.get_available_updates())

    async def refresh_all(self) -> list[UpdateInfo]:
        await self._ensure_fresh(force=True)
        return await self.get_available_updates()

    def clear_cache(self) -> None:
        self._cache = {}
        self._last_checked = None
