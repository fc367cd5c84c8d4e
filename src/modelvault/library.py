from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from .client import InvalidArgumentError, InvalidOperationError, ModelVaultClient
from .config import DEFAULT_UPDATE_CHECK_INTERVAL_S, Config
from .conflicts import ConflictResolver, Decider
from .index import ModelIndexService
from .install import InstallRecordLocator, InstallResult, WorkspaceInstaller
from .logging_config import configure_logging
from .metadata import ModelIndex, ModelMetadata, now_ticks
from .publisher import BumpStrategy, VersionPublisher
from .repository import HttpRepository, ModelRepository, create_repository, version_root
from .sync import LocalCacheSynchronizer
from .updates import LocalVersionSource, UpdateDetector, UpdateInfo, WorkspaceVersionScanner

logger = logging.getLogger(__name__)


class ModelLibrary:
    """
    One service instance over a repository: index cache, publishing, local cache,
    workspace installs and update detection.
    """

    def __init__(
        self,
        repository: ModelRepository,
        cache_root: str | Path,
        workspace_root: str | Path | None = None,
        *,
        decide: Decider | None = None,
        local_versions: LocalVersionSource | None = None,
        update_check_interval_s: float = DEFAULT_UPDATE_CHECK_INTERVAL_S,
        clock: Callable[[], int] = now_ticks,
        wall_clock: Callable[[], float] = time.time,
        client: ModelVaultClient | None = None,
    ) -> None:
        self.repository = repository
        self.index = ModelIndexService(repository, clock=clock)
        self.publisher = VersionPublisher(repository, self.index, clock=clock)
        self.synchronizer = LocalCacheSynchronizer(repository, cache_root)
        self.resolver = ConflictResolver(decide)
        self.workspace_root = Path(workspace_root).expanduser() if workspace_root else None
        self._client = client

        self.installer: WorkspaceInstaller | None = None
        if self.workspace_root is not None:
            locator = InstallRecordLocator(self.workspace_root)
            self.installer = WorkspaceInstaller(self.workspace_root, self.resolver, locator)
            if local_versions is None:
                local_versions = WorkspaceVersionScanner(self.workspace_root, repository, locator)

        self.updates: UpdateDetector | None = None
        if local_versions is not None:
            self.updates = UpdateDetector(
                self.index,
                local_versions,
                repo=repository,
                interval_s=update_check_interval_s,
                clock=wall_clock,
            )

    @classmethod
    def from_config(cls, config: Config, *, decide: Decider | None = None) -> "ModelLibrary":
        configure_logging(config.log_level, config.log_file)
        repository = create_repository(config)
        client = repository.client if isinstance(repository, HttpRepository) else None
        logger.info("Opening %s repository at %s", config.repository_kind, repository.root)
        return cls(
            repository,
            config.resolved_cache_root(),
            config.workspace_root,
            decide=decide,
            update_check_interval_s=config.update_check_interval_s,
            client=client,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> "ModelLibrary":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # Index

    async def get_index(self) -> ModelIndex:
        return await self.index.get()

    async def refresh_index(self) -> ModelIndex:
        return await self.index.refresh()

    def invalidate_index(self) -> None:
        self.index.invalidate()

    async def get_metadata(self, model_id: str, version: str | None = None) -> ModelMetadata:
        if version is None:
            entry = await self.index.get_entry(model_id)
            if entry is None or not entry.latest_version:
                raise InvalidArgumentError(f"Unknown model {model_id!r}.")
            version = entry.latest_version
        return await self.repository.load_metadata(model_id, version)

    async def list_versions(self, model_id: str) -> list[str]:
        return await self.index.list_versions(model_id)

    # Publishing

    async def submit_new_version(
        self,
        metadata: ModelMetadata,
        local_root: str | Path,
        change_summary: str | None = None,
    ) -> str:
        return await self.publisher.submit_new_version(metadata, local_root, change_summary)

    async def publish_metadata_update(
        self,
        updated: ModelMetadata,
        base_version: str | None = None,
        change_summary: str | None = None,
        author: str | None = None,
        bump_strategy: BumpStrategy | None = None,
    ) -> ModelMetadata:
        return await self.publisher.publish_metadata_update(updated, base_version, change_summary, author, bump_strategy)

    async def delete_version(self, model_id: str, version: str) -> bool:
        entry = await self.index.get_entry(model_id)
        if entry is not None and entry.latest_version.lower() == version.lower():
            logger.warning("Deleting %s %s, which the index still advertises as the latest version", model_id, version)
        deleted = await self.repository.delete_if_exists(version_root(model_id, version))
        forgotten = await self.index.forget_version(model_id, version)
        return deleted or forgotten

    # Local cache and workspace

    async def download_version(self, model_id: str, version: str) -> tuple[Path, ModelMetadata]:
        return await self.synchronizer.download_version(model_id, version)

    async def install_version(
        self,
        model_id: str,
        version: str,
        destination: str | Path | None = None,
        *,
        is_update: bool = False,
    ) -> InstallResult:
        if self.installer is None:
            raise InvalidOperationError("No workspace_root configured; cannot install.")
        local_root, metadata = await self.download_version(model_id, version)
        result = await self.installer.install(local_root, metadata, destination, is_update=is_update)
        if self.updates is not None:
            self.updates.clear_cache()
        return result

    # Updates

    def _detector(self) -> UpdateDetector:
        if self.updates is None:
            raise InvalidOperationError("Update detection needs a workspace_root or a local version source.")
        return self.updates

    async def get_available_updates(self) -> list[UpdateInfo]:
        return await self._detector().get_available_updates()

    async def get_update_info(self, model_id: str) -> UpdateInfo | None:
        return await self._detector().get_update_info(model_id)

    async def has_update(self, model_id: str) -> bool:
        return await self._detector().has_update(model_id)

    async def get_update_count(self) -> int:
        return await self._detector().get_update_count()

    async def refresh_updates(self) -> list[UpdateInfo]:
        return await self._detector().refresh_all()

    def clear_update_cache(self) -> None:
        if self.updates is not None:
            self.updates.clear_cache()
