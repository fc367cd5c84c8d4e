from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path

from .client import DownloadError, InvalidArgumentError, ModelVaultError, RepositoryIOError
from .metadata import METADATA_FILENAME, ModelMetadata
from .repository import ModelRepository, normalize_repo_path, relative_to_prefix, version_root, write_json_atomic

logger = logging.getLogger(__name__)


def _safe_segment(value: str, *, what: str) -> str:
    seg = normalize_repo_path(value)
    if not seg or "/" in seg or seg == "..":
        raise InvalidArgumentError(f"Invalid {what} for a cache path: {value!r}")
    return seg


class LocalCacheSynchronizer:
    """
    Mirrors repository versions into ``<cache_root>/<model_id>/<version>/`` and keeps
    the version's metadata beside the payload as ``model.json``.
    """

    def __init__(self, repo: ModelRepository, cache_root: str | Path) -> None:
        self._repo = repo
        self.cache_root = Path(cache_root).expanduser()

    def cache_path(self, model_id: str, version: str) -> Path:
        return self.cache_root / _safe_segment(model_id, what="model id") / _safe_segment(version, what="version")

    def is_cached(self, model_id: str, version: str) -> bool:
        return (self.cache_path(model_id, version) / METADATA_FILENAME).is_file()

    def cached_metadata(self, model_id: str, version: str) -> ModelMetadata | None:
        path = self.cache_path(model_id, version) / METADATA_FILENAME
        if not path.is_file():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable cached metadata %s: %s", path, e)
            return None
        return ModelMetadata.from_dict(raw)

    def evict(self, model_id: str, version: str) -> bool:
        path = self.cache_path(model_id, version)
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True

    async def download_version(self, model_id: str, version: str) -> tuple[Path, ModelMetadata]:
        """
        Download every file of ``model_id/version`` into the local cache. Files that fail are
        skipped and reported together as a ``DownloadError`` once the rest have been fetched.
        """
        local_root = self.cache_path(model_id, version)
        metadata = await self._repo.load_metadata(model_id, version)

        try:
            await asyncio.to_thread(write_json_atomic, local_root / METADATA_FILENAME, metadata.to_dict())
        except OSError as e:
            raise RepositoryIOError(f"Could not write cached metadata under {local_root}: {e}") from e

        remote_root = version_root(model_id, version)
        failed: list[str] = []
        downloaded = 0
        for path in await self._repo.list_files(remote_root):
            rel = relative_to_prefix(path, remote_root)
            if not rel or rel == METADATA_FILENAME:
                continue
            if ".." in rel.split("/"):
                logger.warning("Skipping repository path outside %s: %s", remote_root, path)
                failed.append(path)
                continue
            try:
                await self._repo.download_file(path, local_root / rel)
            except ModelVaultError as e:
                logger.warning("Failed to download %s: %s", path, e)
                failed.append(path)
                continue
            downloaded += 1

        if failed:
            raise DownloadError(
                f"Failed to download {len(failed)} file(s) of {remote_root}",
                failed=tuple(failed),
            )
        logger.info("Cached %s (%d file(s)) at %s", remote_root, downloaded, local_root)
        return local_root, metadata
