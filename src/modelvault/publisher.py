from __future__ import annotations

import asyncio
import copy
import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Callable

from .client import InvalidArgumentError, InvalidOperationError, ModelVaultError, NotFoundError, RepositoryIOError
from .index import ModelIndexService
from .metadata import (
    DEFAULT_AUTHOR,
    METADATA_FILENAME,
    ModelIdentity,
    ModelMetadata,
    ensure_changelog_entry,
    now_ticks,
)
from .repository import ModelRepository, relative_to_prefix, version_root
from .semver import SemVer, try_parse

logger = logging.getLogger(__name__)

INITIAL_SUBMISSION_SUMMARY = "Initial submission"
METADATA_UPDATE_SUMMARY = "Metadata updated"

BumpStrategy = Callable[[SemVer], SemVer]


def _new_model_id() -> str:
    return uuid.uuid4().hex


def _default_bump(version: SemVer) -> SemVer:
    return version.bump_patch()


def _local_payload_files(local_root: Path) -> list[tuple[str, Path]]:
    out: list[tuple[str, Path]] = []
    for p in sorted(local_root.rglob("*")):
        if not p.is_file():
            continue
        rel = p.relative_to(local_root).as_posix()
        if rel == METADATA_FILENAME:
            continue
        out.append((rel, p))
    return out


def _remove_staging(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning("Could not remove staging directory %s: %s", path, e)


class VersionPublisher:
    """
    Publishes versions to the repository. Each operation runs
    Validate -> Write Payload -> Persist Metadata -> Update Index, and validation
    failures happen before anything is written.
    """

    def __init__(
        self,
        repo: ModelRepository,
        index: ModelIndexService,
        *,
        clock: Callable[[], int] = now_ticks,
        id_factory: Callable[[], str] = _new_model_id,
    ) -> None:
        self._repo = repo
        self._index = index
        self._clock = clock
        self._id_factory = id_factory

    async def submit_new_version(
        self,
        metadata: ModelMetadata,
        local_root: str | Path,
        change_summary: str | None = None,
    ) -> str:
        """
        Upload the files under ``local_root`` as a new version of ``metadata``.
        ``metadata`` is updated in place (id, timestamps, changelog). Returns ``<id>/<version>``.
        """
        if metadata is None:
            raise InvalidArgumentError("metadata is required.")
        if not metadata.version or not metadata.version.strip():
            raise InvalidArgumentError("metadata.version is required.")
        root = Path(local_root).expanduser()
        if not root.is_dir():
            raise InvalidArgumentError(f"Local payload directory does not exist: {root}")

        if metadata.identity is None:
            metadata.identity = ModelIdentity()
        if not (metadata.identity.id or "").strip():
            metadata.identity.id = self._id_factory()
            logger.info("Assigned new model id %s", metadata.identity.id)

        model_id = metadata.identity.id
        version = metadata.version.strip()
        metadata.version = version

        now = self._clock()
        if metadata.created_ticks <= 0:
            metadata.created_ticks = now
        metadata.updated_ticks = now
        metadata.upload_ticks = now
        if not (metadata.author or "").strip():
            metadata.author = DEFAULT_AUTHOR
        ensure_changelog_entry(
            metadata,
            change_summary or INITIAL_SUBMISSION_SUMMARY,
            metadata.author,
            version,
            now,
        )

        files = await asyncio.to_thread(_local_payload_files, root)
        if not metadata.payload_paths:
            metadata.payload_paths = [rel for rel, _ in files]

        target = version_root(model_id, version)
        await self._repo.ensure_directory(target)
        for rel, path in files:
            await self._repo.upload_file(f"{target}/{rel}", path)
        logger.info("Uploaded %d file(s) to %s", len(files), target)

        await self._repo.save_metadata(model_id, version, metadata)
        await self._index.update_entry(metadata)
        return target

    async def publish_metadata_update(
        self,
        updated: ModelMetadata,
        base_version: str | None = None,
        change_summary: str | None = None,
        author: str | None = None,
        bump_strategy: BumpStrategy | None = None,
    ) -> ModelMetadata:
        """
        Publish ``updated`` as a new version whose payload is copied unchanged from
        ``base_version``. The caller's object is left untouched; the published copy is returned.
        """
        if updated is None or updated.identity is None or not (updated.identity.id or "").strip():
            raise InvalidArgumentError("Cannot publish a metadata update without a model identity.")

        base = (base_version or updated.version or "").strip()
        if not base:
            raise InvalidOperationError("No base version to publish a metadata update from.")
        parsed = try_parse(base)
        if parsed is None:
            raise InvalidOperationError(f"Base version {base!r} is not a valid MAJOR.MINOR.PATCH version.")
        new_version = str((bump_strategy or _default_bump)(parsed))

        model_id = updated.identity.id
        base_root = version_root(model_id, base)
        if not await self._repo.directory_exists(base_root):
            raise NotFoundError(f"Base version does not exist in the repository: {base_root}")
        if base != new_version and await self._repo.directory_exists(version_root(model_id, new_version)):
            raise InvalidOperationError(f"Version {new_version} of {model_id} is already published.")

        meta = copy.deepcopy(updated)
        now = self._clock()
        meta.version = new_version
        meta.updated_ticks = now
        meta.upload_ticks = now
        if meta.created_ticks <= 0:
            meta.created_ticks = now
        change_author = (author or "").strip() or (meta.author or "").strip() or DEFAULT_AUTHOR
        if not (meta.author or "").strip():
            meta.author = change_author
        ensure_changelog_entry(meta, change_summary or METADATA_UPDATE_SUMMARY, change_author, new_version, now)

        if base == new_version:
            logger.info("Base and new version are both %s; skipping payload clone", base)
        else:
            await self._clone_payload(base_root, version_root(model_id, new_version))

        await self._repo.save_metadata(model_id, new_version, meta)
        await self._index.update_entry(meta)
        logger.info("Published metadata update %s/%s (base %s)", model_id, new_version, base)
        return meta

    async def _clone_payload(self, source_root: str, target_root: str) -> None:
        staging = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="modelvault-clone-"))
        try:
            await self._repo.ensure_directory(target_root)
            copied = 0
            for path in await self._repo.list_files(source_root):
                rel = relative_to_prefix(path, source_root)
                if not rel or rel == METADATA_FILENAME:
                    continue
                local = staging / rel
                await self._repo.download_file(path, local)
                await self._repo.upload_file(f"{target_root}/{rel}", local)
                copied += 1
            logger.info("Cloned %d file(s) from %s to %s", copied, source_root, target_root)
        except (ModelVaultError, OSError) as e:
            await self._discard_partial(target_root)
            raise RepositoryIOError(f"Failed to clone {source_root} to {target_root}: {e}") from e
        finally:
            await asyncio.to_thread(_remove_staging, staging)

    async def _discard_partial(self, target_root: str) -> None:
        try:
            await self._repo.delete_if_exists(target_root)
        except ModelVaultError as e:
            logger.warning("Could not remove partially cloned version %s: %s", target_root, e)
