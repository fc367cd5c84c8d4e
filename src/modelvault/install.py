from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .client import ConflictError, InvalidArgumentError, RepositoryIOError
from .conflicts import ConflictOutcome, ConflictReport, ConflictResolver
from .metadata import METADATA_FILENAME, ModelMetadata
from .repository import write_json_atomic

logger = logging.getLogger(__name__)

INSTALL_RECORD_FILENAME = ".modelvault-meta.json"
_TMP_DIRNAME = ".modelvault-tmp"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


@dataclass(frozen=True)
class InstallRecord:
    model_id: str
    version: str
    name: str = ""
    asset_ids: tuple[str, ...] = ()
    installed_at: str = ""
    path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.model_id,
            "name": self.name,
            "version": self.version,
            "asset_ids": list(self.asset_ids),
            "installed_at": self.installed_at,
        }


@dataclass(frozen=True)
class InstallResult:
    destination: Path
    record: InstallRecord
    report: ConflictReport
    outcome: ConflictOutcome


def sanitize_folder_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name or "").strip(" .")
    return cleaned


def read_install_record(directory: Path) -> InstallRecord | None:
    path = Path(directory) / INSTALL_RECORD_FILENAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable install marker %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        return None
    model_id = data.get("id")
    version = data.get("version")
    if not isinstance(model_id, str) or not model_id.strip() or not isinstance(version, str):
        return None
    asset_ids = data.get("asset_ids")
    return InstallRecord(
        model_id=model_id,
        version=version,
        name=data.get("name") if isinstance(data.get("name"), str) else "",
        asset_ids=tuple(a for a in asset_ids if isinstance(a, str)) if isinstance(asset_ids, list) else (),
        installed_at=data.get("installed_at") if isinstance(data.get("installed_at"), str) else "",
        path=Path(directory),
    )


def write_install_record(directory: Path, metadata: ModelMetadata) -> InstallRecord:
    record = InstallRecord(
        model_id=metadata.model_id or "",
        version=metadata.version or "",
        name=metadata.display_name,
        asset_ids=tuple(metadata.asset_ids),
        installed_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        path=Path(directory),
    )
    write_json_atomic(Path(directory) / INSTALL_RECORD_FILENAME, record.to_dict())
    return record


def find_install_records(workspace_root: Path) -> list[InstallRecord]:
    root = Path(workspace_root)
    if not root.is_dir():
        return []
    out: list[InstallRecord] = []
    for marker in sorted(root.rglob(INSTALL_RECORD_FILENAME)):
        if _TMP_DIRNAME in marker.relative_to(root).parts:
            continue
        record = read_install_record(marker.parent)
        if record is not None:
            out.append(record)
    return out


def _relative_or_abs(path: Path, *, base: Path) -> str:
    try:
        return path.resolve().relative_to(base.resolve()).as_posix()
    except ValueError:
        return path.resolve().as_posix()


class InstallRecordLocator:
    """Builds the asset-identifier snapshot (identifier -> workspace-relative folder) from install markers."""

    def __init__(self, workspace_root: str | Path) -> None:
        self.workspace_root = Path(workspace_root).expanduser()

    def snapshot(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for record in find_install_records(self.workspace_root):
            folder = _relative_or_abs(record.path or self.workspace_root, base=self.workspace_root)
            for asset_id in record.asset_ids:
                out.setdefault(asset_id, folder)
        return out


def _copy_payload(source: Path, target: Path) -> None:
    shutil.copytree(source, target, ignore=shutil.ignore_patterns(METADATA_FILENAME, INSTALL_RECORD_FILENAME))


class WorkspaceInstaller:
    """Materializes cached versions into the workspace."""

    def __init__(
        self,
        workspace_root: str | Path,
        resolver: ConflictResolver | None = None,
        locator: InstallRecordLocator | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root).expanduser()
        self.resolver = resolver or ConflictResolver()
        self.locator = locator or InstallRecordLocator(self.workspace_root)

    def default_destination(self, metadata: ModelMetadata) -> Path:
        folder = sanitize_folder_name(metadata.display_name) or sanitize_folder_name(metadata.model_id or "")
        if not folder:
            raise InvalidArgumentError("Cannot derive an install folder: metadata has no name or id.")
        return self.workspace_root / folder

    def _resolve_destination(self, metadata: ModelMetadata, destination: str | Path | None) -> Path:
        if destination is None:
            return self.default_destination(metadata)
        dest = Path(destination).expanduser()
        if not dest.is_absolute():
            dest = self.workspace_root / dest
        return dest

    async def install(
        self,
        cache_root: str | Path,
        metadata: ModelMetadata,
        destination: str | Path | None = None,
        *,
        is_update: bool = False,
    ) -> InstallResult:
        source = Path(cache_root)
        if not source.is_dir():
            raise InvalidArgumentError(f"Cached version does not exist: {source}")
        if not metadata.model_id:
            raise InvalidArgumentError("Cannot install a model without an id.")

        dest = self._resolve_destination(metadata, destination)
        existing = read_install_record(dest)
        if existing is not None:
            if existing.model_id != metadata.model_id:
                raise ConflictError(
                    f"{dest} already holds model {existing.model_id}; install {metadata.model_id} elsewhere."
                )
            is_update = True

        # Taken before anything from this version is written.
        snapshot = await asyncio.to_thread(self.locator.snapshot)
        report, outcome = await self.resolver.check_and_resolve(
            metadata,
            _relative_or_abs(dest, base=self.workspace_root),
            snapshot,
            is_update=is_update,
        )

        installed = metadata
        if outcome.remap:
            installed = copy.deepcopy(metadata)
            installed.asset_ids = [outcome.remap.get(a, a) for a in metadata.asset_ids]
            logger.info("Regenerated %d asset id(s) for %s", len(outcome.remap), metadata.model_id)

        try:
            record = await asyncio.to_thread(self._install_tree, source, dest, installed)
        except OSError as e:
            raise RepositoryIOError(f"Failed to install {metadata.model_id} into {dest}: {e}") from e
        logger.info("Installed %s %s into %s", metadata.model_id, metadata.version, dest)
        return InstallResult(destination=dest, record=record, report=report, outcome=outcome)

    def _install_tree(self, source: Path, dest: Path, metadata: ModelMetadata) -> InstallRecord:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_root = self.workspace_root / _TMP_DIRNAME
        tmp_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="modelvault-", dir=tmp_root) as td:
            staged = Path(td) / "payload"
            _copy_payload(source, staged)

            backup = dest.with_name(dest.name + ".modelvault-backup")
            had_existing = dest.exists()
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)
            if had_existing:
                dest.rename(backup)

            try:
                shutil.move(str(staged), str(dest))
                record = write_install_record(dest, metadata)
            except Exception:
                if dest.exists():
                    shutil.rmtree(dest, ignore_errors=True)
                if had_existing and backup.exists():
                    backup.rename(dest)
                raise
            finally:
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)
        return record
