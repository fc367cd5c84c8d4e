from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

METADATA_FILENAME = "model.json"
INDEX_FILENAME = "models_index.json"
CURRENT_SCHEMA_VERSION = 1

DEFAULT_AUTHOR = "unknown"
DEFAULT_CHANGE_SUMMARY = "Updated"

# Schema 0 documents were written with camelCase keys.
_LEGACY_METADATA_KEYS = {
    "schemaVersion": "schema_version",
    "assetGuids": "asset_ids",
    "payloadRelativePaths": "payload_paths",
    "imageRelativePaths": "image_paths",
    "previewImagePath": "preview_image_path",
    "createdTimeTicks": "created_ticks",
    "updatedTimeTicks": "updated_ticks",
    "uploadTimeTicks": "upload_ticks",
    "modelImporters": "importer_settings",
    "installPath": "install_path",
    "projectTags": "scopes",
    "vertexCount": "vertex_count",
    "triangleCount": "triangle_count",
}

_LEGACY_ENTRY_KEYS = {
    "latestVersion": "latest_version",
    "updatedTimeTicks": "updated_ticks",
    "releaseTimeTicks": "release_ticks",
    "projectTags": "scopes",
}

_LEGACY_IMPORTER_KEYS = {
    "materialImportMode": "material_import_mode",
    "materialSearch": "material_search",
    "materialName": "material_name",
}


def now_ticks() -> int:
    """Current wall-clock time in 100ns ticks since the Unix epoch."""
    return time.time_ns() // 100


def _migrate_keys(raw: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    out = dict(raw)
    for old, new in mapping.items():
        if old in out and new not in out:
            out[new] = out.pop(old)
    return out


def _str(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    return None


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def _str_list(value: Any) -> list[str]:
    if isinstance(value, dict) and isinstance(value.get("values"), list):
        value = value["values"]  # legacy Tags object
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v.strip() for v in values if v and v.strip()))


@dataclass
class ModelIdentity:
    id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, raw: Any) -> "ModelIdentity | None":
        if not isinstance(raw, dict):
            return None
        return cls(id=_str(raw.get("id")), name=_str(raw.get("name")))


@dataclass
class ChangelogEntry:
    version: str
    summary: str
    author: str
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "summary": self.summary, "author": self.author, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, raw: Any) -> "ChangelogEntry | None":
        if not isinstance(raw, dict):
            return None
        version = _str(raw.get("version"))
        if not version:
            return None
        return cls(
            version=version,
            summary=_str(raw.get("summary")) or "",
            author=_str(raw.get("author")) or DEFAULT_AUTHOR,
            timestamp=_int(raw.get("timestamp")),
        )


@dataclass
class ImporterSettings:
    material_import_mode: str | None = None
    material_search: str | None = None
    material_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "material_import_mode": self.material_import_mode,
            "material_search": self.material_search,
            "material_name": self.material_name,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "ImporterSettings | None":
        if not isinstance(raw, dict):
            return None
        raw = _migrate_keys(raw, _LEGACY_IMPORTER_KEYS)
        return cls(
            material_import_mode=_str(raw.get("material_import_mode")),
            material_search=_str(raw.get("material_search")),
            material_name=_str(raw.get("material_name")),
        )


@dataclass
class ModelMetadata:
    identity: ModelIdentity | None = field(default_factory=ModelIdentity)
    version: str | None = None
    description: str = ""
    author: str | None = None
    created_ticks: int = 0
    updated_ticks: int = 0
    upload_ticks: int = 0
    asset_ids: list[str] = field(default_factory=list)
    payload_paths: list[str] = field(default_factory=list)
    image_paths: list[str] = field(default_factory=list)
    preview_image_path: str | None = None
    dependencies: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    importer_settings: dict[str, ImporterSettings] = field(default_factory=dict)
    changelog: list[ChangelogEntry] = field(default_factory=list)
    install_path: str | None = None
    extra: dict[str, str] = field(default_factory=dict)
    vertex_count: int = 0
    triangle_count: int = 0
    schema_version: int = CURRENT_SCHEMA_VERSION

    @property
    def model_id(self) -> str | None:
        return self.identity.id if self.identity else None

    @property
    def display_name(self) -> str:
        if self.identity and self.identity.name:
            return self.identity.name
        return self.model_id or ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "identity": self.identity.to_dict() if self.identity else None,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "created_ticks": self.created_ticks,
            "updated_ticks": self.updated_ticks,
            "upload_ticks": self.upload_ticks,
            "asset_ids": list(self.asset_ids),
            "payload_paths": list(self.payload_paths),
            "image_paths": list(self.image_paths),
            "preview_image_path": self.preview_image_path,
            "dependencies": list(self.dependencies),
            "tags": list(self.tags),
            "scopes": list(self.scopes),
            "importer_settings": {k: v.to_dict() for k, v in sorted(self.importer_settings.items())},
            "changelog": [c.to_dict() for c in self.changelog],
            "install_path": self.install_path,
            "extra": dict(sorted(self.extra.items())),
            "vertex_count": self.vertex_count,
            "triangle_count": self.triangle_count,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "ModelMetadata":
        if not isinstance(raw, dict):
            return cls()
        data = _migrate_keys(raw, _LEGACY_METADATA_KEYS)

        importers: dict[str, ImporterSettings] = {}
        importers_raw = data.get("importer_settings")
        if isinstance(importers_raw, dict):
            for path, value in importers_raw.items():
                settings = ImporterSettings.from_dict(value)
                if isinstance(path, str) and settings is not None:
                    importers[path] = settings

        changelog: list[ChangelogEntry] = []
        changelog_raw = data.get("changelog")
        if isinstance(changelog_raw, list):
            for item in changelog_raw:
                entry = ChangelogEntry.from_dict(item)
                if entry is not None:
                    changelog.append(entry)

        extra_raw = data.get("extra")
        extra: dict[str, str] = {}
        if isinstance(extra_raw, dict):
            extra = {k: str(v) for k, v in extra_raw.items() if isinstance(k, str) and v is not None}

        return cls(
            identity=ModelIdentity.from_dict(data.get("identity")),
            version=_str(data.get("version")),
            description=_str(data.get("description")) or "",
            author=_str(data.get("author")),
            created_ticks=_int(data.get("created_ticks")),
            updated_ticks=_int(data.get("updated_ticks")),
            upload_ticks=_int(data.get("upload_ticks")),
            asset_ids=_str_list(data.get("asset_ids")),
            payload_paths=_str_list(data.get("payload_paths")),
            image_paths=_str_list(data.get("image_paths")),
            preview_image_path=_str(data.get("preview_image_path")),
            dependencies=_str_list(data.get("dependencies")),
            tags=_unique(_str_list(data.get("tags"))),
            scopes=_unique(_str_list(data.get("scopes"))),
            importer_settings=importers,
            changelog=changelog,
            install_path=_str(data.get("install_path")),
            extra=extra,
            vertex_count=_int(data.get("vertex_count")),
            triangle_count=_int(data.get("triangle_count")),
            schema_version=CURRENT_SCHEMA_VERSION,
        )


def ensure_changelog_entry(
    metadata: ModelMetadata,
    summary: str | None,
    author: str | None,
    version: str,
    timestamp: int,
) -> ChangelogEntry:
    """Add the changelog entry for ``version``, or overwrite the existing one in place."""
    clean_summary = summary.strip() if summary and summary.strip() else DEFAULT_CHANGE_SUMMARY
    clean_author = author.strip() if author and author.strip() else DEFAULT_AUTHOR
    clean_timestamp = timestamp if timestamp > 0 else now_ticks()

    wanted = version.lower()
    for entry in reversed(metadata.changelog):
        if entry.version.lower() == wanted:
            entry.summary = clean_summary
            entry.author = clean_author
            entry.timestamp = clean_timestamp
            return entry

    entry = ChangelogEntry(version=version, summary=clean_summary, author=clean_author, timestamp=clean_timestamp)
    metadata.changelog.append(entry)
    return entry


@dataclass
class IndexEntry:
    id: str
    name: str = ""
    description: str = ""
    latest_version: str = ""
    tags: list[str] = field(default_factory=list)
    updated_ticks: int = 0
    release_ticks: int = 0
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "latest_version": self.latest_version,
            "tags": list(self.tags),
            "updated_ticks": self.updated_ticks,
            "release_ticks": self.release_ticks,
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "IndexEntry | None":
        if not isinstance(raw, dict):
            return None
        data = _migrate_keys(raw, _LEGACY_ENTRY_KEYS)
        entry_id = _str(data.get("id"))
        if not entry_id or not entry_id.strip():
            return None
        return cls(
            id=entry_id,
            name=_str(data.get("name")) or "",
            description=_str(data.get("description")) or "",
            latest_version=_str(data.get("latest_version")) or "",
            tags=_unique(_str_list(data.get("tags"))),
            updated_ticks=_int(data.get("updated_ticks")),
            release_ticks=_int(data.get("release_ticks")),
            scopes=_unique(_str_list(data.get("scopes"))),
        )


@dataclass
class ModelIndex:
    entries: dict[str, IndexEntry] = field(default_factory=dict)
    versions: dict[str, list[str]] = field(default_factory=dict)

    def get(self, model_id: str) -> IndexEntry | None:
        return self.entries.get(model_id)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self.entries

    def visible_entries(self, scope: str | None = None) -> list[IndexEntry]:
        if scope is None:
            return list(self.entries.values())
        return [e for e in self.entries.values() if not e.scopes or scope in e.scopes]

    def known_versions(self, model_id: str) -> list[str]:
        return list(self.versions.get(model_id, []))

    def record_version(self, model_id: str, version: str) -> None:
        known = self.versions.setdefault(model_id, [])
        if all(v.lower() != version.lower() for v in known):
            known.append(version)

    def forget_version(self, model_id: str, version: str) -> bool:
        known = self.versions.get(model_id)
        if not known:
            return False
        kept = [v for v in known if v.lower() != version.lower()]
        if len(kept) == len(known):
            return False
        if kept:
            self.versions[model_id] = kept
        else:
            self.versions.pop(model_id, None)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": CURRENT_SCHEMA_VERSION,
            "entries": [e.to_dict() for e in self.entries.values()],
            "versions": {k: list(v) for k, v in sorted(self.versions.items())},
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "ModelIndex":
        index = cls()
        if not isinstance(raw, dict):
            return index
        entries_raw = raw.get("entries")
        if isinstance(entries_raw, list):
            for item in entries_raw:
                entry = IndexEntry.from_dict(item)
                if entry is not None:
                    index.entries[entry.id] = entry  # later duplicates win
        versions_raw = raw.get("versions")
        if isinstance(versions_raw, dict):
            for model_id, values in versions_raw.items():
                if not isinstance(model_id, str):
                    continue
                for version in _str_list(values):
                    if version.strip():
                        index.record_version(model_id, version.strip())
        return index
