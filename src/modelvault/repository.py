from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Protocol, TypeVar
from urllib.parse import quote

from .client import (
    InvalidArgumentError,
    ModelVaultClient,
    ModelVaultHTTPError,
    NotFoundError,
    RepositoryIOError,
)
from .config import REPOSITORY_KINDS, Config, redact_token
from .metadata import INDEX_FILENAME, METADATA_FILENAME, ModelIndex, ModelMetadata

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class ModelRepository(Protocol):
    """Storage-agnostic backend. Paths are repository-relative and use forward slashes."""

    @property
    def root(self) -> str:
        ...

    async def load_index(self) -> ModelIndex:
        ...

    async def save_index(self, index: ModelIndex) -> None:
        ...

    async def load_metadata(self, model_id: str, version: str) -> ModelMetadata:
        ...

    async def save_metadata(self, model_id: str, version: str, metadata: ModelMetadata) -> None:
        ...

    async def directory_exists(self, path: str) -> bool:
        ...

    async def ensure_directory(self, path: str) -> None:
        ...

    async def list_files(self, prefix: str) -> list[str]:
        ...

    async def upload_file(self, repo_path: str, local_path: Path) -> None:
        ...

    async def download_file(self, repo_path: str, local_path: Path) -> None:
        ...

    async def delete_if_exists(self, path: str) -> bool:
        ...


def normalize_repo_path(path: str) -> str:
    """Forward slashes, no leading/trailing slash, no empty segments."""
    parts = [p for p in path.replace("\\", "/").split("/") if p and p != "."]
    return "/".join(parts)


def version_root(model_id: str, version: str) -> str:
    return normalize_repo_path(f"{model_id}/{version}")


def metadata_path(model_id: str, version: str) -> str:
    return f"{version_root(model_id, version)}/{METADATA_FILENAME}"


def relative_to_prefix(repo_path: str, prefix: str) -> str | None:
    """Return ``repo_path`` relative to ``prefix``, or None when it lies outside it."""
    path = normalize_repo_path(repo_path)
    base = normalize_repo_path(prefix)
    if not base:
        return path
    if path.lower().startswith(base.lower() + "/"):
        return path[len(base) + 1 :]
    return None


def _check_safe(path: str) -> str:
    normalized = normalize_repo_path(path)
    if path.startswith(("/", "\\")) or PurePosixPath(normalized).is_absolute():
        raise InvalidArgumentError(f"Repository path must be relative: {path!r}")
    if ".." in normalized.split("/"):
        raise InvalidArgumentError(f"Repository path escapes the root: {path!r}")
    return normalized


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _copy_file(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)


class FileSystemRepository:
    """
    Repository backed by a local or network-mounted directory:

        <root>/models_index.json
        <root>/<model_id>/<version>/model.json
        <root>/<model_id>/<version>/<payload files...>
    """

    def __init__(self, root: str | Path) -> None:
        self.root_path = Path(root).expanduser()

    @property
    def root(self) -> str:
        return str(self.root_path)

    def _abs(self, path: str) -> Path:
        rel = _check_safe(path)
        return self.root_path / rel if rel else self.root_path

    async def _run(self, fn: Callable[..., _T], *args: Any) -> _T:
        try:
            return await asyncio.to_thread(fn, *args)
        except OSError as e:
            raise RepositoryIOError(f"Filesystem operation failed under {self.root}: {e}") from e

    async def load_index(self) -> ModelIndex:
        path = self.root_path / INDEX_FILENAME
        logger.debug("Loading index from %s", path)

        def _read() -> ModelIndex:
            if not path.exists():
                return ModelIndex()
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise RepositoryIOError(f"Index file is not valid JSON: {path}") from e
            return ModelIndex.from_dict(raw)

        return await self._run(_read)

    async def save_index(self, index: ModelIndex) -> None:
        await self._run(write_json_atomic, self.root_path / INDEX_FILENAME, index.to_dict())

    async def load_metadata(self, model_id: str, version: str) -> ModelMetadata:
        path = self._abs(metadata_path(model_id, version))

        def _read() -> ModelMetadata:
            if not path.is_file():
                raise NotFoundError(f"Metadata not found: {model_id}/{version}")
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise RepositoryIOError(f"Metadata is not valid JSON: {path}") from e
            return ModelMetadata.from_dict(raw)

        return await self._run(_read)

    async def save_metadata(self, model_id: str, version: str, metadata: ModelMetadata) -> None:
        await self._run(write_json_atomic, self._abs(metadata_path(model_id, version)), metadata.to_dict())

    async def directory_exists(self, path: str) -> bool:
        return await self._run(self._abs(path).is_dir)

    async def ensure_directory(self, path: str) -> None:
        target = self._abs(path)
        await self._run(lambda: target.mkdir(parents=True, exist_ok=True))

    async def list_files(self, prefix: str) -> list[str]:
        base = self._abs(prefix)

        def _list() -> list[str]:
            if not base.is_dir():
                return []
            out: list[str] = []
            for p in base.rglob("*"):
                if p.is_file() and not p.name.endswith(".tmp"):
                    out.append(p.relative_to(self.root_path).as_posix())
            return sorted(out)

        return await self._run(_list)

    async def upload_file(self, repo_path: str, local_path: Path) -> None:
        dst = self._abs(repo_path)
        src = Path(local_path)

        def _upload() -> None:
            if not src.is_file():
                raise RepositoryIOError(f"Local file does not exist: {src}")
            _copy_file(src, dst)

        await self._run(_upload)

    async def download_file(self, repo_path: str, local_path: Path) -> None:
        src = self._abs(repo_path)
        dst = Path(local_path)

        def _download() -> None:
            if not src.is_file():
                raise NotFoundError(f"Repository file not found: {repo_path}")
            _copy_file(src, dst)

        await self._run(_download)

    async def delete_if_exists(self, path: str) -> bool:
        target = self._abs(path)
        if target == self.root_path:
            raise InvalidArgumentError("Refusing to delete the repository root.")

        def _delete() -> bool:
            if target.is_dir():
                shutil.rmtree(target)
                return True
            if target.exists():
                target.unlink()
                return True
            return False

        return await self._run(_delete)


def _quote_path(path: str) -> str:
    return "/".join(quote(seg, safe="") for seg in _check_safe(path).split("/"))


def _extract_file_list(obj: Any) -> list[str]:
    if isinstance(obj, dict):
        for key in ("files", "items", "data"):
            value = obj.get(key)
            if isinstance(value, list):
                obj = value
                break
    if not isinstance(obj, list):
        return []
    out: list[str] = []
    for item in obj:
        if isinstance(item, dict):
            item = item.get("path")
        if isinstance(item, str) and item.strip():
            out.append(normalize_repo_path(item))
    return out


class HttpRepository:
    """
    Repository served over HTTP:

        GET/PUT  models_index.json
        GET/PUT  <model_id>/<version>/model.json
        GET      files?prefix=<path>      -> ["<path>", ...] or {"files": [...]}
        GET/PUT  <path>                   raw blob
        DELETE   <path>
    """

    def __init__(self, client: ModelVaultClient) -> None:
        self._client = client
        logger.debug("HTTP repository at %s (token=%s)", client.base_url, redact_token(client.token))

    @property
    def root(self) -> str:
        return self._client.base_url

    @property
    def client(self) -> ModelVaultClient:
        return self._client

    async def _get_json(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.request(method="GET", path=path, params=params)
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise RepositoryIOError(f"Expected JSON from {path}") from e

    async def load_index(self) -> ModelIndex:
        try:
            raw = await self._get_json(INDEX_FILENAME)
        except ModelVaultHTTPError as e:
            if e.status_code == 404:
                return ModelIndex()
            raise
        return ModelIndex.from_dict(raw)

    async def save_index(self, index: ModelIndex) -> None:
        await self._client.request(method="PUT", path=INDEX_FILENAME, json_body=index.to_dict())

    async def load_metadata(self, model_id: str, version: str) -> ModelMetadata:
        try:
            raw = await self._get_json(_quote_path(metadata_path(model_id, version)))
        except ModelVaultHTTPError as e:
            if e.status_code == 404:
                raise NotFoundError(f"Metadata not found: {model_id}/{version}") from e
            raise
        return ModelMetadata.from_dict(raw)

    async def save_metadata(self, model_id: str, version: str, metadata: ModelMetadata) -> None:
        await self._client.request(
            method="PUT",
            path=_quote_path(metadata_path(model_id, version)),
            json_body=metadata.to_dict(),
        )

    async def directory_exists(self, path: str) -> bool:
        return bool(await self.list_files(path))

    async def ensure_directory(self, path: str) -> None:
        # The server creates directories on upload.
        _check_safe(path)

    async def list_files(self, prefix: str) -> list[str]:
        try:
            data = await self._get_json("files", params={"prefix": _check_safe(prefix)})
        except ModelVaultHTTPError as e:
            if e.status_code == 404:
                return []
            raise
        return _extract_file_list(data)

    async def upload_file(self, repo_path: str, local_path: Path) -> None:
        src = Path(local_path)
        try:
            content = await asyncio.to_thread(src.read_bytes)
        except OSError as e:
            raise RepositoryIOError(f"Could not read local file {src}: {e}") from e
        await self._client.request(
            method="PUT",
            path=_quote_path(repo_path),
            content=content,
            headers={"Content-Type": "application/octet-stream"},
        )

    async def download_file(self, repo_path: str, local_path: Path) -> None:
        try:
            resp = await self._client.request(method="GET", path=_quote_path(repo_path))
        except ModelVaultHTTPError as e:
            if e.status_code == 404:
                raise NotFoundError(f"Repository file not found: {repo_path}") from e
            raise
        dst = Path(local_path)

        def _write() -> None:
            dst.parent.mkdir(parents=True, exist_ok=True)
            dst.write_bytes(resp.content)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise RepositoryIOError(f"Could not write {dst}: {e}") from e

    async def delete_if_exists(self, path: str) -> bool:
        try:
            await self._client.request(method="DELETE", path=_quote_path(path))
        except ModelVaultHTTPError as e:
            if e.status_code == 404:
                return False
            raise
        return True


def create_repository(config: Config, *, client: ModelVaultClient | None = None) -> ModelRepository:
    if not config.repository_root:
        raise InvalidArgumentError("Config.repository_root is required.")
    kind = (config.repository_kind or "").strip().lower()
    if kind not in REPOSITORY_KINDS:
        expected = ", ".join(repr(k) for k in REPOSITORY_KINDS)
        raise InvalidArgumentError(f"Unknown repository kind {config.repository_kind!r}. Expected one of {expected}.")
    if kind == "filesystem":
        return FileSystemRepository(config.repository_root)
    if kind == "http":
        if client is None:
            client = ModelVaultClient(base_url=config.repository_root, token=config.token, timeout_s=config.timeout_s)
        return HttpRepository(client)
    raise InvalidArgumentError(f"Unsupported repository kind {kind!r}.")
