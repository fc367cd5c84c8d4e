from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import DEFAULT_TIMEOUT_S


class ModelVaultError(RuntimeError):
    pass


class InvalidArgumentError(ModelVaultError):
    pass


class InvalidOperationError(ModelVaultError):
    pass


class FormatError(ModelVaultError, ValueError):
    pass


class RepositoryIOError(ModelVaultError):
    pass


class NotFoundError(RepositoryIOError):
    pass


class DownloadError(RepositoryIOError):
    def __init__(self, message: str, *, failed: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.failed = failed


class ConflictError(ModelVaultError):
    def __init__(self, message: str, *, report: Any = None, resolution: Any = None) -> None:
        super().__init__(message)
        self.report = report
        self.resolution = resolution


@dataclass(frozen=True)
class ModelVaultHTTPError(RepositoryIOError):
    status_code: int
    body: str = field(default="")

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class ModelVaultClient:
    """
    Async HTTP client for a model repository server. Paths are relative to ``base_url``.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._default_headers = dict(default_headers or {})
        self._http = httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ModelVaultClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
        auth: bool = True,
    ) -> httpx.Response:
        if content is not None and json_body is not None:
            raise ModelVaultError("Pass only one of content/json_body.")

        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)
        if auth and self.token:
            req_headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = await self._http.request(
                method.upper(),
                self.url_for(path),
                params=params,
                json=json_body,
                content=content,
                headers=req_headers,
            )
        except httpx.HTTPError as e:
            raise RepositoryIOError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise ModelVaultHTTPError(resp.status_code, resp.text)
        return resp
