from .client import (
    ConflictError,
    DownloadError,
    FormatError,
    InvalidArgumentError,
    InvalidOperationError,
    ModelVaultClient,
    ModelVaultError,
    ModelVaultHTTPError,
    NotFoundError,
    RepositoryIOError,
)
from .config import Config, load_config, save_config
from .conflicts import ConflictReport, ConflictResolution, ConflictResolver
from .index import ModelIndexService
from .install import InstallRecord, WorkspaceInstaller
from .library import ModelLibrary
from .metadata import ChangelogEntry, IndexEntry, ModelIdentity, ModelIndex, ModelMetadata
from .publisher import VersionPublisher
from .repository import FileSystemRepository, HttpRepository, ModelRepository, create_repository
from .semver import SemVer
from .sync import LocalCacheSynchronizer
from .updates import UpdateDetector, UpdateInfo, WorkspaceVersionScanner

__all__ = [
    "ChangelogEntry",
    "Config",
    "ConflictError",
    "ConflictReport",
    "ConflictResolution",
    "ConflictResolver",
    "DownloadError",
    "FileSystemRepository",
    "FormatError",
    "HttpRepository",
    "IndexEntry",
    "InstallRecord",
    "InvalidArgumentError",
    "InvalidOperationError",
    "LocalCacheSynchronizer",
    "ModelIdentity",
    "ModelIndex",
    "ModelIndexService",
    "ModelLibrary",
    "ModelMetadata",
    "ModelRepository",
    "ModelVaultClient",
    "ModelVaultError",
    "ModelVaultHTTPError",
    "NotFoundError",
    "RepositoryIOError",
    "SemVer",
    "UpdateDetector",
    "UpdateInfo",
    "VersionPublisher",
    "WorkspaceInstaller",
    "WorkspaceVersionScanner",
    "create_repository",
    "load_config",
    "save_config",
]
