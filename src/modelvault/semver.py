from __future__ import annotations

from dataclasses import dataclass
from functools import cmp_to_key
from typing import Iterable

from .client import FormatError

UNKNOWN_VERSION = "(unknown)"


@dataclass(frozen=True, order=True)
class SemVer:
    """MAJOR.MINOR.PATCH with non-negative components. No prerelease or build metadata."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        if min(self.major, self.minor, self.patch) < 0:
            raise FormatError(f"Version components must be non-negative: {self.major}.{self.minor}.{self.patch}")

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @classmethod
    def parse(cls, text: str) -> "SemVer":
        if not isinstance(text, str) or not text:
            raise FormatError(f"Invalid version: {text!r}")
        parts = text.split(".")
        if len(parts) != 3:
            raise FormatError(f"Invalid version {text!r}: expected MAJOR.MINOR.PATCH")
        # str.isdigit() accepts non-ASCII digits that int() rejects.
        if any(not p or not p.isascii() or not p.isdigit() for p in parts):
            raise FormatError(f"Invalid version {text!r}: components must be non-negative integers")
        major, minor, patch = (int(p) for p in parts)
        return cls(major, minor, patch)

    def bump_major(self) -> "SemVer":
        return SemVer(self.major + 1, 0, 0)

    def bump_minor(self) -> "SemVer":
        return SemVer(self.major, self.minor + 1, 0)

    def bump_patch(self) -> "SemVer":
        return SemVer(self.major, self.minor, self.patch + 1)


def parse(text: str) -> SemVer:
    return SemVer.parse(text)


def try_parse(text: str | None) -> SemVer | None:
    if text is None:
        return None
    try:
        return SemVer.parse(text)
    except FormatError:
        return None


def compare(a: SemVer, b: SemVer) -> int:
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def compare_versions(a: str, b: str) -> int:
    """
    Total order over version strings: parseable versions by SemVer, above every
    unparseable one; unparseable ones compare case-insensitively.
    """
    va = try_parse(a)
    vb = try_parse(b)
    if va is not None and vb is not None:
        return compare(va, vb)
    if va is not None:
        return 1
    if vb is not None:
        return -1
    la = a.lower()
    lb = b.lower()
    if la < lb:
        return -1
    if la > lb:
        return 1
    return 0


def sort_versions_desc(versions: Iterable[str]) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=True)


def has_update(local_version: str | None, remote_version: str | None) -> bool:
    # Undecidable comparisons never report an update.
    if not local_version or local_version == UNKNOWN_VERSION or not remote_version:
        return False
    local = try_parse(local_version)
    remote = try_parse(remote_version)
    if local is None or remote is None:
        return False
    return compare(remote, local) > 0
