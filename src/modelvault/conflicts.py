from __future__ import annotations

import enum
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Awaitable, Callable, Iterable, Mapping, Union

from .client import ConflictError
from .metadata import ModelMetadata

logger = logging.getLogger(__name__)


class ConflictResolution(enum.Enum):
    REGENERATE = "regenerate"  # give this import fresh identifiers
    KEEP_EXISTING = "keep_existing"  # leave identifiers alone; references may break
    ABORT = "abort"


@dataclass(frozen=True)
class AssetMatch:
    asset_id: str
    location: str
    same_model: bool


@dataclass(frozen=True)
class ConflictReport:
    model_id: str | None
    destination: str
    same_model: tuple[AssetMatch, ...] = ()
    cross_model: tuple[AssetMatch, ...] = ()
    checked: bool = True

    @property
    def same_model_matches(self) -> int:
        return len(self.same_model)

    @property
    def cross_model_conflicts(self) -> int:
        return len(self.cross_model)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.cross_model)


@dataclass(frozen=True)
class ConflictOutcome:
    resolution: ConflictResolution | None
    remap: dict[str, str] = field(default_factory=dict)


Decision = Union[ConflictResolution, Awaitable[ConflictResolution]]
Decider = Callable[[ConflictReport], Decision]


def _parts(path: str) -> tuple[str, ...]:
    return tuple(p for p in PurePosixPath(path.replace("\\", "/")).parts if p not in ("", ".", "/"))


def is_within(location: str, destination: str) -> bool:
    """True when ``location`` is ``destination`` or lies beneath it, compared by path component."""
    dest = _parts(destination)
    loc = _parts(location)
    if not dest:
        return False
    return loc[: len(dest)] == dest


def classify_asset_matches(
    asset_ids: Iterable[str],
    existing: Mapping[str, str],
    destination: str,
) -> tuple[tuple[AssetMatch, ...], tuple[AssetMatch, ...]]:
    """
    Split the identifiers of an incoming version that are already present in ``existing``
    (identifier -> location) into same-model and cross-model matches.
    """
    same: list[AssetMatch] = []
    cross: list[AssetMatch] = []
    seen: set[str] = set()
    for asset_id in asset_ids:
        if not asset_id or asset_id in seen:
            continue
        seen.add(asset_id)
        location = existing.get(asset_id)
        if location is None:
            continue
        if is_within(location, destination):
            same.append(AssetMatch(asset_id=asset_id, location=location, same_model=True))
        else:
            cross.append(AssetMatch(asset_id=asset_id, location=location, same_model=False))
    return tuple(same), tuple(cross)


def _new_asset_id() -> str:
    return uuid.uuid4().hex


class ConflictResolver:
    """
    Checks a version's asset identifiers against a pre-import snapshot of the workspace
    and asks ``decide`` what to do about cross-model collisions.
    """

    def __init__(self, decide: Decider | None = None, *, id_factory: Callable[[], str] = _new_asset_id) -> None:
        self._decide = decide
        self._id_factory = id_factory

    def check(
        self,
        metadata: ModelMetadata,
        destination: str,
        snapshot: Mapping[str, str],
        *,
        is_update: bool = False,
    ) -> ConflictReport:
        if is_update:
            logger.debug("Skipping conflict check for in-place update of %s", metadata.model_id)
            return ConflictReport(model_id=metadata.model_id, destination=destination, checked=False)

        same, cross = classify_asset_matches(metadata.asset_ids, snapshot, destination)
        report = ConflictReport(model_id=metadata.model_id, destination=destination, same_model=same, cross_model=cross)
        if report.has_conflicts:
            logger.warning(
                "%d asset id(s) of %s already belong to other models (%d same-model match(es))",
                report.cross_model_conflicts,
                metadata.model_id,
                report.same_model_matches,
            )
        return report

    async def resolve(self, report: ConflictReport) -> ConflictOutcome:
        if not report.has_conflicts:
            return ConflictOutcome(resolution=None)
        if self._decide is None:
            raise ConflictError(
                f"{report.cross_model_conflicts} asset id conflict(s) for {report.model_id} need a decision.",
                report=report,
            )

        decision = self._decide(report)
        if inspect.isawaitable(decision):
            decision = await decision
        resolution = ConflictResolution(decision)
        logger.info("Conflict resolution for %s: %s", report.model_id, resolution.value)

        if resolution is ConflictResolution.ABORT:
            raise ConflictError(f"Import of {report.model_id} aborted.", report=report, resolution=resolution)
        if resolution is ConflictResolution.REGENERATE:
            remap = {m.asset_id: self._id_factory() for m in report.cross_model}
            return ConflictOutcome(resolution=resolution, remap=remap)
        return ConflictOutcome(resolution=resolution)

    async def check_and_resolve(
        self,
        metadata: ModelMetadata,
        destination: str,
        snapshot: Mapping[str, str],
        *,
        is_update: bool = False,
    ) -> tuple[ConflictReport, ConflictOutcome]:
        report = self.check(metadata, destination, snapshot, is_update=is_update)
        return report, await self.resolve(report)
