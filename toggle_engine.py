"""
Toggle Engine - flips mod folders between enabled and disabled.

The folder on disk is the source of truth.  Before renaming, the engine
looks for the asset's folder in both forms; if the index disagrees with
what it finds, the disk wins and the discrepancy is logged.  The index is
only updated after a rename has succeeded, so a failed rename never leaves
the index claiming a state the disk does not have.

Bulk operations process items one at a time, never abort on a per-item
failure and fold the per-item results into an immutable
:class:`BulkOutcome`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from asset_index import Asset, AssetIndex
from errors import IoError, ModManagerError
from event_channel import EventChannel, OperationReporter

BULK_SCOPE = "bulk"

_log = logging.getLogger(__name__)


class ItemKind(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class BulkStatus(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"
    NOTHING_TO_DO = "nothing_to_do"


@dataclass(frozen=True)
class ItemResult:
    asset_id: int
    kind: ItemKind
    new_enabled: bool | None = None
    error: str | None = None


@dataclass(frozen=True)
class BulkOutcome:
    """Fold of per-item results.  Never mutated; ``with_result`` returns a copy."""

    results: tuple[ItemResult, ...] = ()
    notes: tuple[str, ...] = ()

    def with_result(self, result: ItemResult) -> BulkOutcome:
        return replace(self, results=self.results + (result,))

    def with_note(self, note: str) -> BulkOutcome:
        return replace(self, notes=self.notes + (note,))

    def _count(self, kind: ItemKind) -> int:
        return sum(1 for r in self.results if r.kind is kind)

    @property
    def success_count(self) -> int:
        return self._count(ItemKind.SUCCEEDED)

    @property
    def fail_count(self) -> int:
        return self._count(ItemKind.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(ItemKind.SKIPPED)

    @property
    def failures(self) -> list[ItemResult]:
        return [r for r in self.results if r.kind is ItemKind.FAILED]

    @property
    def status(self) -> BulkStatus:
        if self.fail_count == 0:
            return BulkStatus.ALL_SUCCEEDED if self.success_count else BulkStatus.NOTHING_TO_DO
        if self.fail_count == len(self.results):
            return BulkStatus.TOTAL_FAILURE
        return BulkStatus.PARTIAL_FAILURE

    def summary(self) -> str:
        if self.fail_count:
            text = f"{self.success_count} succeeded, {self.fail_count} failed"
            if self.skipped_count:
                text += f", {self.skipped_count} skipped"
            text += "."
        elif self.success_count:
            text = f"Successfully processed {self.success_count} mod(s)"
            if self.skipped_count:
                text += f" ({self.skipped_count} already in the requested state)"
            text += "."
        else:
            text = "Nothing to do."
        if self.notes:
            text += " " + " ".join(self.notes)
        return text


def finish_bulk(reporter: OperationReporter, outcome: BulkOutcome):
    """Emit the terminal event for a bulk result.

    ``error`` only when every item failed; partial failures complete with
    the counts in the message.
    """
    if outcome.status is BulkStatus.TOTAL_FAILURE:
        first = outcome.failures[0].error if outcome.failures else ""
        reporter.error(f"All {outcome.fail_count} operation(s) failed. {first}".strip())
    else:
        reporter.complete(outcome.summary())


class ToggleEngine:
    def __init__(self, index: AssetIndex, mods_root: str | Path,
                 channel: EventChannel | None = None):
        self.index = index
        self.mods_root = Path(mods_root)
        self.channel = channel or EventChannel()

    # ── Disk state ────────────────────────────────────────────────────

    def disk_state(self, asset: Asset) -> bool:
        """Return the asset's enabled state as found on disk.

        Raises ``IoError`` when the folder is missing in both forms or
        present in both (ambiguous).
        """
        enabled_path = asset.disk_path(self.mods_root, True)
        disabled_path = asset.disk_path(self.mods_root, False)
        enabled_exists = enabled_path.is_dir()
        disabled_exists = disabled_path.is_dir()
        if enabled_exists and disabled_exists:
            raise IoError(
                f"Cannot toggle '{asset.name}': both '{enabled_path}' and "
                f"'{disabled_path}' exist"
            )
        if not enabled_exists and not disabled_exists:
            raise IoError(
                f"Cannot toggle '{asset.name}': folder not found at '{enabled_path}' "
                f"or '{disabled_path}'. Was it moved or deleted?"
            )
        if enabled_exists != asset.is_enabled:
            _log.warning(
                "Index state of asset %d (%s) is stale: index=%s disk=%s",
                asset.id, asset.clean_path, asset.is_enabled, enabled_exists,
            )
        return enabled_exists

    def _rename(self, asset: Asset, enable: bool) -> Asset:
        source = asset.disk_path(self.mods_root, not enable)
        target = asset.disk_path(self.mods_root, enable)
        if target.exists():
            raise IoError(f"Cannot rename '{source}': target '{target}' already exists")
        try:
            os.rename(source, target)
        except OSError as exc:
            raise IoError(f"Failed to rename '{source}' to '{target}': {exc}") from exc
        _log.info("Renamed %s -> %s", source.name, target.name)
        try:
            return self.index.set_asset_enabled(asset.id, enable)
        except IoError as exc:
            raise IoError(f"Renamed '{source.name}' but could not record it: {exc}") from exc

    # ── Single item ───────────────────────────────────────────────────

    def toggle(self, asset_id: int) -> bool:
        """Flip one asset and return its new enabled state."""
        asset = self.index.get_asset(asset_id)
        current = self.disk_state(asset)
        return self._rename(asset, not current).is_enabled

    def set_enabled(self, asset_id: int, desired: bool) -> ItemResult:
        """Drive one asset to *desired*; never raises for per-item problems."""
        try:
            asset = self.index.get_asset(asset_id)
            current = self.disk_state(asset)
            if current == desired:
                if asset.is_enabled != current:
                    self.index.set_asset_enabled(asset_id, current)
                return ItemResult(asset_id, ItemKind.SKIPPED, new_enabled=current)
            self._rename(asset, desired)
            return ItemResult(asset_id, ItemKind.SUCCEEDED, new_enabled=desired)
        except ModManagerError as exc:
            _log.warning("Could not set asset %d enabled=%s: %s", asset_id, desired, exc)
            return ItemResult(asset_id, ItemKind.FAILED, error=str(exc))

    def describe(self, asset_id: int) -> str:
        if self.index.has_asset(asset_id):
            return self.index.get_asset(asset_id).name
        return f"asset {asset_id}"

    # ── Bulk ──────────────────────────────────────────────────────────

    def bulk_toggle(self, asset_ids, desired_enabled: bool,
                    operation_id: int | None = None) -> BulkOutcome:
        """Set every asset in *asset_ids* to *desired_enabled*.

        Duplicate ids are processed once, in first-seen order.
        """
        ids = list(dict.fromkeys(asset_ids))
        total = len(ids)
        outcome = BulkOutcome()
        reporter = self.channel.begin(BULK_SCOPE, total, operation_id=operation_id)
        with reporter:
            with self.index.batch():
                for i, asset_id in enumerate(ids, 1):
                    outcome = outcome.with_result(self.set_enabled(asset_id, desired_enabled))
                    reporter.progress(
                        i,
                        f"Processing: {self.describe(asset_id)} ({i}/{total})",
                        current_asset_id=asset_id,
                    )
            finish_bulk(reporter, outcome)
        _log.info("Bulk %s finished: %s",
                  "enable" if desired_enabled else "disable", outcome.summary())
        return outcome
