"""Compare a manifest against the files already in a mods directory."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .hashing import VerificationError, verify_file_hash
from .manifest import Manifest, ManifestEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedAction:
    """An entry that needs a download, with the file it replaces if any."""

    entry: ManifestEntry
    target_path: Path
    existing_path: Path | None = None

    @property
    def is_replacement(self) -> bool:
        return self.existing_path is not None


@dataclass(frozen=True)
class PlanError:
    """An existing file that could not be hashed during planning."""

    entry: ManifestEntry
    path: Path
    error: str


@dataclass
class ReconciliationPlan:
    """
    Per-entry actions needed to make a directory match a manifest.

    Every entry lands in exactly one bucket: an action (download or replace),
    up_to_date, or verification_errors. Actions keep manifest order.
    """

    target_dir: Path
    actions: list[PlannedAction] = field(default_factory=list)
    up_to_date: list[ManifestEntry] = field(default_factory=list)
    verification_errors: list[PlanError] = field(default_factory=list)

    @property
    def to_download(self) -> list[ManifestEntry]:
        return [a.entry for a in self.actions if not a.is_replacement]

    @property
    def to_replace(self) -> list[PlannedAction]:
        return [a for a in self.actions if a.is_replacement]

    @property
    def total_bytes(self) -> int:
        return sum(a.entry.size_bytes for a in self.actions)

    @property
    def action_count(self) -> int:
        return len(self.actions)

    @property
    def has_actions(self) -> bool:
        return bool(self.actions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_dir": str(self.target_dir),
            "to_download": [e.id for e in self.to_download],
            "to_replace": [
                {"id": a.entry.id, "existing_path": str(a.existing_path)}
                for a in self.to_replace
            ],
            "up_to_date": [e.id for e in self.up_to_date],
            "verification_errors": [
                {"id": err.entry.id, "path": str(err.path), "error": err.error}
                for err in self.verification_errors
            ],
            "total_bytes": self.total_bytes,
            "action_count": self.action_count,
        }


def plan(manifest: Manifest, target_dir: Path) -> ReconciliationPlan:
    """
    Work out what installing a manifest into target_dir would do.

    A missing file is a download, a file with the wrong hash is a replacement,
    a matching file is up to date, and a file that cannot be read is reported
    as a verification error and left alone. No network access, no writes.
    """
    target_dir = Path(target_dir)
    result = ReconciliationPlan(target_dir=target_dir)

    for entry in manifest.mods:
        path = target_dir / entry.effective_file_name

        if not path.exists():
            result.actions.append(PlannedAction(entry=entry, target_path=path))
            continue

        try:
            matches = verify_file_hash(path, entry.sha256)
        except VerificationError as e:
            logger.warning("Error verifying %s: %s", entry.id, e.reason)
            result.verification_errors.append(PlanError(entry=entry, path=path, error=e.reason))
            continue

        if matches:
            result.up_to_date.append(entry)
        else:
            result.actions.append(
                PlannedAction(entry=entry, target_path=path, existing_path=path)
            )

    logger.debug(
        "Plan for %s: %d to download, %d to replace, %d up to date, %d unverifiable",
        target_dir,
        len(result.to_download),
        len(result.to_replace),
        len(result.up_to_date),
        len(result.verification_errors),
    )
    return result
