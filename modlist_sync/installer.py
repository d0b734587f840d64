"""Install a manifest into a mods directory: download, verify, back up, swap in."""

import logging
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .config import SyncConfig
from .downloader import DownloadCancelled, DownloadError, Downloader, InvalidSourceError
from .events import (
    DownloadProgressEvent,
    EventBus,
    InstallPhase,
    ItemEvent,
    ProgressSink,
    ProgressSnapshot,
    format_bytes,
    notify,
    overall_percent,
)
from .hashing import VerificationError, compute_file_hash, digests_equal, verify_file_hash
from .manifest import Manifest, ManifestEntry, ManifestValidationError, validate_manifest
from .planner import PlanError, PlannedAction, ReconciliationPlan, plan

logger = logging.getLogger(__name__)

# Per-item operation percentages reported at each step
DOWNLOAD_SHARE = 80.0
VERIFY_PERCENT = 90.0
BACKUP_PERCENT = 95.0
INSTALL_PERCENT = 98.0

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class InstallError(Exception):
    """Raised when a whole installation run cannot start."""

    pass


class FailureReason(str, Enum):
    DOWNLOAD_FAILED = "download_failed"
    SIZE_MISMATCH = "size_mismatch"
    HASH_MISMATCH = "hash_mismatch"
    INSTALL_FAILED = "install_failed"
    INVALID_SOURCE = "invalid_source"
    UNKNOWN = "unknown"


class ItemStatus(str, Enum):
    INSTALLED = "installed"
    REPLACED = "replaced"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class InstallFailure:
    entry: ManifestEntry
    reason: FailureReason
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.entry.id, "reason": self.reason.value, "error": self.error}


@dataclass(frozen=True)
class ItemResult:
    """What happened to one manifest entry during a run."""

    entry: ManifestEntry
    status: ItemStatus
    reason: FailureReason | None = None
    error: str | None = None
    backup_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.status in (ItemStatus.INSTALLED, ItemStatus.REPLACED, ItemStatus.UP_TO_DATE)

    @classmethod
    def failed(cls, entry: ManifestEntry, reason: FailureReason, error: str) -> "ItemResult":
        return cls(entry=entry, status=ItemStatus.FAILED, reason=reason, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry.id,
            "name": self.entry.display_name,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "backup_path": str(self.backup_path) if self.backup_path else None,
        }


@dataclass
class InstallOutcome:
    """Summary of an installation run."""

    success: bool = False
    installed_count: int = 0
    replaced_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    cancelled: bool = False
    failures: list[InstallFailure] = field(default_factory=list)
    items: list[ItemResult] = field(default_factory=list)
    verification_errors: list[PlanError] = field(default_factory=list)
    phase: InstallPhase = InstallPhase.IDLE

    def record(self, result: ItemResult) -> None:
        self.items.append(result)
        if result.status == ItemStatus.INSTALLED:
            self.installed_count += 1
        elif result.status == ItemStatus.REPLACED:
            self.replaced_count += 1
        elif result.status == ItemStatus.UP_TO_DATE:
            self.skipped_count += 1
        elif result.status == ItemStatus.FAILED:
            self.failed_count += 1
            self.failures.append(
                InstallFailure(
                    entry=result.entry,
                    reason=result.reason or FailureReason.UNKNOWN,
                    error=result.error or "Unknown error",
                )
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "phase": self.phase.value,
            "installed_count": self.installed_count,
            "replaced_count": self.replaced_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
            "cancelled": self.cancelled,
            "failures": [f.to_dict() for f in self.failures],
            "items": [r.to_dict() for r in self.items],
            "verification_errors": [
                {"id": err.entry.id, "path": str(err.path), "error": err.error}
                for err in self.verification_errors
            ],
        }


class ManifestInstaller:
    """
    Executes reconciliation plans against a mods directory.

    Entries are processed one at a time in manifest order. Each one is
    downloaded into a private staging directory, checked for size and
    SHA-256, the file it replaces is backed up, and only then is it moved
    onto the target path. Failures are recorded per entry and never stop
    the rest of the run; only cancellation does.

    One instance must not run two installations against the same target
    directory at once.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        downloader: Downloader | None = None,
        events: EventBus | None = None,
    ):
        self.config = config or SyncConfig()
        self.downloader = downloader or Downloader(self.config)
        self.events = events or EventBus()
        self.phase = InstallPhase.IDLE

    def analyze(self, manifest: Manifest, target_dir: Path) -> ReconciliationPlan:
        return plan(manifest, target_dir)

    def compute_file_hash(self, path: Path) -> str:
        return compute_file_hash(path, self.config.chunk_size)

    def verify_file_hash(self, path: Path, expected_hash: str) -> bool:
        return verify_file_hash(path, expected_hash)

    def install(
        self,
        manifest: Manifest,
        target_dir: Path,
        on_progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> InstallOutcome:
        """
        Bring target_dir in line with the manifest.

        Raises ManifestValidationError for an invalid manifest and InstallError
        when the target, staging or backup directories cannot be created.
        Everything else is reported through the returned InstallOutcome.
        """
        errors = validate_manifest(manifest)
        if errors:
            raise ManifestValidationError(errors)

        target_dir = Path(target_dir)
        run_dir = self._prepare_directories(target_dir)

        try:
            return self._run(manifest, target_dir, run_dir, on_progress, cancel)
        finally:
            shutil.rmtree(run_dir, ignore_errors=True)

    def close(self) -> None:
        self.downloader.close()

    # -- internal helpers --

    def _run(
        self,
        manifest: Manifest,
        target_dir: Path,
        run_dir: Path,
        on_progress: ProgressSink | None,
        cancel: threading.Event | None,
    ) -> InstallOutcome:
        logger.info(
            "Starting manifest installation: %s (%d mods) to %s",
            manifest.name, len(manifest.mods), target_dir,
        )

        self._report(
            on_progress, InstallPhase.ANALYZING, None, 0, len(manifest.mods), 0,
            "Analyzing existing mods...",
        )
        reconciliation = self.analyze(manifest, target_dir)

        logger.info(
            "Analysis complete: %d to download, %d to replace, %d up-to-date",
            len(reconciliation.to_download),
            len(reconciliation.to_replace),
            len(reconciliation.up_to_date),
        )

        outcome = InstallOutcome(verification_errors=list(reconciliation.verification_errors))
        for entry in reconciliation.up_to_date:
            outcome.record(ItemResult(entry=entry, status=ItemStatus.UP_TO_DATE))

        if not reconciliation.has_actions:
            logger.info("All mods are up-to-date, nothing to install")
            outcome.success = True
            outcome.phase = InstallPhase.COMPLETE
            self._report(on_progress, InstallPhase.COMPLETE, None, 0, 0, 100, "All mods are up-to-date!")
            return outcome

        total = reconciliation.action_count
        processed = 0
        for index, action in enumerate(reconciliation.actions, start=1):
            if cancel is not None and cancel.is_set():
                logger.info("Installation cancelled by user")
                outcome.cancelled = True
                break

            processed = index
            entry = action.entry
            self.events.item_started(ItemEvent(entry=entry, item_index=index, item_total=total))

            try:
                result = self._install_one(action, run_dir, index, total, on_progress, cancel)
            except DownloadCancelled:
                logger.info("Installation cancelled while downloading %s", entry.id)
                outcome.cancelled = True
                outcome.items.append(ItemResult(entry=entry, status=ItemStatus.CANCELLED))
                self.events.item_completed(
                    ItemEvent(entry=entry, item_index=index, item_total=total, error="Cancelled")
                )
                break
            except Exception as e:
                logger.exception("Error installing mod %s", entry.id)
                result = ItemResult.failed(entry, FailureReason.UNKNOWN, str(e))

            outcome.record(result)
            self.events.item_completed(
                ItemEvent(
                    entry=entry,
                    item_index=index,
                    item_total=total,
                    success=result.ok,
                    error=result.error,
                )
            )

        order = {entry.id.lower(): i for i, entry in enumerate(manifest.mods)}
        outcome.items.sort(key=lambda r: order.get(r.entry.id.lower(), len(order)))

        outcome.success = outcome.failed_count == 0 and not outcome.cancelled
        if outcome.cancelled:
            outcome.phase = InstallPhase.CANCELLED
            message = "Installation cancelled"
        elif outcome.success:
            outcome.phase = InstallPhase.COMPLETE
            message = f"Successfully installed {outcome.installed_count + outcome.replaced_count} mods"
        else:
            outcome.phase = InstallPhase.FAILED_PARTIALLY
            message = f"Completed with {outcome.failed_count} failures"

        self._report(on_progress, outcome.phase, None, processed, total, 100, message)

        logger.info(
            "Manifest installation complete: %d installed, %d replaced, %d skipped, %d failed%s",
            outcome.installed_count,
            outcome.replaced_count,
            outcome.skipped_count,
            outcome.failed_count,
            " (cancelled)" if outcome.cancelled else "",
        )
        return outcome

    def _install_one(
        self,
        action: PlannedAction,
        run_dir: Path,
        index: int,
        total: int,
        on_progress: ProgressSink | None,
        cancel: threading.Event | None,
    ) -> ItemResult:
        """Download, verify, back up and install a single entry."""
        entry = action.entry
        name = entry.display_name
        staged = run_dir / f"{uuid.uuid4().hex}_{entry.effective_file_name}"

        try:
            self._report(on_progress, InstallPhase.DOWNLOADING, entry, index, total, 0, f"Downloading {name}...")

            def on_chunk(received: int, expected: int) -> None:
                percent = received / expected * DOWNLOAD_SHARE if expected > 0 else 0.0
                self._report(
                    on_progress, InstallPhase.DOWNLOADING, entry, index, total,
                    min(percent, DOWNLOAD_SHARE),
                    f"Downloading {name}... {format_bytes(received)} / {format_bytes(expected)}",
                    bytes_downloaded=received,
                    bytes_total=expected,
                )
                self.events.download_progress(
                    DownloadProgressEvent(entry=entry, bytes_received=received, bytes_total=expected)
                )

            try:
                self.downloader.download(
                    entry.source_url, staged, entry.size_bytes, on_progress=on_chunk, cancel=cancel
                )
            except InvalidSourceError as e:
                logger.warning("Invalid source for %s: %s", entry.id, e)
                return ItemResult.failed(entry, FailureReason.INVALID_SOURCE, str(e))
            except DownloadError as e:
                logger.warning("Failed to download %s: %s", entry.id, e)
                return ItemResult.failed(entry, FailureReason.DOWNLOAD_FAILED, str(e))

            actual_size = staged.stat().st_size
            if actual_size != entry.size_bytes:
                logger.warning(
                    "Size mismatch for %s: expected %d, got %d",
                    entry.id, entry.size_bytes, actual_size,
                )
                return ItemResult.failed(
                    entry,
                    FailureReason.SIZE_MISMATCH,
                    f"Size mismatch: expected {entry.size_bytes} bytes, got {actual_size} bytes",
                )

            self._report(on_progress, InstallPhase.VERIFYING, entry, index, total, VERIFY_PERCENT, f"Verifying {name}...")
            try:
                actual_hash = self.compute_file_hash(staged)
            except VerificationError as e:
                return ItemResult.failed(entry, FailureReason.UNKNOWN, str(e))
            if not digests_equal(actual_hash, entry.sha256):
                logger.warning(
                    "Hash mismatch for %s: expected %s, got %s",
                    entry.id, entry.sha256.lower(), actual_hash,
                )
                return ItemResult.failed(
                    entry,
                    FailureReason.HASH_MISMATCH,
                    "Downloaded file hash does not match expected",
                )

            backup_path = None
            if action.existing_path is not None and action.existing_path.exists():
                self._report(
                    on_progress, InstallPhase.BACKING_UP, entry, index, total, BACKUP_PERCENT,
                    f"Backing up existing {entry.effective_file_name}...",
                )
                backup_path = self._backup(action.existing_path)

            self._report(on_progress, InstallPhase.INSTALLING, entry, index, total, INSTALL_PERCENT, f"Installing {name}...")
            try:
                self._install_atomic(staged, action.target_path)
            except OSError as e:
                logger.warning("Failed to install %s to %s: %s", entry.id, action.target_path, e)
                return ItemResult.failed(
                    entry, FailureReason.INSTALL_FAILED, f"Failed to install file: {e}"
                )

            logger.info("Successfully installed mod %s to %s", entry.id, action.target_path)
            status = ItemStatus.REPLACED if action.is_replacement else ItemStatus.INSTALLED
            return ItemResult(entry=entry, status=status, backup_path=backup_path)

        finally:
            _discard(staged)

    def _prepare_directories(self, target_dir: Path) -> Path:
        """Create the target, staging and backup directories; return a fresh per-run staging dir."""
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            self.config.staging_dir.mkdir(parents=True, exist_ok=True)
            self.config.backup_dir.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix="run-", dir=self.config.staging_dir))
        except OSError as e:
            raise InstallError(f"Cannot prepare installation directories: {e}")

    def _backup(self, path: Path) -> Path | None:
        """
        Copy a file into the backup directory with a timestamp suffix. Failures are logged only.

        An existing backup is never overwritten; a second backup within the
        same second gets a numeric suffix.
        """
        timestamp = datetime.now(timezone.utc).strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_path = self.config.backup_dir / f"{path.stem}_{timestamp}{path.suffix}"
        counter = 1
        while backup_path.exists():
            backup_path = self.config.backup_dir / f"{path.stem}_{timestamp}_{counter}{path.suffix}"
            counter += 1
        try:
            shutil.copy2(path, backup_path)
        except OSError as e:
            logger.warning("Could not back up %s: %s", path, e)
            return None
        logger.info("Backed up %s to %s", path.name, backup_path)
        return backup_path

    def _install_atomic(self, staged: Path, target: Path) -> None:
        """
        Put the staged file at target without ever exposing a partial file there.

        A rename is tried first. If that fails (e.g. staging is on another
        volume) the file is copied next to the target under a temporary name
        and then renamed over it, so the swap itself stays atomic.
        """
        try:
            os.replace(staged, target)
            return
        except OSError as e:
            logger.info("Rename into %s failed (%s), falling back to copy", target.parent, e)

        partial = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.part")
        try:
            shutil.copyfile(staged, partial)
            os.replace(partial, target)
        except OSError:
            _discard(partial)
            raise

    def _report(
        self,
        sink: ProgressSink | None,
        phase: InstallPhase,
        entry: ManifestEntry | None,
        index: int,
        total: int,
        operation_percent: float,
        message: str,
        bytes_downloaded: int = 0,
        bytes_total: int = 0,
    ) -> None:
        self.phase = phase
        if phase == InstallPhase.COMPLETE:
            overall = 100.0
        else:
            overall = overall_percent(index, total, operation_percent)
        notify(
            sink,
            ProgressSnapshot(
                phase=phase,
                entry=entry,
                item_index=index,
                item_total=total,
                overall_percent=overall,
                operation_percent=operation_percent,
                message=message,
                bytes_downloaded=bytes_downloaded,
                bytes_total=bytes_total,
            ),
        )


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove temporary file %s: %s", path, e)
