"""Service layer - manifest operations for the CLI and web UI."""

import logging
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from urllib.parse import quote

import requests

from .config import SyncConfig
from .downloader import Downloader
from .events import EventBus, ProgressSink
from .hashing import compute_file_hash, verify_file_hash
from .installer import InstallOutcome, ManifestInstaller
from .manifest import (
    PACKAGE_EXTENSION,
    Manifest,
    ManifestDiff,
    ManifestEntry,
    ValidationError,
    bump_revision,
    compare,
    create_new,
    load_manifest_file,
    save_manifest_file,
)
from .planner import ReconciliationPlan, plan

logger = logging.getLogger(__name__)


@dataclass
class LoadedManifest:
    path: Path
    manifest: Manifest
    errors: list[ValidationError]

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ModListService:
    """Entry points for planning, installing, diffing and exporting modlists."""

    def __init__(
        self,
        config: SyncConfig | None = None,
        session: requests.Session | None = None,
        events: EventBus | None = None,
    ):
        self.config = config or SyncConfig()
        self._session = session
        self.events = events or EventBus()

    def load(self, path: Path) -> LoadedManifest:
        manifest, errors = load_manifest_file(path)
        if errors:
            logger.warning("Manifest %s loaded with %d validation errors", path, len(errors))
            for error in errors:
                logger.warning("  - %s", error)
        else:
            logger.info(
                "Loaded manifest '%s' (revision %d) with %d mods",
                manifest.name, manifest.revision, len(manifest.mods),
            )
        return LoadedManifest(path=Path(path), manifest=manifest, errors=errors)

    def save(self, manifest: Manifest, path: Path) -> None:
        save_manifest_file(manifest, path)
        logger.info("Saved manifest '%s' to %s", manifest.name, path)

    def create(self, name: str, game: str) -> Manifest:
        return create_new(name, game)

    def plan(self, manifest: Manifest, mods_dir: Path) -> ReconciliationPlan:
        return plan(manifest, mods_dir)

    def install(
        self,
        manifest: Manifest,
        mods_dir: Path,
        on_progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> InstallOutcome:
        """Install a manifest into mods_dir with a fresh installer."""
        installer = ManifestInstaller(
            config=self.config,
            downloader=Downloader(self.config, session=self._session),
            events=self.events,
        )
        try:
            return installer.install(manifest, mods_dir, on_progress=on_progress, cancel=cancel)
        finally:
            if self._session is None:
                installer.close()

    def compare(self, old: Manifest, new: Manifest) -> ManifestDiff:
        diff = compare(old, new)
        logger.info(
            "Manifest comparison: %d added, %d removed, %d changed, %d unchanged",
            len(diff.added), len(diff.removed), len(diff.changed), len(diff.unchanged),
        )
        return diff

    def compute_hash(self, path: Path) -> str:
        return compute_file_hash(path, self.config.chunk_size)

    def verify_hash(self, path: Path, expected_hash: str) -> bool:
        return verify_file_hash(path, expected_hash)

    def export(
        self,
        mods_dir: Path,
        base_url: str,
        name: str | None = None,
        game: str | None = None,
        previous: Manifest | None = None,
    ) -> Manifest:
        """
        Build a manifest describing the .zip packages currently in mods_dir.

        With a previous manifest the list id and metadata carry over, the
        revision goes up by one, and files it already lists keep their id,
        title, version, source URL and notes. Other files are published under
        base_url.
        """
        mods_dir = Path(mods_dir)
        known = {e.effective_file_name.lower(): e for e in previous.mods} if previous else {}

        files = sorted(
            (p for p in mods_dir.iterdir() if p.is_file() and p.suffix.lower() == PACKAGE_EXTENSION),
            key=lambda p: p.name.lower(),
        )

        entries = []
        for path in files:
            digest = self.compute_hash(path)
            size = path.stat().st_size
            existing = known.get(path.name.lower())
            if existing is not None:
                file_name = existing.file_name
                if existing.effective_file_name != path.name:
                    file_name = path.name
                entries.append(replace(existing, sha256=digest, size_bytes=size, file_name=file_name))
            else:
                entries.append(
                    ManifestEntry(
                        id=path.stem,
                        sha256=digest,
                        size_bytes=size,
                        source_url=f"{base_url.rstrip('/')}/{quote(path.name)}",
                    )
                )

        if previous is not None:
            manifest = bump_revision(
                replace(
                    previous,
                    name=name or previous.name,
                    game=(game or previous.game).upper(),
                    mods=tuple(entries),
                )
            )
        else:
            if not name or not game:
                raise ValueError("name and game are required when exporting without a previous manifest")
            manifest = replace(create_new(name, game), mods=tuple(entries))

        logger.info("Exported %d mods from %s (revision %d)", len(entries), mods_dir, manifest.revision)
        return manifest
