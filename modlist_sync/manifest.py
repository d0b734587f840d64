"""Modlist manifest model, validation, and JSON (de)serialization."""

import json
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import unquote, urlparse

from .hashing import DIGEST_HEX_LENGTH, digests_equal

SCHEMA_VERSION = 1

# Farming Simulator releases a manifest may target
SUPPORTED_GAMES = ("FS15", "FS17", "FS19", "FS22", "FS25")

PACKAGE_EXTENSION = ".zip"

_HASH_RE = re.compile(rf"^[0-9a-fA-F]{{{DIGEST_HEX_LENGTH}}}$")
_UNSAFE_ID_CHARS_RE = re.compile(r"[^a-zA-Z0-9_-]")
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class ManifestError(Exception):
    """Raised when a manifest document cannot be read or parsed."""

    pass


class ManifestValidationError(ManifestError):
    """Raised when a manifest is rejected because it fails validation."""

    def __init__(self, errors: list["ValidationError"]):
        self.errors = errors
        details = "; ".join(str(e) for e in errors)
        super().__init__(f"Manifest is invalid ({len(errors)} errors): {details}")


@dataclass(frozen=True)
class ValidationError:
    """A single validation problem, tagged with the offending entry if any."""

    message: str
    index: int | None = None
    entry_id: str | None = None

    def __str__(self) -> str:
        if self.index is None:
            return self.message
        return f"Mod[{self.index}] ({self.entry_id or 'unknown'}): {self.message}"


@dataclass(frozen=True)
class ManifestEntry:
    """One desired mod file: what it is, where to get it, and how to check it."""

    id: str
    sha256: str
    size_bytes: int
    source_url: str
    title: str | None = None
    version: str | None = None
    file_name: str | None = None
    notes: str | None = None

    @property
    def effective_file_name(self) -> str:
        """
        Filename the mod is stored under in the mods directory.

        Explicit file_name wins, then the URL's last path segment if it names
        a .zip package, then a sanitized form of the id.
        """
        if self.file_name and self.file_name.strip():
            return self.file_name

        if self.source_url:
            try:
                url_name = PurePosixPath(unquote(urlparse(self.source_url).path)).name
            except ValueError:
                url_name = ""
            if url_name and url_name.lower().endswith(PACKAGE_EXTENSION):
                return url_name

        safe_id = _UNSAFE_ID_CHARS_RE.sub("_", self.id)
        return f"{safe_id}{PACKAGE_EXTENSION}"

    @property
    def display_name(self) -> str:
        return self.title if self.title and self.title.strip() else self.id

    def validate(self) -> list[str]:
        """Return human-readable problems with this entry (empty if valid)."""
        errors = []

        if not self.id or not self.id.strip():
            errors.append("Id is required.")

        if not self.sha256 or not self.sha256.strip():
            errors.append("SHA-256 hash is required.")
        elif not _HASH_RE.match(self.sha256):
            errors.append(
                f"Invalid SHA-256 hash format. Expected {DIGEST_HEX_LENGTH} "
                f"hexadecimal characters, got '{self.sha256}'."
            )

        if self.size_bytes <= 0:
            errors.append("SizeBytes must be a positive number.")

        if not self.source_url or not self.source_url.strip():
            errors.append("SourceUrl is required.")
        elif not is_valid_source_url(self.source_url):
            errors.append(
                f"Invalid SourceUrl '{self.source_url}'. Must be a valid HTTP(S) URL."
            )

        if self.file_name and self.file_name.strip():
            if not _is_bare_file_name(self.file_name):
                errors.append(f"FileName '{self.file_name}' must be a plain file name.")
        elif not _is_bare_file_name(self.effective_file_name):
            errors.append(
                f"File name '{self.effective_file_name}' derived from SourceUrl must be a plain file name."
            )

        return errors

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id}
        if self.title is not None:
            data["title"] = self.title
        if self.version is not None:
            data["version"] = self.version
        if self.file_name is not None:
            data["fileName"] = self.file_name
        data["sha256"] = self.sha256
        data["sizeBytes"] = self.size_bytes
        data["sourceUrl"] = self.source_url
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestEntry":
        fields = _lower_keys(data)
        return cls(
            id=_as_str(fields.get("id")) or "",
            sha256=_as_str(fields.get("sha256")) or "",
            size_bytes=_as_int(fields.get("sizebytes")) or 0,
            source_url=_as_str(fields.get("sourceurl")) or "",
            title=_as_str(fields.get("title")),
            version=_as_str(fields.get("version")),
            file_name=_as_str(fields.get("filename")),
            notes=_as_str(fields.get("notes")),
        )


@dataclass(frozen=True)
class Manifest:
    """A named, versioned, game-scoped list of desired mod files."""

    list_id: str
    name: str
    game: str
    revision: int
    updated_at: datetime | None
    mods: tuple[ManifestEntry, ...] = ()
    description: str | None = None
    author: str | None = None
    schema_version: int = SCHEMA_VERSION

    def validate(self) -> list[ValidationError]:
        return validate_manifest(self)

    @property
    def is_valid(self) -> bool:
        return not self.validate()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "listId": self.list_id,
            "name": self.name,
        }
        if self.description is not None:
            data["description"] = self.description
        data["game"] = self.game
        data["revision"] = self.revision
        if self.updated_at is not None:
            data["updatedAtUtc"] = format_timestamp(self.updated_at)
        if self.author is not None:
            data["author"] = self.author
        data["mods"] = [entry.to_dict() for entry in self.mods]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        fields = _lower_keys(data)

        raw_mods = fields.get("mods", [])
        if raw_mods is None:
            raw_mods = []
        if not isinstance(raw_mods, list):
            raise ManifestError("'mods' must be a list of mod entries.")

        mods = []
        for i, raw in enumerate(raw_mods):
            if not isinstance(raw, dict):
                raise ManifestError(f"Mod[{i}] must be an object, got {type(raw).__name__}.")
            mods.append(ManifestEntry.from_dict(raw))

        schema_version = _as_int(fields.get("schemaversion"))
        return cls(
            list_id=_as_str(fields.get("listid")) or "",
            name=_as_str(fields.get("name")) or "",
            game=_as_str(fields.get("game")) or "",
            revision=_as_int(fields.get("revision")) or 0,
            updated_at=parse_timestamp(fields.get("updatedatutc")),
            mods=tuple(mods),
            description=_as_str(fields.get("description")),
            author=_as_str(fields.get("author")),
            schema_version=SCHEMA_VERSION if schema_version is None else schema_version,
        )


@dataclass
class ManifestDiff:
    """What changed between two revisions of a manifest."""

    added: list[ManifestEntry] = field(default_factory=list)
    removed: list[ManifestEntry] = field(default_factory=list)
    changed: list[tuple[ManifestEntry, ManifestEntry]] = field(default_factory=list)
    unchanged: list[ManifestEntry] = field(default_factory=list)
    revision_delta: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [e.id for e in self.added],
            "removed": [e.id for e in self.removed],
            "changed": [
                {"id": new.id, "old_sha256": old.sha256, "new_sha256": new.sha256}
                for old, new in self.changed
            ],
            "unchanged": [e.id for e in self.unchanged],
            "revision_delta": self.revision_delta,
            "summary": self.summary(),
        }

    def summary(self) -> list[str]:
        """Changelog lines suitable for an update notification."""
        lines = []
        for entry in self.added:
            version = f" {entry.version}" if entry.version else ""
            lines.append(f"+ {entry.display_name}{version}")
        for old, new in self.changed:
            lines.append(
                f"~ {new.display_name} ({old.version or '?'} -> {new.version or '?'})"
            )
        for entry in self.removed:
            lines.append(f"- {entry.display_name}")
        return lines


def is_valid_source_url(url: str) -> bool:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_manifest(manifest: Manifest) -> list[ValidationError]:
    """
    Check every manifest and entry rule.

    All problems are reported, not just the first, and entry problems carry
    the entry's index and id.
    """
    errors: list[ValidationError] = []

    if manifest.schema_version < 1:
        errors.append(ValidationError("SchemaVersion must be a positive integer."))

    if not manifest.list_id or not manifest.list_id.strip():
        errors.append(ValidationError("ListId is required."))

    if not manifest.name or not manifest.name.strip():
        errors.append(ValidationError("Name is required."))

    if not manifest.game or not manifest.game.strip():
        errors.append(ValidationError("Game is required (e.g., 'FS25', 'FS22')."))
    elif manifest.game.upper() not in SUPPORTED_GAMES:
        errors.append(
            ValidationError(
                f"Invalid game '{manifest.game}'. Must be one of: {', '.join(SUPPORTED_GAMES)}."
            )
        )

    if manifest.revision < 1:
        errors.append(ValidationError("Revision must be a positive integer."))

    if manifest.updated_at is None:
        errors.append(ValidationError("UpdatedAtUtc is required and must be a UTC timestamp."))

    if not manifest.mods:
        errors.append(ValidationError("Manifest must contain at least one mod."))

    seen_ids: dict[str, int] = {}
    seen_files: dict[str, int] = {}
    for i, entry in enumerate(manifest.mods):
        for message in entry.validate():
            errors.append(ValidationError(message, index=i, entry_id=entry.id))

        if entry.id:
            key = entry.id.lower()
            if key in seen_ids:
                errors.append(
                    ValidationError(
                        f"Duplicate id (also used by Mod[{seen_ids[key]}]).",
                        index=i,
                        entry_id=entry.id,
                    )
                )
            else:
                seen_ids[key] = i

        file_key = entry.effective_file_name.lower()
        if file_key in seen_files:
            errors.append(
                ValidationError(
                    f"File name '{entry.effective_file_name}' is already used by "
                    f"Mod[{seen_files[file_key]}].",
                    index=i,
                    entry_id=entry.id,
                )
            )
        else:
            seen_files[file_key] = i

    return errors


def load_manifest(data: bytes | str) -> tuple[Manifest, list[ValidationError]]:
    """
    Parse a manifest document.

    Returns the manifest together with its validation errors; a document that
    parses but fails validation still yields the manifest so callers can show
    diagnostics. Raises ManifestError only for malformed documents.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ManifestError(f"Manifest is not valid UTF-8: {e}")

    if not data.strip():
        raise ManifestError("JSON content is empty.")

    try:
        raw = json.loads(data)
    except json.JSONDecodeError as e:
        raise ManifestError(f"Invalid JSON format: {e}")

    if not isinstance(raw, dict):
        raise ManifestError("Manifest root must be a JSON object.")

    manifest = Manifest.from_dict(raw)
    return manifest, validate_manifest(manifest)


def dump_manifest(manifest: Manifest) -> bytes:
    """Serialize a manifest with a fixed key order, so unchanged manifests save identically."""
    text = json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)
    return (text + "\n").encode("utf-8")


def load_manifest_file(path: Path) -> tuple[Manifest, list[ValidationError]]:
    path = Path(path)
    if not path.exists():
        raise ManifestError(f"File not found: {path}")
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ManifestError(f"Error reading file {path}: {e}")
    return load_manifest(data)


def save_manifest_file(manifest: Manifest, path: Path) -> None:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(dump_manifest(manifest))
    except OSError as e:
        raise ManifestError(f"Error writing file {path}: {e}")


def create_new(name: str, game: str, now: datetime | None = None) -> Manifest:
    """Start a fresh manifest at revision 1 with a new list id and no mods."""
    return Manifest(
        list_id=str(uuid.uuid4()),
        name=name,
        game=game.upper(),
        revision=1,
        updated_at=_utc_seconds(now or datetime.now(timezone.utc)),
        mods=(),
    )


def bump_revision(manifest: Manifest, now: datetime | None = None) -> Manifest:
    """Return a copy of the manifest at the next revision, stamped now."""
    return replace(
        manifest,
        revision=manifest.revision + 1,
        updated_at=_utc_seconds(now or datetime.now(timezone.utc)),
    )


def compare(old: Manifest, new: Manifest) -> ManifestDiff:
    """
    Diff two manifests, matching entries by id (case-insensitive).

    Entries in both with a different hash are changed; only in new are added;
    only in old are removed. Pure function, no I/O.
    """
    diff = ManifestDiff(revision_delta=new.revision - old.revision)

    old_by_id = {entry.id.lower(): entry for entry in old.mods}
    new_ids = {entry.id.lower() for entry in new.mods}

    for entry in new.mods:
        previous = old_by_id.get(entry.id.lower())
        if previous is None:
            diff.added.append(entry)
        elif digests_equal(previous.sha256, entry.sha256):
            diff.unchanged.append(entry)
        else:
            diff.changed.append((previous, entry))

    for entry in old.mods:
        if entry.id.lower() not in new_ids:
            diff.removed.append(entry)

    return diff


def format_timestamp(value: datetime) -> str:
    return _utc_seconds(value).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp into an aware UTC datetime, or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # .NET writes 7 fractional digits; fromisoformat accepts at most 6
    text = _FRACTION_RE.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _utc_seconds(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def _is_bare_file_name(name: str) -> bool:
    stripped = name.strip()
    if not stripped or stripped in (".", ".."):
        return False
    return "/" not in name and "\\" not in name


def _lower_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in data.items()}


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None
