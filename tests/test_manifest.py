import json
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from modlist_sync.manifest import (
    Manifest,
    ManifestEntry,
    ManifestError,
    bump_revision,
    compare,
    create_new,
    dump_manifest,
    format_timestamp,
    load_manifest,
    load_manifest_file,
    parse_timestamp,
    save_manifest_file,
    validate_manifest,
)

VALID_HASH = "a" * 64

SAMPLE_DOCUMENT = {
    "schemaVersion": 1,
    "listId": "3f2b8c1e-7d4a-4e6b-9a51-2c0d9e8f7a61",
    "name": "Weekend Farm",
    "description": "Friday night server",
    "game": "FS25",
    "revision": 4,
    "updatedAtUtc": "2024-05-01T12:30:00Z",
    "author": "Hay Bale Co",
    "mods": [
        {
            "id": "FS25_Tractor",
            "title": "Tractor",
            "version": "1.0.0.0",
            "fileName": "FS25_Tractor.zip",
            "sha256": VALID_HASH,
            "sizeBytes": 1024,
            "sourceUrl": "https://mods.example.com/FS25_Tractor.zip",
            "notes": "Needs the seasons pack",
        },
        {
            "id": "FS25_Silo",
            "sha256": "B" * 64,
            "sizeBytes": 2048,
            "sourceUrl": "https://mods.example.com/download?id=42",
        },
    ],
}


def _errors(manifest):
    return [str(e) for e in validate_manifest(manifest)]


class TestEffectiveFileName:
    def test_explicit_file_name_wins(self):
        entry = ManifestEntry(
            id="FS25_Tractor",
            sha256=VALID_HASH,
            size_bytes=1,
            source_url="https://mods.example.com/other.zip",
            file_name="Custom.zip",
        )
        assert entry.effective_file_name == "Custom.zip"

    def test_url_segment_when_it_names_a_package(self):
        entry = ManifestEntry(
            id="FS25_Tractor",
            sha256=VALID_HASH,
            size_bytes=1,
            source_url="https://mods.example.com/files/FS25%20Big%20Tractor.ZIP?dl=1",
        )
        assert entry.effective_file_name == "FS25 Big Tractor.ZIP"

    def test_sanitized_id_fallback(self):
        entry = ManifestEntry(
            id="my mod/v2",
            sha256=VALID_HASH,
            size_bytes=1,
            source_url="https://mods.example.com/download?id=42",
        )
        assert entry.effective_file_name == "my_mod_v2.zip"

    @pytest.mark.parametrize(
        "url",
        [
            "https://mods.example.com/files/..%2F..%2Fescaped.zip",
            "https://mods.example.com/files/%2Fetc%2Fescaped.zip",
        ],
    )
    def test_encoded_slashes_cannot_leave_the_mods_directory(self, url, tmp_path):
        entry = ManifestEntry(id="FS25_Sneaky", sha256=VALID_HASH, size_bytes=1, source_url=url)

        assert entry.effective_file_name == "escaped.zip"
        assert (tmp_path / entry.effective_file_name).parent == tmp_path

    def test_encoded_backslash_in_url_name_is_rejected(self, manifest_factory):
        entry = ManifestEntry(
            id="FS25_Sneaky",
            sha256=VALID_HASH,
            size_bytes=1,
            source_url="https://mods.example.com/files/..%5C..%5Cescaped.zip",
        )
        errors = _errors(manifest_factory(entry))
        assert any("derived from SourceUrl must be a plain file name" in e for e in errors)

    def test_blank_file_name_is_ignored(self):
        entry = ManifestEntry(
            id="FS25_Silo",
            sha256=VALID_HASH,
            size_bytes=1,
            source_url="https://mods.example.com/download",
            file_name="   ",
        )
        assert entry.effective_file_name == "FS25_Silo.zip"

    def test_display_name(self):
        entry = ManifestEntry(id="FS25_Silo", sha256=VALID_HASH, size_bytes=1, source_url="https://x.example/a.zip")
        assert entry.display_name == "FS25_Silo"
        assert replace(entry, title="Silo").display_name == "Silo"


class TestValidation:
    def test_valid_manifest(self, entry_factory, manifest_factory):
        manifest = manifest_factory(entry_factory("FS25_Tractor", b"tractor"))
        assert validate_manifest(manifest) == []
        assert manifest.is_valid

    def test_uppercase_hash_is_valid(self, manifest_factory):
        entry = ManifestEntry(id="a", sha256="ABCDEF" * 10 + "ABCD", size_bytes=1, source_url="https://x.example/a.zip")
        assert validate_manifest(manifest_factory(entry)) == []

    def test_reports_all_problems(self, manifest_factory):
        bad = ManifestEntry(id="", sha256="xyz", size_bytes=0, source_url="ftp://mods.example.com/a.zip")
        manifest = manifest_factory(bad, name="", game="FS99", revision=0, updated_at=None)
        errors = _errors(manifest)

        assert "Name is required." in errors
        assert any("Invalid game 'FS99'" in e for e in errors)
        assert "Revision must be a positive integer." in errors
        assert any("UpdatedAtUtc" in e for e in errors)
        assert any(e.startswith("Mod[0] (unknown): Id is required.") for e in errors)
        assert any("Invalid SHA-256 hash format" in e for e in errors)
        assert any("SizeBytes must be a positive number." in e for e in errors)
        assert any("Invalid SourceUrl" in e for e in errors)

    def test_empty_mod_list(self, manifest_factory):
        assert "Manifest must contain at least one mod." in _errors(manifest_factory())

    def test_game_is_case_insensitive(self, entry_factory, manifest_factory):
        manifest = manifest_factory(entry_factory("a", b"a"), game="fs22")
        assert validate_manifest(manifest) == []

    @pytest.mark.parametrize("url", ["not a url", "/relative/path.zip", "https://", "file:///C:/mods/a.zip"])
    def test_rejects_non_http_sources(self, entry_factory, manifest_factory, url):
        manifest = manifest_factory(entry_factory("a", b"a", source_url=url))
        assert any("SourceUrl" in e for e in _errors(manifest))

    def test_error_carries_index_and_id(self, entry_factory, manifest_factory):
        good = entry_factory("good", b"good")
        bad = replace(entry_factory("bad", b"bad"), size_bytes=-5)
        errors = validate_manifest(manifest_factory(good, bad))
        assert len(errors) == 1
        assert errors[0].index == 1
        assert errors[0].entry_id == "bad"

    def test_duplicate_ids(self, entry_factory, manifest_factory):
        first = entry_factory("FS25_Tractor", b"one", file_name="one.zip")
        second = entry_factory("fs25_tractor", b"two", file_name="two.zip")
        errors = _errors(manifest_factory(first, second))
        assert any("Duplicate id" in e for e in errors)

    def test_duplicate_target_files(self, entry_factory, manifest_factory):
        first = entry_factory("one", b"one", file_name="Same.zip")
        second = entry_factory("two", b"two", file_name="same.ZIP")
        errors = _errors(manifest_factory(first, second))
        assert any("already used by Mod[0]" in e for e in errors)

    def test_file_name_must_not_be_a_path(self, entry_factory, manifest_factory):
        entry = entry_factory("a", b"a", file_name="../escape.zip")
        assert any("plain file name" in e for e in _errors(manifest_factory(entry)))


class TestParsing:
    def test_load_sample(self):
        manifest, errors = load_manifest(json.dumps(SAMPLE_DOCUMENT))

        assert errors == []
        assert manifest.name == "Weekend Farm"
        assert manifest.revision == 4
        assert manifest.updated_at == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        assert [m.id for m in manifest.mods] == ["FS25_Tractor", "FS25_Silo"]
        assert manifest.mods[0].notes == "Needs the seasons pack"
        assert manifest.mods[1].file_name is None

    def test_keys_are_case_insensitive(self):
        document = {
            "ListId": "abc",
            "NAME": "Caps",
            "Game": "FS22",
            "Revision": 2,
            "UpdatedAtUtc": "2024-01-01T00:00:00Z",
            "Mods": [{"ID": "m", "SHA256": VALID_HASH, "SizeBytes": 3, "SourceUrl": "https://x.example/m.zip"}],
        }
        manifest, errors = load_manifest(json.dumps(document))
        assert errors == []
        assert manifest.mods[0].size_bytes == 3

    def test_unknown_fields_are_ignored(self):
        document = dict(SAMPLE_DOCUMENT, extra={"anything": True})
        _, errors = load_manifest(json.dumps(document))
        assert errors == []

    def test_bytes_with_bom(self):
        data = b"\xef\xbb\xbf" + json.dumps(SAMPLE_DOCUMENT).encode("utf-8")
        manifest, _ = load_manifest(data)
        assert manifest.name == "Weekend Farm"

    def test_invalid_document_still_returns_manifest(self):
        document = dict(SAMPLE_DOCUMENT, revision=0)
        manifest, errors = load_manifest(json.dumps(document))
        assert manifest.revision == 0
        assert "Revision must be a positive integer." in [str(e) for e in errors]

    @pytest.mark.parametrize("text", ["", "   ", "{not json", "[1, 2]", '"string"'])
    def test_malformed_documents(self, text):
        with pytest.raises(ManifestError):
            load_manifest(text)

    def test_mods_must_be_a_list(self):
        with pytest.raises(ManifestError):
            load_manifest(json.dumps(dict(SAMPLE_DOCUMENT, mods={"a": 1})))

    def test_mod_entries_must_be_objects(self):
        with pytest.raises(ManifestError):
            load_manifest(json.dumps(dict(SAMPLE_DOCUMENT, mods=["FS25_Tractor"])))

    def test_seven_digit_fraction(self):
        parsed = parse_timestamp("2024-05-01T12:30:00.1234567Z")
        assert parsed == datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc)

    def test_unparseable_timestamp(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(12345) is None


class TestSerialization:
    def test_key_order(self):
        manifest, _ = load_manifest(json.dumps(SAMPLE_DOCUMENT))
        data = json.loads(dump_manifest(manifest))

        assert list(data) == [
            "schemaVersion", "listId", "name", "description", "game",
            "revision", "updatedAtUtc", "author", "mods",
        ]
        assert list(data["mods"][0]) == [
            "id", "title", "version", "fileName", "sha256", "sizeBytes", "sourceUrl", "notes",
        ]
        assert list(data["mods"][1]) == ["id", "sha256", "sizeBytes", "sourceUrl"]

    def test_unchanged_manifest_saves_identically(self, tmp_path):
        manifest, _ = load_manifest(json.dumps(SAMPLE_DOCUMENT))
        first = tmp_path / "first.json"
        second = tmp_path / "second.json"

        save_manifest_file(manifest, first)
        reloaded, errors = load_manifest_file(first)
        save_manifest_file(reloaded, second)

        assert errors == []
        assert reloaded == manifest
        assert first.read_bytes() == second.read_bytes()

    def test_timestamp_format(self):
        value = datetime(2024, 5, 1, 12, 30, 15, 999, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2024-05-01T12:30:15Z"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError):
            load_manifest_file(tmp_path / "missing.json")


class TestLifecycle:
    def test_create_new(self):
        now = datetime(2024, 6, 1, 8, 0, 0, 500, tzinfo=timezone.utc)
        manifest = create_new("Weekend Farm", "fs25", now=now)

        assert manifest.revision == 1
        assert manifest.game == "FS25"
        assert manifest.mods == ()
        assert manifest.updated_at == datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)
        assert len(manifest.list_id) == 36

    def test_create_new_uses_fresh_ids(self):
        assert create_new("a", "FS25").list_id != create_new("a", "FS25").list_id

    def test_bump_revision(self, entry_factory, manifest_factory):
        manifest = manifest_factory(entry_factory("a", b"a"), revision=3)
        later = datetime(2025, 1, 1, tzinfo=timezone.utc)
        bumped = bump_revision(manifest, now=later)

        assert bumped.revision == 4
        assert bumped.updated_at == later
        assert bumped.list_id == manifest.list_id
        assert manifest.revision == 3


class TestCompare:
    def test_same_manifest_has_no_changes(self, entry_factory, manifest_factory):
        manifest = manifest_factory(entry_factory("a", b"a"), entry_factory("b", b"b"))
        diff = compare(manifest, manifest)

        assert not diff.has_changes
        assert [e.id for e in diff.unchanged] == ["a", "b"]
        assert diff.revision_delta == 0

    def test_added_removed_changed(self, entry_factory, manifest_factory):
        old = manifest_factory(
            entry_factory("keep", b"keep"),
            entry_factory("drop", b"drop"),
            entry_factory("update", b"v1", version="1.0"),
        )
        new = manifest_factory(
            entry_factory("keep", b"keep"),
            entry_factory("UPDATE", b"v2", version="2.0"),
            entry_factory("fresh", b"fresh", title="Fresh Mod"),
            revision=2,
        )
        diff = compare(old, new)

        assert [e.id for e in diff.added] == ["fresh"]
        assert [e.id for e in diff.removed] == ["drop"]
        assert [(o.id, n.id) for o, n in diff.changed] == [("update", "UPDATE")]
        assert [e.id for e in diff.unchanged] == ["keep"]
        assert diff.revision_delta == 1
        assert diff.summary() == ["+ Fresh Mod", "~ UPDATE (1.0 -> 2.0)", "- drop"]

    def test_hash_case_is_not_a_change(self, entry_factory, manifest_factory):
        entry = entry_factory("a", b"a")
        shouted = replace(entry, sha256=entry.sha256.upper())
        assert not compare(manifest_factory(entry), manifest_factory(shouted)).has_changes

    def test_to_dict(self, entry_factory, manifest_factory):
        old = manifest_factory(entry_factory("a", b"a"))
        new = manifest_factory(entry_factory("a", b"changed"), revision=2)
        data = compare(old, new).to_dict()
        assert data["changed"][0]["id"] == "a"
        assert data["revision_delta"] == 1


def test_manifest_is_immutable(manifest_factory):
    manifest = manifest_factory()
    with pytest.raises(AttributeError):
        manifest.revision = 2
    assert isinstance(manifest, Manifest)
