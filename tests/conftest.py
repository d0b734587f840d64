"""Shared fixtures: an in-memory HTTP session and manifest builders."""

import hashlib
from datetime import datetime, timezone

import pytest
import requests

from modlist_sync.config import SyncConfig
from modlist_sync.manifest import Manifest, ManifestEntry

LIST_ID = "3f2b8c1e-7d4a-4e6b-9a51-2c0d9e8f7a61"
UPDATED_AT = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)


def sha256_of(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class FakeResponse:
    """Just enough of requests.Response for a streaming download."""

    def __init__(self, content: bytes = b"", status_code: int = 200, send_length: bool = True, chunk_size: int | None = None):
        self.content = content
        self.status_code = status_code
        self.chunk_size = chunk_size
        self.headers = {"content-length": str(len(content))} if send_length else {}
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size: int = 1):
        size = self.chunk_size or chunk_size
        for start in range(0, len(self.content), size):
            yield self.content[start:start + size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Serves registered URLs from memory and records every request."""

    def __init__(self):
        self.headers: dict[str, str] = {}
        self.routes: dict = {}
        self.calls: list[str] = []
        self.closed = False

    def serve(self, url: str, content: bytes, **kwargs) -> None:
        self.routes[url] = FakeResponse(content, **kwargs)

    def fail(self, url: str, error) -> None:
        """Register a status code or an exception to raise for url."""
        if isinstance(error, int):
            self.routes[url] = FakeResponse(b"", status_code=error)
        else:
            self.routes[url] = error

    def get(self, url: str, stream: bool = False, timeout=None):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(b"", status_code=404)
        if isinstance(route, Exception):
            raise route
        return route

    def close(self) -> None:
        self.closed = True


def make_entry(mod_id: str, content: bytes, **kwargs) -> ManifestEntry:
    kwargs.setdefault("source_url", f"https://mods.example.com/files/{mod_id}.zip")
    return ManifestEntry(
        id=mod_id,
        sha256=sha256_of(content),
        size_bytes=len(content),
        **kwargs,
    )


def make_manifest(*entries: ManifestEntry, **kwargs) -> Manifest:
    kwargs.setdefault("list_id", LIST_ID)
    kwargs.setdefault("name", "Weekend Farm")
    kwargs.setdefault("game", "FS25")
    kwargs.setdefault("revision", 1)
    kwargs.setdefault("updated_at", UPDATED_AT)
    return Manifest(mods=tuple(entries), **kwargs)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def config(tmp_path):
    return SyncConfig(work_dir=tmp_path / "work", chunk_size=8)


@pytest.fixture
def mods_dir(tmp_path):
    path = tmp_path / "mods"
    path.mkdir()
    return path


@pytest.fixture
def entry_factory():
    return make_entry


@pytest.fixture
def manifest_factory():
    return make_manifest


@pytest.fixture
def three_mods(session):
    """A three-entry manifest whose files are all served by the fake session."""
    contents = {
        "FS25_Tractor": b"tractor package bytes " * 40,
        "FS25_Plough": b"plough package bytes " * 25,
        "FS25_Silo": b"silo package bytes " * 60,
    }
    entries = []
    for mod_id, content in contents.items():
        entry = make_entry(mod_id, content, title=mod_id.split("_", 1)[1], version="1.0.0.0")
        session.serve(entry.source_url, content)
        entries.append(entry)
    return make_manifest(*entries), contents
