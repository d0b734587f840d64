from pathlib import Path

import pytest

from modlist_sync import __version__
from modlist_sync.config import HOME_ENV, TIMEOUT_ENV, SyncConfig


def test_defaults_derive_from_work_dir(tmp_path):
    config = SyncConfig(work_dir=tmp_path)
    assert config.staging_dir == tmp_path / "staging"
    assert config.backup_dir == tmp_path / "backups"
    assert config.timeout == (30.0, 300.0)
    assert config.user_agent == f"modlist-sync/{__version__}"


def test_explicit_directories_win(tmp_path):
    config = SyncConfig(work_dir=tmp_path, staging_dir=tmp_path / "fast", backup_dir=tmp_path / "safe")
    assert config.staging_dir == tmp_path / "fast"
    assert config.backup_dir == tmp_path / "safe"


def test_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv(HOME_ENV, str(tmp_path / "home"))
    monkeypatch.setenv(TIMEOUT_ENV, "45")

    config = SyncConfig.from_env()

    assert config.work_dir == tmp_path / "home"
    assert config.read_timeout == 45.0


def test_overrides_beat_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(HOME_ENV, str(tmp_path / "home"))
    config = SyncConfig.from_env(work_dir=Path(tmp_path / "cli"), backup_dir=None)
    assert config.work_dir == tmp_path / "cli"
    assert config.backup_dir == tmp_path / "cli" / "backups"


def test_bad_timeout(monkeypatch):
    monkeypatch.setenv(TIMEOUT_ENV, "soon")
    with pytest.raises(ValueError):
        SyncConfig.from_env()
