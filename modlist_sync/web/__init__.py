"""Web UI for modlist-sync."""

import argparse
from pathlib import Path

from ..config import SyncConfig


def create_and_run(config: SyncConfig | None = None, mods_dir: Path | None = None, port: int = 5000):
    """Create and run the Flask app."""
    from .app import create_app

    app = create_app(config=config, mods_dir=mods_dir)
    app.run(host="127.0.0.1", port=port, debug=False)


def main():
    """Standalone entry point for modlist-sync-web."""
    parser = argparse.ArgumentParser(description="modlist-sync web UI")
    parser.add_argument("mods_dir", type=Path, help="Mods directory")
    parser.add_argument("--port", type=int, default=5000, help="Port (default 5000)")
    parser.add_argument("--work-dir", type=Path, default=None, help="Staging and backup root")
    args = parser.parse_args()

    create_and_run(config=SyncConfig.from_env(work_dir=args.work_dir), mods_dir=args.mods_dir, port=args.port)
