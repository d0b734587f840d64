"""Streaming HTTP downloads with progress and cancellation."""

import logging
import threading
from pathlib import Path
from typing import Callable

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from .config import SyncConfig

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    """Raised when a download fails."""

    pass


class InvalidSourceError(DownloadError):
    """Raised when a source URL cannot be requested at all."""

    pass


class DownloadCancelled(Exception):
    """Raised when cancellation is observed while a transfer is in flight."""

    pass


class Downloader:
    """Fetches mod files over HTTP(S) into a local file, chunk by chunk."""

    def __init__(self, config: SyncConfig | None = None, session: requests.Session | None = None):
        self.config = config or SyncConfig()
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": self.config.user_agent})

    def download(
        self,
        url: str,
        dest: Path,
        expected_size: int = 0,
        on_progress: Callable[[int, int], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> int:
        """
        Stream url into dest, overwriting it.

        Args:
            expected_size: Total used for progress when the server sends no
                           content-length.
            on_progress: Optional callback(bytes_downloaded, total_bytes),
                         fired once per chunk.
            cancel: Checked between chunks; when set the transfer is abandoned
                    and DownloadCancelled is raised. Partial bytes stay in dest
                    for the caller to discard.

        Returns the number of bytes written.
        """
        try:
            with self.session.get(url, stream=True, timeout=self.config.timeout) as response:
                response.raise_for_status()

                total_size = _content_length(response) or expected_size

                bytes_downloaded = 0
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                        if cancel is not None and cancel.is_set():
                            raise DownloadCancelled(f"Download of {url} cancelled")
                        if chunk:
                            f.write(chunk)
                            bytes_downloaded += len(chunk)
                            if on_progress:
                                on_progress(bytes_downloaded, total_size)

        except (
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
            requests.exceptions.InvalidURL,
        ) as e:
            raise InvalidSourceError(f"Invalid source URL {url}: {e}")
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise DownloadError(f"HTTP {status} while downloading {url}")
        except (requests.RequestException, OSError) as e:
            raise DownloadError(f"Failed to download {url}: {e}")

        logger.debug("Downloaded %d bytes from %s", bytes_downloaded, url)
        return bytes_downloaded

    def close(self) -> None:
        self.session.close()


def _content_length(response: requests.Response) -> int:
    try:
        return int(response.headers.get("content-length", 0))
    except (TypeError, ValueError):
        return 0


def create_download_progress() -> Progress:
    """Create a progress bar for downloads."""
    return Progress(
        TextColumn("[bold blue]{task.fields[filename]}", justify="right"),
        BarColumn(bar_width=30),
        "[progress.percentage]{task.percentage:>3.0f}%",
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    )
