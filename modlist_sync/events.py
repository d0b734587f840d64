"""Progress snapshots and lifecycle events emitted while installing a manifest."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .manifest import ManifestEntry

logger = logging.getLogger(__name__)


class InstallPhase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    BACKING_UP = "backing_up"
    INSTALLING = "installing"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED_PARTIALLY = "failed_partially"

    @property
    def is_terminal(self) -> bool:
        return self in (
            InstallPhase.COMPLETE,
            InstallPhase.CANCELLED,
            InstallPhase.FAILED_PARTIALLY,
        )


@dataclass(frozen=True)
class ProgressSnapshot:
    """Where an installation run is, for a progress bar and status line."""

    phase: InstallPhase
    entry: ManifestEntry | None
    item_index: int  # 1-based, 0 before the first item
    item_total: int
    overall_percent: float
    operation_percent: float
    message: str
    bytes_downloaded: int = 0
    bytes_total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "entry_id": self.entry.id if self.entry else None,
            "item_index": self.item_index,
            "item_total": self.item_total,
            "overall_percent": round(self.overall_percent, 2),
            "operation_percent": round(self.operation_percent, 2),
            "message": self.message,
            "bytes_downloaded": self.bytes_downloaded,
            "bytes_total": self.bytes_total,
        }


@dataclass(frozen=True)
class ItemEvent:
    """An entry started or finished processing."""

    entry: ManifestEntry
    item_index: int
    item_total: int
    success: bool = False
    error: str | None = None


@dataclass(frozen=True)
class DownloadProgressEvent:
    entry: ManifestEntry
    bytes_received: int
    bytes_total: int

    @property
    def percent(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return self.bytes_received / self.bytes_total * 100


ProgressSink = Callable[[ProgressSnapshot], None]
ItemListener = Callable[[ItemEvent], None]
DownloadListener = Callable[[DownloadProgressEvent], None]


def overall_percent(item_index: int, item_total: int, operation_percent: float) -> float:
    """Completed items plus the fraction of the current one, as a percentage."""
    if item_total <= 0:
        return 0.0
    completed = max(item_index - 1, 0)
    value = (completed + operation_percent / 100.0) / item_total * 100
    return min(max(value, 0.0), 100.0)


class EventBus:
    """
    Synchronous listener registry for item-started, item-completed and
    download-progress notifications.

    Delivery is best effort: a listener that raises is logged and skipped,
    and never changes the outcome of the run that emitted the event.
    """

    def __init__(self):
        self._item_started: list[ItemListener] = []
        self._item_completed: list[ItemListener] = []
        self._download_progress: list[DownloadListener] = []

    def subscribe_item_started(self, listener: ItemListener) -> Callable[[], None]:
        return self._subscribe(self._item_started, listener)

    def subscribe_item_completed(self, listener: ItemListener) -> Callable[[], None]:
        return self._subscribe(self._item_completed, listener)

    def subscribe_download_progress(self, listener: DownloadListener) -> Callable[[], None]:
        return self._subscribe(self._download_progress, listener)

    def item_started(self, event: ItemEvent) -> None:
        self._emit(self._item_started, event)

    def item_completed(self, event: ItemEvent) -> None:
        self._emit(self._item_completed, event)

    def download_progress(self, event: DownloadProgressEvent) -> None:
        self._emit(self._download_progress, event)

    @staticmethod
    def _subscribe(listeners: list, listener: Callable) -> Callable[[], None]:
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def _emit(listeners: list, event: Any) -> None:
        for listener in list(listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed", listener)


def notify(sink: ProgressSink | None, snapshot: ProgressSnapshot) -> None:
    """Deliver a snapshot to an optional progress sink, ignoring sink errors."""
    if sink is None:
        return
    try:
        sink(snapshot)
    except Exception:
        logger.exception("Progress sink %r failed", sink)


def format_bytes(size: int) -> str:
    """Human-readable byte count, e.g. 1536 -> '1.5 KB'."""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    order = 0
    while value >= 1024 and order < len(units) - 1:
        order += 1
        value /= 1024
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[order]}"
