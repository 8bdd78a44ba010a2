"""
Volume Index Manager - One corpus per mounted external volume.

Uses psutil to enumerate mounted partitions and read the battery state.
Volume corpora are refreshed on their own (longer) staleness interval and
never block the local scopes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import psutil
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import EngineConfig
from .corpus import CorpusStore, is_under
from .models import EnumerationResult, ScopeCorpus
from .scanner import Scanner, thread_budget


logger = logging.getLogger(__name__)


@dataclass
class BatteryInfo:
    """Battery information."""
    percent: float
    plugged_in: bool


def get_battery_info() -> Optional[BatteryInfo]:
    """Battery state, or None on machines without a battery."""
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, NotImplementedError, OSError) as e:
        logger.debug(f"Battery info not available: {e}")
        return None
    if battery is None:
        return None
    return BatteryInfo(percent=battery.percent, plugged_in=bool(battery.power_plugged))


def list_volumes(volume_roots: List[Path]) -> List[Path]:
    """Mounted non-system volumes: mount points strictly inside a volume root."""
    volumes = set()
    for part in psutil.disk_partitions(all=False):
        mount_point = part.mountpoint
        for root in volume_roots:
            if mount_point != str(root) and is_under(mount_point, str(root)):
                volumes.add(Path(mount_point))
                break
    return sorted(volumes)


class VolumeIndexManager:
    """
    Keeps one corpus per enabled, mounted volume.

    Disabled volumes are neither enumerated nor fed to the matcher.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: CorpusStore,
        scanner: Scanner,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self.store = store
        self.scanner = scanner
        self.on_status = on_status
        self.volumes: List[Path] = []
        self.indexing = False

    def refresh_volumes(self) -> List[Path]:
        self.volumes = list_volumes(self.config.volume_roots)
        logger.debug(f"Mounted volumes: {[str(v) for v in self.volumes]}")
        return self.volumes

    @property
    def enabled_volumes(self) -> List[Path]:
        return [v for v in self.volumes if v not in self.config.disabled_volumes]

    def set_volume_enabled(self, volume: Path, enabled: bool) -> None:
        if enabled:
            self.config.disabled_volumes.discard(volume)
        else:
            self.config.disabled_volumes.add(volume)

    def reindex_interval(self, volume: Path) -> float:
        return self.config.volume_reindex_intervals.get(
            volume, self.config.volume_freshness_window
        )

    def corpus_for(self, volume: Path) -> ScopeCorpus:
        return self.store.corpus(self.store.volume_scope(volume))

    def volume_corpora(self) -> List[ScopeCorpus]:
        """Corpora of enabled volumes that are mounted and already indexed."""
        return [
            c for c in (self.corpus_for(v) for v in self.enabled_volumes)
            if c.scope.root.exists() and c.exists
        ]

    def stale_volumes(self, now: Optional[float] = None) -> List[Path]:
        now = time.time() if now is None else now
        stale = []
        for volume in self.enabled_volumes:
            if not volume.exists():
                continue
            if self.corpus_for(volume).is_stale(self.reindex_interval(volume), now):
                stale.append(volume)
        return stale

    def should_defer(self) -> bool:
        battery = get_battery_info()
        if battery is None or battery.plugged_in:
            return False
        return battery.percent < self.config.battery_threshold

    def is_on_external_volume(self, path: str) -> bool:
        return any(is_under(path, str(v)) for v in self.volumes)

    def _status(self, message: str) -> None:
        logger.info(message)
        if self.on_status:
            self.on_status(message)

    async def index_volumes(self, volumes: List[Path]) -> List[EnumerationResult]:
        """
        Enumerate volumes concurrently, splitting the cores between them.

        Volumes that disappeared since they were listed are skipped.
        """
        volumes = [v for v in volumes if v.exists() and v not in self.config.disabled_volumes]
        if not volumes:
            return []

        if self.should_defer():
            logger.warning(
                f"Battery below {self.config.battery_threshold}%, "
                f"deferring indexing of {len(volumes)} volumes"
            )
            return []

        threads = thread_budget(self.config.cpu_count, len(volumes))
        self.indexing = True
        try:
            for volume in volumes:
                self._status(f"Indexing volume: {volume.name}")
            outcomes = await asyncio.gather(
                *(self.scanner.enumerate(self.store.volume_scope(v), threads) for v in volumes),
                return_exceptions=True,
            )
        finally:
            self.indexing = False

        results = []
        for volume, outcome in zip(volumes, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Indexing volume {volume} raised: {outcome}")
                outcome = EnumerationResult(scope=self.store.volume_scope(volume), success=False)
            results.append(outcome)

        for result in results:
            if result.success:
                self._status(f"Indexed volume: {result.scope.name}")
            else:
                self._status(f"Failed to index volume: {result.scope.name}")
        return list(results)

    async def index_stale_volumes(self) -> List[EnumerationResult]:
        self.refresh_volumes()
        stale = self.stale_volumes()
        if not stale:
            return []
        return await self.index_volumes(stale)


class _MountHandler(FileSystemEventHandler):
    def __init__(self, monitor: "MountMonitor"):
        self.monitor = monitor

    def on_created(self, event: FileSystemEvent):
        self.monitor._dispatch()

    def on_deleted(self, event: FileSystemEvent):
        self.monitor._dispatch()


class MountMonitor:
    """Watches the volume roots (non-recursively) for mounts and unmounts."""

    def __init__(self, config: EngineConfig, on_change: Callable[[], None]):
        self.config = config
        self.on_change = on_change
        self._observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self):
        self.stop()
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        self._observer = Observer()
        handler = _MountHandler(self)
        for root in self.config.volume_roots:
            if root.exists():
                self._observer.schedule(handler, str(root), recursive=False)
        self._observer.start()

    def stop(self):
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None

    def _dispatch(self):
        if self._loop is None:
            self.on_change()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.on_change)
