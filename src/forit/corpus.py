"""Live, hot-reloading view of the playbook directory.

Every ``.yml`` file below the root is one playbook. Playbooks are kept in a
flat table keyed by their path relative to the root, plus an index keyed by
``(customer, environment)`` that is rebuilt whenever the table changes. Both
are replaced wholesale under the write lock so readers only ever see a
complete state.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Optional
import logging
import os
import threading

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import ConfigError, FilesystemError
from .locks import ReadWriteLock
from .playbooks import PLAYBOOK_SUFFIX, PlaybookLoader
from .types import Playbook, Task

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 2.0

Bucket = tuple[str, str]


class Debouncer:
    """Single-slot timer: every ``trigger`` restarts the quiet period."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def _fire(self) -> None:
        with self._lock:
            # A trigger may have replaced the timer while this one waited for the lock.
            if self._timer is threading.current_thread():
                self._timer = None
        try:
            self.callback()
        except Exception:  # noqa: BLE001
            logger.exception("Debounced callback failed")


class PlaybookEventHandler(FileSystemEventHandler):
    """Forwards filesystem events that can affect the corpus.

    ``on_change`` receives the playbook path that changed, or ``None`` when
    the whole tree has to be rescanned.
    """

    IGNORED_EVENTS = {"opened", "closed_no_write"}

    def __init__(self, on_change: Callable[[Optional[str]], None]):
        super().__init__()
        self.on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in self.IGNORED_EVENTS:
            return
        if event.is_directory:
            # Removing or renaming a directory takes its playbooks with it.
            if event.event_type in {"deleted", "moved"}:
                logger.debug("Playbook directory %s %s", event.src_path, event.event_type)
                self.on_change(None)
            return
        for path in self.playbook_paths(event):
            logger.debug("Playbook change detected: %s %s", event.event_type, path)
            self.on_change(path)

    @staticmethod
    def playbook_paths(event: FileSystemEvent) -> list[str]:
        paths = [os.fsdecode(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(os.fsdecode(dest))
        return [path for path in paths if path.endswith(PLAYBOOK_SUFFIX)]


class CorpusManager:
    """Serves per-host task lists from the playbook tree and keeps it current."""

    def __init__(
        self,
        root: Path,
        *,
        debounce: float = DEFAULT_DEBOUNCE,
        loader: Optional[PlaybookLoader] = None,
    ):
        self.root = Path(root)
        self.loader = loader or PlaybookLoader()
        self._lock = ReadWriteLock()
        self._playbooks: dict[str, Playbook] = {}
        self._index: dict[Bucket, list[Playbook]] = {}
        self._update_lock = threading.Lock()
        self._debouncer = Debouncer(debounce, self.apply_pending)
        self._pending_lock = threading.Lock()
        self._pending: set[str] = set()
        self._rescan = False
        self._observer: Optional[Observer] = None
        self._ensure_root()

    # Lifecycle -----------------------------------------------------------
    def start(self) -> None:
        self.reload()
        self._start_watcher()

    def stop(self) -> None:
        self._debouncer.cancel()
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

    def __enter__(self) -> "CorpusManager":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def notify_change(self, path: Optional[str] = None) -> None:
        """Queue a changed playbook, or a full rescan when ``path`` is None."""

        with self._pending_lock:
            if path is None:
                self._rescan = True
            else:
                self._pending.add(path)
        self._debouncer.trigger()

    def apply_pending(self) -> None:
        with self._pending_lock:
            paths, self._pending = sorted(self._pending), set()
            rescan, self._rescan = self._rescan, False
        if rescan:
            self.reload()
            return
        for name in paths:
            path = Path(name)
            if path.is_file():
                self.load_file(path)
            elif self.remove_file(path):
                logger.info("Playbook %s removed", PlaybookLoader.source_name(path, self.root))

    # Queries -------------------------------------------------------------
    def tasks_for(self, customer: str, environment: str, hostname: str) -> list[Task]:
        with self._lock.read():
            index = self._index
        return self._collect(index.get((customer, environment), ()), hostname)

    def tasks_for_host(self, hostname: str) -> list[Task]:
        with self._lock.read():
            index = self._index
        tasks: list[Task] = []
        for bucket in sorted(index):
            tasks.extend(self._collect(index[bucket], hostname))
        return tasks

    def playbooks(self) -> list[Playbook]:
        with self._lock.read():
            table = self._playbooks
        return [table[source] for source in sorted(table)]

    def get(self, source: str) -> Optional[Playbook]:
        with self._lock.read():
            return self._playbooks.get(source)

    @staticmethod
    def _collect(playbooks: Iterable[Playbook], hostname: str) -> list[Task]:
        tasks: list[Task] = []
        for playbook in playbooks:
            if playbook.applies_to(hostname):
                tasks.extend(playbook.tasks)
        return tasks

    # Loading -------------------------------------------------------------
    def reload(self) -> None:
        """Re-read the whole tree; files that fail to parse keep their last good version."""

        with self._update_lock:
            self._reload()

    def _reload(self) -> None:
        with self._lock.read():
            previous = self._playbooks
        try:
            paths = sorted(p for p in self.root.rglob(f"*{PLAYBOOK_SUFFIX}") if p.is_file())
        except OSError as exc:
            logger.error("Unable to scan playbook directory %s: %s", self.root, exc)
            return

        table: dict[str, Playbook] = {}
        for path in paths:
            source = PlaybookLoader.source_name(path, self.root)
            try:
                table[source] = self.loader.load(path, self.root)
            except ConfigError as exc:
                if source in previous:
                    logger.error("Error loading playbook %s (keeping last good version): %s", source, exc)
                    table[source] = previous[source]
                else:
                    logger.error("Error loading playbook %s: %s", source, exc)

        removed = sorted(set(previous) - set(table))
        for source in removed:
            logger.info("Playbook %s removed", source)
        self._swap(table)
        logger.info("Loaded %d playbooks from %s", len(table), self.root)

    def load_file(self, path: Path) -> Optional[Playbook]:
        """Parse one file and replace its entry; on error the old entry stays."""

        path = Path(path)
        source = PlaybookLoader.source_name(path, self.root)
        try:
            playbook = self.loader.load(path, self.root)
        except ConfigError as exc:
            logger.error("Error loading playbook %s: %s", source, exc)
            return None
        with self._update_lock:
            with self._lock.read():
                table = dict(self._playbooks)
            table[source] = playbook
            self._swap(table)
        return playbook

    def remove_file(self, path: Path) -> bool:
        source = PlaybookLoader.source_name(Path(path), self.root)
        with self._update_lock:
            with self._lock.read():
                if source not in self._playbooks:
                    return False
                table = dict(self._playbooks)
            del table[source]
            self._swap(table)
        return True

    def _swap(self, table: dict[str, Playbook]) -> None:
        index: dict[Bucket, list[Playbook]] = {}
        for source in sorted(table):
            playbook = table[source]
            index.setdefault(playbook.bucket, []).append(playbook)
        with self._lock.write():
            self._playbooks = table
            self._index = index

    def _ensure_root(self) -> None:
        if self.root.exists():
            if not self.root.is_dir():
                raise FilesystemError(f"playbook directory {self.root} is not a directory")
            if not os.access(self.root, os.R_OK | os.X_OK):
                raise FilesystemError(f"playbook directory {self.root} is not readable")
            return
        try:
            self.root.mkdir(mode=0o755, parents=True)
        except OSError as exc:
            raise FilesystemError(f"cannot create playbook directory {self.root}: {exc}") from exc
        logger.info("Created playbook directory %s", self.root)

    def _start_watcher(self) -> None:
        observer = Observer()
        observer.daemon = True
        try:
            observer.schedule(PlaybookEventHandler(self.notify_change), str(self.root), recursive=True)
            observer.start()
        except Exception as exc:  # noqa: BLE001
            logger.error("Watcher error on %s, hot reload disabled: %s", self.root, exc)
            return
        self._observer = observer
        logger.debug("Watching %s for playbook changes", self.root)
