"""
mudpuppy file indexer — mirrors workspace notes into the memory store.

Watches a directory tree (``watchfiles``, falling back to interval polling),
debounces bursts of changes per file, and indexes a file only when its
content hash differs from the last one indexed for that path. The hash map
lives in memory only; after a restart files are re-hashed and re-embedded,
and the store's content-hash uniqueness keeps the entries deduplicated.
"""

import hashlib
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import watchfiles

from mudpuppy.config import DEFAULT_DEBOUNCE_S, DEFAULT_MAX_FILE_SIZE, DEFAULT_POLL_INTERVAL_S
from mudpuppy.embeddings import EmbeddingProvider
from mudpuppy.models import EntryType, MemoryInput
from mudpuppy.sqlite_store import MemoryStore

logger = logging.getLogger("mudpuppy.indexer")

FILE_INDEX_SOURCE = "file-index"


def _hash_text(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class FileIndexer:
    """Keeps qualifying files under *root* indexed in *store*."""

    def __init__(
        self,
        root,
        store: MemoryStore,
        provider: EmbeddingProvider,
        extensions: Iterable[str] = (".md",),
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        debounce: float = DEFAULT_DEBOUNCE_S,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        force_polling: bool = False,
    ):
        self.root = Path(root).resolve()
        self.store = store
        self.provider = provider
        self.extensions = tuple(e.lower() for e in extensions)
        self.max_file_size = max_file_size
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.force_polling = force_polling

        self._file_hashes: Dict[str, str] = {}
        self._hash_lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}
        self._timer_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self.mode: Optional[str] = None  # "watch" or "poll" while running

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def _qualifies(self, path: Path) -> bool:
        return path.suffix.lower() in self.extensions

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return path.as_posix()

    def scan(self) -> List[Path]:
        """List qualifying files under the root, recursively."""
        if not self.root.is_dir():
            return []
        files = []
        try:
            for path in sorted(self.root.rglob("*")):
                if self._qualifies(path) and path.is_file():
                    files.append(path)
        except OSError as e:
            logger.warning("Scan of %s incomplete: %s", self.root, e)
        return files

    def index_file(self, path) -> bool:
        """Index one file if it is new or changed. Returns True when it was indexed."""
        path = Path(path)
        key = str(path.resolve())
        try:
            size = path.stat().st_size
            if size == 0 or size > self.max_file_size:
                return False
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            # File may have been deleted between detection and read
            logger.debug("Skipping %s: %s", path, e)
            return False

        digest = _hash_text(content)
        with self._hash_lock:
            if self._file_hashes.get(key) == digest:
                return False
            self._file_hashes[key] = digest

        relative = self._relative(path)
        try:
            embedding = self.provider.embed(content)
            result = self.store.add_entry(
                MemoryInput(
                    content=content,
                    entry_type=EntryType.FACT,
                    source=FILE_INDEX_SOURCE,
                    context=relative,
                    tags=[relative],
                ),
                embedding,
            )
        except Exception as e:
            logger.warning("Failed to index %s: %s", relative, e)
            # Forget the hash so the next change or scan retries this file
            with self._hash_lock:
                if self._file_hashes.get(key) == digest:
                    del self._file_hashes[key]
            return False

        if result.created:
            logger.info("Indexed %s as memory %d", relative, result.id)
        else:
            logger.debug("%s already stored as memory %d", relative, result.id)
        return True

    def initial_scan(self) -> int:
        """Index every qualifying file under the root. Returns the number indexed."""
        indexed = 0
        for path in self.scan():
            if self._stop_requested():
                break
            if self.index_file(path):
                indexed += 1
        return indexed

    def reset_cache(self) -> None:
        with self._hash_lock:
            self._file_hashes.clear()

    # ------------------------------------------------------------------
    # Change handling
    # ------------------------------------------------------------------

    def handle_change(self, path) -> None:
        """Schedule *path* for indexing once it has been quiet for the debounce window."""
        path = Path(path)
        if not self._qualifies(path):
            return
        key = str(path)
        timer = threading.Timer(self.debounce, self._debounced_index, args=(key,))
        timer.daemon = True
        with self._timer_lock:
            # stop() sets the event before taking this lock to cancel timers
            if self._stop_event.is_set():
                return
            existing = self._timers.get(key)
            if existing is not None:
                existing.cancel()
            self._timers[key] = timer
        timer.start()

    def _debounced_index(self, key: str) -> None:
        with self._timer_lock:
            if self._timers.get(key) is not threading.current_thread():
                return
            del self._timers[key]
        path = Path(key)
        if not path.exists():
            return
        self.index_file(path)

    def pending(self) -> int:
        """Number of files waiting out their debounce window."""
        with self._timer_lock:
            return len(self._timers)

    def _cancel_timers(self) -> None:
        with self._timer_lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _stop_requested(self) -> bool:
        return self._running and self._stop_event.is_set()

    def start(self, interval: Optional[float] = None, skip_initial_scan: bool = False) -> None:
        """Start watching. Returns immediately; work happens on a daemon thread.

        Args:
            interval: Polling interval in seconds (fallback mode only).
            skip_initial_scan: Don't index existing files before watching.
        """
        if self._running:
            return
        if not self.root.is_dir():
            logger.error("Indexer: workspace directory does not exist: %s", self.root)
            return
        if interval is not None:
            self.poll_interval = interval

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(
            target=self._run,
            args=(skip_initial_scan,),
            name="mudpuppy-indexer",
            daemon=True,
        )
        self._thread.start()

    def _run(self, skip_initial_scan: bool) -> None:
        if not skip_initial_scan:
            count = self.initial_scan()
            if count > 0:
                logger.info("Indexer: initial scan indexed %d files", count)
        if self._stop_event.is_set():
            return

        if not self.force_polling:
            try:
                self.mode = "watch"
                self._watch()
                return
            except Exception as e:
                if self._stop_event.is_set():
                    return
                logger.warning("Indexer: file watch failed, falling back to polling: %s", e)
        self.mode = "poll"
        self._poll()

    def _watch(self) -> None:
        for changes in watchfiles.watch(
            self.root,
            stop_event=self._stop_event,
            recursive=True,
            debounce=100,
            raise_interrupt=False,
        ):
            for change, raw_path in changes:
                if change == watchfiles.Change.deleted:
                    continue
                self.handle_change(raw_path)

    def _poll(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            for path in self.scan():
                if self._stop_event.is_set():
                    return
                self.index_file(path)

    def stop(self) -> None:
        """Stop watching and cancel pending debounced work. Safe to call repeatedly."""
        self._stop_event.set()
        self._cancel_timers()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=10)
            if thread.is_alive():
                # start() stays a no-op until the old thread exits
                self._thread = thread
                logger.warning("Indexer thread did not exit within 10s")
                self._cancel_timers()
                return
        # nothing scheduled survives a completed stop
        self._cancel_timers()
        self._running = False
        self.mode = None

    def is_running(self) -> bool:
        return self._running
