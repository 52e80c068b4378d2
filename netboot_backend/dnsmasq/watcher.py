"""
Filesystem watches that keep the store caches coherent with disk.

A watchdog observer thread reports changes; events are handed to the asyncio
loop that runs the owning store's ``start()`` through a bounded queue, and
each burst of relevant events results in one full store reload.
"""

import asyncio
import os
import threading
from typing import Callable, Dict, List, Tuple

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from netboot_backend.metrics import STORE_RELOADS

logger = structlog.get_logger()

DEFAULT_QUEUE_SIZE = 16


def event_paths(event: FileSystemEvent) -> Tuple[str, ...]:
    """Resolved source (and destination, for moves) paths of an event."""
    paths = [os.fsdecode(event.src_path)]
    dest = getattr(event, "dest_path", "")
    if dest:
        paths.append(os.fsdecode(dest))
    return tuple(os.path.realpath(p) for p in paths)


class _ForwardingHandler(FileSystemEventHandler):
    """Passes every observed event to the owning watcher."""

    def __init__(self, watcher: "FileWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        self.watcher._dispatch(event)


class FileWatcher:
    """Watches directories and forwards their events to asyncio subscribers."""

    def __init__(self, name: str, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.name = name
        self.queue_size = queue_size
        self._observer = Observer()
        self._observer.daemon = True
        self._handler = _ForwardingHandler(self)
        self._watches: Dict[str, ObservedWatch] = {}
        self._subscribers: List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    @property
    def watched(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._watches)

    def add(self, directory: str) -> bool:
        """
        Start watching ``directory``.

        Returns False if it is already watched, does not exist, or the
        watcher is closed. Safe to call repeatedly.
        """
        path = os.path.realpath(directory)
        with self._lock:
            if self._closed or path in self._watches:
                return False
            if not os.path.isdir(path):
                return False

            self._watches[path] = self._observer.schedule(self._handler, path, recursive=False)
            if not self._started:
                self._observer.start()
                self._started = True

        logger.debug("watch_added", watcher=self.name, path=path)
        return True

    def subscribe(self) -> asyncio.Queue:
        """Register a queue on the running loop that receives events."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        with self._lock:
            self._subscribers.append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers = [(l, q) for l, q in self._subscribers if q is not queue]

    def _dispatch(self, event: FileSystemEvent) -> None:
        """Called on the observer thread."""
        with self._lock:
            subscribers = list(self._subscribers)

        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(_offer, queue, event)
            except RuntimeError:
                logger.debug("watch_event_dropped", watcher=self.name, reason="loop_closed")

    def close(self) -> None:
        """Stop the observer thread. The watcher cannot be reused."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            started = self._started
            self._subscribers = []

        if started:
            self._observer.stop()
            self._observer.join()
        logger.debug("watcher_closed", watcher=self.name)


def _offer(queue: asyncio.Queue, event: FileSystemEvent) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        # A reload is already pending; it will observe this change too.
        pass


async def reload_on_change(
    watcher: FileWatcher,
    store: str,
    is_relevant: Callable[[FileSystemEvent], bool],
    reload: Callable[[], None],
) -> None:
    """
    Reload a store whenever a relevant filesystem event arrives.

    Blocks until cancelled. Reload failures are logged and the loop keeps
    running; the next event retries.
    """
    events = watcher.subscribe()
    logger.info("store_watcher_started", store=store, paths=list(watcher.watched))

    try:
        while True:
            event = await events.get()
            relevant = is_relevant(event)

            # Coalesce everything already queued into this reload
            while not events.empty():
                relevant = is_relevant(events.get_nowait()) or relevant

            if not relevant:
                continue

            logger.info("store_files_changed", store=store, path=os.fsdecode(event.src_path))
            try:
                await asyncio.to_thread(reload)
            except Exception as e:
                STORE_RELOADS.labels(store=store, result="error").inc()
                logger.error("store_reload_failed", store=store, error=str(e))
            else:
                STORE_RELOADS.labels(store=store, result="ok").inc()
    finally:
        watcher.unsubscribe(events)
        logger.info("store_watcher_stopped", store=store)
