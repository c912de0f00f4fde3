"""Debounced file watching keyed by an owner name.

Watchdog delivers events on its observer thread; they are handed to the
event loop that armed the watcher, where a settle task waits for the file
to stop changing before the async callback runs.
"""

from __future__ import annotations

import asyncio
import os
import threading
from typing import Awaitable, Callable, Optional

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

FileChangeCallback = Callable[[], Awaitable[None]]

_CHANGE_EVENTS = ("modified", "created", "moved")


def _stat(path: str) -> Optional[tuple[float, int]]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return (st.st_mtime, st.st_size)


class _DebouncedHandler(FileSystemEventHandler):
    """Fires ``callback`` once ``path`` has been stable for ``threshold`` seconds."""

    def __init__(
        self,
        path: str,
        callback: FileChangeCallback,
        loop: asyncio.AbstractEventLoop,
        threshold: float,
        poll_interval: float,
    ):
        self.path = path
        self.is_dir = os.path.isdir(path)
        self._callback = callback
        self._loop = loop
        self._threshold = threshold
        self._poll_interval = poll_interval
        self._last_event = 0.0
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def _matches(self, event: FileSystemEvent) -> bool:
        candidates = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            candidates.append(dest)
        for candidate in candidates:
            if isinstance(candidate, bytes):
                candidate = os.fsdecode(candidate)
            candidate = os.path.abspath(candidate)
            if candidate == self.path:
                return True
            if self.is_dir and candidate.startswith(self.path + os.sep):
                return True
        return False

    def on_any_event(self, event: FileSystemEvent) -> None:
        if self._closed or event.event_type not in _CHANGE_EVENTS:
            return
        if event.is_directory and not self.is_dir:
            return
        if not self._matches(event):
            return
        try:
            self._loop.call_soon_threadsafe(self._trigger)
        except RuntimeError:
            # Event loop already closed
            pass

    def _trigger(self) -> None:
        if self._closed:
            return
        self._last_event = self._loop.time()
        if self._task is None or self._task.done():
            self._task = self._loop.create_task(self._settle())

    async def _settle(self) -> None:
        last_stat = _stat(self.path)
        stable_since = self._loop.time()

        while True:
            await asyncio.sleep(self._poll_interval)
            if self._closed:
                return
            current = _stat(self.path)
            now = self._loop.time()
            if current != last_stat or self._last_event > stable_since:
                last_stat = current
                stable_since = now
                continue
            if now - stable_since >= self._threshold:
                break

        self._task = None
        try:
            await self._callback()
        except Exception as e:
            logger.error(f"Error handling file change for {self.path}: {e}")

    def close(self) -> None:
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None


class FileWatcher:
    """
    Maps an owner name (server name or config source) to watched paths.

    Pure change-notification primitive: it knows nothing about what the
    callback does.
    """

    def __init__(
        self,
        stability_threshold: float = 0.5,
        poll_interval: float = 0.1,
        enabled: bool = True,
    ):
        self._stability_threshold = stability_threshold
        self._poll_interval = poll_interval
        self._enabled = enabled
        self._watchers: dict[str, list[tuple[_DebouncedHandler, ObservedWatch]]] = {}
        self._observer: Optional[Observer] = None
        self._lock = threading.RLock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def setup_watchers(self, name: str, paths: list[str], on_file_change: FileChangeCallback) -> None:
        """
        Arm watchers for ``name``, replacing any existing ones.

        Must be called from within the running event loop that should run
        ``on_file_change``.
        """
        self.clear_watchers(name)

        if not self._enabled or not paths:
            return

        loop = asyncio.get_running_loop()
        armed: list[tuple[_DebouncedHandler, ObservedWatch]] = []

        with self._lock:
            observer = self._ensure_observer()
            for raw_path in paths:
                path = os.path.abspath(os.path.expanduser(raw_path))
                handler = _DebouncedHandler(
                    path,
                    on_file_change,
                    loop,
                    self._stability_threshold,
                    self._poll_interval,
                )
                target = path if handler.is_dir else os.path.dirname(path)
                try:
                    watch = observer.schedule(handler, target, recursive=handler.is_dir)
                except OSError as e:
                    logger.warning(f"Cannot watch {path} for {name}: {e}")
                    continue
                armed.append((handler, watch))
                logger.debug(f"Watching {path} for {name}")

            if armed:
                self._watchers[name] = armed
            elif not self._watchers:
                self._stop_observer()

    def clear_watchers(self, name: Optional[str] = None) -> None:
        """Close watchers for one name, or for every name when omitted."""
        with self._lock:
            if name is not None:
                entries = self._watchers.pop(name, [])
            else:
                entries = [entry for group in self._watchers.values() for entry in group]
                self._watchers.clear()

            remaining = {watch for group in self._watchers.values() for _, watch in group}
            for handler, watch in entries:
                handler.close()
                if self._observer is None:
                    continue
                try:
                    # Several handlers can share one directory watch
                    if watch in remaining:
                        self._observer.remove_handler_for_watch(handler, watch)
                    else:
                        self._observer.unschedule(watch)
                except (KeyError, OSError) as e:
                    logger.debug(f"Failed to unschedule watch on {handler.path}: {e}")

            if not self._watchers:
                self._stop_observer()

    def watched_names(self) -> list[str]:
        with self._lock:
            return list(self._watchers.keys())

    def dispose(self) -> None:
        self.clear_watchers()

    def _ensure_observer(self) -> Observer:
        if self._observer is None:
            self._observer = Observer()
            self._observer.daemon = True
            self._observer.start()
        return self._observer

    def _stop_observer(self) -> None:
        if self._observer is None:
            return
        observer, self._observer = self._observer, None
        try:
            observer.stop()
            if observer.is_alive() and threading.current_thread() is not observer:
                observer.join(timeout=2.0)
        except RuntimeError as e:
            logger.debug(f"Failed to stop file observer: {e}")
