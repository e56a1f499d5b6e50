"""
Directory watch loop built on watchdog.

Responsibility:
    Bridge file system notifications from ``watchdog`` to the
    :class:`~debounce_watch.scheduler.DebounceScheduler`. The observer runs in
    its own thread and only enqueues event descriptions; the watch loop runs
    in the calling thread, blocks on that queue and hands each batch of
    events to the scheduler.

Design:
    - **Recursive**: Every configured directory is scheduled recursively on a
      single ``Observer``.
    - **Event kinds**: Only created, modified, closed (write-complete) and
      moved-into events are reported. Deletions and directory modification
      events are ignored.
    - **Batching**: Events queued while the scheduler is busy (it sleeps
      inline for half the delay) are drained and reported as one batch.
    - **Serialized**: ``notify_event`` is only ever called from the loop
      thread, one batch at a time, in the order events were reported.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union, TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

if TYPE_CHECKING:
    from debounce_watch.scheduler import DebounceScheduler

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DirectoryEventHandler", "WatchLoop", "describe_batch"]

MAX_QUEUED_EVENTS = 10000
MAX_DESCRIBED_EVENTS = 3


def describe_batch(descriptions: Sequence[str]) -> str:
    """Build a human-readable description of a batch of events.

    Args:
        descriptions (Sequence[str]): Descriptions of the individual events.

    Returns:
        str: The single description, or a summary of the first few events.

    Example:
        >>> describe_batch(["created /tmp/w/a"])
        'created /tmp/w/a'
        >>> describe_batch(["created /tmp/w/a", "modified /tmp/w/a"])
        '2 events: created /tmp/w/a, modified /tmp/w/a'
    """
    if len(descriptions) == 1:
        return descriptions[0]
    shown = ", ".join(descriptions[:MAX_DESCRIBED_EVENTS])
    if len(descriptions) > MAX_DESCRIBED_EVENTS:
        shown += ", ..."
    return f"{len(descriptions)} events: {shown}"


class DirectoryEventHandler(FileSystemEventHandler):
    """Queue descriptions of relevant file system events.

    Attributes:
        directories (List[Path]): Absolute paths of the watched directories.
        events_detected (int): Number of events accepted into the queue.
    """

    def __init__(
        self,
        directories: Iterable[Union[str, Path]],
        maxsize: int = MAX_QUEUED_EVENTS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the handler.

        Args:
            directories (Iterable[Union[str, Path]]): The watched directories.
            maxsize (int): Maximum number of queued events before dropping.
            logger (Optional[logging.Logger]): Optional logger instance.
        """
        super().__init__()
        self.directories = [Path(d).absolute() for d in directories]
        self.logger = logger or logging.getLogger(__name__)
        self._queue: "queue.Queue[str]" = queue.Queue(maxsize=maxsize)
        self.events_detected: int = 0
        self._dropped_events: int = 0
        self._last_dropped_log_time: float = 0.0

    def _enqueue(self, kind: str, path: Union[str, bytes]) -> None:
        """Queue one event description, dropping it if the queue is full.

        Args:
            kind (str): The event kind (e.g. ``created``).
            path (Union[str, bytes]): The path the event refers to.

        Returns:
            None
        """
        description = f"{kind} {os.fsdecode(path)}"
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"Detected event: {description}")
        try:
            self._queue.put_nowait(description)
        except queue.Full:
            self._dropped_events += 1
            now = time.monotonic()
            if now - self._last_dropped_log_time > 5.0:
                self.logger.warning(
                    f"Event queue full, dropping {description}. Total dropped: {self._dropped_events}"
                )
                self._last_dropped_log_time = now
            return
        self.events_detected += 1

    def _is_watched(self, path: Union[str, bytes]) -> bool:
        """Return whether a path lies under one of the watched directories.

        Args:
            path (Union[str, bytes]): The path to check.

        Returns:
            bool: True if the path is inside a watched directory.
        """
        candidate = Path(os.fsdecode(path)).absolute()
        for directory in self.directories:
            if candidate == directory or directory in candidate.parents:
                return True
        return False

    def next_batch(self, timeout: Optional[float] = None) -> Optional[List[str]]:
        """Block for the next event and drain everything queued behind it.

        Args:
            timeout (Optional[float]): Maximum time to block in seconds.

        Returns:
            Optional[List[str]]: Event descriptions in arrival order, or None
            if no event arrived within ``timeout``.
        """
        try:
            first = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        batch = [first]
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return batch

    def on_created(self, event: FileSystemEvent) -> None:
        """Report file and directory creation."""
        self._enqueue("created", event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Report file modification.

        Directory modification events are a side effect of changes to their
        children and are ignored.
        """
        if event.is_directory:
            return
        self._enqueue("modified", event.src_path)

    def on_closed(self, event: FileSystemEvent) -> None:
        """Report a file closed after writing."""
        self._enqueue("write-complete", event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Report entries moved into a watched directory.

        Moves whose destination is outside every watched directory are
        ignored.
        """
        dest_path = getattr(event, "dest_path", "")
        if not dest_path or not self._is_watched(dest_path):
            return
        self._enqueue("moved-into", dest_path)

    def __repr__(self) -> str:
        return f"<DirectoryEventHandler directories={[str(d) for d in self.directories]}>"


class WatchLoop:
    """Run the watchdog observer and feed event batches to the scheduler.

    Attributes:
        directories (List[Path]): Absolute paths of the watched directories.
        scheduler (DebounceScheduler): Receives one call per event batch.
        handler (DirectoryEventHandler): The event handler instance.
        poll_interval (float): How often the loop wakes up to check for
            shutdown and observer health when no events arrive.

    Example:
        >>> scheduler = DebounceScheduler(10, ["make"])
        >>> loop = WatchLoop(["/tmp/w"], scheduler)
        >>> loop.start()  # doctest: +SKIP
        >>> loop.run(stop_event)  # doctest: +SKIP
        >>> loop.stop()  # doctest: +SKIP
    """

    def __init__(
        self,
        directories: Iterable[Union[str, Path]],
        scheduler: DebounceScheduler,
        poll_interval: float = 1.0,
    ) -> None:
        """Initialize the watch loop.

        Args:
            directories (Iterable[Union[str, Path]]): The directories to watch.
            scheduler (DebounceScheduler): The scheduler to notify.
            poll_interval (float): Seconds to block on the event queue before
                checking for shutdown.
        """
        self.directories = [Path(d).absolute() for d in directories]
        if not self.directories:
            raise ValueError("At least one directory must be watched")
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.handler = DirectoryEventHandler(self.directories, logger=logger)
        self._observer: Optional[Observer] = None
        self._stopping = False
        self.batches_processed: int = 0
        self.notify_errors: int = 0

    @property
    def observer(self) -> Optional[Observer]:
        """Return the underlying observer, if started."""
        return self._observer

    def _start_observer(self) -> None:
        """Create, schedule and start a new observer, retrying on failure.

        Returns:
            None

        Raises:
            RuntimeError: If the observer cannot be started after retries.
        """
        max_retries = 3
        for attempt in range(max_retries):
            if self._stopping:
                return
            try:
                observer = Observer()
                for directory in self.directories:
                    observer.schedule(self.handler, str(directory), recursive=True)
                observer.start()
                self._observer = observer
                logger.info(f"Observer started ({type(observer).__name__})")
                if attempt > 0:
                    logger.info(f"Observer recovered successfully on attempt {attempt + 1}")
                return
            except OSError as e:
                logger.error(
                    f"OS Error starting observer (attempt {attempt + 1}/{max_retries}): {e} (Check inotify limits?)"
                )
            except Exception as e:
                logger.error(f"Failed to start observer (attempt {attempt + 1}/{max_retries}): {e}")
            if attempt < max_retries - 1:
                time.sleep(0.5)

        logger.critical("Could not start observer after retries.")
        raise RuntimeError("Failed to start watchdog observer")

    def start(self) -> None:
        """Start watching every configured directory.

        Returns:
            None

        Raises:
            FileNotFoundError: If a watched directory does not exist.
            RuntimeError: If the observer fails to start.
        """
        for directory in self.directories:
            if not directory.is_dir():
                logger.error(f"Watch directory not found: {directory}")
                raise FileNotFoundError(f"Path not found: {directory}")

        self._stopping = False
        logger.info(f"Watching {', '.join(str(d) for d in self.directories)} (recursive)")
        self._start_observer()

    def _ensure_observer_alive(self) -> None:
        """Restart the observer if its thread died.

        Returns:
            None

        Raises:
            RuntimeError: If the observer cannot be restarted.
        """
        if self._stopping:
            return
        if self._observer is not None and self._observer.is_alive():
            return
        logger.critical("Watchdog observer found dead. Attempting restart...")
        if self._observer is not None:
            try:
                self._observer.join(timeout=1.0)
            except Exception as e:
                logger.debug(f"Error joining dead observer: {e}")
        self._observer = None
        self._start_observer()

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Process event batches until ``stop_event`` is set.

        Starts the observer first if :meth:`start` was not called. Without a
        ``stop_event`` the loop runs until the process is killed.

        Args:
            stop_event (Optional[threading.Event]): Signals the loop to exit.

        Returns:
            None

        Raises:
            RuntimeError: If the observer dies and cannot be restarted.
        """
        if self._observer is None:
            self.start()

        while stop_event is None or not stop_event.is_set():
            batch = self.handler.next_batch(timeout=self.poll_interval)
            if batch is None:
                self._ensure_observer_alive()
                continue

            self.batches_processed += 1
            try:
                self.scheduler.notify_event(describe_batch(batch))
            except Exception as e:
                self.notify_errors += 1
                logger.error(f"Error handling event batch: {e}", exc_info=True)

    def stop(self) -> None:
        """Stop the observer thread.

        Returns:
            None
        """
        self._stopping = True
        if self._observer:
            try:
                if self._observer.is_alive():
                    self._observer.stop()
                    self._observer.join(timeout=5.0)
                    if self._observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer: {e}")
        logger.info("Watcher stopped.")

    def __repr__(self) -> str:
        """Return a string representation of the watch loop.

        Returns:
            str: String representation including directories and observer status.
        """
        status = "alive" if self._observer and self._observer.is_alive() else "down"
        return f"<WatchLoop directories={[str(d) for d in self.directories]} observer={status}>"
