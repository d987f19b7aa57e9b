"""
Completion Watchdog Module

Polls each worker's done.json sentinel and turns it into exactly one
completion event. Runs on a daemon thread independent of the runtime's main
poll loop.
"""

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.team_state import TeamPaths
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 3000


@dataclass
class CompletionEvent:
    """A worker reported a task outcome through its done sentinel."""
    worker_name: str
    task_id: str
    status: str
    summary: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


class CompletionWatchdog:
    """
    Sentinel file watcher with exactly-once delivery per worker.

    A worker is marked processed before anything else happens, so neither a
    concurrent tick nor a handler failure can deliver the same sentinel twice.
    """

    def __init__(self, paths: TeamPaths, worker_names: List[str],
                 handler: Callable[[CompletionEvent], None]):
        """
        Initialize the watchdog.

        Args:
            paths: Team state layout
            worker_names: Workers to watch
            handler: Called once per sentinel
        """
        self.paths = paths
        self.worker_names = list(worker_names)
        self.handler = handler
        self.processed: Set[str] = set()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> List[CompletionEvent]:
        """
        Scan unprocessed workers once.

        Returns:
            The events delivered during this tick
        """
        delivered = []
        for name in self.worker_names:
            with self._lock:
                if name in self.processed:
                    continue
                sentinel_path = self.paths.done_path(name)
                signal = FileUtils.read_json(sentinel_path)
                if not isinstance(signal, dict):
                    continue
                self.processed.add(name)

            FileUtils.remove_file(sentinel_path)
            event = CompletionEvent(
                worker_name=name,
                task_id=str(signal.get('taskId', '')),
                status='completed' if signal.get('status') == 'completed' else 'failed',
                summary=str(signal.get('summary', '')),
            )
            logger.info(f"{name} reported task {event.task_id} {event.status}")

            try:
                self.handler(event)
            except Exception as e:
                logger.error(f"Completion handler failed for {name}: {e}", exc_info=True)
            delivered.append(event)
        return delivered

    def start(self, interval_ms: int = DEFAULT_INTERVAL_MS) -> Callable[[], None]:
        """
        Start ticking on a daemon thread.

        Returns:
            Callable that stops future ticks
        """
        self._stop_event.clear()

        def loop():
            while not self._stop_event.wait(interval_ms / 1000):
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"Watchdog tick failed: {e}", exc_info=True)

        self._thread = threading.Thread(target=loop, name='completion-watchdog', daemon=True)
        self._thread.start()
        logger.debug(f"Completion watchdog started for {len(self.worker_names)} workers")
        return self.stop

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._thread = None
