# Copyright 2025 Gossip Rotator Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""File watching for the gossip key file.

The watch is placed on the file's parent directory. Secret mounts and many
editors replace files by rename, which a watch on the file itself would not
survive. Events for the key file, and for the ``..data`` style symlink swaps
used by Kubernetes secret volumes, are reported as WRITE; deleting the key
file is reported as REMOVE so the consumer can re-arm the watch.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class WatchEventKind(Enum):
    WRITE = "write"
    REMOVE = "remove"


@dataclass(frozen=True)
class WatchEvent:
    kind: WatchEventKind
    path: str


class KeyFileEventHandler(FileSystemEventHandler):
    """Translate watchdog events for one file into WatchEvents."""

    def __init__(self, path: Path, sink: Callable[[WatchEvent], None]):
        super().__init__()
        self.path = path
        self.sink = sink

    def _relevant(self, raw_path: str | bytes) -> bool:
        candidate = Path(os.fsdecode(raw_path))
        if candidate == self.path:
            return True
        # Kubernetes atomic writer swaps a "..data" symlink in the same directory.
        return candidate.parent == self.path.parent and candidate.name.startswith("..")

    def _emit(self, kind: WatchEventKind, event: FileSystemEvent) -> None:
        logger.debug(f"{kind.value} event", extra={"fields": {"path": os.fsdecode(event.src_path)}})
        self.sink(WatchEvent(kind=kind, path=str(self.path)))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._relevant(event.src_path):
            self._emit(WatchEventKind.WRITE, event)

    def on_created(self, event: FileSystemEvent) -> None:
        if self._relevant(event.src_path):
            self._emit(WatchEventKind.WRITE, event)

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._relevant(event.dest_path):
            self._emit(WatchEventKind.WRITE, event)
        elif Path(os.fsdecode(event.src_path)) == self.path:
            self._emit(WatchEventKind.REMOVE, event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if Path(os.fsdecode(event.src_path)) == self.path:
            self._emit(WatchEventKind.REMOVE, event)


class PathWatcher:
    """Watches one file and pushes WatchEvents into ``sink``."""

    def __init__(self, path: str | Path, sink: Callable[[WatchEvent], None]):
        self.path = Path(path).absolute()
        self.handler = KeyFileEventHandler(self.path, sink)
        self._observer: Observer | None = None
        self._watch = None

    def start(self) -> None:
        """Start the observer thread and arm the watch.

        Raises OSError if the parent directory cannot be watched.
        """
        if self._observer is not None:
            logger.warning("Path watcher already running")
            return
        self._observer = Observer()
        self._observer.daemon = True
        self._watch = self._observer.schedule(self.handler, str(self.path.parent), recursive=False)
        self._observer.start()
        logger.info("Watching key file", extra={"fields": {"path": str(self.path)}})

    def rearm(self) -> bool:
        """Re-add the watch after the file (or its directory) was replaced."""
        if self._observer is None:
            return False
        if self._watch is not None:
            try:
                self._observer.unschedule(self._watch)
            except KeyError:
                logger.debug("Previous watch already gone")
            self._watch = None
        try:
            self._watch = self._observer.schedule(self.handler, str(self.path.parent), recursive=False)
        except OSError as e:
            logger.warning(f"Unable to re-arm watch on {self.path.parent}: {e}")
            return False
        logger.debug("Watch re-armed", extra={"fields": {"path": str(self.path)}})
        return True

    def stop(self, timeout: float = 5.0) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout)
        self._observer = None
        self._watch = None
