"""
Clip queue and discovery index - the shared state the watcher grows.

ClipQueue is the ordered, append-only list of discovered clips every viewer
indexes into. DiscoveryIndex remembers which clip names have already been
queued for each watched thread. Both are guarded by their own lock; the
index lock is always taken before the queue lock, never the other way round.
"""

import logging
import threading

from board.errors import EmptyQueueError

log = logging.getLogger(__name__)


class ClipQueue:
    """Ordered list of ClipRecord in discovery order."""

    def __init__(self, records=None):
        self._records = list(records or [])
        self._names = {r.name for r in self._records}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._records)

    def append(self, record):
        with self._lock:
            self._records.append(record)
            self._names.add(record.name)
            return len(self._records) - 1

    def remove(self, name):
        """
        Splice the clip called `name` out of the queue.

        Returns True if something was removed. Positions held by viewers
        past the removed entry shift down by one; reads clamp, so a viewer
        at the old tail still gets a valid clip.
        """
        with self._lock:
            for i, record in enumerate(self._records):
                if record.name == name:
                    del self._records[i]
                    self._names.discard(name)
                    log.info("Removed %s from queue (position %d)", name, i)
                    return True
        return False

    def __contains__(self, name):
        with self._lock:
            return name in self._names

    def at(self, position):
        """
        Return the record at `position`, clamped to the current bounds.

        Raises EmptyQueueError when there is nothing to return.
        """
        with self._lock:
            if not self._records:
                raise EmptyQueueError("Queue is empty")
            position = max(0, min(position, len(self._records) - 1))
            return self._records[position]

    def snapshot(self):
        with self._lock:
            return list(self._records)


class DiscoveryIndex:
    """Per-thread sets of clip names that have already been queued."""

    def __init__(self):
        self._threads = {}
        self._lock = threading.Lock()

    def __contains__(self, thread_id):
        with self._lock:
            return thread_id in self._threads

    def __len__(self):
        with self._lock:
            return len(self._threads)

    def admit(self, thread_id):
        """Start watching a thread. Returns False if it was already watched."""
        with self._lock:
            if thread_id in self._threads:
                return False
            self._threads[thread_id] = set()
            return True

    def discard(self, thread_id):
        with self._lock:
            return self._threads.pop(thread_id, None) is not None

    def thread_ids(self):
        """Snapshot of watched thread ids, safe to iterate while others mutate."""
        with self._lock:
            return list(self._threads)

    def seen(self, thread_id, name):
        with self._lock:
            return name in self._threads.get(thread_id, ())

    def add_clip(self, record, queue):
        """
        Queue `record` unless its name is already known for its thread.

        The membership test, the queue append and the set insert happen
        under one hold of the index lock, so a name is in the index exactly
        when its record is in the queue. A thread that was discarded in the
        meantime gets nothing appended, and neither does a name the queue
        already holds from an earlier life of the same thread.

        Returns True when the record was appended.
        """
        with self._lock:
            names = self._threads.get(record.thread_id)
            if names is None or record.name in names:
                return False
            if record.name in queue:
                names.add(record.name)
                return False
            queue.append(record)
            names.add(record.name)
            return True
