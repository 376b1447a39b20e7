"""
Board Watcher - keeps the clip queue growing while the server runs.

Every cycle makes two passes over the board:

1. Thread discovery: read the listing, admit threads whose opening post
   looks like a clip thread and carries at least one clip attachment.
2. Thread update: re-read every admitted thread and queue clips that have
   not been seen in it yet. A thread that cannot be fetched (deleted, 404)
   is dropped; the discovery pass re-admits it if it is still listed.

Cycles are separated by a jittered sleep so many instances do not hit the
origin in lockstep. A failed cycle is logged and retried on the next tick.
"""

import logging
import random
import re
import threading

from board.errors import FetchError, MalformedResponse
from board.models import ClipRecord, parse_thread_posts, parse_threads

log = logging.getLogger(__name__)

# "webm" in Latin or Cyrillic keyboard layout ("цуиь" is "webm" typed on a
# Russian layout), with anything in between.
THREAD_PATTERN = r"web.*m|цу[ий].*ь"
FILE_PATTERN = r"\.webm$"

POLL_MIN_SECONDS = 120
POLL_MAX_SECONDS = 360


class BoardWatcher:
    """Polls one board and feeds its clip threads into the queue."""

    def __init__(self, client, queue, index,
                 thread_pattern=THREAD_PATTERN, file_pattern=FILE_PATTERN,
                 poll_min=POLL_MIN_SECONDS, poll_max=POLL_MAX_SECONDS,
                 rng=None):
        self.client = client
        self.queue = queue
        self.index = index
        self.thread_re = re.compile(thread_pattern, re.IGNORECASE)
        self.file_re = re.compile(file_pattern, re.IGNORECASE)
        self.poll_min = poll_min
        self.poll_max = max(poll_min, poll_max)
        self.rng = rng or random.Random()
        self.stop_event = threading.Event()
        self._thread = None

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def is_clip_thread(self, thread):
        root = thread.root
        if root is None or not self.thread_re.search(root.comment):
            return False
        return any(self.file_re.search(f.path) for f in root.files)

    def scan_threads(self):
        """
        Thread discovery pass. Returns the number of newly admitted threads.

        FetchError and MalformedResponse propagate: without a listing there
        is nothing sensible to do for the rest of this cycle.
        """
        log.info("Scanning board listing for new clip threads")
        threads = parse_threads(self.client.fetch_listing())
        admitted = 0
        for thread in threads:
            if self.is_clip_thread(thread) and self.index.admit(thread.num):
                log.info("Found new clip thread %s", thread.num)
                admitted += 1
        return admitted

    def update_threads(self):
        """
        Thread update pass. Returns the number of clips appended to the queue.

        Fetch failures only affect the thread concerned, which is dropped
        from the index. A malformed thread document aborts the cycle.
        """
        added = 0
        for thread_id in self.index.thread_ids():
            try:
                posts = parse_thread_posts(self.client.fetch_thread(thread_id))
            except FetchError as e:
                log.info("Dropping thread %s: %s", thread_id, e)
                self.index.discard(thread_id)
                continue

            for post in posts:
                for f in post.files:
                    if not self.file_re.search(f.name):
                        continue
                    record = ClipRecord(
                        name=f.name, remote_path=f.path,
                        thread_id=thread_id, post_id=post.num,
                    )
                    if self.index.add_clip(record, self.queue):
                        log.info("Adding new file %s from thread %s to queue",
                                 f.name, thread_id)
                        added += 1
        return added

    def refresh(self):
        """Run one full cycle. Exposed so a refresh can be forced by hand."""
        admitted = self.scan_threads()
        added = self.update_threads()
        log.info("Refresh done: %d new threads, %d new clips, queue length %d",
                 admitted, added, len(self.queue))
        return admitted, added

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def next_delay(self):
        return self.rng.uniform(self.poll_min, self.poll_max)

    def run_once(self):
        """One cycle with failure containment. Returns True on success."""
        try:
            self.refresh()
            return True
        except (FetchError, MalformedResponse) as e:
            log.warning("Board refresh failed, retrying next cycle: %s", e)
        except Exception:
            log.exception("Unexpected error refreshing board")
        return False

    def run_forever(self):
        while not self.stop_event.is_set():
            self.run_once()
            delay = self.next_delay()
            log.debug("Next board refresh in %.0fs", delay)
            if self.stop_event.wait(delay):
                break
        log.info("Board watcher stopped")

    def start(self):
        if self._thread and self._thread.is_alive():
            return self._thread
        self.stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="board-watcher", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout)
