"""
Playback - turn a viewer's navigation into clip bytes.

navigate() moves the viewer's cursor and picks the clip. stream_clip()
serves it: straight from disk when cached, otherwise by fetching it from the
origin while writing every chunk both to a scratch file and to the viewer.
Only a fully received file is moved into the cache tree and committed to the
index; anything else is deleted.

Concurrent cache misses for the same clip are coalesced: the first request
fetches, later ones wait for it and then read the cached file. The first
fetch moves at its own viewer's pace; once it receives nothing for
stall_wait seconds, a waiting request stops waiting and fetches on its own.
"""

import email.utils
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field

import requests

from player.cache import move_into_place

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
FETCH_TIMEOUT = 60
INFLIGHT_WAIT = 120
STALL_WAIT = 2
CACHE_MAX_AGE = 365 * 24 * 60 * 60
CLIP_MIMETYPE = "video/webm"

# Errors building the request: the clip's remote path can never work.
INVALID_REQUEST_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
)
GONE_STATUSES = (404, 410)


class InflightFetch:
    """Completion signal and byte count of one origin fetch."""

    def __init__(self):
        self.done = threading.Event()
        self.received = 0


@dataclass
class ClipStream:
    """Status, headers and a lazily produced body for one clip response."""

    status: int
    headers: dict = field(default_factory=dict)
    chunks: object = ()

    @classmethod
    def empty(cls, status=502):
        return cls(status=status, headers={"Content-Length": "0"}, chunks=())


class PlaybackCoordinator:
    """Resolves positions to clips and serves them through the disk cache."""

    def __init__(self, client, queue, cache, sessions, scratch_dir,
                 chunk_size=CHUNK_SIZE, fetch_timeout=FETCH_TIMEOUT,
                 inflight_wait=INFLIGHT_WAIT, cache_max_age=CACHE_MAX_AGE,
                 stall_wait=STALL_WAIT):
        self.client = client
        self.queue = queue
        self.cache = cache
        self.sessions = sessions
        self.scratch_dir = scratch_dir
        self.chunk_size = chunk_size
        self.fetch_timeout = fetch_timeout
        self.inflight_wait = inflight_wait
        self.cache_max_age = cache_max_age
        self.stall_wait = stall_wait
        self._inflight = {}
        self._inflight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sessions and navigation
    # ------------------------------------------------------------------

    def resolve_session(self, cookie_value):
        """Returns (session_id, is_new); see SessionStore.resolve."""
        return self.sessions.resolve(cookie_value, len(self.queue))

    def navigate(self, session_id, delta):
        """
        Move the session by `delta` and return the ClipRecord to play.

        Raises EmptyQueueError if nothing has been discovered yet.
        """
        position = self.sessions.move(session_id, delta, len(self.queue))
        return self.queue.at(position)

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    def stream_clip(self, clip):
        """Return a ClipStream for `clip`, filling the cache if needed."""
        path = self.cache.lookup(clip.name)
        if path is not None:
            return self._serve_cached(clip, path)

        inflight, leader = self._claim(clip.name)
        if leader:
            # A fetch may have committed between the lookup and the claim
            path = self.cache.lookup(clip.name)
            if path is not None:
                self._release(clip.name, inflight)
                return self._serve_cached(clip, path)
            return self._fetch_and_cache(clip, inflight)

        log.info("%s is already being fetched, waiting for it", clip.name)
        if self._wait_for(inflight):
            path = self.cache.lookup(clip.name)
            if path is not None:
                return self._serve_cached(clip, path)
        # First fetch failed, stalled or is still running: fetch on our own.
        return self._fetch_and_cache(clip, InflightFetch())

    def _cache_headers(self, last_modified):
        expires = time.time() + self.cache_max_age
        return {
            "Last-Modified": email.utils.formatdate(last_modified, usegmt=True),
            "Expires": email.utils.formatdate(expires, usegmt=True),
            "Cache-Control": f"public, max-age={self.cache_max_age}",
        }

    def _serve_cached(self, clip, path):
        try:
            f = open(path, "rb")
            stat = os.fstat(f.fileno())
        except OSError as e:
            log.warning("Error opening cached file %s: %s", path, e)
            return ClipStream.empty()

        headers = self._cache_headers(stat.st_mtime)
        headers["Content-Type"] = CLIP_MIMETYPE
        headers["Content-Length"] = str(stat.st_size)
        log.info("Serving %s from cache (%d bytes)", clip.name, stat.st_size)
        return ClipStream(status=200, headers=headers, chunks=self._read_file(f))

    def _read_file(self, f):
        sent = 0
        try:
            with f:
                while True:
                    chunk = f.read(self.chunk_size)
                    if not chunk:
                        break
                    sent += len(chunk)
                    yield chunk
        finally:
            log.debug("%d bytes uploaded from %s", sent, f.name)

    # ------------------------------------------------------------------
    # In-flight coalescing
    # ------------------------------------------------------------------

    def _claim(self, name):
        """Returns (InflightFetch, is_leader) for the fetch of `name`."""
        with self._inflight_lock:
            inflight = self._inflight.get(name)
            if inflight is not None:
                return inflight, False
            inflight = self._inflight[name] = InflightFetch()
            return inflight, True

    def _release(self, name, inflight):
        with self._inflight_lock:
            if self._inflight.get(name) is inflight:
                del self._inflight[name]
        inflight.done.set()

    def _wait_for(self, inflight):
        """
        Wait for another request's fetch to finish.

        Returns True once it is done. Returns False when it received no
        bytes for stall_wait seconds, or inflight_wait ran out.
        """
        deadline = time.monotonic() + self.inflight_wait
        seen = inflight.received
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if inflight.done.wait(min(self.stall_wait, remaining)):
                return True
            if inflight.received == seen:
                log.info("Fetch in progress has stalled at %d bytes", seen)
                return False
            seen = inflight.received

    # ------------------------------------------------------------------
    # Cache fill
    # ------------------------------------------------------------------

    def _fetch_and_cache(self, clip, inflight):
        try:
            return self._open_fetch(clip, inflight)
        except BaseException:
            self._release(clip.name, inflight)
            raise

    def _open_fetch(self, clip, inflight):
        """
        Start the origin request. Every early return releases `inflight`; on
        success the body generator owns it and releases it when finished.
        """
        url = self.client.clip_url(clip.remote_path)
        log.info("%s not in cache, fetching %s", clip.name, url)

        try:
            resp = self.client.open_clip(clip.remote_path, read_timeout=self.fetch_timeout)
        except INVALID_REQUEST_ERRORS as e:
            log.warning("Error on creating outgoing request for %s: %s", url, e)
            self.queue.remove(clip.name)
            self._release(clip.name, inflight)
            return ClipStream.empty()
        except requests.exceptions.RequestException as e:
            log.warning("Error on doing outgoing request for %s: %s", url, e)
            self._release(clip.name, inflight)
            return ClipStream.empty()

        if resp.status_code != 200:
            resp.close()
            log.warning("Origin answered %s for %s", resp.status_code, url)
            if resp.status_code in GONE_STATUSES:
                self.queue.remove(clip.name)
            self._release(clip.name, inflight)
            return ClipStream.empty()

        try:
            tmp = tempfile.NamedTemporaryFile(
                dir=self.scratch_dir, prefix="clipcache", delete=False
            )
        except OSError as e:
            resp.close()
            log.warning("Error on creating temporary file: %s", e)
            self._release(clip.name, inflight)
            return ClipStream.empty()
        log.debug("Created temporary file %s", tmp.name)

        last_modified = _parse_http_date(resp.headers.get("Last-Modified"))
        headers = self._cache_headers(last_modified or time.time())
        if last_modified is None:
            del headers["Last-Modified"]
        headers["Content-Type"] = resp.headers.get("Content-Type") or CLIP_MIMETYPE
        expected = _content_length(resp.headers)
        if expected is not None:
            headers["Content-Length"] = str(expected)

        body = CacheFill(self, clip, resp, tmp, expected, last_modified, inflight)
        return ClipStream(status=200, headers=headers, chunks=body)

    def _finish_fill(self, fill, complete):
        try:
            if complete:
                self._commit(fill.clip, fill.tmp.name, fill.last_modified)
            else:
                _remove_quietly(fill.tmp.name)
        finally:
            self._release(fill.clip.name, fill.inflight)

    def _commit(self, clip, tmp_path, last_modified):
        """
        Move a complete scratch file into the cache tree, then index it.

        Local storage errors leave the clip uncached and the scratch file
        removed; the next request fetches again.
        """
        dest = self.cache.path_for(clip.thread_id, clip.name)
        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            os.chmod(tmp_path, 0o644)
            if last_modified is not None:
                os.utime(tmp_path, (last_modified, last_modified))
            move_into_place(tmp_path, dest)
        except OSError as e:
            log.warning("Error on saving %s to cache: %s", clip.name, e)
            _remove_quietly(tmp_path)
            return None
        self.cache.commit(clip.name, dest)
        log.info("Cached %s at %s", clip.name, dest)
        return dest


class CacheFill:
    """
    Response body for a cache miss.

    Iterating copies the origin body to the scratch file and to the viewer
    in one pass, then commits the file if it is complete. Any failure,
    including the viewer disconnecting mid-stream, discards the scratch
    file. close() cleans up even if iteration never started, so an
    abandoned response cannot leak the file or the in-flight marker.
    """

    def __init__(self, coordinator, clip, resp, tmp, expected, last_modified, inflight):
        self.coordinator = coordinator
        self.clip = clip
        self.resp = resp
        self.tmp = tmp
        self.expected = expected
        self.last_modified = last_modified
        self.inflight = inflight
        self.received = 0
        self._iter = None
        self._finished = False

    def __iter__(self):
        if self._iter is None:
            self._iter = self._copy()
        return self._iter

    def close(self):
        if self._iter is not None:
            self._iter.close()
        self._finish(complete=False)

    def _finish(self, complete):
        if self._finished:
            return
        self._finished = True
        self.resp.close()
        if not self.tmp.closed:
            self.tmp.close()
        self.coordinator._finish_fill(self, complete)
        log.info("%d bytes downloaded/uploaded for %s", self.received, self.clip.name)

    def _copy(self):
        complete = False
        try:
            for chunk in self.resp.iter_content(chunk_size=self.coordinator.chunk_size):
                if not chunk:
                    continue
                self.tmp.write(chunk)
                self.received += len(chunk)
                self.inflight.received = self.received
                yield chunk
            if self.expected is not None and self.received != self.expected:
                log.warning("Short body for %s: got %d of %d bytes",
                            self.clip.name, self.received, self.expected)
            else:
                complete = True
        except requests.exceptions.RequestException as e:
            log.warning("Error while downloading/uploading %s: %s", self.clip.name, e)
        except OSError as e:
            log.warning("Error writing temporary file %s: %s", self.tmp.name, e)
        finally:
            self._finish(complete)


def _parse_http_date(value):
    """HTTP date header -> POSIX timestamp, or None if absent/unparseable."""
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError, IndexError):
        return None


def _content_length(headers):
    """Declared body size, or None when it cannot be compared to what we read."""
    if headers.get("Content-Encoding"):
        # requests decodes the body, so byte counts would not match
        return None
    try:
        return int(headers.get("Content-Length"))
    except (TypeError, ValueError):
        return None


def _remove_quietly(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Could not remove temporary file %s: %s", path, e)
