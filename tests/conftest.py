from __future__ import annotations

import pytest
import requests

from board.errors import FetchError
from board.models import ClipRecord
from board.queue import ClipQueue, DiscoveryIndex
from player.cache import DiskCacheIndex
from player.playback import PlaybackCoordinator
from player.sessions import SessionStore


def clip(name: str, thread: str = "100", post: str = "1") -> ClipRecord:
    return ClipRecord(name=name, remote_path=f"src/{thread}/{name}", thread_id=thread, post_id=post)


def board_doc(*threads: dict) -> dict:
    return {"threads": list(threads)}


def thread_doc(num: str, comment: str = "", files: tuple = (), replies: tuple = ()) -> dict:
    """A thread entry: opening post with `files`, then `replies` as (num, files) pairs."""
    posts = [{"num": num, "comment": comment, "files": [_file(f) for f in files]}]
    for reply_num, reply_files in replies:
        posts.append({"num": int(reply_num), "comment": "", "files": [_file(f) for f in reply_files]})
    return {"thread_num": num, "posts": posts}


def _file(name: str) -> dict:
    return {"name": name, "path": f"src/x/{name}"}


class FakeBoardClient:
    """Stands in for BoardClient on the JSON endpoints."""

    def __init__(self, listing=None, threads=None) -> None:
        self.listing = listing if listing is not None else board_doc()
        self.threads = dict(threads or {})
        self.listing_error: Exception | None = None
        self.thread_calls: list[str] = []

    def fetch_listing(self):
        if self.listing_error is not None:
            raise self.listing_error
        return self.listing

    def fetch_thread(self, thread_id: str):
        self.thread_calls.append(thread_id)
        doc = self.threads.get(thread_id)
        if doc is None:
            raise FetchError(f"res/{thread_id}.json", "Response status is 404", status=404)
        if isinstance(doc, Exception):
            raise doc
        return doc


class FakeResponse:
    """Minimal streaming requests.Response."""

    def __init__(self, body: bytes = b"", status_code: int = 200, headers: dict | None = None,
                 chunk: int = 100, fail_after: int | None = None) -> None:
        self.body = body
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.chunk = chunk
        self.fail_after = fail_after
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        sent = 0
        for i in range(0, len(self.body), self.chunk):
            if self.fail_after is not None and sent >= self.fail_after:
                raise requests.exceptions.ChunkedEncodingError("connection broken")
            piece = self.body[i:i + self.chunk]
            sent += len(piece)
            yield piece

    def close(self) -> None:
        self.closed = True


class FakeClipClient:
    """Stands in for BoardClient on the clip endpoint."""

    def __init__(self) -> None:
        self.responses: dict[str, object] = {}
        self.calls: list[str] = []

    def clip_url(self, remote_path: str) -> str:
        return f"https://board.test/b/{remote_path}"

    def post_url(self, thread_id: str, post_id: str) -> str:
        return f"https://board.test/b/res/{thread_id}.html#{post_id}"

    def open_clip(self, remote_path: str, read_timeout=None):
        self.calls.append(remote_path)
        result = self.responses[remote_path]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result()
        return result


@pytest.fixture
def queue() -> ClipQueue:
    return ClipQueue()


@pytest.fixture
def index() -> DiscoveryIndex:
    return DiscoveryIndex()


@pytest.fixture
def cache(tmp_path) -> DiskCacheIndex:
    save = tmp_path / "save"
    save.mkdir()
    return DiskCacheIndex(str(save))


@pytest.fixture
def scratch(tmp_path) -> str:
    path = tmp_path / "scratch"
    path.mkdir()
    return str(path)


@pytest.fixture
def clip_client() -> FakeClipClient:
    return FakeClipClient()


@pytest.fixture
def coordinator(clip_client, queue, cache, scratch) -> PlaybackCoordinator:
    return PlaybackCoordinator(
        clip_client, queue, cache, SessionStore(), scratch,
        chunk_size=100, inflight_wait=0.1,
    )
