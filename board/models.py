"""
Board models - clip records plus parsing of the board's JSON documents.

The listing endpoint and the per-thread endpoint share one shape:

    {"threads": [{"thread_num": "123",
                  "posts": [{"num": 123, "comment": "...",
                             "files": [{"name": "a.webm", "path": "src/123/a.webm"}]}]}]}

Post numbers come back as strings on the listing and as integers on thread
pages, so both are normalised to str here.
"""

from dataclasses import dataclass, field

from board.errors import MalformedResponse


@dataclass(frozen=True)
class ClipRecord:
    """A discovered clip. Identity is the clip name."""

    name: str
    remote_path: str
    thread_id: str
    post_id: str

    def to_dict(self):
        """JSON view used by the player page."""
        return {
            "name": self.name,
            "path": self.remote_path,
            "thread": self.thread_id,
            "post": self.post_id,
        }


@dataclass(frozen=True)
class FileRef:
    name: str
    path: str


@dataclass(frozen=True)
class Post:
    num: str
    comment: str = ""
    files: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class Thread:
    num: str
    posts: tuple = field(default_factory=tuple)

    @property
    def root(self):
        return self.posts[0] if self.posts else None


def _parse_post(raw):
    files = tuple(
        FileRef(name=str(f.get("name", "")), path=str(f.get("path", "")))
        for f in (raw.get("files") or [])
    )
    return Post(
        num=str(raw.get("num", "")),
        comment=str(raw.get("comment") or ""),
        files=files,
    )


def parse_threads(document):
    """
    Parse a listing or thread document into Thread objects.

    Raises MalformedResponse when the document does not have the expected
    shape (missing "threads", non-dict entries, and so on).
    """
    try:
        threads = []
        for raw in document["threads"]:
            posts = tuple(_parse_post(p) for p in (raw.get("posts") or []))
            num = raw.get("thread_num")
            if num is None and posts:
                num = posts[0].num
            threads.append(Thread(num=str(num), posts=posts))
        return threads
    except (KeyError, TypeError, AttributeError) as e:
        raise MalformedResponse(f"Unexpected board document shape: {e!r}") from e


def parse_thread_posts(document):
    """Return the posts of a single-thread document (first thread only)."""
    threads = parse_threads(document)
    if not threads:
        raise MalformedResponse("Thread document has no threads")
    return list(threads[0].posts)
