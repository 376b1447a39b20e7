from __future__ import annotations

import pytest
import requests

from board.client import TOKEN_COOKIE, BoardClient
from board.errors import FetchError, MalformedResponse


class FakeJsonResponse:
    def __init__(self, status_code: int = 200, payload=None, cookies=None) -> None:
        self.status_code = status_code
        self.payload = payload
        self.cookies = requests.cookies.cookiejar_from_dict(cookies or {})

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    def close(self) -> None:
        pass


class FakeSession:
    def __init__(self, result) -> None:
        self.result = result
        self.cookies = requests.cookies.RequestsCookieJar()
        self.calls: list[tuple[str, dict]] = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def make_client(result, token: str = "tok") -> BoardClient:
    return BoardClient(
        listing_url="https://board.test/b/index.json",
        download_url="https://board.test/b/",
        user_agent="test-agent",
        token=token,
        timeout=5,
        session=FakeSession(result),
    )


def test_thread_and_clip_urls() -> None:
    client = make_client(None)

    assert client.thread_url("123") == "https://board.test/b/res/123.json"
    assert client.clip_url("src/123/a.webm") == "https://board.test/b/src/123/a.webm"
    assert client.post_url("123", "456") == "https://board.test/b/res/123.html#456"


def test_every_request_carries_identity_and_token() -> None:
    client = make_client(FakeJsonResponse(payload={"threads": []}))

    assert client.fetch_thread("9") == {"threads": []}

    url, kwargs = client.session.calls[0]
    assert url == "https://board.test/b/res/9.json"
    assert kwargs["headers"]["User-Agent"] == "test-agent"
    assert kwargs["cookies"] == {TOKEN_COOKIE: "tok"}


def test_no_token_sends_no_cookie() -> None:
    client = make_client(FakeJsonResponse(payload={}), token="")

    client.fetch_listing()

    assert client.session.calls[0][1]["cookies"] == {}


def test_non_200_is_a_fetch_error() -> None:
    client = make_client(FakeJsonResponse(status_code=404))

    with pytest.raises(FetchError) as excinfo:
        client.fetch_thread("9")
    assert excinfo.value.status == 404


def test_network_error_is_a_fetch_error() -> None:
    client = make_client(requests.exceptions.ConnectTimeout("slow"))

    with pytest.raises(FetchError) as excinfo:
        client.fetch_listing()
    assert excinfo.value.status is None


def test_undecodable_body_is_malformed() -> None:
    client = make_client(FakeJsonResponse(payload=ValueError("Expecting value")))

    with pytest.raises(MalformedResponse):
        client.fetch_listing()


def test_open_clip_streams_with_split_timeouts(monkeypatch) -> None:
    client = make_client(FakeJsonResponse())
    calls = []
    monkeypatch.setattr("board.client.requests.get", lambda url, **kwargs: calls.append((url, kwargs)))

    client.open_clip("src/1/a.webm", read_timeout=60)

    # request threads never share the watcher's session
    assert client.session.calls == []
    url, kwargs = calls[0]
    assert url == "https://board.test/b/src/1/a.webm"
    assert kwargs["stream"] is True
    assert kwargs["timeout"] == (5, 60)
    assert kwargs["cookies"] == {TOKEN_COOKIE: "tok"}


def test_acquire_token_keeps_first_cookie() -> None:
    client = make_client(FakeJsonResponse(cookies={TOKEN_COOKIE: "fresh"}), token="")

    assert client.acquire_token() == "fresh"
    assert client.token == "fresh"


def test_acquire_token_failure_is_not_fatal() -> None:
    client = make_client(requests.exceptions.ConnectionError("down"), token="")
    assert client.acquire_token() == ""

    client = make_client(FakeJsonResponse(), token="")
    assert client.acquire_token() == ""
    assert client.token == ""
