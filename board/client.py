"""
Board Client - every outgoing request to the origin goes through here.

Presents the configured browser identity (User-Agent) and the auth token
(sent as the __cfduid cookie) on every request. JSON endpoints are fetched
whole; clips are opened as streaming responses so the caller can copy the
body without holding it in memory.
"""

import logging

import requests

from board.errors import FetchError, MalformedResponse

log = logging.getLogger(__name__)

TOKEN_COOKIE = "__cfduid"


class BoardClient:
    """
    HTTP access to the listing, thread and clip endpoints of one board.

    The JSON endpoints go through `self.session`, which only the board
    watcher thread uses once startup is done. Its cookie jar keeps whatever
    the origin sets and sends it back alongside the token cookie. Clip
    downloads run on request threads, so each one makes its own
    `requests.get` call instead of sharing the session.
    """

    def __init__(self, listing_url, download_url, user_agent, token="",
                 timeout=30, session=None):
        self.listing_url = listing_url
        self.download_url = download_url
        self.user_agent = user_agent
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self):
        return {"User-Agent": self.user_agent}

    def _cookies(self):
        return {TOKEN_COOKIE: self.token} if self.token else {}

    def thread_url(self, thread_id):
        return f"{self.download_url}res/{thread_id}.json"

    def clip_url(self, remote_path):
        return f"{self.download_url}{remote_path}"

    def post_url(self, thread_id, post_id):
        return f"{self.download_url}res/{thread_id}.html#{post_id}"

    def acquire_token(self):
        """
        Perform the initial handshake against the origin and keep the first
        cookie it hands out as the auth token.

        Returns the token, or "" if none could be obtained. Failure is
        logged and never raised: the board may well work without one.
        """
        try:
            resp = self.session.get(
                self.download_url, headers=self._headers(), timeout=self.timeout
            )
            resp.close()
        except requests.exceptions.RequestException as e:
            log.warning("Auth token request failed: %s", e)
            return ""

        # Cookies set on a redirect hop only land in the session jar
        values = [c.value for c in resp.cookies] or [c.value for c in self.session.cookies]
        if not values:
            log.warning("Origin %s set no cookies, continuing without a token",
                        self.download_url)
            return ""
        self.token = values[0]
        log.info("Acquired auth token from %s", self.download_url)
        return self.token

    def get_json(self, url):
        """
        GET a JSON document.

        Raises FetchError on network errors and non-200 statuses, and
        MalformedResponse if the body does not decode as JSON.
        """
        try:
            resp = self.session.get(
                url, headers=self._headers(), cookies=self._cookies(),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise FetchError(url, str(e)) from e

        if resp.status_code != 200:
            raise FetchError(url, f"Response status is {resp.status_code}",
                             status=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponse(f"{url}: body is not JSON ({e})") from e

    def fetch_listing(self):
        return self.get_json(self.listing_url)

    def fetch_thread(self, thread_id):
        return self.get_json(self.thread_url(thread_id))

    def open_clip(self, remote_path, read_timeout=None):
        """
        Open a streaming GET for a clip. The caller owns the response and
        must close it.

        requests exceptions propagate unchanged: the playback coordinator
        needs to tell a malformed URL (clip can never be fetched) apart from
        a transient network error.
        """
        timeout = (self.timeout, read_timeout) if read_timeout else self.timeout
        return requests.get(
            self.clip_url(remote_path),
            headers=self._headers(),
            cookies=self._cookies(),
            timeout=timeout,
            stream=True,
        )
