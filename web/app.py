"""
Web - HTTP front end for the player.

Maps viewer requests onto the playback coordinator:

    GET /               player page
    GET /play/info      current clip and its origin links as JSON (no navigation)
    GET /play/          stream the current clip
    GET /play/next      +1       GET /play/prev     -1
    GET /play/next10    +10      GET /play/prev10   -10
    GET /api/status     queue / cache / session counters

The session cookie is set whenever the coordinator hands out a new session.
"""

import logging
import os
from datetime import datetime, timedelta, timezone

from flask import Flask, Response, jsonify, request, send_from_directory

from board.errors import EmptyQueueError

log = logging.getLogger(__name__)

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")
SESSION_COOKIE = "clipfeed_session"
COOKIE_TTL_HOURS = 24

MOVES = {
    "": 0,
    "next": 1,
    "prev": -1,
    "next10": 10,
    "prev10": -10,
}


def create_app(player, watched_threads=None, cookie_name=SESSION_COOKIE,
               cookie_ttl_hours=COOKIE_TTL_HOURS):
    """
    Build the Flask app around a PlaybackCoordinator.

    `watched_threads` is an optional callable returning how many threads the
    board watcher follows, reported by /api/status.
    """
    app = Flask(__name__, static_folder=STATIC_DIR, static_url_path="/static")

    def _session():
        return player.resolve_session(request.cookies.get(cookie_name))

    def _with_cookie(resp, session_id, is_new):
        if is_new:
            expires = datetime.now(timezone.utc) + timedelta(hours=cookie_ttl_hours)
            resp.set_cookie(cookie_name, session_id, expires=expires, httponly=True)
        return resp

    def _empty_queue(session_id, is_new):
        resp = jsonify({"error": "No clips discovered yet, try again shortly"})
        resp.status_code = 503
        resp.headers["Retry-After"] = "60"
        return _with_cookie(resp, session_id, is_new)

    @app.route("/")
    def index():
        """Serve the player page."""
        return send_from_directory(STATIC_DIR, "index.html")

    @app.route("/play/info")
    def play_info():
        """Describe the clip at the session's current position."""
        session_id, is_new = _session()
        try:
            clip = player.navigate(session_id, 0)
        except EmptyQueueError:
            return _empty_queue(session_id, is_new)
        log.debug("Session %s is at %s", session_id, clip.name)
        info = clip.to_dict()
        info["video_url"] = player.client.clip_url(clip.remote_path)
        info["post_url"] = player.client.post_url(clip.thread_id, clip.post_id)
        return _with_cookie(jsonify(info), session_id, is_new)

    @app.route("/play/", defaults={"move": ""})
    @app.route("/play/<move>")
    def play(move):
        """Move the session's cursor and stream the clip it lands on."""
        if move not in MOVES:
            return jsonify({"error": f"Unknown move '{move}'"}), 404

        session_id, is_new = _session()
        try:
            clip = player.navigate(session_id, MOVES[move])
        except EmptyQueueError:
            return _empty_queue(session_id, is_new)

        stream = player.stream_clip(clip)
        resp = Response(stream.chunks, status=stream.status,
                        headers=stream.headers, direct_passthrough=True)
        return _with_cookie(resp, session_id, is_new)

    @app.route("/api/status")
    def api_status():
        """Counters for a quick health check."""
        return jsonify({
            "queue_length": len(player.queue),
            "watched_threads": watched_threads() if watched_threads else None,
            "cached_clips": len(player.cache),
            "sessions": len(player.sessions),
        })

    return app


def start_server(app, host="0.0.0.0", port=8080, debug=False):
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)

