#!/usr/bin/env python3
"""
clipfeed - endless stream of fresh video clips from an imageboard.

Watches the board for clip threads, queues every new clip it finds, and
serves them to browsers from a local disk cache, fetching from the board on
first request.

Usage:
    python main.py                          # uses config.yaml
    python main.py --config other.yaml
    python main.py --port 9000 --verbose
"""

import argparse
import copy
import logging
import os
import sys

import yaml

from board.client import BoardClient
from board.errors import StorageError
from board.queue import ClipQueue, DiscoveryIndex
from board.watcher import FILE_PATTERN, THREAD_PATTERN, BoardWatcher
from player.cache import DiskCacheIndex, make_scratch_directory, prepare_save_directory
from player.playback import PlaybackCoordinator
from player.sessions import SessionStore, SessionSweeper
from web.app import create_app, start_server

log = logging.getLogger("clipfeed")

DEFAULT_CONFIG = {
    "board": {
        "listing_url": "https://2ch.hk/b/index.json",
        "download_url": "https://2ch.hk/b/",
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0",
        "cookie": "",
        "request_timeout": 30,
        "poll_min_seconds": 120,
        "poll_max_seconds": 360,
        "thread_pattern": THREAD_PATTERN,
        "file_pattern": FILE_PATTERN,
    },
    "cache": {
        "save_directory": "webm",
        "scratch_prefix": "clipfeed_",
    },
    "player": {
        "fetch_timeout": 60,
        "chunk_size": 65536,
        "inflight_wait": 120,
        "stall_wait": 2,
        "live_edge": 10,
        "session_retention_hours": 12,
        "sweep_interval_seconds": 3600,
        "cache_max_age": 31536000,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "cookie_name": "clipfeed_session",
        "cookie_ttl_hours": 24,
    },
}


def merge_config(defaults, overrides):
    """Recursively overlay `overrides` on a copy of `defaults`."""
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path="config.yaml"):
    """Load configuration from YAML, filling gaps from DEFAULT_CONFIG."""
    if not os.path.exists(config_path):
        print(f"ERROR: {config_path} not found.")
        print("Copy config.example.yaml to config.yaml and adjust it.")
        sys.exit(1)
    with open(config_path, "r", encoding="utf-8") as f:
        return merge_config(DEFAULT_CONFIG, yaml.safe_load(f) or {})


def setup_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_services(config):
    """
    Wire up every component from a merged config dict.

    Raises StorageError when the save or scratch directory is unusable.
    Returns a dict with the client, queue, index, cache, sessions, watcher,
    sweeper, player and app.
    """
    board_cfg = config["board"]
    cache_cfg = config["cache"]
    player_cfg = config["player"]
    server_cfg = config["server"]

    save_directory = prepare_save_directory(cache_cfg["save_directory"])
    scratch_dir = make_scratch_directory(cache_cfg["scratch_prefix"])

    client = BoardClient(
        listing_url=board_cfg["listing_url"],
        download_url=board_cfg["download_url"],
        user_agent=board_cfg["user_agent"],
        token=board_cfg["cookie"],
        timeout=board_cfg["request_timeout"],
    )
    if not client.token:
        client.acquire_token()

    queue = ClipQueue()
    index = DiscoveryIndex()
    watcher = BoardWatcher(
        client, queue, index,
        thread_pattern=board_cfg["thread_pattern"],
        file_pattern=board_cfg["file_pattern"],
        poll_min=board_cfg["poll_min_seconds"],
        poll_max=board_cfg["poll_max_seconds"],
    )

    cache = DiskCacheIndex(save_directory)
    cache.rebuild()

    sessions = SessionStore(
        live_edge=player_cfg["live_edge"],
        retention=player_cfg["session_retention_hours"] * 3600,
    )
    sweeper = SessionSweeper(sessions, interval=player_cfg["sweep_interval_seconds"])

    player = PlaybackCoordinator(
        client, queue, cache, sessions, scratch_dir,
        chunk_size=player_cfg["chunk_size"],
        fetch_timeout=player_cfg["fetch_timeout"],
        inflight_wait=player_cfg["inflight_wait"],
        stall_wait=player_cfg["stall_wait"],
        cache_max_age=player_cfg["cache_max_age"],
    )
    app = create_app(
        player,
        watched_threads=lambda: len(index),
        cookie_name=server_cfg["cookie_name"],
        cookie_ttl_hours=server_cfg["cookie_ttl_hours"],
    )

    return {
        "client": client,
        "queue": queue,
        "index": index,
        "cache": cache,
        "sessions": sessions,
        "watcher": watcher,
        "sweeper": sweeper,
        "player": player,
        "app": app,
    }


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="clipfeed: stream fresh imageboard clips to your browser"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (overrides server.port)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    config = load_config(args.config)
    if args.port is not None:
        config["server"]["port"] = args.port

    try:
        services = build_services(config)
    except StorageError as e:
        log.error("Cannot start: %s", e)
        return 1

    services["watcher"].start()
    services["sweeper"].start()

    server_cfg = config["server"]
    log.info("Serving on http://%s:%s", server_cfg["host"], server_cfg["port"])
    try:
        start_server(services["app"], host=server_cfg["host"], port=server_cfg["port"])
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        services["watcher"].stop(timeout=5)
        services["sweeper"].stop(timeout=5)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
