"""
Disk Cache - what is already on disk, and how new clips get there.

Layout under the save directory:

    <save_directory>/<thread_id>/<clip name>

Files written directly under the save directory (older layout) are indexed
too. In-flight downloads live in a scratch directory and only become visible
through DiskCacheIndex.commit() once they have been moved into place.
"""

import errno
import logging
import os
import shutil
import tempfile
import threading
import uuid

from board.errors import StorageError

log = logging.getLogger(__name__)

MOVE_TMP_MARKER = ".tmp-"


def prepare_save_directory(path):
    """
    Make sure the save directory exists and is a directory.

    Raises StorageError if the path is a file or cannot be created.
    """
    if os.path.exists(path):
        if not os.path.isdir(path):
            raise StorageError(f"Save directory {path} is a file, not a directory")
        return path
    log.info("Save directory %s does not exist, creating it", path)
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageError(f"Could not create save directory {path}: {e}") from e
    return path


def make_scratch_directory(prefix="clipfeed_"):
    """Create the directory in-flight downloads are written to."""
    try:
        path = tempfile.mkdtemp(prefix=prefix)
    except OSError as e:
        raise StorageError(f"Could not create scratch directory: {e}") from e
    log.info("Scratch directory for downloads: %s", path)
    return path


def _is_complete(name):
    # leftover copy from an interrupted cross-device move_into_place
    return MOVE_TMP_MARKER not in name


def move_into_place(src, dest):
    """
    Move `src` to `dest` so that `dest` appears complete or not at all.

    os.replace is atomic on one filesystem. When the scratch directory is on
    another device, copy next to the destination first and replace from
    there.
    """
    try:
        os.replace(src, dest)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    tmp = f"{dest}{MOVE_TMP_MARKER}{uuid.uuid4().hex}"
    try:
        shutil.copy2(src, tmp)
        os.replace(tmp, dest)
    except OSError:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    os.remove(src)


class DiskCacheIndex:
    """In-memory map of clip name -> absolute path of a complete file."""

    def __init__(self, save_directory):
        self.save_directory = os.path.abspath(save_directory)
        self._files = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._files)

    def rebuild(self):
        """
        Re-read the save directory and replace the index wholesale.

        Unreadable directories are logged and leave the index empty rather
        than failing startup.
        """
        files = {}
        try:
            entries = list(os.scandir(self.save_directory))
        except OSError as e:
            log.warning("Error reading save directory %s: %s", self.save_directory, e)
            entries = []

        for entry in entries:
            if entry.is_file():
                if _is_complete(entry.name):
                    files[entry.name] = entry.path
            elif entry.is_dir():
                try:
                    for sub in os.scandir(entry.path):
                        if sub.is_file() and _is_complete(sub.name):
                            files[sub.name] = sub.path
                except OSError as e:
                    log.warning("Error reading cache subdirectory %s: %s", entry.path, e)

        with self._lock:
            self._files = files
        log.info("Disk cache index rebuilt: %d files", len(files))
        return len(files)

    def lookup(self, name):
        with self._lock:
            return self._files.get(name)

    def commit(self, name, path):
        """Record a file that is already complete at its final path."""
        with self._lock:
            self._files[name] = path

    def path_for(self, thread_id, name):
        """Final location of a clip in the cache tree."""
        return os.path.join(self.save_directory, thread_id, name)
