"""Content-addressed, on-disk cache of successful backend results."""

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from collections import Counter
from typing import Any, Mapping, Optional

from .exceptions import CacheIOError
from .utils import ensure_dir_exists

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 64 # hex sha256
ENTRY_SUFFIX = ".json"


def compute_fingerprint(data: bytes, params: Mapping[str, Any]) -> str:
    """
    Hashes everything that determines a request's output.

    Parameters are encoded as sorted-key JSON so dict ordering never changes
    the fingerprint. The data length is hashed before the data itself, which
    keeps (data, params) pairs from colliding by shifting bytes across the
    boundary.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    encoded_params = json.dumps(dict(params), sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256()
    digest.update(str(len(data)).encode("ascii"))
    digest.update(b"\0")
    digest.update(data)
    digest.update(b"\0")
    digest.update(encoded_params.encode("utf-8"))
    return digest.hexdigest()


def _is_fingerprint(value: str) -> bool:
    return len(value) == FINGERPRINT_LENGTH and all(c in "0123456789abcdef" for c in value)


class RequestCache:
    """
    Maps fingerprints to previously obtained successful payloads.

    One JSON file per entry lives in `cache_dir`, named after the
    fingerprint. The directory outlives the process, so an interrupted batch
    can be resumed without paying again for spans that already succeeded.

    Safe to share between worker threads. Concurrent stores for the same
    fingerprint are last-writer-wins: each write goes to a temporary file that
    is atomically renamed into place. Reads refresh the entry's mtime, which
    is the recency order used for least-recently-used eviction. Entries being
    read by an in-flight lookup are pinned and skipped by eviction.

    Unreadable, corrupt or mismatched entries are treated as misses; the
    cache never raises on lookup or store.
    """

    def __init__(self, cache_dir: str, max_entries: Optional[int] = None,
                 max_age_seconds: Optional[float] = None):
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive (or None for unbounded)")
        if max_age_seconds is not None and max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive (or None for no age limit)")
        ensure_dir_exists(cache_dir)
        self.cache_dir = cache_dir
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self._lock = threading.Lock()
        self._pinned = Counter()
        logger.info(
            f"Request cache at {cache_dir} (max_entries={max_entries}, max_age_seconds={max_age_seconds})"
        )

    def _entry_path(self, fingerprint: str) -> str:
        if not _is_fingerprint(fingerprint):
            raise ValueError(f"Not a fingerprint: {fingerprint!r}")
        return os.path.join(self.cache_dir, fingerprint + ENTRY_SUFFIX)

    def _read_entry(self, fingerprint: str, path: str) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                entry = json.load(f)
        except (OSError, ValueError) as e:
            raise CacheIOError(f"Unreadable cache entry {path}: {e}") from e
        if not isinstance(entry, dict) or entry.get("fingerprint") != fingerprint or "payload" not in entry:
            raise CacheIOError(f"Cache entry {path} does not match its fingerprint")
        return entry["payload"]

    def lookup(self, fingerprint: str) -> Optional[Any]:
        """Returns the stored payload for `fingerprint`, or None on a miss."""
        path = self._entry_path(fingerprint)
        with self._lock:
            self._pinned[fingerprint] += 1
        try:
            if not os.path.exists(path):
                return None
            try:
                payload = self._read_entry(fingerprint, path)
            except CacheIOError as e:
                logger.warning(f"Cache entry treated as miss: {e}")
                return None
            try:
                os.utime(path, None)
            except OSError as e:
                logger.debug(f"Could not refresh cache entry mtime for {path}: {e}")
            return payload
        finally:
            with self._lock:
                self._pinned[fingerprint] -= 1
                if self._pinned[fingerprint] <= 0:
                    del self._pinned[fingerprint]

    def store(self, fingerprint: str, payload: Any) -> bool:
        """
        Stores a successful payload. Returns False (and logs) if it could not be written.

        Payloads must be JSON-serializable and not None, since lookup() uses
        None to report a miss. They come back as JSON decodes them: tuples
        become lists and non-string dict keys become strings.
        """
        path = self._entry_path(fingerprint)
        if payload is None:
            logger.error(f"Refusing to cache a None payload for {fingerprint[:12]}")
            return False
        try:
            body = json.dumps({"fingerprint": fingerprint, "payload": payload}, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f"Payload for {fingerprint[:12]} is not JSON-serializable: {e}")
            return False
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=f".{fingerprint[:12]}.", suffix=".tmp", dir=self.cache_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            os.replace(tmp_path, path)
            tmp_path = None
            return True
        except OSError as e:
            logger.warning(f"Could not store cache entry {fingerprint[:12]}: {e}")
            return False
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    logger.debug(f"Could not remove temporary cache file {tmp_path}")

    def __contains__(self, fingerprint: str) -> bool:
        return self.lookup(fingerprint) is not None

    def _entries(self):
        """Yields (fingerprint, path, mtime) for every entry currently on disk."""
        try:
            names = os.listdir(self.cache_dir)
        except OSError as e:
            logger.warning(f"Could not list cache directory {self.cache_dir}: {e}")
            return
        for name in names:
            if not name.endswith(ENTRY_SUFFIX):
                continue
            fingerprint = name[: -len(ENTRY_SUFFIX)]
            if not _is_fingerprint(fingerprint):
                continue
            path = os.path.join(self.cache_dir, name)
            try:
                mtime = os.stat(path).st_mtime
            except OSError:
                continue # removed concurrently
            yield fingerprint, path, mtime

    def __len__(self) -> int:
        return sum(1 for _ in self._entries())

    def _remove(self, fingerprint: str, path: str) -> bool:
        with self._lock:
            if self._pinned.get(fingerprint):
                return False
            try:
                os.remove(path)
                return True
            except FileNotFoundError:
                return False
            except OSError as e:
                logger.warning(f"Could not evict cache entry {path}: {e}")
                return False

    def evict(self, now: Optional[float] = None) -> int:
        """
        Removes expired entries, then least-recently-used entries beyond max_entries.

        Returns:
            The number of entries removed.
        """
        now = time.time() if now is None else now
        entries = sorted(self._entries(), key=lambda item: item[2])
        removed = 0
        survivors = []
        for fingerprint, path, mtime in entries:
            if self.max_age_seconds is not None and now - mtime > self.max_age_seconds:
                if self._remove(fingerprint, path):
                    removed += 1
                    continue
            survivors.append((fingerprint, path))

        if self.max_entries is not None:
            excess = len(survivors) - self.max_entries
            for fingerprint, path in survivors:
                if excess <= 0:
                    break
                if self._remove(fingerprint, path):
                    removed += 1
                    excess -= 1

        if removed:
            logger.info(f"Evicted {removed} cache entr{'y' if removed == 1 else 'ies'} from {self.cache_dir}")
        return removed

    def clear(self) -> int:
        removed = 0
        for fingerprint, path, _ in list(self._entries()):
            if self._remove(fingerprint, path):
                removed += 1
        return removed


class CacheEvictor:
    """Background thread that periodically calls RequestCache.evict()."""

    def __init__(self, cache: RequestCache, interval_seconds: float = 300.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.cache = cache
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.cache.evict()
            except Exception as e:
                # Eviction is housekeeping; a failed pass is retried next interval
                logger.error(f"Cache eviction pass failed: {e}", exc_info=True)
            self._stop.wait(self.interval_seconds)

    def start(self) -> "CacheEvictor":
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="subalign-cache-evictor", daemon=True)
            self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> "CacheEvictor":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
