"""
Persistent miner cache.

Keeps, per worker identity ("address" or "address.worker"):
    workers     identity -> miner type name
    users       address  -> latest miner type seen for any of its workers
    bestDiffs   identity -> highest best difficulty ever observed
    lastSeenAt  identity -> last time the worker was observed (unix seconds)

The cache is the source of truth for historical bests. Live API values and
ckpool's own per-worker files only feed it; bestDiffs and lastSeenAt never
go down. Entries are only ever removed by prune().

All mutations hold the instance lock. Methods here do blocking file I/O and
are meant to be run from a thread pool executor when called from the event
loop.
"""

import json
import logging
import os
import re
import threading
import time
from typing import Any, Dict, Iterable, Optional

from .config import CKPOOL_LOGS_DIR, MINER_CACHE_FILE
from .stats_parser import best_difficulty, parse_miner_type, split_identity, to_number

log = logging.getLogger("CKPoolMonitor.Cache")

# Sources for a worker's effective best difficulty, combined by max().
BEST_DIFF_SOURCES = ('cache', 'api', 'worker_file')

# Fields reported by the workers command; "best_diff" is never sent there.
API_BEST_DIFF_FIELDS = ('bestever', 'bestshare', 'bestdiff')

# ckpool's worker files are loosely structured ("key": value or key=value),
# so historical bests are found by pattern search rather than a parser.
WORKER_FILE_BEST_PATTERNS = tuple(
    re.compile(rf'["\']?{field}["\']?\s*[:=]\s*([\d.]+)', re.IGNORECASE)
    for field in ('bestever', 'bestshare')
)

UNKNOWN_MINER_NAMES = frozenset({'', 'Unknown', 'Unknown Miner'})

CACHE_SECTIONS = ('workers', 'users', 'bestDiffs', 'lastSeenAt')


def parse_worker_file_best(content: str) -> float:
    """Highest bestever/bestshare value found in a worker file's text."""
    best = 0
    for pattern in WORKER_FILE_BEST_PATTERNS:
        match = pattern.search(content)
        if match:
            best = max(best, to_number(match.group(1)))
    return best


class MinerCache:
    """Reconciling cache of miner types, best difficulties and last-seen times."""

    def __init__(self, cache_file: str = MINER_CACHE_FILE, logs_dir: str = CKPOOL_LOGS_DIR, clock=time.time):
        self.cache_file = cache_file
        self.logs_dir = logs_dir
        self.clock = clock
        self.workers: Dict[str, str] = {}
        self.users: Dict[str, str] = {}
        self.best_diffs: Dict[str, float] = {}
        self.last_seen_at: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def users_dir(self) -> str:
        return os.path.join(self.logs_dir, 'users')

    # --- Persistence ---

    def load(self) -> int:
        """
        Replace the in-memory state with the persisted document.

        A missing file gives an empty cache; unreadable or corrupt files are
        logged and also treated as empty. Missing sections default to empty
        mappings. Returns the number of identities loaded.
        """
        document: Dict[str, Any] = {}
        if os.path.exists(self.cache_file):
            try:
                with open(self.cache_file, 'r', encoding='utf-8') as f:
                    document = json.load(f)
            except (OSError, ValueError) as e:
                log.error(f"Failed to load miner cache from '{self.cache_file}': {e}")
                document = {}
            if not isinstance(document, dict):
                log.error(f"Miner cache '{self.cache_file}' is not a JSON object, starting empty")
                document = {}

        sections = {}
        for name in CACHE_SECTIONS:
            value = document.get(name)
            sections[name] = dict(value) if isinstance(value, dict) else {}

        with self._lock:
            self.workers = sections['workers']
            self.users = sections['users']
            self.best_diffs = {k: to_number(v) for k, v in sections['bestDiffs'].items()}
            # An unusable timestamp means unknown, which prune never evicts.
            self.last_seen_at = {}
            for k, v in sections['lastSeenAt'].items():
                seen = to_number(v, default=None)
                if seen is not None:
                    self.last_seen_at[k] = seen
            self._dirty = False
            count = len(set(self.workers) | set(self.best_diffs) | set(self.last_seen_at))

        log.info(f"Miner cache loaded: {count} workers, {len(self.users)} users")
        return count

    def to_document(self) -> Dict[str, Dict[str, Any]]:
        """A copy of the full state in the persisted layout."""
        with self._lock:
            return {
                'workers': dict(self.workers),
                'users': dict(self.users),
                'bestDiffs': dict(self.best_diffs),
                'lastSeenAt': dict(self.last_seen_at),
            }

    def persist(self) -> bool:
        """
        Overwrite the cache file with the full current state.

        Concurrent calls are serialized. The document is written to a
        temporary file and renamed into place, so readers never see a
        partial write. On failure the cache stays dirty and the next batch
        retries the write.
        """
        with self._persist_lock:
            with self._lock:
                document = self.to_document()
                self._dirty = False

            tmp_path = f"{self.cache_file}.tmp"
            try:
                directory = os.path.dirname(self.cache_file)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(tmp_path, 'w', encoding='utf-8') as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp_path, self.cache_file)
            except OSError as e:
                log.error(f"Failed to save miner cache to '{self.cache_file}': {e}")
                with self._lock:
                    self._dirty = True
                return False
        return True

    def persist_if_dirty(self) -> bool:
        """Write once for a whole batch of merges. Returns True if a write happened."""
        if not self._dirty:
            return False
        return self.persist()

    # --- Worker files (read-only) ---

    def _worker_file_path(self, identity: str) -> Optional[str]:
        if not identity or '/' in identity or '\\' in identity or identity.startswith('.'):
            return None
        return os.path.join(self.users_dir, identity)

    def read_worker_file_best(self, identity: str) -> float:
        """Best difficulty recorded in ckpool's own file for this worker, or 0."""
        path = self._worker_file_path(identity)
        if path is None or not os.path.isfile(path):
            return 0
        try:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                return parse_worker_file_best(f.read())
        except OSError as e:
            log.warning(f"Error reading ckpool worker file for {identity}: {e}")
            return 0

    def scan_worker_files(self) -> Dict[str, float]:
        """Best difficulty for every worker file under the ckpool users directory."""
        best_diffs: Dict[str, float] = {}
        if not os.path.isdir(self.users_dir):
            log.info(f"ckpool users directory not found: {self.users_dir}")
            return best_diffs

        try:
            entries = os.listdir(self.users_dir)
        except OSError as e:
            log.error(f"Error scanning ckpool users directory '{self.users_dir}': {e}")
            return best_diffs

        for name in entries:
            path = os.path.join(self.users_dir, name)
            if not os.path.isfile(path):
                continue
            try:
                with open(path, 'r', encoding='utf-8', errors='replace') as f:
                    best = parse_worker_file_best(f.read())
            except OSError:
                continue
            if best > 0:
                best_diffs[name] = best

        log.info(f"Scanned {len(best_diffs)} worker files from ckpool logs")
        return best_diffs

    def seed_from_worker_files(self) -> int:
        """
        Merge every worker file's best into the cache. Returns how many were raised.

        Identities new to the cache get the file's modification time as their
        last-seen time, so a worker that was pruned and only survives in
        ckpool's logs ages out again instead of coming back for good.
        """
        raised = 0
        for identity, best in self.scan_worker_files().items():
            try:
                modified_at = os.path.getmtime(os.path.join(self.users_dir, identity))
            except OSError:
                # Vanished since the scan.
                continue
            # One step under the lock, so a concurrent prune never sees a best without its last-seen time.
            with self._lock:
                if best <= self.best_diffs.get(identity, 0):
                    continue
                if identity not in self.best_diffs and identity not in self.last_seen_at:
                    self.touch(identity, modified_at)
                self.merge_best_difficulty(identity, best, include_worker_file=False)
            raised += 1
        return raised

    # --- Reconciliation ---

    def get_best_diff(self, identity: str) -> float:
        return self.best_diffs.get(identity, 0)

    def merge_best_difficulty(self, identity: str, candidate, include_worker_file: bool = True) -> float:
        """
        Effective best difficulty for a worker: the max over the cached value,
        the live candidate and (optionally) ckpool's worker file.

        The cache is raised in memory when the result beats the stored value;
        writing it out is left to the caller (persist_if_dirty) so a request
        touching many workers writes once.
        """
        file_best = self.read_worker_file_best(identity) if include_worker_file else 0
        with self._lock:
            stored = self.best_diffs.get(identity, 0)
            sources = {'cache': stored, 'api': to_number(candidate), 'worker_file': file_best}
            effective = max(sources[name] for name in BEST_DIFF_SOURCES)
            if effective > stored:
                self.best_diffs[identity] = effective
                self._dirty = True
                log.info(f"New best diff for {identity}: {effective} (was {stored})")
            return effective

    def merge_miner_type(self, identity: str, observed_type: Optional[str]) -> bool:
        """
        Record the miner type observed for a worker and its owner address.

        Unknown observations never replace a concrete one. Returns True when
        anything changed.
        """
        if not identity or not observed_type or observed_type in UNKNOWN_MINER_NAMES:
            return False

        owner, _ = split_identity(identity)
        changed = False
        with self._lock:
            if self.workers.get(identity) != observed_type:
                self.workers[identity] = observed_type
                changed = True
            if owner and self.users.get(owner) != observed_type:
                self.users[owner] = observed_type
                changed = True
            if changed:
                self._dirty = True
        return changed

    def get_miner_type(self, identity: str) -> str:
        """Exact worker match, else the owner address's latest type, else 'Unknown'."""
        miner_type = self.workers.get(identity)
        if miner_type:
            return miner_type
        owner, _ = split_identity(identity)
        return self.users.get(owner) or 'Unknown'

    def touch(self, identity: str, observed_at: Optional[float] = None) -> bool:
        """Advance a worker's last-seen time. Older observations are ignored."""
        if not identity:
            return False
        observed_at = self.clock() if observed_at is None else to_number(observed_at)
        with self._lock:
            if observed_at > self.last_seen_at.get(identity, 0):
                self.last_seen_at[identity] = observed_at
                self._dirty = True
                return True
        return False

    def update_from_clients(self, clients: Iterable[Dict[str, Any]], seen_at: Optional[float] = None):
        """Feed a list of connected clients (raw ckpool records) into the cache."""
        seen_at = self.clock() if seen_at is None else seen_at
        for client in clients or []:
            if not isinstance(client, dict):
                continue
            identity = client.get('workername')
            if not identity:
                continue
            useragent = client.get('useragent')
            if useragent:
                self.merge_miner_type(identity, parse_miner_type(useragent)['name'])
            self.touch(identity, seen_at)

    def update_best_diffs(self, workers: Iterable[Dict[str, Any]]):
        """Raise cached bests from a ckpool workers listing. Worker files are not read."""
        for worker in workers or []:
            if not isinstance(worker, dict):
                continue
            identity = worker.get('worker') or worker.get('workername')
            if not identity:
                continue
            best = best_difficulty(worker, API_BEST_DIFF_FIELDS)
            if best > 0:
                self.merge_best_difficulty(identity, best, include_worker_file=False)
            last_share = to_number(worker.get('lastshare'))
            if last_share > 0:
                self.touch(identity, last_share)

    # --- Eviction ---

    def prune(self, max_age_days: float, now: Optional[float] = None) -> int:
        """
        Remove identities not seen for more than max_age_days.

        Identities without a lastSeenAt (entries from older cache files) are
        never removed. Owner addresses left with no identities lose their
        users entry too. Returns the number of identities removed.
        """
        now = self.clock() if now is None else now
        cutoff = now - max_age_days * 86400

        with self._lock:
            expired = [identity for identity, seen in self.last_seen_at.items() if seen < cutoff]
            for identity in expired:
                self.last_seen_at.pop(identity, None)
                self.best_diffs.pop(identity, None)
                self.workers.pop(identity, None)

            if expired:
                remaining_owners = {
                    split_identity(identity)[0]
                    for identity in set(self.workers) | set(self.best_diffs) | set(self.last_seen_at)
                }
                for owner in {split_identity(identity)[0] for identity in expired}:
                    if owner not in remaining_owners:
                        self.users.pop(owner, None)
                self._dirty = True

        if expired:
            log.info(f"[PRUNER] Removed {len(expired)} workers not seen in {max_age_days} days")
        return len(expired)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                'workers': len(self.workers),
                'users': len(self.users),
                'best_diffs': len(self.best_diffs),
                'last_seen': len(self.last_seen_at),
            }
