"""Round-robin API key pool with durable quarantine of rate-limited keys.

State (quarantine map + cursor) is an explicit `KeyState` loaded from and
saved to a `KeyStateStore`. Keys are recorded by fingerprint so the state
file never contains key material.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .constants import QUARANTINE_HOURS

logger = logging.getLogger(__name__)


def key_fingerprint(api_key: str) -> str:
    return hashlib.sha256(api_key.encode('utf-8')).hexdigest()[:16]


def mask_key(api_key: str) -> str:
    """Log-safe label for a key."""
    if not api_key:
        return "<empty>"
    return "…" + api_key[-4:]


@dataclass
class KeyState:
    # fingerprint -> epoch seconds after which the key is usable again
    quarantine: Dict[str, float] = field(default_factory=dict)
    cursor: int = 0

    def purge_expired(self, now: float) -> List[str]:
        expired = [fp for fp, until in self.quarantine.items() if until <= now]
        for fp in expired:
            del self.quarantine[fp]
        return expired

    def to_dict(self) -> Dict:
        return {'quarantine': dict(self.quarantine), 'cursor': self.cursor}

    @classmethod
    def from_dict(cls, data) -> "KeyState":
        if not isinstance(data, dict):
            return cls()
        quarantine = {}
        raw = data.get('quarantine')
        if isinstance(raw, dict):
            for fp, until in raw.items():
                try:
                    quarantine[str(fp)] = float(until)
                except (TypeError, ValueError):
                    continue
        try:
            cursor = max(int(data.get('cursor', 0)), 0)
        except (TypeError, ValueError):
            cursor = 0
        return cls(quarantine=quarantine, cursor=cursor)


class KeyStateStore:
    """Load/persist interface for `KeyState`."""

    def load(self) -> KeyState:
        raise NotImplementedError

    def save(self, state: KeyState) -> None:
        raise NotImplementedError


class MemoryKeyStateStore(KeyStateStore):
    def __init__(self, state: Optional[KeyState] = None):
        self._data = (state or KeyState()).to_dict()
        self.saves = 0

    def load(self) -> KeyState:
        return KeyState.from_dict(self._data)

    def save(self, state: KeyState) -> None:
        self._data = state.to_dict()
        self.saves += 1


class JsonFileKeyStateStore(KeyStateStore):
    """State kept in a small JSON file, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> KeyState:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return KeyState()
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable key state file %s, starting fresh: %s", self.path, exc)
            return KeyState()
        return KeyState.from_dict(data)

    def save(self, state: KeyState) -> None:
        dirpath = os.path.dirname(self.path) or '.'
        os.makedirs(dirpath, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.key_state.', dir=dirpath)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(state.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


class KeyPool:
    """Selects usable keys round-robin and quarantines rejected ones.

    Each selection is a read-modify-write of the stored state, guarded by a
    lock since request handlers run on a thread pool.
    """

    def __init__(
        self,
        keys: Iterable[str],
        store: KeyStateStore,
        quarantine_seconds: float = QUARANTINE_HOURS * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.keys: List[str] = [k for k in keys if k]
        self.store = store
        self.quarantine_seconds = quarantine_seconds
        self.clock = clock
        self._lock = threading.Lock()
        # state that could not be written; used instead of the store until a save succeeds
        self._unsaved: Optional[KeyState] = None

    def __len__(self) -> int:
        return len(self.keys)

    def _load(self, now: float) -> KeyState:
        if self._unsaved is not None:
            state = KeyState.from_dict(self._unsaved.to_dict())
        else:
            state = self.store.load()
        expired = state.purge_expired(now)
        if expired:
            logger.info("Released %d key(s) from quarantine", len(expired))
        return state

    def _persist(self, state: KeyState) -> None:
        try:
            self.store.save(state)
        except OSError as exc:
            if self._unsaved is None:
                logger.warning("Could not persist key state, keeping it in memory: %s", exc)
            self._unsaved = state
            return
        self._unsaved = None

    def acquire(self, exclude: Iterable[str] = ()) -> Optional[str]:
        """Next usable key after the cursor, skipping quarantined and `exclude`d keys.

        Advances and persists the cursor past the chosen key. Returns None
        when nothing is usable.
        """
        excluded = set(exclude)
        with self._lock:
            now = self.clock()
            state = self._load(now)
            count = len(self.keys)
            chosen = None
            for offset in range(count):
                idx = (state.cursor + offset) % count
                key = self.keys[idx]
                if key in excluded or key_fingerprint(key) in state.quarantine:
                    continue
                chosen = key
                state.cursor = (idx + 1) % count
                break
            self._persist(state)
        if chosen is None:
            logger.debug("No usable API key (configured=%d, excluded=%d)", count, len(excluded))
        else:
            logger.debug("Selected API key %s", mask_key(chosen))
        return chosen

    def quarantine(self, api_key: str, reason: str = "") -> float:
        """Mark `api_key` unusable for the quarantine period; returns the expiry timestamp."""
        with self._lock:
            now = self.clock()
            state = self._load(now)
            until = now + self.quarantine_seconds
            state.quarantine[key_fingerprint(api_key)] = until
            self._persist(state)
        logger.warning("Quarantined API key %s for %.1fh: %s", mask_key(api_key), self.quarantine_seconds / 3600, reason)
        return until

    def usable_count(self) -> int:
        with self._lock:
            state = self._load(self.clock())
        return sum(1 for k in self.keys if key_fingerprint(k) not in state.quarantine)
