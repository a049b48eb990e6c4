from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config_manager import load_config
from models import InvalidWatch, MonitorConfig, Watch, coerce_watches
from watch_store import DuplicateWatch, WatchStore


logger = logging.getLogger(__name__)


@dataclass
class ConfigSnapshot:
    watches: List[Any]
    sweep_interval_minutes: int
    max_workers: int
    generation: int


class ConfigStore:
    """Thread-safe holder for the active MonitorConfig.

    The run loop takes a snapshot once per sweep; a SIGHUP handler calls
    reload(), which bumps `generation` so the loop knows to re-sync watches.
    """

    def __init__(self, config: MonitorConfig, path: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self._cfg = config
        self._path = path
        self._env = env
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def config(self) -> MonitorConfig:
        with self._lock:
            return self._cfg

    def reload(self) -> bool:
        """Re-read the config file. Keeps the current config when there is no file."""
        if not self._path:
            return False
        cfg = load_config(self._path, env=self._env)
        with self._lock:
            # runtime-only settings stay as started
            cfg.database = self._cfg.database
            self._cfg = cfg
            self._generation += 1
        logger.info("configuration reloaded from %s", self._path)
        return True

    def snapshot(self) -> ConfigSnapshot:
        with self._lock:
            return ConfigSnapshot(
                watches=list(self._cfg.watches or []),
                sweep_interval_minutes=max(1, int(self._cfg.sweep_interval_minutes or 1)),
                max_workers=max(1, int(self._cfg.max_workers or 1)),
                generation=self._generation,
            )


def _set_interval(store: WatchStore, stored: Watch, interval) -> Watch:
    committed = store.with_watch_lock(stored.id, lambda cur, tx: cur.copy(interval=interval))
    return committed.watch


def sync_watches(store: WatchStore, entries: List[Any]) -> List[Watch]:
    """Add configured watches the store does not know yet.

    Existing watches (same domain, type and name) keep their schedule and
    last value; only a changed interval is written back, and it takes effect
    from the next check. Invalid entries are logged and skipped. Returns the
    added watches.
    """
    existing = {w.key: w for w in store.list_watches()}
    added: List[Watch] = []
    for entry in entries or []:
        try:
            candidates = coerce_watches([entry])
        except InvalidWatch as e:
            logger.warning("skipping invalid watch %r: %s", entry, e)
            continue
        for w in candidates:
            stored = existing.get(w.key)
            if stored is not None:
                if stored.interval != w.interval:
                    updated = _set_interval(store, stored, w.interval)
                    existing[w.key] = updated
                    logger.info("watch %s: %s interval %ss -> %ss", updated.id, updated.label(),
                                stored.interval_seconds, updated.interval_seconds)
                continue
            try:
                stored = store.add_watch(w)
            except DuplicateWatch:
                continue
            existing[stored.key] = stored
            added.append(stored)
            logger.info("added watch %s: %s every %ss", stored.id, stored.label(), stored.interval_seconds)
    return added
