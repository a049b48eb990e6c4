from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from dns_query import DnsResolver
from models import Change, Watch, utcnow
from watch_store import WatchStore, WatchTransaction

from .collect import collect_value


logger = logging.getLogger(__name__)

Notifier = Callable[[Watch, Change], object]


class PollCoordinator:
    """Runs polling cycles: resolve, then compare-and-reschedule under the watch lock.

    The DNS lookup happens before the lock is taken so slow answers never hold
    up other workers. Inside the lock the comparison is made against the watch
    as currently stored, not the copy handed to `check`.
    """

    def __init__(
        self,
        store: WatchStore,
        resolver: Optional[DnsResolver] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        notify: Optional[Notifier] = None,
    ):
        self.store = store
        self.resolver = resolver or DnsResolver()
        self.clock = clock
        self.notify = notify

    def check(self, watch: Watch) -> Optional[Change]:
        """Run exactly one cycle for `watch`. Returns the recorded Change, if any.

        Resolution failures are absorbed; storage failures propagate and leave
        the watch due.
        """
        now = self.clock()
        collected = collect_value(self.resolver, watch)
        current = collected.value

        def apply(locked: Watch, tx: WatchTransaction) -> Watch:
            last_value = locked.last_value
            if current is not None and current != last_value:
                tx.append_change(now, last_value, current)
                last_value = current
            return locked.copy(
                last_value=last_value,
                last_checked_at=now,
                next_check_at=now + locked.interval,
            )

        committed = self.store.with_watch_lock(watch.id, apply)
        change = committed.changes[0] if committed.changes else None

        if change is None:
            logger.debug("UNCHANGED %s next=%s", watch.label(), committed.watch.next_check_at.isoformat())
            return None
        if change.is_initial():
            logger.info("INIT %s -> %r", watch.label(), change.to_value)
        else:
            logger.info("CHANGED %s: %r -> %r", watch.label(), change.from_value, change.to_value)

        if self.notify is not None:
            try:
                self.notify(committed.watch, change)
            except Exception:
                logger.exception("change notification failed for watch %s", watch.id)
        return change


@dataclass
class CycleStats:
    due: int = 0
    checked: int = 0
    changed: int = 0
    failed: int = 0
    changes: List[Change] = field(default_factory=list)


def run_due_cycle(
    *,
    store: WatchStore,
    coordinator: PollCoordinator,
    now: Optional[datetime] = None,
    max_workers: int = 8,
) -> CycleStats:
    """Check every watch that is due at `now` using a bounded worker pool.

    An exception from one watch is logged and counted; it never stops the
    sweep or touches other watches.
    """
    now = now or coordinator.clock()
    due: List[Watch] = []
    seen = set()
    for w in store.due_for_check(now):
        if w.id in seen:
            continue
        seen.add(w.id)
        due.append(w)

    stats = CycleStats(due=len(due))
    if not due:
        return stats

    max_workers_eff = max(1, min(int(max_workers or 1), len(due)))
    with ThreadPoolExecutor(max_workers=max_workers_eff, thread_name_prefix='dns-check') as ex:
        futures = {ex.submit(coordinator.check, w): w for w in due}
        for fut in as_completed(futures):
            w = futures[fut]
            try:
                change = fut.result()
            except Exception:
                stats.failed += 1
                logger.exception("check failed for watch %s %s", w.id, w.label())
                continue
            stats.checked += 1
            if change is not None:
                stats.changed += 1
                stats.changes.append(change)

    logger.info("sweep done: due=%s checked=%s changed=%s failed=%s", stats.due, stats.checked, stats.changed, stats.failed)
    return stats
