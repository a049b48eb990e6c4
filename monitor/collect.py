from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from dns_query import DnsResolver, ResolutionError
from models import Watch


logger = logging.getLogger(__name__)


@dataclass
class Collected:
    watch_id: Optional[int]
    value: Optional[str]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def collect_value(resolver: DnsResolver, watch: Watch) -> Collected:
    """Resolve one watch. Never raises for resolution problems.

    - Returns value=None with the error text on ResolutionError; the caller
      still reschedules the watch.
    - Runs without any watch lock held.
    """
    try:
        value = resolver.resolve(watch.domain, watch.record_type.value, watch.record_name)
    except ResolutionError as e:
        logger.warning("DNS check failed for watch %s %s: %s", watch.id, watch.label(), e)
        return Collected(watch_id=watch.id, value=None, error=str(e))
    return Collected(watch_id=watch.id, value=value)
