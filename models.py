#!/usr/bin/env python3
"""DNS watch data models.

Watches and changes are passed between the resolver, the stores and the
monitor loop as explicit dataclasses rather than anonymous dicts. Keep these
models lightweight; persistence lives in watch_store.py.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


DEFAULT_INTERVAL_SECONDS = 300
APEX = '@'


class InvalidWatch(ValueError):
    """Raised when a watch definition fails validation."""


class RecordType(str, Enum):
    A = 'A'
    AAAA = 'AAAA'
    CNAME = 'CNAME'
    MX = 'MX'
    NS = 'NS'
    TXT = 'TXT'
    SOA = 'SOA'
    SRV = 'SRV'

    @classmethod
    def parse(cls, value: Any) -> 'RecordType':
        if isinstance(value, RecordType):
            return value
        s = str(value or '').strip().upper()
        try:
            return cls(s)
        except ValueError:
            raise InvalidWatch(f"record type is not included in the list: {value!r}") from None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def interval_from_seconds(seconds: Any) -> timedelta:
    """Legacy unit adapter: whole seconds -> interval."""
    try:
        secs = int(seconds)
    except (TypeError, ValueError):
        raise InvalidWatch(f"interval must be a whole number of seconds: {seconds!r}") from None
    if secs <= 0:
        raise InvalidWatch("interval must be greater than 0")
    return timedelta(seconds=secs)


def interval_from_minutes(minutes: Any) -> timedelta:
    """Minutes -> interval. Fractions are truncated to whole seconds."""
    try:
        mins = float(minutes)
    except (TypeError, ValueError):
        raise InvalidWatch(f"interval minutes must be numeric: {minutes!r}") from None
    return interval_from_seconds(int(mins * 60))


@dataclass
class Watch:
    domain: str
    record_type: RecordType
    record_name: str = APEX
    interval: timedelta = field(default_factory=lambda: timedelta(seconds=DEFAULT_INTERVAL_SECONDS))
    next_check_at: datetime = field(default_factory=utcnow)
    last_value: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        self.domain = str(self.domain or '').strip().lower()
        if not self.domain:
            raise InvalidWatch("domain can't be blank")
        self.record_type = RecordType.parse(self.record_type)
        self.record_name = str(self.record_name or '').strip()
        if not self.record_name:
            raise InvalidWatch("record name can't be blank")
        if not isinstance(self.interval, timedelta):
            self.interval = interval_from_seconds(self.interval)
        if self.interval.total_seconds() <= 0 or self.interval.total_seconds() != int(self.interval.total_seconds()):
            raise InvalidWatch("interval must be a positive whole number of seconds")
        if self.next_check_at is None:
            self.next_check_at = utcnow()
        self.next_check_at = as_utc(self.next_check_at)
        if self.last_checked_at is not None:
            self.last_checked_at = as_utc(self.last_checked_at)

    @property
    def interval_seconds(self) -> int:
        return int(self.interval.total_seconds())

    @property
    def check_interval_minutes(self) -> float:
        return self.interval.total_seconds() / 60.0

    @property
    def key(self):
        return (self.domain, self.record_type.value, self.record_name.lower())

    def label(self) -> str:
        return f"{self.domain} ({self.record_type.value}) {self.record_name}"

    def copy(self, **changes: Any) -> 'Watch':
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class Change:
    watch_id: int
    detected_at: datetime
    to_value: str
    from_value: Optional[str] = None
    id: Optional[int] = None

    def is_initial(self) -> bool:
        return self.from_value is None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON output (notifications)."""
        return {
            'id': self.id,
            'watch_id': self.watch_id,
            'detected_at': self.detected_at.isoformat(),
            'from_value': self.from_value,
            'to_value': self.to_value,
        }


def watch_from_dict(d: Dict[str, Any]) -> Watch:
    """Build a Watch from a config entry.

    `check_interval_minutes` wins over the legacy `interval_seconds` key; a
    non-positive minutes value is ignored and the seconds value applies.
    """
    if not isinstance(d, dict):
        raise InvalidWatch(f"watch entry must be an object: {d!r}")

    interval = None
    minutes = d.get('check_interval_minutes')
    if minutes is not None:
        try:
            positive = float(minutes) > 0
        except (TypeError, ValueError):
            raise InvalidWatch(f"interval minutes must be numeric: {minutes!r}") from None
        if positive:
            interval = interval_from_minutes(minutes)
    if interval is None:
        secs = d.get('interval_seconds')
        interval = interval_from_seconds(DEFAULT_INTERVAL_SECONDS if secs is None else secs)

    return Watch(
        domain=d.get('domain') or d.get('name') or '',
        record_type=d.get('record_type') or d.get('type') or 'A',
        record_name=d.get('record_name') if d.get('record_name') is not None else APEX,
        interval=interval,
    )


def coerce_watches(entries: List[Any]) -> List[Watch]:
    """Convert config watch entries into Watch objects.

    Plain strings are treated as apex A watches. Duplicate tuples keep the
    first entry.
    """
    out: List[Watch] = []
    seen = set()
    for it in entries or []:
        if isinstance(it, Watch):
            w = it
        elif isinstance(it, dict):
            w = watch_from_dict(it)
        else:
            s = str(it or '').strip()
            if not s:
                continue
            w = Watch(domain=s, record_type=RecordType.A)
        if w.key in seen:
            continue
        seen.add(w.key)
        out.append(w)
    return out


@dataclass
class MonitorConfig:
    database: str = ''  # empty -> in-memory store
    sweep_interval_minutes: int = 5
    max_workers: int = 8  # parallel DNS checks per sweep
    resolver_timeout: float = 5.0
    nameservers: List[str] = field(default_factory=list)
    alerts: Dict[str, Any] = field(default_factory=dict)
    watches: List[Any] = field(default_factory=list)  # raw config entries, see coerce_watches()

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(minutes=max(1, int(self.sweep_interval_minutes or 1)))
