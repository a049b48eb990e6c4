#!/usr/bin/env python3
"""Alerting helpers: webhook notification for detected DNS changes.

Initialized from the config file's `alerts` object:

    {"webhook_url": "https://hooks.example/...", "title": "DNS change"}

and exposes `alert_change(watch, change)`, called by the monitor after a change
has been committed. Delivery is best effort: failures are logged and never
propagate into the polling cycle.
"""
import logging
from typing import Optional

import requests

from models import Change, Watch


logger = logging.getLogger(__name__)

DEFAULT_TITLE = 'DNS Change Alert'

_webhook_url = None
_title = DEFAULT_TITLE
_timeout = 10


def _sanitize_webhook(url):
    """Return a usable webhook URL or None."""
    s = str(url or '').strip()
    if not s:
        return None
    if not (s.startswith('http://') or s.startswith('https://')):
        return None
    return s


def init_from_alerts(alerts: Optional[dict]) -> bool:
    """Initialize alerting from the config `alerts` dict. Returns True when a webhook is active."""
    global _webhook_url, _title, _timeout
    if not isinstance(alerts, dict):
        alerts = {}
    _webhook_url = _sanitize_webhook(alerts.get('webhook_url'))
    _title = str(alerts.get('title') or DEFAULT_TITLE)
    try:
        _timeout = max(1, int(alerts.get('timeout') or 10))
    except (TypeError, ValueError):
        _timeout = 10
    if alerts.get('webhook_url') and not _webhook_url:
        logger.warning("ignoring invalid alerts.webhook_url: %r", alerts.get('webhook_url'))
    return bool(_webhook_url)


def _build_alert_body(watch: Watch, change: Change) -> str:
    old = change.from_value if change.from_value is not None else '(none)'
    lines = [
        f"Watch: {watch.label()}",
        f"Time (UTC): {change.detected_at.strftime('%Y-%m-%d %H:%M:%SZ')}",
        "Old:",
        old,
        "New:",
        change.to_value,
    ]
    return "\n".join(lines)


def build_payload(watch: Watch, change: Change) -> dict:
    return {
        'title': _title,
        'text': _build_alert_body(watch, change),
        'watch': {
            'id': watch.id,
            'domain': watch.domain,
            'record_type': watch.record_type.value,
            'record_name': watch.record_name,
        },
        'change': change.to_dict(),
    }


def alert_change(watch: Watch, change: Change) -> bool:
    """Post one change to the configured webhook (best effort)."""
    if not _webhook_url:
        return False
    try:
        resp = requests.post(_webhook_url, json=build_payload(watch, change), timeout=_timeout)
        resp.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.warning("webhook send failed for watch %s: %s", watch.id, e)
        return False


__all__ = ['init_from_alerts', 'alert_change', 'build_payload']
