#!/usr/bin/env python3
"""
Configuration file handling.
"""
import json
import logging
import os

from models import MonitorConfig


ENV_SWEEP_INTERVAL = 'DNS_CHECK_INTERVAL_MINUTES'


def read_config(path):
    """
    Read a JSON config file into a dict.
    An empty path or a read/parse failure yields an empty dict.

    Args:
        path (str): config file path

    Returns:
        dict: file contents or {}
    """
    if not path:
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f) or {}
    except (OSError, ValueError) as e:
        logging.warning("read_config failed (%s): %s", path, e)
        return {}
    if not isinstance(data, dict):
        logging.warning("read_config ignored %s: top level must be an object", path)
        return {}
    return data


def _int(value, default, minimum=1):
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return default


def _float(value, default):
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    return f if f > 0 else default


def normalize_servers(value):
    """
    Normalize nameserver settings into a list of strings.

    Args:
        value: list of strings, or one comma/newline separated string

    Returns:
        list: nameserver addresses, duplicates removed, order kept
    """
    if not value:
        return []
    items = value if isinstance(value, list) else str(value).replace(',', '\n').splitlines()
    out = []
    for it in items:
        s = str(it or '').strip()
        if s and s not in out:
            out.append(s)
    return out


def build_config(raw, env=None):
    """
    Build a MonitorConfig from a raw config dict plus environment overrides.

    DNS_CHECK_INTERVAL_MINUTES overrides `sweep_interval_minutes` and is
    clamped to at least one minute.

    Args:
        raw (dict): parsed config file
        env (dict): environment mapping (defaults to os.environ)

    Returns:
        MonitorConfig
    """
    raw = raw if isinstance(raw, dict) else {}
    env = os.environ if env is None else env
    defaults = MonitorConfig()

    resolver = raw.get('resolver') if isinstance(raw.get('resolver'), dict) else {}
    alerts = raw.get('alerts') if isinstance(raw.get('alerts'), dict) else {}
    watches = raw.get('watches', [])
    if not isinstance(watches, list):
        logging.warning("config 'watches' must be a list; ignoring %r", type(watches).__name__)
        watches = []

    sweep = _int(raw.get('sweep_interval_minutes'), defaults.sweep_interval_minutes)
    if env.get(ENV_SWEEP_INTERVAL):
        sweep = _int(env.get(ENV_SWEEP_INTERVAL), sweep)

    return MonitorConfig(
        database=str(raw.get('database') or ''),
        sweep_interval_minutes=sweep,
        max_workers=_int(raw.get('max_workers'), defaults.max_workers),
        resolver_timeout=_float(resolver.get('timeout'), defaults.resolver_timeout),
        nameservers=normalize_servers(resolver.get('nameservers')),
        alerts=dict(alerts),
        watches=list(watches),
    )


def load_config(path, env=None):
    """Read and build in one step."""
    return build_config(read_config(path), env=env)
