#!/usr/bin/env python3
"""
DNS record watcher: poll due watches, record value changes.
"""
import argparse
import logging
import signal
import sys
import threading

import alerts
from config_manager import load_config, normalize_servers
from dns_query import DnsResolver
from monitor.engine import PollCoordinator, run_due_cycle
from monitor.stores import ConfigStore, sync_watches
from watch_store import open_store


logger = logging.getLogger('dns_monitor')


def build_parser():
    parser = argparse.ArgumentParser(description="DNS record change monitor")
    parser.add_argument("-c", "--config", default="", help="config file (JSON) path")
    parser.add_argument("--db", default=None, help="SQLite database path (default: config 'database', else in-memory)")
    parser.add_argument("-i", "--interval", type=int, default=None, help="sweep interval in minutes")
    parser.add_argument("--max-workers", type=int, default=None, help="parallel DNS checks per sweep")
    parser.add_argument("--nameserver", action="append", default=None, help="DNS server to query (repeatable)")
    parser.add_argument("--timeout", type=float, default=None, help="per-lookup deadline in seconds")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"], help="log level")
    return parser


def apply_cli_overrides(cfg, args):
    """CLI flags win over the config file and the environment."""
    if args.db is not None:
        cfg.database = args.db
    if args.interval is not None:
        cfg.sweep_interval_minutes = max(1, args.interval)
    if args.max_workers is not None:
        cfg.max_workers = max(1, args.max_workers)
    if args.nameserver:
        cfg.nameservers = normalize_servers(args.nameserver)
    if args.timeout is not None and args.timeout > 0:
        cfg.resolver_timeout = args.timeout
    return cfg


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = apply_cli_overrides(load_config(args.config), args)
    config_store = ConfigStore(cfg, path=args.config)
    alerts.init_from_alerts(cfg.alerts)

    store = open_store(cfg.database)
    resolver = DnsResolver(nameservers=cfg.nameservers, timeout=cfg.resolver_timeout)
    coordinator = PollCoordinator(store, resolver, notify=alerts.alert_change)

    stop = threading.Event()
    reload_requested = threading.Event()

    def handle_stop(signum, frame):
        stop.set()

    def handle_hup(signum, frame):
        reload_requested.set()

    signal.signal(signal.SIGINT, handle_stop)
    signal.signal(signal.SIGTERM, handle_stop)
    if hasattr(signal, 'SIGHUP'):
        signal.signal(signal.SIGHUP, handle_hup)

    generation = None
    try:
        while not stop.is_set():
            if reload_requested.is_set():
                reload_requested.clear()
                if config_store.reload():
                    apply_cli_overrides(config_store.config, args)
                    alerts.init_from_alerts(config_store.config.alerts)

            snap = config_store.snapshot()
            if snap.generation != generation:
                sync_watches(store, snap.watches)
                generation = snap.generation

            run_due_cycle(store=store, coordinator=coordinator, max_workers=snap.max_workers)
            if args.once:
                break
            stop.wait(snap.sweep_interval_minutes * 60)
    finally:
        store.close()

    logger.info("Exiting DNS monitor.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
