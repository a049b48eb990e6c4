#!/usr/bin/env python3
"""
DNS query module: resolve one watch into a canonical value string.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import dns.exception
import dns.resolver

from models import APEX, InvalidWatch, RecordType


logger = logging.getLogger(__name__)

NO_RECORDS = '(no records)'
DEFAULT_TIMEOUT = 5.0


class ResolutionError(Exception):
    """A single resolution attempt failed (unsupported type, NXDOMAIN, timeout, ...)."""


def build_query_name(domain, record_name):
    """
    Build the name to query for a (domain, record_name) pair.

    Args:
        domain (str): zone, e.g. 'example.com'
        record_name (str): '@' or '' for the apex, a relative label such as
            'www', or an absolute name ending with '.'

    Returns:
        str: query name without a trailing dot
    """
    d = str(domain or '').strip().lower()
    n = str(record_name or '').strip().lower()
    if not n or n == APEX:
        return d
    if n.endswith('.'):
        return n[:-1]
    return f"{n}.{d}"


def canonicalize(values: Iterable[Optional[str]]) -> str:
    """Reduce extracted record strings to one order/duplicate independent value."""
    cleaned = {str(v).strip() for v in values or [] if v is not None}
    cleaned.discard('')
    if not cleaned:
        return NO_RECORDS
    return '\n'.join(sorted(cleaned))


def _name(n) -> str:
    return str(n).lower().rstrip('.')


def _txt(rr) -> str:
    parts = []
    for s in getattr(rr, 'strings', None) or []:
        if isinstance(s, bytes):
            parts.append(s.decode('utf-8', errors='replace'))
        else:
            parts.append(str(s))
    return ''.join(parts).strip()


# One extractor per supported type. SOA is a valid watch type but has no
# extractor; resolving it fails.
EXTRACTORS: Dict[RecordType, Callable[[object], str]] = {
    RecordType.A: lambda rr: str(rr.address),
    RecordType.AAAA: lambda rr: str(rr.address).lower(),
    RecordType.CNAME: lambda rr: _name(rr.target),
    RecordType.NS: lambda rr: _name(rr.target),
    RecordType.TXT: _txt,
    RecordType.MX: lambda rr: f"{rr.preference} {_name(rr.exchange)}",
    RecordType.SRV: lambda rr: f"{rr.priority} {rr.weight} {rr.port} {_name(rr.target)}",
}
UNSUPPORTED = frozenset({RecordType.SOA})

if set(EXTRACTORS) | UNSUPPORTED != set(RecordType):
    missing = set(RecordType) - set(EXTRACTORS) - UNSUPPORTED
    raise RuntimeError(f"record type without a resolution rule: {sorted(t.value for t in missing)}")


class DnsResolver:
    """Resolve watches through dnspython with a bounded lifetime per lookup.

    `query` may be replaced (tests) by any callable `(qname, rdtype) -> iterable
    of rdata`, raising dns.exception.DNSException subclasses on failure.
    """

    def __init__(self, nameservers: Optional[Sequence[str]] = None, timeout: float = DEFAULT_TIMEOUT, query=None):
        self.timeout = max(0.1, float(timeout or DEFAULT_TIMEOUT))
        self.nameservers = [str(s).strip() for s in (nameservers or []) if str(s or '').strip()]
        self._query = query or self._dnspython_query

    def _make_resolver(self) -> dns.resolver.Resolver:
        if self.nameservers:
            r = dns.resolver.Resolver(configure=False)
            r.nameservers = list(self.nameservers)
        else:
            r = dns.resolver.Resolver()
        r.timeout = self.timeout
        r.lifetime = self.timeout
        return r

    def _dnspython_query(self, qname: str, rdtype: str):
        # Resolver objects are cheap; one per lookup keeps worker threads independent.
        answer = self._make_resolver().resolve(qname, rdtype, raise_on_no_answer=False)
        return answer.rrset or []

    def resolve(self, domain, record_type, record_name) -> str:
        qname = build_query_name(domain, record_name)
        try:
            rtype = RecordType.parse(record_type)
        except InvalidWatch:
            raise ResolutionError(f"unsupported record type: {record_type}") from None
        extract = EXTRACTORS.get(rtype)
        if extract is None:
            raise ResolutionError(f"unsupported record type: {rtype.value}")

        try:
            answers = self._query(qname, rtype.value)
            values: List[str] = [extract(rr) for rr in (answers or [])]
        except dns.resolver.NoAnswer:
            values = []
        except dns.exception.DNSException as e:
            raise ResolutionError(f"DNS resolution failed for {qname} ({rtype.value}): {e.__class__.__name__}: {e}") from e
        except (OSError, ValueError, AttributeError) as e:
            raise ResolutionError(f"DNS resolution failed for {qname} ({rtype.value}): {e}") from e

        value = canonicalize(values)
        logger.debug("resolved %s (%s) -> %r", qname, rtype.value, value)
        return value
