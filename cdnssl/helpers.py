"""
Common utility functions.

Provides helper functions for expiry calculations and the include/ignore
domain filtering rules.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union, List

SECONDS_PER_DAY = 24 * 60 * 60


def is_expiring_soon(
    not_after: int,
    lookahead_days: int = 30,
    now: Optional[float] = None,
) -> bool:
    """
    Check if a certificate expires within the lookahead window.

    Args:
        not_after: Certificate expiry as unix seconds
        lookahead_days: Number of days before expiration to consider "soon"
        now: Current unix time (defaults to time.time())

    Returns:
        True if the certificate is expired or expiring within the window
    """
    if now is None:
        now = time.time()
    cutoff = now + lookahead_days * SECONDS_PER_DAY
    return not_after <= cutoff


def format_days_remaining(
    not_after: Optional[int],
    now: Optional[float] = None,
) -> Union[int, str]:
    """
    Calculate whole days remaining until expiration.

    Args:
        not_after: Certificate expiry as unix seconds

    Returns:
        Number of days remaining (negative if expired), or "unknown"
    """
    if not_after is None:
        return "unknown"
    if now is None:
        now = time.time()
    return int((not_after - now) // SECONDS_PER_DAY)


def format_timestamp(unix_seconds: Optional[float]) -> str:
    if unix_seconds is None:
        return "N/A"
    return datetime.fromtimestamp(unix_seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


@dataclass
class FilterResult:
    """Result of include/ignore filtering over a domain list."""
    kept: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)


def normalize_domain(name: str) -> str:
    return name.strip().lower().rstrip(".")


def filter_domains(
    domains: List[str],
    include_list: Optional[List[str]] = None,
    ignore_list: Optional[List[str]] = None,
) -> FilterResult:
    """
    Filter domains by include and ignore lists.

    Rules (in order of precedence):
    1. ignore_list ALWAYS wins - listed domains are never processed
    2. Empty include_list - every other domain is kept
    3. Non-empty include_list - only listed domains are kept

    Matching is case-insensitive and ignores a trailing dot.

    Args:
        domains: Domain names in inventory order
        include_list: Optional whitelist
        ignore_list: Optional blacklist

    Returns:
        FilterResult preserving input order
    """
    include_set = {normalize_domain(d) for d in include_list or []}
    ignore_set = {normalize_domain(d) for d in ignore_list or []}
    include_mode = len(include_set) > 0

    result = FilterResult()
    for domain in domains:
        key = normalize_domain(domain)
        if key in ignore_set:
            result.ignored.append(domain)
        elif include_mode and key not in include_set:
            result.excluded.append(domain)
        else:
            result.kept.append(domain)

    return result
