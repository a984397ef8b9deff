"""
Domain selection.

Turns the CDN domain list and certificate inventory into the working set of
WorkItems that need a new certificate this cycle.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .capabilities import CertificateRecord, DomainInventory
from .context import CallContext
from .helpers import filter_domains, format_days_remaining, is_expiring_soon
from .logger import get_logger
from .pipeline import WorkItem


@dataclass
class DomainSelection:
    """Working set for one cycle plus what was left out and why."""
    selected: List[WorkItem] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # valid beyond the window
    ignored: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)  # over the per-cycle cap
    total_discovered: int = 0
    error: Optional[str] = None  # inventory could not be read


def index_certificates(certificates: List[CertificateRecord]) -> Dict[str, CertificateRecord]:
    """
    Map domain name to its certificate record.

    When a domain has several records, the one expiring last wins.
    """
    index: Dict[str, CertificateRecord] = {}
    for record in certificates:
        existing = index.get(record.domain_name)
        if existing is None or record.not_after > existing.not_after:
            index[record.domain_name] = record
    return index


def select_work_items(
    domains: List[str],
    certificates: List[CertificateRecord],
    lookahead_days: int = 30,
    now: Optional[float] = None,
    include: Optional[List[str]] = None,
    ignore: Optional[List[str]] = None,
    max_items: int = 0,
) -> DomainSelection:
    """
    Select the domains that need a certificate this cycle.

    A domain is selected if it has no certificate record, or if its
    certificate expires within ``lookahead_days``. Selected items carry the
    existing certificate ID as ``old_cert_id``. Input order is preserved.

    Args:
        domains: Every domain on the CDN
        certificates: Every certificate record on the CDN
        lookahead_days: Renewal window in days
        now: Current unix time (defaults to time.time())
        include: Optional domain whitelist
        ignore: Optional domain blacklist (always wins)
        max_items: Per-cycle cap on selected items (0 = unlimited)

    Returns:
        DomainSelection
    """
    if now is None:
        now = time.time()

    filtered = filter_domains(domains, include_list=include, ignore_list=ignore)
    cert_index = index_certificates(certificates)

    selection = DomainSelection(
        ignored=filtered.ignored,
        excluded=filtered.excluded,
        total_discovered=len(domains),
    )

    for domain in filtered.kept:
        record = cert_index.get(domain)
        if record is None:
            item = WorkItem(name=domain)
        elif is_expiring_soon(record.not_after, lookahead_days, now=now):
            item = WorkItem(name=domain, old_cert_id=record.cert_id)
        else:
            selection.skipped.append(domain)
            continue

        if max_items and len(selection.selected) >= max_items:
            selection.deferred.append(domain)
        else:
            selection.selected.append(item)

    return selection


def build_working_set(
    inventory: Optional[DomainInventory],
    context: CallContext,
    lookahead_days: int = 30,
    include: Optional[List[str]] = None,
    ignore: Optional[List[str]] = None,
    max_items: int = 0,
    now: Optional[float] = None,
) -> DomainSelection:
    """
    Read the inventory and select the working set.

    An unreadable inventory yields an empty working set with ``error`` set;
    it never raises.
    """
    logger = get_logger()

    if inventory is None:
        logger.error("Domain inventory is not configured")
        return DomainSelection(error="domain inventory is not configured")

    try:
        domains = inventory.list_domains(context.for_call())
        certificates = inventory.list_certificates(context.for_call())
    except Exception as e:
        logger.error(f"Failed to read domain inventory: {e}")
        return DomainSelection(error=f"inventory unavailable: {e}")

    selection = select_work_items(
        domains,
        certificates,
        lookahead_days=lookahead_days,
        now=now,
        include=include,
        ignore=ignore,
        max_items=max_items,
    )

    cert_index = index_certificates(certificates)
    logger.info(
        f"  Found {selection.total_discovered} domain(s), "
        f"{len(certificates)} certificate(s)"
    )
    logger.info(
        f"  Selection result: {len(selection.selected)} selected, "
        f"{len(selection.skipped)} valid, {len(selection.ignored)} ignored, "
        f"{len(selection.excluded)} excluded, {len(selection.deferred)} deferred"
    )
    for item in selection.selected:
        if item.old_cert_id:
            days = format_days_remaining(cert_index[item.name].not_after, now=now)
            logger.debug(f"    [{item.name}] EXPIRING in {days} days (cert {item.old_cert_id})")
        else:
            logger.debug(f"    [{item.name}] NO CERTIFICATE")
    if selection.deferred:
        logger.warning(
            f"  Deferred to a later cycle (renewal cap reached): {', '.join(selection.deferred)}"
        )
    if selection.ignored:
        logger.info(f"  Ignored domains: {', '.join(selection.ignored)}")

    return selection
