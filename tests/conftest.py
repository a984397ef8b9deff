"""Shared fakes and fixtures for the renewal tests."""

import threading
from collections import Counter
from typing import Dict, List, Optional, Tuple

import pytest

from cdnssl.capabilities import (
    CapabilityError,
    CapabilitySet,
    CertificateIssuer,
    CertificatePublisher,
    CertificateRecord,
    DomainInventory,
    Notifier,
)
from cdnssl.config_loader import (
    CdnConfig,
    Config,
    ConfigSnapshot,
    IssuerConfig,
    NotificationsConfig,
    Settings,
)

NOW = 1_700_000_000
DAY = 24 * 60 * 60


class FakeIssuer(CertificateIssuer):
    """Issuer that hands out fake PEM text and fails on scripted calls.

    ``failures`` maps a domain to the causes raised on its successive calls;
    a ``None`` entry means that call succeeds.
    """

    def __init__(self, failures: Optional[Dict[str, List[Optional[str]]]] = None):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: Counter = Counter()
        self._lock = threading.Lock()

    def obtain(self, domain, context) -> Tuple[str, str]:
        with self._lock:
            self.calls[domain] += 1
            pending = self.failures.get(domain)
            cause = pending.pop(0) if pending else None
        if cause:
            raise CapabilityError(cause)
        return f"KEY-{domain}", f"CERT-{domain}"


class FakeCdn(DomainInventory, CertificatePublisher):
    """In-memory CDN: inventory and publisher in one, like the Qiniu client.

    ``failures`` maps ``(operation, target)`` to scripted causes, where the
    target is the domain for upload/force_https and the cert id for remove.
    """

    def __init__(
        self,
        domains: Optional[List[str]] = None,
        certificates: Optional[List[CertificateRecord]] = None,
        failures: Optional[Dict[Tuple[str, str], List[Optional[str]]]] = None,
        inventory_error: Optional[Exception] = None,
    ):
        self.domains = list(domains or [])
        self.certificates = list(certificates or [])
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.inventory_error = inventory_error
        self.calls: Counter = Counter()
        self.uploaded: List[Tuple[str, str]] = []
        self.bound: List[Tuple[str, str]] = []
        self.removed: List[str] = []
        self.log: List[Tuple[str, str]] = []
        self._lock = threading.Lock()
        self._next_id = 0

    def _record(self, operation: str, target: str) -> None:
        with self._lock:
            self.calls[(operation, target)] += 1
            self.log.append((operation, target))
            pending = self.failures.get((operation, target))
            cause = pending.pop(0) if pending else None
        if cause:
            raise CapabilityError(cause)

    def list_domains(self, context):
        if self.inventory_error is not None:
            raise self.inventory_error
        return list(self.domains)

    def list_certificates(self, context):
        return list(self.certificates)

    def upload(self, key_pem, cert_pem, domain, context):
        self._record("upload", domain)
        with self._lock:
            self._next_id += 1
            cert_id = f"new-{self._next_id}"
        self.uploaded.append((domain, cert_id))
        return cert_id

    def force_https(self, domain, cert_id, context):
        self._record("force_https", domain)
        self.bound.append((domain, cert_id))

    def remove(self, cert_id, context):
        self._record("remove", cert_id)
        self.removed.append(cert_id)


class FakeNotifier(Notifier):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.sent: List[dict] = []

    def send(self, recipients, subject, text_body, html_body, attachments=None, context=None):
        if self.error is not None:
            raise self.error
        self.sent.append({
            "recipients": list(recipients),
            "subject": subject,
            "text": text_body,
            "html": html_body,
        })


def make_snapshot(
    recipients: Optional[List[str]] = None,
    changed: bool = False,
    **settings,
) -> ConfigSnapshot:
    """Snapshot with default sections; ``changed`` sets every change flag."""
    config = Config(
        settings=Settings(**settings),
        issuer=IssuerConfig(dns_plugin="dns-fake"),
        cdn=CdnConfig(access_key="ak", secret_key="sk"),
        notifications=NotificationsConfig(
            recipients=["ops@example.com"] if recipients is None else recipients
        ),
    )
    return ConfigSnapshot(
        config=config,
        issuer_changed=changed,
        cdn_changed=changed,
        notifier_changed=changed,
    )


def cert(domain: str, cert_id: str, days_left: float) -> CertificateRecord:
    return CertificateRecord(domain_name=domain, cert_id=cert_id, not_after=int(NOW + days_left * DAY))


@pytest.fixture
def issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture
def cdn() -> FakeCdn:
    return FakeCdn()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def capabilities(issuer, cdn, notifier) -> CapabilitySet:
    return CapabilitySet(inventory=cdn, issuer=issuer, publisher=cdn, notifier=notifier)
