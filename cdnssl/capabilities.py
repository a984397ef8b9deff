"""
Capability ports and the live capability set.

The renewal core only talks to the outside world through the abstract ports
defined here. Concrete adapters live in certbot.py, qiniu.py and
notification.py.
"""

import dataclasses
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Any, TYPE_CHECKING

from .context import CallContext
from .logger import get_logger

if TYPE_CHECKING:
    from .config_loader import ConfigSnapshot


class CapabilityError(Exception):
    """Base class for errors raised by capability adapters."""
    pass


class CapabilityUnavailableError(CapabilityError):
    """Raised when a stage needs a capability that could not be built."""
    pass


@dataclass(frozen=True)
class CertificateRecord:
    """CDN-side certificate state for one domain."""
    domain_name: str
    cert_id: str
    not_after: int  # unix seconds


class DomainInventory(ABC):
    """Source of the domain list and the CDN certificate inventory."""

    @abstractmethod
    def list_domains(self, context: CallContext) -> List[str]:
        pass

    @abstractmethod
    def list_certificates(self, context: CallContext) -> List[CertificateRecord]:
        pass


class CertificateIssuer(ABC):
    """Obtains a fresh certificate for a domain."""

    @abstractmethod
    def obtain(self, domain: str, context: CallContext) -> Tuple[str, str]:
        """
        Issue a certificate.

        Args:
            domain: Domain name
            context: Call context

        Returns:
            Tuple of (key_pem, cert_pem)
        """
        pass


class CertificatePublisher(ABC):
    """Uploads certificates to the CDN and binds them to domains."""

    @abstractmethod
    def upload(self, key_pem: str, cert_pem: str, domain: str, context: CallContext) -> str:
        """Upload a certificate and return its CDN certificate ID."""
        pass

    @abstractmethod
    def force_https(self, domain: str, cert_id: str, context: CallContext) -> None:
        pass

    @abstractmethod
    def remove(self, cert_id: str, context: CallContext) -> None:
        pass


class Notifier(ABC):
    """Delivers alert messages."""

    @abstractmethod
    def send(
        self,
        recipients: List[str],
        subject: str,
        text_body: str,
        html_body: str,
        attachments: Optional[List[Tuple[str, bytes, str]]] = None,
        context: Optional[CallContext] = None,
    ) -> None:
        """
        Send a message.

        Args:
            recipients: Destination addresses
            subject: Subject line
            text_body: Plain-text body
            html_body: HTML body
            attachments: Optional list of (filename, content, mime type)
            context: Optional call context

        Raises:
            NotificationError: If delivery fails
        """
        pass


@dataclass(frozen=True)
class CapabilitySet:
    """
    Live capability instances used by one cycle.

    Instances are never mutated in place; reconciliation produces a new set.
    """
    inventory: Optional[DomainInventory] = None
    issuer: Optional[CertificateIssuer] = None
    publisher: Optional[CertificatePublisher] = None
    notifier: Optional[Notifier] = None

    def require(self, name: str) -> Any:
        """
        Return the named capability or raise if it is missing.

        Raises:
            CapabilityUnavailableError: If the capability was never built
        """
        capability = getattr(self, name)
        if capability is None:
            raise CapabilityUnavailableError(f"{name} is not configured")
        return capability


@dataclass
class CapabilityFactories:
    """
    Builders for each capability, keyed by the config section that backs it.

    ``cdn`` returns an object implementing both DomainInventory and
    CertificatePublisher.
    """
    issuer: Callable[[Any], CertificateIssuer]
    cdn: Callable[[Any], Any]
    notifier: Callable[[Any], Notifier]


class CapabilityRegistry:
    """
    Owner of the current CapabilitySet.

    Readers take one snapshot per cycle via ``current()``; ``reconcile()``
    swaps in a new set under the lock.
    """

    def __init__(self, factories: CapabilityFactories, initial: Optional[CapabilitySet] = None):
        self.factories = factories
        self._lock = threading.Lock()
        self._current = initial or CapabilitySet()

    def current(self) -> CapabilitySet:
        with self._lock:
            return self._current

    def _rebuild(self, section: str, config: Any) -> Optional[Any]:
        logger = get_logger()
        try:
            instance = getattr(self.factories, section)(config)
        except Exception as e:
            logger.failure(f"Could not rebuild {section} capability: {e}")
            return None
        logger.success(f"Rebuilt {section} capability")
        return instance

    def reconcile(self, snapshot: "ConfigSnapshot") -> CapabilitySet:
        """
        Rebuild the capabilities whose config section changed.

        A failed rebuild keeps the previous instance (if any).

        Args:
            snapshot: Configuration snapshot with change flags

        Returns:
            The CapabilitySet now in effect
        """
        logger = get_logger()
        current = self.current()
        changes = {}

        if snapshot.issuer_changed:
            issuer = self._rebuild("issuer", snapshot.issuer)
            if issuer is not None:
                changes["issuer"] = issuer

        if snapshot.cdn_changed:
            cdn = self._rebuild("cdn", snapshot.cdn)
            if cdn is not None:
                changes["inventory"] = cdn
                changes["publisher"] = cdn

        if snapshot.notifier_changed:
            notifier = self._rebuild("notifier", snapshot.notifier)
            if notifier is not None:
                changes["notifier"] = notifier

        if not changes:
            logger.debug("Capabilities unchanged")
            return current

        updated = dataclasses.replace(current, **changes)
        with self._lock:
            self._current = updated
        return updated
