"""
Qiniu CDN operations.

Handles domain and certificate discovery, certificate upload, HTTPS
enforcement and removal through the Qiniu management API.
"""

import base64
import hashlib
import hmac
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote, urlparse

import requests
from requests.auth import AuthBase

from .capabilities import (
    CapabilityError,
    CertificatePublisher,
    CertificateRecord,
    DomainInventory,
)
from .config_loader import CdnConfig
from .context import CallContext
from .logger import get_logger

DEFAULT_TIMEOUT = 30
DOMAIN_PAGE_SIZE = 1000
CERT_PAGE_SIZE = 100


class CdnError(CapabilityError):
    """Raised when a Qiniu API call fails."""
    pass


class AuthenticationError(CdnError):
    """Raised when the Qiniu credentials are rejected."""
    pass


class QBoxAuth(AuthBase):
    """
    Qiniu "QBox" request signing.

    The signature is an HMAC-SHA1 over ``path[?query]\\n``, followed by the
    body for form-encoded requests only.
    """

    def __init__(self, access_key: str, secret_key: str):
        self.access_key = access_key
        self.secret_key = secret_key

    def token_for(self, url: str, body: Optional[bytes] = None, content_type: Optional[str] = None) -> str:
        parsed = urlparse(url)
        data = parsed.path
        if parsed.query:
            data += "?" + parsed.query
        data += "\n"
        signing = data.encode()
        if body and content_type == "application/x-www-form-urlencoded":
            signing += body if isinstance(body, bytes) else body.encode()

        digest = hmac.new(self.secret_key.encode(), signing, hashlib.sha1).digest()
        return f"{self.access_key}:{base64.urlsafe_b64encode(digest).decode()}"

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        token = self.token_for(request.url, request.body, request.headers.get("Content-Type"))
        request.headers["Authorization"] = f"QBox {token}"
        return request


class QiniuClient(DomainInventory, CertificatePublisher):
    """
    Client for the Qiniu CDN management API.

    Serves as both the domain inventory and the certificate publisher.
    Uploaded certificates are named after the domain they are for, which is
    how the inventory maps certificates back to domains.
    """

    def __init__(self, config: CdnConfig, session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            config: CDN configuration
            session: Optional pre-built requests session

        Raises:
            AuthenticationError: If credentials are missing
        """
        if not config.access_key or not config.secret_key:
            raise AuthenticationError("Qiniu access_key and secret_key are required")
        if config.access_key.startswith("${") or config.secret_key.startswith("${"):
            raise AuthenticationError("Qiniu credentials reference an unset environment variable")

        self.config = config
        self.api_url = config.api_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.auth = QBoxAuth(config.access_key, config.secret_key)
        self.logger = get_logger()

    def _request(
        self,
        method: str,
        path: str,
        context: CallContext,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send a signed API request.

        Returns:
            Decoded JSON response (empty dict for empty bodies)

        Raises:
            CdnError: On transport errors or non-2xx responses
        """
        context.check()
        url = f"{self.api_url}{path}"

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                timeout=context.remaining(default=DEFAULT_TIMEOUT) or DEFAULT_TIMEOUT,
            )
        except requests.RequestException as e:
            raise CdnError(f"{method} {path} failed: {e}")

        if response.status_code == 401:
            raise AuthenticationError(f"Qiniu rejected credentials ({method} {path})")

        if not 200 <= response.status_code < 300:
            raise CdnError(
                f"{method} {path} returned {response.status_code}: {self._error_message(response)}"
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise CdnError(f"{method} {path} returned invalid JSON")

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text.strip() or "no response body"
        if isinstance(payload, dict) and payload.get("error"):
            return str(payload["error"])
        return response.text.strip()

    def _paged(self, path: str, key: str, page_size: int, context: CallContext) -> Iterator[Dict[str, Any]]:
        marker = ""
        while True:
            params = {"limit": page_size}
            if marker:
                params["marker"] = marker
            payload = self._request("GET", path, context, params=params)
            for entry in payload.get(key) or []:
                yield entry
            marker = payload.get("marker") or ""
            if not marker:
                return

    def list_domains(self, context: CallContext) -> List[str]:
        """
        List every CDN domain.

        Returns:
            Domain names in API order
        """
        domains = [
            entry["name"]
            for entry in self._paged("/domain", "domains", DOMAIN_PAGE_SIZE, context)
            if entry.get("name")
        ]
        self.logger.debug(f"Qiniu reports {len(domains)} domain(s)")
        return domains

    def list_certificates(self, context: CallContext) -> List[CertificateRecord]:
        """
        List every certificate stored on the CDN.

        Returns:
            CertificateRecord list keyed by certificate name
        """
        records = []
        for entry in self._paged("/sslcert", "certs", CERT_PAGE_SIZE, context):
            try:
                records.append(CertificateRecord(
                    domain_name=entry["name"],
                    cert_id=entry["certid"],
                    not_after=int(entry["not_after"]),
                ))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping malformed certificate entry ({e}): {entry!r}")
        return records

    def upload(self, key_pem: str, cert_pem: str, domain: str, context: CallContext) -> str:
        """
        Upload a certificate.

        Returns:
            The new certificate ID
        """
        if not key_pem or not cert_pem:
            raise CdnError(f"No certificate material to upload for {domain}")

        common_name = f"*{domain}" if domain.startswith(".") else domain
        payload = self._request(
            "POST",
            "/sslcert",
            context,
            json_body={
                "name": domain,
                "common_name": common_name,
                "pri": key_pem,
                "ca": cert_pem,
            },
        )
        cert_id = payload.get("certID") or payload.get("certId")
        if not cert_id:
            raise CdnError(f"Upload for {domain} returned no certificate ID")

        self.logger.info(f"  [{domain}] Uploaded certificate {cert_id}")
        return cert_id

    def force_https(self, domain: str, cert_id: str, context: CallContext) -> None:
        """Bind ``cert_id`` to ``domain`` and force HTTPS."""
        if not cert_id:
            raise CdnError(f"No certificate ID to bind for {domain}")

        self._request(
            "PUT",
            f"/domain/{quote(domain, safe='')}/httpsconf",
            context,
            json_body={
                "certId": cert_id,
                "forceHttps": True,
                "http2Enable": self.config.http2,
            },
        )
        self.logger.info(f"  [{domain}] HTTPS enforced with {cert_id}")

    def remove(self, cert_id: str, context: CallContext) -> None:
        """Delete a certificate."""
        self._request("DELETE", f"/sslcert/{quote(cert_id, safe='')}", context)
        self.logger.info(f"  Removed certificate {cert_id}")
